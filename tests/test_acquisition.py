"""Tests for polite fetching, response classification and snapshot capture."""
import httpx
import pytest

from deepcite.models.jobs import SourceFetchStatus
from deepcite.services.acquisition import (
    PoliteFetcher,
    SourceAcquirer,
    extract_readable_text,
    extract_title,
    looks_paywalled,
)
from deepcite.services.courtesy import CourtesyScheduler

ARTICLE_HTML = """
<html>
  <head><title>Perovskite Progress</title><script>var tracking = 1;</script></head>
  <body>
    <nav>Home | About</nav>
    <p>Perovskite solar cells passed 25 percent efficiency in laboratory tests.</p>
    <footer>Copyright</footer>
  </body>
</html>
"""


def scripted_transport(*responses):
    """Transport replaying responses in order; the last one repeats."""
    calls = []

    async def transport(url, timeout):
        calls.append(url)
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    transport.calls = calls
    return transport


def html(status=200, body=ARTICLE_HTML, url="https://example.org/a", content_type="text/html"):
    return status, body, url, content_type


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scheduler(sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return CourtesyScheduler(
        max_concurrent_fetches=4,
        max_concurrent_per_domain=2,
        min_delay_seconds=0.0,
        max_delay_seconds=0.0,
        failure_threshold=5,
        backoff_base_seconds=2.0,
        max_retries=3,
        sleep=fake_sleep,
    )


class TestExtraction:
    def test_readable_text_drops_scripts_and_chrome(self):
        text = extract_readable_text(ARTICLE_HTML)
        assert "25 percent efficiency" in text
        assert "tracking" not in text
        assert "Home | About" not in text
        assert "Copyright" not in text

    def test_extract_title(self):
        assert extract_title(ARTICLE_HTML) == "Perovskite Progress"
        assert extract_title("<p>no title</p>") == ""

    def test_paywall_markers_only_count_on_short_pages(self):
        assert looks_paywalled("Subscribe to continue reading this story.")
        long_text = "Subscribe to continue. " + "Real content about solar cells. " * 200
        assert not looks_paywalled(long_text)


class TestPoliteFetcher:
    @pytest.mark.asyncio
    async def test_success(self, scheduler):
        fetcher = PoliteFetcher(scheduler, transport=scripted_transport(html()))
        result = await fetcher.fetch("https://example.org/a")
        assert result.ok
        assert result.http_status == 200
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_forbidden_is_blocked_without_retry(self, scheduler):
        transport = scripted_transport(html(status=403, body="denied"))
        fetcher = PoliteFetcher(scheduler, transport=transport)

        result = await fetcher.fetch("https://example.org/private")

        assert result.status == SourceFetchStatus.BLOCKED
        assert "403" in result.reason
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_payment_required_is_paywall(self, scheduler):
        fetcher = PoliteFetcher(scheduler, transport=scripted_transport(html(status=402, body="pay")))
        result = await fetcher.fetch("https://example.org/premium")
        assert result.status == SourceFetchStatus.PAYWALL

    @pytest.mark.asyncio
    async def test_not_found_is_error_without_retry(self, scheduler):
        transport = scripted_transport(html(status=404, body="missing"))
        fetcher = PoliteFetcher(scheduler, transport=transport)
        result = await fetcher.fetch("https://example.org/gone")
        assert result.status == SourceFetchStatus.ERROR
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_server_errors_retry_with_backoff(self, scheduler, sleeps):
        transport = scripted_transport(html(status=503), html(status=503), html())
        fetcher = PoliteFetcher(scheduler, transport=transport)

        result = await fetcher.fetch("https://example.org/busy")

        assert result.ok
        assert len(transport.calls) == 3
        assert sleeps == [2.0, 4.0]
        assert scheduler.domain_state("example.org").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_error(self, scheduler):
        transport = scripted_transport(html(status=503))
        fetcher = PoliteFetcher(scheduler, transport=transport)

        result = await fetcher.fetch("https://example.org/busy")

        assert result.status == SourceFetchStatus.ERROR
        assert result.reason == "Max retries exceeded (last status 503)"
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_timeout(self, scheduler):
        transport = scripted_transport(httpx.ReadTimeout("too slow"))
        fetcher = PoliteFetcher(scheduler, transport=transport)
        result = await fetcher.fetch("https://example.org/slow")
        assert result.status == SourceFetchStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_open_circuit_skips_the_request(self, sleeps):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        scheduler = CourtesyScheduler(
            failure_threshold=1, min_delay_seconds=0.0, max_delay_seconds=0.0, sleep=fake_sleep
        )
        transport = scripted_transport(html(status=403, body="denied"))
        fetcher = PoliteFetcher(scheduler, transport=transport)

        await fetcher.fetch("https://example.org/first")
        result = await fetcher.fetch("https://example.org/second")

        assert result.status == SourceFetchStatus.CIRCUIT_BROKEN
        assert len(transport.calls) == 1


class TestSourceAcquirer:
    @pytest.mark.asyncio
    async def test_capture_html(self, scheduler):
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=scripted_transport(html())))

        snapshot = await acquirer.capture("https://example.org/a")

        assert snapshot.status == SourceFetchStatus.SUCCESS
        assert snapshot.title == "Perovskite Progress"
        assert "25 percent efficiency" in snapshot.text
        assert snapshot.content_hash
        assert acquirer.cached("https://Example.org/a#top") is snapshot
        assert acquirer.cached("https://example.org/b") is None

    @pytest.mark.asyncio
    async def test_blocked_capture_keeps_reason(self, scheduler):
        transport = scripted_transport(html(status=401, body="login"))
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=transport))

        snapshot = await acquirer.capture("https://example.org/members")

        assert snapshot.is_blocked
        assert snapshot.status == SourceFetchStatus.BLOCKED
        assert snapshot.text == ""
        assert "401" in snapshot.block_reason

    @pytest.mark.asyncio
    async def test_paywall_page_detected_from_text(self, scheduler):
        body = "<html><body><p>Subscribe to continue reading.</p></body></html>"
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=scripted_transport(html(body=body))))
        snapshot = await acquirer.capture("https://news.example.org/story")
        assert snapshot.status == SourceFetchStatus.PAYWALL

    @pytest.mark.asyncio
    async def test_pdf_is_not_extracted(self, scheduler):
        transport = scripted_transport(html(body="%PDF-1.7", content_type="application/pdf"))
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=transport))
        snapshot = await acquirer.capture("https://example.org/paper.pdf")
        assert snapshot.status == SourceFetchStatus.ERROR
        assert "PDF" in snapshot.block_reason

    @pytest.mark.asyncio
    async def test_plain_text_body(self, scheduler):
        transport = scripted_transport(html(body="Line one.\n\n\n\nLine two.", content_type="text/plain"))
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=transport))
        snapshot = await acquirer.capture("https://example.org/notes.txt")
        assert snapshot.text == "Line one.\n\nLine two."

    @pytest.mark.asyncio
    async def test_same_url_is_served_from_cache(self, scheduler):
        transport = scripted_transport(html())
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=transport))

        first = await acquirer.capture("https://example.org/a")
        second = await acquirer.capture("https://EXAMPLE.org/a/")

        assert second is first
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_force_refresh_fetches_again(self, scheduler):
        transport = scripted_transport(html())
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=transport))

        first = await acquirer.capture("https://example.org/a")
        again = await acquirer.capture("https://example.org/a", force_refresh=True)

        assert len(transport.calls) == 2
        # unchanged content resolves to the existing snapshot
        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_identical_content_on_two_urls_is_deduplicated(self, scheduler):
        transport = scripted_transport(html())
        acquirer = SourceAcquirer(PoliteFetcher(scheduler, transport=transport))

        first = await acquirer.capture("https://example.org/a")
        mirror = await acquirer.capture("https://mirror.example.net/a")

        assert mirror.id == first.id
        assert len(transport.calls) == 2
