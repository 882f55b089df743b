"""Polite page fetching and snapshot capture.

Every request goes through the CourtesyScheduler. Failures are reported as a
SourceFetchStatus value, never raised, so one bad host cannot stop a phase.
"""

from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from deepcite.config import settings
from deepcite.models.evidence import Snapshot
from deepcite.models.jobs import SourceFetchStatus
from deepcite.services import logger as log_service
from deepcite.services.courtesy import CourtesyScheduler, get_domain
from deepcite.tools.web_utils import canonicalize_url

PAYWALL_MARKERS = (
    "subscribe to continue",
    "subscribe to read",
    "subscription required",
    "to continue reading",
    "sign in to read",
    "already a subscriber",
)
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

# status_code, body, final_url, content_type
RawResponse = tuple[int, str, str, str]
Transport = Callable[[str, float], Awaitable[RawResponse]]


@dataclass(slots=True)
class FetchResult:
    url: str
    status: SourceFetchStatus
    http_status: int = 0
    body: str = ""
    final_url: str = ""
    content_type: str = ""
    reason: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == SourceFetchStatus.SUCCESS


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def extract_title(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.string if soup.title and soup.title.string else ""
    return _normalize_text(title)


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "header", "footer", "aside", "form", "svg"]):
        tag.decompose()
    return _normalize_text(soup.get_text("\n"))


def looks_paywalled(text: str) -> bool:
    # Only short pages count; long articles often mention subscriptions in passing.
    if len(text) > 3000:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in PAYWALL_MARKERS)


class PoliteFetcher:
    """GET with courtesy slots, classification and bounded retries."""

    def __init__(
        self,
        scheduler: CourtesyScheduler,
        *,
        transport: Transport | None = None,
        timeout_seconds: float | None = None,
        user_agent: str | None = None,
    ):
        self.scheduler = scheduler
        self._transport = transport
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self.user_agent = user_agent or settings.user_agent

    async def fetch(self, url: str) -> FetchResult:
        transport = self._transport or self._fetch_with_httpx
        domain = get_domain(url)
        max_attempts = max(int(self.scheduler.max_retries), 1)
        last = FetchResult(url=url, status=SourceFetchStatus.ERROR, reason="not attempted")

        for attempt in range(1, max_attempts + 1):
            backoff = 0.0
            async with self.scheduler.slot(url) as granted:
                if not granted:
                    log_service.log_fetch(url, domain, SourceFetchStatus.CIRCUIT_BROKEN.value, error="circuit open")
                    return FetchResult(
                        url=url,
                        status=SourceFetchStatus.CIRCUIT_BROKEN,
                        reason=f"Circuit breaker open for {domain}",
                        attempts=attempt - 1,
                    )

                started = time.monotonic()
                try:
                    status_code, body, final_url, content_type = await transport(url, self.timeout_seconds)
                except httpx.TimeoutException:
                    backoff = await self.scheduler.record_failure(url)
                    last = FetchResult(url=url, status=SourceFetchStatus.TIMEOUT, reason="Request timeout", attempts=attempt)
                except httpx.HTTPError as exc:
                    backoff = await self.scheduler.record_failure(url)
                    last = FetchResult(url=url, status=SourceFetchStatus.ERROR, reason=str(exc) or type(exc).__name__, attempts=attempt)
                else:
                    duration_ms = int((time.monotonic() - started) * 1000)
                    result, backoff = await self._classify(
                        url, status_code, body, final_url, content_type, attempt
                    )
                    log_service.log_fetch(
                        url,
                        domain,
                        result.status.value,
                        http_status=status_code,
                        duration_ms=duration_ms,
                        error=result.reason if not result.ok else None,
                    )
                    if backoff <= 0:
                        return result
                    last = result

            if attempt < max_attempts:
                logger.debug(f"Retrying {url} in {backoff:.1f}s (attempt {attempt}/{max_attempts})")
                await self.scheduler.sleep(backoff)

        if last.status == SourceFetchStatus.ERROR and last.http_status:
            last.reason = f"Max retries exceeded (last status {last.http_status})"
        log_service.log_fetch(url, domain, last.status.value, http_status=last.http_status, error=last.reason)
        return last

    async def _classify(
        self,
        url: str,
        status_code: int,
        body: str,
        final_url: str,
        content_type: str,
        attempt: int,
    ) -> tuple[FetchResult, float]:
        """Map a response to a result; a positive backoff means retry."""
        base = dict(url=url, http_status=status_code, final_url=final_url or url, content_type=content_type, attempts=attempt)

        if status_code in RETRYABLE_STATUSES or status_code >= 500:
            backoff = await self.scheduler.record_failure(url, status_code)
            return FetchResult(status=SourceFetchStatus.ERROR, reason=f"HTTP {status_code}", **base), backoff

        if status_code in (401, 403):
            await self.scheduler.record_failure(url, status_code)
            return (
                FetchResult(
                    status=SourceFetchStatus.BLOCKED,
                    reason=f"Access denied ({status_code}); logins and paywalls are not bypassed",
                    **base,
                ),
                0.0,
            )

        if status_code == 402:
            await self.scheduler.record_success(url)
            return FetchResult(status=SourceFetchStatus.PAYWALL, reason="Payment required", **base), 0.0

        if status_code >= 400:
            return FetchResult(status=SourceFetchStatus.ERROR, reason=f"HTTP {status_code}", **base), 0.0

        await self.scheduler.record_success(url)
        return FetchResult(status=SourceFetchStatus.SUCCESS, body=body, **base), 0.0

    async def _fetch_with_httpx(self, url: str, timeout_seconds: float) -> RawResponse:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as client:
            response = await client.get(
                url,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5",
                    "Accept-Language": "en-US,en;q=0.8",
                },
            )
            return (
                int(response.status_code),
                response.text,
                str(response.url),
                response.headers.get("content-type", ""),
            )


class SourceAcquirer:
    """Captures pages as snapshots, reusing earlier captures of the same URL or content."""

    def __init__(self, fetcher: PoliteFetcher):
        self.fetcher = fetcher
        self._by_canonical: dict[str, Snapshot] = {}
        self._by_hash: dict[str, Snapshot] = {}

    @property
    def scheduler(self) -> CourtesyScheduler:
        return self.fetcher.scheduler

    def cached(self, url: str) -> Snapshot | None:
        return self._by_canonical.get(canonicalize_url(url))

    async def capture(self, url: str, *, force_refresh: bool = False) -> Snapshot:
        canonical = canonicalize_url(url)
        cached = None if force_refresh else self._by_canonical.get(canonical)
        if cached is not None:
            logger.debug(f"Using cached snapshot for {url}")
            return cached

        result = await self.fetcher.fetch(url)
        if not result.ok:
            return Snapshot(
                url=url,
                canonical_url=canonical,
                title=f"[Blocked] {url}",
                http_status=result.http_status,
                status=result.status,
                block_reason=result.reason,
            )

        content_type = result.content_type.lower()
        if "application/pdf" in content_type or url.lower().endswith(".pdf"):
            return Snapshot(
                url=url,
                canonical_url=canonical,
                title=f"[PDF] {url}",
                http_status=result.http_status,
                status=SourceFetchStatus.ERROR,
                block_reason="PDF content is not extracted",
            )

        body = result.body
        if "html" in content_type or body.lstrip()[:1] == "<":
            title = extract_title(body)
            text = extract_readable_text(body)
        else:
            title = ""
            text = _normalize_text(body)

        if looks_paywalled(text):
            return Snapshot(
                url=url,
                canonical_url=canonical,
                title=title or url,
                http_status=result.http_status,
                status=SourceFetchStatus.PAYWALL,
                block_reason="Paywall detected",
            )

        content_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()
        existing = self._by_hash.get(content_hash)
        if existing is not None:
            logger.info(f"Content dedup: {url} matches existing {existing.url}")
            self._by_canonical[canonical] = existing
            return existing

        snapshot = Snapshot(
            url=url,
            canonical_url=canonical,
            title=title or url,
            text=text,
            http_status=result.http_status,
            content_hash=content_hash,
        )
        self._by_canonical[canonical] = snapshot
        self._by_hash[content_hash] = snapshot
        logger.info(f"Captured {url} ({len(text)} chars)")
        return snapshot
