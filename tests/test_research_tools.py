"""Tests for the drafting tools exposed to the model."""
import pytest
import pytest_asyncio

from deepcite.llm.providers import ToolCall
from deepcite.models.evidence import Snapshot
from deepcite.models.jobs import Citation
from deepcite.tools.research_tools import RESEARCH_TOOLS, ResearchToolbox

PEROVSKITE = (
    "Perovskite solar cells reached a certified efficiency of 26 percent in laboratory conditions. "
    "Stability under heat and humidity remains the main barrier to commercial deployment."
)
SILICON = "Silicon modules dominate the market with mature supply chains and twenty five year warranties."


async def add_source(store, indexer, url, title, text):
    snapshot = Snapshot(url=url, canonical_url=url, title=title, text=text)
    await store.save_snapshot(snapshot)
    await indexer.index_snapshot(snapshot)
    return snapshot


@pytest_asyncio.fixture
async def sources(store, indexer):
    first = await add_source(store, indexer, "https://lab.example.org/perovskite", "Perovskite record", PEROVSKITE)
    second = await add_source(store, indexer, "https://market.example.com/silicon", "Silicon market", SILICON)
    return first, second


def make_toolbox(store, retrieval, sources, web_search=None):
    first, second = sources
    citations = [
        Citation(job_id="job1", label="[1]", source_id=first.id),
        Citation(job_id="job1", label="[2]", source_id=second.id),
    ]
    return ResearchToolbox(
        prompt="perovskite efficiency",
        retrieval=retrieval,
        store=store,
        citations=citations,
        source_urls={s.id: s.url for s in sources},
        source_ids={s.id for s in sources},
        web_search=web_search,
    )


def test_tool_definitions():
    names = [t["function"]["name"] for t in RESEARCH_TOOLS]
    assert names == ["search_evidence", "search_web", "get_source", "verify_claim"]
    assert all(t["function"]["parameters"]["required"] for t in RESEARCH_TOOLS)


class TestResearchToolbox:
    @pytest.mark.asyncio
    async def test_search_evidence(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)

        text = await toolbox(ToolCall(id="1", name="search_evidence", arguments={"query": "perovskite efficiency"}))

        assert text.startswith("[Score:")
        assert "https://lab.example.org/perovskite" in text
        assert "26 percent" in text

    @pytest.mark.asyncio
    async def test_search_evidence_is_limited_to_job_sources(self, store, indexer, retrieval, sources):
        await add_source(store, indexer, "https://other.example.net/a", "Other job", "perovskite perovskite efficiency")
        toolbox = make_toolbox(store, retrieval, sources)

        text = await toolbox.search_evidence("perovskite efficiency")

        assert "other.example.net" not in text

    @pytest.mark.asyncio
    async def test_get_source_by_label(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)

        text = await toolbox(ToolCall(id="1", name="get_source", arguments={"citation_label": "2"}))

        assert text.splitlines()[0] == "Full source 2: Silicon market"
        assert "URL: https://market.example.com/silicon" in text
        assert SILICON in text

    @pytest.mark.asyncio
    async def test_get_source_unknown_label(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)
        assert await toolbox.get_source("[7]") == "Citation [7] not found. Available: [1] through [2]."

    @pytest.mark.asyncio
    async def test_verify_claim(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)

        text = await toolbox(ToolCall(id="1", name="verify_claim", arguments={"claim": "perovskite efficiency 26 percent"}))

        assert "Verdict: SUPPORTED" in text
        assert "Supporting evidence" in text

    @pytest.mark.asyncio
    async def test_verify_empty_claim(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)
        assert await toolbox.verify_claim("  ") == "No claim provided to verify."

    @pytest.mark.asyncio
    async def test_search_web_unavailable(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)
        assert await toolbox.search_web("tandem cells") == "Web search is not available in this phase."

    @pytest.mark.asyncio
    async def test_search_web_adds_sources(self, store, indexer, retrieval, sources):
        async def web_search(query):
            snapshot = await add_source(
                store, indexer, "https://news.example.io/tandem", "Tandem cells", "Tandem perovskite silicon cells hit 33 percent."
            )
            return [snapshot]

        toolbox = make_toolbox(store, retrieval, sources, web_search=web_search)

        text = await toolbox(ToolCall(id="1", name="search_web", arguments={"query": "tandem cells"}))

        assert text.startswith("Fetched 1 new source(s):")
        assert "- Tandem cells (https://news.example.io/tandem)" in text
        assert "33 percent" in text
        assert len(toolbox.source_ids) == 3

    @pytest.mark.asyncio
    async def test_unknown_tool(self, store, retrieval, sources):
        toolbox = make_toolbox(store, retrieval, sources)
        assert await toolbox(ToolCall(id="1", name="launch_rocket")) == "Unknown tool: launch_rocket"
