"""Scripted search, fetch and model collaborators shared by the job and API tests."""
import asyncio

from deepcite.agents.orchestrator import JobOrchestrator
from deepcite.llm.providers import FINISH_TOOL_CALLS, LlmResponse, ToolCall
from deepcite.llm.router import LlmRouter
from deepcite.models.evidence import Snapshot
from deepcite.models.jobs import EngineHealthEntry, ResearchJob, SourceFetchStatus
from deepcite.services.search_harvester import HarvestResult
from deepcite.tools.web_utils import canonicalize_url

PROMPT = "How efficient and stable are perovskite solar cells today?"

URLS = [
    "https://www.nrel-example.org/perovskite-solar-efficiency",
    "https://pv-magazine.example.com/perovskite-solar-stability",
    "https://energy.example.gov/perovskite-solar-cost",
    "https://journal.example.edu/perovskite-efficiency-record",
    "https://news.example.net/solar-perovskite-degradation",
    "https://blog.example.io/perovskite-tandem-efficiency",
    "https://wiki.example.org/perovskite-solar-cells",
    "https://lab.example.ac/perovskite-solar-humidity",
]

PLAN = "\n".join(
    [
        "1. perovskite solar cell efficiency record",
        "2. perovskite solar stability humidity",
        "3. perovskite tandem silicon efficiency",
        "4. perovskite module degradation field tests",
        "5. perovskite solar manufacturing cost",
    ]
)
SUB_QUESTIONS = "\n".join(
    [
        "1. What limits perovskite stability outdoors?",
        "2. How are perovskite efficiencies certified?",
        "3. What would perovskite modules cost to manufacture?",
    ]
)
DRAFT = "\n\n".join(
    [
        "Perovskite solar cells have passed 26 percent efficiency in certified laboratory tests [1].",
        "Humidity and heat still degrade perovskite layers within months outdoors [2].",
        "Commercial perovskite modules could reach the market before the end of the decade.",
    ]
)


def page_text(url):
    topic = url.rsplit("/", 1)[-1].replace("-", " ")
    sentence = (
        f"Researchers report that {topic} results for perovskite solar cells depend on "
        "efficiency, stability and humidity control. "
    )
    return sentence * 25


async def no_sleep(seconds):
    return None


class ScriptedProvider:
    """Answers planner prompts with numbered lists and everything else with a cited draft."""

    name = "scripted"
    model = "scripted-1"
    is_local = True

    def __init__(self, supports_tools=False):
        self.supports_tools = supports_tools
        self.requests = []

    @property
    def prompts(self):
        return [r.messages[0]["content"] for r in self.requests]

    async def generate(self, request):
        self.requests.append(request)
        prompt = request.messages[0]["content"]
        if "Return ONLY numbered queries" in prompt:
            text = PLAN
        elif "sub-questions that each need" in prompt:
            text = SUB_QUESTIONS
        elif request.tools and request.messages[-1]["role"] == "user" and request.tool_choice != "none":
            call = ToolCall(id="call_1", name="get_source", arguments={"citation_label": "[1]"})
            return LlmResponse(text="", finish_reason=FINISH_TOOL_CALLS, tool_calls=[call], model=self.model)
        else:
            text = DRAFT
        return LlmResponse(text=text, provider=self.name, model=self.model)


class RecordingProvider:
    name = "openai"
    model = "gpt-test"
    is_local = False
    supports_tools = True

    def __init__(self):
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        return LlmResponse(text=DRAFT)


class FakeHarvester:
    def __init__(self, urls=URLS, fail=False):
        self.urls = list(urls)
        self.fail = fail
        self.calls = []

    async def search_multi_lane(self, queries, *, exclude=None, stop_event=None):
        self.calls.append(list(queries))
        if self.fail:
            raise RuntimeError("search backend down")
        exclude = exclude or set()
        urls = [u for u in self.urls if canonicalize_url(u) not in exclude]
        health = {
            "duckduckgo": EngineHealthEntry(
                engine="duckduckgo", attempted=len(queries), succeeded=len(queries), total_results=len(urls)
            )
        }
        return HarvestResult(urls=urls, engine_health=health, queries_run=list(queries))


class GatedHarvester(FakeHarvester):
    """Holds the first search until the test releases it."""

    def __init__(self, urls=URLS):
        super().__init__(urls)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def search_multi_lane(self, queries, *, exclude=None, stop_event=None):
        self.entered.set()
        await self.release.wait()
        return await super().search_multi_lane(queries, exclude=exclude, stop_event=stop_event)


class FakeAcquirer:
    def __init__(self, blocked=()):
        self.blocked = set(blocked)
        self.captured = []
        self._cache = {}

    async def capture(self, url, *, force_refresh=False):
        self.captured.append(url)
        if url in self._cache:
            return self._cache[url]
        if url in self.blocked:
            snapshot = Snapshot(
                url=url,
                canonical_url=canonicalize_url(url),
                http_status=403,
                status=SourceFetchStatus.BLOCKED,
                block_reason="HTTP 403",
            )
        else:
            topic = url.rsplit("/", 1)[-1].replace("-", " ")
            snapshot = Snapshot(
                url=url,
                canonical_url=canonicalize_url(url),
                title=f"Study of {topic}",
                text=page_text(url),
                http_status=200,
            )
        self._cache[url] = snapshot
        return snapshot


def make_router(provider=None, **kwargs):
    kwargs.setdefault("enable_tool_calling", False)
    return LlmRouter(local=provider or ScriptedProvider(), strategy="local_only", sleep=no_sleep, **kwargs)


def make_orchestrator(store, indexer, retrieval, *, router=None, harvester=None, acquirer=None, sectional=False):
    return JobOrchestrator(
        store,
        router or make_router(),
        harvester or FakeHarvester(),
        acquirer or FakeAcquirer(),
        indexer,
        retrieval,
        max_parallel_acquire=4,
        sectional_reports=sectional,
    )


def new_job(**kwargs):
    kwargs.setdefault("target_source_count", 5)
    kwargs.setdefault("max_iterations", 3)
    return ResearchJob(prompt=PROMPT, **kwargs)

