"""Concurrent multi-engine URL harvesting."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from deepcite.config import settings
from deepcite.models.evidence import SearchHit
from deepcite.models.jobs import EngineHealthEntry, SourceFetchStatus
from deepcite.services.acquisition import PoliteFetcher
from deepcite.tools import search_extractor
from deepcite.tools.web_utils import canonicalize_url


@dataclass(slots=True)
class EngineSearchResult:
    engine: str
    query: str
    urls: list[str] = field(default_factory=list)
    status: SourceFetchStatus = SourceFetchStatus.SUCCESS
    reason: str | None = None


@dataclass(slots=True)
class HarvestResult:
    urls: list[str] = field(default_factory=list)
    hits: list[SearchHit] = field(default_factory=list)
    engine_health: dict[str, EngineHealthEntry] = field(default_factory=dict)
    queries_run: list[str] = field(default_factory=list)
    cancelled: bool = False


def _engine_rank(engine: str) -> int:
    try:
        return search_extractor.ENGINE_PRIORITY.index(engine)
    except ValueError:
        return len(search_extractor.ENGINE_PRIORITY)


def merge_hits(hits: list[SearchHit], query_order: list[str]) -> list[str]:
    """Deterministic merge: query order, then rank, then engine priority; first URL wins."""
    query_index = {q: i for i, q in enumerate(query_order)}
    ordered = sorted(
        hits,
        key=lambda h: (query_index.get(h.query, len(query_index)), h.rank, _engine_rank(h.engine)),
    )
    urls: list[str] = []
    seen: set[str] = set()
    for hit in ordered:
        key = canonicalize_url(hit.url)
        if key in seen:
            continue
        seen.add(key)
        urls.append(hit.url)
    return urls


class SearchHarvester:
    def __init__(
        self,
        fetcher: PoliteFetcher,
        *,
        engines: list[str] | None = None,
        max_results_per_engine: int | None = None,
    ):
        self.fetcher = fetcher
        self.engines = [
            e for e in (engines or settings.search_engine_list) if e in search_extractor.SEARCH_URL_TEMPLATES
        ]
        if not self.engines:
            raise ValueError("No supported search engines configured")
        self.max_results_per_engine = max_results_per_engine or settings.max_results_per_engine

    async def search(self, query: str, engine: str) -> list[str]:
        result = await self.search_engine(query, engine)
        return result.urls

    async def search_engine(self, query: str, engine: str) -> EngineSearchResult:
        url = search_extractor.build_search_url(engine, query)
        fetched = await self.fetcher.fetch(url)
        if not fetched.ok:
            logger.warning(f"{engine} search failed for '{query}': {fetched.status.value} {fetched.reason or ''}")
            return EngineSearchResult(engine=engine, query=query, status=fetched.status, reason=fetched.reason)

        urls = search_extractor.extract_result_urls(fetched.body, engine)[: self.max_results_per_engine]
        logger.debug(f"{engine} returned {len(urls)} URLs for '{query}'")
        return EngineSearchResult(engine=engine, query=query, urls=urls)

    async def search_multi_lane(
        self,
        queries: list[str],
        *,
        exclude: set[str] | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> HarvestResult:
        """Each query fans out to every engine at once; queries run one after another."""
        harvest = HarvestResult(engine_health={e: EngineHealthEntry(engine=e) for e in self.engines})
        excluded = {canonicalize_url(u) for u in (exclude or set())}

        for query in queries:
            if stop_event is not None and stop_event.is_set():
                harvest.cancelled = True
                break
            harvest.queries_run.append(query)

            outcomes = await asyncio.gather(
                *(self.search_engine(query, engine) for engine in self.engines),
                return_exceptions=True,
            )
            for engine, outcome in zip(self.engines, outcomes):
                health = harvest.engine_health[engine]
                health.attempted += 1
                if isinstance(outcome, Exception):
                    logger.error(f"{engine} lane raised for '{query}': {outcome}")
                    health.failed += 1
                    continue
                if outcome.status == SourceFetchStatus.CIRCUIT_BROKEN:
                    health.skipped += 1
                    continue
                if outcome.status != SourceFetchStatus.SUCCESS:
                    health.failed += 1
                    continue
                health.succeeded += 1
                health.total_results += len(outcome.urls)
                for rank, found in enumerate(outcome.urls):
                    if canonicalize_url(found) in excluded:
                        continue
                    harvest.hits.append(SearchHit(url=found, engine=engine, rank=rank, query=query))

        harvest.urls = merge_hits(harvest.hits, harvest.queries_run)
        return harvest
