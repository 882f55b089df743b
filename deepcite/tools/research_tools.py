"""Tools the model may call while drafting a report."""

from __future__ import annotations

import re
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from deepcite.llm.providers import ToolCall
from deepcite.models.evidence import Snapshot
from deepcite.models.jobs import Citation
from deepcite.services.persistence import JobStore
from deepcite.services.retrieval import RetrievalEngine

SOURCE_TEXT_LIMIT = 3000
SUPPORTED_THRESHOLD = 0.1

WebSearch = Callable[[str], Awaitable[list[Snapshot]]]


def _function(name: str, description: str, param: str, param_description: str) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {param: {"type": "string", "description": param_description}},
                "required": [param],
            },
        },
    }


RESEARCH_TOOLS: list[dict[str, Any]] = [
    _function(
        "search_evidence",
        "Search the locally indexed evidence chunks using hybrid keyword + semantic search. "
        "Use this to find specific facts, statistics, or claims from already-acquired sources.",
        "query",
        "The search query to find relevant evidence chunks",
    ),
    _function(
        "search_web",
        "Trigger a new web search and fetch cycle to acquire additional sources. "
        "Use this when the existing evidence is insufficient to answer a specific aspect of the research question.",
        "query",
        "The web search query to find new sources",
    ),
    _function(
        "get_source",
        "Retrieve the full text content of a specific source by its citation label (e.g. '[1]', '[3]'). "
        "Use this to read more context from a source that was only partially shown in evidence chunks.",
        "citation_label",
        "The citation label like '[1]' or '1'",
    ),
    _function(
        "verify_claim",
        "Check whether a specific claim is supported by the indexed evidence. "
        "Returns matching evidence chunks with relevance scores. Use this to verify factual accuracy.",
        "claim",
        "The factual claim to verify against indexed evidence",
    ),
]


def _clip(text: str, limit: int, suffix: str = "...") -> str:
    return text if len(text) <= limit else text[:limit] + suffix


class ResearchToolbox:
    """Executes tool calls against one job's evidence.

    ``citations`` holds the labels the model was shown; ``get_source`` resolves
    ``[n]`` through them to the underlying snapshot.
    """

    def __init__(
        self,
        *,
        prompt: str,
        retrieval: RetrievalEngine,
        store: JobStore,
        citations: list[Citation],
        source_urls: dict[str, str],
        source_ids: set[str],
        web_search: Optional[WebSearch] = None,
    ):
        self.prompt = prompt
        self.retrieval = retrieval
        self.store = store
        self.citations = citations
        self.source_urls = source_urls
        self.source_ids = source_ids
        self.web_search = web_search

    async def __call__(self, call: ToolCall) -> str:
        args = call.arguments
        logger.debug(f"Tool call {call.name} args={args}")
        if call.name == "search_evidence":
            return await self.search_evidence(str(args.get("query") or self.prompt))
        if call.name == "search_web":
            return await self.search_web(str(args.get("query") or self.prompt))
        if call.name == "get_source":
            return await self.get_source(str(args.get("citation_label") or "[1]"))
        if call.name == "verify_claim":
            return await self.verify_claim(str(args.get("claim") or ""))
        return f"Unknown tool: {call.name}"

    def _url(self, source_id: str) -> str:
        return self.source_urls.get(source_id, source_id)

    async def search_evidence(self, query: str) -> str:
        results = await self.retrieval.hybrid_search(query, top_k=8, source_ids=set(self.source_ids))
        if not results:
            return "No relevant evidence found for this query."
        lines = []
        for r in results:
            lines.append(f"[Score: {self.retrieval.relevance(r.score):.2f}] (Source: {self._url(r.source_id)})")
            lines.append(_clip(r.chunk.text, 600))
            lines.append("")
        return "\n".join(lines)

    async def search_web(self, query: str) -> str:
        if self.web_search is None:
            return "Web search is not available in this phase."
        snapshots = await self.web_search(query)
        if not snapshots:
            return "No new sources could be fetched for this query."

        for snapshot in snapshots:
            self.source_ids.add(snapshot.id)
            self.source_urls[snapshot.id] = snapshot.url

        fetched = [f"- {s.title or s.url} ({s.url})" for s in snapshots]
        new_ids = {s.id for s in snapshots}
        results = await self.retrieval.hybrid_search(query, top_k=5, source_ids=new_ids)
        lines = [f"Fetched {len(snapshots)} new source(s):", *fetched, "", "Relevant extracts from new sources:"]
        for r in results:
            lines.append(_clip(r.chunk.text, 400))
            lines.append("")
        return "\n".join(lines)

    async def get_source(self, label: str) -> str:
        digits = re.sub(r"\D", "", label)
        number = int(digits) if digits else 0
        by_number = {c.number: c for c in self.citations}
        if number not in by_number:
            highest = max(by_number, default=0)
            return f"Citation {label} not found. Available: [1] through [{highest}]."

        snapshot = await self.store.get_snapshot(by_number[number].source_id)
        if snapshot is None:
            return f"Source for {label} not found."
        content = snapshot.text or "No text content available."
        return "\n".join(
            [
                f"Full source {label}: {snapshot.title or 'Untitled'}",
                f"URL: {snapshot.url or 'N/A'}",
                "",
                _clip(content, SOURCE_TEXT_LIMIT, "...[truncated]"),
            ]
        )

    async def verify_claim(self, claim: str) -> str:
        if not claim.strip():
            return "No claim provided to verify."
        results = await self.retrieval.hybrid_search(claim, top_k=5, source_ids=set(self.source_ids))
        if not results:
            return "UNVERIFIED: No evidence found supporting or refuting this claim."

        top = self.retrieval.relevance(results[0].score)
        verdict = "SUPPORTED" if top > SUPPORTED_THRESHOLD else "WEAKLY SUPPORTED"
        lines = [
            f'Claim: "{claim}"',
            f"Verdict: {verdict} (top relevance score: {top:.2f})",
            f"Supporting evidence ({len(results)} matches):",
        ]
        for r in results[:3]:
            lines.append(
                f"  [{self.retrieval.relevance(r.score):.2f}] {r.chunk.text[:200]}... (Source: {self._url(r.source_id)})"
            )
        return "\n".join(lines)
