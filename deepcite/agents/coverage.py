"""Deterministic evidence-coverage scoring between harvest iterations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from deepcite.models.evidence import RetrievalResult

SUFFICIENT_SCORE = 0.7
ACCEPTABLE_SCORE = 0.4
DIVERSITY_TARGET = 3
VOLUME_TARGET_CHARS = 5000
RELEVANCE_SAMPLE = 10

# gap thresholds
MIN_RESULTS = 3
LOW_RELEVANCE = 0.5
MIN_DISTINCT_SOURCES = 2
MIN_DEPTH_CHARS = 1000

GAP_SOURCES = "insufficient sources"
GAP_RELEVANCE = "low relevance scores"
GAP_DIVERSITY = "insufficient source diversity"
GAP_DEPTH = "insufficient content depth"


@dataclass(slots=True)
class CoverageResult:
    score: float
    gaps: list[str] = field(default_factory=list)
    sources: float = 0.0
    relevance: float = 0.0
    diversity: float = 0.0
    volume: float = 0.0


def evaluate_coverage(
    results: list[RetrievalResult],
    *,
    sources_acquired: int,
    target_sources: int,
    relevance: Callable[[float], float] = lambda s: s,
) -> CoverageResult:
    """Score 0..1 from four weighted factors.

    Source count 0.3, mean relevance of the top results 0.3, distinct sources
    among the results 0.2, retrieved text volume 0.2. ``relevance`` maps raw
    retrieval scores onto 0..1.
    """
    if not results:
        return CoverageResult(score=0.0, gaps=["no results found"])

    sources = min(1.0, sources_acquired / max(target_sources, 1))
    top = results[:RELEVANCE_SAMPLE]
    mean_relevance = sum(min(1.0, max(0.0, relevance(r.score))) for r in top) / len(top)
    distinct_sources = len({r.source_id for r in results})
    total_chars = sum(len(r.chunk.text) for r in results)
    diversity = min(1.0, distinct_sources / DIVERSITY_TARGET)
    volume = min(1.0, total_chars / VOLUME_TARGET_CHARS)

    gaps: list[str] = []
    if len(results) < MIN_RESULTS:
        gaps.append(GAP_SOURCES)
    if all(relevance(r.score) < LOW_RELEVANCE for r in top):
        gaps.append(GAP_RELEVANCE)
    if distinct_sources < MIN_DISTINCT_SOURCES:
        gaps.append(GAP_DIVERSITY)
    if total_chars < MIN_DEPTH_CHARS:
        gaps.append(GAP_DEPTH)

    return CoverageResult(
        score=sources * 0.3 + mean_relevance * 0.3 + diversity * 0.2 + volume * 0.2,
        gaps=gaps,
        sources=sources,
        relevance=mean_relevance,
        diversity=diversity,
        volume=volume,
    )


def is_sufficient(coverage: CoverageResult, sources_acquired: int, target_sources: int) -> bool:
    if coverage.score >= SUFFICIENT_SCORE:
        return True
    return sources_acquired >= target_sources and coverage.score >= ACCEPTABLE_SCORE
