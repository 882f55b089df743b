"""Tests for evidence coverage scoring."""
import pytest

from deepcite.agents.coverage import (
    GAP_DEPTH,
    GAP_DIVERSITY,
    GAP_RELEVANCE,
    GAP_SOURCES,
    CoverageResult,
    evaluate_coverage,
    is_sufficient,
)
from deepcite.models.evidence import Chunk, RetrievalResult


def result(source_id, score, chars):
    chunk = Chunk(id=f"{source_id}:{chars}", source_id=source_id, source_type="snapshot", text="x" * chars)
    return RetrievalResult(chunk=chunk, score=score, source_id=source_id, source_type="snapshot")


class TestEvaluateCoverage:
    def test_no_results(self):
        coverage = evaluate_coverage([], sources_acquired=3, target_sources=5)
        assert coverage.score == 0.0
        assert coverage.gaps == ["no results found"]

    def test_full_coverage(self):
        results = [result(f"s{i}", 1.0, 2000) for i in range(3)]
        coverage = evaluate_coverage(results, sources_acquired=5, target_sources=5)
        assert coverage.score == pytest.approx(1.0)
        assert coverage.gaps == []

    def test_weighted_factors(self):
        # 2 of 4 sources, relevance 0.5, 2 distinct sources, 2500 chars
        results = [result("a", 0.5, 1250), result("b", 0.5, 1250), result("a", 0.5, 0)]
        coverage = evaluate_coverage(results, sources_acquired=2, target_sources=4)
        assert coverage.sources == pytest.approx(0.5)
        assert coverage.relevance == pytest.approx(0.5)
        assert coverage.diversity == pytest.approx(2 / 3)
        assert coverage.volume == pytest.approx(0.5)
        assert coverage.score == pytest.approx(0.15 + 0.15 + 0.2 * 2 / 3 + 0.1)

    def test_all_gaps(self):
        coverage = evaluate_coverage([result("a", 0.1, 100)], sources_acquired=1, target_sources=5)
        assert coverage.gaps == [GAP_SOURCES, GAP_RELEVANCE, GAP_DIVERSITY, GAP_DEPTH]

    def test_relevance_mapping_is_applied(self):
        results = [result(f"s{i}", 0.01, 2000) for i in range(3)]
        coverage = evaluate_coverage(
            results, sources_acquired=3, target_sources=3, relevance=lambda s: s * 100
        )
        assert coverage.relevance == pytest.approx(1.0)
        assert GAP_RELEVANCE not in coverage.gaps


class TestIsSufficient:
    def test_high_score_is_enough(self):
        assert is_sufficient(CoverageResult(score=0.7), sources_acquired=0, target_sources=5)

    def test_acceptable_score_needs_the_source_target(self):
        assert is_sufficient(CoverageResult(score=0.45), sources_acquired=5, target_sources=5)
        assert not is_sufficient(CoverageResult(score=0.45), sources_acquired=4, target_sources=5)

    def test_low_score_is_never_enough(self):
        assert not is_sufficient(CoverageResult(score=0.39), sources_acquired=10, target_sources=5)
