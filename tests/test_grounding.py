"""Tests for claim extraction, citation labels and the grounding score."""
import pytest

from deepcite.models.jobs import Citation, ClaimSupport
from deepcite.services.grounding import (
    MAX_CLAIMS,
    CitationLedger,
    build_claim_ledger,
    compute_grounding_score,
    extract_claims,
    format_sources_index,
    has_citation,
)


class TestGroundingScore:
    def test_fraction_of_cited_claims(self):
        assert compute_grounding_score(["a [1]", "b [2][3]", "c"]) == pytest.approx(2 / 3)

    def test_no_claims_scores_zero(self):
        assert compute_grounding_score([]) == 0.0

    def test_bracketed_text_is_not_a_citation(self):
        assert not has_citation("see [text] for details")
        assert not has_citation("empty []")
        assert has_citation("per the survey [12]")


class TestExtractClaims:
    def test_skips_headings_lists_and_short_lines(self):
        text = "\n".join(
            [
                "# Research Report",
                "## Key Findings",
                "- Perovskite cells passed 25 percent efficiency [1]",
                "* Another bullet that is long enough to count",
                "1. A numbered item that is also long enough",
                "Too short.",
                "Perovskite cells degrade quickly under humid conditions [2].",
                "",
                "Manufacturing cost could undercut silicon within a decade.",
            ]
        )
        assert extract_claims(text) == [
            "Perovskite cells degrade quickly under humid conditions [2].",
            "Manufacturing cost could undercut silicon within a decade.",
        ]

    def test_claims_are_capped(self):
        text = "\n".join(f"Claim number {i} is long enough to be a claim." for i in range(30))
        assert len(extract_claims(text)) == MAX_CLAIMS


class TestCitationLedger:
    def test_labels_are_stable_per_source(self):
        ledger = CitationLedger("job1")
        first = ledger.cite("s1", excerpt="first")
        second = ledger.cite("s2")
        again = ledger.cite("s1", excerpt="ignored")

        assert (first.label, second.label) == ("[1]", "[2]")
        assert again is first
        assert len(ledger) == 2
        assert ledger.label_for("s2") == "[2]"
        assert ledger.label_for("missing") is None

    def test_seeded_ledger_continues_numbering_and_reuses_labels(self):
        existing = [
            Citation(job_id="job1", label="[2]", source_id="s2"),
            Citation(job_id="job1", label="[1]", source_id="s1"),
        ]
        ledger = CitationLedger("job1", existing)

        assert ledger.cite("s2").label == "[2]"
        assert ledger.cite("s3").label == "[3]"
        assert [c.label for c in ledger.drain_new()] == ["[3]"]
        assert ledger.drain_new() == []
        assert [c.label for c in ledger.citations] == ["[1]", "[2]", "[3]"]

    def test_excerpt_is_truncated(self):
        citation = CitationLedger("job1").cite("s1", excerpt="x" * 500)
        assert citation.excerpt == "x" * 400 + "..."


class TestClaimLedger:
    def test_cited_and_hypothesis_entries(self):
        citations = [
            Citation(job_id="job1", label="[1]", source_id="s1"),
            Citation(job_id="job1", label="[2]", source_id="s2"),
        ]
        claims = [
            "Efficiency passed 25 percent [1][2][1].",
            "Costs will fall [9].",
            "Adoption will accelerate next year.",
        ]

        entries = build_claim_ledger("job1", claims, citations)

        assert entries[0].support == ClaimSupport.CITED
        assert entries[0].citation_ids == [citations[0].id, citations[1].id]
        assert entries[1].support == ClaimSupport.CITED
        assert entries[1].citation_ids == []
        assert entries[1].explanation == "Cites a label with no matching source"
        assert entries[2].support == ClaimSupport.HYPOTHESIS
        assert entries[2].citation_ids == []
        assert all(e.job_id == "job1" for e in entries)


def test_format_sources_index():
    citations = [
        Citation(job_id="job1", label="[2]", source_id="s2"),
        Citation(job_id="job1", label="[1]", source_id="s1", excerpt="Quoted passage"),
    ]
    index = format_sources_index(
        citations,
        {"s1": "https://example.org/one", "s2": "https://example.org/two"},
        {"s1": "First Source"},
    )
    lines = index.splitlines()
    assert lines[0] == "## Source Index"
    assert "- [1] First Source - https://example.org/one" in lines
    assert "  > Quoted passage" in lines
    assert "- [2] https://example.org/two" in lines
    assert lines.index("- [1] First Source - https://example.org/one") < lines.index("- [2] https://example.org/two")
