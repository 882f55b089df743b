"""Claim extraction, citation labelling and grounding score."""

from __future__ import annotations

import re

from deepcite.models.jobs import Citation, ClaimLedgerEntry, ClaimSupport

MAX_CLAIMS = 20
MIN_CLAIM_LENGTH = 20

CITATION_REF_RE = re.compile(r"\[(\d+)\]")
_LIST_LINE_RE = re.compile(r"^(?:[*\-•+]|\d+[\.\)])(?:\s|$)")


def extract_claims(text: str, max_claims: int = MAX_CLAIMS) -> list[str]:
    """Prose lines worth checking: no headings, no list items, nothing short."""
    claims: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if len(line) <= MIN_CLAIM_LENGTH:
            continue
        if line.startswith("#") or _LIST_LINE_RE.match(line):
            continue
        claims.append(line)
        if len(claims) >= max_claims:
            break
    return claims


def has_citation(claim: str) -> bool:
    return CITATION_REF_RE.search(claim) is not None


def compute_grounding_score(claims: list[str]) -> float:
    """Fraction of claims carrying at least one [n] marker; 0.0 when there are none."""
    if not claims:
        return 0.0
    cited = sum(1 for claim in claims if has_citation(claim))
    return cited / len(claims)


def cited_numbers(text: str) -> list[int]:
    return [int(n) for n in CITATION_REF_RE.findall(text)]


class CitationLedger:
    """Hands out [n] labels for a job, one per source, never renumbering.

    Seeding with earlier citations lets later report sections reuse the labels
    their sources already have.
    """

    def __init__(self, job_id: str, existing: list[Citation] | None = None):
        self.job_id = job_id
        self._by_source: dict[str, Citation] = {}
        self._next = 1
        self._new: list[Citation] = []
        for citation in sorted(existing or [], key=lambda c: c.number):
            self._by_source.setdefault(citation.source_id, citation)
            self._next = max(self._next, citation.number + 1)

    def cite(self, source_id: str, *, chunk_id: str = "", excerpt: str = "") -> Citation:
        citation = self._by_source.get(source_id)
        if citation is not None:
            return citation
        citation = Citation(
            job_id=self.job_id,
            label=f"[{self._next}]",
            source_id=source_id,
            chunk_id=chunk_id,
            excerpt=Citation.truncate_excerpt(excerpt),
        )
        self._next += 1
        self._by_source[source_id] = citation
        self._new.append(citation)
        return citation

    def label_for(self, source_id: str) -> str | None:
        citation = self._by_source.get(source_id)
        return citation.label if citation else None

    @property
    def citations(self) -> list[Citation]:
        return sorted(self._by_source.values(), key=lambda c: c.number)

    def drain_new(self) -> list[Citation]:
        """Citations created since the last drain, for persisting."""
        new, self._new = self._new, []
        return new

    def __len__(self) -> int:
        return len(self._by_source)


def build_claim_ledger(job_id: str, claims: list[str], citations: list[Citation]) -> list[ClaimLedgerEntry]:
    by_number = {c.number: c for c in citations}
    entries: list[ClaimLedgerEntry] = []
    for claim in claims:
        matched = [by_number[n].id for n in dict.fromkeys(cited_numbers(claim)) if n in by_number]
        if has_citation(claim):
            entries.append(
                ClaimLedgerEntry(
                    job_id=job_id,
                    claim=claim,
                    support=ClaimSupport.CITED,
                    citation_ids=matched,
                    explanation=(
                        "Backed by referenced citation"
                        if matched
                        else "Cites a label with no matching source"
                    ),
                )
            )
        else:
            entries.append(
                ClaimLedgerEntry(
                    job_id=job_id,
                    claim=claim,
                    support=ClaimSupport.HYPOTHESIS,
                    explanation="No direct citation found; labeled as hypothesis",
                )
            )
    return entries


def format_sources_index(citations: list[Citation], source_urls: dict[str, str], titles: dict[str, str] | None = None) -> str:
    lines = ["## Source Index", ""]
    for citation in sorted(citations, key=lambda c: c.number):
        url = source_urls.get(citation.source_id, "(no URL)")
        title = (titles or {}).get(citation.source_id)
        lines.append(f"- {citation.label} {title + ' - ' if title else ''}{url}")
        if citation.excerpt:
            lines.append(f"  > {citation.excerpt}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
