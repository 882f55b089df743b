"""Turn free-form plan text into clean search-engine queries."""

from __future__ import annotations

import re

MAX_QUERY_LENGTH = 120
MIN_QUERY_LENGTH = 6

# "1. foo", "1) foo", "1: foo", "1- foo"
QUERY_LINE_RE = re.compile(r"^\s*\d+[\.\)\:\-]\s*(.+)")
BOOLEAN_OPERATOR_RE = re.compile(r"\b(?:AND|OR|NOT)\b", re.IGNORECASE)

FALLBACK_SUFFIXES = (
    "authoritative sources",
    "research findings",
    "analysis comparison",
    "recent developments",
    "expert review",
)


def _strip_operators(query: str) -> str:
    query = BOOLEAN_OPERATOR_RE.sub(" ", query)
    return re.sub(r"\s+", " ", query).strip()


def clean_search_query(query: str) -> str:
    """Make an LLM-written query palatable to consumer search engines.

    Drops boolean operators in any casing, parentheses and runs of quotes,
    collapses whitespace and caps the length at 120 characters.
    """
    query = query.replace("(", " ").replace(")", " ")
    if query.count('"') > 2:
        query = query.replace('"', "")
    query = _strip_operators(query)
    if len(query) > MAX_QUERY_LENGTH:
        # Cutting can leave a fragment like "or" from "organic" at the end.
        query = _strip_operators(query[:MAX_QUERY_LENGTH])
    return query


def _strip_line(text: str) -> str:
    return text.strip().strip("*").strip().strip('"').strip()


def extract_numbered_lines(text: str) -> list[str]:
    """Cleaned queries from enumerated lines, without any fallback."""
    queries: list[str] = []
    for line in text.splitlines():
        match = QUERY_LINE_RE.match(line)
        if not match:
            continue
        query = clean_search_query(_strip_line(match.group(1)))
        if len(query) >= MIN_QUERY_LENGTH:
            queries.append(query)
    return queries


def fallback_queries(prompt: str) -> list[str]:
    return [f"{prompt} {suffix}" for suffix in FALLBACK_SUFFIXES]


def extract_queries(plan_text: str, prompt: str) -> list[str]:
    """Queries from a numbered plan, or five generated ones if none parse."""
    queries = extract_numbered_lines(plan_text or "")
    if not queries:
        return fallback_queries(prompt)
    return queries


def gap_queries(prompt: str, gaps: list[str], limit: int = 5) -> list[str]:
    """Follow-up queries aimed at coverage gaps."""
    return [clean_search_query(f"{prompt} {gap}") for gap in gaps[:limit]]
