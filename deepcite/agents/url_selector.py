"""Keyword relevance filtering for harvested URLs."""

from __future__ import annotations

import re
from urllib.parse import urlparse

MAX_EXPLORATORY = 5
MIN_KEPT = 10
RELAXED_LIMIT = 15

TOKEN_SPLIT_RE = re.compile(r"[\s\-_/\.\,\;\:\!\?\(\)\[\]\"\'\+\=\&\#]+")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "shall", "can", "need", "must", "what",
        "how", "why", "when", "where", "which", "who", "whom", "this", "that",
        "these", "those", "for", "from", "with", "about", "into", "through",
        "and", "but", "or", "not", "nor", "so", "yet", "both", "either",
        "each", "every", "all", "any", "few", "more", "most", "other",
        "some", "such", "than", "too", "very", "just", "also", "only",
        "of", "in", "on", "at", "to", "by", "as", "it", "its",
    }
)

_SUFFIXES = ("ations", "ation", "ings", "ing", "ies", "es", "ed", "s")


def tokenize_for_relevance(text: str) -> list[str]:
    return [w for w in TOKEN_SPLIT_RE.split(text.lower()) if len(w) >= 3]


def _stem(word: str) -> str:
    for suffix in _SUFFIXES:
        if word.endswith(suffix) and len(word) - len(suffix) >= 4:
            return word[: -len(suffix)]
    return word


def generate_alternate_phrasings(prompt: str) -> list[str]:
    """A few cheap rewrites of the prompt that match how URLs spell things."""
    words = [w for w in tokenize_for_relevance(prompt) if w not in STOP_WORDS]
    if not words:
        return []
    phrasings = [" ".join(words)]
    stemmed = [_stem(w) for w in words]
    if stemmed != words:
        phrasings.append(" ".join(stemmed))
    joined = [a + b for a, b in zip(words, words[1:])]
    if joined:
        phrasings.append(" ".join(joined))
    return phrasings


def build_keywords(prompt: str, queries: list[str]) -> set[str]:
    keywords: set[str] = set()
    for text in [prompt, *queries, *generate_alternate_phrasings(prompt)]:
        keywords.update(tokenize_for_relevance(text))
    return keywords - STOP_WORDS


def score_url(url: str, keywords: set[str]) -> float:
    try:
        parsed = urlparse(url)
    except ValueError:
        return 0.0
    url_words = tokenize_for_relevance(f"{parsed.hostname or ''} {parsed.path}")
    if not url_words or not keywords:
        return 0.0
    matches = sum(1 for w in url_words if any(k in w or w in k for k in keywords))
    return matches / max(3, len(keywords))


def score_and_filter_urls(urls: list[str], prompt: str, queries: list[str]) -> list[str]:
    """Relevant URLs by descending score, then up to five unscored ones for discovery.

    When filtering leaves fewer than ``MIN_KEPT`` URLs out of a large enough
    batch, the first ``max(kept, RELAXED_LIMIT)`` input URLs are returned
    unranked so discovery does not starve.
    """
    keywords = build_keywords(prompt, queries)
    if not keywords:
        return list(urls)

    scored = [(url, score_url(url, keywords)) for url in urls]
    scored.sort(key=lambda item: item[1], reverse=True)
    relevant = [url for url, score in scored if score > 0]
    exploratory = [url for url, score in scored if score == 0][:MAX_EXPLORATORY]
    kept = relevant + exploratory
    if len(kept) < MIN_KEPT and len(urls) >= MIN_KEPT:
        return list(urls[: max(len(kept), RELAXED_LIMIT)])
    return kept
