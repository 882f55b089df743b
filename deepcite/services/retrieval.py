"""Hybrid keyword + semantic retrieval over the chunk store."""

from __future__ import annotations

import re
from collections import defaultdict

from rank_bm25 import BM25Okapi

from deepcite.config import settings
from deepcite.models.evidence import Chunk, RetrievalResult
from deepcite.services.embeddings_local import Embedder, cosine_similarity
from deepcite.services.persistence import JobStore
from deepcite.tools.web_utils import extract_domain

RRF_K = 60
MAX_PER_DOMAIN = 3

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _tie_key(chunk: Chunk) -> tuple[str, str]:
    return chunk.source_id, chunk.id


def keyword_rank(query: str, chunks: list[Chunk]) -> list[tuple[Chunk, float]]:
    """BM25 ranking of chunks sharing at least one query term."""
    terms = set(_tokenize(query))
    if not terms or not chunks:
        return []
    tokenized = [_tokenize(c.text) for c in chunks]
    bm25 = BM25Okapi([tokens or [""] for tokens in tokenized])
    scores = [float(s) for s in bm25.get_scores(list(terms))]
    ranked = [
        (chunk, score)
        for chunk, tokens, score in zip(chunks, tokenized, scores)
        if terms.intersection(tokens)
    ]
    ranked.sort(key=lambda item: (-item[1], *_tie_key(item[0])))
    return ranked


def semantic_rank(query_vector: list[float], chunks: list[Chunk], vectors: list[list[float]]) -> list[tuple[Chunk, float]]:
    ranked = [
        (chunk, cosine_similarity(query_vector, vector))
        for chunk, vector in zip(chunks, vectors)
    ]
    ranked = [item for item in ranked if item[1] > 0]
    ranked.sort(key=lambda item: (-item[1], *_tie_key(item[0])))
    return ranked


def reciprocal_rank_fusion(
    keyword_ranked: list[tuple[Chunk, float]],
    semantic_ranked: list[tuple[Chunk, float]],
    *,
    keyword_weight: float = 0.5,
    semantic_weight: float = 0.5,
    k: int = RRF_K,
) -> list[tuple[Chunk, float]]:
    """Weighted RRF. Equal fused scores fall back to source id, then chunk id."""
    fused: dict[str, float] = defaultdict(float)
    by_id: dict[str, Chunk] = {}
    for weight, ranked in ((keyword_weight, keyword_ranked), (semantic_weight, semantic_ranked)):
        for rank, (chunk, _score) in enumerate(ranked, start=1):
            fused[chunk.id] += weight / (k + rank)
            by_id[chunk.id] = chunk
    merged = [(by_id[cid], score) for cid, score in fused.items()]
    merged.sort(key=lambda item: (-item[1], *_tie_key(item[0])))
    return merged


class RetrievalEngine:
    def __init__(
        self,
        store: JobStore,
        embedder: Embedder,
        *,
        keyword_weight: float | None = None,
        semantic_weight: float | None = None,
        default_top_k: int | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.keyword_weight = settings.keyword_weight if keyword_weight is None else keyword_weight
        self.semantic_weight = settings.semantic_weight if semantic_weight is None else semantic_weight
        self.default_top_k = default_top_k or settings.default_top_k

    def relevance(self, score: float) -> float:
        """Fused score scaled to 0..1, where 1 means ranked first in both lists."""
        best = (self.keyword_weight + self.semantic_weight) / (RRF_K + 1)
        if best <= 0:
            return 0.0
        return min(1.0, score / best)

    async def _candidates(
        self,
        source_types: set[str] | None,
        source_ids: set[str] | None,
    ) -> list[Chunk]:
        chunks = await self.store.get_all_chunks()
        if source_types:
            chunks = [c for c in chunks if c.source_type in source_types]
        if source_ids is not None:
            chunks = [c for c in chunks if c.source_id in source_ids]
        return chunks

    async def _vectors(self, chunks: list[Chunk]) -> list[list[float]]:
        missing = [c.text for c in chunks if not c.embedding or len(c.embedding) != self.embedder.dimension]
        computed = iter(await self.embedder.embed_texts(missing)) if missing else iter(())
        return [
            c.embedding if c.embedding and len(c.embedding) == self.embedder.dimension else next(computed)
            for c in chunks
        ]

    async def keyword_search(self, query: str, *, top_k: int | None = None, source_types: set[str] | None = None) -> list[RetrievalResult]:
        chunks = await self._candidates(source_types, None)
        ranked = keyword_rank(query, chunks)[: top_k or self.default_top_k]
        return [RetrievalResult(c, s, c.source_id, c.source_type) for c, s in ranked]

    async def semantic_search(self, query: str, *, top_k: int | None = None, source_types: set[str] | None = None) -> list[RetrievalResult]:
        chunks = await self._candidates(source_types, None)
        if not chunks:
            return []
        query_vector = await self.embedder.embed_text(query)
        ranked = semantic_rank(query_vector, chunks, await self._vectors(chunks))[: top_k or self.default_top_k]
        return [RetrievalResult(c, s, c.source_id, c.source_type) for c, s in ranked]

    async def hybrid_search(
        self,
        query: str,
        *,
        top_k: int | None = None,
        source_types: set[str] | None = None,
        source_ids: set[str] | None = None,
    ) -> list[RetrievalResult]:
        chunks = await self._candidates(source_types, source_ids)
        if not chunks or not query.strip():
            return []

        query_vector = await self.embedder.embed_text(query)
        keyword_ranked = keyword_rank(query, chunks)
        semantic_ranked = semantic_rank(query_vector, chunks, await self._vectors(chunks))
        fused = reciprocal_rank_fusion(
            keyword_ranked,
            semantic_ranked,
            keyword_weight=self.keyword_weight,
            semantic_weight=self.semantic_weight,
        )
        limit = top_k or self.default_top_k
        return [
            RetrievalResult(chunk=c, score=score, source_id=c.source_id, source_type=c.source_type)
            for c, score in fused[:limit]
        ]


def source_domain(source_id: str, source_urls: dict[str, str] | None = None) -> str:
    url = (source_urls or {}).get(source_id)
    if url:
        domain = extract_domain(url)
        if domain:
            return domain
    if source_id.startswith(("http://", "https://")):
        return extract_domain(source_id) or source_id
    # No URL known: the id stands in for its own domain.
    return source_id


def deduplicate_evidence_by_source(
    results: list[RetrievalResult],
    source_urls: dict[str, str] | None = None,
    *,
    max_per_domain: int = MAX_PER_DOMAIN,
) -> list[RetrievalResult]:
    """Up to ``max_per_domain`` results per domain first, overflow after, rank order kept."""
    counts: dict[str, int] = defaultdict(int)
    primary: list[RetrievalResult] = []
    overflow: list[RetrievalResult] = []
    for result in results:
        domain = source_domain(result.source_id, source_urls)
        counts[domain] += 1
        (primary if counts[domain] <= max_per_domain else overflow).append(result)
    return primary + overflow
