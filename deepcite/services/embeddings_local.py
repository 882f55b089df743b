from __future__ import annotations

import asyncio
import hashlib
import math
import re
import time
from typing import Any, Protocol

from loguru import logger

from deepcite.config import settings

_WORD_RE = re.compile(r"[a-z0-9]+")


class Embedder(Protocol):
    @property
    def dimension(self) -> int: ...
    async def embed_texts(self, texts: list[str]) -> list[list[float]]: ...
    async def embed_text(self, text: str) -> list[float]: ...


class LocalEmbeddingService:
    """Local embeddings with a hashed bag-of-words vector when no model is available.

    The dimension is fixed per instance so vectors from one session always compare.
    """

    def __init__(
        self,
        model_name: str | None = None,
        batch_size: int | None = None,
        backend: str | None = None,
        dimension: int | None = None,
    ):
        self.model_name = model_name or settings.local_embed_model
        self.batch_size = batch_size or int(settings.local_embed_batch_size)
        self.backend = (backend or settings.embedding_backend).lower().strip()
        self._dimension = dimension or int(settings.embedding_dim)
        self._model: Any | None = None
        self._load_attempted = self.backend != "sentence_transformers"
        self._lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with self._lock:
            if not self._load_attempted:
                await asyncio.to_thread(self._load_model)
                self._load_attempted = True
        return await asyncio.to_thread(self._embed_sync, texts)

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        return vectors[0]

    def _load_model(self) -> None:
        from sentence_transformers import SentenceTransformer

        try:
            model = SentenceTransformer(self.model_name)
        except (OSError, ValueError) as exc:
            logger.warning(f"Embedding model {self.model_name} unavailable, using hashed vectors: {exc}")
            return
        dim = model.get_sentence_embedding_dimension()
        if dim and dim != self._dimension:
            logger.info(f"Embedding dimension set to {dim} by {self.model_name}")
            self._dimension = int(dim)
        self._model = model

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        if self._model is None:
            return [hashed_embedding(text, self._dimension) for text in texts]

        retries = 3
        for attempt in range(retries):
            try:
                vectors = self._model.encode(
                    texts,
                    batch_size=self.batch_size,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
                return [list(map(float, row)) for row in vectors]
            except RuntimeError as exc:
                if attempt == retries - 1:
                    logger.error(f"Embedding failed after {retries} attempts: {exc}")
                    break
                time.sleep(0.2 * (attempt + 1))
        return [hashed_embedding(text, self._dimension) for text in texts]


def hashed_embedding(text: str, dim: int = 384) -> list[float]:
    """Signed feature hashing of lowercase word tokens, L2-normalized."""
    values = [0.0] * dim
    for token in _WORD_RE.findall(text.lower()):
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % dim
        values[index] += 1.0 if digest[4] & 1 else -1.0
    norm = math.sqrt(sum(v * v for v in values))
    if norm <= 0:
        return values
    return [v / norm for v in values]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
