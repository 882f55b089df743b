from __future__ import annotations

from loguru import logger

from deepcite.config import settings
from deepcite.models.evidence import Chunk, Snapshot
from deepcite.services.embeddings_local import Embedder
from deepcite.services.persistence import JobStore


class IndexService:
    """Splits source text into overlapping word windows, embeds and stores them."""

    def __init__(
        self,
        store: JobStore,
        embedder: Embedder,
        *,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.chunk_size = max(int(chunk_size or settings.chunk_size), 1)
        overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self.chunk_overlap = min(max(int(overlap), 0), self.chunk_size - 1)

    def chunk_text(self, text: str, source_id: str, source_type: str) -> list[Chunk]:
        words = text.split()
        chunks: list[Chunk] = []
        step = self.chunk_size - self.chunk_overlap
        start = 0
        while start < len(words):
            window = words[start : start + self.chunk_size]
            index = len(chunks)
            chunks.append(
                Chunk(
                    id=f"{source_id}:{index:04d}",
                    source_id=source_id,
                    source_type=source_type,
                    text=" ".join(window),
                    chunk_index=index,
                )
            )
            if start + self.chunk_size >= len(words):
                break
            start += step
        return chunks

    async def index_text(self, source_id: str, source_type: str, text: str) -> list[Chunk]:
        """Replace any existing chunks for the source with freshly embedded ones."""
        if not text or not text.strip():
            return []
        drafts = self.chunk_text(text, source_id, source_type)
        vectors = await self.embedder.embed_texts([c.text for c in drafts])
        removed = await self.store.delete_chunks_for_source(source_id)
        if removed:
            logger.debug(f"Superseded {removed} chunks for {source_id}")

        chunks = [
            Chunk(
                id=c.id,
                source_id=c.source_id,
                source_type=c.source_type,
                text=c.text,
                chunk_index=c.chunk_index,
                embedding=vector,
            )
            for c, vector in zip(drafts, vectors)
        ]
        for chunk in chunks:
            await self.store.save_chunk(chunk)
        return chunks

    async def index_snapshot(self, snapshot: Snapshot) -> list[Chunk]:
        if snapshot.is_blocked or not snapshot.text:
            return []
        chunks = await self.index_text(snapshot.id, "snapshot", snapshot.text)
        logger.info(f"Indexed snapshot {snapshot.id}: {len(chunks)} chunks")
        return chunks
