from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from deepcite.models.jobs import SourceFetchStatus, new_id

SourceType = Literal["snapshot", "report", "code", "artifact"]


@dataclass(frozen=True, slots=True)
class Chunk:
    """Indexed unit of text. Replaced wholesale, never edited."""

    id: str
    source_id: str
    source_type: str
    text: str
    chunk_index: int = 0
    embedding: list[float] | None = None


@dataclass(slots=True)
class RetrievalResult:
    chunk: Chunk
    score: float
    source_id: str
    source_type: str


@dataclass(slots=True)
class Snapshot:
    url: str
    canonical_url: str
    title: str = ""
    text: str = ""
    http_status: int = 0
    status: SourceFetchStatus = SourceFetchStatus.SUCCESS
    block_reason: str | None = None
    content_hash: str = ""
    id: str = field(default_factory=new_id)
    captured_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_blocked(self) -> bool:
        return self.status != SourceFetchStatus.SUCCESS


@dataclass(slots=True)
class SearchHit:
    url: str
    engine: str
    rank: int
    query: str = ""
