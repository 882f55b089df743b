from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return uuid4().hex[:12]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    SEARCHING = "searching"
    ACQUIRING = "acquiring"
    EXTRACTING = "extracting"
    EVALUATING = "evaluating"
    DRAFTING = "drafting"
    VALIDATING = "validating"
    REPORTING = "reporting"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Forward-only phase order; PAUSED and CANCELLED sit outside it.
PHASE_ORDER: tuple[JobState, ...] = (
    JobState.PENDING,
    JobState.PLANNING,
    JobState.SEARCHING,
    JobState.ACQUIRING,
    JobState.EXTRACTING,
    JobState.EVALUATING,
    JobState.DRAFTING,
    JobState.VALIDATING,
    JobState.REPORTING,
    JobState.COMPLETED,
)

TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})
IN_PROGRESS_STATES = frozenset(PHASE_ORDER[1:-1])


class JobType(str, Enum):
    RESEARCH = "research"


class SourceFetchStatus(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    PAYWALL = "paywall"
    ERROR = "error"
    CIRCUIT_BROKEN = "circuit_broken"


class JobStep(BaseModel):
    """One audit-trail entry. Steps are appended and never edited."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    job_id: str
    step_number: int
    action: str
    detail: str = ""
    state_after: JobState
    timestamp: datetime = Field(default_factory=utc_now)
    success: bool = True
    error: Optional[str] = None


class ReplayEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    order: int
    title: str
    description: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class SourceHealthEntry(BaseModel):
    url: str
    title: str = ""
    status: SourceFetchStatus
    http_status: int = 0
    reason: Optional[str] = None


class EngineHealthEntry(BaseModel):
    engine: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total_results: int = 0


class JobCheckpoint(BaseModel):
    """Everything needed to pick a job back up after a pause or crash."""

    phase: Optional[JobState] = None  # last phase that finished
    iteration: int = 0
    pending_queries: list[str] = []
    searched_queries: list[str] = []
    seen_urls: list[str] = []
    unindexed_source_ids: list[str] = []
    coverage_score: float = 0.0
    coverage_gaps: list[str] = []
    harvest_complete: bool = False
    draft: str = ""
    synthesis_failed: bool = False
    citation_ids: list[str] = []


class ResearchJob(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str = "default"
    job_type: JobType = JobType.RESEARCH
    state: JobState = JobState.PENDING
    prompt: str
    plan: str = ""
    search_queries: list[str] = []
    sub_questions: list[str] = []
    acquired_source_ids: list[str] = []
    target_source_count: int = 5
    max_iterations: int = 3
    current_iteration: int = 0
    coverage_score: float = 0.0
    grounding_score: Optional[float] = None
    steps: list[JobStep] = []
    replay_entries: list[ReplayEntry] = []
    source_health: list[SourceHealthEntry] = []
    engine_health: list[EngineHealthEntry] = []
    checkpoint: JobCheckpoint = Field(default_factory=JobCheckpoint)
    full_report: Optional[str] = None
    executive_summary: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> "ResearchJob":
        """Detached copy for observers."""
        return self.model_copy(deep=True)


class Citation(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    label: str  # "[n]"
    source_id: str
    chunk_id: str = ""
    excerpt: str = ""

    @staticmethod
    def truncate_excerpt(text: str, limit: int = 400) -> str:
        if len(text) <= limit:
            return text
        return text[:limit] + "..."

    @property
    def number(self) -> int:
        return int(self.label.strip("[]"))


class ClaimSupport(str, Enum):
    CITED = "cited"
    HYPOTHESIS = "hypothesis"


class ClaimLedgerEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    claim: str
    support: ClaimSupport
    citation_ids: list[str] = []
    explanation: Optional[str] = None


class ReportType(str, Enum):
    FULL = "full"
    EXECUTIVE = "executive"
    ACTIVITY = "activity"


class Report(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    title: str
    content: str
    report_type: ReportType = ReportType.FULL
    created_at: datetime = Field(default_factory=utc_now)


class JobProgress(BaseModel):
    """Immutable progress snapshot handed to observers."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    state: JobState
    description: str = ""
    sources_found: int = 0
    sources_failed: int = 0
    sources_blocked: int = 0
    target_sources: int = 0
    coverage_score: float = 0.0
    iteration: int = 0
    max_iterations: int = 0
    grounding_score: Optional[float] = None
    source_health: list[SourceHealthEntry] = []
    engine_health: list[EngineHealthEntry] = []
