from __future__ import annotations

from pydantic import BaseModel, Field

from deepcite.models.jobs import JobState


# --- Requests ---


class JobCreateRequest(BaseModel):
    prompt: str = Field(min_length=3)
    session_id: str = "default"
    target_source_count: int | None = Field(default=None, ge=1, le=100)
    max_iterations: int | None = Field(default=None, ge=1, le=10)


class ContinueRequest(BaseModel):
    additional_sources: int = Field(default=5, ge=1, le=50)


# --- Responses ---


class JobStartResponse(BaseModel):
    job_id: str
    state: JobState


class JobActionResponse(BaseModel):
    job_id: str
    state: JobState
    message: str = ""
