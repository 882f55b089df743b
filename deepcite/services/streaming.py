from __future__ import annotations

from typing import Any

from deepcite.models.events import EventType, SSEEvent
from deepcite.models.jobs import JobProgress, JobState, ResearchJob


def job_started(job: ResearchJob) -> SSEEvent:
    return SSEEvent(
        event=EventType.JOB_STARTED,
        data={"job_id": job.id, "prompt": job.prompt, "state": job.state.value},
    )


def state_changed(job_id: str, previous: JobState, current: JobState) -> SSEEvent:
    return SSEEvent(
        event=EventType.STATE_CHANGED,
        data={"job_id": job_id, "from": previous.value, "to": current.value},
    )


def plan_created(job: ResearchJob) -> SSEEvent:
    """Queries and sub-questions produced by the planning phase."""
    return SSEEvent(
        event=EventType.PLAN_CREATED,
        data={
            "job_id": job.id,
            "search_queries": list(job.search_queries),
            "sub_questions": list(job.sub_questions),
        },
    )


def search_completed(job_id: str, queries: list[str], urls_found: int, **kwargs: Any) -> SSEEvent:
    return SSEEvent(
        event=EventType.SEARCH_COMPLETED,
        data={"job_id": job_id, "queries": queries, "urls_found": urls_found, **kwargs},
    )


def source_acquired(job_id: str, url: str, title: str, status: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.SOURCE_ACQUIRED,
        data={"job_id": job_id, "url": url, "title": title, "status": status},
    )


def progress(update: JobProgress) -> SSEEvent:
    return SSEEvent(event=EventType.PROGRESS, data=update.model_dump(mode="json"))


def draft_completed(job_id: str, citations: int, unavailable: bool = False) -> SSEEvent:
    return SSEEvent(
        event=EventType.DRAFT_COMPLETED,
        data={"job_id": job_id, "citations": citations, "llm_unavailable": unavailable},
    )


def job_paused(job_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_PAUSED, data={"job_id": job_id})


def job_cancelled(job_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_CANCELLED, data={"job_id": job_id})


def job_completed(job: ResearchJob) -> SSEEvent:
    return SSEEvent(
        event=EventType.JOB_COMPLETED,
        data={
            "job_id": job.id,
            "sources": len(job.acquired_source_ids),
            "coverage_score": job.coverage_score,
            "grounding_score": job.grounding_score,
            "executive_summary": job.executive_summary,
        },
    )


def job_failed(job_id: str, message: str) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_FAILED, data={"job_id": job_id, "message": message})


def error(message: str, job_id: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if job_id is not None:
        data["job_id"] = job_id
    return SSEEvent(event=EventType.ERROR, data=data)
