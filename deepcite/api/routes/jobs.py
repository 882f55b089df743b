from __future__ import annotations

import json as _json
from typing import Awaitable, Callable

from fastapi import APIRouter, BackgroundTasks, Depends
from sse_starlette.sse import EventSourceResponse

from deepcite.agents.orchestrator import JobOrchestrator
from deepcite.api.deps import get_orchestrator
from deepcite.config import settings
from deepcite.errors import DeepciteError, InvalidJobStateError, JobAlreadyRunningError
from deepcite.models.events import EventType, SSEEvent
from deepcite.models.jobs import ClaimLedgerEntry, JobState, JobStep, Report, ResearchJob
from deepcite.models.schemas import (
    ContinueRequest,
    JobActionResponse,
    JobCreateRequest,
    JobStartResponse,
)
from deepcite.services import logger as log_service
from deepcite.services import streaming

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

# Events after which a stream has nothing more to say.
STREAM_END_EVENTS = frozenset(
    {EventType.JOB_COMPLETED, EventType.JOB_FAILED, EventType.JOB_CANCELLED, EventType.JOB_PAUSED}
)


async def _run_logged(job_id: str, operation: Callable[[], Awaitable[ResearchJob]]) -> None:
    """Background wrapper: engine errors are logged, the job record carries the outcome."""
    try:
        job = await operation()
        log_service.log_event("job_finished", "Background run finished", job_id=job_id, state=job.state.value)
    except DeepciteError as exc:
        log_service.log_event("job_run_rejected", str(exc), job_id=job_id)


def _final_event(job: ResearchJob) -> SSEEvent:
    if job.state == JobState.COMPLETED:
        return streaming.job_completed(job)
    if job.state == JobState.FAILED:
        return streaming.job_failed(job.id, job.error_message or "Job failed")
    if job.state == JobState.CANCELLED:
        return streaming.job_cancelled(job.id)
    return streaming.job_paused(job.id)


async def _start_pending(orchestrator: JobOrchestrator, job_id: str) -> ResearchJob:
    # re-read: the job may have been cancelled before the task started
    job = await orchestrator.store.get_job(job_id)
    if job is None or job.state != JobState.PENDING:
        state = job.state.value if job else "missing"
        raise InvalidJobStateError(job_id, state, "run")
    return await orchestrator.run(job)


@router.post("", response_model=JobStartResponse, status_code=202)
async def create_job(
    request: JobCreateRequest,
    background: BackgroundTasks,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Create a research job and start it in the background."""
    job = ResearchJob(
        prompt=request.prompt.strip(),
        session_id=request.session_id,
        target_source_count=request.target_source_count or settings.target_source_count,
        max_iterations=request.max_iterations or settings.max_iterations,
    )
    await orchestrator.store.save_job(job)
    log_service.log_event("job_created", "Research job created", job_id=job.id, prompt=job.prompt[:100])
    background.add_task(_run_logged, job.id, lambda: _start_pending(orchestrator, job.id))
    return JobStartResponse(job_id=job.id, state=job.state)


@router.get("", response_model=list[ResearchJob])
async def list_jobs(
    session_id: str | None = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_jobs(session_id)


@router.get("/{job_id}", response_model=ResearchJob)
async def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_job(job_id)


@router.get("/{job_id}/steps", response_model=list[JobStep])
async def get_steps(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    await orchestrator.get_job(job_id)
    return await orchestrator.store.get_job_steps(job_id)


@router.get("/{job_id}/reports", response_model=list[Report])
async def get_reports(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    await orchestrator.get_job(job_id)
    return await orchestrator.store.get_reports(job_id)


@router.get("/{job_id}/claims", response_model=list[ClaimLedgerEntry])
async def get_claims(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    await orchestrator.get_job(job_id)
    return await orchestrator.store.get_claim_ledger(job_id)


@router.post("/{job_id}/pause", response_model=JobActionResponse)
async def pause_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    job = await orchestrator.pause(job_id)
    return JobActionResponse(job_id=job_id, state=job.state, message="Pause requested")


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    job = await orchestrator.cancel(job_id)
    return JobActionResponse(job_id=job_id, state=job.state, message="Cancellation requested")


@router.post("/{job_id}/resume", response_model=JobActionResponse, status_code=202)
async def resume_job(
    job_id: str,
    background: BackgroundTasks,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    job = await orchestrator.get_job(job_id)
    if orchestrator.is_active(job_id) and job.state != JobState.PAUSED:
        raise JobAlreadyRunningError(job_id)
    if job.state != JobState.PAUSED:
        raise InvalidJobStateError(job_id, job.state.value, "resume")
    background.add_task(_run_logged, job_id, lambda: orchestrator.resume(job_id))
    return JobActionResponse(job_id=job_id, state=job.state, message="Resuming from checkpoint")


@router.post("/{job_id}/continue", response_model=JobActionResponse, status_code=202)
async def continue_job(
    job_id: str,
    background: BackgroundTasks,
    request: ContinueRequest | None = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    job = await orchestrator.get_job(job_id)
    if job.state != JobState.COMPLETED:
        raise InvalidJobStateError(job_id, job.state.value, "continue")
    additional = (request or ContinueRequest()).additional_sources
    background.add_task(
        _run_logged, job_id, lambda: orchestrator.continue_research(job_id, additional)
    )
    return JobActionResponse(
        job_id=job_id, state=job.state, message=f"Continuing with {additional} more sources"
    )


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    await orchestrator.delete_job(job_id)


@router.get("/{job_id}/events")
async def stream_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    """SSE endpoint streaming a job's progress events until it stops."""
    job = await orchestrator.get_job(job_id)
    if job.is_terminal or (job.state == JobState.PAUSED and not orchestrator.is_active(job_id)):
        final = _final_event(job)

        async def replay_final():
            yield {"event": final.event.value, "data": _json.dumps(final.data, default=str)}

        return EventSourceResponse(replay_final())

    queue = orchestrator.subscribe(job_id)

    async def event_generator():
        try:
            while True:
                event = await queue.get()
                yield {"event": event.event.value, "data": _json.dumps(event.data, default=str)}
                if event.event in STREAM_END_EVENTS:
                    break
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in job stream",
                error=str(e),
                job_id=job_id,
            )
            error_event = streaming.error("Job stream failed unexpectedly.", job_id)
            yield {"event": error_event.event.value, "data": _json.dumps(error_event.data)}
        finally:
            orchestrator.unsubscribe(job_id, queue)

    return EventSourceResponse(event_generator())
