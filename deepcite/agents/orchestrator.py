from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from deepcite.agents.coverage import evaluate_coverage, is_sufficient
from deepcite.agents.query_planner import (
    clean_search_query,
    extract_numbered_lines,
    extract_queries,
    fallback_queries,
    gap_queries,
)
from deepcite.agents.url_selector import score_and_filter_urls
from deepcite.config import settings
from deepcite.errors import InvalidJobStateError, JobAlreadyRunningError, JobNotFoundError
from deepcite.llm.router import LlmRouter, is_unavailable
from deepcite.models.events import SSEEvent
from deepcite.models.evidence import RetrievalResult, Snapshot
from deepcite.models.jobs import (
    IN_PROGRESS_STATES,
    PHASE_ORDER,
    ClaimSupport,
    EngineHealthEntry,
    JobProgress,
    JobState,
    JobStep,
    ReplayEntry,
    Report,
    ReportType,
    ResearchJob,
    SourceFetchStatus,
    SourceHealthEntry,
    utc_now,
)
from deepcite.services import logger as log_service
from deepcite.services import streaming
from deepcite.services.acquisition import SourceAcquirer
from deepcite.services.grounding import (
    CitationLedger,
    build_claim_ledger,
    compute_grounding_score,
    extract_claims,
    format_sources_index,
)
from deepcite.services.indexing import IndexService
from deepcite.services.persistence import JobStore
from deepcite.services.prompt_store import get_prompt, render_prompt
from deepcite.services.retrieval import RetrievalEngine, deduplicate_evidence_by_source
from deepcite.services.search_harvester import SearchHarvester
from deepcite.tools.research_tools import RESEARCH_TOOLS, ResearchToolbox
from deepcite.tools.web_utils import canonicalize_url

MAX_PLAN_QUERIES = 5
MAX_SUB_QUESTIONS = 3
MAX_URLS_PER_ITERATION = 20
COVERAGE_TOP_K = 10
DRAFT_TOP_K = 30
MAX_EVIDENCE = 20
SECTION_EVIDENCE = 12
WEB_SEARCH_FETCH_LIMIT = 3
SUMMARY_CHAR_LIMIT = 1500

FAILED_FETCH = frozenset({SourceFetchStatus.ERROR, SourceFetchStatus.TIMEOUT})
BLOCKED_FETCH = frozenset(
    {SourceFetchStatus.BLOCKED, SourceFetchStatus.PAYWALL, SourceFetchStatus.CIRCUIT_BROKEN}
)

# (heading, instruction key); Limitations runs last so it can read the rest.
REPORT_SECTIONS = (
    ("Key Findings", "sections.key_findings"),
    ("Analysis", "sections.analysis"),
    ("Limitations", "sections.limitations"),
)

Observer = Callable[[SSEEvent], Any]


class JobInterrupted(Exception):
    """Raised inside a run once pause or cancel has been requested."""


@dataclass
class _ActiveRun:
    job: ResearchJob
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    stop_state: Optional[JobState] = None
    task: Optional[asyncio.Task] = None


def _phase_index(phase: Optional[JobState]) -> int:
    if phase is None:
        return 0
    return PHASE_ORDER.index(phase)


def _short_title(prompt: str, limit: int = 60) -> str:
    prompt = " ".join(prompt.split())
    return prompt if len(prompt) <= limit else prompt[:limit].rstrip() + "..."


def first_paragraph_block(text: str, limit: int = SUMMARY_CHAR_LIMIT) -> str:
    """First block of prose in ``text``, skipping headings and rules."""
    for block in text.split("\n\n"):
        lines = [
            line
            for line in block.strip().splitlines()
            if line.strip() and not line.lstrip().startswith("#") and line.strip() != "---"
        ]
        if lines:
            paragraph = "\n".join(lines).strip()
            return paragraph if len(paragraph) <= limit else paragraph[:limit].rstrip() + "..."
    return ""


class JobOrchestrator:
    """Drives research jobs through planning, harvesting, drafting and reporting.

    Flow:
      1. Plan search queries and sub-questions via the LLM router
      2. Harvest: search, acquire, index and score coverage until sufficient
         or out of iterations
      3. Draft a cited report from the best evidence
      4. Validate claims against citations
      5. Write the full, executive and activity reports

    Every phase boundary persists the job and its checkpoint, so a paused job
    is resumed purely from the store. Progress is published to observers and
    per-job subscriber queues.
    """

    def __init__(
        self,
        store: JobStore,
        llm: LlmRouter,
        harvester: SearchHarvester,
        acquirer: SourceAcquirer,
        indexer: IndexService,
        retrieval: RetrievalEngine,
        *,
        max_parallel_acquire: int | None = None,
        sectional_reports: bool | None = None,
    ):
        self.store = store
        self.llm = llm
        self.harvester = harvester
        self.acquirer = acquirer
        self.indexer = indexer
        self.retrieval = retrieval
        self.max_parallel_acquire = max(int(max_parallel_acquire or settings.max_parallel_acquire), 1)
        self.sectional_reports = (
            settings.sectional_reports if sectional_reports is None else sectional_reports
        )
        self._observers: list[Observer] = []
        self._subscribers: dict[str, list[asyncio.Queue[SSEEvent]]] = {}
        self._active: dict[str, _ActiveRun] = {}
        self._lock = asyncio.Lock()

    # -- observers -----------------------------------------------------

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def subscribe(self, job_id: str) -> asyncio.Queue[SSEEvent]:
        queue: asyncio.Queue[SSEEvent] = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[SSEEvent]) -> None:
        queues = self._subscribers.get(job_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    async def _emit(self, job_id: str, event: SSEEvent) -> None:
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"Observer failed on {event.event.value}: {exc}")
        for queue in self._subscribers.get(job_id, []):
            queue.put_nowait(event)

    # -- bookkeeping ---------------------------------------------------

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def _check_stop(self, run: _ActiveRun) -> None:
        if run.stop_event.is_set():
            raise JobInterrupted(run.job.id)

    async def _add_step(
        self,
        job: ResearchJob,
        action: str,
        detail: str = "",
        *,
        success: bool = True,
        error: Optional[str] = None,
    ) -> JobStep:
        step = JobStep(
            job_id=job.id,
            step_number=len(job.steps) + 1,
            action=action,
            detail=detail,
            state_after=job.state,
            success=success,
            error=error,
        )
        job.steps.append(step)
        job.updated_at = step.timestamp
        await self.store.save_job_step(step)
        log_service.log_job_step(job.id, action, job.state.value, success=success, detail=error or detail)
        return step

    def _add_replay(self, job: ResearchJob, title: str, description: str = "") -> None:
        job.replay_entries.append(
            ReplayEntry(order=len(job.replay_entries) + 1, title=title, description=description)
        )

    async def _transition(self, run: _ActiveRun, state: JobState, action: str, detail: str = "") -> None:
        self._check_stop(run)
        job = run.job
        previous = job.state
        job.state = state
        await self._add_step(job, action, detail)
        await self.store.save_job(job)
        await self._emit(job.id, streaming.state_changed(job.id, previous, state))

    async def _complete_phase(self, run: _ActiveRun, phase: JobState) -> None:
        run.job.checkpoint.phase = phase
        run.job.updated_at = utc_now()
        await self.store.save_job(run.job)
        await self._emit_progress(run, f"{phase.value.capitalize()} complete")

    async def _emit_progress(self, run: _ActiveRun, description: str) -> None:
        job = run.job
        update = JobProgress(
            job_id=job.id,
            state=job.state,
            description=description,
            sources_found=len(job.acquired_source_ids),
            sources_failed=sum(1 for h in job.source_health if h.status in FAILED_FETCH),
            sources_blocked=sum(1 for h in job.source_health if h.status in BLOCKED_FETCH),
            target_sources=job.target_source_count,
            coverage_score=job.coverage_score,
            iteration=job.current_iteration,
            max_iterations=job.max_iterations,
            grounding_score=job.grounding_score,
            source_health=list(job.source_health),
            engine_health=list(job.engine_health),
        )
        await self._emit(job.id, streaming.progress(update))

    @staticmethod
    def _merge_engine_health(job: ResearchJob, health: dict[str, EngineHealthEntry]) -> None:
        existing = {entry.engine: entry for entry in job.engine_health}
        for engine, entry in health.items():
            current = existing.get(engine)
            if current is None:
                current = EngineHealthEntry(engine=engine)
                job.engine_health.append(current)
                existing[engine] = current
            current.attempted += entry.attempted
            current.succeeded += entry.succeeded
            current.failed += entry.failed
            current.skipped += entry.skipped
            current.total_results += entry.total_results

    # -- public operations ---------------------------------------------

    async def get_job(self, job_id: str) -> ResearchJob:
        run = self._active.get(job_id)
        if run is not None:
            return run.job.snapshot()
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, session_id: str | None = None) -> list[ResearchJob]:
        jobs = await self.store.list_jobs(session_id)
        return [self._active[j.id].job.snapshot() if j.id in self._active else j for j in jobs]

    async def run(self, job: ResearchJob) -> ResearchJob:
        """Execute a pending job to completion, pause, cancellation or failure."""
        if job.state != JobState.PENDING:
            raise InvalidJobStateError(job.id, job.state.value, "run")
        await self.store.save_job(job)
        return await self._run(job)

    async def pause(self, job_id: str) -> ResearchJob:
        return await self._interrupt(job_id, JobState.PAUSED, "Paused", "Pause requested")

    async def cancel(self, job_id: str) -> ResearchJob:
        return await self._interrupt(job_id, JobState.CANCELLED, "Cancelled", "Cancellation requested")

    async def _interrupt(self, job_id: str, state: JobState, action: str, detail: str) -> ResearchJob:
        """Stop a job at its next safe boundary.

        For an active run this waits until the run has stopped and persisted,
        unless called from inside that run (an observer), where waiting would
        block the run itself.
        """
        operation = "pause" if state == JobState.PAUSED else "cancel"
        async with self._lock:
            run = self._active.get(job_id)
            if run is not None and run.stop_state is None:
                run.stop_state = state
                run.job.state = state
                await self._add_step(run.job, action, detail)
                run.stop_event.set()
                logger.info(f"Job {job_id}: {operation} signalled to active run")
            elif run is not None:
                # already stopping; cancel may still override a pending pause
                if state == JobState.CANCELLED and run.stop_state == JobState.PAUSED:
                    run.stop_state = state
                    run.job.state = state
                    await self._add_step(run.job, action, detail)
        if run is not None:
            if run.task is not asyncio.current_task():
                await run.done.wait()
            return run.job.snapshot()

        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.state == state:
            return job
        allowed = IN_PROGRESS_STATES | {JobState.PENDING}
        if state == JobState.CANCELLED:
            allowed = allowed | {JobState.PAUSED}
        if job.state not in allowed:
            raise InvalidJobStateError(job_id, job.state.value, operation)
        job.state = state
        await self._add_step(job, action, detail)
        await self.store.save_job(job)
        event = streaming.job_paused(job_id) if state == JobState.PAUSED else streaming.job_cancelled(job_id)
        await self._emit(job_id, event)
        return job

    async def resume(self, job_id: str) -> ResearchJob:
        """Continue a paused job from its persisted checkpoint."""
        run = self._active.get(job_id)
        if run is not None:
            if run.stop_state != JobState.PAUSED:
                raise JobAlreadyRunningError(job_id)
            # let the paused run finish persisting before reloading
            await run.done.wait()

        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.state != JobState.PAUSED:
            raise InvalidJobStateError(job_id, job.state.value, "resume")
        phase = job.checkpoint.phase.value if job.checkpoint.phase else "start"
        await self._add_step(job, "Resumed", f"Resuming after phase: {phase}")
        self._add_replay(job, "Research Resumed", f"Continuing from checkpoint after {phase}")
        return await self._run(job)

    async def continue_research(self, job_id: str, additional_sources: int = 5) -> ResearchJob:
        """Gather more sources for a completed job and rewrite its reports."""
        if job_id in self._active:
            raise JobAlreadyRunningError(job_id)
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.state != JobState.COMPLETED:
            raise InvalidJobStateError(job_id, job.state.value, "continue")

        additional = max(int(additional_sources), 1)
        job.target_source_count += additional
        checkpoint = job.checkpoint
        checkpoint.phase = JobState.PLANNING
        checkpoint.iteration = 0
        checkpoint.harvest_complete = False
        checkpoint.pending_queries = list(job.search_queries)
        checkpoint.searched_queries = []
        checkpoint.draft = ""
        checkpoint.synthesis_failed = False
        job.error_message = None
        await self._add_step(
            job,
            "ContinueResearch",
            f"Looking for {additional} more sources (target {job.target_source_count})",
        )
        self._add_replay(job, "Research Continued", f"Target raised to {job.target_source_count} sources")
        return await self._run(job)

    async def delete_job(self, job_id: str) -> None:
        run = self._active.get(job_id)
        if run is not None:
            await self.cancel(job_id)
            await run.done.wait()
        if not await self.store.delete_job(job_id):
            raise JobNotFoundError(job_id)
        self._subscribers.pop(job_id, None)

    # -- execution -----------------------------------------------------

    async def _run(self, job: ResearchJob) -> ResearchJob:
        async with self._lock:
            if job.id in self._active:
                raise JobAlreadyRunningError(job.id)
            run = _ActiveRun(job=job, task=asyncio.current_task())
            self._active[job.id] = run

        await self._emit(job.id, streaming.job_started(job))
        log_service.log_event("job_started", "Research job started", job_id=job.id, state=job.state.value)
        try:
            await self._execute(run)
            await self._transition(run, JobState.COMPLETED, "Completed", "Research complete")
            self._add_replay(job, "Research Complete", f"{len(job.acquired_source_ids)} sources")
            await self.store.save_job(job)
            await self._emit(job.id, streaming.job_completed(job))
        except JobInterrupted:
            await self._finish_interrupted(run)
        except Exception as exc:
            if run.stop_event.is_set():
                await self._finish_interrupted(run)
            else:
                logger.exception(f"Job {job.id} failed: {exc}")
                job.error_message = str(exc)
                job.state = JobState.FAILED
                await self._add_step(job, "Failed", str(exc), success=False, error=str(exc))
                await self.store.save_job(job)
                await self._emit(job.id, streaming.job_failed(job.id, str(exc)))
        finally:
            async with self._lock:
                self._active.pop(job.id, None)
            run.done.set()
        return job.snapshot()

    async def _finish_interrupted(self, run: _ActiveRun) -> None:
        job = run.job
        job.state = run.stop_state or JobState.PAUSED
        job.updated_at = utc_now()
        await self.store.save_job(job)
        logger.info(f"Job {job.id} stopped as {job.state.value}")
        if job.state == JobState.CANCELLED:
            await self._emit(job.id, streaming.job_cancelled(job.id))
        else:
            await self._emit(job.id, streaming.job_paused(job.id))

    async def _execute(self, run: _ActiveRun) -> None:
        checkpoint = run.job.checkpoint
        if checkpoint.phase is None:
            await self._plan(run)
        if not checkpoint.harvest_complete:
            await self._harvest(run)
        if _phase_index(checkpoint.phase) < _phase_index(JobState.DRAFTING):
            await self._draft(run)
        if _phase_index(checkpoint.phase) < _phase_index(JobState.VALIDATING):
            await self._validate(run)
        if _phase_index(checkpoint.phase) < _phase_index(JobState.REPORTING):
            await self._report(run)

    # -- planning ------------------------------------------------------

    async def _plan(self, run: _ActiveRun) -> None:
        job = run.job
        await self._transition(run, JobState.PLANNING, "Planning", "Generating search queries")
        system = get_prompt("planner.system_prompt")

        plan_text = await self.llm.generate(
            render_prompt("planner.queries_prompt", prompt=job.prompt),
            system,
            max_tokens=300,
            caller="planner",
        )
        self._check_stop(run)
        if is_unavailable(plan_text):
            queries = fallback_queries(job.prompt)
            await self._add_step(
                job, "PlanFallback", "Language model unavailable; using generated queries", success=False
            )
            sub_questions: list[str] = []
        else:
            job.plan = plan_text
            queries = extract_queries(plan_text, job.prompt)[:MAX_PLAN_QUERIES]
            sub_text = await self.llm.generate(
                render_prompt("planner.subquestions_prompt", prompt=job.prompt),
                system,
                max_tokens=300,
                caller="planner.subquestions",
            )
            self._check_stop(run)
            sub_questions = [] if is_unavailable(sub_text) else extract_numbered_lines(sub_text)
            sub_questions = sub_questions[:MAX_SUB_QUESTIONS]

        lowered = {q.lower() for q in queries}
        for question in sub_questions:
            if question.lower() not in lowered:
                queries.append(question)
                lowered.add(question.lower())

        job.search_queries = queries
        job.sub_questions = sub_questions
        job.checkpoint.pending_queries = list(queries)
        await self._add_step(job, "PlanCreated", f"{len(queries)} queries, {len(sub_questions)} sub-questions")
        self._add_replay(job, "Research Plan Created", "\n".join(f"- {q}" for q in queries))
        await self._emit(job.id, streaming.plan_created(job))
        await self._complete_phase(run, JobState.PLANNING)

    # -- harvesting ----------------------------------------------------

    async def _harvest(self, run: _ActiveRun) -> None:
        job = run.job
        checkpoint = job.checkpoint
        while checkpoint.iteration < job.max_iterations:
            self._check_stop(run)
            remaining = job.target_source_count - len(job.acquired_source_ids)
            searched = {q.lower() for q in checkpoint.searched_queries}
            queries: list[str] = []
            for raw in checkpoint.pending_queries:
                query = clean_search_query(raw)
                if query and query.lower() not in searched and query not in queries:
                    queries.append(query)
            if not checkpoint.unindexed_source_ids:
                if not queries:
                    logger.info(f"Job {job.id}: no new queries, ending harvest")
                    break
                if remaining <= 0:
                    logger.info(f"Job {job.id}: source target reached, ending harvest")
                    break

            job.current_iteration = checkpoint.iteration + 1
            try:
                if queries and remaining > 0:
                    await self._search_and_acquire(run, queries, remaining)
                await self._extract(run)
                sufficient = await self._evaluate(run)
            except JobInterrupted:
                raise
            except Exception as exc:
                logger.exception(f"Job {job.id} iteration {job.current_iteration} failed: {exc}")
                await self._add_step(
                    job, "IterationFailed", f"Iteration {job.current_iteration}", success=False, error=str(exc)
                )
                if job.acquired_source_ids:
                    break
                raise

            checkpoint.searched_queries.extend(queries)
            checkpoint.iteration += 1
            self._add_replay(
                job,
                f"Iteration {job.current_iteration}",
                f"{len(job.acquired_source_ids)} sources, coverage {job.coverage_score:.2f}",
            )
            if not sufficient:
                checkpoint.pending_queries = gap_queries(job.prompt, checkpoint.coverage_gaps)
            await self._complete_phase(run, JobState.EVALUATING)
            if sufficient:
                await self._add_step(job, "CoverageSufficient", f"Coverage {job.coverage_score:.2f}")
                break

        checkpoint.harvest_complete = True
        checkpoint.phase = JobState.EVALUATING
        await self.store.save_job(job)

    async def _search_and_acquire(self, run: _ActiveRun, queries: list[str], remaining: int) -> None:
        job = run.job
        checkpoint = job.checkpoint
        await self._transition(
            run, JobState.SEARCHING, "Searching", f"Iteration {job.current_iteration}: {len(queries)} queries"
        )
        harvest = await self.harvester.search_multi_lane(
            queries, exclude=set(checkpoint.seen_urls), stop_event=run.stop_event
        )
        self._check_stop(run)
        self._merge_engine_health(job, harvest.engine_health)
        await self._emit(
            job.id,
            streaming.search_completed(
                job.id, harvest.queries_run, len(harvest.urls), iteration=job.current_iteration
            ),
        )

        seen = set(checkpoint.seen_urls)
        ranked = score_and_filter_urls(harvest.urls, job.prompt, job.search_queries)
        fresh = [url for url in ranked if canonicalize_url(url) not in seen]
        candidates = fresh[: min(max(remaining, 1) * 2, MAX_URLS_PER_ITERATION)]
        await self._add_step(
            job, "SearchCompleted", f"{len(harvest.urls)} URLs found, {len(candidates)} selected for acquisition"
        )
        if not candidates:
            return

        await self._transition(run, JobState.ACQUIRING, "Acquiring", f"{len(candidates)} URLs")
        semaphore = asyncio.Semaphore(self.max_parallel_acquire)
        captured = [0]

        async def acquire_one(url: str) -> Optional[Snapshot]:
            async with semaphore:
                if run.stop_event.is_set():
                    return None
                if len(job.acquired_source_ids) + captured[0] >= job.target_source_count:
                    return None
                snapshot = await self.acquirer.capture(url)
                if not snapshot.is_blocked:
                    captured[0] += 1
                return snapshot

        outcomes = await asyncio.gather(*(acquire_one(url) for url in candidates), return_exceptions=True)
        for url, outcome in zip(candidates, outcomes):
            if outcome is None:
                continue
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            await self._record_acquisition(run, url, outcome)
        await self.store.save_job(job)
        self._check_stop(run)

    async def _record_acquisition(self, run: _ActiveRun, url: str, outcome: Snapshot | Exception) -> None:
        job = run.job
        canonical = canonicalize_url(url)
        if canonical not in job.checkpoint.seen_urls:
            job.checkpoint.seen_urls.append(canonical)

        if isinstance(outcome, Exception):
            job.source_health.append(
                SourceHealthEntry(url=url, status=SourceFetchStatus.ERROR, reason=str(outcome))
            )
            await self._add_step(job, "AcquireFailed", url, success=False, error=str(outcome))
            return

        snapshot = outcome
        if snapshot.is_blocked:
            job.source_health.append(
                SourceHealthEntry(
                    url=url,
                    title=snapshot.title,
                    status=snapshot.status,
                    http_status=snapshot.http_status,
                    reason=snapshot.block_reason,
                )
            )
            await self._add_step(
                job, "AcquireFailed", url, success=False, error=f"{snapshot.status.value}: {snapshot.block_reason}"
            )
            await self._emit(job.id, streaming.source_acquired(job.id, url, snapshot.title, snapshot.status.value))
            return

        if snapshot.id in job.acquired_source_ids or len(job.acquired_source_ids) >= job.target_source_count:
            return
        await self.store.save_snapshot(snapshot)
        job.acquired_source_ids.append(snapshot.id)
        job.checkpoint.unindexed_source_ids.append(snapshot.id)
        job.source_health.append(
            SourceHealthEntry(
                url=url,
                title=snapshot.title,
                status=SourceFetchStatus.SUCCESS,
                http_status=snapshot.http_status,
            )
        )
        await self._add_step(job, "Acquired", f"{snapshot.title} ({url})")
        self._add_replay(job, "Source Acquired", f"{snapshot.title}\n{url}")
        await self._emit(
            job.id, streaming.source_acquired(job.id, url, snapshot.title, SourceFetchStatus.SUCCESS.value)
        )
        found = f"{len(job.acquired_source_ids)}/{job.target_source_count}"
        await self._emit_progress(run, f"Acquired {found}: {snapshot.title}")

    async def _extract(self, run: _ActiveRun) -> None:
        job = run.job
        pending = list(job.checkpoint.unindexed_source_ids)
        if not pending:
            return
        await self._transition(run, JobState.EXTRACTING, "Extracting", f"Indexing {len(pending)} sources")
        snapshots = [s for s in [await self.store.get_snapshot(sid) for sid in pending] if s is not None]
        chunk_lists = await asyncio.gather(*(self.indexer.index_snapshot(s) for s in snapshots))
        total = sum(len(chunks) for chunks in chunk_lists)
        job.checkpoint.unindexed_source_ids = []
        await self._add_step(job, "Indexed", f"{total} chunks from {len(snapshots)} sources")

    async def _evaluate(self, run: _ActiveRun) -> bool:
        job = run.job
        await self._transition(run, JobState.EVALUATING, "Evaluating", "Scoring evidence coverage")
        results = await self.retrieval.hybrid_search(
            job.prompt, top_k=COVERAGE_TOP_K, source_ids=set(job.acquired_source_ids)
        )
        coverage = evaluate_coverage(
            results,
            sources_acquired=len(job.acquired_source_ids),
            target_sources=job.target_source_count,
            relevance=self.retrieval.relevance,
        )
        job.coverage_score = coverage.score
        job.checkpoint.coverage_score = coverage.score
        job.checkpoint.coverage_gaps = list(coverage.gaps)
        gaps = ", ".join(coverage.gaps) or "none"
        await self._add_step(job, "CoverageEvaluated", f"Score {coverage.score:.2f}; gaps: {gaps}")
        return is_sufficient(coverage, len(job.acquired_source_ids), job.target_source_count)

    # -- drafting ------------------------------------------------------

    async def _source_maps(self, job: ResearchJob) -> tuple[dict[str, str], dict[str, str]]:
        urls: dict[str, str] = {}
        titles: dict[str, str] = {}
        for source_id in job.acquired_source_ids:
            snapshot = await self.store.get_snapshot(source_id)
            if snapshot is not None:
                urls[source_id] = snapshot.url
                titles[source_id] = snapshot.title
        return urls, titles

    async def _select_evidence(
        self, job: ResearchJob, query: str, source_urls: dict[str, str], limit: int
    ) -> list[RetrievalResult]:
        results = await self.retrieval.hybrid_search(
            query, top_k=DRAFT_TOP_K, source_ids=set(job.acquired_source_ids)
        )
        return deduplicate_evidence_by_source(results, source_urls)[:limit]

    def _evidence_context(
        self, evidence: list[RetrievalResult], ledger: CitationLedger, source_urls: dict[str, str]
    ) -> str:
        if not evidence:
            return "No evidence was retrieved for this question."
        blocks = []
        for result in evidence:
            citation = ledger.cite(result.source_id, chunk_id=result.chunk.id, excerpt=result.chunk.text)
            url = source_urls.get(result.source_id, result.source_id)
            blocks.append(
                f"{citation.label} (Source URL: {url}, Score: {self.retrieval.relevance(result.score):.2f}):\n"
                f"{result.chunk.text}\n"
            )
        return "\n".join(blocks)

    def _web_search(self, run: _ActiveRun, source_urls: dict[str, str]):
        job = run.job

        async def search(query: str) -> list[Snapshot]:
            checkpoint = job.checkpoint
            harvest = await self.harvester.search_multi_lane(
                [clean_search_query(query)], exclude=set(checkpoint.seen_urls), stop_event=run.stop_event
            )
            self._merge_engine_health(job, harvest.engine_health)
            ranked = score_and_filter_urls(harvest.urls, job.prompt, [query])
            captured: list[Snapshot] = []
            for url in ranked[: WEB_SEARCH_FETCH_LIMIT * 2]:
                if len(captured) >= WEB_SEARCH_FETCH_LIMIT or run.stop_event.is_set():
                    break
                canonical = canonicalize_url(url)
                if canonical in checkpoint.seen_urls:
                    continue
                checkpoint.seen_urls.append(canonical)
                snapshot = await self.acquirer.capture(url)
                if snapshot.is_blocked or snapshot.id in job.acquired_source_ids:
                    continue
                await self.store.save_snapshot(snapshot)
                await self.indexer.index_snapshot(snapshot)
                job.acquired_source_ids.append(snapshot.id)
                source_urls[snapshot.id] = snapshot.url
                job.source_health.append(
                    SourceHealthEntry(url=url, title=snapshot.title, status=SourceFetchStatus.SUCCESS)
                )
                await self._add_step(job, "Acquired", f"{snapshot.title} ({url}) via search_web tool")
                captured.append(snapshot)
            return captured

        return search

    async def _synthesize(
        self,
        run: _ActiveRun,
        prompt: str,
        ledger: CitationLedger,
        source_urls: dict[str, str],
        caller: str,
    ) -> str:
        if not self.llm.enable_tool_calling:
            return await self.llm.generate(prompt, get_prompt("synthesis.system_prompt"), caller=caller)
        toolbox = ResearchToolbox(
            prompt=run.job.prompt,
            retrieval=self.retrieval,
            store=self.store,
            citations=ledger.citations,
            source_urls=source_urls,
            source_ids=set(run.job.acquired_source_ids),
            web_search=self._web_search(run, source_urls),
        )
        return await self.llm.generate_with_tools(
            prompt,
            RESEARCH_TOOLS,
            toolbox,
            get_prompt("synthesis.tools_system_prompt"),
            caller=caller,
        )

    def _subquestion_block(self, job: ResearchJob) -> str:
        if not job.sub_questions:
            return ""
        return "\nSUB-QUESTIONS:\n" + "\n".join(f"{i}. {q}" for i, q in enumerate(job.sub_questions, 1))

    async def _draft(self, run: _ActiveRun) -> None:
        job = run.job
        await self._transition(
            run, JobState.DRAFTING, "Drafting", f"Synthesizing from {len(job.acquired_source_ids)} sources"
        )
        source_urls, _ = await self._source_maps(job)
        ledger = CitationLedger(job.id, await self.store.get_citations(job.id))

        if self.sectional_reports:
            draft = await self._draft_sections(run, ledger, source_urls)
        else:
            evidence = await self._select_evidence(job, job.prompt, source_urls, MAX_EVIDENCE)
            context = self._evidence_context(evidence, ledger, source_urls)
            await self._save_new_citations(ledger)
            prompt = render_prompt(
                "synthesis.report_prompt",
                prompt=job.prompt,
                subquestions=self._subquestion_block(job),
                citation_count=len(ledger),
                evidence=context,
            )
            draft = await self._synthesize(run, prompt, ledger, source_urls, "synthesis")
        self._check_stop(run)

        checkpoint = job.checkpoint
        checkpoint.citation_ids = [c.id for c in ledger.citations]
        if is_unavailable(draft):
            checkpoint.synthesis_failed = True
            checkpoint.draft = self._synthesis_failed_text(job, draft)
            job.error_message = draft.strip()
            await self._add_step(
                job, "SynthesisFailed", "Language model unavailable", success=False, error=draft.strip()
            )
            await self._emit(job.id, streaming.draft_completed(job.id, len(ledger), unavailable=True))
        else:
            checkpoint.synthesis_failed = False
            checkpoint.draft = draft.strip()
            await self._add_step(job, "DraftCompleted", f"{len(draft)} chars, {len(ledger)} citations")
            await self._emit(job.id, streaming.draft_completed(job.id, len(ledger)))
        self._add_replay(job, "Draft Written", f"{len(ledger)} citations")
        await self._complete_phase(run, JobState.DRAFTING)

    async def _save_new_citations(self, ledger: CitationLedger) -> None:
        for citation in ledger.drain_new():
            await self.store.save_citation(citation)

    async def _draft_sections(
        self, run: _ActiveRun, ledger: CitationLedger, source_urls: dict[str, str]
    ) -> str:
        job = run.job
        subquestions = self._subquestion_block(job)

        def section_prompt(heading: str, key: str, context: str, so_far: str = "") -> str:
            return render_prompt(
                "synthesis.section_prompt",
                heading=heading,
                prompt=job.prompt,
                subquestions=subquestions,
                instruction=get_prompt(key),
                report_so_far=f"\nREPORT SO FAR:\n{so_far}\n" if so_far else "",
                evidence=context,
            )

        async def section_context(heading: str) -> str:
            query = f"{job.prompt} {heading}"
            evidence = await self._select_evidence(job, query, source_urls, SECTION_EVIDENCE)
            return self._evidence_context(evidence, ledger, source_urls)

        def caller(heading: str) -> str:
            return "synthesis." + heading.lower().replace(" ", "_")

        *body_sections, (last_heading, last_key) = REPORT_SECTIONS
        prompts = []
        # labels are handed out in section order before any call runs
        for heading, key in body_sections:
            prompts.append(section_prompt(heading, key, await section_context(heading)))
        await self._save_new_citations(ledger)

        outputs = await asyncio.gather(
            *(
                self._synthesize(run, prompt, ledger, source_urls, caller(heading))
                for prompt, (heading, _) in zip(prompts, body_sections)
            )
        )
        for output in outputs:
            if is_unavailable(output):
                return output
        self._check_stop(run)

        report = "\n\n".join(
            f"## {heading}\n\n{text.strip()}" for (heading, _), text in zip(body_sections, outputs)
        )
        prompt = section_prompt(last_heading, last_key, await section_context(last_heading), report)
        await self._save_new_citations(ledger)
        limitations = await self._synthesize(run, prompt, ledger, source_urls, caller(last_heading))
        if is_unavailable(limitations):
            return limitations
        return f"{report}\n\n## {last_heading}\n\n{limitations.strip()}"

    def _synthesis_failed_text(self, job: ResearchJob, error_text: str) -> str:
        providers = ", ".join(f"{p.name} ({p.model})" for p, _ in self.llm.route()) or "none configured"
        return "\n".join(
            [
                "## Synthesis Failed",
                "",
                "[LLM_UNAVAILABLE] The language model was unavailable, so no report text was generated. "
                "Nothing below was written by a model.",
                "",
                "Possible causes:",
                "- The local model server is not running or cannot be reached",
                "- The cloud provider is not configured or rejected the request",
                "- A provider circuit breaker is open after repeated failures",
                "",
                f"**Routing:** {self.llm.strategy.value}",
                f"**Providers:** {providers}",
                f"**Error:** {error_text.strip()}",
                "",
                f"{len(job.acquired_source_ids)} sources were acquired and remain available; "
                "resume or continue this job once a model is reachable.",
            ]
        )

    # -- validation ----------------------------------------------------

    async def _validate(self, run: _ActiveRun) -> None:
        job = run.job
        await self._transition(run, JobState.VALIDATING, "Validating", "Checking claims against citations")
        # the ledger always describes the current draft
        replaced = await self.store.delete_claims(job.id)
        if replaced:
            logger.debug(f"Job {job.id}: replacing {replaced} claims from an earlier draft")
        if job.checkpoint.synthesis_failed:
            job.grounding_score = 0.0
            await self._add_step(job, "ValidationSkipped", "No synthesized text to validate")
            await self._complete_phase(run, JobState.VALIDATING)
            return

        claims = extract_claims(job.checkpoint.draft)
        job.grounding_score = compute_grounding_score(claims)
        citations = await self.store.get_citations(job.id)
        entries = build_claim_ledger(job.id, claims, citations)
        for entry in entries:
            await self.store.save_claim(entry)
        hypotheses = sum(1 for e in entries if e.support == ClaimSupport.HYPOTHESIS)
        await self._add_step(
            job,
            "Validated",
            f"{len(claims)} claims, grounding {job.grounding_score:.0%}, {hypotheses} hypotheses",
        )
        self._add_replay(job, "Claims Validated", f"Grounding score {job.grounding_score:.0%}")
        await self._complete_phase(run, JobState.VALIDATING)

    # -- reporting -----------------------------------------------------

    async def _report(self, run: _ActiveRun) -> None:
        job = run.job
        await self._transition(run, JobState.REPORTING, "Reporting", "Writing reports")
        source_urls, titles = await self._source_maps(job)
        citations = await self.store.get_citations(job.id)
        cited_ids = set(job.checkpoint.citation_ids)
        citations = [c for c in citations if not cited_ids or c.id in cited_ids]
        draft = job.checkpoint.draft
        grounding = job.grounding_score or 0.0
        short = _short_title(job.prompt)

        full_report = "\n".join(
            [
                "# Research Report",
                "",
                f"**Question:** {job.prompt}",
                f"*Generated {utc_now().strftime('%Y-%m-%d %H:%M UTC')}*",
                "",
                f"*Sources: {len(job.acquired_source_ids)} | Citations: {len(citations)} | "
                f"Iterations: {job.checkpoint.iteration} | Grounding: {grounding:.0%}*",
                "",
                "---",
                "",
                draft,
                "",
                "---",
                "",
                format_sources_index(citations, source_urls, titles),
            ]
        )
        summary = first_paragraph_block(draft) or "No summary is available for this job."
        executive = "\n".join(
            [
                "# Executive Summary",
                "",
                f"**Question:** {job.prompt}",
                "",
                summary,
                "",
                f"*Sources: {len(job.acquired_source_ids)} | Grounding: {grounding:.0%}*",
            ]
        )
        job.full_report = full_report
        job.executive_summary = summary

        await self.store.save_report(
            Report(
                job_id=job.id,
                title=f"Research Report - {short}",
                content=full_report,
                report_type=ReportType.FULL,
            )
        )
        await self.store.save_report(
            Report(
                job_id=job.id,
                title=f"Executive Summary - {short}",
                content=executive,
                report_type=ReportType.EXECUTIVE,
            )
        )
        await self._add_step(job, "ReportsWritten", "Full report and executive summary")
        self._add_replay(job, "Reports Written", f"{len(citations)} citations in source index")
        await self.store.save_report(
            Report(
                job_id=job.id,
                title=f"Activity Log - {short}",
                content=self._activity_report(job),
                report_type=ReportType.ACTIVITY,
            )
        )
        await self._complete_phase(run, JobState.REPORTING)

    @staticmethod
    def _activity_report(job: ResearchJob) -> str:
        lines = ["# Research Activity Log", "", f"**Question:** {job.prompt}", ""]
        for step in job.steps:
            line = f"- [{step.timestamp.strftime('%H:%M:%S')}] **{step.action}**: {step.detail}"
            if not step.success:
                line += f" (failed: {step.error or 'unknown error'})"
            lines.append(line)
        return "\n".join(lines) + "\n"


def build_orchestrator(store: JobStore | None = None, llm: LlmRouter | None = None) -> JobOrchestrator:
    """Wire an orchestrator from settings."""
    from deepcite.llm.router import get_router
    from deepcite.services.acquisition import PoliteFetcher
    from deepcite.services.courtesy import CourtesyScheduler
    from deepcite.services.embeddings_local import LocalEmbeddingService
    from deepcite.services.persistence import get_job_store

    store = store or get_job_store()
    fetcher = PoliteFetcher(CourtesyScheduler())
    embedder = LocalEmbeddingService()
    return JobOrchestrator(
        store,
        llm or get_router(),
        SearchHarvester(fetcher),
        SourceAcquirer(fetcher),
        IndexService(store, embedder),
        RetrievalEngine(store, embedder),
    )
