"""Persistence collaborator: narrow CRUD, upsert keyed by id.

Reads hand back copies so callers never share live objects with the store.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Protocol

from deepcite.config import settings
from deepcite.models.evidence import Chunk, Snapshot
from deepcite.models.jobs import (
    Citation,
    ClaimLedgerEntry,
    JobStep,
    Report,
    ResearchJob,
    SourceFetchStatus,
)
from deepcite.services import logger as log_service


class JobStore(Protocol):
    async def save_job(self, job: ResearchJob) -> None: ...
    async def get_job(self, job_id: str) -> ResearchJob | None: ...
    async def list_jobs(self, session_id: str | None = None) -> list[ResearchJob]: ...
    async def delete_job(self, job_id: str) -> bool: ...
    async def save_job_step(self, step: JobStep) -> None: ...
    async def get_job_steps(self, job_id: str) -> list[JobStep]: ...
    async def save_citation(self, citation: Citation) -> None: ...
    async def get_citations(self, job_id: str) -> list[Citation]: ...
    async def save_claim(self, entry: ClaimLedgerEntry) -> None: ...
    async def get_claim_ledger(self, job_id: str) -> list[ClaimLedgerEntry]: ...
    async def delete_claims(self, job_id: str) -> int: ...
    async def save_chunk(self, chunk: Chunk) -> None: ...
    async def get_all_chunks(self) -> list[Chunk]: ...
    async def delete_chunks_for_source(self, source_id: str) -> int: ...
    async def save_report(self, report: Report) -> None: ...
    async def get_reports(self, job_id: str) -> list[Report]: ...
    async def save_snapshot(self, snapshot: Snapshot) -> None: ...
    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None: ...


def snapshot_to_dict(snapshot: Snapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["status"] = snapshot.status.value
    return payload


def snapshot_from_dict(payload: dict[str, Any]) -> Snapshot:
    data = dict(payload)
    data["status"] = SourceFetchStatus(data.get("status", SourceFetchStatus.SUCCESS.value))
    return Snapshot(**data)


def chunk_from_dict(payload: dict[str, Any]) -> Chunk:
    return Chunk(**payload)


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, ResearchJob] = {}
        self._steps: dict[str, JobStep] = {}
        self._citations: dict[str, Citation] = {}
        self._claims: dict[str, ClaimLedgerEntry] = {}
        self._chunks: dict[str, Chunk] = {}
        self._reports: dict[str, Report] = {}
        self._snapshots: dict[str, Snapshot] = {}

    async def save_job(self, job: ResearchJob) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> ResearchJob | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, session_id: str | None = None) -> list[ResearchJob]:
        jobs = [j for j in self._jobs.values() if session_id is None or j.session_id == session_id]
        return [j.model_copy(deep=True) for j in sorted(jobs, key=lambda j: j.created_at)]

    def _orphaned_sources(self, job_id: str) -> list[str]:
        """Sources acquired by ``job_id`` that no other job still references."""
        job = self._jobs.get(job_id)
        if job is None:
            return []
        shared = {s for j in self._jobs.values() if j.id != job_id for s in j.acquired_source_ids}
        return [s for s in job.acquired_source_ids if s not in shared]

    async def delete_job(self, job_id: str) -> bool:
        orphaned = self._orphaned_sources(job_id)
        if self._jobs.pop(job_id, None) is None:
            return False
        for table in (self._steps, self._citations, self._claims, self._reports):
            for key in [k for k, v in table.items() if v.job_id == job_id]:
                del table[key]
        for source_id in orphaned:
            await self.delete_chunks_for_source(source_id)
            self._snapshots.pop(source_id, None)
        log_service.log_event("job_deleted", "Job and dependents deleted", job_id=job_id)
        return True

    async def save_job_step(self, step: JobStep) -> None:
        self._steps[step.id] = step

    async def get_job_steps(self, job_id: str) -> list[JobStep]:
        steps = [s for s in self._steps.values() if s.job_id == job_id]
        return sorted(steps, key=lambda s: s.step_number)

    async def save_citation(self, citation: Citation) -> None:
        self._citations[citation.id] = citation.model_copy()

    async def get_citations(self, job_id: str) -> list[Citation]:
        citations = [c.model_copy() for c in self._citations.values() if c.job_id == job_id]
        return sorted(citations, key=lambda c: c.number)

    async def save_claim(self, entry: ClaimLedgerEntry) -> None:
        self._claims[entry.id] = entry.model_copy(deep=True)

    async def get_claim_ledger(self, job_id: str) -> list[ClaimLedgerEntry]:
        return [c.model_copy(deep=True) for c in self._claims.values() if c.job_id == job_id]

    async def delete_claims(self, job_id: str) -> int:
        doomed = [k for k, c in self._claims.items() if c.job_id == job_id]
        for key in doomed:
            del self._claims[key]
        return len(doomed)

    async def save_chunk(self, chunk: Chunk) -> None:
        self._chunks[chunk.id] = chunk

    async def get_all_chunks(self) -> list[Chunk]:
        return list(self._chunks.values())

    async def delete_chunks_for_source(self, source_id: str) -> int:
        doomed = [k for k, c in self._chunks.items() if c.source_id == source_id]
        for key in doomed:
            del self._chunks[key]
        return len(doomed)

    async def save_report(self, report: Report) -> None:
        self._reports[report.id] = report.model_copy()

    async def get_reports(self, job_id: str) -> list[Report]:
        reports = [r.model_copy() for r in self._reports.values() if r.job_id == job_id]
        return sorted(reports, key=lambda r: r.created_at)

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        self._snapshots[snapshot.id] = snapshot_from_dict(snapshot_to_dict(snapshot))

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        snapshot = self._snapshots.get(snapshot_id)
        return snapshot_from_dict(snapshot_to_dict(snapshot)) if snapshot else None


class JsonFileJobStore(InMemoryJobStore):
    """In-memory store mirrored to one JSON file per record under ``root``."""

    def __init__(self, root: str | Path | None = None) -> None:
        super().__init__()
        self.root = Path(root or settings.data_dir)
        self._write_lock = asyncio.Lock()
        self._load()

    def _path(self, table: str, record_id: str) -> Path:
        return self.root / table / f"{record_id}.json"

    def _load(self) -> None:
        loaders = {
            "jobs": (self._jobs, ResearchJob.model_validate),
            "steps": (self._steps, JobStep.model_validate),
            "citations": (self._citations, Citation.model_validate),
            "claims": (self._claims, ClaimLedgerEntry.model_validate),
            "reports": (self._reports, Report.model_validate),
            "chunks": (self._chunks, chunk_from_dict),
            "snapshots": (self._snapshots, snapshot_from_dict),
        }
        for table, (target, parse) in loaders.items():
            folder = self.root / table
            if not folder.exists():
                continue
            for path in sorted(folder.glob("*.json")):
                payload = json.loads(path.read_text(encoding="utf-8"))
                record = parse(payload)
                target[record.id] = record

    async def _write(self, table: str, record_id: str, payload: dict[str, Any]) -> None:
        path = self._path(table, record_id)
        async with self._write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, ensure_ascii=False, default=str), encoding="utf-8")
            tmp.replace(path)

    def _remove(self, table: str, record_id: str) -> None:
        self._path(table, record_id).unlink(missing_ok=True)

    async def save_job(self, job: ResearchJob) -> None:
        await super().save_job(job)
        await self._write("jobs", job.id, job.model_dump(mode="json"))

    async def delete_job(self, job_id: str) -> bool:
        doomed = {
            "steps": [k for k, v in self._steps.items() if v.job_id == job_id],
            "citations": [k for k, v in self._citations.items() if v.job_id == job_id],
            "claims": [k for k, v in self._claims.items() if v.job_id == job_id],
            "reports": [k for k, v in self._reports.items() if v.job_id == job_id],
            "snapshots": self._orphaned_sources(job_id),
        }
        deleted = await super().delete_job(job_id)
        if deleted:
            self._remove("jobs", job_id)
            for table, ids in doomed.items():
                for record_id in ids:
                    self._remove(table, record_id)
        return deleted

    async def save_job_step(self, step: JobStep) -> None:
        await super().save_job_step(step)
        await self._write("steps", step.id, step.model_dump(mode="json"))

    async def save_citation(self, citation: Citation) -> None:
        await super().save_citation(citation)
        await self._write("citations", citation.id, citation.model_dump(mode="json"))

    async def save_claim(self, entry: ClaimLedgerEntry) -> None:
        await super().save_claim(entry)
        await self._write("claims", entry.id, entry.model_dump(mode="json"))

    async def delete_claims(self, job_id: str) -> int:
        doomed = [k for k, c in self._claims.items() if c.job_id == job_id]
        count = await super().delete_claims(job_id)
        for record_id in doomed:
            self._remove("claims", record_id)
        return count

    async def save_chunk(self, chunk: Chunk) -> None:
        await super().save_chunk(chunk)
        await self._write("chunks", chunk.id, asdict(chunk))

    async def delete_chunks_for_source(self, source_id: str) -> int:
        doomed = [k for k, c in self._chunks.items() if c.source_id == source_id]
        count = await super().delete_chunks_for_source(source_id)
        for record_id in doomed:
            self._remove("chunks", record_id)
        return count

    async def save_report(self, report: Report) -> None:
        await super().save_report(report)
        await self._write("reports", report.id, report.model_dump(mode="json"))

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        await super().save_snapshot(snapshot)
        await self._write("snapshots", snapshot.id, snapshot_to_dict(snapshot))


_store: JobStore | None = None


def get_job_store() -> JobStore:
    global _store
    if _store is None:
        backend = settings.store_backend.lower().strip()
        if backend == "memory":
            _store = InMemoryJobStore()
        elif backend == "json":
            _store = JsonFileJobStore(settings.data_dir)
        else:
            raise ValueError(f"Unsupported STORE_BACKEND: {settings.store_backend}")
    return _store
