"""Tests for the in-memory and JSON-file job stores."""
import pytest

from deepcite.models.evidence import Chunk, Snapshot
from deepcite.models.jobs import (
    Citation,
    ClaimLedgerEntry,
    ClaimSupport,
    JobState,
    JobStep,
    Report,
    ResearchJob,
    SourceFetchStatus,
)
from deepcite.services import persistence
from deepcite.services.persistence import InMemoryJobStore, JsonFileJobStore


async def populate(store, job):
    await store.save_job(job)
    await store.save_job_step(JobStep(job_id=job.id, step_number=1, action="Plan", state_after=JobState.PLANNING))
    await store.save_citation(Citation(job_id=job.id, label="[2]", source_id="s2"))
    await store.save_citation(Citation(job_id=job.id, label="[1]", source_id="s1"))
    await store.save_claim(ClaimLedgerEntry(job_id=job.id, claim="A claim [1]", support=ClaimSupport.CITED))
    await store.save_report(Report(job_id=job.id, title="Report", content="# Report"))


class TestInMemoryJobStore:
    @pytest.mark.asyncio
    async def test_reads_return_copies(self):
        store = InMemoryJobStore()
        job = ResearchJob(prompt="perovskite stability")
        await store.save_job(job)

        loaded = await store.get_job(job.id)
        loaded.search_queries.append("mutated")

        assert (await store.get_job(job.id)).search_queries == []

    @pytest.mark.asyncio
    async def test_list_jobs_filters_by_session(self):
        store = InMemoryJobStore()
        await store.save_job(ResearchJob(prompt="first question", session_id="a"))
        await store.save_job(ResearchJob(prompt="second question", session_id="b"))

        assert [j.prompt for j in await store.list_jobs("a")] == ["first question"]
        assert len(await store.list_jobs()) == 2

    @pytest.mark.asyncio
    async def test_citations_are_ordered_by_number(self):
        store = InMemoryJobStore()
        job = ResearchJob(prompt="perovskite stability")
        await populate(store, job)

        assert [c.label for c in await store.get_citations(job.id)] == ["[1]", "[2]"]

    @pytest.mark.asyncio
    async def test_delete_cascades_to_dependents(self):
        store = InMemoryJobStore()
        job = ResearchJob(prompt="perovskite stability")
        other = ResearchJob(prompt="another question")
        await populate(store, job)
        await populate(store, other)

        assert await store.delete_job(job.id)

        assert await store.get_job(job.id) is None
        assert await store.get_job_steps(job.id) == []
        assert await store.get_citations(job.id) == []
        assert await store.get_claim_ledger(job.id) == []
        assert await store.get_reports(job.id) == []
        assert len(await store.get_citations(other.id)) == 2
        assert not await store.delete_job(job.id)

    @pytest.mark.asyncio
    async def test_delete_claims_only_touches_one_job(self):
        store = InMemoryJobStore()
        job = ResearchJob(prompt="perovskite stability")
        other = ResearchJob(prompt="another question")
        await populate(store, job)
        await populate(store, other)

        assert await store.delete_claims(job.id) == 1

        assert await store.get_claim_ledger(job.id) == []
        assert len(await store.get_claim_ledger(other.id)) == 1

    @pytest.mark.asyncio
    async def test_delete_removes_sources_no_other_job_uses(self):
        store = InMemoryJobStore()
        job = ResearchJob(prompt="perovskite stability", acquired_source_ids=["s1", "s2"])
        other = ResearchJob(prompt="another question", acquired_source_ids=["s2"])
        await store.save_job(job)
        await store.save_job(other)
        for source_id in ("s1", "s2"):
            url = f"https://example.org/{source_id}"
            await store.save_snapshot(Snapshot(id=source_id, url=url, canonical_url=url))
            await store.save_chunk(Chunk(id=f"{source_id}:0000", source_id=source_id, source_type="snapshot", text="x"))

        await store.delete_job(job.id)

        assert await store.get_snapshot("s1") is None
        assert await store.get_snapshot("s2") is not None
        assert [c.source_id for c in await store.get_all_chunks()] == ["s2"]

    @pytest.mark.asyncio
    async def test_chunks_by_source(self):
        store = InMemoryJobStore()
        await store.save_chunk(Chunk(id="a:0000", source_id="a", source_type="snapshot", text="one"))
        await store.save_chunk(Chunk(id="a:0001", source_id="a", source_type="snapshot", text="two"))
        await store.save_chunk(Chunk(id="b:0000", source_id="b", source_type="snapshot", text="three"))

        assert await store.delete_chunks_for_source("a") == 2
        assert [c.id for c in await store.get_all_chunks()] == ["b:0000"]


class TestJsonFileJobStore:
    @pytest.mark.asyncio
    async def test_records_survive_a_reload(self, tmp_path):
        store = JsonFileJobStore(tmp_path)
        job = ResearchJob(prompt="perovskite stability", state=JobState.SEARCHING)
        job.checkpoint.pending_queries = ["perovskite humidity"]
        await populate(store, job)
        await store.save_chunk(Chunk(id="s1:0000", source_id="s1", source_type="snapshot", text="text", embedding=[0.5]))
        snapshot = Snapshot(
            url="https://example.org/x",
            canonical_url="https://example.org/x",
            status=SourceFetchStatus.PAYWALL,
            block_reason="Paywall detected",
        )
        await store.save_snapshot(snapshot)

        reloaded = JsonFileJobStore(tmp_path)

        loaded = await reloaded.get_job(job.id)
        assert loaded.state == JobState.SEARCHING
        assert loaded.checkpoint.pending_queries == ["perovskite humidity"]
        assert [s.action for s in await reloaded.get_job_steps(job.id)] == ["Plan"]
        assert [c.label for c in await reloaded.get_citations(job.id)] == ["[1]", "[2]"]
        assert len(await reloaded.get_claim_ledger(job.id)) == 1
        assert (await reloaded.get_all_chunks())[0].embedding == [0.5]
        restored = await reloaded.get_snapshot(snapshot.id)
        assert restored.status == SourceFetchStatus.PAYWALL
        assert restored.is_blocked

    @pytest.mark.asyncio
    async def test_delete_removes_files(self, tmp_path):
        store = JsonFileJobStore(tmp_path)
        job = ResearchJob(prompt="perovskite stability")
        await populate(store, job)
        url = "https://example.org/s1"
        await store.save_snapshot(Snapshot(id="s1", url=url, canonical_url=url))
        await store.save_chunk(Chunk(id="s1:0000", source_id="s1", source_type="snapshot", text="x"))
        job.acquired_source_ids = ["s1"]
        await store.save_job(job)

        await store.delete_job(job.id)

        for table in ("jobs", "steps", "citations", "claims", "reports", "chunks", "snapshots"):
            assert list((tmp_path / table).glob("*.json")) == []
        assert await JsonFileJobStore(tmp_path).get_job(job.id) is None


class TestGetJobStore:
    def test_unknown_backend_raises(self, monkeypatch):
        monkeypatch.setattr(persistence, "_store", None)
        monkeypatch.setattr(persistence.settings, "store_backend", "postgres")
        with pytest.raises(ValueError, match="Unsupported STORE_BACKEND"):
            persistence.get_job_store()

    def test_store_is_shared(self, monkeypatch):
        monkeypatch.setattr(persistence, "_store", None)
        monkeypatch.setattr(persistence.settings, "store_backend", "memory")
        assert persistence.get_job_store() is persistence.get_job_store()
