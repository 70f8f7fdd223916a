"""
Test Suite for the Split Worker

Covers page fan-out, redelivery safety, split failures and the skip rules
for workflows that already moved past splitting.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pageflow.errors import DocumentSplitError, WorkflowNotFoundError
from pageflow.job_queue import Job
from pageflow.models import PAGE_QUEUE, SPLIT_QUEUE, SplitJobPayload, StepState, WorkflowState
from pageflow.split_worker import SplitWorker
from pageflow.storage import FileNotFoundInStoreError, page_path

from fakes import FakeClock, FlakyJobQueue, UnreachableFileStore, make_pdf


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def worker(store, queue, files):
    return SplitWorker(store=store, queue=queue, files=files, page_max_attempts=4)


async def submit(store, files, content, workflow_id="w1", priority=0):
    ref = await files.store(content, f"uploads/{workflow_id}/doc.pdf")
    await store.create_workflow(ref, "doc.pdf", workflow_id=workflow_id, priority=priority)
    return SplitJobPayload(workflow_id, ref)


# =============================================================================
# SPLITTING
# =============================================================================

class TestSplitWorker:
    """Tests for a successful split."""

    @pytest.mark.asyncio
    async def test_creates_one_step_and_job_per_page(self, worker, store, queue, files):
        payload = await submit(store, files, make_pdf(3))

        outcome = await worker.split(payload)

        assert (outcome.total_pages, outcome.created_steps, outcome.enqueued_jobs) == (3, 3, 3)
        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.PROCESSING
        assert workflow.total_steps == 3
        assert workflow.started_at is not None

        steps = await store.list_steps("w1")
        assert [s.page_number for s in steps] == [1, 2, 3]
        assert all(s.state == StepState.PENDING for s in steps)
        assert steps[0].page_ref == page_path("w1", 1)

        jobs = sorted(queue.jobs(PAGE_QUEUE), key=lambda j: j.payload["page_number"])
        assert [j.job_id for j in jobs] == [f"w1:{s.step_id}" for s in steps]
        assert jobs[0].payload == {
            "workflow_id": "w1",
            "step_id": steps[0].step_id,
            "page_number": 1,
            "page_ref": page_path("w1", 1),
            "total_pages": 3,
        }
        assert all(j.max_attempts == 4 for j in jobs)

    @pytest.mark.asyncio
    async def test_page_files_are_stored(self, worker, store, files):
        payload = await submit(store, files, make_pdf(2))

        await worker.split(payload)

        for step in await store.list_steps("w1"):
            content = await files.fetch(step.page_ref)
            assert content.startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_page_jobs_inherit_workflow_priority(self, worker, store, queue, files):
        payload = await submit(store, files, make_pdf(2), priority=7)

        await worker.split(payload)

        assert {j.priority for j in queue.jobs(PAGE_QUEUE)} == {7}

    @pytest.mark.asyncio
    async def test_handle_reads_job_payload(self, worker, store, files):
        payload = await submit(store, files, make_pdf(1))
        job = Job(job_id="w1", queue=SPLIT_QUEUE, name="split-pdf", payload=payload.to_dict(), max_attempts=3)

        outcome = await worker.handle(job)

        assert outcome.total_pages == 1


# =============================================================================
# REDELIVERY
# =============================================================================

class TestSplitRedelivery:
    """Tests for at-least-once delivery of split jobs."""

    @pytest.mark.asyncio
    async def test_redelivery_after_success_is_skipped(self, worker, store, queue, files):
        payload = await submit(store, files, make_pdf(3))
        await worker.split(payload)

        outcome = await worker.split(payload)

        assert outcome.skipped is True
        assert outcome.reason == "workflow_processing"
        assert len(await store.list_steps("w1")) == 3
        assert len(queue.jobs(PAGE_QUEUE)) == 3

    @pytest.mark.asyncio
    async def test_redelivery_after_partial_enqueue(self, store, files):
        """A split that died halfway resumes without duplicating steps or jobs."""
        queue = FlakyJobQueue(fail_on_call=2, clock=FakeClock())
        worker = SplitWorker(store=store, queue=queue, files=files)
        payload = await submit(store, files, make_pdf(3))

        with pytest.raises(ConnectionError):
            await worker.split(payload, final_attempt=False)

        assert (await store.get_workflow("w1")).state == WorkflowState.SPLITTING
        assert len(await store.list_steps("w1")) == 3
        assert len(queue.jobs(PAGE_QUEUE)) == 1

        outcome = await worker.split(payload, final_attempt=False)

        assert outcome.created_steps == 0
        assert outcome.enqueued_jobs == 2
        assert len(await store.list_steps("w1")) == 3
        assert len(queue.jobs(PAGE_QUEUE)) == 3
        assert (await store.get_workflow("w1")).state == WorkflowState.PROCESSING

    @pytest.mark.asyncio
    async def test_cancelled_workflow_is_not_split(self, worker, store, queue, files):
        payload = await submit(store, files, make_pdf(2))
        await store.transition_workflow("w1", WorkflowState.CANCELLED)

        outcome = await worker.split(payload)

        assert outcome.skipped is True
        assert outcome.reason == "workflow_cancelled"
        assert queue.jobs(PAGE_QUEUE) == []


# =============================================================================
# FAILURES
# =============================================================================

class TestSplitFailures:
    """Tests for malformed documents and transient errors."""

    @pytest.mark.asyncio
    async def test_malformed_document_fails_workflow(self, worker, store, queue, files):
        payload = await submit(store, files, b"this is not a pdf")

        with pytest.raises(DocumentSplitError):
            await worker.split(payload, final_attempt=False)

        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.FAILED
        assert workflow.error_summary.code == "SPLIT_ERROR"
        assert await store.list_steps("w1") == []
        assert queue.jobs(PAGE_QUEUE) == []

    @pytest.mark.asyncio
    async def test_transient_error_leaves_workflow_splitting(self, store, queue, tmp_path):
        files = UnreachableFileStore(str(tmp_path / "files"))
        worker = SplitWorker(store=store, queue=queue, files=files)
        await store.create_workflow("uploads/w1/doc.pdf", workflow_id="w1")

        with pytest.raises(OSError):
            await worker.split(SplitJobPayload("w1", "uploads/w1/doc.pdf"), final_attempt=False)

        assert (await store.get_workflow("w1")).state == WorkflowState.SPLITTING

    @pytest.mark.asyncio
    async def test_transient_error_on_final_attempt_fails_workflow(self, store, queue, tmp_path):
        files = UnreachableFileStore(str(tmp_path / "files"))
        worker = SplitWorker(store=store, queue=queue, files=files)
        await store.create_workflow("uploads/w1/doc.pdf", workflow_id="w1")

        with pytest.raises(OSError):
            await worker.split(SplitJobPayload("w1", "uploads/w1/doc.pdf"), final_attempt=True)

        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.FAILED
        assert workflow.error_summary.code == "SPLIT_ERROR"
        assert "storage unreachable" in workflow.error_summary.message

    @pytest.mark.asyncio
    async def test_missing_source_file_fails_workflow(self, worker, store):
        await store.create_workflow("uploads/w1/missing.pdf", workflow_id="w1")

        with pytest.raises(FileNotFoundInStoreError):
            await worker.split(SplitJobPayload("w1", "uploads/w1/missing.pdf"), final_attempt=False)

        assert (await store.get_workflow("w1")).state == WorkflowState.FAILED

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, worker):
        with pytest.raises(WorkflowNotFoundError) as exc_info:
            await worker.split(SplitJobPayload("ghost", "uploads/ghost.pdf"))
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_dead_lettered_split_fails_workflow(self, worker, store, files):
        payload = await submit(store, files, make_pdf(2))
        await store.transition_workflow("w1", WorkflowState.SPLITTING)
        job = Job(job_id="w1", queue=SPLIT_QUEUE, name="split-pdf", payload=payload.to_dict())

        await worker.handle_dead_letter(job, "job stalled more than allowable limit")

        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.FAILED
        assert workflow.error_summary.code == "SPLIT_ERROR"
        assert workflow.error_summary.message == "job stalled more than allowable limit"

    @pytest.mark.asyncio
    async def test_dead_letter_after_split_is_ignored(self, worker, store, files):
        payload = await submit(store, files, make_pdf(2))
        await worker.split(payload)
        job = Job(job_id="w1", queue=SPLIT_QUEUE, name="split-pdf", payload=payload.to_dict())

        await worker.handle_dead_letter(job, "late")

        assert (await store.get_workflow("w1")).state == WorkflowState.PROCESSING
