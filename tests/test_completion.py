"""
Tests for workflow completion detection.
"""

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pageflow.completion import CompletionDetector, CompletionStatus
from pageflow.models import ErrorDetail, PageUnit, WorkflowState
from pageflow.workflow_store import InMemoryWorkflowStore


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def detector(store):
    return CompletionDetector(store)


async def setup_workflow(store, page_count=3, state=WorkflowState.PROCESSING):
    await store.create_workflow("uploads/w1/doc.pdf", workflow_id="w1")
    await store.transition_workflow("w1", WorkflowState.SPLITTING)
    steps = await store.create_steps(
        "w1", [PageUnit(n, f"workflows/w1/pages/page-{n}.pdf") for n in range(1, page_count + 1)]
    )
    await store.set_total_steps("w1", page_count)
    if state == WorkflowState.PROCESSING:
        await store.transition_workflow("w1", WorkflowState.PROCESSING)
    return steps


async def succeed(store, step):
    await store.start_step(step.step_id)
    await store.complete_step(step.step_id, {"fields": {}}, {})


async def fail(store, step):
    await store.start_step(step.step_id)
    await store.fail_step(step.step_id, ErrorDetail("LLM_ERROR", "unreadable"))


class TestCompletionDetector:
    """Tests for the completion decision and its guarded transition."""

    @pytest.mark.asyncio
    async def test_waits_until_total_is_known(self, store, detector):
        await store.create_workflow("uploads/w1/doc.pdf", workflow_id="w1")
        assert (await detector.check("w1")).status == CompletionStatus.WAITING

    @pytest.mark.asyncio
    async def test_unknown_workflow_waits(self, detector):
        assert (await detector.check("missing")).status == CompletionStatus.WAITING

    @pytest.mark.asyncio
    async def test_waits_while_steps_outstanding(self, store, detector):
        steps = await setup_workflow(store)
        await succeed(store, steps[0])

        decision = await detector.check("w1")

        assert decision.status == CompletionStatus.WAITING
        assert (decision.completed, decision.total) == (1, 3)
        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.PROCESSING
        assert workflow.completed_steps == 1

    @pytest.mark.asyncio
    async def test_all_succeeded_completes(self, store, detector):
        steps = await setup_workflow(store)
        for step in steps:
            await succeed(store, step)

        decision = await detector.check("w1")

        assert decision.status == CompletionStatus.COMPLETED
        assert decision.transitioned is True
        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.COMPLETED
        assert workflow.completed_steps == 3
        assert workflow.error_summary is None
        assert workflow.finished_at is not None

    @pytest.mark.asyncio
    async def test_any_failure_fails_workflow(self, store, detector):
        steps = await setup_workflow(store)
        await succeed(store, steps[0])
        await fail(store, steps[1])
        await succeed(store, steps[2])

        decision = await detector.check("w1")

        assert decision.status == CompletionStatus.FAILED
        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.FAILED
        assert workflow.completed_steps == 3
        assert workflow.error_summary.code == "PARTIAL_FAILURE"
        assert workflow.error_summary.message == "1 of 3 pages failed to process"
        assert workflow.error_summary.step_id == steps[1].step_id

    @pytest.mark.asyncio
    async def test_failure_count_in_summary(self, store, detector):
        steps = await setup_workflow(store)
        await fail(store, steps[0])
        await succeed(store, steps[1])
        await fail(store, steps[2])

        await detector.check("w1")

        summary = (await store.get_workflow("w1")).error_summary
        assert summary.message == "2 of 3 pages failed to process"
        assert summary.step_id == steps[2].step_id

    @pytest.mark.asyncio
    async def test_concurrent_checks_transition_once(self, store, detector):
        steps = await setup_workflow(store)
        for step in steps:
            await succeed(store, step)

        decisions = await asyncio.gather(*(detector.check("w1") for _ in range(5)))

        assert sum(d.transitioned for d in decisions) == 1
        assert (await store.get_workflow("w1")).state == WorkflowState.COMPLETED

    @pytest.mark.asyncio
    async def test_repeat_check_is_a_no_op(self, store, detector):
        steps = await setup_workflow(store, page_count=1)
        await succeed(store, steps[0])
        await detector.check("w1")

        decision = await detector.check("w1")

        assert decision.status == CompletionStatus.ALREADY_FINALIZED
        assert decision.transitioned is False

    @pytest.mark.asyncio
    async def test_does_not_finalize_while_splitting(self, store, detector):
        steps = await setup_workflow(store, page_count=1, state=WorkflowState.SPLITTING)
        await succeed(store, steps[0])

        decision = await detector.check("w1")

        assert decision.status == CompletionStatus.NOT_PROCESSING
        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.SPLITTING
        assert workflow.completed_steps == 1

    @pytest.mark.asyncio
    async def test_cancelled_workflow_stays_cancelled(self, store, detector):
        steps = await setup_workflow(store, page_count=1)
        await store.transition_workflow("w1", WorkflowState.CANCELLED)
        await succeed(store, steps[0])

        decision = await detector.check("w1")

        assert decision.status == CompletionStatus.ALREADY_FINALIZED
        assert (await store.get_workflow("w1")).state == WorkflowState.CANCELLED
