"""
Test Suite for the Workflow State Store

Covers conditional workflow transitions, idempotent step creation, step
lifecycle guards and the PostgreSQL store's update checks.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pageflow.config import DatabaseConfig
from pageflow.errors import InvalidTransitionError
from pageflow.models import (
    ErrorDetail,
    PageUnit,
    StepState,
    WorkflowState,
    can_transition,
    workflow_predecessors,
)
from pageflow.workflow_store import InMemoryWorkflowStore, PostgresWorkflowStore


def pages(*numbers):
    return [PageUnit(n, f"workflows/w1/pages/page-{n}.pdf") for n in numbers]


async def processing_workflow(store, workflow_id="w1", page_count=3):
    await store.create_workflow("uploads/w1/doc.pdf", "doc.pdf", workflow_id=workflow_id)
    await store.transition_workflow(workflow_id, WorkflowState.SPLITTING)
    steps = await store.create_steps(workflow_id, pages(*range(1, page_count + 1)))
    await store.set_total_steps(workflow_id, page_count)
    await store.transition_workflow(workflow_id, WorkflowState.PROCESSING)
    return steps


# =============================================================================
# STATE MACHINE
# =============================================================================

class TestStateMachine:
    """Tests for the workflow transition table."""

    def test_forward_transitions(self):
        assert can_transition(WorkflowState.PENDING, WorkflowState.SPLITTING)
        assert can_transition(WorkflowState.PROCESSING, WorkflowState.AGGREGATING)
        assert can_transition(WorkflowState.AGGREGATING, WorkflowState.COMPLETED)

    def test_no_transitions_out_of_terminal_states(self):
        for state in (WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.CANCELLED):
            assert not can_transition(state, WorkflowState.PROCESSING)

    def test_predecessors(self):
        assert workflow_predecessors(WorkflowState.COMPLETED) == {WorkflowState.AGGREGATING}
        assert WorkflowState.PROCESSING in workflow_predecessors(WorkflowState.CANCELLED)
        assert WorkflowState.AGGREGATING not in workflow_predecessors(WorkflowState.CANCELLED)

    def test_nothing_enters_pending(self):
        with pytest.raises(InvalidTransitionError):
            workflow_predecessors(WorkflowState.PENDING)


# =============================================================================
# IN-MEMORY STORE: WORKFLOWS
# =============================================================================

class TestWorkflowRecords:
    """Tests for workflow creation and transitions."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self):
        store = InMemoryWorkflowStore()
        first = await store.create_workflow("uploads/a.pdf", "a.pdf", workflow_id="w1", priority=3)
        second = await store.create_workflow("uploads/b.pdf", "b.pdf", workflow_id="w1")

        assert first.state == WorkflowState.PENDING
        assert second.source_file_ref == "uploads/a.pdf"
        assert second.priority == 3
        assert len(await store.list_workflows()) == 1

    @pytest.mark.asyncio
    async def test_conditional_transition(self):
        store = InMemoryWorkflowStore()
        await store.create_workflow("uploads/a.pdf", workflow_id="w1")

        assert await store.transition_workflow("w1", WorkflowState.PROCESSING) is False
        assert await store.transition_workflow("w1", WorkflowState.SPLITTING) is True
        assert await store.transition_workflow("w1", WorkflowState.SPLITTING) is False

        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.SPLITTING
        assert workflow.started_at is not None
        assert workflow.finished_at is None

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self):
        store = InMemoryWorkflowStore()
        await processing_workflow(store)
        error = ErrorDetail(code="PARTIAL_FAILURE", message="1 of 3 pages failed to process")

        assert await store.transition_workflow(
            "w1", WorkflowState.FAILED, from_states=[WorkflowState.PROCESSING], error=error
        ) is True
        assert await store.transition_workflow("w1", WorkflowState.CANCELLED) is False

        workflow = await store.get_workflow("w1")
        assert workflow.state == WorkflowState.FAILED
        assert workflow.error_summary.code == "PARTIAL_FAILURE"
        assert workflow.finished_at is not None

    @pytest.mark.asyncio
    async def test_unknown_workflow_does_not_transition(self):
        store = InMemoryWorkflowStore()
        assert await store.transition_workflow("missing", WorkflowState.SPLITTING) is False

    @pytest.mark.asyncio
    async def test_concurrent_transitions_have_one_winner(self):
        store = InMemoryWorkflowStore()
        await processing_workflow(store)

        results = await asyncio.gather(*(
            store.transition_workflow("w1", WorkflowState.AGGREGATING, from_states=[WorkflowState.PROCESSING])
            for _ in range(10)
        ))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self):
        store = InMemoryWorkflowStore()
        await processing_workflow(store)

        assert await store.record_progress("w1", 2) == 2
        assert await store.record_progress("w1", 1) == 2
        assert await store.record_progress("w1", 3) == 3
        assert (await store.get_workflow("w1")).progress == 1.0

    @pytest.mark.asyncio
    async def test_list_workflows_by_state(self):
        store = InMemoryWorkflowStore()
        await store.create_workflow("uploads/a.pdf", workflow_id="a")
        await store.create_workflow("uploads/b.pdf", workflow_id="b")
        await store.transition_workflow("b", WorkflowState.SPLITTING)

        splitting = await store.list_workflows(WorkflowState.SPLITTING)

        assert [w.workflow_id for w in splitting] == ["b"]

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        store = InMemoryWorkflowStore()
        workflow = await store.create_workflow("uploads/a.pdf", workflow_id="w1")
        workflow.state = WorkflowState.COMPLETED

        assert (await store.get_workflow("w1")).state == WorkflowState.PENDING


# =============================================================================
# IN-MEMORY STORE: STEPS
# =============================================================================

class TestStepRecords:
    """Tests for step creation and lifecycle."""

    @pytest.mark.asyncio
    async def test_create_steps_is_idempotent_per_page(self):
        store = InMemoryWorkflowStore()
        await store.create_workflow("uploads/a.pdf", workflow_id="w1")

        first = await store.create_steps("w1", pages(1, 2))
        second = await store.create_steps("w1", pages(2, 3))

        assert [s.page_number for s in second] == [1, 2, 3]
        assert second[0].step_id == first[0].step_id
        assert second[1].step_id == first[1].step_id
        assert all(s.state == StepState.PENDING for s in second)
        assert second[2].step_key == "page-3"

    @pytest.mark.asyncio
    async def test_start_step_counts_attempts(self):
        store = InMemoryWorkflowStore()
        steps = await processing_workflow(store)

        first = await store.start_step(steps[0].step_id)
        again = await store.start_step(steps[0].step_id)

        assert first.state == StepState.RUNNING
        assert first.attempts == 1
        assert again.attempts == 2
        assert again.started_at == first.started_at

    @pytest.mark.asyncio
    async def test_terminal_step_cannot_restart(self):
        store = InMemoryWorkflowStore()
        steps = await processing_workflow(store)
        await store.start_step(steps[0].step_id)
        await store.complete_step(steps[0].step_id, {"fields": {}}, {"model_name": "m"})

        assert await store.start_step(steps[0].step_id) is None
        assert await store.fail_step(steps[0].step_id, ErrorDetail("LLM_ERROR", "late")) is False
        assert await store.complete_step(steps[0].step_id, {"other": 1}, {}) is False

        step = await store.get_step(steps[0].step_id)
        assert step.state == StepState.SUCCEEDED
        assert step.result == {"fields": {}}
        assert step.metadata == {"model_name": "m"}
        assert step.finished_at is not None

    @pytest.mark.asyncio
    async def test_fail_step_records_error(self):
        store = InMemoryWorkflowStore()
        steps = await processing_workflow(store)

        assert await store.fail_step(steps[1].step_id, ErrorDetail("LLM_ERROR", "unreadable")) is True

        step = await store.get_step(steps[1].step_id)
        assert step.state == StepState.FAILED
        assert step.error.code == "LLM_ERROR"

    @pytest.mark.asyncio
    async def test_count_steps(self):
        store = InMemoryWorkflowStore()
        steps = await processing_workflow(store)
        await store.start_step(steps[0].step_id)
        await store.complete_step(steps[0].step_id, {}, {})
        await store.fail_step(steps[1].step_id, ErrorDetail("LLM_ERROR", "bad"))

        counts = await store.count_steps("w1")

        assert (counts.total, counts.pending, counts.succeeded, counts.failed) == (3, 1, 1, 1)
        assert counts.terminal == 2
        assert counts.all_terminal is False

    @pytest.mark.asyncio
    async def test_get_workflow_with_steps(self):
        store = InMemoryWorkflowStore()
        await processing_workflow(store, page_count=2)

        workflow, steps = await store.get_workflow_with_steps("w1")
        missing, none = await store.get_workflow_with_steps("nope")

        assert workflow.total_steps == 2
        assert len(steps) == 2
        assert missing is None and none == []


# =============================================================================
# POSTGRES STORE
# =============================================================================

class TestPostgresWorkflowStore:
    """Tests for the SQL store's conditional update handling."""

    @pytest.fixture
    def conn(self):
        return AsyncMock()

    @pytest.fixture
    def pg_store(self, conn):
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        pool.close = AsyncMock()
        return PostgresWorkflowStore(pool)

    @pytest.mark.asyncio
    async def test_transition_applied(self, pg_store, conn):
        conn.execute.return_value = "UPDATE 1"

        assert await pg_store.transition_workflow("w1", WorkflowState.CANCELLED) is True

        args = conn.execute.call_args.args
        assert args[1] == "w1"
        assert args[2] == "cancelled"
        assert set(args[3]) == {"pending", "splitting", "processing"}
        assert args[4] is True

    @pytest.mark.asyncio
    async def test_transition_lost(self, pg_store, conn):
        conn.execute.return_value = "UPDATE 0"

        assert await pg_store.transition_workflow(
            "w1", WorkflowState.AGGREGATING, from_states=[WorkflowState.PROCESSING]
        ) is False

    @pytest.mark.asyncio
    async def test_fail_step_guarded(self, pg_store, conn):
        conn.execute.return_value = "UPDATE 0"
        assert await pg_store.fail_step("s1", ErrorDetail("LLM_ERROR", "bad")) is False

    @pytest.mark.asyncio
    async def test_start_step_on_terminal(self, pg_store, conn):
        conn.fetchrow.return_value = None
        assert await pg_store.start_step("s1") is None

    @pytest.mark.asyncio
    async def test_create_steps_without_pages_only_lists(self, pg_store, conn):
        conn.fetch.return_value = []

        assert await pg_store.create_steps("w1", []) == []
        conn.executemany.assert_not_called()

    @pytest.mark.asyncio
    async def test_pool_sets_command_timeout(self, monkeypatch):
        create_pool = AsyncMock(return_value=MagicMock())
        monkeypatch.setattr("pageflow.workflow_store.asyncpg.create_pool", create_pool)
        config = DatabaseConfig(
            database_url="postgresql://user:pw@db.example.com:6543/postgres",
            command_timeout_seconds=12.0,
        )

        await PostgresWorkflowStore.connect(config)

        kwargs = create_pool.call_args.kwargs
        assert kwargs["command_timeout"] == 12.0
        assert kwargs["statement_cache_size"] == 0
