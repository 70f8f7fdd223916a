"""
Completion Detection

Decides whether a workflow has finished after one of its steps reached a
terminal state. Safe to run concurrently: the final transition is a
conditional update out of `processing`, so exactly one caller performs it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import PARTIAL_FAILURE
from .models import ErrorDetail, StepState, WorkflowState
from .workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


class CompletionStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_FINALIZED = "already_finalized"
    NOT_PROCESSING = "not_processing"


@dataclass
class CompletionDecision:
    status: CompletionStatus
    completed: int = 0
    total: int = 0
    failed: int = 0
    transitioned: bool = False


class CompletionDetector:
    """Moves a fully processed workflow to `completed` or `failed`."""

    def __init__(self, store: WorkflowStore, metrics=None):
        self.store = store
        self.metrics = metrics

    async def check(self, workflow_id: str) -> CompletionDecision:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None or workflow.total_steps is None:
            return CompletionDecision(CompletionStatus.WAITING)

        steps = await self.store.list_steps(workflow_id)
        total = workflow.total_steps
        failed_steps = [s for s in steps if s.state == StepState.FAILED]
        completed = sum(1 for s in steps if s.is_terminal)

        await self.store.record_progress(workflow_id, completed)

        if completed < total:
            return CompletionDecision(
                CompletionStatus.WAITING, completed=completed, total=total, failed=len(failed_steps)
            )

        if workflow.state != WorkflowState.PROCESSING:
            status = (
                CompletionStatus.ALREADY_FINALIZED if workflow.is_terminal
                or workflow.state == WorkflowState.AGGREGATING
                else CompletionStatus.NOT_PROCESSING
            )
            return CompletionDecision(status, completed=completed, total=total, failed=len(failed_steps))

        if failed_steps:
            return await self._fail(workflow_id, completed, total, failed_steps[-1].step_id, len(failed_steps))
        return await self._complete(workflow_id, completed, total)

    async def _fail(self, workflow_id: str, completed: int, total: int,
                    last_step_id: Optional[str], failed: int) -> CompletionDecision:
        error = ErrorDetail(
            code=PARTIAL_FAILURE,
            message=f"{failed} of {total} pages failed to process",
            step_id=last_step_id,
        )
        won = await self.store.transition_workflow(
            workflow_id, WorkflowState.FAILED,
            from_states=[WorkflowState.PROCESSING],
            error=error,
        )
        if not won:
            return CompletionDecision(
                CompletionStatus.ALREADY_FINALIZED, completed=completed, total=total, failed=failed
            )

        logger.warning(f"Workflow {workflow_id} failed: {error.message}")
        if self.metrics:
            self.metrics.record_workflow_finished(WorkflowState.FAILED.value)
        return CompletionDecision(
            CompletionStatus.FAILED, completed=completed, total=total, failed=failed, transitioned=True
        )

    async def _complete(self, workflow_id: str, completed: int, total: int) -> CompletionDecision:
        won = await self.store.transition_workflow(
            workflow_id, WorkflowState.AGGREGATING,
            from_states=[WorkflowState.PROCESSING],
        )
        if not won:
            return CompletionDecision(CompletionStatus.ALREADY_FINALIZED, completed=completed, total=total)

        await self.store.transition_workflow(
            workflow_id, WorkflowState.COMPLETED,
            from_states=[WorkflowState.AGGREGATING],
        )
        logger.info(f"Workflow {workflow_id} completed: all {total} pages processed")
        if self.metrics:
            self.metrics.record_workflow_finished(WorkflowState.COMPLETED.value)
        return CompletionDecision(
            CompletionStatus.COMPLETED, completed=completed, total=total, transitioned=True
        )
