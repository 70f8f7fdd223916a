"""
Split Worker

Consumes `split` jobs: fetches the source PDF, splits it into single-page
documents, registers one step per page and enqueues one `process-page` job
per step.

Every stage is idempotent per page number, so a redelivered split job picks
up where the previous delivery stopped instead of duplicating steps or jobs.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .completion import CompletionDetector
from .errors import SPLIT_ERROR, WorkflowNotFoundError, is_retryable
from .job_queue import Job, JobQueue
from .models import (
    PAGE_JOB_NAME,
    PAGE_QUEUE,
    PAST_SPLITTING_STATES,
    ErrorDetail,
    PageJobPayload,
    PageUnit,
    SplitJobPayload,
    Workflow,
    WorkflowState,
)
from .splitter import PDFSplitter
from .storage import FileStore, page_path
from .workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class SplitOutcome:
    """Result returned to the queue for a split job."""
    workflow_id: str
    skipped: bool = False
    reason: Optional[str] = None
    total_pages: int = 0
    created_steps: int = 0
    enqueued_jobs: int = 0


class SplitWorker:
    """Handler for the `split` queue."""

    def __init__(
        self,
        store: WorkflowStore,
        queue: JobQueue,
        files: FileStore,
        splitter: Optional[PDFSplitter] = None,
        detector: Optional[CompletionDetector] = None,
        page_max_attempts: int = 5,
        fetch_timeout_seconds: float = 30.0,
        store_timeout_seconds: float = 60.0,
        metrics=None,
    ):
        self.store = store
        self.queue = queue
        self.files = files
        self.splitter = splitter or PDFSplitter()
        self.detector = detector or CompletionDetector(store, metrics)
        self.page_max_attempts = page_max_attempts
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.store_timeout_seconds = store_timeout_seconds
        self.metrics = metrics

    async def handle(self, job: Job) -> SplitOutcome:
        """Queue entry point."""
        payload = SplitJobPayload.from_dict(job.payload)
        logger.info(
            f"Splitting workflow {payload.workflow_id} "
            f"(attempt {job.attempt}/{job.max_attempts})"
        )
        return await self.split(payload, final_attempt=job.is_final_attempt)

    async def split(self, payload: SplitJobPayload, final_attempt: bool = True) -> SplitOutcome:
        workflow_id = payload.workflow_id
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        if workflow.state in PAST_SPLITTING_STATES:
            logger.info(f"Workflow {workflow_id} is already {workflow.state.value}; skipping split")
            return SplitOutcome(workflow_id, skipped=True, reason=f"workflow_{workflow.state.value}")

        if workflow.state == WorkflowState.PENDING:
            await self.store.transition_workflow(
                workflow_id, WorkflowState.SPLITTING, from_states=[WorkflowState.PENDING]
            )

        try:
            return await self._split(workflow, payload.source_file_ref)
        except Exception as exc:
            if final_attempt or not is_retryable(exc):
                await self._fail(workflow_id, exc)
            else:
                logger.warning(f"Split of workflow {workflow_id} failed, will retry: {exc}")
            raise

    async def _split(self, workflow: Workflow, source_file_ref: str) -> SplitOutcome:
        workflow_id = workflow.workflow_id

        content = await asyncio.wait_for(
            self.files.fetch(source_file_ref), timeout=self.fetch_timeout_seconds
        )
        pages = await asyncio.to_thread(self.splitter.split_into_pages, content)
        total = len(pages)

        existing = {step.page_number for step in await self.store.list_steps(workflow_id)}
        new_units = []
        for page_number, page_content in enumerate(pages, start=1):
            if page_number in existing:
                continue
            ref = await asyncio.wait_for(
                self.files.store(
                    page_content,
                    page_path(workflow_id, page_number),
                    metadata={
                        "workflow_id": workflow_id,
                        "source_file_ref": source_file_ref,
                        "page_number": page_number,
                        "total_pages": total,
                    },
                ),
                timeout=self.store_timeout_seconds,
            )
            new_units.append(PageUnit(page_number=page_number, page_ref=ref))

        steps = await self.store.create_steps(workflow_id, new_units)
        steps = [step for step in steps if step.page_number <= total]
        if existing:
            logger.info(
                f"Workflow {workflow_id}: reusing {len(existing)} existing steps, "
                f"created {len(new_units)}"
            )

        # Must be visible before any page job can run
        await self.store.set_total_steps(workflow_id, total)

        enqueued = 0
        for step in steps:
            page_job = PageJobPayload(
                workflow_id=workflow_id,
                step_id=step.step_id,
                page_number=step.page_number,
                page_ref=step.page_ref,
                total_pages=total,
            )
            result = await self.queue.enqueue(
                PAGE_QUEUE,
                PAGE_JOB_NAME,
                page_job.to_dict(),
                idempotency_key=f"{workflow_id}:{step.step_id}",
                priority=workflow.priority,
                max_attempts=self.page_max_attempts,
            )
            if result.created:
                enqueued += 1

        if await self.store.transition_workflow(
            workflow_id, WorkflowState.PROCESSING, from_states=[WorkflowState.SPLITTING]
        ):
            logger.info(f"Workflow {workflow_id} split into {total} pages; {enqueued} page jobs enqueued")

        # Pages may have finished before the workflow entered processing
        await self.detector.check(workflow_id)

        if self.metrics:
            self.metrics.record_split(total)

        return SplitOutcome(
            workflow_id,
            total_pages=total,
            created_steps=len(new_units),
            enqueued_jobs=enqueued,
        )

    async def handle_dead_letter(self, job: Job, reason: str):
        """Fail a workflow whose split job was dead-lettered without recording it."""
        payload = SplitJobPayload.from_dict(job.payload)
        await self._fail(payload.workflow_id, reason)

    async def _fail(self, workflow_id: str, exc):
        message = exc if isinstance(exc, str) else (str(exc) or type(exc).__name__)
        error = ErrorDetail(code=SPLIT_ERROR, message=message)
        failed = await self.store.transition_workflow(
            workflow_id,
            WorkflowState.FAILED,
            from_states=[WorkflowState.PENDING, WorkflowState.SPLITTING],
            error=error,
        )
        if failed:
            logger.error(f"Workflow {workflow_id} failed during split: {error.message}")
            if self.metrics:
                self.metrics.record_workflow_finished(WorkflowState.FAILED.value)
