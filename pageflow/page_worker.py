"""
Page Worker

Consumes `process-page` jobs. Each job runs one page through the rate-limited
extraction client and records the outcome on the page's step.

Error handling by kind:
- rate-limit denial: re-raised, the queue reschedules without spending an attempt
- terminal extraction error: step failed with LLM_ERROR, job completes normally
- anything else: re-raised for retry; on the final attempt the step is first
  marked failed with PAGE_PROCESSING_ERROR
- dead-lettered job: handle_dead_letter fails a step the handler never settled
"""

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .completion import CompletionDetector
from .errors import (
    LLM_ERROR,
    PAGE_PROCESSING_ERROR,
    ExtractionError,
    RateLimitExceededError,
    StepNotFoundError,
    is_retryable,
)
from .extraction import ExtractionClient
from .job_queue import Job
from .models import ErrorDetail, PageJobPayload, StepState, WorkflowState
from .rate_limiter import (
    BaseRateLimiter,
    RateLimitConfig,
    extraction_rate_limit_key,
    get_extraction_rate_limit,
)
from .storage import FileStore
from .workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class PageOutcome:
    """Result returned to the queue for a page job."""
    step_id: str
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    processing_time_ms: Optional[int] = None


class PageWorker:
    """Handler for the `process-page` queue."""

    def __init__(
        self,
        store: WorkflowStore,
        files: FileStore,
        extractor: ExtractionClient,
        rate_limiter: BaseRateLimiter,
        detector: Optional[CompletionDetector] = None,
        rate_limit: Optional[RateLimitConfig] = None,
        rate_limit_key: Optional[str] = None,
        fetch_timeout_seconds: float = 30.0,
        extraction_timeout_seconds: float = 120.0,
        metrics=None,
    ):
        self.store = store
        self.files = files
        self.extractor = extractor
        self.rate_limiter = rate_limiter
        self.detector = detector or CompletionDetector(store, metrics)
        self.rate_limit = rate_limit or get_extraction_rate_limit(extractor.model_name)
        self.rate_limit_key = rate_limit_key or extraction_rate_limit_key(extractor.model_name)
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.extraction_timeout_seconds = extraction_timeout_seconds
        self.metrics = metrics

    async def handle(self, job: Job) -> PageOutcome:
        """Queue entry point."""
        payload = PageJobPayload.from_dict(job.payload)
        return await self.process(payload, final_attempt=job.is_final_attempt)

    async def process(self, payload: PageJobPayload, final_attempt: bool = True) -> PageOutcome:
        step = await self.store.get_step(payload.step_id)
        if step is None:
            raise StepNotFoundError(payload.step_id)

        if step.state in (StepState.SUCCEEDED, StepState.FAILED):
            logger.info(
                f"Step {step.step_id} (page {step.page_number}) already {step.state.value}; skipping"
            )
            # The delivery that finished the step may have died before its completion check
            await self.detector.check(payload.workflow_id)
            return PageOutcome(step.step_id, skipped=True, reason=f"already_{step.state.value}")

        workflow = await self.store.get_workflow(payload.workflow_id)
        if workflow is not None and workflow.state == WorkflowState.CANCELLED:
            logger.info(f"Workflow {payload.workflow_id} was cancelled; skipping page {payload.page_number}")
            return PageOutcome(step.step_id, skipped=True, reason="workflow_cancelled")

        started = time.monotonic()
        try:
            return await self._run(payload, started)
        except RateLimitExceededError:
            raise
        except Exception as exc:
            if final_attempt or not is_retryable(exc):
                await self._record_failure(payload, exc)
            raise

    async def _run(self, payload: PageJobPayload, started: float) -> PageOutcome:
        step = await self.store.start_step(payload.step_id)
        if step is None:
            # Became terminal between the check and the update
            return PageOutcome(payload.step_id, skipped=True, reason="already_terminal")

        logger.info(
            f"Processing page {payload.page_number}/{payload.total_pages} of workflow "
            f"{payload.workflow_id} (step attempt {step.attempts})"
        )

        page_content = await asyncio.wait_for(
            self.files.fetch(payload.page_ref), timeout=self.fetch_timeout_seconds
        )

        admission = await self.rate_limiter.check_and_consume(self.rate_limit_key, self.rate_limit)
        if not admission.allowed:
            if self.metrics:
                self.metrics.record_rate_limited(self.rate_limit_key)
            raise RateLimitExceededError(
                service_name=self.rate_limit_key,
                retry_after_ms=admission.retry_after_ms,
                remaining=admission.remaining,
                reset_in_ms=admission.reset_in_ms,
            )

        try:
            output = await asyncio.wait_for(
                self.extractor.extract(page_content), timeout=self.extraction_timeout_seconds
            )
        except ExtractionError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            error = ErrorDetail(code=LLM_ERROR, message=str(exc))
            await self.store.fail_step(payload.step_id, error)
            logger.error(f"Page {payload.page_number} of workflow {payload.workflow_id} failed extraction: {exc}")
            if self.metrics:
                self.metrics.record_page("failed", duration_ms / 1000)
            await self.detector.check(payload.workflow_id)
            return PageOutcome(
                payload.step_id, error=error.to_dict(), processing_time_ms=duration_ms
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        stored = await self.store.complete_step(
            payload.step_id,
            output.data,
            {
                "processing_time_ms": duration_ms,
                "model_name": output.model_name,
                "confidence": output.confidence,
            },
        )
        if stored:
            logger.info(
                f"Page {payload.page_number} of workflow {payload.workflow_id} "
                f"succeeded in {duration_ms}ms"
            )
        else:
            logger.warning(f"Step {payload.step_id} was already terminal; result discarded")
        if self.metrics:
            self.metrics.record_page("succeeded", duration_ms / 1000, output.confidence)

        await self.detector.check(payload.workflow_id)
        return PageOutcome(payload.step_id, success=stored, processing_time_ms=duration_ms)

    async def handle_dead_letter(self, job: Job, reason: str):
        """
        Fail the page's step once its job is dead-lettered.

        Covers deliveries that never reached the handler's own failure path,
        such as a job that stalled on every attempt or timed out on its last.
        """
        payload = PageJobPayload.from_dict(job.payload)
        error = ErrorDetail(code=PAGE_PROCESSING_ERROR, message=reason)
        await self._fail_step(payload, error)

    async def _record_failure(self, payload: PageJobPayload, exc: Exception):
        error = ErrorDetail(
            code=PAGE_PROCESSING_ERROR,
            message=str(exc) or type(exc).__name__,
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        await self._fail_step(payload, error)

    async def _fail_step(self, payload: PageJobPayload, error: ErrorDetail):
        if await self.store.fail_step(payload.step_id, error):
            logger.error(
                f"Page {payload.page_number} of workflow {payload.workflow_id} failed "
                f"permanently: {error.message}"
            )
            if self.metrics:
                self.metrics.record_page("failed")
        await self.detector.check(payload.workflow_id)
