"""
Document Pipeline

Wires the state store, job queue, file store, splitter, extraction client and
rate limiter into the two-stage pipeline, and exposes submission, status and
cancellation to callers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .completion import CompletionDetector
from .config import DatabaseConfig, PipelineSettings
from .extraction import ExtractionClient, MistralExtractionClient
from .job_queue import (
    InMemoryJobQueue,
    JobQueue,
    QueueWorker,
    RedisJobQueue,
    RetryConfig,
)
from .models import (
    PAGE_QUEUE,
    SPLIT_JOB_NAME,
    SPLIT_QUEUE,
    SplitJobPayload,
    StepCounts,
    Workflow,
    WorkflowState,
    WorkflowStep,
)
from .monitoring import PipelineMetrics
from .page_worker import PageWorker
from .rate_limiter import (
    BaseRateLimiter,
    InMemoryRateLimiter,
    RedisRateLimiter,
    create_redis_client,
)
from .split_worker import SplitWorker
from .splitter import PDFSplitter
from .storage import FileStore, create_file_store, upload_path
from .workflow_store import InMemoryWorkflowStore, PostgresWorkflowStore, WorkflowStore

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = (WorkflowState.PENDING, WorkflowState.SPLITTING, WorkflowState.PROCESSING)


@dataclass
class WorkflowStatusReport:
    """Workflow record with its steps, for status queries."""
    workflow: Workflow
    steps: List[WorkflowStep] = field(default_factory=list)
    counts: StepCounts = field(default_factory=StepCounts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "counts": {
                "total": self.counts.total,
                "pending": self.counts.pending,
                "running": self.counts.running,
                "succeeded": self.counts.succeeded,
                "failed": self.counts.failed,
            },
        }


class DocumentPipeline:
    """
    Split/page pipeline over pluggable backends.

    Features:
    - Idempotent submission keyed by workflow id
    - Split and page workers with their own concurrency and retry policies
    - Status reports and cancellation
    """

    def __init__(
        self,
        store: WorkflowStore,
        queue: JobQueue,
        files: FileStore,
        extractor: ExtractionClient,
        rate_limiter: BaseRateLimiter,
        settings: Optional[PipelineSettings] = None,
        splitter: Optional[PDFSplitter] = None,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.settings = settings or PipelineSettings()
        self.store = store
        self.queue = queue
        self.files = files
        self.extractor = extractor
        self.rate_limiter = rate_limiter
        self.splitter = splitter or PDFSplitter()
        self.metrics = metrics or PipelineMetrics()
        self.detector = CompletionDetector(store, self.metrics)

        self.split_worker = SplitWorker(
            store=store,
            queue=queue,
            files=files,
            splitter=self.splitter,
            detector=self.detector,
            page_max_attempts=self.settings.page_max_attempts,
            fetch_timeout_seconds=self.settings.fetch_timeout_seconds,
            store_timeout_seconds=self.settings.store_timeout_seconds,
            metrics=self.metrics,
        )
        self.page_worker = PageWorker(
            store=store,
            files=files,
            extractor=extractor,
            rate_limiter=rate_limiter,
            detector=self.detector,
            fetch_timeout_seconds=self.settings.fetch_timeout_seconds,
            extraction_timeout_seconds=self.settings.extraction_timeout_seconds,
            metrics=self.metrics,
        )
        self._workers: List[QueueWorker] = []

    @classmethod
    async def from_settings(cls, settings: Optional[PipelineSettings] = None) -> "DocumentPipeline":
        """Build the pipeline from configured backends, falling back to local ones."""
        settings = settings or PipelineSettings.from_env()

        db_config = DatabaseConfig.from_env()
        if db_config.is_configured:
            store = await PostgresWorkflowStore.connect(db_config)
            await store.init_schema()
        else:
            logger.warning("Database not configured, using in-memory workflow store")
            store = InMemoryWorkflowStore()

        if settings.redis_url:
            queue = RedisJobQueue(create_redis_client(settings.redis_url, settings.redis_socket_timeout_seconds))
            limiter = RedisRateLimiter(create_redis_client(settings.redis_url, settings.redis_socket_timeout_seconds))
            logger.info("Using Redis job queue and rate limiter")
        else:
            logger.warning("Redis not configured, using in-memory job queue and rate limiter")
            queue = InMemoryJobQueue()
            limiter = InMemoryRateLimiter()

        extractor = MistralExtractionClient(
            api_key=settings.mistral_api_key,
            model=settings.extraction_model,
            vision_model=settings.vision_model,
        )
        return cls(
            store=store,
            queue=queue,
            files=create_file_store(settings),
            extractor=extractor,
            rate_limiter=limiter,
            settings=settings,
        )

    # -------------------------------------------------------------------------
    # Submission and queries
    # -------------------------------------------------------------------------

    async def submit(
        self,
        content: bytes,
        file_name: str,
        workflow_id: Optional[str] = None,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        """Store an uploaded PDF and start a workflow for it."""
        workflow_id = workflow_id or str(uuid.uuid4())
        ref = await self.files.store(
            content,
            upload_path(workflow_id, file_name),
            metadata={"workflow_id": workflow_id, "file_name": file_name},
        )
        return await self.submit_ref(ref, file_name, workflow_id, priority, metadata)

    async def submit_ref(
        self,
        source_file_ref: str,
        file_name: str = "",
        workflow_id: Optional[str] = None,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        """Start a workflow for a file that is already in the file store."""
        workflow = await self.store.create_workflow(
            source_file_ref=source_file_ref,
            file_name=file_name,
            workflow_id=workflow_id,
            priority=priority,
            metadata=metadata,
        )
        result = await self.queue.enqueue(
            SPLIT_QUEUE,
            SPLIT_JOB_NAME,
            SplitJobPayload(workflow.workflow_id, workflow.source_file_ref).to_dict(),
            idempotency_key=workflow.workflow_id,
            priority=priority,
            max_attempts=self.settings.split_max_attempts,
        )
        if result.created:
            logger.info(f"Workflow {workflow.workflow_id} submitted ({file_name or source_file_ref})")
            self.metrics.record_submitted()
        else:
            logger.info(f"Workflow {workflow.workflow_id} was already submitted")
        return workflow

    async def get_status(self, workflow_id: str) -> Optional[WorkflowStatusReport]:
        workflow, steps = await self.store.get_workflow_with_steps(workflow_id)
        if workflow is None:
            return None
        return WorkflowStatusReport(workflow=workflow, steps=steps, counts=StepCounts.from_steps(steps))

    async def list_workflows(self, state: Optional[WorkflowState] = None, limit: int = 50) -> List[Workflow]:
        return await self.store.list_workflows(state, limit)

    async def cancel(self, workflow_id: str) -> bool:
        """
        Stop a workflow from starting new work.

        Page jobs that have not started are skipped. Extractions already in
        flight finish and record their step, but the workflow stays cancelled.
        """
        cancelled = await self.store.transition_workflow(
            workflow_id, WorkflowState.CANCELLED, from_states=CANCELLABLE_STATES
        )
        if cancelled:
            logger.info(f"Workflow {workflow_id} cancelled")
            self.metrics.record_workflow_finished(WorkflowState.CANCELLED.value)
        return cancelled

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def _retry_config(self, max_attempts: int) -> RetryConfig:
        return RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=self.settings.backoff_base_seconds,
            max_delay_seconds=self.settings.backoff_max_seconds,
        )

    def build_workers(self, queues=(SPLIT_QUEUE, PAGE_QUEUE)) -> List[QueueWorker]:
        """Create consumers for the selected queues."""
        workers = []
        common = dict(
            lease_seconds=self.settings.job_lease_seconds,
            job_timeout_seconds=self.settings.job_timeout_seconds,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            stalled_check_interval_seconds=self.settings.stalled_check_interval_seconds,
            metrics=self.metrics,
        )
        if SPLIT_QUEUE in queues:
            workers.append(QueueWorker(
                self.queue, SPLIT_QUEUE, self.split_worker.handle,
                on_dead_letter=self.split_worker.handle_dead_letter,
                concurrency=self.settings.split_concurrency,
                retry_config=self._retry_config(self.settings.split_max_attempts),
                **common,
            ))
        if PAGE_QUEUE in queues:
            workers.append(QueueWorker(
                self.queue, PAGE_QUEUE, self.page_worker.handle,
                on_dead_letter=self.page_worker.handle_dead_letter,
                concurrency=self.settings.page_concurrency,
                retry_config=self._retry_config(self.settings.page_max_attempts),
                **common,
            ))
        return workers

    async def run(self, stop_event: asyncio.Event, queues=(SPLIT_QUEUE, PAGE_QUEUE)):
        """Run workers for the selected queues until stop_event is set."""
        self._workers = self.build_workers(queues)
        await asyncio.gather(*(worker.run(stop_event) for worker in self._workers))

    def export_metrics(self) -> str:
        """Pipeline metrics in Prometheus text format."""
        return self.metrics.registry.to_prometheus()

    async def close(self):
        await self.queue.close()
        await self.rate_limiter.close()
        await self.store.close()
        logger.info("Pipeline closed")
