"""
Workflow State Store

Durable records for workflows and their page steps. Both workers mutate these
records concurrently, so every state change is a conditional write: it only
applies if the record is still in an expected predecessor state.

Usage:
    from pageflow.workflow_store import PostgresWorkflowStore

    store = await PostgresWorkflowStore.connect(DatabaseConfig.from_env())
    await store.init_schema()
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg

from .config import DatabaseConfig
from .models import (
    ErrorDetail,
    PageUnit,
    StepCounts,
    StepState,
    TERMINAL_WORKFLOW_STATES,
    Workflow,
    WorkflowState,
    WorkflowStep,
    utcnow,
    workflow_predecessors,
)

logger = logging.getLogger(__name__)

NON_TERMINAL_STEP_STATES = (StepState.PENDING, StepState.RUNNING)


def _state_values(states: Iterable) -> List[str]:
    return [WorkflowState(s).value for s in states]


# =============================================================================
# INTERFACE
# =============================================================================

class WorkflowStore(ABC):
    """Workflow and step persistence with conditional transitions."""

    @abstractmethod
    async def create_workflow(
        self,
        source_file_ref: str,
        file_name: str = "",
        workflow_id: Optional[str] = None,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        """Create a workflow in `pending`; an existing id returns the stored record."""

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        pass

    async def get_workflow_with_steps(self, workflow_id: str) -> Tuple[Optional[Workflow], List[WorkflowStep]]:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            return None, []
        return workflow, await self.list_steps(workflow_id)

    @abstractmethod
    async def list_workflows(self, state: Optional[WorkflowState] = None, limit: int = 50) -> List[Workflow]:
        """Most recently created first."""

    @abstractmethod
    async def transition_workflow(
        self,
        workflow_id: str,
        to_state: WorkflowState,
        from_states: Optional[Iterable[WorkflowState]] = None,
        error: Optional[ErrorDetail] = None,
    ) -> bool:
        """
        Move a workflow to `to_state` if it is currently in one of `from_states`.

        from_states defaults to every valid predecessor of to_state. Returns
        True only for the caller whose update applied.
        """

    @abstractmethod
    async def set_total_steps(self, workflow_id: str, total: int) -> None:
        pass

    @abstractmethod
    async def record_progress(self, workflow_id: str, completed: int) -> int:
        """Raise completed_steps to at least `completed`; returns the stored value."""

    @abstractmethod
    async def create_steps(self, workflow_id: str, pages: List[PageUnit]) -> List[WorkflowStep]:
        """Create pending steps, skipping page numbers that already exist; returns all steps."""

    @abstractmethod
    async def list_steps(self, workflow_id: str) -> List[WorkflowStep]:
        """Steps ordered by page number."""

    @abstractmethod
    async def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        pass

    @abstractmethod
    async def start_step(self, step_id: str) -> Optional[WorkflowStep]:
        """Move a non-terminal step to `running` and count the attempt; None if terminal."""

    @abstractmethod
    async def complete_step(self, step_id: str, result: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    async def fail_step(self, step_id: str, error: ErrorDetail) -> bool:
        pass

    async def count_steps(self, workflow_id: str) -> StepCounts:
        return StepCounts.from_steps(await self.list_steps(workflow_id))

    async def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryWorkflowStore(WorkflowStore):
    """Single-process store; a lock serializes every read-modify-write."""

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}
        self._steps: Dict[str, WorkflowStep] = {}
        self._steps_by_workflow: Dict[str, Dict[int, str]] = {}
        self._lock = asyncio.Lock()

    async def create_workflow(
        self,
        source_file_ref: str,
        file_name: str = "",
        workflow_id: Optional[str] = None,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        workflow_id = workflow_id or str(uuid.uuid4())
        async with self._lock:
            existing = self._workflows.get(workflow_id)
            if existing is None:
                existing = Workflow(
                    workflow_id=workflow_id,
                    source_file_ref=source_file_ref,
                    file_name=file_name,
                    priority=priority,
                    metadata=dict(metadata or {}),
                )
                self._workflows[workflow_id] = existing
            return replace(existing)

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self._workflows.get(workflow_id)
        return replace(workflow) if workflow else None

    async def list_workflows(self, state: Optional[WorkflowState] = None, limit: int = 50) -> List[Workflow]:
        workflows = [
            w for w in self._workflows.values()
            if state is None or w.state == WorkflowState(state)
        ]
        workflows.sort(key=lambda w: w.created_at, reverse=True)
        return [replace(w) for w in workflows[:limit]]

    async def transition_workflow(
        self,
        workflow_id: str,
        to_state: WorkflowState,
        from_states: Optional[Iterable[WorkflowState]] = None,
        error: Optional[ErrorDetail] = None,
    ) -> bool:
        to_state = WorkflowState(to_state)
        allowed = set(from_states) if from_states is not None else workflow_predecessors(to_state)
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None or workflow.state not in allowed:
                return False
            now = utcnow()
            workflow.state = to_state
            workflow.updated_at = now
            if to_state == WorkflowState.SPLITTING and workflow.started_at is None:
                workflow.started_at = now
            if to_state in TERMINAL_WORKFLOW_STATES:
                workflow.finished_at = now
            if error is not None:
                workflow.error_summary = error
            return True

    async def set_total_steps(self, workflow_id: str, total: int) -> None:
        async with self._lock:
            workflow = self._workflows[workflow_id]
            workflow.total_steps = total
            workflow.updated_at = utcnow()

    async def record_progress(self, workflow_id: str, completed: int) -> int:
        async with self._lock:
            workflow = self._workflows[workflow_id]
            if completed > workflow.completed_steps:
                workflow.completed_steps = completed
                workflow.updated_at = utcnow()
            return workflow.completed_steps

    async def create_steps(self, workflow_id: str, pages: List[PageUnit]) -> List[WorkflowStep]:
        async with self._lock:
            by_page = self._steps_by_workflow.setdefault(workflow_id, {})
            for page in pages:
                if page.page_number in by_page:
                    continue
                step = WorkflowStep(
                    step_id=str(uuid.uuid4()),
                    workflow_id=workflow_id,
                    page_number=page.page_number,
                    page_ref=page.page_ref,
                )
                self._steps[step.step_id] = step
                by_page[page.page_number] = step.step_id
            return [replace(self._steps[by_page[n]]) for n in sorted(by_page)]

    async def list_steps(self, workflow_id: str) -> List[WorkflowStep]:
        by_page = self._steps_by_workflow.get(workflow_id, {})
        return [replace(self._steps[by_page[n]]) for n in sorted(by_page)]

    async def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        step = self._steps.get(step_id)
        return replace(step) if step else None

    async def start_step(self, step_id: str) -> Optional[WorkflowStep]:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.state not in NON_TERMINAL_STEP_STATES:
                return None
            step.state = StepState.RUNNING
            step.attempts += 1
            if step.started_at is None:
                step.started_at = utcnow()
            return replace(step)

    async def complete_step(self, step_id: str, result: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.state not in NON_TERMINAL_STEP_STATES:
                return False
            step.state = StepState.SUCCEEDED
            step.result = result
            step.metadata = {**step.metadata, **metadata}
            step.finished_at = utcnow()
            return True

    async def fail_step(self, step_id: str, error: ErrorDetail) -> bool:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.state not in NON_TERMINAL_STEP_STATES:
                return False
            step.state = StepState.FAILED
            step.error = error
            step.finished_at = utcnow()
            return True


# =============================================================================
# POSTGRES STORE
# =============================================================================

SCHEMA_SQL = """
-- PageFlow workflow schema

CREATE TABLE IF NOT EXISTS workflows (
    workflow_id TEXT PRIMARY KEY,
    state TEXT NOT NULL DEFAULT 'pending',
    source_file_ref TEXT NOT NULL,
    file_name TEXT NOT NULL DEFAULT '',
    priority INTEGER NOT NULL DEFAULT 0,
    total_steps INTEGER,
    completed_steps INTEGER NOT NULL DEFAULT 0,
    error_summary JSONB,
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_workflows_state ON workflows(state);
CREATE INDEX IF NOT EXISTS idx_workflows_created_at ON workflows(created_at DESC);

CREATE TABLE IF NOT EXISTS workflow_steps (
    step_id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL REFERENCES workflows(workflow_id) ON DELETE CASCADE,
    page_number INTEGER NOT NULL,
    page_ref TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    result JSONB,
    error_detail JSONB,
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ,
    UNIQUE (workflow_id, page_number)
);

CREATE INDEX IF NOT EXISTS idx_workflow_steps_workflow_id ON workflow_steps(workflow_id);
CREATE INDEX IF NOT EXISTS idx_workflow_steps_state ON workflow_steps(workflow_id, state);
"""


def _json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


def _workflow_from_row(row) -> Workflow:
    return Workflow(
        workflow_id=row["workflow_id"],
        state=WorkflowState(row["state"]),
        source_file_ref=row["source_file_ref"],
        file_name=row["file_name"],
        priority=row["priority"],
        total_steps=row["total_steps"],
        completed_steps=row["completed_steps"],
        error_summary=ErrorDetail.from_dict(_load(row["error_summary"])),
        metadata=_load(row["metadata"]) or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def _step_from_row(row) -> WorkflowStep:
    return WorkflowStep(
        step_id=row["step_id"],
        workflow_id=row["workflow_id"],
        page_number=row["page_number"],
        page_ref=row["page_ref"],
        state=StepState(row["state"]),
        attempts=row["attempts"],
        result=_load(row["result"]),
        error=ErrorDetail.from_dict(_load(row["error_detail"])),
        metadata=_load(row["metadata"]) or {},
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


class PostgresWorkflowStore(WorkflowStore):
    """asyncpg-backed store; conditional UPDATEs guard every transition."""

    def __init__(self, pool: "asyncpg.Pool"):
        self.pool = pool

    @classmethod
    async def connect(cls, config: DatabaseConfig) -> "PostgresWorkflowStore":
        # Transaction poolers (port 6543) do not support prepared statements
        is_pooler = ":6543" in config.database_url
        pool = await asyncpg.create_pool(
            config.database_url,
            min_size=config.min_connections,
            max_size=config.max_connections,
            statement_cache_size=0 if is_pooler else 100,
            command_timeout=config.command_timeout_seconds,
        )
        logger.info(f"Connected to PostgreSQL workflow store (Pooler: {is_pooler})")
        return cls(pool)

    async def init_schema(self):
        """Create tables and indexes if they do not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Workflow schema initialized")

    async def create_workflow(
        self,
        source_file_ref: str,
        file_name: str = "",
        workflow_id: Optional[str] = None,
        priority: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        workflow_id = workflow_id or str(uuid.uuid4())
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO workflows (workflow_id, source_file_ref, file_name, priority, metadata)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (workflow_id) DO NOTHING
            """, workflow_id, source_file_ref, file_name, priority, json.dumps(metadata or {}))
            row = await conn.fetchrow(
                "SELECT * FROM workflows WHERE workflow_id = $1", workflow_id
            )
        return _workflow_from_row(row)

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflows WHERE workflow_id = $1", workflow_id
            )
        return _workflow_from_row(row) if row else None

    async def list_workflows(self, state: Optional[WorkflowState] = None, limit: int = 50) -> List[Workflow]:
        async with self.pool.acquire() as conn:
            if state is None:
                rows = await conn.fetch(
                    "SELECT * FROM workflows ORDER BY created_at DESC LIMIT $1", limit
                )
            else:
                rows = await conn.fetch("""
                    SELECT * FROM workflows WHERE state = $1
                    ORDER BY created_at DESC LIMIT $2
                """, WorkflowState(state).value, limit)
        return [_workflow_from_row(row) for row in rows]

    async def transition_workflow(
        self,
        workflow_id: str,
        to_state: WorkflowState,
        from_states: Optional[Iterable[WorkflowState]] = None,
        error: Optional[ErrorDetail] = None,
    ) -> bool:
        to_state = WorkflowState(to_state)
        allowed = _state_values(from_states if from_states is not None else workflow_predecessors(to_state))
        terminal = to_state in TERMINAL_WORKFLOW_STATES
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE workflows
                SET state = $2,
                    updated_at = NOW(),
                    started_at = CASE WHEN $2 = 'splitting' THEN COALESCE(started_at, NOW()) ELSE started_at END,
                    finished_at = CASE WHEN $4 THEN NOW() ELSE finished_at END,
                    error_summary = COALESCE($5::jsonb, error_summary)
                WHERE workflow_id = $1 AND state = ANY($3::text[])
            """, workflow_id, to_state.value, allowed, terminal,
                _json(error.to_dict()) if error else None)
        return "UPDATE 1" in result

    async def set_total_steps(self, workflow_id: str, total: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE workflows SET total_steps = $2, updated_at = NOW() WHERE workflow_id = $1",
                workflow_id, total
            )

    async def record_progress(self, workflow_id: str, completed: int) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("""
                UPDATE workflows
                SET completed_steps = GREATEST(completed_steps, $2), updated_at = NOW()
                WHERE workflow_id = $1
                RETURNING completed_steps
            """, workflow_id, completed)

    async def create_steps(self, workflow_id: str, pages: List[PageUnit]) -> List[WorkflowStep]:
        if pages:
            async with self.pool.acquire() as conn:
                await conn.executemany("""
                    INSERT INTO workflow_steps (step_id, workflow_id, page_number, page_ref)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (workflow_id, page_number) DO NOTHING
                """, [
                    (str(uuid.uuid4()), workflow_id, page.page_number, page.page_ref)
                    for page in pages
                ])
        return await self.list_steps(workflow_id)

    async def list_steps(self, workflow_id: str) -> List[WorkflowStep]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE workflow_id = $1 ORDER BY page_number",
                workflow_id
            )
        return [_step_from_row(row) for row in rows]

    async def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_steps WHERE step_id = $1", step_id
            )
        return _step_from_row(row) if row else None

    async def start_step(self, step_id: str) -> Optional[WorkflowStep]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE workflow_steps
                SET state = 'running',
                    attempts = attempts + 1,
                    started_at = COALESCE(started_at, NOW())
                WHERE step_id = $1 AND state IN ('pending', 'running')
                RETURNING *
            """, step_id)
        return _step_from_row(row) if row else None

    async def complete_step(self, step_id: str, result: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute("""
                UPDATE workflow_steps
                SET state = 'succeeded',
                    result = $2::jsonb,
                    metadata = metadata || $3::jsonb,
                    finished_at = NOW()
                WHERE step_id = $1 AND state IN ('pending', 'running')
            """, step_id, json.dumps(result), json.dumps(metadata))
        return "UPDATE 1" in status

    async def fail_step(self, step_id: str, error: ErrorDetail) -> bool:
        async with self.pool.acquire() as conn:
            status = await conn.execute("""
                UPDATE workflow_steps
                SET state = 'failed', error_detail = $2::jsonb, finished_at = NOW()
                WHERE step_id = $1 AND state IN ('pending', 'running')
            """, step_id, json.dumps(error.to_dict()))
        return "UPDATE 1" in status

    async def count_steps(self, workflow_id: str) -> StepCounts:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT state, COUNT(*) AS n FROM workflow_steps
                WHERE workflow_id = $1 GROUP BY state
            """, workflow_id)
        counts = StepCounts()
        for row in rows:
            setattr(counts, row["state"], row["n"])
            counts.total += row["n"]
        return counts

    async def close(self) -> None:
        await self.pool.close()
        logger.info("Database pool closed")
