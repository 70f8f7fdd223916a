"""
Workflow Data Model

Workflow and step records, their state machines, and the job payloads
exchanged between the split and page stages.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import InvalidTransitionError


# Queue and job names
SPLIT_QUEUE = "split"
PAGE_QUEUE = "process-page"
SPLIT_JOB_NAME = "split-pdf"
PAGE_JOB_NAME = "process-page"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class WorkflowState(str, Enum):
    """Lifecycle of a submitted document."""
    PENDING = "pending"
    SPLITTING = "splitting"
    PROCESSING = "processing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepState(str, Enum):
    """Lifecycle of a single page step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


WORKFLOW_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    WorkflowState.PENDING: frozenset({
        WorkflowState.SPLITTING, WorkflowState.FAILED, WorkflowState.CANCELLED,
    }),
    WorkflowState.SPLITTING: frozenset({
        WorkflowState.PROCESSING, WorkflowState.FAILED, WorkflowState.CANCELLED,
    }),
    WorkflowState.PROCESSING: frozenset({
        WorkflowState.AGGREGATING, WorkflowState.FAILED, WorkflowState.CANCELLED,
    }),
    WorkflowState.AGGREGATING: frozenset({
        WorkflowState.COMPLETED, WorkflowState.FAILED,
    }),
    WorkflowState.COMPLETED: frozenset(),
    WorkflowState.FAILED: frozenset(),
    WorkflowState.CANCELLED: frozenset(),
}

TERMINAL_WORKFLOW_STATES = frozenset(
    state for state, targets in WORKFLOW_TRANSITIONS.items() if not targets
)
TERMINAL_STEP_STATES = frozenset({StepState.SUCCEEDED, StepState.FAILED})

# Everything after splitting; a split job seeing one of these is a redelivery
PAST_SPLITTING_STATES = frozenset({
    WorkflowState.PROCESSING,
    WorkflowState.AGGREGATING,
    WorkflowState.COMPLETED,
    WorkflowState.FAILED,
    WorkflowState.CANCELLED,
})


def workflow_predecessors(to_state: WorkflowState) -> FrozenSet[WorkflowState]:
    """States from which `to_state` may be entered."""
    to_state = WorkflowState(to_state)
    predecessors = frozenset(
        state for state, targets in WORKFLOW_TRANSITIONS.items() if to_state in targets
    )
    if not predecessors:
        raise InvalidTransitionError(f"No state transitions into '{to_state.value}'")
    return predecessors


def can_transition(from_state: WorkflowState, to_state: WorkflowState) -> bool:
    return WorkflowState(to_state) in WORKFLOW_TRANSITIONS[WorkflowState(from_state)]


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class ErrorDetail:
    """Error summary stored on a workflow or step."""
    code: str
    message: str
    stack: Optional[str] = None
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.stack:
            data["stack"] = self.stack
        if self.step_id:
            data["step_id"] = self.step_id
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ErrorDetail"]:
        if not data:
            return None
        return cls(
            code=data["code"],
            message=data.get("message", ""),
            stack=data.get("stack"),
            step_id=data.get("step_id"),
        )


@dataclass
class Workflow:
    """One submitted document."""
    workflow_id: str
    source_file_ref: str
    file_name: str = ""
    state: WorkflowState = WorkflowState.PENDING
    priority: int = 0
    total_steps: Optional[int] = None
    completed_steps: int = 0
    error_summary: Optional[ErrorDetail] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_WORKFLOW_STATES

    @property
    def progress(self) -> float:
        """Fraction of steps that reached a terminal state."""
        if not self.total_steps:
            return 0.0
        return min(1.0, self.completed_steps / self.total_steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "state": self.state.value,
            "source_file_ref": self.source_file_ref,
            "file_name": self.file_name,
            "priority": self.priority,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "progress": round(self.progress, 4),
            "error_summary": self.error_summary.to_dict() if self.error_summary else None,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class WorkflowStep:
    """One page of a workflow."""
    step_id: str
    workflow_id: str
    page_number: int
    page_ref: str
    state: StepState = StepState.PENDING
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[ErrorDetail] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def step_key(self) -> str:
        return f"page-{self.page_number}"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STEP_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "workflow_id": self.workflow_id,
            "step_key": self.step_key,
            "page_number": self.page_number,
            "page_ref": self.page_ref,
            "state": self.state.value,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "metadata": self.metadata,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class PageUnit:
    """A page produced by the splitter, already uploaded to the file store."""
    page_number: int
    page_ref: str


@dataclass
class StepCounts:
    """Per-state step counts for one workflow."""
    total: int = 0
    pending: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def terminal(self) -> int:
        return self.succeeded + self.failed

    @property
    def all_terminal(self) -> bool:
        return self.total > 0 and self.terminal == self.total

    @classmethod
    def from_steps(cls, steps: List[WorkflowStep]) -> "StepCounts":
        counts = cls(total=len(steps))
        for step in steps:
            attr = step.state.value
            setattr(counts, attr, getattr(counts, attr) + 1)
        return counts


# =============================================================================
# JOB PAYLOADS
# =============================================================================

@dataclass
class SplitJobPayload:
    """Payload of a `split-pdf` job."""
    workflow_id: str
    source_file_ref: str

    def to_dict(self) -> Dict[str, Any]:
        return {"workflow_id": self.workflow_id, "source_file_ref": self.source_file_ref}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SplitJobPayload":
        return cls(workflow_id=data["workflow_id"], source_file_ref=data["source_file_ref"])


@dataclass
class PageJobPayload:
    """Payload of a `process-page` job."""
    workflow_id: str
    step_id: str
    page_number: int
    page_ref: str
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "page_number": self.page_number,
            "page_ref": self.page_ref,
            "total_pages": self.total_pages,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageJobPayload":
        return cls(
            workflow_id=data["workflow_id"],
            step_id=data["step_id"],
            page_number=int(data["page_number"]),
            page_ref=data["page_ref"],
            total_pages=int(data["total_pages"]),
        )
