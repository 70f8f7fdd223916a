"""
Pipeline Errors

Exception taxonomy shared by the workers and the job queue.

The queue only looks at two attributes on a raised exception:
- retryable: False sends the job straight to the dead letter set
- consumes_attempt: False reschedules the job without spending an attempt
"""

from typing import Optional


# Error codes written to workflow and step records
SPLIT_ERROR = "SPLIT_ERROR"
LLM_ERROR = "LLM_ERROR"
PAGE_PROCESSING_ERROR = "PAGE_PROCESSING_ERROR"
PARTIAL_FAILURE = "PARTIAL_FAILURE"
RATE_LIMITED = "RATE_LIMITED"


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    code = "PIPELINE_ERROR"
    retryable = True
    consumes_attempt = True


# =============================================================================
# SPLIT STAGE
# =============================================================================

class SplitError(PipelineError):
    """Splitting a document failed."""
    code = SPLIT_ERROR


class DocumentSplitError(SplitError):
    """The source document is malformed and cannot be partitioned into pages."""
    retryable = False


# =============================================================================
# STATE LOOKUPS
# =============================================================================

class WorkflowNotFoundError(PipelineError):
    """A job references a workflow that does not exist."""
    code = "WORKFLOW_NOT_FOUND"
    retryable = False

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class StepNotFoundError(PipelineError):
    """A job references a step that does not exist."""
    code = "STEP_NOT_FOUND"
    retryable = False

    def __init__(self, step_id: str):
        super().__init__(f"Workflow step {step_id} not found")
        self.step_id = step_id


class InvalidTransitionError(PipelineError):
    """Raised for a transition the state machine does not define."""
    code = "INVALID_TRANSITION"
    retryable = False


# =============================================================================
# RETRYABLE
# =============================================================================

class RetryableError(PipelineError):
    """Transient failure; the queue retries it with backoff."""
    code = "RETRYABLE_ERROR"

    def __init__(self, message: str, retry_after_ms: int = 0):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class RateLimitExceededError(RetryableError):
    """Admission was denied by the rate limiter."""
    code = RATE_LIMITED
    consumes_attempt = False

    def __init__(
        self,
        service_name: str,
        retry_after_ms: int,
        remaining: int = 0,
        reset_in_ms: Optional[int] = None,
    ):
        super().__init__(
            f"Rate limit exceeded for {service_name}. Retry after {retry_after_ms}ms",
            retry_after_ms=retry_after_ms,
        )
        self.service_name = service_name
        self.remaining = remaining
        self.reset_in_ms = reset_in_ms if reset_in_ms is not None else retry_after_ms


class ExtractionRetryableError(RetryableError):
    """The extraction service is overloaded or returned a 5xx."""
    code = "LLM_RETRYABLE_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after_ms: int = 0):
        super().__init__(message, retry_after_ms=retry_after_ms)
        self.status_code = status_code


# =============================================================================
# TERMINAL
# =============================================================================

class ExtractionError(PipelineError):
    """Extraction failed in a way retrying cannot fix (bad input, unparseable output)."""
    code = LLM_ERROR
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_retryable(exc: BaseException) -> bool:
    """Whether the queue should retry after this exception."""
    return getattr(exc, "retryable", True)
