"""Result and error types shared by the reconciliation pipelines.

Inside a component, precondition violations are raised as PipelineException
subclasses (the same way the status modules raise StateTransitionError).
At the component boundary they are converted into an OperationResult so that
pipeline-level failures never propagate past the orchestrators.

Only inputs a component cannot process at all (invalid time range, unknown
store, unknown entity id) raise InvalidRequestError / EntityNotFoundError to
the caller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from .state_machine import StateTransitionError

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error taxonomy used for retry decisions."""
    RETRYABLE = "RETRYABLE"        # network, timeout, rate limit, 5xx
    FATAL = "FATAL"                # auth failed, forbidden, malformed payload
    PRECONDITION = "PRECONDITION"  # rejected before any external call
    VALIDATION = "VALIDATION"      # reconciliation mismatch


@dataclass
class PipelineError:
    """Structured error attached to a failed operation.

    Attributes:
        kind: Error classification
        code: Stable machine-readable code (e.g. MAPPING_REQUIRED)
        message: Human-readable message
        detail: Structured detail (unmapped keys, discrepancies, ...)
    """
    kind: ErrorKind
    code: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a pipeline operation.

    value carries the affected entity on success and, where one exists, on
    failure too (e.g. the FAILED SyncJob), so callers can inspect what was
    recorded.
    """
    success: bool
    value: Optional[T] = None
    error: Optional[PipelineError] = None

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: PipelineError, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=False, value=value, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None


class PipelineException(Exception):
    """Base class for errors raised inside pipeline components."""

    kind: ErrorKind = ErrorKind.PRECONDITION
    code: str = "PIPELINE_ERROR"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_error(self) -> PipelineError:
        return PipelineError(kind=self.kind, code=self.code, message=self.message, detail=self.detail)


class MappingRequiredError(PipelineException):
    """Raised when order lines lack a MAPPED product mapping."""

    code = "MAPPING_REQUIRED"

    def __init__(self, unmapped_keys: List[str]):
        self.unmapped_keys = list(unmapped_keys)
        super().__init__(
            f"Product mapping required for: {', '.join(self.unmapped_keys)}",
            detail={"unmapped_keys": self.unmapped_keys},
        )


class DuplicateTrackingError(PipelineException):
    """Raised when re-issuing a tracking number that was already pushed."""

    code = "DUPLICATE_TRACKING"


class AlreadyCompletedError(PipelineException):
    """Raised when an operation targets a unit that already finished."""

    code = "ALREADY_COMPLETED"


class ConcurrentOperationError(PipelineException):
    """Raised when another worker holds the unit (sync lock, in-flight posting)."""

    code = "CONCURRENT_OPERATION"


class ReconciliationMismatchError(PipelineException):
    """Raised when settlement totals disagree beyond tolerance."""

    kind = ErrorKind.VALIDATION
    code = "SETTLEMENT_MISMATCH"


class InvalidRequestError(ValueError):
    """Input the component cannot process at all."""


class EntityNotFoundError(LookupError):
    """Referenced entity does not exist for the tenant."""


def error_from_exception(exc: Exception) -> PipelineError:
    """Convert a pipeline-internal exception to a PipelineError."""
    if isinstance(exc, PipelineException):
        return exc.to_error()
    if isinstance(exc, StateTransitionError):
        return PipelineError(
            kind=ErrorKind.PRECONDITION,
            code="INVALID_STATE_TRANSITION",
            message=str(exc),
            detail={
                "machine": exc.machine,
                "current": exc.current.value,
                "target": exc.target.value,
            },
        )
    raise TypeError(f"Not a pipeline exception: {exc!r}")
