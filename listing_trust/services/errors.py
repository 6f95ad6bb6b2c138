from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_INPUT = "invalid_input"
    PRECONDITION_FAILED = "precondition_failed"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class PipelineError(Exception):
    """Base error for every failure the pipeline reports to its callers."""

    kind: ErrorKind = ErrorKind.INTERNAL


class NotFoundError(PipelineError):
    """Raised when a listing does not exist or the actor cannot see it."""

    kind = ErrorKind.NOT_FOUND


class ForbiddenError(PipelineError):
    """Raised when the actor lacks the capability for the requested action."""

    kind = ErrorKind.FORBIDDEN


class InvalidInputError(PipelineError):
    """Raised when a request is structurally malformed."""

    kind = ErrorKind.INVALID_INPUT


class PreconditionFailedError(PipelineError):
    """Raised when the persisted listing state does not satisfy a transition guard."""

    kind = ErrorKind.PRECONDITION_FAILED


class OperationTimeoutError(PipelineError):
    """Raised when a storage call exceeds the caller's timeout."""

    kind = ErrorKind.TIMEOUT


class RateLimitedError(PipelineError):
    """Raised when an actor exceeds the shared submission limit."""

    kind = ErrorKind.RATE_LIMITED


class UnavailableError(PipelineError):
    """Raised when the database is unavailable or not configured."""

    kind = ErrorKind.UNAVAILABLE


class AuditWriteError(PipelineError):
    """Raised when an audit entry could not be persisted; the transition is aborted."""

    kind = ErrorKind.INTERNAL
