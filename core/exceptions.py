"""
Custom exceptions for the scoring pipeline with structured error context.

This module provides the exception hierarchy used by the reference store
clients, the score engine and the backfill orchestrator. Each exception
includes context information so that failures can be journaled and
diagnosed without re-querying the store.

Exception Hierarchy:
    PipelineError (base)
    ├── StoreError
    │   ├── NetworkError          (retryable)
    │   ├── RateLimitError        (retryable)
    │   ├── ConstraintViolationError
    │   └── AuthenticationError
    ├── ReferenceDataError        (retryable)
    ├── WriteError
    │   └── ConditionalUpdateError
    ├── ScoreComputationError
    ├── CheckpointError
    ├── JournalError
    ├── SetupError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class PipelineError(Exception):
    """
    Base exception for all pipeline-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, table, ids, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Gateway errors (HTTP 502, 503, 504)
    """
    pass


class NonRetryableError(PipelineError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Constraint violations
    - Authentication failures (HTTP 401, 403)
    - Malformed requests
    """
    pass


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(PipelineError):
    """
    Exception raised when a reference store request fails.

    Carries the transport metadata that ends up in the failure journal:
        - status: HTTP status code (or None for driver-level failures)
        - code: Store error code (e.g. PostgreSQL SQLSTATE "23505")
        - details / hint: Structured detail text returned by the store
        - ray_id: Edge trace id (cf-ray header) when the store returned one
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
        hint: Optional[str] = None,
        ray_id: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.status = status
        self.code = code
        self.details = details
        self.hint = hint
        self.ray_id = ray_id
        if status is not None:
            self.context["status"] = status
        if code:
            self.context["code"] = code


class NetworkError(RetryableError, StoreError):
    """Network-related errors (timeouts, dropped connections, 5xx gateways)."""
    pass


class RateLimitError(RetryableError, StoreError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class ConstraintViolationError(NonRetryableError, StoreError):
    """Unique / foreign key / check constraint violations."""
    pass


class AuthenticationError(NonRetryableError, StoreError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


# ============================================================================
# Score Engine Errors
# ============================================================================

class ReferenceDataError(RetryableError):
    """
    Exception raised when the uncached score path cannot read reference data.

    Context should include:
        - table_name: Table that could not be read
        - source / source_id: Product being scored
    """
    pass


class ScoreComputationError(PipelineError):
    """
    Exception raised when a score bundle cannot be computed, or when the
    cached and uncached paths disagree in compare mode.
    """
    pass


# ============================================================================
# Write Errors
# ============================================================================

class WriteError(PipelineError):
    """Base exception for failed writes to the reference store."""
    pass


class ConditionalUpdateError(WriteError):
    """
    Exception raised when a guarded update affected zero rows.

    This happens when the row changed between read and write (for example a
    concurrent resolver already filled ``form_raw``).
    """
    pass


# ============================================================================
# Persistence Errors
# ============================================================================

class CheckpointError(PipelineError):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - checkpoint_file: Path of the checkpoint document
        - operation: Operation that failed (read, write)
    """
    pass


class JournalError(PipelineError):
    """Exception raised when the failure journal cannot be read or appended."""
    pass


class SetupError(PipelineError):
    """Fatal setup problem (bad flags, unreachable store). Aborts the run."""
    pass


def error_meta(error: BaseException) -> Dict[str, Any]:
    """
    Extract journal metadata from any exception.

    Store errors carry their own status/code/details/hint/ray_id; other
    exceptions contribute only their message.
    """
    meta = {
        "status": None,
        "code": None,
        "message": str(error),
        "details": None,
        "hint": None,
        "rayId": None,
    }
    if isinstance(error, PipelineError):
        meta["message"] = error.message
    if isinstance(error, StoreError):
        meta.update({
            "status": error.status,
            "code": error.code,
            "details": error.details,
            "hint": error.hint,
            "rayId": error.ray_id,
        })
    elif isinstance(error, PipelineError) and isinstance(error.original_exception, StoreError):
        nested = error_meta(error.original_exception)
        nested["message"] = f"{error.message}: {nested['message']}"
        return nested
    return meta
