"""
Custom exceptions for the notes sync engine with structured error context.

Every error raised by the fetcher, transformers, loader, gate, lock and
orchestrator derives from SyncException, carrying a context dictionary
for logging and for the failed-execution marker.

Exception Hierarchy:
    SyncException (base)
    ├── FetchError
    │   ├── NetworkError            (retryable)
    │   ├── RateLimitError          (retryable)
    │   ├── ServerError             (retryable)
    │   ├── AuthenticationError     (non-retryable)
    │   ├── ResourceNotFoundError   (non-retryable)
    │   ├── RequestRejectedError    (non-retryable)
    │   ├── CircuitOpenError
    │   └── FetchExhaustedError
    ├── TransformationError
    │   └── DataFormatError
    ├── LoadError
    │   ├── DatabaseError
    │   └── UpsertError
    ├── CheckpointError
    ├── PreconditionError
    ├── LockContentionError
    ├── PreviousFailureError
    ├── ShutdownInProgress
    ├── ConfigurationError
    ├── FatalSyncError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any

from core.exit_codes import ExitCode
from core.timeutil import utcnow


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (cycle id, resource id, ...)
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
        self.timestamp = utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

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
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """
    pass


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    - Malformed documents
    """
    pass


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchError(SyncException):
    """Base exception for external download failures."""
    pass


class NetworkError(RetryableError, FetchError):
    """Connection resets, timeouts and other transport failures."""
    pass


class RateLimitError(RetryableError, FetchError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds the server asked us to wait
        if retry_after is not None:
            self.context["retry_after"] = retry_after


class ServerError(RetryableError, FetchError):
    """HTTP 5xx responses."""
    pass


class AuthenticationError(NonRetryableError, FetchError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, FetchError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


class RequestRejectedError(NonRetryableError, FetchError):
    """Other 4xx responses: the request itself is wrong."""
    pass


class CircuitOpenError(FetchError):
    """
    Raised when the circuit breaker rejects a request.

    Not counted as an attempt: the caller waits ``retry_in`` seconds and
    tries again.
    """

    def __init__(self, message: str, retry_in: float, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.retry_in = retry_in
        self.context["retry_in"] = retry_in


class FetchExhaustedError(FetchError):
    """
    Raised when a download ticket used up all of its attempts.

    Context includes:
        - resource_id: The resource that could not be fetched
        - attempts: Number of attempts made

    The error from the final attempt is chained as the cause.
    """

    def __init__(
        self,
        resource_id: str,
        attempts: int,
        last_error: Optional[Exception] = None
    ):
        super().__init__(
            f"Retries exhausted for {resource_id} after {attempts} attempts",
            context={"resource_id": resource_id, "attempts": attempts},
            original_exception=last_error,
        )
        self.resource_id = resource_id
        self.attempts = attempts


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(SyncException):
    """Base exception for document transformation failures."""
    pass


class DataFormatError(NonRetryableError, TransformationError):
    """
    Raised when a feed document cannot be parsed.

    Context should include:
        - partition_index: Index of the failing partition (if applicable)
        - byte_range: Start/end offsets of the failing slice
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(SyncException):
    """Base exception for staging and merge failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPSERT, TRUNCATE)
        - table_name: Name of the table
    """
    pass


class UpsertError(LoadError):
    """Raised when merging staging rows into the durable tables fails."""
    pass


# ============================================================================
# Checkpoint / Precondition / Operator Errors
# ============================================================================

class CheckpointError(SyncException):
    """Raised when the sync checkpoint cannot be read or written."""
    pass


class PreconditionError(SyncException):
    """Raised when base tables required by a cycle are missing."""
    pass


class LockContentionError(SyncException):
    """Raised when another live owner holds the exclusivity lock."""

    def __init__(self, lock_name: str, holder: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Lock '{lock_name}' is held by another process",
            context={"lock_name": lock_name, "holder": holder or {}},
        )
        self.lock_name = lock_name
        self.holder = holder or {}


class ShutdownInProgress(SyncException):
    """Raised when new work is submitted after a cooperative shutdown began."""
    pass


class PreviousFailureError(SyncException):
    """Raised when a failed-execution marker from an earlier run exists."""
    pass


class ConfigurationError(SyncException):
    """Raised when settings are invalid."""
    pass


class FatalSyncError(SyncException):
    """
    The only error the orchestrator lets escape a cycle.

    Carries the exit code the process should terminate with; the
    failed-execution marker has already been written when this is raised.
    """

    def __init__(
        self,
        message: str,
        exit_code: ExitCode,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.exit_code = exit_code


def exit_code_for(error: BaseException) -> ExitCode:
    """Map an error to the exit code operators see."""
    if isinstance(error, FatalSyncError):
        return error.exit_code
    if isinstance(error, ShutdownInProgress):
        return ExitCode.OK
    if isinstance(error, LockContentionError):
        return ExitCode.LOCK_CONTENTION
    if isinstance(error, PreviousFailureError):
        return ExitCode.PREVIOUS_FAILURE
    if isinstance(error, ConfigurationError):
        return ExitCode.CONFIGURATION_ERROR
    if isinstance(error, PreconditionError):
        return ExitCode.PRECONDITION_FAILED
    if isinstance(error, (FetchExhaustedError, LoadError, CheckpointError, TransformationError)):
        return ExitCode.INTEGRITY_HALT
    return ExitCode.GENERAL_ERROR
