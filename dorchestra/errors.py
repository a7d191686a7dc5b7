"""
Error classes for dorchestra execution.

These error types enable retry classification at the queue boundary:
- TransientError: Safe to retry (handler faults, timeouts, storage faults)
- PermanentError: Do not retry (invalid input, unknown operations, conflicts)

Units and the gateway raise these errors; the QueueBridge is the only
component that turns the classification into a retry or dead-letter decision.

Error handling contract:
- Results are success-only
- Errors are exceptions, not values
- Unknown exceptions raised inside a handler are wrapped in HandlerError
"""

from typing import Any, Optional


class DorchestraError(Exception):
    """Base exception for dorchestra."""

    retryable = False


class TransientError(DorchestraError):
    """
    Transient error - safe to retry.

    The QueueBridge re-delivers messages that fail with a TransientError
    until the configured retry budget is exhausted.
    """

    retryable = True


class PermanentError(DorchestraError):
    """
    Permanent error - do not retry.

    The QueueBridge dead-letters messages that fail with a PermanentError
    on the first failure.
    """

    retryable = False


# =============================================================================
# Caller input errors
# =============================================================================


class InvalidNameError(PermanentError):
    """Raised when a logical name (or namespace) is empty or not a string."""
    pass


class InvalidArgumentError(PermanentError):
    """Raised when call arguments are malformed or cannot be marshaled."""
    pass


class UnknownOperationError(PermanentError):
    """Raised when a unit has no operation with the requested name."""

    def __init__(self, namespace: str, operation: str, known: Optional[list[str]] = None):
        self.namespace = namespace
        self.operation = operation
        self.known = sorted(known or [])
        super().__init__(
            f"Unknown operation '{operation}' for unit namespace '{namespace}'. "
            f"Known: {self.known}"
        )


class UnknownNamespaceError(PermanentError):
    """Raised when no unit class is registered for a namespace."""
    pass


# =============================================================================
# Execution errors
# =============================================================================


class HandlerError(TransientError):
    """
    Business-logic fault inside an operation handler.

    Carries the original exception as `cause` (also chained as __cause__).
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class StateAccessError(PermanentError):
    """Raised when a handler touches a state field it did not declare."""
    pass


class CallTimeoutError(TransientError, TimeoutError):
    """
    Raised when a call does not complete within its deadline.

    The handler is only signalled to stop (cooperative cancellation); it may
    still finish and commit after the caller has seen this error.
    """

    def __init__(self, identity: str, operation: str, timeout: float):
        self.identity = identity
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Call {operation} on {identity} did not complete within {timeout}s"
        )


class ReentrantCallError(PermanentError):
    """Raised when a handler calls back into its own identity."""
    pass


class ConflictError(DorchestraError):
    """
    Raised by a StateStore when the stored revision does not match the
    expected revision of a save.
    """

    def __init__(self, identity: str, expected: int, actual: int):
        self.identity = identity
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Revision conflict for {identity}: expected {expected}, found {actual}"
        )


class ConcurrentMutationError(PermanentError):
    """
    Raised when a commit hits a ConflictError: another owner mutated the
    identity. The in-flight call is aborted and the resident instance dropped.
    """
    pass


class StorageError(TransientError):
    """
    StateStore fault other than a revision conflict (I/O error, locked
    database). Carries the original exception as `cause`.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


# =============================================================================
# Pipeline errors
# =============================================================================


class PipelineFailedError(HandlerError):
    """
    Raised when a pipeline step fails.

    Carries the partial PipelineResult (completed steps plus the failing
    step and its error). Not retryable: a failed orchestrator is terminal, so
    a retry must target a new identity.
    """

    retryable = False

    def __init__(self, message: str, result: Any = None, cause: Optional[BaseException] = None):
        self.result = result
        super().__init__(message, cause=cause)


class PipelineTerminatedError(PermanentError):
    """
    Raised when execute_pipeline targets a completed or failed orchestrator.

    Carries the persisted PipelineResult (as a dict) of the earlier run.
    """

    def __init__(self, message: str, result: Any = None):
        self.result = result
        super().__init__(message)


# =============================================================================
# Queue errors
# =============================================================================


class MalformedMessageError(PermanentError):
    """Raised when an inbound TaskMessage is structurally invalid."""
    pass


def is_retryable(exc: BaseException) -> bool:
    """
    Classify an exception for the retry-vs-dead-letter decision.

    DorchestraError subclasses carry their own `retryable` flag. Builtin
    TimeoutError is treated as transient; any other exception is permanent
    (fail fast, no string matching).
    """
    if isinstance(exc, DorchestraError):
        return bool(exc.retryable)
    if isinstance(exc, TimeoutError):
        return True
    return False


def describe_error(exc: BaseException) -> dict[str, Any]:
    """Serializable error description used in logs, dead-letters and events."""
    return {
        "type": type(exc).__name__,
        "message": str(exc),
        "retryable": is_retryable(exc),
    }
