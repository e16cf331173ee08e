"""
Exception classes for CSV Job Orchestrator

Provides the exception hierarchy used across lock management, the job
registry, chunk dispatch and aggregation. Every exception carries the error
category and retryability the Error Classifier relies on.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCategory(Enum):
    """Error taxonomy used for retry decisions."""
    CONTENTION = "contention"
    TRANSIENT_EXTERNAL = "transient_external"
    MALFORMED_INPUT = "malformed_input"
    CONFLICT = "conflict"
    FATAL = "fatal"


class JobOrchestratorError(Exception):
    """Base exception for all job orchestrator errors."""

    category = ErrorCategory.FATAL
    is_retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "category": self.category.value,
            "is_retryable": self.is_retryable,
            "details": self.details
        }


# Contention

class LockContentionError(JobOrchestratorError):
    """Raised when a lock is already held by another owner and not expired."""

    category = ErrorCategory.CONTENTION
    is_retryable = True

    def __init__(self, lock_key: str, holder: Optional[str] = None):
        super().__init__(
            f"Lock {lock_key} is held by another execution",
            error_code="LOCK_CONTENTION",
            details={"lock_key": lock_key, "holder": holder}
        )


class LockExpiredError(JobOrchestratorError):
    """Raised when a lease can no longer be renewed."""

    def __init__(self, lock_key: str, owner: str):
        super().__init__(
            f"Lease on {lock_key} held by {owner} has expired or was taken over",
            error_code="LOCK_EXPIRED",
            details={"lock_key": lock_key, "owner": owner}
        )


# Transient external

class TransientExternalError(JobOrchestratorError):
    """Raised when an external collaborator is temporarily unavailable."""

    category = ErrorCategory.TRANSIENT_EXTERNAL
    is_retryable = True

    def __init__(self, message: str, error_code: str = "TRANSIENT_EXTERNAL", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, details=details)


class ChunkTimeoutError(TransientExternalError):
    """Raised when a chunk dispatch exceeds its deadline."""

    def __init__(self, job_id: str, chunk_index: int, timeout_seconds: float):
        super().__init__(
            f"Chunk {chunk_index} of job {job_id} timed out after {timeout_seconds} seconds",
            error_code="PROCESSING_TIMEOUT",
            details={"job_id": job_id, "chunk_index": chunk_index, "timeout_seconds": timeout_seconds}
        )


class ThrottlingError(TransientExternalError):
    """Raised when a collaborator rejects a call because of rate limits."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(
            f"Throttled: {message}",
            error_code="THROTTLING",
            details={"retry_after": retry_after}
        )


class DatabaseError(TransientExternalError):
    """Raised when lock/metadata store operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


# Malformed input

class MalformedInputError(JobOrchestratorError):
    """Raised when input data cannot be parsed or processed."""

    category = ErrorCategory.MALFORMED_INPUT

    def __init__(self, message: str, error_code: str = "MALFORMED_INPUT", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, details=details)


class InputNotFoundError(MalformedInputError):
    """Raised when the input object does not exist."""

    def __init__(self, bucket: str, key: str):
        super().__init__(
            f"Input s3://{bucket}/{key} not found",
            error_code="INPUT_NOT_FOUND",
            details={"bucket": bucket, "key": key}
        )


class PermissionDeniedError(MalformedInputError):
    """Raised when a collaborator permanently denies access."""

    def __init__(self, message: str):
        super().__init__(f"Permission denied: {message}", error_code="PERMISSION_DENIED")


# Conflict

class TransitionConflictError(JobOrchestratorError):
    """Raised when an optimistic-concurrency transition loses the race."""

    category = ErrorCategory.CONFLICT

    def __init__(self, job_id: str, expected: str, actual: Optional[str]):
        super().__init__(
            f"Job {job_id} expected state {expected} but found {actual}",
            error_code="TRANSITION_CONFLICT",
            details={"job_id": job_id, "expected": expected, "actual": actual}
        )


# Fatal

class JobNotFoundError(JobOrchestratorError):
    """Raised when a requested job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class JobAlreadyExistsError(JobOrchestratorError):
    """Raised when a job id collides with an existing job."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} already exists",
            error_code="JOB_ALREADY_EXISTS",
            details={"job_id": job_id}
        )


class InvalidStateError(JobOrchestratorError):
    """Raised when an operation is not permitted in the job's current state."""

    def __init__(self, job_id: str, message: str, state: Optional[str] = None):
        super().__init__(
            f"Job {job_id}: {message}",
            error_code="INVALID_STATE",
            details={"job_id": job_id, "state": state}
        )


class ConfigurationError(JobOrchestratorError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class InvariantViolationError(JobOrchestratorError):
    """Raised when an internal invariant does not hold."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Invariant violated: {message}",
            error_code="INVARIANT_VIOLATION",
            details=details
        )


class RetryExhaustedError(JobOrchestratorError):
    """Raised when an operation keeps failing after the retry budget."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts: {last_error}",
            error_code="RETRY_EXHAUSTED",
            details={"operation": operation, "attempts": attempts, "last_error": last_error}
        )


class JobCancelledError(JobOrchestratorError):
    """Raised inside an execution when its job has been cancelled."""

    def __init__(self, job_id: str, reason: str):
        super().__init__(
            f"Job {job_id} cancelled: {reason}",
            error_code="JOB_CANCELLED",
            details={"job_id": job_id, "reason": reason}
        )
        self.reason = reason
