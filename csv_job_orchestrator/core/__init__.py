"""
Core package for CSV Job Orchestrator

Contains the exception hierarchy and the orchestrator that drives jobs
through their state machine.
"""

from .exceptions import (
    ErrorCategory,
    JobOrchestratorError,
    LockContentionError,
    LockExpiredError,
    TransientExternalError,
    ChunkTimeoutError,
    ThrottlingError,
    DatabaseError,
    MalformedInputError,
    InputNotFoundError,
    PermissionDeniedError,
    TransitionConflictError,
    JobNotFoundError,
    JobAlreadyExistsError,
    InvalidStateError,
    ConfigurationError,
    InvariantViolationError,
    RetryExhaustedError,
    JobCancelledError
)
from .orchestrator import JobOrchestrator

__all__ = [
    "JobOrchestrator",
    "ErrorCategory",
    "JobOrchestratorError",
    "LockContentionError",
    "LockExpiredError",
    "TransientExternalError",
    "ChunkTimeoutError",
    "ThrottlingError",
    "DatabaseError",
    "MalformedInputError",
    "InputNotFoundError",
    "PermissionDeniedError",
    "TransitionConflictError",
    "JobNotFoundError",
    "JobAlreadyExistsError",
    "InvalidStateError",
    "ConfigurationError",
    "InvariantViolationError",
    "RetryExhaustedError",
    "JobCancelledError"
]
