"""
Data models for CSV Job Orchestrator

This module contains the data models used throughout the orchestrator: jobs
and their state machine, chunk manifests and outcomes, leases, audit records
and the wire payloads exchanged with triggers and workers.
"""

# Job models
from .job import (
    Job,
    JobStatus,
    OrchestrationState,
    STATE_TRANSITIONS,
    TERMINAL_STATES,
    can_transition_to,
    get_valid_transitions,
    status_for_state,
    derive_terminal_status,
    compute_success_rate,
    utc_now
)

# Execution models
from .execution import (
    ProcessingMode,
    InputDescriptor,
    ChunkManifestEntry,
    ChunkOutcome,
    AggregateSnapshot,
    chunk_errors
)

# Lock models
from .lock import Lock, LockToken, chunk_lock_key

# Audit models
from .audit import (
    AuditRecord,
    AuditEventType,
    LogLevel,
    ErrorRecord,
    REQUIRED_METADATA,
    missing_metadata
)

# Wire models
from .events import TriggerEvent, ChunkWorkerResponse

__all__ = [
    # Job models
    "Job",
    "JobStatus",
    "OrchestrationState",
    "STATE_TRANSITIONS",
    "TERMINAL_STATES",
    "can_transition_to",
    "get_valid_transitions",
    "status_for_state",
    "derive_terminal_status",
    "compute_success_rate",
    "utc_now",

    # Execution models
    "ProcessingMode",
    "InputDescriptor",
    "ChunkManifestEntry",
    "ChunkOutcome",
    "AggregateSnapshot",
    "chunk_errors",

    # Lock models
    "Lock",
    "LockToken",
    "chunk_lock_key",

    # Audit models
    "AuditRecord",
    "AuditEventType",
    "LogLevel",
    "ErrorRecord",
    "REQUIRED_METADATA",
    "missing_metadata",

    # Wire models
    "TriggerEvent",
    "ChunkWorkerResponse"
]
