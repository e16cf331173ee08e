"""
Audit and error record models for CSV Job Orchestrator

The audit trail is append-only. Each event type declares the metadata keys
its records must carry, so consumers can rely on a fixed shape per event.
"""

from enum import Enum
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass, field

from .job import utc_now
from ..core.exceptions import ErrorCategory


class LogLevel(Enum):
    """Audit record severity."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditEventType(Enum):
    """Closed set of audit events."""
    JOB_CREATED = "JOB_CREATED"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    LOCK_RENEWED = "LOCK_RENEWED"
    LOCK_RELEASED = "LOCK_RELEASED"
    LOCK_LOST = "LOCK_LOST"
    LOCK_CONTENTION = "LOCK_CONTENTION"
    STATE_TRANSITION = "STATE_TRANSITION"
    MANIFEST_CREATED = "MANIFEST_CREATED"
    CHUNK_DISPATCHED = "CHUNK_DISPATCHED"
    CHUNK_RETRY = "CHUNK_RETRY"
    CHUNK_FAILED = "CHUNK_FAILED"
    CHUNK_OUTCOME_RECORDED = "CHUNK_OUTCOME_RECORDED"
    DUPLICATE_OUTCOME = "DUPLICATE_OUTCOME"
    AGGREGATE_UPDATED = "AGGREGATE_UPDATED"
    ERROR_CLASSIFIED = "ERROR_CLASSIFIED"
    JOB_FINALIZED = "JOB_FINALIZED"
    JOB_CANCELLED = "JOB_CANCELLED"

    @property
    def required_metadata(self) -> Tuple[str, ...]:
        return REQUIRED_METADATA[self]


REQUIRED_METADATA = {
    AuditEventType.JOB_CREATED: ("bucket", "key", "file_size"),
    AuditEventType.LOCK_ACQUIRED: ("lock_key", "owner", "expires_at"),
    AuditEventType.LOCK_RENEWED: ("lock_key", "owner", "expires_at"),
    AuditEventType.LOCK_RELEASED: ("lock_key", "owner"),
    AuditEventType.LOCK_LOST: ("lock_key", "owner"),
    AuditEventType.LOCK_CONTENTION: ("lock_key", "owner"),
    AuditEventType.STATE_TRANSITION: ("from_state", "to_state"),
    AuditEventType.MANIFEST_CREATED: ("total_chunks", "processing_mode"),
    AuditEventType.CHUNK_DISPATCHED: ("chunk_index", "total_chunks", "attempt"),
    AuditEventType.CHUNK_RETRY: ("chunk_index", "attempt", "error_code", "delay_seconds"),
    AuditEventType.CHUNK_FAILED: ("chunk_index", "error_code", "attempts"),
    AuditEventType.CHUNK_OUTCOME_RECORDED: ("chunk_index", "processed_count", "success_count", "error_count"),
    AuditEventType.DUPLICATE_OUTCOME: ("chunk_index",),
    AuditEventType.AGGREGATE_UPDATED: ("chunks_completed", "total_chunks", "success_rate"),
    AuditEventType.ERROR_CLASSIFIED: ("error_type", "error_code", "category", "is_retryable"),
    AuditEventType.JOB_FINALIZED: ("status", "success_rate", "output_location"),
    AuditEventType.JOB_CANCELLED: ("reason",),
}


def missing_metadata(event_type: AuditEventType, metadata: Dict[str, Any]) -> Tuple[str, ...]:
    """Required keys absent from ``metadata``."""
    return tuple(key for key in event_type.required_metadata if key not in metadata)


@dataclass(frozen=True)
class AuditRecord:
    """One append-only audit entry, ordered by ``(execution_id, sequence)``."""

    execution_id: str
    sequence: int
    event_type: AuditEventType
    log_level: LogLevel
    function_name: str
    message: str
    job_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    @staticmethod
    def expiry(timestamp: datetime, retention_days: Optional[float]) -> Optional[datetime]:
        if not retention_days:
            return None
        return timestamp + timedelta(days=retention_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "sequence": self.sequence,
            "job_id": self.job_id,
            "event_type": self.event_type.value,
            "log_level": self.log_level.value,
            "function_name": self.function_name,
            "message": self.message,
            "metadata": self.metadata,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class ErrorRecord:
    """Classified error handed to the retry controller."""

    error_type: str
    error_code: str
    error_message: str
    is_retryable: bool
    category: ErrorCategory
    execution_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_retryable": self.is_retryable,
            "category": self.category.value,
            "execution_id": self.execution_id,
        }
