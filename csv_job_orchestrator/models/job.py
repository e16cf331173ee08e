"""
Job-related data models for CSV Job Orchestrator

Defines the job record, its externally visible status, the orchestration
states the State Machine moves through, and the transition rules between them.
"""

from enum import Enum
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, replace


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    """Externally visible job status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class OrchestrationState(Enum):
    """State Machine states for one job."""
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    CHUNKING = "CHUNKING"
    DISPATCHING = "DISPATCHING"
    AGGREGATING = "AGGREGATING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    OrchestrationState.COMPLETED,
    OrchestrationState.PARTIAL,
    OrchestrationState.FAILED,
})

# Job state transition rules
STATE_TRANSITIONS = {
    OrchestrationState.PENDING: [OrchestrationState.LOCKED, OrchestrationState.FAILED],
    OrchestrationState.LOCKED: [OrchestrationState.CHUNKING, OrchestrationState.FAILED],
    OrchestrationState.CHUNKING: [OrchestrationState.DISPATCHING, OrchestrationState.FAILED],
    OrchestrationState.DISPATCHING: [OrchestrationState.AGGREGATING, OrchestrationState.FAILED],
    OrchestrationState.AGGREGATING: [OrchestrationState.FINALIZING, OrchestrationState.FAILED],
    OrchestrationState.FINALIZING: [
        OrchestrationState.COMPLETED,
        OrchestrationState.PARTIAL,
        OrchestrationState.FAILED,
    ],
    OrchestrationState.COMPLETED: [],  # Terminal state
    OrchestrationState.PARTIAL: [],  # Terminal state
    OrchestrationState.FAILED: [],  # Terminal state
}

_STATUS_BY_STATE = {
    OrchestrationState.PENDING: JobStatus.PENDING,
    OrchestrationState.LOCKED: JobStatus.PENDING,
    OrchestrationState.CHUNKING: JobStatus.PENDING,
    OrchestrationState.DISPATCHING: JobStatus.PROCESSING,
    OrchestrationState.AGGREGATING: JobStatus.PROCESSING,
    OrchestrationState.FINALIZING: JobStatus.PROCESSING,
    OrchestrationState.COMPLETED: JobStatus.COMPLETED,
    OrchestrationState.PARTIAL: JobStatus.PARTIAL,
    OrchestrationState.FAILED: JobStatus.FAILED,
}


def can_transition_to(current_state: OrchestrationState, target_state: OrchestrationState) -> bool:
    """Check if a job can transition from current state to target state."""
    return target_state in STATE_TRANSITIONS.get(current_state, [])


def get_valid_transitions(current_state: OrchestrationState) -> List[OrchestrationState]:
    """Get list of valid state transitions from current state."""
    return STATE_TRANSITIONS.get(current_state, [])


def status_for_state(state: OrchestrationState) -> JobStatus:
    """Map an orchestration state onto the externally visible status."""
    return _STATUS_BY_STATE[state]


def derive_terminal_status(total_success: int, total_error: int) -> JobStatus:
    """
    Derive the terminal job status from aggregate counts.

    FAILED when nothing succeeded and something failed, PARTIAL when both
    happened, COMPLETED when there were no errors at all.
    """
    if total_error == 0:
        return JobStatus.COMPLETED
    if total_success == 0:
        return JobStatus.FAILED
    return JobStatus.PARTIAL


def compute_success_rate(total_success: int, total_processed: int) -> float:
    """Success ratio in [0, 1]; zero when nothing was processed."""
    if total_processed <= 0:
        return 0.0
    return total_success / total_processed


@dataclass
class Job:
    """Core job data model: one end-to-end run for a single input file."""

    # Primary identification
    job_id: str
    file_name: str

    # Input descriptor
    bucket: str = ""
    key: str = ""
    file_size: int = 0

    # State tracking
    state: OrchestrationState = OrchestrationState.PENDING
    execution_id: Optional[str] = None

    # Chunking and aggregate
    total_chunks: Optional[int] = None
    chunks_completed: int = 0
    total_processed: int = 0
    total_success: int = 0
    total_error: int = 0
    output_location: Optional[str] = None

    # Error tracking
    last_error: Optional[str] = None
    failure_reason: Optional[str] = None

    # Metadata
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    ttl: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        job_id: str,
        bucket: str,
        key: str,
        file_size: int = 0,
        ttl_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> "Job":
        """Create a PENDING job for an input object."""
        now = now or utc_now()
        return cls(
            job_id=job_id,
            file_name=key.rsplit("/", 1)[-1],
            bucket=bucket,
            key=key,
            file_size=file_size,
            created_at=now,
            updated_at=now,
            ttl=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
        )

    @property
    def status(self) -> JobStatus:
        return status_for_state(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def success_rate(self) -> float:
        return compute_success_rate(self.total_success, self.total_processed)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the record may be reclaimed."""
        return self.ttl is not None and self.ttl <= (now or utc_now())

    def with_changes(self, **changes) -> "Job":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_status_view(self) -> Dict[str, Any]:
        """Status query response."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "state": self.state.value,
            "total_chunks": self.total_chunks,
            "chunks_completed": self.chunks_completed,
            "success_rate": self.success_rate,
            "last_error": self.last_error,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "file_name": self.file_name,
            "bucket": self.bucket,
            "key": self.key,
            "file_size": self.file_size,
            "state": self.state.value,
            "status": self.status.value,
            "execution_id": self.execution_id,
            "total_chunks": self.total_chunks,
            "chunks_completed": self.chunks_completed,
            "total_processed": self.total_processed,
            "total_success": self.total_success,
            "total_error": self.total_error,
            "success_rate": self.success_rate,
            "output_location": self.output_location,
            "last_error": self.last_error,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "ttl": self.ttl.isoformat() if self.ttl else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create job from dictionary."""
        data = dict(data)
        data.pop("status", None)
        data.pop("success_rate", None)

        # Parse datetime fields
        for field_name in ["created_at", "updated_at", "ttl"]:
            if isinstance(data.get(field_name), str):
                data[field_name] = datetime.fromisoformat(data[field_name])

        data["state"] = OrchestrationState(data["state"])
        return cls(**data)
