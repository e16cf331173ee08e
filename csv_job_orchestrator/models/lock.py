"""
Lease lock models for CSV Job Orchestrator
"""

from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass

from .job import utc_now


def chunk_lock_key(job_id: str, chunk_index: int) -> str:
    """Lock key for a single chunk."""
    return f"{job_id}#{chunk_index}"


@dataclass(frozen=True)
class LockToken:
    """
    Proof of lock ownership returned by acquire and renew.

    ``version`` increases on every acquisition or renewal of the key, so a
    stale token can never renew or release a lease taken over by someone else.
    """

    lock_key: str
    owner: str
    version: int
    expires_at: datetime


@dataclass(frozen=True)
class Lock:
    """Stored lease. At most one non-expired lock exists per key."""

    lock_key: str
    owner: str
    expires_at: datetime
    version: int = 1
    acquired_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utc_now())

    def token(self) -> LockToken:
        return LockToken(
            lock_key=self.lock_key,
            owner=self.owner,
            version=self.version,
            expires_at=self.expires_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lock_key": self.lock_key,
            "owner": self.owner,
            "version": self.version,
            "expires_at": self.expires_at.isoformat(),
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
        }
