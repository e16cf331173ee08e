"""
Lock/metadata store for CSV Job Orchestrator

Defines the single mutable store the orchestrator relies on and an in-process
implementation of it. Every mutating operation is a conditional write:
callers learn from the return value whether their condition held, and never
read-modify-write outside the store.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Any, Tuple

from ..models.job import Job, OrchestrationState
from ..models.lock import Lock
from ..models.execution import ChunkManifestEntry, ChunkOutcome, AggregateSnapshot
from ..models.audit import AuditRecord


# Job fields a transition may update alongside the state
MUTABLE_JOB_FIELDS = frozenset({
    "execution_id",
    "total_chunks",
    "chunks_completed",
    "total_processed",
    "total_success",
    "total_error",
    "output_location",
    "last_error",
    "failure_reason",
})


class MetadataStore(ABC):
    """Abstract lock/metadata store."""

    async def initialize(self) -> None:
        """Prepare the store for use."""

    async def close(self) -> None:
        """Release store resources."""

    async def is_healthy(self) -> bool:
        return True

    # Locks
    @abstractmethod
    async def acquire_lock(self, lock_key: str, owner: str, expires_at: datetime, now: datetime) -> Optional[Lock]:
        """Insert the lock if absent or expired at ``now``; None when held by another owner."""

    @abstractmethod
    async def renew_lock(self, lock_key: str, owner: str, version: int, expires_at: datetime, now: datetime) -> Optional[Lock]:
        """Extend a lease still held at ``now`` by exactly this owner and version."""

    @abstractmethod
    async def release_lock(self, lock_key: str, owner: str, version: int) -> bool:
        """Delete the lock if it is held by this owner and version."""

    @abstractmethod
    async def get_lock(self, lock_key: str) -> Optional[Lock]:
        """Stored lock, expired or not."""

    # Jobs
    @abstractmethod
    async def insert_job(self, job: Job) -> bool:
        """Insert a job; False when the id is taken."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def compare_and_set_state(
        self,
        job_id: str,
        from_state: OrchestrationState,
        to_state: OrchestrationState,
        fields: Dict[str, Any],
        now: datetime,
    ) -> Optional[Job]:
        """Move the job to ``to_state`` only if it is in ``from_state``; None otherwise."""

    @abstractmethod
    async def update_aggregate(self, job_id: str, snapshot: AggregateSnapshot, now: datetime) -> bool:
        """Store the snapshot only if it covers more distinct chunks than the stored one."""

    # Chunks
    @abstractmethod
    async def insert_manifest(self, job_id: str, entries: List[ChunkManifestEntry], now: datetime) -> bool:
        """Store the manifest and set total_chunks unless a manifest already exists."""

    @abstractmethod
    async def get_manifest(self, job_id: str) -> List[ChunkManifestEntry]:
        pass

    @abstractmethod
    async def insert_outcome(self, outcome: ChunkOutcome, now: datetime) -> bool:
        """Store the outcome unless one is already recorded for the chunk."""

    @abstractmethod
    async def list_outcomes(self, job_id: str) -> List[ChunkOutcome]:
        pass

    # Audit
    @abstractmethod
    async def append_audit(self, record: AuditRecord) -> AuditRecord:
        """Append a record, assigning the next sequence number for its execution."""

    @abstractmethod
    async def list_audit(self, execution_id: Optional[str] = None, job_id: Optional[str] = None) -> List[AuditRecord]:
        pass

    # Reclamation
    @abstractmethod
    async def purge_expired(self, now: datetime) -> Dict[str, int]:
        """Delete expired locks, jobs past ttl and audit records past retention."""


class InMemoryMetadataStore(MetadataStore):
    """
    Single-process store.

    All state lives in dictionaries guarded by one ``asyncio.Lock`` so every
    conditional write is atomic with respect to other coroutines. Values are
    copied on the way in and out; callers never share a live record.
    """

    def __init__(self):
        self._mutex = asyncio.Lock()
        self._locks: Dict[str, Lock] = {}
        self._jobs: Dict[str, Job] = {}
        self._manifests: Dict[str, List[ChunkManifestEntry]] = {}
        self._outcomes: Dict[Tuple[str, int], ChunkOutcome] = {}
        self._audit: List[AuditRecord] = []
        self._sequences: Dict[str, int] = {}

    # Locks
    async def acquire_lock(self, lock_key: str, owner: str, expires_at: datetime, now: datetime) -> Optional[Lock]:
        async with self._mutex:
            current = self._locks.get(lock_key)
            if current is not None and not current.is_expired(now) and current.owner != owner:
                return None
            lock = Lock(
                lock_key=lock_key,
                owner=owner,
                expires_at=expires_at,
                version=(current.version + 1) if current else 1,
                acquired_at=now,
            )
            self._locks[lock_key] = lock
            return lock

    async def renew_lock(self, lock_key: str, owner: str, version: int, expires_at: datetime, now: datetime) -> Optional[Lock]:
        async with self._mutex:
            current = self._locks.get(lock_key)
            if (current is None or current.owner != owner or current.version != version
                    or current.is_expired(now)):
                return None
            lock = replace(current, expires_at=expires_at, version=current.version + 1)
            self._locks[lock_key] = lock
            return lock

    async def release_lock(self, lock_key: str, owner: str, version: int) -> bool:
        async with self._mutex:
            current = self._locks.get(lock_key)
            if current is None or current.owner != owner or current.version != version:
                return False
            del self._locks[lock_key]
            return True

    async def get_lock(self, lock_key: str) -> Optional[Lock]:
        return self._locks.get(lock_key)

    # Jobs
    async def insert_job(self, job: Job) -> bool:
        async with self._mutex:
            if job.job_id in self._jobs:
                return False
            self._jobs[job.job_id] = replace(job)
            return True

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def compare_and_set_state(self, job_id, from_state, to_state, fields, now) -> Optional[Job]:
        async with self._mutex:
            job = self._jobs.get(job_id)
            if job is None or job.state != from_state:
                return None
            updated = replace(job, state=to_state, updated_at=now, **fields)
            self._jobs[job_id] = updated
            return replace(updated)

    async def update_aggregate(self, job_id: str, snapshot: AggregateSnapshot, now: datetime) -> bool:
        async with self._mutex:
            job = self._jobs.get(job_id)
            if job is None or snapshot.chunks_completed <= job.chunks_completed:
                return False
            self._jobs[job_id] = replace(
                job,
                chunks_completed=snapshot.chunks_completed,
                total_processed=snapshot.total_processed,
                total_success=snapshot.total_success,
                total_error=snapshot.total_error,
                updated_at=now,
            )
            return True

    # Chunks
    async def insert_manifest(self, job_id: str, entries: List[ChunkManifestEntry], now: datetime) -> bool:
        async with self._mutex:
            job = self._jobs.get(job_id)
            if job is None or job_id in self._manifests:
                return False
            self._manifests[job_id] = list(entries)
            self._jobs[job_id] = replace(job, total_chunks=len(entries), updated_at=now)
            return True

    async def get_manifest(self, job_id: str) -> List[ChunkManifestEntry]:
        return list(self._manifests.get(job_id, []))

    async def insert_outcome(self, outcome: ChunkOutcome, now: datetime) -> bool:
        key = (outcome.job_id, outcome.chunk_index)
        async with self._mutex:
            if key in self._outcomes:
                return False
            self._outcomes[key] = outcome
            return True

    async def list_outcomes(self, job_id: str) -> List[ChunkOutcome]:
        outcomes = [o for (jid, _), o in self._outcomes.items() if jid == job_id]
        return sorted(outcomes, key=lambda o: o.chunk_index)

    # Audit
    async def append_audit(self, record: AuditRecord) -> AuditRecord:
        async with self._mutex:
            sequence = self._sequences.get(record.execution_id, 0) + 1
            self._sequences[record.execution_id] = sequence
            stored = replace(record, sequence=sequence)
            self._audit.append(stored)
            return stored

    async def list_audit(self, execution_id: Optional[str] = None, job_id: Optional[str] = None) -> List[AuditRecord]:
        return [
            record for record in self._audit
            if (execution_id is None or record.execution_id == execution_id)
            and (job_id is None or record.job_id == job_id)
        ]

    # Reclamation
    async def purge_expired(self, now: datetime) -> Dict[str, int]:
        async with self._mutex:
            expired_locks = [k for k, lock in self._locks.items() if lock.is_expired(now)]
            for key in expired_locks:
                del self._locks[key]

            expired_jobs = [jid for jid, job in self._jobs.items() if job.is_expired(now)]
            for job_id in expired_jobs:
                del self._jobs[job_id]
                self._manifests.pop(job_id, None)
                for key in [k for k in self._outcomes if k[0] == job_id]:
                    del self._outcomes[key]

            before = len(self._audit)
            self._audit = [
                r for r in self._audit if r.expires_at is None or r.expires_at > now
            ]

            return {
                "locks": len(expired_locks),
                "jobs": len(expired_jobs),
                "audit_records": before - len(self._audit),
            }
