"""
Job and chunk registry.

Durable record of jobs, their chunk manifests and recorded chunk outcomes.
All writes are conditional: state transitions are compare-and-set on the
current state, manifests are write-once, outcomes are first-delivery-wins
and aggregates only move forward. Every successful mutation appends one
audit record.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..models.job import Job, JobStatus, OrchestrationState, can_transition_to, utc_now
from ..models.execution import ChunkManifestEntry, ChunkOutcome, AggregateSnapshot
from ..models.audit import AuditEventType, LogLevel
from ..utils.store import MetadataStore, MUTABLE_JOB_FIELDS
from ..utils.logger import get_logger
from ..utils.metrics import OrchestratorMetrics
from ..core.exceptions import (
    InvalidStateError,
    InvariantViolationError,
    JobAlreadyExistsError,
    JobNotFoundError,
    TransitionConflictError,
)
from .audit_trail import AuditTrail


class JobRegistry:
    """Conditional reads and writes of job, manifest and outcome records."""

    def __init__(
        self,
        store: MetadataStore,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional[OrchestratorMetrics] = None,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger(__name__)

    # Jobs

    async def create_job(self, job: Job, actor: Optional[str] = None) -> Job:
        """
        Persist a new job.

        Raises:
            JobAlreadyExistsError: If the job id is taken
        """
        if not await self.store.insert_job(job):
            raise JobAlreadyExistsError(job.job_id)

        self.logger.info(f"Created job {job.job_id} for {job.bucket}/{job.key}")
        await self.audit.record(
            actor or job.job_id, AuditEventType.JOB_CREATED, f"Job {job.job_id} created",
            job_id=job.job_id, function_name="create_job",
            metadata={"bucket": job.bucket, "key": job.key, "file_size": job.file_size},
        )
        return job

    async def get_job(self, job_id: str) -> Job:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: If no such job exists
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def find_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        return (await self.get_job(job_id)).to_status_view()

    async def transition(
        self,
        job_id: str,
        from_state: OrchestrationState,
        to_state: OrchestrationState,
        *,
        actor: Optional[str] = None,
        **fields
    ) -> Job:
        """
        Move a job from ``from_state`` to ``to_state``, updating ``fields``.

        Raises:
            InvalidStateError: If the transition is not allowed
            TransitionConflictError: If the job is no longer in ``from_state``
        """
        if not can_transition_to(from_state, to_state):
            raise InvalidStateError(
                job_id, f"transition {from_state.value} -> {to_state.value} not allowed",
                state=from_state.value
            )
        unknown = set(fields) - MUTABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable by a transition: {sorted(unknown)}")

        updated = await self.store.compare_and_set_state(job_id, from_state, to_state, fields, self.clock())
        if updated is None:
            current = await self.store.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise TransitionConflictError(job_id, from_state.value, current.state.value)

        self.logger.info(f"Job {job_id} {from_state.value} -> {to_state.value}", extra={
            "job_id": job_id,
            "from_state": from_state.value,
            "to_state": to_state.value
        })
        metadata = {"from_state": from_state.value, "to_state": to_state.value}
        if updated.failure_reason and to_state == OrchestrationState.FAILED:
            metadata["failure_reason"] = updated.failure_reason
        await self.audit.record(
            actor or updated.execution_id or job_id, AuditEventType.STATE_TRANSITION,
            f"Job {job_id} transitioned {from_state.value} -> {to_state.value}",
            job_id=job_id, function_name="transition",
            log_level=LogLevel.ERROR if to_state == OrchestrationState.FAILED else LogLevel.INFO,
            metadata=metadata,
        )
        return updated

    async def update_aggregate(self, job_id: str, snapshot: AggregateSnapshot, actor: Optional[str] = None) -> bool:
        """Store ``snapshot`` if it has seen more distinct chunks than the stored aggregate."""
        written = await self.store.update_aggregate(job_id, snapshot, self.clock())
        if written:
            await self.audit.record(
                actor or job_id, AuditEventType.AGGREGATE_UPDATED,
                f"Aggregate {snapshot.chunks_completed}/{snapshot.total_chunks} chunks",
                job_id=job_id, function_name="update_aggregate", log_level=LogLevel.DEBUG,
                metadata={
                    "chunks_completed": snapshot.chunks_completed,
                    "total_chunks": snapshot.total_chunks,
                    "success_rate": snapshot.success_rate,
                },
            )
        return written

    # Chunks

    async def set_chunk_manifest(
        self, job_id: str, chunks: Sequence[ChunkManifestEntry], actor: Optional[str] = None
    ) -> List[ChunkManifestEntry]:
        """
        Store the job's chunk manifest and set ``total_chunks``.

        Re-submitting the stored manifest is a no-op.

        Raises:
            InvalidStateError: If the job is past PENDING or a different manifest exists
            InvariantViolationError: If the entries are not a contiguous 0..n-1 manifest of this job
        """
        chunks = list(chunks)
        job = await self.get_job(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidStateError(job_id, "chunk manifest can only be set while PENDING", state=job.state.value)

        for expected_index, entry in enumerate(chunks):
            if (entry.job_id != job_id or entry.chunk_index != expected_index
                    or entry.total_chunks != len(chunks)):
                raise InvariantViolationError(
                    f"manifest entry {entry.chunk_index} does not fit job {job_id}",
                    details={"job_id": job_id, "chunk_index": entry.chunk_index}
                )

        if not await self.store.insert_manifest(job_id, chunks, self.clock()):
            existing = await self.store.get_manifest(job_id)
            if existing == chunks:
                self.logger.debug(f"Manifest for job {job_id} already stored")
                return existing
            raise InvalidStateError(job_id, "a different chunk manifest already exists", state=job.state.value)

        await self.audit.record(
            actor or job.execution_id or job_id, AuditEventType.MANIFEST_CREATED,
            f"Manifest with {len(chunks)} chunks created",
            job_id=job_id, function_name="set_chunk_manifest",
            metadata={
                "total_chunks": len(chunks),
                "processing_mode": chunks[0].processing_mode.value if chunks else None,
            },
        )
        return chunks

    async def get_chunk_manifest(self, job_id: str) -> List[ChunkManifestEntry]:
        return await self.store.get_manifest(job_id)

    async def record_chunk_outcome(
        self, job_id: str, chunk_index: int, outcome: ChunkOutcome, actor: Optional[str] = None
    ) -> bool:
        """
        Record a chunk outcome.

        Returns:
            True for the first delivery of this chunk, False for duplicates

        Raises:
            InvalidStateError: If the job has no manifest or the index is outside it,
                or the job is finished and the chunk was never recorded
        """
        if outcome.job_id != job_id or outcome.chunk_index != chunk_index:
            raise InvariantViolationError(
                f"outcome for {outcome.job_id}#{outcome.chunk_index} delivered as {job_id}#{chunk_index}"
            )

        job = await self.get_job(job_id)
        if job.total_chunks is None:
            raise InvalidStateError(job_id, "no chunk manifest", state=job.state.value)
        if not 0 <= chunk_index < job.total_chunks:
            raise InvalidStateError(
                job_id, f"chunk {chunk_index} outside manifest of {job.total_chunks}", state=job.state.value
            )
        if job.is_terminal:
            recorded = {o.chunk_index for o in await self.list_chunk_outcomes(job_id)}
            if chunk_index not in recorded:
                raise InvalidStateError(job_id, "job already finished", state=job.state.value)

        actor = actor or job.execution_id or job_id
        if not await self.store.insert_outcome(outcome, self.clock()):
            if self.metrics:
                self.metrics.duplicate_outcomes.inc()
            self.logger.info(f"Duplicate outcome for chunk {chunk_index} of job {job_id} ignored")
            await self.audit.record(
                actor, AuditEventType.DUPLICATE_OUTCOME,
                f"Duplicate outcome for chunk {chunk_index} ignored",
                job_id=job_id, function_name="record_chunk_outcome", log_level=LogLevel.DEBUG,
                metadata={"chunk_index": chunk_index},
            )
            return False

        await self.audit.record(
            actor, AuditEventType.CHUNK_OUTCOME_RECORDED,
            f"Chunk {chunk_index} outcome recorded",
            job_id=job_id, function_name="record_chunk_outcome",
            log_level=LogLevel.WARN if outcome.error_count else LogLevel.INFO,
            metadata={
                "chunk_index": chunk_index,
                "processed_count": outcome.processed_count,
                "success_count": outcome.success_count,
                "error_count": outcome.error_count,
            },
        )
        return True

    async def list_chunk_outcomes(self, job_id: str) -> List[ChunkOutcome]:
        return await self.store.list_outcomes(job_id)
