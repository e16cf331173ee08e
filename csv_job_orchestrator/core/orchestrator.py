"""
Main JobOrchestrator class that coordinates all services

Runs one job through the orchestration state machine:

    PENDING -> LOCKED -> CHUNKING -> DISPATCHING -> AGGREGATING -> FINALIZING
            -> COMPLETED | PARTIAL | FAILED

Every step reads the durable job record, does its work and moves the job on
with a compare-and-set transition. An execution that finds the job already
mid-flight (after a crash) continues from the recorded state, and one that
loses a transition race re-reads the job and stops.
"""

import asyncio
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models.job import Job, JobStatus, OrchestrationState, utc_now
from ..models.execution import AggregateSnapshot, ChunkOutcome, InputDescriptor
from ..models.audit import AuditEventType, AuditRecord, LogLevel
from ..models.events import TriggerEvent
from ..services.audit_trail import AuditTrail
from ..services.chunk_dispatcher import ChunkDispatcher
from ..services.fault_tolerance import RetryController, RetryPolicy
from ..services.job_registry import JobRegistry
from ..services.lock_manager import LockManager
from ..services.result_aggregator import ResultAggregator
from ..services.storage import InputSource, ResultSink
from ..services.workers import ChunkWorker
from ..utils.config import OrchestratorConfig
from ..utils.logger import LoggerContext, get_logger
from ..utils.metrics import OrchestratorMetrics
from ..utils.store import MetadataStore
from .exceptions import (
    InvalidStateError,
    InvariantViolationError,
    JobAlreadyExistsError,
    JobCancelledError,
    LockContentionError,
    TransitionConflictError,
)


@dataclass
class RunningExecution:
    """An execution in progress in this process."""
    execution_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: Optional[str] = None

    def cancel(self, reason: str):
        if self.cancel_reason is None:
            self.cancel_reason = reason
        self.cancel_event.set()


class JobOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Running a job from a trigger event to a terminal status
    - Accepting chunk outcomes delivered out of band
    - Cancelling jobs and querying their status and audit history
    - Reclaiming expired metadata
    """

    def __init__(
        self,
        store: MetadataStore,
        input_source: InputSource,
        worker: ChunkWorker,
        result_sink: Optional[ResultSink] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        metrics: Optional[OrchestratorMetrics] = None,
    ):
        """
        Initialize the JobOrchestrator.

        Args:
            store: Lock, job, chunk and audit store
            input_source: Resolves trigger inputs into descriptors
            worker: Processes individual chunks
            result_sink: Destination of the merged output, optional
            config: Orchestrator configuration, validated here
            clock: Source of the current time
            sleep: Awaited for backoff waits
            rand: Source of backoff jitter
            metrics: Prometheus metrics, optional
        """
        self.config = (config or OrchestratorConfig()).validate()
        self.store = store
        self.input_source = input_source
        self.worker = worker
        self.clock = clock
        self.sleep = sleep
        self.rand = rand
        self.metrics = metrics

        self.audit = AuditTrail(store, retention_days=self.config.audit_retention_days, clock=clock)
        self.locks = LockManager(store, self.audit, clock=clock, metrics=metrics)
        self.registry = JobRegistry(store, self.audit, clock=clock, metrics=metrics)
        self.retry = RetryController(RetryPolicy.from_config(self.config), sleep=sleep, rand=rand)
        self.dispatcher = ChunkDispatcher(
            self.retry,
            self.audit,
            max_concurrent_chunks=self.config.max_concurrent_chunks,
            chunk_timeout=self.config.chunk_timeout,
            metrics=metrics,
        )
        self.aggregator = ResultAggregator(self.registry, result_sink)

        self._running: Dict[str, RunningExecution] = {}
        self._steps = {
            OrchestrationState.PENDING: self._lock_step,
            OrchestrationState.LOCKED: self._start_chunking,
            OrchestrationState.CHUNKING: self._chunk_step,
            OrchestrationState.DISPATCHING: self._dispatch_step,
            OrchestrationState.AGGREGATING: self._aggregate_step,
            OrchestrationState.FINALIZING: self._finalize_step,
        }

        self.logger = get_logger(__name__)

    async def start(self):
        """Initialize the metadata store."""
        self.logger.info("Starting JobOrchestrator", extra={
            "max_concurrent_chunks": self.config.max_concurrent_chunks,
            "max_chunk_size": self.config.max_chunk_size
        })
        await self.store.initialize()

    async def stop(self):
        """Cancel running executions and close the worker and store."""
        self.logger.info("Stopping JobOrchestrator")
        for running in self._running.values():
            running.cancel("orchestrator shutdown")
        await self.worker.close()
        await self.store.close()

    # Job execution

    async def handle_trigger(self, event: TriggerEvent, job_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run the job for ``event`` to a terminal state.

        Re-triggering a finished job returns its status without doing any
        work; re-triggering an unfinished one resumes it.

        Returns:
            The job status view

        Raises:
            LockContentionError: If another execution holds the job lock
        """
        job_id = job_id or event.derive_job_id()
        execution_id = f"exec-{uuid.uuid4().hex[:16]}"

        with LoggerContext(job_id=job_id, execution_id=execution_id, component="orchestrator"):
            job = await self._ensure_job(job_id, event, execution_id)
            if job.is_terminal:
                self.logger.info(f"Job {job_id} already finished as {job.status.value}")
                return job.to_status_view()

            token = await self._acquire_lock(job_id, execution_id)
            keeper = self.locks.keep_alive(
                token, self.config.lock_lease_duration, self.config.lease_renew_interval
            )
            running = RunningExecution(execution_id)
            self._running[job_id] = running
            try:
                job = await self._run(job_id, running)
            finally:
                self._running.pop(job_id, None)
                token = await keeper.stop()
                await self._release(token)

            return job.to_status_view()

    async def _ensure_job(self, job_id: str, event: TriggerEvent, execution_id: str) -> Job:
        job = Job.create(
            job_id, event.bucket, event.key,
            file_size=event.size, ttl_seconds=self.config.job_ttl, now=self.clock()
        )
        try:
            return await self.registry.create_job(job, actor=execution_id)
        except JobAlreadyExistsError:
            self.logger.info(f"Job {job_id} already exists, resuming")
            return await self.registry.get_job(job_id)

    async def _acquire_lock(self, job_id: str, execution_id: str):
        attempts = self.config.lock_acquire_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self.locks.acquire(job_id, execution_id, self.config.lock_lease_duration)
            except LockContentionError:
                if attempt >= attempts:
                    raise
                await self.sleep(self.retry.policy.backoff(attempt, self.rand()))

    async def _release(self, token):
        try:
            await self.locks.release(token)
        except Exception as e:
            # The lease expires on its own
            self.logger.warning(f"Failed to release lock {token.lock_key}: {e}")

    async def _run(self, job_id: str, running: RunningExecution) -> Job:
        job = await self.registry.get_job(job_id)

        while not job.is_terminal:
            step = self._steps[job.state]
            expected = job.state

            async def attempt() -> Job:
                current = await self.registry.get_job(job_id)
                if current.state != expected:
                    raise TransitionConflictError(job_id, expected.value, current.state.value)
                if running.cancel_event.is_set():
                    raise JobCancelledError(job_id, running.cancel_reason or "cancelled")
                return await step(current, running)

            try:
                job = await self.retry.execute_with_retry(
                    attempt,
                    operation=f"{expected.value} step of job {job_id}",
                    execution_id=running.execution_id,
                )
            except TransitionConflictError as e:
                job = await self.registry.get_job(job_id)
                self.logger.info(f"Job {job_id} moved on by another execution: {e}", extra={
                    "state": job.state.value
                })
                return job
            except JobCancelledError as e:
                job = await self._fail(job_id, running.execution_id, f"cancelled: {e.reason}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Job {job_id} failed in {expected.value}: {e}", exc_info=True)
                job = await self._fail(job_id, running.execution_id, str(e), error=e)

        return job

    async def _fail(
        self, job_id: str, execution_id: str, reason: str, error: Optional[BaseException] = None
    ) -> Job:
        """Force the job to FAILED from whatever state it is in now."""
        fields = {"failure_reason": reason, "last_error": reason}
        if error is not None:
            record = self.retry.classify(error, execution_id)
            fields["last_error"] = record.error_message
            await self.audit.record(
                execution_id, AuditEventType.ERROR_CLASSIFIED,
                f"{record.error_type} classified as {record.category.value}",
                job_id=job_id, function_name="classify", log_level=LogLevel.ERROR,
                metadata={
                    "error_type": record.error_type,
                    "error_code": record.error_code,
                    "category": record.category.value,
                    "is_retryable": record.is_retryable,
                },
            )

        job = await self.registry.get_job(job_id)
        if job.is_terminal:
            return job
        try:
            job = await self.registry.transition(
                job_id, job.state, OrchestrationState.FAILED, actor=execution_id, **fields
            )
        except TransitionConflictError:
            return await self.registry.get_job(job_id)

        await self._finished(job, execution_id)
        return job

    async def _finished(self, job: Job, execution_id: str):
        if self.metrics:
            self.metrics.jobs_finished.labels(status=job.status.value).inc()
        await self.audit.record(
            execution_id, AuditEventType.JOB_FINALIZED,
            f"Job {job.job_id} finished as {job.status.value}",
            job_id=job.job_id, function_name="finalize",
            log_level=LogLevel.ERROR if job.status == JobStatus.FAILED else LogLevel.INFO,
            metadata={
                "status": job.status.value,
                "success_rate": job.success_rate,
                "output_location": job.output_location,
            },
        )
        self.logger.info(f"Job {job.job_id} finished as {job.status.value}", extra={
            "total_processed": job.total_processed,
            "total_success": job.total_success,
            "total_error": job.total_error
        })

    # Steps

    async def _lock_step(self, job: Job, running: RunningExecution) -> Job:
        return await self.registry.transition(
            job.job_id, OrchestrationState.PENDING, OrchestrationState.LOCKED,
            actor=running.execution_id, execution_id=running.execution_id
        )

    async def _start_chunking(self, job: Job, running: RunningExecution) -> Job:
        return await self.registry.transition(
            job.job_id, OrchestrationState.LOCKED, OrchestrationState.CHUNKING,
            actor=running.execution_id, execution_id=running.execution_id
        )

    async def _chunk_step(self, job: Job, running: RunningExecution) -> Job:
        descriptor = await self.input_source.describe(job.bucket, job.key)
        chunks = self.dispatcher.split(descriptor, self.config.max_chunk_size, job.job_id)
        await self.registry.set_chunk_manifest(job.job_id, chunks, actor=running.execution_id)
        return await self.registry.transition(
            job.job_id, OrchestrationState.CHUNKING, OrchestrationState.DISPATCHING,
            actor=running.execution_id, execution_id=running.execution_id
        )

    async def _dispatch_step(self, job: Job, running: RunningExecution) -> Job:
        manifest = await self.registry.get_chunk_manifest(job.job_id)
        if len(manifest) != job.total_chunks:
            raise InvariantViolationError(
                f"job {job.job_id} expects {job.total_chunks} chunks, manifest has {len(manifest)}"
            )
        recorded = {o.chunk_index for o in await self.registry.list_chunk_outcomes(job.job_id)}
        pending = [chunk for chunk in manifest if chunk.chunk_index not in recorded]
        if recorded:
            self.logger.info(f"Resuming dispatch with {len(pending)} of {len(manifest)} chunks outstanding")

        worker = self.worker.bind(InputDescriptor(bucket=job.bucket, key=job.key, size=job.file_size))

        async def finished_elsewhere() -> bool:
            current = await self.registry.get_job(job.job_id)
            if not current.is_terminal:
                return False
            self.logger.warning(f"Job {job.job_id} is already {current.state.value}, stopping dispatch")
            running.cancel(current.failure_reason or f"job already {current.state.value}")
            return True

        async def on_outcome(outcome: ChunkOutcome):
            try:
                await self.aggregator.fold(job.job_id, outcome.chunk_index, outcome, actor=running.execution_id)
            except InvalidStateError:
                if not await finished_elsewhere():
                    raise
                self.logger.warning(f"Outcome of chunk {outcome.chunk_index} dropped, job {job.job_id} finished")

        report = await self.dispatcher.dispatch(
            pending, worker, on_outcome,
            cancel_event=running.cancel_event, execution_id=running.execution_id,
            should_stop=finished_elsewhere,
        )
        if report.cancelled or running.cancel_event.is_set():
            raise JobCancelledError(job.job_id, running.cancel_reason or "cancelled")

        return await self.registry.transition(
            job.job_id, OrchestrationState.DISPATCHING, OrchestrationState.AGGREGATING,
            actor=running.execution_id, execution_id=running.execution_id
        )

    async def _aggregate_step(self, job: Job, running: RunningExecution) -> Job:
        snapshot = await self.aggregator.snapshot(job.job_id)
        if not snapshot.is_complete:
            raise InvariantViolationError(
                f"job {job.job_id} has {snapshot.chunks_completed} of {snapshot.total_chunks} outcomes",
                details=snapshot.to_dict()
            )
        await self.registry.update_aggregate(job.job_id, snapshot, actor=running.execution_id)
        return await self.registry.transition(
            job.job_id, OrchestrationState.AGGREGATING, OrchestrationState.FINALIZING,
            actor=running.execution_id, execution_id=running.execution_id,
            **_aggregate_fields(snapshot)
        )

    async def _finalize_step(self, job: Job, running: RunningExecution) -> Job:
        location = await self.aggregator.finalize(job.job_id)
        snapshot = await self.aggregator.snapshot(job.job_id)
        status = snapshot.terminal_status

        fields = _aggregate_fields(snapshot)
        fields["output_location"] = location
        if status != JobStatus.COMPLETED:
            outcomes = await self.registry.list_chunk_outcomes(job.job_id)
            first_error = next((e for o in outcomes for e in o.errors), None)
            if first_error is not None:
                fields["last_error"] = first_error.get("error")
        if status == JobStatus.FAILED:
            fields["failure_reason"] = "no items processed successfully"

        job = await self.registry.transition(
            job.job_id, OrchestrationState.FINALIZING, OrchestrationState(status.value),
            actor=running.execution_id, **fields
        )
        await self._finished(job, running.execution_id)
        return job

    # Out-of-band interface

    async def report_chunk_outcome(self, job_id: str, chunk_index: int, outcome: ChunkOutcome) -> AggregateSnapshot:
        """
        Fold a chunk outcome delivered outside a dispatch, such as a late
        result from a worker whose call already timed out.

        Raises:
            InvalidStateError: If the job is finished and the chunk was never recorded
        """
        return await self.aggregator.fold(job_id, chunk_index, outcome)

    async def cancel_job(self, job_id: str, reason: str = "cancelled by user") -> Dict[str, Any]:
        """
        Cancel a job.

        An execution running in this process stops issuing chunks and moves
        the job to FAILED once in-flight chunks settle. Otherwise the job is
        moved to FAILED directly, and an execution running elsewhere stops
        issuing chunks when it next sees the terminal state.

        Raises:
            InvalidStateError: If the job already finished
        """
        job = await self.registry.get_job(job_id)
        if job.is_terminal:
            raise InvalidStateError(job_id, "cannot cancel a finished job", state=job.state.value)

        running = self._running.get(job_id)
        actor = running.execution_id if running else (job.execution_id or job_id)
        await self.audit.record(
            actor, AuditEventType.JOB_CANCELLED, f"Job {job_id} cancelled: {reason}",
            job_id=job_id, function_name="cancel_job", log_level=LogLevel.WARN,
            metadata={"reason": reason},
        )

        if running is not None:
            running.cancel(reason)
            self.logger.info(f"Cancellation requested for running job {job_id}")
            return job.to_status_view()

        job = await self._fail(job_id, actor, f"cancelled: {reason}")
        return job.to_status_view()

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        """Latest durable status of a job."""
        return await self.registry.get_job_status(job_id)

    async def list_audit(self, job_id: Optional[str] = None, execution_id: Optional[str] = None) -> List[AuditRecord]:
        return await self.audit.list_records(job_id=job_id, execution_id=execution_id)

    async def purge_expired(self) -> Dict[str, int]:
        """Delete expired locks, jobs past their TTL and old audit records."""
        counts = await self.store.purge_expired(self.clock())
        self.logger.info("Purged expired metadata", extra=counts)
        return counts


def _aggregate_fields(snapshot: AggregateSnapshot) -> Dict[str, Any]:
    return {
        "chunks_completed": snapshot.chunks_completed,
        "total_processed": snapshot.total_processed,
        "total_success": snapshot.total_success,
        "total_error": snapshot.total_error,
    }
