"""
Chunk dispatcher.

Splits an input into a deterministic chunk manifest and fans the chunks out
to a worker through a bounded pool of consumer tasks. Each chunk is retried
on its own; a chunk that fails terminally is reported as a failed outcome so
it is never dropped and never holds up its siblings.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from ..models.execution import ChunkManifestEntry, ChunkOutcome, InputDescriptor, ProcessingMode
from ..models.audit import AuditEventType, LogLevel
from ..utils.logger import get_logger
from ..utils.metrics import OrchestratorMetrics
from ..core.exceptions import ChunkTimeoutError, RetryExhaustedError
from .audit_trail import AuditTrail
from .fault_tolerance import RetryController, RetryDecision
from .workers import ChunkWorker

OutcomeHandler = Callable[[ChunkOutcome], Awaitable[None]]
StopCheck = Callable[[], Awaitable[bool]]


def split_input(descriptor: InputDescriptor, max_chunk_size: int, job_id: str) -> List[ChunkManifestEntry]:
    """
    Split an input into chunks of at most ``max_chunk_size`` items.

    The result depends only on the arguments, so re-splitting after a crash
    reproduces the stored manifest exactly.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")

    count = descriptor.item_count
    total_chunks = math.ceil(count / max_chunk_size)
    mode = ProcessingMode.SINGLE if total_chunks == 1 else ProcessingMode.DISTRIBUTED

    chunks = []
    for index in range(total_chunks):
        start = index * max_chunk_size
        end = min(start + max_chunk_size, count)
        if descriptor.items is not None:
            chunks.append(ChunkManifestEntry(
                job_id=job_id, chunk_index=index, total_chunks=total_chunks,
                processing_mode=mode, items=tuple(descriptor.items[start:end]),
            ))
        else:
            chunks.append(ChunkManifestEntry(
                job_id=job_id, chunk_index=index, total_chunks=total_chunks,
                processing_mode=mode, item_range=(start, end),
            ))
    return chunks


@dataclass
class DispatchReport:
    """What happened to the chunks handed to one dispatch call."""
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return bool(self.skipped)


class ChunkDispatcher:
    """Bounded fan-out of chunk manifest entries to a worker."""

    def __init__(
        self,
        retry: RetryController,
        audit: Optional[AuditTrail] = None,
        max_concurrent_chunks: int = 10,
        chunk_timeout: float = 900.0,
        metrics: Optional[OrchestratorMetrics] = None,
    ):
        self.retry = retry
        self.audit = audit
        self.max_concurrent_chunks = max_concurrent_chunks
        self.chunk_timeout = chunk_timeout
        self.metrics = metrics
        self.logger = get_logger(__name__)

    def split(self, descriptor: InputDescriptor, max_chunk_size: int, job_id: str) -> List[ChunkManifestEntry]:
        return split_input(descriptor, max_chunk_size, job_id)

    async def dispatch(
        self,
        chunks: Sequence[ChunkManifestEntry],
        worker: ChunkWorker,
        on_outcome: OutcomeHandler,
        cancel_event: Optional[asyncio.Event] = None,
        execution_id: Optional[str] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> DispatchReport:
        """
        Process ``chunks`` with at most ``max_concurrent_chunks`` in flight.

        Once ``cancel_event`` is set, or ``should_stop`` returns True when
        consulted before a chunk starts, no new chunk is started; chunks
        already in flight run to completion or timeout. Errors raised by
        ``on_outcome`` abort the dispatch.
        """
        report = DispatchReport()
        if not chunks:
            return report

        queue: asyncio.Queue = asyncio.Queue()
        for chunk in chunks:
            queue.put_nowait(chunk)

        stopping = False

        async def stopped() -> bool:
            nonlocal stopping
            if not stopping and cancel_event is not None and cancel_event.is_set():
                stopping = True
            if not stopping and should_stop is not None and await should_stop():
                stopping = True
            return stopping

        async def consume():
            while True:
                try:
                    chunk = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if await stopped():
                    report.skipped.append(chunk.chunk_index)
                    continue
                outcome = await self._process_chunk(chunk, worker, execution_id)
                if _is_dispatch_failure(outcome):
                    report.failed.append(chunk.chunk_index)
                else:
                    report.completed.append(chunk.chunk_index)
                await on_outcome(outcome)

        consumers = [
            asyncio.create_task(consume())
            for _ in range(min(self.max_concurrent_chunks, len(chunks)))
        ]
        try:
            await asyncio.gather(*consumers)
        except BaseException:
            for task in consumers:
                task.cancel()
            await asyncio.gather(*consumers, return_exceptions=True)
            raise

        report.completed.sort()
        report.failed.sort()
        report.skipped.sort()
        if report.skipped:
            self.logger.info(f"Dispatch cancelled with {len(report.skipped)} chunks not started")
        return report

    async def _process_chunk(
        self, chunk: ChunkManifestEntry, worker: ChunkWorker, execution_id: Optional[str]
    ) -> ChunkOutcome:
        attempts = 0

        async def attempt() -> ChunkOutcome:
            nonlocal attempts
            attempts += 1
            await self._audit(execution_id, chunk, AuditEventType.CHUNK_DISPATCHED,
                              f"Chunk {chunk.chunk_index} dispatched (attempt {attempts})",
                              {"chunk_index": chunk.chunk_index, "total_chunks": chunk.total_chunks,
                               "attempt": attempts}, LogLevel.DEBUG)
            if self.metrics:
                self.metrics.chunks_dispatched.inc()
            started = time.perf_counter()
            try:
                return await asyncio.wait_for(worker.process(chunk), timeout=self.chunk_timeout)
            except asyncio.TimeoutError:
                raise ChunkTimeoutError(chunk.job_id, chunk.chunk_index, self.chunk_timeout)
            finally:
                if self.metrics:
                    self.metrics.chunk_duration.observe(time.perf_counter() - started)

        async def on_retry(decision: RetryDecision):
            if self.metrics:
                self.metrics.chunk_retries.labels(error_code=decision.error.error_code).inc()
            await self._audit(execution_id, chunk, AuditEventType.CHUNK_RETRY,
                              f"Retrying chunk {chunk.chunk_index}: {decision.error.error_message}",
                              {"chunk_index": chunk.chunk_index, "attempt": decision.attempt,
                               "error_code": decision.error.error_code,
                               "delay_seconds": round(decision.delay, 3)}, LogLevel.WARN)

        try:
            return await self.retry.execute_with_retry(
                attempt,
                operation=f"chunk {chunk.job_id}#{chunk.chunk_index}",
                execution_id=execution_id,
                on_retry=on_retry,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            cause = e.__cause__ if isinstance(e, RetryExhaustedError) and e.__cause__ else e
            record = self.retry.classify(cause, execution_id)
            error_code = "RETRY_EXHAUSTED" if isinstance(e, RetryExhaustedError) else record.error_code
            self.logger.error(f"Chunk {chunk.chunk_index} of job {chunk.job_id} failed: {e}", extra={
                "job_id": chunk.job_id,
                "chunk_index": chunk.chunk_index,
                "error_code": error_code
            })
            if self.metrics:
                self.metrics.chunk_failures.labels(error_code=error_code).inc()
            await self._audit(execution_id, chunk, AuditEventType.CHUNK_FAILED,
                              f"Chunk {chunk.chunk_index} failed after {attempts} attempts",
                              {"chunk_index": chunk.chunk_index, "error_code": error_code,
                               "attempts": attempts, "category": record.category.value},
                              LogLevel.ERROR)
            return ChunkOutcome.failed(
                chunk.job_id, chunk.chunk_index, chunk.item_count,
                {
                    "errorType": record.error_type,
                    "errorCode": error_code,
                    "error": record.error_message,
                    "isRetryable": record.is_retryable,
                    "dispatchFailure": True,
                },
            )

    async def _audit(self, execution_id, chunk, event_type, message, metadata, level):
        if self.audit is None:
            return
        await self.audit.record(
            execution_id or chunk.job_id, event_type, message,
            job_id=chunk.job_id, function_name="dispatch",
            log_level=level, metadata=metadata,
        )


def _is_dispatch_failure(outcome: ChunkOutcome) -> bool:
    return any(error.get("dispatchFailure") for error in outcome.errors)
