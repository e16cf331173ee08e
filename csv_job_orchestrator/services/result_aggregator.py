"""
Result aggregator.

Folds chunk outcomes into the job aggregate. Outcomes are recorded through
the registry first, so a duplicate or late delivery can never be counted
twice, and the snapshot is always recomputed from the distinct recorded
outcomes before the monotonic write.
"""

from collections import Counter
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from ..models.execution import AggregateSnapshot, ChunkOutcome, chunk_errors
from ..utils.logger import get_logger
from ..core.exceptions import InvalidStateError
from .fault_tolerance import TERMINAL_PATTERNS
from .job_registry import JobRegistry
from .storage import ResultSink

CRITICAL_PATTERNS = (
    "databaseconnection",
    "datacorruption",
    "data corruption",
    "securityviolation",
    "security violation",
    "systemfailure",
    "system failure",
    "outofmemory",
    "out of memory",
)

TOP_ERROR_LIMIT = 10


def _matches(error: Dict[str, Any], patterns) -> bool:
    text = f"{error.get('errorType') or ''} {error.get('error') or ''}".lower()
    return any(pattern in text for pattern in patterns)


def is_retryable_error(error: Dict[str, Any]) -> bool:
    """Retryability of one error payload; unknown errors count as retryable."""
    if "isRetryable" in error:
        return bool(error["isRetryable"])
    if _matches(error, TERMINAL_PATTERNS):
        return False
    return True


def analyze_errors(outcomes: Iterable[ChunkOutcome]) -> Dict[str, Any]:
    """
    Summarize the error payloads of a set of chunk outcomes.

    Returns:
        errorsByType, topErrors (count and percentage, most frequent first),
        retryableErrors, nonRetryableErrors and criticalErrors
    """
    errors = chunk_errors(outcomes)
    by_type: Counter = Counter()
    retryable = 0
    non_retryable = 0
    critical: List[str] = []

    for error in errors:
        error_type = error.get("errorType") or "UnknownError"
        by_type[error_type] += 1
        if is_retryable_error(error):
            retryable += 1
        else:
            non_retryable += 1
        if _matches(error, CRITICAL_PATTERNS):
            message = f"{error_type}: {error.get('error') or 'Unknown error'}"
            if message not in critical:
                critical.append(message)

    total = sum(by_type.values())
    top_errors = [
        {
            "errorType": error_type,
            "count": count,
            "percentage": round(count / total * 100, 2) if total else 0.0,
        }
        for error_type, count in by_type.most_common(TOP_ERROR_LIMIT)
    ]
    return {
        "errorsByType": dict(by_type),
        "topErrors": top_errors,
        "retryableErrors": retryable,
        "nonRetryableErrors": non_retryable,
        "criticalErrors": critical,
    }


class ResultAggregator:
    """Idempotent fold of chunk outcomes into the stored aggregate."""

    def __init__(self, registry: JobRegistry, sink: Optional[ResultSink] = None):
        self.registry = registry
        self.sink = sink
        self.logger = get_logger(__name__)

    async def fold(
        self, job_id: str, chunk_index: int, outcome: ChunkOutcome, actor: Optional[str] = None
    ) -> AggregateSnapshot:
        """
        Record ``outcome`` and return the resulting aggregate.

        Folding the same outcome twice, or folding outcomes in any order,
        yields the same snapshot.
        """
        first_delivery = await self.registry.record_chunk_outcome(job_id, chunk_index, outcome, actor=actor)
        snapshot = await self.snapshot(job_id)
        if first_delivery:
            await self.registry.update_aggregate(job_id, snapshot, actor=actor)
        return snapshot

    async def snapshot(self, job_id: str) -> AggregateSnapshot:
        job = await self.registry.get_job(job_id)
        outcomes = await self.registry.list_chunk_outcomes(job_id)
        snapshot = AggregateSnapshot.from_outcomes(outcomes, job.total_chunks)
        if job.output_location:
            snapshot = replace(snapshot, output_location=job.output_location)
        return snapshot

    async def analyze(self, job_id: str) -> Dict[str, Any]:
        return analyze_errors(await self.registry.list_chunk_outcomes(job_id))

    async def finalize(self, job_id: str) -> Optional[str]:
        """
        Write the merged output through the sink.

        Returns:
            The output location, or None without a sink

        Raises:
            InvalidStateError: If some chunks have no recorded outcome
        """
        job = await self.registry.get_job(job_id)
        snapshot = await self.snapshot(job_id)
        if not snapshot.is_complete:
            raise InvalidStateError(
                job_id,
                f"only {snapshot.chunks_completed} of {snapshot.total_chunks} chunks recorded",
                state=job.state.value
            )
        if self.sink is None:
            return None

        analysis = await self.analyze(job_id)
        location = await self.sink.write(job, snapshot, analysis)
        self.logger.info(f"Finalized job {job_id}: {snapshot.terminal_status.value} "
                         f"({snapshot.total_success}/{snapshot.total_processed})", extra={
            "job_id": job_id,
            "output_location": location
        })
        return location
