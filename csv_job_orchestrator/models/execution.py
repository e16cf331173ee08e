"""
Chunk and aggregation models for CSV Job Orchestrator

Defines the input descriptor, the immutable chunk manifest entries handed to
workers, the chunk outcomes they report back and the folded aggregate
snapshot. All of these are frozen values passed between components.
"""

from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, FrozenSet, Iterable
from dataclasses import dataclass, field

from .job import JobStatus, compute_success_rate, derive_terminal_status


class ProcessingMode(Enum):
    """How a job's chunks are processed."""
    SINGLE = "single"
    DISTRIBUTED = "distributed"


@dataclass(frozen=True)
class InputDescriptor:
    """
    Description of a validated input object.

    Either ``items`` (inline records) or ``row_count`` (number of data rows,
    header excluded) determines how the input is split.
    """

    bucket: str
    key: str
    size: int = 0
    row_count: int = 0
    items: Optional[Tuple[Any, ...]] = None

    @property
    def item_count(self) -> int:
        if self.items is not None:
            return len(self.items)
        return self.row_count


@dataclass(frozen=True)
class ChunkManifestEntry:
    """One immutable unit of work: a slice of the job's input."""

    job_id: str
    chunk_index: int
    total_chunks: int
    processing_mode: ProcessingMode
    item_range: Optional[Tuple[int, int]] = None
    items: Optional[Tuple[Any, ...]] = None

    def __post_init__(self):
        if self.chunk_index < 0 or self.chunk_index >= self.total_chunks:
            raise ValueError(
                f"chunk_index {self.chunk_index} outside [0, {self.total_chunks})"
            )
        if (self.item_range is None) == (self.items is None):
            raise ValueError("Exactly one of item_range or items must be set")

    @property
    def item_count(self) -> int:
        if self.items is not None:
            return len(self.items)
        start, end = self.item_range
        return end - start

    def to_request(self) -> Dict[str, Any]:
        """Worker invocation payload."""
        request = {
            "job_id": self.job_id,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "processing_mode": self.processing_mode.value,
        }
        if self.items is not None:
            request["items"] = list(self.items)
        else:
            request["item_range"] = list(self.item_range)
        return request

    def to_dict(self) -> Dict[str, Any]:
        return self.to_request()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkManifestEntry":
        item_range = data.get("item_range")
        items = data.get("items")
        return cls(
            job_id=data["job_id"],
            chunk_index=int(data["chunk_index"]),
            total_chunks=int(data["total_chunks"]),
            processing_mode=ProcessingMode(data["processing_mode"]),
            item_range=tuple(item_range) if item_range is not None else None,
            items=tuple(items) if items is not None else None,
        )


@dataclass(frozen=True)
class ChunkOutcome:
    """Result reported for one chunk. Counts are row-level."""

    job_id: str
    chunk_index: int
    processed_count: int
    success_count: int
    error_count: int
    errors: Tuple[Dict[str, Any], ...] = ()

    def __post_init__(self):
        for name in ("processed_count", "success_count", "error_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.success_count + self.error_count > self.processed_count:
            raise ValueError("success_count + error_count exceeds processed_count")

    @classmethod
    def failed(
        cls,
        job_id: str,
        chunk_index: int,
        item_count: int,
        error: Dict[str, Any],
    ) -> "ChunkOutcome":
        """Outcome for a chunk whose dispatch failed terminally."""
        error_count = max(item_count, 1)
        return cls(
            job_id=job_id,
            chunk_index=chunk_index,
            processed_count=error_count,
            success_count=0,
            error_count=error_count,
            errors=(error,),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "chunk_index": self.chunk_index,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkOutcome":
        return cls(
            job_id=data["job_id"],
            chunk_index=int(data["chunk_index"]),
            processed_count=int(data["processed_count"]),
            success_count=int(data["success_count"]),
            error_count=int(data["error_count"]),
            errors=tuple(data.get("errors") or ()),
        )


@dataclass(frozen=True)
class AggregateSnapshot:
    """
    Job-level fold of distinct chunk outcomes.

    ``fold`` ignores any chunk index it has already seen, so folding is
    idempotent, and because the totals are sums over distinct indices the
    result does not depend on arrival order.
    """

    total_chunks: Optional[int] = None
    chunks_seen: FrozenSet[int] = field(default_factory=frozenset)
    total_processed: int = 0
    total_success: int = 0
    total_error: int = 0
    output_location: Optional[str] = None

    @property
    def chunks_completed(self) -> int:
        return len(self.chunks_seen)

    @property
    def success_rate(self) -> float:
        return compute_success_rate(self.total_success, self.total_processed)

    @property
    def is_complete(self) -> bool:
        return self.total_chunks is not None and self.chunks_completed >= self.total_chunks

    @property
    def terminal_status(self) -> JobStatus:
        return derive_terminal_status(self.total_success, self.total_error)

    def fold(self, outcome: ChunkOutcome) -> "AggregateSnapshot":
        if outcome.chunk_index in self.chunks_seen:
            return self
        return AggregateSnapshot(
            total_chunks=self.total_chunks,
            chunks_seen=self.chunks_seen | {outcome.chunk_index},
            total_processed=self.total_processed + outcome.processed_count,
            total_success=self.total_success + outcome.success_count,
            total_error=self.total_error + outcome.error_count,
            output_location=self.output_location,
        )

    @classmethod
    def from_outcomes(
        cls, outcomes: Iterable[ChunkOutcome], total_chunks: Optional[int] = None
    ) -> "AggregateSnapshot":
        snapshot = cls(total_chunks=total_chunks)
        for outcome in outcomes:
            snapshot = snapshot.fold(outcome)
        return snapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_chunks": self.total_chunks,
            "chunks_completed": self.chunks_completed,
            "total_processed": self.total_processed,
            "total_success": self.total_success,
            "total_error": self.total_error,
            "success_rate": self.success_rate,
            "output_location": self.output_location,
        }


def chunk_errors(outcomes: Iterable[ChunkOutcome]) -> List[Dict[str, Any]]:
    """Flatten the error payloads of a set of outcomes."""
    errors = []
    for outcome in outcomes:
        for error in outcome.errors:
            errors.append(dict(error, chunk_index=outcome.chunk_index))
    return errors
