"""
Prometheus metrics for CSV Job Orchestrator

The library only records metrics; exposing them (``start_http_server`` or a
web framework integration) is left to the embedding application.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY


class OrchestratorMetrics:
    """Counters and histograms for chunk dispatch and job outcomes."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "cjo"):
        registry = registry if registry is not None else REGISTRY

        self.chunks_dispatched = Counter(
            "chunks_dispatched_total",
            "Chunk dispatch attempts",
            namespace=namespace,
            registry=registry,
        )
        self.chunk_retries = Counter(
            "chunk_retries_total",
            "Chunk dispatches retried after a retryable error",
            ["error_code"],
            namespace=namespace,
            registry=registry,
        )
        self.chunk_failures = Counter(
            "chunk_failures_total",
            "Chunks that failed terminally and were recorded as failed outcomes",
            ["error_code"],
            namespace=namespace,
            registry=registry,
        )
        self.duplicate_outcomes = Counter(
            "duplicate_outcomes_total",
            "Chunk outcomes ignored because the chunk was already recorded",
            namespace=namespace,
            registry=registry,
        )
        self.jobs_finished = Counter(
            "jobs_finished_total",
            "Jobs that reached a terminal status",
            ["status"],
            namespace=namespace,
            registry=registry,
        )
        self.lock_contention = Counter(
            "lock_contention_total",
            "Lock acquisitions denied because another owner held the lease",
            namespace=namespace,
            registry=registry,
        )
        self.chunk_duration = Histogram(
            "chunk_duration_seconds",
            "Wall time of a single chunk worker call",
            namespace=namespace,
            registry=registry,
            buckets=(0.05, 0.1, 0.5, 1, 5, 15, 60, 300, 900),
        )


_default_metrics: Optional[OrchestratorMetrics] = None


def get_metrics() -> OrchestratorMetrics:
    """Process-wide metrics registered on the default Prometheus registry."""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = OrchestratorMetrics()
    return _default_metrics
