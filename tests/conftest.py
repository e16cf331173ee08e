"""
Shared fixtures: a manual clock, an in-memory store, recording sleeps and
scripted chunk workers, so orchestration can be tested without a database
or real time passing.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from prometheus_client import CollectorRegistry

# Add project root to sys.path so the package is importable without installing
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from csv_job_orchestrator.core.exceptions import InputNotFoundError
from csv_job_orchestrator.models.execution import ChunkManifestEntry, ChunkOutcome, InputDescriptor
from csv_job_orchestrator.services.audit_trail import AuditTrail
from csv_job_orchestrator.services.job_registry import JobRegistry
from csv_job_orchestrator.services.storage import InputSource
from csv_job_orchestrator.services.workers import ChunkWorker
from csv_job_orchestrator.utils.metrics import OrchestratorMetrics
from csv_job_orchestrator.utils.store import InMemoryMetadataStore


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_outcome(chunk: ChunkManifestEntry, success: int, errors: int = 0) -> ChunkOutcome:
    return ChunkOutcome(
        job_id=chunk.job_id,
        chunk_index=chunk.chunk_index,
        processed_count=success + errors,
        success_count=success,
        error_count=errors,
        errors=tuple(
            {"row": i, "errorType": "ValidationError", "error": "validation failed: bad value"}
            for i in range(errors)
        ),
    )


class ScriptedWorker(ChunkWorker):
    """
    Chunk worker driven by a per-chunk script.

    Each script step is an exception to raise, a ``(success, errors)`` pair,
    or a coroutine function taking the chunk. Chunks without remaining steps
    succeed for every item.
    """

    def __init__(self, script: Optional[Dict[int, list]] = None, delay: float = 0.0):
        self.script = {index: list(steps) for index, steps in (script or {}).items()}
        self.delay = delay
        self.calls: List[int] = []
        self.bound: Optional[InputDescriptor] = None
        self.closed = False

    def bind(self, descriptor: InputDescriptor) -> "ScriptedWorker":
        self.bound = descriptor
        return self

    async def process(self, chunk: ChunkManifestEntry) -> ChunkOutcome:
        self.calls.append(chunk.chunk_index)
        if self.delay:
            await asyncio.sleep(self.delay)
        steps = self.script.get(chunk.chunk_index)
        step = steps.pop(0) if steps else None

        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step(chunk)
        if step is None:
            return make_outcome(chunk, chunk.item_count)
        success, errors = step
        return make_outcome(chunk, success, errors)

    async def close(self):
        self.closed = True


class StaticInputSource(InputSource):
    """Input source over a fixed ``{(bucket, key): row_count}`` mapping."""

    def __init__(self, rows: Dict[Tuple[str, str], int]):
        self.rows = dict(rows)
        self.describe_calls = 0

    async def describe(self, bucket: str, key: str) -> InputDescriptor:
        self.describe_calls += 1
        if (bucket, key) not in self.rows:
            raise InputNotFoundError(bucket, key)
        count = self.rows[(bucket, key)]
        return InputDescriptor(bucket=bucket, key=key, size=count * 16, row_count=count)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryMetadataStore()


@pytest.fixture
def metrics_registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry):
    return OrchestratorMetrics(registry=metrics_registry)


@pytest.fixture
def audit(store, clock):
    return AuditTrail(store, retention_days=90, clock=clock)


@pytest.fixture
def registry(store, audit, clock, metrics):
    return JobRegistry(store, audit, clock=clock, metrics=metrics)
