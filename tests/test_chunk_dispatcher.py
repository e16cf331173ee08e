"""Tests for deterministic splitting and bounded chunk dispatch."""

import asyncio

import pytest

from csv_job_orchestrator.core.exceptions import MalformedInputError, TransientExternalError
from csv_job_orchestrator.models import AuditEventType, InputDescriptor, ProcessingMode
from csv_job_orchestrator.services.chunk_dispatcher import ChunkDispatcher, split_input
from csv_job_orchestrator.services.fault_tolerance import RetryController, RetryPolicy
from csv_job_orchestrator.services.workers import ChunkWorker

from conftest import ScriptedWorker, make_outcome


def descriptor(rows=0, items=None):
    return InputDescriptor("incoming", "users.csv", size=rows * 16, row_count=rows, items=items)


@pytest.fixture
def dispatcher(audit, sleep, metrics):
    retry = RetryController(RetryPolicy(max_attempts=3), sleep=sleep, rand=lambda: 0.5)
    return ChunkDispatcher(retry, audit, max_concurrent_chunks=3, chunk_timeout=5, metrics=metrics)


class Collector:
    def __init__(self):
        self.outcomes = []

    async def __call__(self, outcome):
        self.outcomes.append(outcome)

    def by_index(self):
        return {o.chunk_index: o for o in self.outcomes}


class ConcurrencyProbe(ChunkWorker):
    """Worker that records the peak number of concurrent calls."""

    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def process(self, chunk):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return make_outcome(chunk, chunk.item_count)


class TestSplit:
    """Test manifest construction."""

    def test_ranges_cover_every_row_once(self):
        chunks = split_input(descriptor(25), 10, "job-1")

        assert [c.item_range for c in chunks] == [(0, 10), (10, 20), (20, 25)]
        assert {c.total_chunks for c in chunks} == {3}
        assert {c.processing_mode for c in chunks} == {ProcessingMode.DISTRIBUTED}

    def test_split_is_deterministic(self):
        assert split_input(descriptor(1001), 100, "job-1") == split_input(descriptor(1001), 100, "job-1")

    def test_small_input_is_single_chunk(self):
        chunks = split_input(descriptor(5), 10, "job-1")
        assert len(chunks) == 1
        assert chunks[0].processing_mode == ProcessingMode.SINGLE

    def test_empty_input_has_no_chunks(self):
        assert split_input(descriptor(0), 10, "job-1") == []

    def test_inline_items(self):
        chunks = split_input(descriptor(items=("a", "b", "c")), 2, "job-1")
        assert [c.items for c in chunks] == [("a", "b"), ("c",)]
        assert all(c.item_range is None for c in chunks)

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            split_input(descriptor(5), 0, "job-1")


class TestDispatch:
    """Test fan-out, retries and failure reporting."""

    @pytest.mark.asyncio
    async def test_every_chunk_reports_once(self, dispatcher):
        chunks = split_input(descriptor(100), 10, "job-1")
        worker = ScriptedWorker()
        collect = Collector()

        report = await dispatcher.dispatch(chunks, worker, collect, execution_id="exec-a")

        assert report.completed == list(range(10))
        assert report.failed == []
        assert sorted(o.chunk_index for o in collect.outcomes) == list(range(10))

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, dispatcher):
        chunks = split_input(descriptor(100), 10, "job-1")
        worker = ConcurrencyProbe()

        await dispatcher.dispatch(chunks, worker, Collector())

        assert worker.peak == 3

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, audit, sleep, metrics_registry, metrics):
        retry = RetryController(RetryPolicy(max_attempts=3), sleep=sleep, rand=lambda: 0.5)
        dispatcher = ChunkDispatcher(retry, audit, max_concurrent_chunks=2, chunk_timeout=0.05, metrics=metrics)
        chunks = split_input(descriptor(20), 10, "job-1")

        async def hang(chunk):
            await asyncio.sleep(5)

        worker = ScriptedWorker({0: [hang]})
        collect = Collector()
        report = await dispatcher.dispatch(chunks, worker, collect, execution_id="exec-a")

        assert report.completed == [0, 1]
        assert collect.by_index()[0].success_count == 10
        assert worker.calls.count(0) == 2
        assert sleep.delays == [1.0]
        assert metrics_registry.get_sample_value(
            "cjo_chunk_retries_total", {"error_code": "PROCESSING_TIMEOUT"}
        ) == 1
        retries = [r for r in await audit.list_records(execution_id="exec-a")
                   if r.event_type == AuditEventType.CHUNK_RETRY]
        assert retries[0].metadata["chunk_index"] == 0

    @pytest.mark.asyncio
    async def test_terminal_failure_becomes_failed_outcome(self, dispatcher, metrics_registry):
        chunks = split_input(descriptor(30), 10, "job-1")
        worker = ScriptedWorker({1: [MalformedInputError("bad header")]})
        collect = Collector()

        report = await dispatcher.dispatch(chunks, worker, collect)

        assert report.completed == [0, 2]
        assert report.failed == [1]
        failed = collect.by_index()[1]
        assert failed.error_count == 10
        assert failed.errors[0]["dispatchFailure"] is True
        assert failed.errors[0]["errorCode"] == "MALFORMED_INPUT"
        assert worker.calls.count(1) == 1
        assert metrics_registry.get_sample_value(
            "cjo_chunk_failures_total", {"error_code": "MALFORMED_INPUT"}
        ) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_failed_outcome(self, dispatcher, sleep):
        chunks = split_input(descriptor(10), 10, "job-1")
        worker = ScriptedWorker({0: [TransientExternalError("service unavailable")] * 3})
        collect = Collector()

        report = await dispatcher.dispatch(chunks, worker, collect)

        assert report.failed == [0]
        error = collect.outcomes[0].errors[0]
        assert error["errorCode"] == "RETRY_EXHAUSTED"
        assert error["errorType"] == "TransientExternalError"
        assert error["isRetryable"] is True
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_cancel_stops_new_chunks(self, audit, sleep):
        retry = RetryController(RetryPolicy(), sleep=sleep)
        dispatcher = ChunkDispatcher(retry, audit, max_concurrent_chunks=1)
        chunks = split_input(descriptor(30), 10, "job-1")
        cancel = asyncio.Event()
        worker = ScriptedWorker()

        async def cancel_after_first(outcome):
            cancel.set()

        report = await dispatcher.dispatch(chunks, worker, cancel_after_first, cancel_event=cancel)

        assert report.completed == [0]
        assert report.skipped == [1, 2]
        assert report.cancelled
        assert worker.calls == [0]

    @pytest.mark.asyncio
    async def test_stop_check_is_consulted_before_each_chunk(self, audit, sleep):
        retry = RetryController(RetryPolicy(), sleep=sleep)
        dispatcher = ChunkDispatcher(retry, audit, max_concurrent_chunks=1)
        chunks = split_input(descriptor(30), 10, "job-1")
        worker = ScriptedWorker()
        checks = []

        async def job_finished():
            checks.append(len(worker.calls))
            return len(worker.calls) >= 2

        report = await dispatcher.dispatch(chunks, worker, Collector(), should_stop=job_finished)

        assert report.completed == [0, 1]
        assert report.skipped == [2]
        assert worker.calls == [0, 1]
        assert checks == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_handler_errors_abort_dispatch(self, dispatcher):
        chunks = split_input(descriptor(30), 10, "job-1")

        async def explode(outcome):
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError):
            await dispatcher.dispatch(chunks, ScriptedWorker(), explode)

    @pytest.mark.asyncio
    async def test_nothing_to_dispatch(self, dispatcher):
        report = await dispatcher.dispatch([], ScriptedWorker(), Collector())
        assert not report.completed and not report.cancelled
