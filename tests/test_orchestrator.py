"""End-to-end tests of the job orchestrator over the in-memory store."""

import asyncio
import json

import pytest

from csv_job_orchestrator.core.exceptions import (
    InvalidStateError,
    JobNotFoundError,
    LockContentionError,
    TransientExternalError,
)
from csv_job_orchestrator.core.orchestrator import JobOrchestrator
from csv_job_orchestrator.models import (
    AuditEventType,
    ChunkOutcome,
    InputDescriptor,
    Job,
    OrchestrationState,
    TriggerEvent,
)
from csv_job_orchestrator.services.chunk_dispatcher import split_input
from csv_job_orchestrator.services.storage import LocalFileResultSink
from csv_job_orchestrator.utils.config import OrchestratorConfig

from conftest import ScriptedWorker, StaticInputSource, make_outcome

S = OrchestrationState
INPUT = ("incoming", "users.csv")


@pytest.fixture
def build(store, clock, sleep, metrics):
    """Factory for orchestrators sharing one store, clock and sleep."""

    def _build(worker, rows=30, sink=None, **options):
        config = OrchestratorConfig(**{"max_chunk_size": 10, "max_concurrent_chunks": 3, **options})
        source = StaticInputSource({INPUT: rows} if rows is not None else {})
        return JobOrchestrator(
            store, source, worker, result_sink=sink, config=config,
            clock=clock, sleep=sleep, rand=lambda: 0.5, metrics=metrics,
        )

    return _build


def trigger(size=480):
    return TriggerEvent(bucket=INPUT[0], key=INPUT[1], size=size)


async def events_of(orchestrator, event_type, job_id="job-1"):
    return [r for r in await orchestrator.list_audit(job_id=job_id) if r.event_type == event_type]


def gated(started: asyncio.Event, gate: asyncio.Event, success: int = 10):
    async def step(chunk):
        started.set()
        await gate.wait()
        return make_outcome(chunk, success)
    return step


class TestHappyPaths:
    """Test runs that reach a terminal status."""

    @pytest.mark.asyncio
    async def test_partial_success_with_transient_retries(self, build, sleep, tmp_path):
        worker = ScriptedWorker({
            1: [(7, 3)],
            2: [TransientExternalError("service unavailable"), TransientExternalError("service unavailable")],
        })
        orchestrator = build(worker, sink=LocalFileResultSink(str(tmp_path)))

        view = await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert view["status"] == "PARTIAL"
        assert view["state"] == "PARTIAL"
        assert view["total_chunks"] == 3
        assert view["chunks_completed"] == 3
        assert view["success_rate"] == pytest.approx(0.9)
        assert view["last_error"] == "validation failed: bad value"
        assert worker.calls.count(2) == 3
        assert sleep.delays == [1.0, 2.0]

        job = await orchestrator.registry.get_job("job-1")
        assert (job.total_processed, job.total_success, job.total_error) == (30, 27, 3)
        assert job.output_location == str(tmp_path / "job-1.json")
        document = json.loads((tmp_path / "job-1.json").read_text())
        assert document["summary"]["total_success"] == 27

    @pytest.mark.asyncio
    async def test_transitions_follow_the_state_machine(self, build):
        orchestrator = build(ScriptedWorker())

        await orchestrator.handle_trigger(trigger(), job_id="job-1")

        transitions = [
            (r.metadata["from_state"], r.metadata["to_state"])
            for r in await events_of(orchestrator, AuditEventType.STATE_TRANSITION)
        ]
        assert transitions == [
            ("PENDING", "LOCKED"),
            ("LOCKED", "CHUNKING"),
            ("CHUNKING", "DISPATCHING"),
            ("DISPATCHING", "AGGREGATING"),
            ("AGGREGATING", "FINALIZING"),
            ("FINALIZING", "COMPLETED"),
        ]

    @pytest.mark.asyncio
    async def test_audit_sequence_is_gapless_per_execution(self, build):
        orchestrator = build(ScriptedWorker())
        await orchestrator.handle_trigger(trigger(), job_id="job-1")

        job = await orchestrator.registry.get_job("job-1")
        records = await orchestrator.list_audit(execution_id=job.execution_id)
        assert [r.sequence for r in records] == list(range(1, len(records) + 1))
        assert records[-1].event_type == AuditEventType.LOCK_RELEASED

    @pytest.mark.asyncio
    async def test_empty_input_completes_without_chunks(self, build):
        worker = ScriptedWorker()
        orchestrator = build(worker, rows=0)

        view = await orchestrator.handle_trigger(trigger(0), job_id="job-1")

        assert view["status"] == "COMPLETED"
        assert view["total_chunks"] == 0
        assert view["success_rate"] == 0.0
        assert worker.calls == []

    @pytest.mark.asyncio
    async def test_worker_is_bound_to_the_input(self, build):
        worker = ScriptedWorker()
        orchestrator = build(worker)

        await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert worker.bound == InputDescriptor(bucket="incoming", key="users.csv", size=480)

    @pytest.mark.asyncio
    async def test_derived_job_id_is_stable(self, build):
        orchestrator = build(ScriptedWorker())
        event = trigger()

        view = await orchestrator.handle_trigger(event)

        assert view["job_id"] == event.derive_job_id()

    @pytest.mark.asyncio
    async def test_retrigger_of_finished_job_does_no_work(self, build, metrics_registry):
        worker = ScriptedWorker()
        orchestrator = build(worker)
        first = await orchestrator.handle_trigger(trigger(), job_id="job-1")
        calls = list(worker.calls)

        second = await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert second == first
        assert worker.calls == calls
        assert metrics_registry.get_sample_value("cjo_jobs_finished_total", {"status": "COMPLETED"}) == 1


class TestFailures:
    """Test runs that end FAILED."""

    @pytest.mark.asyncio
    async def test_all_rows_malformed(self, build):
        worker = ScriptedWorker({i: [(0, 10)] for i in range(3)})
        orchestrator = build(worker)

        view = await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert view["status"] == "FAILED"
        assert view["success_rate"] == 0.0
        job = await orchestrator.registry.get_job("job-1")
        assert job.total_error == 30
        assert job.failure_reason == "no items processed successfully"

    @pytest.mark.asyncio
    async def test_missing_input_fails_the_job(self, build):
        orchestrator = build(ScriptedWorker(), rows=None)

        view = await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert view["status"] == "FAILED"
        assert "not found" in view["last_error"]
        classified = await events_of(orchestrator, AuditEventType.ERROR_CLASSIFIED)
        assert classified[0].metadata["error_code"] == "INPUT_NOT_FOUND"
        assert classified[0].metadata["is_retryable"] is False
        assert await orchestrator.locks.get("job-1") is None

    @pytest.mark.asyncio
    async def test_terminally_failed_chunk_is_counted_as_errors(self, build):
        worker = ScriptedWorker({0: [TransientExternalError("connection refused")] * 3})
        orchestrator = build(worker)

        view = await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert view["status"] == "PARTIAL"
        assert view["chunks_completed"] == 3
        outcomes = await orchestrator.registry.list_chunk_outcomes("job-1")
        assert outcomes[0].errors[0]["errorCode"] == "RETRY_EXHAUSTED"
        assert len(await events_of(orchestrator, AuditEventType.CHUNK_FAILED)) == 1


class TestConcurrency:
    """Test lock contention, late deliveries and cancellation."""

    @pytest.mark.asyncio
    async def test_second_trigger_is_denied_while_first_runs(self, build):
        started, gate = asyncio.Event(), asyncio.Event()
        first = build(ScriptedWorker({0: [gated(started, gate)]}))
        second = build(ScriptedWorker())

        task = asyncio.create_task(first.handle_trigger(trigger(), job_id="job-1"))
        await asyncio.wait_for(started.wait(), timeout=5)

        with pytest.raises(LockContentionError):
            await second.handle_trigger(trigger(), job_id="job-1")

        gate.set()
        view = await asyncio.wait_for(task, timeout=5)

        assert view["status"] == "COMPLETED"
        assert len(await events_of(first, AuditEventType.MANIFEST_CREATED)) == 1
        assert len(await events_of(first, AuditEventType.LOCK_CONTENTION)) == 1

    @pytest.mark.asyncio
    async def test_timed_out_chunk_retries_and_late_result_is_a_duplicate(self, build):
        async def hang(chunk):
            await asyncio.sleep(5)

        worker = ScriptedWorker({4: [hang]})
        orchestrator = build(worker, rows=50, chunk_timeout=0.05)

        view = await orchestrator.handle_trigger(trigger(800), job_id="job-1")
        assert view["status"] == "COMPLETED"
        assert worker.calls.count(4) == 2

        late = ChunkOutcome("job-1", 4, processed_count=10, success_count=0, error_count=10)
        snapshot = await orchestrator.report_chunk_outcome("job-1", 4, late)

        assert snapshot.total_success == 50
        assert snapshot.total_error == 0
        job = await orchestrator.registry.get_job("job-1")
        assert (job.total_success, job.total_error) == (50, 0)
        assert len(await events_of(orchestrator, AuditEventType.DUPLICATE_OUTCOME)) == 1

    @pytest.mark.asyncio
    async def test_late_result_for_unknown_chunk_of_finished_job(self, build):
        orchestrator = build(ScriptedWorker())
        await orchestrator.handle_trigger(trigger(), job_id="job-1")

        with pytest.raises(InvalidStateError):
            await orchestrator.report_chunk_outcome("job-1", 7, ChunkOutcome("job-1", 7, 1, 1, 0))

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, build):
        started, gate = asyncio.Event(), asyncio.Event()
        worker = ScriptedWorker({0: [gated(started, gate)]})
        orchestrator = build(worker, max_concurrent_chunks=1)

        task = asyncio.create_task(orchestrator.handle_trigger(trigger(), job_id="job-1"))
        await asyncio.wait_for(started.wait(), timeout=5)
        await orchestrator.cancel_job("job-1", "operator request")
        gate.set()
        view = await asyncio.wait_for(task, timeout=5)

        assert view["status"] == "FAILED"
        assert view["last_error"] == "cancelled: operator request"
        assert worker.calls == [0]
        cancelled = await events_of(orchestrator, AuditEventType.JOB_CANCELLED)
        assert cancelled[0].metadata["reason"] == "operator request"

    @pytest.mark.asyncio
    async def test_cancel_from_another_orchestrator_stops_dispatch(self, build):
        started, gate = asyncio.Event(), asyncio.Event()
        worker = ScriptedWorker({0: [gated(started, gate)]})
        running = build(worker, max_concurrent_chunks=1)
        operator = build(ScriptedWorker())

        task = asyncio.create_task(running.handle_trigger(trigger(), job_id="job-1"))
        await asyncio.wait_for(started.wait(), timeout=5)
        await operator.cancel_job("job-1", "operator request")
        gate.set()
        view = await asyncio.wait_for(task, timeout=5)

        assert view["status"] == "FAILED"
        assert view["last_error"] == "cancelled: operator request"
        assert worker.calls == [0]
        assert await running.registry.list_chunk_outcomes("job-1") == []
        job = await running.registry.get_job("job-1")
        assert job.chunks_completed == 0
        assert len(await events_of(running, AuditEventType.JOB_FINALIZED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_idle_job(self, build):
        orchestrator = build(ScriptedWorker())
        await orchestrator.registry.create_job(Job.create("job-1", *INPUT))

        view = await orchestrator.cancel_job("job-1")

        assert view["status"] == "FAILED"
        assert view["last_error"] == "cancelled: cancelled by user"

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_rejected(self, build):
        orchestrator = build(ScriptedWorker())
        await orchestrator.handle_trigger(trigger(), job_id="job-1")

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel_job("job-1")

    @pytest.mark.asyncio
    async def test_unknown_job(self, build):
        orchestrator = build(ScriptedWorker())
        with pytest.raises(JobNotFoundError):
            await orchestrator.get_job("missing")


class TestRecovery:
    """Test resuming a job left mid-flight by a crashed execution."""

    @pytest.mark.asyncio
    async def test_resume_dispatch_skips_recorded_chunks(self, build):
        worker = ScriptedWorker()
        orchestrator = build(worker)
        registry = orchestrator.registry
        chunks = split_input(InputDescriptor(*INPUT, size=480, row_count=30), 10, "job-1")

        await registry.create_job(Job.create("job-1", *INPUT, file_size=480))
        await registry.transition("job-1", S.PENDING, S.LOCKED, execution_id="exec-crashed")
        await registry.transition("job-1", S.LOCKED, S.CHUNKING)
        await registry.set_chunk_manifest("job-1", chunks)
        await registry.transition("job-1", S.CHUNKING, S.DISPATCHING)
        await orchestrator.aggregator.fold("job-1", 0, make_outcome(chunks[0], 10))

        view = await orchestrator.handle_trigger(trigger(), job_id="job-1")

        assert view["status"] == "COMPLETED"
        assert sorted(worker.calls) == [1, 2]
        assert orchestrator.input_source.describe_calls == 0

    @pytest.mark.asyncio
    async def test_expired_lease_of_crashed_execution_is_taken_over(self, build, clock):
        orchestrator = build(ScriptedWorker())
        await orchestrator.registry.create_job(Job.create("job-1", *INPUT, file_size=480))
        await orchestrator.locks.acquire("job-1", "exec-crashed", 300)

        with pytest.raises(LockContentionError):
            await orchestrator.handle_trigger(trigger(), job_id="job-1")

        clock.advance(301)
        view = await orchestrator.handle_trigger(trigger(), job_id="job-1")
        assert view["status"] == "COMPLETED"


class TestLifecycle:
    """Test start, stop and purge."""

    @pytest.mark.asyncio
    async def test_stop_closes_worker(self, build):
        worker = ScriptedWorker()
        orchestrator = build(worker)
        await orchestrator.start()
        await orchestrator.stop()
        assert worker.closed

    @pytest.mark.asyncio
    async def test_purge_expired_jobs(self, build, clock):
        orchestrator = build(ScriptedWorker(), job_ttl=3600)
        await orchestrator.handle_trigger(trigger(), job_id="job-1")

        clock.advance(7200)
        counts = await orchestrator.purge_expired()

        assert counts["jobs"] == 1
        with pytest.raises(JobNotFoundError):
            await orchestrator.get_job("job-1")
