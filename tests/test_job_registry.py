"""Tests for job records, conditional transitions, manifests and outcomes."""

import asyncio

import pytest

from csv_job_orchestrator.core.exceptions import (
    InvalidStateError,
    InvariantViolationError,
    JobAlreadyExistsError,
    JobNotFoundError,
    TransitionConflictError,
)
from csv_job_orchestrator.models import (
    AggregateSnapshot,
    AuditEventType,
    ChunkOutcome,
    InputDescriptor,
    Job,
    OrchestrationState,
)
from csv_job_orchestrator.services.chunk_dispatcher import split_input

from conftest import make_outcome

S = OrchestrationState


async def create(registry, job_id="job-1", rows=30, chunk_size=10, to_state=None):
    """Create a job and optionally walk it to ``to_state`` with a manifest."""
    await registry.create_job(Job.create(job_id, "incoming", "users.csv", file_size=rows * 16))
    chunks = split_input(InputDescriptor("incoming", "users.csv", rows * 16, row_count=rows), chunk_size, job_id)
    path = [S.PENDING, S.LOCKED, S.CHUNKING, S.DISPATCHING]
    if to_state is None:
        return chunks
    for current, target in zip(path, path[1:]):
        if current == S.CHUNKING:
            await registry.set_chunk_manifest(job_id, chunks)
        await registry.transition(job_id, current, target)
        if target == to_state:
            break
    return chunks


class TestJobs:
    """Test job creation and lookup."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, registry, audit):
        await create(registry)

        job = await registry.get_job("job-1")
        assert job.state == S.PENDING
        assert (await registry.get_job_status("job-1"))["status"] == "PENDING"

        records = await audit.list_records(job_id="job-1")
        assert records[0].event_type == AuditEventType.JOB_CREATED
        assert records[0].metadata["key"] == "users.csv"

    @pytest.mark.asyncio
    async def test_duplicate_create_is_rejected(self, registry):
        await create(registry)
        with pytest.raises(JobAlreadyExistsError):
            await create(registry)

    @pytest.mark.asyncio
    async def test_unknown_job(self, registry):
        with pytest.raises(JobNotFoundError):
            await registry.get_job("missing")
        assert await registry.find_job("missing") is None


class TestTransitions:
    """Test compare-and-set state transitions."""

    @pytest.mark.asyncio
    async def test_transition_updates_fields_and_audits(self, registry, audit):
        await create(registry)

        job = await registry.transition("job-1", S.PENDING, S.LOCKED, actor="exec-a", execution_id="exec-a")

        assert job.state == S.LOCKED
        assert job.execution_id == "exec-a"
        records = await audit.list_records(execution_id="exec-a")
        assert records[-1].event_type == AuditEventType.STATE_TRANSITION
        assert records[-1].metadata == {"from_state": "PENDING", "to_state": "LOCKED"}

    @pytest.mark.asyncio
    async def test_disallowed_transition(self, registry):
        await create(registry)
        with pytest.raises(InvalidStateError):
            await registry.transition("job-1", S.PENDING, S.DISPATCHING)

    @pytest.mark.asyncio
    async def test_stale_from_state_conflicts(self, registry):
        await create(registry)
        await registry.transition("job-1", S.PENDING, S.LOCKED)

        with pytest.raises(TransitionConflictError) as exc_info:
            await registry.transition("job-1", S.PENDING, S.LOCKED)
        assert exc_info.value.details["actual"] == "LOCKED"

    @pytest.mark.asyncio
    async def test_concurrent_transitions_have_one_winner(self, registry):
        await create(registry)

        results = await asyncio.gather(
            *(registry.transition("job-1", S.PENDING, S.LOCKED, execution_id=f"exec-{i}") for i in range(5)),
            return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, Job)) == 1
        assert sum(1 for r in results if isinstance(r, TransitionConflictError)) == 4

    @pytest.mark.asyncio
    async def test_only_mutable_fields_may_change(self, registry):
        await create(registry)
        with pytest.raises(ValueError):
            await registry.transition("job-1", S.PENDING, S.LOCKED, bucket="elsewhere")

    @pytest.mark.asyncio
    async def test_failed_transition_records_reason(self, registry, audit):
        await create(registry)
        await registry.transition("job-1", S.PENDING, S.FAILED, failure_reason="input missing")

        records = await audit.list_records(job_id="job-1")
        assert records[-1].metadata["failure_reason"] == "input missing"
        assert records[-1].log_level.value == "ERROR"


class TestManifest:
    """Test the write-once chunk manifest."""

    @pytest.mark.asyncio
    async def test_set_manifest_sets_total_chunks(self, registry):
        chunks = await create(registry)
        await registry.set_chunk_manifest("job-1", chunks)

        assert (await registry.get_job("job-1")).total_chunks == 3
        assert await registry.get_chunk_manifest("job-1") == chunks

    @pytest.mark.asyncio
    async def test_resubmitting_same_manifest_is_a_no_op(self, registry, audit):
        chunks = await create(registry)
        await registry.set_chunk_manifest("job-1", chunks)
        await registry.set_chunk_manifest("job-1", chunks)

        created = [r for r in await audit.list_records(job_id="job-1")
                   if r.event_type == AuditEventType.MANIFEST_CREATED]
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_different_manifest_is_rejected(self, registry):
        chunks = await create(registry)
        await registry.set_chunk_manifest("job-1", chunks)

        other = split_input(InputDescriptor("incoming", "users.csv", 0, row_count=30), 15, "job-1")
        with pytest.raises(InvalidStateError):
            await registry.set_chunk_manifest("job-1", other)

    @pytest.mark.asyncio
    async def test_manifest_must_be_contiguous(self, registry):
        chunks = await create(registry)
        with pytest.raises(InvariantViolationError):
            await registry.set_chunk_manifest("job-1", chunks[1:])

    @pytest.mark.asyncio
    async def test_manifest_only_while_pending(self, registry):
        chunks = await create(registry, to_state=S.DISPATCHING)
        await registry.transition("job-1", S.DISPATCHING, S.AGGREGATING)

        with pytest.raises(InvalidStateError):
            await registry.set_chunk_manifest("job-1", chunks)


class TestOutcomes:
    """Test first-delivery-wins outcome recording and monotonic aggregates."""

    @pytest.mark.asyncio
    async def test_first_delivery_wins(self, registry, metrics_registry):
        chunks = await create(registry, to_state=S.DISPATCHING)

        assert await registry.record_chunk_outcome("job-1", 0, make_outcome(chunks[0], 10)) is True
        assert await registry.record_chunk_outcome("job-1", 0, make_outcome(chunks[0], 2, 8)) is False

        outcomes = await registry.list_chunk_outcomes("job-1")
        assert len(outcomes) == 1
        assert outcomes[0].success_count == 10
        assert metrics_registry.get_sample_value("cjo_duplicate_outcomes_total") == 1

    @pytest.mark.asyncio
    async def test_outcome_requires_manifest(self, registry):
        chunks = await create(registry)
        with pytest.raises(InvalidStateError):
            await registry.record_chunk_outcome("job-1", 0, make_outcome(chunks[0], 10))

    @pytest.mark.asyncio
    async def test_outcome_index_outside_manifest(self, registry):
        await create(registry, to_state=S.DISPATCHING)
        with pytest.raises(InvalidStateError):
            await registry.record_chunk_outcome("job-1", 3, ChunkOutcome("job-1", 3, 1, 1, 0))

    @pytest.mark.asyncio
    async def test_finished_job_accepts_only_duplicates(self, registry):
        chunks = await create(registry, to_state=S.DISPATCHING)
        await registry.record_chunk_outcome("job-1", 0, make_outcome(chunks[0], 10))
        await registry.transition("job-1", S.DISPATCHING, S.FAILED, failure_reason="cancelled: stop")

        assert await registry.record_chunk_outcome("job-1", 0, make_outcome(chunks[0], 10)) is False
        with pytest.raises(InvalidStateError):
            await registry.record_chunk_outcome("job-1", 1, make_outcome(chunks[1], 10))
        assert len(await registry.list_chunk_outcomes("job-1")) == 1

    @pytest.mark.asyncio
    async def test_outcome_must_match_its_address(self, registry):
        chunks = await create(registry, to_state=S.DISPATCHING)
        with pytest.raises(InvariantViolationError):
            await registry.record_chunk_outcome("job-1", 1, make_outcome(chunks[0], 10))

    @pytest.mark.asyncio
    async def test_aggregate_never_moves_backwards(self, registry):
        chunks = await create(registry, to_state=S.DISPATCHING)
        two = AggregateSnapshot.from_outcomes([make_outcome(c, 10) for c in chunks[:2]], 3)
        one = AggregateSnapshot.from_outcomes([make_outcome(chunks[0], 10)], 3)

        assert await registry.update_aggregate("job-1", two) is True
        assert await registry.update_aggregate("job-1", one) is False
        assert await registry.update_aggregate("job-1", two) is False

        job = await registry.get_job("job-1")
        assert job.chunks_completed == 2
        assert job.total_success == 20
