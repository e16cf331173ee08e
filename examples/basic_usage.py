"""
Basic usage of the CSV Job Orchestrator.

Runs a small CSV file through the orchestrator with an in-memory metadata
store and a local worker, then prints the job status and its audit trail.
"""

import asyncio
import tempfile
from pathlib import Path

from csv_job_orchestrator import (
    InMemoryMetadataStore,
    JobOrchestrator,
    OrchestratorConfig,
    TriggerEvent,
)
from csv_job_orchestrator.services import (
    LocalCsvChunkWorker,
    LocalFileInputSource,
    LocalFileResultSink,
    require_columns,
)

SAMPLE_ROWS = [
    "id,name,email",
    "1,Ada,ada@example.com",
    "2,Grace,",
    "3,Linus,linus@example.com",
    "4,Barbara,barbara@example.com,extra",
    "5,Ken,ken@example.com",
]


async def basic_example(work_dir: Path):
    """Process one CSV file in chunks of two rows."""
    input_dir = work_dir / "incoming"
    input_dir.mkdir()
    (input_dir / "users.csv").write_text("\n".join(SAMPLE_ROWS) + "\n", encoding="utf-8")

    source = LocalFileInputSource(buckets={"incoming": str(input_dir)})
    orchestrator = JobOrchestrator(
        InMemoryMetadataStore(),
        source,
        LocalCsvChunkWorker(source, validator=require_columns("name", "email")),
        result_sink=LocalFileResultSink(str(work_dir / "results")),
        config=OrchestratorConfig(max_chunk_size=2, max_concurrent_chunks=2),
    )

    await orchestrator.start()
    try:
        view = await orchestrator.handle_trigger(TriggerEvent(bucket="incoming", key="users.csv"))

        print(f"Job {view['job_id']} finished as {view['status']}")
        print(f"  chunks: {view['chunks_completed']}/{view['total_chunks']}")
        print(f"  success rate: {view['success_rate']:.1%}")

        print("Audit trail:")
        for record in await orchestrator.list_audit(job_id=view["job_id"]):
            print(f"  {record.sequence:>3} {record.event_type.value:<24} {record.message}")

        print(f"Results written to {work_dir / 'results'}")
    finally:
        await orchestrator.stop()


def main():
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(basic_example(Path(tmp)))


if __name__ == "__main__":
    main()
