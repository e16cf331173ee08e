"""
CSV Job Orchestrator

Fault-tolerant orchestration of large CSV processing jobs. A trigger names an
input file; the orchestrator takes a lease lock on the job, splits the file
into a deterministic chunk manifest, fans the chunks out to a bounded pool of
workers, folds their outcomes idempotently and finalizes the job as
COMPLETED, PARTIAL or FAILED, with every step recorded in an append-only
audit trail.

Usage:
    from csv_job_orchestrator import JobOrchestrator, TriggerEvent
    from csv_job_orchestrator.services import LocalFileInputSource, LocalCsvChunkWorker
    from csv_job_orchestrator.utils import InMemoryMetadataStore

    source = LocalFileInputSource("/data")
    orchestrator = JobOrchestrator(
        InMemoryMetadataStore(),
        source,
        LocalCsvChunkWorker(source),
    )
    await orchestrator.start()

    status = await orchestrator.handle_trigger(
        TriggerEvent(bucket="incoming", key="users.csv", size=1024)
    )
    print(f"Job {status['job_id']} finished as {status['status']}")
"""

__version__ = "1.0.0"
__author__ = "CSV Job Orchestrator Team"
__license__ = "MIT"

# Core orchestrator
from .core.orchestrator import JobOrchestrator

# Data models
from .models.job import Job, JobStatus, OrchestrationState
from .models.execution import ChunkManifestEntry, ChunkOutcome, AggregateSnapshot, InputDescriptor
from .models.events import TriggerEvent, ChunkWorkerResponse

# Utilities
from .utils.config import OrchestratorConfig, load_config
from .utils.database import DatabaseManager
from .utils.store import InMemoryMetadataStore
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    JobOrchestratorError,
    JobNotFoundError,
    LockContentionError,
    InvalidStateError,
    TransitionConflictError,
    ConfigurationError,
    DatabaseError
)

__all__ = [
    # Core
    "JobOrchestrator",

    # Models
    "Job",
    "JobStatus",
    "OrchestrationState",
    "ChunkManifestEntry",
    "ChunkOutcome",
    "AggregateSnapshot",
    "InputDescriptor",
    "TriggerEvent",
    "ChunkWorkerResponse",

    # Utilities
    "OrchestratorConfig",
    "load_config",
    "DatabaseManager",
    "InMemoryMetadataStore",
    "setup_logger",
    "get_logger",

    # Exceptions
    "JobOrchestratorError",
    "JobNotFoundError",
    "LockContentionError",
    "InvalidStateError",
    "TransitionConflictError",
    "ConfigurationError",
    "DatabaseError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
