"""
Services package for CSV Job Orchestrator

Contains the components the orchestrator is assembled from: lock manager,
job registry, chunk dispatcher, result aggregator, error classification and
retry, audit trail, and the storage and worker adapters.
"""

from .audit_trail import AuditTrail
from .lock_manager import LockManager, LeaseKeeper
from .job_registry import JobRegistry
from .fault_tolerance import ErrorClassifier, RetryPolicy, RetryDecision, RetryController
from .storage import InputSource, ResultSink, LocalFileInputSource, LocalFileResultSink
from .workers import ChunkWorker, HttpChunkWorker, LocalCsvChunkWorker, require_columns
from .chunk_dispatcher import ChunkDispatcher, DispatchReport, split_input
from .result_aggregator import ResultAggregator, analyze_errors

__all__ = [
    "AuditTrail",
    "LockManager",
    "LeaseKeeper",
    "JobRegistry",
    "ErrorClassifier",
    "RetryPolicy",
    "RetryDecision",
    "RetryController",
    "InputSource",
    "ResultSink",
    "LocalFileInputSource",
    "LocalFileResultSink",
    "ChunkWorker",
    "HttpChunkWorker",
    "LocalCsvChunkWorker",
    "require_columns",
    "ChunkDispatcher",
    "DispatchReport",
    "split_input",
    "ResultAggregator",
    "analyze_errors"
]
