"""
Utilities package for CSV Job Orchestrator

Contains the metadata stores, configuration, logging and metrics helpers.
"""

from .store import MetadataStore, InMemoryMetadataStore
from .database import DatabaseManager
from .config import OrchestratorConfig, load_config
from .logger import setup_logger, get_logger, set_log_context, LoggerContext
from .metrics import OrchestratorMetrics, get_metrics

__all__ = [
    "MetadataStore",
    "InMemoryMetadataStore",
    "DatabaseManager",
    "OrchestratorConfig",
    "load_config",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext",
    "OrchestratorMetrics",
    "get_metrics"
]
