"""
CLI package for CSV Job Orchestrator

Provides command-line interface for running, inspecting and cancelling jobs.
"""

from .main import main, cli

__all__ = ["main", "cli"]
