"""
Main CLI entry point for CSV Job Orchestrator

Provides command-line interface for running CSV jobs, inspecting and
cancelling them, reading their audit trail and maintaining the metadata
database.
"""

import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from ..core.orchestrator import JobOrchestrator
from ..core.exceptions import ConfigurationError, JobOrchestratorError
from ..models.audit import AuditRecord
from ..models.events import TriggerEvent
from ..services.storage import LocalFileInputSource, LocalFileResultSink
from ..services.workers import ChunkWorker, HttpChunkWorker, LocalCsvChunkWorker, require_columns
from ..utils.config import OrchestratorConfig, load_config
from ..utils.database import DatabaseManager
from ..utils.logger import ROOT_LOGGER_NAME, setup_logger
from ..utils.metrics import get_metrics
from ..utils.store import InMemoryMetadataStore, MetadataStore

LOCAL_BUCKET = "local"


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose):
    """CSV Job Orchestrator CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    try:
        settings = load_config(config, database_url=database_url, log_level=log_level)
    except ConfigurationError as e:
        click.echo(f"Invalid configuration: {e.message}", err=True)
        sys.exit(1)

    # Set up logging
    ctx.obj['logger'] = setup_logger(ROOT_LOGGER_NAME, level=settings.log_level, structured=not verbose)
    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose


@cli.command('run')
@click.argument('csv_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--job-id', help='Job ID (derived from the file and trigger time by default)')
@click.option('--output-dir', type=click.Path(file_okay=False), default='results', help='Directory for result files')
@click.option('--worker-url', help='Send chunks to this HTTP worker instead of validating locally')
@click.option('--require', 'required_columns', multiple=True, help='Column that must not be empty')
@click.option('--chunk-size', type=int, help='Maximum rows per chunk')
@click.option('--max-concurrent', type=int, help='Maximum chunks in flight')
@click.pass_context
def run_job(ctx, csv_file, job_id, output_dir, worker_url, required_columns, chunk_size, max_concurrent):
    """Run a job for a local CSV file"""
    settings: OrchestratorConfig = ctx.obj['settings']
    overrides = {"max_chunk_size": chunk_size, "max_concurrent_chunks": max_concurrent}
    try:
        settings = replace(settings, **{k: v for k, v in overrides.items() if v is not None}).validate()
    except ConfigurationError as e:
        click.echo(f"Invalid configuration: {e.message}", err=True)
        sys.exit(1)

    path = Path(csv_file).resolve()
    source = LocalFileInputSource(buckets={LOCAL_BUCKET: str(path.parent)})
    worker: ChunkWorker
    if worker_url:
        worker = HttpChunkWorker(worker_url, timeout=settings.chunk_timeout)
    else:
        worker = LocalCsvChunkWorker(
            source, validator=require_columns(*required_columns) if required_columns else None
        )

    async def _run():
        orchestrator = JobOrchestrator(
            _create_store(settings), source, worker,
            result_sink=LocalFileResultSink(output_dir),
            config=settings, metrics=get_metrics(),
        )
        try:
            await orchestrator.start()
            event = TriggerEvent(bucket=LOCAL_BUCKET, key=path.name, size=path.stat().st_size)
            return await orchestrator.handle_trigger(event, job_id=job_id)
        finally:
            await orchestrator.stop()

    status = _run_command(_run, "running job")
    _display_job_details(status, ctx.obj['verbose'])
    if status['status'] == 'FAILED':
        sys.exit(1)


@cli.command('status')
@click.argument('job_id')
@click.pass_context
def job_status(ctx, job_id):
    """Get job status"""
    _require_database(ctx.obj['settings'])

    async def _status():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.get_job(job_id)
        finally:
            await orchestrator.stop()

    _display_job_details(_run_command(_status, "getting job status"), ctx.obj['verbose'])


@cli.command('cancel')
@click.argument('job_id')
@click.option('--reason', default='cancelled from CLI', help='Cancellation reason')
@click.pass_context
def cancel_job(ctx, job_id, reason):
    """Cancel a job"""
    _require_database(ctx.obj['settings'])

    async def _cancel():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.cancel_job(job_id, reason)
        finally:
            await orchestrator.stop()

    status = _run_command(_cancel, "cancelling job")
    click.echo(f"Job {job_id} cancelled")
    _display_job_details(status, ctx.obj['verbose'])


@cli.command('audit')
@click.argument('job_id')
@click.option('--execution-id', help='Only records of this execution')
@click.option('--json', 'as_json', is_flag=True, help='Print records as JSON lines')
@click.pass_context
def audit_trail(ctx, job_id, execution_id, as_json):
    """Show the audit trail of a job"""
    _require_database(ctx.obj['settings'])

    async def _audit():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.list_audit(job_id=job_id, execution_id=execution_id)
        finally:
            await orchestrator.stop()

    records = _run_command(_audit, "reading audit trail")
    if as_json:
        for record in records:
            click.echo(json.dumps(record.to_dict(), default=str))
    else:
        _display_audit_table(records, ctx.obj['verbose'])


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the metadata schema"""
    settings: OrchestratorConfig = ctx.obj['settings']
    _require_database(settings)

    async def _init():
        db = DatabaseManager(settings.database_url)
        try:
            await db.initialize()
            await db.create_schema()
        finally:
            await db.close()

    _run_command(_init, "creating schema")
    click.echo("Schema created")


@cli.command('purge')
@click.pass_context
def purge(ctx):
    """Delete expired locks, jobs and audit records"""
    _require_database(ctx.obj['settings'])

    async def _purge():
        orchestrator = await _initialize_orchestrator(ctx)
        try:
            return await orchestrator.purge_expired()
        finally:
            await orchestrator.stop()

    counts = _run_command(_purge, "purging expired records")
    for name, count in counts.items():
        click.echo(f"{name}: {count}")


# Helper functions
def _create_store(settings: OrchestratorConfig) -> MetadataStore:
    if settings.database_url:
        return DatabaseManager(settings.database_url)
    return InMemoryMetadataStore()


def _require_database(settings: OrchestratorConfig):
    if not settings.database_url:
        click.echo("This command needs a database: pass --database-url or set CJO_DATABASE_URL", err=True)
        sys.exit(1)


async def _initialize_orchestrator(ctx) -> JobOrchestrator:
    """Orchestrator over the configured database for inspection commands."""
    settings: OrchestratorConfig = ctx.obj['settings']
    source = LocalFileInputSource()
    orchestrator = JobOrchestrator(
        DatabaseManager(settings.database_url), source, LocalCsvChunkWorker(source), config=settings
    )
    await orchestrator.start()
    return orchestrator


def _run_command(coro_fn, action: str) -> Any:
    try:
        return asyncio.run(coro_fn())
    except JobOrchestratorError as e:
        click.echo(f"Error {action}: {e.message}", err=True)
        sys.exit(1)


def _display_job_details(job_info: Dict[str, Any], verbose: bool):
    """Display job status"""
    click.echo(f"Job ID: {job_info['job_id']}")
    click.echo(f"Status: {job_info['status']}")
    if verbose:
        click.echo(f"State: {job_info['state']}")
    total = job_info['total_chunks'] if job_info['total_chunks'] is not None else "?"
    click.echo(f"Chunks: {job_info['chunks_completed']}/{total}")
    click.echo(f"Success Rate: {job_info['success_rate'] * 100:.1f}%")

    if job_info.get('last_error'):
        click.echo(f"Last Error: {job_info['last_error']}")


def _display_audit_table(records: List[AuditRecord], verbose: bool):
    """Display audit records in table format"""
    if not records:
        click.echo("No audit records found")
        return

    # Header
    click.echo(f"{'Seq':<5} {'Timestamp':<20} {'Level':<6} {'Event':<24} {'Message'}")
    click.echo("-" * 100)

    # Rows
    for record in records:
        timestamp = record.timestamp.isoformat()[:19]
        click.echo(f"{record.sequence:<5} {timestamp:<20} {record.log_level.value:<6} "
                   f"{record.event_type.value:<24} {record.message}")
        if verbose and record.metadata:
            click.echo(f"{'':<5} {json.dumps(record.metadata, default=str)}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
