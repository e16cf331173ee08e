"""
Database utilities for CSV Job Orchestrator

PostgreSQL implementation of the lock/metadata store. Every conditional write
is a single statement (or a single transaction) so the database arbitrates
between concurrent executions.
"""

import json
from dataclasses import replace
import asyncpg
from typing import Dict, List, Optional, Any
from datetime import datetime
from contextlib import asynccontextmanager
from importlib import resources

from .store import MetadataStore, MUTABLE_JOB_FIELDS
from .logger import get_logger
from ..models.job import Job, OrchestrationState
from ..models.lock import Lock
from ..models.execution import ChunkManifestEntry, ChunkOutcome, AggregateSnapshot
from ..models.audit import AuditRecord, AuditEventType, LogLevel
from ..core.exceptions import DatabaseError

# Attempts at assigning an audit sequence number before giving up
AUDIT_SEQUENCE_ATTEMPTS = 5

_LOCK_COLUMNS = "lock_key, owner, expires_at, version, acquired_at"


def load_schema() -> str:
    """SQL schema shipped with the package."""
    return resources.files("csv_job_orchestrator").joinpath("sql/schema.sql").read_text(encoding="utf-8")


def _lock_from_row(row) -> Optional[Lock]:
    if row is None:
        return None
    return Lock(
        lock_key=row["lock_key"],
        owner=row["owner"],
        expires_at=row["expires_at"],
        version=row["version"],
        acquired_at=row["acquired_at"],
    )


def _job_from_row(row) -> Optional[Job]:
    if row is None:
        return None
    return Job.from_dict(dict(row))


def _audit_from_row(row) -> AuditRecord:
    return AuditRecord(
        execution_id=row["execution_id"],
        sequence=row["sequence"],
        job_id=row["job_id"],
        event_type=AuditEventType(row["event_type"]),
        log_level=LogLevel(row["log_level"]),
        function_name=row["function_name"],
        message=row["message"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        correlation_id=row["correlation_id"],
        timestamp=row["timestamp"],
        expires_at=row["expires_at"],
    )


class DatabaseManager(MetadataStore):
    """
    Manages database connections and store operations.

    Provides the lock, job, chunk and audit operations of the metadata store
    on top of an asyncpg connection pool.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_connection() as connection:
                await connection.execute("SELECT 1")
                return True
        except (DatabaseError, OSError, asyncpg.PostgresError):
            return False

    async def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(load_schema())
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_schema", str(e))

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    # Lock Methods
    async def acquire_lock(self, lock_key: str, owner: str, expires_at: datetime, now: datetime) -> Optional[Lock]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(f"""
                    INSERT INTO locks (lock_key, owner, expires_at, version, acquired_at)
                    VALUES ($1, $2, $3, 1, $4)
                    ON CONFLICT (lock_key) DO UPDATE SET
                        owner = EXCLUDED.owner,
                        expires_at = EXCLUDED.expires_at,
                        version = locks.version + 1,
                        acquired_at = EXCLUDED.acquired_at
                    WHERE locks.expires_at < $4 OR locks.owner = EXCLUDED.owner
                    RETURNING {_LOCK_COLUMNS}
                """, lock_key, owner, expires_at, now)
                return _lock_from_row(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("acquire_lock", str(e), table="locks")

    async def renew_lock(self, lock_key: str, owner: str, version: int, expires_at: datetime, now: datetime) -> Optional[Lock]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(f"""
                    UPDATE locks SET expires_at = $4, version = version + 1
                    WHERE lock_key = $1 AND owner = $2 AND version = $3 AND expires_at >= $5
                    RETURNING {_LOCK_COLUMNS}
                """, lock_key, owner, version, expires_at, now)
                return _lock_from_row(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("renew_lock", str(e), table="locks")

    async def release_lock(self, lock_key: str, owner: str, version: int) -> bool:
        try:
            async with self.get_connection() as conn:
                result = await conn.execute(
                    "DELETE FROM locks WHERE lock_key = $1 AND owner = $2 AND version = $3",
                    lock_key, owner, version
                )
                return result == "DELETE 1"
        except asyncpg.PostgresError as e:
            raise DatabaseError("release_lock", str(e), table="locks")

    async def get_lock(self, lock_key: str) -> Optional[Lock]:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_LOCK_COLUMNS} FROM locks WHERE lock_key = $1", lock_key
                )
                return _lock_from_row(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_lock", str(e), table="locks")

    # Job Management Methods
    async def insert_job(self, job: Job) -> bool:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO jobs (
                        job_id, file_name, bucket, key, file_size, state, execution_id,
                        total_chunks, chunks_completed, total_processed, total_success,
                        total_error, output_location, last_error, failure_reason,
                        created_at, updated_at, ttl
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
                    ON CONFLICT (job_id) DO NOTHING
                    RETURNING job_id
                """,
                job.job_id, job.file_name, job.bucket, job.key, job.file_size,
                job.state.value, job.execution_id, job.total_chunks,
                job.chunks_completed, job.total_processed, job.total_success,
                job.total_error, job.output_location, job.last_error,
                job.failure_reason, job.created_at, job.updated_at, job.ttl)
                return row is not None
        except asyncpg.PostgresError as e:
            raise DatabaseError("insert_job", str(e), table="jobs")

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM jobs WHERE job_id = $1", job_id)
                return _job_from_row(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_job", str(e), table="jobs")

    async def compare_and_set_state(
        self,
        job_id: str,
        from_state: OrchestrationState,
        to_state: OrchestrationState,
        fields: Dict[str, Any],
        now: datetime,
    ) -> Optional[Job]:
        unknown = set(fields) - MUTABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable by a transition: {sorted(unknown)}")

        assignments = ["state = $3", "updated_at = $4"]
        values: List[Any] = [job_id, from_state.value, to_state.value, now]
        for name, value in fields.items():
            values.append(value)
            assignments.append(f"{name} = ${len(values)}")

        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow(
                    f"UPDATE jobs SET {', '.join(assignments)} "
                    f"WHERE job_id = $1 AND state = $2 RETURNING *",
                    *values
                )
                return _job_from_row(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("compare_and_set_state", str(e), table="jobs")

    async def update_aggregate(self, job_id: str, snapshot: AggregateSnapshot, now: datetime) -> bool:
        try:
            async with self.get_connection() as conn:
                result = await conn.execute("""
                    UPDATE jobs SET
                        chunks_completed = $2,
                        total_processed = $3,
                        total_success = $4,
                        total_error = $5,
                        updated_at = $6
                    WHERE job_id = $1 AND chunks_completed < $2
                """,
                job_id, snapshot.chunks_completed, snapshot.total_processed,
                snapshot.total_success, snapshot.total_error, now)
                return result == "UPDATE 1"
        except asyncpg.PostgresError as e:
            raise DatabaseError("update_aggregate", str(e), table="jobs")

    # Chunk Methods
    async def insert_manifest(self, job_id: str, entries: List[ChunkManifestEntry], now: datetime) -> bool:
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    claimed = await conn.fetchrow("""
                        UPDATE jobs SET total_chunks = $2, updated_at = $3
                        WHERE job_id = $1 AND total_chunks IS NULL
                        RETURNING job_id
                    """, job_id, len(entries), now)
                    if claimed is None:
                        return False
                    await conn.executemany(
                        "INSERT INTO chunk_manifest (job_id, chunk_index, entry) VALUES ($1, $2, $3::jsonb)",
                        [(job_id, e.chunk_index, json.dumps(e.to_dict(), default=str)) for e in entries]
                    )
                    return True
        except asyncpg.PostgresError as e:
            raise DatabaseError("insert_manifest", str(e), table="chunk_manifest")

    async def get_manifest(self, job_id: str) -> List[ChunkManifestEntry]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    "SELECT entry FROM chunk_manifest WHERE job_id = $1 ORDER BY chunk_index",
                    job_id
                )
                return [ChunkManifestEntry.from_dict(json.loads(row["entry"])) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_manifest", str(e), table="chunk_manifest")

    async def insert_outcome(self, outcome: ChunkOutcome, now: datetime) -> bool:
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO chunk_outcomes (
                        job_id, chunk_index, processed_count, success_count,
                        error_count, errors, recorded_at
                    ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
                    ON CONFLICT (job_id, chunk_index) DO NOTHING
                    RETURNING chunk_index
                """,
                outcome.job_id, outcome.chunk_index, outcome.processed_count,
                outcome.success_count, outcome.error_count,
                json.dumps(list(outcome.errors), default=str), now)
                return row is not None
        except asyncpg.PostgresError as e:
            raise DatabaseError("insert_outcome", str(e), table="chunk_outcomes")

    async def list_outcomes(self, job_id: str) -> List[ChunkOutcome]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT job_id, chunk_index, processed_count, success_count, error_count, errors
                    FROM chunk_outcomes WHERE job_id = $1 ORDER BY chunk_index
                """, job_id)
                return [
                    ChunkOutcome(
                        job_id=row["job_id"],
                        chunk_index=row["chunk_index"],
                        processed_count=row["processed_count"],
                        success_count=row["success_count"],
                        error_count=row["error_count"],
                        errors=tuple(json.loads(row["errors"]) if row["errors"] else ()),
                    )
                    for row in rows
                ]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_outcomes", str(e), table="chunk_outcomes")

    # Audit Methods
    async def append_audit(self, record: AuditRecord) -> AuditRecord:
        """
        Append an audit record.

        The next sequence is computed inside the INSERT; a concurrent writer
        for the same execution makes the primary key collide and the insert
        is retried with a fresh sequence.
        """
        metadata = json.dumps(record.metadata, default=str)
        last_error = None
        for _ in range(AUDIT_SEQUENCE_ATTEMPTS):
            try:
                async with self.get_connection() as conn:
                    sequence = await conn.fetchval("""
                        INSERT INTO audit_log (
                            execution_id, sequence, job_id, event_type, log_level,
                            function_name, message, metadata, correlation_id,
                            timestamp, expires_at
                        )
                        SELECT $1, COALESCE(MAX(sequence), 0) + 1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10
                        FROM audit_log WHERE execution_id = $1
                        RETURNING sequence
                    """,
                    record.execution_id, record.job_id, record.event_type.value,
                    record.log_level.value, record.function_name, record.message,
                    metadata, record.correlation_id, record.timestamp, record.expires_at)
                    return replace(record, sequence=sequence)
            except asyncpg.UniqueViolationError as e:
                last_error = e
                self.logger.debug("Audit sequence collision, retrying", extra={
                    "execution_id": record.execution_id
                })
            except asyncpg.PostgresError as e:
                raise DatabaseError("append_audit", str(e), table="audit_log")
        raise DatabaseError("append_audit", f"Sequence contention: {last_error}", table="audit_log")

    async def list_audit(self, execution_id: Optional[str] = None, job_id: Optional[str] = None) -> List[AuditRecord]:
        conditions = []
        values: List[Any] = []
        if execution_id is not None:
            values.append(execution_id)
            conditions.append(f"execution_id = ${len(values)}")
        if job_id is not None:
            values.append(job_id)
            conditions.append(f"job_id = ${len(values)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch(
                    f"SELECT * FROM audit_log {where} ORDER BY timestamp, execution_id, sequence",
                    *values
                )
                return [_audit_from_row(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_audit", str(e), table="audit_log")

    # Reclamation
    async def purge_expired(self, now: datetime) -> Dict[str, int]:
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    locks = await conn.execute("DELETE FROM locks WHERE expires_at < $1", now)
                    jobs = await conn.execute(
                        "DELETE FROM jobs WHERE ttl IS NOT NULL AND ttl <= $1", now
                    )
                    audit = await conn.execute(
                        "DELETE FROM audit_log WHERE expires_at IS NOT NULL AND expires_at <= $1", now
                    )
            return {
                "locks": int(locks.split()[-1]),
                "jobs": int(jobs.split()[-1]),
                "audit_records": int(audit.split()[-1]),
            }
        except asyncpg.PostgresError as e:
            raise DatabaseError("purge_expired", str(e))
