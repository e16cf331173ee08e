"""
Append-only audit trail.

Records are ordered per execution by a store-assigned sequence. A failure to
append never aborts job processing: it is logged and the caller continues.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.audit import AuditRecord, AuditEventType, LogLevel, missing_metadata
from ..models.job import utc_now
from ..utils.store import MetadataStore
from ..utils.logger import get_logger


class AuditTrail:
    """Writes and reads audit records through the metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        retention_days: Optional[float] = 90,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.retention_days = retention_days
        self.clock = clock
        self.logger = get_logger(__name__)
        self.append_failures = 0

    async def record(
        self,
        execution_id: str,
        event_type: AuditEventType,
        message: str,
        *,
        job_id: Optional[str] = None,
        function_name: str = "orchestrator",
        log_level: LogLevel = LogLevel.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[AuditRecord]:
        """
        Append one audit record.

        Raises:
            ValueError: If metadata lacks a key the event type requires

        Returns:
            The stored record with its sequence, or None if the append failed
        """
        metadata = dict(metadata or {})
        missing = missing_metadata(event_type, metadata)
        if missing:
            raise ValueError(f"{event_type.value} audit record missing metadata: {', '.join(missing)}")

        timestamp = self.clock()
        record = AuditRecord(
            execution_id=execution_id,
            sequence=0,
            job_id=job_id,
            event_type=event_type,
            log_level=log_level,
            function_name=function_name,
            message=message,
            metadata=metadata,
            correlation_id=correlation_id or job_id,
            timestamp=timestamp,
            expires_at=AuditRecord.expiry(timestamp, self.retention_days),
        )

        try:
            return await self.store.append_audit(record)
        except Exception as e:
            self.append_failures += 1
            self.logger.error(f"Failed to append audit record {event_type.value}: {e}", exc_info=True, extra={
                "execution_id": execution_id,
                "job_id": job_id
            })
            return None

    async def list_records(
        self, job_id: Optional[str] = None, execution_id: Optional[str] = None
    ) -> List[AuditRecord]:
        return await self.store.list_audit(execution_id=execution_id, job_id=job_id)
