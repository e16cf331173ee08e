"""
Wire models for CSV Job Orchestrator

Pydantic models for the two payloads that cross a process boundary: the
file-arrival trigger and the chunk worker response.
"""

import hashlib
from datetime import datetime, timezone
from typing import Dict, Any, List
from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .execution import ChunkOutcome


class TriggerEvent(BaseModel):
    """File-arrival trigger: ``{bucket, key, size, eventTime, eventSource}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    bucket: str = Field(..., min_length=1, description="Bucket or root holding the input")
    key: str = Field(..., min_length=1, description="Object key of the input file")
    size: int = Field(0, ge=0, description="Object size in bytes")
    event_time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="eventTime"
    )
    event_source: str = Field("manual", alias="eventSource")

    @field_validator("event_time")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Naive timestamps are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def derive_job_id(self) -> str:
        """Deterministic job id for this trigger; redelivery yields the same id."""
        digest = hashlib.sha256(
            f"{self.bucket}\n{self.key}\n{self.event_time.isoformat()}".encode("utf-8")
        ).hexdigest()
        return f"job-{digest[:32]}"

    @classmethod
    def from_s3_notification(cls, payload: Dict[str, Any]) -> List["TriggerEvent"]:
        """Parse an S3-style notification with a ``Records`` list."""
        events = []
        for record in payload.get("Records", []):
            s3 = record.get("s3", {})
            obj = s3.get("object", {})
            events.append(cls(
                bucket=s3.get("bucket", {}).get("name", ""),
                key=unquote_plus(obj.get("key", "")),
                size=obj.get("size", 0),
                eventTime=record.get("eventTime") or datetime.now(timezone.utc),
                eventSource=record.get("eventSource", "aws:s3"),
            ))
        return events

    @classmethod
    def parse_payload(cls, payload: Dict[str, Any]) -> List["TriggerEvent"]:
        """Accept either a flat trigger or a notification with ``Records``."""
        if "Records" in payload:
            return cls.from_s3_notification(payload)
        return [cls.model_validate(payload)]


class ChunkWorkerResponse(BaseModel):
    """Chunk worker response: ``{processedCount, successCount, errorCount, errors[]}``."""

    model_config = ConfigDict(populate_by_name=True)

    processed_count: int = Field(..., ge=0, alias="processedCount")
    success_count: int = Field(..., ge=0, alias="successCount")
    error_count: int = Field(..., ge=0, alias="errorCount")
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_counts(self) -> "ChunkWorkerResponse":
        if self.success_count + self.error_count > self.processed_count:
            raise ValueError("successCount + errorCount exceeds processedCount")
        return self

    def to_outcome(self, job_id: str, chunk_index: int) -> ChunkOutcome:
        return ChunkOutcome(
            job_id=job_id,
            chunk_index=chunk_index,
            processed_count=self.processed_count,
            success_count=self.success_count,
            error_count=self.error_count,
            errors=tuple(self.errors),
        )

    @classmethod
    def from_outcome(cls, outcome: ChunkOutcome) -> "ChunkWorkerResponse":
        return cls(
            processed_count=outcome.processed_count,
            success_count=outcome.success_count,
            error_count=outcome.error_count,
            errors=list(outcome.errors),
        )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
