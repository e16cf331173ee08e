"""
Input source and result sink adapters.

The orchestrator talks to file storage only through these two interfaces.
The local implementations map a bucket onto a directory and use aiofiles so
reads and writes do not block the event loop.
"""

import csv
import io
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..models.job import Job, utc_now
from ..models.execution import AggregateSnapshot, InputDescriptor
from ..utils.logger import get_logger
from ..core.exceptions import InputNotFoundError, MalformedInputError, PermissionDeniedError


def parse_csv_rows(text: str) -> List[List[str]]:
    """Non-blank CSV rows of ``text``, header included."""
    return [row for row in csv.reader(io.StringIO(text)) if row]


class InputSource(ABC):
    """Resolves and validates input objects."""

    @abstractmethod
    async def describe(self, bucket: str, key: str) -> InputDescriptor:
        """
        Check the input exists and has a usable shape.

        Raises:
            InputNotFoundError: If the object does not exist
            MalformedInputError: If the object cannot be read as input
        """


class ResultSink(ABC):
    """Destination for the merged job output."""

    @abstractmethod
    async def write(self, job: Job, snapshot: AggregateSnapshot, analysis: Dict[str, Any]) -> str:
        """Write the merged result and return its location."""


class LocalFileInputSource(InputSource):
    """
    Local directory tree as object storage.

    ``bucket`` is looked up in ``buckets`` and otherwise taken as a
    subdirectory of ``base_dir``.
    """

    def __init__(self, base_dir: str = ".", buckets: Optional[Dict[str, str]] = None, encoding: str = "utf-8"):
        self.base_dir = Path(base_dir)
        self.buckets = {name: Path(path) for name, path in (buckets or {}).items()}
        self.encoding = encoding
        self.logger = get_logger(__name__)

    def resolve(self, bucket: str, key: str) -> Path:
        root = self.buckets.get(bucket, self.base_dir / bucket).resolve()
        path = (root / key).resolve()
        if root != path and root not in path.parents:
            raise PermissionDeniedError(f"{key} escapes bucket {bucket}")
        return path

    async def read_text(self, bucket: str, key: str) -> str:
        path = self.resolve(bucket, key)
        if not path.is_file():
            raise InputNotFoundError(bucket, key)
        try:
            async with aiofiles.open(path, mode="r", encoding=self.encoding, newline="") as f:
                return await f.read()
        except UnicodeDecodeError as e:
            raise MalformedInputError(
                f"{bucket}/{key} is not valid {self.encoding} text: {e}",
                details={"bucket": bucket, "key": key}
            )

    async def describe(self, bucket: str, key: str) -> InputDescriptor:
        text = await self.read_text(bucket, key)
        try:
            rows = parse_csv_rows(text)
        except csv.Error as e:
            raise MalformedInputError(f"{bucket}/{key} is not valid CSV: {e}",
                                      details={"bucket": bucket, "key": key})

        size = os.path.getsize(self.resolve(bucket, key))
        row_count = max(len(rows) - 1, 0)
        self.logger.debug(f"Described {bucket}/{key}: {row_count} rows, {size} bytes")
        return InputDescriptor(bucket=bucket, key=key, size=size, row_count=row_count)


class LocalFileResultSink(ResultSink):
    """Writes one JSON document per job into ``output_dir``."""

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)
        self.logger = get_logger(__name__)

    async def write(self, job: Job, snapshot: AggregateSnapshot, analysis: Dict[str, Any]) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{job.job_id}.json"
        document = {
            "job_id": job.job_id,
            "input": {"bucket": job.bucket, "key": job.key, "file_size": job.file_size},
            "status": snapshot.terminal_status.value,
            "summary": snapshot.to_dict(),
            "error_analysis": analysis,
            "generated_at": utc_now().isoformat(),
        }
        async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
            await f.write(json.dumps(document, indent=2, default=str))
        self.logger.info(f"Wrote result for job {job.job_id} to {path}")
        return str(path)
