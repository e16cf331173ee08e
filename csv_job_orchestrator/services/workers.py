"""
Chunk worker adapters.

A chunk worker processes one manifest entry and returns its ChunkOutcome, or
raises an orchestrator exception whose category tells the dispatcher whether
to retry.
"""

import asyncio
import csv
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from ..models.execution import ChunkManifestEntry, ChunkOutcome, InputDescriptor
from ..models.events import ChunkWorkerResponse
from ..utils.logger import get_logger
from ..core.exceptions import (
    InputNotFoundError,
    MalformedInputError,
    PermissionDeniedError,
    ThrottlingError,
    TransientExternalError,
)
from .storage import LocalFileInputSource, parse_csv_rows

# Row validator: returns an error message for a bad row, None for a good one
RowValidator = Callable[[Dict[str, Any]], Optional[str]]

# Error payloads kept per chunk; counts stay exact beyond this
MAX_ERRORS_PER_CHUNK = 100

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ChunkWorker(ABC):
    """Processes one chunk."""

    def bind(self, descriptor: InputDescriptor) -> "ChunkWorker":
        """Worker for the chunks of one input."""
        return self

    @abstractmethod
    async def process(self, chunk: ChunkManifestEntry) -> ChunkOutcome:
        pass

    async def close(self) -> None:
        """Release worker resources."""


class HttpChunkWorker(ChunkWorker):
    """
    Posts each chunk to a remote worker endpoint.

    408, 429 and 5xx responses and transport failures are retryable; other
    4xx responses and unparseable bodies are terminal.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        descriptor: Optional[InputDescriptor] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.headers = headers or {}
        self.descriptor = descriptor
        self._client = client
        self._owns_client = client is None
        self.logger = get_logger(__name__)

    def bind(self, descriptor: InputDescriptor) -> "HttpChunkWorker":
        worker = HttpChunkWorker(self.endpoint, self.timeout, self._get_client(), self.headers, descriptor)
        worker._owns_client = False
        return worker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    def build_request(self, chunk: ChunkManifestEntry) -> Dict[str, Any]:
        payload = chunk.to_request()
        if self.descriptor is not None:
            payload["bucket"] = self.descriptor.bucket
            payload["key"] = self.descriptor.key
        return payload

    async def process(self, chunk: ChunkManifestEntry) -> ChunkOutcome:
        client = self._get_client()
        try:
            response = await client.post(self.endpoint, json=self.build_request(chunk), headers=self.headers)
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"Worker request timed out: {e}", error_code="PROCESSING_TIMEOUT")
        except httpx.TransportError as e:
            raise TransientExternalError(f"Worker unreachable: {e}", error_code="CONNECTION_ERROR")

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise ThrottlingError(
                f"worker returned 429 for chunk {chunk.chunk_index}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if status in RETRYABLE_STATUS_CODES:
            raise TransientExternalError(
                f"Worker returned {status} for chunk {chunk.chunk_index}",
                error_code=f"HTTP_{status}", details={"status_code": status}
            )
        if status in (401, 403):
            raise PermissionDeniedError(f"worker returned {status} for chunk {chunk.chunk_index}")
        if status >= 400:
            raise MalformedInputError(
                f"Worker rejected chunk {chunk.chunk_index} with {status}: {response.text[:200]}",
                error_code=f"HTTP_{status}", details={"status_code": status}
            )

        try:
            parsed = ChunkWorkerResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise MalformedInputError(
                f"Invalid worker response for chunk {chunk.chunk_index}: {e}",
                error_code="WORKER_RESPONSE_INVALID"
            )
        return parsed.to_outcome(chunk.job_id, chunk.chunk_index)


def require_columns(*columns: str) -> RowValidator:
    """Validator rejecting rows where any of ``columns`` is empty."""
    def validate(row: Dict[str, Any]) -> Optional[str]:
        missing = [c for c in columns if not str(row.get(c) or "").strip()]
        if missing:
            return f"missing required value for {', '.join(missing)}"
        return None
    return validate


class LocalCsvChunkWorker(ChunkWorker):
    """
    Validates the rows of a chunk read from a local CSV file.

    Rows whose column count differs from the header are errors; remaining
    rows go through the optional ``validator``. A bound worker reads and
    parses its input once and slices every chunk from the parsed rows.
    """

    def __init__(
        self,
        source: LocalFileInputSource,
        validator: Optional[RowValidator] = None,
        descriptor: Optional[InputDescriptor] = None,
    ):
        self.source = source
        self.validator = validator
        self.descriptor = descriptor
        self.logger = get_logger(__name__)
        self._rows: Optional[Tuple[List[str], List[List[str]]]] = None
        self._load_lock: Optional[asyncio.Lock] = None

    def bind(self, descriptor: InputDescriptor) -> "LocalCsvChunkWorker":
        return LocalCsvChunkWorker(self.source, self.validator, descriptor)

    async def process(self, chunk: ChunkManifestEntry) -> ChunkOutcome:
        if chunk.items is not None:
            rows = [item if isinstance(item, dict) else {"value": item} for item in chunk.items]
            return self._validate(chunk, rows, header=None, first_row=0)

        if self.descriptor is None:
            raise MalformedInputError(f"No input bound for chunk {chunk.chunk_index} of job {chunk.job_id}")

        header, data = await self._load()
        start, end = chunk.item_range
        return self._validate(chunk, data[start:end], header=header, first_row=start)

    async def _load(self) -> Tuple[List[str], List[List[str]]]:
        if self._load_lock is None:
            self._load_lock = asyncio.Lock()
        async with self._load_lock:
            if self._rows is None:
                bucket, key = self.descriptor.bucket, self.descriptor.key
                text = await self.source.read_text(bucket, key)
                try:
                    rows = parse_csv_rows(text)
                except csv.Error as e:
                    raise MalformedInputError(f"CSV parse error in {bucket}/{key}: {e}")
                if not rows:
                    raise InputNotFoundError(bucket, key)
                self._rows = (rows[0], rows[1:])
                self.logger.debug(f"Loaded {len(rows) - 1} rows of {bucket}/{key}")
        return self._rows

    def _validate(self, chunk: ChunkManifestEntry, rows: List[Any], header: Optional[List[str]], first_row: int) -> ChunkOutcome:
        success = 0
        error_count = 0
        errors: List[Dict[str, Any]] = []

        for offset, row in enumerate(rows):
            row_number = first_row + offset + 1
            message = None
            if header is not None:
                if len(row) != len(header):
                    message = f"expected {len(header)} columns, found {len(row)}"
                    error_type = "ColumnCountMismatch"
                else:
                    row = dict(zip(header, row))
            if message is None and self.validator is not None:
                message = self.validator(row)
                error_type = "ValidationError"

            if message is None:
                success += 1
                continue
            error_count += 1
            if len(errors) < MAX_ERRORS_PER_CHUNK:
                errors.append({"row": row_number, "errorType": error_type, "error": message})

        return ChunkOutcome(
            job_id=chunk.job_id,
            chunk_index=chunk.chunk_index,
            processed_count=len(rows),
            success_count=success,
            error_count=error_count,
            errors=tuple(errors),
        )
