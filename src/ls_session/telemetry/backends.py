"""Telemetry backends: JSON Lines file and HTTP collector.

Both accept records without blocking the calling session. The file backend
appends and flushes one line per record; the HTTP backend batches records
and posts them from background tasks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from ls_session.telemetry.sink import (
    MemoryTelemetryBackend,
    TelemetryBackend,
    TelemetryRecord,
    TelemetrySink,
)

if TYPE_CHECKING:
    from ls_session.config import TelemetrySettings

logger = logging.getLogger(__name__)

# Patterns for sensitive property keys
SENSITIVE_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"auth", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"private[_-]?key", re.IGNORECASE),
]

USER_AGENT = "ls-session/1.0 (Telemetry)"

# Records kept in memory by sinks built from settings
MEMORY_RECORDS = 1000


def _is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    return any(pattern.search(key) for pattern in SENSITIVE_PATTERNS)


def sanitize_properties(properties: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive values from telemetry properties.

    Args:
        properties: Original properties dictionary.

    Returns:
        New dictionary with sensitive values redacted.
    """
    sanitized = {}
    for key, value in properties.items():
        if _is_sensitive_key(key):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_properties(value)
        else:
            sanitized[key] = value
    return sanitized


class JsonLinesTelemetryBackend(TelemetryBackend):
    """Append-only telemetry log in JSON Lines format.

    The file is flushed after each record for durability.
    """

    def __init__(self, log_path: Path) -> None:
        """Initialize the backend.

        Args:
            log_path: Path to the telemetry log file.
        """
        self._log_path = log_path
        self._ensure_directory()
        self._file = open(log_path, "a", encoding="utf-8")  # noqa: SIM115

    @property
    def path(self) -> Path:
        """Location of the log file."""
        return self._log_path

    def _ensure_directory(self) -> None:
        """Create log directory if it doesn't exist."""
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, record: TelemetryRecord) -> None:
        if self._file.closed:
            return
        line = json.dumps(
            {
                "timestamp": record.timestamp,
                "eventName": record.event_name,
                "properties": sanitize_properties(record.properties),
            },
            default=str,
        )
        self._file.write(line + "\n")
        self._file.flush()

    def close(self) -> None:
        """Close the log file."""
        if self._file and not self._file.closed:
            self._file.close()

    async def aclose(self) -> None:
        self.close()


class HttpTelemetryBackend(TelemetryBackend):
    """Posts batches of records to an HTTP collector.

    Records are buffered; a full batch is posted from a background task when
    an event loop is running, and whatever remains is posted on aclose().
    Delivery failures are logged and the batch is dropped.
    """

    def __init__(
        self,
        endpoint: str,
        batch_size: int = 20,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            endpoint: Collector URL receiving a JSON array of records.
            batch_size: Records buffered before a post is scheduled.
            timeout: HTTP timeout in seconds.
            headers: Extra request headers.
            transport: Optional httpx transport (for testing).
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._endpoint = endpoint
        self._batch_size = batch_size
        self._timeout = timeout
        self._headers = {"User-Agent": USER_AGENT, **(headers or {})}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._buffer: list[TelemetryRecord] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def buffered(self) -> int:
        """Number of records waiting to be posted."""
        return len(self._buffer)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    def emit(self, record: TelemetryRecord) -> None:
        self._buffer.append(record)
        if len(self._buffer) >= self._batch_size:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: keep buffering until aclose()
            return
        batch, self._buffer = self._buffer, []
        task = loop.create_task(self._post(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Post all buffered records now."""
        batch, self._buffer = self._buffer, []
        if batch:
            await self._post(batch)

    async def _post(self, batch: list[TelemetryRecord]) -> None:
        payload = [
            {**record.to_dict(), "properties": sanitize_properties(record.properties)}
            for record in batch
        ]
        try:
            response = await self._get_client().post(self._endpoint, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Telemetry collector rejected %d records (HTTP %d)",
                len(batch),
                e.response.status_code,
            )
        except httpx.HTTPError as e:
            logger.warning("Failed to post %d telemetry records: %s", len(batch), e)

    async def aclose(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.flush()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_telemetry_sink(settings: TelemetrySettings) -> TelemetrySink:
    """Assemble a telemetry sink from settings.

    Args:
        settings: Telemetry section of the session settings.

    Returns:
        Sink with a memory backend plus the configured file/HTTP backends.
    """
    backends: list[TelemetryBackend] = [MemoryTelemetryBackend(max_records=MEMORY_RECORDS)]
    if settings.log_file:
        backends.append(JsonLinesTelemetryBackend(Path(settings.log_file)))
    if settings.endpoint:
        backends.append(
            HttpTelemetryBackend(
                settings.endpoint,
                batch_size=settings.batch_size,
                timeout=settings.timeout,
                headers=settings.headers,
            )
        )
    return TelemetrySink(backends, enabled=settings.enabled)
