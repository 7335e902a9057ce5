"""Telemetry records and the shared telemetry sink.

The sink is a side channel: sessions hand it a copy of every protocol error,
every transport failure and every telemetry event from the server. It may be
shared by several sessions and never raises into them.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Event names produced by sessions
STARTUP_EVENT = "ls-session/startup"
TRANSPORT_FAILURE_EVENT = "ls-session/transportFailure"
RESTART_THRESHOLD_EVENT = "ls-session/restartThresholdExceeded"
PROTOCOL_ERROR_EVENT = "ls-session/protocolError"
SERVER_TELEMETRY_EVENT = "ls-session/serverTelemetry"
OUTPUT_ERROR_EVENT = "ls-session/outputError"
HANDLER_ERROR_EVENT = "ls-session/handlerError"


def _get_timestamp() -> str:
    """Get current UTC timestamp in ISO 8601 format."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TelemetryRecord:
    """One telemetry event in {eventName, properties} shape."""

    event_name: str
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_get_timestamp)

    @classmethod
    def from_payload(cls, payload: Any) -> TelemetryRecord:
        """Build a record from a server telemetry/event payload.

        Payloads already shaped as {eventName, properties} keep their name;
        anything else is wrapped under SERVER_TELEMETRY_EVENT.
        """
        if isinstance(payload, dict) and isinstance(payload.get("eventName"), str):
            properties = payload.get("properties")
            return cls(
                event_name=payload["eventName"],
                properties=dict(properties) if isinstance(properties, dict) else {},
            )
        return cls(event_name=SERVER_TELEMETRY_EVENT, properties={"data": payload})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "eventName": self.event_name,
            "properties": self.properties,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class TelemetryBackend(ABC):
    """Destination for telemetry records."""

    @abstractmethod
    def emit(self, record: TelemetryRecord) -> None:
        """Accept one record without blocking."""

    async def aclose(self) -> None:
        """Flush and release resources."""
        return None


class MemoryTelemetryBackend(TelemetryBackend):
    """Keeps records in memory, for embedding hosts and tests."""

    def __init__(self, max_records: int | None = None) -> None:
        self.records: deque[TelemetryRecord] = deque(maxlen=max_records)

    def emit(self, record: TelemetryRecord) -> None:
        self.records.append(record)

    def named(self, event_name: str) -> list[TelemetryRecord]:
        """Return the records with the given event name."""
        return [r for r in self.records if r.event_name == event_name]

    def clear(self) -> None:
        """Forget all records."""
        self.records.clear()


class TelemetrySink:
    """Fans telemetry records out to backends.

    Example:
        memory = MemoryTelemetryBackend()
        sink = TelemetrySink([memory])
        sink.send(TelemetryRecord("ls-session/startup", {"success": True}))
    """

    def __init__(
        self,
        backends: list[TelemetryBackend] | None = None,
        enabled: bool = True,
    ) -> None:
        """Initialize the sink.

        Args:
            backends: Destinations receiving every record.
            enabled: When False, records are discarded.
        """
        self._backends: list[TelemetryBackend] = list(backends or [])
        self.enabled = enabled

    @property
    def backends(self) -> list[TelemetryBackend]:
        """Registered backends."""
        return list(self._backends)

    def add_backend(self, backend: TelemetryBackend) -> None:
        """Register an additional backend."""
        self._backends.append(backend)

    def send(self, record: TelemetryRecord) -> None:
        """Deliver a record to every backend.

        Backend failures are logged and never propagate to the caller.
        """
        if not self.enabled:
            return
        for backend in self._backends:
            try:
                backend.emit(record)
            except Exception:
                logger.warning(
                    "Telemetry backend %s failed for %s",
                    type(backend).__name__,
                    record.event_name,
                    exc_info=True,
                )

    def send_event(self, event_name: str, properties: dict[str, Any] | None = None) -> None:
        """Build and deliver a record."""
        self.send(TelemetryRecord(event_name, dict(properties or {})))

    async def aclose(self) -> None:
        """Flush and close every backend."""
        for backend in self._backends:
            try:
                await backend.aclose()
            except Exception:
                logger.warning(
                    "Failed to close telemetry backend %s", type(backend).__name__, exc_info=True
                )
