"""Telemetry side channel: records, sink, backends and output channels."""

from ls_session.telemetry.backends import (
    HttpTelemetryBackend,
    JsonLinesTelemetryBackend,
    build_telemetry_sink,
    sanitize_properties,
)
from ls_session.telemetry.output import OutputChannel, TelemetryOutputChannel
from ls_session.telemetry.sink import (
    HANDLER_ERROR_EVENT,
    OUTPUT_ERROR_EVENT,
    PROTOCOL_ERROR_EVENT,
    RESTART_THRESHOLD_EVENT,
    SERVER_TELEMETRY_EVENT,
    STARTUP_EVENT,
    TRANSPORT_FAILURE_EVENT,
    MemoryTelemetryBackend,
    TelemetryBackend,
    TelemetryRecord,
    TelemetrySink,
)

__all__ = [
    "HANDLER_ERROR_EVENT",
    "HttpTelemetryBackend",
    "JsonLinesTelemetryBackend",
    "MemoryTelemetryBackend",
    "OUTPUT_ERROR_EVENT",
    "OutputChannel",
    "PROTOCOL_ERROR_EVENT",
    "RESTART_THRESHOLD_EVENT",
    "SERVER_TELEMETRY_EVENT",
    "STARTUP_EVENT",
    "TRANSPORT_FAILURE_EVENT",
    "TelemetryBackend",
    "TelemetryOutputChannel",
    "TelemetryRecord",
    "TelemetrySink",
    "build_telemetry_sink",
    "sanitize_properties",
]
