"""Pytest configuration and fixtures for session tests."""

from __future__ import annotations

import io
import logging
from collections.abc import Callable
from typing import Any

import pytest
from fakes import FakeTransportFactory

from ls_session.policy import RestartPolicy
from ls_session.session import Session
from ls_session.telemetry import MemoryTelemetryBackend, OutputChannel, TelemetrySink


@pytest.fixture
def memory() -> MemoryTelemetryBackend:
    """In-memory telemetry backend."""
    return MemoryTelemetryBackend()


@pytest.fixture
def telemetry(memory: MemoryTelemetryBackend) -> TelemetrySink:
    """Telemetry sink writing to the memory backend."""
    return TelemetrySink([memory])


@pytest.fixture
def factory() -> FakeTransportFactory:
    """Factory of scripted server transports."""
    return FakeTransportFactory()


@pytest.fixture
def host_messages() -> list[str]:
    """Messages shown to the user."""
    return []


@pytest.fixture
def output() -> OutputChannel:
    """Output channel writing to an in-memory stream."""
    return OutputChannel("Test Server", stream=io.StringIO())


@pytest.fixture
def make_session(
    factory: FakeTransportFactory,
    telemetry: TelemetrySink,
    output: OutputChannel,
    host_messages: list[str],
) -> Callable[..., Session]:
    """Build sessions wired to the fake server, with zero restart backoff."""

    def make(**kwargs: Any) -> Session:
        kwargs.setdefault("telemetry", telemetry)
        kwargs.setdefault("output", output)
        kwargs.setdefault("notify_host", host_messages.append)
        kwargs.setdefault(
            "restart_policy", RestartPolicy(max_consecutive_failures=4, backoff_initial=0.0)
        )
        return Session("testServer", "Test Server", kwargs.pop("factory", factory), **kwargs)

    return make


@pytest.fixture(autouse=True)
def restore_package_logger():
    """Undo logging configuration done by the command line entry point."""
    package_logger = logging.getLogger("ls_session")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    propagate = package_logger.propagate
    yield
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)
    package_logger.propagate = propagate
