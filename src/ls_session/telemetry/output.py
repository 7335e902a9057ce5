"""Output channels for server log messages.

Lines go to a text stream (stderr by default, stdout carries protocol
traffic for stdio servers) and to the logging system. The telemetry variant
also reports error lines to the telemetry sink.
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from typing import TextIO

from ls_session.telemetry.sink import OUTPUT_ERROR_EVENT, TelemetryRecord, TelemetrySink

logger = logging.getLogger(__name__)

# Lines kept for inspection by the host
HISTORY_SIZE = 500

ERROR_PREFIX = "[Error"


class OutputChannel:
    """Named, append-only output surface."""

    def __init__(self, name: str, stream: TextIO | None = None) -> None:
        """Initialize the channel.

        Args:
            name: Channel label, usually the session label.
            stream: Text stream receiving the lines (defaults to sys.stderr).
        """
        self.name = name
        self._stream = stream
        self._history: deque[str] = deque(maxlen=HISTORY_SIZE)

    @property
    def lines(self) -> list[str]:
        """Most recent lines, oldest first."""
        return list(self._history)

    def append_line(self, text: str) -> None:
        """Write one line to the channel."""
        self._history.append(text)
        logger.info("[%s] %s", self.name, text)
        stream = self._stream or sys.stderr
        stream.write(f"[{self.name}] {text}\n")
        stream.flush()

    def clear(self) -> None:
        """Forget the line history."""
        self._history.clear()


class TelemetryOutputChannel(OutputChannel):
    """Output channel that also reports error lines to telemetry."""

    def __init__(
        self, name: str, telemetry: TelemetrySink, stream: TextIO | None = None
    ) -> None:
        super().__init__(name, stream)
        self._telemetry = telemetry

    def append_line(self, text: str) -> None:
        super().append_line(text)
        if text.startswith(ERROR_PREFIX):
            self._telemetry.send(
                TelemetryRecord(OUTPUT_ERROR_EVENT, {"channel": self.name, "message": text})
            )
