"""Transports carrying framed JSON-RPC messages to and from the server.

Messages are framed with the language server base protocol header::

    Content-Length: <bytes>\\r\\n
    \\r\\n
    <UTF-8 JSON body>

The server either runs as a child process speaking over its stdin/stdout
(SubprocessTransport) or is already listening on a local debug port
(SocketTransport). Both look the same to the session.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from contextlib import suppress

from ls_session.exceptions import MessageTooLargeError, TransportError
from ls_session.logging_utils import SERVER_STDERR_LOGGER
from ls_session.protocol.jsonrpc import MAX_MESSAGE_SIZE, MESSAGE_HEAD_SIZE, peek_response_id

logger = logging.getLogger(__name__)

HEADER_SEPARATOR = b"\r\n"
CONTENT_LENGTH = "content-length"
_DISCARD_CHUNK = 65536


def encode_frame(payload: str) -> bytes:
    """Frame a JSON payload with a Content-Length header.

    Args:
        payload: Serialized JSON-RPC message.

    Returns:
        Header and body bytes ready to be written.
    """
    body = payload.encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


async def read_frame(
    reader: asyncio.StreamReader, max_size: int = MAX_MESSAGE_SIZE
) -> bytes | None:
    """Read one framed message body from a stream.

    Args:
        reader: Stream positioned at the start of a header block.
        max_size: Largest accepted body in bytes.

    Returns:
        Message body, or None on a clean end of stream.

    Raises:
        TransportError: If the stream breaks or the headers are unusable.
        MessageTooLargeError: If the body exceeds max_size. The body is
            consumed so the stream stays aligned on the next frame, and the
            error names the request when the body starts like a response.
    """
    content_length: int | None = None
    first_line = True
    while True:
        try:
            line = await reader.readuntil(HEADER_SEPARATOR)
        except asyncio.IncompleteReadError as e:
            if first_line and not e.partial.strip():
                return None
            raise TransportError("Connection closed while reading headers") from e
        except asyncio.LimitOverrunError as e:
            raise TransportError("Header line exceeds stream limit") from e
        first_line = False

        if line == HEADER_SEPARATOR:
            break

        name, sep, value = line.decode("ascii", errors="replace").partition(":")
        if not sep:
            raise TransportError(f"Malformed header line: {line!r}")
        if name.strip().lower() == CONTENT_LENGTH:
            try:
                content_length = int(value.strip())
            except ValueError as e:
                raise TransportError(f"Invalid Content-Length: {value.strip()!r}") from e
            if content_length < 0:
                raise TransportError(f"Invalid Content-Length: {content_length}")

    if content_length is None:
        raise TransportError("Missing Content-Length header")

    if content_length > max_size:
        try:
            head = await reader.readexactly(min(content_length, MESSAGE_HEAD_SIZE))
        except asyncio.IncompleteReadError as e:
            raise TransportError("Connection closed in the middle of a message") from e
        await _discard(reader, content_length - len(head))
        raise MessageTooLargeError(content_length, max_size, request_id=peek_response_id(head))

    try:
        return await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as e:
        raise TransportError("Connection closed in the middle of a message") from e


async def _discard(reader: asyncio.StreamReader, size: int) -> None:
    remaining = size
    while remaining:
        chunk = await reader.read(min(remaining, _DISCARD_CHUNK))
        if not chunk:
            raise TransportError("Connection closed in the middle of a message")
        remaining -= len(chunk)


class Transport(ABC):
    """Bidirectional message channel owned by exactly one session."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the transport can carry messages."""

    @abstractmethod
    async def open(self) -> None:
        """Establish the connection.

        Raises:
            TransportError: If the connection cannot be established.
        """

    @abstractmethod
    def write(self, payload: str) -> None:
        """Queue one message for delivery without blocking.

        Raises:
            TransportError: If the transport is closed or the write fails.
        """

    @abstractmethod
    async def read(self) -> bytes | None:
        """Read the next message body, or None when the peer closed."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""


class StreamTransport(Transport):
    """Transport over an asyncio stream reader/writer pair."""

    def __init__(self, max_message_size: int = MAX_MESSAGE_SIZE) -> None:
        self.max_message_size = max_message_size
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    def write(self, payload: str) -> None:
        if not self.is_open:
            raise TransportError("Transport is not open")
        assert self._writer is not None
        try:
            self._writer.write(encode_frame(payload))
        except (OSError, RuntimeError) as e:
            raise TransportError(f"Write failed: {e}") from e

    async def read(self) -> bytes | None:
        if self._reader is None:
            raise TransportError("Transport is not open")
        try:
            return await read_frame(self._reader, self.max_message_size)
        except ConnectionError as e:
            raise TransportError(f"Read failed: {e}") from e


async def _drain_stderr(stream: asyncio.StreamReader, stderr_logger: logging.Logger) -> None:
    """Forward server stderr lines to a logger until EOF."""
    while True:
        try:
            line = await stream.readline()
        except (OSError, ValueError):
            stderr_logger.debug("Unexpected error in stderr drain", exc_info=True)
            return
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            stderr_logger.info(text)


class SubprocessTransport(StreamTransport):
    """Runs the server as a child process and talks over its stdio pipes."""

    def __init__(
        self,
        command: Sequence[str],
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        close_timeout: float = 5.0,
        stderr_logger: logging.Logger | None = None,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        """Initialize the transport.

        Args:
            command: Server executable and arguments.
            cwd: Working directory for the server process.
            env: Extra environment variables, merged over os.environ.
            close_timeout: Seconds to wait for the process to exit on close
                before terminating it.
            stderr_logger: Logger receiving the server's stderr lines.
            max_message_size: Largest accepted message body in bytes.
        """
        super().__init__(max_message_size)
        if not command:
            raise ValueError("command must not be empty")
        self._command = list(command)
        self._cwd = cwd
        self._env = {**os.environ, **env} if env else None
        self._close_timeout = close_timeout
        self._stderr_logger = stderr_logger or logging.getLogger(SERVER_STDERR_LOGGER)
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        """Process id of the running server, if any."""
        return self._process.pid if self._process is not None else None

    async def open(self) -> None:
        if self._process is not None:
            raise TransportError("Transport is already open")
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
            )
        except OSError as e:
            raise TransportError(f"Failed to start server {self._command[0]!r}: {e}") from e

        self._process = process
        self._reader = process.stdout
        self._writer = process.stdin
        if process.stderr is not None:
            self._stderr_task = asyncio.create_task(
                _drain_stderr(process.stderr, self._stderr_logger)
            )
        logger.info("Started server process pid=%d: %s", process.pid, " ".join(self._command))

    async def close(self) -> None:
        process, self._process = self._process, None
        writer, self._writer = self._writer, None
        self._reader = None
        if process is None:
            return

        if writer is not None:
            with suppress(OSError, RuntimeError):
                writer.close()

        try:
            await asyncio.wait_for(process.wait(), self._close_timeout)
        except TimeoutError:
            logger.warning("Server process pid=%d did not exit, terminating", process.pid)
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), self._close_timeout)
            except TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        stderr_task, self._stderr_task = self._stderr_task, None
        if stderr_task is not None:
            await asyncio.gather(stderr_task, return_exceptions=True)
        logger.info("Server process pid=%d exited with code %s", process.pid, process.returncode)


class SocketTransport(StreamTransport):
    """Connects to a server already listening on a local debug port."""

    def __init__(
        self,
        host: str,
        port: int,
        connect_timeout: float = 5.0,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        super().__init__(max_message_size)
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout

    @property
    def address(self) -> tuple[str, int]:
        """Host and port this transport connects to."""
        return self._host, self._port

    async def open(self) -> None:
        if self._writer is not None:
            raise TransportError("Transport is already open")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port), self._connect_timeout
            )
        except (OSError, TimeoutError) as e:
            raise TransportError(
                f"Failed to connect to server at {self._host}:{self._port}: {e}"
            ) from e
        logger.info("Connected to server at %s:%d", self._host, self._port)

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        writer.close()
        with suppress(OSError, ConnectionError):
            await writer.wait_closed()
