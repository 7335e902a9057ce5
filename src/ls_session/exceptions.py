"""Exception hierarchy for protocol sessions.

Transport and protocol failures are funneled to logging and telemetry by the
session read loop. The caller-facing errors (NotRunningError,
TerminationError, ResponseError, RequestTimeoutError) surface through the
operation that caused them.
"""

from __future__ import annotations

from typing import Any


class SessionError(Exception):
    """Base exception for ls-session."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(SessionError):
    """Raised when the connection to the server fails or is lost."""

    pass


class ProtocolError(SessionError):
    """Raised when a message violates the wire protocol.

    request_id is set when the bad message is still recognizable as the
    response to that request, so its handle can be rejected.
    """

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: dict | None = None,
        request_id: int | str | None = None,
    ):
        super().__init__(message, details)
        self.code = code
        self.request_id = request_id


class MessageTooLargeError(ProtocolError):
    """Raised when a message exceeds the configured size limit."""

    def __init__(self, size: int, limit: int, request_id: int | str | None = None):
        super().__init__(
            f"Message too large: {size} bytes exceeds {limit} limit",
            details={"size": size, "limit": limit},
            request_id=request_id,
        )
        self.size = size
        self.limit = limit


class NotRunningError(SessionError):
    """Raised when an operation requires a running session."""

    def __init__(self, state: Any, operation: str | None = None):
        action = f"Cannot {operation}" if operation else "Operation not allowed"
        super().__init__(
            f"{action}: session is {state.value}",
            details={"state": state.value},
        )
        self.state = state


class TerminationError(SessionError):
    """Delivered to pending requests when the session stops or fails."""

    pass


class DuplicateIdError(SessionError):
    """Raised when a request id is registered twice."""

    def __init__(self, request_id: int | str):
        super().__init__(
            f"Request id already pending: {request_id}",
            details={"request_id": request_id},
        )
        self.request_id = request_id


class RequestTimeoutError(SessionError):
    """Raised when a request does not receive a response in time."""

    def __init__(self, request_id: int | str, method: str, timeout: float):
        super().__init__(
            f"Request {method!r} (id={request_id}) timed out after {timeout}s",
            details={"request_id": request_id, "method": method, "timeout": timeout},
        )
        self.request_id = request_id
        self.method = method
        self.timeout = timeout


class ResponseError(SessionError):
    """Raised when the server answers a request with an error object."""

    def __init__(self, message: str, code: int | None = None, data: Any | None = None):
        super().__init__(message, details={"code": code, "data": data})
        self.code = code
        self.data = data


class LifecycleError(SessionError):
    """Raised on an invalid session state transition."""

    pass


class ConfigurationError(SessionError):
    """Raised when settings cannot be loaded or validated."""

    pass
