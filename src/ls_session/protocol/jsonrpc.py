"""JSON-RPC 2.0 message parsing and formatting.

Implements the JSON-RPC 2.0 message shapes exchanged between the client
session and the language server: requests, responses and notifications.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from ls_session.exceptions import MessageTooLargeError, ProtocolError

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Language server protocol: request cancelled by the client
REQUEST_CANCELLED = -32800

# Default limit on one message body (64 MiB)
MAX_MESSAGE_SIZE = 64 * 1024 * 1024

# Leading bytes of an oversized body kept to identify the response
MESSAGE_HEAD_SIZE = 1024

Params = dict[str, Any] | list[Any] | None


@dataclass
class JsonRpcRequest:
    """Represents a JSON-RPC request (has id and method)."""

    id: int | str
    method: str
    params: Params = None


@dataclass
class JsonRpcResponse:
    """Represents a JSON-RPC response (has id, result or error)."""

    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        """Check if the response carries an error object."""
        return self.error is not None


@dataclass
class JsonRpcNotification:
    """Represents a JSON-RPC notification (no id)."""

    method: str
    params: Params = None


Message = JsonRpcRequest | JsonRpcResponse | JsonRpcNotification


_JSONRPC_MEMBER = rb'(?:"jsonrpc"\s*:\s*"2\.0"\s*,\s*)?'

# Response whose id comes before its result or error member
_LEADING_RESPONSE_ID = re.compile(
    rb"\s*\{\s*"
    + _JSONRPC_MEMBER
    + rb'"id"\s*:\s*(-?\d+|"(?:[^"\\]|\\.)*")\s*,\s*'
    + _JSONRPC_MEMBER
    + rb'"(?:result|error)"'
)


def _is_valid_id(value: Any) -> bool:
    return isinstance(value, int | str) and not isinstance(value, bool)


def peek_response_id(head: str | bytes) -> int | str | None:
    """Find the request id of a response from the start of its body.

    Works without parsing the whole body, for messages that are too large
    to parse. Only responses serialized with the id before the result or
    error member are recognized, which is what servers normally write.

    Args:
        head: Leading bytes of the message body.

    Returns:
        The response id, or None if head does not start a response.
    """
    if isinstance(head, str):
        head = head.encode("utf-8")
    match = _LEADING_RESPONSE_ID.match(head)
    if match is None:
        return None
    try:
        value = json.loads(match.group(1))
    except ValueError:
        return None
    return value if _is_valid_id(value) else None


def parse_message(raw: str | bytes, max_size: int = MAX_MESSAGE_SIZE) -> Message:
    """Parse a JSON-RPC message.

    Args:
        raw: Raw JSON text or UTF-8 bytes.
        max_size: Largest accepted message, in characters or bytes.

    Returns:
        Parsed request, response or notification.

    Raises:
        MessageTooLargeError: If the message exceeds max_size. Its
            request_id is set when the message starts like a response.
        ProtocolError: If the message is invalid.
    """
    # Check message size before parsing to prevent DoS
    if len(raw) > max_size:
        raise MessageTooLargeError(
            len(raw), max_size, request_id=peek_response_id(raw[:MESSAGE_HEAD_SIZE])
        )

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Parse error: {e}", code=PARSE_ERROR) from e

    if not isinstance(data, dict):
        raise ProtocolError("Invalid message: must be an object", code=INVALID_REQUEST)

    if data.get("jsonrpc") != "2.0":
        raise ProtocolError("Invalid message: jsonrpc must be '2.0'", code=INVALID_REQUEST)

    if "method" in data:
        return _parse_call(data)

    if "id" in data and ("result" in data or "error" in data):
        return _parse_response(data)

    raise ProtocolError(
        "Invalid message: neither a call nor a response", code=INVALID_REQUEST
    )


def _parse_call(data: dict[str, Any]) -> JsonRpcRequest | JsonRpcNotification:
    method = data["method"]
    if not isinstance(method, str) or not method:
        raise ProtocolError(
            "Invalid message: method must be a non-empty string", code=INVALID_REQUEST
        )

    params = data.get("params")
    if params is not None and not isinstance(params, dict | list):
        raise ProtocolError(
            "Invalid message: params must be an object or array", code=INVALID_REQUEST
        )

    # Check for id to distinguish request from notification
    if "id" in data:
        msg_id = data["id"]
        if not _is_valid_id(msg_id):
            raise ProtocolError(
                "Invalid message: id must be integer or string", code=INVALID_REQUEST
            )
        return JsonRpcRequest(id=msg_id, method=method, params=params)
    return JsonRpcNotification(method=method, params=params)


def _parse_response(data: dict[str, Any]) -> JsonRpcResponse:
    msg_id = data["id"]
    if msg_id is not None and not _is_valid_id(msg_id):
        raise ProtocolError("Invalid response: id must be integer or string", code=INVALID_REQUEST)

    if "error" in data:
        error = data["error"]
        if not isinstance(error, dict):
            raise ProtocolError(
                "Invalid response: error must be an object",
                code=INVALID_REQUEST,
                request_id=msg_id,
            )
        # A missing or non-string message still settles the request
        return JsonRpcResponse(id=msg_id, error=error)

    return JsonRpcResponse(id=msg_id, result=data["result"])


def format_request(msg_id: int | str, method: str, params: Params = None) -> str:
    """Format a JSON-RPC request.

    Args:
        msg_id: Unique request ID.
        method: Method name.
        params: Optional parameters.

    Returns:
        JSON string.
    """
    request: dict[str, Any] = {
        "jsonrpc": "2.0",
        "id": msg_id,
        "method": method,
    }
    if params is not None:
        request["params"] = params
    return json.dumps(request)


def format_response(msg_id: int | str, result: Any) -> str:
    """Format a successful JSON-RPC response.

    Args:
        msg_id: Request ID to echo back.
        result: Result payload.

    Returns:
        JSON string.
    """
    response = {
        "jsonrpc": "2.0",
        "id": msg_id,
        "result": result,
    }
    return json.dumps(response)


def format_error(
    msg_id: int | str | None,
    code: int,
    message: str,
    data: Any | None = None,
) -> str:
    """Format a JSON-RPC error response.

    Args:
        msg_id: Request ID (or None for parse errors).
        code: Error code.
        message: Error message.
        data: Optional error data.

    Returns:
        JSON string.
    """
    error_obj: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if data is not None:
        error_obj["data"] = data

    response = {
        "jsonrpc": "2.0",
        "id": msg_id,
        "error": error_obj,
    }
    return json.dumps(response)


def format_notification(method: str, params: Params = None) -> str:
    """Format a JSON-RPC notification.

    Args:
        method: Notification method name.
        params: Optional parameters.

    Returns:
        JSON string.
    """
    notification: dict[str, Any] = {
        "jsonrpc": "2.0",
        "method": method,
    }
    if params is not None:
        notification["params"] = params

    return json.dumps(notification)
