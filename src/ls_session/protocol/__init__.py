"""Protocol layer: JSON-RPC codec, framed transports, request correlation."""

from ls_session.protocol.jsonrpc import (
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    format_error,
    format_notification,
    format_request,
    format_response,
    parse_message,
    peek_response_id,
)
from ls_session.protocol.lifecycle import SessionLifecycle, SessionState
from ls_session.protocol.registry import RequestHandle, RequestRegistry
from ls_session.protocol.router import NotificationRouter, Subscription
from ls_session.protocol.transport import (
    SocketTransport,
    SubprocessTransport,
    Transport,
    encode_frame,
    read_frame,
)

__all__ = [
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "NotificationRouter",
    "RequestHandle",
    "RequestRegistry",
    "SessionLifecycle",
    "SessionState",
    "SocketTransport",
    "SubprocessTransport",
    "Subscription",
    "Transport",
    "encode_frame",
    "format_error",
    "format_notification",
    "format_request",
    "format_response",
    "parse_message",
    "peek_response_id",
    "read_frame",
]
