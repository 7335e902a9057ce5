"""Protocol session - one client connection to a language server.

Integrates transport, codec, request registry, notification router,
restart policy and telemetry into a single stateful session.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ls_session.exceptions import (
    ProtocolError,
    ResponseError,
    SessionError,
    TerminationError,
    TransportError,
)
from ls_session.logging_utils import SessionLogAdapter
from ls_session.policy import RestartPolicy
from ls_session.protocol.jsonrpc import (
    INTERNAL_ERROR,
    MAX_MESSAGE_SIZE,
    METHOD_NOT_FOUND,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    Params,
    format_error,
    format_notification,
    format_request,
    format_response,
    parse_message,
)
from ls_session.protocol.lifecycle import SessionLifecycle, SessionState, build_initialize_params
from ls_session.protocol.registry import RequestHandle, RequestId, RequestRegistry
from ls_session.protocol.router import NotificationRouter, Subscription
from ls_session.protocol.transport import Transport
from ls_session.telemetry.output import OutputChannel
from ls_session.telemetry.sink import (
    HANDLER_ERROR_EVENT,
    PROTOCOL_ERROR_EVENT,
    RESTART_THRESHOLD_EVENT,
    STARTUP_EVENT,
    TRANSPORT_FAILURE_EVENT,
    TelemetryRecord,
    TelemetrySink,
)

logger = logging.getLogger(__name__)

# Built-in protocol methods
INITIALIZE = "initialize"
INITIALIZED = "initialized"
SHUTDOWN = "shutdown"
EXIT = "exit"
CANCEL_REQUEST = "$/cancelRequest"
TELEMETRY_EVENT = "telemetry/event"
LOG_MESSAGE = "window/logMessage"
SHOW_MESSAGE = "window/showMessage"

# Lifecycle events
STARTED = "started"
STOPPED = "stopped"
FAILED = "failed"
FATAL = "fatal"

_TELEMETRY = "telemetry"
_MESSAGE_TYPES = {1: "Error", 2: "Warn", 3: "Info", 4: "Log"}
_DEFAULT = object()

TransportFactory = Callable[[], Transport]
RequestHandler = Callable[[Any], Any]
HostNotifier = Callable[[str], None]


class Session:
    """Client side of a language server connection.

    Provides:
    - Lifecycle management (start/stop with the initialize/shutdown handshake)
    - Requests correlated by id, notifications in both directions
    - Automatic restart after transport failures, within the restart policy
    - A telemetry side channel for protocol errors and server telemetry

    All methods must be called from the event loop that runs the session.
    """

    def __init__(
        self,
        name: str,
        label: str,
        transport_factory: TransportFactory,
        *,
        telemetry: TelemetrySink | None = None,
        output: OutputChannel | None = None,
        restart_policy: RestartPolicy | None = None,
        notify_host: HostNotifier | None = None,
        request_timeout: float | None = None,
        initialize_timeout: float | None = 30.0,
        shutdown_timeout: float | None = 5.0,
        initialize_params: dict[str, Any] | None = None,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        """Initialize the session.

        Args:
            name: Session identifier, used in logs and telemetry.
            label: Human-readable server name, used in host messages.
            transport_factory: Creates a fresh transport for every start.
            telemetry: Shared telemetry sink (not owned by the session).
            output: Channel receiving server log messages.
            restart_policy: Decides on restarts after transport failures.
            notify_host: Shows a message to the user.
            request_timeout: Default timeout for send_request, None to wait
                indefinitely.
            initialize_timeout: Timeout for the initialize handshake.
            shutdown_timeout: Timeout for the shutdown request in stop().
            initialize_params: Params for the initialize request.
            max_message_size: Largest accepted server message in bytes.
        """
        self.name = name
        self.label = label
        self._transport_factory = transport_factory
        self._telemetry = telemetry
        self._output = output
        self._policy = restart_policy or RestartPolicy()
        self._notify_host = notify_host
        self._request_timeout = request_timeout
        self._initialize_timeout = initialize_timeout
        self._shutdown_timeout = shutdown_timeout
        self._initialize_params = initialize_params or build_initialize_params()
        self._max_message_size = max_message_size
        self._log = SessionLogAdapter(logger, name)

        self._lifecycle = SessionLifecycle()
        self._registry = RequestRegistry()
        self._notifications = NotificationRouter("notification", self._report_handler_error)
        self._events = NotificationRouter("event", self._report_handler_error)
        self._telemetry_handlers = NotificationRouter("telemetry")
        self._request_handlers = NotificationRouter("request")
        self._ids = itertools.count(1)

        self._transport: Transport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._server_request_tasks: set[asyncio.Task[None]] = set()
        self._failure_notified = False
        self.server_capabilities: dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"<Session {self.name!r} {self.state.value}>"

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._lifecycle.state

    @property
    def restart_policy(self) -> RestartPolicy:
        """Policy consulted after transport failures."""
        return self._policy

    @property
    def pending_requests(self) -> int:
        """Number of requests awaiting a response."""
        return len(self._registry)

    def is_running(self) -> bool:
        """Check if the session is running."""
        return self._lifecycle.is_running

    # -- Subscriptions -------------------------------------------------------

    def on_notification(self, method: str, handler: Callable[[Any], Any]) -> Subscription:
        """Register a handler for a server notification.

        Handlers are additive and run in registration order.

        Args:
            method: Notification method name, built-in or custom.
            handler: Callable receiving the notification params.

        Returns:
            Subscription that can be unsubscribed.
        """
        return self._notifications.subscribe(method, handler)

    def on_request(self, method: str, handler: RequestHandler) -> Subscription:
        """Register the handler answering a server-to-client request.

        The handler receives the params and returns the result, directly or
        as an awaitable. Raising ResponseError sends its code and message.
        The latest active registration for a method wins.
        """
        return self._request_handlers.subscribe(method, handler)

    def on_event(self, event: str, handler: Callable[[Any], Any]) -> Subscription:
        """Register a handler for a lifecycle event.

        Events: "started", "stopped", "failed" (with the error) and "fatal"
        (with the error, once restarts are exhausted).
        """
        return self._events.subscribe(event, handler)

    def on_telemetry(self, handler: Callable[[TelemetryRecord], Any]) -> Subscription:
        """Register a handler for protocol errors and server telemetry."""
        return self._telemetry_handlers.subscribe(_TELEMETRY, handler)

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> SessionState:
        """Start the session.

        No-op while starting or running.

        Returns:
            The session state after the call.

        Raises:
            TransportError: If the server could not be started.
        """
        if self.state in (SessionState.STARTING, SessionState.RUNNING):
            return self.state
        if self.state is SessionState.STOPPING:
            raise SessionError("Session is stopping")

        self._cancel_restart()
        try:
            await self._start()
        except TerminationError:
            # stop() was called while starting
            return self.state
        except TransportError as e:
            self._send_startup_telemetry(False, str(e))
            self._apply_failure_policy(e, auto_restart=False)
            raise
        self._send_startup_telemetry(True)
        return self.state

    async def stop(self, clear_subscriptions: bool = False) -> SessionState:
        """Stop the session and release the transport.

        Pending requests are rejected with TerminationError. Notification
        subscriptions are kept for a later start() unless
        clear_subscriptions is True.

        Returns:
            The session state after the call.
        """
        if self.state is SessionState.STOPPING:
            return self.state
        if self.state is SessionState.STOPPED:
            if clear_subscriptions:
                self._notifications.clear()
            return self.state

        self._cancel_restart()
        was_running = self.state is SessionState.RUNNING
        self._lifecycle.transition(SessionState.STOPPING)
        self._log.info("Stopping session %s", self.name)
        try:
            if was_running:
                await self._shutdown_gracefully()
        finally:
            self._registry.reject_all(TerminationError(f"Session {self.name} stopped"))
            await self._release_transport()
            self._lifecycle.transition(SessionState.STOPPED)
            if clear_subscriptions:
                self._notifications.clear()
        self._log.info("Session %s stopped", self.name)
        self._events.dispatch(STOPPED, None)
        return self.state

    async def _start(self) -> None:
        """Run one start attempt.

        Raises:
            TransportError: If the attempt failed; the session is FAILED.
            TerminationError: If stop() interrupted the attempt.
        """
        self._lifecycle.transition(SessionState.STARTING)
        await self._release_transport()
        self._log.info("Starting session %s", self.name)

        try:
            transport = self._transport_factory()
            self._transport = transport
            await transport.open()
            if self._transport is not transport:
                await transport.close()
                raise TerminationError(f"Session {self.name} stopped while starting")
            self._reader_task = asyncio.create_task(
                self._read_loop(transport), name=f"ls-session-reader-{self.name}"
            )
            handle = self._send_request_unchecked(
                INITIALIZE, self._initialize_params, self._initialize_timeout
            )
            result = await handle
            self._write(format_notification(INITIALIZED, {}))
        except SessionError as e:
            if self.state is not SessionState.STARTING:
                raise TerminationError(f"Session {self.name} stopped while starting") from e
            await self._fail(e)
            raise TransportError(f"{self.label} server failed to start: {e}") from e

        if self.state is not SessionState.STARTING:
            raise TerminationError(f"Session {self.name} stopped while starting")

        self.server_capabilities = {}
        if isinstance(result, dict):
            self.server_capabilities = result.get("capabilities") or {}
        self._lifecycle.transition(SessionState.RUNNING)
        self._policy.reset()
        self._failure_notified = False
        self._log.info("Session %s running", self.name)
        self._events.dispatch(STARTED, None)

    async def _shutdown_gracefully(self) -> None:
        handle = self._send_request_unchecked(SHUTDOWN, None, self._shutdown_timeout)
        try:
            await handle
        except SessionError as e:
            self._log.debug("Shutdown request for %s failed: %s", self.name, e)
        try:
            self._write(format_notification(EXIT))
        except TransportError as e:
            self._log.debug("Exit notification for %s failed: %s", self.name, e)

    async def _fail(self, error: BaseException) -> None:
        """Move to FAILED, reject pending requests and release the transport."""
        self._lifecycle.transition(SessionState.FAILED)
        self._registry.reject_all(TerminationError(f"Session {self.name} terminated: {error}"))
        await self._release_transport()
        self._events.dispatch(FAILED, error)

    async def _release_transport(self) -> None:
        reader, self._reader_task = self._reader_task, None
        transport, self._transport = self._transport, None

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        # Server requests still being answered belong to this transport
        answering = [t for t in self._server_request_tasks if t is not asyncio.current_task()]
        self._server_request_tasks.difference_update(answering)
        for task in answering:
            task.cancel()
        if answering:
            await asyncio.gather(*answering, return_exceptions=True)

        if transport is not None:
            try:
                await transport.close()
            except (TransportError, OSError) as e:
                self._log.warning("Error closing transport for %s: %s", self.name, e)

    # -- Failure handling ----------------------------------------------------

    async def _on_connection_lost(self, transport: Transport, error: TransportError) -> None:
        if transport is not self._transport:
            return

        if self.state is SessionState.STARTING:
            # start() observes the rejection and records the failure
            self._registry.reject_all(TerminationError(f"Connection lost: {error}"))
            return
        if self.state is not SessionState.RUNNING:
            return

        self._log.warning("Session %s lost its connection: %s", self.name, error)
        await self._fail(error)
        self._apply_failure_policy(error, auto_restart=True)

    def _apply_failure_policy(self, error: BaseException, auto_restart: bool) -> None:
        decision = self._policy.record_failure()
        self._emit_telemetry(
            TelemetryRecord(
                TRANSPORT_FAILURE_EVENT,
                {
                    "session": self.name,
                    "errorType": "TransportError",
                    "attempt": decision.attempt,
                    "error": str(error),
                },
            )
        )

        if decision.restart:
            if not auto_restart:
                return
            if not self._failure_notified:
                self._failure_notified = True
                self._notify(f"The {self.label} server crashed. It will be restarted.")
            self._log.info(
                "Restarting session %s in %.1fs (failure %d of %d)",
                self.name,
                decision.delay,
                decision.attempt,
                decision.threshold,
            )
            self._restart_task = asyncio.create_task(
                self._restart_after(decision.delay), name=f"ls-session-restart-{self.name}"
            )
            return

        self._log.error(
            "Session %s failed %d consecutive times, giving up", self.name, decision.attempt
        )
        self._emit_telemetry(
            TelemetryRecord(
                RESTART_THRESHOLD_EVENT,
                {
                    "session": self.name,
                    "attempts": decision.attempt,
                    "threshold": decision.threshold,
                    "error": str(error),
                },
            )
        )
        self._notify(
            f"The {self.label} server crashed {decision.attempt} times in a row. "
            "It will not be restarted."
        )
        self._events.dispatch(FATAL, error)

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state is not SessionState.FAILED:
            return
        try:
            await self._start()
        except TerminationError:
            return
        except TransportError as e:
            if self.state is SessionState.FAILED:
                self._apply_failure_policy(e, auto_restart=True)

    def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _notify(self, message: str) -> None:
        if self._output is not None:
            self._output.append_line(message)
        if self._notify_host is None:
            return
        try:
            self._notify_host(message)
        except Exception:
            self._log.exception("Host notification failed for %s", self.name)

    # -- Outgoing messages ---------------------------------------------------

    def send_request(
        self, method: str, params: Params = None, *, timeout: Any = _DEFAULT
    ) -> RequestHandle:
        """Send a request to the server.

        Args:
            method: Request method name.
            params: Request params.
            timeout: Seconds to wait for the response; defaults to the
                session request timeout. None waits indefinitely.

        Returns:
            Handle resolving with the result. It rejects with ResponseError,
            TerminationError, RequestTimeoutError or TransportError.

        Raises:
            NotRunningError: If the session is not running.
        """
        self._lifecycle.require_running(f"send request {method!r}")
        if timeout is _DEFAULT:
            timeout = self._request_timeout
        return self._send_request_unchecked(method, params, timeout)

    def send_notification(self, method: str, params: Params = None) -> None:
        """Send a notification to the server.

        Delivery is not guaranteed: a failed write is logged and reported to
        telemetry, never raised.

        Raises:
            NotRunningError: If the session is not running.
        """
        self._lifecycle.require_running(f"send notification {method!r}")
        try:
            self._write(format_notification(method, params))
        except TransportError as e:
            self._report_protocol_error(f"Failed to send notification: {e}", method=method)

    def _send_request_unchecked(
        self, method: str, params: Params, timeout: float | None
    ) -> RequestHandle:
        request_id = next(self._ids)
        handle = self._registry.register(
            request_id, method, timeout=timeout, on_cancel=self._cancel_remote
        )
        try:
            self._write(format_request(request_id, method, params))
        except TransportError as e:
            self._report_protocol_error(f"Failed to send request: {e}", method=method)
            self._registry.reject(request_id, e)
        return handle

    def _cancel_remote(self, request_id: RequestId) -> None:
        if not self.is_running():
            return
        try:
            self._write(format_notification(CANCEL_REQUEST, {"id": request_id}))
        except TransportError as e:
            self._log.debug(
                "Could not send cancellation for %r: %s",
                request_id,
                e,
                extra={"request_id": request_id},
            )

    def _write(self, payload: str) -> None:
        if self._transport is None:
            raise TransportError("No transport")
        self._transport.write(payload)

    # -- Incoming messages ---------------------------------------------------

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                try:
                    payload = await transport.read()
                except ProtocolError as e:
                    self._reject_bad_message(e)
                    continue
                if payload is None:
                    error = TransportError("Connection to server closed")
                    break
                self._handle_payload(payload)
        except TransportError as e:
            error = e
        await self._on_connection_lost(transport, error)

    def _handle_payload(self, payload: bytes) -> None:
        try:
            message = parse_message(payload, self._max_message_size)
        except ProtocolError as e:
            self._reject_bad_message(e)
            return

        if isinstance(message, JsonRpcResponse):
            self._handle_response(message)
        elif isinstance(message, JsonRpcRequest):
            task = asyncio.create_task(self._handle_server_request(message))
            self._server_request_tasks.add(task)
            task.add_done_callback(self._server_request_tasks.discard)
        else:
            self._handle_notification(message)

    def _handle_response(self, response: JsonRpcResponse) -> None:
        if response.error is not None:
            settled = self._registry.resolve_error(response.id, response.error)
        else:
            settled = self._registry.resolve(response.id, result=response.result)
        if not settled and not self._registry.was_cancelled(response.id):
            self._report_protocol_error(
                f"Response for unknown request id {response.id!r}", request_id=response.id
            )

    def _handle_notification(self, notification: JsonRpcNotification) -> None:
        method = notification.method
        params = notification.params
        if method == TELEMETRY_EVENT:
            self._emit_telemetry(TelemetryRecord.from_payload(params))
        elif method in (LOG_MESSAGE, SHOW_MESSAGE) and self._output is not None:
            self._output.append_line(_format_log_message(params))
        self._notifications.dispatch(method, params)

    async def _handle_server_request(self, request: JsonRpcRequest) -> None:
        handlers = self._request_handlers.handlers(request.method)
        handler = handlers[-1] if handlers else None
        if handler is None:
            reply = format_error(
                request.id, METHOD_NOT_FOUND, f"Unhandled method: {request.method}"
            )
        else:
            try:
                result = handler(request.params)
                if inspect.isawaitable(result):
                    result = await result
                reply = format_response(request.id, result)
            except ResponseError as e:
                reply = format_error(request.id, e.code or INTERNAL_ERROR, e.message, e.data)
            except Exception as e:
                self._log.exception(
                    "Request handler for %r failed",
                    request.method,
                    extra={"request_id": request.id, "method": request.method},
                )
                self._report_handler_error(request.method, e)
                reply = format_error(request.id, INTERNAL_ERROR, f"Request handler failed: {e}")
        try:
            self._write(reply)
        except TransportError as e:
            self._report_protocol_error(f"Failed to answer request: {e}", method=request.method)

    def _reject_bad_message(self, error: ProtocolError) -> None:
        """Report an unusable message and fail the request it answered, if known."""
        properties: dict[str, Any] = {}
        if error.code is not None:
            properties["code"] = error.code
        if error.request_id is not None:
            properties["request_id"] = error.request_id
        self._report_protocol_error(str(error), **properties)
        if error.request_id is not None:
            self._registry.reject(error.request_id, error)

    # -- Telemetry -----------------------------------------------------------

    def _report_handler_error(self, method: str, error: BaseException) -> None:
        self._emit_telemetry(
            TelemetryRecord(
                HANDLER_ERROR_EVENT,
                {
                    "session": self.name,
                    "errorType": type(error).__name__,
                    "method": method,
                    "message": str(error),
                },
            )
        )

    def _report_protocol_error(self, message: str, **properties: Any) -> None:
        self._log.warning("Protocol error in session %s: %s", self.name, message)
        self._emit_telemetry(
            TelemetryRecord(
                PROTOCOL_ERROR_EVENT,
                {
                    "session": self.name,
                    "errorType": "ProtocolError",
                    "message": message,
                    **properties,
                },
            )
        )

    def _emit_telemetry(self, record: TelemetryRecord) -> None:
        if self._telemetry is not None:
            self._telemetry.send(record)
        self._telemetry_handlers.dispatch(_TELEMETRY, record)

    def _send_startup_telemetry(self, success: bool, error: str | None = None) -> None:
        properties: dict[str, Any] = {"session": self.name, "success": success}
        if error is not None:
            properties["error"] = error
        if self._telemetry is not None:
            self._telemetry.send(TelemetryRecord(STARTUP_EVENT, properties))


def _format_log_message(params: Any) -> str:
    if not isinstance(params, dict):
        return str(params)
    kind = _MESSAGE_TYPES.get(params.get("type"), "Info")
    return f"[{kind} - {datetime.now():%H:%M:%S}] {params.get('message', '')}"
