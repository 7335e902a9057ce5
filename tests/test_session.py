"""Tests for the protocol session."""

import asyncio

import pytest
from fakes import FakeTransportFactory, settle, wait_for

from ls_session.exceptions import (
    MessageTooLargeError,
    NotRunningError,
    ProtocolError,
    RequestTimeoutError,
    ResponseError,
    TerminationError,
    TransportError,
)
from ls_session.policy import RestartPolicy
from ls_session.protocol.jsonrpc import METHOD_NOT_FOUND
from ls_session.protocol.lifecycle import SessionState
from ls_session.session import FAILED, FATAL, STARTED, STOPPED
from ls_session.telemetry import (
    HANDLER_ERROR_EVENT,
    PROTOCOL_ERROR_EVENT,
    RESTART_THRESHOLD_EVENT,
    STARTUP_EVENT,
    TRANSPORT_FAILURE_EVENT,
)


class TestStartStop:
    """Tests for the session lifecycle."""

    def test_start_performs_handshake(self, make_session, factory):
        """Should send initialize then initialized and end up running."""

        async def scenario():
            session = make_session()
            state = await session.start()
            methods = factory.current.sent_methods()
            capabilities = session.server_capabilities
            await session.stop()
            return state, methods, capabilities

        state, methods, capabilities = asyncio.run(scenario())

        assert state == SessionState.RUNNING
        assert methods == ["initialize", "initialized"]
        assert capabilities == {"hoverProvider": True}

    def test_initialize_params_identify_client(self, make_session, factory):
        """Should send client info and capabilities with initialize."""

        async def scenario():
            session = make_session()
            await session.start()
            await session.stop()

        asyncio.run(scenario())

        params = factory.transports[0].requests("initialize")[0]["params"]
        assert params["clientInfo"]["name"] == "ls-session"
        assert "capabilities" in params

    def test_stop_performs_shutdown_and_exit(self, make_session, factory):
        """Should send shutdown and exit, then close the transport."""

        async def scenario():
            session = make_session()
            await session.start()
            state = await session.stop()
            return state

        state = asyncio.run(scenario())

        transport = factory.current
        assert state == SessionState.STOPPED
        assert transport.sent_methods() == ["initialize", "initialized", "shutdown", "exit"]
        assert transport.closed

    def test_start_while_running_is_noop(self, make_session, factory):
        """Should not create a second transport when already running."""

        async def scenario():
            session = make_session()
            await session.start()
            state = await session.start()
            await session.stop()
            return state

        state = asyncio.run(scenario())

        assert state == SessionState.RUNNING
        assert len(factory.transports) == 1

    def test_stop_when_stopped_is_noop(self, make_session, factory):
        """Should return STOPPED without touching any transport."""

        async def scenario():
            session = make_session()
            return await session.stop()

        assert asyncio.run(scenario()) == SessionState.STOPPED
        assert factory.transports == []

    def test_restart_after_stop(self, make_session, factory):
        """Should start again on a fresh transport after stop()."""

        async def scenario():
            session = make_session()
            await session.start()
            await session.stop()
            state = await session.start()
            await session.stop()
            return state

        state = asyncio.run(scenario())

        assert state == SessionState.RUNNING
        assert len(factory.transports) == 2
        assert all(t.closed for t in factory.transports)

    def test_never_more_than_one_live_transport(self, make_session, factory):
        """Should hold at most one open transport across start/stop calls."""

        async def scenario():
            session = make_session()
            observed = []
            for action in ("start", "start", "stop", "start", "stop", "stop", "start"):
                await getattr(session, action)()
                observed.append(len(factory.live))
            factory.current.disconnect()
            await wait_for(lambda: len(factory.transports) == 4 and session.is_running())
            observed.append(len(factory.live))
            await session.stop()
            observed.append(len(factory.live))
            return observed

        observed = asyncio.run(scenario())

        assert max(observed) == 1
        assert observed[-1] == 0

    def test_lifecycle_events(self, make_session):
        """Should dispatch started and stopped events."""
        events = []

        async def scenario():
            session = make_session()
            session.on_event(STARTED, lambda _: events.append(STARTED))
            session.on_event(STOPPED, lambda _: events.append(STOPPED))
            await session.start()
            await session.stop()

        asyncio.run(scenario())

        assert events == [STARTED, STOPPED]

    def test_startup_telemetry_on_success(self, make_session, memory):
        """Should report a successful start."""

        async def scenario():
            session = make_session()
            await session.start()
            await session.stop()

        asyncio.run(scenario())

        records = memory.named(STARTUP_EVENT)
        assert len(records) == 1
        assert records[0].properties["success"] is True

    def test_stop_while_starting(self, factory, make_session):
        """Should abandon the handshake and end up stopped."""
        factory.auto_reply = False

        async def scenario():
            session = make_session()
            start = asyncio.create_task(session.start())
            await settle()
            starting = session.state
            await session.stop()
            await start
            return session, starting

        session, starting = asyncio.run(scenario())

        assert starting == SessionState.STARTING
        assert session.state == SessionState.STOPPED
        assert factory.live == []

    def test_stop_can_clear_subscriptions(self, make_session, factory):
        """Should drop notification handlers only when asked to."""
        received = []

        async def scenario():
            session = make_session()
            session.on_notification("custom/event", received.append)
            await session.start()
            await session.stop()
            await session.start()
            factory.current.notify("custom/event", {"n": 1})
            await settle()
            await session.stop(clear_subscriptions=True)
            await session.start()
            factory.current.notify("custom/event", {"n": 2})
            await settle()
            await session.stop()

        asyncio.run(scenario())

        assert received == [{"n": 1}]


class TestStartFailure:
    """Tests for a server that cannot be started."""

    def test_start_raises_transport_error(self, make_session, memory):
        """Should raise, end FAILED and report the failure."""
        factory = FakeTransportFactory(open_failures=1)

        async def scenario():
            session = make_session(factory=factory)
            with pytest.raises(TransportError):
                await session.start()
            await settle()
            return session

        session = asyncio.run(scenario())

        assert session.state == SessionState.FAILED
        assert len(factory.transports) == 1
        startup = memory.named(STARTUP_EVENT)
        assert startup[0].properties["success"] is False
        assert "error" in startup[0].properties
        assert len(memory.named(TRANSPORT_FAILURE_EVENT)) == 1

    def test_start_after_failed_start(self, make_session):
        """Should start from FAILED and reset the failure count."""
        factory = FakeTransportFactory(open_failures=1)

        async def scenario():
            session = make_session(factory=factory)
            with pytest.raises(TransportError):
                await session.start()
            state = await session.start()
            failures = session.restart_policy.consecutive_failures
            await session.stop()
            return state, failures

        state, failures = asyncio.run(scenario())

        assert state == SessionState.RUNNING
        assert failures == 0

    def test_connection_lost_during_handshake(self, make_session, factory):
        """Should fail the start when the server exits before initializing."""
        factory.auto_reply = False

        async def scenario():
            session = make_session()
            start = asyncio.create_task(session.start())
            await settle()
            factory.current.disconnect()
            with pytest.raises(TransportError):
                await start
            return session

        session = asyncio.run(scenario())

        assert session.state == SessionState.FAILED
        assert factory.live == []

    def test_initialize_timeout(self, make_session, factory):
        """Should fail the start when initialize is not answered in time."""
        factory.auto_reply = False

        async def scenario():
            session = make_session(initialize_timeout=0.01)
            with pytest.raises(TransportError):
                await session.start()
            return session

        session = asyncio.run(scenario())

        assert session.state == SessionState.FAILED


class TestRequests:
    """Tests for request/response correlation."""

    def test_out_of_order_responses(self, make_session, factory):
        """Should match responses by id, not by arrival order."""

        async def scenario():
            session = make_session()
            await session.start()
            first = session.send_request("custom/first")
            second = session.send_request("custom/second")
            factory.current.reply(first.id, "ok")
            await settle()
            first_done, second_done = first.done(), second.done()
            first_result = await first
            factory.current.reply(second.id, "later")
            second_result = await second
            await session.stop()
            return first_done, second_done, first_result, second_result

        first_done, second_done, first_result, second_result = asyncio.run(scenario())

        assert first_done is True
        assert second_done is False
        assert first_result == "ok"
        assert second_result == "later"

    def test_request_ids_are_unique(self, make_session, factory):
        """Should never reuse a request id."""

        async def scenario():
            session = make_session()
            await session.start()
            handles = [session.send_request("custom/ping") for _ in range(5)]
            await session.stop()
            return [h.id for h in handles]

        ids = asyncio.run(scenario())

        assert len(set(ids)) == 5
        assert ids == sorted(ids)

    def test_requests_written_in_call_order(self, make_session, factory):
        """Should write requests to the transport in call order."""

        async def scenario():
            session = make_session()
            await session.start()
            for name in ("a", "b", "c"):
                session.send_request(f"custom/{name}")
            await session.stop()

        asyncio.run(scenario())

        methods = factory.current.sent_methods()
        assert methods[2:5] == ["custom/a", "custom/b", "custom/c"]

    def test_second_response_is_dropped(self, make_session, factory, memory):
        """Should resolve once and report a duplicate response."""

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("custom/once")
            factory.current.reply(handle.id, "first")
            result = await handle
            factory.current.reply(handle.id, "second")
            await settle()
            await session.stop()
            return handle, result

        handle, result = asyncio.run(scenario())

        assert result == "first"
        assert handle.result() == "first"
        records = memory.named(PROTOCOL_ERROR_EVENT)
        assert len(records) == 1
        assert records[0].properties["errorType"] == "ProtocolError"

    def test_error_response(self, make_session, factory):
        """Should reject the handle with ResponseError."""

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("custom/missing")
            factory.current.reply_error(handle.id, METHOD_NOT_FOUND, "Unhandled method")
            try:
                with pytest.raises(ResponseError) as exc_info:
                    await handle
            finally:
                await session.stop()
            return exc_info.value

        error = asyncio.run(scenario())

        assert error.code == METHOD_NOT_FOUND
        assert error.message == "Unhandled method"

    def test_cancel_sends_cancel_request(self, make_session, factory, memory):
        """Should cancel locally, notify the server and drop the late reply."""

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("custom/slow")
            cancelled = handle.cancel()
            factory.current.reply(handle.id, "late")
            await settle()
            await session.stop()
            return handle, cancelled

        handle, cancelled = asyncio.run(scenario())

        assert cancelled is True
        assert handle.cancelled()
        cancels = [m for m in factory.current.sent if m.get("method") == "$/cancelRequest"]
        assert cancels == [
            {"jsonrpc": "2.0", "method": "$/cancelRequest", "params": {"id": handle.id}}
        ]
        assert memory.named(PROTOCOL_ERROR_EVENT) == []

    def test_request_timeout(self, make_session, factory, memory):
        """Should reject with RequestTimeoutError and ignore a late reply."""

        async def scenario():
            session = make_session(request_timeout=0.01)
            await session.start()
            handle = session.send_request("custom/slow")
            with pytest.raises(RequestTimeoutError):
                await handle
            factory.current.reply(handle.id, "late")
            await settle()
            await session.stop()

        asyncio.run(scenario())

        assert memory.named(PROTOCOL_ERROR_EVENT) == []

    def test_per_call_timeout_overrides_default(self, make_session, factory):
        """Should wait indefinitely when timeout=None is passed."""

        async def scenario():
            session = make_session(request_timeout=0.01)
            await session.start()
            handle = session.send_request("custom/slow", timeout=None)
            await asyncio.sleep(0.03)
            done = handle.done()
            await session.stop()
            return done

        assert asyncio.run(scenario()) is False

    def test_pending_requests_rejected_on_stop(self, make_session):
        """Should reject every pending handle with TerminationError."""

        async def scenario():
            session = make_session()
            await session.start()
            handles = [session.send_request("custom/pending") for _ in range(3)]
            await session.stop()
            outcomes = []
            for handle in handles:
                with pytest.raises(TerminationError):
                    await handle
                outcomes.append(handle.done())
            return session, outcomes

        session, outcomes = asyncio.run(scenario())

        assert outcomes == [True, True, True]
        assert session.pending_requests == 0

    def test_pending_requests_rejected_on_connection_loss(self, make_session, factory):
        """Should reject pending handles when the transport fails."""

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("custom/pending")
            factory.current.disconnect()
            with pytest.raises(TerminationError):
                await handle
            await wait_for(session.is_running)
            await session.stop()

        asyncio.run(scenario())

    def test_write_failure_rejects_request(self, make_session, factory, memory):
        """Should reject the handle and report a protocol error."""

        async def scenario():
            session = make_session()
            await session.start()
            factory.current.fail_writes = True
            handle = session.send_request("custom/broken")
            with pytest.raises(TransportError):
                await handle
            factory.current.fail_writes = False
            await session.stop()

        asyncio.run(scenario())

        assert len(memory.named(PROTOCOL_ERROR_EVENT)) == 1

    def test_oversized_response_rejects_its_request(self, make_session, factory, memory):
        """Should fail the request an oversized response answers and keep running."""

        async def scenario():
            session = make_session(max_message_size=256)
            await session.start()
            handle = session.send_request("textDocument/semanticTokens/full")
            factory.current.reply(handle.id, {"data": list(range(200))})
            with pytest.raises(MessageTooLargeError) as exc_info:
                await handle
            pending = session.pending_requests
            running = session.is_running()
            await session.stop()
            return exc_info.value, pending, running

        error, pending, running = asyncio.run(scenario())

        assert error.limit == 256
        assert pending == 0
        assert running is True
        records = memory.named(PROTOCOL_ERROR_EVENT)
        assert len(records) == 1
        assert records[0].properties["request_id"] == error.request_id

    def test_large_response_within_default_limit(self, make_session, factory):
        """Should deliver responses larger than one megabyte."""
        tokens = list(range(300_000))

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("textDocument/semanticTokens/full")
            factory.current.reply(handle.id, {"data": tokens})
            result = await handle
            await session.stop()
            return result

        assert asyncio.run(scenario()) == {"data": tokens}

    def test_error_without_message_settles_request(self, make_session, factory):
        """Should reject with a default message when the error object lacks one."""

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("custom/odd")
            factory.current.push({"jsonrpc": "2.0", "id": handle.id, "error": {"code": -32000}})
            with pytest.raises(ResponseError) as exc_info:
                await handle
            await session.stop()
            return exc_info.value

        error = asyncio.run(scenario())

        assert error.message == "Unknown error"
        assert error.code == -32000

    def test_scalar_error_rejects_request(self, make_session, factory, memory):
        """Should fail the request whose response carries an unusable error."""

        async def scenario():
            session = make_session()
            await session.start()
            handle = session.send_request("custom/odd")
            factory.current.push({"jsonrpc": "2.0", "id": handle.id, "error": "boom"})
            with pytest.raises(ProtocolError):
                await handle
            await session.stop()

        asyncio.run(scenario())

        assert len(memory.named(PROTOCOL_ERROR_EVENT)) == 1

    def test_caller_timeout_forgets_request(self, make_session, factory):
        """Should remove requests abandoned by asyncio.wait_for and tell the server."""

        async def scenario():
            session = make_session()
            await session.start()
            for _ in range(3):
                with pytest.raises(TimeoutError):
                    await asyncio.wait_for(session.send_request("custom/slow"), 0.01)
            await settle()
            pending = session.pending_requests
            await session.stop()
            return pending

        assert asyncio.run(scenario()) == 0
        cancelled = [
            m["params"]["id"] for m in factory.current.sent if m.get("method") == "$/cancelRequest"
        ]
        assert cancelled == [r["id"] for r in factory.current.requests("custom/slow")]


class TestNotRunning:
    """Tests for operations outside the RUNNING state."""

    def test_send_request_when_stopped(self, make_session, factory):
        """Should raise synchronously without creating a transport."""
        session = make_session()

        with pytest.raises(NotRunningError) as exc_info:
            session.send_request("custom/ping")

        assert exc_info.value.state == SessionState.STOPPED
        assert factory.transports == []

    def test_send_notification_when_stopped(self, make_session):
        """Should raise NotRunningError for notifications too."""
        session = make_session()

        with pytest.raises(NotRunningError):
            session.send_notification("custom/ping")

    def test_send_request_after_stop(self, make_session, factory):
        """Should not write to the old transport."""

        async def scenario():
            session = make_session()
            await session.start()
            await session.stop()
            sent = len(factory.current.sent)
            with pytest.raises(NotRunningError):
                session.send_request("custom/ping")
            return sent

        sent = asyncio.run(scenario())

        assert len(factory.current.sent) == sent

    def test_send_request_while_stopping(self, make_session, factory):
        """Should raise while the shutdown handshake is in progress."""

        async def scenario():
            session = make_session(shutdown_timeout=0.05)
            await session.start()
            factory.current.auto_reply = False
            stop = asyncio.create_task(session.stop())
            await settle()
            state = session.state
            with pytest.raises(NotRunningError):
                session.send_request("custom/ping")
            await stop
            return state

        assert asyncio.run(scenario()) == SessionState.STOPPING

    def test_send_request_when_failed(self, make_session, factory):
        """Should raise after restarts are exhausted."""

        async def scenario():
            session = make_session(restart_policy=RestartPolicy(max_consecutive_failures=0))
            await session.start()
            factory.current.disconnect()
            await wait_for(lambda: session.state == SessionState.FAILED)
            sent = len(factory.current.sent)
            with pytest.raises(NotRunningError):
                session.send_request("custom/ping")
            return sent

        sent = asyncio.run(scenario())

        assert len(factory.current.sent) == sent


class TestIncoming:
    """Tests for notifications and requests sent by the server."""

    def test_handlers_run_in_registration_order(self, make_session, factory):
        """Should call every handler once, in order."""
        calls = []

        async def scenario():
            session = make_session()
            session.on_notification("custom/event", lambda p: calls.append(("first", p)))
            session.on_notification("custom/event", lambda p: calls.append(("second", p)))
            await session.start()
            factory.current.notify("custom/event", {"n": 1})
            await settle()
            await session.stop()

        asyncio.run(scenario())

        assert calls == [("first", {"n": 1}), ("second", {"n": 1})]

    def test_failing_handler_is_isolated(self, make_session, factory):
        """Should keep dispatching after a handler raises."""
        calls = []

        def broken(params):
            raise RuntimeError("boom")

        async def scenario():
            session = make_session()
            session.on_notification("custom/event", lambda p: calls.append("first"))
            session.on_notification("custom/event", broken)
            session.on_notification("custom/event", lambda p: calls.append("third"))
            await session.start()
            factory.current.notify("custom/event")
            await settle()
            running = session.is_running()
            await session.stop()
            return running

        running = asyncio.run(scenario())

        assert calls == ["first", "third"]
        assert running is True

    def test_unsubscribe(self, make_session, factory):
        """Should stop calling a handler after unsubscribe."""
        calls = []

        async def scenario():
            session = make_session()
            subscription = session.on_notification("custom/event", calls.append)
            await session.start()
            factory.current.notify("custom/event", {"n": 1})
            await settle()
            subscription.unsubscribe()
            factory.current.notify("custom/event", {"n": 2})
            await settle()
            await session.stop()

        asyncio.run(scenario())

        assert calls == [{"n": 1}]

    def test_telemetry_event_reaches_sink(self, make_session, factory, memory):
        """Should forward telemetry/event to the sink and telemetry handlers."""
        seen = []

        async def scenario():
            session = make_session()
            session.on_telemetry(seen.append)
            await session.start()
            factory.current.notify(
                "telemetry/event", {"eventName": "server/indexed", "properties": {"files": 3}}
            )
            await settle()
            await session.stop()

        asyncio.run(scenario())

        records = memory.named("server/indexed")
        assert len(records) == 1
        assert records[0].properties == {"files": 3}
        assert [r.event_name for r in seen] == ["server/indexed"]

    def test_log_message_goes_to_output(self, make_session, factory, output):
        """Should write window/logMessage lines to the output channel."""

        async def scenario():
            session = make_session()
            await session.start()
            factory.current.notify("window/logMessage", {"type": 1, "message": "lint failed"})
            await settle()
            await session.stop()

        asyncio.run(scenario())

        assert output.lines[-1].startswith("[Error - ")
        assert output.lines[-1].endswith("lint failed")

    def test_malformed_message_is_dropped(self, make_session, factory, memory):
        """Should report a malformed message and keep running."""

        async def scenario():
            session = make_session()
            await session.start()
            factory.current.push_raw(b"{not json")
            await settle()
            handle = session.send_request("custom/after")
            factory.current.reply(handle.id, "still alive")
            result = await handle
            await session.stop()
            return result

        assert asyncio.run(scenario()) == "still alive"
        assert len(memory.named(PROTOCOL_ERROR_EVENT)) == 1

    def test_server_request_is_answered(self, make_session, factory):
        """Should reply with the handler's result."""

        async def scenario():
            session = make_session()
            session.on_request("workspace/configuration", lambda params: [{"enabled": True}])
            await session.start()
            factory.current.push(
                {
                    "jsonrpc": "2.0",
                    "id": "srv-1",
                    "method": "workspace/configuration",
                    "params": {"items": []},
                }
            )
            await settle()
            await session.stop()

        asyncio.run(scenario())

        replies = [m for m in factory.current.sent if m.get("id") == "srv-1"]
        assert replies == [{"jsonrpc": "2.0", "id": "srv-1", "result": [{"enabled": True}]}]

    def test_async_server_request_handler(self, make_session, factory):
        """Should await coroutine handlers."""

        async def handler(params):
            await asyncio.sleep(0)
            return {"applied": True}

        async def scenario():
            session = make_session()
            session.on_request("workspace/applyEdit", handler)
            await session.start()
            factory.current.push(
                {"jsonrpc": "2.0", "id": 7, "method": "workspace/applyEdit", "params": {}}
            )
            await settle()
            await session.stop()

        asyncio.run(scenario())

        replies = [m for m in factory.current.sent if m.get("id") == 7]
        assert replies[0]["result"] == {"applied": True}

    def test_unknown_server_request(self, make_session, factory):
        """Should answer unknown methods with METHOD_NOT_FOUND."""

        async def scenario():
            session = make_session()
            await session.start()
            factory.current.push({"jsonrpc": "2.0", "id": 9, "method": "custom/unknown"})
            await settle()
            await session.stop()

        asyncio.run(scenario())

        replies = [m for m in factory.current.sent if m.get("id") == 9]
        assert replies[0]["error"]["code"] == METHOD_NOT_FOUND

    def test_failing_handler_is_reported_to_telemetry(self, make_session, factory, memory):
        """Should send notification and event handler failures to telemetry."""

        def broken(params):
            raise RuntimeError("boom")

        async def scenario():
            session = make_session()
            session.on_notification("custom/event", broken)
            session.on_event(STARTED, broken)
            await session.start()
            factory.current.notify("custom/event")
            await settle()
            await session.stop()

        asyncio.run(scenario())

        records = memory.named(HANDLER_ERROR_EVENT)
        assert [r.properties["method"] for r in records] == [STARTED, "custom/event"]
        assert records[0].properties["errorType"] == "RuntimeError"
        assert records[0].properties["session"] == "testServer"

    def test_stop_cancels_unanswered_server_requests(self, make_session, factory):
        """Should cancel request handlers still running when the session stops."""
        cancelled = []

        async def never_answers(params):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(params)
                raise

        async def scenario():
            session = make_session()
            session.on_request("workspace/applyEdit", never_answers)
            await session.start()
            factory.current.push(
                {"jsonrpc": "2.0", "id": 11, "method": "workspace/applyEdit", "params": {"n": 1}}
            )
            await settle()
            await session.stop()

        asyncio.run(scenario())

        assert cancelled == [{"n": 1}]
        assert [m for m in factory.current.sent if m.get("id") == 11] == []


class TestFailurePolicy:
    """Tests for automatic restart after transport failures."""

    def test_restarts_after_crash(self, make_session, factory, memory, host_messages):
        """Should restart, report the failure and notify the host once."""

        async def scenario():
            session = make_session()
            await session.start()
            factory.current.disconnect()
            await wait_for(lambda: len(factory.transports) == 2 and session.is_running())
            failures = session.restart_policy.consecutive_failures
            await session.stop()
            return failures

        failures = asyncio.run(scenario())

        records = memory.named(TRANSPORT_FAILURE_EVENT)
        assert len(records) == 1
        assert records[0].properties["attempt"] == 1
        assert len(host_messages) == 1
        assert "restarted" in host_messages[0]
        assert failures == 0

    def test_gives_up_after_threshold(self, make_session, factory, memory, host_messages):
        """Should stop restarting after five failures with threshold four."""
        events = []

        async def scenario():
            session = make_session()
            fatal = asyncio.Event()
            session.on_event(FAILED, lambda _: events.append(FAILED))
            session.on_event(FATAL, lambda _: fatal.set())
            await session.start()
            factory.open_failures = 4
            factory.current.disconnect()
            await asyncio.wait_for(fatal.wait(), 2.0)
            await asyncio.sleep(0.01)
            return session

        session = asyncio.run(scenario())

        assert session.state == SessionState.FAILED
        assert len(factory.transports) == 5
        assert factory.live == []
        failures = memory.named(TRANSPORT_FAILURE_EVENT)
        assert [r.properties["attempt"] for r in failures] == [1, 2, 3, 4, 5]
        threshold = memory.named(RESTART_THRESHOLD_EVENT)
        assert len(threshold) == 1
        assert threshold[0].properties["threshold"] == 4
        assert len(host_messages) == 2
        assert host_messages[0] != host_messages[1]
        assert "will not be restarted" in host_messages[1]
        assert len(events) == 5

    def test_successful_restart_resets_streak(self, make_session, factory, host_messages):
        """Should notify again for a new failure streak after recovery."""

        async def scenario():
            session = make_session()
            await session.start()
            for expected in (2, 3):
                factory.current.disconnect()
                await wait_for(
                    lambda n=expected: len(factory.transports) == n and session.is_running()
                )
            await session.stop()

        asyncio.run(scenario())

        assert len(host_messages) == 2

    def test_stop_cancels_pending_restart(self, make_session, factory):
        """Should not restart once stopped."""

        async def scenario():
            session = make_session(
                restart_policy=RestartPolicy(max_consecutive_failures=4, backoff_initial=10.0)
            )
            await session.start()
            factory.current.disconnect()
            await wait_for(lambda: session.state == SessionState.FAILED)
            state = await session.stop()
            await asyncio.sleep(0.01)
            return state

        state = asyncio.run(scenario())

        assert state == SessionState.STOPPED
        assert len(factory.transports) == 1


class TestNotifications:
    """Tests for client-to-server notifications."""

    def test_send_notification(self, make_session, factory):
        """Should write the notification with its params."""

        async def scenario():
            session = make_session()
            await session.start()
            session.send_notification("custom/hello", {"who": "server"})
            await session.stop()

        asyncio.run(scenario())

        assert {"jsonrpc": "2.0", "method": "custom/hello", "params": {"who": "server"}} in (
            factory.current.sent
        )

    def test_write_failure_does_not_raise(self, make_session, factory, memory):
        """Should report the failed write instead of raising."""

        async def scenario():
            session = make_session()
            await session.start()
            factory.current.fail_writes = True
            session.send_notification("custom/hello")
            running = session.is_running()
            factory.current.fail_writes = False
            await session.stop()
            return running

        assert asyncio.run(scenario()) is True
        records = memory.named(PROTOCOL_ERROR_EVENT)
        assert len(records) == 1
        assert records[0].properties["method"] == "custom/hello"
