"""Tests for telemetry records, sink, backends and output channels."""

import asyncio
import io
import json

import httpx
import pytest

from ls_session.config import TelemetrySettings
from ls_session.telemetry import (
    OUTPUT_ERROR_EVENT,
    SERVER_TELEMETRY_EVENT,
    HttpTelemetryBackend,
    JsonLinesTelemetryBackend,
    MemoryTelemetryBackend,
    OutputChannel,
    TelemetryBackend,
    TelemetryOutputChannel,
    TelemetryRecord,
    TelemetrySink,
    build_telemetry_sink,
    sanitize_properties,
)


class FailingBackend(TelemetryBackend):
    def emit(self, record):
        raise RuntimeError("backend down")


class TestTelemetryRecord:
    """Tests for record construction."""

    def test_from_shaped_payload(self):
        """Should keep eventName and properties from the server."""
        record = TelemetryRecord.from_payload(
            {"eventName": "server/started", "properties": {"version": "1.2"}}
        )

        assert record.event_name == "server/started"
        assert record.properties == {"version": "1.2"}

    def test_from_arbitrary_payload(self):
        """Should wrap other payloads under the server telemetry event."""
        record = TelemetryRecord.from_payload([1, 2])

        assert record.event_name == SERVER_TELEMETRY_EVENT
        assert record.properties == {"data": [1, 2]}

    def test_to_dict(self):
        """Should serialize as eventName/properties/timestamp."""
        record = TelemetryRecord("x", {"a": 1}, timestamp="2025-01-01T00:00:00Z")

        assert record.to_dict() == {
            "eventName": "x",
            "properties": {"a": 1},
            "timestamp": "2025-01-01T00:00:00Z",
        }
        assert json.loads(record.to_json())["eventName"] == "x"

    def test_timestamp_is_utc(self):
        """Should stamp records in UTC."""
        assert TelemetryRecord("x").timestamp.endswith("Z")


class TestTelemetrySink:
    """Tests for the shared sink."""

    def test_fans_out_to_backends(self):
        """Should deliver every record to every backend."""
        first, second = MemoryTelemetryBackend(), MemoryTelemetryBackend()
        sink = TelemetrySink([first])
        sink.add_backend(second)

        sink.send_event("ls-session/test", {"n": 1})

        assert len(first.records) == 1
        assert second.named("ls-session/test")[0].properties == {"n": 1}

    def test_backend_failure_does_not_raise(self):
        """Should keep delivering when one backend fails."""
        memory = MemoryTelemetryBackend()
        sink = TelemetrySink([FailingBackend(), memory])

        sink.send_event("ls-session/test")

        assert len(memory.records) == 1

    def test_disabled_sink_discards(self):
        """Should drop records when disabled."""
        memory = MemoryTelemetryBackend()
        sink = TelemetrySink([memory], enabled=False)

        sink.send_event("ls-session/test")

        assert len(memory.records) == 0

    def test_memory_backend_is_bounded(self):
        """Should keep only the most recent records."""
        memory = MemoryTelemetryBackend(max_records=2)
        for n in range(3):
            memory.emit(TelemetryRecord("x", {"n": n}))

        assert [r.properties["n"] for r in memory.records] == [1, 2]


class TestSanitize:
    """Tests for redaction of sensitive properties."""

    def test_redacts_sensitive_keys(self):
        """Should redact password, token and key-like properties."""
        sanitized = sanitize_properties(
            {"password": "x", "apiKey": "y", "nested": {"auth_token": "z"}, "file": "a.yml"}
        )

        assert sanitized == {
            "password": "[REDACTED]",
            "apiKey": "[REDACTED]",
            "nested": {"auth_token": "[REDACTED]"},
            "file": "a.yml",
        }


class TestJsonLinesBackend:
    """Tests for the JSON Lines file backend."""

    def test_writes_one_line_per_record(self, tmp_path):
        """Should append sanitized records and create the directory."""
        path = tmp_path / "logs" / "telemetry.jsonl"
        backend = JsonLinesTelemetryBackend(path)

        backend.emit(TelemetryRecord("a", {"token": "secret"}))
        backend.emit(TelemetryRecord("b"))
        backend.close()

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [line["eventName"] for line in lines] == ["a", "b"]
        assert lines[0]["properties"] == {"token": "[REDACTED]"}
        assert backend.path == path

    def test_emit_after_close_is_ignored(self, tmp_path):
        """Should not raise after the file was closed."""
        backend = JsonLinesTelemetryBackend(tmp_path / "t.jsonl")
        backend.close()

        backend.emit(TelemetryRecord("a"))


class TestHttpBackend:
    """Tests for the HTTP collector backend."""

    def test_posts_batch_on_close(self):
        """Should post buffered records as one JSON array."""
        posted = []

        def handler(request):
            posted.append(json.loads(request.content))
            return httpx.Response(204)

        async def scenario():
            backend = HttpTelemetryBackend(
                "https://collector.test/events",
                batch_size=10,
                transport=httpx.MockTransport(handler),
            )
            backend.emit(TelemetryRecord("a", {"password": "x"}))
            backend.emit(TelemetryRecord("b"))
            buffered = backend.buffered
            await backend.aclose()
            return buffered

        buffered = asyncio.run(scenario())

        assert buffered == 2
        assert len(posted) == 1
        assert [r["eventName"] for r in posted[0]] == ["a", "b"]
        assert posted[0][0]["properties"] == {"password": "[REDACTED]"}

    def test_full_batch_posted_in_background(self):
        """Should schedule a post once the batch is full."""
        posted = []

        def handler(request):
            posted.append(request)
            return httpx.Response(200)

        async def scenario():
            backend = HttpTelemetryBackend(
                "https://collector.test/events",
                batch_size=2,
                transport=httpx.MockTransport(handler),
            )
            backend.emit(TelemetryRecord("a"))
            backend.emit(TelemetryRecord("b"))
            buffered = backend.buffered
            await asyncio.sleep(0.01)
            count = len(posted)
            await backend.aclose()
            return buffered, count

        buffered, count = asyncio.run(scenario())

        assert buffered == 0
        assert count == 1
        assert posted[0].headers["user-agent"].startswith("ls-session/")

    def test_collector_error_is_logged(self, caplog):
        """Should log and drop the batch on HTTP errors."""

        async def scenario():
            backend = HttpTelemetryBackend(
                "https://collector.test/events",
                transport=httpx.MockTransport(lambda request: httpx.Response(500)),
            )
            backend.emit(TelemetryRecord("a"))
            await backend.aclose()
            return backend.buffered

        assert asyncio.run(scenario()) == 0
        assert "HTTP 500" in caplog.text

    def test_invalid_batch_size(self):
        """Should reject a batch size below one."""
        with pytest.raises(ValueError):
            HttpTelemetryBackend("https://collector.test", batch_size=0)


class TestBuildTelemetrySink:
    """Tests for assembling the sink from settings."""

    def test_memory_only_by_default(self):
        """Should only keep records in memory without file or endpoint."""
        sink = build_telemetry_sink(TelemetrySettings())

        assert [type(b) for b in sink.backends] == [MemoryTelemetryBackend]

    def test_all_backends(self, tmp_path):
        """Should add file and HTTP backends when configured."""
        settings = TelemetrySettings(
            log_file=str(tmp_path / "t.jsonl"), endpoint="https://collector.test"
        )

        sink = build_telemetry_sink(settings)

        assert [type(b) for b in sink.backends] == [
            MemoryTelemetryBackend,
            JsonLinesTelemetryBackend,
            HttpTelemetryBackend,
        ]
        asyncio.run(sink.aclose())


class TestOutputChannel:
    """Tests for output channels."""

    def test_append_line(self):
        """Should write labelled lines to the stream and keep them."""
        stream = io.StringIO()
        channel = OutputChannel("Ansible Server", stream=stream)

        channel.append_line("hello")

        assert stream.getvalue() == "[Ansible Server] hello\n"
        assert channel.lines == ["hello"]

    def test_error_lines_reach_telemetry(self):
        """Should report lines starting with [Error."""
        memory = MemoryTelemetryBackend()
        channel = TelemetryOutputChannel(
            "Ansible Server", TelemetrySink([memory]), stream=io.StringIO()
        )

        channel.append_line("[Info - 10:00:00] fine")
        channel.append_line("[Error - 10:00:01] broken")

        records = memory.named(OUTPUT_ERROR_EVENT)
        assert len(records) == 1
        assert records[0].properties["message"] == "[Error - 10:00:01] broken"
