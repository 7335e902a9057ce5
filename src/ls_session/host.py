"""Session host - owns the collaborators a session needs.

The host is created once by the entry point (or an embedding application)
and passed explicitly to everything that needs the session, the telemetry
sink or the output channel. activate() and deactivate() bracket its life.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TextIO

from ls_session.commands import register_resync_listener
from ls_session.conflicts import ComponentDescriptor, ConflictMonitor, ConflictReport
from ls_session.config import SessionSettings
from ls_session.exceptions import TransportError
from ls_session.policy import RestartPolicy
from ls_session.protocol.lifecycle import build_initialize_params
from ls_session.protocol.transport import SocketTransport, SubprocessTransport, Transport
from ls_session.session import Session
from ls_session.telemetry import TelemetryOutputChannel, TelemetrySink, build_telemetry_sink

logger = logging.getLogger(__name__)


class SessionHost:
    """Explicit owner of sessions and their shared collaborators."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        telemetry: TelemetrySink | None = None,
        notifier: Callable[[str], None] | None = None,
        stream: TextIO | None = None,
    ) -> None:
        """Initialize the host.

        Args:
            settings: Session settings (defaults when omitted).
            telemetry: Telemetry sink; built from settings when omitted.
            notifier: Shows messages to the user.
            stream: Text stream for the output channel (defaults to stderr).
        """
        self.settings = settings or SessionSettings()
        self.telemetry = telemetry or build_telemetry_sink(self.settings.telemetry)
        self.output = TelemetryOutputChannel(self.settings.label, self.telemetry, stream)
        self._notifier = notifier
        self.notifications: list[str] = []
        self.sessions: list[Session] = []
        self.conflicts = ConflictMonitor(
            self.settings.conflicts.component_id,
            self.settings.conflicts.capability,
            on_conflicts=self._notify_conflicts,
        )

    @property
    def session(self) -> Session | None:
        """Most recently created session."""
        return self.sessions[-1] if self.sessions else None

    def transport_factory(self) -> Transport:
        """Create the transport selected by the settings."""
        debug = self.settings.debug
        max_message_size = self.settings.requests.max_message_size
        if debug.enabled:
            logger.info("Connecting to language server on %s:%d", debug.host, debug.port)
            return SocketTransport(
                debug.host,
                debug.port,
                connect_timeout=debug.connect_timeout,
                max_message_size=max_message_size,
            )
        server = self.settings.server
        return SubprocessTransport(
            server.command,
            cwd=server.cwd,
            env=server.env or None,
            max_message_size=max_message_size,
        )

    def create_session(self) -> Session:
        """Create a session wired to this host's collaborators."""
        restart = self.settings.restart
        requests = self.settings.requests
        server = self.settings.server
        session = Session(
            self.settings.name,
            self.settings.label,
            self.transport_factory,
            telemetry=self.telemetry,
            output=self.output,
            restart_policy=RestartPolicy(
                max_consecutive_failures=restart.max_consecutive_failures,
                backoff_initial=restart.backoff_initial,
                backoff_max=restart.backoff_max,
                backoff_factor=restart.backoff_factor,
            ),
            notify_host=self.notify,
            request_timeout=requests.timeout,
            initialize_timeout=requests.initialize_timeout,
            shutdown_timeout=requests.shutdown_timeout,
            max_message_size=requests.max_message_size,
            initialize_params=build_initialize_params(
                root_uri=server.root_uri,
                initialization_options=server.initialization_options,
            ),
        )
        self.sessions.append(session)
        return session

    async def activate(self, installed: Iterable[ComponentDescriptor] = ()) -> Session:
        """Create and start the session.

        A failed start is logged and reported to telemetry; the session is
        returned either way so callers can inspect its state.

        Args:
            installed: Installed components to check for conflicts.
        """
        self.installed_components_changed(installed)
        session = self.create_session()
        register_resync_listener(session)
        try:
            await session.start()
        except TransportError as e:
            logger.error("Language server initialization failed with %s", e)
        return session

    async def deactivate(self) -> None:
        """Stop every session and close the telemetry sink."""
        for session in self.sessions:
            await session.stop()
        await self.telemetry.aclose()

    def notify(self, message: str) -> None:
        """Show a message to the user."""
        self.notifications.append(message)
        if self._notifier is not None:
            self._notifier(message)
        else:
            logger.warning("%s", message)

    def installed_components_changed(
        self, installed: Iterable[ComponentDescriptor]
    ) -> ConflictReport:
        """Re-check conflicts after the installed component set changed."""
        return self.conflicts.check(installed)

    def _notify_conflicts(self, report: ConflictReport) -> None:
        names = ", ".join(sorted(report.conflicting_ids))
        self.notify(
            f"Conflicting components handle {report.capability!r} files: {names}. "
            "Uninstall them to avoid unexpected behavior."
        )
