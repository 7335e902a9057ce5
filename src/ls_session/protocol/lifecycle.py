"""Session lifecycle management.

Tracks the session state machine and builds the initialize/shutdown
handshake payloads.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ls_session.exceptions import LifecycleError, NotRunningError

CLIENT_NAME = "ls-session"
CLIENT_VERSION = "1.0.0"


class SessionState(Enum):
    """Session lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


# Allowed transitions. STARTING and FAILED may go to STOPPING so that stop()
# can release the transport from every state.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.STOPPED: frozenset({SessionState.STARTING}),
    SessionState.STARTING: frozenset(
        {SessionState.RUNNING, SessionState.FAILED, SessionState.STOPPING}
    ),
    SessionState.RUNNING: frozenset({SessionState.STOPPING, SessionState.FAILED}),
    SessionState.STOPPING: frozenset({SessionState.STOPPED}),
    SessionState.FAILED: frozenset({SessionState.STARTING, SessionState.STOPPING}),
}


@dataclass
class SessionLifecycle:
    """Holds the current session state and enforces valid transitions."""

    state: SessionState = SessionState.STOPPED
    history: list[SessionState] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        """Check if the session is running."""
        return self.state is SessionState.RUNNING

    def can_transition(self, target: SessionState) -> bool:
        """Check whether moving to target is allowed from the current state."""
        return target in TRANSITIONS[self.state]

    def transition(self, target: SessionState) -> SessionState:
        """Move to a new state.

        Args:
            target: State to move to.

        Returns:
            The previous state.

        Raises:
            LifecycleError: If the transition is not allowed.
        """
        if not self.can_transition(target):
            raise LifecycleError(
                f"Invalid transition: {self.state.value} -> {target.value}",
                details={"from": self.state.value, "to": target.value},
            )
        previous = self.state
        self.history.append(previous)
        self.state = target
        return previous

    def require_running(self, operation: str | None = None) -> None:
        """Assert that the session is running.

        Raises:
            NotRunningError: If the session is in any other state.
        """
        if self.state is not SessionState.RUNNING:
            raise NotRunningError(self.state, operation)


def build_initialize_params(
    root_uri: str | None = None,
    initialization_options: dict[str, Any] | None = None,
    capabilities: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the params of the initialize request.

    Args:
        root_uri: Workspace root URI, if any.
        initialization_options: Server-specific options from settings.
        capabilities: Client capabilities to advertise.

    Returns:
        Initialize request params.
    """
    params: dict[str, Any] = {
        "processId": os.getpid(),
        "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        "rootUri": root_uri,
        "capabilities": capabilities or {},
    }
    if initialization_options:
        params["initializationOptions"] = initialization_options
    return params
