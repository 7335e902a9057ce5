"""ls-session: client-side language server protocol sessions."""

__version__ = "1.0.0"

from ls_session.exceptions import (  # noqa: E402
    NotRunningError,
    ProtocolError,
    SessionError,
    TerminationError,
    TransportError,
)
from ls_session.host import SessionHost  # noqa: E402
from ls_session.protocol.lifecycle import SessionState  # noqa: E402
from ls_session.session import Session  # noqa: E402

__all__ = [
    "NotRunningError",
    "ProtocolError",
    "Session",
    "SessionError",
    "SessionHost",
    "SessionState",
    "TerminationError",
    "TransportError",
    "__version__",
]
