"""Custom client commands sent over a running session."""

from __future__ import annotations

import logging
from typing import Any

from ls_session.protocol.router import Subscription
from ls_session.session import Session

logger = logging.getLogger(__name__)

# Invalidates the server's inventory cache and rebuilds it
RESYNC_INVENTORY_METHOD = "resync/ansible-inventory"


def register_resync_listener(session: Session) -> Subscription:
    """Log the server's answer to an inventory resync."""

    def on_resync(params: Any) -> None:
        logger.info("Inventory resync event from %s: %s", session.name, params)

    return session.on_notification(RESYNC_INVENTORY_METHOD, on_resync)


def resync_inventory(session: Session) -> bool:
    """Ask the server to resync the inventory.

    Does nothing unless the session is running.

    Returns:
        True if the notification was handed to the session.
    """
    if not session.is_running():
        logger.info(
            "Session %s is %s, skipping inventory resync", session.name, session.state.value
        )
        return False
    session.send_notification(RESYNC_INVENTORY_METHOD)
    return True
