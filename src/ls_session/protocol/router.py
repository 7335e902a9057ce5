"""Notification router - dispatches named messages to subscribed handlers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
ErrorHook = Callable[[str, BaseException], None]


class Subscription:
    """Registration of one handler for one method.

    Call unsubscribe() (or use as a context manager) to remove it.
    """

    def __init__(self, router: NotificationRouter, method: str, handler: Handler) -> None:
        self._router = router
        self.method = method
        self.handler = handler

    @property
    def active(self) -> bool:
        """Check if the subscription is still registered."""
        return self._router.is_subscribed(self)

    def unsubscribe(self) -> None:
        """Remove the handler. Safe to call more than once."""
        self._router.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.unsubscribe()


class NotificationRouter:
    """Routes notifications to registered handlers.

    Handlers for the same method run in registration order. A failing
    handler is logged, passed to the error hook if there is one, and the
    remaining handlers still run. Methods without subscribers are dropped.
    """

    def __init__(self, name: str = "notifications", on_error: ErrorHook | None = None) -> None:
        """Initialize the router.

        Args:
            name: Label used in log messages.
            on_error: Called with the method and the exception when a
                handler raises.
        """
        self._name = name
        self._on_error = on_error
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, method: str, handler: Handler) -> Subscription:
        """Register a handler for a method.

        Repeated calls for the same method add handlers; nothing is replaced.

        Args:
            method: Notification method name (built-in or custom).
            handler: Callable receiving the notification params.

        Returns:
            Subscription that can be unsubscribed.

        Raises:
            ValueError: If method is empty.
        """
        if not method:
            raise ValueError("method must be a non-empty string")
        subscription = Subscription(self, method, handler)
        self._subscriptions.setdefault(method, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription if it is still registered."""
        handlers = self._subscriptions.get(subscription.method)
        if not handlers:
            return
        try:
            handlers.remove(subscription)
        except ValueError:
            return
        if not handlers:
            del self._subscriptions[subscription.method]

    def is_subscribed(self, subscription: Subscription) -> bool:
        """Check if a subscription is registered."""
        return subscription in self._subscriptions.get(subscription.method, ())

    def has_subscribers(self, method: str) -> bool:
        """Check if any handler is registered for a method."""
        return bool(self._subscriptions.get(method))

    def handlers(self, method: str) -> list[Handler]:
        """List the handlers registered for a method, in registration order."""
        return [s.handler for s in self._subscriptions.get(method, ())]

    def methods(self) -> list[str]:
        """List methods with at least one handler."""
        return list(self._subscriptions)

    def dispatch(self, method: str, params: Any = None) -> int:
        """Invoke every handler registered for a method.

        Args:
            method: Notification method name.
            params: Notification params passed to each handler.

        Returns:
            Number of handlers that completed without raising.
        """
        # Snapshot so handlers may (un)subscribe while being dispatched
        subscriptions = list(self._subscriptions.get(method, ()))
        completed = 0
        for subscription in subscriptions:
            try:
                subscription.handler(params)
            except Exception as e:
                logger.exception("%s handler for %r failed", self._name, method)
                self._report_error(method, e)
            else:
                completed += 1
        return completed

    def clear(self) -> None:
        """Remove all subscriptions."""
        self._subscriptions.clear()

    def _report_error(self, method: str, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(method, error)
        except Exception:
            logger.exception("%s error hook failed for %r", self._name, method)
