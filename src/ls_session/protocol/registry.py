"""Correlation of outgoing requests with their responses.

Each outgoing request gets a RequestHandle wrapping an asyncio future. The
registry settles the handle exactly once: with the matching response, a
timeout, a cancellation, or the termination of the session.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Generator
from typing import Any

from cachetools import LRUCache

from ls_session.exceptions import DuplicateIdError, RequestTimeoutError, ResponseError

logger = logging.getLogger(__name__)

RequestId = int | str

# Number of cancelled ids remembered so that late replies are dropped quietly
CANCELLED_MEMORY = 256


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Rejected handles nobody awaits must not warn at garbage collection.
    if not future.cancelled():
        future.exception()


class RequestHandle:
    """Deferred result of a request.

    Await the handle to get the response result. Cancelling removes the
    request from the registry and signals the caller with
    asyncio.CancelledError; the server may still process the request.
    """

    def __init__(
        self,
        request_id: RequestId,
        method: str,
        future: asyncio.Future[Any],
        registry: RequestRegistry,
    ) -> None:
        self._id = request_id
        self._method = method
        self._future = future
        self._registry = registry

    @property
    def id(self) -> RequestId:
        """Request identifier."""
        return self._id

    @property
    def method(self) -> str:
        """Request method name."""
        return self._method

    def done(self) -> bool:
        """Check if the handle has been settled."""
        return self._future.done()

    def cancelled(self) -> bool:
        """Check if the request was cancelled."""
        return self._future.cancelled()

    def result(self) -> Any:
        """Return the result of a settled handle (see asyncio.Future.result)."""
        return self._future.result()

    def exception(self) -> BaseException | None:
        """Return the failure of a settled handle, if any."""
        return self._future.exception()

    def cancel(self) -> bool:
        """Cancel the request.

        Returns:
            True if the request was still pending.
        """
        return self._registry.cancel(self._id)

    def add_done_callback(self, callback: Callable[[RequestHandle], None]) -> None:
        """Call callback with this handle once it is settled."""
        self._future.add_done_callback(lambda _: callback(self))

    def __await__(self) -> Generator[Any, None, Any]:
        return self._future.__await__()

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"<RequestHandle id={self._id!r} method={self._method!r} {state}>"


class _PendingRequest:
    __slots__ = ("method", "future", "timer", "on_cancel")

    def __init__(
        self,
        method: str,
        future: asyncio.Future[Any],
        timer: asyncio.TimerHandle | None,
        on_cancel: Callable[[RequestId], None] | None,
    ) -> None:
        self.method = method
        self.future = future
        self.timer = timer
        self.on_cancel = on_cancel


class RequestRegistry:
    """Tracks pending requests by id.

    Example:
        registry = RequestRegistry()
        handle = registry.register(1, "textDocument/hover")
        registry.resolve(1, result={"contents": "..."})
        result = await handle
    """

    def __init__(self, cancelled_memory: int = CANCELLED_MEMORY) -> None:
        self._pending: dict[RequestId, _PendingRequest] = {}
        self._cancelled: LRUCache[RequestId, bool] = LRUCache(maxsize=cancelled_memory)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    @property
    def pending_ids(self) -> list[RequestId]:
        """Ids of all outstanding requests, in registration order."""
        return list(self._pending)

    def register(
        self,
        request_id: RequestId,
        method: str,
        timeout: float | None = None,
        on_cancel: Callable[[RequestId], None] | None = None,
    ) -> RequestHandle:
        """Register an outgoing request.

        Must be called from within a running event loop.

        Args:
            request_id: Unique request identifier.
            method: Request method name.
            timeout: Seconds before the request is rejected with
                RequestTimeoutError, or None to wait indefinitely.
            on_cancel: Called with the id when the caller cancels.

        Returns:
            Handle resolving with the response result.

        Raises:
            DuplicateIdError: If the id is already pending.
        """
        if request_id in self._pending:
            raise DuplicateIdError(request_id)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        future.add_done_callback(_consume_exception)
        future.add_done_callback(functools.partial(self._forget_cancelled, request_id))

        timer = None
        if timeout is not None:
            timer = loop.call_later(timeout, self._expire, request_id, timeout)

        self._pending[request_id] = _PendingRequest(method, future, timer, on_cancel)
        return RequestHandle(request_id, method, future, self)

    def resolve(
        self,
        request_id: RequestId | None,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        """Settle a pending request with its response.

        Unknown or late ids are logged and dropped.

        Args:
            request_id: Id from the response.
            result: Response result.
            error: Exception to reject the handle with instead.

        Returns:
            True if a pending request was settled.
        """
        entry = self._pop(request_id)
        if entry is None:
            if self.was_cancelled(request_id):
                logger.debug("Dropping late response for cancelled request %r", request_id)
            else:
                logger.debug("Dropping response for unknown request %r", request_id)
            return False

        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result)
        return True

    def resolve_error(self, request_id: RequestId | None, error: dict[str, Any]) -> bool:
        """Settle a pending request with a JSON-RPC error object."""
        message = error.get("message")
        code = error.get("code")
        return self.resolve(
            request_id,
            error=ResponseError(
                message if isinstance(message, str) else "Unknown error",
                code=code if isinstance(code, int) and not isinstance(code, bool) else None,
                data=error.get("data"),
            ),
        )

    def reject(self, request_id: RequestId, error: BaseException) -> bool:
        """Reject a single pending request."""
        return self.resolve(request_id, error=error)

    def cancel(self, request_id: RequestId) -> bool:
        """Cancel a pending request and forget it.

        Returns:
            True if the request was pending.
        """
        entry = self._pop(request_id)
        if entry is None:
            return False
        self._cancelled[request_id] = True
        entry.future.cancel()
        self._run_cancel_callback(request_id, entry)
        return True

    def _forget_cancelled(self, request_id: RequestId, future: asyncio.Future[Any]) -> None:
        # The future was cancelled directly, e.g. asyncio.wait_for() timing
        # out the task that awaited the handle.
        if not future.cancelled():
            return
        entry = self._pending.get(request_id)
        if entry is None or entry.future is not future:
            return
        del self._pending[request_id]
        if entry.timer is not None:
            entry.timer.cancel()
        self._cancelled[request_id] = True
        logger.debug("Request %r (%s) cancelled by its caller", request_id, entry.method)
        self._run_cancel_callback(request_id, entry)

    def _run_cancel_callback(self, request_id: RequestId, entry: _PendingRequest) -> None:
        if entry.on_cancel is None:
            return
        try:
            entry.on_cancel(request_id)
        except Exception:
            logger.exception("Cancel callback failed for request %r", request_id)

    def was_cancelled(self, request_id: object) -> bool:
        """Check if the id belongs to a recently cancelled request."""
        return request_id in self._cancelled

    def reject_all(self, reason: BaseException) -> int:
        """Reject every outstanding request.

        Args:
            reason: Exception delivered to each pending handle.

        Returns:
            Number of requests rejected.
        """
        pending, self._pending = self._pending, {}
        count = 0
        for entry in pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(reason)
                count += 1
        return count

    def _pop(self, request_id: object) -> _PendingRequest | None:
        entry = self._pending.pop(request_id, None)  # type: ignore[arg-type]
        if entry is None:
            return None
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            # Cancelled directly and _forget_cancelled has not run yet
            self._cancelled[request_id] = True  # type: ignore[index]
            return None
        return entry

    def _expire(self, request_id: RequestId, timeout: float) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        logger.warning(
            "Request %r (%s) timed out after %ss",
            request_id,
            entry.method,
            timeout,
            extra={"request_id": request_id, "method": entry.method},
        )
        self.resolve(request_id, error=RequestTimeoutError(request_id, entry.method, timeout))
        self._cancelled[request_id] = True
