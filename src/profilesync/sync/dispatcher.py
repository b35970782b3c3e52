"""Bounded-concurrency dispatcher for backend requests.

This module provides:
- RequestDispatcher: Runs submitted coroutines with at most N in flight
- DispatcherState: Lifecycle of the dispatcher

Every network call a backend makes goes through one shared dispatcher, so
the engine never has more than ``max_concurrency`` requests in flight.
Requests start in submission order; completion order is free.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, TypeVar

from profilesync.sync.types import DispatcherStoppedError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CONCURRENCY = 3


class DispatcherState(Enum):
    """State of the request dispatcher."""

    RUNNING = auto()
    STOPPED = auto()


@dataclass
class _Request:
    """A submitted request waiting for a free slot."""

    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    seq: int = field(default=0)


class RequestDispatcher:
    """Runs request factories with bounded concurrency.

    Usage:
        dispatcher = RequestDispatcher(max_concurrency=3)
        response = await dispatcher.submit(lambda: client.get(url))

        # On teardown
        dispatcher.shutdown()
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        """Initialize the dispatcher.

        Args:
            max_concurrency: Maximum number of requests running at once.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max_concurrency = max_concurrency
        self._state = DispatcherState.RUNNING
        self._pending: deque[_Request] = deque()
        self._active = 0
        self._seq = 0
        # Strong references to running tasks
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> DispatcherState:
        """Get current dispatcher state."""
        return self._state

    @property
    def max_concurrency(self) -> int:
        """Maximum number of concurrent requests."""
        return self._max_concurrency

    @property
    def pending_count(self) -> int:
        """Get number of submitted requests not yet started."""
        return len(self._pending)

    @property
    def active_count(self) -> int:
        """Get number of requests currently running."""
        return self._active

    @property
    def is_busy(self) -> bool:
        """Check if any request is pending or running."""
        return self._active > 0 or bool(self._pending)

    @property
    def is_stopped(self) -> bool:
        """Check if the dispatcher has been shut down."""
        return self._state is DispatcherState.STOPPED

    async def submit(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Submit a request and wait for its result.

        The factory is called only once a slot is free, so the request is
        not started before that.

        Args:
            factory: Zero-argument callable returning an awaitable.

        Returns:
            The awaitable's result.

        Raises:
            DispatcherStoppedError: If the dispatcher is (or gets) shut down
                before the result is delivered.
            Exception: Whatever the request itself raised.
        """
        if self.is_stopped:
            raise DispatcherStoppedError("Dispatcher is stopped")

        loop = asyncio.get_running_loop()
        self._seq += 1
        request = _Request(factory=factory, future=loop.create_future(), seq=self._seq)
        self._pending.append(request)
        self._pump()
        result: T = await request.future
        return result

    def _pump(self) -> None:
        """Start pending requests while slots are free."""
        while not self.is_stopped and self._pending and self._active < self._max_concurrency:
            request = self._pending.popleft()
            if request.future.done():
                # Caller went away before the request started
                continue
            self._active += 1
            task = asyncio.ensure_future(self._run(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, request: _Request) -> None:
        """Run one request and deliver its outcome."""
        try:
            result = await request.factory()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            logger.debug("Request #%d failed: %s", request.seq, e)
            if not request.future.done():
                if self.is_stopped:
                    request.future.set_exception(DispatcherStoppedError("Dispatcher is stopped"))
                else:
                    request.future.set_exception(e)
        else:
            if not request.future.done():
                if self.is_stopped:
                    request.future.set_exception(DispatcherStoppedError("Dispatcher is stopped"))
                else:
                    request.future.set_result(result)
        finally:
            self._active -= 1
            self._pump()

    def shutdown(self) -> None:
        """Stop the dispatcher.

        Requests that have not started fail with DispatcherStoppedError.
        Running requests finish, but their results are discarded. Later
        submit() calls raise DispatcherStoppedError.
        """
        if self.is_stopped:
            return
        self._state = DispatcherState.STOPPED

        dropped = 0
        while self._pending:
            request = self._pending.popleft()
            if not request.future.done():
                request.future.set_exception(DispatcherStoppedError("Dispatcher is stopped"))
                dropped += 1

        if dropped or self._active:
            logger.debug(
                "Dispatcher stopped (%d pending dropped, %d in flight)", dropped, self._active
            )
