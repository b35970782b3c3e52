"""Debouncing of local change signals.

Settings and file changes arrive in bursts (dragging a slider writes a key
dozens of times). The debouncer keeps one deadline: every signal pushes it
``delay`` seconds into the future, and when it expires the trigger runs
once with the most recent source label.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[str], object]


class ChangeSignalDebouncer:
    """Single-slot debounce timer on the event loop.

    Usage:
        debouncer = ChangeSignalDebouncer(on_settle, delay=5.0)
        debouncer.notify("settings:org.gnome.desktop.interface")

        # From a watcher thread
        debouncer.notify_threadsafe("file:/home/me/.bashrc")
    """

    def __init__(
        self,
        callback: TriggerCallback,
        delay: float,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Initialize the debouncer.

        Args:
            callback: Called with the last source label when the delay
                expires. May return an awaitable, which is scheduled.
            delay: Quiet period in seconds.
            loop: Event loop to run on. Defaults to the running loop at
                the first notify().
        """
        self._callback = callback
        self._delay = delay
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._last_source: str | None = None
        self._closed = False
        self._tasks: set[asyncio.Future[object]] = set()

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        """Check if a trigger is scheduled."""
        return self._handle is not None

    @property
    def last_source(self) -> str | None:
        return self._last_source

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Set the event loop used by notify_threadsafe()."""
        self._loop = loop

    def notify(self, source: str) -> None:
        """Record a change and restart the quiet period.

        Must be called on the event loop thread.
        """
        if self._closed:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        self._last_source = source
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._loop.call_later(self._delay, self._fire)

    def notify_threadsafe(self, source: str) -> None:
        """Record a change from another thread.

        Raises:
            RuntimeError: If the debouncer is not bound to a loop yet.
        """
        if self._closed:
            return
        if self._loop is None:
            raise RuntimeError("Debouncer is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.notify, source)

    def cancel(self) -> None:
        """Drop the pending trigger, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        source = self._last_source or "unknown"
        logger.debug("Change settled (%s), triggering sync", source)

        result = self._callback(source)
        if asyncio.isfuture(result) or asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Debounced sync failed: %s", error)

    def close(self) -> None:
        """Cancel the pending trigger and ignore later signals."""
        self._closed = True
        self.cancel()
