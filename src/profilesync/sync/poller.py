"""Periodic remote change polling.

Architecture:
    timer ─► RemoteChangePoller.poll_once() ─► backend.poll_for_changes()
                     │
                     └─ has_changes ─► on_change(result)

The timer is single-shot and re-armed after every poll, whatever its
outcome, so polls never overlap and a failing backend does not stop
polling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from profilesync.sync.types import SyncError

if TYPE_CHECKING:
    from collections.abc import Callable

    from profilesync.backends.base import PollResult, StorageBackend

logger = logging.getLogger(__name__)


class RemoteChangePoller:
    """Polls a backend for remote changes on a fixed interval.

    Usage:
        poller = RemoteChangePoller(backend, get_credentials, 900, on_change)
        poller.start()
        ...
        poller.stop()
    """

    def __init__(
        self,
        backend: StorageBackend,
        get_credentials: Callable[[], Any],
        interval: float,
        on_change: Callable[[PollResult], object],
    ) -> None:
        """Initialize the poller.

        Args:
            backend: Backend to poll.
            get_credentials: Returns current credentials, or None.
            interval: Seconds between polls.
            on_change: Called with the poll result when the remote changed.
        """
        self._backend = backend
        self._get_credentials = get_credentials
        self._interval = interval
        self._on_change = on_change
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._poll_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def poll_count(self) -> int:
        """Number of polls attempted since start."""
        return self._poll_count

    def start(self) -> None:
        """Arm the poll timer."""
        if self._running:
            return
        self._running = True
        self._schedule()
        logger.info("Polling %s every %.0f seconds", self._backend.name, self._interval)

    def stop(self) -> None:
        """Cancel the poll timer and any running poll."""
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _schedule(self) -> None:
        if not self._running:
            return
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._interval, self._tick)

    def _tick(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self._poll_and_reschedule())

    async def _poll_and_reschedule(self) -> None:
        try:
            await self.poll_once()
        finally:
            self._task = None
            self._schedule()

    async def poll_once(self) -> PollResult | None:
        """Poll the backend once.

        Returns:
            The poll result, or None if credentials are missing or the
            poll failed (the failure is recorded in the token cache).
        """
        self._poll_count += 1
        credentials = self._get_credentials()
        if not self._backend.has_valid_credentials(credentials):
            logger.debug("Skipping poll: no valid credentials")
            return None

        try:
            result = await self._backend.poll_for_changes(credentials)
        except SyncError as e:
            logger.warning("Remote poll failed: %s", e)
            return None

        if result.has_changes:
            logger.info("Remote changes detected on %s", self._backend.name)
            outcome = self._on_change(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        else:
            logger.debug("No remote changes")
        return result
