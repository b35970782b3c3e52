"""Local change producers.

This module provides:
- FileWatcher: Watches individually synced files using watchdog
- SettingsMonitor: Follows ``gsettings monitor`` output for each schema

Neither does any debouncing of its own: every change is forwarded to a
callback (normally ChangeSignalDebouncer.notify / notify_threadsafe)
with a source label such as ``file:/home/me/.bashrc`` or
``settings:org.gnome.desktop.interface``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)


class SyncedFileHandler(FileSystemEventHandler):
    """Forwards events that touch one of the watched files."""

    def __init__(self, files: set[Path], on_change: Callable[[str], None]) -> None:
        super().__init__()
        self._files = files
        self._on_change = on_change

    @staticmethod
    def _as_path(raw: str | bytes) -> Path:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return Path(raw)

    def _handle_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [self._as_path(event.src_path)]
        if isinstance(event, FileMovedEvent):
            # Editors save by writing a temp file and renaming it over
            paths.append(self._as_path(event.dest_path))

        for path in paths:
            if path in self._files:
                self._on_change(f"file:{path}")
                return

    def on_created(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileCreatedEvent):
            self._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileModifiedEvent):
            self._handle_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle_event(event)


class FileWatcher:
    """Watches a set of files for changes.

    watchdog watches directories, so the parent directory of each file is
    scheduled (non-recursively) and events are filtered by path. The
    callback runs on the observer thread.
    """

    def __init__(self, files: Iterable[str | Path], on_change: Callable[[str], None]) -> None:
        """Initialize the file watcher.

        Args:
            files: Files to watch (``~`` is expanded). Files whose parent
                directory does not exist are ignored.
            on_change: Called from the observer thread with a source label.
        """
        self._files = {Path(f).expanduser().absolute() for f in files}
        self._handler = SyncedFileHandler(self._files, on_change)
        self._observer: BaseObserver | None = None
        self._running = False

    @property
    def files(self) -> set[Path]:
        return set(self._files)

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return

        directories = {path.parent for path in self._files if path.parent.is_dir()}
        if not directories:
            logger.debug("No watchable files configured")
            return

        self._observer = Observer()
        for directory in sorted(directories):
            self._observer.schedule(self._handler, str(directory), recursive=False)
        self._observer.start()
        self._running = True
        logger.info("Watching %d files in %d directories", len(self._files), len(directories))

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running or self._observer is None:
            return

        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        self._running = False

    def __enter__(self) -> FileWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()


class SettingsMonitor:
    """Follows ``gsettings monitor`` for a list of schemas.

    One subprocess per schema; every output line is one key change.
    """

    def __init__(
        self,
        schemas: Iterable[str],
        on_change: Callable[[str], None],
        executable: str = "gsettings",
    ) -> None:
        self._schemas = list(schemas)
        self._on_change = on_change
        self._executable = executable
        self._processes: list[asyncio.subprocess.Process] = []
        self._readers: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return bool(self._readers)

    async def start(self) -> None:
        """Spawn one monitor process per schema."""
        if self._readers:
            return
        for schema in self._schemas:
            try:
                process = await asyncio.create_subprocess_exec(
                    self._executable,
                    "monitor",
                    schema,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except FileNotFoundError:
                logger.warning("%s not found, settings changes are not monitored", self._executable)
                return
            self._processes.append(process)
            self._readers.append(asyncio.ensure_future(self._read(schema, process)))
        logger.info("Monitoring %d settings schemas", len(self._processes))

    async def _read(self, schema: str, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            logger.debug("Setting changed: %s", line.decode("utf-8", errors="replace").strip())
            self._on_change(f"settings:{schema}")
        logger.debug("Monitor for %s exited", schema)

    async def stop(self) -> None:
        """Terminate monitor processes."""
        for reader in self._readers:
            reader.cancel()
        for process in self._processes:
            if process.returncode is None:
                process.terminate()
                await process.wait()
        self._readers.clear()
        self._processes.clear()
