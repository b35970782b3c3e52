"""Sync orchestrator.

This module provides:
- SyncOrchestrator: Runs one sync operation at a time, queues the rest
- remote_path_for: Remote location of an individually synced file

The orchestrator owns the sync lock. A request arriving while a sync is
running is either queued (FIFO, drained one cooldown apart) or rejected
with SyncInProgressError. It also implements the two sync directions:

    upload:  settings store -> snapshot -> change set -> backend
    restore: backend -> snapshot -> settings store (+ files, wallpapers)
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from profilesync.sync.hashing import ContentHashCache, entry_digest
from profilesync.sync.snapshot import apply_snapshot, build_snapshot
from profilesync.sync.types import (
    CONFIG_BACKUP_PATH,
    BackendError,
    BackupSnapshot,
    ChangeSetEntry,
    ConfigurationError,
    OutcomeStatus,
    RestoreReport,
    SyncError,
    SyncInProgressError,
    SyncOperation,
    SyncOutcome,
    SyncTask,
    UploadReport,
)
from profilesync.sync.wallpapers import (
    WALLPAPER_SCHEMAS,
    collect_wallpaper_entries,
    restore_wallpapers,
    rewrite_wallpaper_uri,
)

if TYPE_CHECKING:
    from profilesync.backends.base import StorageBackend
    from profilesync.core.config import SyncConfig
    from profilesync.sync.snapshot import SettingsStore
    from profilesync.sync.types import MonitoringControl

logger = logging.getLogger(__name__)

FILES_PREFIX = "files"
DEFAULT_QUEUE_DELAY = 1.0
DEFAULT_MONITORING_GRACE = 2.0


def remote_path_for(local_path: str) -> str:
    """Map a configured file path to its remote path.

    ``~/.bashrc`` maps to ``files/home/.bashrc``; absolute paths keep their
    components below ``files/``.
    """
    if local_path.startswith("~"):
        local_path = "/home" + local_path[1:]
    return f"{FILES_PREFIX}/{local_path.lstrip('/')}"


class SyncOrchestrator:
    """Single-flight sync runner with a FIFO retry queue.

    Usage:
        orchestrator = SyncOrchestrator(backend, config, store)

        outcome = await orchestrator.perform_sync_operation(
            "Backup", orchestrator.sync_to_remote, allow_queue=True
        )

        orchestrator.close()
    """

    def __init__(
        self,
        backend: StorageBackend,
        config: SyncConfig,
        store: SettingsStore,
        set_monitoring: MonitoringControl | None = None,
        queue_delay: float = DEFAULT_QUEUE_DELAY,
        monitoring_grace: float = DEFAULT_MONITORING_GRACE,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            backend: Storage backend to sync with.
            config: User configuration.
            store: Settings store to snapshot and restore.
            set_monitoring: Called with False before a restore writes
                settings and with True once the grace window has passed.
            queue_delay: Seconds between queued operations.
            monitoring_grace: Seconds to keep change monitoring off after
                a restore.
        """
        self._backend = backend
        self._config = config
        self._store = store
        self._set_monitoring = set_monitoring
        self._queue_delay = queue_delay
        self._monitoring_grace = monitoring_grace

        self._hashes = ContentHashCache()
        self._locked = False
        self._current: str | None = None
        self._queue: deque[SyncTask] = deque()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        # Single-slot timers
        self._drain_handle: asyncio.TimerHandle | None = None
        self._grace_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        self._status_text = "Ready"
        self._last_error: str | None = None

    # === State ===

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def hash_cache(self) -> ContentHashCache:
        return self._hashes

    @property
    def is_syncing(self) -> bool:
        """Check if the sync lock is held."""
        return self._locked

    @property
    def current_operation(self) -> str | None:
        """Label of the running operation."""
        return self._current

    @property
    def queue_depth(self) -> int:
        """Get number of queued operations."""
        return len(self._queue)

    @property
    def status_text(self) -> str:
        """Short description of the last operation."""
        return self._status_text

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def wait_idle(self) -> None:
        """Wait until no operation is running or queued."""
        await self._idle.wait()

    # === Single-flight execution ===

    async def perform_sync_operation(
        self,
        label: str,
        operation: SyncOperation,
        allow_queue: bool = False,
    ) -> SyncOutcome:
        """Run an operation under the sync lock.

        Args:
            label: Name used in logs and status text.
            operation: Coroutine function performing the sync.
            allow_queue: Queue the operation if a sync is running.

        Returns:
            COMPLETED outcome with the operation's result, or QUEUED.

        Raises:
            SyncInProgressError: If a sync is running and allow_queue is False.
            SyncError: If the orchestrator is closed.
            Exception: Whatever the operation raised.
        """
        if self._closed:
            raise SyncError("Orchestrator is closed")

        if self._locked:
            if allow_queue:
                self._queue.append(SyncTask(label=label, operation=operation, allow_queue=True))
                self._idle.clear()
                logger.info("%s queued (%d waiting)", label, len(self._queue))
                return SyncOutcome(label=label, status=OutcomeStatus.QUEUED)
            raise SyncInProgressError(f"Sync in progress ({self._current}), rejected {label}")

        self._acquire(label)
        value = await self._execute(label, operation)
        return SyncOutcome(label=label, status=OutcomeStatus.COMPLETED, value=value)

    def _acquire(self, label: str) -> None:
        self._locked = True
        self._current = label
        self._idle.clear()

    async def _execute(self, label: str, operation: SyncOperation) -> Any:
        """Run an operation that already holds the lock."""
        logger.info("%s started", label)
        try:
            value = await operation()
        except Exception as e:
            self._last_error = str(e)
            self._status_text = f"{label} failed: {e}"
            logger.error("%s failed: %s", label, e)
            raise
        else:
            self._last_error = None
            self._status_text = f"{label} complete: {datetime.now():%H:%M:%S}"
            logger.info("%s complete", label)
            return value
        finally:
            self._locked = False
            self._current = None
            if self._queue:
                self._schedule_drain()
            else:
                self._idle.set()

    def _schedule_drain(self) -> None:
        if self._closed:
            return
        if self._drain_handle is not None:
            self._drain_handle.cancel()
        loop = asyncio.get_running_loop()
        self._drain_handle = loop.call_later(self._queue_delay, self._drain)

    def _drain(self) -> None:
        """Start the head of the queue if the lock is free."""
        self._drain_handle = None
        if self._closed or not self._queue:
            return
        if self._locked:
            # The running operation reschedules the drain when it ends
            return

        task = self._queue.popleft()
        self._acquire(task.label)
        running = asyncio.ensure_future(self._run_queued(task))
        self._tasks.add(running)
        running.add_done_callback(self._tasks.discard)

    async def _run_queued(self, task: SyncTask) -> None:
        try:
            await self._execute(task.label, task.operation)
        except Exception as e:
            # Already recorded in the status text by _execute
            logger.debug("Queued %s did not complete: %s", task.label, e)

    # === Upload ===

    def _require_credentials(self) -> Any:
        creds = self._backend.get_credentials(self._config)
        if not self._backend.has_valid_credentials(creds):
            raise ConfigurationError(f"{self._backend.name} credentials are not configured")
        return creds

    def _schemas(self) -> list[str]:
        schemas = list(self._config.schemas)
        if self._config.sync_wallpapers:
            schemas.extend(s for s in WALLPAPER_SCHEMAS if s not in schemas)
        return schemas

    def _collect_file_entries(self) -> list[ChangeSetEntry]:
        entries: list[ChangeSetEntry] = []
        for configured in self._config.sync_files:
            path = Path(configured).expanduser()
            if not path.is_file():
                logger.debug("Skipping missing file %s", path)
                continue
            data = path.read_bytes()
            try:
                data.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Skipping %s: not a UTF-8 text file", path)
                continue
            entries.append(ChangeSetEntry(remote_path=remote_path_for(configured), content=data))
        return entries

    async def sync_to_remote(self) -> UploadReport:
        """Upload the settings snapshot and changed files.

        Entries whose content matches the last confirmed upload are
        skipped. When nothing changed the backend is not contacted.

        Raises:
            ConfigurationError: If credentials are missing.
            BackendError: If the upload failed for every entry.
        """
        creds = self._require_credentials()

        loop = asyncio.get_running_loop()
        # gsettings reads block, keep them off the event loop
        snapshot = await loop.run_in_executor(
            None, build_snapshot, self._store, self._schemas()
        )
        config_entry = ChangeSetEntry(
            remote_path=CONFIG_BACKUP_PATH,
            content=json.dumps(snapshot.to_dict(), indent=2).encode("utf-8"),
        )
        candidates = [config_entry, *self._collect_file_entries()]
        if self._config.sync_wallpapers:
            candidates.extend(collect_wallpaper_entries(snapshot))

        report = UploadReport()
        digests: dict[str, str] = {}
        changed: list[ChangeSetEntry] = []
        for entry in candidates:
            digest = entry_digest(entry, snapshot)
            if self._hashes.is_unchanged(entry.remote_path, digest):
                report.skipped.append(entry.remote_path)
                continue
            digests[entry.remote_path] = digest
            changed.append(entry)

        if not changed:
            logger.info("No changes to upload")
            return report

        logger.info("Uploading %d of %d entries", len(changed), len(candidates))
        result = await self._backend.upload_batch(changed, creds)
        for path in result.uploaded:
            self._hashes.record(path, digests[path])

        report.uploaded = list(result.uploaded)
        report.failed = list(result.failed)
        report.revision = result.revision
        if report.failed and not report.uploaded:
            raise BackendError(f"Upload failed for all {len(report.failed)} entries")
        if report.failed:
            logger.warning("Upload incomplete, failed: %s", ", ".join(report.failed))
        return report

    # === Restore ===

    async def _restore_files(self, creds: Any) -> list[str]:
        restored: list[str] = []
        for configured in self._config.sync_files:
            result = await self._backend.download_file(remote_path_for(configured), creds)
            if not result.ok or result.content is None:
                if not result.not_found:
                    logger.warning("Could not download %s: HTTP %d", configured, result.status)
                continue
            path = Path(configured).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(result.content)
            restored.append(configured)
            logger.debug("Restored %s", path)
        return restored

    async def sync_from_remote(self) -> RestoreReport:
        """Download the backup and apply it locally.

        Returns:
            Report; found is False when no backup exists remotely.

        Raises:
            ConfigurationError: If credentials are missing.
            BackendError: If the backup could not be downloaded.
            SyncError: If the backup is not valid.
        """
        creds = self._require_credentials()

        download = await self._backend.download_file(CONFIG_BACKUP_PATH, creds)
        if not download.ok:
            if download.not_found:
                logger.info("No backup found on %s", self._backend.name)
                return RestoreReport(found=False)
            raise BackendError(f"Failed to download backup: {download.status}", download.status)

        try:
            snapshot = BackupSnapshot.from_dict(json.loads(download.text()))
        except (UnicodeDecodeError, ValueError) as e:
            raise SyncError(f"Invalid backup data: {e}") from e

        files = await self._restore_files(creds)

        wallpapers: list[str] = []
        wallpaper_dir = Path(self._config.wallpaper_dir).expanduser()
        if self._config.sync_wallpapers:
            wallpapers = await restore_wallpapers(self._backend, creds, wallpaper_dir)

        # Wallpaper URIs from another machine point at files that do not exist here
        skip: list[str] = [] if self._config.sync_wallpapers else WALLPAPER_SCHEMAS
        apply = functools.partial(
            apply_snapshot,
            self._store,
            snapshot,
            rewrite=lambda schema, key, value: rewrite_wallpaper_uri(
                schema, key, value, wallpaper_dir
            ),
            skip=skip,
        )

        self._suspend_monitoring()
        try:
            report = await asyncio.get_running_loop().run_in_executor(None, apply)
        finally:
            self._resume_monitoring_later()

        report.files_restored = files
        report.wallpapers_restored = wallpapers
        return report

    def _suspend_monitoring(self) -> None:
        if self._grace_handle is not None:
            self._grace_handle.cancel()
            self._grace_handle = None
        if self._set_monitoring is not None:
            self._set_monitoring(False)

    def _resume_monitoring_later(self) -> None:
        if self._set_monitoring is None or self._closed:
            return
        loop = asyncio.get_running_loop()
        self._grace_handle = loop.call_later(self._monitoring_grace, self._resume_monitoring)

    def _resume_monitoring(self) -> None:
        self._grace_handle = None
        if self._set_monitoring is not None and not self._closed:
            self._set_monitoring(True)

    # === Lifecycle ===

    def clear_cache(self) -> None:
        """Forget content hashes so the next upload sends everything."""
        self._hashes.clear()

    def close(self) -> None:
        """Cancel timers and drop queued operations."""
        self._closed = True
        for handle in (self._drain_handle, self._grace_handle):
            if handle is not None:
                handle.cancel()
        self._drain_handle = None
        self._grace_handle = None
        if self._queue:
            logger.debug("Dropping %d queued operations", len(self._queue))
        self._queue.clear()
        self._tasks.clear()
        self._set_monitoring = None
        if not self._locked:
            self._idle.set()
