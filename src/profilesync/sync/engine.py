"""Sync engine facade.

This module provides:
- SyncEngine: Wires dispatcher, token cache, backend, orchestrator,
  debouncer, watchers and poller together and exposes the sync triggers

Triggers and what they run:

    | Trigger          | Operation                |
    |------------------|--------------------------|
    | local change     | backup (debounced)       |
    | login            | restore                  |
    | logout           | backup                   |
    | initial sync     | restore, then backup     |
    | manual sync      | backup, then restore     |
    | remote pull      | restore                  |
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from profilesync.backends import create_backend
from profilesync.core.types import SyncState
from profilesync.notifications import notify_remote_change
from profilesync.sync.debounce import ChangeSignalDebouncer
from profilesync.sync.dispatcher import RequestDispatcher
from profilesync.sync.orchestrator import SyncOrchestrator
from profilesync.sync.poller import RemoteChangePoller
from profilesync.sync.tokens import ChangeTokenCache
from profilesync.sync.types import (
    EngineStatus,
    RemoteChange,
    RestoreReport,
    SyncError,
    SyncOutcome,
    UploadReport,
)
from profilesync.sync.watcher import FileWatcher, SettingsMonitor
from profilesync.sync.wallpapers import WALLPAPER_SCHEMAS

if TYPE_CHECKING:
    from collections.abc import Callable

    from profilesync.backends.base import PollResult, StorageBackend
    from profilesync.core.config import SyncConfig
    from profilesync.sync.snapshot import SettingsStore
    from profilesync.sync.types import RemoteChangeCallback

logger = logging.getLogger(__name__)


class SyncEngine:
    """Entry point for running settings sync.

    Usage:
        engine = SyncEngine(config, GSettingsStore())
        await engine.start()
        ...
        await engine.sync_both()
        ...
        await engine.close()
    """

    def __init__(
        self,
        config: SyncConfig,
        store: SettingsStore,
        backend: StorageBackend | None = None,
        dispatcher: RequestDispatcher | None = None,
        tokens: ChangeTokenCache | None = None,
        on_remote_change: RemoteChangeCallback | None = None,
        notifier: Callable[[str], object] | None = notify_remote_change,
        queue_delay: float = 1.0,
        monitoring_grace: float = 2.0,
    ) -> None:
        """Initialize the engine.

        Args:
            config: User configuration.
            store: Settings store to snapshot and restore.
            backend: Storage backend. Built from config.backend if not given.
            dispatcher: Request dispatcher shared by the backend.
            tokens: Change token cache shared by the backend.
            on_remote_change: Called whenever a poll detects a remote change.
            notifier: Called with the backend name to tell the user about a
                remote change that is not applied automatically.
            queue_delay: Seconds between queued sync operations.
            monitoring_grace: Seconds change monitoring stays off after a
                restore.
        """
        self._config = config
        self._store = store
        self._dispatcher = dispatcher or RequestDispatcher(config.max_concurrency)
        self._tokens = tokens or ChangeTokenCache()
        self._backend = backend or create_backend(
            config.backend, self._dispatcher, self._tokens, timeout=config.timeout
        )
        self._on_remote_change = on_remote_change
        self._notifier = notifier

        self._orchestrator = SyncOrchestrator(
            self._backend,
            config,
            store,
            set_monitoring=self.set_monitoring,
            queue_delay=queue_delay,
            monitoring_grace=monitoring_grace,
        )
        self._debouncer = ChangeSignalDebouncer(
            self._on_changes_settled, delay=config.change_sync_delay
        )
        self._poller = RemoteChangePoller(
            self._backend,
            self.get_credentials,
            interval=config.poll_interval * 60,
            on_change=self._handle_remote_change,
        )

        self._monitoring = True
        self._remote_changes_pending = False
        self._file_watcher: FileWatcher | None = None
        self._settings_monitor: SettingsMonitor | None = None

    # === Collaborators ===

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def orchestrator(self) -> SyncOrchestrator:
        return self._orchestrator

    @property
    def debouncer(self) -> ChangeSignalDebouncer:
        return self._debouncer

    @property
    def poller(self) -> RemoteChangePoller:
        return self._poller

    @property
    def tokens(self) -> ChangeTokenCache:
        return self._tokens

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    def get_credentials(self) -> Any:
        """Build credentials for the configured backend."""
        return self._backend.get_credentials(self._config)

    # === Sync triggers ===

    async def sync_out(self, allow_queue: bool = True) -> SyncOutcome:
        """Back up local settings to the remote store."""
        return await self._orchestrator.perform_sync_operation(
            "Backup", self._orchestrator.sync_to_remote, allow_queue=allow_queue
        )

    async def sync_in(self, allow_queue: bool = True) -> SyncOutcome:
        """Restore settings from the remote store."""
        return await self._orchestrator.perform_sync_operation(
            "Restore", self._restore, allow_queue=allow_queue
        )

    async def sync_both(self, allow_queue: bool = True) -> SyncOutcome:
        """Manual sync: back up, then restore, under one lock."""

        async def backup_then_restore() -> tuple[UploadReport, RestoreReport]:
            uploaded = await self._orchestrator.sync_to_remote()
            restored = await self._restore()
            return uploaded, restored

        return await self._orchestrator.perform_sync_operation(
            "Sync", backup_then_restore, allow_queue=allow_queue
        )

    async def initial_sync(self) -> SyncOutcome:
        """First sync after setup: restore, then back up."""

        async def restore_then_backup() -> tuple[RestoreReport, UploadReport]:
            restored = await self._restore()
            uploaded = await self._orchestrator.sync_to_remote()
            return restored, uploaded

        return await self._orchestrator.perform_sync_operation(
            "Initial sync", restore_then_backup, allow_queue=True
        )

    async def on_login(self) -> SyncOutcome:
        """Session start: restore."""
        return await self._orchestrator.perform_sync_operation(
            "Login restore", self._restore, allow_queue=True
        )

    async def on_logout(self) -> SyncOutcome:
        """Session end: back up."""
        return await self._orchestrator.perform_sync_operation(
            "Logout backup", self._orchestrator.sync_to_remote, allow_queue=True
        )

    async def pull_remote(self) -> SyncOutcome:
        """Apply a detected remote change."""
        return await self._orchestrator.perform_sync_operation(
            "Remote pull", self._restore, allow_queue=True
        )

    async def _restore(self) -> RestoreReport:
        report = await self._orchestrator.sync_from_remote()
        self._remote_changes_pending = False
        return report

    # === Local change handling ===

    def on_change_detected(self, source: str) -> None:
        """Record a local change signal. Ignored while monitoring is off."""
        if not self._monitoring:
            logger.debug("Ignoring change from %s while monitoring is suspended", source)
            return
        self._debouncer.notify(source)

    def _on_change_detected_threadsafe(self, source: str) -> None:
        self._debouncer.notify_threadsafe(source)

    def _on_changes_settled(self, source: str) -> Any:
        if not self._monitoring:
            return None
        logger.info("Local changes settled (%s)", source)
        return self.sync_out(allow_queue=True)

    def set_monitoring(self, enabled: bool) -> None:
        """Turn local change handling on or off.

        Turning it off also drops a pending debounced backup, so the
        settings written by a restore are not uploaded straight back.
        """
        self._monitoring = enabled
        if not enabled:
            self._debouncer.cancel()
        logger.debug("Change monitoring %s", "enabled" if enabled else "suspended")

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    # === Remote change handling ===

    async def _handle_remote_change(self, result: PollResult) -> None:
        self._remote_changes_pending = True
        change = RemoteChange(backend=self._backend.name, revision=result.revision)
        if self._on_remote_change is not None:
            self._on_remote_change(change)

        if not self._config.auto_sync_remote:
            if self._notifier is not None:
                self._notifier(self._backend.name)
            return

        try:
            await self.pull_remote()
        except SyncError as e:
            logger.error("Automatic restore failed: %s", e)

    # === Lifecycle ===

    async def start(self, watch: bool = True, monitor_settings: bool = False) -> None:
        """Start change producers and remote polling.

        Args:
            watch: Watch configured files for changes.
            monitor_settings: Follow settings changes with ``gsettings monitor``.
        """
        # Watcher threads hand changes to this loop
        self._debouncer.bind(asyncio.get_running_loop())
        if watch and self._config.sync_files:
            self._file_watcher = FileWatcher(
                self._config.sync_files, self._on_change_detected_threadsafe
            )
            self._file_watcher.start()

        if monitor_settings:
            schemas = list(self._config.schemas)
            if self._config.sync_wallpapers:
                schemas.extend(s for s in WALLPAPER_SCHEMAS if s not in schemas)
            self._settings_monitor = SettingsMonitor(schemas, self.on_change_detected)
            await self._settings_monitor.start()

        if self._config.poll_enabled:
            self._poller.start()

    def status(self) -> EngineStatus:
        """Get a status snapshot for display."""
        if self._orchestrator.is_syncing:
            state = SyncState.SYNCING
        elif self._orchestrator.last_error:
            state = SyncState.ERROR
        else:
            state = SyncState.IDLE

        return EngineStatus(
            state=state,
            is_syncing=self._orchestrator.is_syncing,
            queue_depth=self._orchestrator.queue_depth,
            pending_requests=self._dispatcher.pending_count,
            active_requests=self._dispatcher.active_count,
            has_change_token=self._tokens.has(self._backend.token_key),
            last_poll_result=self._tokens.last_result,
            status_text=self._orchestrator.status_text,
            remote_changes_pending=self._remote_changes_pending,
        )

    def invalidate_caches(self) -> None:
        """Forget content hashes and change tokens after a config change."""
        self._orchestrator.clear_cache()
        self._backend.clear_change_cache()
        self._tokens.clear_all()

    async def close(self) -> None:
        """Stop everything and release the backend."""
        self._poller.stop()
        self._debouncer.close()
        if self._file_watcher is not None:
            self._file_watcher.stop()
            self._file_watcher = None
        if self._settings_monitor is not None:
            await self._settings_monitor.stop()
            self._settings_monitor = None
        self._orchestrator.close()
        self._dispatcher.shutdown()
        await self._backend.cleanup()
        self._tokens.clear_all()
