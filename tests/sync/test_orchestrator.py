"""Tests for the sync orchestrator."""

from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from profilesync.core.config import SyncConfig
from profilesync.sync.orchestrator import SyncOrchestrator, remote_path_for
from profilesync.sync.snapshot import MemorySettingsStore
from profilesync.sync.types import (
    CONFIG_BACKUP_PATH,
    BackendError,
    ConfigurationError,
    OutcomeStatus,
    SyncError,
    SyncInProgressError,
)

from conftest import INTERFACE, WM, FakeBackend

BACKGROUND = "org.gnome.desktop.background"


class ThreadRecordingStore(MemorySettingsStore):
    """Memory store that records which threads touch it."""

    def __init__(self, data: dict[str, dict[str, str]]) -> None:
        super().__init__(data)
        self.read_threads: set[int] = set()
        self.write_threads: set[int] = set()

    def get_value(self, schema: str, key: str) -> str:
        self.read_threads.add(threading.get_ident())
        return super().get_value(schema, key)

    def set_value(self, schema: str, key: str, value: str) -> None:
        self.write_threads.add(threading.get_ident())
        super().set_value(schema, key, value)


def make_orchestrator(
    backend: FakeBackend,
    config: SyncConfig,
    store: MemorySettingsStore,
    **kwargs: object,
) -> SyncOrchestrator:
    """Create an orchestrator with short timers."""
    kwargs.setdefault("queue_delay", 0.0)
    kwargs.setdefault("monitoring_grace", 0.01)
    return SyncOrchestrator(backend, config, store, **kwargs)  # type: ignore[arg-type]


class TestRemotePathFor:
    """Tests for remote_path_for()."""

    def test_home_relative(self) -> None:
        """Should map ~ to files/home."""
        assert remote_path_for("~/.bashrc") == "files/home/.bashrc"
        assert remote_path_for("~/.config/foo/bar.conf") == "files/home/.config/foo/bar.conf"

    def test_absolute(self) -> None:
        """Should keep absolute paths below files/."""
        assert remote_path_for("/etc/hosts") == "files/etc/hosts"


class TestSyncToRemote:
    """Tests for sync_to_remote()."""

    @pytest.mark.asyncio
    async def test_first_upload_sends_snapshot(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should upload config-backup.json with the settings tree."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_to_remote()

        assert report.uploaded == [CONFIG_BACKUP_PATH]
        assert report.revision == "rev-1"
        document = json.loads(fake_backend.files[CONFIG_BACKUP_PATH])
        assert document["gsettings"][INTERFACE]["gtk-theme"] == "'Adwaita'"
        assert document["gsettings"][WM]["button-layout"] == "'appmenu:close'"
        assert "timestamp" in document

    @pytest.mark.asyncio
    async def test_unchanged_settings_skip_network(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should not contact the backend when nothing changed."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        await orchestrator.sync_to_remote()

        report = await orchestrator.sync_to_remote()

        assert len(fake_backend.upload_calls) == 1
        assert report.skipped == [CONFIG_BACKUP_PATH]
        assert report.network_used is False

    @pytest.mark.asyncio
    async def test_changed_setting_uploads_again(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should upload the snapshot after a value changes."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        await orchestrator.sync_to_remote()

        settings_store.set_value(INTERFACE, "gtk-theme", "'Adwaita-dark'")
        report = await orchestrator.sync_to_remote()

        assert report.uploaded == [CONFIG_BACKUP_PATH]
        assert len(fake_backend.upload_calls) == 2

    @pytest.mark.asyncio
    async def test_only_modified_file_uploaded(
        self,
        tmp_path: Path,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should skip an unchanged file and send the modified one."""
        file_a = tmp_path / "a.conf"
        file_b = tmp_path / "b.conf"
        file_a.write_text("alpha\n")
        file_b.write_text("beta\n")
        sync_config.sync_files = [str(file_a), str(file_b)]
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        first = await orchestrator.sync_to_remote()
        assert sorted(first.uploaded) == sorted([
            CONFIG_BACKUP_PATH,
            remote_path_for(str(file_a)),
            remote_path_for(str(file_b)),
        ])

        file_b.write_text("beta, modified\n")
        second = await orchestrator.sync_to_remote()

        assert fake_backend.upload_calls[-1] == [remote_path_for(str(file_b))]
        assert second.uploaded == [remote_path_for(str(file_b))]
        assert sorted(second.skipped) == sorted([CONFIG_BACKUP_PATH, remote_path_for(str(file_a))])
        assert fake_backend.files[remote_path_for(str(file_b))] == b"beta, modified\n"

    @pytest.mark.asyncio
    async def test_failed_entry_retried(
        self,
        tmp_path: Path,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should not cache entries the backend did not confirm."""
        conf = tmp_path / "app.conf"
        conf.write_text("x = 1\n")
        sync_config.sync_files = [str(conf)]
        remote = remote_path_for(str(conf))
        fake_backend.fail_paths.add(remote)
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        first = await orchestrator.sync_to_remote()
        assert first.failed == [remote]
        assert remote not in orchestrator.hash_cache

        fake_backend.fail_paths.clear()
        second = await orchestrator.sync_to_remote()
        assert second.uploaded == [remote]

    @pytest.mark.asyncio
    async def test_all_failed_raises(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should raise when no entry could be written."""
        fake_backend.fail_paths.add(CONFIG_BACKUP_PATH)
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        with pytest.raises(BackendError):
            await orchestrator.sync_to_remote()
        assert len(orchestrator.hash_cache) == 0

    @pytest.mark.asyncio
    async def test_non_utf8_file_skipped(
        self,
        tmp_path: Path,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should leave binary files out of the change set."""
        binary = tmp_path / "blob.bin"
        binary.write_bytes(b"\xff\xfe\x00\x81")
        sync_config.sync_files = [str(binary), str(tmp_path / "missing.conf")]
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_to_remote()

        assert report.uploaded == [CONFIG_BACKUP_PATH]

    @pytest.mark.asyncio
    async def test_missing_credentials(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should raise ConfigurationError without touching the backend."""
        fake_backend.credentials = None
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        with pytest.raises(ConfigurationError):
            await orchestrator.sync_to_remote()
        assert fake_backend.upload_calls == []

    @pytest.mark.asyncio
    async def test_clear_cache_forces_upload(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should upload everything again after clear_cache()."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        await orchestrator.sync_to_remote()

        orchestrator.clear_cache()
        report = await orchestrator.sync_to_remote()

        assert report.uploaded == [CONFIG_BACKUP_PATH]


class TestSyncFromRemote:
    """Tests for sync_from_remote()."""

    @pytest.mark.asyncio
    async def test_no_backup(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should report found=False when nothing was backed up."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_from_remote()

        assert report.found is False
        assert settings_store.get_value(INTERFACE, "gtk-theme") == "'Adwaita'"

    @pytest.mark.asyncio
    async def test_applies_settings(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should write remote values and skip schemas not installed."""
        fake_backend.files[CONFIG_BACKUP_PATH] = json.dumps({
            "timestamp": "2025-01-01T00:00:00+00:00",
            "gsettings": {
                INTERFACE: {"gtk-theme": "'Yaru'"},
                "org.example.missing": {"key": "1"},
            },
        }).encode()
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_from_remote()

        assert report.found is True
        assert report.schemas_applied == [INTERFACE]
        assert report.schemas_skipped == ["org.example.missing"]
        assert report.keys_applied == 1
        assert settings_store.get_value(INTERFACE, "gtk-theme") == "'Yaru'"

    @pytest.mark.asyncio
    async def test_counts_failed_keys(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should keep going when a key cannot be written."""
        settings_store.read_only.add((INTERFACE, "clock-format"))
        fake_backend.files[CONFIG_BACKUP_PATH] = json.dumps({
            "timestamp": "t",
            "gsettings": {INTERFACE: {"clock-format": "'12h'", "gtk-theme": "'Yaru'"}},
        }).encode()
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_from_remote()

        assert report.keys_applied == 1
        assert report.keys_failed == 1

    @pytest.mark.asyncio
    async def test_invalid_backup(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should raise SyncError for a document that is not a backup."""
        fake_backend.files[CONFIG_BACKUP_PATH] = b"not json"
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        with pytest.raises(SyncError):
            await orchestrator.sync_from_remote()

    @pytest.mark.asyncio
    async def test_restores_files(
        self,
        tmp_path: Path,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should write synced files back to disk."""
        target = tmp_path / "restored" / "app.conf"
        sync_config.sync_files = [str(target)]
        fake_backend.files[CONFIG_BACKUP_PATH] = b'{"timestamp": "t", "gsettings": {}}'
        fake_backend.files[remote_path_for(str(target))] = b"restored = true\n"
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_from_remote()

        assert report.files_restored == [str(target)]
        assert target.read_bytes() == b"restored = true\n"

    @pytest.mark.asyncio
    async def test_monitoring_suspended_during_apply(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should turn monitoring off, then back on after the grace window."""
        fake_backend.files[CONFIG_BACKUP_PATH] = b'{"timestamp": "t", "gsettings": {}}'
        calls: list[bool] = []
        orchestrator = make_orchestrator(
            fake_backend, sync_config, settings_store, set_monitoring=calls.append
        )

        await orchestrator.sync_from_remote()
        assert calls == [False]

        await asyncio.sleep(0.05)
        assert calls == [False, True]

    @pytest.mark.asyncio
    async def test_wallpaper_schemas_kept_when_disabled(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should leave the local wallpaper alone when wallpaper sync is off."""
        settings_store.data[BACKGROUND] = {"picture-uri": "'file:///home/me/local.jpg'"}
        fake_backend.files[CONFIG_BACKUP_PATH] = json.dumps({
            "timestamp": "2025-01-01T00:00:00+00:00",
            "gsettings": {
                INTERFACE: {"gtk-theme": "'Yaru'"},
                BACKGROUND: {"picture-uri": "'file:///home/alice/Pictures/other.jpg'"},
            },
        }).encode()
        sync_config.sync_wallpapers = False
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        report = await orchestrator.sync_from_remote()

        assert settings_store.get_value(BACKGROUND, "picture-uri") == "'file:///home/me/local.jpg'"
        assert settings_store.get_value(INTERFACE, "gtk-theme") == "'Yaru'"
        assert report.schemas_skipped == [BACKGROUND]
        assert report.schemas_applied == [INTERFACE]


class TestStoreAccessOffLoop:
    """Tests that settings store calls do not run on the event loop thread."""

    @pytest.mark.asyncio
    async def test_snapshot_and_apply_use_worker_thread(
        self, fake_backend: FakeBackend, sync_config: SyncConfig
    ) -> None:
        """Should read and write settings from a worker thread."""
        store = ThreadRecordingStore({INTERFACE: {"gtk-theme": "'Adwaita'"}})
        orchestrator = make_orchestrator(fake_backend, sync_config, store)
        loop_thread = threading.get_ident()

        await orchestrator.sync_to_remote()
        await orchestrator.sync_from_remote()

        assert store.read_threads
        assert store.write_threads
        assert loop_thread not in store.read_threads
        assert loop_thread not in store.write_threads


class TestPerformSyncOperation:
    """Tests for single-flight execution and queueing."""

    @pytest.mark.asyncio
    async def test_completed_outcome(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should return the operation result and update the status text."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        async def operation() -> int:
            return 42

        outcome = await orchestrator.perform_sync_operation("Backup", operation)

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.value == 42
        assert orchestrator.status_text.startswith("Backup complete: ")
        assert orchestrator.is_syncing is False

    @pytest.mark.asyncio
    async def test_failure_recorded_and_raised(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should release the lock and record the failure."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)

        async def operation() -> None:
            raise BackendError("server down", 503)

        with pytest.raises(BackendError):
            await orchestrator.perform_sync_operation("Backup", operation)

        assert orchestrator.status_text == "Backup failed: server down"
        assert orchestrator.last_error == "server down"
        assert orchestrator.is_syncing is False

    @pytest.mark.asyncio
    async def test_rejects_while_running(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should raise SyncInProgressError when queueing is not allowed."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        release = asyncio.Event()

        async def slow() -> None:
            await release.wait()

        async def other() -> None:
            return None

        running = asyncio.ensure_future(orchestrator.perform_sync_operation("Backup", slow))
        await asyncio.sleep(0)
        assert orchestrator.is_syncing
        assert orchestrator.current_operation == "Backup"

        with pytest.raises(SyncInProgressError):
            await orchestrator.perform_sync_operation("Restore", other)

        release.set()
        await running

    @pytest.mark.asyncio
    async def test_queued_operations_run_in_order(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should run queued operations FIFO once the lock is free."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        release = asyncio.Event()
        order: list[str] = []

        async def slow() -> None:
            order.append("first")
            await release.wait()

        def make(name: str) -> Callable[[], Awaitable[None]]:
            async def operation() -> None:
                assert orchestrator.current_operation == name
                order.append(name)

            return operation

        running = asyncio.ensure_future(orchestrator.perform_sync_operation("first", slow))
        await asyncio.sleep(0)

        second = await orchestrator.perform_sync_operation("second", make("second"), True)
        third = await orchestrator.perform_sync_operation("third", make("third"), True)
        assert second.queued and third.queued
        assert orchestrator.queue_depth == 2

        release.set()
        await running
        await asyncio.wait_for(orchestrator.wait_idle(), timeout=1.0)

        assert order == ["first", "second", "third"]
        assert orchestrator.queue_depth == 0
        assert orchestrator.is_syncing is False

    @pytest.mark.asyncio
    async def test_queued_failure_does_not_stop_queue(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should record a queued failure and keep draining."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        release = asyncio.Event()
        ran: list[str] = []

        async def slow() -> None:
            await release.wait()

        async def failing() -> None:
            raise BackendError("rejected")

        async def last() -> None:
            ran.append("last")

        running = asyncio.ensure_future(orchestrator.perform_sync_operation("first", slow))
        await asyncio.sleep(0)
        await orchestrator.perform_sync_operation("failing", failing, allow_queue=True)
        await orchestrator.perform_sync_operation("last", last, allow_queue=True)

        release.set()
        await running
        await asyncio.wait_for(orchestrator.wait_idle(), timeout=1.0)

        assert ran == ["last"]
        assert orchestrator.status_text.startswith("last complete")

    @pytest.mark.asyncio
    async def test_closed_rejects(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should refuse operations after close()."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        orchestrator.close()

        async def operation() -> None:
            return None

        with pytest.raises(SyncError):
            await orchestrator.perform_sync_operation("Backup", operation)

    @pytest.mark.asyncio
    async def test_close_drops_queue(
        self,
        fake_backend: FakeBackend,
        sync_config: SyncConfig,
        settings_store: MemorySettingsStore,
    ) -> None:
        """Should drop queued operations on close()."""
        orchestrator = make_orchestrator(fake_backend, sync_config, settings_store)
        release = asyncio.Event()
        ran: list[str] = []

        async def slow() -> None:
            await release.wait()

        async def queued() -> None:
            ran.append("queued")

        running = asyncio.ensure_future(orchestrator.perform_sync_operation("first", slow))
        await asyncio.sleep(0)
        await orchestrator.perform_sync_operation("queued", queued, allow_queue=True)

        orchestrator.close()
        release.set()
        await running
        await asyncio.sleep(0.01)

        assert ran == []
        assert orchestrator.queue_depth == 0
