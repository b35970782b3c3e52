"""Shared fixtures for profilesync tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from profilesync.backends.base import (
    DownloadResult,
    ListResult,
    PollResult,
    RemoteEntry,
    StorageBackend,
    UploadResult,
)
from profilesync.core.config import SyncConfig
from profilesync.sync.dispatcher import RequestDispatcher
from profilesync.sync.snapshot import MemorySettingsStore
from profilesync.sync.tokens import ChangeTokenCache
from profilesync.sync.types import BackendError, ChangeSetEntry

INTERFACE = "org.gnome.desktop.interface"
WM = "org.gnome.desktop.wm.preferences"


@dataclass(frozen=True)
class FakeCredentials:
    """Credentials accepted by FakeBackend."""

    token: str = field(default="fake-token", repr=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.token)


class FakeBackend(StorageBackend):
    """In-memory storage backend that records calls."""

    name = "Fake"
    token_key = "fake-token-key"

    def __init__(self) -> None:
        super().__init__(RequestDispatcher(), ChangeTokenCache())
        self.files: dict[str, bytes] = {}
        self.credentials: FakeCredentials | None = FakeCredentials()
        self.upload_calls: list[list[str]] = []
        self.download_calls: list[str] = []
        self.fail_paths: set[str] = set()
        self.poll_results: list[PollResult | Exception] = []
        self.cleared = 0
        # When set, upload_batch waits for it
        self.gate: asyncio.Event | None = None

    def get_credentials(self, config: SyncConfig) -> FakeCredentials | None:
        return self.credentials

    async def upload_batch(
        self, changes: list[ChangeSetEntry], credentials: Any
    ) -> UploadResult:
        self.upload_calls.append([change.remote_path for change in changes])
        if self.gate is not None:
            await self.gate.wait()
        result = UploadResult()
        for change in changes:
            if change.remote_path in self.fail_paths:
                result.failed.append(change.remote_path)
                continue
            self.files[change.remote_path] = change.payload()
            result.uploaded.append(change.remote_path)
        result.revision = f"rev-{len(self.upload_calls)}"
        return result

    async def download_file(self, path: str, credentials: Any) -> DownloadResult:
        self.download_calls.append(path)
        if path not in self.files:
            return DownloadResult(ok=False, status=404)
        return DownloadResult(ok=True, status=200, content=self.files[path])

    async def download_binary_file(self, path: str, credentials: Any) -> bytes:
        if path not in self.files:
            raise BackendError(f"Not found: {path}", 404)
        return self.files[path]

    async def list_directory(self, path: str, credentials: Any) -> ListResult:
        prefix = path.rstrip("/") + "/"
        names = sorted(
            p[len(prefix):]
            for p in self.files
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        )
        if not names:
            return ListResult(ok=False, status=404)
        return ListResult(
            ok=True,
            status=200,
            files=[RemoteEntry(name=name, type="file", locator=prefix + name) for name in names],
        )

    async def _poll(self, credentials: Any) -> PollResult:
        if not self.poll_results:
            return PollResult(has_changes=False)
        result = self.poll_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def clear_change_cache(self) -> None:
        self.cleared += 1


@pytest.fixture
def fake_backend() -> FakeBackend:
    """Create an in-memory backend."""
    return FakeBackend()


@pytest.fixture
def settings_store() -> MemorySettingsStore:
    """Create a settings store with two schemas."""
    return MemorySettingsStore({
        INTERFACE: {"gtk-theme": "'Adwaita'", "clock-format": "'24h'"},
        WM: {"button-layout": "'appmenu:close'"},
    })


@pytest.fixture
def sync_config(tmp_path: Path) -> SyncConfig:
    """Create a config covering the settings_store schemas."""
    return SyncConfig(
        backend="github",
        schemas=[INTERFACE, WM],
        wallpaper_dir=str(tmp_path / "wallpapers"),
        change_sync_delay=0,
        poll_enabled=False,
    )
