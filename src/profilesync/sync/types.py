"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and subclasses: Exception classes for the engine and backends
- Encoding, ChangeSetEntry: One file to write remotely
- SyncTask, SyncOutcome: Requested sync operations and their outcome
- BackupSnapshot: Serialized settings tree
- UploadReport, RestoreReport: Results of the two sync directions
- RemoteChange, EngineStatus: What the engine exposes to callers
"""

from __future__ import annotations

import base64
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any

from profilesync.core.types import PollOutcome, SyncState

CONFIG_BACKUP_PATH = "config-backup.json"


class SyncError(Exception):
    """Base exception for sync errors."""


class ConfigurationError(SyncError):
    """Credentials or settings are missing or invalid."""


class SyncInProgressError(SyncError):
    """Another sync operation holds the sync lock."""


class DispatcherStoppedError(SyncError):
    """The request dispatcher has been shut down."""


class CorruptContentError(SyncError):
    """Downloaded content failed a format sanity check."""


class BackendError(SyncError):
    """A storage backend request failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(BackendError):
    """The backend rejected the credentials."""


class Encoding(Enum):
    """How ChangeSetEntry.content is encoded."""

    RAW = "raw"
    BASE64 = "base64"


@dataclass(frozen=True)
class ChangeSetEntry:
    """A single file to write to the remote store.

    Attributes:
        remote_path: Path relative to the backend's sync root.
        content: File bytes (RAW) or ASCII base64 text (BASE64).
        encoding: Encoding of content.
        mode: Git file mode, ignored by backends without modes.
    """

    remote_path: str
    content: bytes
    encoding: Encoding = Encoding.RAW
    mode: str | None = "100644"

    def payload(self) -> bytes:
        """Get the decoded file bytes."""
        if self.encoding is Encoding.BASE64:
            return base64.b64decode(self.content)
        return self.content

    def __repr__(self) -> str:
        return (
            f"ChangeSetEntry({self.remote_path!r}, "
            f"{len(self.content)} bytes, {self.encoding.name})"
        )


# Deferred unit of sync work
SyncOperation = Callable[[], Awaitable[Any]]


@dataclass
class SyncTask:
    """A requested sync operation.

    Attributes:
        label: Human-readable name used in logs and status text.
        operation: Coroutine function performing the sync.
        allow_queue: Queue the task if another sync is running.
    """

    label: str
    operation: SyncOperation
    allow_queue: bool = False
    created_at: float = field(default_factory=time.time)


class OutcomeStatus(Enum):
    """How a perform_sync_operation() call ended."""

    COMPLETED = auto()
    QUEUED = auto()


@dataclass
class SyncOutcome:
    """Outcome of a perform_sync_operation() call."""

    label: str
    status: OutcomeStatus
    value: Any = None

    @property
    def queued(self) -> bool:
        """Check if the operation was queued instead of run."""
        return self.status is OutcomeStatus.QUEUED


@dataclass
class BackupSnapshot:
    """Snapshot of the settings tree.

    Attributes:
        timestamp: ISO-8601 creation time.
        settings: schema -> key -> serialized value.
    """

    timestamp: str
    settings: dict[str, dict[str, str]] = field(default_factory=dict)

    @classmethod
    def create(cls, settings: dict[str, dict[str, str]]) -> BackupSnapshot:
        """Create a snapshot stamped with the current time."""
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            settings=settings,
        )

    @classmethod
    def from_dict(cls, data: Any) -> BackupSnapshot:
        """Create from the decoded config-backup.json document.

        Raises:
            SyncError: If the document is not a settings backup.
        """
        if not isinstance(data, dict) or not isinstance(data.get("gsettings"), dict):
            raise SyncError("Invalid backup data")
        settings: dict[str, dict[str, str]] = {}
        for schema, keys in data["gsettings"].items():
            if isinstance(keys, dict):
                settings[schema] = {str(k): str(v) for k, v in keys.items()}
        return cls(timestamp=str(data.get("timestamp", "")), settings=settings)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the config-backup.json document."""
        return {"timestamp": self.timestamp, "gsettings": self.settings}

    @property
    def key_count(self) -> int:
        """Total number of keys across all schemas."""
        return sum(len(keys) for keys in self.settings.values())


@dataclass
class UploadReport:
    """Result of an upload sync."""

    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    revision: str | None = None

    @property
    def network_used(self) -> bool:
        """Check if anything was sent to the backend."""
        return bool(self.uploaded or self.failed)


@dataclass
class RestoreReport:
    """Result of a restore sync."""

    found: bool
    schemas_applied: list[str] = field(default_factory=list)
    schemas_skipped: list[str] = field(default_factory=list)
    keys_applied: int = 0
    keys_failed: int = 0
    files_restored: list[str] = field(default_factory=list)
    wallpapers_restored: list[str] = field(default_factory=list)


@dataclass
class RemoteChange:
    """Descriptor passed to the remote change callback."""

    backend: str
    revision: str | None
    detected_at: float = field(default_factory=time.time)


@dataclass
class EngineStatus:
    """Status snapshot for display."""

    state: SyncState
    is_syncing: bool
    queue_depth: int
    pending_requests: int
    active_requests: int
    has_change_token: bool
    last_poll_result: PollOutcome
    status_text: str
    remote_changes_pending: bool = False


# Type aliases for callbacks
RemoteChangeCallback = Callable[[RemoteChange], None]
MonitoringControl = Callable[[bool], None]
