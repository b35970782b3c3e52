"""Sync module - Settings synchronization engine.

The engine facade lives in profilesync.sync.engine; it is not imported
here because it depends on profilesync.backends, which in turn imports
the types below.
"""

from profilesync.sync.debounce import ChangeSignalDebouncer
from profilesync.sync.dispatcher import RequestDispatcher
from profilesync.sync.hashing import ContentHashCache, compute_content_hash
from profilesync.sync.orchestrator import SyncOrchestrator, remote_path_for
from profilesync.sync.snapshot import (
    GSettingsStore,
    MemorySettingsStore,
    SettingsStore,
    apply_snapshot,
    build_snapshot,
)
from profilesync.sync.tokens import ChangeTokenCache, TokenStatus
from profilesync.sync.types import (
    CONFIG_BACKUP_PATH,
    AuthenticationError,
    BackendError,
    BackupSnapshot,
    ChangeSetEntry,
    ConfigurationError,
    CorruptContentError,
    DispatcherStoppedError,
    Encoding,
    EngineStatus,
    OutcomeStatus,
    RemoteChange,
    RestoreReport,
    SyncError,
    SyncInProgressError,
    SyncOutcome,
    SyncTask,
    UploadReport,
)

__all__ = [
    # Components
    "ChangeSignalDebouncer",
    "ChangeTokenCache",
    "ContentHashCache",
    "RequestDispatcher",
    "SyncOrchestrator",
    "TokenStatus",
    "compute_content_hash",
    "remote_path_for",
    # Settings
    "GSettingsStore",
    "MemorySettingsStore",
    "SettingsStore",
    "apply_snapshot",
    "build_snapshot",
    # Types
    "CONFIG_BACKUP_PATH",
    "BackupSnapshot",
    "ChangeSetEntry",
    "Encoding",
    "EngineStatus",
    "OutcomeStatus",
    "RemoteChange",
    "RestoreReport",
    "SyncOutcome",
    "SyncTask",
    "UploadReport",
    # Errors
    "AuthenticationError",
    "BackendError",
    "ConfigurationError",
    "CorruptContentError",
    "DispatcherStoppedError",
    "SyncError",
    "SyncInProgressError",
]
