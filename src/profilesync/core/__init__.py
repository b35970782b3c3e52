"""Core module - Shared configuration and types."""

from profilesync.core.config import (
    DEFAULT_SCHEMAS,
    KEYRING_SERVICE,
    SECRET_FIELDS,
    SyncConfig,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
    store_secret,
)
from profilesync.core.types import BackendKind, PollOutcome, SyncState

__all__ = [
    # Config
    "DEFAULT_SCHEMAS",
    "KEYRING_SERVICE",
    "SECRET_FIELDS",
    "SyncConfig",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
    "store_secret",
    # Types
    "BackendKind",
    "PollOutcome",
    "SyncState",
]
