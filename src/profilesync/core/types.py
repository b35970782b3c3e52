"""Shared types for profilesync.

This module defines enums used by the engine, the backends and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """Overall state of the sync engine.

    Used by the engine status snapshot and by the CLI status display.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


class PollOutcome(str, Enum):
    """Result of the last remote change poll.

    ERROR is kept distinct from NO_CHANGE: a failed poll says nothing
    about the remote state.
    """

    UNKNOWN = "unknown"
    NO_CHANGE = "no_change"
    CHANGED = "changed"
    ERROR = "error"


class BackendKind(str, Enum):
    """Supported storage backends."""

    GITHUB = "github"
    WEBDAV = "webdav"
    GDRIVE = "gdrive"
