"""Storage backends - Remote stores for settings backups."""

from __future__ import annotations

from typing import TYPE_CHECKING

from profilesync.backends.base import (
    Credentials,
    DownloadResult,
    ListResult,
    PollResult,
    RemoteEntry,
    StorageBackend,
    UploadResult,
)
from profilesync.backends.gdrive import DriveCredentials, GoogleDriveBackend
from profilesync.backends.github import GitHubBackend, GitHubCredentials
from profilesync.backends.webdav import WebDAVBackend, WebDAVCredentials
from profilesync.core.types import BackendKind
from profilesync.sync.types import ConfigurationError

if TYPE_CHECKING:
    from profilesync.sync.dispatcher import RequestDispatcher
    from profilesync.sync.tokens import ChangeTokenCache

BACKENDS: dict[BackendKind, type[StorageBackend]] = {
    BackendKind.GITHUB: GitHubBackend,
    BackendKind.WEBDAV: WebDAVBackend,
    BackendKind.GDRIVE: GoogleDriveBackend,
}


def create_backend(
    kind: str,
    dispatcher: RequestDispatcher,
    tokens: ChangeTokenCache,
    timeout: float = 30.0,
) -> StorageBackend:
    """Create a backend by name.

    Raises:
        ConfigurationError: If the name is not a known backend.
    """
    try:
        backend_cls = BACKENDS[BackendKind(kind)]
    except ValueError:
        names = ", ".join(k.value for k in BackendKind)
        raise ConfigurationError(f"Unknown backend '{kind}' (expected one of: {names})") from None
    return backend_cls(dispatcher, tokens, timeout=timeout)


__all__ = [
    "BACKENDS",
    # Base
    "Credentials",
    "DownloadResult",
    "ListResult",
    "PollResult",
    "RemoteEntry",
    "StorageBackend",
    "UploadResult",
    "create_backend",
    # Implementations
    "DriveCredentials",
    "GitHubBackend",
    "GitHubCredentials",
    "GoogleDriveBackend",
    "WebDAVBackend",
    "WebDAVCredentials",
]
