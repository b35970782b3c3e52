"""Storage backend interface.

This module provides:
- StorageBackend: Abstract base class for remote stores
- Credentials: Common interface of the per-backend credential dataclasses
- UploadResult, DownloadResult, ListResult, RemoteEntry, PollResult: Results

Every HTTP request a backend makes goes through the shared
RequestDispatcher. Not-found is returned as a result, never raised.
Transport failures are wrapped in BackendError.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

import httpx

from profilesync.core.types import PollOutcome
from profilesync.sync.types import AuthenticationError, BackendError, SyncError

if TYPE_CHECKING:
    from profilesync.core.config import SyncConfig
    from profilesync.sync.dispatcher import RequestDispatcher
    from profilesync.sync.tokens import ChangeTokenCache
    from profilesync.sync.types import ChangeSetEntry

logger = logging.getLogger(__name__)

__all__ = [
    "AuthenticationError",
    "BackendError",
    "Credentials",
    "DownloadResult",
    "ListResult",
    "PollResult",
    "RemoteEntry",
    "StorageBackend",
    "SyncError",
    "UploadResult",
]


class Credentials(Protocol):
    """Credentials for one backend."""

    @property
    def is_complete(self) -> bool:
        """Check that every required field is set."""
        ...


@dataclass
class UploadResult:
    """Result of upload_batch().

    Attributes:
        uploaded: Remote paths the backend confirmed as written.
        failed: Remote paths that could not be written.
        revision: Backend revision created by the upload (commit SHA).
    """

    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    revision: str | None = None


@dataclass
class DownloadResult:
    """Result of download_file()."""

    ok: bool
    status: int
    content: bytes | None = None

    @property
    def not_found(self) -> bool:
        """Check if the file does not exist remotely."""
        return self.status == 404

    def text(self) -> str:
        """Decode content as UTF-8."""
        if self.content is None:
            raise SyncError("No content downloaded")
        return self.content.decode("utf-8")


@dataclass
class RemoteEntry:
    """One entry of a remote directory listing.

    Attributes:
        name: Entry name (last path segment).
        type: "file" or "dir".
        locator: Backend-specific handle (download URL, href or file ID).
    """

    name: str
    type: str
    locator: str | None = None

    @property
    def is_file(self) -> bool:
        return self.type == "file"


@dataclass
class ListResult:
    """Result of list_directory()."""

    ok: bool
    status: int
    files: list[RemoteEntry] = field(default_factory=list)


@dataclass
class PollResult:
    """Result of poll_for_changes().

    Attributes:
        has_changes: Remote state differs from the cached token.
        not_modified: Server answered with a conditional 304.
        revision: New change token or revision, if known.
    """

    has_changes: bool
    not_modified: bool = False
    revision: str | None = None


class StorageBackend(ABC):
    """Base class for remote stores.

    Subclasses implement the HTTP protocol of one backend. The shared
    dispatcher bounds concurrency, the token cache holds poll validators.
    """

    name: ClassVar[str] = "backend"
    # Change token cache key of the poll validator
    token_key: ClassVar[str] = ""

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        tokens: ChangeTokenCache,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            dispatcher: Shared request dispatcher.
            tokens: Shared change token cache.
            timeout: HTTP timeout in seconds.
            client: HTTP client to use. One is created if not given.
        """
        self._dispatcher = dispatcher
        self._tokens = tokens
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def tokens(self) -> ChangeTokenCache:
        return self._tokens

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request through the dispatcher.

        Raises:
            BackendError: On transport failure.
        """
        client = self._get_client()
        try:
            return await self._dispatcher.submit(lambda: client.request(method, url, **kwargs))
        except httpx.HTTPError as e:
            raise BackendError(f"{self.name}: {method} request failed: {e}") from e

    @staticmethod
    def _raise_for_auth(response: httpx.Response) -> None:
        if response.status_code == 401:
            raise AuthenticationError("Credentials rejected", 401)

    # === Credentials ===

    @abstractmethod
    def get_credentials(self, config: SyncConfig) -> Credentials | None:
        """Build credentials from configuration.

        Returns:
            Credentials, or None if required settings are missing.
        """

    def has_valid_credentials(self, credentials: Credentials | None) -> bool:
        """Check that credentials are present and complete."""
        return credentials is not None and credentials.is_complete

    # === File operations ===

    @abstractmethod
    async def upload_batch(
        self, changes: list[ChangeSetEntry], credentials: Any
    ) -> UploadResult:
        """Write a batch of files to the remote store."""

    @abstractmethod
    async def download_file(self, path: str, credentials: Any) -> DownloadResult:
        """Download a file. A missing file is a 404 result, not an error."""

    @abstractmethod
    async def download_binary_file(self, path: str, credentials: Any) -> bytes:
        """Download a binary file.

        Raises:
            BackendError: If the file cannot be downloaded.
        """

    @abstractmethod
    async def list_directory(self, path: str, credentials: Any) -> ListResult:
        """List a remote directory."""

    # === Change detection ===

    async def poll_for_changes(self, credentials: Any) -> PollResult:
        """Check whether the remote changed since the last poll.

        Records the outcome in the token cache. A failed poll records
        ERROR and raises; it is never reported as "no changes".

        Raises:
            BackendError: If the poll request failed.
        """
        try:
            result = await self._poll(credentials)
        except SyncError:
            self._tokens.set_last_result(PollOutcome.ERROR)
            raise
        self._tokens.set_last_result(
            PollOutcome.CHANGED if result.has_changes else PollOutcome.NO_CHANGE
        )
        return result

    @abstractmethod
    async def _poll(self, credentials: Any) -> PollResult:
        """Backend-specific poll."""

    @abstractmethod
    def clear_change_cache(self) -> None:
        """Forget the poll validator after a local write."""

    async def cleanup(self) -> None:
        """Release the HTTP client and session caches."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
