"""Google Drive storage backend.

Uses the Drive v3 REST API with an OAuth refresh token. Drive addresses
files by ID, so remote paths are resolved segment by segment below the
sync folder and cached for the session.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from profilesync.backends.base import (
    DownloadResult,
    ListResult,
    PollResult,
    RemoteEntry,
    StorageBackend,
    UploadResult,
)
from profilesync.sync.tokens import GDRIVE_CONFIG_TOKEN
from profilesync.sync.types import (
    CONFIG_BACKUP_PATH,
    AuthenticationError,
    BackendError,
    SyncError,
)

if TYPE_CHECKING:
    from profilesync.core.config import SyncConfig
    from profilesync.sync.types import ChangeSetEntry

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
FOLDER_MIME = "application/vnd.google-apps.folder"
DEFAULT_FOLDER = ".profilesync"

# Refresh the access token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class DriveCredentials:
    """OAuth client and refresh token for Google Drive."""

    client_id: str
    client_secret: str = field(repr=False)
    refresh_token: str = field(repr=False)
    folder_name: str = DEFAULT_FOLDER

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


def _quote_query(value: str) -> str:
    """Escape a string literal for a Drive search query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_multipart_body(metadata: dict[str, Any], content: bytes) -> tuple[bytes, str]:
    """Build a multipart/related upload body.

    Returns:
        Tuple of (body, content type header value).
    """
    boundary = f"profilesync_{uuid.uuid4().hex}"
    preamble = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode("utf-8")
    epilogue = f"\r\n--{boundary}--".encode("utf-8")
    return preamble + content + epilogue, f"multipart/related; boundary={boundary}"


class GoogleDriveBackend(StorageBackend):
    """Storage backend using the Google Drive v3 API."""

    name = "Google Drive"
    token_key = GDRIVE_CONFIG_TOKEN

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._access_token: str | None = None
        self._token_expiry = 0.0
        self._root_id: str | None = None
        self._path_ids: dict[str, str] = {}

    def get_credentials(self, config: SyncConfig) -> DriveCredentials | None:
        creds = DriveCredentials(
            client_id=config.gdrive_client_id,
            client_secret=config.get_secret("gdrive_client_secret"),
            refresh_token=config.get_secret("gdrive_refresh_token"),
            folder_name=config.gdrive_folder_name or DEFAULT_FOLDER,
        )
        return creds if creds.is_complete else None

    # === Token management ===

    def _token_valid(self) -> bool:
        return (
            self._access_token is not None
            and time.monotonic() < self._token_expiry - TOKEN_EXPIRY_MARGIN
        )

    def _drop_access_token(self) -> None:
        self._access_token = None
        self._token_expiry = 0.0

    async def _refresh_access_token(self, creds: DriveCredentials) -> None:
        """Exchange the refresh token for a new access token.

        Raises:
            AuthenticationError: If the refresh token was revoked.
            BackendError: If the token endpoint failed.
        """
        response = await self._request(
            "POST",
            TOKEN_URL,
            data={
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "refresh_token": creds.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code != 200:
            self._drop_access_token()
            try:
                error = response.json().get("error")
            except ValueError:
                error = None
            if error == "invalid_grant":
                raise AuthenticationError(
                    "Google Drive refresh token is invalid or revoked", response.status_code
                )
            raise BackendError(
                f"Token refresh failed: {response.status_code}", response.status_code
            )

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expiry = time.monotonic() + float(data.get("expires_in", 3600))
        logger.debug("Access token refreshed")

    async def _drive(
        self, method: str, url: str, creds: DriveCredentials, **kwargs: Any
    ) -> httpx.Response:
        """Send an authorized request, refreshing the token once on 401."""
        if not self._token_valid():
            await self._refresh_access_token(creds)

        response = await self._send(method, url, **kwargs)
        if response.status_code == 401:
            logger.info("Got 401, refreshing access token and retrying")
            self._drop_access_token()
            await self._refresh_access_token(creds)
            response = await self._send(method, url, **kwargs)
            if response.status_code == 401:
                self._drop_access_token()
                raise AuthenticationError("Google Drive rejected the access token", 401)
        return response

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {self._access_token}"
        return await self._request(method, url, headers=headers, **kwargs)

    # === Folder and path resolution ===

    async def _search(self, query: str, creds: DriveCredentials) -> list[dict[str, Any]]:
        response = await self._drive(
            "GET",
            f"{DRIVE_API_BASE}/files",
            creds,
            params={"q": query, "fields": "files(id,name,mimeType)"},
        )
        if response.status_code != 200:
            raise BackendError(f"File search failed: {response.status_code}", response.status_code)
        files: list[dict[str, Any]] = response.json().get("files", [])
        return files

    async def _create_folder(
        self, name: str, parent_id: str | None, creds: DriveCredentials
    ) -> str:
        metadata: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            metadata["parents"] = [parent_id]
        response = await self._drive("POST", f"{DRIVE_API_BASE}/files", creds, json=metadata)
        if response.status_code not in (200, 201):
            raise BackendError(
                f"Failed to create folder '{name}': {response.status_code}", response.status_code
            )
        folder_id: str = response.json()["id"]
        return folder_id

    async def ensure_root_folder(self, creds: DriveCredentials) -> str:
        """Find or create the sync folder in My Drive."""
        if self._root_id:
            return self._root_id

        query = (
            f"name='{_quote_query(creds.folder_name)}' and mimeType='{FOLDER_MIME}' "
            "and 'root' in parents and trashed=false"
        )
        found = await self._search(query, creds)
        if found:
            self._root_id = found[0]["id"]
            logger.debug("Found sync folder %s", self._root_id)
        else:
            self._root_id = await self._create_folder(creds.folder_name, None, creds)
            logger.info("Created sync folder %s", creds.folder_name)
        return self._root_id

    async def resolve_path(
        self, path: str, creds: DriveCredentials, create_folders: bool = False
    ) -> str | None:
        """Resolve a remote path to a file ID.

        Args:
            path: Path relative to the sync folder.
            creds: Drive credentials.
            create_folders: Create every missing segment as a folder. Only
                used for directory paths.

        Returns:
            The file ID, or None if the path does not exist.
        """
        path = path.strip("/")
        if path in self._path_ids:
            return self._path_ids[path]

        parent_id = await self.ensure_root_folder(creds)
        if not path:
            return parent_id

        segments = path.split("/")
        current = ""
        for segment in segments:
            current = f"{current}/{segment}" if current else segment
            if current in self._path_ids:
                parent_id = self._path_ids[current]
                continue

            query = f"name='{_quote_query(segment)}' and '{parent_id}' in parents and trashed=false"
            found = await self._search(query, creds)
            if found:
                parent_id = found[0]["id"]
                self._path_ids[current] = parent_id
                continue

            if not create_folders:
                return None
            try:
                parent_id = await self._create_folder(segment, parent_id, creds)
            except BackendError as e:
                if e.status_code == 404:
                    self._invalidate(current.rpartition("/")[0])
                raise
            self._path_ids[current] = parent_id
            logger.debug("Created folder %s", current)

        return parent_id

    def _invalidate(self, path: str) -> None:
        """Forget the cached ID of path and of everything below it."""
        path = path.strip("/")
        if not path:
            logger.debug("Cached sync folder ID is stale")
            self._root_id = None
            self._path_ids.clear()
            return
        prefix = f"{path}/"
        for cached in [p for p in self._path_ids if p == path or p.startswith(prefix)]:
            del self._path_ids[cached]

    # === Upload ===

    async def upload_batch(
        self, changes: list[ChangeSetEntry], credentials: DriveCredentials
    ) -> UploadResult:
        result = UploadResult()
        if not changes:
            return result

        await self.ensure_root_folder(credentials)
        for change in changes:
            try:
                uploaded = await self._upload_one(change, credentials)
            except AuthenticationError:
                raise
            except SyncError as e:
                logger.error("Error uploading %s: %s", change.remote_path, e)
                uploaded = False
            if uploaded:
                result.uploaded.append(change.remote_path)
            else:
                result.failed.append(change.remote_path)

        logger.info("Uploaded %d/%d files", len(result.uploaded), len(changes))
        return result

    async def _upload_one(self, change: ChangeSetEntry, creds: DriveCredentials) -> bool:
        path = change.remote_path
        parent_path, _, file_name = path.rpartition("/")
        content = change.payload()

        existing_id = await self.resolve_path(path, creds)
        if existing_id:
            body, content_type = build_multipart_body({}, content)
            response = await self._drive(
                "PATCH",
                f"{DRIVE_UPLOAD_BASE}/files/{existing_id}",
                creds,
                params={"uploadType": "multipart", "fields": "id,modifiedTime"},
                content=body,
                headers={"Content-Type": content_type},
            )
            if response.status_code == 200:
                self._record_upload(path, response.json())
                logger.debug("Updated %s", path)
                return True
            if response.status_code != 404:
                logger.error("Failed to update %s: HTTP %d", path, response.status_code)
                return False
            # File was deleted remotely
            logger.debug("Cached ID for %s is stale, creating the file", path)
            self._invalidate(path)

        parent_id = await self.resolve_path(parent_path, creds, create_folders=True)

        body, content_type = build_multipart_body(
            {"name": file_name, "parents": [parent_id]}, content
        )
        response = await self._drive(
            "POST",
            f"{DRIVE_UPLOAD_BASE}/files",
            creds,
            params={"uploadType": "multipart", "fields": "id,modifiedTime"},
            content=body,
            headers={"Content-Type": content_type},
        )
        if response.status_code not in (200, 201):
            if response.status_code == 404:
                self._invalidate(parent_path)
            logger.error("Failed to create %s: HTTP %d", path, response.status_code)
            return False

        data = response.json()
        self._path_ids[path] = data["id"]
        self._record_upload(path, data)
        logger.debug("Created %s: %s", path, data["id"])
        return True

    def _record_upload(self, path: str, data: dict[str, Any]) -> None:
        if path == CONFIG_BACKUP_PATH and data.get("modifiedTime"):
            self._tokens.set(GDRIVE_CONFIG_TOKEN, data["modifiedTime"])

    # === Download ===

    async def _get_media(self, path: str, creds: DriveCredentials) -> httpx.Response | None:
        file_id = await self.resolve_path(path, creds)
        if not file_id:
            return None
        response = await self._drive(
            "GET", f"{DRIVE_API_BASE}/files/{file_id}", creds, params={"alt": "media"}
        )
        if response.status_code == 404:
            self._invalidate(path)
        return response

    async def download_file(self, path: str, credentials: DriveCredentials) -> DownloadResult:
        response = await self._get_media(path, credentials)
        if response is None:
            return DownloadResult(ok=False, status=404)
        if response.status_code != 200:
            if response.status_code != 404:
                logger.error("Download failed for %s: HTTP %d", path, response.status_code)
            return DownloadResult(ok=False, status=response.status_code)
        return DownloadResult(ok=True, status=200, content=response.content)

    async def download_binary_file(self, path: str, credentials: DriveCredentials) -> bytes:
        response = await self._get_media(path, credentials)
        if response is None:
            raise BackendError(f"File not found: {path}", 404)
        if response.status_code != 200:
            raise BackendError(
                f"Binary download failed for {path}: {response.status_code}",
                response.status_code,
            )
        return response.content

    async def list_directory(self, path: str, credentials: DriveCredentials) -> ListResult:
        parent_id = await self.resolve_path(path, credentials)
        if not parent_id:
            return ListResult(ok=False, status=404)

        response = await self._drive(
            "GET",
            f"{DRIVE_API_BASE}/files",
            credentials,
            params={
                "q": f"'{parent_id}' in parents and trashed=false",
                "fields": "files(id,name,mimeType)",
            },
        )
        if response.status_code != 200:
            if response.status_code == 404:
                self._invalidate(path)
            return ListResult(ok=False, status=response.status_code)

        files = [
            RemoteEntry(
                name=item["name"],
                type="dir" if item.get("mimeType") == FOLDER_MIME else "file",
                locator=item["id"],
            )
            for item in response.json().get("files", [])
        ]
        return ListResult(ok=True, status=200, files=files)

    # === Change detection ===

    async def _poll(self, credentials: DriveCredentials) -> PollResult:
        file_id = await self.resolve_path(CONFIG_BACKUP_PATH, credentials)
        if not file_id:
            logger.debug("No backup on Drive yet")
            return PollResult(has_changes=False)

        response = await self._drive(
            "GET",
            f"{DRIVE_API_BASE}/files/{file_id}",
            credentials,
            params={"fields": "modifiedTime"},
        )
        if response.status_code == 404:
            self._invalidate(CONFIG_BACKUP_PATH)
            return PollResult(has_changes=False)
        if response.status_code != 200:
            raise BackendError(f"Poll failed: {response.status_code}", response.status_code)

        modified = response.json().get("modifiedTime")
        cached = self._tokens.get(GDRIVE_CONFIG_TOKEN)
        self._tokens.set(GDRIVE_CONFIG_TOKEN, modified)

        # No baseline means the remote state is unknown: reconcile once
        has_changes = cached is None or cached != modified
        if has_changes and cached is not None:
            logger.info("Backup modifiedTime changed from %s to %s", cached, modified)
        return PollResult(has_changes=has_changes, revision=modified)

    def clear_change_cache(self) -> None:
        self._tokens.clear(GDRIVE_CONFIG_TOKEN)
        self._path_ids.clear()
        self._root_id = None

    async def cleanup(self) -> None:
        self._drop_access_token()
        self._path_ids.clear()
        self._root_id = None
        await super().cleanup()
