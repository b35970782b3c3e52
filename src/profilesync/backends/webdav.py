"""WebDAV storage backend.

Works with any WebDAV server; the default DAV path follows the Nextcloud
layout (``/remote.php/dav/files/<user>``). Uploads are sequential and
best-effort: WebDAV has no batch primitive, so each file is a PUT.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote, urlparse

import httpx

from profilesync.backends.base import (
    DownloadResult,
    ListResult,
    PollResult,
    RemoteEntry,
    StorageBackend,
    UploadResult,
)
from profilesync.sync.tokens import WEBDAV_CONFIG_TOKEN
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

NEXTCLOUD_DAV_PATH = "/remote.php/dav/files"
DEFAULT_FOLDER = ".profilesync"

DAV_NS = "{DAV:}"

PROPFIND_LIST_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <d:getcontentlength/>
    <d:getlastmodified/>
    <d:getetag/>
  </d:prop>
</d:propfind>"""

PROPFIND_ETAG_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:getetag/>
  </d:prop>
</d:propfind>"""

# MKCOL: 201 created, 405 already exists
MKCOL_OK = (201, 405)
PUT_OK = (200, 201, 204)


@dataclass(frozen=True)
class WebDAVCredentials:
    """Credentials for a WebDAV server."""

    server_url: str
    username: str
    password: str = field(repr=False)
    folder: str = DEFAULT_FOLDER
    dav_path: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.server_url and self.username and self.password)

    @property
    def base_url(self) -> str:
        """URL of the sync folder."""
        dav_path = self.dav_path or f"{NEXTCLOUD_DAV_PATH}/{quote(self.username)}"
        folder = quote(self.folder.strip("/"))
        return f"{self.server_url.rstrip('/')}/{dav_path.strip('/')}/{folder}"

    def url_for(self, remote_path: str = "") -> str:
        """URL of a path below the sync folder."""
        remote_path = remote_path.strip("/")
        if not remote_path:
            return self.base_url
        return f"{self.base_url}/{quote(remote_path)}"


class WebDAVBackend(StorageBackend):
    """Storage backend speaking WebDAV."""

    name = "WebDAV"
    token_key = WEBDAV_CONFIG_TOKEN

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # Collection URLs known to exist
        self._collections: set[str] = set()

    def get_credentials(self, config: SyncConfig) -> WebDAVCredentials | None:
        creds = WebDAVCredentials(
            server_url=config.webdav_url.rstrip("/"),
            username=config.webdav_username,
            password=config.get_secret("webdav_password"),
            folder=config.webdav_folder or DEFAULT_FOLDER,
            dav_path=config.webdav_dav_path,
        )
        return creds if creds.is_complete else None

    async def _dav(
        self,
        method: str,
        url: str,
        creds: WebDAVCredentials,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        response = await self._request(
            method,
            url,
            auth=(creds.username, creds.password),
            content=content,
            headers=headers,
        )
        self._raise_for_auth(response)
        return response

    # === Collections ===

    async def _mkcol(self, url: str, creds: WebDAVCredentials) -> None:
        if url in self._collections:
            return
        response = await self._dav("MKCOL", url, creds)
        if response.status_code in MKCOL_OK:
            self._collections.add(url)
        else:
            logger.warning("MKCOL %s returned %d", url, response.status_code)

    async def ensure_collection(self, dir_path: str, creds: WebDAVCredentials) -> None:
        """Create the sync folder and dir_path below it, parent first."""
        await self._mkcol(creds.base_url, creds)
        current = ""
        for part in [p for p in dir_path.split("/") if p]:
            current = f"{current}/{part}" if current else part
            await self._mkcol(creds.url_for(current), creds)

    # === Upload ===

    async def upload_batch(
        self, changes: list[ChangeSetEntry], credentials: WebDAVCredentials
    ) -> UploadResult:
        result = UploadResult()
        if not changes:
            return result

        creds = credentials
        await self.ensure_collection("", creds)

        for change in changes:
            try:
                parent = change.remote_path.rpartition("/")[0]
                if parent:
                    await self.ensure_collection(parent, creds)
                response = await self._dav(
                    "PUT",
                    creds.url_for(change.remote_path),
                    creds,
                    content=change.payload(),
                    headers={"Content-Type": "application/octet-stream"},
                )
            except AuthenticationError:
                raise
            except SyncError as e:
                logger.error("Error uploading %s: %s", change.remote_path, e)
                result.failed.append(change.remote_path)
                continue

            if response.status_code in PUT_OK:
                result.uploaded.append(change.remote_path)
                logger.debug("Uploaded %s", change.remote_path)
            else:
                logger.error(
                    "Failed to upload %s: HTTP %d", change.remote_path, response.status_code
                )
                result.failed.append(change.remote_path)

        self.clear_change_cache()
        logger.info("Uploaded %d/%d files", len(result.uploaded), len(changes))
        return result

    # === Download ===

    async def download_file(self, path: str, credentials: WebDAVCredentials) -> DownloadResult:
        response = await self._dav("GET", credentials.url_for(path), credentials)
        if response.status_code != 200:
            if response.status_code != 404:
                logger.error("Download failed for %s: HTTP %d", path, response.status_code)
            return DownloadResult(ok=False, status=response.status_code)
        return DownloadResult(ok=True, status=200, content=response.content)

    async def download_binary_file(self, path: str, credentials: WebDAVCredentials) -> bytes:
        response = await self._dav("GET", credentials.url_for(path), credentials)
        if response.status_code != 200:
            raise BackendError(
                f"Binary download failed for {path}: {response.status_code}",
                response.status_code,
            )
        return response.content

    async def list_directory(self, path: str, credentials: WebDAVCredentials) -> ListResult:
        response = await self._dav(
            "PROPFIND",
            credentials.url_for(path),
            credentials,
            content=PROPFIND_LIST_BODY,
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "1"},
        )
        if response.status_code not in (200, 207):
            return ListResult(ok=False, status=response.status_code)

        files = parse_propfind(response.text, credentials.base_url, path)
        return ListResult(ok=True, status=response.status_code, files=files)

    # === Change detection ===

    async def _poll(self, credentials: WebDAVCredentials) -> PollResult:
        url = credentials.url_for(CONFIG_BACKUP_PATH)
        cached = self._tokens.get(WEBDAV_CONFIG_TOKEN)

        headers = {"If-None-Match": cached} if cached else None
        response = await self._dav("HEAD", url, credentials, headers=headers)

        if response.status_code == 304:
            logger.debug("No remote changes (304 Not Modified)")
            return PollResult(has_changes=False, not_modified=True, revision=cached)

        if response.status_code == 404:
            logger.debug("No backup on server yet")
            return PollResult(has_changes=False)

        if response.status_code == 412:
            # Validator mismatch: the file changed. Fetch the fresh ETag.
            fresh = await self._dav("HEAD", url, credentials)
            etag: str | None = None
            if fresh.status_code == 200:
                etag = fresh.headers.get("ETag")
            else:
                logger.warning("HEAD after 412 returned %d", fresh.status_code)
            etag = etag or await self._propfind_etag(url, credentials)
            if not etag:
                raise BackendError("Could not read the new ETag of the backup", 412)
            self._tokens.set(WEBDAV_CONFIG_TOKEN, etag)
            return PollResult(has_changes=True, revision=etag)

        if response.status_code != 200:
            raise BackendError(f"HEAD failed: {response.status_code}", response.status_code)

        etag = response.headers.get("ETag") or await self._propfind_etag(url, credentials)
        if not etag:
            raise BackendError("Server returned no ETag for the backup")

        has_changes = cached is not None and cached != etag
        self._tokens.set(WEBDAV_CONFIG_TOKEN, etag)
        return PollResult(has_changes=has_changes, revision=etag)

    async def _propfind_etag(self, url: str, creds: WebDAVCredentials) -> str | None:
        """Read getetag of a single resource."""
        response = await self._dav(
            "PROPFIND",
            url,
            creds,
            content=PROPFIND_ETAG_BODY,
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "0"},
        )
        if response.status_code not in (200, 207):
            return None
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise BackendError(f"Invalid PROPFIND response: {e}") from e
        etag = root.findtext(f".//{DAV_NS}getetag")
        return etag.strip() if etag else None

    def clear_change_cache(self) -> None:
        self._tokens.clear(WEBDAV_CONFIG_TOKEN)

    async def cleanup(self) -> None:
        self._collections.clear()
        await super().cleanup()


def parse_propfind(xml_text: str, base_url: str, requested_path: str = "") -> list[RemoteEntry]:
    """Parse a Depth 1 PROPFIND multistatus into directory entries.

    Args:
        xml_text: Response body.
        base_url: URL of the sync folder.
        requested_path: Listed path relative to the sync folder.

    Returns:
        Entries below requested_path, without the collection itself.

    Raises:
        BackendError: If the body is not valid XML.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise BackendError(f"Invalid PROPFIND response: {e}") from e

    base_path = unquote(urlparse(base_url).path).rstrip("/")
    requested = requested_path.strip("/")

    entries: list[RemoteEntry] = []
    for response in root.iter(f"{DAV_NS}response"):
        href = response.findtext(f"{DAV_NS}href")
        if not href:
            continue
        href_path = unquote(urlparse(href).path)
        index = href_path.find(base_path)
        if index == -1:
            continue
        relative = href_path[index + len(base_path):].strip("/")
        if relative == requested:
            continue

        name = relative.rsplit("/", 1)[-1]
        if not name:
            continue
        is_collection = response.find(f".//{DAV_NS}resourcetype/{DAV_NS}collection") is not None
        entries.append(
            RemoteEntry(name=name, type="dir" if is_collection else "file", locator=href)
        )
    return entries
