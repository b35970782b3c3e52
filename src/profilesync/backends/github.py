"""GitHub storage backend.

Writes go through the Git data API so a batch lands as one commit:
blobs, then a tree on top of the current tree, then a commit, then a
ref update. Polling uses a conditional GET on the commit list.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
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
from profilesync.sync.tokens import COMMITS_TOKEN
from profilesync.sync.types import AuthenticationError, BackendError, Encoding, SyncError

if TYPE_CHECKING:
    from profilesync.core.config import SyncConfig
    from profilesync.sync.types import ChangeSetEntry

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
FALLBACK_BRANCH = "main"


@dataclass(frozen=True)
class GitHubCredentials:
    """Credentials for a GitHub repository."""

    username: str
    repo: str
    token: str = field(repr=False)
    branch: str = ""
    api_url: str = DEFAULT_API_URL

    @property
    def is_complete(self) -> bool:
        return bool(self.username and self.repo and self.token)

    @property
    def repo_url(self) -> str:
        return f"{self.api_url}/repos/{self.username}/{self.repo}"


class GitHubBackend(StorageBackend):
    """Storage backend using the GitHub REST API."""

    name = "GitHub"
    token_key = COMMITS_TOKEN

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # (username, repo) -> resolved branch
        self._branches: dict[tuple[str, str], str] = {}

    def get_credentials(self, config: SyncConfig) -> GitHubCredentials | None:
        creds = GitHubCredentials(
            username=config.github_username,
            repo=config.github_repo,
            token=config.get_secret("github_token"),
            branch=config.github_branch,
            api_url=config.github_api_url or DEFAULT_API_URL,
        )
        return creds if creds.is_complete else None

    def _headers(self, creds: GitHubCredentials, etag: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"token {creds.token}",
            "Accept": "application/vnd.github.v3+json",
        }
        if etag:
            headers["If-None-Match"] = etag
        return headers

    async def _api(
        self,
        method: str,
        url: str,
        creds: GitHubCredentials,
        json: Any = None,
        etag: str | None = None,
    ) -> httpx.Response:
        response = await self._request(method, url, headers=self._headers(creds, etag), json=json)
        self._raise_for_auth(response)
        return response

    # === Branch resolution ===

    async def resolve_branch(self, creds: GitHubCredentials) -> str:
        """Get the branch to write to.

        Uses the configured branch, else the repository's default branch,
        else "main". The result is cached for the session.
        """
        if creds.branch:
            return creds.branch

        key = (creds.username, creds.repo)
        if key in self._branches:
            return self._branches[key]

        branch = FALLBACK_BRANCH
        try:
            response = await self._api("GET", creds.repo_url, creds)
            if response.status_code == 200:
                branch = response.json().get("default_branch") or FALLBACK_BRANCH
            else:
                logger.warning(
                    "Could not read repository info (%d), using branch %s",
                    response.status_code,
                    branch,
                )
        except BackendError as e:
            if isinstance(e, AuthenticationError):
                raise
            logger.warning("Could not detect default branch, using %s: %s", branch, e)

        self._branches[key] = branch
        return branch

    # === Upload ===

    async def upload_batch(
        self, changes: list[ChangeSetEntry], credentials: GitHubCredentials
    ) -> UploadResult:
        """Upload changes as a single commit.

        Raises:
            BackendError: If no blob could be created or the commit failed.
        """
        if not changes:
            return UploadResult()

        creds = credentials
        branch = await self.resolve_branch(creds)

        # 1. Current commit, or none for an empty repository
        ref_response = await self._api("GET", f"{creds.repo_url}/git/ref/heads/{branch}", creds)
        parent_sha: str | None
        if ref_response.status_code == 200:
            parent_sha = ref_response.json()["object"]["sha"]
        elif ref_response.status_code in (404, 409):
            logger.info("Repository branch %s is empty, creating initial commit", branch)
            parent_sha = None
        else:
            raise BackendError(
                f"Failed to get current commit: {ref_response.status_code}",
                ref_response.status_code,
            )

        # 2. Base tree
        base_tree: str | None = None
        if parent_sha:
            commit_response = await self._api(
                "GET", f"{creds.repo_url}/git/commits/{parent_sha}", creds
            )
            if commit_response.status_code != 200:
                raise BackendError(
                    f"Failed to get current tree: {commit_response.status_code}",
                    commit_response.status_code,
                )
            base_tree = commit_response.json()["tree"]["sha"]

        # 3. Blobs, created concurrently through the dispatcher
        result = UploadResult()
        tree_entries: list[dict[str, str]] = []
        blob_shas = await self._create_blobs(changes, creds)
        for change, sha in zip(changes, blob_shas):
            if sha is None:
                result.failed.append(change.remote_path)
                continue
            tree_entries.append({
                "path": change.remote_path,
                "mode": change.mode or "100644",
                "type": "blob",
                "sha": sha,
            })

        if not tree_entries:
            raise BackendError("No blobs were created successfully")

        # 4. Tree
        tree_data: dict[str, Any] = {"tree": tree_entries}
        if base_tree:
            tree_data["base_tree"] = base_tree
        tree_response = await self._api(
            "POST", f"{creds.repo_url}/git/trees", creds, json=tree_data
        )
        if tree_response.status_code not in (200, 201):
            raise BackendError(
                f"Failed to create tree: {tree_response.status_code}", tree_response.status_code
            )
        tree_sha = tree_response.json()["sha"]

        # 5. Commit
        timestamp = datetime.now(timezone.utc).isoformat()
        commit_data = {
            "message": f"Batch sync {len(tree_entries)} files - {timestamp}",
            "tree": tree_sha,
            "parents": [parent_sha] if parent_sha else [],
        }
        commit_response = await self._api(
            "POST", f"{creds.repo_url}/git/commits", creds, json=commit_data
        )
        if commit_response.status_code not in (200, 201):
            raise BackendError(
                f"Failed to create commit: {commit_response.status_code}",
                commit_response.status_code,
            )
        commit_sha: str = commit_response.json()["sha"]

        # 6. Move the branch
        if parent_sha:
            ref_update = await self._api(
                "PATCH",
                f"{creds.repo_url}/git/refs/heads/{branch}",
                creds,
                json={"sha": commit_sha, "force": False},
            )
        else:
            ref_update = await self._api(
                "POST",
                f"{creds.repo_url}/git/refs",
                creds,
                json={"ref": f"refs/heads/{branch}", "sha": commit_sha},
            )
        if ref_update.status_code not in (200, 201):
            raise BackendError(
                f"Failed to update branch {branch}: {ref_update.status_code}",
                ref_update.status_code,
            )

        self.clear_change_cache()
        result.uploaded = [entry["path"] for entry in tree_entries]
        result.revision = commit_sha
        logger.info("Uploaded %d files in commit %s", len(tree_entries), commit_sha[:7])
        return result

    async def _create_blobs(
        self, changes: list[ChangeSetEntry], creds: GitHubCredentials
    ) -> list[str | None]:
        """Create one blob per change. Failed blobs yield None."""
        async def create(change: ChangeSetEntry) -> str | None:
            try:
                response = await self._api(
                    "POST", f"{creds.repo_url}/git/blobs", creds, json=_blob_body(change)
                )
            except AuthenticationError:
                raise
            except SyncError as e:
                logger.error("Error creating blob for %s: %s", change.remote_path, e)
                return None
            if response.status_code not in (200, 201):
                logger.error(
                    "Failed to create blob for %s: %d", change.remote_path, response.status_code
                )
                return None
            sha: str = response.json()["sha"]
            logger.debug("Created blob for %s: %s", change.remote_path, sha)
            return sha

        return list(await asyncio.gather(*(create(change) for change in changes)))

    # === Download ===

    async def _get_contents(self, path: str, creds: GitHubCredentials) -> httpx.Response:
        url = f"{creds.repo_url}/contents/{path}"
        if creds.branch:
            url = f"{url}?ref={creds.branch}"
        return await self._api("GET", url, creds)

    async def download_file(self, path: str, credentials: GitHubCredentials) -> DownloadResult:
        response = await self._get_contents(path, credentials)
        if response.status_code != 200:
            return DownloadResult(ok=False, status=response.status_code)

        data = response.json()
        if not isinstance(data, dict) or "content" not in data:
            return DownloadResult(ok=False, status=response.status_code)
        try:
            content = base64.b64decode(data["content"])
        except (binascii.Error, ValueError) as e:
            raise BackendError(f"Invalid content encoding for {path}: {e}") from e
        return DownloadResult(ok=True, status=200, content=content)

    async def download_binary_file(self, path: str, credentials: GitHubCredentials) -> bytes:
        response = await self._get_contents(path, credentials)
        if response.status_code != 200:
            raise BackendError(
                f"Failed to get file info for {path}: {response.status_code}",
                response.status_code,
            )
        data = response.json()
        if not isinstance(data, dict):
            # Directories come back as a list of entries
            raise BackendError(f"{path} is not a file")

        download_url = data.get("download_url")
        if download_url:
            try:
                raw = await self._request(
                    "GET", download_url, headers={"Authorization": f"token {credentials.token}"}
                )
                if raw.status_code == 200:
                    return raw.content
                logger.warning("Binary download of %s failed: %d", path, raw.status_code)
            except BackendError as e:
                logger.warning("Binary download of %s failed, using API content: %s", path, e)

        if data.get("content"):
            try:
                return base64.b64decode(data["content"])
            except (binascii.Error, ValueError) as e:
                raise BackendError(f"Invalid content encoding for {path}: {e}") from e
        raise BackendError(f"No content available for {path}")

    async def list_directory(self, path: str, credentials: GitHubCredentials) -> ListResult:
        response = await self._get_contents(path, credentials)
        if response.status_code != 200:
            return ListResult(ok=False, status=response.status_code)

        items = response.json()
        if not isinstance(items, list):
            return ListResult(ok=True, status=200)
        files = [
            RemoteEntry(
                name=item["name"],
                type=item.get("type", "file"),
                locator=item.get("download_url"),
            )
            for item in items
        ]
        return ListResult(ok=True, status=200, files=files)

    # === Change detection ===

    async def _poll(self, credentials: GitHubCredentials) -> PollResult:
        cached = self._tokens.get(COMMITS_TOKEN)
        logger.debug("Polling commits %s", "with ETag" if cached else "without ETag")

        response = await self._api(
            "GET", f"{credentials.repo_url}/commits?per_page=1", credentials, etag=cached
        )
        if response.status_code == 304:
            return PollResult(has_changes=False, not_modified=True, revision=cached)
        if response.status_code != 200:
            raise BackendError(f"Commit poll failed: {response.status_code}", response.status_code)

        etag = response.headers.get("ETag")
        self._tokens.set(COMMITS_TOKEN, etag)

        revision = None
        commits = response.json()
        if isinstance(commits, list) and commits:
            revision = commits[0].get("sha")
        return PollResult(has_changes=cached is not None, revision=revision or etag)

    def clear_change_cache(self) -> None:
        self._tokens.clear(COMMITS_TOKEN)

    async def cleanup(self) -> None:
        self._branches.clear()
        await super().cleanup()


def _blob_body(change: ChangeSetEntry) -> dict[str, str]:
    """Build the create-blob request body for a change."""
    if change.encoding is Encoding.BASE64:
        return {"content": change.content.decode("ascii"), "encoding": "base64"}
    try:
        return {"content": change.content.decode("utf-8"), "encoding": "utf-8"}
    except UnicodeDecodeError:
        return {"content": base64.b64encode(change.content).decode("ascii"), "encoding": "base64"}
