"""Content hashing to skip unchanged uploads."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING

from profilesync.sync.types import CONFIG_BACKUP_PATH

if TYPE_CHECKING:
    from profilesync.sync.types import BackupSnapshot, ChangeSetEntry

logger = logging.getLogger(__name__)


def compute_content_hash(data: bytes) -> str:
    """Compute the SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


def snapshot_digest(snapshot: BackupSnapshot) -> str:
    """Digest of a snapshot's settings tree.

    The timestamp is left out so two snapshots of identical settings
    have the same digest.
    """
    canonical = json.dumps(snapshot.settings, sort_keys=True, separators=(",", ":"))
    return compute_content_hash(canonical.encode("utf-8"))


class ContentHashCache:
    """Map of remote path to the digest of the last confirmed upload.

    Only upload_batch() confirmations update the cache. Downloads never
    consult it.
    """

    def __init__(self) -> None:
        self._hashes: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._hashes)

    def __contains__(self, remote_path: object) -> bool:
        return remote_path in self._hashes

    def get(self, remote_path: str) -> str | None:
        """Get the cached digest for remote_path."""
        return self._hashes.get(remote_path)

    def is_unchanged(self, remote_path: str, digest: str) -> bool:
        """Check if digest matches the last confirmed upload of remote_path."""
        return self._hashes.get(remote_path) == digest

    def record(self, remote_path: str, digest: str) -> None:
        """Record a confirmed upload."""
        self._hashes[remote_path] = digest

    def clear(self) -> None:
        """Forget all digests."""
        if self._hashes:
            logger.debug("Clearing %d content hashes", len(self._hashes))
        self._hashes.clear()


def entry_digest(entry: ChangeSetEntry, snapshot: BackupSnapshot | None = None) -> str:
    """Digest used to decide whether entry needs uploading.

    Args:
        entry: The change set entry.
        snapshot: Snapshot the config backup entry was built from.

    Returns:
        Hex digest. For the config backup this covers the settings tree
        only, for everything else the encoded content.
    """
    if entry.remote_path == CONFIG_BACKUP_PATH and snapshot is not None:
        return snapshot_digest(snapshot)
    return compute_content_hash(entry.content)
