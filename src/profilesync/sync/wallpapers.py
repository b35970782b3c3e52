"""Wallpaper image sync.

Wallpaper settings hold ``file://`` URIs. The images are uploaded as
base64 entries under ``wallpapers/`` and, on restore, written into a local
wallpaper directory that the restored URIs are rewritten to point at.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlparse

from profilesync.sync.types import (
    BackendError,
    ChangeSetEntry,
    CorruptContentError,
    Encoding,
)

if TYPE_CHECKING:
    from profilesync.backends.base import StorageBackend
    from profilesync.sync.types import BackupSnapshot

logger = logging.getLogger(__name__)

WALLPAPER_PREFIX = "wallpapers"

WALLPAPER_KEYS = frozenset({
    ("org.gnome.desktop.background", "picture-uri"),
    ("org.gnome.desktop.background", "picture-uri-dark"),
    ("org.gnome.desktop.screensaver", "picture-uri"),
})
WALLPAPER_SCHEMAS = ["org.gnome.desktop.background", "org.gnome.desktop.screensaver"]

IMAGE_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp",
    ".tiff", ".tif", ".svg", ".ico", ".avif", ".heic",
})

MAX_WALLPAPER_SIZE = 50 * 1024 * 1024
MIN_DOWNLOAD_SIZE = 50

JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def is_wallpaper_key(schema: str, key: str) -> bool:
    return (schema, key) in WALLPAPER_KEYS


def _unquote_value(value: str) -> str:
    """Strip GVariant string quoting."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value


def uri_to_path(value: str) -> Path | None:
    """Get the local image path of a wallpaper setting value.

    Returns:
        The path, or None if the value is not a file URI of an image.
    """
    uri = _unquote_value(value)
    if not uri.startswith("file://"):
        return None
    path = Path(unquote(urlparse(uri).path))
    if path.suffix.lower() not in IMAGE_EXTENSIONS:
        return None
    return path


def collect_wallpaper_entries(snapshot: BackupSnapshot) -> list[ChangeSetEntry]:
    """Build upload entries for the wallpapers referenced by a snapshot.

    Missing, empty or oversized images are skipped.
    """
    entries: dict[str, ChangeSetEntry] = {}
    for schema, key in sorted(WALLPAPER_KEYS):
        value = snapshot.settings.get(schema, {}).get(key)
        if not value:
            continue
        path = uri_to_path(value)
        if path is None or path.name in entries:
            continue

        try:
            size = path.stat().st_size
        except OSError:
            logger.debug("Wallpaper %s does not exist", path)
            continue
        if size == 0 or size > MAX_WALLPAPER_SIZE:
            logger.warning("Skipping wallpaper %s: unreasonable size (%d bytes)", path, size)
            continue

        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning("Could not read wallpaper %s: %s", path, e)
            continue
        entries[path.name] = ChangeSetEntry(
            remote_path=f"{WALLPAPER_PREFIX}/{path.name}",
            content=base64.b64encode(data),
            encoding=Encoding.BASE64,
        )
    return list(entries.values())


def validate_wallpaper(name: str, content: bytes) -> None:
    """Check that downloaded wallpaper bytes look like an image.

    Raises:
        CorruptContentError: If the content is too small or the header
            does not match the file extension.
    """
    if len(content) < MIN_DOWNLOAD_SIZE:
        raise CorruptContentError(f"Downloaded content too small for {name}: {len(content)} bytes")

    suffix = Path(name).suffix.lower()
    if suffix in (".jpg", ".jpeg") and not content.startswith(JPEG_MAGIC):
        raise CorruptContentError(f"Invalid JPEG header for {name}")
    if suffix == ".png" and not content.startswith(PNG_MAGIC):
        raise CorruptContentError(f"Invalid PNG header for {name}")


async def restore_wallpapers(
    backend: StorageBackend, credentials: Any, wallpaper_dir: Path
) -> list[str]:
    """Download remote wallpapers into wallpaper_dir.

    Each image is validated before it is written. One bad image does not
    stop the others.

    Returns:
        Names of the wallpapers written.
    """
    listing = await backend.list_directory(WALLPAPER_PREFIX, credentials)
    if not listing.ok:
        if listing.status != 404:
            logger.warning("Failed to list wallpapers: %d", listing.status)
        return []

    restored: list[str] = []
    for entry in listing.files:
        if not entry.is_file:
            continue
        name = Path(entry.name).name
        try:
            content = await backend.download_binary_file(f"{WALLPAPER_PREFIX}/{name}", credentials)
            validate_wallpaper(name, content)
        except (BackendError, CorruptContentError) as e:
            logger.error("Failed to restore wallpaper %s: %s", name, e)
            continue

        wallpaper_dir.mkdir(parents=True, exist_ok=True)
        target = wallpaper_dir / name
        target.write_bytes(content)
        restored.append(name)
        logger.debug("Restored wallpaper %s (%d bytes)", name, len(content))
    return restored


def rewrite_wallpaper_uri(schema: str, key: str, value: str, wallpaper_dir: Path) -> str:
    """Point a wallpaper setting at the local copy of its image.

    Values of other keys, non-file URIs and images with no local copy
    are returned unchanged.
    """
    if not is_wallpaper_key(schema, key):
        return value
    path = uri_to_path(value)
    if path is None:
        return value
    local = wallpaper_dir / path.name
    if not local.exists():
        return value
    return f"'{local.as_uri()}'"
