"""Configuration for profilesync.

This module provides:
- SyncConfig: All user settings (what to sync, where, how often)
- get_config_dir / get_config_file: Location of the JSON config file
- load_config / save_config: Read and write the config file
- store_secret: Save a credential in the system keyring

Secrets (tokens, passwords) may be left out of the config file and kept in
the system keyring instead. SyncConfig.get_secret() checks the file first,
then the keyring.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "profilesync"
CONFIG_DIR_ENV = "PROFILESYNC_CONFIG_DIR"

# Fields that may be resolved from the keyring
SECRET_FIELDS = frozenset({
    "github_token",
    "webdav_password",
    "gdrive_client_secret",
    "gdrive_refresh_token",
})

DEFAULT_SCHEMAS = [
    "org.gnome.desktop.interface",
    "org.gnome.desktop.wm.preferences",
    "org.gnome.desktop.input-sources",
    "org.gnome.desktop.peripherals.touchpad",
    "org.gnome.shell",
]


@dataclass
class SyncConfig:
    """User configuration for the sync engine.

    Attributes:
        backend: Storage backend name ("github", "webdav" or "gdrive").
        schemas: Settings schemas included in the backup.
        sync_files: Individual files to sync (``~`` is expanded).
        sync_wallpapers: Whether wallpaper images are synced.
        wallpaper_dir: Where restored wallpapers are written.
        change_sync_delay: Seconds to wait after the last local change.
        poll_enabled: Whether the remote is polled for changes.
        poll_interval: Minutes between remote polls.
        auto_sync_remote: Apply remote changes as soon as they are detected.
        max_concurrency: Maximum concurrent HTTP requests.
        timeout: HTTP timeout in seconds.
    """

    backend: str = "github"
    schemas: list[str] = field(default_factory=lambda: list(DEFAULT_SCHEMAS))
    sync_files: list[str] = field(default_factory=list)
    sync_wallpapers: bool = False
    wallpaper_dir: str = "~/.local/share/profilesync/wallpapers"
    change_sync_delay: int = 5
    poll_enabled: bool = True
    poll_interval: int = 15
    auto_sync_remote: bool = False
    max_concurrency: int = 3
    timeout: float = 30.0

    # GitHub
    github_username: str = ""
    github_repo: str = ""
    github_branch: str = ""
    github_api_url: str = "https://api.github.com"
    github_token: str = field(default="", repr=False)

    # WebDAV / Nextcloud
    webdav_url: str = ""
    webdav_username: str = ""
    webdav_folder: str = ".profilesync"
    webdav_dav_path: str = ""
    webdav_password: str = field(default="", repr=False)

    # Google Drive
    gdrive_client_id: str = ""
    gdrive_folder_name: str = ".profilesync"
    gdrive_client_secret: str = field(default="", repr=False)
    gdrive_refresh_token: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        """Normalize URLs."""
        self.webdav_url = self.webdav_url.rstrip("/")
        self.github_api_url = self.github_api_url.rstrip("/")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create from a config file dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.debug("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return asdict(self)

    def get_secret(self, name: str) -> str:
        """Get a secret value from the config or the system keyring.

        Args:
            name: One of SECRET_FIELDS.

        Returns:
            The secret, or an empty string if it is not configured anywhere.
        """
        if name not in SECRET_FIELDS:
            raise KeyError(f"Not a secret field: {name}")

        value: str = getattr(self, name)
        if value:
            return value

        try:
            stored = keyring.get_password(KEYRING_SERVICE, name)
        except KeyringError as e:
            logger.debug("Keyring unavailable while reading %s: %s", name, e)
            return ""
        return stored or ""


def get_config_dir() -> Path:
    """Get the configuration directory.

    Returns:
        Path to ~/.profilesync, or $PROFILESYNC_CONFIG_DIR if set.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".profilesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> SyncConfig:
    """Load configuration from the config file (defaults if missing)."""
    config_file = get_config_file()
    if config_file.exists():
        return SyncConfig.from_dict(json.loads(config_file.read_text()))
    return SyncConfig()


def save_config(config: SyncConfig) -> None:
    """Save configuration to the config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config.to_dict(), indent=2))


def store_secret(name: str, value: str) -> None:
    """Store a secret in the system keyring.

    Raises:
        KeyError: If name is not a secret field.
        KeyringError: If no usable keyring backend is available.
    """
    if name not in SECRET_FIELDS:
        raise KeyError(f"Not a secret field: {name}")
    keyring.set_password(KEYRING_SERVICE, name, value)
