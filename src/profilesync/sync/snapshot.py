"""Settings snapshots.

This module provides:
- SettingsStore: Protocol for a schema/key/value settings store
- GSettingsStore: Store backed by the ``gsettings`` command line tool
- MemorySettingsStore: In-memory store for tests and dry runs
- build_snapshot / apply_snapshot: Convert between a store and a BackupSnapshot

Values are kept in their serialized text form (GVariant text for
gsettings) and passed back unchanged on restore.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Collection, Iterable
from typing import Protocol

from profilesync.sync.types import BackupSnapshot, RestoreReport, SyncError

logger = logging.getLogger(__name__)

GSETTINGS_TIMEOUT = 10.0


class SettingsError(SyncError):
    """Reading or writing a setting failed."""


class SettingsStore(Protocol):
    """Schema/key/value settings store."""

    def list_schemas(self) -> list[str]: ...

    def has_schema(self, schema: str) -> bool: ...

    def list_keys(self, schema: str) -> list[str]: ...

    def get_value(self, schema: str, key: str) -> str: ...

    def set_value(self, schema: str, key: str, value: str) -> None: ...


class GSettingsStore:
    """Settings store using the ``gsettings`` CLI."""

    def __init__(self, executable: str = "gsettings") -> None:
        self._executable = executable
        self._schemas: set[str] | None = None

    @staticmethod
    def is_available(executable: str = "gsettings") -> bool:
        """Check if the gsettings tool is installed."""
        return shutil.which(executable) is not None

    def _run(self, *args: str) -> str:
        try:
            result = subprocess.run(
                [self._executable, *args],
                capture_output=True,
                check=True,
                text=True,
                timeout=GSETTINGS_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise SettingsError(f"{self._executable} not found") from e
        except subprocess.CalledProcessError as e:
            raise SettingsError(
                f"gsettings {' '.join(args[:2])} failed: {e.stderr.strip()}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise SettingsError(f"gsettings {' '.join(args[:2])} timed out") from e
        return result.stdout

    def list_schemas(self) -> list[str]:
        if self._schemas is None:
            self._schemas = set(self._run("list-schemas").split())
        return sorted(self._schemas)

    def has_schema(self, schema: str) -> bool:
        return schema in set(self.list_schemas())

    def list_keys(self, schema: str) -> list[str]:
        return sorted(self._run("list-keys", schema).split())

    def get_value(self, schema: str, key: str) -> str:
        return self._run("get", schema, key).strip()

    def set_value(self, schema: str, key: str, value: str) -> None:
        self._run("set", schema, key, value)


class MemorySettingsStore:
    """Settings store kept in a dictionary."""

    def __init__(self, data: dict[str, dict[str, str]] | None = None) -> None:
        self.data: dict[str, dict[str, str]] = {
            schema: dict(keys) for schema, keys in (data or {}).items()
        }
        # (schema, key) pairs that fail on set_value
        self.read_only: set[tuple[str, str]] = set()

    def list_schemas(self) -> list[str]:
        return sorted(self.data)

    def has_schema(self, schema: str) -> bool:
        return schema in self.data

    def list_keys(self, schema: str) -> list[str]:
        return sorted(self.data.get(schema, {}))

    def get_value(self, schema: str, key: str) -> str:
        try:
            return self.data[schema][key]
        except KeyError:
            raise SettingsError(f"No such key: {schema} {key}") from None

    def set_value(self, schema: str, key: str, value: str) -> None:
        if schema not in self.data:
            raise SettingsError(f"No such schema: {schema}")
        if (schema, key) in self.read_only:
            raise SettingsError(f"Key is not writable: {schema} {key}")
        self.data[schema][key] = value


def build_snapshot(store: SettingsStore, schemas: Iterable[str]) -> BackupSnapshot:
    """Read the given schemas into a snapshot.

    Schemas missing from the store are skipped. A key that cannot be read
    is left out.
    """
    settings: dict[str, dict[str, str]] = {}
    for schema in schemas:
        if not store.has_schema(schema):
            logger.debug("Skipping missing schema %s", schema)
            continue
        values: dict[str, str] = {}
        for key in store.list_keys(schema):
            try:
                values[key] = store.get_value(schema, key)
            except SettingsError as e:
                logger.warning("Could not read %s %s: %s", schema, key, e)
        settings[schema] = values
    return BackupSnapshot.create(settings)


def apply_snapshot(
    store: SettingsStore,
    snapshot: BackupSnapshot,
    rewrite: Callable[[str, str, str], str] | None = None,
    skip: Collection[str] = (),
) -> RestoreReport:
    """Write a snapshot into the store, schema by schema.

    Args:
        store: Target settings store.
        snapshot: Snapshot to apply.
        rewrite: Optional hook mapping (schema, key, value) to the value
            to write. Used to point wallpaper URIs at local copies.
        skip: Schemas to leave untouched. They are reported as skipped.

    Returns:
        Report with applied and skipped schemas and key counts.
    """
    report = RestoreReport(found=True)
    for schema, values in snapshot.settings.items():
        if schema in skip:
            logger.debug("Schema %s excluded from restore", schema)
            report.schemas_skipped.append(schema)
            continue
        if not store.has_schema(schema):
            logger.info("Schema %s not installed, skipping", schema)
            report.schemas_skipped.append(schema)
            continue

        for key, value in values.items():
            if rewrite is not None:
                value = rewrite(schema, key, value)
            try:
                store.set_value(schema, key, value)
                report.keys_applied += 1
            except SettingsError as e:
                logger.warning("Failed to set %s %s: %s", schema, key, e)
                report.keys_failed += 1
        report.schemas_applied.append(schema)

    logger.info(
        "Applied %d keys from %d schemas (%d failed)",
        report.keys_applied,
        len(report.schemas_applied),
        report.keys_failed,
    )
    return report
