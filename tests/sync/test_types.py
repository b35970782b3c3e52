"""Tests for sync types."""

from __future__ import annotations

import base64

import pytest

from profilesync.sync.types import (
    AuthenticationError,
    BackendError,
    BackupSnapshot,
    ChangeSetEntry,
    Encoding,
    OutcomeStatus,
    SyncError,
    SyncOutcome,
    UploadReport,
)


class TestChangeSetEntry:
    """Tests for ChangeSetEntry."""

    def test_raw_payload(self) -> None:
        """Should return raw content unchanged."""
        entry = ChangeSetEntry("files/home/.bashrc", b"export A=1\n")
        assert entry.encoding is Encoding.RAW
        assert entry.mode == "100644"
        assert entry.payload() == b"export A=1\n"

    def test_base64_payload(self) -> None:
        """Should decode base64 content."""
        image = b"\x89PNG\r\n\x1a\n" + b"\x00" * 10
        entry = ChangeSetEntry(
            "wallpapers/bg.png", base64.b64encode(image), encoding=Encoding.BASE64
        )
        assert entry.payload() == image

    def test_repr_hides_content(self) -> None:
        """Should not include file content in repr."""
        entry = ChangeSetEntry("files/home/.netrc", b"password hunter2")
        assert "hunter2" not in repr(entry)
        assert "files/home/.netrc" in repr(entry)


class TestBackupSnapshot:
    """Tests for BackupSnapshot."""

    def test_create_sets_timestamp(self) -> None:
        """Should stamp the snapshot with the current time."""
        snapshot = BackupSnapshot.create({"a": {"x": "1"}})
        assert snapshot.timestamp
        assert snapshot.key_count == 1

    def test_document_layout(self) -> None:
        """Should serialize to timestamp and gsettings."""
        snapshot = BackupSnapshot(timestamp="t", settings={"a": {"x": "1"}})
        assert snapshot.to_dict() == {"timestamp": "t", "gsettings": {"a": {"x": "1"}}}

    def test_from_dict(self) -> None:
        """Should read the config-backup.json document."""
        snapshot = BackupSnapshot.from_dict(
            {"timestamp": "t", "gsettings": {"a": {"x": "1", "y": "true"}}}
        )
        assert snapshot.timestamp == "t"
        assert snapshot.settings == {"a": {"x": "1", "y": "true"}}
        assert snapshot.key_count == 2

    def test_from_dict_rejects_missing_settings(self) -> None:
        """Should reject documents without a settings tree."""
        with pytest.raises(SyncError, match="Invalid backup data"):
            BackupSnapshot.from_dict({"timestamp": "t"})
        with pytest.raises(SyncError, match="Invalid backup data"):
            BackupSnapshot.from_dict(["not", "a", "dict"])


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_backend_error_status(self) -> None:
        """Should carry the HTTP status code."""
        error = BackendError("failed", 502)
        assert error.status_code == 502
        assert isinstance(error, SyncError)

    def test_authentication_error_is_backend_error(self) -> None:
        """Should be catchable as a backend error."""
        assert issubclass(AuthenticationError, BackendError)


class TestReports:
    """Tests for report dataclasses."""

    def test_upload_report_network_used(self) -> None:
        """Should report network use only when something was sent."""
        assert UploadReport(skipped=["a"]).network_used is False
        assert UploadReport(uploaded=["a"]).network_used is True
        assert UploadReport(failed=["a"]).network_used is True

    def test_outcome_queued(self) -> None:
        """Should expose whether the operation was queued."""
        assert SyncOutcome("Backup", OutcomeStatus.QUEUED).queued is True
        assert SyncOutcome("Backup", OutcomeStatus.COMPLETED, 1).queued is False
