from __future__ import annotations

from datetime import date
from pathlib import Path
import hashlib
import re

import pytest
from structlog.testing import capture_logs

from resource_backup_manager.archive_store import ArchiveStore, archive_file_name
from resource_backup_manager.errors import (
    InvalidStateError,
    MissingArchiveError,
    NotFoundError,
    StagingUnavailableError,
)
from resource_backup_manager.metadata import BackupCatalog
from resource_backup_manager.restore import RestoreStager, StagingDirectory, staging_file_name

_ARCHIVE_NAME = "2026-02-23-ID-1-RESOURCE-42.tar.gz"


def _stager(tmp_path: Path, *, staging_root: Path | None = None) -> RestoreStager:
    catalog = BackupCatalog(tmp_path / "data" / "backups.db")
    catalog.initialize()
    archive_store = ArchiveStore(tmp_path / "archives")
    archive_store.ensure_root()
    return RestoreStager(
        catalog=catalog,
        archive_store=archive_store,
        staging_directory=StagingDirectory(staging_root or tmp_path / "temp" / "backup"),
        context_id="1",
        requester_identity="admin",
    )


def _completed_backup(stager: RestoreStager, payload: bytes = b"archive-bytes") -> int:
    record_id = stager.catalog.register_pending("42", "Algebra 101", "ALG101")
    stager.archive_store.path_for(_ARCHIVE_NAME).write_bytes(payload)
    stager.catalog.finalize(record_id, _ARCHIVE_NAME, "2026-02-23T10:01:00+00:00", size_bytes=len(payload))
    return record_id


def test_prepare_restore_with_complete_record_stages_byte_identical_copy(tmp_path: Path) -> None:
    stager = _stager(tmp_path)
    payload = b"\x1f\x8b" + b"course-content" * 200
    record_id = _completed_backup(stager, payload)

    handle = stager.prepare_restore(record_id)

    assert handle.context_id == "1"
    assert handle.staged_path == tmp_path / "temp" / "backup" / handle.staged_file_name
    assert handle.staged_path.is_file()
    assert hashlib.sha256(handle.staged_path.read_bytes()).digest() == hashlib.sha256(payload).digest()
    assert re.fullmatch(r"restore-42-admin-[0-9a-f]{32}\.tar\.gz", handle.staged_file_name)
    assert stager.archive_store.exists(_ARCHIVE_NAME)


def test_prepare_restore_twice_uses_distinct_staging_slots(tmp_path: Path) -> None:
    stager = _stager(tmp_path)
    record_id = _completed_backup(stager)

    first = stager.prepare_restore(record_id)
    second = stager.prepare_restore(record_id, requester_identity="instructor")

    assert first.staged_file_name != second.staged_file_name
    assert "-instructor-" in second.staged_file_name
    assert first.staged_path.is_file() and second.staged_path.is_file()


def test_prepare_restore_with_pending_record_raises_invalid_state_without_side_effects(tmp_path: Path) -> None:
    staging_root = tmp_path / "temp" / "backup"
    stager = _stager(tmp_path, staging_root=staging_root)
    record_id = stager.catalog.register_pending("42", "Algebra 101", "ALG101")

    with pytest.raises(InvalidStateError):
        stager.prepare_restore(record_id)

    assert not staging_root.exists()


def test_prepare_restore_with_failed_record_raises_invalid_state(tmp_path: Path) -> None:
    stager = _stager(tmp_path)
    record_id = stager.catalog.register_pending("42", "Algebra 101", "ALG101")
    stager.catalog.mark_failed(record_id, "engine stage failed: boom")

    with pytest.raises(InvalidStateError):
        stager.prepare_restore(record_id)


def test_prepare_restore_with_unknown_record_raises_not_found(tmp_path: Path) -> None:
    stager = _stager(tmp_path)

    with pytest.raises(NotFoundError):
        stager.prepare_restore(404)


def test_prepare_restore_with_deleted_archive_raises_missing_archive_and_logs_integrity_warning(
    tmp_path: Path,
) -> None:
    stager = _stager(tmp_path)
    record_id = _completed_backup(stager)
    stager.archive_store.path_for(_ARCHIVE_NAME).unlink()

    with capture_logs() as captured:
        with pytest.raises(MissingArchiveError):
            stager.prepare_restore(record_id)

    assert list((tmp_path / "temp" / "backup").iterdir()) == []
    integrity_events = [entry for entry in captured if entry["event"] == "archive_integrity_violation"]
    assert len(integrity_events) == 1
    assert integrity_events[0]["log_level"] == "warning"
    assert integrity_events[0]["record_id"] == record_id


def test_prepare_restore_with_blocked_staging_root_raises_staging_unavailable(tmp_path: Path) -> None:
    blocking_file = tmp_path / "temp"
    blocking_file.write_text("not a directory", encoding="utf-8")
    stager = _stager(tmp_path, staging_root=blocking_file / "backup")
    record_id = _completed_backup(stager)

    with pytest.raises(StagingUnavailableError):
        stager.prepare_restore(record_id)


def test_staging_directory_ensure_is_idempotent(tmp_path: Path) -> None:
    staging = StagingDirectory(tmp_path / "temp" / "backup")

    assert staging.ensure() == tmp_path / "temp" / "backup"
    assert staging.ensure() == tmp_path / "temp" / "backup"


def test_staging_file_name_keeps_archive_extension_and_sanitizes_identity() -> None:
    name = staging_file_name(resource_id="42", requester_identity="jane doe", archive_file_name="2026-01-01-ID-3-RESOURCE-42.mbz")

    assert name.startswith("restore-42-jane_doe-")
    assert name.endswith(".mbz")


def test_staging_file_name_with_dotted_resource_id_keeps_only_archive_extension() -> None:
    archive_name = archive_file_name(record_id=1, resource_id="course.v2", created_on=date(2026, 2, 23), extension="tar.gz")

    name = staging_file_name(resource_id="course.v2", requester_identity="admin", archive_file_name=archive_name)

    assert re.fullmatch(r"restore-course\.v2-admin-[0-9a-f]{32}\.tar\.gz", name)
