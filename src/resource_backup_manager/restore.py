from __future__ import annotations

from pathlib import Path
import os
import uuid

import structlog

from .archive_store import ArchiveStore, copy_atomically, sanitize_filesystem_component
from .errors import InvalidStateError, MissingArchiveError, StagingUnavailableError
from .metadata import BackupCatalog
from .models import BackupStatus, StagingHandle

logger = structlog.get_logger()


class StagingDirectory:
    """Temporary directory where the external restore subsystem picks up archives."""

    def __init__(self, root: Path, *, permissions: int = 0o750) -> None:
        self.root = root
        self.permissions = permissions

    def ensure(self) -> Path:
        try:
            if not self.root.is_dir():
                self.root.mkdir(mode=self.permissions, parents=True, exist_ok=True)
                os.chmod(self.root, self.permissions)
            if not os.access(self.root, os.W_OK | os.X_OK):
                raise PermissionError(f"staging directory is not writable: {self.root}")
        except OSError as error:
            raise StagingUnavailableError(
                f"cannot create restore staging directory {self.root}: {error}",
                details={"staging_root": str(self.root)},
            ) from error
        return self.root


class RestoreStager:
    """Copy catalogued archives into the staging directory for an external restore.

    Nothing is written to the staging directory unless the record is complete
    and its archive is present.
    """

    def __init__(
        self,
        *,
        catalog: BackupCatalog,
        archive_store: ArchiveStore,
        staging_directory: StagingDirectory,
        context_id: str = "system",
        requester_identity: str = "admin",
    ) -> None:
        self.catalog = catalog
        self.archive_store = archive_store
        self.staging_directory = staging_directory
        self.context_id = context_id
        self.requester_identity = requester_identity

    def prepare_restore(self, backup_id: int, *, requester_identity: str | None = None) -> StagingHandle:
        requester = requester_identity or self.requester_identity
        record = self.catalog.get(backup_id)
        if record.status != BackupStatus.COMPLETE or not record.archive_file_name:
            raise InvalidStateError(
                f"backup record {backup_id} is not restorable from status '{record.status}'",
                details={"record_id": backup_id, "status": record.status},
            )

        staging_root = self.staging_directory.ensure()
        staged_file_name = staging_file_name(
            resource_id=record.resource_id,
            requester_identity=requester,
            archive_file_name=record.archive_file_name,
        )

        if not self.archive_store.exists(record.archive_file_name):
            source_path = self.archive_store.path_for(record.archive_file_name)
            logger.warning(
                "archive_integrity_violation",
                record_id=backup_id,
                resource_id=record.resource_id,
                archive_file_name=record.archive_file_name,
                expected_path=str(source_path),
            )
            raise MissingArchiveError(
                f"archive for backup record {backup_id} is missing: {source_path}",
                details={"record_id": backup_id, "archive_file_name": record.archive_file_name},
            )

        staged_path = staging_root / staged_file_name
        copy_atomically(
            self.archive_store.path_for(record.archive_file_name),
            staged_path,
            expected_size=record.size_bytes,
        )

        logger.info(
            "restore_staged",
            record_id=backup_id,
            resource_id=record.resource_id,
            requester_identity=requester,
            staged_file_name=staged_file_name,
        )
        return StagingHandle(
            context_id=self.context_id,
            staged_file_name=staged_file_name,
            staged_path=staged_path,
        )


def staging_file_name(*, resource_id: str, requester_identity: str, archive_file_name: str) -> str:
    safe_resource_id = sanitize_filesystem_component(resource_id)
    safe_requester = sanitize_filesystem_component(requester_identity)
    extension = _archive_extension(archive_file_name, safe_resource_id=safe_resource_id)
    return f"restore-{safe_resource_id}-{safe_requester}-{uuid.uuid4().hex}{extension}"


def _archive_extension(archive_file_name: str, *, safe_resource_id: str) -> str:
    # Resource ids may contain dots, so cut after the known resource segment.
    marker = f"-RESOURCE-{safe_resource_id}."
    _, separator, extension = archive_file_name.partition(marker)
    if separator:
        return f".{extension}" if extension else ""
    _, dot, extension = archive_file_name.partition(".")
    return f".{extension}" if dot and extension else ""
