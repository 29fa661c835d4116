from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable

import structlog

from .archive_store import ArchiveStore, archive_file_name
from .engine import BackupEngine, ResourceProvider
from .metadata import BackupCatalog
from .models import ArtifactHandle, BackupOutcome, BackupStatus, ResourceInfo

logger = structlog.get_logger()


@dataclass(frozen=True)
class BackupManagerConfig:
    requester_identity: str = "admin"
    archive_extension: str = "tar.gz"


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class BackupManager:
    """Drive backup attempts end-to-end and keep the catalog in line with the archive store.

    ``create_backup`` never raises. Every failure after the catalog entry
    exists marks that entry failed, so no attempt is left pending.
    """

    def __init__(
        self,
        *,
        resource_provider: ResourceProvider,
        engine: BackupEngine,
        catalog: BackupCatalog,
        archive_store: ArchiveStore,
        config: BackupManagerConfig | None = None,
    ) -> None:
        self.resource_provider = resource_provider
        self.engine = engine
        self.catalog = catalog
        self.archive_store = archive_store
        self.config = config or BackupManagerConfig()

    def backup_many(self, resource_ids: Iterable[str], *, stop_on_failure: bool = False) -> list[BackupOutcome]:
        outcomes: list[BackupOutcome] = []
        for resource_id in resource_ids:
            outcome = self.create_backup(resource_id)
            outcomes.append(outcome)
            if stop_on_failure and not outcome.succeeded:
                break
        return outcomes

    def create_backup(self, resource_id: str) -> BackupOutcome:
        started_at = _utc_now_iso()
        record_id: int | None = None
        file_name: str | None = None
        placed = False
        artifact: ArtifactHandle | None = None
        status = BackupStatus.FAILED
        message = ""

        logger.info("backup_started", resource_id=resource_id)
        try:
            resource = self._lookup_resource(resource_id)
            record_id = self._register_pending(resource_id, resource.display_name, resource.short_name)
            self._ensure_archive_root()

            file_name = archive_file_name(
                record_id=record_id,
                resource_id=resource_id,
                created_on=datetime.now(tz=UTC).date(),
                extension=self.config.archive_extension,
            )
            artifact = self._execute_engine(resource_id)
            self._place_archive(artifact, file_name)
            placed = True
            self._verify_archive(file_name)
            self._finalize_record(record_id, file_name)
            status = BackupStatus.COMPLETE
        except BackupStageError as error:
            message = str(error)
        except Exception as error:  # pylint: disable=broad-except
            message = f"unexpected backup failure: {_error_message(error)}"
        finally:
            if artifact is not None:
                _discard_artifact(artifact)

        if status != BackupStatus.COMPLETE:
            self._cleanup_failed_attempt(record_id=record_id, file_name=file_name if placed else None, message=message)
            logger.error("backup_failed", resource_id=resource_id, record_id=record_id, message=message)
            file_name = None
        else:
            logger.info("backup_completed", resource_id=resource_id, record_id=record_id, archive_file_name=file_name)

        return BackupOutcome(
            resource_id=resource_id,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            record_id=record_id,
            archive_file_name=file_name,
            message=message,
        )

    def _lookup_resource(self, resource_id: str) -> ResourceInfo:
        try:
            return self.resource_provider.get_resource(resource_id)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="resource", reason=_error_message(error)) from error

    def _register_pending(self, resource_id: str, display_name: str, short_name: str) -> int:
        try:
            return self.catalog.register_pending(resource_id, display_name, short_name)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="register", reason=_error_message(error)) from error

    def _ensure_archive_root(self) -> None:
        try:
            self.archive_store.ensure_root()
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="prepare", reason=_error_message(error)) from error

    def _execute_engine(self, resource_id: str) -> ArtifactHandle:
        try:
            artifact = self.engine.execute(resource_id, self.config.requester_identity)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="engine", reason=_error_message(error)) from error

        if artifact is None:
            raise BackupStageError(stage="engine", reason="engine produced no archive")
        if not artifact.is_usable:
            _discard_artifact(artifact)
            raise BackupStageError(stage="engine", reason=f"engine produced an empty archive at {artifact.path}")
        return artifact

    def _place_archive(self, artifact: ArtifactHandle, file_name: str) -> None:
        try:
            self.archive_store.place(artifact, file_name)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="place", reason=_error_message(error)) from error

    def _verify_archive(self, file_name: str) -> None:
        try:
            present = self.archive_store.exists(file_name)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="verify", reason=_error_message(error)) from error
        if not present:
            raise BackupStageError(stage="verify", reason=f"archive {file_name} not found after placement")

    def _finalize_record(self, record_id: int, file_name: str) -> None:
        try:
            self.catalog.finalize(
                record_id,
                file_name,
                _utc_now_iso(),
                checksum_sha256=self.archive_store.checksum(file_name),
                size_bytes=self.archive_store.size_of(file_name),
            )
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="finalize", reason=_error_message(error)) from error

    def _cleanup_failed_attempt(self, *, record_id: int | None, file_name: str | None, message: str) -> None:
        if file_name is not None:
            try:
                self.archive_store.remove(file_name)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("archive_cleanup_failed", file_name=file_name, error=str(error))

        if record_id is None:
            return
        try:
            self.catalog.mark_failed(record_id, message)
        except Exception as error:  # pylint: disable=broad-except
            logger.error("catalog_mark_failed_error", record_id=record_id, error=str(error))


def _discard_artifact(artifact: ArtifactHandle) -> None:
    try:
        artifact.path.unlink(missing_ok=True)
    except OSError as error:
        logger.warning("engine_artifact_cleanup_failed", path=str(artifact.path), error=_error_message(error))


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
