from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class BackupStatus:
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceInfo:
    resource_id: str
    display_name: str
    short_name: str


@dataclass(frozen=True)
class BackupRecord:
    id: int
    resource_id: str
    display_name: str
    short_name: str
    status: str
    requested_at: str
    archive_file_name: str | None = None
    created_at: str | None = None
    checksum_sha256: str | None = None
    size_bytes: int | None = None
    message: str = ""

    @property
    def is_complete(self) -> bool:
        return self.status == BackupStatus.COMPLETE


@dataclass(frozen=True)
class ArtifactHandle:
    path: Path
    size_bytes: int

    @property
    def is_usable(self) -> bool:
        return self.size_bytes > 0 and self.path.is_file()


@dataclass(frozen=True)
class StagingHandle:
    context_id: str
    staged_file_name: str
    staged_path: Path


@dataclass(frozen=True)
class BackupOutcome:
    resource_id: str
    status: str
    started_at: str
    finished_at: str
    record_id: int | None = None
    archive_file_name: str | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == BackupStatus.COMPLETE


@dataclass(frozen=True)
class RegisteredResource:
    resource_id: str
    display_name: str
    short_name: str
    source_dir: Path

    def to_info(self) -> ResourceInfo:
        return ResourceInfo(
            resource_id=self.resource_id,
            display_name=self.display_name,
            short_name=self.short_name,
        )
