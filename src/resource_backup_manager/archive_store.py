from __future__ import annotations

from datetime import date
from pathlib import Path
import hashlib
import os
import re
import shutil
import uuid

import structlog

from .errors import StorageError
from .models import ArtifactHandle

logger = structlog.get_logger()


class ArchiveStore:
    """Directory holding completed backup archives.

    Files only ever appear under their final name fully written: bytes go to a
    hidden temporary file in the same directory and are renamed into place
    once their size has been checked.
    """

    def __init__(self, root: Path, *, permissions: int = 0o750) -> None:
        self.root = root
        self.permissions = permissions

    def ensure_root(self) -> None:
        if self.root.is_dir():
            return
        if self.root.exists():
            raise StorageError(
                f"archive root exists but is not a directory: {self.root}",
                details={"root": str(self.root)},
            )

        try:
            self.root.mkdir(mode=self.permissions, parents=True, exist_ok=True)
            # mkdir applies the umask; set the configured mode explicitly.
            os.chmod(self.root, self.permissions)
        except OSError as error:
            raise StorageError(
                f"unable to create archive root {self.root}: {_error_message(error)}",
                details={"root": str(self.root)},
            ) from error

        logger.info("archive_root_created", root=str(self.root), permissions=oct(self.permissions))

    def path_for(self, file_name: str) -> Path:
        _validate_file_name(file_name)
        return self.root / file_name

    def exists(self, file_name: str) -> bool:
        return self.path_for(file_name).is_file()

    def size_of(self, file_name: str) -> int:
        try:
            return self.path_for(file_name).stat().st_size
        except OSError as error:
            raise StorageError(
                f"unable to stat archive {file_name}: {_error_message(error)}",
                details={"file_name": file_name},
            ) from error

    def checksum(self, file_name: str) -> str:
        try:
            return sha256_of(self.path_for(file_name))
        except OSError as error:
            raise StorageError(
                f"unable to read archive {file_name}: {_error_message(error)}",
                details={"file_name": file_name},
            ) from error

    def place(self, artifact: ArtifactHandle, file_name: str) -> Path:
        target_path = self.path_for(file_name)
        copy_atomically(artifact.path, target_path, expected_size=artifact.size_bytes)
        logger.info("archive_placed", file_name=file_name, size_bytes=artifact.size_bytes)
        return target_path

    def remove(self, file_name: str) -> None:
        try:
            self.path_for(file_name).unlink(missing_ok=True)
        except OSError as error:
            raise StorageError(
                f"unable to remove archive {file_name}: {_error_message(error)}",
                details={"file_name": file_name},
            ) from error


def archive_file_name(*, record_id: int, resource_id: str, created_on: date, extension: str) -> str:
    safe_resource_id = sanitize_filesystem_component(resource_id)
    normalized_extension = extension.lstrip(".")
    return f"{created_on.isoformat()}-ID-{record_id}-RESOURCE-{safe_resource_id}.{normalized_extension}"


def copy_atomically(source: Path, target: Path, *, expected_size: int | None = None) -> None:
    """Copy ``source`` to ``target`` through a temporary sibling file and an atomic rename."""
    temp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
    try:
        with source.open("rb") as source_handle, temp_path.open("wb") as target_handle:
            shutil.copyfileobj(source_handle, target_handle, length=64 * 1024)
            target_handle.flush()
            os.fsync(target_handle.fileno())

        written_size = temp_path.stat().st_size
        if expected_size is not None and written_size != expected_size:
            raise StorageError(
                f"size mismatch while copying to {target.name}: expected {expected_size}, wrote {written_size}",
                details={"source": str(source), "target": str(target)},
            )

        os.replace(temp_path, target)
    except StorageError:
        temp_path.unlink(missing_ok=True)
        raise
    except OSError as error:
        temp_path.unlink(missing_ok=True)
        raise StorageError(
            f"unable to copy {source} to {target}: {_error_message(error)}",
            details={"source": str(source), "target": str(target)},
        ) from error


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def sanitize_filesystem_component(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"


def _validate_file_name(file_name: str) -> None:
    if not file_name or file_name in {".", ".."} or "/" in file_name or "\\" in file_name:
        raise StorageError(f"invalid archive file name: {file_name!r}", details={"file_name": file_name})


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
