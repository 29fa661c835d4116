"""
Collaborator interfaces for the backup orchestrator.

``BackupEngine`` and ``ResourceProvider`` are the narrow seams to the host
platform. The concrete implementations here back resources with plain
directories listed in a YAML registry, which is enough to run the manager
standalone or from the dashboard.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol
import tarfile
import tempfile

import structlog

from .archive_store import sanitize_filesystem_component
from .errors import EngineError, NotFoundError
from .models import ArtifactHandle, RegisteredResource, ResourceInfo

logger = structlog.get_logger()


class ResourceProvider(Protocol):
    def get_resource(self, resource_id: str) -> ResourceInfo: ...


class BackupEngine(Protocol):
    def execute(self, resource_id: str, requester_identity: str) -> ArtifactHandle | None:
        """Produce an archive for ``resource_id``.

        Returns ``None`` (or an unusable handle) when the engine finished
        without producing anything; raises when the engine itself failed.
        """
        ...


class RegistryResourceProvider:
    def __init__(self, registry: dict[str, RegisteredResource]) -> None:
        self.registry = registry

    def get_resource(self, resource_id: str) -> ResourceInfo:
        registered = self.registry.get(resource_id)
        if registered is None:
            raise NotFoundError(f"resource {resource_id} does not exist", details={"resource_id": resource_id})
        return registered.to_info()

    def list_resources(self) -> list[RegisteredResource]:
        return [self.registry[resource_id] for resource_id in sorted(self.registry)]


class DirectoryArchiveEngine:
    """Archive the registered source directory of a resource as a gzip tarball."""

    def __init__(self, registry: dict[str, RegisteredResource], *, work_dir: Path | None = None) -> None:
        self.registry = registry
        self.work_dir = work_dir

    def execute(self, resource_id: str, requester_identity: str) -> ArtifactHandle | None:
        registered = self.registry.get(resource_id)
        if registered is None:
            raise EngineError(f"no source registered for resource {resource_id}", details={"resource_id": resource_id})

        source_dir = registered.source_dir
        if not source_dir.is_dir():
            raise EngineError(
                f"source directory not found for resource {resource_id}: {source_dir}",
                details={"resource_id": resource_id, "source_dir": str(source_dir)},
            )

        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)

        prefix = f"rbm-{sanitize_filesystem_component(resource_id)}-"
        with tempfile.NamedTemporaryFile(prefix=prefix, suffix=".tar.gz", dir=self.work_dir, delete=False) as handle:
            artifact_path = Path(handle.name)

        try:
            with tarfile.open(artifact_path, "w:gz") as archive:
                archive.add(source_dir, arcname=sanitize_filesystem_component(registered.short_name))
        except (OSError, tarfile.TarError) as error:
            artifact_path.unlink(missing_ok=True)
            raise EngineError(
                f"failed to archive resource {resource_id}: {error}",
                details={"resource_id": resource_id},
            ) from error

        size_bytes = artifact_path.stat().st_size
        logger.debug(
            "engine_archive_created",
            resource_id=resource_id,
            requester_identity=requester_identity,
            size_bytes=size_bytes,
        )
        return ArtifactHandle(path=artifact_path, size_bytes=size_bytes)
