from __future__ import annotations

from pathlib import Path
import tarfile

import pytest

from resource_backup_manager.engine import DirectoryArchiveEngine, RegistryResourceProvider
from resource_backup_manager.errors import EngineError, NotFoundError
from resource_backup_manager.models import RegisteredResource


def _registry(source_dir: Path) -> dict[str, RegisteredResource]:
    return {
        "42": RegisteredResource(
            resource_id="42",
            display_name="Algebra 101",
            short_name="ALG101",
            source_dir=source_dir,
        )
    }


def test_execute_with_registered_directory_returns_usable_tarball(tmp_path: Path) -> None:
    source_dir = tmp_path / "algebra"
    (source_dir / "lessons").mkdir(parents=True)
    (source_dir / "lessons" / "intro.txt").write_text("welcome", encoding="utf-8")
    engine = DirectoryArchiveEngine(_registry(source_dir), work_dir=tmp_path / "work")

    artifact = engine.execute("42", "admin")

    assert artifact is not None
    assert artifact.is_usable
    assert artifact.path.parent == tmp_path / "work"
    assert artifact.size_bytes == artifact.path.stat().st_size
    with tarfile.open(artifact.path, "r:gz") as archive:
        assert "ALG101/lessons/intro.txt" in archive.getnames()


def test_execute_with_unknown_resource_raises_engine_error(tmp_path: Path) -> None:
    engine = DirectoryArchiveEngine({}, work_dir=tmp_path / "work")

    with pytest.raises(EngineError, match="no source registered"):
        engine.execute("42", "admin")


def test_execute_with_missing_source_directory_raises_engine_error(tmp_path: Path) -> None:
    engine = DirectoryArchiveEngine(_registry(tmp_path / "gone"), work_dir=tmp_path / "work")

    with pytest.raises(EngineError, match="source directory not found"):
        engine.execute("42", "admin")


def test_registry_provider_returns_naming_metadata(tmp_path: Path) -> None:
    provider = RegistryResourceProvider(_registry(tmp_path))

    info = provider.get_resource("42")

    assert (info.display_name, info.short_name) == ("Algebra 101", "ALG101")
    assert [resource.resource_id for resource in provider.list_resources()] == ["42"]


def test_registry_provider_with_unknown_resource_raises_not_found(tmp_path: Path) -> None:
    provider = RegistryResourceProvider(_registry(tmp_path))

    with pytest.raises(NotFoundError):
        provider.get_resource("7")
