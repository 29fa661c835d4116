from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
import os

import yaml

from .errors import ConfigurationError
from .models import RegisteredResource

_PATH_FIELDS = {"archive_root", "staging_root", "catalog_db_path", "resource_registry_path"}


def _parse_permissions(value: Any) -> int:
    if not isinstance(value, str):
        # Unquoted YAML numbers load as decimal (500) or legacy octal (0750) ints.
        raise ConfigurationError(
            f"invalid directory permissions: {value!r}; quote the octal mode, e.g. permissions: \"0750\""
        )

    text = value.strip().lower().removeprefix("0o")
    try:
        mode = int(text, 8)
    except ValueError as error:
        raise ConfigurationError(f"invalid directory permissions: {value!r}") from error

    if not 0 <= mode <= 0o777:
        raise ConfigurationError(f"invalid directory permissions: {value!r}")
    return mode


def _permissions_from_env() -> int:
    raw_value = os.getenv("RBM_DIRECTORY_PERMISSIONS", "750")
    try:
        return _parse_permissions(raw_value)
    except ConfigurationError:
        return 0o750


@dataclass(frozen=True)
class AppConfig:
    archive_root: Path = Path(os.getenv("RBM_ARCHIVE_ROOT", "./backups"))
    staging_root: Path = Path(os.getenv("RBM_STAGING_ROOT", "./data/temp/backup"))
    catalog_db_path: Path = Path(os.getenv("RBM_CATALOG_DB_PATH", "./data/backups.db"))
    resource_registry_path: Path = Path(os.getenv("RBM_RESOURCE_REGISTRY_PATH", "./resources.yaml"))
    permissions: int = _permissions_from_env()
    archive_extension: str = os.getenv("RBM_ARCHIVE_EXTENSION", "tar.gz")
    requester_identity: str = os.getenv("RBM_REQUESTER_IDENTITY", "admin")
    restore_context_id: str = os.getenv("RBM_RESTORE_CONTEXT_ID", "system")
    restore_url_template: str = os.getenv(
        "RBM_RESTORE_URL_TEMPLATE",
        "/backup/restore.php?contextid={context_id}&filename={filename}",
    )


def load_app_config(path: Path, *, base: AppConfig | None = None) -> AppConfig:
    """Overlay the keys of a YAML file onto ``base`` (environment defaults when omitted)."""
    base_config = base or AppConfig()
    parsed = _read_yaml_mapping(path, description="configuration file")

    known_fields = {field.name for field in fields(AppConfig)}
    unknown_keys = sorted(set(parsed) - known_fields)
    if unknown_keys:
        raise ConfigurationError(
            f"configuration file {path} has unknown key(s): {', '.join(unknown_keys)}",
            details={"path": str(path)},
        )

    overrides: dict[str, Any] = {}
    for key, value in parsed.items():
        if value is None:
            raise ConfigurationError(f"configuration key '{key}' must not be empty", details={"path": str(path)})
        if key in _PATH_FIELDS:
            overrides[key] = Path(str(value)).expanduser()
        elif key == "permissions":
            overrides[key] = _parse_permissions(value)
        else:
            overrides[key] = str(value).strip()

    extension = overrides.get("archive_extension")
    if extension is not None and (not extension or "/" in extension or extension.startswith(".")):
        raise ConfigurationError(
            f"archive_extension must be a bare extension such as 'tar.gz', got {extension!r}",
            details={"path": str(path)},
        )

    return replace(base_config, **overrides)


def load_resource_registry(path: Path) -> dict[str, RegisteredResource]:
    """Read the ``resources`` mapping of a YAML registry file.

    Relative ``source_dir`` entries are resolved against the registry file's directory.
    """
    parsed = _read_yaml_mapping(path, description="resource registry")
    entries = parsed.get("resources") or {}
    if not isinstance(entries, dict):
        raise ConfigurationError(f"resource registry {path} must map 'resources' to a mapping")

    registry: dict[str, RegisteredResource] = {}
    for raw_resource_id, entry in entries.items():
        resource_id = str(raw_resource_id).strip()
        if not resource_id:
            raise ConfigurationError(f"resource registry {path} contains an empty resource id")
        if not isinstance(entry, dict):
            raise ConfigurationError(f"resource '{resource_id}' must be a mapping")

        missing = [key for key in ("display_name", "short_name", "source_dir") if not entry.get(key)]
        if missing:
            raise ConfigurationError(
                f"resource '{resource_id}' is missing required field(s): {', '.join(missing)}",
                details={"path": str(path)},
            )

        source_dir = Path(str(entry["source_dir"])).expanduser()
        if not source_dir.is_absolute():
            source_dir = path.parent / source_dir

        registry[resource_id] = RegisteredResource(
            resource_id=resource_id,
            display_name=str(entry["display_name"]),
            short_name=str(entry["short_name"]),
            source_dir=source_dir,
        )
    return registry


def ensure_directories(config: AppConfig) -> None:
    config.catalog_db_path.parent.mkdir(parents=True, exist_ok=True)


def _read_yaml_mapping(path: Path, *, description: str) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigurationError(f"unable to read {description} {path}: {error}") from error

    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise ConfigurationError(f"{description} {path} must be valid YAML: {error.__class__.__name__}") from error

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"{description} {path} must be a YAML mapping")
    return parsed
