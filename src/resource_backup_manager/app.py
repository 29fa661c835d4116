from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote
import os

import streamlit as st

from resource_backup_manager.archive_store import ArchiveStore
from resource_backup_manager.backup import BackupManager, BackupManagerConfig
from resource_backup_manager.config import AppConfig, ensure_directories, load_app_config, load_resource_registry
from resource_backup_manager.engine import DirectoryArchiveEngine, RegistryResourceProvider
from resource_backup_manager.errors import (
    BackupManagerError,
    ConfigurationError,
    InvalidStateError,
    MissingArchiveError,
    NotFoundError,
    StagingUnavailableError,
)
from resource_backup_manager.metadata import BackupCatalog
from resource_backup_manager.models import BackupOutcome, BackupRecord, RegisteredResource, StagingHandle
from resource_backup_manager.restore import RestoreStager, StagingDirectory

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "resource stage failed",
        "Confirm the resource id exists in the resource registry.",
    ),
    (
        "register stage failed",
        "Check that the catalog database path is writable and not locked by another process.",
    ),
    (
        "prepare stage failed",
        "Verify the archive root can be created with the configured permissions.",
    ),
    (
        "engine stage failed",
        "Inspect the resource source directory; the backup engine produced no usable archive.",
    ),
    (
        "place stage failed",
        "Check free space and write permissions in the archive root.",
    ),
    (
        "verify stage failed",
        "The archive vanished right after placement; look for cleanup jobs touching the archive root.",
    ),
    (
        "finalize stage failed",
        "Check the catalog database; the archive was removed and the attempt marked failed.",
    ),
    (
        "unexpected backup failure",
        "Inspect application logs for this backup attempt.",
    ),
)

_RESTORE_ERROR_HINTS: tuple[tuple[type[BackupManagerError], str], ...] = (
    (NotFoundError, "The backup record no longer exists in the catalog."),
    (InvalidStateError, "Only completed backups can be restored."),
    (MissingArchiveError, "The catalog lists this backup as complete but its archive file is gone."),
    (StagingUnavailableError, "The restore staging directory could not be prepared."),
)


@dataclass(frozen=True)
class Services:
    catalog: BackupCatalog
    provider: RegistryResourceProvider
    manager: BackupManager
    stager: RestoreStager


def _initialize_state() -> None:
    defaults = {
        "last_backup_outcomes": [],
        "selected_resource_labels": [],
        "last_staging_handle": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _load_config() -> AppConfig:
    config_path = os.getenv("RBM_CONFIG_PATH", "").strip()
    if config_path:
        return load_app_config(Path(config_path).expanduser())
    return AppConfig()


def _build_services(config: AppConfig) -> Services:
    registry = load_resource_registry(config.resource_registry_path)
    catalog = BackupCatalog(config.catalog_db_path)
    catalog.initialize()
    archive_store = ArchiveStore(config.archive_root, permissions=config.permissions)
    provider = RegistryResourceProvider(registry)
    manager = BackupManager(
        resource_provider=provider,
        engine=DirectoryArchiveEngine(registry),
        catalog=catalog,
        archive_store=archive_store,
        config=BackupManagerConfig(
            requester_identity=config.requester_identity,
            archive_extension=config.archive_extension,
        ),
    )
    stager = RestoreStager(
        catalog=catalog,
        archive_store=archive_store,
        staging_directory=StagingDirectory(config.staging_root, permissions=config.permissions),
        context_id=config.restore_context_id,
        requester_identity=config.requester_identity,
    )
    return Services(catalog=catalog, provider=provider, manager=manager, stager=stager)


def _build_resource_rows(resources: list[RegisteredResource], last_success_map: dict[str, str]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for resource in resources:
        rows.append(
            {
                "resource_id": resource.resource_id,
                "display_name": resource.display_name,
                "short_name": resource.short_name,
                "source_dir": str(resource.source_dir),
                "last_successful_backup_at": last_success_map.get(resource.resource_id) or "never",
            }
        )
    return rows


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect application logs for more detail."


def _restore_error_message(error: BackupManagerError) -> str:
    for error_type, hint in _RESTORE_ERROR_HINTS:
        if isinstance(error, error_type):
            return f"{hint} ({error.message})"
    return f"Restore staging failed: {error.message}"


def _build_outcome_rows(outcomes: list[BackupOutcome]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for outcome in outcomes:
        actionable_message = "Backup completed successfully."
        if not outcome.succeeded:
            actionable_message = _actionable_next_step(outcome.message)

        rows.append(
            {
                "resource_id": outcome.resource_id,
                "record_id": "" if outcome.record_id is None else str(outcome.record_id),
                "status": outcome.status,
                "archive_file_name": outcome.archive_file_name or "",
                "finished_at": outcome.finished_at,
                "message": outcome.message,
                "actionable_message": actionable_message,
            }
        )
    return rows


def _build_history_rows(records: list[BackupRecord]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for record in records:
        actionable_message = "Backup completed successfully."
        if not record.is_complete:
            actionable_message = _actionable_next_step(record.message) if record.message else "Backup in progress."

        rendered_rows.append(
            {
                "id": str(record.id),
                "resource_id": record.resource_id,
                "display_name": record.display_name,
                "short_name": record.short_name,
                "status": record.status,
                "archive_file_name": record.archive_file_name or "",
                "size_bytes": "" if record.size_bytes is None else str(record.size_bytes),
                "requested_at": record.requested_at,
                "created_at": record.created_at or "",
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_workflow_rows(
    *,
    resource_count: int,
    selected_count: int,
    backup_outcomes_count: int,
    staged: bool,
) -> list[dict[str, str]]:
    select_state = "done" if selected_count > 0 else ("active" if resource_count > 0 else "blocked")
    backup_state = "done" if backup_outcomes_count > 0 else ("active" if selected_count > 0 else "blocked")
    restore_state = "done" if staged else "active"

    return [
        {
            "step": "1. Select",
            "state": _WORKFLOW_STATE_LABELS[select_state],
            "description": "Choose one or more registered resources.",
        },
        {
            "step": "2. Backup",
            "state": _WORKFLOW_STATE_LABELS[backup_state],
            "description": "Run backups and capture success or failure details.",
        },
        {
            "step": "3. Restore",
            "state": _WORKFLOW_STATE_LABELS[restore_state],
            "description": "Stage a completed backup and hand it to the restore wizard.",
        },
    ]


def _ensure_runtime_directories(config: AppConfig) -> str | None:
    try:
        ensure_directories(config)
    except OSError as error:
        return f"Unable to create catalog directory {config.catalog_db_path.parent}: {error}"
    return None


def _validate_runtime_paths(config: AppConfig) -> list[str]:
    errors: list[str] = []
    if not str(config.archive_root).strip():
        errors.append("Archive root path is required.")
    if not str(config.staging_root).strip():
        errors.append("Staging root path is required.")
    if not str(config.catalog_db_path).strip():
        errors.append("Catalog DB path is required.")
    if not config.resource_registry_path.is_file():
        errors.append(f"Resource registry not found: {config.resource_registry_path}")
    return errors


def _label_for_resource(resource: RegisteredResource, last_success_map: dict[str, str]) -> str:
    return (
        f"{resource.resource_id} | {resource.short_name} | {resource.display_name}"
        f" | last={last_success_map.get(resource.resource_id) or 'never'}"
    )


def _restore_url(template: str, handle: StagingHandle) -> str:
    return template.format(
        context_id=quote(handle.context_id, safe=""),
        filename=quote(handle.staged_file_name, safe=""),
    )


def _run_batch_backup(
    *,
    manager: BackupManager,
    resource_ids: list[str],
    stop_on_failure: bool,
) -> list[BackupOutcome]:
    total = len(resource_ids)
    progress = st.progress(0.0, text=f"Queued {total} resource(s) for backup.")

    outcomes: list[BackupOutcome] = []
    for index, resource_id in enumerate(resource_ids, start=1):
        progress.progress(
            (index - 1) / total,
            text=f"[{index}/{total}] Backing up resource {resource_id}...",
        )
        outcome = manager.create_backup(resource_id)
        outcomes.append(outcome)

        progress.progress(
            index / total,
            text=f"[{index}/{total}] Finished resource {resource_id} ({outcome.status}).",
        )
        if stop_on_failure and not outcome.succeeded:
            break

    return outcomes


def main() -> None:
    st.set_page_config(page_title="Resource Backup Manager", layout="wide")
    _initialize_state()

    try:
        config = _load_config()
    except ConfigurationError as error:
        st.error(str(error))
        return

    directory_error = _ensure_runtime_directories(config)
    if directory_error:
        st.error(directory_error)
        return

    st.title("Resource Backup Manager")
    st.caption("Create catalogued backups of registered resources and stage them for restore.")

    path_errors = _validate_runtime_paths(config)
    if path_errors:
        for error in path_errors:
            st.error(error)
        return

    try:
        services = _build_services(config)
    except BackupManagerError as error:
        st.error(f"Unable to start backup services: {error}")
        return

    resources = services.provider.list_resources()
    last_success_map = services.catalog.get_last_success_map()

    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            resource_count=len(resources),
            selected_count=len(st.session_state.selected_resource_labels),
            backup_outcomes_count=len(st.session_state.last_backup_outcomes),
            staged=st.session_state.last_staging_handle is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Storage")
    st.sidebar.caption(f"Archive root: {config.archive_root}")
    st.sidebar.caption(f"Staging root: {config.staging_root}")
    st.sidebar.caption(f"Catalog DB: {config.catalog_db_path}")
    st.sidebar.caption(f"Directory permissions: {oct(config.permissions)}")
    stop_on_failure = st.sidebar.checkbox(
        "Stop batch on first failure",
        value=False,
        help="If enabled, the current run stops after the first failed resource.",
    )

    st.subheader("Resources")
    if not resources:
        st.info(f"No resources registered in {config.resource_registry_path}.")
    else:
        st.dataframe(_build_resource_rows(resources, last_success_map), use_container_width=True, hide_index=True)

        labels = [_label_for_resource(resource, last_success_map) for resource in resources]
        label_to_resource = dict(zip(labels, resources, strict=False))
        st.session_state.selected_resource_labels = [
            label for label in st.session_state.selected_resource_labels if label in label_to_resource
        ]
        selected_labels = st.multiselect(
            "Choose one or more resources to back up",
            options=labels,
            key="selected_resource_labels",
        )
        st.caption(f"Selected resources: {len(selected_labels)}")

        if st.button("Back up selected resources", type="primary"):
            if not selected_labels:
                st.warning("Select at least one resource.")
            else:
                resource_ids = [label_to_resource[label].resource_id for label in selected_labels]
                with st.spinner(f"Running backups for {len(resource_ids)} resource(s)..."):
                    st.session_state.last_backup_outcomes = _run_batch_backup(
                        manager=services.manager,
                        resource_ids=resource_ids,
                        stop_on_failure=stop_on_failure,
                    )

                completed_count = len(st.session_state.last_backup_outcomes)
                failed_count = sum(1 for outcome in st.session_state.last_backup_outcomes if not outcome.succeeded)
                if failed_count:
                    st.error(
                        f"Backup run finished with failures: {failed_count} of {completed_count} "
                        "resource(s) failed. Review actionable details below."
                    )
                else:
                    st.success(f"Backup job finished successfully for {completed_count} resource(s).")

    if st.session_state.last_backup_outcomes:
        st.subheader("Latest Backup Run")
        latest_rows = _build_outcome_rows(st.session_state.last_backup_outcomes)
        st.dataframe(latest_rows, use_container_width=True, hide_index=True)
        for row in latest_rows:
            if row["status"] != "complete":
                st.error(f"Resource {row['resource_id']}: {row['actionable_message']}")

    st.subheader("Restore")
    backup_id = int(st.number_input("Backup record id", min_value=1, value=1, step=1))
    if st.button("Stage backup for restore"):
        try:
            handle = services.stager.prepare_restore(backup_id)
        except BackupManagerError as error:
            st.session_state.last_staging_handle = None
            st.error(_restore_error_message(error))
        else:
            st.session_state.last_staging_handle = handle
            st.success(f"Staged {handle.staged_file_name} for restore.")

    handle = st.session_state.last_staging_handle
    if handle is not None:
        restore_url = _restore_url(config.restore_url_template, handle)
        st.markdown(f"Continue in the restore wizard: [{restore_url}]({restore_url})")

    st.subheader("Recent Backup History")
    history_rows = _build_history_rows(services.catalog.list_records(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No backup history yet. Run your first backup to populate this table.")


if __name__ == "__main__":
    main()
