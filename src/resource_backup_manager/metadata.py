from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
import sqlite3

import structlog

from .errors import InvalidStateError, NotFoundError, StorageError
from .models import BackupRecord, BackupStatus

logger = structlog.get_logger()

_RECORD_COLUMNS = (
    "id, resource_id, display_name, short_name, status, requested_at, "
    "archive_file_name, created_at, checksum_sha256, size_bytes, message"
)


class BackupCatalog:
    """Durable record of every backup attempt, stored in a SQLite table.

    Status transitions are conditional updates guarded by ``status = 'pending'``,
    so a record reaches ``complete`` or ``failed`` exactly once even when two
    callers race on it.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def initialize(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageError(
                f"unable to create catalog directory: {error}",
                details={"db_path": str(self.db_path)},
            ) from error

        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    resource_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    short_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    archive_file_name TEXT,
                    created_at TEXT,
                    checksum_sha256 TEXT,
                    size_bytes INTEGER,
                    message TEXT NOT NULL DEFAULT ''
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_backup_records_lookup
                ON backup_records(resource_id, status, created_at)
                """
            )

    def register_pending(self, resource_id: str, display_name: str, short_name: str) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO backup_records (
                    resource_id,
                    display_name,
                    short_name,
                    status,
                    requested_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (resource_id, display_name, short_name, BackupStatus.PENDING, _utc_now_iso()),
            )
            record_id = cursor.lastrowid

        if record_id is None:
            raise StorageError("catalog did not assign a record id", details={"resource_id": resource_id})

        logger.debug("catalog_record_registered", record_id=record_id, resource_id=resource_id)
        return int(record_id)

    def finalize(
        self,
        record_id: int,
        archive_file_name: str,
        created_at: str,
        *,
        checksum_sha256: str | None = None,
        size_bytes: int | None = None,
    ) -> None:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE backup_records
                SET status = ?,
                    archive_file_name = ?,
                    created_at = ?,
                    checksum_sha256 = ?,
                    size_bytes = ?,
                    message = ''
                WHERE id = ? AND status = ?
                """,
                (
                    BackupStatus.COMPLETE,
                    archive_file_name,
                    created_at,
                    checksum_sha256,
                    size_bytes,
                    record_id,
                    BackupStatus.PENDING,
                ),
            )
            updated = cursor.rowcount

        if updated == 1:
            logger.debug("catalog_record_finalized", record_id=record_id, archive_file_name=archive_file_name)
            return

        current = self.get(record_id)
        raise InvalidStateError(
            f"backup record {record_id} cannot be finalized from status '{current.status}'",
            details={"record_id": record_id, "status": current.status},
        )

    def mark_failed(self, record_id: int, message: str = "") -> None:
        with self._connect() as connection:
            cursor = connection.execute(
                "UPDATE backup_records SET status = ?, message = ? WHERE id = ? AND status = ?",
                (BackupStatus.FAILED, message, record_id, BackupStatus.PENDING),
            )
            updated = cursor.rowcount

        if updated:
            logger.debug("catalog_record_failed", record_id=record_id)

    def discard_pending(self, record_id: int) -> None:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM backup_records WHERE id = ? AND status = ?",
                (record_id, BackupStatus.PENDING),
            )
            deleted = cursor.rowcount

        if deleted:
            logger.debug("catalog_record_discarded", record_id=record_id)

    def get(self, record_id: int) -> BackupRecord:
        with self._connect() as connection:
            cursor = connection.execute(
                f"SELECT {_RECORD_COLUMNS} FROM backup_records WHERE id = ?",
                (record_id,),
            )
            row = cursor.fetchone()

        if row is None:
            raise NotFoundError(f"backup record {record_id} does not exist", details={"record_id": record_id})
        return _record_from_row(row)

    def list_records(self, *, resource_id: str | None = None, limit: int = 50) -> list[BackupRecord]:
        if limit <= 0:
            return []

        query = f"SELECT {_RECORD_COLUMNS} FROM backup_records"
        parameters: tuple[object, ...] = ()
        if resource_id is not None:
            query += " WHERE resource_id = ?"
            parameters = (resource_id,)
        query += " ORDER BY id DESC LIMIT ?"

        with self._connect() as connection:
            rows = connection.execute(query, (*parameters, limit)).fetchall()

        return [_record_from_row(row) for row in rows]

    def get_last_success_map(self) -> dict[str, str]:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                SELECT resource_id, MAX(created_at)
                FROM backup_records
                WHERE status = ?
                GROUP BY resource_id
                """,
                (BackupStatus.COMPLETE,),
            )
            rows = cursor.fetchall()

        return {resource_id: last_success for resource_id, last_success in rows}

    def count_records(self, *, status: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM backup_records"
        parameters: tuple[object, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            parameters = (status,)

        with self._connect() as connection:
            row = connection.execute(query, parameters).fetchone()

        return int(row[0]) if row else 0

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            connection = sqlite3.connect(self.db_path)
        except sqlite3.Error as error:
            raise StorageError(
                f"unable to open backup catalog: {error}",
                details={"db_path": str(self.db_path)},
            ) from error

        try:
            with connection:
                yield connection
        except sqlite3.Error as error:
            raise StorageError(
                f"backup catalog operation failed: {error}",
                details={"db_path": str(self.db_path)},
            ) from error
        finally:
            connection.close()


def _record_from_row(row: tuple[object, ...]) -> BackupRecord:
    size_bytes = row[9]
    return BackupRecord(
        id=int(row[0]),  # type: ignore[arg-type]
        resource_id=str(row[1]),
        display_name=str(row[2]),
        short_name=str(row[3]),
        status=str(row[4]),
        requested_at=str(row[5]),
        archive_file_name=row[6],  # type: ignore[arg-type]
        created_at=row[7],  # type: ignore[arg-type]
        checksum_sha256=row[8],  # type: ignore[arg-type]
        size_bytes=int(size_bytes) if size_bytes is not None else None,  # type: ignore[arg-type]
        message=str(row[10] or ""),
    )


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
