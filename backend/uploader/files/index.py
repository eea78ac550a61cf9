"""DuckDB-backed metadata index for hosted files.

Database Schema:
    files table:
        - id: Primary key, also the blob's base name
        - filename: On-disk blob name ({id}.{ext})
        - ext / mime / size: Blob description captured at upload
        - created_at / expires_at: UTC timestamps (stored naive)

Thread Safety:
    A single DuckDB connection is shared by request handlers and the
    expiration scheduler. Every statement runs under ``_lock``, so inserts
    and deletes are atomic with respect to each other and conflicting writes
    to one id are applied one after the other: a second delete of the same
    id finds nothing and is a no-op.

Usage:
    index = MetadataIndex("db/files.duckdb")
    index.insert(record)
    expired = index.list_expired(datetime.now(timezone.utc))
"""
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import duckdb

from ..errors import DuplicateRecordError
from .schemas import FileRecord

logger = logging.getLogger(__name__)

_COLUMNS = "id, filename, ext, mime, size, created_at, expires_at"


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MetadataIndex:
    """Durable id -> FileRecord store.

    Attributes:
        db_path: Path to the DuckDB database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self.db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the files table and expiry index if they don't exist."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id VARCHAR PRIMARY KEY,
                    filename VARCHAR NOT NULL,
                    ext VARCHAR NOT NULL,
                    mime VARCHAR NOT NULL,
                    size BIGINT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_files_expires_at ON files(expires_at)
            """)

    @staticmethod
    def _row_to_record(row) -> FileRecord:
        return FileRecord(
            id=row[0],
            filename=row[1],
            ext=row[2],
            mime=row[3],
            size=row[4],
            created_at=_from_db_time(row[5]),
            expires_at=_from_db_time(row[6]),
        )

    def insert(self, record: FileRecord) -> None:
        """Insert *record*. Never overwrites.

        Raises:
            DuplicateRecordError: a record with the same id already exists.
        """
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    f"INSERT INTO files ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [
                        record.id,
                        record.filename,
                        record.ext,
                        record.mime,
                        record.size,
                        _to_db_time(record.created_at),
                        _to_db_time(record.expires_at),
                    ],
                )
            except duckdb.ConstraintException as exc:
                raise DuplicateRecordError(f"File id {record.id} already exists") from exc

    def get(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {_COLUMNS} FROM files WHERE id = ?",
                [file_id],
            ).fetchone()
        if not row:
            return None
        return self._row_to_record(row)

    def delete(self, file_id: str) -> bool:
        """Remove the record for *file_id*. Returns False if it was absent."""
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "DELETE FROM files WHERE id = ? RETURNING id",
                [file_id],
            ).fetchone()
        return row is not None

    def list_expired(self, cutoff: datetime) -> List[FileRecord]:
        """All records with ``expires_at <= cutoff``, soonest first."""
        with self._lock:
            rows = self._get_connection().execute(
                f"SELECT {_COLUMNS} FROM files WHERE expires_at <= ? ORDER BY expires_at ASC",
                [_to_db_time(cutoff)],
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            row = self._get_connection().execute("SELECT COUNT(*) FROM files").fetchone()
        return int(row[0])

    def close(self) -> None:
        """Flush and close the database connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.execute("CHECKPOINT")
                finally:
                    self._connection.close()
                    self._connection = None
