"""File lifecycle service.

Write path: MIME policy -> staged blob write -> commit -> record insert.
The record is only inserted once the blob is fully on disk; if the insert
fails the blob is removed again, so a failed upload leaves neither a blob
nor a record.

Delete path: record lookup -> blob removal -> record removal.
"""
import logging
from datetime import timedelta
from typing import Optional

from ..errors import InternalError, NotFoundError, UploaderError
from .index import MetadataIndex
from .policy import MimePolicy, normalize_mime
from .schemas import FileRecord, IncomingUpload, StoredBlob, utc_now
from .storage import BlobStorage, BlobWriter

logger = logging.getLogger(__name__)


class FileService:
    """Coordinates policy, storage and index for uploads and deletes."""

    def __init__(
        self,
        policy: MimePolicy,
        storage: BlobStorage,
        index: MetadataIndex,
        base_url: str,
        default_retention_seconds: int,
    ) -> None:
        self._policy = policy
        self._storage = storage
        self._index = index
        self._base_url = base_url.rstrip("/")
        self._default_retention = default_retention_seconds

    def public_url(self, filename: str) -> str:
        return f"{self._base_url}/{filename}"

    def begin_upload(self, incoming: IncomingUpload) -> BlobWriter:
        """Check the declared MIME type and open a staged blob for *incoming*.

        Raises:
            ValidationError: blocked MIME type.
            InternalError: no free id could be drawn.
        """
        mime = normalize_mime(incoming.content_type)
        self._policy.check(mime)
        return self._storage.open_blob(mime, incoming.filename)

    def finish_upload(self, writer: BlobWriter, retention_seconds: Optional[int] = None) -> FileRecord:
        """Publish the blob staged in *writer* and index it.

        Args:
            writer: A writer returned by ``begin_upload``, fully fed.
            retention_seconds: Positive override of the default retention.

        Returns:
            The inserted FileRecord.

        Raises:
            InternalError: storage or index failure.
        """
        retention = retention_seconds or self._default_retention
        blob = writer.commit()
        record = self._index_blob(blob, retention)

        logger.info(
            "File uploaded: %s (%d bytes, %s), expires %s",
            record.filename,
            record.size,
            record.mime,
            record.expires_at.isoformat(),
        )
        return record

    def _index_blob(self, blob: StoredBlob, retention: int) -> FileRecord:
        created_at = utc_now()
        try:
            record = FileRecord(
                id=blob.id,
                filename=blob.filename,
                ext=blob.ext,
                mime=blob.mime,
                size=blob.size,
                created_at=created_at,
                expires_at=created_at + timedelta(seconds=retention),
            )
            self._index.insert(record)
        except Exception as exc:
            self._rollback_blob(blob.filename)
            if isinstance(exc, UploaderError):
                raise
            logger.exception("Indexing %s failed", blob.filename)
            raise InternalError("Failed to record file") from exc
        return record

    def _rollback_blob(self, filename: str) -> None:
        try:
            self._storage.remove(filename)
        except OSError as exc:
            logger.error("Could not roll back blob %s: %s", filename, exc)

    def get(self, file_id: str) -> Optional[FileRecord]:
        return self._index.get(file_id)

    def delete(self, file_id: str) -> FileRecord:
        """Remove the blob and record for *file_id*.

        Raises:
            NotFoundError: no record for *file_id*, or a concurrent delete
                removed it first.
            InternalError: the blob could not be removed.
        """
        record = self._index.get(file_id)
        if record is None:
            raise NotFoundError()

        try:
            self._storage.remove(record.filename)
        except OSError as exc:
            logger.error("Failed removing blob %s: %s", record.filename, exc)
            raise InternalError("Failed to delete file") from exc

        if not self._index.delete(file_id):
            logger.info("File %s was deleted concurrently", record.filename)
            raise NotFoundError()
        logger.info("File deleted: %s", record.filename)
        return record
