"""Blob storage on the local filesystem.

Blobs live flat in one directory: ``{upload_dir}/{id}.{ext}``.

A write goes to a hidden staging file, ``.{id}.{ext}.part``, created
exclusively in the same directory. Retrieval never serves dotfiles, so the
blob only becomes visible when ``commit`` hard-links the finished staging
file to its public name. Exceeding the size ceiling or any I/O failure
removes the staging file before the error propagates, so a failed write
leaves nothing behind.
"""
import logging
import os
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Tuple

from ..errors import InternalError, SizeLimitError
from .policy import generate_id, resolve_extension
from .schemas import StoredBlob

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
MAX_NAME_ATTEMPTS = 5
STAGING_SUFFIX = ".part"


class BlobWriter:
    """An upload being streamed into a staging file.

    Obtained from ``BlobStorage.open_blob``. Feed it with ``write`` and
    finish with exactly one of ``commit`` or ``abort``. A failed ``write``
    aborts the writer itself.
    """

    def __init__(
        self,
        storage: "BlobStorage",
        file_id: str,
        ext: str,
        mime: str,
        staging: Path,
        fh: BinaryIO,
    ) -> None:
        self._storage = storage
        self._id = file_id
        self._ext = ext
        self._mime = mime
        self._staging = staging
        self._fh = fh
        self._size = 0
        self._finished = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def finished(self) -> bool:
        return self._finished

    def write(self, chunk: bytes) -> None:
        """Append *chunk* to the staging file.

        Raises:
            SizeLimitError: the running total passed the storage ceiling.
            InternalError: the writer is already finished or the write failed.
        """
        if self._finished:
            raise InternalError("Upload already finished")
        self._size += len(chunk)
        if self._size > self._storage.max_size_bytes:
            self.abort()
            logger.info(
                "Aborted upload %s: over %d bytes",
                self._staging.name,
                self._storage.max_size_bytes,
            )
            raise SizeLimitError(
                f"File exceeds the maximum size of {self._storage.max_size_bytes} bytes"
            )
        try:
            self._fh.write(chunk)
        except OSError as exc:
            self.abort()
            logger.error("Failed writing blob %s: %s", self._staging.name, exc)
            raise InternalError("Failed to store file") from exc

    def commit(self) -> StoredBlob:
        """Publish the staged bytes under ``{id}.{ext}``.

        Raises:
            InternalError: the staging file could not be flushed or linked.
        """
        if self._finished:
            raise InternalError("Upload already finished")
        self._finished = True
        path = self._storage.root / f"{self._id}.{self._ext}"
        try:
            self._fh.close()
            # link() fails if the name exists, so a blob is never overwritten.
            os.link(self._staging, path)
        except OSError as exc:
            logger.error("Failed publishing blob %s: %s", path.name, exc)
            raise InternalError("Failed to store file") from exc
        finally:
            self._storage.discard(self._staging)

        logger.debug("Wrote blob %s (%d bytes)", path.name, self._size)
        return StoredBlob(
            id=self._id,
            filename=path.name,
            ext=self._ext,
            mime=self._mime,
            size=self._size,
        )

    def abort(self) -> None:
        """Drop the staging file. Safe to call more than once."""
        if self._finished:
            return
        self._finished = True
        try:
            self._fh.close()
        except OSError as exc:
            logger.warning("Closing %s failed: %s", self._staging.name, exc)
        self._storage.discard(self._staging)


class BlobStorage:
    """Writes, resolves and removes blobs under a single root directory.

    Args:
        upload_dir: Blob root, created if missing.
        max_size_bytes: Size ceiling for one blob.
        id_factory: Draws candidate ids.
        id_taken: Extra check for ids that are in use elsewhere (the
            metadata index), consulted together with the blob root.
        max_attempts: Id draws before giving up.
    """

    def __init__(
        self,
        upload_dir: str,
        max_size_bytes: int,
        id_factory: Callable[[], str] = generate_id,
        id_taken: Optional[Callable[[str], bool]] = None,
        max_attempts: int = MAX_NAME_ATTEMPTS,
    ) -> None:
        self._root = Path(upload_dir)
        self._max_size = max_size_bytes
        self._id_factory = id_factory
        self._id_taken = id_taken
        self._max_attempts = max_attempts
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def max_size_bytes(self) -> int:
        return self._max_size

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _id_in_use(self, file_id: str) -> bool:
        if any(self._root.glob(f"{file_id}.*")) or any(self._root.glob(f".{file_id}.*")):
            return True
        return self._id_taken is not None and self._id_taken(file_id)

    def _create_staging(self, ext: str) -> Tuple[str, Path, BinaryIO]:
        for attempt in range(1, self._max_attempts + 1):
            file_id = self._id_factory()
            if self._id_in_use(file_id):
                logger.warning("Blob id collision on %s (attempt %d)", file_id, attempt)
                continue
            staging = self._root / f".{file_id}.{ext}{STAGING_SUFFIX}"
            try:
                return file_id, staging, open(staging, "xb")
            except FileExistsError:
                logger.warning("Blob name collision on %s (attempt %d)", staging.name, attempt)
            except OSError as exc:
                logger.error("Could not create %s: %s", staging.name, exc)
                raise InternalError("Failed to store file") from exc
        raise InternalError("Could not allocate a unique file name")

    def open_blob(self, mime: str, original_filename: Optional[str] = None) -> BlobWriter:
        """Reserve a fresh id and start a staged write.

        Raises:
            InternalError: no free id could be drawn.
        """
        ext = resolve_extension(mime, original_filename)
        file_id, staging, fh = self._create_staging(ext)
        return BlobWriter(self, file_id, ext, mime, staging, fh)

    def write(self, stream: BinaryIO, mime: str, original_filename: Optional[str] = None) -> StoredBlob:
        """Copy a readable *stream* into a new blob and return its description.

        Raises:
            SizeLimitError: the stream is larger than the configured ceiling.
            InternalError: no free name could be drawn or the write failed.
        """
        writer = self.open_blob(mime, original_filename)
        try:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                writer.write(chunk)
        except OSError as exc:
            writer.abort()
            logger.error("Failed reading upload for %s: %s", mime, exc)
            raise InternalError("Failed to store file") from exc
        except BaseException:
            writer.abort()
            raise
        return writer.commit()

    def discard(self, path: Path) -> None:
        """Remove a staging file, logging rather than raising on failure."""
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Could not remove partial blob %s: %s", path.name, exc)

    def purge_staging(self) -> int:
        """Remove staging files left behind by an interrupted process."""
        removed = 0
        for path in self._root.glob(f".*{STAGING_SUFFIX}"):
            self.discard(path)
            removed += 1
        if removed:
            logger.info("Removed %d stale staging file(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Removal / lookup
    # ------------------------------------------------------------------

    def remove(self, filename: str) -> bool:
        """Delete a blob. Returns False if it was already gone.

        Other OS errors (e.g. permissions) propagate.
        """
        path = self._root / filename
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("Blob %s already absent", filename)
            return False
        return True

    def resolve(self, filename: str) -> Optional[Path]:
        """Map a requested blob name to a file directly inside the root.

        Returns None for dotfiles (which covers staging files), anything
        containing a path separator, names escaping the root, directories,
        and missing files.
        """
        if not filename or filename.startswith("."):
            return None
        if "/" in filename or "\\" in filename or "\x00" in filename:
            return None
        root = self._root.resolve()
        path = (root / filename).resolve()
        if path.parent != root or not path.is_file():
            return None
        return path

    def exists(self, filename: str) -> bool:
        return (self._root / filename).is_file()

    def count(self) -> int:
        """Number of visible blobs in the root."""
        return sum(1 for p in self._root.iterdir() if p.is_file() and not p.name.startswith("."))
