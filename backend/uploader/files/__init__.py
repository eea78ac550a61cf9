"""Hosted file lifecycle: policy, blob storage, metadata index.

Blobs are stored flat in the upload directory as ``{id}.{ext}`` and described
by one FileRecord each in DuckDB. The router lives in ``files.router`` and is
not imported here, because it depends on the service context.
"""
from .index import MetadataIndex
from .policy import MimePolicy, generate_id, resolve_extension
from .schemas import FileRecord, IncomingUpload, StoredBlob
from .service import FileService
from .storage import BlobStorage, BlobWriter

__all__ = [
    "BlobStorage",
    "BlobWriter",
    "FileRecord",
    "FileService",
    "IncomingUpload",
    "MetadataIndex",
    "MimePolicy",
    "StoredBlob",
    "generate_id",
    "resolve_extension",
]
