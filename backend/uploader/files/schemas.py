"""Pydantic schemas and boundary types for hosted files.

This module defines the data models of the upload lifecycle:
- FileRecord: the metadata row stored in DuckDB, one per live blob
- IncomingUpload: the typed upload payload handed over by the HTTP layer
- StoredBlob: what the storage writer reports after committing a blob
- UploadResponse / DeleteResponse: API responses

Blobs are stored flat in the upload directory as ``{id}.{ext}``; the id is
also the record's primary key.
"""
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_serializer, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(BaseModel):
    """Metadata for one hosted blob.

    Records are never updated; they are inserted once the blob is fully
    written and deleted together with it.
    """
    id: str = Field(..., min_length=1, description="Opaque id, also the blob base name")
    filename: str = Field(..., description="On-disk blob name ({id}.{ext})")
    ext: str = Field(..., description="Resolved file extension, without dot")
    mime: str = Field(..., description="Declared MIME type at upload time")
    size: int = Field(..., ge=0, description="Blob size in bytes")
    created_at: datetime = Field(default_factory=utc_now, description="Creation instant (UTC)")
    expires_at: datetime = Field(..., description="Reclamation eligibility instant (UTC)")

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> "FileRecord":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self


@dataclass
class IncomingUpload:
    """The file part of an upload, as announced by its multipart headers.

    The bytes themselves are streamed into a BlobWriter as they arrive.
    """
    filename: str
    content_type: str


@dataclass
class StoredBlob:
    id: str
    filename: str
    ext: str
    mime: str
    size: int


class UploadResponse(BaseModel):
    """Response after a successful upload."""
    url: str = Field(..., description="Public retrieval URL")
    id: str = Field(..., description="File id (used for deletion)")
    filename: str = Field(..., description="Blob name")
    mime: str = Field(..., description="MIME type")
    size: int = Field(..., description="Size in bytes")
    expires_at: datetime = Field(..., description="When the file will be reclaimed")

    @field_serializer("expires_at")
    def _iso_utc(self, value: datetime) -> str:
        return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class DeleteResponse(BaseModel):
    ok: bool = True
    deleted: str = Field(..., description="Name of the removed blob")
