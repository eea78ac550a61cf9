"""FastAPI routers for upload, delete and blob retrieval.

Endpoints:
    POST /upload: Store a file (shared secret required)
    DELETE /delete/{file_id}: Remove a file and its record (shared secret required)
    GET /{filename}: Serve a stored blob by its on-disk name

The retrieval router has a catch-all path and must be included last.
"""
import asyncio
import logging
import mimetypes
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse

from ..access import require_api_key
from ..context import ServiceContext, get_context
from ..errors import NotFoundError, SizeLimitError, ValidationError
from .intake import read_upload
from .schemas import DeleteResponse, UploadResponse, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])
retrieval_router = APIRouter(tags=["retrieval"])

RETENTION_FIELD = "expire_in_seconds"
# Multipart framing and small form fields allowed on top of the file ceiling.
FORM_OVERHEAD_BYTES = 64 * 1024
# Expiry must stay representable with room to spare.
RETENTION_HEADROOM = timedelta(days=1)
# Uploaded content is served as an inert, sandboxed document.
BLOB_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'; sandbox",
}


def parse_retention(raw: Optional[str], max_seconds: Optional[int] = None) -> Optional[int]:
    """Validate the optional retention override.

    Returns None when absent or blank, so the default retention applies.

    Raises:
        ValidationError: not a positive integer, above *max_seconds*, or so
            large that the expiry instant cannot be represented.
    """
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    try:
        seconds = int(raw)
    except ValueError:
        raise ValidationError(f"{RETENTION_FIELD} must be a positive integer") from None
    if seconds <= 0:
        raise ValidationError(f"{RETENTION_FIELD} must be a positive integer")
    if max_seconds is not None and seconds > max_seconds:
        raise ValidationError(f"{RETENTION_FIELD} may not exceed {max_seconds}")
    try:
        utc_now() + timedelta(seconds=seconds) + RETENTION_HEADROOM
    except OverflowError:
        raise ValidationError(f"{RETENTION_FIELD} is too large") from None
    return seconds


def check_declared_size(request: Request, max_size_bytes: int) -> None:
    """Refuse a body whose Content-Length already rules it out.

    Raises:
        SizeLimitError: the declared body exceeds the ceiling plus form overhead.
    """
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > max_size_bytes + FORM_OVERHEAD_BYTES:
        logger.info("Refused upload with Content-Length %s before reading it", declared)
        raise SizeLimitError(f"File exceeds the maximum size of {max_size_bytes} bytes")


@router.post(
    "/upload",
    response_model=UploadResponse,
    dependencies=[Depends(require_api_key)],
)
async def upload_file(request: Request, context: ServiceContext = Depends(get_context)):
    """Upload a file and get back its public URL.

    The body is only read after the API key check has passed, and the file
    part is streamed to storage while it arrives.

    Returns:
        UploadResponse with url, id, filename, mime, size and expires_at.

    Raises:
        ValidationError 400: no file, blocked MIME type, bad retention value
        SizeLimitError 413: file exceeds the configured ceiling
        InternalError 500: storage or index failure
    """
    check_declared_size(request, context.storage.max_size_bytes)

    parsed = await read_upload(
        request.headers.get("content-type", ""),
        request.stream(),
        context.files.begin_upload,
    )
    try:
        retention = parse_retention(
            parsed.fields.get(RETENTION_FIELD),
            context.config.retention.max_seconds,
        )
    except ValidationError:
        parsed.writer.abort()
        raise

    loop = asyncio.get_event_loop()
    record = await loop.run_in_executor(None, context.files.finish_upload, parsed.writer, retention)

    return UploadResponse(
        url=context.files.public_url(record.filename),
        id=record.id,
        filename=record.filename,
        mime=record.mime,
        size=record.size,
        expires_at=record.expires_at,
    )


@router.delete(
    "/delete/{file_id}",
    response_model=DeleteResponse,
    dependencies=[Depends(require_api_key)],
)
async def delete_file(file_id: str, context: ServiceContext = Depends(get_context)):
    """Delete a file by id.

    Raises:
        NotFoundError 404: unknown id
    """
    loop = asyncio.get_event_loop()
    record = await loop.run_in_executor(None, context.files.delete, file_id)
    return DeleteResponse(ok=True, deleted=record.filename)


@retrieval_router.get("/{filename}")
async def get_blob(filename: str, context: ServiceContext = Depends(get_context)):
    """Serve a stored blob.

    Visibility depends only on the blob being on disk; the index is not
    consulted. Dotfiles and anything outside the upload directory are 404.
    Responses carry a sandboxing Content-Security-Policy.
    """
    path = context.storage.resolve(filename)
    if path is None:
        raise NotFoundError()
    media_type, _ = mimetypes.guess_type(path.name)
    return FileResponse(
        path=path,
        media_type=media_type or "application/octet-stream",
        headers=BLOB_HEADERS,
    )
