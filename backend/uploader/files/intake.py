"""Streaming multipart intake for ``POST /upload``.

The request body is pushed through python-multipart's ``MultipartParser``
one network chunk at a time. Bytes of the ``file`` part go straight into a
staged BlobWriter as they arrive, so the size ceiling stops the request as
soon as it is crossed instead of after the whole body has been spooled.

Parser callbacks only record events. The file I/O those events imply runs
in the default executor between chunks, so the event loop never blocks on
disk writes.

``read_upload`` parses to completion: it returns a ParsedUpload, or raises
and leaves no staged blob behind.
"""
import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

import python_multipart
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import parse_options_header

from ..errors import ValidationError
from .schemas import IncomingUpload
from .storage import BlobWriter

logger = logging.getLogger(__name__)

FILE_FIELD = "file"
MAX_FIELD_BYTES = 64 * 1024
MAX_FIELDS = 32


@dataclass
class ParsedUpload:
    """A completely received upload: the staged file plus plain form fields."""
    incoming: IncomingUpload
    writer: BlobWriter
    fields: Dict[str, str]


@dataclass
class _Part:
    name: str = ""
    filename: Optional[str] = None
    content_type: str = ""
    data: bytearray = field(default_factory=bytearray)


class _UploadParser:
    def __init__(self, open_blob: Callable[[IncomingUpload], BlobWriter], charset: str) -> None:
        self._open_blob = open_blob
        self._charset = charset
        self._events: List[Tuple[str, _Part, bytes]] = []
        self._part = _Part()
        self._headers: Dict[bytes, bytes] = {}
        self._header_name = b""
        self._header_value = b""
        self._file_part: Optional[_Part] = None
        self._field_count = 0
        self.complete = False
        self.fields: Dict[str, str] = {}
        self.incoming: Optional[IncomingUpload] = None
        self.writer: Optional[BlobWriter] = None

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_end": self.on_end,
        }

    def on_part_begin(self) -> None:
        self._part = _Part()
        self._headers = {}

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_name += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_name.lower()] = self._header_value
        self._header_name = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition"))
        part = self._part
        part.name = self._decode(options.get(b"name", b""))
        if b"filename" in options:
            part.filename = self._decode(options[b"filename"])
            part.content_type = self._headers.get(b"content-type", b"").decode("latin-1")
        self._events.append(("headers", part, b""))

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._events.append(("data", self._part, data[start:end]))

    def on_part_end(self) -> None:
        self._events.append(("end", self._part, b""))

    def on_end(self) -> None:
        self.complete = True

    def _decode(self, value: bytes) -> str:
        try:
            return value.decode(self._charset)
        except UnicodeDecodeError:
            return value.decode("latin-1")

    async def drain(self) -> None:
        """Act on the events recorded since the last call."""
        loop = asyncio.get_event_loop()
        events, self._events = self._events, []
        for kind, part, data in events:
            if kind == "headers":
                await self._start_part(loop, part)
            elif kind == "data":
                if part is self._file_part:
                    await loop.run_in_executor(None, self.writer.write, data)
                elif part.filename is None:
                    if len(part.data) + len(data) > MAX_FIELD_BYTES:
                        raise ValidationError(f"Form field {part.name!r} is too large")
                    part.data.extend(data)
            elif kind == "end" and part.filename is None and part.name:
                self.fields[part.name] = self._decode(bytes(part.data))

    async def _start_part(self, loop: asyncio.AbstractEventLoop, part: _Part) -> None:
        if part.filename is None:
            self._field_count += 1
            if self._field_count > MAX_FIELDS:
                raise ValidationError("Too many form fields")
            return
        if part.name != FILE_FIELD or self.writer is not None:
            # Only the first ``file`` part is stored; other file parts are skipped.
            logger.debug("Skipping file part %r", part.name)
            return
        self.incoming = IncomingUpload(filename=part.filename, content_type=part.content_type)
        self.writer = await loop.run_in_executor(None, self._open_blob, self.incoming)
        self._file_part = part

    def abort(self) -> None:
        if self.writer is not None:
            self.writer.abort()


async def read_upload(
    content_type: str,
    body: AsyncIterator[bytes],
    open_blob: Callable[[IncomingUpload], BlobWriter],
) -> ParsedUpload:
    """Parse a multipart upload body, streaming its ``file`` part to storage.

    Args:
        content_type: The request's Content-Type header.
        body: The raw request body, chunk by chunk.
        open_blob: Called once the ``file`` part's headers are known; checks
            the declared MIME type and returns the writer for its bytes.

    Returns:
        ParsedUpload with the staged writer (not yet committed) and the
        other form fields.

    Raises:
        ValidationError: malformed, or no file part (including non-multipart bodies).
        SizeLimitError: the file part passed the storage ceiling.
    """
    mime, params = parse_options_header(content_type)
    if mime.lower() != b"multipart/form-data":
        # Any other body cannot carry a file part.
        raise ValidationError("No file uploaded")
    boundary = params.get(b"boundary")
    if not boundary:
        raise ValidationError("Malformed upload: missing boundary")
    charset = params.get(b"charset", b"utf-8").decode("latin-1")
    try:
        charset = codecs.lookup(charset).name
    except LookupError:
        charset = "latin-1"

    intake = _UploadParser(open_blob, charset)
    try:
        parser = python_multipart.MultipartParser(boundary, intake.callbacks())
        async for chunk in body:
            parser.write(chunk)
            await intake.drain()
        parser.finalize()
        await intake.drain()
        if not intake.complete:
            raise ValidationError("Malformed upload: body ended early")
    except FormParserError as exc:
        intake.abort()
        raise ValidationError("Malformed upload: invalid multipart data") from exc
    except BaseException:
        intake.abort()
        raise

    writer = intake.writer
    if writer is None:
        raise ValidationError("No file uploaded")
    if not intake.incoming.filename and writer.size == 0:
        # Browsers send an empty unnamed part when nothing was picked.
        writer.abort()
        raise ValidationError("No file uploaded")
    return ParsedUpload(incoming=intake.incoming, writer=writer, fields=intake.fields)
