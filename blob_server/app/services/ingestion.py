"""Turn an upload request body into a stream of payload bytes.

The body is either the payload itself or a multipart/form-data form. For a
form, the payload is the first part that has a filename or is named
``file``; parts before it are read and dropped, and reading stops once that
part ends. Nothing here touches the disk.
"""

import re
from typing import AsyncIterator, Dict, List, Optional, Tuple

from python_multipart import MultipartParser
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header

from blob_server.app.errors import InvalidContentType, InvalidMultipart, MissingFilePart, UploadTooLarge
from blob_server.logger_config import setup_logger

logger = setup_logger()

MULTIPART_FORM_DATA = "multipart/form-data"

_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z-]+"
MEDIA_TYPE_PATTERN = re.compile(rf"{_TOKEN}/{_TOKEN}")

# filename*=charset'language'value with a non-empty value
EXTENDED_FILENAME_PATTERN = re.compile(
    rb";\s*filename\*\s*=\s*[^';]*'[^';]*'[^;\s]", re.IGNORECASE
)


def parse_content_type(value: str) -> Tuple[str, Dict[str, str]]:
    """Split a Content-Type header into a lower-cased media type and params.

    Raises:
        InvalidContentType: If the media type is not ``type/subtype``.
    """
    try:
        media_type, params = parse_options_header(value)
    except (ValueError, UnicodeError):
        raise InvalidContentType(value)

    media_type = media_type.decode("latin-1").strip().lower()
    if not MEDIA_TYPE_PATTERN.fullmatch(media_type):
        raise InvalidContentType(value)

    return media_type, {
        key.decode("latin-1").lower(): val.decode("latin-1")
        for key, val in params.items()
    }


async def limit_body(chunks: AsyncIterator[bytes], max_bytes: int) -> AsyncIterator[bytes]:
    """Pass `chunks` through, failing once more than `max_bytes` were read."""
    received = 0
    async for chunk in chunks:
        received += len(chunk)
        if received > max_bytes:
            raise UploadTooLarge(max_bytes)
        yield chunk


def select_source(
    content_type: Optional[str], chunks: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    """Pick the payload stream for a body with the given Content-Type.

    Validation of the header happens right away, before the body is read.
    """
    if not content_type:
        return chunks

    media_type, params = parse_content_type(content_type)
    if media_type != MULTIPART_FORM_DATA:
        return chunks

    boundary = params.get("boundary")
    if not boundary:
        raise InvalidMultipart("missing boundary")

    return FilePartReader(boundary).read(chunks)


def _is_file_part(disposition: bytes) -> bool:
    _, params = parse_options_header(disposition)
    # An RFC 5987 ``filename*`` declares a filename as much as ``filename``.
    filename = (
        params.get(b"filename")
        or params.get(b"filename*")
        or EXTENDED_FILENAME_PATTERN.search(disposition)
    )
    return bool(filename) or params.get(b"name") == b"file"


class FilePartReader:
    """Streams the data of the first file-bearing part of a multipart body."""

    def __init__(self, boundary: str):
        self.boundary = boundary
        self._events: List[Tuple[str, bytes]] = []
        self._header_field = b""
        self._header_value = b""
        self._headers: Dict[bytes, bytes] = {}
        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
            },
        )

    # Parser callbacks run synchronously inside ``write``; they only queue
    # events that ``read`` consumes between writes.

    def _on_part_begin(self):
        self._headers = {}

    def _on_header_field(self, data, start, end):
        self._header_field += data[start:end]

    def _on_header_value(self, data, start, end):
        self._header_value += data[start:end]

    def _on_header_end(self):
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self):
        disposition = self._headers.get(b"content-disposition", b"")
        self._events.append(("headers", disposition))

    def _on_part_data(self, data, start, end):
        self._events.append(("data", data[start:end]))

    def _on_part_end(self):
        self._events.append(("end", b""))

    async def read(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        selected = False
        skipped = 0

        async for chunk in chunks:
            try:
                self._parser.write(chunk)
            except MultipartParseError as exc:
                raise InvalidMultipart(str(exc))

            events, self._events = self._events, []
            for kind, payload in events:
                if kind == "headers":
                    selected = _is_file_part(payload)
                    if not selected:
                        skipped += 1
                elif kind == "data":
                    if selected and payload:
                        yield payload
                elif selected:
                    logger.debug(f"Multipart file part complete after skipping {skipped} part(s)")
                    return

        if selected:
            raise InvalidMultipart("body ended inside the file part")
        raise MissingFilePart()
