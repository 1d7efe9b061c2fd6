import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Iterable, Iterator, List, Optional, Union

from werkzeug.datastructures import Headers
from werkzeug.exceptions import ClientDisconnected, RequestEntityTooLarge
from werkzeug.http import parse_options_header
from werkzeug.sansio.multipart import Data, Epilogue, Field, File, MultipartDecoder, NeedData

from .errors import MissingFileError, UploadTooLargeError, UploadTransportError
from .storage import CHUNK_SIZE_BYTES

logger = logging.getLogger("mediastore.uploads")

FILE_FIELD = "file"
TITLE_FIELD = "title"
CREATION_DATE_FIELD = "creationDate"

_RFC3339_PATTERN = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt ](?P<time>\d{2}:\d{2}):(?P<second>\d{2})"
    r"(?:\.(?P<fraction>\d+))?(?P<offset>[Zz]|[+-](?:[01]\d|2[0-3]):[0-5]\d)$"
)


@dataclass(frozen=True)
class UploadPart:
    """One fully received multipart part."""

    name: str
    data: bytes
    filename: Optional[str] = None
    headers: Optional[Headers] = None


@dataclass(frozen=True)
class DecodedUpload:
    payload: bytes
    filename: str
    title: Optional[str] = None
    creation_date: Optional[datetime] = None


def parse_boundary(content_type: Optional[str]) -> bytes:
    """Extract the multipart boundary from a Content-Type header value."""

    mimetype, options = parse_options_header(content_type or "")
    boundary = options.get("boundary")
    if mimetype != "multipart/form-data" or not boundary:
        raise UploadTransportError(detail=f"not a multipart body: {mimetype or 'missing content type'}")
    try:
        return boundary.encode("latin-1")
    except UnicodeEncodeError as error:
        raise UploadTransportError(detail="invalid multipart boundary") from error


def _read_chunks(stream: BinaryIO, size: int) -> Iterator[Optional[bytes]]:
    while True:
        try:
            data = stream.read(size)
        except ClientDisconnected as error:
            raise UploadTransportError(detail="client disconnected") from error
        except OSError as error:
            raise UploadTransportError(detail=str(error)) from error
        if not data:
            break
        yield data
    yield None


def iter_multipart_parts(
    stream: BinaryIO,
    boundary: bytes,
    max_bytes: int,
    chunk_size: int = CHUNK_SIZE_BYTES,
) -> Iterator[UploadPart]:
    """Decode *stream* into parts in a single pass.

    Only the part currently being received is held in memory. The whole body,
    framing included, may not exceed *max_bytes*; the check runs as bytes
    arrive so an oversized request is abandoned mid-stream.
    """

    decoder = MultipartDecoder(boundary)
    received = 0
    current: Optional[Union[Field, File]] = None
    buffer: List[bytes] = []
    finished = False

    try:
        for chunk in _read_chunks(stream, chunk_size):
            if chunk is not None:
                received += len(chunk)
                if received > max_bytes:
                    raise UploadTooLargeError(max_bytes, received)

            completed: List[UploadPart] = []
            try:
                decoder.receive_data(chunk)
                event = decoder.next_event()
                while not isinstance(event, (Epilogue, NeedData)):
                    if isinstance(event, (Field, File)):
                        current = event
                        buffer = []
                    elif isinstance(event, Data) and current is not None:
                        buffer.append(event.data)
                        if not event.more_data:
                            completed.append(
                                UploadPart(
                                    name=current.name,
                                    data=b"".join(buffer),
                                    filename=current.filename if isinstance(current, File) else None,
                                    headers=current.headers,
                                )
                            )
                            current = None
                            buffer = []
                    event = decoder.next_event()
            except ValueError as error:
                raise UploadTransportError(detail=f"malformed multipart body: {error}") from error

            yield from completed
            if isinstance(event, Epilogue):
                finished = True
                break
    except RequestEntityTooLarge as error:
        raise UploadTooLargeError(max_bytes, received) from error

    if not finished:
        raise UploadTransportError(detail="multipart body ended before the closing boundary")


def parse_creation_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp, returning ``None`` when it is not one."""

    if not value:
        return None
    match = _RFC3339_PATTERN.match(value)
    if match is None:
        return None

    second = match["second"]
    if second == "60":
        # Leap second: datetime stops at :59.
        second = "59"
    fraction = (match["fraction"] or "")[:6].ljust(6, "0")
    offset = match["offset"].upper().replace("Z", "+00:00")

    try:
        return datetime.fromisoformat(
            f"{match['date']}T{match['time']}:{second}.{fraction}{offset}"
        )
    except ValueError:
        return None


def decode_upload(parts: Iterable[UploadPart]) -> DecodedUpload:
    """Collect the recognised fields of an upload.

    ``file`` carries the payload and original filename, ``title`` is decoded
    leniently as UTF-8 and an unparseable ``creationDate`` counts as absent.
    Other fields are ignored. Transport errors raised while iterating *parts*
    propagate unchanged.
    """

    payload: Optional[bytes] = None
    filename = ""
    title: Optional[str] = None
    creation_date: Optional[datetime] = None

    for part in parts:
        if part.name == FILE_FIELD:
            payload = part.data
            filename = part.filename or ""
        elif part.name == TITLE_FIELD:
            title = part.data.decode("utf-8", "replace")
        elif part.name == CREATION_DATE_FIELD:
            raw_date = part.data.decode("utf-8", "replace")
            creation_date = parse_creation_date(raw_date)
            if creation_date is None:
                logger.info("upload_creation_date_ignored value=%r", raw_date[:64])
        else:
            logger.debug("upload_field_ignored name=%r", part.name[:64])

    if payload is None:
        raise MissingFileError()

    return DecodedUpload(
        payload=payload,
        filename=filename,
        title=title,
        creation_date=creation_date,
    )
