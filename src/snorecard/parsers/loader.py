"""
File kind detection and decoder dispatch.

``decode_file`` is the single entry point for turning one file's bytes into
sessions. It never raises for malformed input: decode failures are logged
and reported through ``ParseResult.error``.
"""

import logging
import re
import struct

from datetime import tzinfo

from snorecard.constants import ChunkFormatConstants as CF
from snorecard.parsers.base import ParserError
from snorecard.parsers.chunk_decoder import ChunkDecoder, looks_like_chunk
from snorecard.parsers.edf import EDFDecoder, looks_like_edf
from snorecard.parsers.frames import FrameStreamDecoder, looks_like_frame_stream
from snorecard.parsers.types import DebugHeader, FileKind, ParseResult

logger = logging.getLogger(__name__)

_NUMBERED_EXTENSION = re.compile(r"\.\d{3}$")


def read_magic(data: bytes) -> str | None:
    """Return the first four bytes as text when they are printable ASCII."""
    head = data[:4]
    if len(head) == 4 and all(0x20 <= b <= 0x7E for b in head):
        return head.decode("ascii")
    return None


def detect_kind(data: bytes, source: str | None = None) -> FileKind:
    """
    Classify a buffer.

    Order: numbered extension (``.000`` etc.) with a chunk header, ``.edf``
    extension, EDF header sniff, chunk header sniff, legacy frame stream.
    """
    name = (source or "").lower()
    if (name.endswith(CF.CHUNK_EXTENSIONS) or _NUMBERED_EXTENSION.search(name)) and looks_like_chunk(data):
        return FileKind.CHUNK
    if name.endswith(".edf") or looks_like_edf(data):
        return FileKind.EDF
    if looks_like_chunk(data):
        return FileKind.CHUNK
    if looks_like_frame_stream(data):
        return FileKind.FRAME_STREAM
    return FileKind.UNKNOWN


def decode_file(
    data: bytes | bytearray,
    source: str | None = None,
    tz: tzinfo | None = None,
) -> ParseResult:
    """
    Decode one card file.

    Args:
        data: File contents
        source: File path or name; used for kind sniffing and provenance
        tz: Zone of EDF wall-clock header times (None = system local)

    Returns:
        ParseResult; sessions are empty for unknown or undecodable files
    """
    data = bytes(data)
    kind = detect_kind(data, source)
    base = {
        "kind": kind,
        "debug_header": DebugHeader.from_bytes(data),
        "magic": read_magic(data),
    }

    try:
        if kind is FileKind.CHUNK:
            chunks = ChunkDecoder().decode(data, source)
            if chunks.partial:
                logger.debug(f"Partial decode of {source or '(memory)'}: stopped early")
            return ParseResult(
                **base,
                sessions=chunks.sessions,
                partial=chunks.partial,
                chunk_count=chunks.chunk_count,
                crc_ok=chunks.crc_ok,
                crc_failed=chunks.crc_failed,
                unknown_codes=chunks.unknown_codes,
            )

        if kind is FileKind.EDF:
            session = EDFDecoder(tz).decode(data, source)
            return ParseResult(**base, sessions=(session,))

        if kind is FileKind.FRAME_STREAM:
            session, crc_ok, crc_failed = FrameStreamDecoder().decode(data, source)
            return ParseResult(
                **base,
                sessions=(session,) if session is not None else (),
                crc_ok=crc_ok,
                crc_failed=crc_failed,
            )
    except (ParserError, EOFError, struct.error, ValueError, IndexError) as e:
        logger.warning(f"Failed to decode {source or '(memory)'} as {kind.value}: {e}")
        return ParseResult(**base, error=str(e))

    logger.debug(f"Unrecognized file {source or '(memory)'} ({len(data)} bytes)")
    return ParseResult(**base)
