"""Decoder result types."""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from snorecard.constants import ChunkFormatConstants as CF
from snorecard.models.events import Event, SignalSample
from snorecard.models.session import Session
from snorecard.parsers.byte_reader import u16_at, u32_at


class FileKind(str, Enum):
    """Classification of a card file."""

    UNKNOWN = "unknown"
    CHUNK = "chunk"
    FRAME_STREAM = "frame_stream"
    EDF = "edf"


class EventStreamStatus(Enum):
    """Outcome of walking one event stream."""

    OK = "ok"
    PARTIAL_OK = "partial_ok"


@dataclass(frozen=True)
class ChunkHeader:
    """The fixed 15-byte header that starts every chunk."""

    offset: int
    version: int
    block_size: int
    header_type: int
    family: int
    family_version: int
    ext: int
    session_id: int
    timestamp: int

    @classmethod
    def parse(cls, data: bytes, offset: int = 0) -> "ChunkHeader":
        """
        Parse the common header at ``offset``.

        Raises:
            EOFError: If fewer than 15 bytes remain
        """
        if offset + CF.COMMON_HEADER_SIZE > len(data):
            raise EOFError(f"Chunk header at {offset} is truncated")
        return cls(
            offset=offset,
            version=data[offset],
            block_size=u16_at(data, offset + 1),
            header_type=data[offset + 3],
            family=data[offset + 4],
            family_version=data[offset + 5],
            ext=data[offset + 6],
            session_id=u32_at(data, offset + 7),
            timestamp=u32_at(data, offset + 11),
        )

    @property
    def end(self) -> int:
        """Offset one past the last byte of this chunk."""
        return self.offset + self.block_size


@dataclass(frozen=True)
class EventStreamResult:
    """
    Events and samples recovered from one event stream.

    ``status`` is PARTIAL_OK when at least one unknown code forced a resync;
    ``first_unknown_code`` then holds the first such code.
    """

    status: EventStreamStatus
    events: tuple[Event, ...] = ()
    pressure_samples: tuple[SignalSample, ...] = ()
    exhale_pressure_samples: tuple[SignalSample, ...] = ()
    leak_samples: tuple[SignalSample, ...] = ()
    first_unknown_code: int | None = None
    end_offset: int = 0

    @property
    def is_partial(self) -> bool:
        return self.status is EventStreamStatus.PARTIAL_OK


class DebugHeader(BaseModel):
    """Small summary of a file's leading bytes."""

    model_config = ConfigDict(frozen=True)

    length: int = Field(ge=0, description="File length in bytes")
    b0: int | None = Field(default=None, description="First byte, if any")
    first16: str = Field(default="", description="First 16 bytes as hex")

    @classmethod
    def from_bytes(cls, data: bytes) -> "DebugHeader":
        return cls(
            length=len(data),
            b0=data[0] if data else None,
            first16=data[:16].hex(" "),
        )


@dataclass(frozen=True)
class ParseResult:
    """Outcome of decoding one file."""

    kind: FileKind
    debug_header: DebugHeader
    sessions: tuple[Session, ...] = ()
    magic: str | None = None
    partial: bool = False
    error: str | None = None
    chunk_count: int = 0
    crc_ok: int = 0
    crc_failed: int = 0
    unknown_codes: tuple[int, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return self.error is None
