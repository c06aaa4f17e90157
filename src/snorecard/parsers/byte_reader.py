"""
Little-endian byte cursor.

Reads integers from an in-memory buffer with an explicit position, the way the
card formats are laid out (all multi-byte integers are little-endian).
"""

import struct

from typing import cast


def u16_at(data: bytes, offset: int) -> int:
    """Read an unsigned 16-bit little-endian integer at ``offset``."""
    return data[offset] | (data[offset + 1] << 8)


def u32_at(data: bytes, offset: int) -> int:
    """Read an unsigned 32-bit little-endian integer at ``offset``."""
    return (
        data[offset]
        | (data[offset + 1] << 8)
        | (data[offset + 2] << 16)
        | (data[offset + 3] << 24)
    )


class LittleEndianReader:
    """
    Cursor over a byte buffer.

    Every read advances the position and raises EOFError when the buffer
    does not hold enough bytes, leaving the position unchanged.
    """

    def __init__(self, data: bytes | bytearray | memoryview, offset: int = 0):
        """
        Initialize the reader.

        Args:
            data: Buffer to read from
            offset: Initial position
        """
        self.data = bytes(data)
        self.pos = 0
        self.seek(offset)

    def __len__(self) -> int:
        return len(self.data)

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    @property
    def eof(self) -> bool:
        return self.pos >= len(self.data)

    def seek(self, offset: int) -> None:
        """Move to an absolute position."""
        if offset < 0 or offset > len(self.data):
            raise EOFError(f"Seek to {offset} outside buffer of {len(self.data)} bytes")
        self.pos = offset

    def skip(self, count: int) -> None:
        """Advance by ``count`` bytes."""
        self.seek(self.pos + count)

    def read_bytes(self, count: int) -> bytes:
        """Read raw bytes."""
        if count < 0 or self.pos + count > len(self.data):
            raise EOFError(f"Expected {count} bytes, got {max(self.remaining, 0)}")
        out = self.data[self.pos : self.pos + count]
        self.pos += count
        return out

    def _unpack(self, fmt: str, size: int) -> int:
        return cast(int, struct.unpack(f"<{fmt}", self.read_bytes(size))[0])

    def read_uint8(self) -> int:
        """Read unsigned 8-bit integer."""
        return self._unpack("B", 1)

    def read_int8(self) -> int:
        """Read signed 8-bit integer."""
        return self._unpack("b", 1)

    def read_uint16(self) -> int:
        """Read unsigned 16-bit integer."""
        return self._unpack("H", 2)

    def read_int16(self) -> int:
        """Read signed 16-bit integer."""
        return self._unpack("h", 2)

    def read_uint32(self) -> int:
        """Read unsigned 32-bit integer."""
        return self._unpack("I", 4)

    def peek_uint8(self, ahead: int = 0) -> int:
        """Read an unsigned byte ``ahead`` bytes past the cursor without moving."""
        index = self.pos + ahead
        if index >= len(self.data):
            raise EOFError(f"Peek at {index} past end of buffer")
        return self.data[index]

    def peek_uint16(self, ahead: int = 0) -> int:
        """Read an unsigned 16-bit integer without moving the cursor."""
        index = self.pos + ahead
        if index + 2 > len(self.data):
            raise EOFError(f"Peek at {index} past end of buffer")
        return u16_at(self.data, index)

    def read_ascii(self, count: int, strip: bool = True) -> str:
        """Read a fixed-width ASCII field (latin-1 decoded so every byte maps)."""
        text = self.read_bytes(count).decode("latin-1")
        return text.strip() if strip else text
