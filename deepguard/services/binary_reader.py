"""
Bounds-Checked Byte Cursor for DeepGuard
========================================
Reads fixed-width integers and byte runs from an untrusted buffer.

Every read returns None when the buffer is too short instead of raising,
so container walkers can degrade to partial results on truncated or
forged input without wrapping each offset calculation in try/except.
"""

import struct
from typing import Optional


_U16 = {False: struct.Struct(">H"), True: struct.Struct("<H")}
_U32 = {False: struct.Struct(">I"), True: struct.Struct("<I")}


class ByteCursor:
    """
    Position-tracking view over an immutable byte buffer.

    The cursor covers the window [start, end) of the underlying buffer.
    Relative reads (`read_*`) advance the position; absolute reads
    (`*_at`) take an offset relative to the window start and leave the
    position untouched.
    """

    __slots__ = ("_data", "_start", "_end", "_pos", "little_endian")

    def __init__(
        self,
        data: bytes,
        start: int = 0,
        end: Optional[int] = None,
        little_endian: bool = False
    ):
        length = len(data)
        start = max(0, min(start, length))
        end = length if end is None else max(start, min(end, length))

        self._data = data
        self._start = start
        self._end = end
        self._pos = start
        self.little_endian = little_endian

    @property
    def length(self) -> int:
        """Size of the window in bytes."""
        return self._end - self._start

    @property
    def position(self) -> int:
        """Current position relative to the window start."""
        return self._pos - self._start

    @property
    def remaining(self) -> int:
        return self._end - self._pos

    def at_end(self) -> bool:
        return self._pos >= self._end

    def has(self, count: int, offset: Optional[int] = None) -> bool:
        """True if `count` bytes are available at `offset` (default: position)."""
        if count < 0:
            return False
        begin = self._pos if offset is None else self._start + offset
        if offset is not None and offset < 0:
            return False
        return begin + count <= self._end

    def seek(self, offset: int) -> bool:
        """Moves to `offset` within the window. Returns False if out of range."""
        if offset < 0 or self._start + offset > self._end:
            return False
        self._pos = self._start + offset
        return True

    def skip(self, count: int) -> bool:
        """Advances by `count` bytes. Returns False (and stays put) if that overruns."""
        if count < 0 or self._pos + count > self._end:
            return False
        self._pos += count
        return True

    # ------------------------------------------------------------
    # Absolute reads
    # ------------------------------------------------------------

    def bytes_at(self, offset: int, count: int) -> Optional[bytes]:
        if not self.has(count, offset):
            return None
        begin = self._start + offset
        return self._data[begin:begin + count]

    def u8_at(self, offset: int) -> Optional[int]:
        if not self.has(1, offset):
            return None
        return self._data[self._start + offset]

    def u16_at(self, offset: int) -> Optional[int]:
        if not self.has(2, offset):
            return None
        return _U16[self.little_endian].unpack_from(self._data, self._start + offset)[0]

    def u24le_at(self, offset: int) -> Optional[int]:
        raw = self.bytes_at(offset, 3)
        if raw is None:
            return None
        return raw[0] | (raw[1] << 8) | (raw[2] << 16)

    def u32_at(self, offset: int) -> Optional[int]:
        if not self.has(4, offset):
            return None
        return _U32[self.little_endian].unpack_from(self._data, self._start + offset)[0]

    def available_at(self, offset: int, count: int) -> bytes:
        """
        Returns up to `count` bytes at `offset`, clipped at the window end.

        Used where a truncated tail is still worth decoding (text chunks,
        EXIF strings).
        """
        if offset < 0 or count <= 0:
            return b""
        begin = self._start + offset
        if begin >= self._end:
            return b""
        return self._data[begin:min(begin + count, self._end)]

    # ------------------------------------------------------------
    # Relative reads
    # ------------------------------------------------------------

    def read_bytes(self, count: int) -> Optional[bytes]:
        value = self.bytes_at(self.position, count)
        if value is not None:
            self._pos += count
        return value

    def read_u8(self) -> Optional[int]:
        value = self.u8_at(self.position)
        if value is not None:
            self._pos += 1
        return value

    def read_u16(self) -> Optional[int]:
        value = self.u16_at(self.position)
        if value is not None:
            self._pos += 2
        return value

    def read_u32(self) -> Optional[int]:
        value = self.u32_at(self.position)
        if value is not None:
            self._pos += 4
        return value

    # ------------------------------------------------------------
    # Views
    # ------------------------------------------------------------

    def sub_cursor(
        self,
        offset: int,
        count: Optional[int] = None,
        little_endian: Optional[bool] = None
    ) -> Optional["ByteCursor"]:
        """
        Creates a cursor over [offset, offset + count) of this window.

        The child window is clamped to this window's end, so a forged
        length field can never widen the readable range. Returns None if
        `offset` itself lies outside the window.
        """
        if offset < 0 or self._start + offset > self._end:
            return None
        begin = self._start + offset
        end = self._end if count is None else min(self._end, begin + max(0, count))
        return ByteCursor(
            self._data,
            start=begin,
            end=end,
            little_endian=self.little_endian if little_endian is None else little_endian
        )

    def __repr__(self) -> str:
        return (
            f"ByteCursor(position={self.position}, length={self.length}, "
            f"little_endian={self.little_endian})"
        )
