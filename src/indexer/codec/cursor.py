"""Sequential little-endian reader over a fixed-layout byte buffer.

Every field read advances the offset by that field's width, so a layout
is written down once, in order, and can be audited against the emitting
program field by field.
"""

import struct

from solders.pubkey import Pubkey

from indexer.exceptions import EventDecodeError

_U8 = struct.Struct("<B")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")

PUBKEY_SIZE = 32


class ByteCursor:
    """Read fields from ``data`` starting at ``offset``.

    Usage:
        cursor = ByteCursor(payload, offset=8)
        cursor.require(TRADE_EVENT_SIZE)
        mint = cursor.read_pubkey()
        amount = cursor.read_u64()
    """

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = memoryview(data)
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def require(self, total_size: int) -> None:
        """Fail fast unless the whole buffer is at least ``total_size`` bytes."""
        if len(self._data) < total_size:
            raise EventDecodeError(
                f"Buffer holds {len(self._data)} bytes, layout needs {total_size}"
            )

    def _take(self, width: int) -> memoryview:
        if self.remaining < width:
            raise EventDecodeError(
                f"Need {width} bytes at offset {self._offset}, {self.remaining} left"
            )
        chunk = self._data[self._offset : self._offset + width]
        self._offset += width
        return chunk

    def read_bytes(self, width: int) -> bytes:
        return bytes(self._take(width))

    def read_u8(self) -> int:
        return _U8.unpack(self._take(_U8.size))[0]

    def read_bool(self) -> bool:
        return self.read_u8() == 1

    def read_u64(self) -> int:
        return _U64.unpack(self._take(_U64.size))[0]

    def read_i64(self) -> int:
        return _I64.unpack(self._take(_I64.size))[0]

    def read_pubkey(self) -> str:
        """Read a 32-byte address and render it base58."""
        return str(Pubkey.from_bytes(self.read_bytes(PUBKEY_SIZE)))


def pack_u64(value: int) -> bytes:
    return _U64.pack(value)


def pack_i64(value: int) -> bytes:
    return _I64.pack(value)


def pack_pubkey(address: str) -> bytes:
    return bytes(Pubkey.from_string(address))
