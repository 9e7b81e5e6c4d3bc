"""Byte source for capture files, plain or split into LZ4-compressed chunks."""

from __future__ import annotations

import struct
from typing import BinaryIO

import lz4.block

COMPRESSED_SIGNATURE = 0x23234646

_SIGNATURE_LE = struct.pack("<I", COMPRESSED_SIGNATURE)
_SIGNATURE_BE = struct.pack(">I", COMPRESSED_SIGNATURE)
_INITIAL_CAPACITY = 1 << 20


class CaptureFormatError(ValueError):
    """Raised when capture data is malformed."""


def is_compressed_signature(data: bytes) -> bool:
    """Return True if data starts with the chunk signature in either byte order."""
    return bytes(data[:4]) in (_SIGNATURE_LE, _SIGNATURE_BE)


class BinLoader:
    """Reads capture bytes from a binary file, decompressing chunks when needed.

    Reads that cannot be satisfied raise EOFError.
    """

    def __init__(self, file: BinaryIO, compressed: bool) -> None:
        self._file = file
        self.compressed = compressed
        self._data = b""
        self._pos = 0
        self._consumed = 0
        self._capacity = _INITIAL_CAPACITY
        self._hit_eof = False
        if compressed:
            self._load_chunk()

    def eof(self) -> bool:
        """Return True once no more data is available."""
        if self.compressed:
            return self._pos == len(self._data)
        return self._hit_eof

    def tell(self) -> int:
        """Return the logical position in the (decompressed) stream."""
        if self.compressed:
            return self._consumed + self._pos
        return self.file_tell()

    def file_tell(self) -> int:
        """Return the position in the underlying file."""
        return self._file.tell()

    def read(self, size: int) -> bytes:
        """Return exactly size bytes or raise EOFError."""
        if not self.compressed:
            data = self._file.read(size)
            if len(data) < size:
                self._hit_eof = True
                raise EOFError(f"wanted {size} bytes, got {len(data)}")
            return data

        out = bytearray()
        while True:
            take = min(size - len(out), len(self._data) - self._pos)
            out += self._data[self._pos:self._pos + take]
            self._pos += take
            if self._pos == len(self._data):
                finished = len(self._data)
                if not self._load_chunk():
                    if len(out) == size:
                        return bytes(out)
                    raise EOFError(f"wanted {size} bytes, got {len(out)}")
                self._consumed += finished
            if len(out) == size:
                return bytes(out)

    def read_struct(self, fmt: str) -> tuple:
        """Read and unpack one struct of the given format."""
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def _load_chunk(self) -> bool:
        header = self._file.read(8)
        if len(header) < 8:
            return False
        signature = header[:4]
        if signature == _SIGNATURE_LE:
            (size,) = struct.unpack("<I", header[4:])
        elif signature == _SIGNATURE_BE:
            (size,) = struct.unpack(">I", header[4:])
        else:
            return False

        payload = self._file.read(size)
        if len(payload) != size:
            return False

        # An LZ4 block cannot expand by much more than 255 times its size.
        limit = len(payload) * 256 + 64
        while True:
            try:
                data = lz4.block.decompress(payload, uncompressed_size=self._capacity)
            except lz4.block.LZ4BlockError:
                if self._capacity > limit:
                    return False
                self._capacity *= 2
                continue
            break

        self._data = data
        self._pos = 0
        return True