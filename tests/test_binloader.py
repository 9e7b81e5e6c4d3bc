import io
import struct

import lz4.block
import pytest

from memtrace.binloader import (
    COMPRESSED_SIGNATURE,
    BinLoader,
    CaptureFormatError,
    is_compressed_signature,
)


def chunk(payload: bytes, order: str = "<") -> bytes:
    block = lz4.block.compress(payload, store_size=False)
    return struct.pack(order + "II", COMPRESSED_SIGNATURE, len(block)) + block


def test_signature_detected_in_both_byte_orders():
    assert is_compressed_signature(b"\x46\x46\x23\x23rest")
    assert is_compressed_signature(b"\x23\x23\x46\x46")
    assert not is_compressed_signature(b"abcd")
    assert not is_compressed_signature(b"\x46\x46")


def test_format_error_carries_message():
    error = CaptureFormatError("bad chunk")
    assert issubclass(CaptureFormatError, ValueError)
    assert str(error) == "bad chunk"


def test_plain_reads_in_sequence():
    loader = BinLoader(io.BytesIO(b"hello world"), False)
    assert loader.read(5) == b"hello"
    assert loader.read(6) == b" world"
    assert loader.tell() == 11
    assert not loader.eof()


def test_plain_short_read_raises_and_sets_eof():
    loader = BinLoader(io.BytesIO(b"abc"), False)
    with pytest.raises(EOFError):
        loader.read(4)
    assert loader.eof()


def test_read_struct_round_trip():
    data = struct.pack("<BIQ", 7, 0xDEADBEEF, 1 << 40)
    loader = BinLoader(io.BytesIO(data), False)
    assert loader.read_struct("<BIQ") == (7, 0xDEADBEEF, 1 << 40)


def test_compressed_read_across_chunks():
    first = bytes(range(100))
    second = b"second chunk data"
    loader = BinLoader(io.BytesIO(chunk(first) + chunk(second)), True)
    assert loader.read(90) == first[:90]
    assert loader.read(20) == first[90:] + second[:10]
    assert loader.tell() == 110
    assert loader.read(len(second) - 10) == second[10:]
    assert loader.eof()


def test_compressed_big_endian_chunk_header():
    payload = b"big endian payload"
    loader = BinLoader(io.BytesIO(chunk(payload, ">")), True)
    assert loader.read(len(payload)) == payload
    assert loader.eof()


def test_compressed_read_past_end_raises():
    loader = BinLoader(io.BytesIO(chunk(b"short")), True)
    with pytest.raises(EOFError):
        loader.read(10)


def test_compressed_bad_signature_ends_stream():
    data = chunk(b"valid") + b"\x00\x01\x02\x03garbage"
    loader = BinLoader(io.BytesIO(data), True)
    assert loader.read(5) == b"valid"
    assert loader.eof()
    with pytest.raises(EOFError):
        loader.read(1)


def test_compressed_truncated_first_chunk_is_empty():
    loader = BinLoader(io.BytesIO(chunk(b"payload")[:-2]), True)
    assert loader.eof()
    with pytest.raises(EOFError):
        loader.read(1)


def test_large_chunk_grows_buffer():
    payload = bytes(range(256)) * 8192
    loader = BinLoader(io.BytesIO(chunk(payload)), True)
    assert loader.read(len(payload)) == payload
    assert loader.eof()


def test_file_tell_tracks_underlying_file():
    data = chunk(b"one") + chunk(b"two")
    stream = io.BytesIO(data)
    loader = BinLoader(stream, True)
    assert loader.file_tell() == len(chunk(b"one"))
    loader.read(3)
    assert loader.file_tell() == len(data)