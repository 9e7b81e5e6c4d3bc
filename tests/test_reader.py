import io
import struct

import lz4.block
import pytest

from memtrace.binloader import COMPRESSED_SIGNATURE, BinLoader, CaptureFormatError
from memtrace.model import (
    EntryTag,
    LogMarker,
    MemoryMarkerEvent,
    MemoryMarkerTime,
    MemoryOperation,
    ModuleInfo,
    OpType,
)
from memtrace.reader import (
    MODULE_PATH_XOR,
    AllocatorRecord,
    CaptureHeader,
    CaptureReader,
    TagRegistration,
    read_header,
    read_string,
)


def plain(data: bytes) -> BinLoader:
    return BinLoader(io.BytesIO(data), False)


def header_bytes(endian=0, pointer=64, high=1, low=2, toolchain=2, frequency=1000):
    order = ">" if endian == 0xFF else "<"
    return bytes([endian, pointer, high, low, toolchain]) + struct.pack(order + "Q", frequency)


def make_reader(body: bytes, order="<", pointer=64) -> CaptureReader:
    header = CaptureHeader(0xFF if order == ">" else 0, pointer, 1, 2, 0, 0)
    return CaptureReader(plain(body), header)


def text(value: str, order="<", xor=0) -> bytes:
    raw = value.encode()
    return struct.pack(order + "I", len(raw)) + bytes(b ^ xor for b in raw)


def stack_add(frames, order="<", ptr="Q") -> bytes:
    out = struct.pack(order + "BH", EntryTag.ADD, len(frames))
    return out + struct.pack(order + f"{len(frames)}{ptr}", *frames)


def stack_ref(trace_hash, order="<") -> bytes:
    return struct.pack(order + "BI", EntryTag.EXISTS, trace_hash)


def alloc(handle, thread, pointer, time, size, overhead, stack, order="<", ptr="Q"):
    fields = struct.pack(order + "BQQ" + ptr + "QII", LogMarker.ALLOC, handle, thread, pointer, time, size, overhead)
    return fields + stack


def free(handle, thread, pointer, time, stack, order="<", ptr="Q"):
    return struct.pack(order + "BQQ" + ptr + "Q", LogMarker.FREE, handle, thread, pointer, time) + stack


def test_read_header_little_endian():
    header = read_header(plain(header_bytes(frequency=3_000_000)))
    assert header.cpu_frequency == 3_000_000
    assert not header.swap_endian
    assert header.is_64bit
    assert (header.version_high, header.version_low) == (1, 2)


def test_read_header_big_endian():
    header = read_header(plain(header_bytes(endian=0xFF, pointer=32, frequency=123456)))
    assert header.swap_endian
    assert not header.is_64bit
    assert header.cpu_frequency == 123456


@pytest.mark.parametrize("high,low", [(2, 0), (1, 3)])
def test_read_header_rejects_versions(high, low):
    with pytest.raises(CaptureFormatError):
        read_header(plain(header_bytes(high=high, low=low)))


def test_read_header_truncated():
    with pytest.raises(CaptureFormatError):
        read_header(plain(b"\x00\x40\x01"))


def test_read_string_round_trip_with_xor():
    loader = plain(text("module.dll", xor=0x23))
    assert read_string(loader, False, 0x23) == ("module.dll", 14)


def test_read_string_wide_big_endian_length():
    raw = "wide".encode("utf-16-le")
    loader = plain(struct.pack(">I", 4) + raw)
    assert read_string(loader, True, 0, True) == ("wide", 12)


def test_read_string_too_long_consumes_only_length():
    loader = plain(struct.pack("<I", 1024) + b"rest")
    assert read_string(loader, False) == ("", 4)
    assert loader.read(4) == b"rest"


def test_read_string_missing_length():
    with pytest.raises(EOFError):
        read_string(plain(b"\x01"), False)


def module_entry(path: str, base: int, size: int) -> bytes:
    return text(path, xor=MODULE_PATH_XOR) + struct.pack("<QQ", base, size)


def test_module_infos_parsed():
    entries = module_entry("/usr/lib/app", 0x400000, 0x1000) + module_entry("/lib/libc.so", 0x7000, 0x200)
    body = struct.pack("<IB", len(entries) + 1, 1) + entries
    reports = []
    modules = make_reader(body).read_module_infos(len(body), lambda p, m: reports.append(m))
    assert modules == [
        ModuleInfo("/usr/lib/app", 0x400000, 0x1000),
        ModuleInfo("/lib/libc.so", 0x7000, 0x200),
    ]
    assert reports[0] == "Loading module information /usr/lib/app"


def test_module_infos_empty():
    assert make_reader(struct.pack("<I", 0)).read_module_infos(4) == []


def test_module_infos_size_mismatch():
    entries = module_entry("/app", 1, 2)
    body = struct.pack("<IB", len(entries) + 5, 1) + entries + text("", xor=MODULE_PATH_XOR)
    with pytest.raises(CaptureFormatError):
        make_reader(body).read_module_infos(len(body))


def test_alloc_and_free_share_stack_trace():
    frames = [0x1000, 0x2000]
    body = alloc(9, 1, 0xABC0, 10, 64, 8, stack_add(frames))
    body += free(9, 1, 0xABC0, 20, stack_ref(sum(frames)))
    reader = make_reader(body)
    records = list(reader.records())
    first, second = records
    assert first.operation_type == OpType.ALLOC
    assert (first.allocator_handle, first.pointer, first.alloc_size, first.overhead) == (9, 0xABC0, 64, 8)
    assert first.alignment == 255
    assert second.operation_type == OpType.FREE
    assert second.operation_time == 20
    assert second.stack_trace is first.stack_trace
    assert reader.stack_traces == [first.stack_trace]
    assert first.stack_trace.entries == frames


def test_identical_added_stack_is_reused():
    body = alloc(1, 1, 0x10, 1, 4, 0, stack_add([5, 6])) + alloc(1, 1, 0x20, 2, 4, 0, stack_add([5, 6]))
    reader = make_reader(body)
    a, b = reader.records()
    assert a.stack_trace is b.stack_trace
    assert len(reader.stack_traces) == 1


def test_unknown_stack_reference_fails():
    reader = make_reader(free(1, 1, 0x10, 1, stack_ref(77)))
    with pytest.raises(CaptureFormatError):
        list(reader.records())


def test_realloc_aligned_32bit_big_endian():
    order, ptr = ">", "I"
    body = struct.pack(order + "BQQ" + ptr + ptr + "QBII", LogMarker.REALLOC_ALIGNED, 3, 4, 0x200, 0x100, 50, 4, 96, 16)
    body += stack_add([0x40], order, ptr)
    (op,) = make_reader(body, order, 32).records()
    assert (op.pointer, op.previous_pointer, op.alignment) == (0x200, 0x100, 4)
    assert (op.alloc_size, op.overhead, op.operation_time) == (96, 16, 50)
    assert op.stack_trace.entries == [0x40]


def test_enter_tag_applies_to_allocations_until_left():
    body = struct.pack("<BIQ", LogMarker.ENTER_TAG, 7, 1)
    body += alloc(1, 1, 0x10, 1, 4, 0, stack_add([1]))
    body += alloc(1, 2, 0x20, 2, 4, 0, stack_add([2]))
    body += struct.pack("<BIQ", LogMarker.LEAVE_TAG, 7, 1)
    body += alloc(1, 1, 0x30, 3, 4, 0, stack_add([3]))
    ops = list(make_reader(body).records())
    assert [op.tag for op in ops] == [7, 0, 0]


def test_tag_registration_record():
    body = bytes([LogMarker.REGISTER_TAG]) + text("child") + text("root") + struct.pack("<II", 5, 2)
    body += bytes([LogMarker.REGISTER_TAG]) + text("root") + text("") + struct.pack("<I", 2)
    assert list(make_reader(body).records()) == [
        TagRegistration("child", 5, 2),
        TagRegistration("root", 2, 0),
    ]


def test_markers_and_min_time():
    body = bytes([LogMarker.REGISTER_MARKER]) + text("frame") + struct.pack("<II", 11, 0xFF00FF)
    body += struct.pack("<BIQQ", LogMarker.MARKER, 11, 3, 500)
    body += struct.pack("<BIQQ", LogMarker.MARKER, 11, 3, 200)
    reader = make_reader(body)
    event, first, second = reader.records()
    assert event == MemoryMarkerEvent("frame", 11, 0xFF00FF)
    assert isinstance(first, MemoryMarkerTime)
    assert first.event is reader.marker_events[11]
    assert (second.thread_id, second.time) == (3, 200)
    assert reader.min_marker_time == 200


def test_module_and_allocator_records():
    body = bytes([LogMarker.MODULE, 1]) + text("/bin/tool") + struct.pack("<QI", 0x5000, 0x300)
    body += bytes([LogMarker.ALLOCATOR]) + text("pool") + struct.pack("<Q", 42)
    assert list(make_reader(body).records()) == [
        ModuleInfo("/bin/tool", 0x5000, 0x300),
        AllocatorRecord(42, "pool"),
    ]


def test_unknown_marker_fails():
    with pytest.raises(CaptureFormatError):
        list(make_reader(bytes([200])).records())


def test_truncated_record_fails():
    body = alloc(1, 1, 0x10, 1, 4, 0, stack_add([1]))[:-3]
    with pytest.raises(CaptureFormatError):
        list(make_reader(body).records())


def test_progress_reported_on_first_record():
    body = alloc(1, 1, 0x10, 1, 4, 0, stack_add([1]))
    messages = []
    header = CaptureHeader(0, 64, 1, 2, 0, 0)
    reader = CaptureReader(plain(body), header, len(body), lambda p, m: messages.append(m))
    ops = list(reader.records())
    assert len(ops) == 1
    assert messages == ["Loading capture file..."]


def test_records_from_compressed_stream():
    body = alloc(2, 1, 0x10, 1, 32, 0, stack_add([9]))
    block = lz4.block.compress(body, store_size=False)
    data = struct.pack("<II", COMPRESSED_SIGNATURE, len(block)) + block
    header = CaptureHeader(0, 64, 1, 2, 0, 0)
    (op,) = CaptureReader(BinLoader(io.BytesIO(data), True), header).records()
    assert isinstance(op, MemoryOperation)
    assert (op.pointer, op.alloc_size) == (0x10, 32)