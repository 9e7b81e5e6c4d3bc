"""Decoding of the capture file header, module table and record stream."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

from .binloader import BinLoader, CaptureFormatError
from .model import (
    EntryTag,
    LogMarker,
    MemoryMarkerEvent,
    MemoryMarkerTime,
    MemoryOperation,
    ModuleInfo,
    OpType,
    StackTrace,
)
from .stats import is_alloc

MAX_STRING_LENGTH = 1024
MAX_STACK_FRAMES = 512
MODULE_PATH_XOR = 0x23
_NO_MARKER_TIME = (1 << 64) - 1

ProgressCallback = Callable[[float, str], None]

_log = logging.getLogger(__name__)


@dataclass
class CaptureHeader:
    """Fixed fields at the start of a capture."""

    endianness: int
    pointer_size: int
    version_high: int
    version_low: int
    toolchain: int
    cpu_frequency: int

    @property
    def swap_endian(self) -> bool:
        """True when the capture was written big endian."""
        return self.endianness == 0xFF

    @property
    def is_64bit(self) -> bool:
        return self.pointer_size == 64

    @property
    def byte_order(self) -> str:
        return ">" if self.swap_endian else "<"


@dataclass
class TagRegistration:
    """A memory tag declared in the stream."""

    name: str
    hash: int
    parent_hash: int


@dataclass
class AllocatorRecord:
    """A name given to an allocator handle."""

    handle: int
    name: str


Record = Union[
    MemoryOperation, TagRegistration, MemoryMarkerEvent, MemoryMarkerTime, ModuleInfo, AllocatorRecord
]


def read_header(loader: BinLoader) -> CaptureHeader:
    """Read and validate the capture header."""
    try:
        endianness, pointer_size, high, low, toolchain = loader.read_struct("5B")
        order = ">" if endianness == 0xFF else "<"
        (frequency,) = loader.read_struct(order + "Q")
    except EOFError as exc:
        raise CaptureFormatError("truncated capture header") from exc
    if high > 1 or low > 2:
        raise CaptureFormatError(f"unsupported capture version {high}.{low}")
    header = CaptureHeader(endianness, pointer_size, high, low, toolchain, frequency)
    _log.debug(
        "capture version %d.%d, %s endian, %sbit",
        high,
        low,
        "big" if header.swap_endian else "little",
        "64" if header.is_64bit else "32",
    )
    return header


def read_string(
    loader: BinLoader, swap_endian: bool, xor: int = 0, wide: bool = False
) -> tuple[str, int]:
    """Read a length-prefixed string; return it with the number of bytes consumed.

    Strings of MAX_STRING_LENGTH units or more come back empty, with only the
    length field consumed.
    """
    (length,) = loader.read_struct((">" if swap_endian else "<") + "I")
    if length >= MAX_STRING_LENGTH:
        return "", 4
    unit = 2 if wide else 1
    raw = loader.read(length * unit)
    if xor:
        raw = bytes(b ^ xor for b in raw)
    text = raw.decode("utf-16-le" if wide else "utf-8", errors="replace")
    return text.split("\0", 1)[0], length * unit + 4


class CaptureReader:
    """Decodes the parts of a capture that follow its header."""

    def __init__(
        self,
        loader: BinLoader,
        header: CaptureHeader,
        file_size: int = 0,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.loader = loader
        self.header = header
        self.file_size = file_size
        self.progress = progress
        self.stack_traces: list[StackTrace] = []
        self.marker_events: dict[int, MemoryMarkerEvent] = {}
        self.min_marker_time = _NO_MARKER_TIME
        self._traces_by_hash: dict[int, StackTrace] = {}
        self._tag_stacks: defaultdict[int, list[int]] = defaultdict(list)
        self._order = header.byte_order
        self._pointer = "Q" if header.is_64bit else "I"

    def _unpack(self, fmt: str) -> tuple:
        return self.loader.read_struct(self._order + fmt)

    def _string(self, xor: int = 0, wide: bool = False) -> tuple[str, int]:
        return read_string(self.loader, self.header.swap_endian, xor, wide)

    def read_module_infos(
        self, file_size: int, progress: Optional[ProgressCallback] = None
    ) -> list[ModuleInfo]:
        """Read the module table that precedes the record stream."""
        try:
            (info_size,) = self._unpack("I")
            if info_size == 0:
                return []
            (char_size,) = self._unpack("B")
            remaining = info_size - 1
            modules: list[ModuleInfo] = []
            while remaining > 0:
                path, consumed = self._string(MODULE_PATH_XOR, wide=char_size == 2)
                if consumed == 4:
                    break
                base, size = self._unpack("QQ")
                consumed += 16
                modules.append(ModuleInfo(path, base, size))
                if progress is not None:
                    percent = self.loader.tell() * 100.0 / file_size if file_size else 100.0
                    progress(percent, "Loading module information " + path)
                remaining -= consumed
        except EOFError as exc:
            raise CaptureFormatError("truncated module information") from exc
        if remaining != 0:
            raise CaptureFormatError("module information size mismatch")
        return modules

    def records(self) -> Iterator[Record]:
        """Yield decoded records until the data ends; raise on malformed data."""
        entries = 0
        last_progress = 1
        divisor = self.file_size // 100
        while not self.loader.eof():
            entries += 1
            try:
                (marker,) = self.loader.read_struct("B")
            except EOFError:
                return
            step = entries >> 16
            if step != last_progress:
                last_progress = step
                if self.progress is not None:
                    position = self.loader.file_tell()
                    percent = position / divisor if divisor else 100.0
                    self.progress(percent, "Loading capture file...")
            try:
                record = self._read_record(marker)
            except EOFError as exc:
                raise CaptureFormatError("truncated record") from exc
            if record is not None:
                yield record

    def _read_record(self, marker: int) -> Optional[Record]:
        try:
            kind = LogMarker(marker)
        except ValueError:
            raise CaptureFormatError(f"unknown record marker {marker}") from None

        if kind <= LogMarker.REALLOC_ALIGNED:
            return self._read_operation(OpType(int(kind)))

        if kind == LogMarker.REGISTER_TAG:
            name, _ = self._string()
            parent_name, _ = self._string()
            (tag_hash,) = self._unpack("I")
            parent_hash = self._unpack("I")[0] if parent_name else 0
            return TagRegistration(name, tag_hash, parent_hash)

        if kind == LogMarker.ENTER_TAG:
            tag_hash, thread_id = self._unpack("IQ")
            self._tag_stacks[thread_id].append(tag_hash)
            return None

        if kind == LogMarker.LEAVE_TAG:
            _, thread_id = self._unpack("IQ")
            stack = self._tag_stacks[thread_id]
            if stack:
                stack.pop()
            return None

        if kind == LogMarker.REGISTER_MARKER:
            name, _ = self._string()
            name_hash, color = self._unpack("II")
            event = MemoryMarkerEvent(name, name_hash, color)
            self.marker_events[name_hash] = event
            return event

        if kind == LogMarker.MARKER:
            name_hash, thread_id, time = self._unpack("IQQ")
            self.min_marker_time = min(self.min_marker_time, time)
            event = self.marker_events.setdefault(name_hash, MemoryMarkerEvent(name_hash=name_hash))
            return MemoryMarkerTime(thread_id, time, event)

        if kind == LogMarker.MODULE:
            (char_size,) = self._unpack("B")
            name, _ = self._string(wide=char_size != 1)
            base, size = self._unpack("QI")
            return ModuleInfo(name, base, size)

        name, _ = self._string()
        (handle,) = self._unpack("Q")
        return AllocatorRecord(handle, name)

    def _read_operation(self, op_type: OpType) -> MemoryOperation:
        (handle,) = self._unpack("Q")
        op = MemoryOperation(operation_type=op_type, allocator_handle=handle)
        op.thread_id, op.pointer = self._unpack("Q" + self._pointer)
        if op_type in (OpType.REALLOC, OpType.REALLOC_ALIGNED):
            (op.previous_pointer,) = self._unpack(self._pointer)
        (op.operation_time,) = self._unpack("Q")
        if op_type != OpType.FREE:
            if op_type in (OpType.ALLOC_ALIGNED, OpType.REALLOC_ALIGNED):
                (op.alignment,) = self._unpack("B")
            op.alloc_size, op.overhead = self._unpack("II")

        op.stack_trace = self._read_stack_trace()

        if is_alloc(op_type):
            stack = self._tag_stacks.get(op.thread_id)
            if stack:
                op.tag = stack[-1] & 0xFFFF
        return op

    def _read_stack_trace(self) -> StackTrace:
        (entry_tag,) = self._unpack("B")
        if entry_tag == EntryTag.EXISTS:
            (trace_hash,) = self._unpack("I")
            trace = self._traces_by_hash.get(trace_hash)
            if trace is None:
                raise CaptureFormatError(f"reference to unknown stack trace {trace_hash:#x}")
            return trace
        if entry_tag != EntryTag.ADD:
            raise CaptureFormatError(f"invalid stack trace tag {entry_tag}")

        (count,) = self._unpack("H")
        if count > MAX_STACK_FRAMES:
            raise CaptureFormatError(f"stack trace of {count} frames is too deep")
        entries = list(self._unpack(f"{count}{self._pointer}")) if count else []

        trace_hash = sum(entries) & 0xFFFFFFFF
        existing = self._traces_by_hash.get(trace_hash)
        if existing is not None and existing.entries == entries:
            return existing
        trace = StackTrace(entries=entries)
        self._traces_by_hash[trace_hash] = trace
        self.stack_traces.append(trace)
        return trace