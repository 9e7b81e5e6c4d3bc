"""Loading of capture files and the filtered views built on top of them."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from .analysis import (
    MemoryGroups,
    SymbolResolver,
    add_to_memory_groups,
    add_to_stack_trace_tree,
    assign_unique_ids,
    link_operations,
    update_live_blocks,
    update_live_size,
)
from .binloader import BinLoader, CaptureFormatError, is_compressed_signature
from .model import (
    MemoryMarkerEvent,
    MemoryMarkerTime,
    MemoryOperation,
    MemoryStats,
    MemoryTagTree,
    ModuleInfo,
    Scope,
    StackTrace,
    StackTraceTree,
    Toolchain,
)
from .reader import AllocatorRecord, CaptureReader, TagRegistration, read_header
from .stats import histogram_bin_index, is_leaked
from .timeline import Timeline, verify_stats

ProgressCallback = Callable[[float, str], None]

ALL_HEAPS = (1 << 64) - 1
NO_HISTOGRAM_BIN = 0xFFFFFFFF
_PARTIAL_TOLERANCE = 1000


class LoadResult(enum.Enum):
    """Outcome of a successful load."""

    SUCCESS = 0
    PARTIAL = 1


@dataclass
class GraphEntry:
    """Memory usage and live block count at one point of the timeline."""

    usage: int = 0
    num_live_blocks: int = 0


@dataclass
class FilterDescription:
    """Criteria and results of operation filtering."""

    histogram_index: int = NO_HISTOGRAM_BIN
    tag_hash: int = 0
    thread_id: int = 0
    min_time_snapshot: int = 0
    max_time_snapshot: int = 0
    tag_tree: MemoryTagTree = field(default_factory=MemoryTagTree)
    operations: list[MemoryOperation] = field(default_factory=list)
    operation_groups: MemoryGroups = field(default_factory=dict)
    stack_trace_tree: StackTraceTree = field(default_factory=StackTraceTree)
    leaked_only: bool = False


def convert_toolchain(toolchain: int) -> str:
    """Return the symbol toolchain kind used for modules built by toolchain."""
    if toolchain == Toolchain.WIN_MSVC:
        return "MSVC"
    if toolchain == Toolchain.PS3_SNC:
        return "PS3SNC"
    if toolchain == Toolchain.PS4_CLANG:
        return "PS4"
    return "GCC"


def _file_name_start(path: str) -> Optional[int]:
    index = max(path.rfind("/"), path.rfind("\\"))
    return None if index < 0 else index + 1


class Capture:
    """A memory capture loaded from a file, with its analysis data."""

    def __init__(self, progress: Optional[ProgressCallback] = None) -> None:
        self.progress = progress
        self.clear()

    def clear(self) -> None:
        """Drop all previously loaded data."""
        self.filtering_enabled = False
        self.swap_endian = False
        self.is_64bit = False
        self.toolchain: Union[Toolchain, int] = Toolchain.WIN_MSVC
        self.cpu_frequency = 0
        self.loaded_file = ""
        self.operations: list[MemoryOperation] = []
        self.operations_invalid: list[MemoryOperation] = []
        self.global_stats = MemoryStats()
        self.snapshot_stats = MemoryStats()
        self.module_infos: list[ModuleInfo] = []
        self.stack_traces: list[StackTrace] = []
        self.timeline: Optional[Timeline] = None
        self.min_time = 0
        self.max_time = 0
        self.filter = FilterDescription()
        self.operation_groups: MemoryGroups = {}
        self.memory_markers: dict[int, MemoryMarkerEvent] = {}
        self.memory_marker_times: list[MemoryMarkerTime] = []
        self.memory_leaks: list[MemoryOperation] = []
        self.heaps: dict[int, str] = {}
        self.current_heap = ALL_HEAPS
        self.current_module: Optional[ModuleInfo] = None
        self.tag_tree = MemoryTagTree()
        self.stack_trace_tree = StackTraceTree()

    def _report(self, percent: float, message: str) -> None:
        if self.progress is not None:
            self.progress(percent, message)

    def load(self, path: Union[str, os.PathLike]) -> LoadResult:
        """Load a capture file.

        Raises OSError if the file cannot be opened and CaptureFormatError if
        its contents cannot be used; nothing stays loaded after a failure.
        """
        self.clear()
        self.loaded_file = os.fspath(path)
        try:
            return self._load(self.loaded_file)
        except CaptureFormatError:
            self.clear()
            raise

    def _load(self, path: str) -> LoadResult:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            file_size = f.tell()
            f.seek(0)
            signature = f.read(4)
            if not signature:
                raise CaptureFormatError("empty capture file")
            f.seek(0)

            loader = BinLoader(f, is_compressed_signature(signature))
            header = read_header(loader)
            self.swap_endian = header.swap_endian
            self.is_64bit = header.is_64bit
            try:
                self.toolchain = Toolchain(header.toolchain)
            except ValueError:
                self.toolchain = header.toolchain
            self.cpu_frequency = header.cpu_frequency

            reader = CaptureReader(loader, header, file_size, self.progress)
            for module in reader.read_module_infos(file_size, self.progress):
                self._add_module(module.module_path, module.base_address, module.size)

            operations: list[MemoryOperation] = []
            failed = False
            try:
                for record in reader.records():
                    self._consume(record, operations)
            except CaptureFormatError:
                failed = True

            result = LoadResult.SUCCESS
            if failed:
                if file_size - loader.file_tell() < _PARTIAL_TOLERANCE or operations:
                    result = LoadResult.PARTIAL
                else:
                    self._report(100.0, "Error reading .MTuner file!")
                    raise CaptureFormatError("error reading capture file")

        self.stack_traces = reader.stack_traces
        self.memory_markers = reader.marker_events

        self._report(100.0, "Sorting...")
        operations.sort(key=lambda op: op.operation_time)

        valid, invalid = link_operations(operations)
        self.operations_invalid = invalid
        if not valid:
            self._report(100.0, "Invalid data in .MTuner file!")
            raise CaptureFormatError("capture holds no valid memory operations")
        self.operations = valid

        self.min_time = min(valid[0].operation_time, reader.min_marker_time)
        self.max_time = valid[-1].operation_time
        self.filter.min_time_snapshot = self.min_time
        self.filter.max_time_snapshot = self.max_time
        self._report(100.0, "Processing...")

        self.timeline = Timeline(valid, self.progress)
        self.global_stats = self.timeline.global_stats
        if not verify_stats(self.global_stats):
            self._report(100.0, "Invalid data in .MTuner file!")
            raise CaptureFormatError("capture statistics are inconsistent")
        self.snapshot_stats = self.global_stats.copy()
        return result

    def _consume(self, record: object, operations: list[MemoryOperation]) -> None:
        if isinstance(record, MemoryOperation):
            operations.append(record)
            self.heaps.setdefault(record.allocator_handle, f"0x{record.allocator_handle:x}")
        elif isinstance(record, TagRegistration):
            self.tag_tree.insert(MemoryTagTree(name=record.name, hash=record.hash), record.parent_hash)
        elif isinstance(record, MemoryMarkerTime):
            self.memory_marker_times.append(record)
        elif isinstance(record, ModuleInfo):
            self._add_module(record.module_path, record.base_address, record.size)
        elif isinstance(record, AllocatorRecord):
            self.heaps[record.handle] = record.name

    def _add_module(self, path: str, base: int, size: int) -> None:
        start = _file_name_start(path)
        if start is None:
            return
        name = path[start:]
        for info in self.module_infos:
            known = info.module_path[(_file_name_start(info.module_path) or 0):]
            if known == name and info.base_address == base:
                return
        self.module_infos.append(ModuleInfo(path, base, size, convert_toolchain(self.toolchain)))

    def build_analyze_data(self, resolver: SymbolResolver) -> None:
        """Resolve symbol ids and build groups, call stack tree and tag tree."""
        assign_unique_ids(self.stack_traces, resolver)

        num_ops = len(self.operations)
        step = num_ops // 100
        next_point = 0
        live_blocks = 0
        live_size = 0
        for i, op in enumerate(self.operations):
            if i > next_point and step:
                next_point += step
                self._report(i / step, "Building analysis data...")

            if op.chain_next is not None:
                if op.chain_next.tag == 0:
                    op.chain_next.tag = op.tag
            elif is_leaked(op):
                self.memory_leaks.append(op)

            live_blocks = update_live_blocks(op, live_blocks)
            live_size = update_live_size(op, live_size)
            add_to_memory_groups(self.operation_groups, op, live_blocks, live_size, self.is_in_filter)
            add_to_stack_trace_tree(self.stack_trace_tree, op, Scope.GLOBAL, self.is_in_filter)
            self.tag_tree.add_op(op)
            self.heaps.setdefault(op.allocator_handle, "")

        self._report(100.0, "Done!")

    def set_filtering_enabled(self, state: bool) -> None:
        """Turn filtering on or off; turning it on rebuilds the filtered data."""
        self.filtering_enabled = state
        if state:
            self._calculate_filtered_data()

    def is_in_filter(self, op: MemoryOperation) -> bool:
        """Return True if the operation matches the current filter criteria."""
        if not op.is_valid:
            return False
        if not self.filtering_enabled:
            return True
        f = self.filter
        if self.current_heap != ALL_HEAPS and op.allocator_handle != self.current_heap:
            return False
        if f.histogram_index != NO_HISTOGRAM_BIN and f.histogram_index != histogram_bin_index(op.alloc_size):
            return False
        if f.tag_hash != 0 and f.tag_hash != op.tag:
            return False
        if f.thread_id != 0 and f.thread_id != op.thread_id:
            return False
        if not f.min_time_snapshot <= op.operation_time <= f.max_time_snapshot:
            return False
        if self.current_module is not None:
            entries = op.stack_trace.entries if op.stack_trace is not None else []
            if not any(self.current_module.check_address(a) for a in entries):
                return False
        if f.leaked_only and not is_leaked(op):
            return False
        return True

    def _calculate_filtered_data(self) -> None:
        for trace in self.stack_traces:
            trace.added_to_tree[Scope.FILTERED] = 0
            trace.tree_index[Scope.FILTERED] = [-1] * len(trace.entries)

        f = self.filter
        f.operations = []
        f.operation_groups = {}
        f.stack_trace_tree.clear()
        f.tag_tree = MemoryTagTree()
        if self.timeline is None:
            return

        first, _ = self.timeline.index_before(f.min_time_snapshot)
        last = min(self.timeline.index_before(f.max_time_snapshot)[0] + 1, len(self.operations) - 1)

        step = (last - first) // 100
        live_blocks = 0
        live_size = 0
        for i in range(first, last + 1):
            op = self.operations[i]
            if step and (i - first) % step == 0:
                self._report((i - first) / step, "Building filtered data...")
            if not self.is_in_filter(op):
                continue
            f.operations.append(op)
            live_blocks = update_live_blocks(op, live_blocks)
            live_size = update_live_size(op, live_size)
            add_to_memory_groups(f.operation_groups, op, live_blocks, live_size, self.is_in_filter)
            add_to_stack_trace_tree(f.stack_trace_tree, op, Scope.FILTERED, self.is_in_filter)
            f.tag_tree.add_op(op)

        self._report(100.0, "Done!")

    def _calculate_snapshot_stats(self) -> None:
        if self.timeline is None:
            return
        self.snapshot_stats = self.timeline.snapshot_stats(
            self.filter.min_time_snapshot, self.filter.max_time_snapshot
        )

    def select_histogram_bin(self, index: int) -> None:
        """Restrict the snapshot to one histogram bin."""
        if index != self.filter.histogram_index:
            self.filter.histogram_index = index
            self._calculate_snapshot_stats()

    def deselect_histogram_bin(self) -> None:
        """Remove the histogram bin restriction."""
        if self.filter.histogram_index != NO_HISTOGRAM_BIN:
            self.filter.histogram_index = NO_HISTOGRAM_BIN
            self._calculate_snapshot_stats()

    def select_tag(self, tag_hash: int) -> None:
        """Restrict the snapshot to one memory tag."""
        if tag_hash != self.filter.tag_hash:
            self.filter.tag_hash = tag_hash
            self._calculate_snapshot_stats()

    def deselect_tag(self) -> None:
        """Remove the tag restriction."""
        if self.filter.tag_hash != 0:
            self.filter.tag_hash = 0
            self._calculate_snapshot_stats()

    def select_thread(self, thread_id: int) -> None:
        """Restrict the snapshot to one thread."""
        if thread_id != self.filter.thread_id:
            self.filter.thread_id = thread_id
            self._calculate_snapshot_stats()

    def deselect_thread(self) -> None:
        """Remove the thread restriction."""
        if self.filter.thread_id != 0:
            self.filter.thread_id = 0
            self._calculate_snapshot_stats()

    def set_leaked_only(self, leaked: bool) -> None:
        """Keep only operations that leave a live block when filtering."""
        self.filter.leaked_only = leaked

    def set_snapshot(self, min_time: int, max_time: int) -> None:
        """Select a time range; ranges outside the capture are ignored."""
        if min_time < self.min_time or max_time > self.max_time:
            return
        f = self.filter
        if f.min_time_snapshot != min_time or f.max_time_snapshot != max_time:
            f.min_time_snapshot = min_time
            f.max_time_snapshot = max_time
            self._calculate_snapshot_stats()

    def graph_at_time(self, time: int) -> GraphEntry:
        """Return memory usage and live blocks at the given time."""
        if self.timeline is None:
            raise ValueError("no capture is loaded")
        usage, blocks = self.timeline.graph_at_time(time)
        return GraphEntry(usage, blocks)

    def float_time(self, time: int) -> float:
        """Convert CPU clocks to seconds."""
        if not self.cpu_frequency:
            raise ValueError("CPU frequency is unknown")
        return time / self.cpu_frequency

    def clocks_from_time(self, seconds: float) -> int:
        """Convert seconds to CPU clocks."""
        return int(seconds * self.cpu_frequency)