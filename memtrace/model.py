"""Core data structures describing a loaded memory capture."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field, fields
from typing import ClassVar, Optional

_NUM_HISTOGRAM_BINS = 23


class OpType(enum.IntEnum):
    """Kinds of memory operations recorded in a capture."""

    ALLOC = 0
    ALLOC_ALIGNED = 1
    CALLOC = 2
    FREE = 3
    REALLOC = 4
    REALLOC_ALIGNED = 5


class LogMarker(enum.IntEnum):
    """Record markers found in the capture stream."""

    ALLOC = 0
    ALLOC_ALIGNED = 1
    CALLOC = 2
    FREE = 3
    REALLOC = 4
    REALLOC_ALIGNED = 5
    REGISTER_TAG = 6
    ENTER_TAG = 7
    LEAVE_TAG = 8
    REGISTER_MARKER = 9
    MARKER = 10
    MODULE = 11
    ALLOCATOR = 12


class EntryTag(enum.IntEnum):
    """Tells whether a stack trace record refers to a known trace or adds one."""

    EXISTS = 0
    ADD = 1


class Toolchain(enum.IntEnum):
    """Toolchain that built the profiled program."""

    WIN_MSVC = 0
    WIN_GCC = 1
    LINUX_GCC = 2
    OSX_GCC = 3
    PS3_GCC = 4
    PS3_SNC = 5
    PS4_CLANG = 6
    ANDROID_ARM = 7
    ANDROID_MIPS = 8
    ANDROID_X86 = 9


class GroupSort(enum.Enum):
    """Ways of ordering memory operation groups."""

    COUNT = 0
    SIZE = 1
    TOTAL_SIZE = 2


class TreeOpKind(enum.IntEnum):
    """Operation counters kept on stack trace tree nodes; COUNT counts nothing."""

    ALLOC = 0
    FREE = 1
    REALLOC = 2
    COUNT = 3


class Scope(enum.IntEnum):
    """Which stack trace tree a trace is being added to."""

    GLOBAL = 0
    FILTERED = 1


@dataclass
class ModuleInfo:
    """A module loaded in the profiled process."""

    module_path: str
    base_address: int
    size: int
    toolchain: str = ""

    def check_address(self, address: int) -> bool:
        """Return True if the address lies inside this module."""
        return self.base_address <= address < self.base_address + self.size


@dataclass(eq=False)
class StackTrace:
    """A single call stack with its resolved symbol ids and tree bookkeeping."""

    entries: list[int]
    ids: list[int] = field(default_factory=list)
    tree_index: list[list[int]] = field(default_factory=lambda: [[], []])
    added_to_tree: list[int] = field(default_factory=lambda: [0, 0])


@dataclass(eq=False)
class MemoryOperation:
    """One allocation, reallocation or free."""

    operation_type: OpType = OpType.ALLOC
    allocator_handle: int = 0
    thread_id: int = 0
    pointer: int = 0
    previous_pointer: int = 0
    chain_prev: Optional[MemoryOperation] = None
    chain_next: Optional[MemoryOperation] = None
    stack_trace: Optional[StackTrace] = None
    operation_time: int = 0
    alloc_size: int = 0
    overhead: int = 0
    tag: int = 0
    is_valid: bool = True
    alignment: int = 255


@dataclass(eq=False)
class MemoryOperationGroup:
    """Operations sharing one call stack."""

    min_size: int = 0xFFFFFFFF
    max_size: int = 0
    peak_size: int = 0
    peak_size_global: int = 0
    live_size: int = 0
    count: int = 0
    live_count: int = 0
    live_count_peak: int = 0
    live_count_peak_global: int = 0
    operations: list[MemoryOperation] = field(default_factory=list)


@dataclass
class HistogramBin:
    """Statistics for one allocation size range."""

    size: int = 0
    size_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    count: int = 0
    count_peak: int = 0


@dataclass
class HistogramBinPeak:
    """Peak values of one histogram bin within a time range."""

    size_peak: int = 0
    overhead_peak: int = 0
    count_peak: int = 0


@dataclass
class MemoryStatsLocalPeak:
    """Peak values reached within one time range."""

    memory_usage_peak: int = 0
    overhead_peak: int = 0
    number_of_live_blocks_peak: int = 0
    histogram_peak: list[HistogramBinPeak] = field(
        default_factory=lambda: [HistogramBinPeak() for _ in range(_NUM_HISTOGRAM_BINS)]
    )


@dataclass
class MemoryStats:
    """Memory statistics over a time range."""

    MIN_HISTOGRAM_SIZE: ClassVar[int] = 8
    HISTOGRAM_BIN_SHIFT: ClassVar[int] = 3
    NUM_HISTOGRAM_BINS: ClassVar[int] = _NUM_HISTOGRAM_BINS

    memory_usage: int = 0
    memory_usage_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    number_of_operations: int = 0
    number_of_allocations: int = 0
    number_of_reallocations: int = 0
    number_of_frees: int = 0
    number_of_live_blocks: int = 0
    number_of_live_blocks_peak: int = 0
    histogram: list[HistogramBin] = field(
        default_factory=lambda: [HistogramBin() for _ in range(_NUM_HISTOGRAM_BINS)]
    )

    def reset(self) -> None:
        """Zero every counter."""
        fresh = MemoryStats()
        for f in fields(self):
            setattr(self, f.name, getattr(fresh, f.name))

    def copy(self) -> MemoryStats:
        """Return an independent copy."""
        return copy.deepcopy(self)

    def set_peaks_to_current(self) -> None:
        """Make every peak equal to the current value."""
        self.memory_usage_peak = self.memory_usage
        self.overhead_peak = self.overhead
        for b in self.histogram:
            b.size_peak = b.size
            b.overhead_peak = b.overhead
            b.count_peak = b.count

    def set_peaks_from(self, peaks: MemoryStatsLocalPeak) -> None:
        """Take peak values from a local peak record."""
        self.memory_usage_peak = peaks.memory_usage_peak
        self.overhead_peak = peaks.overhead_peak
        for b, p in zip(self.histogram, peaks.histogram_peak):
            b.size_peak = p.size_peak
            b.overhead_peak = p.overhead_peak
            b.count_peak = p.count_peak


@dataclass
class MemoryStatsTimed:
    """Statistics checkpoint at a given operation."""

    time: int = 0
    operation_index: int = 0
    local_peak: MemoryStatsLocalPeak = field(default_factory=MemoryStatsLocalPeak)
    stats: MemoryStats = field(default_factory=MemoryStats)


@dataclass(eq=False)
class StackTraceTree:
    """Node of the call stack tree, rooted at the outermost frame."""

    address_id: int = 0
    mem_usage: int = 0
    mem_usage_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    depth: int = 0
    op_count: list[int] = field(default_factory=lambda: [0, 0, 0])
    parent: Optional[StackTraceTree] = None
    stack_traces: list[StackTrace] = field(default_factory=list)
    children: list[StackTraceTree] = field(default_factory=list)

    def clear(self) -> None:
        """Drop all children and reset usage figures and stack trace list."""
        for child in self.children:
            child.clear()
        self.children.clear()
        self.stack_traces.clear()
        self.mem_usage = 0
        self.mem_usage_peak = 0
        self.overhead = 0
        self.overhead_peak = 0
        self.parent = None


@dataclass(eq=False)
class MemoryTagTree:
    """Node of the memory tag hierarchy."""

    name: str = ""
    hash: int = 0
    usage: int = 0
    usage_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    operation_count: list[int] = field(default_factory=lambda: [0] * len(OpType))
    parent: Optional[MemoryTagTree] = None
    children: dict[int, MemoryTagTree] = field(default_factory=dict)
    operations: list[MemoryOperation] = field(default_factory=list)

    def find(self, tag_hash: int) -> Optional[MemoryTagTree]:
        """Return the node with the given hash, searching depth first, or None."""
        if self.hash == tag_hash:
            return self
        for child in self.children.values():
            found = child.find(tag_hash)
            if found is not None:
                return found
        return None

    def insert(self, tag: MemoryTagTree, parent_hash: int) -> bool:
        """Attach tag below the node with parent_hash; return False if none exists."""
        if self.hash == parent_hash:
            tag.parent = self
            self.children[tag.hash] = tag
            return True
        return any(child.insert(tag, parent_hash) for child in list(self.children.values()))

    def clear(self) -> None:
        """Remove the whole subtree below this node."""
        for child in self.children.values():
            child.clear()
        self.children.clear()

    def add_op(self, op: MemoryOperation) -> None:
        """Account an operation to its tag and all of the tag's ancestors."""
        size = op.alloc_size
        overhead = op.overhead
        if op.operation_type == OpType.FREE:
            size, overhead = -size, -overhead
        elif op.operation_type in (OpType.REALLOC, OpType.REALLOC_ALIGNED):
            prev = op.chain_prev
            if prev is not None:
                self._locate(prev.tag)._account(-prev.alloc_size, -prev.overhead, prev.operation_type)
        self._locate(op.tag)._account(size, overhead, op.operation_type)

    def _locate(self, tag_hash: int) -> MemoryTagTree:
        found = self.find(tag_hash)
        return self if found is None else found

    def _account(self, size: int, overhead: int, op_type: int) -> None:
        node: Optional[MemoryTagTree] = self
        while node is not None:
            node.usage += size
            node.usage_peak = max(node.usage_peak, node.usage)
            node.overhead += overhead
            node.overhead_peak = max(node.overhead_peak, node.overhead)
            node.operation_count[op_type] += 1
            node = node.parent


@dataclass
class MemoryMarkerEvent:
    """A registered marker type."""

    name: str = ""
    name_hash: int = 0
    color: int = 0


@dataclass
class MemoryMarkerTime:
    """An occurrence of a marker on a thread."""

    thread_id: int = 0
    time: int = 0
    event: Optional[MemoryMarkerEvent] = None