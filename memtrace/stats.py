"""Helpers updating memory statistics from single operations."""

from __future__ import annotations

from .model import MemoryOperation, MemoryStats, OpType

_UINT32_MASK = 0xFFFFFFFF


def is_alloc(op_type: int) -> bool:
    """Return True for every operation type except free."""
    return op_type != OpType.FREE


def is_leaked(op: MemoryOperation) -> bool:
    """Return True if the operation leaves a live block behind."""
    if op.operation_type == OpType.FREE:
        return False
    if op.operation_type in (OpType.REALLOC, OpType.REALLOC_ALIGNED) and op.alloc_size == 0:
        return False
    return True


def histogram_bin_index(size: int) -> int:
    """Return the histogram bin for an allocation size."""
    value = size & _UINT32_MASK
    pow2 = 0 if value == 0 else (1 << (value - 1).bit_length()) & _UINT32_MASK
    clamped = max(pow2, MemoryStats.MIN_HISTOGRAM_SIZE)
    trailing_zeros = (clamped & -clamped).bit_length() - 1
    index = trailing_zeros - MemoryStats.HISTOGRAM_BIN_SHIFT
    return min(index, MemoryStats.NUM_HISTOGRAM_BINS - 1)


def _raise_bin_peaks(stats: MemoryStats, index: int) -> None:
    b = stats.histogram[index]
    b.count_peak = max(b.count_peak, b.count)
    b.size_peak = max(b.size_peak, b.size)
    b.overhead_peak = max(b.overhead_peak, b.overhead)


def fill_stats_alloc(op: MemoryOperation, stats: MemoryStats) -> int:
    """Apply an allocation to stats and return its histogram bin."""
    stats.memory_usage += op.alloc_size
    stats.memory_usage_peak = max(stats.memory_usage, stats.memory_usage_peak)
    stats.overhead += op.overhead
    stats.overhead_peak = max(stats.overhead, stats.overhead_peak)
    stats.number_of_live_blocks += 1
    stats.number_of_live_blocks_peak = max(stats.number_of_live_blocks, stats.number_of_live_blocks_peak)
    stats.number_of_allocations += 1

    index = histogram_bin_index(op.alloc_size)
    b = stats.histogram[index]
    b.count += 1
    b.size += op.alloc_size
    b.overhead += op.overhead
    _raise_bin_peaks(stats, index)
    return index


def fill_stats_realloc(op: MemoryOperation, stats: MemoryStats) -> int:
    """Apply a reallocation to stats and return its histogram bin."""
    prev = op.chain_prev

    stats.memory_usage += op.alloc_size
    if prev is not None:
        stats.memory_usage -= prev.alloc_size
    stats.memory_usage_peak = max(stats.memory_usage, stats.memory_usage_peak)

    stats.overhead += op.overhead
    if prev is not None:
        stats.overhead -= prev.overhead
    stats.overhead_peak = max(stats.overhead, stats.overhead_peak)

    stats.number_of_reallocations += 1

    index = histogram_bin_index(op.alloc_size)
    b = stats.histogram[index]
    b.count += 1
    b.size += op.alloc_size
    b.overhead += op.overhead

    if prev is not None:
        pb = stats.histogram[histogram_bin_index(prev.alloc_size)]
        pb.count -= 1
        pb.size -= prev.alloc_size
        pb.overhead -= prev.overhead
    elif op.pointer != 0:
        stats.number_of_live_blocks += 1
        stats.number_of_live_blocks_peak = max(stats.number_of_live_blocks, stats.number_of_live_blocks_peak)

    _raise_bin_peaks(stats, index)
    return index


def fill_stats_free(op: MemoryOperation, stats: MemoryStats) -> None:
    """Apply a free to stats."""
    stats.memory_usage -= op.alloc_size
    stats.overhead -= op.overhead
    stats.number_of_frees += 1
    stats.number_of_live_blocks -= 1

    b = stats.histogram[histogram_bin_index(op.alloc_size)]
    b.count -= 1
    b.size -= op.alloc_size
    b.overhead -= op.overhead