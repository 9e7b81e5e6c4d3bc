"""Time-indexed statistics over a sorted, linked list of memory operations."""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from .model import MemoryOperation, MemoryStats, MemoryStatsLocalPeak, MemoryStatsTimed, OpType
from .stats import fill_stats_alloc, fill_stats_free, fill_stats_realloc

ProgressCallback = Callable[[float, str], None]

_BIT63 = 1 << 63
_BIT31 = 1 << 31

_ALLOC_TYPES = (OpType.ALLOC, OpType.CALLOC, OpType.ALLOC_ALIGNED)
_REALLOC_TYPES = (OpType.REALLOC, OpType.REALLOC_ALIGNED)


def granularity_mask(num_ops: int) -> int:
    """Return the mask selecting operations at which a checkpoint is stored."""
    granularity = 2048
    if num_ops > 1024 * 1024:
        granularity = 4096
    if num_ops > 10 * 1024 * 1024:
        granularity = 8192
    return granularity - 1


def verify_stats(stats: MemoryStats) -> bool:
    """Return False if any counter went negative (its sign bit is set)."""
    wide = (stats.memory_usage, stats.memory_usage_peak)
    narrow = (
        stats.overhead,
        stats.overhead_peak,
        stats.number_of_operations,
        stats.number_of_allocations,
        stats.number_of_reallocations,
        stats.number_of_frees,
        stats.number_of_live_blocks,
    )
    if any(value & _BIT63 for value in wide) or any(value & _BIT31 for value in narrow):
        return False
    for b in stats.histogram:
        if b.size & _BIT63 or b.size_peak & _BIT63:
            return False
        if any(value & _BIT31 for value in (b.overhead, b.overhead_peak, b.count, b.count_peak)):
            return False
    return True


def _apply(op: MemoryOperation, stats: MemoryStats) -> Optional[int]:
    if op.operation_type in _ALLOC_TYPES:
        return fill_stats_alloc(op, stats)
    if op.operation_type in _REALLOC_TYPES:
        return fill_stats_realloc(op, stats)
    if op.operation_type == OpType.FREE:
        fill_stats_free(op, stats)
    return None


def _raise_local_peak(peak: MemoryStatsLocalPeak, stats: MemoryStats, index: int) -> None:
    peak.memory_usage_peak = max(peak.memory_usage_peak, stats.memory_usage)
    peak.overhead_peak = max(peak.overhead_peak, stats.overhead)
    peak.number_of_live_blocks_peak = max(peak.number_of_live_blocks_peak, stats.number_of_live_blocks)
    hp = peak.histogram_peak[index]
    b = stats.histogram[index]
    hp.size_peak = max(hp.size_peak, b.size)
    hp.overhead_peak = max(hp.overhead_peak, b.overhead)
    hp.count_peak = max(hp.count_peak, b.count)


class Timeline:
    """Global statistics, periodic checkpoints and the usage graph of a capture.

    Operations must be sorted by time and linked; at least one is required.
    """

    def __init__(
        self,
        operations: Sequence[MemoryOperation],
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.operations = list(operations)
        if not self.operations:
            raise ValueError("a timeline needs at least one operation")
        self.timed_stats: list[MemoryStatsTimed] = []
        self.usage_graph: list[tuple[int, int]] = []
        self.global_stats = MemoryStats()
        self._build(progress)

    def _build(self, progress: Optional[ProgressCallback]) -> None:
        if progress is not None:
            progress(100.0, "Calculating stats...")

        stats = self.global_stats
        local_peak = MemoryStatsLocalPeak()
        mask = granularity_mask(len(self.operations))

        for i, op in enumerate(self.operations):
            if i & mask == 0:
                self.timed_stats.append(
                    MemoryStatsTimed(op.operation_time, i, local_peak, stats.copy())
                )
                local_peak = MemoryStatsLocalPeak()

            stats.number_of_operations += 1
            index = _apply(op, stats)
            if index is not None:
                _raise_local_peak(local_peak, stats, index)

            self.usage_graph.append((stats.memory_usage, stats.number_of_live_blocks))

        last = len(self.operations) - 1
        self.timed_stats.append(
            MemoryStatsTimed(self.operations[last].operation_time, last, local_peak, stats.copy())
        )

        if progress is not None:
            progress(100.0, "Loading complete!")

    def _search(self, time: int, lookup: bool) -> tuple[int, int]:
        timed = self.timed_stats
        ts_index = 0
        lo, hi = 0, len(timed) - 1
        if lookup and hi == 1:
            ts_index = 1
        else:
            while hi > lo:
                mid = (lo + hi) // 2
                if timed[mid].time < time:
                    lo = mid
                else:
                    hi = mid
                if hi - lo == 1:
                    ts_index = hi
                    break
        return ts_index, ts_index - 1

    def index_before(self, time: int) -> tuple[int, int]:
        """Return the operation index for the start of a range at time, and its checkpoint."""
        ts_index, timed_index = self._search(time, lookup=True)
        ops = self.operations
        start = self.timed_stats[ts_index - 1].operation_index
        end = self.timed_stats[ts_index].operation_index + 1
        while end > start:
            mid = (start + end) // 2
            if ops[mid].operation_time < time:
                start = mid
            else:
                end = mid
            if end - start == 1:
                if ops[start].operation_time >= time:
                    return (start if start == 0 else start - 1), timed_index
                return end, timed_index
        return 0, timed_index

    def index_after(self, time: int) -> tuple[int, int]:
        """Return the index of the first operation later than time, and its checkpoint."""
        ts_index, timed_index = self._search(time, lookup=False)
        ops = self.operations
        start = self.timed_stats[ts_index - 1].operation_index
        end = self.timed_stats[ts_index].operation_index + 1
        while end > start:
            mid = (start + end) // 2
            if ops[mid].operation_time < time:
                start = mid
            else:
                end = mid
            if end - start == 1:
                if ops[start].operation_time > time:
                    return start, timed_index
                return end, timed_index
        return 0, timed_index

    def ranged_stats(self, stats: MemoryStats, min_idx: int, max_idx: int) -> MemoryStats:
        """Apply operations min_idx up to (not including) max_idx to stats and return it."""
        for op in self.operations[min_idx:max_idx]:
            stats.number_of_operations += 1
            _apply(op, stats)
        return stats

    def snapshot_stats(self, min_time: int, max_time: int) -> MemoryStats:
        """Return statistics for the time range between min_time and max_time."""
        timed = self.timed_stats
        min_op, min_t = self.index_before(min_time)
        max_op, max_t = self.index_after(max_time)
        if min_op != 0:
            min_op += 1

        start_stats = timed[min_t].stats.copy()

        if 0 <= max_t - min_t < 2:
            snapshot = start_stats.copy()
            self.ranged_stats(snapshot, timed[min_t].operation_index, min_op)
            snapshot.set_peaks_to_current()
            self.ranged_stats(snapshot, min_op, max_op)
            snapshot.number_of_operations -= start_stats.number_of_operations
            snapshot.number_of_allocations -= start_stats.number_of_allocations
            snapshot.number_of_frees -= start_stats.number_of_frees
            snapshot.number_of_reallocations -= start_stats.number_of_reallocations
            return snapshot

        self.ranged_stats(start_stats, timed[min_t].operation_index, min_op)
        snapshot = start_stats.copy()
        snapshot.set_peaks_to_current()
        self.ranged_stats(snapshot, min_op, timed[min_t + 1].operation_index)

        local_peak = MemoryStatsLocalPeak(
            memory_usage_peak=snapshot.memory_usage, overhead_peak=snapshot.overhead
        )
        for hp, b in zip(local_peak.histogram_peak, snapshot.histogram):
            hp.size_peak = b.size_peak
            hp.overhead_peak = b.overhead_peak
            hp.count_peak = b.count_peak

        for checkpoint in timed[min_t + 2:max_t + 1]:
            peak = checkpoint.local_peak
            local_peak.memory_usage_peak = max(local_peak.memory_usage_peak, peak.memory_usage_peak)
            local_peak.overhead_peak = max(local_peak.overhead_peak, peak.overhead_peak)
            for mine, theirs in zip(local_peak.histogram_peak, peak.histogram_peak):
                mine.size_peak = max(mine.size_peak, theirs.size_peak)
                mine.overhead_peak = max(mine.overhead_peak, theirs.overhead_peak)
                mine.count_peak = max(mine.count_peak, theirs.count_peak)

        snapshot.set_peaks_from(local_peak)
        end = timed[max_t]
        end_stats = end.stats
        snapshot.memory_usage = end_stats.memory_usage
        snapshot.overhead = end_stats.overhead
        snapshot.number_of_operations = end_stats.number_of_operations - start_stats.number_of_operations
        snapshot.number_of_allocations = end_stats.number_of_allocations - start_stats.number_of_allocations
        snapshot.number_of_frees = end_stats.number_of_frees - start_stats.number_of_frees
        snapshot.number_of_reallocations = (
            end_stats.number_of_reallocations - start_stats.number_of_reallocations
        )
        snapshot.number_of_live_blocks = end_stats.number_of_live_blocks
        for mine, theirs in zip(snapshot.histogram, end_stats.histogram):
            mine.size = theirs.size
            mine.overhead = theirs.overhead
            mine.count = theirs.count

        self.ranged_stats(snapshot, end.operation_index, max_op + 1)
        return snapshot

    def graph_at_time(self, time: int) -> tuple[int, int]:
        """Return (memory usage, live blocks) at the given time."""
        index, _ = self.index_before(time)
        return self.usage_graph[min(index, len(self.usage_graph) - 1)]