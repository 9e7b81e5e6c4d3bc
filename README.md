# memtrace

`memtrace` reads binary memory allocation capture files and turns them into
data you can analyse: every allocation, reallocation and free with its thread,
time, size, overhead and call stack, plus global and per-time-range statistics,
size histograms, allocation groups, a call-stack tree, a memory tag tree,
markers, heaps and loaded modules.

Both plain and LZ4-chunk-compressed captures are read, in either byte order
and for 32-bit or 64-bit targets.

## Installation

```
pip install memtrace
```

## Loading a capture

```python
from memtrace.binloader import CaptureFormatError
from memtrace.capture import Capture, LoadResult

capture = Capture(progress=lambda percent, message: print(f"{percent:5.1f}% {message}"))
try:
    result = capture.load("session.capture")
except CaptureFormatError as exc:
    print("capture could not be used:", exc)
else:
    if result is LoadResult.PARTIAL:
        print("capture was only partially loaded")
```

`Capture.load` returns `LoadResult.SUCCESS` or `LoadResult.PARTIAL`. A file
whose record stream breaks off but that still holds operations (or that breaks
off within its last 1000 bytes) loads as `PARTIAL`. A file that cannot be opened
raises `OSError`; a file whose contents cannot be used raises
`CaptureFormatError`, and the capture is left empty.

After loading, the capture exposes `operations` (sorted by time and linked
to the operations on the same block), `operations_invalid`, `global_stats`,
`snapshot_stats`, `module_infos`, `stack_traces`, `heaps`, `memory_markers`,
`memory_marker_times`, `tag_tree`, `min_time` and `max_time`.

## Building analysis data

Grouping operations by call stack and building the call-stack and tag trees
takes a `memtrace.analysis.SymbolResolver`. It uses each address as its own
symbol ID; addresses inside modules whose file names are passed as `internal`
count as profiler frames and are dropped from the top of call stacks.

```python
from memtrace.analysis import SymbolResolver

resolver = SymbolResolver(capture.module_infos, internal=["profiler.dll"])
capture.build_analyze_data(resolver)

print(len(capture.operation_groups), "groups,", len(capture.memory_leaks), "leaks")
```

## Filtering and snapshots

```python
capture.set_snapshot(capture.min_time, capture.max_time // 2)
capture.select_thread(thread_id)
capture.select_histogram_bin(4)
capture.set_leaked_only(True)
capture.set_filtering_enabled(True)

print(len(capture.filter.operations), "operations match")
```

Snapshot statistics in `capture.snapshot_stats` are recomputed when the time
range, histogram bin, tag or thread selection changes; `set_snapshot` ignores
ranges outside the capture. Turning filtering on rebuilds the filtered
operations, groups, call-stack tree and tag tree in `capture.filter`.

`capture.graph_at_time(t)` returns a `GraphEntry` with the memory usage and
live block count at time `t`. `capture.float_time(t)` converts CPU clocks into
seconds and `capture.clocks_from_time(s)` does the reverse.

## Writing reports

The report writers take an optional frame resolver: a callable that maps an
address to a `memtrace.logs.StackFrame`. Without one, each frame is written
as its hexadecimal address.

```python
from memtrace.logs import StackFrame, write_log, write_groups_log, write_groups_log_xml
from memtrace.model import GroupSort

def frames(address):
    return StackFrame(module_name="app", func=f"0x{address:x}")

write_log(capture, "operations.txt", frames)
write_groups_log(capture, "groups.txt", GroupSort.TOTAL_SIZE, frames)
write_groups_log_xml(capture, "groups.xml", GroupSort.COUNT)
```

Group reports use the filtered groups while filtering is enabled. Statistics
in the reports are written with thousands separators, as
`format_number(1234567)` gives `"1,234,567"`.

## Modules

- `memtrace.model`: operations, stack traces, statistics, the call-stack tree
  and the memory tag tree.
- `memtrace.stats`: histogram bins and statistics updates.
- `memtrace.binloader`: plain and LZ4-chunk capture streams.
- `memtrace.reader`: the capture header, strings, the module table and the
  record stream.
- `memtrace.analysis`: linking operations, groups, call-stack trees and the
  `SymbolResolver`.
- `memtrace.timeline`: timed statistics, index lookups and snapshot stats.
- `memtrace.capture`: the `Capture` class that ties it all together.
- `memtrace.logs`: text and XML reports.

## What it does not do

`memtrace` is a library only: it has no command-line program and no viewer.
It does not record captures, and it does not read debug information, so it
cannot turn addresses into function names, files or line numbers by itself;
names appear in reports only if you supply a frame resolver that provides them.