"""Plain text and XML reports of the operations and groups of a loaded capture."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, TextIO, Union
from xml.sax.saxutils import escape, quoteattr

from .capture import Capture
from .model import GroupSort, MemoryOperationGroup, MemoryStats, OpType, StackTrace

_BANNER = "Memory analysis log file\n\n"
_RULE = "----------------------------------------\n"
_UINT64_MASK = (1 << 64) - 1

_OPERATION_NAMES = {
    OpType.ALLOC: "Alloc",
    OpType.REALLOC: "Realloc",
    OpType.CALLOC: "Calloc",
    OpType.FREE: "Free",
    OpType.ALLOC_ALIGNED: "Alloc aligned",
    OpType.REALLOC_ALIGNED: "Realloc aligned",
}


@dataclass
class StackFrame:
    """A resolved call stack frame."""

    module_name: str = ""
    func: str = ""
    file: str = ""
    line: int = 0


FrameResolver = Callable[[int], StackFrame]
PathLike = Union[str, os.PathLike]


def _unresolved(address: int) -> StackFrame:
    return StackFrame(func=f"0x{address:x}")


def operation_name(op_type: int) -> str:
    """Return the display name of an operation type, or an empty string."""
    try:
        return _OPERATION_NAMES[OpType(op_type)]
    except ValueError:
        return ""


def format_number(value: int) -> str:
    """Format an integer with commas between groups of three digits."""
    return f"{value:,}"


_SORT_KEYS: dict[GroupSort, Callable[[MemoryOperationGroup], int]] = {
    GroupSort.COUNT: lambda g: len(g.operations),
    GroupSort.SIZE: lambda g: g.max_size,
    GroupSort.TOTAL_SIZE: lambda g: g.live_size,
}


def sort_groups(
    groups: Iterable[MemoryOperationGroup], sorting: GroupSort
) -> list[MemoryOperationGroup]:
    """Return the groups ordered from largest to smallest; ties keep their order."""
    return sorted(groups, key=_SORT_KEYS[sorting], reverse=True)


def _stats_lines(stats: MemoryStats) -> Iterable[tuple[str, str, int]]:
    yield "Memory usage            ", "Usage", stats.memory_usage
    yield "Memory usage at peak    ", "Peak", stats.memory_usage_peak
    yield "Overhead                ", "Overhead", stats.overhead
    yield "Overhead at peak        ", "OverheadPeak", stats.overhead_peak
    yield "Number of operations    ", "Operations", stats.number_of_operations
    yield "Number of allocations   ", "Allocations", stats.number_of_allocations
    yield "Number of reallocations ", "Reallocations", stats.number_of_reallocations
    yield "Number of frees         ", "Frees", stats.number_of_frees
    yield "Number of memory leaks  ", "Leaks", stats.number_of_live_blocks


def _write_global_stats(out: TextIO, stats: MemoryStats) -> None:
    out.write(_RULE)
    for label, _, value in _stats_lines(stats):
        out.write(f"{label}: {format_number(value)}\n")
    out.write(_RULE)


def _write_frames(out: TextIO, trace: Optional[StackTrace], resolver: FrameResolver) -> None:
    if trace is None:
        out.write("No call stack")
        return
    for address in trace.entries:
        frame = resolver(address)
        out.write(f"{frame.module_name}!{frame.func}")
        if frame.line != 0:
            out.write(f" Line {frame.line}  {frame.file}\n")
        else:
            out.write("\n")


def _source_groups(capture: Capture) -> list[MemoryOperationGroup]:
    groups = capture.filter.operation_groups if capture.filtering_enabled else capture.operation_groups
    return list(groups.values())


def write_log(capture: Capture, path: PathLike, resolver: Optional[FrameResolver] = None) -> None:
    """Write every memory operation with its call stack to a text file."""
    resolve = resolver or _unresolved
    with open(path, "w", encoding="utf-8") as out:
        out.write(_BANNER)
        _write_global_stats(out, capture.global_stats)
        for op in capture.operations:
            out.write(f"\n{operation_name(op.operation_type)}  size: {op.alloc_size}\n")
            _write_frames(out, op.stack_trace, resolve)


def write_groups_log(
    capture: Capture,
    path: PathLike,
    sorting: GroupSort,
    resolver: Optional[FrameResolver] = None,
) -> None:
    """Write the operation groups, in the given order, to a text file."""
    resolve = resolver or _unresolved
    ordered = sort_groups(_source_groups(capture), sorting)
    with open(path, "w", encoding="utf-8") as out:
        out.write(_BANNER)
        _write_global_stats(out, capture.global_stats)
        for group in ordered:
            op = group.operations[0]
            name = operation_name(op.operation_type)
            if group.min_size != group.max_size:
                size = f"{group.min_size}-{group.max_size}"
            else:
                size = f"{group.min_size}"
            out.write(f"\n{name}  size: {size}   group operations: {group.count}\n")
            _write_frames(out, op.stack_trace, resolve)


def write_groups_log_xml(
    capture: Capture,
    path: PathLike,
    sorting: GroupSort,
    resolver: Optional[FrameResolver] = None,
) -> None:
    """Write the global statistics and operation groups as an XML document."""
    resolve = resolver or _unresolved
    ordered = sort_groups(_source_groups(capture), sorting)
    with open(path, "w", encoding="utf-8") as out:
        out.write('<?xml version="1.0"?>\n')
        out.write(f"<MTuner File={quoteattr(capture.loaded_file)}>\n")
        out.write("    <Stats>\n")
        for _, element, value in _stats_lines(capture.global_stats):
            out.write(f"        <{element}>{format_number(value)}</{element}>\n")
        out.write("    </Stats>\n")

        for group in ordered:
            op = group.operations[0]
            out.write("    <Group>\n")
            out.write(f"        <Type>{escape(operation_name(op.operation_type))}</Type>\n")
            out.write(f"        <SizeMin>{group.min_size}</SizeMin>\n")
            out.write(f"        <SizeMax>{group.max_size}</SizeMax>\n")
            out.write(f"        <Operations>{group.count}</Operations>\n")
            out.write(f"        <Leaked>{group.live_size & _UINT64_MASK:x}</Leaked>\n")

            trace = op.stack_trace
            if trace is None:
                # Matches the established format: a group without a stack is left open.
                continue

            for address in trace.entries:
                frame = resolve(address)
                out.write("        <Frame>\n")
                out.write(f"            <Module>{escape(frame.module_name)}</Module>\n")
                out.write(f"            <Func>{escape(frame.func)}</Func>\n")
                if frame.line != 0:
                    out.write(f"            <File>{escape(frame.file)}</File>\n")
                    out.write(f"            <Line>{frame.line}</Line>\n")
                else:
                    out.write("            <File>Unknown</File>\n")
                    out.write("            <Line>0</Line>\n")
                out.write("        </Frame>\n")

            out.write("    </Group>\n")

        out.write("</MTuner>\n")