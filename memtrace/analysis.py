"""Linking, grouping and call-tree construction over loaded memory operations."""

from __future__ import annotations

import re
from typing import Callable, Iterable, Optional, Sequence

from .model import (
    MemoryOperation,
    MemoryOperationGroup,
    ModuleInfo,
    OpType,
    Scope,
    StackTrace,
    StackTraceTree,
    TreeOpKind,
)

InFilter = Callable[[MemoryOperation], bool]
MemoryGroups = dict[StackTrace, MemoryOperationGroup]

_ALLOC_TYPES = (OpType.ALLOC, OpType.CALLOC, OpType.ALLOC_ALIGNED)
_REALLOC_TYPES = (OpType.REALLOC, OpType.REALLOC_ALIGNED)


def _file_name(path: str) -> str:
    return re.split(r"[\\/]", path)[-1]


class SymbolResolver:
    """Maps addresses to unique symbol ids.

    This implementation uses the address itself as its id and marks addresses
    inside any module whose file name is listed in ``internal`` as belonging to
    the profiler, so such frames can be dropped from the top of call stacks.
    """

    def __init__(self, modules: Iterable[ModuleInfo] = (), internal: Iterable[str] = ()) -> None:
        self.modules = list(modules)
        self.internal = {name.lower() for name in internal}

    def module_index(self, address: int) -> int:
        """Return the index of the module holding the address, or -1."""
        for index, module in enumerate(self.modules):
            if module.check_address(address):
                return index
        return -1

    def address_id(self, address: int) -> tuple[int, bool]:
        """Return the unique id of the address and whether it is a profiler frame."""
        index = self.module_index(address)
        internal = index >= 0 and _file_name(self.modules[index].module_path).lower() in self.internal
        return address, internal


def update_live_blocks(op: MemoryOperation, live_blocks: int) -> int:
    """Return the number of live blocks after the operation."""
    if op.operation_type in _ALLOC_TYPES:
        return live_blocks + 1
    if op.operation_type in _REALLOC_TYPES:
        return live_blocks + 1 if op.previous_pointer == 0 else live_blocks
    if op.operation_type == OpType.FREE:
        return live_blocks - 1
    return live_blocks


def update_live_size(op: MemoryOperation, live_size: int) -> int:
    """Return the live memory size after the operation."""
    if op.operation_type in _ALLOC_TYPES:
        return live_size + op.alloc_size
    if op.operation_type in _REALLOC_TYPES:
        live_size += op.alloc_size
        if op.previous_pointer and op.chain_prev is not None:
            live_size -= op.chain_prev.alloc_size
        return live_size
    if op.operation_type == OpType.FREE and op.chain_prev is not None:
        return live_size - op.chain_prev.alloc_size
    return live_size


def _release_previous(groups: MemoryGroups, prev: Optional[MemoryOperation], in_filter: InFilter) -> None:
    if prev is None or not in_filter(prev):
        return
    group = groups.setdefault(prev.stack_trace, MemoryOperationGroup())
    group.live_count -= 1
    group.live_size -= prev.alloc_size


def _add_live(group: MemoryOperationGroup, op: MemoryOperation, live_blocks: int, live_size: int) -> None:
    group.operations.append(op)
    group.count += 1
    group.live_count += 1
    group.min_size = min(group.min_size, op.alloc_size)
    group.max_size = max(group.max_size, op.alloc_size)
    group.live_size += op.alloc_size
    if group.live_size > group.peak_size:
        group.peak_size = group.live_size
        group.peak_size_global = live_size
    if group.live_count > group.live_count_peak:
        group.live_count_peak = group.live_count
        group.live_count_peak_global = live_blocks


def add_to_memory_groups(
    groups: MemoryGroups,
    op: MemoryOperation,
    live_blocks: int,
    live_size: int,
    in_filter: InFilter,
) -> None:
    """Add the operation to the group of its call stack, updating live figures."""
    if op.operation_type in _ALLOC_TYPES:
        _add_live(groups.setdefault(op.stack_trace, MemoryOperationGroup()), op, live_blocks, live_size)
    elif op.operation_type == OpType.FREE:
        _release_previous(groups, op.chain_prev, in_filter)
        group = groups.setdefault(op.stack_trace, MemoryOperationGroup())
        group.operations.append(op)
        group.count += 1
        group.min_size = min(group.min_size, op.alloc_size)
        group.max_size = max(group.max_size, op.alloc_size)
        group.peak_size = max(group.peak_size, group.live_size)
    elif op.operation_type in _REALLOC_TYPES:
        _release_previous(groups, op.chain_prev, in_filter)
        _add_live(groups.setdefault(op.stack_trace, MemoryOperationGroup()), op, live_blocks, live_size)


def _account(node: StackTraceTree, size: int, overhead: int, kind: TreeOpKind) -> None:
    node.mem_usage += size
    node.mem_usage_peak = max(node.mem_usage, node.mem_usage_peak)
    node.overhead += overhead
    node.overhead_peak = max(node.overhead, node.overhead_peak)
    if kind != TreeOpKind.COUNT:
        node.op_count[kind] += 1


def _add_to_tree(
    root: StackTraceTree,
    trace: StackTrace,
    size: int,
    overhead: int,
    scope: Scope,
    kind: TreeOpKind,
) -> None:
    num_frames = len(trace.entries)
    ids = trace.ids if len(trace.ids) >= num_frames else trace.entries
    cache = trace.tree_index[scope]
    if len(cache) != num_frames:
        cache[:] = [-1] * num_frames

    _account(root, size, overhead, kind)
    if trace.added_to_tree[scope] == 0 and not any(t is trace for t in root.stack_traces):
        root.stack_traces.append(trace)

    node = root
    for frame in range(num_frames - 1, -1, -1):
        depth = num_frames - frame
        unique_id = ids[frame]
        index = cache[frame]
        if index == -1:
            index = next(
                (i for i, child in enumerate(node.children) if child.address_id == unique_id),
                -1,
            )
            if index == -1:
                node.children.append(StackTraceTree(address_id=unique_id, depth=depth, parent=node))
                index = len(node.children) - 1
            cache[frame] = index
        node = node.children[index]

        if trace.added_to_tree[scope] < depth:
            node.stack_traces.append(trace)
            trace.added_to_tree[scope] = depth

        _account(node, size, overhead, kind)


def add_to_stack_trace_tree(
    tree: StackTraceTree,
    op: MemoryOperation,
    scope: Scope,
    in_filter: InFilter,
) -> None:
    """Account the operation in the call stack tree rooted at tree."""
    if op.operation_type in _ALLOC_TYPES:
        _add_to_tree(tree, op.stack_trace, op.alloc_size, op.overhead, scope, TreeOpKind.ALLOC)
    elif op.operation_type == OpType.FREE:
        prev = op.chain_prev
        if prev is None:
            raise ValueError("free operation is not linked to an allocation")
        if in_filter(prev):
            _add_to_tree(tree, prev.stack_trace, -prev.alloc_size, -prev.overhead, scope, TreeOpKind.FREE)
        else:
            # Without the matching allocation in view, usage must not drop below zero.
            _add_to_tree(tree, prev.stack_trace, 0, 0, scope, TreeOpKind.FREE)
    elif op.operation_type in _REALLOC_TYPES:
        prev = op.chain_prev
        if prev is not None and in_filter(prev):
            _add_to_tree(tree, prev.stack_trace, -prev.alloc_size, -prev.overhead, scope, TreeOpKind.COUNT)
        _add_to_tree(tree, op.stack_trace, op.alloc_size, op.overhead, scope, TreeOpKind.REALLOC)


def assign_unique_ids(stack_traces: Sequence[StackTrace], resolver: SymbolResolver) -> None:
    """Resolve symbol ids for every frame and drop profiler frames from stack tops."""
    addresses = {address for trace in stack_traces for address in trace.entries}
    ordered = sorted(addresses, key=lambda a: (resolver.module_index(a), a))
    resolved = {address: resolver.address_id(address) for address in ordered}

    for trace in stack_traces:
        num_frames = len(trace.entries)
        ids: list[int] = []
        skip = 0
        counting = True
        for address in trace.entries:
            unique_id, internal = resolved[address]
            ids.append(unique_id)
            if not internal:
                counting = False
            if counting:
                skip += 1

        if skip:
            if num_frames > skip:
                trace.entries = trace.entries[skip:]
                ids = ids[skip:]
            else:
                trace.entries = trace.entries[-1:]
                ids = ids[-1:]

        trace.ids = ids
        count = len(trace.entries)
        trace.tree_index = [[-1] * count, [-1] * count]
        trace.added_to_tree[Scope.GLOBAL] = 0


def link_operations(
    operations: Iterable[MemoryOperation],
) -> tuple[list[MemoryOperation], list[MemoryOperation]]:
    """Chain operations on the same block and drop invalid ones.

    Operations must be in time order. Returns the valid operations and the
    reallocations and frees that referred to an unknown block.
    """
    live: dict[int, MemoryOperation] = {}
    ops = list(operations)
    invalid: list[MemoryOperation] = []

    for op in ops:
        op.is_valid = True
        if op.operation_type in _ALLOC_TYPES:
            if op.pointer in live:
                op.is_valid = False
            else:
                live[op.pointer] = op
        elif op.operation_type in _REALLOC_TYPES:
            old: Optional[MemoryOperation] = None
            if op.previous_pointer:
                old = live.pop(op.previous_pointer, None)
                if old is None:
                    invalid.append(op)
                    op.is_valid = False
            elif op.pointer in live:
                invalid.append(op)
                op.is_valid = False
            if old is not None:
                op.chain_prev = old
                old.chain_next = op
            live[op.pointer] = op
        elif op.operation_type == OpType.FREE:
            old = live.pop(op.pointer, None)
            if old is None:
                invalid.append(op)
                op.is_valid = False
            else:
                old.chain_next = op
                op.chain_prev = old
                op.alloc_size = old.alloc_size
                op.overhead = old.overhead

    return [op for op in ops if op.is_valid], invalid