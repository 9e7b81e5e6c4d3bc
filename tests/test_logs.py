import xml.etree.ElementTree as ET

import pytest

from memtrace.capture import Capture
from memtrace.logs import (
    StackFrame,
    format_number,
    operation_name,
    sort_groups,
    write_groups_log,
    write_groups_log_xml,
    write_log,
)
from memtrace.model import GroupSort, MemoryOperation, MemoryOperationGroup, OpType, StackTrace


def _resolver(address):
    if address == 0x10:
        return StackFrame("app", "main", "main.c", 12)
    return StackFrame("lib", f"f{address}", "", 0)


def _group(name, ops, min_size, max_size, count, live_size):
    return MemoryOperationGroup(
        min_size=min_size, max_size=max_size, count=count, live_size=live_size, operations=ops
    )


def _capture():
    capture = Capture()
    trace = StackTrace(entries=[0x10, 0x20])
    a = MemoryOperation(operation_type=OpType.ALLOC, alloc_size=16, stack_trace=trace)
    b = MemoryOperation(operation_type=OpType.CALLOC, alloc_size=40, stack_trace=None)
    capture.operations = [a, b]
    capture.global_stats.memory_usage = 5
    capture.global_stats.number_of_frees = 7
    capture.loaded_file = "run.cap"
    capture.operation_groups = {
        trace: _group("a", [a], 8, 32, 2, 255),
        "other": _group("b", [b], 40, 40, 1, 40),
    }
    return capture


@pytest.mark.parametrize(
    "op_type, name",
    [
        (OpType.ALLOC, "Alloc"),
        (OpType.REALLOC, "Realloc"),
        (OpType.CALLOC, "Calloc"),
        (OpType.FREE, "Free"),
        (OpType.ALLOC_ALIGNED, "Alloc aligned"),
        (OpType.REALLOC_ALIGNED, "Realloc aligned"),
    ],
)
def test_operation_name(op_type, name):
    assert operation_name(op_type) == name


def test_operation_name_unknown_is_empty():
    assert operation_name(99) == ""


def test_format_number_pinned_values():
    assert format_number(0) == "0"
    assert format_number(1234567) == "1,234,567"


@pytest.mark.parametrize("value", [1, 9, 10, 99, 100, 999, 1000, 65536, 10**12 + 7])
def test_format_number_round_trip_and_grouping(value):
    text = format_number(value)
    assert int(text.replace(",", "")) == value
    parts = text.split(",")
    assert all(len(p) == 3 for p in parts[1:])
    assert 1 <= len(parts[0]) <= 3


def test_sort_groups_orders_descending_and_stably():
    g1 = MemoryOperationGroup(max_size=4, live_size=10, operations=[MemoryOperation()])
    g2 = MemoryOperationGroup(max_size=9, live_size=10, operations=[MemoryOperation()] * 3)
    g3 = MemoryOperationGroup(max_size=4, live_size=50, operations=[MemoryOperation()] * 2)
    groups = [g1, g2, g3]
    assert sort_groups(groups, GroupSort.COUNT) == [g2, g3, g1]
    assert sort_groups(groups, GroupSort.SIZE) == [g2, g1, g3]
    assert sort_groups(groups, GroupSort.TOTAL_SIZE) == [g3, g1, g2]


def test_write_log_contents(tmp_path):
    path = tmp_path / "ops.txt"
    write_log(_capture(), path, _resolver)
    text = path.read_text(encoding="utf-8")
    assert "Memory usage            : 5\n" in text
    assert "Number of frees         : 7\n" in text
    assert "\nAlloc  size: 16\napp!main Line 12  main.c\nlib!f32\n" in text
    assert text.endswith("\nCalloc  size: 40\nNo call stack")


def test_write_groups_log_contents(tmp_path):
    path = tmp_path / "groups.txt"
    write_groups_log(_capture(), path, GroupSort.COUNT, _resolver)
    text = path.read_text(encoding="utf-8")
    first = text.index("Alloc  size: 8-32   group operations: 2")
    second = text.index("Calloc  size: 40   group operations: 1")
    assert first < second
    assert text.count("----------------------------------------\n") == 2


def test_write_groups_log_uses_filtered_groups(tmp_path):
    capture = _capture()
    op = MemoryOperation(operation_type=OpType.FREE, alloc_size=3, stack_trace=None)
    capture.filter.operation_groups = {"f": _group("f", [op], 3, 3, 1, 0)}
    capture.filtering_enabled = True
    path = tmp_path / "filtered.txt"
    write_groups_log(capture, path, GroupSort.SIZE, _resolver)
    text = path.read_text(encoding="utf-8")
    assert "Free  size: 3   group operations: 1" in text
    assert "Alloc  size" not in text


def test_write_groups_log_xml(tmp_path):
    capture = _capture()
    capture.operation_groups.pop("other")
    path = tmp_path / "groups.xml"
    write_groups_log_xml(capture, path, GroupSort.TOTAL_SIZE, _resolver)
    root = ET.parse(path).getroot()
    assert root.tag == "MTuner"
    assert root.get("File") == "run.cap"
    assert root.find("Stats/Usage").text == "5"
    assert root.find("Stats/Frees").text == "7"
    group = root.find("Group")
    assert group.find("Type").text == "Alloc"
    assert group.find("SizeMin").text == "8"
    assert group.find("SizeMax").text == "32"
    assert group.find("Leaked").text == "ff"
    frames = group.findall("Frame")
    assert [f.find("Func").text for f in frames] == ["main", "f32"]
    assert frames[0].find("Line").text == "12"
    assert frames[1].find("File").text == "Unknown"


def test_write_log_to_missing_directory_raises(tmp_path):
    with pytest.raises(OSError):
        write_log(_capture(), tmp_path / "missing" / "ops.txt", _resolver)