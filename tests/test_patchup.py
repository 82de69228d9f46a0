from __future__ import annotations

import pytest

from covflow.analysis.analyzer import StaticAnalyzer
from covflow.model import LineStatus
from covflow.patchup import build_file_report, build_report, reconcile, summary_lines
from covflow.runtime.store import DataStore


def _analysed_store(source, path="/src/sample.py", file_id="s"):
    store = DataStore.create()
    store.register_file(file_id, path, source)
    store.attach_analysis(file_id, StaticAnalyzer(use_cache=False).analyze(source, path=path))
    return store


def test_percentages_are_independent_floors():
    source = "".join("x%d = %d\n" % (n, n) for n in range(10))
    store = _analysed_store(source)
    for line in range(1, 8):
        store.add_execution("s", line)
    for line in range(1, 5):
        store.add_coverage("s", line)

    summary = build_file_report(store, "s").summary
    assert (summary.executable_lines, summary.executed_lines, summary.covered_lines) == (10, 7, 4)
    assert summary.line_coverage_percent == 40
    assert summary.execution_coverage_percent == 70


def test_floor_not_rounding():
    store = _analysed_store("a = 1\nb = 2\nc = 3\n")
    store.add_execution("s", 1)
    store.add_execution("s", 2)

    assert build_file_report(store, "s").summary.execution_coverage_percent == 66


def test_file_without_executable_lines_reports_zero():
    store = _analysed_store("# only a comment\n\n")

    summary = build_file_report(store, "s").summary
    assert summary.executable_lines == 0
    assert summary.line_coverage_percent == 0
    assert summary.execution_coverage_percent == 0


def test_reconcile_strips_non_executable_lines():
    store = _analysed_store("x = 1\n\n# note\ny = 2\n")
    store.add_execution("s", 1)
    store.add_execution("s", 2, 3)
    store.add_coverage("s", 3)

    assert reconcile(store) == 2
    assert store.executed_lines("s") == {1}
    assert store.covered_lines("s") == set()
    assert reconcile(store) == 0


def test_degraded_file_is_provisional():
    store = DataStore.create()
    store.register_file("d", "/src/degraded.py")
    store.add_execution("d", 1)
    store.add_execution("d", 3, 2)

    report = build_file_report(store, "d")
    assert report.provisional
    assert report.summary.executable_lines == 2
    assert report.summary.execution_coverage_percent == 100
    assert report.line(2).executable is False
    assert report.line(3).execution_count == 2
    assert reconcile(store) == 0


def test_line_details():
    store = _analysed_store("x = 1\n\ny = 2\nz = 3\n")
    store.add_execution("s", 1, 2)
    store.add_coverage("s", 3)

    report = store.get_file_data("s")
    assert [d.status for d in report.lines] == [
        LineStatus.EXECUTED, LineStatus.NOT_COVERED, LineStatus.COVERED, LineStatus.NOT_COVERED,
    ]
    assert report.line(1).execution_count == 2
    assert report.line(2).kind.value == "blank"
    assert report.as_dict()["lines"][2]["status"] == "covered"


def test_function_and_block_coverage():
    source = (
        "def f(x):\n"
        "    if x:\n"
        "        return 1\n"
        "    return 0\n"
        "\n"
        "def g():\n"
        "    return 2\n"
        "\n"
        "f(0)\n"
    )
    store = _analysed_store(source)
    for line in (1, 6, 9, 2, 4):
        store.add_execution("s", line)
    store.add_coverage("s", 4)

    report = build_file_report(store, "s")
    f, g = report.functions
    assert (f.execution_count, f.executed, f.covered) == (1, True, True)
    assert (g.execution_count, g.executed, g.covered) == (0, False, False)

    body, branch, other = report.blocks
    assert (body.depth, body.executable_lines, body.executed_lines, body.covered_lines) == (0, 3, 2, 1)
    assert (branch.depth, branch.executable_lines, branch.executed) == (1, 1, False)
    assert (other.executable_lines, other.executed) == (1, False)

    summary = report.summary
    assert (summary.total_functions, summary.executed_functions, summary.covered_functions) == (2, 1, 1)
    assert summary.function_coverage_percent == 50
    assert (summary.total_blocks, summary.executed_blocks, summary.covered_blocks) == (3, 1, 1)
    assert summary.block_coverage_percent == 33


def test_global_summary():
    store = _analysed_store("x = 1\ny = 2\n", path="/src/a.py", file_id="a")
    store.register_file("b", "/src/b.py", "z = 3\n")
    store.attach_analysis("b", StaticAnalyzer(use_cache=False).analyze("z = 3\n", path="/src/b.py"))
    store.add_coverage("a", 1)

    report = build_report(store)
    summary = report.summary
    assert (summary.total_files, summary.executed_files, summary.covered_files) == (2, 1, 1)
    assert (summary.executable_lines, summary.executed_lines, summary.covered_lines) == (3, 1, 1)
    assert summary.line_coverage_percent == 33
    assert summary.file_coverage_percent == 50
    assert store.calculate_summary() == summary
    assert store.calculate_summary("b").executed_lines == 0

    text = summary_lines(summary)
    assert text[0].startswith("files:")
    assert "1/3 covered (33%)" in text[1]


def test_reconciled_reports_nest_covered_in_executed_in_executable():
    source = "def f():\n    return 1\n\n# note\nx = f()\ny = 2\n"
    store = _analysed_store(source)
    for line in (1, 3, 4, 5, 2):
        store.add_execution("s", line)
    store.add_coverage("s", 2)
    store.add_coverage("s", 4)
    store.register_file("d", "/src/degraded.py")
    store.add_execution("d", 2)
    store.add_coverage("d", 5)

    reconcile(store)

    for file_id in ("s", "d"):
        report = build_file_report(store, file_id)
        covered = {d.number for d in report.lines if d.covered}
        executed = {d.number for d in report.lines if d.execution_count}
        executable = {d.number for d in report.lines if d.executable}
        assert covered <= executed <= executable <= set(range(1, len(report.lines) + 1))
        summary = report.summary
        assert summary.covered_lines <= summary.executed_lines <= summary.executable_lines
    assert build_file_report(store, "s").lines_with_status(LineStatus.COVERED) == [2]


def test_meets_threshold():
    source = "".join("x%d = %d\n" % (n, n) for n in range(4))
    store = _analysed_store(source)
    for line in (1, 2, 3):
        store.add_execution("s", line)
    store.add_coverage("s", 1)

    report = build_report(store)
    assert report.meets_threshold(75)
    assert not report.meets_threshold(76)
    assert report.meets_threshold(25, "line")
    assert not report.summary.meets_threshold(26, metric="line")
    assert report.meets_threshold(0, "function")
    with pytest.raises(ValueError):
        report.meets_threshold(10, "branch")
