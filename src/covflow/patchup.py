"""
Patch-up and summary computation.

This module is the last step before coverage data is exposed. It reconciles
the runtime records of a DataStore with the static analyses attached to it
and derives the read-only report snapshots.

**Reconciliation:**
Static classification is authoritative. Execution or coverage signal found
on a line the analyzer marked non-executable is stripped; a line is never
considered executable because it executed.

**Degraded Mode:**
A file without an analysis (its source could not be parsed) reports its
executed lines as provisionally executable, and its report is flagged
``provisional``.

**Metrics:**
Line, execution, function and block percentages are computed independently
as integer floor percentages; no combined score is derived. A file with no
executable lines reports 0%.
"""

import logging

from .analysis.blocks import BlockTree
from .model import (BlockCoverage, CoverageReport, FileCoverageSummary, FileReport, FunctionCoverage,
                    GlobalSummary, LineDetail, LineStatus)

LOG = logging.getLogger(__name__)


def reconcile(store):
    """
    Strip signal from non-executable lines of every analysed file.

    Args:
        store: DataStore, modified in place

    Returns:
        int: Number of lines stripped
    """
    stripped = 0
    for file_id in store.file_ids():
        analysis = store.analysis_for(file_id)
        if analysis is None:
            continue
        stray = (store.executed_lines(file_id) | store.covered_lines(file_id)) - analysis.executable_lines
        for line in sorted(stray):
            if store.strip_line(file_id, line):
                stripped += 1
        if stray:
            LOG.debug("stripped %d non-executable lines from %s", len(stray), store.path_for(file_id))
    if stripped:
        LOG.info("reconciliation removed signal from %d non-executable lines", stripped)
    return stripped


def build_file_report(store, file_id):
    """
    Build the read-only coverage report of one file.

    Args:
        store: DataStore
        file_id: Id of the file

    Returns:
        FileReport
    """
    analysis = store.analysis_for(file_id)
    executed = store.executed_lines(file_id)
    covered = store.covered_lines(file_id)
    source = store.files.get(file_id)

    if analysis is not None:
        total = analysis.total_lines
        executable = analysis.executable_lines
        provisional = False
    else:
        executable = frozenset(executed | covered)
        total = max([source.total_line_count if source is not None else 0] + list(executable))
        provisional = True

    details = []
    for number in range(1, total + 1):
        classification = analysis.classification(number) if analysis is not None else None
        is_executable = number in executable
        count = store.get_execution_count(file_id, number) if is_executable else 0
        is_covered = is_executable and number in covered
        if is_covered:
            status = LineStatus.COVERED
        elif count > 0:
            status = LineStatus.EXECUTED
        else:
            status = LineStatus.NOT_COVERED
        details.append(LineDetail(number, classification.kind if classification else None,
                                  is_executable, count, is_covered, status))

    executed_lines = {d.number for d in details if d.execution_count > 0}
    covered_lines = {d.number for d in details if d.covered}

    functions = []
    blocks = []
    if analysis is not None:
        for info in analysis.functions:
            body = sorted(n for n in executable if info.body_start_line <= n <= info.end_line)
            count = store.get_execution_count(file_id, body[0]) if body else 0
            functions.append(FunctionCoverage(
                info=info,
                execution_count=count,
                executed=any(n in executed_lines for n in body),
                covered=any(n in covered_lines for n in body),
            ))
        tree = BlockTree(analysis.blocks)
        in_block = tree.rollup(executable, lambda n: True)
        executed_in = tree.rollup(executable, executed_lines.__contains__)
        covered_in = tree.rollup(executable, covered_lines.__contains__)
        for info in analysis.blocks:
            blocks.append(BlockCoverage(info, tree.depth(info.id), in_block[info.id],
                                        executed_in[info.id], covered_in[info.id]))

    summary = FileCoverageSummary(
        total_lines=total,
        executable_lines=len(executable),
        executed_lines=len(executed_lines),
        covered_lines=len(covered_lines),
        total_functions=len(functions),
        executed_functions=sum(1 for f in functions if f.executed),
        covered_functions=sum(1 for f in functions if f.covered),
        total_blocks=len(blocks),
        executed_blocks=sum(1 for b in blocks if b.executed),
        covered_blocks=sum(1 for b in blocks if b.covered),
    )
    return FileReport(
        file_id=file_id,
        path=store.path_for(file_id),
        provisional=provisional,
        lines=tuple(details),
        functions=tuple(functions),
        blocks=tuple(blocks),
        summary=summary,
    )


def build_report(store, file_ids=None):
    """
    Build the reports of several files and their global summary.

    Args:
        store: DataStore
        file_ids: Ids to include; every known file when omitted

    Returns:
        CoverageReport
    """
    if file_ids is None:
        file_ids = store.file_ids()
    files = {file_id: build_file_report(store, file_id) for file_id in file_ids}

    totals = dict.fromkeys(
        ("total_lines", "executable_lines", "executed_lines", "covered_lines", "total_functions",
         "executed_functions", "covered_functions", "total_blocks", "executed_blocks", "covered_blocks"), 0)
    for report in files.values():
        for name in totals:
            totals[name] += getattr(report.summary, name)

    summary = GlobalSummary(
        total_files=len(files),
        executed_files=sum(1 for r in files.values() if r.summary.executed_lines),
        covered_files=sum(1 for r in files.values() if r.summary.covered_lines),
        **totals
    )
    return CoverageReport(files=files, summary=summary)


def summary_lines(summary):
    """Plain-text lines describing a summary."""
    lines = [
        "lines:      %d/%d covered (%d%%), %d/%d executed (%d%%)" % (
            summary.covered_lines, summary.executable_lines, summary.line_coverage_percent,
            summary.executed_lines, summary.executable_lines, summary.execution_coverage_percent),
        "functions:  %d/%d covered (%d%%)" % (
            summary.covered_functions, summary.total_functions, summary.function_coverage_percent),
        "blocks:     %d/%d covered (%d%%)" % (
            summary.covered_blocks, summary.total_blocks, summary.block_coverage_percent),
    ]
    if isinstance(summary, GlobalSummary):
        lines.insert(0, "files:      %d/%d covered (%d%%), %d executed" % (
            summary.covered_files, summary.total_files, summary.file_coverage_percent, summary.executed_files))
    return lines
