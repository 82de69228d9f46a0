"""Main CLI dispatcher for covflow.

This module provides the ``covflow`` command line, dispatching to the
coverage operations:
- run: run one script under coverage and write its data
- parallel: run several scripts in worker processes and merge their data
- merge: combine coverage data files
- summary: print the summary of a coverage data file
- analyze: print the static classification of a source file

run, parallel and summary exit with status 2 when a coverage metric is
below the required minimum (--fail-under, or fail_under in the configuration).
"""

import argparse
import json
import logging
import sys

from .. import __version__
from ..analysis.analyzer import StaticAnalyzer
from ..config import load_config
from ..errors import CoverageError
from ..instrumentation.loader import install_import_hook, uninstall_import_hook
from ..model import COVERAGE_METRICS
from ..parallel import run_parallel
from ..patchup import build_report, reconcile, summary_lines
from ..runtime.store import DataStore, merge_all
from ..session import CoverageSession

LOG = logging.getLogger(__name__)

THRESHOLD_EXIT_CODE = 2


def add_common_arguments(parser):
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-d", "--debug", action="store_true", help="Debug output")


def add_threshold_arguments(parser):
    parser.add_argument("--fail-under", type=float, default=None, metavar="PERCENT",
                        help="Fail when coverage is below PERCENT")
    parser.add_argument("--fail-metric", choices=COVERAGE_METRICS, default=None,
                        help="Metric checked by --fail-under (default: execution)")


def add_collect_arguments(parser):
    add_common_arguments(parser)
    add_threshold_arguments(parser)
    parser.add_argument("--config", default="pyproject.toml",
                        help="pyproject.toml holding a [tool.covflow] table (default: pyproject.toml)")
    parser.add_argument("--strategy", choices=("native", "instrument", "auto"),
                        help="Collection strategy, overrides the configuration")
    parser.add_argument("--source", action="append", default=None, metavar="DIR",
                        help="Report never-executed files under DIR (repeatable)")
    parser.add_argument("-o", "--output", default="coverage.json",
                        help="Coverage data file to write (default: coverage.json)")


def add_run_parser(subparsers):
    parser = subparsers.add_parser("run", help="Run a script under coverage")
    add_collect_arguments(parser)
    parser.add_argument("script", help="Script to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the script")


def add_parallel_parser(subparsers):
    parser = subparsers.add_parser("parallel", help="Run scripts in worker processes under coverage")
    add_collect_arguments(parser)
    parser.add_argument("scripts", nargs="+", help="Scripts to run")
    parser.add_argument("-j", "--jobs", type=int, default=None, help="Number of worker processes")
    parser.add_argument("--timeout", type=float, default=120, help="Seconds a worker may run (default: 120)")
    parser.add_argument("--rss-limit-mb", type=int, default=2048,
                        help="Memory limit per worker in MB (default: 2048)")


def add_merge_parser(subparsers):
    parser = subparsers.add_parser("merge", help="Merge coverage data files")
    add_common_arguments(parser)
    parser.add_argument("inputs", nargs="+", help="Coverage data files")
    parser.add_argument("-o", "--output", required=True, help="Merged data file to write")


def add_summary_parser(subparsers):
    parser = subparsers.add_parser("summary", help="Print the summary of a coverage data file")
    add_common_arguments(parser)
    parser.add_argument("data", help="Coverage data file")
    parser.add_argument("--json", action="store_true", help="Print the full report as JSON")
    parser.add_argument("--files", action="store_true", help="Also print one line per file")
    add_threshold_arguments(parser)


def add_analyze_parser(subparsers):
    parser = subparsers.add_parser("analyze", help="Print the static classification of a source file")
    add_common_arguments(parser)
    parser.add_argument("source", help="Python source file")


def setup_logging(args):
    level = logging.DEBUG if args.debug else logging.INFO if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def collect_config(args):
    config = load_config(args.config)
    if args.strategy:
        config.set_option("strategy", args.strategy)
    if args.source:
        config.set_option("source_dirs", args.source)
    if args.fail_under is not None:
        config.set_option("fail_under", args.fail_under)
    if args.fail_metric:
        config.set_option("fail_metric", args.fail_metric)
    return config


def print_summary(report, per_file=False):
    for line in summary_lines(report.summary):
        print(line)
    if per_file:
        for report_file in sorted(report.files.values(), key=lambda r: r.path or r.file_id):
            s = report_file.summary
            print("%5d%% %5d%%  %s%s" % (s.line_coverage_percent, s.execution_coverage_percent,
                                         report_file.path or report_file.file_id,
                                         " (provisional)" if report_file.provisional else ""))


def check_threshold(report, threshold, metric):
    """
    Compare a report against a minimum percentage.

    Returns:
        int: 0 when the threshold is met or disabled, THRESHOLD_EXIT_CODE otherwise
    """
    if not threshold or report.meets_threshold(threshold, metric):
        return 0
    print("Error: %s coverage %d%% is below the required %g%%" % (
        metric, getattr(report.summary, "%s_coverage_percent" % metric), threshold), file=sys.stderr)
    return THRESHOLD_EXIT_CODE


def run_script(args):
    config = collect_config(args)
    session = CoverageSession(config)
    finder = install_import_hook(session)
    exit_code = 0
    session.start()
    try:
        session.run_path(args.script, args.args)
    except SystemExit as e:
        exit_code = e.code if isinstance(e.code, int) else (0 if e.code is None else 1)
    except CoverageError:
        raise
    except Exception:
        LOG.exception("%s raised", args.script)
        exit_code = 1
    finally:
        session.stop()
        uninstall_import_hook(finder)
    report = session.report()
    session.store.save(args.output)
    print_summary(report)
    return exit_code or check_threshold(report, config.fail_under, config.fail_metric)


def run_parallel_scripts(args):
    config = collect_config(args)
    result = run_parallel(args.scripts, config, workers=args.jobs, timeout=args.timeout,
                          rss_limit_mb=args.rss_limit_mb)
    session = CoverageSession(config, store=result.store)
    report = session.report()
    result.store.save(args.output)
    print_summary(report)
    if result.failed:
        return 1
    return check_threshold(report, config.fail_under, config.fail_metric)


def run_merge(args):
    store = merge_all(DataStore.load(path) for path in args.inputs)
    reconcile(store)
    store.save(args.output)
    print("merged %d files into %s" % (len(args.inputs), args.output))
    return 0


def run_summary(args):
    store = DataStore.load(args.data)
    reconcile(store)
    report = build_report(store)
    if args.json:
        print(json.dumps(report.as_dict(), indent=2))
    else:
        print_summary(report, per_file=args.files)
    return check_threshold(report, args.fail_under or 0, args.fail_metric or "execution")


def run_analyze(args):
    analysis = StaticAnalyzer(use_cache=False).analyze_file(args.source)
    for number in range(1, analysis.total_lines + 1):
        c = analysis.lines[number]
        print("%5d %s %s" % (number, "*" if c.executable else " ", c.kind.value))
    for info in analysis.functions:
        print("function %s lines %d-%d (%s)" % (info.qualname, info.start_line, info.end_line,
                                               ", ".join(info.parameters)))
    for block in analysis.blocks:
        print("block %d %s lines %d-%d parent %s" % (block.id, block.kind.value, block.start_line,
                                                     block.end_line, block.parent))
    return 0


COMMANDS = {
    "run": run_script,
    "parallel": run_parallel_scripts,
    "merge": run_merge,
    "summary": run_summary,
    "analyze": run_analyze,
}


def main(argv=None):
    """Main entry point for the covflow CLI.

    Parses command-line arguments and dispatches to the sub-command.

    Returns:
        int: Exit code (0 for success, non-zero for error).
    """
    parser = argparse.ArgumentParser(description="covflow - line coverage for Python", prog="covflow")
    parser.add_argument("--version", action="version", version="covflow %s" % __version__)
    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    add_run_parser(subparsers)
    add_parallel_parser(subparsers)
    add_merge_parser(subparsers)
    add_summary_parser(subparsers)
    add_analyze_parser(subparsers)

    args = parser.parse_args(argv)
    setup_logging(args)

    try:
        return COMMANDS[args.command](args)
    except (CoverageError, OSError) as e:
        print("Error: %s" % e, file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
