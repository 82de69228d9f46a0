"""
covflow - line, function and block coverage for Python.

covflow records which lines of a program were executable, executed and
covered (executed and verified by a passing assertion). Lines are recorded
either with the interpreter's native trace callback or by running rewritten
source that reports each line itself; both give the same counts.

Typical use::

    session = CoverageSession(CoverageConfig(strategy="auto"))
    with session:
        session.run_path("script.py")
    report = session.report()
"""

__version__ = "0.1.0"

from .assertion import AssertionHook
from .config import CoverageConfig, load_config
from .errors import (CoverageError, FileConflictError, InstrumentationError, ParseError, SourceReadError,
                     ValidationError)
from .model import LineKind, LineStatus
from .parallel import run_parallel
from .patchup import build_file_report, build_report, reconcile
from .runtime.store import DataStore, merge, merge_all
from .runtime.tracker import LineTracker
from .analysis.analyzer import StaticAnalyzer
from .instrumentation.loader import install_import_hook, uninstall_import_hook
from .session import CoverageSession

__all__ = [
    "AssertionHook",
    "CoverageConfig",
    "CoverageError",
    "CoverageSession",
    "DataStore",
    "FileConflictError",
    "InstrumentationError",
    "LineKind",
    "LineStatus",
    "LineTracker",
    "ParseError",
    "SourceReadError",
    "StaticAnalyzer",
    "ValidationError",
    "build_file_report",
    "build_report",
    "install_import_hook",
    "load_config",
    "merge",
    "merge_all",
    "reconcile",
    "run_parallel",
    "uninstall_import_hook",
]
