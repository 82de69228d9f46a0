"""
Coverage session.

This module provides CoverageSession, which wires the collaborators of one
coverage run together:
- one DataStore and one LineTracker recording into it
- the StaticAnalyzer and the Instrumenter with its cache
- the native and instrumentation strategies, selected per file

**Per-File Pipeline:**
1. Read the source (SourceReadError propagates to the caller)
2. Register the file and analyse it; a ParseError leaves the file in
   degraded mode
3. Select a strategy from the configuration; an InstrumentationError falls
   back to the native strategy with a warning
4. Compile, and execute with the probes available in the module globals

A failure in one file never stops the session from tracking the others.
"""

import builtins
import contextlib
import logging
import os
import sys

from .analysis.analyzer import StaticAnalyzer, digest_source, read_source
from .config import CoverageConfig
from .discovery import register_unexecuted
from .errors import InstrumentationError, ParseError
from .instrumentation.cache import InstrumentationCache
from .instrumentation.transformer import Instrumenter
from .patchup import build_file_report, build_report, reconcile
from .runtime.probes import Probes
from .runtime.store import DataStore, make_file_id
from .runtime.tracker import LineTracker
from .strategy import InstrumentationStrategy, NativeStrategy, select_strategy

LOG = logging.getLogger(__name__)


class CoverageSession:
    """
    Orchestrates coverage collection for one process.

    Attributes:
        config: CoverageConfig
        store: DataStore holding the records of this session
        tracker: LineTracker recording into the store
        analyzer: StaticAnalyzer
        instrumenter: Instrumenter
        probes: Probes bound to the tracker
        strategies: Strategy name to strategy
        served_by: File id to the name of the strategy that served it
        failures: Path to the reason a file fell back or lost its analysis
    """
    def __init__(self, config=None, store=None):
        self.config = config if config is not None else CoverageConfig()
        self.store = store if store is not None else DataStore.create()
        self.tracker = LineTracker(self.store, self.config)
        self.analyzer = StaticAnalyzer(use_cache=self.config.cache_analysis)
        self.instrumenter = Instrumenter(self.config, InstrumentationCache(self.config.cache_instrumented))
        self.probes = Probes(self.tracker)
        native = NativeStrategy(self)
        instrument = InstrumentationStrategy(self)
        self.strategies = {native.name: native, instrument.name: instrument}
        self.served_by = {}
        self.failures = {}

    # -- lifecycle -------------------------------------------------------

    def start(self):
        return self.tracker.start()

    def stop(self):
        return self.tracker.stop()

    def is_active(self):
        return self.tracker.is_active()

    def reset(self):
        """Discard recorded executions and coverage; analyses are kept."""
        self.tracker.reset()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.is_active():
            self.stop()
        return False

    # -- recording -------------------------------------------------------

    def register_file(self, path, content=None):
        """
        Register a file under its path-derived id.

        A registered file whose content has changed (an edited module
        reloaded, a script run again after a rewrite) starts over: the records
        of the old content are discarded.

        Returns:
            str: File id
        """
        file_id = make_file_id(path)
        known = self.store.files.get(file_id)
        if content is not None and known is not None and _is_stale(known, content):
            LOG.warning("%s changed since it was registered; discarding its coverage records", path)
            self.store.replace_content(file_id, content)
        self.store.register_file(file_id, path, content)
        return file_id

    def track(self, file_id, line_number):
        self.tracker.track(file_id, line_number)

    def mark_covered(self, file_id, line_number):
        self.tracker.mark_covered(file_id, line_number)

    @contextlib.contextmanager
    def verifying(self):
        """
        Mark every line executed inside the block as covered.

        Lines are marked only when the block exits without an exception and
        tracking is active.
        """
        before = self.store.snapshot_counts()
        yield self
        for file_id, counts in self.store.snapshot_counts().items():
            prior = before.get(file_id, {})
            for line, count in counts.items():
                if count > prior.get(line, 0):
                    self.tracker.mark_covered(file_id, line)

    # -- preparing and running code --------------------------------------

    def analyze(self, path, source, file_id):
        """
        Analyse a registered file and attach the result.

        Returns:
            FileAnalysis, or None when the source does not parse
        """
        try:
            analysis = self.analyzer.analyze(source, path=path)
        except ParseError as e:
            LOG.warning("%s; tracking %s without static analysis", e, path)
            self.failures[path] = str(e)
            return None
        self.store.attach_analysis(file_id, analysis)
        return analysis

    def prepare(self, path, source=None):
        """
        Build the code object of a file with coverage collection in place.

        Files excluded by the configuration are compiled unchanged.

        Args:
            path: File path
            source: Source text; read from path when omitted

        Returns:
            code: Module code object

        Raises:
            SourceReadError: If source is omitted and the file cannot be read
            SyntaxError: If the source does not compile
        """
        if source is None:
            source = read_source(path)
        if not self.config.should_track(path):
            return compile(source, path, "exec", dont_inherit=True)

        file_id = self.register_file(path, source)
        analysis = self.analyze(path, source, file_id)
        strategy = self.strategies[select_strategy(self.config, source)]
        try:
            code = strategy.prepare(path, source, file_id, analysis)
        except InstrumentationError as e:
            LOG.warning("%s; falling back to native tracking", e)
            self.failures[path] = str(e)
            strategy = self.strategies["native"]
            code = strategy.prepare(path, source, file_id, analysis)
        self.served_by[file_id] = strategy.name
        LOG.debug("%s served by the %s strategy", path, strategy.name)
        return code

    def namespace(self, path, name="__main__"):
        """Fresh module globals with the probes installed."""
        namespace = {"__name__": name, "__file__": path, "__builtins__": builtins}
        return self.probes.inject(namespace)

    def run_source(self, source, path, namespace=None):
        """
        Execute source text as a module.

        Args:
            source: Source text
            path: File name the source is attributed to
            namespace: Module globals; a fresh ``__main__`` namespace when omitted

        Returns:
            dict: The module globals after execution
        """
        code = self.prepare(path, source)
        if namespace is None:
            namespace = self.namespace(path)
        else:
            self.probes.inject(namespace)
        exec(code, namespace)
        return namespace

    def run_path(self, path, args=()):
        """
        Execute a script as ``__main__`` with the given arguments.

        The script directory is put first on sys.path and sys.argv is set for
        the duration of the run.

        Returns:
            dict: The module globals after execution
        """
        path = os.path.abspath(path)
        source = read_source(path)
        saved_argv = sys.argv[:]
        saved_path = sys.path[:]
        sys.argv = [path] + list(args)
        sys.path.insert(0, os.path.dirname(path))
        try:
            return self.run_source(source, path)
        finally:
            sys.argv = saved_argv
            sys.path[:] = saved_path

    # -- results ---------------------------------------------------------

    def file_id_for(self, path):
        return self.store.id_for(path)

    def report(self, discover=True):
        """
        Reconcile the store and build the coverage report.

        Args:
            discover: Also report never-executed files under source_dirs

        Returns:
            CoverageReport
        """
        if discover and self.config.source_dirs:
            register_unexecuted(self)
        reconcile(self.store)
        return build_report(self.store)

    def file_report(self, path):
        file_id = self.file_id_for(path)
        if file_id is None:
            return None
        reconcile(self.store)
        return build_file_report(self.store, file_id)

    def save(self, path):
        reconcile(self.store)
        self.store.save(path)


def _is_stale(known, content):
    if known.content is not None:
        return known.content != content
    return known.digest is not None and known.digest != digest_source(content)
