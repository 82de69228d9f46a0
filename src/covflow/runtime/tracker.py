"""
Runtime line tracker.

This module provides LineTracker, which records executed lines into a
DataStore. Lines reach it in two ways:
- track()/mark_covered(), called directly or by the probes of instrumented code
- the native callback installed with sys.settrace for watched files

**Native Counting:**
The interpreter reports a ``line`` event whenever execution moves to a new
line, which can happen several times for one statement (multi-line
statements, loop back-edges inside comprehensions, decorator application).
To count each execution of a statement once, and to agree exactly with the
instrumentation probes, each event line is first mapped to its statement's
anchor (a continuation line to the statement's first line), and the event
is counted on the anchor only when:
- the anchor is statically executable
- the frame's previous event had a different anchor
- it is not a definition's header seen from the definition's own frame
The interpreter may report a statement on any of its lines first (a
multi-line dict display starts on its first key), so no single line of the
statement can be relied on to appear.
Frames of lambdas, generator expressions and comprehensions belong to the
statement that created them and are not traced.

**Degraded Mode:**
A file watched without an analysis counts every line event, deduplicated
per frame only.
"""

import logging
import os
import sys
import threading

from ..errors import validate_file_id, validate_line

LOG = logging.getLogger(__name__)

# code names of frames whose lines belong to an enclosing statement
UNTRACED_FRAMES = frozenset({"<lambda>", "<genexpr>", "<listcomp>", "<setcomp>", "<dictcomp>"})


class WatchedFile:
    """
    Per-file data the native callback needs.

    Attributes:
        file_id: Store id of the file
        executable: Executable lines, or None in degraded mode
        continuations: Continuation line to anchor line
        def_headers: Def/class anchor to (first, last) header lines
    """
    __slots__ = ("file_id", "executable", "continuations", "def_headers")

    def __init__(self, file_id, analysis=None):
        self.file_id = file_id
        if analysis is None:
            self.executable = None
            self.continuations = {}
            self.def_headers = {}
        else:
            self.executable = analysis.executable_lines
            self.continuations = analysis.continuations
            self.def_headers = analysis.def_headers


class FrameTracer:
    """Local trace function of one frame."""

    __slots__ = ("tracker", "counts", "watched", "header", "last_anchor")

    def __init__(self, tracker, watched, frame):
        self.tracker = tracker
        self.watched = watched
        self.counts = tracker.store.counts_for(watched.file_id)
        code = frame.f_code
        self.header = None
        if code.co_name != "<module>":
            self.header = watched.def_headers.get(code.co_firstlineno)
        self.last_anchor = None

    def __call__(self, frame, event, arg):
        if event != "line" or not self.tracker._active:
            return self
        watched = self.watched
        anchor = watched.continuations.get(frame.f_lineno, frame.f_lineno)
        last = self.last_anchor
        self.last_anchor = anchor
        if anchor == last:
            return self
        if watched.executable is not None:
            if anchor not in watched.executable:
                return self
            header = self.header
            if header is not None and header[0] <= anchor <= header[1]:
                return self
        counts = self.counts
        counts[anchor] = counts.get(anchor, 0) + 1
        return self


class LineTracker:
    """
    Records executed and covered lines into a DataStore.

    Attributes:
        store: DataStore receiving the records
        config: CoverageConfig
    """
    def __init__(self, store, config=None):
        self.store = store
        self.config = config
        self._active = False
        self._watched = {}
        self._previous_trace = None
        self._previous_thread_trace = None

    def is_active(self):
        return self._active

    def start(self):
        """
        Start tracking.

        Returns:
            bool: False (with a warning) if tracking was already active
        """
        if self._active:
            LOG.warning("coverage tracking is already active")
            return False
        self._active = True
        self._previous_trace = sys.gettrace()
        sys.settrace(self._trace_call)
        if self.config is not None and self.config.track_threads:
            self._previous_thread_trace = threading.gettrace()
            threading.settrace(self._trace_call)
        LOG.debug("coverage tracking started, %d files watched", len(self._watched))
        return True

    def stop(self):
        """
        Stop tracking. Recorded data is kept.

        Returns:
            bool: False (with a warning) if tracking was not active
        """
        if not self._active:
            LOG.warning("coverage tracking is not active")
            return False
        self._active = False
        sys.settrace(self._previous_trace)
        if self.config is not None and self.config.track_threads:
            threading.settrace(self._previous_thread_trace)
        self._previous_trace = self._previous_thread_trace = None
        LOG.debug("coverage tracking stopped")
        return True

    def reset(self):
        """Discard all execution and coverage records."""
        self.store.clear()
        LOG.debug("coverage data reset")

    def register_file(self, file_id, path, content=None):
        return self.store.register_file(file_id, path, content)

    def watch(self, file_id, path, analysis=None):
        """
        Enroll a file for the native callback.

        Args:
            file_id: Store id of the file
            path: Path the file's code objects are compiled with
            analysis: FileAnalysis, or None for degraded mode
        """
        self.store.register_file(file_id, path)
        if analysis is not None:
            self.store.attach_analysis(file_id, analysis)
        watched = WatchedFile(file_id, analysis)
        self._watched[path] = watched
        self._watched[os.path.abspath(path)] = watched

    def unwatch(self, path):
        self._watched.pop(path, None)
        self._watched.pop(os.path.abspath(path), None)

    def is_watched(self, path):
        return path in self._watched

    def track(self, file_id, line_number):
        """
        Count one execution of a line.

        A no-op when tracking is inactive or an argument is malformed.
        """
        if not self._active or type(line_number) is not int or line_number < 1:
            return
        if type(file_id) is not str or not file_id:
            return
        counts = self.store.counts_for(file_id)
        counts[line_number] = counts.get(line_number, 0) + 1

    def mark_covered(self, file_id, line_number):
        """
        Mark a line covered, counting it executed if it was not.

        A no-op when tracking is inactive.

        Raises:
            ValidationError: If an argument is malformed while tracking is active
        """
        if not self._active:
            return
        validate_file_id(file_id)
        validate_line(line_number)
        self.store.add_coverage(file_id, line_number)

    def _trace_call(self, frame, event, arg):
        if event != "call":
            return None
        watched = self._watched.get(frame.f_code.co_filename)
        if watched is None or frame.f_code.co_name in UNTRACED_FRAMES:
            return None
        local = frame.f_trace
        if isinstance(local, FrameTracer) and local.tracker is self:
            # resumed generator or coroutine
            return local
        return FrameTracer(self, watched, frame)
