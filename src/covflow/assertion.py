"""
Assertion hook.

Execution alone does not make a line covered: something has to verify it.
AssertionHook wraps assertion callables so that each passing assertion marks
the line that called it as covered.

**Calling Line:**
The hook walks the stack outward from the assertion and picks the first
frame whose file is tracked by the session. A call spread over several lines
is attributed to the line its statement starts on.
"""

import functools
import logging
import sys

LOG = logging.getLogger(__name__)


class AssertionHook:
    """
    Marks the calling line of passing assertions as covered.

    Attributes:
        session: CoverageSession whose tracker records coverage
    """
    def __init__(self, session):
        self.session = session
        self._installed = []

    def wrap(self, assertion):
        """
        Wrap an assertion callable.

        The wrapper returns whatever the assertion returns and re-raises what
        it raises; only a normal return marks coverage.
        """
        hook = self

        @functools.wraps(assertion)
        def wrapper(*args, **kwargs):
            result = assertion(*args, **kwargs)
            hook.mark_caller(sys._getframe(1))
            return result

        wrapper.__covflow_wrapped__ = assertion
        return wrapper

    def mark_caller(self, frame):
        """
        Mark the nearest tracked calling line as covered.

        Returns:
            tuple: (file_id, line) that was marked, or None when nothing was
            marked (tracking inactive, no tracked caller)
        """
        if not self.session.is_active():
            return None
        store = self.session.store
        while frame is not None:
            file_id = store.id_for(frame.f_code.co_filename)
            if file_id is not None:
                line = frame.f_lineno
                analysis = store.analysis_for(file_id)
                if analysis is not None:
                    line = analysis.continuations.get(line, line)
                    if not analysis.is_executable(line):
                        frame = frame.f_back
                        continue
                self.session.mark_covered(file_id, line)
                return file_id, line
            frame = frame.f_back
        return None

    def install(self, namespace, names):
        """
        Replace assertion callables in a namespace by wrapped ones.

        Args:
            namespace: dict or object (e.g. a module) holding the callables
            names: Names of the callables to wrap
        """
        for name in names:
            if isinstance(namespace, dict):
                original = namespace[name]
            else:
                original = getattr(namespace, name)
            if hasattr(original, "__covflow_wrapped__"):
                continue
            wrapped = self.wrap(original)
            if isinstance(namespace, dict):
                namespace[name] = wrapped
            else:
                setattr(namespace, name, wrapped)
            self._installed.append((namespace, name, original))
        LOG.debug("assertion hook installed on %d callables", len(self._installed))

    def uninstall(self):
        """Restore every callable replaced by install()."""
        while self._installed:
            namespace, name, original = self._installed.pop()
            if isinstance(namespace, dict):
                namespace[name] = original
            else:
                setattr(namespace, name, original)
