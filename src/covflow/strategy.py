"""
Collection strategies.

A strategy turns the source of one file into a code object whose execution
is recorded in the session's DataStore. The rest of the engine does not know
which strategy served a file.

**Strategies:**
- NativeStrategy: compiles the source unchanged and enrolls the file with
  the tracker's sys.settrace callback
- InstrumentationStrategy: compiles rewritten source whose probes report to
  the tracker directly
"""

import abc
import logging

from .errors import InstrumentationError

LOG = logging.getLogger(__name__)


class CollectionStrategy(abc.ABC):
    """
    Interface of a collection strategy.

    Attributes:
        session: CoverageSession the strategy records into
    """
    name = None

    def __init__(self, session):
        self.session = session

    @abc.abstractmethod
    def prepare(self, path, source, file_id, analysis):
        """
        Build the code object of a file.

        Args:
            path: File name the code is compiled with
            source: Source text of the file
            file_id: Store id of the file
            analysis: FileAnalysis, or None when the source did not parse

        Returns:
            code: Module code object

        Raises:
            InstrumentationError: If the strategy cannot serve this file
        """

    def compile(self, text, path):
        return compile(text, path, "exec", dont_inherit=True)

    def __repr__(self):
        return "<%s>" % type(self).__name__


class NativeStrategy(CollectionStrategy):
    name = "native"

    def prepare(self, path, source, file_id, analysis):
        self.session.tracker.watch(file_id, path, analysis)
        return self.compile(source, path)


class InstrumentationStrategy(CollectionStrategy):
    name = "instrument"

    def prepare(self, path, source, file_id, analysis):
        if analysis is None:
            raise InstrumentationError(path, "no static analysis available")
        instrumented = self.session.instrumenter.instrument(source, analysis, file_id)
        try:
            code = self.compile(instrumented.text, path)
        except (SyntaxError, ValueError) as e:
            raise InstrumentationError(path, "rewritten source does not compile: %s" % e) from e
        self.session.tracker.unwatch(path)
        return code


def select_strategy(config, source):
    """
    Name of the strategy configured for a source text.

    Args:
        config: CoverageConfig
        source: Source text

    Returns:
        str: "native" or "instrument"
    """
    if config.strategy == "auto":
        size = len(source.encode("utf-8", "surrogatepass"))
        return "instrument" if size >= config.instrument_threshold else "native"
    return config.strategy
