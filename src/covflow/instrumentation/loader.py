"""
Import hook for tracked modules.

install_import_hook() puts a meta path finder in front of sys.meta_path.
For source modules whose path the session tracks, the finder hands out a
loader that builds the module code through the session, so the module is
analysed, registered and either watched natively or instrumented.

The loader never reads or writes bytecode caches: rewritten code must not
end up in a ``.pyc`` that a later run without coverage would load.
"""

import importlib.abc
import importlib.machinery
import logging
import sys

from ..analysis.analyzer import read_source

LOG = logging.getLogger(__name__)


class CoverageLoader(importlib.machinery.SourceFileLoader):
    """Source loader preparing module code through a CoverageSession."""

    def __init__(self, fullname, path, session):
        super().__init__(fullname, path)
        self.session = session

    def get_code(self, fullname):
        return self.session.prepare(self.path, read_source(self.path))

    def exec_module(self, module):
        self.session.probes.inject(module.__dict__)
        super().exec_module(module)


class CoverageFinder(importlib.abc.MetaPathFinder):
    """
    Meta path finder routing tracked source modules to CoverageLoader.

    Attributes:
        session: CoverageSession the modules are recorded into
    """
    def __init__(self, session):
        self.session = session

    def find_spec(self, fullname, path, target=None):
        spec = importlib.machinery.PathFinder.find_spec(fullname, path, target)
        if spec is None or spec.origin is None:
            return None
        if type(spec.loader) is not importlib.machinery.SourceFileLoader:
            return None
        if not self.session.config.should_track(spec.origin):
            return None
        LOG.debug("importing %s from %s with coverage", fullname, spec.origin)
        spec.loader = CoverageLoader(fullname, spec.origin, self.session)
        return spec

    def invalidate_caches(self):
        importlib.machinery.PathFinder.invalidate_caches()


def install_import_hook(session):
    """
    Route imports of tracked modules through a session.

    Returns:
        CoverageFinder: The installed finder
    """
    finder = CoverageFinder(session)
    sys.meta_path.insert(0, finder)
    return finder


def uninstall_import_hook(finder=None):
    """Remove one finder, or every CoverageFinder when finder is None."""
    sys.meta_path[:] = [
        f for f in sys.meta_path
        if not (f is finder or (finder is None and isinstance(f, CoverageFinder)))
    ]
