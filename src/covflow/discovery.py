"""Discovery of source files that never executed.

Files under the configured ``source_dirs`` that match the include patterns
and none of the exclude patterns are registered and analysed, so that files
no test imported still show up in reports with 0% coverage.
"""

import logging
import os

from .analysis.analyzer import read_source
from .errors import ParseError, SourceReadError
from .runtime.store import make_file_id

LOG = logging.getLogger(__name__)

SKIPPED_DIRS = frozenset({"__pycache__", ".git", ".hg", ".svn", ".tox", ".venv", "node_modules"})


def discover_sources(config):
    """
    Yield tracked source files under the configured source directories.

    Args:
        config: CoverageConfig

    Yields:
        str: Absolute file paths, sorted within each directory
    """
    for root in config.source_dirs:
        if not os.path.isdir(root):
            LOG.warning("source directory %s does not exist", root)
            continue
        for dirpath, dirnames, filenames in os.walk(os.path.abspath(root)):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS and not d.startswith("."))
            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                if config.should_track(path):
                    yield path


def register_unexecuted(session):
    """
    Register and analyse discovered files the session has not seen.

    A file that cannot be read is skipped; one that cannot be parsed is
    registered without an analysis.

    Args:
        session: CoverageSession

    Returns:
        list: Ids of the newly registered files
    """
    store = session.store
    added = []
    for path in discover_sources(session.config):
        if store.id_for(path) is not None:
            continue
        try:
            source = read_source(path)
        except SourceReadError as e:
            LOG.warning("skipping %s", e)
            continue
        file_id = make_file_id(path)
        store.register_file(file_id, path, source)
        try:
            store.attach_analysis(file_id, session.analyzer.analyze(source, path=path))
        except ParseError as e:
            LOG.warning("%s; reporting %s without static analysis", e, path)
        added.append(file_id)
    if added:
        LOG.info("found %d source files that never executed", len(added))
    return added
