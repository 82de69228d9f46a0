"""Content-addressed cache of instrumented source.

Rewritten text depends only on the file id the probes report to and on the
original content, so entries are keyed by ``(file_id, digest)``. Changed
content gets a new digest and is rewritten again.
"""

import logging

LOG = logging.getLogger(__name__)


class InstrumentationCache:
    """In-memory instrumentation cache.

    Attributes:
        enabled: When False, get() always misses and put() stores nothing
        hits: Number of lookups served from the cache
        misses: Number of lookups that were not
    """
    def __init__(self, enabled=True):
        self.enabled = enabled
        self.hits = 0
        self.misses = 0
        self._entries = {}

    def __len__(self):
        return len(self._entries)

    def get(self, file_id, digest):
        if not self.enabled:
            return None
        entry = self._entries.get((file_id, digest))
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, instrumented):
        if self.enabled:
            self._entries[(instrumented.file_id, instrumented.digest)] = instrumented

    def invalidate(self, file_id):
        """Drop every entry of one file."""
        for key in [k for k in self._entries if k[0] == file_id]:
            del self._entries[key]

    def clear(self):
        LOG.debug("clearing %d instrumented sources", len(self._entries))
        self._entries.clear()
        self.hits = self.misses = 0
