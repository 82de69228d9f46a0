"""
Runtime collection.

- store: DataStore and merge
- tracker: LineTracker and the sys.settrace callback
- probes: helpers called by instrumented code
"""

from .store import DataStore, make_file_id, merge, merge_all
from .tracker import LineTracker

__all__ = ["DataStore", "LineTracker", "make_file_id", "merge", "merge_all"]
