"""
Coverage data store.

This module provides DataStore, the canonical holder of execution counts,
coverage flags and the file map for one tracking session, together with the
merge operation that combines stores produced by independent workers.

**Records:**
- execution: file id -> {line: count}, sparse, one dict per file created on
  first touch
- coverage: file id -> set of covered lines
- files: file id -> SourceFile; the map is a bijection between ids and
  normalized paths
- analyses: file id -> FileAnalysis attached after static analysis

**Merge Semantics:**
Counts are summed, coverage is OR-ed and file maps are unioned. An id bound
to two paths, a path bound to two ids, or one file analysed from two different
contents is a FileConflictError. Merge never mutates its inputs, and is
commutative and associative.
"""

import hashlib
import json
import logging
import os

from ..analysis.tokens import source_lines
from ..errors import FileConflictError, ValidationError, validate_file_id, validate_line, validate_path
from ..model import FileAnalysis, LineStatus, SourceFile

LOG = logging.getLogger(__name__)

FORMAT_VERSION = 1


def normalize_path(path):
    return os.path.normcase(os.path.abspath(path))


def make_file_id(path):
    """
    Derive a stable file id from a path.

    Args:
        path: File path; relative paths are resolved against the working directory

    Returns:
        str: 16 hex characters of the sha1 of the normalized path
    """
    validate_path(path)
    return hashlib.sha1(normalize_path(path).encode("utf-8", "surrogatepass")).hexdigest()[:16]


class DataStore:
    """
    Execution and coverage records of one session.

    Attributes:
        files: File id to SourceFile
        analyses: File id to FileAnalysis
    """
    def __init__(self):
        self.files = {}
        self.analyses = {}
        self._by_path = {}
        self._execution = {}
        self._coverage = {}

    @classmethod
    def create(cls):
        return cls()

    # -- file map --------------------------------------------------------

    def register_file(self, file_id, path, content=None):
        """
        Register a file under an id.

        Registering the same id and path again is idempotent and returns the
        existing record, filling in the content if it was unknown.

        Args:
            file_id: Stable identifier
            path: File path
            content: Optional source text

        Returns:
            SourceFile

        Raises:
            ValidationError: If the id or path is malformed
            FileConflictError: If the id or the path is already bound elsewhere
        """
        validate_file_id(file_id)
        validate_path(path)
        key = normalize_path(path)

        existing = self.files.get(file_id)
        if existing is not None and normalize_path(existing.path) != key:
            raise FileConflictError(
                "file id %s already registered for %s, not %s" % (file_id, existing.path, path),
                file_id=file_id, paths=(existing.path, path))
        bound = self._by_path.get(key)
        if bound is not None and bound != file_id:
            raise FileConflictError(
                "path %s already registered under id %s, not %s" % (path, bound, file_id),
                file_id=file_id, paths=(path,))

        if existing is None:
            existing = SourceFile(file_id, path)
            self.files[file_id] = existing
            self._by_path[key] = file_id
        if content is not None and existing.content is None:
            existing.content = content
            existing.total_line_count = existing.total_line_count or len(source_lines(content))
        return existing

    def path_for(self, file_id):
        source = self.files.get(file_id)
        return source.path if source is not None else None

    def id_for(self, path):
        if not isinstance(path, str) or not path:
            return None
        return self._by_path.get(normalize_path(path))

    def attach_analysis(self, file_id, analysis):
        """
        Attach a static analysis to a registered file.

        Raises:
            ValidationError: If the file is not registered
            FileConflictError: If an analysis of different content is attached
        """
        validate_file_id(file_id)
        source = self.files.get(file_id)
        if source is None:
            raise ValidationError("file id %s is not registered" % file_id)
        if source.digest is not None and source.digest != analysis.digest:
            raise FileConflictError(
                "file %s analysed from two different contents" % source.path,
                file_id=file_id, paths=(source.path,))
        source.digest = analysis.digest
        source.total_line_count = analysis.total_lines
        self.analyses[file_id] = analysis

    def replace_content(self, file_id, content):
        """
        Rebind a registered file to new source text.

        The execution and coverage records and the analysis of the file
        describe the old text and are discarded.

        Raises:
            ValidationError: If the file is not registered
        """
        source = self.files.get(file_id)
        if source is None:
            raise ValidationError("file id %s is not registered" % file_id)
        counts = self._execution.get(file_id)
        if counts is not None:
            counts.clear()
        self._coverage.pop(file_id, None)
        self.analyses.pop(file_id, None)
        source.content = content
        source.digest = None
        source.total_line_count = len(source_lines(content))

    def analysis_for(self, file_id):
        return self.analyses.get(file_id)

    def file_ids(self):
        """Ids of every file with a registration or any recorded signal."""
        return sorted(set(self.files) | set(_nonempty(self._execution)) | set(_nonempty(self._coverage)))

    # -- records ---------------------------------------------------------

    def counts_for(self, file_id):
        """Mutable line -> count dict of a file, created on first use."""
        counts = self._execution.get(file_id)
        if counts is None:
            counts = self._execution[file_id] = {}
        return counts

    def add_execution(self, file_id, line_number, count=1):
        """
        Add to the execution count of a line.

        Raises:
            ValidationError: If an identifier or the count is malformed
        """
        validate_file_id(file_id)
        validate_line(line_number)
        if type(count) is not int or count < 0:
            raise ValidationError("count must be a non-negative int, got %r" % (count,))
        if count:
            counts = self.counts_for(file_id)
            counts[line_number] = counts.get(line_number, 0) + count

    def add_coverage(self, file_id, line_number):
        """
        Mark a line covered. The execution count is raised to 1 if it was 0.

        Raises:
            ValidationError: If an identifier is malformed
        """
        validate_file_id(file_id)
        validate_line(line_number)
        counts = self.counts_for(file_id)
        if not counts.get(line_number):
            counts[line_number] = 1
        covered = self._coverage.get(file_id)
        if covered is None:
            covered = self._coverage[file_id] = set()
        covered.add(line_number)

    def get_execution_count(self, file_id, line_number):
        return self._execution.get(file_id, {}).get(line_number, 0)

    def is_covered(self, file_id, line_number):
        return line_number in self._coverage.get(file_id, ())

    def get_line_status(self, file_id, line_number):
        if self.is_covered(file_id, line_number):
            return LineStatus.COVERED
        if self.get_execution_count(file_id, line_number) > 0:
            return LineStatus.EXECUTED
        return LineStatus.NOT_COVERED

    def snapshot_counts(self):
        """Copy of the execution records, file id -> {line: count}."""
        return {file_id: dict(counts) for file_id, counts in self._execution.items()}

    def executed_lines(self, file_id):
        return {n for n, c in self._execution.get(file_id, {}).items() if c > 0}

    def covered_lines(self, file_id):
        return set(self._coverage.get(file_id, ()))

    def strip_line(self, file_id, line_number):
        """Remove all signal of a line; returns True if there was any."""
        had = False
        counts = self._execution.get(file_id)
        if counts is not None and line_number in counts:
            del counts[line_number]
            had = True
        covered = self._coverage.get(file_id)
        if covered is not None and line_number in covered:
            covered.discard(line_number)
            had = True
        return had

    def clear(self):
        """Discard execution and coverage records; the file map is kept."""
        # emptied in place, running frame tracers hold these dicts
        for counts in self._execution.values():
            counts.clear()
        self._coverage.clear()

    def reset(self):
        """Discard everything, including the file map and analyses."""
        self.clear()
        self.files.clear()
        self.analyses.clear()
        self._by_path.clear()

    # -- derived ---------------------------------------------------------

    def get_file_data(self, file_id):
        """Per-line report of one file; see patchup.build_file_report."""
        from ..patchup import build_file_report
        return build_file_report(self, file_id)

    def calculate_summary(self, file_id=None):
        """
        Summary of one file, or the global summary when file_id is None.

        Returns:
            FileCoverageSummary or GlobalSummary
        """
        from ..patchup import build_file_report, build_report
        if file_id is None:
            return build_report(self).summary
        return build_file_report(self, file_id).summary

    # -- merge -----------------------------------------------------------

    def copy(self):
        return merge_all([self])

    def update(self, other):
        """
        Merge another store into this one in place.

        The file maps are checked before anything is changed, so a conflict
        leaves this store untouched.

        Raises:
            FileConflictError: If the file maps disagree
        """
        for file_id, source in other.files.items():
            mine = self.files.get(file_id)
            if mine is not None and normalize_path(mine.path) != normalize_path(source.path):
                raise FileConflictError(
                    "file id %s maps to %s and %s" % (file_id, mine.path, source.path),
                    file_id=file_id, paths=(mine.path, source.path))
            bound = self._by_path.get(normalize_path(source.path))
            if bound is not None and bound != file_id:
                raise FileConflictError(
                    "path %s maps to ids %s and %s" % (source.path, bound, file_id),
                    file_id=file_id, paths=(source.path,))
            if mine is not None and mine.digest and source.digest and mine.digest != source.digest:
                raise FileConflictError(
                    "file %s was recorded from two different contents" % source.path,
                    file_id=file_id, paths=(source.path,))

        for file_id, source in other.files.items():
            mine = self.register_file(file_id, source.path, source.content)
            mine.digest = mine.digest or source.digest
            mine.total_line_count = mine.total_line_count or source.total_line_count
        for file_id, analysis in other.analyses.items():
            self.analyses.setdefault(file_id, analysis)
        for file_id, counts in other._execution.items():
            mine = self.counts_for(file_id)
            for line, count in counts.items():
                mine[line] = mine.get(line, 0) + count
        for file_id, covered in other._coverage.items():
            self._coverage.setdefault(file_id, set()).update(covered)
        return self

    # -- serialization ---------------------------------------------------

    def to_dict(self):
        return {
            "version": FORMAT_VERSION,
            "files": {
                file_id: {"path": s.path, "digest": s.digest, "total_lines": s.total_line_count}
                for file_id, s in sorted(self.files.items())
            },
            "execution": {
                file_id: {str(line): count for line, count in sorted(counts.items())}
                for file_id, counts in sorted(self._execution.items()) if counts
            },
            "coverage": {
                file_id: sorted(covered)
                for file_id, covered in sorted(self._coverage.items()) if covered
            },
            "analyses": {file_id: a.to_dict() for file_id, a in sorted(self.analyses.items())},
        }

    @classmethod
    def from_dict(cls, data):
        """
        Rebuild a store from to_dict output.

        Raises:
            ValidationError: If the data is malformed or of another format version
        """
        if not isinstance(data, dict) or data.get("version") != FORMAT_VERSION:
            raise ValidationError("unsupported coverage data format")
        store = cls()
        try:
            for file_id, entry in data.get("files", {}).items():
                source = store.register_file(file_id, entry["path"])
                source.digest = entry.get("digest")
                source.total_line_count = entry.get("total_lines") or 0
            for file_id, counts in data.get("execution", {}).items():
                for line, count in counts.items():
                    store.add_execution(file_id, int(line), count)
            for file_id, lines in data.get("coverage", {}).items():
                for line in lines:
                    store.add_coverage(file_id, line)
            for file_id, entry in data.get("analyses", {}).items():
                store.analyses[file_id] = FileAnalysis.from_dict(entry)
        except ValidationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("malformed coverage data: %s" % e) from e
        return store

    def save(self, path):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=1)
        LOG.info("wrote coverage data for %d files to %s", len(self.file_ids()), path)

    @classmethod
    def load(cls, path):
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValidationError("%s is not valid coverage data: %s" % (path, e)) from e
        return cls.from_dict(data)

    def __eq__(self, other):
        if not isinstance(other, DataStore):
            return NotImplemented
        return (
            {k: normalize_path(v.path) for k, v in self.files.items()}
            == {k: normalize_path(v.path) for k, v in other.files.items()}
            and _nonempty(self._execution) == _nonempty(other._execution)
            and _nonempty(self._coverage) == _nonempty(other._coverage)
        )

    __hash__ = None

    def __repr__(self):
        return "<DataStore files=%d executed=%d>" % (
            len(self.file_ids()), sum(len(c) for c in self._execution.values()))


def merge(a, b):
    """
    Combine two stores into a new one.

    Returns:
        DataStore: A fresh store; a and b are not modified

    Raises:
        FileConflictError: If the file maps of a and b disagree
    """
    return DataStore().update(a).update(b)


def merge_all(stores):
    """Combine any number of stores into a new one, in order."""
    result = DataStore()
    for store in stores:
        result.update(store)
    return result


def _nonempty(records):
    return {k: v for k, v in records.items() if v}