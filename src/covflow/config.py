"""
Coverage configuration.

This module provides CoverageConfig, the set of options controlling how a
coverage session collects data, and helpers to build one from a mapping or
from the ``[tool.covflow]`` table of a ``pyproject.toml`` file.

**Options:**
- strategy: "native", "instrument" or "auto" (instrument files at or above
  instrument_threshold bytes, track the rest natively)
- instrument_threshold: size in bytes from which "auto" instruments a file
- max_instrument_size: hard limit; larger files are never instrumented
- cache_instrumented / cache_analysis: reuse rewritten source and analyses
  for unchanged content
- include / exclude: fnmatch patterns selecting the tracked files
- source_dirs: directories scanned for files that never executed
- track_threads: also install the native callback for new threads
- track_libraries: allow tracking the standard library and installed packages
- track_tests / test_patterns: test files (matched by test_patterns) are
  skipped unless track_tests is set
- fail_under / fail_metric: minimum percentage of a coverage metric the
  command line requires; 0 disables the check
"""

import fnmatch
import logging
import os
import sysconfig
import tomllib
from dataclasses import dataclass, field, fields, replace

from .errors import ValidationError
from .model import COVERAGE_METRICS

LOG = logging.getLogger(__name__)

STRATEGIES = ("native", "instrument", "auto")

TEST_PATTERNS = ("test_*.py", "*_test.py", "conftest.py")


def _library_dirs():
    paths = sysconfig.get_paths()
    dirs = {paths[k] for k in ("stdlib", "platstdlib", "purelib", "platlib") if k in paths}
    dirs.add(os.path.dirname(os.path.abspath(__file__)))
    return tuple(sorted(os.path.join(os.path.normcase(os.path.abspath(d)), "") for d in dirs))


# the standard library, installed packages and covflow itself
LIBRARY_DIRS = _library_dirs()


@dataclass
class CoverageConfig:
    """
    Options for a coverage session.

    Attributes:
        strategy: Collection strategy name
        instrument_threshold: Minimum size (bytes) instrumented under "auto"
        max_instrument_size: Files above this size fall back to native tracking
        cache_instrumented: Whether rewritten source is cached
        cache_analysis: Whether static analyses are cached
        include: Patterns a file path must match to be tracked
        exclude: Patterns excluding a file path from tracking
        source_dirs: Directories scanned for never-executed files
        track_threads: Whether the native callback follows new threads
        track_libraries: Whether files of the standard library and of
            installed packages can be tracked
        track_tests: Whether files matching test_patterns can be tracked
        test_patterns: Base name patterns identifying test files
        fail_under: Minimum percentage of fail_metric, 0 to disable
        fail_metric: Metric checked against fail_under
    """
    strategy: str = "native"
    instrument_threshold: int = 64 * 1024
    max_instrument_size: int = 1000000
    cache_instrumented: bool = True
    cache_analysis: bool = True
    include: list = field(default_factory=lambda: ["*.py"])
    exclude: list = field(default_factory=list)
    source_dirs: list = field(default_factory=list)
    track_threads: bool = False
    track_libraries: bool = False
    track_tests: bool = False
    test_patterns: list = field(default_factory=lambda: list(TEST_PATTERNS))
    fail_under: float = 0
    fail_metric: str = "execution"

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Check option values.

        Raises:
            ValidationError: If an option has an unusable value
        """
        if self.strategy not in STRATEGIES:
            raise ValidationError("strategy must be one of %s, got %r" % (", ".join(STRATEGIES), self.strategy))
        for name in ("instrument_threshold", "max_instrument_size"):
            value = getattr(self, name)
            if type(value) is not int or value < 0:
                raise ValidationError("%s must be a non-negative int, got %r" % (name, value))
        if type(self.fail_under) not in (int, float) or not 0 <= self.fail_under <= 100:
            raise ValidationError("fail_under must be a percentage between 0 and 100, got %r" % (self.fail_under,))
        if self.fail_metric not in COVERAGE_METRICS:
            raise ValidationError("fail_metric must be one of %s, got %r"
                                  % (", ".join(COVERAGE_METRICS), self.fail_metric))
        for name in ("include", "exclude", "source_dirs", "test_patterns"):
            value = getattr(self, name)
            if isinstance(value, str) or not all(isinstance(v, str) for v in value):
                raise ValidationError("%s must be a list of strings, got %r" % (name, value))

    def set_option(self, name, value):
        """
        Set a single option by name.

        Args:
            name: Option name (dashes are accepted in place of underscores)
            value: New value

        Raises:
            ValidationError: If the option is unknown or the value is invalid
        """
        name = name.replace("-", "_")
        if name not in _option_names():
            raise ValidationError("unknown coverage option %r" % name)
        previous = getattr(self, name)
        setattr(self, name, value)
        try:
            self.validate()
        except ValidationError:
            setattr(self, name, previous)
            raise
        LOG.debug("coverage option %s = %r", name, value)

    def copy(self, **changes):
        return replace(self, **changes)

    def should_track(self, path):
        """
        Decide whether a file path is tracked.

        A path is tracked when it matches one include pattern and no exclude
        pattern. Patterns are matched against the normalized absolute path
        and against the base name.

        Args:
            path: File path

        Returns:
            True if the file should be tracked
        """
        if not path or path.startswith("<"):
            return False
        full = os.path.normcase(os.path.abspath(path))
        if not self.track_libraries and full.startswith(LIBRARY_DIRS):
            return False
        base = os.path.basename(full)
        if not self.track_tests and any(fnmatch.fnmatch(base, p) for p in self.test_patterns):
            return False

        def matches(patterns):
            return any(fnmatch.fnmatch(full, p) or fnmatch.fnmatch(base, p) for p in patterns)

        return matches(self.include) and not matches(self.exclude)

    def as_dict(self):
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_mapping(cls, mapping):
        """
        Build a config from a mapping of option names to values.

        Raises:
            ValidationError: If the mapping names an unknown option
        """
        config = cls()
        for key, value in mapping.items():
            config.set_option(key, value)
        return config


def _option_names():
    return {f.name for f in fields(CoverageConfig)}


def load_config(path):
    """
    Load configuration from a ``pyproject.toml`` file.

    Reads the ``[tool.covflow]`` table. A missing file or table yields the
    default configuration.

    Args:
        path: Path to pyproject.toml

    Returns:
        CoverageConfig

    Raises:
        ValidationError: If the table holds invalid options or the TOML is
            malformed
    """
    if not os.path.isfile(path):
        LOG.debug("no configuration file at %s, using defaults", path)
        return CoverageConfig()
    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValidationError("invalid TOML in %s: %s" % (path, e)) from e
    table = data.get("tool", {}).get("covflow", {})
    LOG.debug("loaded %d coverage options from %s", len(table), path)
    return CoverageConfig.from_mapping(table)
