"""
Error handling for covflow coverage collection.

This module defines the exception classes raised by the coverage engine.
Every error derives from CoverageError so that callers can isolate a failing
file without catching unrelated exceptions.

**Error Categories:**
- ValidationError: wrong-typed or missing identifiers, raised before any
  mutation of the data store
- FileConflictError: an id or path already bound to something else
- ParseError: the source could not be tokenized or parsed; coverage continues
  in degraded mode
- SourceReadError: the source file could not be read
- InstrumentationError: the source could not be rewritten; the session falls
  back to the native tracker for that file
"""


class CoverageError(Exception):
    """Base class for all covflow errors."""
    pass


class ValidationError(CoverageError, ValueError):
    """
    Exception raised for malformed arguments.

    Raised when an identifier has the wrong type or is missing. The data
    store is left untouched when this error is raised.
    """
    pass


class FileConflictError(ValidationError):
    """
    Exception raised when the file map would stop being a bijection.

    Attributes:
        file_id: Identifier involved in the conflict
        paths: The two paths competing for the identifier (or the path
            competing for two identifiers)
    """
    def __init__(self, message, file_id=None, paths=()):
        super().__init__(message)
        self.file_id = file_id
        self.paths = tuple(paths)


class ParseError(CoverageError):
    """
    Exception raised when source text cannot be parsed.

    Attributes:
        path: File the source came from
        lineno: Line of the syntax error, if known
        detail: Message produced by the parser
    """
    def __init__(self, path, lineno=None, detail=""):
        location = path if lineno is None else "%s:%d" % (path, lineno)
        super().__init__("cannot parse %s: %s" % (location, detail))
        self.path = path
        self.lineno = lineno
        self.detail = detail


class SourceReadError(CoverageError, OSError):
    """Exception raised when a source file cannot be read."""

    def __init__(self, path, reason=""):
        super().__init__("cannot read %s: %s" % (path, reason))
        self.path = path
        self.reason = reason


class InstrumentationError(CoverageError):
    """
    Exception raised when a file cannot be instrumented.

    This error is never fatal: the session catches it and tracks the file
    with the native tracker instead.
    """
    def __init__(self, path, reason):
        super().__init__("cannot instrument %s: %s" % (path, reason))
        self.path = path
        self.reason = reason


class UnsupportedConstruct(InstrumentationError):
    """The file contains a statement layout probes cannot be placed in."""

    def __init__(self, path, lineno, reason):
        super().__init__(path, "line %d: %s" % (lineno, reason))
        self.lineno = lineno


class RewriteError(InstrumentationError):
    """The rewritten source failed to re-parse or changed its line count."""
    pass


def validate_file_id(file_id):
    """
    Check a file identifier.

    Args:
        file_id: Value to check

    Raises:
        ValidationError: If file_id is not a non-empty string
    """
    if not isinstance(file_id, str) or not file_id:
        raise ValidationError("file_id must be a non-empty string, got %r" % (file_id,))


def validate_line(line_number):
    """
    Check a line number.

    Args:
        line_number: Value to check

    Raises:
        ValidationError: If line_number is not a positive int
    """
    if type(line_number) is not int or line_number < 1:
        raise ValidationError("line_number must be a positive int, got %r" % (line_number,))


def validate_path(path):
    """Check a file path, raising ValidationError if it is not a non-empty string."""
    if not isinstance(path, str) or not path:
        raise ValidationError("path must be a non-empty string, got %r" % (path,))
