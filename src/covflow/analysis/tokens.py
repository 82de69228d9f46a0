"""Token-stream scanning for comment and string spans.

The static analyzer needs to know which lines are comments and which lines
sit inside multi-line string literals. Both come straight from the
``tokenize`` token stream, which delimits them exactly, so text that merely
looks like code inside a string or comment is never mistaken for a statement.
"""

import io
import re
import tokenize
from dataclasses import dataclass
from typing import FrozenSet, Tuple

from ..errors import ParseError

_NEWLINE = re.compile(r"\r\n|\r|\n")

_TRIVIA = frozenset({
    tokenize.COMMENT,
    tokenize.NL,
    tokenize.NEWLINE,
    tokenize.INDENT,
    tokenize.DEDENT,
    tokenize.ENCODING,
    tokenize.ENDMARKER,
})

# f-strings (3.12+) and t-strings (3.14+) arrive as start/middle/end tokens
_STRING_STARTS = frozenset(
    t for t in (getattr(tokenize, "FSTRING_START", None), getattr(tokenize, "TSTRING_START", None)) if t is not None
)
_STRING_ENDS = frozenset(
    t for t in (getattr(tokenize, "FSTRING_END", None), getattr(tokenize, "TSTRING_END", None)) if t is not None
)


def source_lines(source):
    """Split source text into lines the way the interpreter numbers them.

    Only ``\\r\\n``, ``\\r`` and ``\\n`` end a line; ``str.splitlines`` would
    also split on form feeds and other separators that can appear inside
    strings and comments.

    Args:
        source: Source text

    Returns:
        list: Lines without their terminators
    """
    lines = _NEWLINE.split(source)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


@dataclass(frozen=True)
class TokenSpans:
    """Lexical facts about a source file.

    Attributes:
        code_lines: Lines on which at least one non-comment token starts
        comment_lines: Lines holding a comment token
        string_spans: (first, last) line pairs of string literals spanning
            more than one line
    """
    code_lines: FrozenSet[int]
    comment_lines: FrozenSet[int]
    string_spans: Tuple[Tuple[int, int], ...]

    def string_interior(self):
        """Lines strictly after the opening line of each multi-line string."""
        interior = set()
        for first, last in self.string_spans:
            interior.update(range(first + 1, last + 1))
        return interior


def scan(source, path="<string>"):
    """Scan the token stream of a source text.

    Args:
        source: Source text
        path: File name used in error messages

    Returns:
        TokenSpans

    Raises:
        ParseError: If the text cannot be tokenized
    """
    code_lines = set()
    comment_lines = set()
    string_spans = []
    open_strings = []

    readline = io.StringIO(source).readline
    try:
        for tok in tokenize.generate_tokens(readline):
            kind = tok.type
            start_row = tok.start[0]
            end_row = tok.end[0]
            if kind == tokenize.COMMENT:
                comment_lines.add(start_row)
                continue
            if kind in _TRIVIA:
                continue
            code_lines.add(start_row)
            if kind == tokenize.STRING and end_row > start_row:
                string_spans.append((start_row, end_row))
            elif kind in _STRING_STARTS:
                open_strings.append(start_row)
            elif kind in _STRING_ENDS and open_strings:
                first = open_strings.pop()
                if end_row > first:
                    string_spans.append((first, end_row))
    except (tokenize.TokenError, SyntaxError) as e:
        lineno = getattr(e, "lineno", None)
        if lineno is None and len(e.args) > 1 and isinstance(e.args[1], tuple):
            lineno = e.args[1][0]
        raise ParseError(path, lineno, str(e.args[0]) if e.args else str(e)) from e

    return TokenSpans(frozenset(code_lines), frozenset(comment_lines), tuple(sorted(string_spans)))
