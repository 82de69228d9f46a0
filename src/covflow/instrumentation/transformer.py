"""
Instrumentation Transformer.

This module rewrites Python source so that each executable line reports
itself to the runtime probes, without adding or removing a line break. Line
numbers of the rewritten code are the line numbers of the original file.

**Probe Placement:**
- Simple statements: ``__covflow_hit__(fid, L); `` before the statement
- ``if``/``elif``/``while``: the test becomes ``__covflow_hit__(fid, L) and (test)``
- ``for``/``async for``: the iterable is wrapped in ``__covflow_iter__`` /
  ``__covflow_aiter__``
- ``with``/``async with``: the first context manager is wrapped in
  ``__covflow_with__`` / ``__covflow_awith__``
- typed ``except`` clauses and first decorators: the expression is wrapped
  in ``__covflow_value__``
- undecorated ``def``/``class``: the probe is hosted at the end of the
  preceding simple statement, on a blank or comment line near the
  definition, or before the following simple statement
- ``from __future__`` imports: their probes follow the last future import

Only one probe reports each line, so statements sharing a line count once.

**Refused Layouts:**
Files that cannot be probed with exactly the counts the native tracker would
produce raise InstrumentationError and are tracked natively instead:
- loop and ``with`` bodies on the header line
- ``match`` statements
- statements starting on another statement's continuation line
- definitions with no place to host their probe
- files above the size limit, and rewrites that fail to re-parse or change
  the number of lines
"""

import ast
import logging
import re
from dataclasses import dataclass
from typing import FrozenSet

from ..analysis.analyzer import definition_start, header_end, is_string_statement
from ..analysis.tokens import source_lines
from ..errors import InstrumentationError, RewriteError, UnsupportedConstruct
from ..model import LineKind
from ..runtime.probes import PROBE_NAMES

LOG = logging.getLogger(__name__)

_LINE = re.compile(r"([^\r\n]*)(\r\n|\r|\n|$)")

TERMINAL_STATEMENTS = (ast.Return, ast.Raise, ast.Break, ast.Continue)
LOOP_STATEMENTS = (ast.For, ast.AsyncFor, ast.While)
WITH_STATEMENTS = (ast.With, ast.AsyncWith)
TRY_STATEMENTS = (ast.Try,) + ((ast.TryStar,) if hasattr(ast, "TryStar") else ())


@dataclass(frozen=True)
class InstrumentedSource:
    """
    Result of instrumenting one file.

    Attributes:
        file_id: Store id the probes report to
        digest: Digest of the original source
        text: Rewritten source, same number of lines as the original
        probes: Lines reported by the inserted probes
    """
    file_id: str
    digest: str
    text: str
    probes: FrozenSet[int]


def split_lines(source):
    """Split source into (content, terminator) pairs."""
    pairs = []
    for match in _LINE.finditer(source):
        content, ending = match.group(1), match.group(2)
        if not content and not ending:
            break
        pairs.append([content, ending])
    return pairs


def is_future_import(node):
    return isinstance(node, ast.ImportFrom) and node.module == "__future__"


def produces_code(node):
    """Whether a simple statement compiles to code of its own."""
    if isinstance(node, (ast.Global, ast.Nonlocal)):
        return False
    if isinstance(node, ast.AnnAssign) and node.value is None:
        return False
    if isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant):
        return False
    return True


class ProbePlanner:
    """
    Decides where each probe goes and records text insertions.

    Attributes:
        path: File name used in errors
        lines: (content, terminator) pairs of the source
        analysis: FileAnalysis of the source
        file_id: Store id passed to every probe
        probed: Lines that already have a probe
    """
    def __init__(self, path, lines, analysis, file_id):
        self.path = path
        self.lines = lines
        self.analysis = analysis
        self.file_id = file_id
        self.probed = set()
        self._insertions = []
        self._replacements = {}
        self._span_lines = set()
        self._future_probes = []
        self._last_future = None
        self._code_lines = {n for n, c in analysis.lines.items() if c.kind is LineKind.CODE}

    # -- text edits ------------------------------------------------------

    def column(self, lineno, col_offset):
        """Convert an ast UTF-8 byte offset into a character offset."""
        content = self.lines[lineno - 1][0]
        if content.isascii():
            return col_offset
        return len(content.encode("utf-8")[:col_offset].decode("utf-8", "replace"))

    def insert(self, lineno, col_offset, text):
        self._insertions.append((lineno, self.column(lineno, col_offset), len(self._insertions), text))

    def call(self, probe, line, *args):
        return "%s(%r, %d%s)" % (PROBE_NAMES[probe], self.file_id, line, "".join(", " + a for a in args))

    def wrap(self, probe, line, node):
        """Wrap an expression node in a value-passing probe call."""
        self.insert(node.lineno, node.col_offset, "%s(%r, %d, (" % (PROBE_NAMES[probe], self.file_id, line))
        self.insert(node.end_lineno, node.end_col_offset, "))")
        self.probed.add(line)

    def wants_probe(self, line):
        return self.analysis.is_executable(line) and line not in self.probed

    def refuse(self, lineno, reason):
        raise UnsupportedConstruct(self.path, lineno, reason)

    # -- planning --------------------------------------------------------

    def plan(self, tree):
        self.plan_body(tree.body, 0)
        if self._future_probes:
            node = self._last_future
            calls = "".join("; " + self.call("hit", line) for line in self._future_probes)
            self.insert(node.end_lineno, node.end_col_offset, calls)
        missing = self.analysis.executable_lines - self.probed
        if missing:
            self.refuse(min(missing), "no probe position for executable line")

    def plan_body(self, body, block_start):
        for index, node in enumerate(body):
            self.check_start(node)
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                self.plan_definition(node, body, index, block_start)
            elif isinstance(node, ast.If):
                self.plan_if(node)
            elif isinstance(node, LOOP_STATEMENTS):
                self.plan_loop(node)
            elif isinstance(node, WITH_STATEMENTS):
                self.plan_with(node)
            elif isinstance(node, TRY_STATEMENTS):
                self.plan_try(node)
            elif isinstance(node, ast.Match):
                self.refuse(node.lineno, "match statements are not instrumented")
            else:
                self.plan_simple(node)

    def check_start(self, node):
        first = definition_start(node) if hasattr(node, "decorator_list") else node.lineno
        if first in self._span_lines:
            self.refuse(first, "statement starts on a continuation line")
        if isinstance(node, ast.stmt) and not hasattr(node, "body"):
            last = node.end_lineno
        else:
            last = self.header_end(node)
        self._span_lines.update(range(first + 1, last + 1))

    def header_end(self, node):
        return header_end(node, self._code_lines)

    def check_header_body(self, node):
        if not node.body:
            return
        first = node.body[0]
        if self.lines[first.lineno - 1][0][:self.column(first.lineno, first.col_offset)].strip():
            self.refuse(node.lineno, "body on the same line as its header")

    def plan_simple(self, node):
        line = node.lineno
        if not produces_code(node) or not self.wants_probe(line):
            return
        self.probed.add(line)
        if is_future_import(node):
            self._future_probes.append(line)
            self._last_future = node
            return
        self.insert(line, node.col_offset, self.call("hit", line) + "; ")

    def plan_if(self, node):
        if self.wants_probe(node.lineno):
            self.insert(node.test.lineno, node.test.col_offset, self.call("hit", node.lineno) + " and (")
            self.insert(node.test.end_lineno, node.test.end_col_offset, ")")
            self.probed.add(node.lineno)
        self.plan_body(node.body, self.header_end(node))
        if not node.orelse:
            return
        first = node.orelse[0]
        if len(node.orelse) == 1 and isinstance(first, ast.If) and \
                self.lines[first.lineno - 1][0].lstrip().startswith("elif"):
            self.check_start(first)
            self.plan_if(first)
        else:
            self.plan_body(node.orelse, first.lineno - 1)

    def plan_loop(self, node):
        self.check_header_body(node)
        if isinstance(node, ast.While):
            if self.wants_probe(node.lineno):
                self.insert(node.test.lineno, node.test.col_offset, self.call("hit", node.lineno) + " and (")
                self.insert(node.test.end_lineno, node.test.end_col_offset, ")")
                self.probed.add(node.lineno)
        elif self.wants_probe(node.lineno):
            probe = "aiterate" if isinstance(node, ast.AsyncFor) else "iterate"
            self.wrap(probe, node.lineno, node.iter)
        self.plan_body(node.body, self.header_end(node))
        if node.orelse:
            self.plan_body(node.orelse, node.orelse[0].lineno - 1)

    def plan_with(self, node):
        self.check_header_body(node)
        if self.wants_probe(node.lineno):
            probe = "async_with_context" if isinstance(node, ast.AsyncWith) else "with_context"
            self.wrap(probe, node.lineno, node.items[0].context_expr)
        self.plan_body(node.body, self.header_end(node))

    def plan_try(self, node):
        self.plan_body(node.body, node.lineno)
        for handler in node.handlers:
            if handler.type is not None:
                if handler.lineno in self._span_lines:
                    self.refuse(handler.lineno, "except clause starts on a continuation line")
                self._span_lines.update(range(handler.lineno + 1, self.header_end(handler) + 1))
                if self.wants_probe(handler.lineno):
                    self.wrap("value", handler.lineno, handler.type)
            self.plan_body(handler.body, self.header_end(handler))
        if node.orelse:
            self.plan_body(node.orelse, node.orelse[0].lineno - 1)
        if node.finalbody:
            self.plan_body(node.finalbody, node.finalbody[0].lineno - 1)

    def plan_definition(self, node, body, index, block_start):
        anchor = definition_start(node)
        if self.wants_probe(anchor):
            if node.decorator_list:
                self.wrap("value", anchor, node.decorator_list[0])
            else:
                self.host_definition_probe(node, anchor, body, index, block_start)
        self.plan_body(node.body, self.header_end(node))

    def host_definition_probe(self, node, anchor, body, index, block_start):
        """
        Place the probe of an undecorated def/class outside its header.

        Candidates, in order: the end of the preceding simple statement, a
        free line between the preceding statement and the definition, the
        start of the following simple statement, a free line after the
        definition.

        Raises:
            UnsupportedConstruct: If no host position exists
        """
        probe = self.call("hit", anchor)
        previous = body[index - 1] if index > 0 else None
        if previous is not None and not hasattr(previous, "body") \
                and not isinstance(previous, TERMINAL_STATEMENTS):
            self.insert(previous.end_lineno, previous.end_col_offset, "; " + probe)
            self.probed.add(anchor)
            return

        start = previous.end_lineno if previous is not None else block_start
        host = self.free_line(start + 1, anchor - 1)
        if host is not None:
            self.host_on_line(host, anchor, probe)
            return

        following = body[index + 1] if index + 1 < len(body) else None
        if following is not None and not hasattr(following, "body") and not is_future_import(following) \
                and not is_string_statement(following):
            self.insert(following.lineno, following.col_offset, probe + "; ")
            self.probed.add(anchor)
            return

        if following is not None:
            last = (definition_start(following) if hasattr(following, "decorator_list") else following.lineno) - 1
        else:
            last = node.end_lineno
            while last < len(self.lines) and \
                    self.analysis.lines[last + 1].kind in (LineKind.BLANK, LineKind.COMMENT):
                last += 1
        host = self.free_line(node.end_lineno + 1, last, closest_last=False)
        if host is not None:
            self.host_on_line(host, anchor, probe)
            return
        self.refuse(anchor, "no position to host the definition probe")

    def host_on_line(self, host, anchor, probe):
        content = self.lines[anchor - 1][0]
        indent = content[:len(content) - len(content.lstrip())]
        comment = self.lines[host - 1][0].strip()
        self._replacements[host] = indent + probe + ("  " + comment if comment else "")
        self.probed.add(anchor)

    def free_line(self, first, last, closest_last=True):
        """
        Pick a blank line in a range, else a comment line past the file header.

        Args:
            first: First candidate line
            last: Last candidate line
            closest_last: Prefer the last candidate rather than the first
        """
        blanks = []
        comments = []
        for number in range(first, last + 1):
            if number in self._replacements:
                continue
            kind = self.analysis.lines[number].kind
            if kind is LineKind.BLANK:
                blanks.append(number)
            elif kind is LineKind.COMMENT and number > 2:
                comments.append(number)
        candidates = blanks or comments
        if not candidates:
            return None
        return candidates[-1] if closest_last else candidates[0]

    # -- output ----------------------------------------------------------

    def render(self):
        by_line = {}
        for lineno, col, order, text in self._insertions:
            by_line.setdefault(lineno, []).append((col, order, text))
        out = []
        for number, (content, ending) in enumerate(self.lines, 1):
            if number in self._replacements:
                content = self._replacements[number]
            for col, order, text in sorted(by_line.get(number, ()), reverse=True):
                content = content[:col] + text + content[col:]
            out.append(content + ending)
        return "".join(out)


class Instrumenter:
    """
    Line-preserving source rewriter.

    Attributes:
        config: CoverageConfig supplying the size limit
        cache: InstrumentationCache, or None to always rewrite
    """
    def __init__(self, config=None, cache=None):
        self.config = config
        self.cache = cache

    @property
    def max_size(self):
        return self.config.max_instrument_size if self.config is not None else 1000000

    def instrument(self, source, analysis, file_id, tree=None):
        """
        Rewrite source so every executable line reports to the probes.

        Args:
            source: Source text
            analysis: FileAnalysis of exactly this text
            file_id: Store id the probes report to
            tree: Syntax tree of the text; parsed here when omitted

        Returns:
            InstrumentedSource

        Raises:
            InstrumentationError: If the file is too large or cannot be probed
                with native-equivalent counts
            RewriteError: If the rewrite does not re-parse or moves lines
        """
        path = analysis.path
        size = len(source.encode("utf-8", "surrogatepass"))
        if size > self.max_size:
            raise InstrumentationError(path, "%d bytes exceeds the %d byte limit" % (size, self.max_size))

        if self.cache is not None:
            cached = self.cache.get(file_id, analysis.digest)
            if cached is not None:
                return cached

        if tree is None:
            try:
                tree = ast.parse(source, filename=path)
            except (SyntaxError, ValueError) as e:
                raise InstrumentationError(path, "source does not parse: %s" % e) from e

        planner = ProbePlanner(path, split_lines(source), analysis, file_id)
        planner.plan(tree)
        text = planner.render()
        self.verify(path, source, text)

        result = InstrumentedSource(file_id, analysis.digest, text, frozenset(planner.probed))
        LOG.debug("instrumented %s with %d probes", path, len(result.probes))
        if self.cache is not None:
            self.cache.put(result)
        return result

    def verify(self, path, source, text):
        if len(source_lines(text)) != len(source_lines(source)):
            raise RewriteError(path, "rewrite changed the number of lines")
        try:
            ast.parse(text, filename=path)
        except (SyntaxError, ValueError) as e:
            raise RewriteError(path, "rewrite does not parse: %s" % e) from e
