"""
Static Analyzer for line, function and block classification.

This module decides, from the source text and its syntax tree alone, which
lines of a file can execute. The result is authoritative for the rest of the
engine: runtime data may populate executable lines but never redefines them.

**Classification Steps:**
1. Every line starts out non-executable
2. The syntax tree is walked statement by statement. The first line of each
   statement that compiles to runtime code becomes executable (its anchor);
   control-structure headers (if/elif/while tests, for and with headers,
   typed except clauses, match/case) are anchors too. Calls are attributed to
   the anchor of the statement that contains them
3. The token stream delimits comments and string literals. Lines inside a
   docstring or bare string statement, and lines after the first of any
   multi-line string literal, are forced non-executable, overriding step 2

**Statement Geometry:**
For each multi-line statement or header the remaining lines are recorded as
continuations of its anchor, and each def/class records its header span.
The native tracker uses both to count one execution per statement.

**Not Executable:**
``try:``, ``else:``, ``finally:``, bare ``except:``, ``global``, ``nonlocal``,
annotation-only assignments, constant expression statements and ``while``
loops over a constant true test produce no runtime line of their own.
"""

import ast
import hashlib
import logging
import tokenize

from ..errors import ParseError, SourceReadError
from ..model import BlockInfo, BlockKind, FileAnalysis, FunctionInfo, LineClassification, LineKind
from . import tokens

LOG = logging.getLogger(__name__)

COMPOUND_STATEMENTS = (
    ast.If, ast.For, ast.AsyncFor, ast.While, ast.With, ast.AsyncWith, ast.Try,
    ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Match,
) + ((ast.TryStar,) if hasattr(ast, "TryStar") else ())


def digest_source(source):
    """sha1 hex digest of source text."""
    return hashlib.sha1(source.encode("utf-8", "surrogatepass")).hexdigest()


def header_end(node, code_lines=None):
    """
    Last line of a compound statement's header.

    Args:
        node: Compound statement node
        code_lines: Lines holding code tokens; when given, lines between the
            last header expression and the first body statement that hold
            code (closing brackets, the colon) count as header lines

    Returns:
        int: Last header line (at least node.lineno)
    """
    parts = []
    if isinstance(node, (ast.If, ast.While)):
        parts = [node.test]
    elif isinstance(node, (ast.For, ast.AsyncFor)):
        parts = [node.target, node.iter]
    elif isinstance(node, (ast.With, ast.AsyncWith)):
        for item in node.items:
            parts.append(item.context_expr)
            if item.optional_vars is not None:
                parts.append(item.optional_vars)
    elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        parts = list(node.decorator_list) + list(ast.iter_child_nodes(node.args))
        if node.returns is not None:
            parts.append(node.returns)
        parts.extend(getattr(node, "type_params", ()))
    elif isinstance(node, ast.ClassDef):
        parts = list(node.decorator_list) + list(node.bases) + list(node.keywords)
        parts.extend(getattr(node, "type_params", ()))
    elif isinstance(node, ast.ExceptHandler):
        parts = [node.type] if node.type is not None else []
    elif isinstance(node, ast.Match):
        parts = [node.subject]
    elif isinstance(node, ast.match_case):
        parts = [node.pattern] + ([node.guard] if node.guard is not None else [])
    last = getattr(node, "lineno", None) or node.pattern.lineno
    for part in parts:
        end = getattr(part, "end_lineno", None)
        if end is not None and end > last:
            last = end
    body = getattr(node, "body", None)
    if code_lines and body:
        first = body[0]
        start = definition_start(first) if hasattr(first, "decorator_list") else first.lineno
        for line in range(last + 1, start):
            if line in code_lines:
                last = line
    return last


def definition_start(node):
    """First line of a def/class statement, counting decorators."""
    if node.decorator_list:
        return min(node.lineno, node.decorator_list[0].lineno)
    return node.lineno


def is_constant_true(test):
    return isinstance(test, ast.Constant) and bool(test.value)


def is_string_statement(node):
    return isinstance(node, ast.Expr) and isinstance(node.value, ast.Constant) and isinstance(node.value.value, str)


class StatementVisitor(ast.NodeVisitor):
    """
    Walks statements and records anchors, spans, functions and blocks.

    Only statements are visited; expressions never contain statements, so
    the visitor does not descend into them.

    Attributes:
        anchors: Lines on which an executable statement or header starts
        continuations: Non-first statement line to anchor line
        def_headers: Def/class anchor to (first, last) header lines
        string_statements: (first, last) spans of docstrings and bare strings
        functions: FunctionInfo records in source order
        blocks: BlockInfo records, ids equal to their index
    """
    def __init__(self, lines, code_lines=None):
        self.lines = lines
        self.code_lines = code_lines or frozenset()
        self.anchors = set()
        self.continuations = {}
        self.def_headers = {}
        self.string_statements = []
        self.functions = []
        self.blocks = []
        self._names = []
        self._block_stack = []

    def run(self, tree):
        self.visit_body(tree.body)
        for line in self.anchors:
            self.continuations.pop(line, None)

    def header_end(self, node):
        return header_end(node, self.code_lines)

    def visit_body(self, body):
        for stmt in body:
            self.visit(stmt)

    def mark(self, anchor, first=None, last=None):
        """Record an anchor and map the rest of its span to it."""
        self.anchors.add(anchor)
        first = anchor if first is None else first
        last = anchor if last is None else last
        for line in range(first, last + 1):
            if line != anchor:
                self.continuations.setdefault(line, anchor)

    def open_block(self, kind, body):
        if not body:
            return None
        parent = self._block_stack[-1] if self._block_stack else None
        block = BlockInfo(len(self.blocks), kind, body[0].lineno, body[-1].end_lineno, parent)
        self.blocks.append(block)
        return block

    def visit_block(self, kind, body):
        block = self.open_block(kind, body)
        if block is None:
            return
        self._block_stack.append(block.id)
        try:
            self.visit_body(body)
        finally:
            self._block_stack.pop()

    def generic_visit(self, node):
        # Simple statements: Assign, AugAssign, Return, Raise, Import, Pass, ...
        self.mark(node.lineno, node.lineno, node.end_lineno)

    def visit_Expr(self, node):
        if is_string_statement(node):
            self.string_statements.append((node.lineno, node.end_lineno))
            return
        if isinstance(node.value, ast.Constant):
            return
        self.generic_visit(node)

    def visit_AnnAssign(self, node):
        if node.value is not None:
            self.generic_visit(node)

    def visit_Global(self, node):
        pass

    visit_Nonlocal = visit_Global

    def visit_If(self, node):
        self.mark(node.lineno, node.lineno, self.header_end(node))
        self.visit_block(BlockKind.IF, node.body)
        if not node.orelse:
            return
        first = node.orelse[0]
        if len(node.orelse) == 1 and isinstance(first, ast.If) and self._is_elif(first):
            self.visit(first)
        else:
            self.visit_block(BlockKind.IF, node.orelse)

    def _is_elif(self, node):
        # an elif node starts at its keyword; only indentation precedes it
        return self.lines[node.lineno - 1].lstrip().startswith("elif")

    def visit_While(self, node):
        if not is_constant_true(node.test):
            self.mark(node.lineno, node.lineno, self.header_end(node))
        self.visit_block(BlockKind.LOOP, node.body)
        self.visit_body(node.orelse)

    def visit_For(self, node):
        self.mark(node.lineno, node.lineno, self.header_end(node))
        self.visit_block(BlockKind.LOOP, node.body)
        self.visit_body(node.orelse)

    visit_AsyncFor = visit_For

    def visit_With(self, node):
        self.mark(node.lineno, node.lineno, self.header_end(node))
        self.visit_body(node.body)

    visit_AsyncWith = visit_With

    def visit_Try(self, node):
        self.visit_body(node.body)
        for handler in node.handlers:
            if handler.type is not None:
                self.mark(handler.lineno, handler.lineno, self.header_end(handler))
            self.visit_body(handler.body)
        self.visit_body(node.orelse)
        self.visit_body(node.finalbody)

    visit_TryStar = visit_Try

    def visit_Match(self, node):
        self.mark(node.lineno, node.lineno, self.header_end(node))
        for case in node.cases:
            self.mark(case.pattern.lineno, case.pattern.lineno, self.header_end(case))
            self.visit_body(case.body)

    def visit_FunctionDef(self, node):
        first = definition_start(node)
        last = self.header_end(node)
        self.mark(first, first, last)
        self.def_headers[first] = (first, last)

        args = node.args
        params = [a.arg for a in args.posonlyargs + args.args]
        if args.vararg is not None:
            params.append("*" + args.vararg.arg)
        params.extend(a.arg for a in args.kwonlyargs)
        if args.kwarg is not None:
            params.append("**" + args.kwarg.arg)

        self._names.append(node.name)
        self.functions.append(FunctionInfo(
            name=node.name,
            qualname=".".join(self._names),
            start_line=first,
            end_line=node.end_lineno,
            body_start_line=node.body[0].lineno,
            parameters=tuple(params),
            is_variadic=args.vararg is not None or args.kwarg is not None,
            is_async=isinstance(node, ast.AsyncFunctionDef),
        ))
        try:
            self.visit_block(BlockKind.FUNCTION_BODY, node.body)
        finally:
            self._names.pop()

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node):
        first = definition_start(node)
        last = self.header_end(node)
        self.mark(first, first, last)
        self.def_headers[first] = (first, last)
        self._names.append(node.name)
        try:
            self.visit_body(node.body)
        finally:
            self._names.pop()


class StaticAnalyzer:
    """
    Classifies the lines of Python source files.

    The analyzer is a pure function of the source text; results are cached
    by path and content digest so that each file content is analysed once.

    Attributes:
        use_cache: Whether analyses are cached
    """
    def __init__(self, use_cache=True):
        self.use_cache = use_cache
        self._cache = {}

    def clear_cache(self):
        self._cache.clear()

    def analyze_file(self, path):
        """
        Read and analyse a source file.

        Args:
            path: Path to a Python source file

        Returns:
            FileAnalysis

        Raises:
            SourceReadError: If the file cannot be read or decoded
            ParseError: If the file cannot be parsed
        """
        return self.analyze(read_source(path), path=path)

    def analyze(self, source, tree=None, path="<string>"):
        """
        Analyse source text.

        Args:
            source: Source text
            tree: Syntax tree for the text; parsed here when omitted
            path: File name recorded in the result and in errors

        Returns:
            FileAnalysis

        Raises:
            ParseError: If the text cannot be tokenized or parsed
        """
        digest = digest_source(source)
        key = (path, digest)
        if self.use_cache and key in self._cache:
            return self._cache[key]

        spans = tokens.scan(source, path)
        if tree is None:
            tree = parse_source(source, path)
        lines = tokens.source_lines(source)

        visitor = StatementVisitor(lines, spans.code_lines)
        visitor.run(tree)

        analysis = FileAnalysis(
            path=path,
            digest=digest,
            total_lines=len(lines),
            lines=classify_lines(lines, spans, visitor),
            functions=tuple(visitor.functions),
            blocks=tuple(visitor.blocks),
            continuations=dict(sorted(visitor.continuations.items())),
            def_headers=dict(sorted(visitor.def_headers.items())),
        )
        LOG.debug("analysed %s: %d lines, %d executable, %d functions, %d blocks",
                  path, analysis.total_lines, len(analysis.executable_lines),
                  len(analysis.functions), len(analysis.blocks))
        if self.use_cache:
            self._cache[key] = analysis
        return analysis


def classify_lines(lines, spans, visitor):
    """
    Combine token spans and statement anchors into a classification map.

    Args:
        lines: Source lines
        spans: TokenSpans of the source
        visitor: StatementVisitor that has walked the tree

    Returns:
        dict: Line number to LineClassification
    """
    comment_rows = set()
    comment_kind = {}
    for first, last in visitor.string_statements:
        kind = LineKind.MULTILINE_COMMENT if last > first else LineKind.STRING_LITERAL
        for row in range(first, last + 1):
            comment_rows.add(row)
            comment_kind[row] = kind
    string_rows = spans.string_interior()

    result = {}
    overridden = 0
    for number in range(1, len(lines) + 1):
        if number in comment_rows:
            kind = comment_kind[number]
        elif number in string_rows:
            kind = LineKind.STRING_LITERAL
        elif number in spans.code_lines:
            kind = LineKind.CODE
        elif number in spans.comment_lines:
            kind = LineKind.COMMENT
        else:
            kind = LineKind.BLANK
        executable = number in visitor.anchors and kind is LineKind.CODE
        if number in visitor.anchors and not executable:
            overridden += 1
        result[number] = LineClassification(number, kind, executable)
    if overridden:
        LOG.debug("%d statement lines fall inside comment or string spans", overridden)
    return result


def parse_source(source, path="<string>"):
    """
    Parse source text into a syntax tree.

    Raises:
        ParseError: On syntax errors or null bytes in the source
    """
    try:
        return ast.parse(source, filename=path)
    except SyntaxError as e:
        raise ParseError(path, e.lineno, e.msg) from e
    except ValueError as e:
        raise ParseError(path, None, str(e)) from e


def read_source(path):
    """
    Read a source file honouring its encoding declaration.

    Raises:
        SourceReadError: If the file cannot be opened or decoded
    """
    try:
        with tokenize.open(path) as f:
            return f.read()
    except (OSError, UnicodeDecodeError, SyntaxError) as e:
        raise SourceReadError(path, str(e)) from e
