"""
Coverage data model.

This module holds the value types shared by the analyzer, the runtime
collectors, the data store and the patch-up step.

**Static Types (produced once per file content):**
- LineClassification: kind and executability of one source line
- FunctionInfo: boundaries and parameters of a function definition
- BlockInfo: a branch arm, loop body or function body with its nesting parent
- FileAnalysis: everything the analyzer learned about one file

**Runtime Types:**
- SourceFile: an entry of the data store file map
- LineStatus: closed set of per-line states

**Snapshot Types (derived, read-only):**
- LineDetail, FunctionCoverage, BlockCoverage, FileCoverageSummary,
  FileReport, GlobalSummary, CoverageReport
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple


class LineKind(enum.Enum):
    """Lexical kind of a source line."""
    CODE = "code"
    COMMENT = "comment"
    MULTILINE_COMMENT = "multiline_comment"
    BLANK = "blank"
    STRING_LITERAL = "string_literal"


class LineStatus(enum.Enum):
    """
    Coverage state of a line.

    COVERED implies the line was executed; EXECUTED means it ran but nothing
    verified it; NOT_COVERED means it never ran.
    """
    NOT_COVERED = "not_covered"
    EXECUTED = "executed"
    COVERED = "covered"


class BlockKind(enum.Enum):
    IF = "if"
    LOOP = "loop"
    FUNCTION_BODY = "function_body"


# metrics a coverage threshold can be checked against
COVERAGE_METRICS = ("line", "execution", "function", "block")


def percent(part, whole):
    """Integer floor percentage; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return part * 100 // whole


@dataclass(frozen=True)
class LineClassification:
    line: int
    kind: LineKind
    executable: bool


@dataclass(frozen=True)
class FunctionInfo:
    """
    A function definition found by the analyzer.

    Attributes:
        name: Function name
        qualname: Dotted name including enclosing classes and functions
        start_line: First line of the definition (first decorator if any)
        end_line: Last line of the function body
        body_start_line: Line of the first body statement
        parameters: Ordered parameter names
        is_variadic: Whether the function takes *args or **kwargs
        is_async: Whether the function is a coroutine function
    """
    name: str
    qualname: str
    start_line: int
    end_line: int
    body_start_line: int
    parameters: Tuple[str, ...] = ()
    is_variadic: bool = False
    is_async: bool = False


@dataclass(frozen=True)
class BlockInfo:
    """
    A syntactic region used for branch and nesting roll-ups.

    Attributes:
        id: Index of the block within its file analysis
        kind: Block kind
        start_line: First line of the region
        end_line: Last line of the region
        parent: Id of the enclosing block, or None at top level
    """
    id: int
    kind: BlockKind
    start_line: int
    end_line: int
    parent: Optional[int] = None


@dataclass(frozen=True)
class FileAnalysis:
    """
    Static analysis result for one file.

    Besides the classification map, functions and blocks, the analysis keeps
    the statement geometry the native tracker needs: ``continuations`` maps
    every non-first line of a multi-line statement (or header) to the line the
    statement starts on, and ``def_headers`` maps the anchor line of each
    def/class statement to the span of its decorators and header.

    Attributes:
        path: File path the source came from
        digest: sha1 hex digest of the source text
        total_lines: Number of lines in the source
        lines: Line number to LineClassification, for every line
        functions: FunctionInfo records in source order
        blocks: BlockInfo records, ids equal to their index
        continuations: Continuation line to statement anchor line
        def_headers: Def/class anchor line to (first, last) header lines
    """
    path: str
    digest: str
    total_lines: int
    lines: Dict[int, LineClassification]
    functions: Tuple[FunctionInfo, ...] = ()
    blocks: Tuple[BlockInfo, ...] = ()
    continuations: Dict[int, int] = field(default_factory=dict)
    def_headers: Dict[int, Tuple[int, int]] = field(default_factory=dict)
    executable_lines: FrozenSet[int] = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        executable = frozenset(n for n, c in self.lines.items() if c.executable)
        object.__setattr__(self, "executable_lines", executable)

    def is_executable(self, line):
        return line in self.executable_lines

    def classification(self, line):
        return self.lines.get(line)

    def to_dict(self):
        return {
            "path": self.path,
            "digest": self.digest,
            "total_lines": self.total_lines,
            "lines": [[c.line, c.kind.value, c.executable] for c in self.lines.values()],
            "functions": [asdict(f) for f in self.functions],
            "blocks": [dict(asdict(b), kind=b.kind.value) for b in self.blocks],
            "continuations": [[k, v] for k, v in self.continuations.items()],
            "def_headers": [[k, a, b] for k, (a, b) in self.def_headers.items()],
        }

    @classmethod
    def from_dict(cls, data):
        lines = {
            n: LineClassification(n, LineKind(kind), bool(executable))
            for n, kind, executable in data["lines"]
        }
        functions = tuple(
            FunctionInfo(**dict(f, parameters=tuple(f["parameters"]))) for f in data.get("functions", ())
        )
        blocks = tuple(BlockInfo(**dict(b, kind=BlockKind(b["kind"]))) for b in data.get("blocks", ()))
        return cls(
            path=data["path"],
            digest=data["digest"],
            total_lines=data["total_lines"],
            lines=lines,
            functions=functions,
            blocks=blocks,
            continuations={k: v for k, v in data.get("continuations", ())},
            def_headers={k: (a, b) for k, a, b in data.get("def_headers", ())},
        )


@dataclass
class SourceFile:
    """
    An entry of the data store file map.

    Attributes:
        id: Stable file identifier
        path: Path as registered
        content: Cached source text, if known
        total_line_count: Number of source lines (0 if unknown)
        digest: sha1 of the content the analysis was computed from
    """
    id: str
    path: str
    content: Optional[str] = None
    total_line_count: int = 0
    digest: Optional[str] = None


@dataclass(frozen=True)
class LineDetail:
    number: int
    kind: Optional[LineKind]
    executable: bool
    execution_count: int
    covered: bool
    status: LineStatus

    def as_dict(self):
        return {
            "number": self.number,
            "kind": self.kind.value if self.kind else None,
            "executable": self.executable,
            "execution_count": self.execution_count,
            "covered": self.covered,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class FunctionCoverage:
    info: FunctionInfo
    execution_count: int
    executed: bool
    covered: bool

    def as_dict(self):
        return dict(asdict(self.info), execution_count=self.execution_count,
                    executed=self.executed, covered=self.covered)


@dataclass(frozen=True)
class BlockCoverage:
    info: BlockInfo
    depth: int
    executable_lines: int
    executed_lines: int
    covered_lines: int

    @property
    def executed(self):
        return self.executed_lines > 0

    @property
    def covered(self):
        return self.covered_lines > 0

    def as_dict(self):
        return dict(asdict(self.info), kind=self.info.kind.value, depth=self.depth,
                    executable_lines=self.executable_lines, executed_lines=self.executed_lines,
                    covered_lines=self.covered_lines, executed=self.executed, covered=self.covered)


@dataclass(frozen=True)
class FileCoverageSummary:
    total_lines: int = 0
    executable_lines: int = 0
    executed_lines: int = 0
    covered_lines: int = 0
    total_functions: int = 0
    executed_functions: int = 0
    covered_functions: int = 0
    total_blocks: int = 0
    executed_blocks: int = 0
    covered_blocks: int = 0

    @property
    def line_coverage_percent(self):
        return percent(self.covered_lines, self.executable_lines)

    @property
    def execution_coverage_percent(self):
        return percent(self.executed_lines, self.executable_lines)

    @property
    def function_coverage_percent(self):
        return percent(self.covered_functions, self.total_functions)

    @property
    def block_coverage_percent(self):
        return percent(self.covered_blocks, self.total_blocks)

    def meets_threshold(self, threshold, metric="execution"):
        """
        Check a coverage percentage against a minimum.

        Args:
            threshold: Minimum percentage (0-100)
            metric: One of COVERAGE_METRICS

        Returns:
            bool: True if the metric's percentage is at least threshold

        Raises:
            ValueError: If metric is unknown
        """
        if metric not in COVERAGE_METRICS:
            raise ValueError("unknown coverage metric %r" % (metric,))
        return getattr(self, "%s_coverage_percent" % metric) >= threshold

    def as_dict(self):
        data = asdict(self)
        data.update(
            line_coverage_percent=self.line_coverage_percent,
            execution_coverage_percent=self.execution_coverage_percent,
            function_coverage_percent=self.function_coverage_percent,
            block_coverage_percent=self.block_coverage_percent,
        )
        return data


@dataclass(frozen=True)
class GlobalSummary(FileCoverageSummary):
    total_files: int = 0
    executed_files: int = 0
    covered_files: int = 0

    @property
    def file_coverage_percent(self):
        return percent(self.covered_files, self.total_files)

    def as_dict(self):
        data = super().as_dict()
        data["file_coverage_percent"] = self.file_coverage_percent
        return data


@dataclass(frozen=True)
class FileReport:
    """
    Read-only coverage snapshot of one file.

    ``provisional`` is set when no static analysis was available and the
    executable set was taken from the executed lines.
    """
    file_id: str
    path: Optional[str]
    provisional: bool
    lines: Tuple[LineDetail, ...]
    functions: Tuple[FunctionCoverage, ...]
    blocks: Tuple[BlockCoverage, ...]
    summary: FileCoverageSummary

    def line(self, number):
        return self.lines[number - 1]

    def lines_with_status(self, status):
        return [d.number for d in self.lines if d.executable and d.status is status]

    def as_dict(self):
        return {
            "file_id": self.file_id,
            "path": self.path,
            "provisional": self.provisional,
            "summary": self.summary.as_dict(),
            "lines": [d.as_dict() for d in self.lines],
            "functions": [f.as_dict() for f in self.functions],
            "blocks": [b.as_dict() for b in self.blocks],
        }


@dataclass(frozen=True)
class CoverageReport:
    files: Dict[str, FileReport]
    summary: GlobalSummary

    def meets_threshold(self, threshold, metric="execution"):
        return self.summary.meets_threshold(threshold, metric)

    def by_path(self, path):
        for report in self.files.values():
            if report.path == path:
                return report
        return None

    def as_dict(self):
        return {
            "summary": self.summary.as_dict(),
            "files": {file_id: r.as_dict() for file_id, r in sorted(self.files.items())},
        }
