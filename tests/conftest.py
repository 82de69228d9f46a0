from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import textwrap
from typing import Any, Optional

import pytest

from covflow import CoverageSession
from covflow.analysis.analyzer import StaticAnalyzer
from covflow.config import CoverageConfig
from covflow.instrumentation.transformer import Instrumenter


def _normalize_code(code: str) -> str:
    # Allow indented triple-quoted snippets in tests.
    code = textwrap.dedent(code)
    # Trim leading blank line to keep expected line numbers stable.
    code = code.lstrip("\n")
    if code and not code.endswith("\n"):
        code += "\n"
    return code


@dataclass(frozen=True)
class RunResult:
    session: CoverageSession
    path: str
    namespace: dict

    @property
    def file_id(self) -> Optional[str]:
        return self.session.file_id_for(self.path)

    def counts(self) -> dict[int, int]:
        """Non-zero execution counts of the script, line -> count."""
        counts = self.session.store.snapshot_counts().get(self.file_id, {})
        return {line: count for line, count in sorted(counts.items()) if count}

    def report(self):
        return self.session.file_report(self.path)

    @property
    def strategy(self) -> Optional[str]:
        return self.session.served_by.get(self.file_id)


class Runner:
    """
    Small harness around CoverageSession that:
    - writes one or many temporary source files
    - runs a script under a fresh session with the given options
    - returns the session and the script globals
    """

    def __init__(self, tmp_path: Path):
        self._tmp_path = tmp_path

    @property
    def root(self) -> Path:
        return self._tmp_path

    def write(self, code: str, filename: str = "sample.py") -> str:
        path = self._tmp_path / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(_normalize_code(code), encoding="utf-8")
        return str(path)

    def session(self, **options: Any) -> CoverageSession:
        return CoverageSession(CoverageConfig(**options))

    def run(self, code: str, *, filename: str = "sample.py", strategy: str = "native", **options: Any) -> RunResult:
        path = self.write(code, filename)
        session = self.session(strategy=strategy, **options)
        session.start()
        try:
            namespace = session.run_path(path)
        finally:
            session.stop()
        return RunResult(session, path, namespace)


@pytest.fixture
def runner(tmp_path: Path) -> Runner:
    return Runner(tmp_path)


@pytest.fixture
def analyze():
    analyzer = StaticAnalyzer(use_cache=False)

    def _analyze(code: str, path: str = "sample.py"):
        return analyzer.analyze(_normalize_code(code), path=path)

    return _analyze


@pytest.fixture
def instrument(analyze):
    """Instrument a snippet; returns (analysis, InstrumentedSource)."""
    def _instrument(code: str, instrumenter: Optional[Instrumenter] = None, file_id: str = "f1"):
        source = _normalize_code(code)
        analysis = analyze(source)
        return analysis, (instrumenter or Instrumenter()).instrument(source, analysis, file_id)

    return _instrument
