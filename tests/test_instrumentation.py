from __future__ import annotations

import ast

import pytest

from covflow.analysis.tokens import source_lines
from covflow.config import CoverageConfig
from covflow.errors import InstrumentationError, UnsupportedConstruct
from covflow.instrumentation.cache import InstrumentationCache
from covflow.instrumentation.transformer import Instrumenter
from covflow.runtime.probes import Probes
from covflow.runtime.store import DataStore
from covflow.runtime.tracker import LineTracker


def _execute(text, file_id="f1"):
    tracker = LineTracker(DataStore.create())
    namespace = Probes(tracker).inject({"__name__": "__sample__"})
    tracker.start()
    try:
        exec(compile(text, "<instrumented>", "exec"), namespace)
    finally:
        tracker.stop()
    return tracker.store.snapshot_counts().get(file_id, {})


def test_rewrite_preserves_lines_and_probes_every_executable_line(instrument):
    code = """
    import os

    def add(a, b):
        return a + b

    total = 0
    for i in range(3):
        if i % 2:
            total = add(total, i)
        else:
            total -= 1
    """
    analysis, result = instrument(code)

    assert len(source_lines(result.text)) == analysis.total_lines
    assert result.probes == analysis.executable_lines
    ast.parse(result.text)

    lines = source_lines(result.text)
    assert lines[0] == "__covflow_hit__('f1', 1); import os; __covflow_hit__('f1', 3)"
    assert lines[6] == "for i in __covflow_iter__('f1', 7, (range(3))):"
    assert lines[7] == "    if __covflow_hit__('f1', 8) and (i % 2):"
    assert lines[10] == "        __covflow_hit__('f1', 11); total -= 1"


def test_instrumented_counts(instrument):
    code = """
    def add(a, b):
        return a + b

    total = 0
    for i in range(3):
        if i % 2:
            total = add(total, i)
        else:
            total -= 1
    """
    _, result = instrument(code)

    assert _execute(result.text) == {1: 1, 2: 1, 4: 1, 5: 4, 6: 3, 7: 1, 9: 2}


def test_class_and_method_probes_use_free_lines(instrument):
    code = """
    class A:
        def m(self):
            return 2

    a = A()
    """
    _, result = instrument(code)
    lines = source_lines(result.text)

    assert lines[3] == "    __covflow_hit__('f1', 2)"
    assert lines[4] == "__covflow_hit__('f1', 1); __covflow_hit__('f1', 5); a = A()"
    assert _execute(result.text) == {1: 1, 2: 1, 5: 1}


def test_while_with_and_except_probes(instrument):
    code = """
    import contextlib

    n = 0
    while n < 2:
        n += 1
    with contextlib.suppress(KeyError):
        try:
            {}["missing"]
        except KeyError:
            raise
    """
    _, result = instrument(code)
    lines = source_lines(result.text)

    assert lines[3] == "while __covflow_hit__('f1', 4) and (n < 2):"
    assert lines[5] == "with __covflow_with__('f1', 6, (contextlib.suppress(KeyError))):"
    assert lines[8] == "    except __covflow_value__('f1', 9, (KeyError)):"
    assert _execute(result.text) == {1: 1, 3: 1, 4: 3, 5: 2, 6: 2, 8: 1, 9: 1, 10: 1}


def test_decorator_probe_wraps_first_decorator(instrument):
    code = """
    import functools

    @functools.lru_cache(
        maxsize=None)
    def compute(
        a,
    ):
        return a * 2

    value = compute(2)
    """
    analysis, result = instrument(code)
    lines = source_lines(result.text)

    assert lines[2] == "@__covflow_value__('f1', 3, (functools.lru_cache("
    assert lines[3] == "    maxsize=None)))"
    assert _execute(result.text) == {1: 1, 3: 1, 8: 1, 10: 1}


def test_future_imports_stay_first(instrument):
    code = """
    \"\"\"Doc.\"\"\"
    from __future__ import annotations

    x = 1
    """
    _, result = instrument(code)

    assert source_lines(result.text)[1] == "from __future__ import annotations; __covflow_hit__('f1', 2)"
    compile(result.text, "<instrumented>", "exec")


@pytest.mark.parametrize("source", [
    "match 1:\n    case 1:\n        pass\n",
    "for i in range(2): pass\n",
    "with open(__file__) as f: pass\n",
    "y = (\n    2); z = 3\n",
])
def test_unsupported_layouts_are_refused(instrument, source):
    with pytest.raises(UnsupportedConstruct):
        instrument(source)


def test_size_limit(instrument):
    instrumenter = Instrumenter(CoverageConfig(max_instrument_size=10))
    with pytest.raises(InstrumentationError) as info:
        instrument("value = 'a long enough line'\n", instrumenter)
    assert not isinstance(info.value, UnsupportedConstruct)


def test_cache_reuses_rewrites_of_unchanged_content(instrument):
    cache = InstrumentationCache()
    instrumenter = Instrumenter(cache=cache)

    _, first = instrument("x = 1\n", instrumenter)
    _, second = instrument("x = 1\n", instrumenter)
    _, third = instrument("x = 2\n", instrumenter)

    assert second is first
    assert third is not first
    assert (cache.hits, cache.misses, len(cache)) == (1, 2, 2)

    cache.invalidate("f1")
    assert len(cache) == 0

    disabled = InstrumentationCache(enabled=False)
    disabled.put(first)
    assert disabled.get("f1", first.digest) is None
