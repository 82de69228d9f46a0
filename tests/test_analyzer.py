from __future__ import annotations

import pytest

from covflow.analysis.analyzer import StaticAnalyzer, read_source
from covflow.analysis.blocks import BlockTree
from covflow.errors import ParseError, SourceReadError
from covflow.model import BlockInfo, BlockKind, LineKind


def _kinds(analysis):
    return {n: c.kind for n, c in analysis.lines.items()}


def test_module_docstring_lines_are_not_executable(analyze):
    analysis = analyze(
        '''
        """
        Module doc.

        More text with code-looking words: x = 1
        """
        import os


        def f(a, *args, b=1, **kw):
            """One line."""
            return a
        '''
    )

    assert analysis.total_lines == 11
    assert analysis.executable_lines == {6, 9, 11}
    for line in range(1, 6):
        assert analysis.lines[line].kind is LineKind.MULTILINE_COMMENT
    assert analysis.lines[10].kind is LineKind.STRING_LITERAL
    assert analysis.lines[7].kind is LineKind.BLANK


def test_function_info(analyze):
    analysis = analyze(
        """
        import os


        def f(a, *args, b=1, **kw):
            \"\"\"One line.\"\"\"
            return a


        class Box:
            async def get(self, /, key):
                return key
        """
    )

    f, get = analysis.functions
    assert f.name == "f"
    assert f.qualname == "f"
    assert (f.start_line, f.body_start_line, f.end_line) == (4, 5, 6)
    assert f.parameters == ("a", "*args", "b", "**kw")
    assert f.is_variadic
    assert not f.is_async

    assert get.qualname == "Box.get"
    assert get.parameters == ("self", "key")
    assert get.is_async
    assert not get.is_variadic


def test_structural_lines_are_not_executable(analyze):
    analysis = analyze(
        """
        try:
            x = 1
        except ValueError:
            x = 2
        except:
            x = 3
        else:
            x = 4
        finally:
            x = 5
        while True:
            break
        y: int
        ...
        global z
        """
    )

    assert analysis.executable_lines == {2, 3, 4, 6, 8, 10, 12}


def test_elif_headers_are_executable(analyze):
    analysis = analyze(
        """
        if a:
            x = 1
        elif b:
            x = 2
        else:
            x = 3
        """
    )

    assert analysis.executable_lines == {1, 2, 3, 4, 6}


def test_multiline_statements_count_on_their_first_line(analyze):
    analysis = analyze(
        """
        total = add(
            1,
            2,
        )
        if (total and
                total > 1):
            pass
        """
    )

    assert analysis.executable_lines == {1, 5, 7}
    assert analysis.continuations == {2: 1, 3: 1, 4: 1, 6: 5}
    assert all(analysis.lines[n].kind is LineKind.CODE for n in range(1, 8))


def test_decorated_definition_header(analyze):
    analysis = analyze(
        """
        import functools


        @functools.lru_cache(
            maxsize=None)
        def compute(
            a,
            b,
        ):
            return a + b
        """
    )

    assert analysis.executable_lines == {1, 4, 10}
    assert analysis.def_headers == {4: (4, 9)}
    for line in range(5, 10):
        assert analysis.continuations[line] == 4
    assert analysis.functions[0].start_line == 4
    assert analysis.functions[0].body_start_line == 10


def test_multiline_string_literal(analyze):
    analysis = analyze(
        '''
        text = """
        first
        second
        """
        value = 1
        '''
    )

    assert analysis.executable_lines == {1, 5}
    assert analysis.lines[1].kind is LineKind.CODE
    for line in (2, 3, 4):
        assert analysis.lines[line].kind is LineKind.STRING_LITERAL


def test_comment_and_blank_lines(analyze):
    analysis = analyze("# comment\nx = 1  # trailing\n\n")

    assert _kinds(analysis) == {1: LineKind.COMMENT, 2: LineKind.CODE, 3: LineKind.BLANK}
    assert analysis.executable_lines == {2}


def test_every_line_is_classified(analyze):
    analysis = analyze(
        """
        def f(x):
            # inside
            return [i
                    for i in range(x)]
        """
    )

    assert sorted(analysis.lines) == list(range(1, analysis.total_lines + 1))
    assert analysis.executable_lines == {1, 3}
    assert analysis.lines[2].kind is LineKind.COMMENT


def test_blocks_and_nesting(analyze):
    analysis = analyze(
        """
        def f(x):
            if x:
                for i in range(x):
                    x -= 1
            else:
                x = 0
            return x
        """
    )

    kinds = [(b.kind, b.start_line, b.end_line, b.parent) for b in analysis.blocks]
    assert kinds == [
        (BlockKind.FUNCTION_BODY, 2, 7, None),
        (BlockKind.IF, 3, 4, 0),
        (BlockKind.LOOP, 4, 4, 1),
        (BlockKind.IF, 6, 6, 0),
    ]

    tree = BlockTree(analysis.blocks)
    assert tree.roots() == [0]
    assert tree.children(0) == [1, 3]
    assert tree.depth(2) == 2

    counts = tree.rollup(analysis.executable_lines, lambda n: True)
    assert counts == {0: 5, 1: 2, 2: 1, 3: 1}


def test_statements_inside_a_multiline_comment_are_not_executable(analyze):
    analysis = analyze(
        '''
        """
        x = x + 1
        x = x + 1
        x = x + 1
        """
        '''
    )

    for line in (2, 3, 4):
        assert analysis.lines[line].kind is LineKind.MULTILINE_COMMENT
        assert not analysis.is_executable(line)
    assert analysis.executable_lines == set()


def test_rollup_rejects_block_outside_its_parent():
    tree = BlockTree([
        BlockInfo(0, BlockKind.FUNCTION_BODY, 2, 3, None),
        BlockInfo(1, BlockKind.IF, 5, 6, 0),
    ])

    with pytest.raises(ValueError):
        tree.rollup([2, 5, 6], lambda n: True)


def test_syntax_error_raises_parse_error(analyze):
    with pytest.raises(ParseError) as info:
        analyze("x = = 1\n")
    assert info.value.path == "sample.py"
    assert info.value.lineno == 1


def test_analysis_is_cached_per_content():
    analyzer = StaticAnalyzer()
    first = analyzer.analyze("x = 1\n", path="a.py")
    assert analyzer.analyze("x = 1\n", path="a.py") is first
    assert analyzer.analyze("x = 2\n", path="a.py") is not first

    analyzer.clear_cache()
    assert analyzer.analyze("x = 1\n", path="a.py") is not first


def test_analysis_round_trips_through_dict(analyze):
    analysis = analyze(
        """
        @decorator
        def f(a):
            if a:
                return 1
        """
    )
    restored = type(analysis).from_dict(analysis.to_dict())
    assert restored == analysis
    assert restored.executable_lines == analysis.executable_lines


def test_read_source_honours_encoding(tmp_path):
    path = tmp_path / "latin.py"
    path.write_bytes(b"# -*- coding: latin-1 -*-\nname = '\xe9'\n")
    assert read_source(str(path)) == "# -*- coding: latin-1 -*-\nname = 'é'\n"

    with pytest.raises(SourceReadError):
        read_source(str(tmp_path / "missing.py"))
