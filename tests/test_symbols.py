"""Unit tests for cearch.symbols."""

import hashlib
import types

import pytest

from cearch.errors import ParseError
from cearch.symbols import (
    ANONYMOUS,
    LANGUAGES,
    LogicalUnit,
    UnitKind,
    extract_file,
    iter_units,
    language_for_path,
    parse,
    relative_path,
)

PYTHON_SOURCE = '''"""Module docstring."""

import os


def outer(x):
    def inner(y):
        return y * 2

    return inner(x)


class Greeter:
    """A greeter class."""

    def greet(self, name):
        def shout(text):
            return text.upper()

        return shout(name)


@decorator
def decorated():
    pass
'''


# ---------------------------------------------------------------------------
# Tests for the language registry
# ---------------------------------------------------------------------------


class TestLanguageForPath:
    def test_python_extensions(self):
        assert language_for_path("a.py").name == "python"
        assert language_for_path("stubs.pyi").name == "python"

    def test_javascript_and_typescript(self):
        assert language_for_path("app.js").name == "javascript"
        assert language_for_path("app.ts").name == "typescript"
        assert language_for_path("view.tsx").name == "tsx"

    def test_go_and_rust(self):
        assert language_for_path("main.go").name == "go"
        assert language_for_path("lib.rs").name == "rust"

    def test_case_insensitive_extension(self):
        assert language_for_path("SCRIPT.PY").name == "python"

    def test_unknown_extension(self):
        assert language_for_path("readme.txt") is None
        assert language_for_path("Makefile") is None

    def test_every_language_is_registered_under_its_name(self):
        for name, cfg in LANGUAGES.items():
            assert cfg.name == name
            assert cfg.extensions


class TestKindOf:
    def test_function_inside_class_is_method(self):
        cfg = LANGUAGES["python"]
        assert cfg.kind_of("function_definition", in_class=False) is UnitKind.FUNCTION
        assert cfg.kind_of("function_definition", in_class=True) is UnitKind.METHOD

    def test_method_kinds_are_always_methods(self):
        cfg = LANGUAGES["go"]
        assert cfg.kind_of("method_declaration", in_class=False) is UnitKind.METHOD

    def test_non_unit_kind(self):
        assert LANGUAGES["python"].kind_of("identifier", in_class=False) is None


# ---------------------------------------------------------------------------
# Tests for parse
# ---------------------------------------------------------------------------


class TestParse:
    def test_parses_valid_source(self):
        tree = parse(b"def f():\n    return 1\n", "python")
        assert tree.root_node.type == "module"

    def test_syntax_error_raises(self):
        with pytest.raises(ParseError) as exc_info:
            parse(b"def broken(:\n    pass\n", "python", "bad.py")
        assert exc_info.value.path == "bad.py"
        assert "syntax error" in exc_info.value.message

    def test_unknown_language_raises(self):
        with pytest.raises(ParseError):
            parse(b"whatever", "cobol")


# ---------------------------------------------------------------------------
# Tests for iter_units
# ---------------------------------------------------------------------------


class TestIterUnits:
    def _units(self, source, language="python", path="mod.py"):
        data = source.encode("utf-8")
        tree = parse(data, language)
        return list(iter_units(tree, data, path, LANGUAGES[language]))

    def test_emits_nested_units_in_source_order(self):
        units = self._units(PYTHON_SOURCE)
        names = [u.name for u in units]
        assert names == ["outer", "inner", "Greeter", "greet", "shout", "decorated"]

    def test_kinds(self):
        kinds = {u.name: u.kind for u in self._units(PYTHON_SOURCE)}
        assert kinds["outer"] is UnitKind.FUNCTION
        assert kinds["inner"] is UnitKind.FUNCTION
        assert kinds["Greeter"] is UnitKind.CLASS
        assert kinds["greet"] is UnitKind.METHOD
        # A function nested in a method is a plain function again
        assert kinds["shout"] is UnitKind.FUNCTION

    def test_overlapping_spans_are_kept(self):
        units = {u.name: u for u in self._units(PYTHON_SOURCE)}
        outer, inner = units["outer"], units["inner"]
        assert outer.start_line < inner.start_line <= inner.end_line <= outer.end_line
        assert inner.code in outer.code

    def test_lines_are_one_based_and_inclusive(self):
        units = self._units("def a():\n    pass\n\n\ndef b():\n    return 1\n")
        assert [(u.start_line, u.end_line) for u in units] == [(1, 2), (5, 6)]

    def test_code_is_verbatim_span(self):
        source = "x = 1\ndef f(a,  b):\n    return a+b\n"
        (unit,) = self._units(source)
        assert unit.code == "def f(a,  b):\n    return a+b"

    def test_source_hash_is_sha256_of_span(self):
        (unit,) = self._units("def f():\n    return 1\n")
        expected = hashlib.sha256(b"def f():\n    return 1").hexdigest()
        assert unit.source_hash == expected

    def test_extraction_is_deterministic(self):
        first = self._units(PYTHON_SOURCE)
        second = self._units(PYTHON_SOURCE)
        assert first == second

    def test_identical_bodies_share_hash(self):
        a = self._units("def same():\n    return 42\n", path="a.py")
        b = self._units("\n\n\ndef same():\n    return 42\n", path="b.py")
        assert a[0].source_hash == b[0].source_hash
        assert a[0].start_line != b[0].start_line

    def test_is_lazy_iterator(self):
        data = PYTHON_SOURCE.encode()
        tree = parse(data, "python")
        it = iter_units(tree, data, "mod.py", LANGUAGES["python"])
        assert isinstance(it, types.GeneratorType)
        assert next(it).name == "outer"

    def test_javascript_units(self):
        source = """
function greet(name) {
    return `Hello, ${name}!`;
}

class App {
    run() {
        return greet('x');
    }
}
"""
        units = self._units(source, "javascript", "app.js")
        assert [(u.name, u.kind) for u in units] == [
            ("greet", UnitKind.FUNCTION),
            ("App", UnitKind.CLASS),
            ("run", UnitKind.METHOD),
        ]

    def test_javascript_bound_functions(self):
        source = """const double = (x) => {
    return x * 2;
};
let triple = function (x) {
    return x * 3;
};
var gen = function* () {
    yield 1;
};
const limit = 10;
items.map((x) => x + 1);
"""
        units = self._units(source, "javascript", "app.js")
        assert [(u.name, u.kind) for u in units] == [
            ("double", UnitKind.FUNCTION),
            ("triple", UnitKind.FUNCTION),
            ("gen", UnitKind.FUNCTION),
        ]
        assert units[0].code == "double = (x) => {\n    return x * 2;\n}"
        assert (units[1].start_line, units[1].end_line) == (4, 6)

    def test_arrow_inside_bound_function_is_nested_unit(self):
        source = "const outer = () => {\n    const inner = () => 1;\n    return inner;\n};\n"
        units = self._units(source, "javascript", "app.js")
        assert [u.name for u in units] == ["outer", "inner"]

    def test_typescript_bound_functions(self):
        source = """export const parse = (input: string): number => {
    return Number(input);
};

class Service {
    start(): void {}
}
"""
        units = self._units(source, "typescript", "app.ts")
        assert [(u.name, u.kind) for u in units] == [
            ("parse", UnitKind.FUNCTION),
            ("Service", UnitKind.CLASS),
            ("start", UnitKind.METHOD),
        ]

    def test_tsx_bound_component(self):
        source = "const Button = (props: Props) => <button>{props.label}</button>;\n"
        units = self._units(source, "tsx", "Button.tsx")
        assert [(u.name, u.kind) for u in units] == [("Button", UnitKind.FUNCTION)]

    def test_go_units(self):
        source = """package main

func Add(a int, b int) int {
    return a + b
}

func (s *Server) Start() error {
    return nil
}
"""
        units = self._units(source, "go", "main.go")
        assert [(u.name, u.kind) for u in units] == [
            ("Add", UnitKind.FUNCTION),
            ("Start", UnitKind.METHOD),
        ]

    def test_rust_impl_methods(self):
        source = """fn helper() -> i32 { 1 }

impl Point {
    fn norm(&self) -> f64 { 0.0 }
}
"""
        units = self._units(source, "rust", "lib.rs")
        assert [(u.name, u.kind) for u in units] == [
            ("helper", UnitKind.FUNCTION),
            ("Point", UnitKind.CLASS),
            ("norm", UnitKind.METHOD),
        ]

    def test_anonymous_name_constant(self):
        assert ANONYMOUS == "<anonymous>"


# ---------------------------------------------------------------------------
# Tests for extract_file
# ---------------------------------------------------------------------------


class TestExtractFile:
    def test_extracts_with_relative_path(self, tmp_path):
        pkg = tmp_path / "pkg"
        pkg.mkdir()
        f = pkg / "mod.py"
        f.write_text("def f():\n    return 1\n")
        units = extract_file(f, tmp_path)
        assert len(units) == 1
        assert units[0].file_path == "pkg/mod.py"
        assert units[0].language == "python"

    def test_syntax_error_raises_parse_error(self, tmp_path):
        f = tmp_path / "bad.py"
        f.write_text("def broken(:\n    pass\n")
        with pytest.raises(ParseError) as exc_info:
            extract_file(f, tmp_path)
        assert exc_info.value.path == "bad.py"

    def test_invalid_utf8_raises_parse_error(self, tmp_path):
        f = tmp_path / "latin.py"
        f.write_bytes(b"def f():\n    return '\xe9'\n")
        with pytest.raises(ParseError, match="UTF-8"):
            extract_file(f, tmp_path)

    def test_missing_file_raises_parse_error(self, tmp_path):
        with pytest.raises(ParseError, match="cannot read"):
            extract_file(tmp_path / "gone.py", tmp_path)

    def test_unknown_extension_raises_parse_error(self, tmp_path):
        f = tmp_path / "notes.txt"
        f.write_text("hello")
        with pytest.raises(ParseError):
            extract_file(f, tmp_path)

    def test_file_without_units(self, tmp_path):
        f = tmp_path / "consts.py"
        f.write_text("X = 1\nY = 2\n")
        assert extract_file(f, tmp_path) == []


class TestLogicalUnit:
    def test_to_unit_assigns_id(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("def f():\n    pass\n")
        (candidate,) = extract_file(f, tmp_path)
        unit = candidate.to_unit(7)
        assert isinstance(unit, LogicalUnit)
        assert unit.id == 7
        assert unit.source_hash == candidate.source_hash
        assert unit.location == "m.py:1"

    def test_units_are_immutable(self, tmp_path):
        f = tmp_path / "m.py"
        f.write_text("def f():\n    pass\n")
        unit = extract_file(f, tmp_path)[0].to_unit(1)
        with pytest.raises(AttributeError):
            unit.id = 2  # type: ignore[misc]


class TestRelativePath:
    def test_outside_root_keeps_path(self, tmp_path):
        other = tmp_path.parent / "elsewhere.py"
        assert relative_path(other, tmp_path) == other.as_posix()

    def test_no_root(self):
        assert relative_path("a/b.py", None) == "a/b.py"
