"""Logical unit extraction with tree-sitter.

A logical unit is a nameable, embeddable block of code: a function, a
method or a class-like block. Each language registers the grammar node
kinds that count as units in ``LANGUAGES``; the mapping is resolved once
per file from its extension.

Extraction is a lazy, single-pass pre-order walk over the syntax tree.
Nested units (a function inside a function, a method inside a class) are
all emitted, overlapping spans included. Every unit carries the SHA-256
digest of its verbatim byte range, so the same bytes under the same
grammar always produce the same hash.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator

import tree_sitter_go
import tree_sitter_javascript
import tree_sitter_python
import tree_sitter_rust
import tree_sitter_typescript
from tree_sitter import Language, Parser

from cearch.errors import ParseError

if TYPE_CHECKING:
    import tree_sitter

logger = logging.getLogger(__name__)

ANONYMOUS = "<anonymous>"


# ── Data Classes ─────────────────────────────────────────────────────────


class UnitKind(str, Enum):
    """Kind of logical unit."""

    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"


@dataclass(frozen=True)
class UnitCandidate:
    """A logical unit as extracted from one file, before it gets an id."""

    file_path: str
    language: str
    kind: UnitKind
    name: str
    start_line: int
    end_line: int
    source_hash: str
    code: str

    def to_unit(self, unit_id: int) -> LogicalUnit:
        return LogicalUnit(
            id=unit_id,
            file_path=self.file_path,
            language=self.language,
            kind=self.kind,
            name=self.name,
            start_line=self.start_line,
            end_line=self.end_line,
            source_hash=self.source_hash,
            code=self.code,
        )


@dataclass(frozen=True)
class LogicalUnit:
    """An indexed logical unit. Immutable once written to the store."""

    id: int
    file_path: str
    language: str
    kind: UnitKind
    name: str
    start_line: int
    end_line: int
    source_hash: str
    code: str

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}"


# ── Language Registry ────────────────────────────────────────────────────


@dataclass(frozen=True)
class LanguageConfig:
    """Grammar and embeddable node kinds for one language."""

    name: str
    extensions: tuple[str, ...]
    grammar: Callable[[], Any]
    function_kinds: frozenset[str]
    method_kinds: frozenset[str] = frozenset()
    class_kinds: frozenset[str] = frozenset()
    # Anonymous function values that become units when bound to a variable
    bound_function_kinds: frozenset[str] = frozenset()

    def kind_of(self, node_type: str, in_class: bool) -> UnitKind | None:
        """Return the unit kind for a node type, or None if not embeddable."""
        if node_type in self.method_kinds:
            return UnitKind.METHOD
        if node_type in self.function_kinds:
            return UnitKind.METHOD if in_class else UnitKind.FUNCTION
        if node_type in self.class_kinds:
            return UnitKind.CLASS
        return None

    def classify(self, node: tree_sitter.Node, in_class: bool) -> UnitKind | None:
        """Like ``kind_of``, also matching ``const f = () => ...`` declarators."""
        kind = self.kind_of(node.type, in_class)
        if kind is None and node.type == "variable_declarator" and self.bound_function_kinds:
            value = node.child_by_field_name("value")
            if value is not None and value.type in self.bound_function_kinds:
                return UnitKind.FUNCTION
        return kind


_JS_FUNCTIONS = frozenset({"function_declaration", "generator_function_declaration"})
_JS_METHODS = frozenset({"method_definition"})
_JS_CLASSES = frozenset({"class_declaration", "abstract_class_declaration"})
_JS_BOUND_FUNCTIONS = frozenset({"arrow_function", "function_expression", "generator_function"})

LANGUAGES: dict[str, LanguageConfig] = {
    "python": LanguageConfig(
        name="python",
        extensions=(".py", ".pyw", ".pyi"),
        grammar=tree_sitter_python.language,
        function_kinds=frozenset({"function_definition"}),
        class_kinds=frozenset({"class_definition"}),
    ),
    "javascript": LanguageConfig(
        name="javascript",
        extensions=(".js", ".mjs", ".cjs", ".jsx"),
        grammar=tree_sitter_javascript.language,
        function_kinds=_JS_FUNCTIONS,
        method_kinds=_JS_METHODS,
        class_kinds=_JS_CLASSES,
        bound_function_kinds=_JS_BOUND_FUNCTIONS,
    ),
    "typescript": LanguageConfig(
        name="typescript",
        extensions=(".ts", ".mts", ".cts"),
        grammar=tree_sitter_typescript.language_typescript,
        function_kinds=_JS_FUNCTIONS,
        method_kinds=_JS_METHODS,
        class_kinds=_JS_CLASSES,
        bound_function_kinds=_JS_BOUND_FUNCTIONS,
    ),
    "tsx": LanguageConfig(
        name="tsx",
        extensions=(".tsx",),
        grammar=tree_sitter_typescript.language_tsx,
        function_kinds=_JS_FUNCTIONS,
        method_kinds=_JS_METHODS,
        class_kinds=_JS_CLASSES,
        bound_function_kinds=_JS_BOUND_FUNCTIONS,
    ),
    "go": LanguageConfig(
        name="go",
        extensions=(".go",),
        grammar=tree_sitter_go.language,
        function_kinds=frozenset({"function_declaration"}),
        method_kinds=frozenset({"method_declaration"}),
    ),
    "rust": LanguageConfig(
        name="rust",
        extensions=(".rs",),
        grammar=tree_sitter_rust.language,
        function_kinds=frozenset({"function_item"}),
        class_kinds=frozenset({"impl_item", "trait_item"}),
    ),
}

_EXTENSION_TO_LANGUAGE = {
    ext: cfg.name for cfg in LANGUAGES.values() for ext in cfg.extensions
}


def language_for_path(path: str | Path) -> LanguageConfig | None:
    """Resolve the language config for a file from its extension."""
    name = _EXTENSION_TO_LANGUAGE.get(Path(path).suffix.lower())
    return LANGUAGES[name] if name else None


# ── Parsing ──────────────────────────────────────────────────────────────

# tree-sitter parsers are not thread safe, so each worker keeps its own
_local = threading.local()


def _get_parser(language: str) -> Parser:
    """Get or create this thread's parser for the language."""
    parsers: dict[str, Parser] | None = getattr(_local, "parsers", None)
    if parsers is None:
        parsers = _local.parsers = {}

    parser = parsers.get(language)
    if parser is None:
        config = LANGUAGES[language]
        parser = Parser(Language(config.grammar()))
        parsers[language] = parser
    return parser


def parse(source: bytes, language: str, path: str = "<source>") -> tree_sitter.Tree:
    """Parse *source* with the grammar registered for *language*.

    Raises:
        ParseError: If the language is unknown or the source has syntax errors.
    """
    if language not in LANGUAGES:
        raise ParseError(path, f"no grammar registered for '{language}'")

    tree = _get_parser(language).parse(source)
    if tree is None:
        raise ParseError(path, "parser returned no tree")
    if tree.root_node.has_error:
        row = _first_error_row(tree.root_node)
        where = f" near line {row + 1}" if row is not None else ""
        raise ParseError(path, f"syntax error{where}")
    return tree


def _first_error_row(node: tree_sitter.Node) -> int | None:
    """Return the row of the first ERROR or MISSING node, if any."""
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type == "ERROR" or current.is_missing:
            return current.start_point[0]
        if current.has_error:
            stack.extend(reversed(current.children))
    return None


# ── Extraction ───────────────────────────────────────────────────────────


def _node_name(node: tree_sitter.Node, source: bytes) -> str:
    """Return the identifier of a unit node."""
    for field_name in ("name", "type"):
        child = node.child_by_field_name(field_name)
        if child is not None:
            return source[child.start_byte : child.end_byte].decode(
                "utf-8", errors="replace"
            )
    return ANONYMOUS


def source_hash(data: bytes) -> str:
    """Content digest used for change detection."""
    return hashlib.sha256(data).hexdigest()


def iter_units(
    tree: tree_sitter.Tree, source: bytes, file_path: str, config: LanguageConfig
) -> Iterator[UnitCandidate]:
    """Yield logical unit candidates in source order.

    The walk is lazy and single-pass; restarting it needs the tree again.
    A function directly inside a class body is a method, a function inside
    a method is a plain function again.
    """
    # (node, inside a class body)
    stack: list[tuple[tree_sitter.Node, bool]] = [(tree.root_node, False)]
    while stack:
        node, in_class = stack.pop()
        kind = config.classify(node, in_class)

        if kind is not None:
            span = source[node.start_byte : node.end_byte]
            yield UnitCandidate(
                file_path=file_path,
                language=config.name,
                kind=kind,
                name=_node_name(node, source),
                start_line=node.start_point[0] + 1,
                end_line=node.end_point[0] + 1,
                source_hash=source_hash(span),
                code=span.decode("utf-8", errors="replace"),
            )

        if kind is UnitKind.CLASS:
            child_in_class = True
        elif kind is not None:
            child_in_class = False
        else:
            child_in_class = in_class

        for child in reversed(node.children):
            stack.append((child, child_in_class))


def relative_path(path: str | Path, root: str | Path | None) -> str:
    """Return *path* relative to *root* with POSIX separators."""
    p = Path(path)
    if root is not None:
        try:
            p = p.resolve().relative_to(Path(root).resolve())
        except ValueError:
            pass
    return p.as_posix()


def extract_file(path: str | Path, root: str | Path | None = None) -> list[UnitCandidate]:
    """Read, parse and extract every logical unit of one file.

    Raises:
        ParseError: If the file cannot be read, decoded or parsed.
    """
    display_path = relative_path(path, root)
    config = language_for_path(path)
    if config is None:
        raise ParseError(display_path, "no grammar registered for this extension")

    try:
        source = Path(path).read_bytes()
        source.decode("utf-8")
    except OSError as exc:
        raise ParseError(display_path, f"cannot read file: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ParseError(display_path, f"not valid UTF-8: {exc.reason}") from exc

    tree = parse(source, config.name, display_path)
    units = list(iter_units(tree, source, display_path, config))
    logger.debug("Extracted %d units from %s", len(units), display_path)
    return units
