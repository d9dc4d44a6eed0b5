"""
Structural boundary detection using tree-sitter.

One capability serves every grammar in tree-sitter-language-pack that has
a node table below. Top-level definitions become chunks; classes that are
too large are opened up so their members become chunks of their own.
Any syntax error in the tree makes the whole file a ParseFailure, which
the boundary detector turns into a whole-file chunk.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from tree_sitter_language_pack import get_parser

from ..errors import ParseFailure
from .boundary_detector import ChunkKind, ChunkSpan

logger = logging.getLogger(__name__)

FUNCTION = ChunkKind.FUNCTION.value
CLASS = ChunkKind.CLASS.value

_JS_TYPES = {
    "function_declaration": FUNCTION,
    "generator_function_declaration": FUNCTION,
    "method_definition": FUNCTION,
    "class_declaration": CLASS,
}
_TS_TYPES = dict(
    _JS_TYPES,
    abstract_class_declaration=CLASS,
    interface_declaration=CLASS,
    type_alias_declaration=CLASS,
    enum_declaration=CLASS,
)
_C_TYPES = {
    "function_definition": FUNCTION,
    "struct_specifier": CLASS,
    "union_specifier": CLASS,
    "enum_specifier": CLASS,
}

# node type -> chunk kind, per grammar name
NODE_TYPES: Dict[str, Dict[str, str]] = {
    "python": {"function_definition": FUNCTION, "class_definition": CLASS},
    "javascript": _JS_TYPES,
    "typescript": _TS_TYPES,
    "tsx": _TS_TYPES,
    "go": {
        "function_declaration": FUNCTION,
        "method_declaration": FUNCTION,
        "type_declaration": CLASS,
    },
    "rust": {
        "function_item": FUNCTION,
        "struct_item": CLASS,
        "enum_item": CLASS,
        "union_item": CLASS,
        "trait_item": CLASS,
        "impl_item": CLASS,
        "mod_item": CLASS,
    },
    "java": {
        "method_declaration": FUNCTION,
        "constructor_declaration": FUNCTION,
        "class_declaration": CLASS,
        "interface_declaration": CLASS,
        "enum_declaration": CLASS,
        "record_declaration": CLASS,
    },
    "kotlin": {
        "function_declaration": FUNCTION,
        "class_declaration": CLASS,
        "object_declaration": CLASS,
    },
    "c": _C_TYPES,
    "cpp": dict(_C_TYPES, class_specifier=CLASS, namespace_definition=CLASS),
    "csharp": {
        "method_declaration": FUNCTION,
        "constructor_declaration": FUNCTION,
        "local_function_statement": FUNCTION,
        "class_declaration": CLASS,
        "interface_declaration": CLASS,
        "struct_declaration": CLASS,
        "enum_declaration": CLASS,
        "record_declaration": CLASS,
        "namespace_declaration": CLASS,
    },
    "ruby": {
        "method": FUNCTION,
        "singleton_method": FUNCTION,
        "class": CLASS,
        "module": CLASS,
    },
    "php": {
        "function_definition": FUNCTION,
        "method_declaration": FUNCTION,
        "class_declaration": CLASS,
        "interface_declaration": CLASS,
        "trait_declaration": CLASS,
    },
    "swift": {
        "function_declaration": FUNCTION,
        "class_declaration": CLASS,
        "protocol_declaration": CLASS,
    },
    "scala": {
        "function_definition": FUNCTION,
        "class_definition": CLASS,
        "object_definition": CLASS,
        "trait_definition": CLASS,
    },
    "lua": {"function_declaration": FUNCTION},
    "bash": {"function_definition": FUNCTION},
}

# Nodes that take the kind of the definition they wrap, so decorators,
# export keywords and template headers stay attached to it.
WRAPPER_TYPES = {
    "decorated_definition",
    "export_statement",
    "template_declaration",
    "type_definition",
    "declaration",
    "lexical_declaration",
}

# Values that turn `const f = () => {}` into a function chunk.
FUNCTION_VALUE_TYPES = {"arrow_function", "function_expression", "function"}

MAX_DESCENT = 8


class TreeSitterDetector:
    """Boundary capability backed by tree-sitter grammars."""

    def __init__(
        self,
        chunk_size: int = 2000,
        node_types: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.chunk_size = chunk_size
        self.node_types = node_types or NODE_TYPES
        self._parsers: Dict[str, Any] = {}
        self._unavailable: set = set()
        self._lock = threading.Lock()

    def supports(self, language: str) -> bool:
        if language not in self.node_types or language in self._unavailable:
            return False
        return self._get_parser(language) is not None

    def _get_parser(self, language: str) -> Optional[Any]:
        parser = self._parsers.get(language)
        if parser is not None:
            return parser
        try:
            parser = get_parser(language)  # type: ignore[arg-type]
        except (LookupError, ValueError) as e:
            logger.debug(f"No tree-sitter grammar for {language}: {e}")
            self._unavailable.add(language)
            return None
        except Exception as e:
            # Grammar downloads can fail offline; block chunking takes over.
            logger.warning(f"Could not load tree-sitter grammar for {language}: {e}")
            self._unavailable.add(language)
            return None
        self._parsers[language] = parser
        return parser

    def spans(self, source: bytes, language: str, path: str) -> List[ChunkSpan]:
        parser = self._get_parser(language)
        if parser is None:
            raise ParseFailure(path, f"no grammar for {language}")

        try:
            with self._lock:
                tree = parser.parse(source)
        except Exception as e:
            raise ParseFailure(path, f"tree-sitter failed: {e}") from e

        root = tree.root_node
        if root is None:
            raise ParseFailure(path, "empty syntax tree")
        if root.has_error:
            raise ParseFailure(path, "syntax errors in file")

        types = self.node_types[language]
        spans: List[ChunkSpan] = []
        self._collect(root, types, source, spans, depth=0)
        return spans

    def _collect(
        self,
        node: Any,
        types: Dict[str, str],
        source: bytes,
        spans: List[ChunkSpan],
        depth: int,
    ) -> None:
        for child in node.children:
            region = self._region(child, types)
            if region is None:
                if depth < MAX_DESCENT and child.named_child_count:
                    self._collect(child, types, source, spans, depth + 1)
                continue

            kind, inner = region
            size = child.end_byte - child.start_byte
            if kind == CLASS and size > self.chunk_size and self._has_members(
                inner, types
            ):
                # Large container: members become chunks, the rest is filled
                # in as block chunks by the boundary detector.
                self._collect(inner, types, source, spans, depth + 1)
                continue

            spans.append(
                ChunkSpan(kind, child.start_byte, child.end_byte, self._name(inner, source))
            )

    def _region(self, node: Any, types: Dict[str, str]) -> Optional[Tuple[str, Any]]:
        """Kind of the definition a node represents, with the defining node."""
        kind = types.get(node.type)
        if kind is not None:
            return kind, node
        if node.type in WRAPPER_TYPES:
            return self._wrapped(node, types, depth=0)
        return None

    def _wrapped(
        self, node: Any, types: Dict[str, str], depth: int
    ) -> Optional[Tuple[str, Any]]:
        if depth > 2:
            return None
        for child in node.named_children:
            kind = types.get(child.type)
            if kind is not None:
                if kind == CLASS and not self._has_body(child):
                    continue
                return kind, child
            if child.type in FUNCTION_VALUE_TYPES:
                return FUNCTION, node
            found = self._wrapped(child, types, depth + 1)
            if found is not None:
                return found
        return None

    @staticmethod
    def _has_body(node: Any) -> bool:
        """True for definitions, false for bare references like `struct foo x;`."""
        return node.child_by_field_name("body") is not None or node.named_child_count > 1

    def _has_members(self, node: Any, types: Dict[str, str]) -> bool:
        stack = list(node.named_children)
        while stack:
            current = stack.pop()
            if current.type in types or current.type in WRAPPER_TYPES:
                if self._region(current, types) is not None:
                    return True
            else:
                stack.extend(current.named_children)
        return False

    @staticmethod
    def _name(node: Any, source: bytes) -> Optional[str]:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            for child in node.named_children:
                if child.type == "variable_declarator":
                    name_node = child.child_by_field_name("name")
                    break
        if name_node is None:
            return None
        return source[name_node.start_byte : name_node.end_byte].decode(
            "utf-8", errors="replace"
        )
