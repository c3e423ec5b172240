"""
Syntax facade — tree-sitter-rust parsing, byte-range edits and printing.

A Program owns the raw source bytes of one translation unit and the
tree-sitter tree parsed from them.  Passes never mutate nodes directly;
they collect Edits in an EditSet which the Program splices into its
source bottom-up (so earlier offsets stay valid) before re-parsing.

  • parse(text)            — build a Program or raise ParseError
  • Program.apply(edits)   — splice, re-parse, roll back on parse errors
  • Program.text()         — print back to text
  • walk_all / walk_type / find_child / find_enclosing — traversal helpers
"""

import re
import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple
from dataclasses import dataclass

import tree_sitter_rust as tsrust
from tree_sitter import Language, Parser, Node

from lifter.diagnostics import Diagnostic
from lifter.errors import ParseError

logger = logging.getLogger(__name__)

RUST_LANGUAGE = Language(tsrust.language())
_parser = Parser(RUST_LANGUAGE)

_INT_LITERAL_RE = re.compile(
    r'^(0x[0-9a-fA-F]+|0o[0-7]+|0b[01]+|[0-9]+)'
    r'(?:[iu](?:8|16|32|64|128|size))?$'
)


# ═══════════════════════════════════════════════════════════════════════
#  Edits
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Edit:
    """Replace source[start_byte:end_byte] with text."""
    start_byte: int
    end_byte: int
    text: str

    def contains(self, other: "Edit") -> bool:
        return (self.start_byte <= other.start_byte
                and other.end_byte <= self.end_byte
                and (self.start_byte, self.end_byte) != (other.start_byte, other.end_byte))


class EditSet:
    """
    Edits collected against one Program.

    Edits may nest: a replacement for an outer node is rendered with the
    edits already recorded inside it (see ``render``), and only the
    outermost edits are spliced.  Replacing the same range twice keeps the
    last replacement.
    """

    def __init__(self, program: "Program"):
        self.program = program
        self._edits: Dict[Tuple[int, int], Edit] = {}

    def __len__(self) -> int:
        return len(self._edits)

    def replace(self, node: Node, text: str):
        self.replace_range(node.start_byte, node.end_byte, text)

    def replace_range(self, start: int, end: int, text: str):
        self._edits[(start, end)] = Edit(start, end, text)

    def delete(self, start: int, end: int):
        self.replace_range(start, end, "")

    def render(self, node: Node) -> str:
        """Text of ``node`` with every edit strictly inside it applied."""
        start, end = node.start_byte, node.end_byte
        outer = Edit(start, end, "")
        inner = [e for e in self.outermost() if outer.contains(e)]
        content = bytearray(self.program.source[start:end])
        for edit in sorted(inner, key=lambda e: e.start_byte, reverse=True):
            content[edit.start_byte - start:edit.end_byte - start] = edit.text.encode("utf-8")
        return content.decode("utf-8", errors="replace")

    def outermost(self) -> List[Edit]:
        """Edits not nested inside another edit."""
        edits = list(self._edits.values())
        return [e for e in edits if not any(o.contains(e) for o in edits)]


# ═══════════════════════════════════════════════════════════════════════
#  Program
# ═══════════════════════════════════════════════════════════════════════

class Program:
    """The mutable syntax tree of one translation unit."""

    def __init__(self, source: bytes, tree, diagnostics: Optional[List[Diagnostic]] = None):
        self.source = source
        self.tree = tree
        self.diagnostics: List[Diagnostic] = diagnostics if diagnostics is not None else []

    @property
    def root(self) -> Node:
        return self.tree.root_node

    def text(self) -> str:
        return self.source.decode("utf-8", errors="replace")

    def node_text(self, node: Node) -> str:
        return self.source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")

    def edits(self) -> EditSet:
        return EditSet(self)

    def apply(self, edits: EditSet) -> bool:
        """Splice the outermost edits into the source and re-parse.

        Returns True if the program changed.  If the edited source no
        longer parses, the edits are discarded and the program is left
        exactly as it was.
        """
        if len(edits) == 0:
            return False

        content = bytearray(self.source)
        # Sort edits by start_byte descending to keep offsets valid
        sorted_edits = sorted(edits.outermost(), key=lambda e: e.start_byte, reverse=True)

        applied = 0
        last_start = float('inf')
        for edit in sorted_edits:
            if edit.start_byte < 0 or edit.end_byte > len(content) or edit.start_byte > edit.end_byte:
                logger.warning("Edit out of bounds at %d-%d, skipped", edit.start_byte, edit.end_byte)
                continue
            if edit.end_byte > last_start:
                logger.warning("Overlapping edit at %d-%d, skipped", edit.start_byte, edit.end_byte)
                continue
            content[edit.start_byte:edit.end_byte] = edit.text.encode("utf-8")
            last_start = edit.start_byte
            applied += 1

        if applied == 0:
            return False

        tree = _parser.parse(bytes(content))
        if tree.root_node.has_error:
            logger.error("Rewrite produced unparseable source; rolled back %d edit(s)", applied)
            return False

        self.source = bytes(content)
        self.tree = tree
        return True


def parse(text: str) -> Program:
    """Parse Rust source text into a Program.

    Raises ParseError if the tree contains ERROR or MISSING nodes.
    """
    source = text.encode("utf-8")
    tree = _parser.parse(source)
    if tree.root_node.has_error:
        line, column = _first_error(tree.root_node)
        raise ParseError(f"Source does not parse (first error at {line}:{column})", line, column)
    return Program(source, tree)


def _first_error(root: Node) -> Tuple[int, int]:
    for node in walk_all(root):
        if node.type == "ERROR" or node.is_missing:
            return node.start_point[0] + 1, node.start_point[1] + 1
    return 0, 0


# ────────────────────────────────────────────────────────────────
#  Tree traversal helpers
# ────────────────────────────────────────────────────────────────

def walk_all(node: Node) -> Iterator[Node]:
    """Yield ``node`` and all its descendants in pre-order."""
    cursor = node.walk()
    visited = False
    while True:
        if not visited:
            yield cursor.node
        if not visited and cursor.goto_first_child():
            visited = False
            continue
        if cursor.goto_next_sibling():
            visited = False
            continue
        if cursor.goto_parent():
            visited = True
            continue
        break


def walk_type(node: Node, type_name: str) -> Iterator[Node]:
    """Yield all descendant nodes of a given type."""
    for n in walk_all(node):
        if n.type == type_name:
            yield n


def find_child(node: Node, type_name: str) -> Optional[Node]:
    """Find the first direct child of a given type."""
    for child in node.children:
        if child.type == type_name:
            return child
    return None


def find_enclosing(node: Node, types: Set[str]) -> Optional[Node]:
    """Walk up the tree to find the nearest enclosing node of given types."""
    current = node.parent
    while current:
        if current.type in types:
            return current
        current = current.parent
    return None


def unwrap_parens(node: Optional[Node]) -> Optional[Node]:
    while node is not None and node.type == "parenthesized_expression":
        node = node.named_children[0] if node.named_children else None
    return node


def unary_operator(node: Node) -> str:
    """Operator token of a unary_expression ('*', '-' or '!')."""
    return node.children[0].type if node.children else ""


def is_deref(node: Optional[Node]) -> bool:
    return node is not None and node.type == "unary_expression" and unary_operator(node) == "*"


def deref_operand(node: Node) -> Optional[Node]:
    return unwrap_parens(node.named_children[0]) if node.named_children else None


def statement_expression(stmt: Node) -> Node:
    """The expression carried by a block statement (or the node itself)."""
    if stmt.type == "expression_statement" and stmt.named_children:
        return stmt.named_children[0]
    return stmt


def block_statements(block: Node) -> List[Node]:
    """Statements of a block in source order, comments excluded."""
    return [c for c in block.named_children
            if c.type not in ("line_comment", "block_comment", "label")]


def position(node: Node) -> Tuple[int, int]:
    """1-indexed (line, column) of a node's start."""
    return node.start_point[0] + 1, node.start_point[1] + 1


def parse_int_literal(text: str) -> Optional[int]:
    """Value of a Rust integer literal (suffixes and underscores allowed)."""
    m = _INT_LITERAL_RE.match(text.replace("_", ""))
    if not m:
        return None
    digits = m.group(1)
    if digits[:2] in ("0x", "0o", "0b"):
        return int(digits, 0)
    return int(digits, 10)


def line_extent(program: Program, node: Node) -> Tuple[int, int]:
    """Byte range covering ``node``, widened to its whole line when the
    node is the only thing on that line."""
    source = program.source
    start, end = node.start_byte, node.end_byte

    line_start = source.rfind(b"\n", 0, start) + 1
    line_end = source.find(b"\n", end)
    if line_end == -1:
        line_end = len(source)

    if source[line_start:start].strip() or source[end:line_end].strip():
        return start, end
    if line_end < len(source):
        line_end += 1
    return line_start, line_end
