"""
Traversal capability shared by every pass.

A SyntaxVisitor has one hook per syntactic shape of interest; ``walk``
performs a pre-order traversal of a Program and dispatches the hooks.
Analysis state is never hidden in the traversal: it travels in the
TraversalContext, which is read-only unless it carries an EditSet.
"""

from typing import List, Optional

from tree_sitter import Node

from lifter.syntax import EditSet, Program, is_deref

_NON_STATEMENTS = {"line_comment", "block_comment", "label"}

_HOOKS = {
    "parameter": "visit_fn_arg",
    "let_declaration": "visit_local",
    "assignment_expression": "visit_assign",
    "compound_assignment_expr": "visit_assign",
    "while_expression": "visit_while",
}


class TraversalContext:
    """State threaded through a traversal.

    ``scopes`` is whatever binding table the pass works with.  A context
    built without ``edits`` is read-only.
    """

    def __init__(self, program: Program, scopes=None, edits: Optional[EditSet] = None):
        self.program = program
        self.scopes = scopes
        self.edits = edits

    @property
    def mutable(self) -> bool:
        return self.edits is not None

    def text(self, node: Node) -> str:
        """Source text of a node, with any edits already made inside it."""
        if self.edits is not None:
            return self.edits.render(node)
        return self.program.node_text(node)

    def replace(self, node: Node, text: str):
        self._require_edits().replace(node, text)

    def delete(self, start: int, end: int):
        self._require_edits().delete(start, end)

    def replace_range(self, start: int, end: int, text: str):
        self._require_edits().replace_range(start, end, text)

    def _require_edits(self) -> EditSet:
        if self.edits is None:
            raise RuntimeError("Cannot edit during a read-only traversal")
        return self.edits


class SyntaxVisitor:
    """Base visitor; every hook is a no-op."""

    def enter_block(self, node: Node, ctx: TraversalContext):
        pass

    def leave_block(self, node: Node, ctx: TraversalContext):
        pass

    def visit_stmt(self, node: Node, ctx: TraversalContext):
        pass

    def visit_fn_arg(self, node: Node, ctx: TraversalContext):
        pass

    def visit_local(self, node: Node, ctx: TraversalContext):
        pass

    def visit_assign(self, node: Node, ctx: TraversalContext):
        pass

    def visit_method_call(self, node: Node, ctx: TraversalContext):
        pass

    def visit_call(self, node: Node, ctx: TraversalContext):
        pass

    def visit_deref(self, node: Node, ctx: TraversalContext):
        pass

    def visit_while(self, node: Node, ctx: TraversalContext):
        pass


def walk(program: Program, visitor: SyntaxVisitor, ctx: TraversalContext):
    """Visit every node of ``program`` in pre-order.

    Cursor-based like ``walk_all``, so nesting depth is not bounded by the
    interpreter stack.
    """
    cursor = program.root.walk()
    ancestors: List[Node] = []
    visited = False
    while True:
        node = cursor.node
        if not visited:
            in_block = bool(ancestors) and ancestors[-1].type == "block"
            _visit(node, visitor, ctx, in_block)
            if cursor.goto_first_child():
                ancestors.append(node)
                continue
            if node.type == "block":
                visitor.leave_block(node, ctx)
        if cursor.goto_next_sibling():
            visited = False
            continue
        if cursor.goto_parent():
            parent = ancestors.pop()
            if parent.type == "block":
                visitor.leave_block(parent, ctx)
            visited = True
            continue
        break


def _visit(node: Node, visitor: SyntaxVisitor, ctx: TraversalContext, in_block: bool):
    if in_block and node.is_named and node.type not in _NON_STATEMENTS:
        visitor.visit_stmt(node, ctx)

    hook = _hook_name(node)
    if hook:
        getattr(visitor, hook)(node, ctx)

    if node.type == "block":
        visitor.enter_block(node, ctx)


def _hook_name(node: Node) -> Optional[str]:
    if node.type == "call_expression":
        function = node.child_by_field_name("function")
        if function is not None and function.type == "field_expression":
            return "visit_method_call"
        return "visit_call"
    if is_deref(node):
        return "visit_deref"
    return _HOOKS.get(node.type)
