"""
Loop lowering — rewrites counting `while` loops as range iteration.

    let mut i: i32 = 0 as i32;            let mut i: i32 = 0 as i32;
    while i < n {                  ──▶    for i in 0i32..n {
        body;                                 body;
        i = i + 1;                        }
    }

Only the `while <cond>` header is replaced and the increment statement is
deleted together with its line, so nested loops are lowered in the same
pass with disjoint edits.  The lower bound carries the variable's declared
type (`0i64`, `(0 as libc::c_int)`), so the counter keeps its type inside
the body.  A loop is lowered only if every guard below holds; otherwise it
is left exactly as written.

  • the induction variable was last set from an integer literal (optionally
    through a numeric cast) and is not written between there and the loop
  • the condition is `var < bound` or `var <= bound`, where bound is a
    literal, a recorded variable, or any other identifier
  • the body holds exactly one top-level `var += 1` / `var = var + 1`,
    nothing after it mentions var, and nothing else writes var or bound
  • no unlabelled `continue` targets the loop, and the loop has no label
  • the value var holds after the loop is never read
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from tree_sitter import Node

from lifter.base import Pass
from lifter.syntax import (
    Program, block_statements, find_child, find_enclosing, line_extent,
    parse_int_literal, statement_expression, unary_operator, unwrap_parens,
    walk_all, walk_type,
)
from lifter.visitor import SyntaxVisitor, TraversalContext, walk

logger = logging.getLogger(__name__)

_LOOPS = {"while_expression", "loop_expression", "for_expression"}
_BOUNDARIES = {"function_item", "closure_expression"}
_RANGE_OPERATORS = {"<": "..", "<=": "..="}

_PRIMITIVE_INTEGERS = {
    "i8", "i16", "i32", "i64", "i128", "isize",
    "u8", "u16", "u32", "u64", "u128", "usize",
}
_INTEGER_TYPES = _PRIMITIVE_INTEGERS | {
    "c_char", "c_schar", "c_uchar", "c_short", "c_ushort", "c_int", "c_uint",
    "c_long", "c_ulong", "c_longlong", "c_ulonglong", "size_t", "ssize_t",
}
_SUFFIX_RE = re.compile(r"[iu](?:8|16|32|64|128|size)$")


@dataclass
class InductionVariable:
    name: str
    value: Optional[int]        # None once the value is unknown
    node: Node                  # statement that set it
    type_name: Optional[str] = None     # integer type spelling, if known

    def lower_bound(self) -> str:
        """The recorded value, typed so the range keeps the variable's type."""
        if self.type_name is None:
            return str(self.value)
        if self.type_name in _PRIMITIVE_INTEGERS:
            return f"{self.value}{self.type_name}"
        return f"({self.value} as {self.type_name})"


class InductionScopes:
    """Chain of per-block maps, innermost last."""

    def __init__(self):
        self._frames: List[Dict[str, InductionVariable]] = []

    def push(self):
        self._frames.append({})

    def pop(self):
        self._frames.pop()

    def record(self, var: InductionVariable):
        self._frames[-1][var.name] = var

    def lookup(self, name: str) -> Optional[InductionVariable]:
        for frame in reversed(self._frames):
            if name in frame:
                var = frame[name]
                return var if var.value is not None else None
        return None

    def latest(self, name: str) -> Optional[InductionVariable]:
        """Innermost record of ``name``, known value or not."""
        for frame in reversed(self._frames):
            if name in frame:
                return frame[name]
        return None


@dataclass
class CountingLoop:
    var: InductionVariable
    upper: str
    operator: str
    increment: Node             # block statement to delete


# ────────────────────────────────────────────────────────────────
#  Shape helpers
# ────────────────────────────────────────────────────────────────

def integer_value(node: Optional[Node], program: Program) -> Optional[int]:
    """Value of `7`, `-1`, `0i32`, `0 as i32`, `-1 as libc::c_int`."""
    node = unwrap_parens(node)
    unsigned = False
    if node is not None and node.type == "type_cast_expression":
        ty = node.child_by_field_name("type")
        if ty is None:
            return None
        cast = program.node_text(ty).split("::")[-1].strip()
        if cast not in _INTEGER_TYPES:
            return None
        unsigned = cast.startswith(("u", "c_u")) or cast == "size_t"
        node = unwrap_parens(node.child_by_field_name("value"))

    negative = False
    if node is not None and node.type == "unary_expression" and unary_operator(node) == "-":
        negative = True
        node = unwrap_parens(node.named_children[0]) if node.named_children else None
    if node is None or node.type != "integer_literal":
        return None

    value = parse_int_literal(program.node_text(node))
    if value is None or (negative and unsigned):
        return None
    return -value if negative else value


def integer_type(node: Optional[Node], program: Program) -> Optional[str]:
    """Type spelled by `0 as i64` or `0i64`, if any."""
    node = unwrap_parens(node)
    if node is not None and node.type == "type_cast_expression":
        ty = node.child_by_field_name("type")
        return program.node_text(ty) if ty is not None else None
    if node is not None and node.type == "unary_expression" and node.named_children:
        node = unwrap_parens(node.named_children[0])
    if node is not None and node.type == "integer_literal":
        m = _SUFFIX_RE.search(program.node_text(node))
        return m.group(0) if m else None
    return None


def _is_ident(node: Optional[Node], name: str, program: Program) -> bool:
    return node is not None and node.type == "identifier" and program.node_text(node) == name


def _mentions(node: Node, name: str, program: Program) -> bool:
    return any(_is_ident(n, name, program) for n in walk_type(node, "identifier"))


def _writes(root: Node, name: str, program: Program) -> List[Node]:
    """Assignments, compound assignments and `&mut` borrows of ``name``."""
    found = []
    for n in walk_all(root):
        if n.type in ("assignment_expression", "compound_assignment_expr"):
            if _is_ident(unwrap_parens(n.child_by_field_name("left")), name, program):
                found.append(n)
        elif n.type == "reference_expression":
            if any(c.type == "mutable_specifier" for c in n.children):
                if _is_ident(unwrap_parens(n.child_by_field_name("value")), name, program):
                    found.append(n)
    return found


def _is_unit_increment(expr: Node, name: str, program: Program) -> bool:
    """`name += 1` or `name = name + 1`."""
    expr = unwrap_parens(expr)
    if expr.type not in ("assignment_expression", "compound_assignment_expr"):
        return False
    if not _is_ident(unwrap_parens(expr.child_by_field_name("left")), name, program):
        return False
    right = expr.child_by_field_name("right")
    if expr.type == "compound_assignment_expr":
        operator = expr.child_by_field_name("operator")
        return (operator is not None and program.node_text(operator) == "+="
                and integer_value(right, program) == 1)

    right = unwrap_parens(right)
    if right is None or right.type != "binary_expression":
        return False
    operator = right.child_by_field_name("operator")
    return (operator is not None and program.node_text(operator) == "+"
            and _is_ident(unwrap_parens(right.child_by_field_name("left")), name, program)
            and integer_value(right.child_by_field_name("right"), program) == 1)


def _is_read(ident: Node) -> bool:
    """False for assignment targets and `let` patterns."""
    parent = ident.parent
    if parent is None:
        return True
    if parent.type == "assignment_expression" and parent.child_by_field_name("left") == ident:
        return False
    if parent.type == "mut_pattern":
        return False
    if parent.type == "let_declaration" and parent.child_by_field_name("pattern") == ident:
        return False
    return True


def _resets(stmt: Node, name: str, program: Program) -> bool:
    """True if ``stmt`` overwrites or shadows ``name`` without reading it."""
    expr = unwrap_parens(statement_expression(stmt))
    if expr.type == "assignment_expression":
        right = expr.child_by_field_name("right")
        return (_is_ident(unwrap_parens(expr.child_by_field_name("left")), name, program)
                and right is not None and not _mentions(right, name, program))
    if expr.type == "let_declaration":
        pattern = expr.child_by_field_name("pattern")
        value = expr.child_by_field_name("value")
        return (pattern is not None and _mentions(pattern, name, program)
                and (value is None or not _mentions(value, name, program)))
    return False


def _contains(outer: Node, inner: Node) -> bool:
    return outer.start_byte <= inner.start_byte and inner.end_byte <= outer.end_byte


def _targets(continue_node: Node, loop: Node) -> bool:
    if find_child(continue_node, "label") is not None:
        return False
    return find_enclosing(continue_node, _LOOPS | _BOUNDARIES) == loop


def _dead_after(loop: Node, name: str, program: Program) -> bool:
    """True if the value ``name`` holds when ``loop`` exits is never read.

    Scans the statements following the loop outwards, block by block, until
    one overwrites ``name`` or the function ends.  Leaving the body of an
    enclosing loop means the body runs again, so any read of ``name`` in
    that loop outside ``loop`` counts.
    """
    current = loop
    while True:
        node = current
        while node.parent is not None and node.parent.type != "block":
            node = node.parent
            if node.type in _BOUNDARIES:
                return True
            if node.type in _LOOPS and _read_around(node, loop, name, program):
                return False
        if node.parent is None:
            return True

        block = node.parent
        for stmt in block_statements(block):
            if stmt.start_byte < node.end_byte:
                continue
            if _resets(stmt, name, program):
                return True
            if _mentions(stmt, name, program):
                return False
        current = block


def _read_around(outer: Node, loop: Node, name: str, program: Program) -> bool:
    for ident in walk_type(outer, "identifier"):
        if _contains(loop, ident) or not _is_ident(ident, name, program):
            continue
        if _is_read(ident):
            return True
    return False


# ═══════════════════════════════════════════════════════════════════════
#  Visitor
# ═══════════════════════════════════════════════════════════════════════

class WhileLoopReplacer(SyntaxVisitor):
    """Mutating traversal; ``ctx.scopes`` is an InductionScopes chain."""

    def enter_block(self, node: Node, ctx: TraversalContext):
        ctx.scopes.push()

    def leave_block(self, node: Node, ctx: TraversalContext):
        ctx.scopes.pop()

    def visit_local(self, node: Node, ctx: TraversalContext):
        pattern = node.child_by_field_name("pattern")
        if pattern is None:
            return
        if pattern.type == "mut_pattern" and pattern.named_children:
            pattern = pattern.named_children[-1]
        if pattern.type == "identifier":
            init = node.child_by_field_name("value")
            declared = node.child_by_field_name("type")
            ty = ctx.program.node_text(declared) if declared is not None else integer_type(init, ctx.program)
            value = integer_value(init, ctx.program)
            ctx.scopes.record(InductionVariable(ctx.program.node_text(pattern), value, node, ty))
            return
        # Destructuring shadows whatever it binds
        for ident in walk_type(pattern, "identifier"):
            ctx.scopes.record(InductionVariable(ctx.program.node_text(ident), None, node))

    def visit_stmt(self, node: Node, ctx: TraversalContext):
        expr = unwrap_parens(statement_expression(node))
        if expr.type != "assignment_expression":
            return
        left = unwrap_parens(expr.child_by_field_name("left"))
        if left is None or left.type != "identifier":
            return
        name = ctx.program.node_text(left)
        right = expr.child_by_field_name("right")
        previous = ctx.scopes.latest(name)
        ty = (previous.type_name if previous is not None else None) or integer_type(right, ctx.program)
        ctx.scopes.record(InductionVariable(name, integer_value(right, ctx.program), node, ty))

    def visit_while(self, node: Node, ctx: TraversalContext):
        found = self.match(node, ctx)
        if found is None:
            return
        name = found.var.name
        condition = node.child_by_field_name("condition")
        range_op = _RANGE_OPERATORS[found.operator]
        lower = found.var.lower_bound()
        ctx.replace_range(node.start_byte, condition.end_byte,
                          f"for {name} in {lower}{range_op}{found.upper}")
        ctx.delete(*line_extent(ctx.program, found.increment))
        logger.info("Lowered while loop at line %d to `for %s in %s%s%s`",
                    node.start_point[0] + 1, name, lower, range_op, found.upper)

    def match(self, node: Node, ctx: TraversalContext) -> Optional[CountingLoop]:
        """The counting loop ``node`` lowers to, or None."""
        program = ctx.program
        line = node.start_point[0] + 1
        if find_child(node, "label") is not None:
            return None

        condition = unwrap_parens(node.child_by_field_name("condition"))
        if condition is None or condition.type != "binary_expression":
            return None
        operator = condition.child_by_field_name("operator")
        op = program.node_text(operator) if operator is not None else ""
        if op not in _RANGE_OPERATORS:
            return None
        left = unwrap_parens(condition.child_by_field_name("left"))
        if left is None or left.type != "identifier":
            return None
        name = program.node_text(left)
        var = ctx.scopes.lookup(name)
        if var is None:
            return None

        enclosing = find_enclosing(node, _LOOPS | _BOUNDARIES)
        scope_root = find_enclosing(node, _BOUNDARIES) or program.root

        def settled(v: InductionVariable) -> bool:
            if enclosing is not None and not _contains(enclosing, v.node):
                return False
            return not any(v.node.end_byte <= w.start_byte < node.start_byte
                           for w in _writes(scope_root, v.name, program))

        if not settled(var):
            logger.debug("Loop at line %d: `%s` changes before the loop", line, name)
            return None

        right = unwrap_parens(condition.child_by_field_name("right"))
        bound = None
        if right is not None and right.type == "integer_literal":
            upper = program.node_text(right)
        elif right is not None and right.type == "identifier":
            bound = program.node_text(right)
            recorded = ctx.scopes.lookup(bound)
            if recorded is not None and settled(recorded):
                upper = str(recorded.value)
            else:
                upper = bound
        else:
            return None

        body = node.child_by_field_name("body")
        if body is None:
            return None
        statements = block_statements(body)
        increments = [s for s in statements
                      if _is_unit_increment(statement_expression(s), name, program)]
        if len(increments) != 1:
            logger.debug("Loop at line %d: no single unit increment of `%s`", line, name)
            return None
        increment = increments[0]
        writes = _writes(body, name, program)
        if len(writes) != 1 or writes[0] != unwrap_parens(statement_expression(increment)):
            logger.debug("Loop at line %d: `%s` is written in the body", line, name)
            return None
        if any(_mentions(s, name, program) for s in statements if s.start_byte >= increment.end_byte):
            logger.debug("Loop at line %d: `%s` used after its increment", line, name)
            return None
        if bound is not None and _writes(body, bound, program):
            logger.debug("Loop at line %d: bound `%s` is written in the body", line, bound)
            return None
        if any(_targets(c, node) for c in walk_type(body, "continue_expression")):
            logger.debug("Loop at line %d: body continues", line)
            return None
        if not _dead_after(node, name, program):
            logger.debug("Loop at line %d: `%s` is read after the loop", line, name)
            return None

        return CountingLoop(var=var, upper=upper, operator=op, increment=increment)


class LoopLoweringPass(Pass):
    """Rewrites counting while loops into `for` loops over ranges."""

    name = "replace_while_loops"

    def apply(self, program: Program) -> Program:
        edits = program.edits()
        walk(program, WhileLoopReplacer(), TraversalContext(program, InductionScopes(), edits))
        program.apply(edits)
        return program
