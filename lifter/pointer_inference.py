"""
Pointer permission inference — replaces raw pointers with safe types.

One run over a translation unit goes through four steps, driven by the
TypeMappingStateMachine (see phases.py):

  1. Discover    — find every parameter / `let` whose declared type is a
                   raw pointer (`*const T`, `*mut T`)
  2. Accumulate  — walk every use and collect its permissions
                   (Write / Free / OffsetAdd / OffsetSub) and access sites
  3. Resolve     — map each permission set to a SafePointerType
  4. Rewrite     — change declarations and access sites of every binding
                   whose type is defined and whose sites all have a safe
                   equivalent; everything else stays raw with a diagnostic

Shadowing is resolved per declaration site: every `let`, parameter,
`for` / closure / match / `if let` pattern opens a scope entry, and a use
refers to the innermost preceding declaration of its name.

Offset routing:
  • offset(n), wrapping_offset(n)  → OffsetSub if n is negated, else OffsetAdd
  • add(n), wrapping_add(n)        → OffsetAdd
  • sub(n), wrapping_sub(n)        → OffsetSub
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Set, Tuple
from dataclasses import dataclass, field

from tree_sitter import Node

from lifter.base import Pass
from lifter.diagnostics import Diagnostic, INEXPRESSIBLE_ACCESS, UNDEFINED_POINTER_TYPE
from lifter.ffi_types import primitive_for
from lifter.knowledge_base import render_type
from lifter.permissions import (
    PointerAccess, SafePointerType, determine_safe_type, format_permissions,
)
from lifter.phases import TypeMappingStateMachine
from lifter.syntax import (
    Program, EditSet, deref_operand, find_enclosing, is_deref,
    position, unary_operator, unwrap_parens, walk_all, walk_type,
)
from lifter.visitor import SyntaxVisitor, TraversalContext, walk

logger = logging.getLogger(__name__)

_SIGNED_OFFSET_METHODS = {"offset", "wrapping_offset"}
_ADVANCE_METHODS = {"add", "wrapping_add"}
_RETREAT_METHODS = {"sub", "wrapping_sub"}

_REFERENCE_TYPES = {
    SafePointerType.IMMUTABLE_REFERENCE,
    SafePointerType.MUTABLE_REFERENCE,
    SafePointerType.UNIQUE_POINTER,
}
_SLICE_TYPES = {
    SafePointerType.IMMUTABLE_SLICE,
    SafePointerType.MUTABLE_SLICE,
    SafePointerType.UNIQUE_SLICE_POINTER,
}
_BOXED_TYPES = {SafePointerType.UNIQUE_POINTER, SafePointerType.UNIQUE_SLICE_POINTER}

# Inherent raw pointer methods with no counterpart on references or slices
_RAW_POINTER_METHODS = {
    "is_null", "cast", "cast_mut", "cast_const", "as_ref", "as_mut", "read", "write",
    "read_volatile", "write_volatile", "read_unaligned", "write_unaligned", "offset_from",
    "copy_from", "copy_to", "copy_from_nonoverlapping", "copy_to_nonoverlapping",
    "replace", "swap", "drop_in_place", "align_offset", "byte_add", "byte_sub", "byte_offset",
}

_INDEX_TYPES = {"isize", "usize", "i8", "i16", "i32", "i64", "u8", "u16", "u32", "u64"}
_COPY_SCALARS = {
    "i8", "i16", "i32", "i64", "i128", "isize", "u8", "u16", "u32", "u64", "u128", "usize",
    "f32", "f64", "bool", "char",
}
_ATOMIC_EXPRESSIONS = {
    "identifier", "integer_literal", "field_expression", "call_expression",
    "index_expression", "parenthesized_expression",
}

# Sentinel: the site is valid as written under the new type.
_KEEP = object()


# ═══════════════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════════════

class BindingKey(NamedTuple):
    """Declaration site of a binding (1-indexed)."""
    name: str
    line: int
    column: int


class SiteKind(Enum):
    DEREF_READ = "deref_read"                    # *p
    DEREF_WRITE = "deref_write"                  # *p = v, *p += v
    OFFSET_DEREF_READ = "offset_deref_read"      # *p.offset(i)
    OFFSET_DEREF_WRITE = "offset_deref_write"    # *p.offset(i) = v
    METHOD_DEREF_WRITE = "method_deref_write"    # *p.other() = v
    PLACE_WRITE = "place_write"                  # (*p).x = v, &mut *p
    OFFSET = "offset"                            # p.offset(i)
    METHOD = "method"                            # p.other()
    FREE = "free"                                # free(p)
    REASSIGN = "reassign"                        # p = ...
    ESCAPE = "escape"                            # p used as a plain value
    OPAQUE = "opaque"                            # p inside a macro


@dataclass
class AccessSite:
    kind: SiteKind
    node: Node                          # node whose source this site spans
    target: Optional[Node] = None       # lvalue of an assignment site
    value: Optional[Node] = None        # rvalue of an assignment site
    operator: str = "="
    method: Optional[str] = None
    arg: Optional[Node] = None
    access: Optional[PointerAccess] = None
    consumer: Optional[BindingKey] = None    # typed `let` an offset initializes

    @property
    def line(self) -> int:
        return self.node.start_point[0] + 1


@dataclass
class PointerBinding:
    """A raw-pointer-typed name and what the program does with it."""
    name: str
    pointee: Node
    type_node: Node
    decl_node: Node
    line: int
    column: int
    kind: str                   # "parameter" | "local"
    is_mut: bool = False
    permissions: Set[PointerAccess] = field(default_factory=set)
    sites: Dict[Tuple[str, int, int], AccessSite] = field(default_factory=dict)

    @property
    def key(self) -> BindingKey:
        return BindingKey(self.name, self.line, self.column)

    @property
    def init_node(self) -> Optional[Node]:
        if self.kind != "local":
            return None
        return self.decl_node.child_by_field_name("value")

    def record(self, site: AccessSite, access: Optional[PointerAccess] = None):
        """Add a permission and a site; never removes anything."""
        if access is not None:
            self.permissions.add(access)
        self.sites[(site.kind.value, site.node.start_byte, site.node.end_byte)] = site


@dataclass
class Declaration:
    name: str
    scope_start: int
    scope_end: int
    binding: Optional[PointerBinding] = None


class ScopeTable:
    """Every name-introducing declaration of a translation unit."""

    def __init__(self):
        self._decls: Dict[str, List[Declaration]] = {}

    def declare(self, decl: Declaration):
        self._decls.setdefault(decl.name, []).append(decl)

    def resolve(self, name: str, byte: int) -> Optional[Declaration]:
        """Innermost declaration of ``name`` whose scope contains ``byte``."""
        candidates = [d for d in self._decls.get(name, ())
                      if d.scope_start <= byte < d.scope_end]
        if not candidates:
            return None
        return max(candidates, key=lambda d: d.scope_start)

    def binding_at(self, node: Node, program: Program) -> Optional[PointerBinding]:
        decl = self.resolve(program.node_text(node), node.start_byte)
        return decl.binding if decl else None

    def bindings(self) -> Dict[BindingKey, PointerBinding]:
        return {d.binding.key: d.binding
                for decls in self._decls.values() for d in decls
                if d.binding is not None}


# ────────────────────────────────────────────────────────────────
#  Shape helpers
# ────────────────────────────────────────────────────────────────

def declared_identifier(decl: Node) -> Optional[Node]:
    """The identifier bound by a parameter / let with a simple pattern."""
    pattern = decl.child_by_field_name("pattern")
    if pattern is not None and pattern.type == "mut_pattern" and pattern.named_children:
        pattern = pattern.named_children[-1]
    if pattern is not None and pattern.type == "identifier":
        return pattern
    return None


def method_call_parts(call: Node, program: Program) -> Optional[Tuple[Node, str, List[Node]]]:
    """(receiver, method name, arguments) of ``recv.method(args)``."""
    function = call.child_by_field_name("function")
    if function is None or function.type != "field_expression":
        return None
    receiver = unwrap_parens(function.child_by_field_name("value"))
    method = function.child_by_field_name("field")
    if receiver is None or method is None:
        return None
    arguments = call.child_by_field_name("arguments")
    args = [a for a in arguments.named_children
            if a.type not in ("line_comment", "block_comment")] if arguments else []
    return receiver, program.node_text(method), args


def callee_name(call: Node, program: Program) -> Optional[str]:
    """Last path segment of a plain function call (`free`, `libc::free`)."""
    function = call.child_by_field_name("function")
    if function is None:
        return None
    if function.type == "identifier":
        return program.node_text(function)
    if function.type == "scoped_identifier":
        name = function.child_by_field_name("name")
        return program.node_text(name) if name is not None else None
    return None


def strip_casts(node: Optional[Node]) -> Optional[Node]:
    node = unwrap_parens(node)
    while node is not None and node.type == "type_cast_expression":
        node = unwrap_parens(node.child_by_field_name("value"))
    return node


def _is_negated(arg: Node) -> bool:
    inner = strip_casts(arg)
    return inner is not None and inner.type == "unary_expression" and unary_operator(inner) == "-"


def offset_access(method: str, args: List[Node]) -> Optional[PointerAccess]:
    """Permission recorded by a pointer-arithmetic method call, if any."""
    if method in _SIGNED_OFFSET_METHODS and args:
        return PointerAccess.OFFSET_SUB if _is_negated(args[0]) else PointerAccess.OFFSET_ADD
    if method in _ADVANCE_METHODS:
        return PointerAccess.OFFSET_ADD
    if method in _RETREAT_METHODS:
        return PointerAccess.OFFSET_SUB
    return None


def in_write_place(node: Node) -> bool:
    """True if ``node`` is (part of) an assigned or mutably borrowed place:
    `(*p).x = v`, `(*p)[i] += v`, `&mut *p`."""
    current, parent = node, node.parent
    while parent is not None:
        if parent.type == "parenthesized_expression":
            pass
        elif parent.type == "field_expression" and parent.child_by_field_name("value") == current:
            pass
        elif (parent.type == "index_expression" and parent.named_children
              and parent.named_children[0] == current):
            pass
        else:
            break
        current, parent = parent, parent.parent
    if parent is None:
        return False
    if parent.type in ("assignment_expression", "compound_assignment_expr"):
        return parent.child_by_field_name("left") == current
    if parent.type == "reference_expression":
        return any(c.type == "mutable_specifier" for c in parent.children)
    return False


def _is_pointer_cast(node: Node) -> bool:
    ty = node.child_by_field_name("type") if node.type == "type_cast_expression" else None
    return ty is not None and ty.type == "pointer_type"


def offset_consumer(call: Node, program: Program) -> Optional[BindingKey]:
    """Declaration of the typed `let` whose initializer is ``call``
    (`let q: *const T = p.add(1) as *const T;`), if any."""
    current, parent = call, call.parent
    while parent is not None and (parent.type == "parenthesized_expression"
                                  or (_is_pointer_cast(parent)
                                      and parent.child_by_field_name("value") == current)):
        current, parent = parent, parent.parent
    if parent is None or parent.type != "let_declaration":
        return None
    if parent.child_by_field_name("value") != current:
        return None
    ident = declared_identifier(parent)
    if ident is None:
        return None
    line, column = position(ident)
    return BindingKey(program.node_text(ident), line, column)


def coerces_to_raw(ident: Node) -> bool:
    """True if a bare use sits where the compiler coerces a reference back
    to the raw pointer type expected there: a call argument, a typed `let`,
    an assignment, a `return` or a struct field initializer."""
    current, parent = ident, ident.parent
    while parent is not None and parent.type == "parenthesized_expression":
        current, parent = parent, parent.parent
    if parent is None:
        return False
    if parent.type in ("arguments", "return_expression", "shorthand_field_initializer"):
        return True
    if parent.type == "let_declaration":
        return (parent.child_by_field_name("value") == current
                and parent.child_by_field_name("type") is not None)
    if parent.type == "assignment_expression":
        return parent.child_by_field_name("right") == current
    if parent.type == "field_initializer":
        return parent.child_by_field_name("value") == current
    return False


def is_copy_scalar(pointee: Node, text: Callable[[Node], str]) -> bool:
    """Pointee types known to be `Copy` (what `Cell::get` requires)."""
    if pointee.type == "pointer_type":
        return True
    name = text(pointee)
    return name in _COPY_SCALARS or primitive_for(name) is not None


def _pattern_identifiers(pattern: Node) -> List[Node]:
    """Identifiers a pattern binds (paths and match guards excluded)."""
    guard = pattern.child_by_field_name("condition")
    names = []
    for n in walk_all(pattern):
        if n.type != "identifier":
            continue
        if guard is not None and guard.start_byte <= n.start_byte < guard.end_byte:
            continue
        parent = n.parent
        if parent is not None and parent.type == "scoped_identifier":
            continue
        if parent is not None and parent.type in ("tuple_struct_pattern", "struct_pattern"):
            if parent.child_by_field_name("type") == n:
                continue
        names.append(n)
    return names


# ═══════════════════════════════════════════════════════════════════════
#  Phase 1 — Discover
# ═══════════════════════════════════════════════════════════════════════

class BindingDiscoverer(SyntaxVisitor):
    """Declares every parameter and `let`; raw-pointer ones get a binding."""

    def visit_fn_arg(self, node: Node, ctx: TraversalContext):
        owner = find_enclosing(node, {"function_item", "closure_expression",
                                      "function_signature_item"})
        body = owner.child_by_field_name("body") if owner is not None else None
        if body is None:
            return
        self._declare(node, ctx, body.start_byte, body.end_byte, "parameter")

    def visit_local(self, node: Node, ctx: TraversalContext):
        block = find_enclosing(node, {"block"})
        if block is None:
            return
        self._declare(node, ctx, node.end_byte, block.end_byte, "local")

    def _declare(self, node: Node, ctx: TraversalContext, start: int, end: int, kind: str):
        ident = declared_identifier(node)
        if ident is None:
            pattern = node.child_by_field_name("pattern")
            if pattern is not None:
                for n in _pattern_identifiers(pattern):
                    ctx.scopes.declare(Declaration(ctx.program.node_text(n), start, end))
            return

        name = ctx.program.node_text(ident)
        binding = None
        ty = node.child_by_field_name("type")
        if ty is not None and ty.type == "pointer_type":
            pointee = ty.child_by_field_name("type")
            if pointee is not None:
                line, column = position(ident)
                binding = PointerBinding(
                    name=name, pointee=pointee, type_node=ty, decl_node=node,
                    line=line, column=column, kind=kind,
                    is_mut=any(c.type == "mutable_specifier" for c in ty.children),
                )
                logger.debug("Discovered raw pointer %s: %s at %d:%d",
                             name, ctx.program.node_text(ty), line, column)
        ctx.scopes.declare(Declaration(name, start, end, binding))


def _declare_pattern_scopes(program: Program, scopes: ScopeTable):
    """Names bound by for / closure / match / `if let` patterns shadow too."""
    for node in walk_all(program.root):
        pattern, scope = None, None
        if node.type == "for_expression":
            pattern, scope = node.child_by_field_name("pattern"), node.child_by_field_name("body")
        elif node.type == "closure_parameters":
            pattern = node
            closure = node.parent
            scope = closure.child_by_field_name("body") if closure is not None else None
        elif node.type == "match_arm":
            pattern, scope = node.child_by_field_name("pattern"), node
        elif node.type == "let_condition":
            pattern = node.child_by_field_name("pattern")
            owner = node.parent
            if owner is not None and owner.type == "let_chain":
                owner = owner.parent
            if owner is not None:
                scope = owner.child_by_field_name("consequence")
                if scope is None:
                    scope = owner.child_by_field_name("body")
        if pattern is None or scope is None:
            continue
        for ident in _pattern_identifiers(pattern):
            if ident.parent is not None and ident.parent.type == "parameter":
                continue    # typed closure parameters are handled by visit_fn_arg
            scopes.declare(Declaration(program.node_text(ident), scope.start_byte, scope.end_byte))


def discover_bindings(program: Program) -> ScopeTable:
    """Build the scope table of one translation unit (read-only)."""
    scopes = ScopeTable()
    walk(program, BindingDiscoverer(), TraversalContext(program, scopes))
    _declare_pattern_scopes(program, scopes)
    return scopes


# ═══════════════════════════════════════════════════════════════════════
#  Phase 2 — Accumulate
# ═══════════════════════════════════════════════════════════════════════

class PointerAccessCollector(SyntaxVisitor):
    """Records the permissions and access sites of every bound pointer."""

    def __init__(self):
        # Nodes already accounted for by an enclosing shape
        self._claimed: Set[int] = set()
        # Identifier nodes that are part of a recorded site
        self.accounted: Set[int] = set()

    def _binding(self, node: Optional[Node], ctx: TraversalContext) -> Optional[PointerBinding]:
        if node is None or node.type != "identifier":
            return None
        return ctx.scopes.binding_at(node, ctx.program)

    def visit_assign(self, node: Node, ctx: TraversalContext):
        left = unwrap_parens(node.child_by_field_name("left"))
        right = node.child_by_field_name("right")
        operator = node.child_by_field_name("operator")
        op = ctx.program.node_text(operator) if operator is not None else "="

        binding = self._binding(left, ctx)
        if binding is not None:
            self.accounted.add(left.id)
            binding.record(AccessSite(SiteKind.REASSIGN, node))
            return

        if not is_deref(left):
            return
        operand = deref_operand(left)

        binding = self._binding(operand, ctx)
        if binding is not None:
            self._claimed.add(left.id)
            self.accounted.add(operand.id)
            binding.record(AccessSite(SiteKind.DEREF_WRITE, node, target=left,
                                      value=right, operator=op),
                           PointerAccess.WRITE)
            logger.debug("Write through %s at line %d", binding.name, node.start_point[0] + 1)
            return

        if operand is None or operand.type != "call_expression":
            return
        parts = method_call_parts(operand, ctx.program)
        if parts is None:
            return
        receiver, method, args = parts
        binding = self._binding(receiver, ctx)
        if binding is None:
            return

        self._claimed.update((left.id, operand.id))
        self.accounted.add(receiver.id)
        access = offset_access(method, args)
        kind = SiteKind.OFFSET_DEREF_WRITE if access else SiteKind.METHOD_DEREF_WRITE
        site = AccessSite(kind, node, target=left, value=right, operator=op, method=method,
                          arg=args[0] if args else None, access=access)
        binding.record(site, PointerAccess.WRITE)
        if access is not None:
            binding.record(site, access)
        logger.debug("Lvalue access %s.%s at line %d -> %s", binding.name, method,
                     site.line, format_permissions(binding.permissions))

    def visit_deref(self, node: Node, ctx: TraversalContext):
        if node.id in self._claimed:
            return
        operand = deref_operand(node)
        writes = in_write_place(node)

        binding = self._binding(operand, ctx)
        if binding is not None:
            self.accounted.add(operand.id)
            if writes:
                binding.record(AccessSite(SiteKind.PLACE_WRITE, node), PointerAccess.WRITE)
            else:
                binding.record(AccessSite(SiteKind.DEREF_READ, node))
            return

        if operand is None or operand.type != "call_expression":
            return
        parts = method_call_parts(operand, ctx.program)
        if parts is None:
            return
        receiver, method, args = parts
        binding = self._binding(receiver, ctx)
        access = offset_access(method, args)
        if binding is None or access is None:
            return
        self.accounted.add(receiver.id)
        self._claimed.add(operand.id)
        kind = SiteKind.OFFSET_DEREF_WRITE if writes else SiteKind.OFFSET_DEREF_READ
        site = AccessSite(kind, node, target=node, method=method,
                          arg=args[0] if args else None, access=access)
        if writes:
            binding.record(site, PointerAccess.WRITE)
        binding.record(site, access)

    def visit_method_call(self, node: Node, ctx: TraversalContext):
        if node.id in self._claimed:
            return
        parts = method_call_parts(node, ctx.program)
        if parts is None:
            return
        receiver, method, args = parts
        binding = self._binding(receiver, ctx)
        if binding is None:
            return
        self.accounted.add(receiver.id)
        access = offset_access(method, args)
        if access is None:
            binding.record(AccessSite(SiteKind.METHOD, node, method=method))
            return
        binding.record(AccessSite(SiteKind.OFFSET, node, method=method,
                                  arg=args[0] if args else None, access=access,
                                  consumer=offset_consumer(node, ctx.program)),
                       access)
        logger.debug("Pointer arithmetic %s.%s at line %d", binding.name, method,
                     node.start_point[0] + 1)

    def visit_call(self, node: Node, ctx: TraversalContext):
        if callee_name(node, ctx.program) != "free":
            return
        arguments = node.child_by_field_name("arguments")
        args = arguments.named_children if arguments is not None else []
        if not args:
            return
        binding = self._binding(strip_casts(args[0]), ctx)
        if binding is not None:
            self.accounted.add(strip_casts(args[0]).id)
            binding.record(AccessSite(SiteKind.FREE, node), PointerAccess.FREE)


def _collect_macro_uses(program: Program, scopes: ScopeTable):
    """Pointers mentioned inside macro token trees can't be rewritten reliably."""
    for macro in walk_type(program.root, "macro_invocation"):
        for tokens in walk_type(macro, "token_tree"):
            for ident in walk_type(tokens, "identifier"):
                binding = scopes.binding_at(ident, program)
                if binding is not None:
                    binding.record(AccessSite(SiteKind.OPAQUE, ident))


def _collect_escapes(program: Program, scopes: ScopeTable, accounted: Set[int]):
    """Bare uses of a pointer (`bar(p)`, `q = p`) that no site covers."""
    for ident in walk_type(program.root, "identifier"):
        if ident.id in accounted:
            continue
        binding = scopes.binding_at(ident, program)
        if binding is None or find_enclosing(ident, {"token_tree"}) is not None:
            continue
        parent = ident.parent
        if parent is not None and (parent.type in ("mut_pattern", "scoped_identifier")
                                   or parent.child_by_field_name("pattern") == ident):
            continue
        binding.record(AccessSite(SiteKind.ESCAPE, ident))


# ═══════════════════════════════════════════════════════════════════════
#  Phase 4 — Rewrite
# ═══════════════════════════════════════════════════════════════════════

def _index_text(site: AccessSite, text: Callable[[Node], str]) -> str:
    """Slice index equivalent to the offset argument of a site."""
    arg = unwrap_parens(site.arg)
    if arg is None:
        return "0"
    if arg.type == "type_cast_expression":
        ty = arg.child_by_field_name("type")
        inner = unwrap_parens(arg.child_by_field_name("value"))
        if ty is not None and inner is not None and text(ty) in _INDEX_TYPES:
            arg = inner
    value = text(arg)
    if arg.type == "integer_literal" and value.isdigit():
        return value
    if site.method in _ADVANCE_METHODS:
        return value
    if arg.type in _ATOMIC_EXPRESSIONS:
        return f"{value} as usize"
    return f"({value}) as usize"


def _site_edit(site: AccessSite, binding: PointerBinding, safe_type: SafePointerType,
               text: Callable[[Node], str], accepted: Dict[BindingKey, SafePointerType]):
    """(node, replacement) for a site, _KEEP, or None if inexpressible.

    ``accepted`` holds the types of the bindings still expected to be
    rewritten; an offset that initializes another binding depends on it.
    """
    name = binding.name
    kind = site.kind

    if kind in (SiteKind.REASSIGN, SiteKind.METHOD_DEREF_WRITE):
        return None
    if kind is SiteKind.METHOD and site.method in _RAW_POINTER_METHODS:
        return None
    if kind is SiteKind.ESCAPE:
        # &T coerces to *const T only; &mut T coerces to *mut T
        if not coerces_to_raw(site.node):
            return None
        if safe_type is SafePointerType.IMMUTABLE_REFERENCE and not binding.is_mut:
            return _KEEP
        if safe_type is SafePointerType.MUTABLE_REFERENCE and binding.is_mut:
            return _KEEP
        return None
    if kind is SiteKind.FREE:
        return (site.node, f"drop({name})") if safe_type in _BOXED_TYPES else None

    if safe_type in _REFERENCE_TYPES:
        if kind in (SiteKind.DEREF_READ, SiteKind.DEREF_WRITE, SiteKind.PLACE_WRITE,
                    SiteKind.METHOD, SiteKind.OPAQUE):
            return _KEEP
        return None

    if safe_type is SafePointerType.CELL_REFERENCE:
        # Cell::get copies the value out
        copyable = is_copy_scalar(binding.pointee, text)
        if kind is SiteKind.DEREF_READ and copyable:
            return site.node, f"{name}.get()"
        if kind is SiteKind.DEREF_WRITE:
            value = text(site.value)
            if site.operator == "=":
                return site.node, f"{name}.set({value})"
            if copyable:
                return site.node, f"{name}.set({name}.get() {site.operator[:-1]} {value})"
        return None

    # Slices
    if kind in (SiteKind.DEREF_READ, SiteKind.PLACE_WRITE):
        return site.node, f"{name}[0]"
    if kind is SiteKind.DEREF_WRITE:
        return site.target, f"{name}[0]"
    if kind in (SiteKind.OFFSET_DEREF_READ, SiteKind.OFFSET_DEREF_WRITE, SiteKind.OFFSET):
        if site.access is PointerAccess.OFFSET_SUB:
            return None
        index = _index_text(site, text)
        if kind is SiteKind.OFFSET_DEREF_READ:
            return site.node, f"{name}[{index}]"
        if kind is SiteKind.OFFSET_DEREF_WRITE:
            return site.target, f"{name}[{index}]"
        # A bare offset is only expressible as the sub-slice another
        # rewritten slice binding is initialized with.
        consumer = accepted.get(site.consumer) if site.consumer is not None else None
        if consumer is SafePointerType.IMMUTABLE_SLICE:
            return site.node, f"&{name}[{index}..]"
        if consumer is SafePointerType.MUTABLE_SLICE and safe_type is SafePointerType.MUTABLE_SLICE:
            return site.node, f"&mut {name}[{index}..]"
    return None


def _offset_source(value: Node, program: Program, scopes: ScopeTable) -> Optional[PointerBinding]:
    """Binding ``p`` of an initializer `p.offset(n)` / `p.add(n)`."""
    function = value.child_by_field_name("function")
    if function is None or function.type != "field_expression":
        return None
    parts = method_call_parts(value, program)
    if parts is None:
        return None
    receiver, method, args = parts
    if receiver.type != "identifier" or offset_access(method, args) is None:
        return None
    return scopes.binding_at(receiver, program)


def _slice_borrow(value: Node, safe_type: SafePointerType, text: Callable[[Node], str]):
    """`&a[k]` → `&a[k..]`; any other borrowed place has no slice form."""
    place = unwrap_parens(value.child_by_field_name("value"))
    if place is None or place.type != "index_expression":
        return None
    operands = [c for c in place.named_children if c.type not in ("line_comment", "block_comment")]
    if len(operands) != 2 or operands[1].type == "range_expression":
        return None
    is_mut_ref = any(c.type == "mutable_specifier" for c in value.children)
    if safe_type is SafePointerType.MUTABLE_SLICE:
        if not is_mut_ref:
            return None
        return f"&mut {text(operands[0])}[{text(operands[1])}..]"
    if safe_type is SafePointerType.IMMUTABLE_SLICE:
        return f"&{text(operands[0])}[{text(operands[1])}..]"
    return None


def _initializer_edit(binding: PointerBinding, safe_type: SafePointerType,
                      text: Callable[[Node], str], program: Program,
                      scopes: ScopeTable, accepted: Dict[BindingKey, SafePointerType]):
    """(node, replacement) for a local's initializer, _KEEP, or None."""
    init = binding.init_node
    if init is None:
        return _KEEP
    value = unwrap_parens(init)
    if value.type == "type_cast_expression":
        cast_type = value.child_by_field_name("type")
        if cast_type is not None and cast_type.type == "pointer_type":
            value = strip_casts(value)
    if value is None:
        return None

    if value.type == "reference_expression":
        is_mut_ref = any(c.type == "mutable_specifier" for c in value.children)
        if safe_type in _SLICE_TYPES:
            borrow = _slice_borrow(value, safe_type, text)
            return (init, borrow) if borrow is not None else None
        if safe_type is SafePointerType.CELL_REFERENCE:
            return (init, f"std::cell::Cell::from_mut({text(value)})") if is_mut_ref else None
        if safe_type is SafePointerType.MUTABLE_REFERENCE:
            return (init, text(value)) if is_mut_ref else None
        if safe_type is SafePointerType.IMMUTABLE_REFERENCE:
            return init, text(value)
        return None

    if value.type == "call_expression":
        source = _offset_source(value, program, scopes)
        if source is not None:
            # the source's offset site renders the sub-slice
            if safe_type not in (SafePointerType.IMMUTABLE_SLICE, SafePointerType.MUTABLE_SLICE):
                return None
            if accepted.get(source.key) not in _SLICE_TYPES:
                return None
            return _KEEP if value == init else (init, text(value))
        function = value.child_by_field_name("function")
        if function is not None and function.type == "field_expression":
            parts = method_call_parts(value, program)
            if parts is None:
                return None
            receiver, method, _ = parts
            if safe_type is SafePointerType.IMMUTABLE_SLICE and method in ("as_ptr", "as_mut_ptr"):
                return init, f"&{text(receiver)}[..]"
            if safe_type is SafePointerType.MUTABLE_SLICE and method == "as_mut_ptr":
                return init, f"&mut {text(receiver)}[..]"
            return None
        if function is not None and function.type == "scoped_identifier" and safe_type in _BOXED_TYPES:
            if text(function).replace(" ", "").endswith("Box::into_raw"):
                arguments = value.child_by_field_name("arguments")
                if arguments is not None and len(arguments.named_children) == 1:
                    return init, text(arguments.named_children[0])
    return None


class DeclarationRewriter(SyntaxVisitor):
    """Mutating traversal: retypes declarations of accepted bindings."""

    def __init__(self, accepted: Dict[BindingKey, SafePointerType],
                 bindings: Dict[BindingKey, PointerBinding]):
        self.accepted = accepted
        self.bindings = bindings

    def visit_fn_arg(self, node: Node, ctx: TraversalContext):
        self._retype(node, ctx)

    def visit_local(self, node: Node, ctx: TraversalContext):
        binding = self._retype(node, ctx)
        if binding is None:
            return
        edit = _initializer_edit(binding, self.accepted[binding.key], ctx.text, ctx.program,
                                 ctx.scopes, self.accepted)
        if edit is not None and edit is not _KEEP:
            ctx.replace(*edit)

    def _retype(self, node: Node, ctx: TraversalContext) -> Optional[PointerBinding]:
        ident = declared_identifier(node)
        if ident is None:
            return None
        line, column = position(ident)
        key = BindingKey(ctx.program.node_text(ident), line, column)
        if key not in self.accepted:
            return None
        binding = self.bindings[key]
        safe = render_type(self.accepted[key], ctx.text(binding.pointee))
        ctx.replace(binding.type_node, safe)
        return binding


# ═══════════════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════════════

class PointerPermissionEngine:
    """One analysis run over one translation unit."""

    def __init__(self, program: Program):
        self.program = program
        self.state = TypeMappingStateMachine()
        self.diagnostics: List[Diagnostic] = []

    def discover(self) -> Dict[BindingKey, PointerBinding]:
        """Uninitialized → Computing."""
        scopes = discover_bindings(self.program)
        self.state.start_computing(scopes)
        bindings = scopes.bindings()
        logger.debug("Discovered %d raw pointer binding(s)", len(bindings))
        return bindings

    def accumulate(self) -> Dict[BindingKey, PointerBinding]:
        """Collect permissions; only valid while Computing."""
        scopes = self.state.computing().scopes
        collector = PointerAccessCollector()
        walk(self.program, collector, TraversalContext(self.program, scopes))
        _collect_macro_uses(self.program, scopes)
        _collect_escapes(self.program, scopes, collector.accounted)
        return scopes.bindings()

    def resolve(self) -> Dict[BindingKey, SafePointerType]:
        """Computing → Initialized."""
        bindings = self.state.computing().scopes.bindings()
        types = {key: determine_safe_type(b.permissions) for key, b in bindings.items()}
        self.state.finish(types)

        for key, safe_type in types.items():
            binding = bindings[key]
            logger.debug("%s %s resolved to %s", binding.name,
                         format_permissions(binding.permissions), safe_type.value)
            if safe_type is SafePointerType.UNDEFINED:
                self._report(binding, UNDEFINED_POINTER_TYPE,
                             f"No safe type for `{binding.name}` with permissions "
                             f"{format_permissions(binding.permissions)}; left as raw pointer")
        return types

    def rewrite(self) -> EditSet:
        """Edits replacing every expressible binding; requires Initialized."""
        initialized = self.state.initialized()
        bindings = initialized.scopes.bindings()
        edits = self.program.edits()
        ctx = TraversalContext(self.program, initialized.scopes, edits)

        accepted = self._accept(initialized.types, bindings, initialized.scopes)

        # Innermost sites first so enclosing replacements render them
        sites = [(site, bindings[key], safe_type)
                 for key, safe_type in accepted.items()
                 for site in bindings[key].sites.values()]
        sites.sort(key=lambda s: s[0].node.end_byte - s[0].node.start_byte)
        for site, binding, safe_type in sites:
            edit = _site_edit(site, binding, safe_type, ctx.text, accepted)
            if edit is not _KEEP:
                ctx.replace(*edit)

        walk(self.program, DeclarationRewriter(accepted, bindings), ctx)
        for key, safe_type in accepted.items():
            logger.info("Rewrote `%s` to %s", key.name, render_type(safe_type, "T"))
        return edits

    def run(self) -> Program:
        self.discover()
        self.accumulate()
        self.resolve()
        self.program.apply(self.rewrite())
        self.program.diagnostics.extend(self.diagnostics)
        return self.program

    def _accept(self, types: Dict[BindingKey, SafePointerType],
                bindings: Dict[BindingKey, PointerBinding],
                scopes: ScopeTable) -> Dict[BindingKey, SafePointerType]:
        """Bindings whose every site and initializer has a safe form.

        Offsets can tie bindings together (`let q: *const T = p.add(1)`), so
        rejection is repeated until no further binding drops out.
        """
        accepted = {key: t for key, t in types.items() if t is not SafePointerType.UNDEFINED}
        problems: Dict[BindingKey, str] = {}
        while True:
            rejected = {}
            for key, safe_type in accepted.items():
                problem = self._inexpressible(bindings[key], safe_type, scopes, accepted)
                if problem:
                    rejected[key] = problem
            if not rejected:
                break
            for key, problem in rejected.items():
                del accepted[key]
                problems[key] = problem
        for key in types:
            if key in problems:
                self._report(bindings[key], INEXPRESSIBLE_ACCESS, problems[key])
        return accepted

    def _inexpressible(self, binding: PointerBinding, safe_type: SafePointerType,
                       scopes: ScopeTable, accepted: Dict[BindingKey, SafePointerType]) -> Optional[str]:
        text = self.program.node_text
        for site in sorted(binding.sites.values(), key=lambda s: s.node.start_byte):
            if _site_edit(site, binding, safe_type, text, accepted) is None:
                return (f"`{binding.name}` would become {render_type(safe_type, text(binding.pointee))} "
                        f"but its {site.kind.value.replace('_', ' ')} access at line {site.line} "
                        f"has no safe equivalent; left as raw pointer")
        if _initializer_edit(binding, safe_type, text, self.program, scopes, accepted) is None:
            return (f"`{binding.name}` would become {render_type(safe_type, text(binding.pointee))} "
                    f"but its initializer has no safe equivalent; left as raw pointer")
        return None

    def _report(self, binding: PointerBinding, code: str, message: str):
        diagnostic = Diagnostic(code=code, name=binding.name, line=binding.line,
                                column=binding.column, message=message)
        logger.warning("%s", diagnostic)
        self.diagnostics.append(diagnostic)


class RawPointerPass(Pass):
    """Replaces raw pointers with the safe type their usage permits."""

    name = "replace_raw_pointers"

    def apply(self, program: Program) -> Program:
        return PointerPermissionEngine(program).run()
