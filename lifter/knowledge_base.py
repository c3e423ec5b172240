"""
Safe pointer type knowledge base.

One entry per SafePointerType: the Rust spelling it is rendered with, the
permissions that lead to it, why it is sound, and a before/after example.
Used to render replacement types and by the ``explain_pointer_type`` tool.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from lifter.permissions import SafePointerType


@dataclass
class PointerTypeInfo:
    safe_type: SafePointerType
    template: str           # Rust spelling, {T} is the pointee
    permissions: str        # permission row of the lattice
    rationale: str
    raw_example: str
    safe_example: str


_TYPES: Dict[SafePointerType, PointerTypeInfo] = {
    SafePointerType.IMMUTABLE_REFERENCE: PointerTypeInfo(
        safe_type=SafePointerType.IMMUTABLE_REFERENCE,
        template="&{T}",
        permissions="none",
        rationale="The pointee is only ever read, so a shared borrow covers every use.",
        raw_example="fn get(p: *const Point) -> i32 { p.x() }",
        safe_example="fn get(p: &Point) -> i32 { p.x() }",
    ),
    SafePointerType.MUTABLE_REFERENCE: PointerTypeInfo(
        safe_type=SafePointerType.MUTABLE_REFERENCE,
        template="&mut {T}",
        permissions="Write + Unique",
        rationale="Writes through a pointer that is the only path to the memory "
                  "are exactly what an exclusive borrow allows.",
        raw_example="unsafe fn set(p: *mut i32) { *p = 1; }",
        safe_example="fn set(p: &mut i32) { *p = 1; }",
    ),
    SafePointerType.CELL_REFERENCE: PointerTypeInfo(
        safe_type=SafePointerType.CELL_REFERENCE,
        template="&std::cell::Cell<{T}>",
        permissions="Write",
        rationale="A writable pointer that may be aliased cannot become `&mut`; "
                  "shared mutation needs interior mutability.",
        raw_example="unsafe fn bump(p: *mut i32) { *p += 1; }",
        safe_example="fn bump(p: &std::cell::Cell<i32>) { p.set(p.get() + 1); }",
    ),
    SafePointerType.UNIQUE_POINTER: PointerTypeInfo(
        safe_type=SafePointerType.UNIQUE_POINTER,
        template="Box<{T}>",
        permissions="Unique + Free",
        rationale="A pointer that owns its allocation exclusively and releases it "
                  "is an owning box; `free` becomes `drop`.",
        raw_example="unsafe fn release(p: *mut Node) { free(p as *mut c_void); }",
        safe_example="fn release(p: Box<Node>) { drop(p); }",
    ),
    SafePointerType.IMMUTABLE_SLICE: PointerTypeInfo(
        safe_type=SafePointerType.IMMUTABLE_SLICE,
        template="&[{T}]",
        permissions="Offset",
        rationale="Read-only element access by offset is bounds-checked indexing "
                  "into a shared slice.",
        raw_example="unsafe fn at(p: *const i32, i: isize) -> i32 { *p.offset(i) }",
        safe_example="fn at(p: &[i32], i: isize) -> i32 { p[i as usize] }",
    ),
    SafePointerType.MUTABLE_SLICE: PointerTypeInfo(
        safe_type=SafePointerType.MUTABLE_SLICE,
        template="&mut [{T}]",
        permissions="Write + Unique + Offset",
        rationale="Exclusive element writes by offset are indexing into a mutable slice.",
        raw_example="unsafe fn put(p: *mut i32, i: isize) { *p.offset(i) = 0; }",
        safe_example="fn put(p: &mut [i32], i: isize) { p[i as usize] = 0; }",
    ),
    SafePointerType.UNIQUE_SLICE_POINTER: PointerTypeInfo(
        safe_type=SafePointerType.UNIQUE_SLICE_POINTER,
        template="Box<[{T}]>",
        permissions="Unique + Free + Offset",
        rationale="An exclusively owned array that is indexed and released is a boxed slice.",
        raw_example="unsafe fn sum_free(p: *mut i32) -> i32 { let s = *p.offset(1); free(p as *mut c_void); s }",
        safe_example="fn sum_free(p: Box<[i32]>) -> i32 { let s = p[1]; drop(p); s }",
    ),
    SafePointerType.UNDEFINED: PointerTypeInfo(
        safe_type=SafePointerType.UNDEFINED,
        template="",
        permissions="any other combination",
        rationale="No safe type covers this usage (e.g. Write + Offset without Unique, "
                  "or Free without Unique); the pointer is left raw for manual review.",
        raw_example="unsafe fn fill(q: *mut i32, i: isize) { *q.offset(i) = 0; }",
        safe_example="(unchanged)",
    ),
}


def get_type_info(name) -> Optional[PointerTypeInfo]:
    """Look up an entry by SafePointerType, enum name or Rust spelling
    (``"MUTABLE_SLICE"``, ``"mutable_slice"``, ``"&mut [T]"`` ...)."""
    if isinstance(name, SafePointerType):
        return _TYPES[name]
    key = name.strip()
    for safe_type, info in _TYPES.items():
        if key.upper() == safe_type.name or key.replace(" ", "") == safe_type.value.replace(" ", ""):
            return info
    return None


def get_all_types() -> Dict[SafePointerType, PointerTypeInfo]:
    return dict(_TYPES)


def render_type(safe_type: SafePointerType, pointee: str) -> str:
    """Rust spelling of ``safe_type`` around ``pointee``."""
    if safe_type is SafePointerType.UNDEFINED:
        raise ValueError("Undefined pointer types have no safe spelling")
    return _TYPES[safe_type].template.replace("{T}", pointee)


def format_type_explanation(info: PointerTypeInfo) -> str:
    md = f"## `{info.safe_type.value}` ({info.safe_type.name})\n\n"
    md += f"**Required permissions:** {info.permissions}\n\n"
    md += f"{info.rationale}\n\n"
    md += "### Raw\n```rust\n" + info.raw_example + "\n```\n\n"
    md += "### Safe\n```rust\n" + info.safe_example + "\n```\n"
    return md
