"""
Foreign type conversion — `libc::c_int` → `i32` and friends.

C-to-Rust translators spell every C type through the FFI aliases.  Away
from the foreign boundary those aliases are just the primitive they stand
for (LP64 data model), so they are replaced by it.  Declarations inside
`extern` blocks and the signatures of `extern` functions are left alone;
`c_void` has no primitive and is always kept.
"""

import logging
from typing import Dict, Optional

from tree_sitter import Node

from lifter.base import Pass
from lifter.syntax import Program, find_child, find_enclosing, walk_type

logger = logging.getLogger(__name__)

FFI_PRIMITIVES: Dict[str, str] = {
    "c_char": "i8",
    "c_schar": "i8",
    "c_uchar": "u8",
    "c_short": "i16",
    "c_ushort": "u16",
    "c_int": "i32",
    "c_uint": "u32",
    "c_long": "i64",
    "c_ulong": "u64",
    "c_longlong": "i64",
    "c_ulonglong": "u64",
    "c_float": "f32",
    "c_double": "f64",
}

# libc also carries the size types
_LIBC_ONLY = {"size_t": "usize", "ssize_t": "isize"}

FFI_MODULES = ("libc", "std::os::raw", "core::ffi", "std::ffi")


def primitive_for(path: str) -> Optional[str]:
    """Primitive spelled by a qualified FFI type path, or None."""
    path = path.replace(" ", "").lstrip(":")
    module, _, name = path.rpartition("::")
    if module not in FFI_MODULES:
        return None
    if module == "libc" and name in _LIBC_ONLY:
        return _LIBC_ONLY[name]
    return FFI_PRIMITIVES.get(name)


def _at_foreign_boundary(node: Node) -> bool:
    """Inside an `extern` block, or in the signature of an `extern` fn."""
    if find_enclosing(node, {"foreign_mod_item"}) is not None:
        return True
    function = find_enclosing(node, {"function_item"})
    if function is None:
        return False
    body = function.child_by_field_name("body")
    if body is not None and node.start_byte >= body.start_byte:
        return False
    modifiers = find_child(function, "function_modifiers")
    return modifiers is not None and find_child(modifiers, "extern_modifier") is not None


class FfiTypeConversionPass(Pass):
    """Replaces FFI integer and float aliases with Rust primitives."""

    name = "convert_ffi_types"

    def apply(self, program: Program) -> Program:
        edits = program.edits()
        for node in walk_type(program.root, "scoped_type_identifier"):
            primitive = primitive_for(program.node_text(node))
            if primitive is None or _at_foreign_boundary(node):
                continue
            edits.replace(node, primitive)
        if len(edits):
            logger.debug("Converting %d FFI type reference(s)", len(edits))
        program.apply(edits)
        return program
