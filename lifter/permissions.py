"""
Permission lattice: which safe pointer type can replace a raw pointer,
given the set of accesses observed on it.

    Write - Unique - Free - Offset  |  Resulting type
                                    |      &T
      X       X                     |      &mut T
      X                             |      &Cell<T>
              X       X             |      Box<T>
                              X     |      &[T]
      X       X               X     |      &mut [T]
              X       X       X     |      Box<[T]>
    (anything else)                 |      Undefined

"Offset" is OffsetAdd, OffsetSub or both.
"""

from enum import Enum
from typing import AbstractSet, Dict, Tuple


class PointerAccess(Enum):
    """A permission a raw pointer needs where it is defined and used."""
    WRITE = "write"            # the program writes to the pointee
    UNIQUE = "unique"          # the only way to reach the memory location
    FREE = "free"              # eventually passed to free
    OFFSET_ADD = "offset_add"  # advanced by an offset (array element access)
    OFFSET_SUB = "offset_sub"  # retreated by an offset


class SafePointerType(Enum):
    IMMUTABLE_REFERENCE = "&T"
    MUTABLE_REFERENCE = "&mut T"
    CELL_REFERENCE = "&Cell<T>"
    UNIQUE_POINTER = "Box<T>"
    IMMUTABLE_SLICE = "&[T]"
    MUTABLE_SLICE = "&mut [T]"
    UNIQUE_SLICE_POINTER = "Box<[T]>"
    UNDEFINED = "undefined"


ACCESSES = (
    PointerAccess.WRITE,
    PointerAccess.UNIQUE,
    PointerAccess.FREE,
    PointerAccess.OFFSET_ADD,
    PointerAccess.OFFSET_SUB,
)

# (write, unique, free, offset) -> type
_TABLE: Dict[Tuple[bool, bool, bool, bool], SafePointerType] = {
    (False, False, False, False): SafePointerType.IMMUTABLE_REFERENCE,
    (True, True, False, False): SafePointerType.MUTABLE_REFERENCE,
    (True, False, False, False): SafePointerType.CELL_REFERENCE,
    (False, True, True, False): SafePointerType.UNIQUE_POINTER,
    (False, False, False, True): SafePointerType.IMMUTABLE_SLICE,
    (True, True, False, True): SafePointerType.MUTABLE_SLICE,
    (False, True, True, True): SafePointerType.UNIQUE_SLICE_POINTER,
}


def determine_safe_type(permissions: AbstractSet[PointerAccess]) -> SafePointerType:
    """Return the safe type for a complete permission set, or UNDEFINED."""
    write, unique, free, offset_add, offset_sub = (a in permissions for a in ACCESSES)
    return _TABLE.get((write, unique, free, offset_add or offset_sub), SafePointerType.UNDEFINED)


def format_permissions(permissions: AbstractSet[PointerAccess]) -> str:
    names = [a.value for a in ACCESSES if a in permissions]
    return "{" + ", ".join(names) + "}"
