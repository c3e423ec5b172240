
import itertools
import unittest
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from lifter.permissions import (
    ACCESSES, PointerAccess, SafePointerType, determine_safe_type, format_permissions,
)
from lifter.knowledge_base import (
    format_type_explanation, get_all_types, get_type_info, render_type,
)

W = PointerAccess.WRITE
U = PointerAccess.UNIQUE
F = PointerAccess.FREE
ADD = PointerAccess.OFFSET_ADD
SUB = PointerAccess.OFFSET_SUB


def expected_type(perms):
    write, unique, free = W in perms, U in perms, F in perms
    offset = ADD in perms or SUB in perms
    rows = {
        (False, False, False, False): SafePointerType.IMMUTABLE_REFERENCE,
        (True, True, False, False): SafePointerType.MUTABLE_REFERENCE,
        (True, False, False, False): SafePointerType.CELL_REFERENCE,
        (False, True, True, False): SafePointerType.UNIQUE_POINTER,
        (False, False, False, True): SafePointerType.IMMUTABLE_SLICE,
        (True, True, False, True): SafePointerType.MUTABLE_SLICE,
        (False, True, True, True): SafePointerType.UNIQUE_SLICE_POINTER,
    }
    return rows.get((write, unique, free, offset), SafePointerType.UNDEFINED)


class TestPermissionLattice(unittest.TestCase):

    def test_all_32_combinations(self):
        """Every subset of the five permissions maps to its table row."""
        seen = 0
        for bits in itertools.product((False, True), repeat=5):
            perms = {a for a, on in zip(ACCESSES, bits) if on}
            with self.subTest(perms=format_permissions(perms)):
                self.assertEqual(determine_safe_type(perms), expected_type(perms))
            seen += 1
        self.assertEqual(seen, 32)

    def test_positive_rows(self):
        self.assertEqual(determine_safe_type(set()), SafePointerType.IMMUTABLE_REFERENCE)
        self.assertEqual(determine_safe_type({W, U}), SafePointerType.MUTABLE_REFERENCE)
        self.assertEqual(determine_safe_type({W}), SafePointerType.CELL_REFERENCE)
        self.assertEqual(determine_safe_type({U, F}), SafePointerType.UNIQUE_POINTER)
        self.assertEqual(determine_safe_type({ADD}), SafePointerType.IMMUTABLE_SLICE)
        self.assertEqual(determine_safe_type({SUB}), SafePointerType.IMMUTABLE_SLICE)
        self.assertEqual(determine_safe_type({ADD, SUB}), SafePointerType.IMMUTABLE_SLICE)
        self.assertEqual(determine_safe_type({W, U, SUB}), SafePointerType.MUTABLE_SLICE)
        self.assertEqual(determine_safe_type({U, F, ADD}), SafePointerType.UNIQUE_SLICE_POINTER)

    def test_free_without_unique_is_undefined(self):
        self.assertEqual(determine_safe_type({F}), SafePointerType.UNDEFINED)
        self.assertEqual(determine_safe_type({F, ADD}), SafePointerType.UNDEFINED)

    def test_write_with_offset_without_unique_is_undefined(self):
        self.assertEqual(determine_safe_type({W, ADD}), SafePointerType.UNDEFINED)

    def test_exactly_seven_defined_results(self):
        results = set()
        for bits in itertools.product((False, True), repeat=5):
            perms = {a for a, on in zip(ACCESSES, bits) if on}
            results.add(determine_safe_type(perms))
        results.discard(SafePointerType.UNDEFINED)
        self.assertEqual(len(results), 7)

    def test_format_permissions_is_ordered(self):
        self.assertEqual(format_permissions({ADD, W}), "{write, offset_add}")
        self.assertEqual(format_permissions(set()), "{}")


class TestKnowledgeBase(unittest.TestCase):

    def test_every_type_has_an_entry(self):
        self.assertEqual(set(get_all_types()), set(SafePointerType))

    def test_lookup_by_name_and_spelling(self):
        self.assertIs(get_type_info("MUTABLE_SLICE").safe_type, SafePointerType.MUTABLE_SLICE)
        self.assertIs(get_type_info("mutable_slice").safe_type, SafePointerType.MUTABLE_SLICE)
        self.assertIs(get_type_info("&mut [T]").safe_type, SafePointerType.MUTABLE_SLICE)
        self.assertIs(get_type_info("Box<T>").safe_type, SafePointerType.UNIQUE_POINTER)
        self.assertIsNone(get_type_info("Rc<T>"))

    def test_render_type(self):
        self.assertEqual(render_type(SafePointerType.IMMUTABLE_REFERENCE, "i32"), "&i32")
        self.assertEqual(render_type(SafePointerType.MUTABLE_REFERENCE, "i32"), "&mut i32")
        self.assertEqual(render_type(SafePointerType.CELL_REFERENCE, "i32"), "&std::cell::Cell<i32>")
        self.assertEqual(render_type(SafePointerType.UNIQUE_POINTER, "Node"), "Box<Node>")
        self.assertEqual(render_type(SafePointerType.IMMUTABLE_SLICE, "u8"), "&[u8]")
        self.assertEqual(render_type(SafePointerType.MUTABLE_SLICE, "u8"), "&mut [u8]")
        self.assertEqual(render_type(SafePointerType.UNIQUE_SLICE_POINTER, "u8"), "Box<[u8]>")

    def test_render_undefined_raises(self):
        with self.assertRaises(ValueError):
            render_type(SafePointerType.UNDEFINED, "i32")

    def test_explanation_markdown(self):
        md = format_type_explanation(get_type_info("CELL_REFERENCE"))
        self.assertIn("&Cell<T>", md)
        self.assertIn("**Required permissions:** Write", md)
        self.assertIn("```rust", md)


if __name__ == '__main__':
    unittest.main()
