
import unittest
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from lifter.diagnostics import INEXPRESSIBLE_ACCESS, UNDEFINED_POINTER_TYPE
from lifter.errors import PhaseTransitionError
from lifter.permissions import PointerAccess, SafePointerType
from lifter.phases import Computing, Initialized, Uninitialized
from lifter.pointer_inference import (
    BindingKey, PointerPermissionEngine, RawPointerPass, discover_bindings,
)
from lifter.syntax import parse


def lift_pointers(source: str):
    program = RawPointerPass().apply(parse(source))
    return program.text(), program.diagnostics


def analyze(source: str):
    engine = PointerPermissionEngine(parse(source))
    engine.discover()
    bindings = engine.accumulate()
    types = engine.resolve()
    return engine, bindings, types


SCENARIO_A = """struct Point { x: i32 }
unsafe fn get(p: *const Point) -> i32 {
    p.x()
}
"""

SCENARIO_B = """unsafe fn fill(buf: &mut [i32], i: isize, v: i32) {
    let q: *mut i32 = buf.as_mut_ptr();
    *q.offset(i) = v;
}
"""


class TestScenarios(unittest.TestCase):

    def test_scenario_a_read_only_method_is_immutable_reference(self):
        _, bindings, types = analyze(SCENARIO_A)
        key = BindingKey("p", 2, 15)
        self.assertIn(key, bindings)
        self.assertEqual(bindings[key].permissions, set())
        self.assertEqual(types[key], SafePointerType.IMMUTABLE_REFERENCE)

        text, diagnostics = lift_pointers(SCENARIO_A)
        self.assertIn("unsafe fn get(p: &Point) -> i32 {", text)
        self.assertIn("    p.x()\n", text)
        self.assertEqual(diagnostics, [])

    def test_scenario_b_write_through_offset_is_undefined(self):
        _, bindings, types = analyze(SCENARIO_B)
        key = BindingKey("q", 2, 9)
        self.assertEqual(bindings[key].permissions,
                         {PointerAccess.WRITE, PointerAccess.OFFSET_ADD})
        self.assertEqual(types[key], SafePointerType.UNDEFINED)

        text, diagnostics = lift_pointers(SCENARIO_B)
        self.assertEqual(text, SCENARIO_B)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].code, UNDEFINED_POINTER_TYPE)
        self.assertEqual((diagnostics[0].name, diagnostics[0].line), ("q", 2))


class TestPhases(unittest.TestCase):

    def test_state_advances_forward(self):
        engine = PointerPermissionEngine(parse(SCENARIO_A))
        self.assertIsInstance(engine.state.state, Uninitialized)
        engine.discover()
        self.assertIsInstance(engine.state.state, Computing)
        engine.accumulate()
        self.assertIsInstance(engine.state.state, Computing)
        engine.resolve()
        self.assertIsInstance(engine.state.state, Initialized)

    def test_rewrite_before_resolve_is_an_error(self):
        engine = PointerPermissionEngine(parse(SCENARIO_A))
        with self.assertRaises(PhaseTransitionError):
            engine.rewrite()
        engine.discover()
        with self.assertRaises(PhaseTransitionError):
            engine.rewrite()

    def test_out_of_order_transitions(self):
        engine = PointerPermissionEngine(parse(SCENARIO_A))
        with self.assertRaises(PhaseTransitionError):
            engine.accumulate()
        with self.assertRaises(PhaseTransitionError):
            engine.resolve()
        engine.discover()
        with self.assertRaises(PhaseTransitionError):
            engine.discover()
        engine.resolve()
        with self.assertRaises(PhaseTransitionError):
            engine.accumulate()
        with self.assertRaises(PhaseTransitionError):
            engine.resolve()

    def test_discover_is_idempotent(self):
        program = parse(SCENARIO_B)
        first = discover_bindings(program)
        second = discover_bindings(program)
        self.assertEqual(set(first.bindings()), set(second.bindings()))

    def test_accumulate_is_monotonic(self):
        engine = PointerPermissionEngine(parse(SCENARIO_B))
        engine.discover()
        key = BindingKey("q", 2, 9)
        before = set(engine.accumulate()[key].permissions)
        after = engine.accumulate()[key].permissions
        self.assertTrue(before <= after)
        self.assertIn(PointerAccess.WRITE, after)


class TestOffsetRouting(unittest.TestCase):

    def _permissions(self, call: str):
        source = ("unsafe fn f(p: *const i32, n: isize) -> i32 {\n"
                  f"    *p.{call}\n"
                  "}\n")
        _, bindings, _ = analyze(source)
        return bindings[BindingKey("p", 1, 13)].permissions

    def test_offset_positive_adds(self):
        self.assertEqual(self._permissions("offset(n)"), {PointerAccess.OFFSET_ADD})

    def test_offset_negated_subtracts(self):
        self.assertEqual(self._permissions("offset(-n)"), {PointerAccess.OFFSET_SUB})
        self.assertEqual(self._permissions("offset(-1 as isize)"), {PointerAccess.OFFSET_SUB})

    def test_add_and_sub(self):
        self.assertEqual(self._permissions("add(1)"), {PointerAccess.OFFSET_ADD})
        self.assertEqual(self._permissions("wrapping_sub(1)"), {PointerAccess.OFFSET_SUB})

    def test_other_methods_record_nothing(self):
        self.assertEqual(self._permissions("cast::<i32>()"), set())

    def test_qualified_path_is_not_a_pointer_access(self):
        source = ("unsafe fn f(q: *const i32) -> i32 {\n"
                  "    *consts::q.offset(1)\n"
                  "}\n")
        _, bindings, types = analyze(source)
        key = BindingKey("q", 1, 13)
        self.assertEqual(bindings[key].permissions, set())
        self.assertEqual(types[key], SafePointerType.IMMUTABLE_REFERENCE)


class TestShadowing(unittest.TestCase):

    SOURCE = """unsafe fn f(p: *mut i32, x: i32) -> i32 {
    *p = 1;
    let p: *const i32 = &x;
    *p
}
"""

    def test_each_declaration_is_its_own_binding(self):
        _, bindings, types = analyze(self.SOURCE)
        outer, inner = BindingKey("p", 1, 13), BindingKey("p", 3, 9)
        self.assertEqual(set(bindings), {outer, inner})
        self.assertEqual(bindings[outer].permissions, {PointerAccess.WRITE})
        self.assertEqual(bindings[inner].permissions, set())
        self.assertEqual(types[outer], SafePointerType.CELL_REFERENCE)
        self.assertEqual(types[inner], SafePointerType.IMMUTABLE_REFERENCE)

    def test_each_declaration_is_rewritten_separately(self):
        text, diagnostics = lift_pointers(self.SOURCE)
        self.assertEqual(text, """unsafe fn f(p: &std::cell::Cell<i32>, x: i32) -> i32 {
    p.set(1);
    let p: &i32 = &x;
    *p
}
""")
        self.assertEqual(diagnostics, [])

    def test_non_pointer_shadow_hides_pointer(self):
        source = """unsafe fn f(p: *mut i32) {
    let p = 5;
    let q = p;
}
"""
        _, bindings, types = analyze(source)
        key = BindingKey("p", 1, 13)
        self.assertEqual(bindings[key].permissions, set())
        self.assertEqual(types[key], SafePointerType.IMMUTABLE_REFERENCE)


class TestRewrites(unittest.TestCase):

    def test_cell_compound_write_and_read(self):
        source = """unsafe fn bump(p: *mut i32) -> i32 {
    *p += 2;
    *p
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, """unsafe fn bump(p: &std::cell::Cell<i32>) -> i32 {
    p.set(p.get() + 2);
    p.get()
}
""")
        self.assertEqual(diagnostics, [])

    def test_immutable_slice_indexing(self):
        source = """unsafe fn pick(p: *const i32, i: isize, j: usize) -> i32 {
    *p.offset(i) + *p.offset(2) + *p.add(j) + *p
}
"""
        text, _ = lift_pointers(source)
        self.assertIn("pick(p: &[i32], i: isize, j: usize)", text)
        self.assertIn("p[i as usize] + p[2] + p[j] + p[0]", text)

    def test_cast_index_is_replaced(self):
        source = """unsafe fn at(p: *const u8, i: i32) -> u8 {
    *p.offset(i as isize)
}
"""
        text, _ = lift_pointers(source)
        self.assertIn("    p[i as usize]\n", text)

    def test_offset_initializing_a_slice_becomes_subslice(self):
        source = """unsafe fn tail(p: *const u8) -> u8 {
    let q: *const u8 = p.add(1);
    *q.add(2)
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, """unsafe fn tail(p: &[u8]) -> u8 {
    let q: &[u8] = &p[1..];
    q[2]
}
""")
        self.assertEqual(diagnostics, [])

    def test_borrowed_element_initializer_becomes_subslice(self):
        source = """fn third(arr: &[i32; 4]) -> i32 {
    let p: *const i32 = &arr[0] as *const i32;
    unsafe { *p.offset(2) }
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(diagnostics, [])
        self.assertIn("let p: &[i32] = &arr[0..];", text)
        self.assertIn("unsafe { p[2] }", text)

    def test_cell_write_of_non_copy_pointee(self):
        source = """struct P { x: i32 }
unsafe fn reset(p: *mut P) {
    *p = P { x: 0 };
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(diagnostics, [])
        self.assertIn("reset(p: &std::cell::Cell<P>)", text)
        self.assertIn("    p.set(P { x: 0 });\n", text)

    def test_local_pointer_valued_initializer_stays_raw(self):
        source = """fn f(x: &i32) -> i32 {
    let p: *const i32 = x as *const i32;
    unsafe { *p }
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)
        self.assertIn("let p: *const i32 = x as *const i32;", text)

    def test_local_borrow_initializer(self):
        source = """fn f(x: i32) -> i32 {
    let p: *const i32 = &x as *const i32;
    unsafe { *p }
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(diagnostics, [])
        self.assertIn("let p: &i32 = &x;", text)
        self.assertIn("unsafe { *p }", text)

    def test_free_becomes_drop_for_owned_pointer(self):
        source = """unsafe fn release(p: *mut Node) {
    free(p as *mut libc::c_void);
}
"""
        program = parse(source)
        engine = PointerPermissionEngine(program)
        engine.discover()
        bindings = engine.accumulate()
        key = BindingKey("p", 1, 19)
        self.assertEqual(bindings[key].permissions, {PointerAccess.FREE})
        # Uniqueness needs alias analysis; grant it explicitly
        bindings[key].permissions.add(PointerAccess.UNIQUE)
        types = engine.resolve()
        self.assertEqual(types[key], SafePointerType.UNIQUE_POINTER)
        self.assertTrue(program.apply(engine.rewrite()))
        self.assertEqual(program.text(), """unsafe fn release(p: Box<Node>) {
    drop(p);
}
""")

    def test_free_without_unique_stays_raw(self):
        source = """unsafe fn release(p: *mut Node) {
    free(p as *mut libc::c_void);
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, UNDEFINED_POINTER_TYPE)

    def test_mutable_reference_with_unique(self):
        source = """unsafe fn set(p: *mut i32) {
    *p = 1;
}
"""
        program = parse(source)
        engine = PointerPermissionEngine(program)
        engine.discover()
        bindings = engine.accumulate()
        bindings[BindingKey("p", 1, 15)].permissions.add(PointerAccess.UNIQUE)
        engine.resolve()
        program.apply(engine.rewrite())
        self.assertEqual(program.text(), """unsafe fn set(p: &mut i32) {
    *p = 1;
}
""")


class TestInexpressible(unittest.TestCase):

    def test_escape_of_written_pointer_stays_raw(self):
        source = """unsafe fn f(p: *mut i32) {
    *p = 1;
    g(p);
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)
        self.assertEqual(diagnostics[0].name, "p")

    def test_escape_of_read_only_pointer_is_kept(self):
        source = """unsafe fn f(p: *const i32) {
    g(p);
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertIn("unsafe fn f(p: &i32) {", text)
        self.assertIn("    g(p);\n", text)
        self.assertEqual(diagnostics, [])

    def test_reassigned_pointer_stays_raw(self):
        source = """unsafe fn f(mut p: *const i32, q: *const i32) -> i32 {
    p = q;
    *p
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertIn("mut p: *const i32", text)
        self.assertIn(INEXPRESSIBLE_ACCESS, [d.code for d in diagnostics])

    def test_null_initializer_stays_raw(self):
        source = """unsafe fn f() -> bool {
    let p: *mut i32 = std::ptr::null_mut();
    p.is_null()
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)

    def test_retreating_slice_stays_raw(self):
        source = """unsafe fn back(p: *const i32) -> i32 {
    *p.offset(-1)
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)

    def test_escape_of_mut_pointer_to_foreign_call_stays_raw(self):
        source = """extern "C" {
    fn consume(p: *mut i32);
}
unsafe fn f(p: *mut i32) -> i32 {
    consume(p);
    *p
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual([(d.code, d.name) for d in diagnostics], [(INEXPRESSIBLE_ACCESS, "p")])

    def test_cast_escape_stays_raw(self):
        source = """fn addr(p: *const i32) -> usize {
    let a = p as usize;
    a
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)

    def test_pointer_comparison_stays_raw(self):
        source = """fn same(p: *const i32, q: *const i32) -> bool {
    p == q
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(sorted(d.name for d in diagnostics), ["p", "q"])

    def test_offset_into_untyped_local_stays_raw(self):
        source = """unsafe fn next(p: *const i32) -> i32 {
    let q = p.offset(1);
    *q
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual([(d.code, d.name) for d in diagnostics], [(INEXPRESSIBLE_ACCESS, "p")])

    def test_offset_into_raw_binding_stays_raw(self):
        source = """unsafe fn next(p: *const i32) -> i32 {
    let q: *const i32 = p.add(1);
    *q
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(sorted((d.name, d.code) for d in diagnostics),
                         [("p", INEXPRESSIBLE_ACCESS), ("q", INEXPRESSIBLE_ACCESS)])

    def test_offset_passed_to_call_stays_raw(self):
        source = """unsafe fn tail(p: *const u8) -> usize {
    count(p.add(1))
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)

    def test_borrow_of_whole_place_has_no_slice_form(self):
        source = """fn f(x: i32) -> i32 {
    let p: *const i32 = &x as *const i32;
    unsafe { *p.add(1) }
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)

    def test_cell_read_of_non_copy_pointee_stays_raw(self):
        source = """struct P { x: i32 }
unsafe fn f(p: *mut P) -> i32 {
    *p = P { x: 1 };
    (*p).x
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)

    def test_cell_pointer_in_macro_stays_raw(self):
        source = """unsafe fn f(p: *mut i32) {
    *p = 1;
    println!("{}", *p);
}
"""
        text, diagnostics = lift_pointers(source)
        self.assertEqual(text, source)
        self.assertEqual(diagnostics[0].code, INEXPRESSIBLE_ACCESS)


if __name__ == '__main__':
    unittest.main()
