
import unittest
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from lifter.cleanup import UselessIdentifierCleanupPass
from lifter.diagnostics import UNDEFINED_POINTER_TYPE
from lifter.errors import LifterError, ParseError
from lifter.ffi_types import FfiTypeConversionPass, primitive_for
from lifter.pipeline import Pipeline, lift_source
from lifter.syntax import parse


class TestFfiTypes(unittest.TestCase):

    def test_primitive_for(self):
        self.assertEqual(primitive_for("libc::c_int"), "i32")
        self.assertEqual(primitive_for("::std::os::raw::c_ulong"), "u64")
        self.assertEqual(primitive_for("core::ffi::c_double"), "f64")
        self.assertEqual(primitive_for("libc::size_t"), "usize")
        self.assertIsNone(primitive_for("libc::c_void"))
        self.assertIsNone(primitive_for("std::ffi::size_t"))
        self.assertIsNone(primitive_for("mylib::c_int"))

    def test_foreign_boundary_is_kept(self):
        source = """extern "C" {
    fn abs(x: libc::c_int) -> libc::c_int;
}
pub unsafe extern "C" fn api(x: libc::c_long) -> libc::c_int {
    let y: libc::c_int = x as libc::c_int;
    y
}
fn g(p: *mut libc::c_void, n: std::os::raw::c_uint) -> libc::size_t {
    0
}
"""
        out = FfiTypeConversionPass().apply(parse(source)).text()
        self.assertIn("fn abs(x: libc::c_int) -> libc::c_int;", out)
        self.assertIn("fn api(x: libc::c_long) -> libc::c_int {", out)
        self.assertIn("let y: i32 = x as i32;", out)
        self.assertIn("fn g(p: *mut libc::c_void, n: u32) -> usize {", out)


class TestCleanup(unittest.TestCase):

    def test_bare_identifier_statement_removed(self):
        source = """fn f(x: i32) -> i32 {
    x;
    let y = x;
    y
}
"""
        out = UselessIdentifierCleanupPass().apply(parse(source)).text()
        self.assertEqual(out, """fn f(x: i32) -> i32 {
    let y = x;
    y
}
""")


class TestPipeline(unittest.TestCase):

    def test_full_order(self):
        source = """unsafe fn sum(p: *const libc::c_int, n: libc::c_int) -> libc::c_int {
    let mut s: libc::c_int = 0 as libc::c_int;
    let mut i: libc::c_int = 0 as libc::c_int;
    while i < n {
        s += *p.offset(i as isize);
        i += 1;
    }
    s
}
"""
        result = lift_source(source)
        self.assertEqual(result.text, """unsafe fn sum(p: &[i32], n: i32) -> i32 {
    let mut s: i32 = 0 as i32;
    let mut i: i32 = 0 as i32;
    for i in 0i32..n {
        s += p[i as usize];
    }
    s
}
""")
        self.assertEqual(result.diagnostics, [])

    def test_round_trip_without_rewrites(self):
        source = """fn main() {
    let v = vec![1, 2, 3];
    println!("{:?}", v);
}
"""
        self.assertEqual(lift_source(source).text, source)

    def test_diagnostics_are_surfaced(self):
        source = """unsafe fn fill(buf: &mut [i32], i: isize) {
    let q: *mut i32 = buf.as_mut_ptr();
    *q.offset(i) = 0;
}
"""
        result = lift_source(source)
        self.assertEqual(result.text, source)
        self.assertEqual([d.code for d in result.diagnostics], [UNDEFINED_POINTER_TYPE])

    def test_fluent_helpers(self):
        text = (Pipeline.from_source("fn f(x: libc::c_int) { x; }\n")
                .convert_ffi_types()
                .remove_useless_identifier_expressions()
                .result())
        self.assertEqual(text, "fn f(x: i32) {  }\n")

    def test_pipeline_is_spent_after_apply(self):
        pipeline = Pipeline.from_source("fn f() {}\n")
        pipeline.convert_ffi_types()
        with self.assertRaises(LifterError):
            pipeline.result()

    def test_parse_failure_propagates(self):
        with self.assertRaises(ParseError):
            lift_source("fn f( {")


if __name__ == '__main__':
    unittest.main()
