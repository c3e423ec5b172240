
import unittest
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from lifter.errors import ParseError
from lifter.syntax import (
    line_extent, parse, parse_int_literal, walk_type,
)
from lifter.visitor import SyntaxVisitor, TraversalContext, walk

SOURCE = """fn add(a: i32, b: i32) -> i32 {
    let c = a + b;
    c
}
"""


class TestParse(unittest.TestCase):

    def test_round_trip_without_edits(self):
        program = parse(SOURCE)
        self.assertEqual(program.text(), SOURCE)

    def test_parse_error(self):
        with self.assertRaises(ParseError) as cm:
            parse("fn broken( {\n")
        self.assertGreaterEqual(cm.exception.line, 1)

    def test_parse_int_literal(self):
        self.assertEqual(parse_int_literal("0"), 0)
        self.assertEqual(parse_int_literal("42i32"), 42)
        self.assertEqual(parse_int_literal("0x10"), 16)
        self.assertEqual(parse_int_literal("0b101u8"), 5)
        self.assertEqual(parse_int_literal("1_000"), 1000)
        self.assertIsNone(parse_int_literal("1.5"))
        self.assertIsNone(parse_int_literal("abc"))


class TestEdits(unittest.TestCase):

    def test_apply_replaces_bottom_up(self):
        program = parse(SOURCE)
        edits = program.edits()
        a, b = [p for p in walk_type(program.root, "parameter")]
        edits.replace(a.child_by_field_name("type"), "i64")
        edits.replace(b.child_by_field_name("type"), "i64")
        self.assertTrue(program.apply(edits))
        self.assertIn("fn add(a: i64, b: i64) -> i32", program.text())

    def test_nested_edit_is_rendered_into_outer(self):
        program = parse(SOURCE)
        edits = program.edits()
        let = next(walk_type(program.root, "let_declaration"))
        binary = let.child_by_field_name("value")
        edits.replace(binary.child_by_field_name("left"), "x")
        self.assertEqual(edits.render(binary), "x + b")
        edits.replace(binary, "(" + edits.render(binary) + ")")
        self.assertEqual(len(edits.outermost()), 1)
        self.assertTrue(program.apply(edits))
        self.assertIn("let c = (x + b);", program.text())

    def test_unparseable_result_rolls_back(self):
        program = parse(SOURCE)
        edits = program.edits()
        let = next(walk_type(program.root, "let_declaration"))
        edits.replace(let, "let = ;")
        self.assertFalse(program.apply(edits))
        self.assertEqual(program.text(), SOURCE)

    def test_empty_edit_set_changes_nothing(self):
        program = parse(SOURCE)
        self.assertFalse(program.apply(program.edits()))

    def test_line_extent_widens_lone_statement(self):
        program = parse(SOURCE)
        let = next(walk_type(program.root, "let_declaration"))
        start, end = line_extent(program, let)
        self.assertEqual(program.source[start:end], b"    let c = a + b;\n")


class _Recorder(SyntaxVisitor):

    def __init__(self):
        self.events = []

    def visit_fn_arg(self, node, ctx):
        self.events.append(("arg", ctx.program.node_text(node)))

    def visit_local(self, node, ctx):
        self.events.append(("local", ctx.program.node_text(node)))

    def visit_stmt(self, node, ctx):
        self.events.append(("stmt", node.type))


class TestVisitor(unittest.TestCase):

    def test_hooks_fire_in_source_order(self):
        recorder = _Recorder()
        program = parse(SOURCE)
        walk(program, recorder, TraversalContext(program))
        self.assertEqual(recorder.events, [
            ("arg", "a: i32"),
            ("arg", "b: i32"),
            ("stmt", "let_declaration"),
            ("local", "let c = a + b;"),
            ("stmt", "identifier"),
        ])

    def test_blocks_enter_and_leave_in_nesting_order(self):
        events = []

        class Blocks(SyntaxVisitor):
            def enter_block(self, node, ctx):
                events.append(("enter", node.start_point[0] + 1))

            def leave_block(self, node, ctx):
                events.append(("leave", node.start_point[0] + 1))

        program = parse("fn f() {\n    {\n        {}\n    }\n}\n")
        walk(program, Blocks(), TraversalContext(program))
        self.assertEqual(events, [("enter", 1), ("enter", 2), ("enter", 3),
                                  ("leave", 3), ("leave", 2), ("leave", 1)])

    def test_deep_nesting_is_walked_without_recursion(self):
        terms = " + ".join(["a"] * 3000)
        program = parse(f"fn f(a: i32) -> i32 {{ {terms} }}\n")
        recorder = _Recorder()
        walk(program, recorder, TraversalContext(program))
        self.assertEqual(recorder.events, [("arg", "a: i32"), ("stmt", "binary_expression")])

    def test_read_only_context_refuses_edits(self):
        program = parse(SOURCE)
        ctx = TraversalContext(program)
        self.assertFalse(ctx.mutable)
        with self.assertRaises(RuntimeError):
            ctx.replace(program.root, "")


if __name__ == '__main__':
    unittest.main()
