"""
Dead identifier cleanup — deletes statements that are a bare name (`x;`).
"""

import logging

from lifter.base import Pass
from lifter.syntax import Program, line_extent, unwrap_parens, walk_type

logger = logging.getLogger(__name__)


class UselessIdentifierCleanupPass(Pass):

    name = "remove_useless_identifier_expressions"

    def apply(self, program: Program) -> Program:
        edits = program.edits()
        for stmt in walk_type(program.root, "expression_statement"):
            expr = unwrap_parens(stmt.named_children[0]) if stmt.named_children else None
            if expr is None or expr.type != "identifier":
                continue
            logger.debug("Removing `%s` at line %d", program.node_text(stmt), stmt.start_point[0] + 1)
            edits.delete(*line_extent(program, stmt))
        program.apply(edits)
        return program
