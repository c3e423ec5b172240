"""
Pass contract shared by the pipeline and every transformation.
"""

from lifter.syntax import Program


class Pass:
    """Consumes a Program and returns the (possibly mutated) Program.

    A pass must be total over well-formed input: shapes it does not
    recognise are left untouched, and the returned Program always parses.
    Passes keep no state between invocations and perform no I/O.
    """

    name = "pass"

    def apply(self, program: Program) -> Program:
        raise NotImplementedError
