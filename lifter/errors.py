"""
Error taxonomy for the lifter.

Only two conditions stop work on a translation unit:

  • ParseError            — the input text does not form a valid tree
  • PhaseTransitionError  — the pointer inference state machine was driven
                            out of order (a defect in the engine itself)

Everything else (unresolvable pointer types, loops that don't match the
counting shape) is reported as a diagnostic or silently left alone.
"""


class LifterError(Exception):
    """Base class for all errors raised by the lifter."""


class ParseError(LifterError):
    """Raised when source text cannot be parsed into a well-formed tree."""

    def __init__(self, message: str, line: int = 0, column: int = 0):
        super().__init__(message)
        self.line = line
        self.column = column


class PhaseTransitionError(LifterError):
    """Raised when an analysis phase transition is taken out of order."""
