"""
Transformation pipeline — threads one Program through a fixed sequence of
passes.

    Pipeline.from_source(text)
        .convert_ffi_types()
        .replace_raw_pointers()
        .replace_while_loops()
        .remove_useless_identifier_expressions()
        .result()

Each ``apply`` hands the Program to the pass and returns a new Pipeline
wrapping what the pass returned; the old Pipeline is spent and may not be
used again.
"""

import logging
from typing import List

from pydantic import BaseModel

from lifter.base import Pass
from lifter.cleanup import UselessIdentifierCleanupPass
from lifter.diagnostics import Diagnostic
from lifter.errors import LifterError
from lifter.ffi_types import FfiTypeConversionPass
from lifter.loop_lowering import LoopLoweringPass
from lifter.pointer_inference import RawPointerPass
from lifter.syntax import Program, parse

logger = logging.getLogger(__name__)


class Pipeline:

    def __init__(self, program: Program):
        self._program = program
        self._consumed = False

    @classmethod
    def from_source(cls, text: str) -> "Pipeline":
        """Parse ``text``; raises ParseError if it is not valid Rust."""
        return cls(parse(text))

    def apply(self, pass_: Pass) -> "Pipeline":
        program = self._take()
        logger.debug("Running pass %s", pass_.name)
        return Pipeline(pass_.apply(program))

    def convert_ffi_types(self) -> "Pipeline":
        return self.apply(FfiTypeConversionPass())

    def replace_raw_pointers(self) -> "Pipeline":
        return self.apply(RawPointerPass())

    def replace_while_loops(self) -> "Pipeline":
        return self.apply(LoopLoweringPass())

    def remove_useless_identifier_expressions(self) -> "Pipeline":
        return self.apply(UselessIdentifierCleanupPass())

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._peek().diagnostics)

    def result(self) -> str:
        """Print the final program; the pipeline is spent afterwards."""
        return self._take().text()

    def _peek(self) -> Program:
        if self._consumed:
            raise LifterError("Pipeline has already been consumed")
        return self._program

    def _take(self) -> Program:
        program = self._peek()
        self._consumed = True
        return program


class LiftResult(BaseModel):
    text: str
    diagnostics: List[Diagnostic] = []


def lift_source(text: str) -> LiftResult:
    """Run the full pass sequence over one translation unit."""
    pipeline = (Pipeline.from_source(text)
                .convert_ffi_types()
                .replace_raw_pointers()
                .replace_while_loops()
                .remove_useless_identifier_expressions())
    diagnostics = pipeline.diagnostics
    return LiftResult(text=pipeline.result(), diagnostics=diagnostics)
