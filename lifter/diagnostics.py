"""
Diagnostics surfaced to the user for pointers that need manual attention.
"""

from pydantic import BaseModel

UNDEFINED_POINTER_TYPE = "undefined-pointer-type"
INEXPRESSIBLE_ACCESS = "inexpressible-pointer-access"


class Diagnostic(BaseModel):
    code: str
    name: str
    line: int
    column: int
    message: str
    severity: str = "warning"

    def __str__(self) -> str:
        return f"{self.line}:{self.column}: {self.severity}: [{self.code}] {self.message}"
