"""
Analysis phases of one pointer inference run.

    Uninitialized ──start_computing──▶ Computing ──finish──▶ Initialized

Each state carries its own payload and each transition may be taken once.
Taking a transition from the wrong state raises PhaseTransitionError and
leaves the machine untouched.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Union

from lifter.errors import PhaseTransitionError
from lifter.permissions import SafePointerType

if TYPE_CHECKING:
    from lifter.pointer_inference import ScopeTable


@dataclass(frozen=True)
class Uninitialized:
    """No bindings discovered yet."""


@dataclass(frozen=True)
class Computing:
    """Bindings discovered; permissions are being accumulated."""
    scopes: "ScopeTable"


@dataclass(frozen=True)
class Initialized:
    """Every discovered binding has a resolved safe type."""
    scopes: "ScopeTable"
    types: Dict[tuple, SafePointerType]


AnalysisPhase = Union[Uninitialized, Computing, Initialized]


class TypeMappingStateMachine:

    def __init__(self):
        self.state: AnalysisPhase = Uninitialized()

    def start_computing(self, scopes: "ScopeTable") -> Computing:
        if not isinstance(self.state, Uninitialized):
            raise PhaseTransitionError(
                f"Must be in Uninitialized state to start computing, not {type(self.state).__name__}")
        self.state = Computing(scopes)
        return self.state

    def finish(self, types: Dict[tuple, SafePointerType]) -> Initialized:
        computing = self.computing()
        missing = set(computing.scopes.bindings()) - set(types)
        if missing:
            raise PhaseTransitionError(f"Unresolved bindings: {sorted(missing)}")
        self.state = Initialized(computing.scopes, dict(types))
        return self.state

    def computing(self) -> Computing:
        if not isinstance(self.state, Computing):
            raise PhaseTransitionError(f"Must be in Computing state, not {type(self.state).__name__}")
        return self.state

    def initialized(self) -> Initialized:
        if not isinstance(self.state, Initialized):
            raise PhaseTransitionError(f"Must be in Initialized state, not {type(self.state).__name__}")
        return self.state
