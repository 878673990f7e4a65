"""
Execution phases - the fixed lifecycle every flow passes through.

Phases are totally ordered by declaration, not by name:

setup -> initialize -> import -> prologue -> main -> epilogue -> export -> finalize -> cleanup
"""

from enum import Enum
from typing import Optional


class ExecutionPhase(str, Enum):
    """A stage of the flow lifecycle."""
    SETUP = "setup"
    INITIALIZE = "initialize"
    IMPORT = "import"
    PROLOGUE = "prologue"
    MAIN = "main"
    EPILOGUE = "epilogue"
    EXPORT = "export"
    FINALIZE = "finalize"
    CLEANUP = "cleanup"

    @property
    def symbol(self) -> str:
        """The symbol used for this phase in flow documents."""
        return self.value

    @property
    def ordinal(self) -> int:
        return _ORDINALS[self]

    @classmethod
    def find(cls, symbol: str) -> Optional["ExecutionPhase"]:
        """Return the phase for a symbol, or None if it is unknown."""
        return _BY_SYMBOL.get(symbol)

    def __lt__(self, other):
        if not isinstance(other, ExecutionPhase):
            return NotImplemented
        return self.ordinal < other.ordinal

    def __le__(self, other):
        if not isinstance(other, ExecutionPhase):
            return NotImplemented
        return self.ordinal <= other.ordinal

    def __gt__(self, other):
        if not isinstance(other, ExecutionPhase):
            return NotImplemented
        return self.ordinal > other.ordinal

    def __ge__(self, other):
        if not isinstance(other, ExecutionPhase):
            return NotImplemented
        return self.ordinal >= other.ordinal

    def __str__(self) -> str:
        return self.value


_ORDINALS = {phase: index for index, phase in enumerate(ExecutionPhase)}
_BY_SYMBOL = {phase.value: phase for phase in ExecutionPhase}
