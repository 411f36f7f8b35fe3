"""
Simulator error taxonomy.

Exceptions are raised only where the caller must stop: a bad configuration
(the run never starts), ticking a run that has already terminated, or
malformed assembly.  Everything that happens *inside* a run is recorded as a
:class:`Fault` on the run's status channel instead.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class SimError(Exception):
    """Base for simulator-generated errors."""
    pass


class ConfigFault(SimError):
    """Configuration rejected before any tick executes."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class HaltError(SimError):
    pass


class FaultKind(Enum):
    DECODE        = "decode"
    SATURATION    = "saturation"
    BANK_CONFLICT = "bank_conflict"
    CORRECTNESS   = "correctness"
    TIMEOUT       = "timeout"


# Faults that end the run.
TERMINAL = frozenset({FaultKind.DECODE, FaultKind.TIMEOUT})


class RunStatus(Enum):
    READY               = "ready"
    RUNNING             = "running"
    EXITED              = "exited"
    ILLEGAL_INSTRUCTION = "illegal_instruction"
    TIMEOUT             = "timeout"

    @property
    def finished(self) -> bool:
        return self not in (RunStatus.READY, RunStatus.RUNNING)


@dataclass(frozen=True)
class Fault:
    kind: FaultKind
    cycle: int
    pc: int
    message: str

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL

    def __str__(self) -> str:
        return f"[{self.cycle:>6d}] {self.kind.value:<13s} pc={self.pc:#010x}  {self.message}"
