"""
Error taxonomy for the simulation core.

Fatal errors (ConfigError, DesireConfigError, InventoryError) are raised.
Shortfalls are non-fatal: they are built, logged, and turned into Diagnostic
records on the turn report instead of being raised out of a turn.
"""
from __future__ import annotations
from typing import Literal

from pydantic import BaseModel


class SimulationError(Exception):
    """Base class for everything raised by the simulation core."""


class ConfigError(SimulationError, ValueError):
    """Malformed catalog or configuration. The simulation does not start."""


class DesireConfigError(ConfigError):
    """Malformed desire definition. Rejects the Pop being created."""


class InventoryError(SimulationError):
    """A stock operation would have produced a negative quantity."""


class InsufficientTime(SimulationError):
    """
    A firm cannot execute even its cheapest process within its time budget.

    Raised by the scheduler. The turn loop records it and idles the firm.
    """


DiagnosticKind = Literal[
    "input_shortfall", "insufficient_time", "no_liquidity", "rejected_pop", "unpaid_time",
]


class Diagnostic(BaseModel):
    kind: DiagnosticKind
    subject: str
    message: str


class Shortfall(SimulationError):
    """Non-fatal problem recorded on the turn report."""

    kind: DiagnosticKind = "input_shortfall"

    def __init__(self, subject: str, message: str):
        super().__init__(f"{subject}: {message}")
        self.subject = subject
        self.message = message

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(kind=self.kind, subject=self.subject, message=self.message)


class SchedulingShortfall(Shortfall):
    kind: DiagnosticKind = "input_shortfall"


class InputShortfall(SchedulingShortfall):
    """A selected process was skipped because a required input was missing."""


class LiquidityShortfall(Shortfall):
    kind: DiagnosticKind = "no_liquidity"


class NoLiquidity(LiquidityShortfall):
    """A good had bids in a locality but nobody offered it."""


class TimeShortfall(Shortfall):
    """A pop could not pay the Time owed for using what it bought."""

    kind: DiagnosticKind = "unpaid_time"
