"""
Production scheduler.

Each turn a firm spends its time budget running processes. Processes are
ranked once, by the AMV of what one repetition produces per unit of time, and
each is then repeated back to back for as long as time and inputs last before
moving to the next. Changing which process is running costs a fixed friction
charge, including the switch-in at the start of the day; repeating the process
that is already running does not.

Outputs are not handed to the firm. They wait one turn in the grace buffer.
"""
from __future__ import annotations
import logging
import math
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

import objects as G
from config import SimConfig
from errors import Diagnostic, InputShortfall, InsufficientTime

logger = logging.getLogger(__name__)

_EPS = 1e-9

class ScheduledRun(BaseModel):
    process_id: str
    repetitions: int = Field(..., gt=0)
    # excludable inputs left out, summed over every repetition
    omitted_inputs: int = 0

class ScheduleResult(BaseModel):
    firm_id: str
    runs: List[ScheduledRun] = Field(default_factory=list)
    time_used: float = 0.0
    friction_spent: float = 0.0
    staged: List[G.StagedOutput] = Field(default_factory=list)
    shortfalls: List[Diagnostic] = Field(default_factory=list)

    @property
    def sequence(self) -> List[Tuple[str, int]]:
        return [(run.process_id, run.repetitions) for run in self.runs]

    @property
    def switches(self) -> int:
        return len(self.runs)

# ────────────────────────────────────────────────────────────────────────────
# Valuation
# ────────────────────────────────────────────────────────────────────────────

def want_value(want_id: str, catalog: G.Catalog, locality: G.Locality) -> Decimal:
    """Cheapest AMV at which one unit of a want can be had from goods."""
    prices = [
        locality.amv(catalog.good(gid)) / Decimal(str(rate))
        for gid, rate, _ in catalog.satisfiers(G.DesireTarget(kind=G.DesireKind.WANT, id=want_id))
    ]
    return min(prices) if prices else Decimal(0)

def item_value(ref: G.ItemRef, catalog: G.Catalog, locality: G.Locality) -> Decimal:
    if ref.kind == G.ItemKind.GOOD:
        return locality.amv(catalog.good(ref.id))
    if ref.kind == G.ItemKind.WANT:
        return want_value(ref.id, catalog, locality)
    members = catalog.class_members(ref.id)
    return min((locality.amv(catalog.good(gid)) for gid in members), default=Decimal(0))

def output_value(process: G.Process, catalog: G.Catalog, locality: G.Locality) -> Decimal:
    return sum((item_value(o.item, catalog, locality) * o.quantity for o in process.outputs), Decimal(0))

def rank_processes(
    processes: List[G.Process],
    catalog: G.Catalog,
    locality: G.Locality,
    scorer: G.ComplexityScorer = G.default_complexity,
) -> List[G.Process]:
    """Best value per time unit first; then simpler processes; then by id."""
    def key(p: G.Process):
        density = float(output_value(p, catalog, locality)) / p.time_cost
        return (-density, p.complexity(scorer), p.id)
    return sorted(processes, key=key)

# ────────────────────────────────────────────────────────────────────────────
# Stock access
# ────────────────────────────────────────────────────────────────────────────

def _available(firm: G.Firm, ref: G.ItemRef, catalog: G.Catalog) -> float:
    if ref.kind == G.ItemKind.GOOD:
        return firm.inventory.quantity(ref.id)
    if ref.kind == G.ItemKind.CLASS:
        return sum(firm.inventory.quantity(gid) for gid in catalog.class_members(ref.id))
    return firm.wants.get(ref.id, 0.0)

def _draw(firm: G.Firm, ref: G.ItemRef, quantity: int, catalog: G.Catalog) -> None:
    if ref.kind == G.ItemKind.GOOD:
        firm.inventory.take(ref.id, quantity)
    elif ref.kind == G.ItemKind.CLASS:
        left = quantity
        for gid in catalog.class_members(ref.id):
            amount = min(left, firm.inventory.quantity(gid))
            if amount:
                firm.inventory.take(gid, amount)
                left -= amount
            if not left:
                break
    else:
        firm.wants[ref.id] = firm.wants.get(ref.id, 0.0) - quantity
        if firm.wants[ref.id] <= _EPS:
            del firm.wants[ref.id]

def missing_inputs(firm: G.Firm, process: G.Process, catalog: G.Catalog) -> List[str]:
    """Non-excludable inputs the firm cannot cover for one repetition."""
    required: Dict[G.ItemRef, int] = defaultdict(int)
    for inp in process.inputs:
        if not inp.excludable:
            required[inp.item] += inp.quantity
    return [
        f"{ref.kind.value}:{ref.id}"
        for ref, qty in required.items()
        if _available(firm, ref, catalog) + _EPS < qty
    ]

def run_once(firm: G.Firm, process: G.Process, catalog: G.Catalog) -> Optional[int]:
    """
    Run a single repetition against the firm's stock.

    Returns the number of excludable inputs left out, or None when a required
    input is missing (nothing is drawn in that case).
    """
    if missing_inputs(firm, process, catalog):
        return None
    committed: Dict[G.ItemRef, int] = defaultdict(int)
    for inp in process.inputs:
        if not inp.excludable:
            committed[inp.item] += inp.quantity
    omitted = 0
    engaged: List[G.ProcessInput] = []
    for inp in process.inputs:
        if not inp.excludable:
            engaged.append(inp)
            continue
        if _available(firm, inp.item, catalog) + _EPS >= committed[inp.item] + inp.quantity:
            committed[inp.item] += inp.quantity
            engaged.append(inp)
        else:
            omitted += 1
    for inp in engaged:
        if inp.mode == G.InputMode.CONSUME:
            _draw(firm, inp.item, inp.quantity, catalog)
    return omitted

def output_factor(omitted: int, penalty: float) -> float:
    """Share of full output kept when `omitted` excludable inputs were left out."""
    return (1.0 - penalty) ** omitted

# ────────────────────────────────────────────────────────────────────────────
# Scheduling
# ────────────────────────────────────────────────────────────────────────────

def _stage(
    firm: G.Firm,
    produced: Dict[G.ItemRef, float],
    turn: int,
) -> List[G.StagedOutput]:
    staged: List[G.StagedOutput] = []
    for ref in sorted(produced, key=lambda r: (r.kind.value, r.id)):
        amount = produced[ref]
        if ref.kind == G.ItemKind.WANT:
            if amount > _EPS:
                staged.append(G.StagedOutput(owner_id=firm.id, item=ref, quantity=amount, produced_turn=turn))
            continue
        total = amount + firm.fractional_output.get(ref.id, 0.0)
        whole = math.floor(total + _EPS)
        rest = total - whole
        if rest > _EPS:
            firm.fractional_output[ref.id] = rest
        else:
            firm.fractional_output.pop(ref.id, None)
        if whole > 0:
            staged.append(G.StagedOutput(owner_id=firm.id, item=ref, quantity=whole, produced_turn=turn))
    return staged

def schedule(
    firm: G.Firm,
    catalog: G.Catalog,
    locality: G.Locality,
    config: Optional[SimConfig] = None,
    turn: int = 0,
    time_budget: Optional[float] = None,
    scorer: G.ComplexityScorer = G.default_complexity,
) -> ScheduleResult:
    """
    Spend the firm's time budget on its processes.

    Consumes inputs from the firm's inventory and returns the staged outputs.
    Raises InsufficientTime if not even the cheapest process fits the budget.
    """
    config = config or SimConfig()
    budget = time_budget or firm.time_budget or config.time_budget
    friction = config.friction_cost
    result = ScheduleResult(firm_id=firm.id)
    firm.friction_spent = 0.0

    processes = [catalog.processes[pid] for pid in firm.process_ids]
    if not processes:
        return result
    cheapest = min(p.time_cost for p in processes)
    if cheapest + friction > budget + _EPS:
        raise InsufficientTime(
            f"firm '{firm.id}': cheapest process needs {cheapest + friction:g} time units, budget is {budget:g}"
        )

    remaining = budget
    produced: Dict[G.ItemRef, float] = defaultdict(float)
    for process in rank_processes(processes, catalog, locality, scorer):
        reps = 0
        omitted_total = 0
        starved = False
        while True:
            step_cost = process.time_cost + (friction if reps == 0 else 0.0)
            if step_cost > remaining + _EPS:
                break
            omitted = run_once(firm, process, catalog)
            if omitted is None:
                starved = reps == 0
                break
            if reps == 0:
                result.friction_spent += friction
            reps += 1
            omitted_total += omitted
            remaining -= step_cost
            factor = output_factor(omitted, config.excluded_input_penalty)
            for out in process.outputs:
                produced[out.item] += out.quantity * factor
        if starved:
            shortfall = InputShortfall(
                f"{firm.id}/{process.id}",
                f"missing {', '.join(missing_inputs(firm, process, catalog))}; process skipped",
            )
            logger.warning("Input shortfall: %s", shortfall)
            result.shortfalls.append(shortfall.to_diagnostic())
        if reps:
            result.runs.append(ScheduledRun(process_id=process.id, repetitions=reps, omitted_inputs=omitted_total))
            logger.debug("Firm %s ran %s x%d", firm.id, process.id, reps)

    result.time_used = budget - remaining
    result.staged = _stage(firm, produced, turn)
    firm.friction_spent = result.friction_spent
    return result

def friction_for(sequence: List[str], friction: float) -> float:
    """Friction charged for a flat sequence of process invocations, e.g. ["a", "a", "b", "b"]."""
    changes = sum(1 for prev, cur in zip([None] + sequence[:-1], sequence) if prev != cur)
    return changes * friction
