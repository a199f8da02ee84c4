"""
Desire ledger: turns a pop's desires into a ranked demand list each turn.

Desires are ranked by effective weight, lowest first (lower weight = more
pressing). Desires with the same effective weight form a tie-group that is
reshuffled every refresh from a generator seeded by (seed, turn, pop id), so
reruns are reproducible but no desire in a tie-group is starved forever.

Before anything is demanded the pop applies what it already holds. Whatever
need is left becomes a Demand for the market clearer. Wealth is never ranked;
it is measured separately as the AMV of the pop's wealth goods.
"""
from __future__ import annotations
import itertools
import logging
import math
import random
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

import objects as G
from config import SimConfig
from errors import DesireConfigError, Diagnostic, TimeShortfall

logger = logging.getLogger(__name__)

_EPS = 1e-9

# ────────────────────────────────────────────────────────────────────────────
# Demand list
# ────────────────────────────────────────────────────────────────────────────

class Demand(BaseModel):
    pop_id: str
    desire_key: int
    target: G.DesireTarget
    # units of satisfaction still sought this turn
    quantity: int = Field(..., gt=0)
    weight: float
    # index in the pop's ranked list, 0 is the most pressing
    position: int
    mode: G.GainMode = G.GainMode.CONSUMPTION

class DemandList(BaseModel):
    pop_id: str
    turn: int
    demands: List[Demand] = Field(default_factory=list)
    # keys of every active desire in ranked order, satisfied or not
    order: List[int] = Field(default_factory=list)
    wealth: Decimal = Decimal(0)

# ────────────────────────────────────────────────────────────────────────────
# Validation & pop creation
# ────────────────────────────────────────────────────────────────────────────

def validate_desire(desire: G.Desire) -> None:
    label = f"desire for {desire.target}"
    if not math.isfinite(desire.start_weight) or not math.isfinite(desire.step):
        raise DesireConfigError(f"{label}: weight and step must be finite")
    if desire.amount <= 0:
        raise DesireConfigError(f"{label}: amount must be positive, got {desire.amount}")
    if desire.remaining is not None and desire.remaining < 0:
        raise DesireConfigError(f"{label}: remaining quantity cannot be negative, got {desire.remaining}")
    if desire.target.kind == G.DesireKind.WEALTH and desire.remaining is not None:
        raise DesireConfigError(f"{label}: wealth desires are always infinite")

def validate_desires(desires: Sequence[G.Desire]) -> None:
    for desire in desires:
        validate_desire(desire)

def create_pop(
    pop_id: str,
    locality: str,
    catalog: G.Catalog,
    species: str,
    culture: Optional[str] = None,
    religion: Optional[str] = None,
    turn: int = 0,
    cash: Decimal = Decimal(0),
    time_rate: Optional[int] = None,
) -> G.Pop:
    """Build a pop whose ledger is the union of its species, culture and religion desires."""
    wanted = [
        (species, G.DesireSourceKind.SPECIES),
        (culture, G.DesireSourceKind.CULTURE),
        (religion, G.DesireSourceKind.RELIGION),
    ]
    sources: List[G.DesireSource] = []
    for source_id, kind in wanted:
        if source_id is None:
            continue
        source = catalog.sources.get(source_id)
        if source is None or source.kind != kind:
            raise DesireConfigError(f"pop '{pop_id}': unknown {kind.value} '{source_id}'")
        sources.append(source)

    ledger = G.DesireLedger()
    for source in sources:
        validate_desires(source.desires)
        for template in source.desires:
            ledger.add(template.model_copy(update={"created_turn": turn}))

    return G.Pop(
        id=pop_id,
        locality=locality,
        species=species,
        culture=culture,
        religion=religion,
        ledger=ledger,
        cash=cash,
        time_rate=sources[0].time_rate if time_rate is None else time_rate,
    )

# ────────────────────────────────────────────────────────────────────────────
# Ranking
# ────────────────────────────────────────────────────────────────────────────

def tie_break_rng(seed: int, turn: int, pop_id: str) -> random.Random:
    # str seeds hash deterministically, unlike hash() on str
    return random.Random(f"{seed}:{turn}:{pop_id}")

def effective_weight(desire: G.Desire, turn: int, floor: Optional[float] = None) -> float:
    weight = desire.weight_at(turn)
    if floor is not None:
        weight = max(floor, weight)
    return weight

def rank_desires(
    desires: Sequence[G.Desire],
    turn: int,
    rng: random.Random,
    floor: Optional[float] = None,
) -> List[Tuple[G.Desire, float]]:
    weighted = [(d, effective_weight(d, turn, floor)) for d in desires]
    weighted.sort(key=lambda dw: dw[1])
    ranked: List[Tuple[G.Desire, float]] = []
    for _, group in itertools.groupby(weighted, key=lambda dw: dw[1]):
        group = list(group)
        if len(group) > 1:
            rng.shuffle(group)
        ranked.extend(group)
    return ranked

def turn_need(desire: G.Desire) -> int:
    if desire.infinite:
        return desire.amount
    return min(desire.amount, desire.remaining)

def record_fill(desire: G.Desire, units: int) -> None:
    """Count satisfied units against a finite desire, stopping at zero."""
    if units < 0:
        raise DesireConfigError(f"desire for {desire.target}: cannot fill {units} units")
    if desire.infinite or units == 0:
        return
    if desire.remaining <= 0:
        raise DesireConfigError(f"desire for {desire.target} is exhausted and should have been removed")
    desire.remaining = max(0, desire.remaining - units)

# ────────────────────────────────────────────────────────────────────────────
# Satisfaction
# ────────────────────────────────────────────────────────────────────────────

def _gain_mode(desire: G.Desire, want_mode: Optional[G.GainMode]) -> G.GainMode:
    return want_mode if desire.target.kind == G.DesireKind.WANT else desire.mode

def _time_cost(good: G.Good, desire: G.Desire, mode: G.GainMode) -> float:
    if mode == G.GainMode.OWN or not good.takes_time or desire.target.kind != G.DesireKind.WANT:
        return 0.0
    entry = good.want_entry(desire.target.id)
    return entry.time_cost or 0.0

def _credit(pop: G.Pop, desire: G.Desire, satisfied: float, need: int) -> int:
    delivered = min(need, math.ceil(satisfied - _EPS))
    record_fill(desire, delivered)
    pop.desire_progress[desire.key] = pop.desire_progress.get(desire.key, 0.0) + satisfied
    if desire.target.kind == G.DesireKind.WANT:
        pop.want_satisfaction[desire.target.id] = pop.want_satisfaction.get(desire.target.id, 0.0) + satisfied
    return delivered

def satisfy_from_holdings(
    pop: G.Pop,
    ranked: Sequence[Tuple[G.Desire, float]],
    catalog: G.Catalog,
    config: SimConfig,
) -> Dict[int, int]:
    """
    Apply goods the pop already owns to its desires in ranked order.

    Consumed and used goods spend the pop's Time as they are applied. Every
    applied unit is reserved for the turn; consumed ones are destroyed at the
    end of the turn. Returns the need left per desire key.
    """
    residual: Dict[int, int] = {}
    for desire, _weight in ranked:
        if desire.target.kind == G.DesireKind.WEALTH:
            continue
        need = turn_need(desire)
        for good_id, rate, want_mode in catalog.satisfiers(desire.target):
            if need <= 0:
                break
            good = catalog.good(good_id)
            available = pop.inventory.quantity(good_id) - pop.reserved.get(good_id, 0)
            if available <= 0:
                continue
            units = min(available, math.ceil(need / rate - _EPS))
            mode = _gain_mode(desire, want_mode)
            time_cost = _time_cost(good, desire, mode)
            if time_cost > 0:
                spare_time = pop.inventory.quantity(config.time_good_id)
                units = min(units, int(spare_time // time_cost))
            if units <= 0:
                continue
            if time_cost > 0:
                pop.inventory.take(config.time_good_id, math.ceil(units * time_cost - _EPS))
            pop.reserved[good_id] = pop.reserved.get(good_id, 0) + units
            if mode == G.GainMode.CONSUMPTION:
                pop.consume_at_end[good_id] = pop.consume_at_end.get(good_id, 0) + units
            need -= _credit(pop, desire, units * rate, need)
        residual[desire.key] = max(0, need)
    return residual

def apply_purchase(pop: G.Pop, desire_key: int, good_id: str, units: int, need: int, catalog: G.Catalog) -> int:
    """Credit units bought at the market to a desire. Returns whole units of satisfaction delivered."""
    desire = pop.ledger.get(desire_key)
    rate, want_mode = 1.0, None
    for sat_id, sat_rate, sat_mode in catalog.satisfiers(desire.target):
        if sat_id == good_id:
            rate, want_mode = sat_rate, sat_mode
            break
    good = catalog.good(good_id)
    mode = _gain_mode(desire, want_mode)
    pop.reserved[good_id] = pop.reserved.get(good_id, 0) + units
    if mode == G.GainMode.CONSUMPTION:
        pop.consume_at_end[good_id] = pop.consume_at_end.get(good_id, 0) + units
    pop.time_owed += units * _time_cost(good, desire, mode)
    if not desire.infinite:
        need = min(need, desire.remaining)
    return _credit(pop, desire, units * rate, need)

# ────────────────────────────────────────────────────────────────────────────
# Wealth
# ────────────────────────────────────────────────────────────────────────────

def wealth_value(inventory: G.Inventory, catalog: G.Catalog, locality: G.Locality) -> Decimal:
    """AMV of every wealth-bearing good held."""
    total = Decimal(0)
    for good_id, quantity in inventory.totals().items():
        good = catalog.good(good_id)
        if good.wealth:
            total += locality.amv(good) * quantity
    return total

def satisfaction_values(pop: G.Pop, catalog: G.Catalog, locality: G.Locality) -> G.SatisfactionValues:
    weights = [
        pop.ledger.effective_weights[key]
        for key, progress in pop.desire_progress.items()
        if progress > 0 and key in pop.ledger.effective_weights
    ]
    spread = max(weights) - min(weights) if weights else 0.0
    return G.SatisfactionValues(
        range=spread,
        steps=sum(pop.desire_progress.values()),
        amv=wealth_value(pop.inventory, catalog, locality),
    )

# ────────────────────────────────────────────────────────────────────────────
# Turn hooks
# ────────────────────────────────────────────────────────────────────────────

def refresh(
    pop: G.Pop,
    turn: int,
    catalog: G.Catalog,
    locality: G.Locality,
    config: Optional[SimConfig] = None,
) -> DemandList:
    """Rank the pop's desires for this turn and return what it still needs."""
    config = config or SimConfig()
    for gone in pop.ledger.prune():
        logger.debug("Pop %s: desire for %s fulfilled and removed", pop.id, gone.target)

    rng = tie_break_rng(config.seed, turn, pop.id)
    ranked = rank_desires(pop.ledger.desires, turn, rng, config.weight_floor)
    pop.ledger.effective_weights = {d.key: w for d, w in ranked}

    residual = satisfy_from_holdings(pop, ranked, catalog, config)

    demands: List[Demand] = []
    for position, (desire, weight) in enumerate(ranked):
        need = residual.get(desire.key, 0)
        if need <= 0:
            continue
        demands.append(Demand(
            pop_id=pop.id,
            desire_key=desire.key,
            target=desire.target,
            quantity=need,
            weight=weight,
            position=position,
            mode=desire.mode,
        ))
    return DemandList(
        pop_id=pop.id,
        turn=turn,
        demands=demands,
        order=[d.key for d, _ in ranked],
        wealth=wealth_value(pop.inventory, catalog, locality),
    )

def _requirement_met(ref: G.ItemRef, pop: G.Pop, catalog: G.Catalog) -> bool:
    if ref.kind == G.ItemKind.GOOD:
        return pop.inventory.quantity(ref.id) > 0
    if ref.kind == G.ItemKind.CLASS:
        return any(pop.inventory.quantity(gid) > 0 for gid in catalog.class_members(ref.id))
    return pop.want_satisfaction.get(ref.id, 0.0) > 0

def settle_wants(pop: G.Pop, catalog: G.Catalog, config: Optional[SimConfig] = None) -> Dict[str, float]:
    """Turn this turn's want satisfaction into effects on the pop, then discard it."""
    config = config or SimConfig()
    applied: Dict[str, float] = {}
    for want_id, amount in sorted(pop.want_satisfaction.items()):
        if amount < config.min_want_threshold:
            continue
        want = catalog.wants[want_id]
        if not all(_requirement_met(ref, pop, catalog) for ref in want.requires):
            continue
        for kind, magnitude in want.effects.items():
            delta = magnitude * amount
            pop.effects[kind] = pop.effects.get(kind, 0.0) + delta
            applied[kind] = applied.get(kind, 0.0) + delta
    pop.want_satisfaction = {}
    return applied

def end_turn(
    pop: G.Pop,
    catalog: G.Catalog,
    locality: G.Locality,
    config: Optional[SimConfig] = None,
) -> Optional[Diagnostic]:
    """
    Consume what was eaten, pay owed time, apply want effects and reset turn-local state.

    Returns a diagnostic when the pop had less Time left than it owed.
    """
    config = config or SimConfig()
    # wants are checked against holdings before consumed goods leave
    settle_wants(pop, catalog, config)
    for good_id, units in sorted(pop.consume_at_end.items()):
        pop.inventory.take(good_id, min(units, pop.inventory.quantity(good_id)))
    unpaid: Optional[Diagnostic] = None
    if pop.time_owed > 0:
        owed = math.ceil(pop.time_owed - _EPS)
        spare_time = pop.inventory.quantity(config.time_good_id)
        pop.inventory.take(config.time_good_id, min(spare_time, owed))
        if owed > spare_time:
            shortfall = TimeShortfall(pop.id, f"owed {owed} time units, paid {spare_time}")
            logger.warning("Unpaid time: %s", shortfall)
            unpaid = shortfall.to_diagnostic()
    pop.satisfaction = satisfaction_values(pop, catalog, locality)
    pop.reserved = {}
    pop.consume_at_end = {}
    pop.time_owed = 0.0
    pop.desire_progress = {}
    return unpaid
