from __future__ import annotations
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator

from errors import ConfigError, InventoryError

TIME_GOOD_ID = "time"

# ────────────────────────────────────────────────────────────────────────────
# Shared enums & references
# ────────────────────────────────────────────────────────────────────────────

class GainMode(str, Enum):
    """How a good yields satisfaction to its owner."""
    CONSUMPTION = "consumption"  # destroyed when applied
    USE = "use"                  # kept, but occupied for the turn and costs time
    OWN = "own"                  # kept, satisfies by being held

class GoodTag(str, Enum):
    SERVICE = "service"
    END_OF_DAY_CONSUMED = "end_of_day_consumed"
    NO_DECAY = "no_decay"
    NO_TIME_COST = "no_time_cost"
    # Cannot move between localities
    IMMOBILE = "immobile"
    # Cannot be bought or sold at all
    NONEXCHANGEABLE = "nonexchangeable"

class ItemKind(str, Enum):
    GOOD = "good"
    WANT = "want"
    CLASS = "class"

class ItemRef(BaseModel):
    """Points at a good, a want, or a class of goods by id."""
    model_config = ConfigDict(frozen=True)

    kind: ItemKind
    id: str

# ────────────────────────────────────────────────────────────────────────────
# Goods
# ────────────────────────────────────────────────────────────────────────────

class DecayTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    good_id: str
    # units of good_id produced per decayed unit, rounded down
    ratio: float = Field(1.0, ge=0)

class WantSatisfaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    want_id: str
    mode: GainMode
    efficiency: float = Field(..., gt=0)
    # time units spent per unit applied; only consumption and use take time
    time_cost: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def _own_has_no_time(self):
        if self.mode == GainMode.OWN and self.time_cost is not None:
            raise ValueError(f"want '{self.want_id}': own satisfaction cannot carry a time cost")
        return self

class ClassMembership(BaseModel):
    model_config = ConfigDict(frozen=True)

    class_id: str
    is_example: bool = False
    variant_name: Optional[str] = None

    @model_validator(mode="after")
    def _example_rules(self):
        if self.is_example and self.variant_name is not None:
            raise ValueError(f"class '{self.class_id}': the example good cannot have a variant name")
        if not self.is_example and not self.variant_name:
            raise ValueError(f"class '{self.class_id}': non-example goods need a variant name")
        return self

class Good(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    # Turns a unit survives without being used. 0 never decays.
    decay_rate: int = Field(0, ge=0)
    decays_into: Optional[DecayTarget] = None
    initial_amv: Decimal = Field(Decimal("1"), gt=0, description="AMV the first turn it trades")

    # satisfaction map
    wealth: bool = True
    wants: List[WantSatisfaction] = Field(default_factory=list)
    class_membership: Optional[ClassMembership] = None
    specific: Optional[str] = None

    tags: Set[GoodTag] = Field(default_factory=set)
    bulk: float = Field(0.0, ge=0)
    mass: float = Field(0.0, ge=0)

    @field_validator("initial_amv", mode="before")
    @classmethod
    def _decimize(cls, v):
        return Decimal(str(v))

    @field_validator("wants")
    @classmethod
    def _one_entry_per_mode(cls, v: List[WantSatisfaction]):
        seen: Set[Tuple[str, GainMode]] = set()
        for ws in v:
            key = (ws.want_id, ws.mode)
            if key in seen:
                raise ValueError(f"want '{ws.want_id}' listed twice for mode '{ws.mode.value}'")
            seen.add(key)
        return v

    # derived ---------------------------------------------------------------
    @property
    def quality(self) -> float:
        """Sum of everything this good satisfies."""
        total = 1.0 if self.wealth else 0.0
        total += sum(ws.efficiency for ws in self.wants)
        if self.class_membership is not None:
            total += 1.0
        if self.specific is not None:
            total += 1.0
        return total

    @property
    def decays(self) -> bool:
        return self.decay_rate > 0 and GoodTag.NO_DECAY not in self.tags

    @property
    def tradable(self) -> bool:
        return GoodTag.NONEXCHANGEABLE not in self.tags

    @property
    def takes_time(self) -> bool:
        return GoodTag.NO_TIME_COST not in self.tags

    def want_entry(self, want_id: str) -> Optional[WantSatisfaction]:
        """Best entry for a want: highest efficiency, consumption before use before own."""
        order = list(GainMode)
        best: Optional[WantSatisfaction] = None
        for ws in self.wants:
            if ws.want_id != want_id:
                continue
            if best is None or (ws.efficiency, -order.index(ws.mode)) > (best.efficiency, -order.index(best.mode)):
                best = ws
        return best

# ────────────────────────────────────────────────────────────────────────────
# Wants
# ────────────────────────────────────────────────────────────────────────────

class Want(BaseModel):
    """Abstract desire. Never traded; anything left at turn end is discarded."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    # effect kind -> magnitude per unit of satisfaction, applied at turn end
    effects: Dict[str, float] = Field(default_factory=dict)
    # items the owner must hold for the effects to apply
    requires: List[ItemRef] = Field(default_factory=list)

# ────────────────────────────────────────────────────────────────────────────
# Processes
# ────────────────────────────────────────────────────────────────────────────

class InputMode(str, Enum):
    CONSUME = "consume"
    USE = "use"

ComplexityScorer = Callable[[int, int], float]

def default_complexity(input_count: int, excludable_count: int) -> float:
    return input_count + 0.5 * excludable_count

class ProcessInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    item: ItemRef
    quantity: PositiveInt
    mode: InputMode = InputMode.CONSUME
    # may be left out, at a cost in output
    excludable: bool = False

class ProcessOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    item: ItemRef
    quantity: PositiveInt

class Process(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    inputs: List[ProcessInput] = Field(default_factory=list)
    outputs: List[ProcessOutput] = Field(..., min_length=1)
    time_cost: float = Field(..., gt=0, description="Time units per repetition")

    @property
    def excludable_count(self) -> int:
        return sum(1 for i in self.inputs if i.excludable)

    def complexity(self, scorer: ComplexityScorer = default_complexity) -> float:
        return scorer(len(self.inputs), self.excludable_count)

# ────────────────────────────────────────────────────────────────────────────
# Desires
# ────────────────────────────────────────────────────────────────────────────

class DesireKind(str, Enum):
    WANT = "want"
    CLASS = "class"
    GOOD = "good"
    SPECIFIC = "specific"
    WEALTH = "wealth"

class DesireTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: DesireKind
    id: Optional[str] = None

    @model_validator(mode="after")
    def _id_rules(self):
        if self.kind == DesireKind.WEALTH and self.id is not None:
            raise ValueError("wealth desires take no id")
        if self.kind != DesireKind.WEALTH and not self.id:
            raise ValueError(f"{self.kind.value} desires need an id")
        return self

    def __str__(self) -> str:
        return self.kind.value if self.id is None else f"{self.kind.value}:{self.id}"

class Desire(BaseModel):
    # ledger-local identity, assigned on insert
    key: int = 0
    target: DesireTarget
    start_weight: float
    # change in weight per turn since creation
    step: float = 0.0
    # units of satisfaction sought per turn
    amount: int = 1
    # None is an infinite desire
    remaining: Optional[int] = None
    # gain mode used for good/class/specific targets
    mode: GainMode = GainMode.CONSUMPTION
    created_turn: int = 0

    @property
    def infinite(self) -> bool:
        return self.remaining is None

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0

    def weight_at(self, turn: int) -> float:
        return self.start_weight + self.step * (turn - self.created_turn)

class DesireSourceKind(str, Enum):
    SPECIES = "species"
    CULTURE = "culture"
    RELIGION = "religion"

class DesireSource(BaseModel):
    """A species, culture or religion: the desires it gives every pop that has it."""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: DesireSourceKind
    display_name: str = ""
    desires: List[Desire] = Field(default_factory=list)
    # Time units generated per turn (species only)
    time_rate: int = Field(0, ge=0)

# ────────────────────────────────────────────────────────────────────────────
# Catalog
# ────────────────────────────────────────────────────────────────────────────

class ClassInfo(BaseModel):
    id: str
    example: str
    variants: List[str] = Field(default_factory=list)

    @property
    def members(self) -> List[str]:
        return [self.example] + sorted(self.variants)

Satisfier = Tuple[str, float, Optional[GainMode]]

class Catalog(BaseModel):
    """Read-only registry of every definition. Entities reference each other by id."""
    model_config = ConfigDict(frozen=True)

    goods: Dict[str, Good] = Field(default_factory=dict)
    wants: Dict[str, Want] = Field(default_factory=dict)
    processes: Dict[str, Process] = Field(default_factory=dict)
    sources: Dict[str, DesireSource] = Field(default_factory=dict)
    classes: Dict[str, ClassInfo] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        goods: List[Good],
        wants: List[Want] = (),
        processes: List[Process] = (),
        sources: List[DesireSource] = (),
        time_good_id: str = TIME_GOOD_ID,
    ) -> "Catalog":
        """Assemble and validate a catalog. Raises ConfigError on dangling references."""
        good_map = {g.id: g for g in goods}
        if time_good_id not in good_map:
            good_map[time_good_id] = Good(
                id=time_good_id,
                display_name="Time",
                wealth=False,
                tags={GoodTag.SERVICE, GoodTag.END_OF_DAY_CONSUMED, GoodTag.NONEXCHANGEABLE},
            )
        catalog = cls(
            goods=good_map,
            wants={w.id: w for w in wants},
            processes={p.id: p for p in processes},
            sources={s.id: s for s in sources},
            classes=_collect_classes(good_map.values()),
        )
        catalog.check()
        return catalog

    # ── validation ─────────────────────────────────────────────────────────
    def check(self) -> None:
        for good in self.goods.values():
            if good.decays_into and good.decays_into.good_id not in self.goods:
                raise ConfigError(f"good '{good.id}' decays into unknown good '{good.decays_into.good_id}'")
            for ws in good.wants:
                if ws.want_id not in self.wants:
                    raise ConfigError(f"good '{good.id}' satisfies unknown want '{ws.want_id}'")
        for want in self.wants.values():
            for ref in want.requires:
                self._check_ref(ref, f"want '{want.id}'")
        for proc in self.processes.values():
            for part in list(proc.inputs) + list(proc.outputs):
                self._check_ref(part.item, f"process '{proc.id}'")
            for out in proc.outputs:
                if out.item.kind == ItemKind.CLASS:
                    raise ConfigError(f"process '{proc.id}' cannot output a whole class '{out.item.id}'")
        specifics = {g.specific for g in self.goods.values() if g.specific}
        for source in self.sources.values():
            for desire in source.desires:
                t = desire.target
                known = {
                    DesireKind.WANT: lambda: t.id in self.wants,
                    DesireKind.CLASS: lambda: t.id in self.classes,
                    DesireKind.GOOD: lambda: t.id in self.goods,
                    DesireKind.SPECIFIC: lambda: t.id in specifics,
                    DesireKind.WEALTH: lambda: True,
                }[t.kind]()
                if not known:
                    raise ConfigError(f"{source.kind.value} '{source.id}' desires unknown {t}")

    def _check_ref(self, ref: ItemRef, owner: str) -> None:
        table = {ItemKind.GOOD: self.goods, ItemKind.WANT: self.wants, ItemKind.CLASS: self.classes}[ref.kind]
        if ref.id not in table:
            raise ConfigError(f"{owner} references unknown {ref.kind.value} '{ref.id}'")

    # ── queries ────────────────────────────────────────────────────────────
    def good(self, good_id: str) -> Good:
        try:
            return self.goods[good_id]
        except KeyError:
            raise ConfigError(f"unknown good '{good_id}'") from None

    def class_members(self, class_id: str) -> List[str]:
        info = self.classes.get(class_id)
        return info.members if info else []

    def satisfiers(self, target: DesireTarget) -> List[Satisfier]:
        """Goods able to satisfy a desire target, as (good id, rate, want gain mode), sorted by id."""
        found: List[Satisfier] = []
        if target.kind == DesireKind.GOOD:
            if target.id in self.goods:
                found.append((target.id, 1.0, None))
        elif target.kind == DesireKind.CLASS:
            found.extend((gid, 1.0, None) for gid in self.class_members(target.id))
        elif target.kind == DesireKind.SPECIFIC:
            found.extend((g.id, 1.0, None) for g in self.goods.values() if g.specific == target.id)
        elif target.kind == DesireKind.WANT:
            for g in self.goods.values():
                entry = g.want_entry(target.id)
                if entry is not None:
                    found.append((g.id, entry.efficiency, entry.mode))
        return sorted(found, key=lambda s: s[0])

def _collect_classes(goods) -> Dict[str, ClassInfo]:
    examples: Dict[str, List[str]] = {}
    variants: Dict[str, List[str]] = {}
    for g in goods:
        cm = g.class_membership
        if cm is None:
            continue
        if cm.is_example:
            examples.setdefault(cm.class_id, []).append(g.id)
        else:
            variants.setdefault(cm.class_id, []).append(g.id)
    classes: Dict[str, ClassInfo] = {}
    for class_id in sorted(set(examples) | set(variants)):
        found = examples.get(class_id, [])
        if not found:
            raise ConfigError(f"class '{class_id}' has variants {sorted(variants[class_id])} but no example good")
        if len(found) > 1:
            raise ConfigError(f"class '{class_id}' has more than one example good: {sorted(found)}")
        classes[class_id] = ClassInfo(id=class_id, example=found[0], variants=sorted(variants.get(class_id, [])))
    return classes

# ────────────────────────────────────────────────────────────────────────────
# Inventory
# ────────────────────────────────────────────────────────────────────────────

class Lot(BaseModel):
    good_id: str
    quantity: PositiveInt
    # decay steps survived since the lot entered an inventory
    age: int = Field(0, ge=0)

class DecayResult(BaseModel):
    destroyed: Dict[str, int] = Field(default_factory=dict)
    converted: Dict[str, int] = Field(default_factory=dict)

class Inventory(BaseModel):
    """Stock owned by exactly one agent, kept as lots so every unit has an age."""

    lots: List[Lot] = Field(default_factory=list)

    def quantity(self, good_id: str) -> int:
        return sum(lot.quantity for lot in self.lots if lot.good_id == good_id)

    def totals(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for lot in self.lots:
            out[lot.good_id] = out.get(lot.good_id, 0) + lot.quantity
        return dict(sorted(out.items()))

    def total_amount(self) -> int:
        return sum(lot.quantity for lot in self.lots)

    def put(self, good_id: str, quantity: int, age: int = 0) -> None:
        if quantity < 0:
            raise InventoryError(f"cannot put {quantity} of '{good_id}'")
        if quantity == 0:
            return
        for lot in self.lots:
            if lot.good_id == good_id and lot.age == age:
                lot.quantity += quantity
                return
        self.lots.append(Lot(good_id=good_id, quantity=quantity, age=age))

    def put_lots(self, lots: List[Lot]) -> None:
        for lot in lots:
            self.put(lot.good_id, lot.quantity, lot.age)

    def can_take(self, good_id: str, quantity: int) -> bool:
        return 0 <= quantity <= self.quantity(good_id)

    def take(self, good_id: str, quantity: int) -> List[Lot]:
        """Remove units, oldest first. Returns the removed lots with their ages."""
        if quantity < 0:
            raise InventoryError(f"cannot take {quantity} of '{good_id}'")
        available = self.quantity(good_id)
        if quantity > available:
            raise InventoryError(f"cannot take {quantity} of '{good_id}', only {available} held")
        to_take = quantity
        taken: List[Lot] = []
        matching = sorted((lot for lot in self.lots if lot.good_id == good_id), key=lambda lot: -lot.age)
        for lot in matching:
            if to_take <= 0:
                break
            amount = min(lot.quantity, to_take)
            taken.append(Lot(good_id=good_id, quantity=amount, age=lot.age))
            lot.quantity -= amount
            to_take -= amount
        self.lots = [lot for lot in self.lots if lot.quantity > 0]
        return taken

    def decay(self, catalog: Catalog) -> DecayResult:
        """Age every lot one turn; expired lots convert or vanish."""
        result = DecayResult()
        kept: List[Lot] = []
        produced: List[Lot] = []
        for lot in self.lots:
            good = catalog.good(lot.good_id)
            if GoodTag.END_OF_DAY_CONSUMED in good.tags:
                result.destroyed[lot.good_id] = result.destroyed.get(lot.good_id, 0) + lot.quantity
                continue
            lot.age += 1
            if not good.decays or lot.age < good.decay_rate:
                kept.append(lot)
                continue
            result.destroyed[lot.good_id] = result.destroyed.get(lot.good_id, 0) + lot.quantity
            if good.decays_into is not None:
                amount = int(lot.quantity * good.decays_into.ratio)
                if amount > 0:
                    target = good.decays_into.good_id
                    produced.append(Lot(good_id=target, quantity=amount))
                    result.converted[target] = result.converted.get(target, 0) + amount
        self.lots = kept
        self.put_lots(produced)
        return result

# ────────────────────────────────────────────────────────────────────────────
# Agents
# ────────────────────────────────────────────────────────────────────────────

class DesireLedger(BaseModel):
    """A pop's desires, kept ordered by starting weight (ties keep insertion order)."""

    desires: List[Desire] = Field(default_factory=list)
    next_key: int = 0
    # effective weights as of the last refresh, keyed by desire key
    effective_weights: Dict[int, float] = Field(default_factory=dict)

    def add(self, desire: Desire) -> Desire:
        desire = desire.model_copy(update={"key": self.next_key})
        self.next_key += 1
        index = len(self.desires)
        for idx, existing in enumerate(self.desires):
            if existing.start_weight > desire.start_weight:
                index = idx
                break
        self.desires.insert(index, desire)
        return desire

    def get(self, key: int) -> Desire:
        for desire in self.desires:
            if desire.key == key:
                return desire
        raise KeyError(key)

    def prune(self) -> List[Desire]:
        """Remove finite desires that have run out."""
        gone = [d for d in self.desires if d.exhausted]
        if gone:
            self.desires = [d for d in self.desires if not d.exhausted]
            for d in gone:
                self.effective_weights.pop(d.key, None)
        return gone

class SatisfactionValues(BaseModel):
    # spread of weights covered by satisfied desires
    range: float = 0.0
    # units of satisfaction achieved
    steps: float = 0.0
    # AMV of held wealth goods
    amv: Decimal = Decimal(0)

    @property
    def density(self) -> float:
        return self.steps / self.range if self.range else 0.0

class _AgentBase(BaseModel):
    id: str
    locality: str
    inventory: Inventory = Field(default_factory=Inventory)
    cash: Decimal = Field(Decimal(0), ge=0)

    @field_validator("cash", mode="before")
    @classmethod
    def _decimize(cls, v):
        return Decimal(str(v))

class Pop(_AgentBase):
    species: Optional[str] = None
    culture: Optional[str] = None
    religion: Optional[str] = None
    ledger: DesireLedger = Field(default_factory=DesireLedger)
    time_rate: int = Field(0, ge=0)

    # turn-local: units held back from sale because they served a desire
    reserved: Dict[str, int] = Field(default_factory=dict)
    # turn-local: reserved units to destroy at the end of the turn
    consume_at_end: Dict[str, int] = Field(default_factory=dict)
    # turn-local: time owed for goods bought this turn, paid at the end of the turn
    time_owed: float = 0.0
    # turn-local: satisfaction delivered per desire key
    desire_progress: Dict[int, float] = Field(default_factory=dict)
    # turn-local: want satisfaction gathered this turn
    want_satisfaction: Dict[str, float] = Field(default_factory=dict)
    # running total of want effects applied to this pop
    effects: Dict[str, float] = Field(default_factory=dict)
    satisfaction: SatisfactionValues = Field(default_factory=SatisfactionValues)

class Firm(_AgentBase):
    process_ids: List[str] = Field(default_factory=list)
    # None uses the configured day length
    time_budget: Optional[float] = Field(None, gt=0)
    friction_spent: float = 0.0
    # turn-local want pool usable as process input
    wants: Dict[str, float] = Field(default_factory=dict)
    # production below one whole unit, carried between turns and never traded
    fractional_output: Dict[str, float] = Field(default_factory=dict)

    def input_goods(self, catalog: Catalog) -> Set[str]:
        """Every good some process of this firm takes as input."""
        goods: Set[str] = set()
        for pid in self.process_ids:
            for inp in catalog.processes[pid].inputs:
                if inp.item.kind == ItemKind.GOOD:
                    goods.add(inp.item.id)
                elif inp.item.kind == ItemKind.CLASS:
                    goods.update(catalog.class_members(inp.item.id))
        return goods

Agent = Union[Pop, Firm]

# ────────────────────────────────────────────────────────────────────────────
# Markets & localities
# ────────────────────────────────────────────────────────────────────────────

class MarketRecord(BaseModel):
    turn: int
    amv: Decimal
    vwap: Optional[Decimal] = None
    volume: int = 0
    trades: int = 0
    offered: int = 0
    demanded: int = 0
    unmet: int = 0

class GoodMarket(BaseModel):
    good_id: str
    amv: Decimal
    # share of offered units that actually sold, smoothed
    salability: Decimal = Decimal(0)
    # (unmet - unsold) / (unmet + unsold) from the last clearing, in [-1, 1]
    pressure: Decimal = Decimal(0)
    history: List[MarketRecord] = Field(default_factory=list)

class LevyKind(str, Enum):
    MULTIPLICATIVE = "multiplicative"  # rate x value of the trade
    ADDITIVE = "additive"              # rate per unit traded

class Levy(BaseModel):
    good_id: str
    rate: Decimal = Field(..., ge=0)
    kind: LevyKind = LevyKind.MULTIPLICATIVE

    @field_validator("rate", mode="before")
    @classmethod
    def _decimize(cls, v):
        return Decimal(str(v))

    def charge(self, price: Decimal, quantity: int) -> Decimal:
        if self.kind == LevyKind.MULTIPLICATIVE:
            return price * quantity * self.rate
        return self.rate * quantity

class Locality(BaseModel):
    id: str
    name: str = ""
    pops: List[str] = Field(default_factory=list)
    firms: List[str] = Field(default_factory=list)
    # agents from other localities allowed to sell here
    traders: List[str] = Field(default_factory=list)
    markets: Dict[str, GoodMarket] = Field(default_factory=dict)
    treasury: Decimal = Decimal(0)
    levies: Dict[str, Levy] = Field(default_factory=dict)

    def amv(self, good: Good) -> Decimal:
        market = self.markets.get(good.id)
        return market.amv if market else good.initial_amv

    def market(self, good: Good) -> GoodMarket:
        if good.id not in self.markets:
            self.markets[good.id] = GoodMarket(good_id=good.id, amv=good.initial_amv)
        return self.markets[good.id]

    @property
    def members(self) -> List[str]:
        return self.pops + self.firms

# ────────────────────────────────────────────────────────────────────────────
# World state (checkpoint)
# ────────────────────────────────────────────────────────────────────────────

class TurnStep(str, Enum):
    DECAY = "decay"
    RELEASE = "release"
    PRODUCTION = "production"
    DESIRES = "desires"
    CLEARING = "clearing"
    ADVANCE = "advance"

class StagedOutput(BaseModel):
    """Process output waiting out its grace turn."""
    owner_id: str
    item: ItemRef
    quantity: float = Field(..., gt=0)
    produced_turn: int

class ResourceInjection(BaseModel):
    """Raw resources handed in from outside (territory extraction)."""
    owner_id: str
    good_id: str
    quantity: PositiveInt

class TransportLink(BaseModel):
    good_id: str
    origin: str
    destination: str
    surcharge: Decimal = Field(..., ge=0)

    @field_validator("surcharge", mode="before")
    @classmethod
    def _decimize(cls, v):
        return Decimal(str(v))

class WorldState(BaseModel):
    turn: int = 0
    # turns are atomic, so a checkpoint always resumes at the decay step
    next_step: TurnStep = TurnStep.DECAY
    localities: Dict[str, Locality] = Field(default_factory=dict)
    pops: Dict[str, Pop] = Field(default_factory=dict)
    firms: Dict[str, Firm] = Field(default_factory=dict)
    grace: List[StagedOutput] = Field(default_factory=list)
    injections: List[ResourceInjection] = Field(default_factory=list)
    transport: List[TransportLink] = Field(default_factory=list)

    # ── Helper methods -----------------------------------------------------
    def agent(self, agent_id: str) -> Agent:
        if agent_id in self.pops:
            return self.pops[agent_id]
        if agent_id in self.firms:
            return self.firms[agent_id]
        raise KeyError(f"unknown agent '{agent_id}'")

    def locality(self, locality_id: str) -> Locality:
        if locality_id not in self.localities:
            self.localities[locality_id] = Locality(id=locality_id)
        return self.localities[locality_id]

    def add_pop(self, pop: Pop) -> Pop:
        self._check_new_id(pop.id)
        self.pops[pop.id] = pop
        self.locality(pop.locality).pops.append(pop.id)
        return pop

    def add_firm(self, firm: Firm) -> Firm:
        self._check_new_id(firm.id)
        self.firms[firm.id] = firm
        self.locality(firm.locality).firms.append(firm.id)
        return firm

    def _check_new_id(self, agent_id: str) -> None:
        if agent_id in self.pops or agent_id in self.firms:
            raise ValueError(f"agent id '{agent_id}' already in use")

    def surcharge(self, good_id: str, origin: str, destination: str) -> Decimal:
        if origin == destination:
            return Decimal(0)
        for link in self.transport:
            if link.good_id == good_id and link.origin == origin and link.destination == destination:
                return link.surcharge
        return Decimal(0)

    def total_units(self, good_id: str) -> int:
        """Every unit of a good in any inventory or waiting in the grace buffer."""
        held = sum(a.inventory.quantity(good_id) for a in list(self.pops.values()) + list(self.firms.values()))
        staged = sum(int(s.quantity) for s in self.grace if s.item.kind == ItemKind.GOOD and s.item.id == good_id)
        return held + staged
