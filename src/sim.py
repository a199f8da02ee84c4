import argparse
import logging
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

import objects as G
import desires as D
import production as P
import market as M
from config import SimConfig, load_config
from errors import ConfigError, Diagnostic, DesireConfigError, InsufficientTime
from register import LOCAL_CONTENT, MOD_PATHS, load_catalog

logger = logging.getLogger(__name__)

# Constants
WORLD_STATE_PATH = Path("world_state.json")

# -----------------------------------
# Persistence
# -----------------------------------

def load_world(path: Path = WORLD_STATE_PATH) -> G.WorldState:
    path = Path(path)
    if path.exists():
        raw = path.read_text(encoding="utf-8")
        return G.WorldState.model_validate_json(raw)
    return G.WorldState()


def save_world(world: G.WorldState, path: Path = WORLD_STATE_PATH) -> None:
    # turns are atomic, so whatever we are handed sits between turns
    world.next_step = G.TurnStep.DECAY
    Path(path).write_text(world.model_dump_json(indent=2), encoding="utf-8")

# -----------------------------------
# Turn report
# -----------------------------------

class TurnReport(BaseModel):
    turn: int
    decayed: Dict[str, int] = Field(default_factory=dict)
    converted: Dict[str, int] = Field(default_factory=dict)
    released: int = 0
    schedules: Dict[str, P.ScheduleResult] = Field(default_factory=dict)
    demand: Dict[str, D.DemandList] = Field(default_factory=dict)
    clearings: Dict[str, M.ClearingResult] = Field(default_factory=dict)
    satisfaction: Dict[str, G.SatisfactionValues] = Field(default_factory=dict)
    diagnostics: List[Diagnostic] = Field(default_factory=list)

    @property
    def settlements(self) -> List[M.Settlement]:
        return [s for c in self.clearings.values() for s in c.settlements]

    def summary(self) -> str:
        volume = sum(s.quantity for s in self.settlements)
        runs = sum(r.repetitions for s in self.schedules.values() for r in s.runs)
        return (
            f"Turn {self.turn}: {runs} process runs, {len(self.settlements)} trades "
            f"({volume} units), {sum(self.decayed.values())} units decayed, "
            f"{len(self.diagnostics)} diagnostics"
        )

def _tally(into: Dict[str, int], extra: Dict[str, int]) -> None:
    for key, value in extra.items():
        into[key] = into.get(key, 0) + value

# -----------------------------------
# Turn steps
# -----------------------------------

def apply_decay(world: G.WorldState, catalog: G.Catalog, report: TurnReport) -> None:
    agents: List[G.Agent] = list(world.pops.values()) + list(world.firms.values())
    for agent in sorted(agents, key=lambda a: a.id):
        result = agent.inventory.decay(catalog)
        _tally(report.decayed, result.destroyed)
        _tally(report.converted, result.converted)


def release_grace(world: G.WorldState, report: TurnReport) -> None:
    """Hand last turn's process output to its owners."""
    for staged in world.grace:
        owner = world.agent(staged.owner_id)
        if staged.item.kind == G.ItemKind.GOOD:
            owner.inventory.put(staged.item.id, int(staged.quantity))
        elif isinstance(owner, G.Firm):
            owner.wants[staged.item.id] = owner.wants.get(staged.item.id, 0.0) + staged.quantity
        else:
            owner.want_satisfaction[staged.item.id] = owner.want_satisfaction.get(staged.item.id, 0.0) + staged.quantity
        report.released += 1
    world.grace = []


def apply_injections(world: G.WorldState) -> None:
    for injection in world.injections:
        world.agent(injection.owner_id).inventory.put(injection.good_id, injection.quantity)
    world.injections = []


def generate_time(world: G.WorldState, config: SimConfig) -> None:
    for pop_id in sorted(world.pops):
        pop = world.pops[pop_id]
        pop.inventory.put(config.time_good_id, pop.time_rate)


def run_turn(world: G.WorldState, catalog: G.Catalog, config: Optional[SimConfig] = None) -> Tuple[G.WorldState, TurnReport]:
    """
    Run one full turn on a copy of `world` and return (new world, report).

    The caller's world is never touched, so a turn that raises can simply be
    retried from the same state.
    """
    config = config or SimConfig()
    world = world.model_copy(deep=True)
    turn = world.turn
    report = TurnReport(turn=turn)

    # 1. decay
    world.next_step = G.TurnStep.DECAY
    apply_decay(world, catalog, report)

    # 2. grace release, territory injections, pop time
    world.next_step = G.TurnStep.RELEASE
    release_grace(world, report)
    apply_injections(world)
    generate_time(world, config)

    # 3. production
    world.next_step = G.TurnStep.PRODUCTION
    staged: List[G.StagedOutput] = []
    for firm_id in sorted(world.firms):
        firm = world.firms[firm_id]
        try:
            result = P.schedule(firm, catalog, world.locality(firm.locality), config, turn)
        except InsufficientTime as e:
            logger.warning("Insufficient time: %s", e)
            result = P.ScheduleResult(firm_id=firm_id)
            report.diagnostics.append(Diagnostic(kind="insufficient_time", subject=firm_id, message=str(e)))
        report.schedules[firm_id] = result
        report.diagnostics.extend(result.shortfalls)
        staged.extend(result.staged)

    # 4. desires
    world.next_step = G.TurnStep.DESIRES
    for pop_id in sorted(world.pops):
        pop = world.pops[pop_id]
        report.demand[pop_id] = D.refresh(pop, turn, catalog, world.locality(pop.locality), config)

    # 5. clearing
    world.next_step = G.TurnStep.CLEARING
    clearer = M.MarketClearer(world, catalog, config)
    for locality_id in sorted(world.localities):
        locality = world.localities[locality_id]
        lists = [report.demand[pid] for pid in locality.pops if pid in report.demand]
        result = clearer.clear(locality, lists, turn)
        report.clearings[locality_id] = result
        report.diagnostics.extend(result.diagnostics)

    # 6. end of turn
    world.next_step = G.TurnStep.ADVANCE
    for pop_id in sorted(world.pops):
        pop = world.pops[pop_id]
        unpaid = D.end_turn(pop, catalog, world.locality(pop.locality), config)
        if unpaid is not None:
            report.diagnostics.append(unpaid)
        report.satisfaction[pop_id] = pop.satisfaction
    for firm in world.firms.values():
        firm.wants = {}
    # this turn's output waits out the next turn's release
    world.grace = staged
    world.turn += 1
    world.next_step = G.TurnStep.DECAY

    logger.info(report.summary())
    return world, report

# -----------------------------------
# Simulation
# -----------------------------------

class Simulation:
    """Catalog, config and world state, plus the hooks outside systems drive it through."""

    def __init__(self, catalog: G.Catalog, config: Optional[SimConfig] = None, world: Optional[G.WorldState] = None):
        self.catalog = catalog
        self.config = config or SimConfig()
        self.world = world if world is not None else G.WorldState()
        self.reports: List[TurnReport] = []
        # diagnostics raised between turns, attached to the next report
        self._pending: List[Diagnostic] = []

    # ── agents -------------------------------------------------------------
    def add_pop(
        self,
        pop_id: str,
        locality: str,
        species: str,
        culture: Optional[str] = None,
        religion: Optional[str] = None,
        cash: Decimal = Decimal(0),
        goods: Optional[Dict[str, int]] = None,
    ) -> Optional[G.Pop]:
        """Create a pop from its desire sources. A pop with bad desires is rejected, not fatal."""
        try:
            pop = D.create_pop(pop_id, locality, self.catalog, species, culture, religion,
                               turn=self.world.turn, cash=cash)
        except DesireConfigError as e:
            logger.warning("Rejected pop %s: %s", pop_id, e)
            self._pending.append(Diagnostic(kind="rejected_pop", subject=pop_id, message=str(e)))
            return None
        for good_id, quantity in (goods or {}).items():
            self.catalog.good(good_id)
            pop.inventory.put(good_id, quantity)
        return self.world.add_pop(pop)

    def add_firm(
        self,
        firm_id: str,
        locality: str,
        process_ids: List[str],
        cash: Decimal = Decimal(0),
        goods: Optional[Dict[str, int]] = None,
        time_budget: Optional[float] = None,
    ) -> G.Firm:
        unknown = [pid for pid in process_ids if pid not in self.catalog.processes]
        if unknown:
            raise ConfigError(f"firm '{firm_id}' runs unknown processes {unknown}")
        firm = G.Firm(id=firm_id, locality=locality, process_ids=list(process_ids),
                      cash=cash, time_budget=time_budget)
        for good_id, quantity in (goods or {}).items():
            self.catalog.good(good_id)
            firm.inventory.put(good_id, quantity)
        return self.world.add_firm(firm)

    # ── territory & institution hooks --------------------------------------
    def inject(self, locality: str, owner_id: str, good_id: str, quantity: int) -> None:
        """Queue raw resources extracted from territory; they arrive at the next release step."""
        self.catalog.good(good_id)
        owner = self.world.agent(owner_id)
        if owner.locality != locality:
            raise ValueError(f"agent '{owner_id}' is not in locality '{locality}'")
        self.world.injections.append(G.ResourceInjection(owner_id=owner_id, good_id=good_id, quantity=quantity))

    def set_levy(self, locality: str, good_id: str, rate, kind: G.LevyKind = G.LevyKind.MULTIPLICATIVE) -> G.Levy:
        self.catalog.good(good_id)
        levy = G.Levy(good_id=good_id, rate=rate, kind=kind)
        self.world.locality(locality).levies[good_id] = levy
        return levy

    def clear_levy(self, locality: str, good_id: str) -> None:
        self.world.locality(locality).levies.pop(good_id, None)

    def set_transport(self, good_id: str, origin: str, destination: str, surcharge) -> G.TransportLink:
        self.catalog.good(good_id)
        self.world.transport = [
            t for t in self.world.transport
            if not (t.good_id == good_id and t.origin == origin and t.destination == destination)
        ]
        link = G.TransportLink(good_id=good_id, origin=origin, destination=destination, surcharge=surcharge)
        self.world.transport.append(link)
        return link

    def add_trader(self, locality: str, agent_id: str) -> None:
        """Let an agent from another locality sell its stock here."""
        agent = self.world.agent(agent_id)
        target = self.world.locality(locality)
        if agent.locality == locality:
            raise ValueError(f"agent '{agent_id}' already trades in '{locality}'")
        if agent_id not in target.traders:
            target.traders.append(agent_id)

    # ── running ------------------------------------------------------------
    def step(self) -> TurnReport:
        world, report = run_turn(self.world, self.catalog, self.config)
        report.diagnostics = self._pending + report.diagnostics
        self._pending = []
        self.world = world
        self.reports.append(report)
        return report

    def run(self, turns: int) -> List[TurnReport]:
        return [self.step() for _ in range(turns)]

    def amv_history(self, locality: str, good_id: str) -> List[Decimal]:
        market = self.world.locality(locality).markets.get(good_id)
        return [record.amv for record in market.history] if market else []

    def save(self, path: Path = WORLD_STATE_PATH) -> None:
        save_world(self.world, path)

# -----------------------------------
# Scenarios
# -----------------------------------

class PopSpec(BaseModel):
    id: str
    locality: str
    species: str
    culture: Optional[str] = None
    religion: Optional[str] = None
    cash: Decimal = Decimal(0)
    goods: Dict[str, int] = Field(default_factory=dict)

class FirmSpec(BaseModel):
    id: str
    locality: str
    process_ids: List[str]
    cash: Decimal = Decimal(0)
    goods: Dict[str, int] = Field(default_factory=dict)
    time_budget: Optional[float] = None

class LevySpec(G.Levy):
    locality: str

class Scenario(BaseModel):
    """Starting population for a fresh world."""
    pops: List[PopSpec] = Field(default_factory=list)
    firms: List[FirmSpec] = Field(default_factory=list)
    levies: List[LevySpec] = Field(default_factory=list)
    transport: List[G.TransportLink] = Field(default_factory=list)
    # locality id -> agents from elsewhere allowed to sell there
    traders: Dict[str, List[str]] = Field(default_factory=dict)


def load_scenario(path: Path) -> Scenario:
    try:
        return Scenario.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except ValidationError as e:
        raise ConfigError(f"Invalid scenario {path}: {e}") from e


def populate(simulation: Simulation, scenario: Scenario) -> None:
    for spec in scenario.firms:
        simulation.add_firm(spec.id, spec.locality, spec.process_ids, spec.cash, spec.goods, spec.time_budget)
    for spec in scenario.pops:
        simulation.add_pop(spec.id, spec.locality, spec.species, spec.culture, spec.religion, spec.cash, spec.goods)
    for levy in scenario.levies:
        simulation.set_levy(levy.locality, levy.good_id, levy.rate, levy.kind)
    for link in scenario.transport:
        simulation.set_transport(link.good_id, link.origin, link.destination, link.surcharge)
    for locality, agent_ids in sorted(scenario.traders.items()):
        for agent_id in agent_ids:
            simulation.add_trader(locality, agent_id)

# -----------------------------------
# Main Simulation Loop
# -----------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the market-day economic simulation")
    parser.add_argument("--turns", type=int, default=10, help="Number of turns to run")
    parser.add_argument("--seed", type=int, default=None, help="RNG seed for deterministic runs")
    parser.add_argument("--content", type=Path, default=LOCAL_CONTENT, help="Content folder to load")
    parser.add_argument("--config", type=Path, default=None, help="SimConfig JSON (default: <content>/SimConfig.json)")
    parser.add_argument("--scenario", type=Path, default=None, help="Scenario JSON used when no checkpoint exists")
    parser.add_argument("--checkpoint", type=Path, default=WORLD_STATE_PATH, help="World state to resume and save")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING),
                        format="%(levelname)s %(name)s: %(message)s")

    config = load_config(args.config or args.content / "SimConfig.json")
    if args.seed is not None:
        config = config.model_copy(update={"seed": args.seed})
    catalog = load_catalog([args.content] + MOD_PATHS, time_good_id=config.time_good_id)

    resumed = args.checkpoint.exists()
    simulation = Simulation(catalog, config, load_world(args.checkpoint))
    if not resumed and args.scenario is not None:
        populate(simulation, load_scenario(args.scenario))

    for report in simulation.run(args.turns):
        print(report.summary())
        for diagnostic in report.diagnostics:
            print(f"  [{diagnostic.kind}] {diagnostic.subject}: {diagnostic.message}")
    for locality_id in sorted(simulation.world.localities):
        locality = simulation.world.localities[locality_id]
        prices = ", ".join(f"{gid}={m.amv:.2f}" for gid, m in sorted(locality.markets.items()))
        print(f"AMV {locality_id}: {prices}")
    simulation.save(args.checkpoint)


if __name__ == "__main__":
    main()
