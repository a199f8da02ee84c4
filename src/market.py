"""
Market clearer for one locality and one turn.

Asks come from whatever firms and pops hold and do not need. Bids come from
pops' ranked demand lists. Every good clears on its own: bids are served in
desire-priority order across all pops, each walking the asks from cheapest up
while its price covers the ask. The seller's ask is the settlement price.

All matches for a good are worked out before anything moves, then goods and
cash are transferred in one pass. The good's AMV is written once, after its
matching is final, and only on a turn that saw trades. Last turn's pressure
shifts this turn's ask and bid prices without moving the stored AMV.
"""
from __future__ import annotations
import logging
import math
import random
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

import objects as G
import desires as D
from config import SimConfig
from errors import Diagnostic, InventoryError, NoLiquidity

logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────
# Order book
# ────────────────────────────────────────────────────────────────────────────

class Ask(BaseModel):
    seller_id: str
    good_id: str
    quantity: int = Field(..., gt=0)
    price: Decimal
    # cost of moving the good in from the seller's locality, included in price
    surcharge: Decimal = Decimal(0)

class Bid(BaseModel):
    pop_id: str
    desire_key: int
    good_id: str
    # whole units of the good wanted
    units: int = Field(..., gt=0)
    # units of satisfaction behind those units
    need: int = Field(..., gt=0)
    price: Decimal
    # cash set aside for this bid
    budget: Decimal
    weight: float
    tiebreak: float
    position: int

    @property
    def priority(self) -> Tuple[float, float, int]:
        return (self.weight, self.tiebreak, self.position)

class Settlement(BaseModel):
    good_id: str
    buyer_id: str
    seller_id: str
    quantity: int = Field(..., gt=0)
    price: Decimal
    levy: Decimal = Decimal(0)
    surcharge: Decimal = Decimal(0)
    desire_key: int

    @property
    def value(self) -> Decimal:
        return self.price * self.quantity

class ClearingResult(BaseModel):
    locality_id: str
    turn: int
    settlements: List[Settlement] = Field(default_factory=list)
    amv: Dict[str, Decimal] = Field(default_factory=dict)
    records: Dict[str, G.MarketRecord] = Field(default_factory=dict)
    diagnostics: List[Diagnostic] = Field(default_factory=list)

# ────────────────────────────────────────────────────────────────────────────
# Pricing helpers
# ────────────────────────────────────────────────────────────────────────────

def pressured_amv(market: G.GoodMarket, config: SimConfig) -> Decimal:
    """AMV after last turn's unmet demand or unsold supply has pushed on it."""
    amv = market.amv * (Decimal(1) + config.pressure_rate * market.pressure)
    return max(config.price_floor, amv)

def smoothed_amv(reference: Decimal, vwap: Decimal, config: SimConfig) -> Decimal:
    alpha = config.amv_smoothing
    return (Decimal(1) - alpha) * reference + alpha * vwap

def willingness_to_pay(amv: Decimal, position: int, config: SimConfig) -> Decimal:
    """Per-unit price a pop will pay; its most pressing desires carry the biggest premium."""
    return amv * (Decimal(1) + config.bid_markup / Decimal(1 + position))

def reservation_price(amv: Decimal, config: SimConfig) -> Decimal:
    return max(config.price_floor, amv * config.ask_markup)

# ────────────────────────────────────────────────────────────────────────────
# Clearer
# ────────────────────────────────────────────────────────────────────────────

class MarketClearer:
    def __init__(self, world: G.WorldState, catalog: G.Catalog, config: Optional[SimConfig] = None):
        self.world = world
        self.catalog = catalog
        self.config = config or SimConfig()
        # prices quoted this clearing: stored AMV after last turn's pressure
        self._reference: Dict[str, Decimal] = {}

    # ── valuation --------------------------------------------------------------
    def _amv(self, locality: G.Locality, good_id: str) -> Decimal:
        if good_id not in self._reference:
            good = self.catalog.good(good_id)
            market = locality.markets.get(good_id)
            self._reference[good_id] = pressured_amv(market, self.config) if market else good.initial_amv
        return self._reference[good_id]

    # ── asks -------------------------------------------------------------------
    def _kept_by_pop(self, pop: G.Pop) -> Set[str]:
        kept: Set[str] = set()
        for desire in pop.ledger.desires:
            if desire.target.kind == G.DesireKind.WEALTH or desire.exhausted:
                continue
            kept.update(gid for gid, _, _ in self.catalog.satisfiers(desire.target))
        return kept

    def collect_asks(self, locality: G.Locality) -> List[Ask]:
        asks: List[Ask] = []
        sellers = sorted(set(locality.members) | set(locality.traders))
        for agent_id in sellers:
            agent = self.world.agent(agent_id)
            foreign = agent.locality != locality.id
            if isinstance(agent, G.Firm):
                kept = agent.input_goods(self.catalog)
                reserved: Dict[str, int] = {}
            else:
                kept = self._kept_by_pop(agent)
                reserved = agent.reserved
            for good_id, quantity in agent.inventory.totals().items():
                good = self.catalog.good(good_id)
                if not good.tradable or good_id in kept:
                    continue
                if foreign and G.GoodTag.IMMOBILE in good.tags:
                    continue
                quantity -= reserved.get(good_id, 0)
                if quantity <= 0:
                    continue
                surcharge = self.world.surcharge(good_id, agent.locality, locality.id) if foreign else Decimal(0)
                price = reservation_price(self._amv(locality, good_id), self.config) + surcharge
                asks.append(Ask(seller_id=agent_id, good_id=good_id, quantity=quantity,
                                price=price, surcharge=surcharge))
        return asks

    # ── bids -------------------------------------------------------------------
    def _preferred_good(
        self,
        locality: G.Locality,
        target: G.DesireTarget,
        offered: Set[str],
    ) -> Optional[Tuple[str, float]]:
        """Cheapest satisfier per unit of satisfaction, preferring goods someone is selling."""
        candidates = [
            (gid, rate) for gid, rate, _ in self.catalog.satisfiers(target)
            if self.catalog.good(gid).tradable
        ]
        if not candidates:
            return None
        on_sale = [c for c in candidates if c[0] in offered]
        pool = on_sale or candidates
        return min(pool, key=lambda c: (self._amv(locality, c[0]) / Decimal(str(c[1])), c[0]))

    def collect_bids(
        self,
        locality: G.Locality,
        demand_lists: Iterable[D.DemandList],
        asks: List[Ask],
        turn: int,
    ) -> List[Bid]:
        offered = {a.good_id for a in asks}
        lists = sorted(demand_lists, key=lambda dl: dl.pop_id)
        rng = random.Random(f"{self.config.seed}:{turn}:{locality.id}:market")
        tiebreak = {dl.pop_id: rng.random() for dl in lists}

        bids: List[Bid] = []
        for dl in lists:
            pop = self.world.pops[dl.pop_id]
            cash_left = pop.cash
            for demand in sorted(dl.demands, key=lambda d: d.position):
                choice = self._preferred_good(locality, demand.target, offered)
                if choice is None:
                    continue
                good_id, rate = choice
                units = math.ceil(demand.quantity / rate - 1e-9)
                price = willingness_to_pay(self._amv(locality, good_id), demand.position, self.config)
                budget = min(cash_left, price * units)
                cash_left -= budget
                bids.append(Bid(
                    pop_id=dl.pop_id,
                    desire_key=demand.desire_key,
                    good_id=good_id,
                    units=units,
                    need=demand.quantity,
                    price=price,
                    budget=budget,
                    weight=demand.weight,
                    tiebreak=tiebreak[dl.pop_id],
                    position=demand.position,
                ))
        return bids

    # ── matching ---------------------------------------------------------------
    def match(self, locality: G.Locality, good_id: str, bids: List[Bid], asks: List[Ask]) -> List[Settlement]:
        """Serve bids in priority order against the cheapest asks. Nothing is moved here."""
        levy = locality.levies.get(good_id)
        book = sorted(asks, key=lambda a: (a.price, a.seller_id))
        left = {id(a): a.quantity for a in book}
        settlements: List[Settlement] = []
        for bid in sorted(bids, key=lambda b: b.priority):
            units_left = bid.units
            budget_left = bid.budget
            for ask in book:
                if units_left <= 0:
                    break
                if bid.price < ask.price:
                    break
                if left[id(ask)] <= 0 or ask.seller_id == bid.pop_id:
                    continue
                affordable = int(budget_left // ask.price)
                quantity = min(units_left, left[id(ask)], affordable)
                if quantity <= 0:
                    break
                charge = levy.charge(ask.price, quantity) if levy else Decimal(0)
                settlements.append(Settlement(
                    good_id=good_id,
                    buyer_id=bid.pop_id,
                    seller_id=ask.seller_id,
                    quantity=quantity,
                    price=ask.price,
                    levy=min(charge, (ask.price - ask.surcharge) * quantity),
                    surcharge=ask.surcharge * quantity,
                    desire_key=bid.desire_key,
                ))
                left[id(ask)] -= quantity
                units_left -= quantity
                budget_left -= ask.price * quantity
        return settlements

    def settle(self, locality: G.Locality, good_id: str, settlements: List[Settlement],
               bids: List[Bid]) -> None:
        """Move goods and cash for every match of one good, or nothing at all."""
        sold: Dict[str, int] = defaultdict(int)
        spent: Dict[str, Decimal] = defaultdict(Decimal)
        for s in settlements:
            sold[s.seller_id] += s.quantity
            spent[s.buyer_id] += s.value
        for seller_id, quantity in sold.items():
            held = self.world.agent(seller_id).inventory.quantity(good_id)
            if quantity > held:
                raise InventoryError(f"{seller_id} sold {quantity} of '{good_id}' but holds {held}")
        for buyer_id, amount in spent.items():
            cash = self.world.agent(buyer_id).cash
            if amount > cash:
                raise InventoryError(f"{buyer_id} owes {amount} for '{good_id}' but holds {cash}")

        need_left = {(b.pop_id, b.desire_key): b.need for b in bids}
        for s in settlements:
            seller = self.world.agent(s.seller_id)
            buyer = self.world.pops[s.buyer_id]
            buyer.inventory.put_lots(seller.inventory.take(good_id, s.quantity))
            buyer.cash -= s.value
            seller.cash += s.value - s.levy - s.surcharge
            locality.treasury += s.levy
            key = (s.buyer_id, s.desire_key)
            need_left[key] -= D.apply_purchase(buyer, s.desire_key, good_id, s.quantity,
                                               need_left[key], self.catalog)
            logger.debug("%s bought %d %s from %s at %s", s.buyer_id, s.quantity, good_id, s.seller_id, s.price)

    # ── price update -----------------------------------------------------------
    def update_market(
        self,
        locality: G.Locality,
        good_id: str,
        settlements: List[Settlement],
        offered: int,
        demanded: int,
        turn: int,
    ) -> G.GoodMarket:
        market = locality.market(self.catalog.good(good_id))
        volume = sum(s.quantity for s in settlements)
        vwap: Optional[Decimal] = None
        if volume:
            vwap = sum((s.value for s in settlements), Decimal(0)) / volume
            market.amv = smoothed_amv(self._amv(locality, good_id), vwap, self.config)

        unmet = max(0, demanded - volume)
        unsold = max(0, offered - volume)
        pushing = unmet + unsold
        market.pressure = Decimal(unmet - unsold) / Decimal(pushing) if pushing else Decimal(0)
        if offered:
            beta = self.config.salability_smoothing
            market.salability = (Decimal(1) - beta) * market.salability + beta * Decimal(volume) / Decimal(offered)

        market.history.append(G.MarketRecord(
            turn=turn,
            amv=market.amv,
            vwap=vwap,
            volume=volume,
            trades=len(settlements),
            offered=offered,
            demanded=demanded,
            unmet=unmet,
        ))
        return market

    # ── entry point ------------------------------------------------------------
    def clear(self, locality: G.Locality, demand_lists: Iterable[D.DemandList], turn: int) -> ClearingResult:
        self._reference = {}
        result = ClearingResult(locality_id=locality.id, turn=turn)

        asks = self.collect_asks(locality)
        bids = self.collect_bids(locality, demand_lists, asks, turn)

        asks_by_good: Dict[str, List[Ask]] = defaultdict(list)
        for ask in asks:
            asks_by_good[ask.good_id].append(ask)
        bids_by_good: Dict[str, List[Bid]] = defaultdict(list)
        for bid in bids:
            bids_by_good[bid.good_id].append(bid)

        goods = sorted(set(asks_by_good) | set(bids_by_good) | set(locality.markets))
        for good_id in goods:
            good_asks = asks_by_good.get(good_id, [])
            good_bids = bids_by_good.get(good_id, [])
            if good_bids and not good_asks:
                shortfall = NoLiquidity(
                    f"{locality.id}/{good_id}",
                    f"{sum(b.units for b in good_bids)} units bid, none offered",
                )
                logger.warning("No liquidity: %s", shortfall)
                result.diagnostics.append(shortfall.to_diagnostic())

            settlements = self.match(locality, good_id, good_bids, good_asks)
            self.settle(locality, good_id, settlements, good_bids)
            market = self.update_market(
                locality, good_id, settlements,
                offered=sum(a.quantity for a in good_asks),
                demanded=sum(b.units for b in good_bids),
                turn=turn,
            )
            result.settlements.extend(settlements)
            result.amv[good_id] = market.amv
            result.records[good_id] = market.history[-1]

        logger.info(
            "Locality %s turn %d: %d settlements across %d goods",
            locality.id, turn, len(result.settlements), len(goods),
        )
        return result


def clear(
    locality: G.Locality,
    demand_lists: Iterable[D.DemandList],
    world: G.WorldState,
    catalog: G.Catalog,
    config: Optional[SimConfig] = None,
    turn: int = 0,
) -> ClearingResult:
    return MarketClearer(world, catalog, config).clear(locality, demand_lists, turn)
