import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

import objects as G  # type: ignore
import production as P  # type: ignore
from config import SimConfig  # type: ignore
from errors import InsufficientTime  # type: ignore


def good(gid):
    return G.ItemRef(kind=G.ItemKind.GOOD, id=gid)


def proc(pid, outputs, inputs=(), time_cost=1.0):
    return G.Process(
        id=pid,
        inputs=[
            G.ProcessInput(item=item, quantity=qty, **opts)
            for item, qty, opts in inputs
        ],
        outputs=[G.ProcessOutput(item=item, quantity=qty) for item, qty in outputs],
        time_cost=time_cost,
    )


def setup_catalog(*processes):
    goods = [
        G.Good(id="ore", initial_amv=1),
        G.Good(id="sand", initial_amv=1),
        G.Good(id="x", initial_amv=3),
        G.Good(id="y", initial_amv=2),
        G.Good(id="flour", initial_amv=1),
        G.Good(id="firewood", initial_amv=1),
        G.Good(id="bread", initial_amv=2),
        G.Good(id="hammer", initial_amv=5),
    ]
    return G.Catalog.build(goods=goods, wants=[G.Want(id="labor")], processes=list(processes))


def setup_firm(process_ids, stock=None, **kw):
    firm = G.Firm(id="f1", locality="town", process_ids=process_ids, **kw)
    for gid, qty in (stock or {}).items():
        firm.inventory.put(gid, qty)
    return firm


def test_switch_in_friction_limits_runs():
    catalog = setup_catalog(proc("p", [(good("x"), 1)]))
    firm = setup_firm(["p"])
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    # 0.1 switch-in + 23 x 1 fits in 24, a 24th run does not
    assert result.sequence == [("p", 23)]
    assert result.friction_spent == pytest.approx(0.1)
    assert result.time_used == pytest.approx(23.1)
    assert [(s.item.id, s.quantity) for s in result.staged] == [("x", 23)]
    assert firm.friction_spent == pytest.approx(0.1)


def test_friction_charged_per_run_change():
    assert P.friction_for(["a", "a", "b", "b"], 0.1) == pytest.approx(0.2)
    assert P.friction_for(["a", "b", "a", "b"], 0.1) == pytest.approx(0.4)
    assert P.friction_for([], 0.1) == 0


def test_contiguous_blocks_by_value():
    a = proc("a", [(good("x"), 1)], inputs=[(good("ore"), 1, {})])
    b = proc("b", [(good("y"), 1)], inputs=[(good("sand"), 1, {})])
    catalog = setup_catalog(a, b)
    firm = setup_firm(["b", "a"], {"ore": 2, "sand": 2})
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert result.sequence == [("a", 2), ("b", 2)]
    assert result.friction_spent == pytest.approx(0.2)
    assert result.time_used == pytest.approx(4.2)
    assert result.shortfalls == []
    assert firm.inventory.total_amount() == 0


def test_outputs_are_staged_not_stocked():
    catalog = setup_catalog(proc("p", [(good("x"), 1)]))
    firm = setup_firm(["p"])
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig(), turn=4)
    assert firm.inventory.quantity("x") == 0
    assert all(s.produced_turn == 4 and s.owner_id == "f1" for s in result.staged)


def test_omitted_excludable_input_cuts_output():
    bake = proc(
        "bake",
        [(good("bread"), 4)],
        inputs=[(good("flour"), 1, {}), (good("firewood"), 1, {"excludable": True})],
    )
    catalog = setup_catalog(bake)
    firm = setup_firm(["bake"], {"flour": 2, "firewood": 1})
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    # 4 with firewood, 4 x 0.75 without
    assert [(s.item.id, s.quantity) for s in result.staged] == [("bread", 7)]
    assert result.runs[0].omitted_inputs == 1
    assert firm.inventory.total_amount() == 0


def test_fractional_output_is_carried():
    p = proc("p", [(good("x"), 1)], inputs=[(good("ore"), 1, {}), (good("sand"), 1, {"excludable": True})])
    catalog = setup_catalog(p)
    firm = setup_firm(["p"], {"ore": 2})
    first = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert [(s.item.id, s.quantity) for s in first.staged] == [("x", 1)]
    assert firm.fractional_output["x"] == pytest.approx(0.5)

    firm.inventory.put("ore", 2)
    second = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert [(s.item.id, s.quantity) for s in second.staged] == [("x", 2)]
    assert "x" not in firm.fractional_output


def test_output_factor_is_monotonic():
    factors = [P.output_factor(n, 0.25) for n in range(4)]
    assert factors == sorted(factors, reverse=True)
    assert factors[2] == pytest.approx(0.5625)


def test_missing_input_skips_process():
    a = proc("a", [(good("x"), 1)], inputs=[(good("ore"), 1, {})])
    b = proc("b", [(good("y"), 1)], time_cost=4.0)
    catalog = setup_catalog(a, b)
    firm = setup_firm(["a", "b"])
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert result.sequence == [("b", 5)]
    assert [(d.kind, d.subject) for d in result.shortfalls] == [("input_shortfall", "f1/a")]


def test_insufficient_time():
    catalog = setup_catalog(proc("slow", [(good("x"), 1)], time_cost=30.0))
    firm = setup_firm(["slow"])
    with pytest.raises(InsufficientTime):
        P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())


def test_firm_time_budget_overrides_day_length():
    catalog = setup_catalog(proc("p", [(good("x"), 1)]))
    firm = setup_firm(["p"], time_budget=5.0)
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert result.sequence == [("p", 4)]


def test_use_inputs_are_not_consumed():
    p = proc("forge", [(good("x"), 1)], inputs=[(good("hammer"), 1, {"mode": G.InputMode.USE})], time_cost=2.0)
    catalog = setup_catalog(p)
    firm = setup_firm(["forge"], {"hammer": 1})
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert result.sequence == [("forge", 11)]
    assert firm.inventory.quantity("hammer") == 1


def test_want_inputs_draw_from_firm_pool():
    p = proc("work", [(good("x"), 1)], inputs=[(G.ItemRef(kind=G.ItemKind.WANT, id="labor"), 1, {})])
    catalog = setup_catalog(p)
    firm = setup_firm(["work"])
    firm.wants = {"labor": 3.0}
    result = P.schedule(firm, catalog, G.Locality(id="town"), SimConfig())
    assert result.sequence == [("work", 3)]
    assert firm.wants == {}


def test_rank_prefers_value_then_simplicity():
    rich = proc("rich", [(good("x"), 1)])
    plain = proc("plain", [(good("y"), 1)])
    fussy = proc("fussy", [(good("y"), 1)], inputs=[(good("sand"), 1, {"excludable": True})])
    catalog = setup_catalog(rich, plain, fussy)
    ranked = P.rank_processes([fussy, plain, rich], catalog, G.Locality(id="town"))
    assert [p.id for p in ranked] == ["rich", "plain", "fussy"]


def test_complexity_scorer_is_pluggable():
    p = proc("p", [(good("x"), 1)], inputs=[(good("ore"), 1, {}), (good("sand"), 1, {"excludable": True})])
    assert p.complexity() == pytest.approx(2.5)
    assert p.complexity(lambda inputs, excludable: inputs * 10) == 20
