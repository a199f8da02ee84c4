import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

import objects as G  # type: ignore
import register  # type: ignore
import content_env  # type: ignore
from errors import ConfigError  # type: ignore


def want_sat(want_id, mode=G.GainMode.CONSUMPTION, efficiency=1.0, time_cost=None):
    return G.WantSatisfaction(want_id=want_id, mode=mode, efficiency=efficiency, time_cost=time_cost)


def write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_time_good_is_added():
    catalog = G.Catalog.build(goods=[G.Good(id="bread")])
    time = catalog.good("time")
    assert not time.tradable
    assert not time.wealth
    assert G.GoodTag.END_OF_DAY_CONSUMED in time.tags


def test_unknown_want_is_rejected():
    with pytest.raises(ConfigError):
        G.Catalog.build(goods=[G.Good(id="bread", wants=[want_sat("food")])])


def test_class_needs_exactly_one_example():
    variant = G.Good(id="rye", class_membership=G.ClassMembership(class_id="bread", variant_name="Rye"))
    with pytest.raises(ConfigError):
        G.Catalog.build(goods=[variant])
    first = G.Good(id="loaf", class_membership=G.ClassMembership(class_id="bread", is_example=True))
    second = G.Good(id="bun", class_membership=G.ClassMembership(class_id="bread", is_example=True))
    with pytest.raises(ConfigError):
        G.Catalog.build(goods=[first, second])


def test_class_members_start_with_example():
    goods = [
        G.Good(id="wheat_loaf", class_membership=G.ClassMembership(class_id="bread", variant_name="Wheat")),
        G.Good(id="loaf", class_membership=G.ClassMembership(class_id="bread", is_example=True)),
        G.Good(id="rye", class_membership=G.ClassMembership(class_id="bread", variant_name="Rye")),
    ]
    catalog = G.Catalog.build(goods=goods)
    assert catalog.class_members("bread") == ["loaf", "rye", "wheat_loaf"]


def test_process_cannot_output_a_class():
    goods = [G.Good(id="loaf", class_membership=G.ClassMembership(class_id="bread", is_example=True))]
    proc = G.Process(
        id="bake",
        outputs=[G.ProcessOutput(item=G.ItemRef(kind=G.ItemKind.CLASS, id="bread"), quantity=1)],
        time_cost=1,
    )
    with pytest.raises(ConfigError):
        G.Catalog.build(goods=goods, processes=[proc])


def test_dangling_process_input_is_rejected():
    proc = G.Process(
        id="smelt",
        inputs=[G.ProcessInput(item=G.ItemRef(kind=G.ItemKind.GOOD, id="ore"), quantity=1)],
        outputs=[G.ProcessOutput(item=G.ItemRef(kind=G.ItemKind.GOOD, id="iron"), quantity=1)],
        time_cost=1,
    )
    with pytest.raises(ConfigError):
        G.Catalog.build(goods=[G.Good(id="iron")], processes=[proc])


def test_desire_source_with_unknown_target_is_rejected():
    source = G.DesireSource(
        id="human",
        kind=G.DesireSourceKind.SPECIES,
        desires=[G.Desire(target=G.DesireTarget(kind=G.DesireKind.GOOD, id="cake"), start_weight=1)],
    )
    with pytest.raises(ConfigError):
        G.Catalog.build(goods=[G.Good(id="bread")], sources=[source])


def test_good_definition_rules():
    # the same want may not be listed twice for one mode
    with pytest.raises(ValueError):
        G.Good(id="bread", wants=[want_sat("food"), want_sat("food", efficiency=2.0)])
    # owning a good takes no time
    with pytest.raises(ValueError):
        want_sat("status", mode=G.GainMode.OWN, time_cost=1.0)
    with pytest.raises(ValueError):
        G.DesireTarget(kind=G.DesireKind.WEALTH, id="gold")


def test_quality_is_sum_of_satisfactions():
    good = G.Good(
        id="loaf",
        wants=[want_sat("food", efficiency=1.5), want_sat("comfort", mode=G.GainMode.USE, efficiency=0.5)],
        class_membership=G.ClassMembership(class_id="bread", is_example=True),
    )
    # wealth + 1.5 + 0.5 + class
    assert good.quality == pytest.approx(4.0)
    assert G.Good(id="dust", wealth=False).quality == 0.0


def test_satisfiers_for_a_want_are_sorted():
    wants = [G.Want(id="food")]
    goods = [
        G.Good(id="stew", wants=[want_sat("food", efficiency=2.0)]),
        G.Good(id="apple", wants=[want_sat("food", efficiency=0.5)]),
        G.Good(id="rock"),
    ]
    catalog = G.Catalog.build(goods=goods, wants=wants)
    found = catalog.satisfiers(G.DesireTarget(kind=G.DesireKind.WANT, id="food"))
    assert found == [("apple", 0.5, G.GainMode.CONSUMPTION), ("stew", 2.0, G.GainMode.CONSUMPTION)]


def test_register_loads_and_overrides(tmp_path):
    base, mod = tmp_path / "base", tmp_path / "mod"
    write_json(base / "Want" / "needs.json", {"id": "food"})
    write_json(base / "Good" / "food.json", [
        {"id": "wheat", "initial_amv": 1},
        {"id": "bread", "initial_amv": 3, "wants": [{"want_id": "food", "mode": "consumption", "efficiency": 1}]},
    ])
    write_json(base / "meta" / "Good" / "schema.json", {"not": "content"})
    write_json(mod / "Good" / "wheat.json", {"id": "wheat", "initial_amv": 5})

    catalog = register.load_catalog([base, mod])
    assert catalog.goods["wheat"].initial_amv == Decimal("5")
    assert catalog.goods["bread"].initial_amv == Decimal("3")
    assert set(catalog.goods) == {"wheat", "bread", "time"}


def test_register_wraps_bad_content(tmp_path):
    write_json(tmp_path / "Good" / "bad.json", {"id": "wheat", "decay_rate": -1})
    with pytest.raises(ConfigError):
        register.load_catalog([tmp_path])

    other = tmp_path / "broken"
    (other / "Good").mkdir(parents=True)
    (other / "Good" / "bad.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        register.load_catalog([other])


def test_bundled_content_loads():
    catalog = register.load_catalog([register.LOCAL_CONTENT])
    assert {"wheat", "flour", "bread", "rye_bread", "time"} <= set(catalog.goods)
    assert catalog.class_members("bread") == ["bread", "rye_bread"]
    assert {"human", "villager", "hearth_faith"} <= set(catalog.sources)


def test_write_schemas(tmp_path):
    written = content_env.write_schemas(tmp_path)
    names = sorted(p.parent.name for p in written)
    assert names == ["DesireSource", "Good", "Process", "SimConfig", "Want"]
    for path in written:
        schema = json.loads(path.read_text(encoding="utf-8"))
        assert "properties" in schema
