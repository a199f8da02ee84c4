import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

import objects as G  # type: ignore
from errors import InventoryError  # type: ignore


def setup_catalog():
    return G.Catalog.build(goods=[
        G.Good(id="bread", decay_rate=3, decays_into=G.DecayTarget(good_id="crumbs", ratio=0.5)),
        G.Good(id="crumbs"),
        G.Good(id="salt", decay_rate=1, tags={G.GoodTag.NO_DECAY}),
        G.Good(id="stone"),
    ])


def test_decay_after_exactly_n_turns():
    catalog = setup_catalog()
    inv = G.Inventory()
    inv.put("bread", 5)
    inv.decay(catalog)
    inv.decay(catalog)
    assert inv.quantity("bread") == 5
    result = inv.decay(catalog)
    assert inv.quantity("bread") == 0
    assert result.destroyed == {"bread": 5}
    # 5 x 0.5 rounds down
    assert result.converted == {"crumbs": 2}
    assert inv.quantity("crumbs") == 2


def test_decay_converted_goods_start_fresh():
    catalog = setup_catalog()
    inv = G.Inventory()
    inv.put("bread", 4)
    for _ in range(3):
        inv.decay(catalog)
    assert [(lot.good_id, lot.age) for lot in inv.lots] == [("crumbs", 0)]


def test_time_is_destroyed_at_decay():
    catalog = setup_catalog()
    inv = G.Inventory()
    inv.put("time", 24)
    result = inv.decay(catalog)
    assert inv.quantity("time") == 0
    assert result.destroyed["time"] == 24


def test_no_decay_tag_overrides_rate():
    catalog = setup_catalog()
    inv = G.Inventory()
    inv.put("salt", 3)
    for _ in range(5):
        inv.decay(catalog)
    assert inv.quantity("salt") == 3


def test_take_draws_oldest_first():
    inv = G.Inventory()
    inv.put("stone", 2, age=3)
    inv.put("stone", 5)
    taken = inv.take("stone", 3)
    assert [(lot.quantity, lot.age) for lot in taken] == [(2, 3), (1, 0)]
    assert inv.quantity("stone") == 4


def test_transfer_keeps_lot_age():
    seller, buyer = G.Inventory(), G.Inventory()
    seller.put("stone", 2, age=2)
    buyer.put_lots(seller.take("stone", 2))
    assert [(lot.quantity, lot.age) for lot in buyer.lots] == [(2, 2)]
    assert seller.lots == []


def test_quantities_never_go_negative():
    inv = G.Inventory()
    inv.put("stone", 3)
    with pytest.raises(InventoryError):
        inv.take("stone", 4)
    with pytest.raises(InventoryError):
        inv.put("stone", -1)
    with pytest.raises(InventoryError):
        inv.take("stone", -1)
    assert inv.quantity("stone") == 3
    assert not inv.can_take("stone", 4)


def test_totals_are_sorted_by_good():
    inv = G.Inventory()
    inv.put("stone", 1)
    inv.put("bread", 2)
    inv.put("stone", 1, age=1)
    assert list(inv.totals().items()) == [("bread", 2), ("stone", 2)]
    assert inv.total_amount() == 4
