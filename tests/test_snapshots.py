"""
Snapshot save / list / open / rename / delete against the SQL store.
"""
import asyncio

import pytest

from order_desk.services.errors import NotFoundError, OrderDeskError
from order_desk.services.order_service import OrderService
from order_desk.services.snapshot_service import SnapshotService
from order_desk.services.ui_state_service import UIStateService


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _values(items):
    return sorted(
        (r["product_name"], r.get("display_name"), r["qty"], r["unit_price"], r.get("group_name"))
        for r in items
    )


@pytest.fixture
def orders(store, schema, hub, settings):
    service = OrderService(store, "p1", tenant_id="t1", branch_id="b1", provider_name="Dairy Co",
                           schema=schema, hub=hub, settings=settings)
    _run(service.load(subscribe=False))
    return service


class TestSnapshots:

    def test_save_captures_values_only(self, orders):
        milk = _run(orders.add_item("Milk", "Dairy"))
        _run(orders.update_qty(milk["id"], 4))
        _run(orders.create_group("Frozen"))

        snapshot = _run(SnapshotService(orders).save())
        items = snapshot["snapshot"]["items"]
        assert snapshot["title"].startswith("Dairy Co - ")
        assert items == [{"product_name": "Milk", "display_name": None, "qty": 4,
                          "unit_price": 0, "group_name": "Dairy"}]

    def test_list_newest_first(self, orders):
        service = SnapshotService(orders)
        _run(service.save("first"))
        _run(service.save("second"))
        assert [s["title"] for s in _run(service.list())] == ["second", "first"]

    def test_open_replaces_items_with_new_ids(self, orders):
        milk = _run(orders.add_item("Milk"))
        _run(orders.update_qty(milk["id"], 3))
        service = SnapshotService(orders)
        snapshot = _run(service.save("before"))

        _run(orders.add_item("Bread"))
        _run(orders.update_qty(milk["id"], 9))

        restored = _run(service.open(snapshot["id"]))
        assert [r["product_name"] for r in restored] == ["Milk"]
        assert restored[0]["qty"] == 3
        assert restored[0]["id"] != milk["id"]
        assert [r["product_name"] for r in orders.items] == ["Milk"]

    def test_open_restores_the_saved_item_values(self, orders):
        for name, group, label, qty, price in [
            ("Milk", "Dairy", "Whole milk", 4, 52),
            ("Cheese", "Dairy", None, 2, 310),
            ("Bread", "Bakery", "Sourdough", 6, 90),
            ("Salt", None, None, 1, 15),
        ]:
            row = _run(orders.add_item(name, group))
            _run(orders.update_qty(row["id"], qty))
            _run(orders.update_unit_price(row["id"], price))
            if label:
                _run(orders.update_display_name(row["id"], label))
        _run(orders.create_group("Frozen"))
        saved = _values(orders.real_items)
        service = SnapshotService(orders)
        snapshot = _run(service.save())

        _run(orders.delete_group("Dairy"))
        _run(orders.add_item("Butter", "Bakery"))
        _run(orders.update_qty(orders.real_items[0]["id"], 99))

        _run(service.open(snapshot["id"]))
        assert _values(orders.real_items) == saved
        assert orders.total == 4 * 52 + 2 * 310 + 6 * 90 + 15

    def test_open_clears_checkmarks_of_replaced_items(self, orders, store):
        milk = _run(orders.add_item("Milk"))
        service = SnapshotService(orders)
        snapshot = _run(service.save())
        state = _run(UIStateService(store, orders.order["id"]).load())
        _run(state.set_checked(milk["id"], True))

        _run(service.open(snapshot["id"], state))
        assert state.checked_map == {}
        assert _run(UIStateService(store, orders.order["id"]).load()).checked_map == {}

    def test_rename_and_delete(self, orders):
        service = SnapshotService(orders)
        snapshot = _run(service.save("draft"))
        assert _run(service.rename(snapshot["id"], "  final "))["title"] == "final"
        with pytest.raises(OrderDeskError):
            _run(service.rename(snapshot["id"], "   "))

        _run(service.delete(snapshot["id"]))
        with pytest.raises(NotFoundError):
            _run(service.delete(snapshot["id"]))
        with pytest.raises(NotFoundError):
            _run(service.open(snapshot["id"]))
