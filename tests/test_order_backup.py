"""
JSON backup export and validated, id-preserving import.
"""
import asyncio
import json

import pytest

from order_desk.services.errors import BackupFormatError
from order_desk.services.order_backup import BACKUP_KIND, build_backup, dump_backup, import_backup, parse_backup
from order_desk.services.order_service import OrderService
from order_desk.services.ui_state_service import UIStateService


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


@pytest.fixture
def orders(store, schema, hub, settings):
    service = OrderService(store, "p1", tenant_id="t1", branch_id="b1", provider_name="Dairy Co",
                           schema=schema, hub=hub, settings=settings)
    _run(service.load(subscribe=False))
    return service


class TestBuildBackup:

    def test_carries_every_field_and_ui_state(self, orders, store):
        row = _run(orders.add_item("Milk", "Dairy"))
        _run(orders.update_stock(row["id"], 3))
        _run(orders.update_pack_size(row["id"], 6))
        _run(orders.create_group("Frozen"))
        ui_state = UIStateService(store, orders.order["id"])
        _run(ui_state.set_group_order(["Dairy", "Frozen"]))
        _run(ui_state.set_checked(row["id"], True))
        _run(ui_state.set_checked("stale-id", True))

        backup = build_backup(orders, ui_state)
        assert backup["kind"] == BACKUP_KIND
        assert backup["provider"] == {"id": "p1", "name": "Dairy Co"}
        assert backup["order"]["tenantId"] == "t1"
        assert len(backup["items"]) == 1
        item = backup["items"][0]
        assert (item["id"], item["productName"], item["packSize"], item["stockQty"]) == (row["id"], "Milk", 6, 3)
        assert isinstance(item["stockUpdatedAt"], str)
        assert backup["groupOrder"] == ["Dairy", "Frozen"]
        assert backup["checkedMap"] == {row["id"]: True}
        json.loads(dump_backup(orders, ui_state))


class TestParseBackup:

    def test_rejects_invalid_files(self):
        for text in ("{", "[]", json.dumps({"kind": "other", "version": 1, "items": [{"productName": "x"}]}),
                     json.dumps({"version": 0, "items": [{"productName": "x"}]}),
                     json.dumps({"version": 1, "items": []}),
                     json.dumps({"version": 1, "items": [{"qty": 3}, "junk"]})):
            with pytest.raises(BackupFormatError):
                parse_backup(text)

    def test_normalizes_items(self):
        parsed = parse_backup(json.dumps({
            "version": 1,
            "items": [
                {"productName": " Milk ", "qty": "2,6", "unitPrice": -5, "groupName": "Ungrouped",
                 "packSize": 1, "previousQty": "4", "stockUpdatedAt": "2024-03-01T10:00:00Z"},
                {"product_name": "Bread", "qty": 1},
                {"qty": 1},
            ],
            "group_order": ["Dairy", 3],
        }))
        milk, bread = parsed["items"]
        assert (milk["product_name"], milk["qty"], milk["unit_price"]) == ("Milk", 3, 0)
        assert milk["group_name"] is None
        assert milk["pack_size"] is None
        assert milk["previous_qty"] == 4
        assert milk["stock_updated_at"].year == 2024
        assert bread["product_name"] == "Bread"
        assert parsed["group_order"] == ["Dairy"]
        assert parsed["checked_map"] == {}


class TestImportBackup:

    def test_full_restore_keeps_ids(self, orders, store):
        row = _run(orders.add_item("Milk", "Dairy"))
        _run(orders.update_qty(row["id"], 5))
        _run(orders.update_unit_price(row["id"], 10))
        _run(orders.update_stock(row["id"], 2))
        ui_state = UIStateService(store, orders.order["id"])
        _run(ui_state.set_checked(row["id"], True))
        text = dump_backup(orders, ui_state)

        _run(orders.replace_all([{"product_name": "Other", "qty": 1, "unit_price": 1}]))
        _run(ui_state.reset_checked())

        stored = _run(import_backup(orders, text, ui_state))
        assert [r["id"] for r in stored] == [row["id"]]
        assert stored[0]["stock_qty"] == 2
        assert orders.total == 50
        assert ui_state.is_checked(row["id"])
