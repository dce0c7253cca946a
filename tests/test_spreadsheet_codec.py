"""
Workbook export layout and the lossy four-column import.
"""
import asyncio
import io
from datetime import date

import pytest
from openpyxl import Workbook, load_workbook

from order_desk.services.errors import WorkbookFormatError
from order_desk.services.order_service import OrderService
from order_desk.services.sales_stats import SalesRecord
from order_desk.services.spreadsheet_codec import (
    HEADERS,
    export_filename,
    export_workbook,
    import_workbook,
    parse_order_workbook,
)
from order_desk.services.ui_state_service import UIStateService


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _xlsx(rows):
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


ITEMS = [
    {"id": "1", "product_name": "Milk", "display_name": "Whole milk", "group_name": "Dairy",
     "qty": 6, "unit_price": 120, "stock_qty": 2.5, "pack_size": 6, "previous_qty": 4},
    {"id": "2", "product_name": "Bread", "group_name": None, "qty": 3, "unit_price": 80},
    {"id": "3", "product_name": "__group__placeholder__", "group_name": "Frozen", "qty": 0, "unit_price": 0},
]
HISTORY = [SalesRecord(product="Milk", date=date(2024, 3, 1), qty=8, subtotal=800)]


# ────────────────────────────────────────────
# EXPORT
# ────────────────────────────────────────────


class TestExport:

    def test_layout_and_formulas(self):
        ws = load_workbook(io.BytesIO(export_workbook(ITEMS, HISTORY))).active

        assert [c.value for c in ws[1]] == HEADERS
        assert ws.freeze_panes == "A2"
        # sorted by group label: Dairy before Ungrouped; placeholder skipped
        assert ws["A2"].value == "Dairy"
        assert ws["B2"].value == "Whole milk"
        assert ws["F2"].value == "=C2*D2"
        assert ws["H2"].value == 2
        assert ws["K2"].value == 4
        assert ws["A3"].value == "Ungrouped"
        assert ws["A4"].value == "Totals"
        assert ws["C4"].value == "=SUM(C2:C3)"
        assert ws["F4"].value == "=SUM(F2:F3)"
        assert ws.auto_filter.ref == "A1:K3"

    def test_empty_order_totals_are_zero_not_self_referencing(self):
        ws = load_workbook(io.BytesIO(export_workbook([]))).active
        assert ws["A2"].value == "Totals"
        assert (ws["C2"].value, ws["E2"].value, ws["F2"].value) == (0, 0, 0)
        assert ws.auto_filter.ref == "A1:K1"

    def test_filename(self):
        assert export_filename("A/B", today=date(2024, 3, 1)) == "order_A_B_2024-03-01.xlsx"
        assert export_filename(None, "json", today=date(2024, 3, 1)) == "order_provider_2024-03-01.json"


# ────────────────────────────────────────────
# IMPORT
# ────────────────────────────────────────────


class TestParse:

    def test_header_skipped_and_columns_positional(self):
        rows = parse_order_workbook(_xlsx([
            ["Grupo", "Producto", "Cantidad", "Precio"],
            ["Dairy", "Milk", 3, "12,5"],
            [None, "Bread", 2.4, 80],
            ["Ungrouped", "Salt", None, None],
            ["Dairy", None, 5, 5],
        ]))
        assert rows == [
            {"group_name": "Dairy", "product_name": "Milk", "qty": 3, "unit_price": 13},
            {"group_name": None, "product_name": "Bread", "qty": 2, "unit_price": 80},
            {"group_name": None, "product_name": "Salt", "qty": 0, "unit_price": 0},
        ]

    def test_headerless_sheet(self):
        rows = parse_order_workbook(_xlsx([["Dairy", "Milk", 1, 10]]))
        assert rows[0]["product_name"] == "Milk"

    def test_unreadable_file(self):
        with pytest.raises(WorkbookFormatError) as exc:
            parse_order_workbook(b"not a workbook")
        assert "Group | Product | Qty | Price" in exc.value.message


class TestImport:

    @pytest.fixture
    def orders(self, store, schema, hub, settings):
        service = OrderService(store, "p1", tenant_id="t1", branch_id="b1",
                               schema=schema, hub=hub, settings=settings)
        _run(service.load(subscribe=False))
        return service

    def test_round_trip_keeps_only_four_columns(self, orders, store):
        row = _run(orders.add_item("Milk", "Dairy"))
        _run(orders.update_pack_size(row["id"], 6))
        _run(orders.update_qty(row["id"], 12))
        _run(orders.update_unit_price(row["id"], 100))
        _run(orders.update_stock(row["id"], 5))
        _run(orders.update_display_name(row["id"], "Whole milk"))

        ui_state = UIStateService(store, orders.order["id"])
        _run(ui_state.set_checked(row["id"], True))

        data = export_workbook(orders.items)
        stored = _run(import_workbook(orders, data, ui_state))

        assert len(stored) == 1
        item = stored[0]
        assert (item["group_name"], item["qty"], item["unit_price"]) == ("Dairy", 12, 100)
        assert item["product_name"] == "Whole milk"
        assert item["display_name"] is None
        assert item["stock_qty"] is None
        assert item["pack_size"] is None
        assert item["id"] != row["id"]
        assert ui_state.checked_map == {}
        assert orders.total == 1200

    def test_bad_file_leaves_order_untouched(self, orders):
        _run(orders.add_item("Milk"))
        with pytest.raises(WorkbookFormatError):
            _run(import_workbook(orders, _xlsx([["Group", "Product", "Qty", "Price"]])))
        assert [r["product_name"] for r in orders.items] == ["Milk"]
