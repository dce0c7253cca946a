"""
Sales workbook parsing and the per-scope location lookup.
"""
import asyncio
import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook

from order_desk.config import Settings
from order_desk.connectors.sales_feed import (
    SALES_KEY_ROOT,
    SalesFeed,
    parse_date_cell,
    parse_sales_workbook,
    sales_key_for_scope,
    sales_keys_for_lookup,
)
from order_desk.services.errors import OrderDeskError, WorkbookFormatError


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _sales_xlsx(rows, headers=("Fecha", "Artículo", "Cantidad", "Subtotal", "Subfamilia")):
    wb = Workbook()
    ws = wb.active
    ws.append(list(headers))
    for row in rows:
        ws.append(list(row))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ────────────────────────────────────────────
# PARSING
# ────────────────────────────────────────────


class TestParseDateCell:

    @pytest.mark.parametrize("value,expected", [
        (datetime(2024, 3, 1, 13, 5), date(2024, 3, 1)),
        (date(2024, 3, 1), date(2024, 3, 1)),
        (45352, date(2024, 3, 1)),
        (1709251200000, date(2024, 3, 1)),
        ("05/03/2024", date(2024, 3, 5)),
        ("5.3.24", date(2024, 3, 5)),
        ("5-3-2024", date(2024, 3, 5)),
        ("31/02/2024", None),
        ("yesterday", None),
        (None, None),
    ])
    def test_formats(self, value, expected):
        assert parse_date_cell(value) == expected


class TestParseSalesWorkbook:

    def test_spanish_headers_and_skipped_rows(self):
        records = parse_sales_workbook(_sales_xlsx([
            (datetime(2024, 3, 1), "Leche 1L", 4, 400, "Lácteos"),
            ("02/03/2024", "Pan", "2,5", None, None),
            (None, "Pan", 1, 10, None),
            (datetime(2024, 3, 3), None, 1, 10, None),
        ]))
        assert [(r.product, r.date, r.qty, r.subtotal) for r in records] == [
            ("Leche 1L", date(2024, 3, 1), 4, 400),
            ("Pan", date(2024, 3, 2), 2.5, None),
        ]
        assert records[0].category == "Lácteos"

    def test_english_headers(self):
        records = parse_sales_workbook(_sales_xlsx(
            [(datetime(2024, 3, 1), "Milk", 3, 30)], headers=("Date", "Product", "Qty", "Total")
        ))
        assert records[0].product == "Milk"

    def test_unreadable(self):
        with pytest.raises(WorkbookFormatError):
            parse_sales_workbook(b"garbage")


# ────────────────────────────────────────────
# LOCATION & LOADING
# ────────────────────────────────────────────


class TestScopeKeys:

    def test_keys(self):
        assert sales_key_for_scope("t1", "b1") == "sales_url:t1:b1"
        assert sales_key_for_scope("t1") == "sales_url:t1"
        assert sales_key_for_scope(None, "b1") == SALES_KEY_ROOT
        assert sales_keys_for_lookup("t1", "b1") == ["sales_url:t1:b1", "sales_url:t1", "sales_url"]
        assert sales_keys_for_lookup() == ["sales_url"]


class TestSalesFeed:

    @pytest.fixture
    def feed(self, store):
        return SalesFeed(store, Settings(sales_file_path="missing/sales.xlsx", log_to_file=False))

    def test_default_location(self, feed):
        location = _run(feed.resolve_location("t1", "b1"))
        assert location["source"] == "default"
        assert location["path"] == "missing/sales.xlsx"

    def test_missing_default_file_yields_empty_history(self, feed):
        assert _run(feed.load("t1", "b1")) == []

    def test_activated_upload_is_used_for_its_scope(self, feed):
        data = _sales_xlsx([(datetime(2024, 3, 1), "Milk", 3, 30)])
        _run(feed.activate("t1", "b1", data=data, filename="march.xlsx"))

        location = _run(feed.resolve_location("t1", "b1"))
        assert location["source"] == "imported"
        assert location["key"] == "sales_url:t1:b1"
        assert [r.product for r in _run(feed.load("t1", "b1"))] == ["Milk"]
        assert _run(feed.resolve_location("t1", "b2"))["source"] == "default"

    def test_tenant_wide_location_applies_to_branches(self, feed, tmp_path):
        path = tmp_path / "sales.xlsx"
        path.write_bytes(_sales_xlsx([(datetime(2024, 3, 1), "Bread", 1, 10)]))
        _run(feed.activate("t1", location=str(path)))
        assert [r.product for r in _run(feed.load("t1", "b7"))] == ["Bread"]

    def test_activate_rejects_bad_input(self, feed):
        with pytest.raises(OrderDeskError):
            _run(feed.activate("t1"))
        with pytest.raises(WorkbookFormatError):
            _run(feed.activate("t1", data=b"garbage"))
