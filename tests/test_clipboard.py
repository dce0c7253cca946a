from datetime import date

import pytest

from order_desk.models.order import GROUP_PLACEHOLDER
from order_desk.services.clipboard import EMPTY_CLIPBOARD, build_clipboard_text
from order_desk.services.sales_stats import SalesRecord
from order_desk.services.ui_state_service import grouped_items

ITEMS = [
    {"id": "1", "product_name": "Milk", "group_name": "Dairy", "qty": 6},
    {"id": "2", "product_name": "Cheddar", "display_name": "Aged cheese", "group_name": "Dairy", "qty": 2},
    {"id": "3", "product_name": "Butter", "group_name": "Dairy", "qty": 0},
    {"id": "4", "product_name": "Bread", "group_name": "Bakery", "qty": 10},
    {"id": "5", "product_name": GROUP_PLACEHOLDER, "group_name": "Frozen", "qty": 3},
]

HISTORY = [
    SalesRecord(product="Cheddar", date=date(2024, 3, 1), qty=40),
    SalesRecord(product="Milk", date=date(2024, 3, 1), qty=4),
]


def test_groups_in_display_order_and_zero_qty_skipped():
    groups = grouped_items(ITEMS, ["Dairy", "Bakery"])
    assert build_clipboard_text(groups) == "2 Aged cheese\n6 Milk\n10 Bread"


def test_alpha_desc():
    groups = grouped_items(ITEMS, ["Dairy", "Bakery"])
    assert build_clipboard_text(groups, "alpha_desc").splitlines()[:2] == ["6 Milk", "2 Aged cheese"]


def test_sort_by_weekly_average():
    groups = grouped_items(ITEMS, ["Dairy"])
    lines = build_clipboard_text(groups, "avg_desc", HISTORY).splitlines()
    assert lines[:2] == ["2 Aged cheese", "6 Milk"]
    lines = build_clipboard_text(groups, "avg_asc", HISTORY).splitlines()
    assert lines[:2] == ["6 Milk", "2 Aged cheese"]


def test_empty_order():
    assert build_clipboard_text([]) == EMPTY_CLIPBOARD
    assert build_clipboard_text(grouped_items([ITEMS[4]])) == EMPTY_CLIPBOARD


def test_unknown_sort_mode():
    with pytest.raises(ValueError):
        build_clipboard_text([], "random")
