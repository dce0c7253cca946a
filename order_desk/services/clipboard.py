"""Plain-text order list for pasting into a message to the supplier."""
from typing import Iterable, List, Optional

from order_desk.models.order import is_placeholder
from order_desk.services.sales_stats import SalesRecord, stats_for_product
from order_desk.services.ui_state_service import Group, item_label
from order_desk.utils.helpers import norm_key

SORT_MODES = ("alpha_asc", "alpha_desc", "avg_desc", "avg_asc")
EMPTY_CLIPBOARD = "(no items)"


def _format_qty(qty) -> str:
    value = float(qty)
    return str(int(value)) if value.is_integer() else str(value)


def sort_group_items(rows: List[dict], sort_mode: str = "alpha_asc",
                     history: Optional[Iterable[SalesRecord]] = None) -> List[dict]:
    by_name = lambda r: (norm_key(item_label(r)), item_label(r))  # noqa: E731
    if sort_mode == "alpha_desc":
        return sorted(rows, key=by_name, reverse=True)
    if sort_mode in ("avg_desc", "avg_asc"):
        sales = list(history or [])
        avg = {r["product_name"]: stats_for_product(sales, r["product_name"]).avg4w for r in rows}
        sign = -1 if sort_mode == "avg_desc" else 1
        return sorted(rows, key=lambda r: (sign * avg[r["product_name"]], by_name(r)))
    return sorted(rows, key=by_name)


def build_clipboard_text(groups: List[Group], sort_mode: str = "alpha_asc",
                         history: Optional[Iterable[SalesRecord]] = None) -> str:
    """
    "<qty> <label>" per line, groups in displayed order, items with qty > 0
    only. Group placeholders never appear.
    """
    if sort_mode not in SORT_MODES:
        raise ValueError(f"Unknown sort mode {sort_mode!r}")
    sales = list(history or [])
    lines = []
    for _name, rows in groups:
        visible = [r for r in rows if not is_placeholder(r) and (r.get("qty") or 0) > 0]
        for row in sort_group_items(visible, sort_mode, sales):
            lines.append(f"{_format_qty(row['qty'])} {item_label(row)}")
    return "\n".join(lines) or EMPTY_CLIPBOARD
