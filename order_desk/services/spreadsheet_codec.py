"""
Spreadsheet Codec

Export writes a formatted .xlsx of the order (one sheet, statistics
included, formulas for subtotals and totals). Import reads back only the
first four columns (group, product, qty, price) and fully replaces the
order's items, so labels, stock, pack sizes and previous quantities do not
survive an export/import round trip.
"""
import io
import math
from datetime import date
from typing import Any, List, Optional

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from order_desk.connectors.base import Row
from order_desk.models.order import group_key, group_label, is_placeholder
from order_desk.services.errors import WorkbookFormatError
from order_desk.services.order_service import OrderService
from order_desk.services.sales_stats import SalesRecord, stats_for_product
from order_desk.services.ui_state_service import UIStateService, item_label
from order_desk.utils.helpers import iso_today, norm_key, round_half_up, safe_filename, to_number
from order_desk.utils.logger import log

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SHEET_NAME = "Order"

HEADERS = [
    "Group",
    "Product",
    "Qty",
    "Price",
    "Current stock",
    "Subtotal",
    "Last sale",
    "Avg/wk (4w)",
    "Sales 2w",
    "Sales 30d",
    "Previous qty",
]
COLUMN_WIDTHS = [14, 40, 8, 10, 9, 12, 22, 12, 12, 12, 12]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="FF5B21B6")
HEADER_FONT = Font(bold=True, color="FFFFFFFF")
ZEBRA_FILLS = (
    PatternFill(fill_type="solid", fgColor="FFF3F4F6"),
    PatternFill(fill_type="solid", fgColor="FFE5E7EB"),
)
INT_FORMAT = "#,##0"
MONEY_FORMAT = '"$"#,##0'
LAST_SALE_FORMAT = "dddd dd/mm/yyyy"

# Header detection on import: first row must mention both
HEADER_TOKENS = (("group", "grupo"), ("product", "producto"))


def export_filename(provider_name: Optional[str], extension: str = "xlsx", today: Optional[date] = None) -> str:
    stamp = today.isoformat() if today else iso_today()
    return f"order_{safe_filename(provider_name)}_{stamp}.{extension}"


def _export_sort_key(row: Row):
    group = group_label(row.get("group_name"))
    name = row.get("product_name") or ""
    return (norm_key(group), group, norm_key(name), name)


def export_workbook(items: List[Row], history: Optional[List[SalesRecord]] = None) -> bytes:
    """
    Build the order workbook.

    Columns A..K follow HEADERS. F is =C*D per row; the totals row sums C, E
    and F with formulas. Header is frozen and the autofilter covers the data.
    """
    sales = list(history or [])
    rows = sorted((r for r in items if not is_placeholder(r)), key=_export_sort_key)

    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_NAME

    for col, title in enumerate(HEADERS, start=1):
        cell = ws.cell(row=1, column=col, value=title)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(vertical="center")
    ws.row_dimensions[1].height = 24
    for col, width in enumerate(COLUMN_WIDTHS, start=1):
        ws.column_dimensions[get_column_letter(col)].width = width

    def put(r: int, c: int, value: Any, number_format: Optional[str] = None, bold: bool = False):
        cell = ws.cell(row=r, column=c, value=value)
        cell.fill = ZEBRA_FILLS[(c - 1) % 2]
        if number_format:
            cell.number_format = number_format
        if bold:
            cell.font = Font(bold=True)
        return cell

    first_data_row = 2
    r = first_data_row
    for item in rows:
        stats = stats_for_product(sales, item["product_name"])
        put(r, 1, group_label(item.get("group_name")))
        put(r, 2, item_label(item))
        put(r, 3, int(item.get("qty") or 0), INT_FORMAT)
        put(r, 4, int(item.get("unit_price") or 0), MONEY_FORMAT)
        put(r, 5, item.get("stock_qty") or 0, INT_FORMAT)
        put(r, 6, f"=C{r}*D{r}", MONEY_FORMAT)
        if stats.last_date is not None:
            put(r, 7, stats.last_date, LAST_SALE_FORMAT)
        else:
            put(r, 7, "")
        put(r, 8, stats.avg4w, INT_FORMAT)
        put(r, 9, stats.sum2w, INT_FORMAT)
        put(r, 10, stats.sum30d, INT_FORMAT)
        previous = item.get("previous_qty")
        put(r, 11, "" if previous is None else previous, INT_FORMAT if previous is not None else None)
        r += 1

    totals_row = r
    put(totals_row, 1, "Totals", bold=True)
    for column, letter, number_format in ((3, "C", INT_FORMAT), (5, "E", INT_FORMAT), (6, "F", MONEY_FORMAT)):
        # an empty order has no data rows to sum; a SUM here would reference itself
        total = f"=SUM({letter}{first_data_row}:{letter}{r - 1})" if rows else 0
        put(totals_row, column, total, number_format, bold=True)

    ws.freeze_panes = "A2"
    ws.auto_filter.ref = f"A1:K{max(1, r - 1)}"

    buf = io.BytesIO()
    wb.save(buf)
    log.info(f"Exported {len(rows)} items to workbook")
    return buf.getvalue()


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


def _has_header(first_row: List[Any]) -> bool:
    joined = "|".join(_cell_text(v).lower() for v in first_row)
    return all(any(token in joined for token in options) for options in HEADER_TOKENS)


def parse_order_workbook(data: bytes) -> List[Row]:
    """
    Rows of the first sheet as {group_name, product_name, qty, unit_price}.

    Columns are positional (A group, B product, C qty, D price). A header row
    is skipped when present. Rows without a product are dropped.
    """
    try:
        df = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, engine="openpyxl")
    except Exception as e:
        raise WorkbookFormatError(f"Could not read workbook ({e})")

    records = df.values.tolist()
    if records and _has_header(records[0]):
        records = records[1:]

    rows = []
    for record in records:
        cells = list(record) + [None] * (4 - len(record))
        group, product, qty, price = cells[:4]
        name = _cell_text(product)
        if not name:
            continue
        group_text = _cell_text(group)
        rows.append({
            "group_name": group_key(group_text),
            "product_name": name,
            "qty": max(0, round_half_up(to_number(qty))),
            "unit_price": max(0, round_half_up(to_number(price))),
        })
    return rows


async def import_workbook(orders: OrderService, data: bytes,
                          ui_state: Optional[UIStateService] = None) -> List[Row]:
    """
    Replace the order's items with the workbook rows.

    The file is parsed completely before anything is deleted; a bad file
    leaves the order untouched. Prior per-item metadata is lost.
    """
    rows = parse_order_workbook(data)
    if not rows:
        raise WorkbookFormatError("No product rows found")
    stored = await orders.replace_all(rows)
    if ui_state is not None:
        await ui_state.reset_checked()
    return stored
