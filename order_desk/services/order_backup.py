"""
Full-fidelity JSON backup of an order

Unlike the spreadsheet export, a backup carries every item field, the group
order and the checkmarks, and importing it preserves item ids.
"""
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from order_desk.connectors.base import Row
from order_desk.models.order import group_key, is_placeholder
from order_desk.services.errors import BackupFormatError
from order_desk.services.order_service import OrderService
from order_desk.services.ui_state_service import UIStateService
from order_desk.utils.helpers import round_half_up, to_nullable_number, to_nullable_str, to_number
from order_desk.utils.logger import log

BACKUP_KIND = "order-desk-order"
BACKUP_VERSION = 1
BACKUP_MIME = "application/json"

# backup key -> item column
ITEM_FIELDS = {
    "id": "id",
    "productName": "product_name",
    "displayName": "display_name",
    "qty": "qty",
    "unitPrice": "unit_price",
    "groupName": "group_name",
    "packSize": "pack_size",
    "stockQty": "stock_qty",
    "stockUpdatedAt": "stock_updated_at",
    "previousQty": "previous_qty",
    "previousQtyUpdatedAt": "previous_qty_updated_at",
    "priceUpdatedAt": "price_updated_at",
}
TIMESTAMP_COLUMNS = ("stock_updated_at", "previous_qty_updated_at", "price_updated_at")


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    text = to_nullable_str(value)
    if text is None:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def build_backup(orders: OrderService, ui_state: Optional[UIStateService] = None) -> Dict[str, Any]:
    order = orders._require_order()
    items = orders.real_items
    live_ids = {str(r["id"]) for r in items}
    checked = {}
    if ui_state is not None:
        checked = {k: bool(v) for k, v in ui_state.checked_map.items() if k in live_ids}
    return {
        "kind": BACKUP_KIND,
        "version": BACKUP_VERSION,
        "generatedAt": datetime.utcnow().isoformat(),
        "order": {
            "id": order["id"],
            "tenantId": orders.scope_tenant,
            "branchId": orders.scope_branch,
            "status": order.get("status"),
            "notes": order.get("notes"),
        },
        "provider": {"id": orders.provider_id, "name": orders.provider_name},
        "items": [
            {key: _json_value(row.get(column)) for key, column in ITEM_FIELDS.items()}
            for row in items
        ],
        "groupOrder": list(ui_state.group_order) if ui_state is not None else [],
        "checkedMap": checked,
    }


def dump_backup(orders: OrderService, ui_state: Optional[UIStateService] = None) -> str:
    return json.dumps(build_backup(orders, ui_state), indent=2, ensure_ascii=False)


def _item_from_backup(entry: Any) -> Optional[Row]:
    if not isinstance(entry, dict):
        return None
    name = entry.get("productName", entry.get("product_name"))
    if not isinstance(name, str) or not name.strip():
        return None

    def pick(key: str, column: str):
        return entry.get(key, entry.get(column))

    pack = to_nullable_number(pick("packSize", "pack_size"))
    previous = to_nullable_number(pick("previousQty", "previous_qty"))
    row = {
        "product_name": name.strip(),
        "display_name": to_nullable_str(pick("displayName", "display_name")),
        "qty": max(0, round_half_up(to_number(pick("qty", "qty")))),
        "unit_price": max(0, round_half_up(to_number(pick("unitPrice", "unit_price")))),
        "group_name": group_key(to_nullable_str(pick("groupName", "group_name"))),
        "pack_size": round_half_up(pack) if pack and pack > 1 else None,
        "stock_qty": to_nullable_number(pick("stockQty", "stock_qty")),
        "previous_qty": round_half_up(previous) if previous is not None else None,
    }
    for column in TIMESTAMP_COLUMNS:
        key = next(k for k, c in ITEM_FIELDS.items() if c == column)
        row[column] = _parse_timestamp(pick(key, column))
    item_id = to_nullable_str(entry.get("id"))
    if item_id:
        row["id"] = item_id
    return row


def parse_backup(text: str) -> Dict[str, Any]:
    """
    Validate a backup file.

    Returns {"items": [...], "group_order": [...] or None, "checked_map": {...}}.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise BackupFormatError(f"Backup is not valid JSON ({e})")
    if not isinstance(data, dict):
        raise BackupFormatError("Backup must be a JSON object")
    kind = data.get("kind")
    if isinstance(kind, str) and kind != BACKUP_KIND:
        raise BackupFormatError(f"Not an order backup (kind {kind!r})")
    version = data.get("version")
    if not isinstance(version, int) or version < 1:
        raise BackupFormatError("Unsupported backup version")

    raw_items = data.get("items") if isinstance(data.get("items"), list) else []
    if not raw_items:
        raise BackupFormatError("Backup contains no items")
    items = [row for row in (_item_from_backup(e) for e in raw_items) if row is not None]
    if not items:
        raise BackupFormatError("Backup contains no valid items")

    raw_order = data.get("groupOrder", data.get("group_order"))
    group_order = None
    if isinstance(raw_order, list):
        group_order = [v.strip() for v in raw_order if isinstance(v, str)]

    raw_checked = data.get("checkedMap", data.get("checked_map"))
    checked = {str(k): bool(v) for k, v in raw_checked.items()} if isinstance(raw_checked, dict) else {}
    return {"items": items, "group_order": group_order, "checked_map": checked}


async def import_backup(orders: OrderService, text: str,
                        ui_state: Optional[UIStateService] = None) -> List[Row]:
    """Full replace from a backup, keeping ids; then restore group order and checkmarks"""
    parsed = parse_backup(text)
    stored = await orders.replace_all(parsed["items"], preserve_ids=True)
    if ui_state is not None:
        live_ids = {str(r["id"]) for r in stored}
        checked = {k: v for k, v in parsed["checked_map"].items() if k in live_ids}
        await ui_state.restore(group_order=parsed["group_order"], checked_map=checked)
    log.info(f"Imported backup with {len(stored)} items into order {orders.order['id']}")
    return stored
