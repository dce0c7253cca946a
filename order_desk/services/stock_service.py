"""
Stock application

After a delivery, counted stock is rolled forward per item:

    new stock = previous stock + received − units sold since the count

clamped at zero and rounded to 2 decimals. "Received" defaults to the
ordered quantity. Applying also stores the ordered quantity as the previous
order, writes one stock_logs row per item and returns an undo record.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from order_desk.connectors.base import Row
from order_desk.services.errors import MissingRelationError, OrderDeskError
from order_desk.services.order_service import OrderService
from order_desk.services.sales_stats import SalesRecord
from order_desk.utils.helpers import norm_key, round2, to_number
from order_desk.utils.logger import log

TABLE_STOCK_LOGS = "stock_logs"
UNDO_FIELDS = ("stock_qty", "stock_updated_at", "previous_qty", "previous_qty_updated_at")


@dataclass
class StockPreviewRow:
    item_id: Any
    label: str
    stock_prev: float
    qty_ordered: float
    addition: float
    addition_valid: bool
    sales_since: float
    stock_result: float

    @property
    def changed(self) -> bool:
        return self.addition_valid and (self.addition != 0 or self.sales_since != 0)


@dataclass
class StockUndo:
    applied_at: datetime
    rows: List[Row] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["applied_at"] = self.applied_at.isoformat()
        return data


def sales_since(history: List[SalesRecord], product_name: str, since: datetime,
                now: Optional[datetime] = None) -> float:
    """Units of the product sold on days starting at or after since"""
    key = norm_key(product_name)
    now = now or datetime.utcnow()
    return round2(sum(
        r.qty or 0 for r in history
        if norm_key(r.product) == key and since <= datetime.combine(r.date, time.min) <= now
    ))


class StockService:

    def __init__(self, orders: OrderService):
        self.orders = orders

    def preview(self, since: datetime, additions: Optional[Dict[str, Any]] = None,
                now: Optional[datetime] = None) -> List[StockPreviewRow]:
        now = now or datetime.utcnow()
        since = min(since, now)
        additions = additions or {}
        rows = []
        for item in self.orders.real_items:
            stock_prev = round2(item.get("stock_qty") or 0)
            qty_ordered = round2(item.get("qty") or 0)
            raw = additions.get(str(item["id"]))
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                parsed = qty_ordered if raw is None else 0.0
            else:
                parsed = to_number(raw, default=float("nan"))
            valid = parsed == parsed and parsed >= 0
            addition = round2(parsed) if valid else 0.0
            sold = sales_since(self.orders.sales, item["product_name"], since, now)
            rows.append(StockPreviewRow(
                item_id=item["id"],
                label=(item.get("display_name") or item["product_name"]).strip(),
                stock_prev=stock_prev,
                qty_ordered=qty_ordered,
                addition=addition,
                addition_valid=valid,
                sales_since=sold,
                stock_result=max(0.0, round2(stock_prev + addition - sold)),
            ))
        return rows

    async def apply(self, since: datetime, additions: Optional[Dict[str, Any]] = None) -> StockUndo:
        now = datetime.utcnow()
        preview = self.preview(since, additions, now)
        if any(not row.addition_valid for row in preview):
            raise OrderDeskError("Received quantities must be numbers ≥ 0")
        changed = [row for row in preview if row.changed]
        if not changed:
            raise OrderDeskError("No stock changes to apply")

        undo = StockUndo(applied_at=now)
        for row in changed:
            item = self.orders.get_item(row.item_id)
            undo.rows.append({"id": row.item_id, **{f: item.get(f) for f in UNDO_FIELDS}})
            await self.orders.update_item_fields(row.item_id, {
                "stock_qty": row.stock_result,
                "stock_updated_at": now,
                "previous_qty": int(round2(row.qty_ordered)),
                "previous_qty_updated_at": now,
            }, operation="stock")

        await self._write_logs(changed, now)
        log.info(f"Applied stock to {len(changed)} items of order {self.orders.order['id']}")
        return undo

    async def _write_logs(self, rows: List[StockPreviewRow], applied_at: datetime) -> None:
        payload = [{
            "order_item_id": row.item_id,
            "stock_prev": row.stock_prev,
            "stock_in": row.addition,
            "stock_out": row.sales_since,
            "stock_applied": row.stock_result,
            "sales_since": row.sales_since,
            "applied_at": applied_at,
            "tenant_id": self.orders.scope_tenant,
            "branch_id": self.orders.scope_branch,
        } for row in rows]
        try:
            await self.orders.store.insert(TABLE_STOCK_LOGS, payload)
        except MissingRelationError:
            log.debug("stock_logs table not present; skipping audit rows")
        except OrderDeskError as e:
            log.warning(f"Writing stock logs failed: {e}")

    async def undo(self, record: StockUndo) -> int:
        """Restore the values captured before apply()"""
        for row in record.rows:
            values = {f: row.get(f) for f in UNDO_FIELDS}
            await self.orders.update_item_fields(row["id"], values, operation="stock undo")
        return len(record.rows)
