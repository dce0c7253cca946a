"""
Snapshot/Versioning Manager

Named, immutable copies of an order's item list. Snapshots store plain
values only (never live item ids), so opening one is a full replace that
gives every restored item a new id.
"""
from typing import Any, Dict, List, Optional

from order_desk.connectors.base import Row
from order_desk.services.errors import NotFoundError, OrderDeskError
from order_desk.services.order_service import OrderService
from order_desk.services.ui_state_service import UIStateService
from order_desk.utils.helpers import iso_today
from order_desk.utils.logger import log

TABLE_SNAPSHOTS = "order_snapshots"
SNAPSHOT_FIELDS = ("product_name", "display_name", "qty", "unit_price", "group_name")


def capture_items(items: List[Row]) -> List[Dict[str, Any]]:
    return [{field: row.get(field) for field in SNAPSHOT_FIELDS} for row in items]


class SnapshotService:

    def __init__(self, orders: OrderService):
        self.orders = orders
        self.store = orders.store

    @property
    def order_id(self):
        return self.orders._require_order()["id"]

    def default_title(self) -> str:
        return f"{self.orders.provider_name or self.orders.provider_id} - {iso_today()}"

    async def save(self, title: Optional[str] = None) -> Row:
        """Capture every real item, then re-sync the summary rows"""
        payload = {
            "order_id": self.order_id,
            "title": (title or "").strip() or self.default_title(),
            "snapshot": {"items": capture_items(self.orders.real_items)},
        }
        stored = (await self.store.insert(TABLE_SNAPSHOTS, [payload]))[0]
        await self.orders.sync_summaries()
        log.info(f"Saved snapshot {stored.get('id')} ({len(payload['snapshot']['items'])} items) "
                 f"for order {self.order_id}")
        return stored

    async def list(self, limit: Optional[int] = None) -> List[Row]:
        """Newest first, capped"""
        return await self.store.select(
            TABLE_SNAPSHOTS,
            {"order_id": self.order_id},
            order_by="created_at",
            descending=True,
            limit=limit or self.orders.settings.snapshot_list_limit,
        )

    async def get(self, snapshot_id: Any) -> Row:
        row = await self.store.select_one(TABLE_SNAPSHOTS, {"id": snapshot_id, "order_id": self.order_id})
        if row is None:
            raise NotFoundError(f"Snapshot {snapshot_id} not found")
        return row

    async def open(self, snapshot_id: Any, ui_state: Optional[UIStateService] = None) -> List[Row]:
        """
        Replace the order's items with the snapshot's. Destructive: current
        items (ids, stock, pack sizes, previous quantities) are discarded, and
        so are the checkmarks of the old ids when ui_state is given.
        """
        snapshot = await self.get(snapshot_id)
        items = (snapshot.get("snapshot") or {}).get("items") or []
        rows = [
            {
                "product_name": item.get("product_name"),
                "display_name": item.get("display_name"),
                "qty": int(item.get("qty") or 0),
                "unit_price": int(item.get("unit_price") or 0),
                "group_name": item.get("group_name"),
            }
            for item in items if item.get("product_name")
        ]
        log.info(f"Opening snapshot {snapshot_id} over order {self.order_id}")
        restored = await self.orders.replace_all(rows)
        if ui_state is not None:
            await ui_state.reset_checked()
        return restored

    async def rename(self, snapshot_id: Any, title: str) -> Row:
        clean = (title or "").strip()
        if not clean:
            raise OrderDeskError("Snapshot title cannot be empty")
        updated = await self.store.update(TABLE_SNAPSHOTS, {"title": clean},
                                          {"id": snapshot_id, "order_id": self.order_id})
        if not updated:
            raise NotFoundError(f"Snapshot {snapshot_id} not found")
        return updated[0]

    async def delete(self, snapshot_id: Any) -> None:
        removed = await self.store.delete(TABLE_SNAPSHOTS, {"id": snapshot_id, "order_id": self.order_id})
        if not removed:
            raise NotFoundError(f"Snapshot {snapshot_id} not found")
