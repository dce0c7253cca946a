"""
Group Ordering & UI-State Sync

Presentation state kept per order, separately from business data: the
display order of groups and a map of item id -> "confirmed" checkmark.
It is persisted as one row per order (upsert on order_id). Losing or failing
to save it only resets presentation defaults; it never gates totals,
statistics or exports.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from order_desk.connectors.base import RemoteStore, Row
from order_desk.models.order import group_label, is_placeholder
from order_desk.services.errors import OrderDeskError
from order_desk.utils.helpers import norm_key
from order_desk.utils.logger import log

TABLE_UI_STATE = "order_ui_state"

Group = Tuple[str, List[Row]]


def item_label(row: Row) -> str:
    return row.get("display_name") or row.get("product_name") or ""


def token_match(text: str, query: str) -> bool:
    """Every whitespace-separated token of query appears in text (case-insensitive)"""
    haystack = norm_key(text)
    return all(token in haystack for token in norm_key(query).split())


def grouped_items(items: Iterable[Row], group_order: Optional[List[str]] = None,
                  query: str = "") -> List[Group]:
    """
    Items bucketed by visible group name, filtered and ordered for display.

    A group whose name matches the query keeps all its items; otherwise only
    items whose visible label matches stay, and empty groups are dropped.
    Groups follow group_order, unknown ones after it by name.
    """
    groups: Dict[str, List[Row]] = {}
    for row in items:
        groups.setdefault(group_label(row.get("group_name")), []).append(row)

    if query and query.strip():
        filtered = {}
        for name, rows in groups.items():
            kept = rows if token_match(name, query) else [r for r in rows if token_match(item_label(r), query)]
            if kept:
                filtered[name] = kept
        groups = filtered

    order = list(group_order or [])
    position = {name: index for index, name in enumerate(order)}
    return sorted(groups.items(), key=lambda g: (position.get(g[0], len(order)), norm_key(g[0]), g[0]))


class UIStateService:
    """Per-order presentation state, loaded and saved as one row"""

    def __init__(self, store: RemoteStore, order_id: Any):
        self.store = store
        self.order_id = order_id
        self.group_order: List[str] = []
        self.checked_map: Dict[str, bool] = {}

    async def load(self) -> "UIStateService":
        try:
            row = await self.store.select_one(TABLE_UI_STATE, {"order_id": self.order_id})
        except OrderDeskError as e:
            log.error(f"Loading UI state for order {self.order_id} failed: {e}")
            return self
        if row:
            self.group_order = list(row.get("group_order") or [])
            self.checked_map = {str(k): bool(v) for k, v in (row.get("checked_map") or {}).items()}
        return self

    async def save(self, group_order: bool = True, checked_map: bool = True) -> bool:
        """Upsert the selected parts; failures are logged, never raised"""
        payload: Row = {"order_id": self.order_id, "updated_at": datetime.utcnow()}
        if group_order:
            payload["group_order"] = list(self.group_order)
        if checked_map:
            payload["checked_map"] = dict(self.checked_map)
        try:
            await self.store.upsert(TABLE_UI_STATE, payload, ["order_id"])
        except OrderDeskError as e:
            log.error(f"Saving UI state for order {self.order_id} failed: {e}")
            return False
        return True

    # ── group order ──────────────────────────────────────────────

    async def set_group_order(self, names: List[str]) -> List[str]:
        self.group_order = list(names)
        await self.save(checked_map=False)
        return self.group_order

    async def reorder(self, displayed: List[str], from_index: int, to_index: int) -> List[str]:
        """Drag and drop: splice the dragged group out and reinsert it at the target"""
        if from_index == to_index or not 0 <= from_index < len(displayed):
            return self.group_order
        names = list(displayed)
        moved = names.pop(from_index)
        names.insert(max(0, min(to_index, len(names))), moved)
        return await self.set_group_order(names)

    def displayed_names(self, items: Iterable[Row]) -> List[str]:
        """Every visible group in the order it is currently shown"""
        return [name for name, _ in grouped_items(items, self.group_order)]

    async def move_group(self, name: str, direction: str, items: Iterable[Row]) -> List[str]:
        """
        Swap a group with its neighbour ("up" / "down") in the displayed
        order, which is persisted in full (groups never ordered before
        included). Moving past either end only persists that order.
        """
        names = self.displayed_names(items)
        if name not in names:
            names.append(name)
        index = names.index(name)
        other = index - 1 if direction == "up" else index + 1
        if 0 <= other < len(names):
            names[index], names[other] = names[other], names[index]
        if names == self.group_order:
            return self.group_order
        return await self.set_group_order(names)

    async def rename_group(self, old_name: Optional[str], new_name: Optional[str],
                           items: Iterable[Row]) -> List[str]:
        """Keep the group's position when it is renamed"""
        old_label, new_label = group_label(old_name), group_label(new_name)
        names = self.displayed_names(items)
        if old_label in names:
            names[names.index(old_label)] = new_label
        elif new_label not in names:
            names.append(new_label)
        return await self.set_group_order(names)

    # ── checkmarks ───────────────────────────────────────────────

    def is_checked(self, item_id: Any) -> bool:
        return bool(self.checked_map.get(str(item_id)))

    async def set_checked(self, item_id: Any, value: bool) -> Dict[str, bool]:
        self.checked_map[str(item_id)] = bool(value)
        await self.save(group_order=False)
        return self.checked_map

    async def set_all_checked(self, items: Iterable[Row], value: bool) -> Dict[str, bool]:
        for row in items:
            if not is_placeholder(row):
                self.checked_map[str(row["id"])] = bool(value)
        await self.save(group_order=False)
        return self.checked_map

    def checked_count(self, items: Iterable[Row]) -> int:
        return sum(1 for r in items if not is_placeholder(r) and self.is_checked(r["id"]))

    async def reset_checked(self) -> None:
        self.checked_map = {}
        await self.save(group_order=False)

    async def restore(self, group_order: Optional[List[str]] = None,
                      checked_map: Optional[Dict[str, bool]] = None) -> None:
        """Apply imported state; parts passed as None are left alone"""
        if group_order is not None:
            self.group_order = list(group_order)
        if checked_map is not None:
            self.checked_map = {str(k): bool(v) for k, v in checked_map.items()}
        if group_order is not None or checked_map is not None:
            await self.save(group_order=group_order is not None, checked_map=checked_map is not None)
