"""
Order & Item Store

Owns one provider's open order and its line items. Every mutation follows
the same pattern: change local state first, persist through the remote
store, then recompute the derived order total and summaries. A failed
remote write raises but leaves local state as edited; the next successful
write reconciles it.

Realtime changes to the order's items are merged into local state through
an ItemMergePolicy (last writer wins by default).
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from order_desk.config import Settings, get_settings
from order_desk.connectors.base import RemoteStore, Row
from order_desk.connectors.realtime import ChangeEvent, RealtimeHub, Subscription
from order_desk.models.order import (
    GROUP_PLACEHOLDER,
    ORDER_STATUSES,
    STATUS_PENDING,
    UNGROUPED,
    group_key,
    is_placeholder,
)
from order_desk.services.errors import (
    BulkOperationError,
    MissingRelationError,
    MissingScopeError,
    NotFoundError,
    OrderDeskError,
    OrderNotLoadedError,
    WriteFailedError,
)
from order_desk.services.merge_policy import ItemMergePolicy, LastWriterWins
from order_desk.services.sales_stats import (
    SalesRecord,
    Stats,
    estimated_cost,
    snap_to_pack,
    stats_for_product,
    suggested_quantity,
)
from order_desk.services.schema_resolver import ITEMS, ORDERS, ResolvedSchema, SchemaResolver
from order_desk.utils.helpers import chunk_list, iso_today, norm_text, round_half_up, round2, to_nullable_str, to_number
from order_desk.utils.logger import log

TABLE_ORDER_SUMMARIES = "order_summaries"
TABLE_ORDER_SUMMARIES_WEEK = "order_summaries_week"

# Orders being resolved/created in this process, keyed by provider + scope.
# Concurrent callers share one lookup so a single process never creates two
# orders for the same scope. Two processes can still race (no atomic
# create-if-absent in the store); the older duplicate is simply never chosen
# again because lookups take the most recently created order.
_INFLIGHT_ORDERS: Dict[Tuple, "asyncio.Task"] = {}


def order_total(items: Iterable[Row]) -> int:
    """Σ unit_price × qty over non-placeholder items"""
    return sum(
        int(r.get("unit_price") or 0) * int(r.get("qty") or 0)
        for r in items if not is_placeholder(r)
    )


def order_units(items: Iterable[Row]) -> int:
    return sum(int(r.get("qty") or 0) for r in items if not is_placeholder(r))


class OrderService:
    """
    Hub for a single provider's order within a (tenant, branch) scope.

    Args:
        store: Remote row store
        provider_id: Provider the order belongs to
        tenant_id, branch_id: Caller scope (either may be None)
        week_id: Planning week; when set, per-week summaries are kept too
        provider_name: Used for new-order notes and snapshot titles
        sales: Historical sales feed used for statistics
        schema: Shared ResolvedSchema (a fresh one is probed when omitted)
        hub: Realtime hub for item change subscriptions
        merge_policy: How realtime events combine with local state
    """

    def __init__(
        self,
        store: RemoteStore,
        provider_id: str,
        tenant_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        week_id: Optional[str] = None,
        provider_name: Optional[str] = None,
        sales: Optional[List[SalesRecord]] = None,
        schema: Optional[ResolvedSchema] = None,
        resolver: Optional[SchemaResolver] = None,
        hub: Optional[RealtimeHub] = None,
        merge_policy: Optional[ItemMergePolicy] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.resolver = resolver or SchemaResolver(store, schema)
        self.hub = hub
        self.merge = merge_policy or LastWriterWins()
        self.provider_id = provider_id
        self.tenant_id = tenant_id
        self.branch_id = branch_id
        self.week_id = week_id
        self.provider_name = provider_name
        self.sales: List[SalesRecord] = list(sales or [])

        self.order: Optional[Row] = None
        self.items: List[Row] = []
        self._subscription: Optional[Subscription] = None
        self._listeners: List[Callable[[ChangeEvent], None]] = []

    # ── scope ────────────────────────────────────────────────────

    @property
    def scope_tenant(self) -> Optional[str]:
        return (self.order or {}).get("tenant_id") or self.tenant_id

    @property
    def scope_branch(self) -> Optional[str]:
        return (self.order or {}).get("branch_id") or self.branch_id

    def _require_order(self) -> Row:
        if self.order is None:
            raise OrderNotLoadedError()
        return self.order

    def _require_item_scope(self) -> Row:
        order = self._require_order()
        if self.settings.require_scope and not (self.scope_tenant or self.scope_branch):
            raise MissingScopeError(self.provider_id)
        return order

    # ── order resolution ─────────────────────────────────────────

    async def get_or_create_order(self) -> Row:
        """
        Most recent order for the provider in this scope, creating a PENDING
        one when none exists. Concurrent calls in this process share one
        lookup.
        """
        key = (self.provider_id, self.tenant_id, self.branch_id)
        task = _INFLIGHT_ORDERS.get(key)
        if task is None or task.get_loop() is not asyncio.get_running_loop():
            task = asyncio.ensure_future(self._find_or_create())
            _INFLIGHT_ORDERS[key] = task

            def _forget(done, key=key):
                if _INFLIGHT_ORDERS.get(key) is done:
                    del _INFLIGHT_ORDERS[key]

            task.add_done_callback(_forget)
        return dict(await asyncio.shield(task))

    async def _find_or_create(self) -> Row:
        row = await self.resolver.find_latest_order(self.provider_id, self.tenant_id, self.branch_id)
        if row is not None:
            return row
        payload = {
            "provider_id": self.provider_id,
            "status": STATUS_PENDING,
            "notes": f"{self.provider_name or self.provider_id} - {iso_today()}",
            "total": 0,
        }
        stored = await self.resolver.insert(ORDERS, [payload], self.tenant_id, self.branch_id)
        log.info(f"Created order {stored[0].get('id')} for provider {self.provider_id}")
        return stored[0]

    async def load(self, subscribe: bool = True) -> Row:
        """Resolve the order, read its items and start merging realtime changes"""
        self.order = await self.get_or_create_order()
        patch = self._missing_scope_patch(self.order)
        if patch:
            self.order.update(patch)
        self.items = await self.resolver.find_items(self.order["id"])
        if patch:
            await self._patch_scope(patch)
        if subscribe and self.hub is not None and self._subscription is None:
            self._subscription = await self.hub.subscribe(
                self.resolver.table_for(ITEMS), "order_id", self.order["id"], self._on_event
            )
        log.debug(f"Loaded order {self.order['id']} with {len(self.items)} items")
        return self.order

    def _missing_scope_patch(self, order: Row) -> Row:
        patch = {}
        if self.tenant_id and not order.get("tenant_id"):
            patch["tenant_id"] = self.tenant_id
        if self.branch_id and not order.get("branch_id"):
            patch["branch_id"] = self.branch_id
        return patch

    async def _patch_scope(self, patch: Row) -> None:
        """Stamp the caller's scope on an order (and items) created before scoping existed"""
        order_patch = {k: v for k, v in patch.items() if k in self.resolver.scope_columns(ORDERS)}
        try:
            if order_patch:
                await self.resolver.run(
                    ORDERS, lambda t: self.store.update(t, order_patch, {"id": self.order["id"]})
                )
            item_patch = {k: v for k, v in patch.items() if k in self.resolver.scope_columns(ITEMS)}
            pending = [r["id"] for r in self.items if any(not r.get(k) for k in item_patch)]
            if item_patch and pending:
                await self.resolver.run(
                    ITEMS, lambda t: self.store.update(t, item_patch, in_={"id": pending})
                )
        except OrderDeskError as e:
            log.warning(f"Scope patch for order {self.order['id']} failed: {e}")

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    # ── realtime ─────────────────────────────────────────────────

    def add_listener(self, callback: Callable[[ChangeEvent], None]) -> None:
        """Called after every merged realtime event"""
        self._listeners.append(callback)

    def _on_event(self, event: ChangeEvent) -> None:
        self.items = self.merge.apply_event(self.items, event)
        for callback in self._listeners:
            callback(event)

    # ── reads ────────────────────────────────────────────────────

    @property
    def total(self) -> int:
        return order_total(self.items)

    @property
    def real_items(self) -> List[Row]:
        return [r for r in self.items if not is_placeholder(r)]

    def get_item(self, item_id: Any) -> Row:
        for row in self.items:
            if row.get("id") == item_id:
                return row
        raise NotFoundError(f"Item {item_id} not found")

    def item_stats(self, product_name: str) -> Stats:
        return stats_for_product(self.sales, product_name)

    def items_with_stats(self) -> List[Row]:
        rows = []
        for row in self.items:
            data = dict(row)
            if not is_placeholder(row):
                data["stats"] = self.item_stats(row["product_name"]).to_dict()
            rows.append(data)
        return rows

    # ── local helpers ────────────────────────────────────────────

    def _apply_local(self, item_id: Any, values: Row) -> Row:
        row = {**self.get_item(item_id), **values}
        self.items = self.merge.apply_local(self.items, row)
        return row

    async def _update_item(self, item_id: Any, values: Row, operation: str, recompute: bool = True) -> Row:
        self._require_item_scope()
        row = self._apply_local(item_id, values)
        try:
            await self.resolver.run(ITEMS, lambda t: self.store.update(t, values, {"id": item_id}))
        except OrderDeskError as e:
            log.error(f"{operation} failed for item {item_id}: {e}")
            raise WriteFailedError(operation, e)
        if recompute:
            await self.recompute_order_total()
        return row

    # ── single-item edits ────────────────────────────────────────

    async def update_qty(self, item_id: Any, qty: Any) -> Row:
        pack = self.get_item(item_id).get("pack_size")
        value = snap_to_pack(to_number(qty), pack)
        return await self._update_item(item_id, {"qty": value}, "quantity")

    async def update_unit_price(self, item_id: Any, unit_price: Any) -> Row:
        value = max(0, round_half_up(to_number(unit_price)))
        return await self._update_item(
            item_id, {"unit_price": value, "price_updated_at": datetime.utcnow()}, "unit price"
        )

    async def update_stock(self, item_id: Any, stock: Optional[float]) -> Row:
        value = None if stock is None else max(0.0, round2(to_number(stock)))
        return await self._update_item(
            item_id, {"stock_qty": value, "stock_updated_at": datetime.utcnow()}, "stock", recompute=False
        )

    async def update_display_name(self, item_id: Any, label: Optional[str]) -> Row:
        return await self._update_item(
            item_id, {"display_name": to_nullable_str(label)}, "display name", recompute=False
        )

    async def update_pack_size(self, item_id: Any, pack_size: Optional[Any]) -> Row:
        """Pack sizes ≤ 1 clear the pack; a new pack re-snaps the quantity"""
        pack = round_half_up(to_number(pack_size)) if pack_size else None
        values: Row = {"pack_size": pack if pack and pack > 1 else None}
        if values["pack_size"]:
            values["qty"] = snap_to_pack(self.get_item(item_id).get("qty") or 0, values["pack_size"])
        return await self._update_item(item_id, values, "pack size", recompute="qty" in values)

    async def move_item_to_group(self, item_id: Any, group_name: Optional[str]) -> Row:
        return await self._update_item(
            item_id, {"group_name": group_key(group_name)}, "group", recompute=False
        )

    async def update_item_fields(self, item_id: Any, values: Row, operation: str = "item") -> Row:
        """Raw multi-field write, used by stock application and undo"""
        return await self._update_item(item_id, dict(values), operation, recompute="qty" in values)

    # ── adding and removing ──────────────────────────────────────

    def _new_item(self, product_name: str, group_name: Optional[str]) -> Row:
        stats = self.item_stats(product_name)
        return {
            "order_id": self.order["id"],
            "product_name": product_name,
            "qty": stats.avg4w,
            "unit_price": estimated_cost(stats, self.settings.margin_percent),
            "group_name": group_key(group_name),
        }

    async def _insert_items(self, rows: List[Row]) -> List[Row]:
        stored = await self.resolver.insert(ITEMS, rows, self.scope_tenant, self.scope_branch)
        for row in stored:
            self.items = self.merge.apply_local(self.items, row)
        return stored

    async def add_item(self, product_name: str, group_name: Optional[str] = None) -> Row:
        """Add a product seeded with its 4-week average and estimated cost"""
        self._require_item_scope()
        name = norm_text(product_name)
        if not name:
            raise OrderDeskError("Product name is required")
        try:
            stored = await self._insert_items([self._new_item(name, group_name)])
        except OrderDeskError as e:
            log.error(f"Adding {name} to order {self.order['id']} failed: {e}")
            raise WriteFailedError(f"product {name}", e)
        await self.recompute_order_total()
        return stored[0]

    async def bulk_add_items(self, names: List[str], group_name: Optional[str] = None) -> List[Row]:
        """
        Add several products to one group. Names already in the group are
        skipped. Chunks that were inserted before a failure stay inserted.
        """
        self._require_item_scope()
        key = group_key(group_name)
        present = {r["product_name"] for r in self.items if group_key(r.get("group_name")) == key}
        wanted = []
        for name in (norm_text(n) for n in names):
            if name and name not in present:
                present.add(name)
                wanted.append(name)
        if not wanted:
            return []

        stored: List[Row] = []
        for chunk in chunk_list(wanted, self.settings.bulk_chunk_size):
            try:
                stored.extend(await self._insert_items([self._new_item(n, key) for n in chunk]))
            except OrderDeskError as e:
                log.warning(f"Bulk add stopped after {len(stored)}/{len(wanted)} items: {e}")
                await self._recompute_quietly()
                raise BulkOperationError("Bulk add", len(stored), len(wanted), e)
        await self.recompute_order_total()
        log.info(f"Bulk added {len(stored)} items to order {self.order['id']}")
        return stored

    async def bulk_remove_by_names(self, names: List[str], group_name: Optional[str] = None) -> int:
        self._require_item_scope()
        key = group_key(group_name)
        wanted = {norm_text(n) for n in names}
        ids = [
            r["id"] for r in self.items
            if group_key(r.get("group_name")) == key and r.get("product_name") in wanted
        ]
        if not ids:
            return 0
        removed = 0
        for chunk in chunk_list(ids, self.settings.bulk_chunk_size):
            try:
                await self.resolver.run(ITEMS, lambda t, chunk=chunk: self.store.delete(t, in_={"id": chunk}))
            except OrderDeskError as e:
                log.warning(f"Bulk remove stopped after {removed}/{len(ids)} items: {e}")
                await self._recompute_quietly()
                raise BulkOperationError("Bulk remove", removed, len(ids), e)
            gone = set(chunk)
            self.items = [r for r in self.items if r.get("id") not in gone]
            removed += len(chunk)
        await self.recompute_order_total()
        return removed

    async def remove_item(self, item_id: Any) -> None:
        self._require_item_scope()
        self.get_item(item_id)
        self.items = [r for r in self.items if r.get("id") != item_id]
        try:
            await self.resolver.run(ITEMS, lambda t: self.store.delete(t, {"id": item_id}))
        except OrderDeskError as e:
            log.error(f"Removing item {item_id} failed: {e}")
            raise WriteFailedError("item removal", e)
        await self.recompute_order_total()

    # ── groups ───────────────────────────────────────────────────

    async def create_group(self, group_name: str) -> Row:
        """Insert a placeholder row so an empty group is visible and orderable"""
        self._require_item_scope()
        key = group_key(group_name)
        if key is None:
            raise OrderDeskError(f"Group name must be set and cannot be '{UNGROUPED}'")
        for row in self.items:
            if is_placeholder(row) and group_key(row.get("group_name")) == key:
                return row
        placeholder = {
            "order_id": self.order["id"],
            "product_name": GROUP_PLACEHOLDER,
            "qty": 0,
            "unit_price": 0,
            "group_name": key,
        }
        try:
            return (await self._insert_items([placeholder]))[0]
        except OrderDeskError as e:
            raise WriteFailedError(f"group {group_name}", e)

    async def rename_group(self, old_name: Optional[str], new_name: Optional[str]) -> int:
        order = self._require_item_scope()
        old_key, new_key = group_key(old_name), group_key(new_name)
        if old_key == new_key:
            return 0
        affected = [r["id"] for r in self.items if group_key(r.get("group_name")) == old_key]
        for item_id in affected:
            self._apply_local(item_id, {"group_name": new_key})
        try:
            await self.resolver.run(ITEMS, lambda t: self.store.update(
                t, {"group_name": new_key}, {"order_id": order["id"], "group_name": old_key}
            ))
        except OrderDeskError as e:
            raise WriteFailedError("group rename", e)
        return len(affected)

    async def delete_group(self, group_name: Optional[str]) -> int:
        """Delete every item of the group, its placeholder included"""
        order = self._require_item_scope()
        key = group_key(group_name)
        doomed = {r["id"] for r in self.items if group_key(r.get("group_name")) == key}
        self.items = [r for r in self.items if r.get("id") not in doomed]
        try:
            await self.resolver.run(ITEMS, lambda t: self.store.delete(
                t, {"order_id": order["id"], "group_name": key}
            ))
        except OrderDeskError as e:
            raise WriteFailedError("group deletion", e)
        await self.recompute_order_total()
        return len(doomed)

    # ── totals ───────────────────────────────────────────────────

    async def recompute_order_total(self) -> int:
        """Push the item total to the order row and the summary tables"""
        order = self._require_order()
        total = self.total
        order["total"] = total
        try:
            await self.resolver.run(ORDERS, lambda t: self.store.update(t, {"total": total}, {"id": order["id"]}))
        except OrderDeskError as e:
            log.error(f"Saving total for order {order['id']} failed: {e}")
            raise WriteFailedError("order total", e)
        await self.sync_summaries(total)
        return total

    async def sync_summaries(self, total: Optional[int] = None) -> None:
        """Upsert the per-provider (and per-week) summary rows"""
        total = self.total if total is None else total
        summary = {
            "provider_id": self.provider_id,
            "total": total,
            "items": order_units(self.items),
            "updated_at": datetime.utcnow(),
        }
        try:
            await self.store.upsert(TABLE_ORDER_SUMMARIES, summary, ["provider_id"])
            if self.week_id:
                await self.store.upsert(
                    TABLE_ORDER_SUMMARIES_WEEK, {"week_id": self.week_id, **summary}, ["week_id", "provider_id"]
                )
        except MissingRelationError as e:
            log.debug(f"Summary table unavailable: {e}")

    async def _recompute_quietly(self) -> None:
        try:
            await self.recompute_order_total()
        except OrderDeskError as e:
            log.error(f"Total recompute after failed bulk operation also failed: {e}")

    # ── bulk quantity operations ─────────────────────────────────

    async def _chunked_item_updates(self, operation: str, updates: List[Tuple[Any, Row]]) -> int:
        """Sequential chunks, rows within a chunk concurrently. Stops at the first failing chunk."""
        applied = 0
        for chunk in chunk_list(updates, self.settings.bulk_chunk_size):
            try:
                await asyncio.gather(*(
                    self.resolver.run(ITEMS, lambda t, i=item_id, v=values: self.store.update(t, v, {"id": i}))
                    for item_id, values in chunk
                ))
            except OrderDeskError as e:
                log.warning(f"{operation} stopped after {applied}/{len(updates)} rows: {e}")
                await self._recompute_quietly()
                raise BulkOperationError(operation, applied, len(updates), e)
            live = {r.get("id") for r in self.items}
            for item_id, values in chunk:
                if item_id in live:
                    self._apply_local(item_id, values)
            applied += len(chunk)
        return applied

    async def apply_suggested(self, period: str) -> int:
        """
        Set every item's quantity from its sales statistics for the period
        ("week" → avg4w, "2w" → sum2w, "30d" → sum30d), snapped to pack size.

        Not atomic: when a chunk fails, earlier chunks stay applied.
        """
        self._require_item_scope()
        updates = []
        for row in self.real_items:
            qty = suggested_quantity(
                self.item_stats(row["product_name"]),
                period,
                pack_size=row.get("pack_size"),
                stock=row.get("stock_qty"),
                net_of_stock=self.settings.suggest_net_of_stock,
            )
            updates.append((row["id"], {"qty": qty}))
        applied = await self._chunked_item_updates("Apply suggested", updates)
        await self.recompute_order_total()
        log.info(f"Applied {period} suggestions to {applied} items of order {self.order['id']}")
        return applied

    async def zero_all_quantities(self) -> int:
        """One bulk write setting qty 0 on every real item; the total reverts if it fails"""
        order = self._require_item_scope()
        previous_total = order.get("total")
        self.items = [r if is_placeholder(r) else {**r, "qty": 0} for r in self.items]
        order["total"] = 0
        try:
            updated = await self.resolver.run(ITEMS, lambda t: self.store.update(
                t, {"qty": 0}, {"order_id": order["id"]}, neq={"product_name": GROUP_PLACEHOLDER}
            ))
        except OrderDeskError as e:
            order["total"] = previous_total
            log.error(f"Zeroing order {order['id']} failed: {e}")
            raise WriteFailedError("zero quantities", e)
        await self.recompute_order_total()
        return len(updated)

    async def snapshot_previous_quantities(self) -> int:
        """Copy qty into previous_qty for every real item"""
        self._require_item_scope()
        now = datetime.utcnow()
        updates = [
            (r["id"], {"previous_qty": int(r.get("qty") or 0), "previous_qty_updated_at": now})
            for r in self.real_items
        ]
        return await self._chunked_item_updates("Save previous order", updates)

    # ── replace ──────────────────────────────────────────────────

    async def replace_all(self, rows: List[Row], preserve_ids: bool = False) -> List[Row]:
        """
        Destructive full replace: delete every item of the order, then insert rows.

        Whatever rows do not carry is lost: ids (unless preserve_ids), stock,
        pack size, previous quantity, display labels. Callers must parse and
        validate their input completely before calling this.
        """
        order = self._require_item_scope()
        prepared = []
        for row in rows:
            data = {k: v for k, v in row.items() if k not in ("order_id", "tenant_id", "branch_id")}
            if not preserve_ids:
                data.pop("id", None)
            data["order_id"] = order["id"]
            data["group_name"] = group_key(data.get("group_name"))
            prepared.append(data)

        try:
            await self.resolver.run(ITEMS, lambda t: self.store.delete(t, {"order_id": order["id"]}))
        except OrderDeskError as e:
            raise WriteFailedError("item replacement", e)
        self.items = []

        stored: List[Row] = []
        for chunk in chunk_list(prepared, self.settings.bulk_chunk_size):
            try:
                stored.extend(await self._insert_items(chunk))
            except OrderDeskError as e:
                log.warning(f"Replace stopped after {len(stored)}/{len(prepared)} rows: {e}")
                await self._recompute_quietly()
                raise BulkOperationError("Replace items", len(stored), len(prepared), e)
        await self.recompute_order_total()
        log.info(f"Replaced items of order {order['id']} with {len(stored)} rows")
        return stored

    # ── order header ─────────────────────────────────────────────

    async def _update_order(self, values: Row, operation: str) -> Row:
        order = self._require_order()
        order.update(values)
        try:
            await self.resolver.run(ORDERS, lambda t: self.store.update(t, values, {"id": order["id"]}))
        except OrderDeskError as e:
            log.error(f"Updating {operation} of order {order['id']} failed: {e}")
            raise WriteFailedError(operation, e)
        return order

    async def update_notes(self, notes: Optional[str]) -> Row:
        return await self._update_order({"notes": notes or ""}, "notes")

    async def set_status(self, status: str) -> Row:
        status = (status or "").strip().upper()
        if status not in ORDER_STATUSES:
            raise OrderDeskError(f"Unknown status {status!r}; expected one of {', '.join(ORDER_STATUSES)}")
        return await self._update_order({"status": status}, "status")
