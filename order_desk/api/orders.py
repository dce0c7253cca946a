"""
Provider Order API

Endpoints behind the order detail screen for one provider: items, groups,
checkmarks, bulk quantity actions, snapshots, spreadsheet / JSON exchange,
clipboard text, stock application and a realtime WebSocket feed.

Every request resolves the order for (provider, tenant, branch) through the
shared pinned schema on app.state.
"""
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel

from order_desk.connectors.realtime import ChangeEvent
from order_desk.models.order import is_placeholder
from order_desk.services.clipboard import build_clipboard_text
from order_desk.services.errors import MissingRelationError, OrderDeskError
from order_desk.services.order_backup import BACKUP_MIME, dump_backup, import_backup
from order_desk.services.order_service import OrderService
from order_desk.services.schema_resolver import ITEMS
from order_desk.services.snapshot_service import SnapshotService
from order_desk.services.spreadsheet_codec import XLSX_MIME, export_filename, export_workbook, import_workbook
from order_desk.services.stock_service import StockService
from order_desk.services.ui_state_service import UIStateService, grouped_items
from order_desk.utils.logger import log

router = APIRouter(prefix="/providers/{provider_id}/order", tags=["orders"])


# ── request bodies ───────────────────────────────────────────────

class AddItemRequest(BaseModel):
    product_name: str
    group_name: Optional[str] = None


class BulkItemsRequest(BaseModel):
    names: List[str]
    group_name: Optional[str] = None


class ItemPatch(BaseModel):
    qty: Optional[float] = None
    unit_price: Optional[float] = None
    stock_qty: Optional[float] = None
    display_name: Optional[str] = None
    pack_size: Optional[int] = None
    group_name: Optional[str] = None


class GroupRequest(BaseModel):
    name: str


class RenameGroupRequest(BaseModel):
    new_name: str


class MoveGroupRequest(BaseModel):
    name: str
    direction: str


class ReorderGroupsRequest(BaseModel):
    from_index: int
    to_index: int
    query: str = ""


class CheckedRequest(BaseModel):
    checked: bool


class SuggestRequest(BaseModel):
    period: str


class OrderPatch(BaseModel):
    notes: Optional[str] = None
    status: Optional[str] = None


class SnapshotRequest(BaseModel):
    title: Optional[str] = None


class StockRequest(BaseModel):
    since: datetime
    additions: Dict[str, Optional[str]] = {}


# ── context ──────────────────────────────────────────────────────

@dataclass
class OrderContext:
    orders: OrderService
    ui_state: UIStateService

    @property
    def order_id(self):
        return self.orders.order["id"]


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, OrderDeskError):
        return HTTPException(status_code=e.status_code, detail=e.message)
    log.error(f"Order API error: {e}")
    return HTTPException(status_code=500, detail=str(e))


async def _provider_name(request: Request, provider_id: str) -> Optional[str]:
    try:
        row = await request.app.state.store.select_one("providers", {"id": provider_id})
    except MissingRelationError:
        return None
    return (row or {}).get("name")


async def build_context(
    request,
    provider_id: str,
    tenant_id: Optional[str],
    branch_id: Optional[str],
    week_id: Optional[str],
    subscribe: bool = False,
) -> OrderContext:
    state = request.app.state
    sales = await state.sales_feed.load(tenant_id, branch_id)
    orders = OrderService(
        state.store,
        provider_id,
        tenant_id=tenant_id,
        branch_id=branch_id,
        week_id=week_id,
        provider_name=await _provider_name(request, provider_id),
        sales=sales,
        schema=state.schema,
        hub=state.hub,
    )
    await orders.load(subscribe=subscribe)
    ui_state = await UIStateService(state.store, orders.order["id"]).load()
    return OrderContext(orders=orders, ui_state=ui_state)


async def get_context(
    request: Request,
    provider_id: str,
    tenant_id: Optional[str] = Query(None, description="Tenant scope"),
    branch_id: Optional[str] = Query(None, description="Branch scope"),
    week_id: Optional[str] = Query(None, description="Planning week for per-week summaries"),
) -> OrderContext:
    try:
        return await build_context(request, provider_id, tenant_id, branch_id, week_id)
    except Exception as e:
        raise _http_error(e)


def _order_view(ctx: OrderContext, query: str = "") -> dict:
    orders, ui = ctx.orders, ctx.ui_state
    groups = grouped_items(orders.items, ui.group_order, query)
    return {
        "order": orders.order,
        "items": orders.items_with_stats(),
        "total": orders.total,
        "groups": [
            {"name": name, "item_ids": [r["id"] for r in rows if not is_placeholder(r)]}
            for name, rows in groups
        ],
        "group_order": ui.group_order,
        "checked_map": ui.checked_map,
        "checked_count": ui.checked_count(orders.items),
        "selectable_count": len(orders.real_items),
    }


# ── order ────────────────────────────────────────────────────────

@router.get("")
async def get_order(query: str = Query("", description="Search filter"), ctx: OrderContext = Depends(get_context)):
    """Order, items with statistics, display groups and checkmarks."""
    return {"success": True, "data": _order_view(ctx, query)}


@router.patch("")
async def patch_order(body: OrderPatch, ctx: OrderContext = Depends(get_context)):
    try:
        if body.notes is not None:
            await ctx.orders.update_notes(body.notes)
        if body.status is not None:
            await ctx.orders.set_status(body.status)
        return {"success": True, "data": ctx.orders.order}
    except Exception as e:
        raise _http_error(e)


# ── items ────────────────────────────────────────────────────────

@router.post("/items")
async def add_item(body: AddItemRequest, ctx: OrderContext = Depends(get_context)):
    try:
        row = await ctx.orders.add_item(body.product_name, body.group_name)
        return {"success": True, "data": row, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.post("/items/bulk")
async def bulk_add_items(body: BulkItemsRequest, ctx: OrderContext = Depends(get_context)):
    try:
        rows = await ctx.orders.bulk_add_items(body.names, body.group_name)
        return {"success": True, "count": len(rows), "data": rows, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.post("/items/bulk-remove")
async def bulk_remove_items(body: BulkItemsRequest, ctx: OrderContext = Depends(get_context)):
    try:
        removed = await ctx.orders.bulk_remove_by_names(body.names, body.group_name)
        return {"success": True, "removed": removed, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.patch("/items/{item_id}")
async def patch_item(item_id: str, body: ItemPatch, ctx: OrderContext = Depends(get_context)):
    """Single-field edits; fields are applied in a fixed order."""
    fields = body.model_dump(exclude_unset=True)
    orders = ctx.orders
    try:
        orders.get_item(item_id)
        if "pack_size" in fields:
            await orders.update_pack_size(item_id, fields["pack_size"])
        if "qty" in fields:
            await orders.update_qty(item_id, fields["qty"])
        if "unit_price" in fields:
            await orders.update_unit_price(item_id, fields["unit_price"])
        if "stock_qty" in fields:
            await orders.update_stock(item_id, fields["stock_qty"])
        if "display_name" in fields:
            await orders.update_display_name(item_id, fields["display_name"])
        if "group_name" in fields:
            await orders.move_item_to_group(item_id, fields["group_name"])
        return {"success": True, "data": orders.get_item(item_id), "total": orders.total}
    except Exception as e:
        raise _http_error(e)


@router.delete("/items/{item_id}")
async def delete_item(item_id: str, ctx: OrderContext = Depends(get_context)):
    try:
        await ctx.orders.remove_item(item_id)
        return {"success": True, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


# ── groups ───────────────────────────────────────────────────────

@router.post("/groups")
async def create_group(body: GroupRequest, ctx: OrderContext = Depends(get_context)):
    try:
        row = await ctx.orders.create_group(body.name)
        return {"success": True, "data": row}
    except Exception as e:
        raise _http_error(e)


@router.patch("/groups/{name}")
async def rename_group(name: str, body: RenameGroupRequest, ctx: OrderContext = Depends(get_context)):
    try:
        before = list(ctx.orders.items)
        renamed = await ctx.orders.rename_group(name, body.new_name)
        group_order = await ctx.ui_state.rename_group(name, body.new_name, before)
        return {"success": True, "renamed": renamed, "group_order": group_order}
    except Exception as e:
        raise _http_error(e)


@router.delete("/groups/{name}")
async def delete_group(name: str, ctx: OrderContext = Depends(get_context)):
    try:
        removed = await ctx.orders.delete_group(name)
        return {"success": True, "removed": removed, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.post("/groups/move")
async def move_group(body: MoveGroupRequest, ctx: OrderContext = Depends(get_context)):
    if body.direction not in ("up", "down"):
        raise HTTPException(400, "direction must be 'up' or 'down'")
    group_order = await ctx.ui_state.move_group(body.name, body.direction, ctx.orders.items)
    return {"success": True, "group_order": group_order}


@router.post("/groups/reorder")
async def reorder_groups(body: ReorderGroupsRequest, ctx: OrderContext = Depends(get_context)):
    """Drag and drop between positions of the currently displayed groups."""
    displayed = [name for name, _ in grouped_items(ctx.orders.items, ctx.ui_state.group_order, body.query)]
    group_order = await ctx.ui_state.reorder(displayed, body.from_index, body.to_index)
    return {"success": True, "group_order": group_order}


# ── checkmarks ───────────────────────────────────────────────────

@router.put("/checked")
async def set_all_checked(body: CheckedRequest, ctx: OrderContext = Depends(get_context)):
    checked = await ctx.ui_state.set_all_checked(ctx.orders.items, body.checked)
    return {"success": True, "checked_map": checked, "checked_count": ctx.ui_state.checked_count(ctx.orders.items)}


@router.put("/checked/{item_id}")
async def set_checked(item_id: str, body: CheckedRequest, ctx: OrderContext = Depends(get_context)):
    try:
        ctx.orders.get_item(item_id)
    except Exception as e:
        raise _http_error(e)
    checked = await ctx.ui_state.set_checked(item_id, body.checked)
    return {"success": True, "checked_map": checked, "checked_count": ctx.ui_state.checked_count(ctx.orders.items)}


# ── bulk quantity actions ────────────────────────────────────────

@router.post("/apply-suggested")
async def apply_suggested(body: SuggestRequest, ctx: OrderContext = Depends(get_context)):
    if body.period not in ("week", "2w", "30d"):
        raise HTTPException(400, "period must be one of week, 2w, 30d")
    try:
        applied = await ctx.orders.apply_suggested(body.period)
        return {"success": True, "applied": applied, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.post("/zero")
async def zero_all(ctx: OrderContext = Depends(get_context)):
    try:
        updated = await ctx.orders.zero_all_quantities()
        return {"success": True, "updated": updated, "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.post("/previous-quantities")
async def save_previous_quantities(ctx: OrderContext = Depends(get_context)):
    try:
        updated = await ctx.orders.snapshot_previous_quantities()
        return {"success": True, "updated": updated}
    except Exception as e:
        raise _http_error(e)


# ── snapshots ────────────────────────────────────────────────────

@router.get("/snapshots")
async def list_snapshots(ctx: OrderContext = Depends(get_context)):
    try:
        rows = await SnapshotService(ctx.orders).list()
        return {"success": True, "count": len(rows), "data": rows}
    except Exception as e:
        raise _http_error(e)


@router.post("/snapshots")
async def save_snapshot(body: SnapshotRequest, ctx: OrderContext = Depends(get_context)):
    try:
        return {"success": True, "data": await SnapshotService(ctx.orders).save(body.title)}
    except Exception as e:
        raise _http_error(e)


@router.post("/snapshots/{snapshot_id}/open")
async def open_snapshot(snapshot_id: str, ctx: OrderContext = Depends(get_context)):
    """Destructive: replaces every current item with the snapshot's."""
    try:
        rows = await SnapshotService(ctx.orders).open(snapshot_id, ctx.ui_state)
        return {"success": True, "count": len(rows), "total": ctx.orders.total}
    except Exception as e:
        raise _http_error(e)


@router.patch("/snapshots/{snapshot_id}")
async def rename_snapshot(snapshot_id: str, body: SnapshotRequest, ctx: OrderContext = Depends(get_context)):
    try:
        return {"success": True, "data": await SnapshotService(ctx.orders).rename(snapshot_id, body.title or "")}
    except Exception as e:
        raise _http_error(e)


@router.delete("/snapshots/{snapshot_id}")
async def delete_snapshot(snapshot_id: str, ctx: OrderContext = Depends(get_context)):
    try:
        await SnapshotService(ctx.orders).delete(snapshot_id)
        return {"success": True}
    except Exception as e:
        raise _http_error(e)


# ── export / import ──────────────────────────────────────────────

@router.get("/export.xlsx")
async def export_xlsx(ctx: OrderContext = Depends(get_context)):
    content = export_workbook(ctx.orders.items, ctx.orders.sales)
    filename = export_filename(ctx.orders.provider_name, "xlsx")
    return Response(
        content=content,
        media_type=XLSX_MIME,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/export.json")
async def export_json(ctx: OrderContext = Depends(get_context)):
    filename = export_filename(ctx.orders.provider_name, "json")
    return Response(
        content=dump_backup(ctx.orders, ctx.ui_state),
        media_type=BACKUP_MIME,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import")
async def import_order(file: UploadFile = File(...), ctx: OrderContext = Depends(get_context)):
    """
    Replace the order's items from an .xlsx (group, product, qty, price only)
    or a JSON backup (every field, ids kept).
    """
    name = (file.filename or "").lower()
    try:
        contents = await file.read()
        if name.endswith(".json") or file.content_type in ("application/json", "text/json"):
            rows = await import_backup(ctx.orders, contents.decode("utf-8"), ctx.ui_state)
        elif name.endswith(".xlsx"):
            rows = await import_workbook(ctx.orders, contents, ctx.ui_state)
        else:
            raise HTTPException(400, "File must be .xlsx or .json")
        return {"success": True, "count": len(rows), "total": ctx.orders.total}
    except UnicodeDecodeError:
        raise HTTPException(400, "Backup file must be UTF-8 JSON")
    except Exception as e:
        raise _http_error(e)


@router.get("/clipboard", response_class=PlainTextResponse)
async def clipboard_text(
    sort: str = Query("alpha_asc", description="alpha_asc, alpha_desc, avg_desc, avg_asc"),
    query: str = Query(""),
    ctx: OrderContext = Depends(get_context),
):
    groups = grouped_items(ctx.orders.items, ctx.ui_state.group_order, query)
    try:
        return build_clipboard_text(groups, sort, ctx.orders.sales)
    except ValueError as e:
        raise HTTPException(400, str(e))


# ── stock ────────────────────────────────────────────────────────

@router.post("/stock/preview")
async def stock_preview(body: StockRequest, ctx: OrderContext = Depends(get_context)):
    rows = StockService(ctx.orders).preview(body.since.replace(tzinfo=None), body.additions)
    return {"success": True, "data": [asdict(r) for r in rows]}


@router.post("/stock/apply")
async def stock_apply(request: Request, body: StockRequest, ctx: OrderContext = Depends(get_context)):
    try:
        undo = await StockService(ctx.orders).apply(body.since.replace(tzinfo=None), body.additions)
    except Exception as e:
        raise _http_error(e)
    request.app.state.stock_undo[ctx.order_id] = undo
    return {"success": True, "data": undo.to_dict()}


@router.post("/stock/undo")
async def stock_undo(request: Request, ctx: OrderContext = Depends(get_context)):
    undo = request.app.state.stock_undo.pop(ctx.order_id, None)
    if undo is None:
        raise HTTPException(404, "Nothing to undo")
    try:
        restored = await StockService(ctx.orders).undo(undo)
        return {"success": True, "restored": restored}
    except Exception as e:
        raise _http_error(e)


# ── realtime ─────────────────────────────────────────────────────

@router.websocket("/ws")
async def order_feed(
    websocket: WebSocket,
    provider_id: str,
    tenant_id: Optional[str] = None,
    branch_id: Optional[str] = None,
):
    """Streams INSERT/UPDATE/DELETE events for the order's items."""
    await websocket.accept()
    try:
        ctx = await build_context(websocket, provider_id, tenant_id, branch_id, None)
    except OrderDeskError as e:
        await websocket.send_json({"type": "error", "detail": e.message})
        await websocket.close(code=1011)
        return

    queue: asyncio.Queue = asyncio.Queue()
    hub = websocket.app.state.hub
    table = ctx.orders.resolver.table_for(ITEMS)

    def forward(event: ChangeEvent):
        queue.put_nowait(event)

    subscription = await hub.subscribe(table, "order_id", ctx.order_id, forward)
    await websocket.send_json(jsonable_encoder({"type": "ready", "order": ctx.orders.order}))

    async def sender():
        while True:
            event = await queue.get()
            await websocket.send_json(jsonable_encoder(event.to_dict()))

    async def receiver():
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    tasks = [asyncio.ensure_future(sender()), asyncio.ensure_future(receiver())]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        subscription.close()
        log.debug(f"Realtime feed closed for order {ctx.order_id}")
