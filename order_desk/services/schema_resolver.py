"""
Schema Resolver

Finds which candidate table actually holds orders and order items, and which
of the optional scope columns (tenant_id, branch_id) that table has. The
first table that returns rows or accepts a write is pinned in a
ResolvedSchema value and used directly from then on; it is never re-probed.

ResolvedSchema is passed in by the caller, so several services (and several
requests) can share one resolution, and tests can inject a fixed one.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from order_desk.config import get_settings
from order_desk.connectors.base import RemoteStore, Row
from order_desk.services.errors import MissingColumnError, MissingRelationError, NoCandidateTableError
from order_desk.utils.logger import log

ORDERS = "orders"
ITEMS = "items"
SCOPE_COLUMNS: Tuple[str, ...] = ("tenant_id", "branch_id")

T = TypeVar("T")


@dataclass
class PinnedTable:
    name: str
    scope_columns: Tuple[str, ...] = SCOPE_COLUMNS


@dataclass
class ResolvedSchema:
    """Tables pinned for this session, by kind ("orders" / "items")"""

    tables: Dict[str, PinnedTable] = field(default_factory=dict)

    @classmethod
    def fixed(cls, orders_table: str = "orders", items_table: str = "order_items",
              scope_columns: Tuple[str, ...] = SCOPE_COLUMNS) -> "ResolvedSchema":
        return cls(tables={
            ORDERS: PinnedTable(orders_table, tuple(scope_columns)),
            ITEMS: PinnedTable(items_table, tuple(scope_columns)),
        })

    def get(self, kind: str) -> Optional[PinnedTable]:
        return self.tables.get(kind)

    def pin(self, kind: str, name: str, scope_columns: Sequence[str]) -> PinnedTable:
        pinned = PinnedTable(name, tuple(scope_columns))
        previous = self.tables.get(kind)
        if previous != pinned:
            log.info(f"Pinned {kind} table: {name} (scope columns: {', '.join(pinned.scope_columns) or 'none'})")
        self.tables[kind] = pinned
        return pinned


class SchemaResolver:
    """
    Candidate-table cascade over a RemoteStore.

    On "missing column" for a scope column the same table is retried without
    it; on "missing relation" the next candidate is tried. Any other store
    error propagates.
    """

    def __init__(
        self,
        store: RemoteStore,
        schema: Optional[ResolvedSchema] = None,
        order_candidates: Optional[List[str]] = None,
        item_candidates: Optional[List[str]] = None,
    ):
        settings = get_settings()
        self.store = store
        self.schema = schema if schema is not None else ResolvedSchema()
        self.candidates = {
            ORDERS: list(order_candidates or settings.order_table_candidates()),
            ITEMS: list(item_candidates or settings.item_table_candidates()),
        }

    # ── pinned state ─────────────────────────────────────────────

    def tables(self, kind: str) -> List[str]:
        pinned = self.schema.get(kind)
        if pinned is not None:
            return [pinned.name]
        return self.candidates[kind]

    def table_for(self, kind: str) -> str:
        return self.tables(kind)[0]

    def scope_columns(self, kind: str) -> Tuple[str, ...]:
        pinned = self.schema.get(kind)
        return pinned.scope_columns if pinned is not None else SCOPE_COLUMNS

    def scoped(self, kind: str, values: Row, tenant_id: Optional[str] = None,
               branch_id: Optional[str] = None) -> Row:
        """Copy of values carrying only the scope columns the table supports"""
        return _with_scope(values, self.scope_columns(kind), tenant_id, branch_id)

    # ── cascades ─────────────────────────────────────────────────

    async def run(self, kind: str, operation: Callable[[str], Awaitable[T]]) -> T:
        """Run operation(table) against the first table that exists"""
        last_error: Optional[Exception] = None
        for table in self.tables(kind):
            try:
                result = await operation(table)
            except MissingRelationError as e:
                log.debug(f"{kind}: table {table} missing, trying next candidate")
                last_error = e
                continue
            self.schema.pin(kind, table, self.scope_columns(kind))
            return result
        raise NoCandidateTableError(kind, self.tables(kind), last_error)

    async def insert(self, kind: str, rows: Sequence[Row], tenant_id: Optional[str] = None,
                     branch_id: Optional[str] = None) -> List[Row]:
        """Insert rows into the first table that accepts them, dropping unknown scope columns"""
        last_error: Optional[Exception] = None
        for table in self.tables(kind):
            supported = self.scope_columns(kind)
            try:
                while True:
                    payload = [_with_scope(row, supported, tenant_id, branch_id) for row in rows]
                    try:
                        stored = await self.store.insert(table, payload)
                    except MissingColumnError as e:
                        if e.column not in supported:
                            raise
                        log.debug(f"{kind}: {table} has no {e.column}, retrying without it")
                        supported = tuple(c for c in supported if c != e.column)
                        continue
                    self.schema.pin(kind, table, supported)
                    return stored
            except MissingRelationError as e:
                log.debug(f"{kind}: table {table} missing, trying next candidate")
                last_error = e
        raise NoCandidateTableError(kind, self.tables(kind), last_error)

    async def find_latest_order(self, provider_id: str, tenant_id: Optional[str] = None,
                                branch_id: Optional[str] = None) -> Optional[Row]:
        """Most recently created order for the provider within the scope, or None"""
        for table in self.tables(ORDERS):
            try:
                row = await self._probe_orders(table, provider_id, tenant_id, branch_id)
            except MissingRelationError:
                log.debug(f"orders: table {table} missing, trying next candidate")
                continue
            if row is not None:
                return row
        return None

    async def _probe_orders(self, table: str, provider_id: str, tenant_id: Optional[str],
                            branch_id: Optional[str]) -> Optional[Row]:
        supported = self.scope_columns(ORDERS)
        while True:
            try:
                for variant in _read_variants(supported, tenant_id, branch_id):
                    rows = await self.store.select(
                        table, {"provider_id": provider_id, **variant},
                        order_by="created_at", descending=True, limit=1,
                    )
                    if rows:
                        self.schema.pin(ORDERS, table, supported)
                        return rows[0]
                return None
            except MissingColumnError as e:
                if e.column not in supported:
                    raise
                log.debug(f"orders: {table} has no {e.column}, retrying without it")
                supported = tuple(c for c in supported if c != e.column)

    async def find_items(self, order_id: Any) -> List[Row]:
        """Items of the order in creation order (by id on tables without created_at)"""
        async def read(table: str) -> List[Row]:
            try:
                return await self.store.select(table, {"order_id": order_id}, order_by="created_at")
            except MissingColumnError as e:
                if e.column != "created_at":
                    raise
                return await self.store.select(table, {"order_id": order_id}, order_by="id")

        return await self.run(ITEMS, read)


def _with_scope(row: Row, columns: Sequence[str], tenant_id: Optional[str],
                branch_id: Optional[str]) -> Row:
    payload = {k: v for k, v in row.items() if k not in SCOPE_COLUMNS}
    scope = {"tenant_id": tenant_id, "branch_id": branch_id}
    for column in columns:
        value = scope.get(column) or row.get(column)
        if value:
            payload[column] = value
    return payload


def _read_variants(supported: Sequence[str], tenant_id: Optional[str],
                   branch_id: Optional[str]) -> List[Dict[str, Any]]:
    """
    Filters to try, most specific first.

    Rows scoped to exactly (tenant, branch) win; then legacy rows whose
    branch (and then tenant) was never set. Rows scoped to another branch
    are never matched.
    """
    scope = [(c, v) for c, v in (("tenant_id", tenant_id), ("branch_id", branch_id))
             if v and c in supported]
    variants: List[Dict[str, Any]] = [dict(scope)]
    for cut in range(len(scope) - 1, -1, -1):
        variant = dict(scope[:cut])
        for column, _ in scope[cut:]:
            variant[column] = None
        variants.append(variant)
    unique, seen = [], set()
    for variant in variants:
        key = tuple(sorted(variant.items(), key=lambda kv: kv[0]))
        if key not in seen:
            seen.add(key)
            unique.append(variant)
    return unique
