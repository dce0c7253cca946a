"""
Candidate-table resolution against real schema drift.

Uses the SQL store over an in-memory database with extra legacy tables
(no tenant/branch columns) to check:
  - missing candidate tables are skipped
  - missing scope columns are dropped and the same table retried
  - a pinned table is used directly afterwards
  - order lookup never crosses into another branch
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text

from order_desk.connectors.base import RemoteStore
from order_desk.services.errors import NoCandidateTableError
from order_desk.services.schema_resolver import (
    ITEMS,
    ORDERS,
    ResolvedSchema,
    SchemaResolver,
    _read_variants,
)


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


class RecordingStore(RemoteStore):
    """Delegates to a real store and records (operation, table) calls."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    async def select(self, table, eq=None, **kwargs):
        self.calls.append(("select", table))
        return await self.inner.select(table, eq, **kwargs)

    async def insert(self, table, rows):
        self.calls.append(("insert", table))
        return await self.inner.insert(table, rows)

    async def update(self, table, values, eq=None, **kwargs):
        self.calls.append(("update", table))
        return await self.inner.update(table, values, eq, **kwargs)

    async def delete(self, table, eq=None, **kwargs):
        self.calls.append(("delete", table))
        return await self.inner.delete(table, eq, **kwargs)

    async def upsert(self, table, row, conflict_keys):
        self.calls.append(("upsert", table))
        return await self.inner.upsert(table, row, conflict_keys)

    def tables_touched(self):
        return [table for _, table in self.calls]


@pytest.fixture
def legacy_items(engine):
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE legacy_items ("
            " id VARCHAR(36) PRIMARY KEY, order_id VARCHAR(36) NOT NULL,"
            " product_name VARCHAR NOT NULL, display_name VARCHAR,"
            " qty INTEGER, unit_price INTEGER, group_name VARCHAR, created_at DATETIME)"
        ))
    return "legacy_items"


@pytest.fixture
def recording(store):
    return RecordingStore(store)


# ────────────────────────────────────────────
# CANDIDATE CASCADE
# ────────────────────────────────────────────


class TestCandidateCascade:

    def test_missing_first_candidate_is_skipped(self, recording, schema):
        resolver = SchemaResolver(recording, schema, order_candidates=["ghost_orders", "orders"],
                                  item_candidates=["order_items"])
        stored = _run(resolver.insert(ORDERS, [{"provider_id": "p1", "status": "PENDING"}], "t1", "b1"))
        assert stored[0]["tenant_id"] == "t1"
        assert schema.get(ORDERS).name == "orders"
        assert recording.tables_touched() == ["ghost_orders", "orders"]

    def test_pinned_table_is_not_reprobed(self, recording, schema):
        resolver = SchemaResolver(recording, schema, order_candidates=["ghost_orders", "orders"],
                                  item_candidates=["ghost_items", "order_items"])
        _run(resolver.find_items("o1"))
        recording.calls.clear()

        _run(resolver.find_items("o1"))
        _run(resolver.run(ITEMS, lambda t: recording.update(t, {"qty": 1}, {"id": "x"})))
        assert "ghost_items" not in recording.tables_touched()

    def test_shared_schema_pins_for_other_resolvers(self, recording, schema):
        first = SchemaResolver(recording, schema, item_candidates=["ghost_items", "order_items"])
        _run(first.find_items("o1"))
        recording.calls.clear()

        second = SchemaResolver(recording, schema, item_candidates=["ghost_items", "order_items"])
        _run(second.find_items("o1"))
        assert recording.tables_touched() == ["order_items"]

    def test_no_candidate_raises(self, store, schema):
        resolver = SchemaResolver(store, schema, item_candidates=["nope_a", "nope_b"])
        with pytest.raises(NoCandidateTableError) as exc:
            _run(resolver.find_items("o1"))
        assert exc.value.candidates == ["nope_a", "nope_b"]

    def test_fixed_schema_skips_probing(self, recording):
        resolver = SchemaResolver(recording, ResolvedSchema.fixed(), item_candidates=["ghost_items"])
        _run(resolver.find_items("o1"))
        assert recording.tables_touched() == ["order_items"]


# ────────────────────────────────────────────
# SCOPE COLUMNS
# ────────────────────────────────────────────


class TestScopeColumns:

    def test_insert_retries_without_missing_scope_columns(self, store, schema, legacy_items):
        resolver = SchemaResolver(store, schema, item_candidates=[legacy_items])
        stored = _run(resolver.insert(
            ITEMS, [{"order_id": "o1", "product_name": "Milk", "qty": 1, "unit_price": 10}], "t1", "b1"
        ))
        assert stored[0]["product_name"] == "Milk"
        assert "tenant_id" not in stored[0]
        assert schema.get(ITEMS).scope_columns == ()

    def test_scoped_drops_unsupported_columns(self, store):
        schema = ResolvedSchema.fixed(scope_columns=("tenant_id",))
        resolver = SchemaResolver(store, schema)
        assert resolver.scoped(ITEMS, {"qty": 1}, "t1", "b1") == {"qty": 1, "tenant_id": "t1"}


# ────────────────────────────────────────────
# ORDER LOOKUP
# ────────────────────────────────────────────


class TestFindLatestOrder:

    def _orders(self, store, rows):
        _run(store.insert("orders", rows))

    def test_prefers_exact_scope_then_newest(self, store, schema):
        now = datetime.utcnow()
        self._orders(store, [
            {"id": "old", "provider_id": "p1", "status": "PENDING", "tenant_id": "t1", "branch_id": "b1",
             "created_at": now - timedelta(days=2)},
            {"id": "new", "provider_id": "p1", "status": "PENDING", "tenant_id": "t1", "branch_id": "b1",
             "created_at": now},
            {"id": "legacy", "provider_id": "p1", "status": "PENDING", "created_at": now + timedelta(days=1)},
        ])
        resolver = SchemaResolver(store, schema)
        assert _run(resolver.find_latest_order("p1", "t1", "b1"))["id"] == "new"

    def test_never_matches_another_branch(self, store, schema):
        self._orders(store, [
            {"id": "other", "provider_id": "p1", "status": "PENDING", "tenant_id": "t1", "branch_id": "b2"},
        ])
        resolver = SchemaResolver(store, schema)
        assert _run(resolver.find_latest_order("p1", "t1", "b1")) is None

    def test_falls_back_to_unscoped_legacy_order(self, store, schema):
        self._orders(store, [{"id": "legacy", "provider_id": "p1", "status": "PENDING"}])
        resolver = SchemaResolver(store, schema)
        assert _run(resolver.find_latest_order("p1", "t1", "b1"))["id"] == "legacy"


class TestReadVariants:

    def test_full_scope(self):
        assert _read_variants(("tenant_id", "branch_id"), "t1", "b1") == [
            {"tenant_id": "t1", "branch_id": "b1"},
            {"tenant_id": "t1", "branch_id": None},
            {"tenant_id": None, "branch_id": None},
        ]

    def test_unsupported_columns_left_out(self):
        assert _read_variants(("tenant_id",), "t1", "b1") == [{"tenant_id": "t1"}, {"tenant_id": None}]

    def test_no_scope(self):
        assert _read_variants(("tenant_id", "branch_id"), None, None) == [{}]
