"""
Realtime fan-out and last-writer-wins merging between two open sessions
of the same order.
"""
import asyncio

import pytest

from order_desk.connectors.realtime import DELETE, INSERT, UPDATE, ChangeEvent, RealtimeHub
from order_desk.services.merge_policy import LastWriterWins
from order_desk.services.order_service import OrderService


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


@pytest.fixture
def sessions(store, schema, hub, settings):
    def open_session():
        service = OrderService(store, "p1", tenant_id="t1", branch_id="b1",
                               schema=schema, hub=hub, settings=settings)
        _run(service.load())
        return service

    first = open_session()
    second = open_session()
    yield first, second
    first.close()
    second.close()


# ────────────────────────────────────────────
# HUB
# ────────────────────────────────────────────


class TestRealtimeHub:

    def test_filters_by_table_and_column(self):
        hub = RealtimeHub()
        seen = []
        _run(hub.subscribe("order_items", "order_id", "o1", seen.append))

        hub.publish(ChangeEvent("order_items", INSERT, new={"id": 1, "order_id": "o1"}))
        hub.publish(ChangeEvent("order_items", INSERT, new={"id": 2, "order_id": "o2"}))
        hub.publish(ChangeEvent("orders", UPDATE, new={"id": "o1", "order_id": "o1"}))
        assert [e.new["id"] for e in seen] == [1]

    def test_delete_matches_on_old_row(self):
        hub = RealtimeHub()
        seen = []
        _run(hub.subscribe("order_items", "order_id", "o1", seen.append))
        hub.publish_rows("order_items", DELETE, [{"id": 1, "order_id": "o1"}])
        assert seen[0].type == DELETE
        assert seen[0].row["id"] == 1

    def test_closed_subscription_stops_delivery(self):
        hub = RealtimeHub()
        seen = []
        sub = _run(hub.subscribe("order_items", "order_id", "o1", seen.append))
        sub.close()
        hub.publish(ChangeEvent("order_items", INSERT, new={"id": 1, "order_id": "o1"}))
        assert seen == []
        assert sub.closed
        assert hub.subscriber_count == 0

    def test_failing_callback_does_not_block_others(self):
        hub = RealtimeHub()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        _run(hub.subscribe("order_items", "order_id", "o1", broken))
        _run(hub.subscribe("order_items", "order_id", "o1", seen.append))
        delivered = hub.publish(ChangeEvent("order_items", INSERT, new={"id": 1, "order_id": "o1"}))
        assert delivered == 1
        assert len(seen) == 1


# ────────────────────────────────────────────
# MERGE POLICY
# ────────────────────────────────────────────


class TestLastWriterWins:

    policy = LastWriterWins()

    def test_insert_is_idempotent(self):
        items = [{"id": 1, "qty": 1}]
        merged = self.policy.apply_event(items, ChangeEvent("t", INSERT, new={"id": 1, "qty": 2}))
        assert merged == [{"id": 1, "qty": 2}]

    def test_update_of_unknown_row_ignored(self):
        items = [{"id": 1, "qty": 1}]
        assert self.policy.apply_event(items, ChangeEvent("t", UPDATE, new={"id": 9, "qty": 2})) == items

    def test_delete(self):
        items = [{"id": 1}, {"id": 2}]
        assert self.policy.apply_event(items, ChangeEvent("t", DELETE, old={"id": 1})) == [{"id": 2}]


# ────────────────────────────────────────────
# TWO SESSIONS
# ────────────────────────────────────────────


class TestTwoSessions:

    def test_same_order_for_both(self, sessions):
        first, second = sessions
        assert first.order["id"] == second.order["id"]

    def test_insert_update_delete_propagate(self, sessions):
        first, second = sessions
        row = _run(first.add_item("Milk"))
        assert [r["id"] for r in second.items] == [row["id"]]

        _run(first.update_qty(row["id"], 7))
        assert second.get_item(row["id"])["qty"] == 7

        _run(first.remove_item(row["id"]))
        assert second.items == []

    def test_last_write_wins(self, sessions):
        first, second = sessions
        row = _run(first.add_item("Milk"))
        _run(first.update_qty(row["id"], 5))
        _run(second.update_qty(row["id"], 9))
        assert first.get_item(row["id"])["qty"] == 9
        assert second.get_item(row["id"])["qty"] == 9

    def test_own_echo_is_harmless(self, sessions):
        first, _ = sessions
        _run(first.add_item("Milk"))
        _run(first.add_item("Bread"))
        assert sorted(r["product_name"] for r in first.items) == ["Bread", "Milk"]

    def test_listeners_notified(self, sessions):
        first, second = sessions
        events = []
        second.add_listener(events.append)
        _run(first.add_item("Milk"))
        assert [e.type for e in events] == [INSERT]
