"""
In-process realtime change feed

A subscription is "rows in table X where column = value". The store publishes
one ChangeEvent per affected row after each committed write; events reach
every matching subscriber synchronously, in publish order. Subscribers that
live on another transport (the /ws endpoint) bridge through an asyncio.Queue.
"""
import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from order_desk.utils.logger import log

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

Row = Dict[str, Any]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: str
    new: Optional[Row] = None
    old: Optional[Row] = None

    @property
    def row(self) -> Optional[Row]:
        """Row the event is about (old row for deletes)"""
        return self.new if self.new is not None else self.old

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "type": self.type, "new": self.new, "old": self.old}


class Subscription:
    """Handle returned by RealtimeHub.subscribe"""

    def __init__(self, hub: "RealtimeHub", sub_id: int, table: str, column: str, value: Any,
                 callback: Callable[[ChangeEvent], None]):
        self.hub = hub
        self.id = sub_id
        self.table = table
        self.column = column
        self.value = value
        self.callback = callback

    @property
    def closed(self) -> bool:
        return self.id not in self.hub._subscriptions

    def matches(self, event: ChangeEvent) -> bool:
        row = event.row or {}
        return event.table == self.table and row.get(self.column) == self.value

    def close(self) -> None:
        self.hub._subscriptions.pop(self.id, None)


class RealtimeHub:
    """Fan-out of row change events to filtered subscribers"""

    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    async def subscribe(
        self,
        table: str,
        column: str,
        value: Any,
        callback: Callable[[ChangeEvent], None],
    ) -> Subscription:
        # handshake; callers may interleave other work here
        await asyncio.sleep(0)
        sub = Subscription(self, next(self._ids), table, column, value, callback)
        self._subscriptions[sub.id] = sub
        log.debug(f"Realtime subscribe #{sub.id}: {table}.{column}={value}")
        return sub

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event; returns the number of subscribers reached"""
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if not sub.matches(event):
                continue
            try:
                sub.callback(event)
                delivered += 1
            except Exception as e:
                log.error(f"Realtime subscriber #{sub.id} failed on {event.type} {event.table}: {e}")
        return delivered

    def publish_rows(self, table: str, change_type: str, rows: List[Row],
                     old_rows: Optional[List[Row]] = None) -> None:
        for index, row in enumerate(rows):
            old = old_rows[index] if old_rows else None
            if change_type == DELETE:
                self.publish(ChangeEvent(table=table, type=DELETE, old=row))
            else:
                self.publish(ChangeEvent(table=table, type=change_type, new=row, old=old))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
