"""
How incoming realtime events and local optimistic writes combine.

LastWriterWins has no versioning: whichever change is applied last
overwrites, so a remote echo of an older write can clobber a newer local
edit. That lost-update race is accepted. A stricter policy (e.g. compare a
revision column before replacing) can be passed to OrderService instead.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from order_desk.connectors.realtime import DELETE, INSERT, UPDATE, ChangeEvent

Row = Dict[str, Any]


class ItemMergePolicy(ABC):

    @abstractmethod
    def apply_event(self, items: List[Row], event: ChangeEvent) -> List[Row]:
        """Return the item list after applying a realtime event"""

    @abstractmethod
    def apply_local(self, items: List[Row], row: Row) -> List[Row]:
        """Return the item list after a locally originated row change"""


class LastWriterWins(ItemMergePolicy):

    def apply_event(self, items: List[Row], event: ChangeEvent) -> List[Row]:
        row = event.row
        if not row or row.get("id") is None:
            return items
        if event.type == INSERT:
            return self.apply_local(items, row)
        if event.type == UPDATE:
            return [dict(row) if r.get("id") == row["id"] else r for r in items]
        if event.type == DELETE:
            return [r for r in items if r.get("id") != row["id"]]
        return items

    def apply_local(self, items: List[Row], row: Row) -> List[Row]:
        if any(r.get("id") == row.get("id") for r in items):
            return [dict(row) if r.get("id") == row.get("id") else r for r in items]
        return items + [dict(row)]
