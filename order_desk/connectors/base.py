"""
Remote Store Contract

Every storage backend the order engine talks to implements this class. It is
a thin, table-agnostic row API: equality/inequality/membership filters,
ordering and limits on select, and upsert on a conflict key. Implementations
raise MissingRelationError / MissingColumnError for schema drift so that the
schema resolver can recover, and StoreError for everything else.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

Row = Dict[str, Any]
Filters = Optional[Dict[str, Any]]


class RemoteStore(ABC):
    """Async row store used by the order services"""

    @abstractmethod
    async def select(
        self,
        table: str,
        eq: Filters = None,
        *,
        neq: Filters = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """
        Read rows

        Args:
            table: Table name
            eq: column -> value equality filters (None matches IS NULL)
            neq: column -> value inequality filters
            in_: column -> allowed values
            order_by: Column to sort on
            descending: Sort direction
            limit: Maximum number of rows

        Returns:
            List of row dicts
        """
        pass

    @abstractmethod
    async def insert(self, table: str, rows: Sequence[Row]) -> List[Row]:
        """Insert rows; returns them as stored (with generated ids)"""
        pass

    @abstractmethod
    async def update(
        self,
        table: str,
        values: Row,
        eq: Filters = None,
        *,
        neq: Filters = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
    ) -> List[Row]:
        """Update matching rows; returns the rows after the update"""
        pass

    @abstractmethod
    async def delete(
        self,
        table: str,
        eq: Filters = None,
        *,
        neq: Filters = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
    ) -> List[Row]:
        """Delete matching rows; returns the deleted rows"""
        pass

    @abstractmethod
    async def upsert(self, table: str, row: Row, conflict_keys: Sequence[str]) -> Row:
        """Insert, or update the row matching every conflict key"""
        pass

    async def select_one(self, table: str, eq: Filters = None, **kwargs) -> Optional[Row]:
        rows = await self.select(table, eq, limit=1, **kwargs)
        return rows[0] if rows else None
