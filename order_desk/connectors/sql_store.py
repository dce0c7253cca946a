"""
SQLAlchemy implementation of the remote store

Tables are reflected lazily by name, so the store works against whatever
schema the deployment actually has: the canonical ORM tables, renamed tables,
or older tables missing the tenant/branch columns. Schema drift is reported
with the same error codes a hosted Postgres would use.
"""
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import MetaData, Table, select
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from order_desk.connectors.base import Filters, RemoteStore, Row
from order_desk.connectors.realtime import DELETE, INSERT, UPDATE, RealtimeHub
from order_desk.models.base import SessionLocal
from order_desk.services.errors import MissingColumnError, MissingRelationError, StoreError
from order_desk.utils.logger import log

_MISSING_TABLE_PATTERNS = [
    re.compile(r"no such table: (\S+)"),
    re.compile(r'relation "([^"]+)" does not exist'),
]
_MISSING_COLUMN_PATTERNS = [
    re.compile(r"no such column: (\S+)"),
    re.compile(r"has no column named (\S+)"),
    re.compile(r'column "([^"]+)"(?: of relation "[^"]+")? does not exist'),
]


class SqlStore(RemoteStore):
    """
    Row store over a SQLAlchemy session factory.

    Args:
        session_factory: sessionmaker bound to the target database
        hub: Optional realtime hub; committed writes are published to it
    """

    def __init__(self, session_factory=SessionLocal, hub: Optional[RealtimeHub] = None):
        self.session_factory = session_factory
        self.hub = hub
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}

    # ── reflection ───────────────────────────────────────────────

    def _table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table
        session = self.session_factory()
        try:
            table = Table(name, self._metadata, autoload_with=session.get_bind())
        except NoSuchTableError:
            raise MissingRelationError(name)
        finally:
            session.close()
        self._tables[name] = table
        return table

    @staticmethod
    def _column(table: Table, name: str):
        try:
            return table.c[name]
        except KeyError:
            raise MissingColumnError(table.name, name)

    def _where(self, table: Table, eq: Filters, neq: Filters,
               in_: Optional[Dict[str, Iterable[Any]]]) -> list:
        clauses = []
        for name, value in (eq or {}).items():
            column = self._column(table, name)
            clauses.append(column.is_(None) if value is None else column == value)
        for name, value in (neq or {}).items():
            column = self._column(table, name)
            clauses.append(column.is_not(None) if value is None else column != value)
        for name, values in (in_ or {}).items():
            clauses.append(self._column(table, name).in_(list(values)))
        return clauses

    def _check_values(self, table: Table, values: Row) -> None:
        for name in values:
            self._column(table, name)

    @staticmethod
    def _translate(exc: SQLAlchemyError, table: str) -> StoreError:
        message = str(getattr(exc, "orig", None) or exc)
        code = getattr(getattr(exc, "orig", None), "pgcode", None)
        if code == "42P01":
            return MissingRelationError(table)
        for pattern in _MISSING_TABLE_PATTERNS:
            match = pattern.search(message)
            if match:
                return MissingRelationError(match.group(1))
        for pattern in _MISSING_COLUMN_PATTERNS:
            match = pattern.search(message)
            if match:
                return MissingColumnError(table, match.group(1).split(".")[-1])
        return StoreError(message, code=code)

    def _prepare_insert(self, table: Table, row: Row, position: int = 0) -> Row:
        """Fill the defaults a hosted store would generate server-side"""
        values = dict(row)
        self._check_values(table, values)
        if "id" in table.c and values.get("id") is None and _is_text(table.c["id"]):
            values["id"] = str(uuid.uuid4())
        if "created_at" in table.c and values.get("created_at") is None:
            values["created_at"] = datetime.utcnow() + timedelta(microseconds=position)
        return values

    @staticmethod
    def _as_row(table: Table, values: Row) -> Row:
        row = {column.name: None for column in table.columns}
        row.update(values)
        return row

    def _publish(self, table: str, change_type: str, rows: List[Row],
                 old_rows: Optional[List[Row]] = None) -> None:
        if self.hub is not None and rows:
            self.hub.publish_rows(table, change_type, rows, old_rows)

    # ── RemoteStore ──────────────────────────────────────────────

    async def select(self, table, eq=None, *, neq=None, in_=None, order_by=None,
                     descending=False, limit=None) -> List[Row]:
        t = self._table(table)
        stmt = select(t).where(*self._where(t, eq, neq, in_))
        if order_by:
            column = self._column(t, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.session_factory() as session:
                return [dict(r) for r in session.execute(stmt).mappings().all()]
        except SQLAlchemyError as e:
            raise self._translate(e, table)

    async def insert(self, table: str, rows: Sequence[Row]) -> List[Row]:
        t = self._table(table)
        prepared = [self._prepare_insert(t, row, i) for i, row in enumerate(rows)]
        stored = []
        try:
            with self.session_factory() as session:
                for values in prepared:
                    result = session.execute(t.insert().values(**values))
                    row = self._as_row(t, values)
                    for column, key in zip(t.primary_key.columns, result.inserted_primary_key or ()):
                        if row.get(column.name) is None:
                            row[column.name] = key
                    stored.append(row)
                session.commit()
        except SQLAlchemyError as e:
            raise self._translate(e, table)
        self._publish(table, INSERT, stored)
        return stored

    async def update(self, table, values, eq=None, *, neq=None, in_=None) -> List[Row]:
        t = self._table(table)
        self._check_values(t, values)
        where = self._where(t, eq, neq, in_)
        try:
            with self.session_factory() as session:
                before = [dict(r) for r in session.execute(select(t).where(*where)).mappings().all()]
                if not before:
                    return []
                session.execute(t.update().where(*where).values(**values))
                session.commit()
        except SQLAlchemyError as e:
            raise self._translate(e, table)
        after = [{**row, **values} for row in before]
        self._publish(table, UPDATE, after, before)
        return after

    async def delete(self, table, eq=None, *, neq=None, in_=None) -> List[Row]:
        t = self._table(table)
        where = self._where(t, eq, neq, in_)
        try:
            with self.session_factory() as session:
                removed = [dict(r) for r in session.execute(select(t).where(*where)).mappings().all()]
                if not removed:
                    return []
                session.execute(t.delete().where(*where))
                session.commit()
        except SQLAlchemyError as e:
            raise self._translate(e, table)
        self._publish(table, DELETE, removed)
        return removed

    async def upsert(self, table: str, row: Row, conflict_keys: Sequence[str]) -> Row:
        t = self._table(table)
        self._check_values(t, row)
        key = {name: row.get(name) for name in conflict_keys}
        where = self._where(t, key, None, None)
        try:
            with self.session_factory() as session:
                existing = session.execute(select(t).where(*where).limit(1)).mappings().first()
                if existing is None:
                    values = self._prepare_insert(t, row)
                    result = session.execute(t.insert().values(**values))
                    stored = self._as_row(t, values)
                    for column, pk in zip(t.primary_key.columns, result.inserted_primary_key or ()):
                        if stored.get(column.name) is None:
                            stored[column.name] = pk
                    change, old = INSERT, None
                else:
                    old = dict(existing)
                    session.execute(t.update().where(*where).values(**row))
                    stored = {**old, **row}
                    change = UPDATE
                session.commit()
        except SQLAlchemyError as e:
            raise self._translate(e, table)
        log.debug(f"Upsert {table} on {list(conflict_keys)}: {change}")
        self._publish(table, change, [stored], [old] if old else None)
        return stored


def _is_text(column) -> bool:
    try:
        return column.type.python_type is str
    except NotImplementedError:
        return False
