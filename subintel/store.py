"""Generic row-store API over the relational tables.

The import pipeline and the agent only ever talk to tables through
:class:`RowStore`: select with equality or operator filters
(``{"year": {"gte": 2025}}``), range-paged reads, keyed
upserts, and plain insert/update/delete.  Rows go in and come out as plain
dicts so callers never hold ORM state across awaits.
"""
from __future__ import annotations

import logging
import operator
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Generator, Iterable

from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subintel.db import get_session
from subintel.models import Base

log = logging.getLogger(__name__)

PAGE_SIZE = 1000

_COMPARISONS = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}
FILTER_OPS = (*_COMPARISONS, "like", "ilike", "in")


class StoreError(Exception):
    """A store call failed; ``table`` names the table involved."""

    def __init__(self, table: str, message: str):
        super().__init__(f"{table}: {message}")
        self.table = table
        self.message = message


class RowStore:
    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._session_factory = session_factory or get_session

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def table(name: str) -> Table:
        tbl = Base.metadata.tables.get(name)
        if tbl is None:
            raise StoreError(name, "unknown table")
        return tbl

    @contextmanager
    def _session(self, table: str) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(table, str(exc).splitlines()[0]) from exc
        finally:
            session.close()

    @staticmethod
    def _check_columns(tbl: Table, names: Iterable[str]) -> None:
        unknown = [n for n in names if n not in tbl.c]
        if unknown:
            raise StoreError(tbl.name, f"unknown column(s): {', '.join(sorted(unknown))}")

    def _where(self, stmt, tbl: Table, filters: dict[str, Any] | None):
        if not filters:
            return stmt
        self._check_columns(tbl, filters)
        for name, value in filters.items():
            col = tbl.c[name]
            if isinstance(value, dict):
                for op, operand in value.items():
                    stmt = stmt.where(self._condition(tbl, col, op, operand))
            elif isinstance(value, (list, tuple, set)):
                stmt = stmt.where(col.in_(list(value)))
            elif value is None:
                stmt = stmt.where(col.is_(None))
            else:
                stmt = stmt.where(col == value)
        return stmt

    @staticmethod
    def _condition(tbl: Table, col, op: str, operand: Any):
        """One ``{op: operand}`` filter; ``*`` in like patterns is a wildcard."""
        if op in ("eq", "neq") and operand is None:
            return col.is_(None) if op == "eq" else col.is_not(None)
        if op in _COMPARISONS:
            return _COMPARISONS[op](col, operand)
        if op in ("like", "ilike"):
            pattern = str(operand).replace("*", "%")
            return col.like(pattern) if op == "like" else col.ilike(pattern)
        if op == "in":
            values = operand if isinstance(operand, (list, tuple, set)) else [operand]
            return col.in_(list(values))
        raise StoreError(tbl.name, f"unknown filter operator: {op}")

    @staticmethod
    def _upsert_insert(session: Session, tbl: Table):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(tbl)
        if dialect == "sqlite":
            return sqlite.insert(tbl)
        raise StoreError(tbl.name, f"upsert not supported on {dialect}")

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def select(
        self,
        table: str,
        columns: Iterable[str] | None = None,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        tbl = self.table(table)
        cols = list(columns or [])
        self._check_columns(tbl, cols)
        stmt = select(*[tbl.c[c] for c in cols]) if cols else select(tbl)
        stmt = self._where(stmt, tbl, filters)
        if order_by:
            self._check_columns(tbl, [order_by])
            col = tbl.c[order_by]
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        # Stable ordering so range pages never overlap
        stmt = stmt.order_by(tbl.c.id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session(table) as session:
            return [dict(row._mapping) for row in session.execute(stmt)]

    def select_all(
        self,
        table: str,
        columns: Iterable[str] | None = None,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        max_rows: int | None = None,
    ) -> list[dict[str, Any]]:
        """Read every matching row, one ``PAGE_SIZE`` range at a time."""
        cols = list(columns or [])
        rows: list[dict[str, Any]] = []
        offset = 0
        while True:
            page_size = PAGE_SIZE
            if max_rows is not None:
                page_size = min(page_size, max_rows - len(rows))
                if page_size <= 0:
                    break
            page = self.select(
                table, cols, filters=filters, order_by=order_by,
                descending=descending, offset=offset, limit=page_size,
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return rows

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def upsert(
        self, table: str, rows: list[dict[str, Any]], conflict_columns: list[str],
    ) -> list[str]:
        """Insert rows, updating existing rows that share ``conflict_columns``.

        On conflict a column only changes when the incoming value is not null,
        so a stored value survives a row that leaves the field empty.
        Returns the ids of the written rows.
        """
        if not rows:
            return []
        tbl = self.table(table)
        self._check_columns(tbl, conflict_columns)
        keys = sorted({k for row in rows for k in row})
        self._check_columns(tbl, keys)
        if "id" in tbl.c and "id" not in keys:
            keys.append("id")
        payload = []
        for row in rows:
            values = {k: row.get(k) for k in keys}
            if values.get("id") is None:
                values["id"] = str(uuid.uuid4())
            payload.append(values)

        with self._session(table) as session:
            stmt = self._upsert_insert(session, tbl).values(payload)
            set_ = {
                k: func.coalesce(stmt.excluded[k], tbl.c[k])
                for k in keys
                if k not in conflict_columns and k not in ("id", "created_at")
            }
            if "updated_at" in tbl.c and "updated_at" not in keys:
                set_["updated_at"] = func.now()
            if set_:
                stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=set_)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
            result = session.execute(stmt.returning(tbl.c.id))
            return [r[0] for r in result]

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        tbl = self.table(table)
        self._check_columns(tbl, row)
        values = dict(row)
        if "id" in tbl.c and values.get("id") is None:
            values["id"] = str(uuid.uuid4())
        with self._session(table) as session:
            session.execute(insert(tbl).values(values))
        return values

    def update(self, table: str, values: dict[str, Any], filters: dict[str, Any]) -> int:
        tbl = self.table(table)
        self._check_columns(tbl, values)
        if not filters:
            raise StoreError(table, "update without filters")
        stmt = self._where(update(tbl), tbl, filters).values(**values)
        with self._session(table) as session:
            return session.execute(stmt).rowcount

    def delete(self, table: str, filters: dict[str, Any]) -> int:
        tbl = self.table(table)
        if not filters:
            raise StoreError(table, "delete without filters")
        stmt = self._where(delete(tbl), tbl, filters)
        with self._session(table) as session:
            return session.execute(stmt).rowcount

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        tbl = self.table(table)
        stmt = self._where(select(func.count()).select_from(tbl), tbl, filters)
        with self._session(table) as session:
            return int(session.execute(stmt).scalar() or 0)
