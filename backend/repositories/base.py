from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import Boolean, DateTime, Float, Table
from sqlalchemy.exc import IntegrityError

from db.database import BackendHandle, TransactionHandle
from db.dialect import to_bool
from db.errors import RecordValidationError
from utils.datetime_utils import to_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def integrity_errors(entity: str) -> Iterator[None]:
    """Surface unique/foreign-key/range violations as RecordValidationError."""
    try:
        yield
    except IntegrityError as exc:
        detail = str(exc.orig) if exc.orig is not None else str(exc)
        raise RecordValidationError(f"{entity} violates a constraint: {detail}") from exc


class Repository:
    table: Table
    entity = "record"

    def __init__(self, db: BackendHandle):
        self.db = db

    # ---- row mapping ----

    def to_record(self, row: dict[str, Any] | None) -> dict[str, Any] | None:
        """Normalize a stored row: native booleans, ISO timestamps, plain floats."""
        if row is None:
            return None
        record = dict(row)
        for column in self.table.columns:
            if column.name not in record:
                continue
            value = record[column.name]
            if isinstance(column.type, Boolean):
                default = column.default.arg if column.default is not None else False
                record[column.name] = to_bool(value, default=bool(default))
            elif isinstance(column.type, DateTime):
                record[column.name] = to_iso(value)
            elif isinstance(column.type, Float) and value is not None:
                record[column.name] = float(value)
        return record

    # ---- statements ----

    def _insert(self, db, values: dict[str, Any]):
        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        return db.run(
            f"INSERT INTO {self.table.name} ({', '.join(columns)}) VALUES ({placeholders})",
            [values[name] for name in columns],
        )

    def _update(self, db, record_id: str, values: dict[str, Any]):
        assignments = ", ".join(f"{name} = ?" for name in values)
        return db.run(
            f"UPDATE {self.table.name} SET {assignments} WHERE id = ?",
            [*values.values(), record_id],
        )

    def _fetch(self, db, record_id: str) -> dict[str, Any] | None:
        return self.to_record(db.get(f"SELECT * FROM {self.table.name} WHERE id = ?", [record_id]))

    # ---- shared operations ----

    def find_by_id(self, record_id: str) -> dict[str, Any] | None:
        return self._fetch(self.db, record_id)

    def delete(self, record_id: str) -> bool:
        result = self.db.run(f"DELETE FROM {self.table.name} WHERE id = ?", [record_id])
        return result.changes > 0

    def _upsert(self, write: Callable[[TransactionHandle], T]) -> T:
        """Run a lookup-then-write in one transaction, retrying once on a lost insert race.

        Another writer can commit the same id or natural key between the
        lookup and the insert. The second attempt sees the committed row and
        takes the update path; a genuine violation fails again and is raised.
        """
        try:
            with self.db.transaction() as tx:
                return write(tx)
        except IntegrityError as exc:
            logger.debug("%s write hit a constraint, retrying once: %s", self.entity, exc.orig)
        with integrity_errors(self.entity), self.db.transaction() as tx:
            return write(tx)


class OwnedRepository(Repository):
    """Records that belong to one user through a ``user_id`` column."""

    def count_by_user_id(self, user_id: str) -> int:
        row = self.db.get(f"SELECT COUNT(*) AS count FROM {self.table.name} WHERE user_id = ?", [user_id])
        return int(row["count"]) if row else 0

    def _find_by_user_id(
        self,
        user_id: str,
        *,
        date_column: str | None = "timestamp",
        order_by: str = "timestamp DESC",
        start_date=None,
        end_date=None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if date_column and start_date is not None:
            clauses.append(f"{date_column} >= ?")
            params.append(to_iso(start_date))
        if date_column and end_date is not None:
            clauses.append(f"{date_column} <= ?")
            params.append(to_iso(end_date))
        sql = f"SELECT * FROM {self.table.name} WHERE {' AND '.join(clauses)} ORDER BY {order_by}"
        # OFFSET only applies together with LIMIT.
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
            if offset:
                sql += " OFFSET ?"
                params.append(int(offset))
        return [self.to_record(row) for row in self.db.all(sql, params)]
