"""Per-backend SQL rendering.

Repositories write one statement text with ``?`` placeholders and generic
boolean values; each ``Dialect`` turns that into what its backend expects.
Table DDL comes from SQLAlchemy; only additive columns are rendered here.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Sequence

from sqlalchemy import CheckConstraint, Column, Table
from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.sql.functions import FunctionElement

from utils.datetime_utils import to_iso

_TRUE_STRINGS = {"1", "true", "t", "yes", "y", "on"}
_FALSE_STRINGS = {"0", "false", "f", "no", "n", "off", ""}


class BackendKind(str, Enum):
    SQLITE = "sqlite"
    POSTGRES = "postgres"


def to_bool(value: Any, default: bool = False) -> bool:
    """Coerce a stored or client boolean (1/0, "true"/"false", bool) to ``bool``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return bool(value)


def bind_placeholders(sql: str) -> tuple[str, int]:
    """Rewrite positional ``?`` markers to named ``:pN`` binds, skipping quoted literals."""
    pieces: list[str] = []
    count = 0
    in_literal = False
    for char in sql:
        if char == "'":
            in_literal = not in_literal
        elif char == "?" and not in_literal:
            count += 1
            pieces.append(f":p{count}")
            continue
        pieces.append(char)
    return "".join(pieces), count


class Dialect:
    kind: BackendKind
    supports_table_rebuild = False
    insert_returning = False

    # ---- statements ----

    def compile(self, sql: str, params: Sequence[Any] = (), *, returning: bool = False) -> tuple[str, dict[str, Any]]:
        statement, count = bind_placeholders(sql)
        if count != len(params):
            raise ValueError(f"Statement expects {count} parameters, got {len(params)}")
        bound = {f"p{index}": self.bind_value(value) for index, value in enumerate(params, start=1)}
        if returning and self.insert_returning and _is_insert(statement):
            statement = f"{statement.rstrip().rstrip(';')} RETURNING id"
        return statement, bound

    def bind_value(self, value: Any) -> Any:
        return value

    def db_bool(self, value: Any) -> Any:
        raise NotImplementedError


class SQLiteDialect(Dialect):
    kind = BackendKind.SQLITE
    supports_table_rebuild = True

    def db_bool(self, value: Any) -> int:
        return 1 if to_bool(value) else 0

    def bind_value(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (datetime, date)):
            return to_iso(value)
        return value


class PostgresDialect(Dialect):
    kind = BackendKind.POSTGRES
    insert_returning = True

    def db_bool(self, value: Any) -> bool:
        return to_bool(value)


def dialect_for(kind: BackendKind) -> Dialect:
    if kind is BackendKind.POSTGRES:
        return PostgresDialect()
    return SQLiteDialect()


def _is_insert(statement: str) -> bool:
    normalized = statement.lstrip().upper()
    return normalized.startswith("INSERT") and " RETURNING " not in f" {normalized} "


def add_column_sql(table: Table, column: Column, sa_dialect: SADialect) -> str:
    """Render ``ALTER TABLE ... ADD COLUMN`` for a table that already holds rows.

    Key and NOT NULL constraints are left out; SQLite only accepts constant
    defaults in this statement, so function defaults are dropped there.
    """
    preparer = sa_dialect.identifier_preparer
    parts = [preparer.format_column(column), column.type.compile(dialect=sa_dialect)]
    default = column.server_default
    if default is not None:
        constant = not isinstance(default.arg, FunctionElement)
        if constant or sa_dialect.name != "sqlite":
            parts.append(f"DEFAULT {default.arg.compile(dialect=sa_dialect)}")
    for constraint in column.constraints:
        if isinstance(constraint, CheckConstraint):
            parts.append(f"CHECK ({constraint.sqltext})")
    return f"ALTER TABLE {preparer.format_table(table)} ADD COLUMN {' '.join(parts)}"
