import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Sequence

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Connection, Engine, URL, make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import ExecutableDDLElement

from db.dialect import BackendKind, Dialect, PostgresDialect, SQLiteDialect

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    changes: int
    last_insert_id: Any = None


@dataclass
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    changes: int = 0


class _StatementRunner:
    """Statement helpers shared by engine-level handles and open transactions."""

    dialect: Dialect

    def _connection(self, *, write: bool = False):
        raise NotImplementedError

    @property
    def kind(self) -> BackendKind:
        return self.dialect.kind

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        statement, bound = self.dialect.compile(sql, params)
        with self._connection() as conn:
            result = conn.execute(text(statement), bound)
            if result.returns_rows:
                return QueryResult(rows=[dict(row) for row in result.mappings()])
            return QueryResult(changes=max(result.rowcount, 0))

    def get(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.query(sql, params).rows
        return rows[0] if rows else None

    def all(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self.query(sql, params).rows

    def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        statement, bound = self.dialect.compile(sql, params, returning=True)
        with self._connection(write=True) as conn:
            result = conn.execute(text(statement), bound)
            changes = result.rowcount
            if result.returns_rows:
                row = result.first()
                last_id = row[0] if row is not None else None
                if changes is None or changes < 0:
                    changes = 1 if row is not None else 0
                return RunResult(changes=changes, last_insert_id=last_id)
            return RunResult(changes=max(changes or 0, 0), last_insert_id=result.lastrowid)

    def exec(self, sql: str) -> None:
        with self._connection(write=True) as conn:
            conn.exec_driver_sql(sql)

    def ddl(self, element: ExecutableDDLElement) -> None:
        """Execute a SQLAlchemy DDL construct, compiled for this backend."""
        with self._connection(write=True) as conn:
            conn.execute(element)

    def table_columns(self, table: str) -> set[str]:
        with self._connection() as conn:
            inspector = inspect(conn)
            if not inspector.has_table(table):
                return set()
            return {col["name"] for col in inspector.get_columns(table)}

    def table_exists(self, table: str) -> bool:
        with self._connection() as conn:
            return inspect(conn).has_table(table)

    def count(self, table: str) -> int:
        row = self.get(f"SELECT COUNT(*) AS count FROM {table}")
        return int(row["count"]) if row else 0


class TransactionHandle(_StatementRunner):
    """A handle pinned to one open transaction; nested transaction() calls reuse it."""

    def __init__(self, backend: "BackendHandle", conn: Connection):
        self.backend = backend
        self.dialect = backend.dialect
        self.conn = conn

    @contextmanager
    def _connection(self, *, write: bool = False) -> Iterator[Connection]:
        _ = write
        yield self.conn

    @contextmanager
    def transaction(self, *, write: bool = True) -> Iterator["TransactionHandle"]:
        _ = write
        yield self

    @contextmanager
    def savepoint(self) -> Iterator["TransactionHandle"]:
        with self.conn.begin_nested():
            yield self


class BackendHandle(_StatementRunner, ABC):
    """An open, schema-ready connection pool for one backend."""

    def __init__(self, engine: Engine, dialect: Dialect, slow_query_ms: int = 500):
        self.engine = engine
        self.dialect = dialect
        self.slow_query_ms = slow_query_ms
        event.listen(engine, "before_cursor_execute", _before_cursor_execute)
        event.listen(engine, "after_cursor_execute", self._after_cursor_execute)

    @property
    @abstractmethod
    def description(self) -> str:
        """Human readable location used in logs (never includes credentials)."""

    @contextmanager
    def _connection(self, *, write: bool = False) -> Iterator[Connection]:
        with self.engine.connect() as conn:
            if write:
                self._prepare_write(conn)
            with conn.begin():
                yield conn

    def _prepare_write(self, conn: Connection) -> None:
        """Hook run before a transaction that will write is opened."""

    @contextmanager
    def transaction(self, *, write: bool = True) -> Iterator[TransactionHandle]:
        """Run a block atomically: commit on success, roll back on any exception."""
        with self._connection(write=write) as conn:
            yield TransactionHandle(self, conn)

    @contextmanager
    def savepoint(self) -> Iterator[TransactionHandle]:
        with self.transaction() as tx:
            yield tx

    @contextmanager
    def foreign_keys_disabled(self) -> Iterator[TransactionHandle]:
        with self.transaction() as tx:
            yield tx

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Closed %s database at %s", self.kind.value, self.description)

    def _after_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        _ = cursor
        _ = parameters
        _ = context
        _ = executemany
        start_stack = conn.info.get("_query_start_time")
        if not start_stack:
            return
        started = start_stack.pop()
        duration_ms = max((time.perf_counter() - started) * 1000.0, 0.0)
        if self.slow_query_ms and duration_ms >= self.slow_query_ms:
            logger.warning("Slow %s query (%.1f ms): %s", self.kind.value, duration_ms, " ".join(statement.split()))


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    _ = cursor
    _ = statement
    _ = parameters
    _ = context
    _ = executemany
    conn.info.setdefault("_query_start_time", []).append(time.perf_counter())


class SQLiteBackend(BackendHandle):
    """Embedded file database.

    Writers serialize on SQLite's single write lock: write transactions open
    with ``BEGIN IMMEDIATE`` and wait up to ``busy_timeout`` seconds for it.
    ``read_only`` opens an existing file without touching it (no WAL switch,
    no schema work), as used for a migration source.
    """

    def __init__(
        self,
        path: str | Path,
        slow_query_ms: int = 500,
        *,
        busy_timeout: float = 30.0,
        read_only: bool = False,
    ):
        self.path = str(path)
        self.read_only = read_only
        in_memory = self.path == ":memory:"
        engine_kwargs: dict[str, Any] = {
            "connect_args": {"check_same_thread": False, "timeout": busy_timeout},
            "echo": False,
        }
        if in_memory:
            engine_kwargs["poolclass"] = StaticPool
        if read_only:
            url = URL.create(
                "sqlite",
                database=Path(self.path).resolve().as_uri(),
                query={"mode": "ro", "uri": "true"},
            )
        else:
            if not in_memory:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.path}"
        engine = create_engine(url, **engine_kwargs)
        if not read_only:
            self._install_pragmas(engine)
        super().__init__(engine, SQLiteDialect(), slow_query_ms)

    @staticmethod
    def _install_pragmas(engine: Engine) -> None:
        # Driver autocommit; SQLAlchemy emits BEGIN itself so SAVEPOINT works.
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            _ = connection_record
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def do_begin(conn):
            mode = conn.get_execution_options().get("begin_mode")
            conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")

    def _prepare_write(self, conn: Connection) -> None:
        # Take the write lock up front; a deferred transaction that read first
        # cannot wait for it and fails with "database is locked".
        conn.execution_options(begin_mode="IMMEDIATE")

    @property
    def description(self) -> str:
        return self.path

    @contextmanager
    def foreign_keys_disabled(self) -> Iterator[TransactionHandle]:
        """Open a transaction with FK enforcement off, for table rebuilds."""
        with self.engine.connect() as conn:
            raw = conn.connection.dbapi_connection
            raw.execute("PRAGMA foreign_keys=OFF")
            self._prepare_write(conn)
            try:
                with conn.begin():
                    yield TransactionHandle(self, conn)
            finally:
                raw.execute("PRAGMA foreign_keys=ON")


class PostgresBackend(BackendHandle):
    def __init__(
        self,
        url: str | URL,
        *,
        connect_timeout: int = 5,
        pool_size: int = 20,
        max_overflow: int = 10,
        pool_recycle: int = 1800,
        slow_query_ms: int = 500,
    ):
        self.url = make_url(url)
        engine = create_engine(
            self.url,
            connect_args={"connect_timeout": connect_timeout},
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
            echo=False,
        )
        super().__init__(engine, PostgresDialect(), slow_query_ms)

    @property
    def description(self) -> str:
        return self.url.render_as_string(hide_password=True)

