import logging
import uuid

from sqlalchemy import Column, Index, MetaData, Table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateIndex, CreateTable

from db.database import BackendHandle
from db.dialect import add_column_sql
from db.models import INDEXES, LEGACY_USER_MARKERS, TABLES, USERS, column_names, index_filter
from utils.datetime_utils import utcnow_iso

logger = logging.getLogger(__name__)


def ensure_schema(db: BackendHandle) -> None:
    """Create or upgrade every table and index in place. Safe to run on every start."""
    legacy_users = _needs_legacy_user_upgrade(db)

    for table in TABLES:
        db.ddl(CreateTable(table, if_not_exists=True))

    if legacy_users:
        if db.dialect.supports_table_rebuild:
            _rebuild_legacy_users(db)
        else:
            _backfill_legacy_users(db)

    for table in TABLES:
        _add_missing_columns(db, table)

    _ensure_indexes(db)
    logger.info("Schema ready on %s database", db.kind.value)


def _needs_legacy_user_upgrade(db: BackendHandle) -> bool:
    columns = db.table_columns(USERS.name)
    if not columns:
        return False
    missing = [name for name in LEGACY_USER_MARKERS if name not in columns]
    if missing:
        logger.info("Users table predates correlation ids (missing %s); upgrading", ", ".join(missing))
    return bool(missing)


def _rebuild_legacy_users(db: BackendHandle) -> None:
    """Recreate ``users`` with the current shape, keeping ids and assigning fresh guids."""
    rows = db.all(f"SELECT * FROM {USERS.name}")
    now = utcnow_iso()
    with db.foreign_keys_disabled() as tx:
        tx.exec(f"DROP TABLE {USERS.name}")
        tx.ddl(CreateTable(USERS))
        for row in rows:
            record = {name: row[name] for name in column_names(USERS) if name in row}
            record["id"] = str(record.get("id") or uuid.uuid4())
            record["guid"] = record.get("guid") or str(uuid.uuid4())
            record["created_at"] = record.get("created_at") or now
            record["updated_at"] = record.get("updated_at") or now
            if "is_admin" in record:
                record["is_admin"] = tx.dialect.db_bool(record["is_admin"])
            columns = list(record)
            placeholders = ", ".join("?" for _ in columns)
            tx.run(
                f"INSERT INTO {USERS.name} ({', '.join(columns)}) VALUES ({placeholders})",
                [record[name] for name in columns],
            )
    logger.info("Rebuilt legacy users table (%d rows preserved)", len(rows))


def _backfill_legacy_users(db: BackendHandle) -> None:
    """Additive variant for backends without table rebuilds.

    Adds the missing columns, fills a guid for every row, then tightens
    ``guid`` to NOT NULL. Uniqueness comes from ``idx_users_guid``, created
    with the other indexes.
    """
    _add_missing_columns(db, USERS)
    rows = db.all(f"SELECT id FROM {USERS.name} WHERE guid IS NULL")
    with db.transaction() as tx:
        for row in rows:
            tx.run(f"UPDATE {USERS.name} SET guid = ? WHERE id = ?", [str(uuid.uuid4()), row["id"]])
    logger.info("Assigned correlation ids to %d legacy users", len(rows))
    try:
        db.exec(f"ALTER TABLE {USERS.name} ALTER COLUMN guid SET NOT NULL")
    except SQLAlchemyError as exc:
        logger.warning("Could not make %s.guid NOT NULL: %s", USERS.name, exc)


def _add_missing_columns(db: BackendHandle, table: Table) -> None:
    live = db.table_columns(table.name)
    if not live:
        return
    for column in table.columns:
        if column.name in live:
            continue
        try:
            db.exec(add_column_sql(table, column, db.engine.dialect))
            logger.info("Added column %s.%s", table.name, column.name)
        except SQLAlchemyError as exc:
            logger.warning("Could not add column %s.%s: %s", table.name, column.name, exc)


def without_filter(index: Index) -> Index:
    """A copy of a partial index that covers every row."""
    shadow = Table(index.table.name, MetaData(), *(Column(col.name, col.type) for col in index.columns))
    return Index(index.name, *(shadow.c[col.name] for col in index.columns), unique=index.unique)


def _ensure_indexes(db: BackendHandle) -> None:
    for index in INDEXES:
        try:
            db.ddl(CreateIndex(index, if_not_exists=True))
            continue
        except SQLAlchemyError as exc:
            if index_filter(index) is None:
                logger.warning("Could not create index %s: %s", index.name, exc)
                continue
            logger.warning("Partial index %s not supported, retrying without filter: %s", index.name, exc)
        try:
            db.ddl(CreateIndex(without_filter(index), if_not_exists=True))
        except SQLAlchemyError as exc:
            logger.warning("Could not create index %s: %s", index.name, exc)
