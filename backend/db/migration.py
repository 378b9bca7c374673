"""One-time copy of an embedded SQLite file into a freshly selected client/server backend."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy import Table
from sqlalchemy.exc import SQLAlchemyError

from db.database import BackendHandle, SQLiteBackend, TransactionHandle
from db.errors import MigrationError
from db.models import (
    ANALYSIS_RESULTS,
    API_KEYS,
    FOOD_ITEMS,
    MEAL_COMPONENTS,
    MEALS,
    READINGS,
    USERS,
    boolean_columns,
    column_names,
    is_required,
)

logger = logging.getLogger(__name__)

DEFAULT_MIGRATED_SUFFIX = ".migrated"


@dataclass
class TableReport:
    copied: int = 0
    skipped: int = 0
    failed: int = 0
    orphaned: int = 0
    missing: bool = False


@dataclass
class MigrationReport:
    source_path: str
    archived_path: str | None = None
    tables: dict[str, TableReport] = field(default_factory=dict)

    @property
    def copied(self) -> int:
        return sum(report.copied for report in self.tables.values())

    @property
    def failed(self) -> int:
        return sum(report.failed for report in self.tables.values())


def migrate_if_needed(
    source_path: str | Path,
    target: BackendHandle,
    *,
    migrated_suffix: str = DEFAULT_MIGRATED_SUFFIX,
) -> MigrationReport | None:
    """Copy all rows from ``source_path`` into ``target`` unless the target already has users.

    Returns None when there was nothing to do. Row-level failures are logged and
    counted; failures of the copy as a whole roll back and raise MigrationError,
    leaving the source file untouched.
    """
    path = Path(source_path)
    if not path.exists():
        logger.info("No embedded database at %s; nothing to migrate", path)
        return None

    existing_users = target.count(USERS.name)
    if existing_users > 0:
        logger.info("Target %s database already has %d users; skipping migration", target.kind.value, existing_users)
        return None

    logger.info("Migrating embedded database %s into %s", path, target.description)
    report = MigrationReport(source_path=str(path))
    source = SQLiteBackend(path, read_only=True)
    try:
        with target.transaction() as tx:
            _copy_all(source, tx, report)
    except MigrationError as exc:
        logger.error("Migration from %s aborted and was rolled back: %s", path, exc)
        raise
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Migration from %s failed and was rolled back: %s", path, exc)
        raise MigrationError(f"Migration from {path} failed: {exc}") from exc
    finally:
        source.close()

    archived = path.with_name(path.name + migrated_suffix)
    path.rename(archived)
    report.archived_path = str(archived)
    for name, table_report in report.tables.items():
        logger.info(
            "Migrated %s: %d copied, %d already present, %d failed, %d orphaned",
            name,
            table_report.copied,
            table_report.skipped,
            table_report.failed,
            table_report.orphaned,
        )
    logger.info("Embedded database archived as %s", archived)
    return report


def _copy_all(source: SQLiteBackend, tx: TransactionHandle, report: MigrationReport) -> None:
    report.tables[USERS.name] = _copy_table(source, tx, USERS)
    report.tables[READINGS.name] = _copy_table(source, tx, READINGS)

    meal_ids: dict[Any, str] = {}
    report.tables[MEALS.name] = _copy_table(source, tx, MEALS, id_map=meal_ids)
    report.tables[MEAL_COMPONENTS.name] = _copy_table(
        source,
        tx,
        MEAL_COMPONENTS,
        remap=("meal_id", meal_ids),
    )

    report.tables[FOOD_ITEMS.name] = _copy_table(source, tx, FOOD_ITEMS)
    report.tables[ANALYSIS_RESULTS.name] = _copy_table(source, tx, ANALYSIS_RESULTS)
    report.tables[API_KEYS.name] = _copy_table(source, tx, API_KEYS)


def _copy_table(
    source: SQLiteBackend,
    tx: TransactionHandle,
    table: Table,
    *,
    id_map: dict[Any, str] | None = None,
    remap: tuple[str, dict[Any, str]] | None = None,
) -> TableReport:
    report = TableReport()
    source_columns = source.table_columns(table.name)
    if not source_columns:
        if is_required(table):
            raise MigrationError(f"Source database has no {table.name} table")
        logger.warning("Source database has no %s table; skipping", table.name)
        report.missing = True
        return report

    columns = [name for name in column_names(table) if name in source_columns]
    booleans = boolean_columns(table)
    rows = source.all(f"SELECT {', '.join(columns)} FROM {table.name}")

    for row in rows:
        record = {name: row[name] for name in columns}
        source_id = record.get("id")
        if not source_id:
            record["id"] = str(uuid.uuid4())

        if remap is not None:
            ref_column, mapping = remap
            mapped = mapping.get(record.get(ref_column))
            if mapped is None:
                logger.warning(
                    "Skipping %s row %s: parent %s not migrated",
                    table.name,
                    record["id"],
                    record.get(ref_column),
                )
                report.orphaned += 1
                continue
            record[ref_column] = mapped

        for name in booleans:
            if name in record and record[name] is not None:
                record[name] = tx.dialect.db_bool(record[name])

        # Let column defaults fill timestamps the source never recorded.
        for name in ("created_at", "updated_at"):
            if name in record and record[name] is None and table.c[name].server_default is not None:
                del record[name]

        row_columns = list(record)
        statement = (
            f"INSERT INTO {table.name} ({', '.join(row_columns)}) "
            f"VALUES ({', '.join('?' for _ in row_columns)}) ON CONFLICT DO NOTHING"
        )
        try:
            with tx.savepoint() as sp:
                result = sp.run(statement, [record[name] for name in row_columns])
        except SQLAlchemyError as exc:
            logger.warning("Failed to migrate %s row %s: %s", table.name, record["id"], exc)
            report.failed += 1
            continue

        if result.changes:
            report.copied += 1
        else:
            report.skipped += 1
        if id_map is not None:
            id_map[source_id] = record["id"]

    return report
