from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.schema import CreateTable


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.context import DatabaseContext  # noqa: E402
from db.database import SQLiteBackend  # noqa: E402
from db.errors import MigrationError  # noqa: E402
from db.migration import migrate_if_needed  # noqa: E402
from db.models import MEAL_COMPONENTS, MEALS, USERS  # noqa: E402
from db.schema import ensure_schema  # noqa: E402


def _new_target(tmp_path) -> SQLiteBackend:
    handle = SQLiteBackend(tmp_path / "target.db")
    ensure_schema(handle)
    return handle


def _populate_source(path: Path) -> None:
    handle = SQLiteBackend(path)
    ensure_schema(handle)
    ctx = DatabaseContext.create(handle)
    user = ctx.users.create({"guid": "device-1", "gender": "MALE", "birthYear": 1980})
    ctx.readings.create(
        {"id": "r1", "userId": user["id"], "timestamp": "2024-03-01T07:00:00Z", "value": 6.4, "goutAttack": True}
    )
    ctx.readings.create({"id": "r2", "userId": user["id"], "timestamp": "2024-03-02T07:00:00Z", "value": 5.1})
    ctx.meals.create(
        {
            "id": "m1",
            "userId": user["id"],
            "timestamp": "2024-03-01T12:00:00Z",
            "mealType": "LUNCH",
            "name": "Lentil soup",
            "totalPurin": 120,
            "components": [
                {"foodItemName": "Lentils", "estimatedWeight": 150, "purin": 100},
                {"foodItemName": "Carrot", "estimatedWeight": 50, "purin": 20},
            ],
        }
    )
    ctx.food_items.create({"userId": user["id"], "name": "Lentils", "category": "legumes", "purinPer100g": 127})
    ctx.analysis_results.create(
        {
            "userId": user["id"],
            "dataPeriodStart": "2024-02-01T00:00:00Z",
            "dataPeriodEnd": "2024-03-01T00:00:00Z",
            "insights": {"trend": "stable"},
            "recommendations": ["hydrate"],
            "confidenceScore": 0.7,
        }
    )
    ctx.api_keys.create({"name": "reporting", "canReadAllMeals": True, "createdBy": user["id"]})
    with handle.foreign_keys_disabled() as tx:
        tx.run(
            "INSERT INTO meal_components (id, meal_id, food_item_name, estimated_weight) VALUES (?, ?, ?, ?)",
            ["orphan", "missing-meal", "Ghost", 10],
        )
    handle.close()


def test_migration_copies_every_entity_and_archives_source(tmp_path):
    source = tmp_path / "harnsaeure.db"
    _populate_source(source)
    target = _new_target(tmp_path)

    report = migrate_if_needed(source, target)

    assert report is not None
    assert not source.exists()
    assert Path(report.archived_path) == tmp_path / "harnsaeure.db.migrated"
    assert Path(report.archived_path).exists()

    assert target.count("users") == 1
    assert target.count("uric_acid_values") == 2
    assert target.count("meals") == 1
    assert target.count("meal_components") == 2
    assert target.count("food_items") == 1
    assert target.count("analysis_results") == 1
    assert target.count("api_keys") == 1

    assert report.tables[MEAL_COMPONENTS.name].copied == 2
    assert report.tables[MEAL_COMPONENTS.name].orphaned == 1
    assert report.failed == 0

    ctx = DatabaseContext.create(target)
    user = ctx.users.find_by_guid("device-1")
    assert user["gender"] == "MALE"
    assert user["birth_year"] == 1980
    reading = ctx.readings.find_by_id("r1")
    assert reading["gout_attack"] is True
    assert reading["value"] == 6.4
    meal = ctx.meals.find_by_id("m1")
    assert sorted(c["food_item_name"] for c in meal["components"]) == ["Carrot", "Lentils"]
    assert ctx.analysis_results.find_latest_by_user_id(user["id"])["insights"] == {"trend": "stable"}
    target.close()


def test_migration_is_skipped_when_target_has_users(tmp_path):
    source = tmp_path / "harnsaeure.db"
    _populate_source(source)
    target = _new_target(tmp_path)
    target.run("INSERT INTO users (id, guid) VALUES (?, ?)", ["existing", "server-user"])

    assert migrate_if_needed(source, target) is None
    assert source.exists()
    assert target.count("uric_acid_values") == 0
    target.close()


def test_migration_without_source_file_is_a_no_op(tmp_path):
    target = _new_target(tmp_path)
    assert migrate_if_needed(tmp_path / "absent.db", target) is None
    target.close()


def test_row_failures_are_counted_and_optional_tables_tolerated(tmp_path):
    source_path = tmp_path / "legacy.db"
    source = SQLiteBackend(source_path)
    source.ddl(CreateTable(USERS))
    source.exec(
        """
        CREATE TABLE uric_acid_values (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            timestamp DATETIME NOT NULL,
            value REAL NOT NULL,
            gout_attack INTEGER DEFAULT 0
        )
        """
    )
    source.ddl(CreateTable(MEALS))
    source.ddl(CreateTable(MEAL_COMPONENTS))
    source.exec("CREATE TABLE food_items (id TEXT PRIMARY KEY, user_id TEXT, name TEXT, category TEXT)")
    source.run("INSERT INTO users (id, guid) VALUES (?, ?)", ["u1", "device-9"])
    source.run(
        "INSERT INTO uric_acid_values (id, user_id, timestamp, value, gout_attack) VALUES (?, ?, ?, ?, ?)",
        ["ok", "u1", "2024-01-01T00:00:00Z", 5.0, 1],
    )
    source.run(
        "INSERT INTO uric_acid_values (id, user_id, timestamp, value, gout_attack) VALUES (?, ?, ?, ?, ?)",
        ["out-of-range", "u1", "2024-01-02T00:00:00Z", 25.0, 0],
    )
    source.close()
    target = _new_target(tmp_path)

    report = migrate_if_needed(source_path, target, migrated_suffix=".done")

    assert report.tables["uric_acid_values"].copied == 1
    assert report.tables["uric_acid_values"].failed == 1
    assert report.tables["analysis_results"].missing is True
    assert report.tables["api_keys"].missing is True
    assert target.count("uric_acid_values") == 1
    assert (tmp_path / "legacy.db.done").exists()
    target.close()


def test_engine_failure_rolls_back_and_keeps_source(tmp_path):
    source_path = tmp_path / "broken.db"
    # A plain rollback-journal file, as an older app version would leave it.
    engine = create_engine(f"sqlite:///{source_path}")
    with engine.begin() as conn:
        conn.execute(CreateTable(USERS))
        conn.execute(text("INSERT INTO users (id, guid) VALUES ('u1', 'device-1')"))
    engine.dispose()
    before = source_path.read_bytes()
    target = _new_target(tmp_path)

    with pytest.raises(MigrationError):
        migrate_if_needed(source_path, target)

    assert source_path.exists()
    assert source_path.read_bytes() == before
    # Header bytes 18-19 stay at 1 (rollback journal); WAL would set them to 2.
    assert source_path.read_bytes()[18:20] == b"\x01\x01"
    assert not (tmp_path / "broken.db-wal").exists()
    assert target.count("users") == 0
    target.close()


def test_rerun_after_success_is_guarded(tmp_path):
    source = tmp_path / "harnsaeure.db"
    _populate_source(source)
    target = _new_target(tmp_path)
    migrate_if_needed(source, target)

    _populate_source(source)
    assert migrate_if_needed(source, target) is None
    assert target.count("users") == 1
    target.close()
