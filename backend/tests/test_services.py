from __future__ import annotations

import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import main  # noqa: E402
from auth.bootstrap import ensure_admin_account  # noqa: E402
from config import Settings  # noqa: E402
from db.context import DatabaseContext  # noqa: E402
from db.database import SQLiteBackend  # noqa: E402
from db.dialect import BackendKind  # noqa: E402
from db.errors import RecordValidationError  # noqa: E402
from db.schema import ensure_schema  # noqa: E402
from services.backup_service import get_backup_metadata, list_backups, record_backup  # noqa: E402
from services.sync_service import upload_meal, upload_reading  # noqa: E402
from services.user_data_service import delete_user_data  # noqa: E402


def _new_ctx(tmp_path) -> DatabaseContext:
    handle = SQLiteBackend(tmp_path / "services.db")
    ensure_schema(handle)
    return DatabaseContext.create(handle)


def _settings(tmp_path, **overrides) -> Settings:
    values = {"ENVIRONMENT": "test", "DB_HOST": "", "DB_PATH": tmp_path / "data" / "harnsaeure.db"}
    values.update(overrides)
    return Settings(**values)


def _seed(ctx: DatabaseContext, guid: str) -> dict:
    reading = upload_reading(ctx, guid, {"timestamp": "2024-05-02T07:00:00Z", "value": 6.1})
    upload_reading(ctx, guid, {"timestamp": "2024-05-01T07:00:00Z", "value": 5.9})
    upload_meal(
        ctx,
        guid,
        {
            "timestamp": "2024-05-03T19:00:00Z",
            "mealType": "DINNER",
            "components": [{"foodItemName": "Pasta"}, {"foodItemName": "Pesto"}],
        },
    )
    ctx.food_items.create({"userId": reading["user_id"], "name": "Pasta", "category": "grains"})
    ctx.analysis_results.create(
        {
            "userId": reading["user_id"],
            "dataPeriodStart": "2024-04-01T00:00:00Z",
            "dataPeriodEnd": "2024-05-01T00:00:00Z",
            "insights": {"average": 6.0},
            "recommendations": ["drink water"],
        }
    )
    return ctx.users.find_by_guid(guid)


def test_analysis_results_round_trip_structured_fields(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    ctx.analysis_results.create(
        {
            "userId": user["id"],
            "analysisDate": "2024-04-01T00:00:00Z",
            "dataPeriodStart": "2024-03-01T00:00:00Z",
            "dataPeriodEnd": "2024-04-01T00:00:00Z",
            "insights": {"trend": "rising", "peaks": [7.1, 7.4]},
            "recommendations": ["less red meat"],
            "confidenceScore": 0.8,
        }
    )
    ctx.analysis_results.create(
        {
            "userId": user["id"],
            "analysisDate": "2024-05-01T00:00:00Z",
            "dataPeriodStart": "2024-04-01T00:00:00Z",
            "dataPeriodEnd": "2024-05-01T00:00:00Z",
            "insights": {"trend": "falling"},
            "recommendations": [],
        }
    )

    latest = ctx.analysis_results.find_latest_by_user_id(user["id"])
    assert latest["insights"] == {"trend": "falling"}
    assert latest["recommendations"] == []
    assert latest["confidence_score"] is None

    results = ctx.analysis_results.find_by_user_id(user["id"])
    assert [r["analysis_date"] for r in results] == ["2024-05-01T00:00:00.000Z", "2024-04-01T00:00:00.000Z"]
    assert results[1]["insights"]["peaks"] == [7.1, 7.4]
    assert ctx.analysis_results.find_latest_by_user_id("nobody") is None
    ctx.close()


def test_analysis_confidence_must_be_a_fraction(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    with pytest.raises(RecordValidationError):
        ctx.analysis_results.create(
            {
                "userId": user["id"],
                "dataPeriodStart": "2024-03-01T00:00:00Z",
                "dataPeriodEnd": "2024-04-01T00:00:00Z",
                "insights": {},
                "recommendations": [],
                "confidenceScore": 1.5,
            }
        )
    ctx.close()


def test_backup_metadata_and_listing(tmp_path):
    ctx = _new_ctx(tmp_path)
    _seed(ctx, "device-1")

    metadata = get_backup_metadata(ctx, "device-1")
    assert metadata["uric_acid_count"] == 2
    assert metadata["meal_count"] == 1
    assert metadata["food_item_count"] == 1
    assert metadata["last_uric_acid_timestamp"] == "2024-05-02T07:00:00.000Z"
    assert metadata["last_meal_timestamp"] == "2024-05-03T19:00:00.000Z"
    assert metadata["last_backup_timestamp"] is None

    backups = list_backups(ctx, "device-1")
    assert len(backups) == 1
    assert backups[0]["id"] == "latest"
    assert backups[0]["timestamp"] == "2024-05-02T07:00:00.000Z"

    record_backup(ctx, "device-1", "2024-06-01T00:00:00Z")
    assert list_backups(ctx, "device-1")[0]["timestamp"] == "2024-06-01T00:00:00.000Z"

    assert get_backup_metadata(ctx, "unknown") is None
    assert list_backups(ctx, "unknown") == []
    ctx.close()


def test_record_backup_creates_user_on_first_contact(tmp_path):
    ctx = _new_ctx(tmp_path)

    user = record_backup(ctx, "new-device")

    assert user["guid"] == "new-device"
    assert user["last_backup_timestamp"] is not None
    ctx.close()


def test_delete_user_data_removes_only_that_user(tmp_path):
    ctx = _new_ctx(tmp_path)
    doomed = _seed(ctx, "device-1")
    _seed(ctx, "device-2")
    key = ctx.api_keys.create({"name": "export", "createdBy": doomed["id"]})

    counts = delete_user_data(ctx, "device-1")

    assert counts == {
        "uric_acid_values": 2,
        "meal_components": 2,
        "meals": 1,
        "food_items": 1,
        "analysis_results": 1,
        "users": 1,
    }
    assert ctx.users.find_by_guid("device-1") is None
    assert ctx.api_keys.find_by_id(key["id"])["created_by"] is None
    assert get_backup_metadata(ctx, "device-2")["uric_acid_count"] == 2
    assert ctx.handle.count("meal_components") == 2
    assert delete_user_data(ctx, "device-1") is None
    ctx.close()


def test_ensure_admin_account_is_idempotent(tmp_path):
    ctx = _new_ctx(tmp_path)
    settings = _settings(tmp_path, ADMIN_USERNAME=" root ", ADMIN_PASSWORD="s3cret-pass", ADMIN_EMAIL="ops@example.com")

    created = ensure_admin_account(ctx, settings)
    again = ensure_admin_account(ctx, settings)

    assert created["username"] == "root"
    assert created["is_admin"] is True
    assert created["email"] == "ops@example.com"
    assert again["id"] == created["id"]
    assert ctx.users.verify_password(created, "s3cret-pass")
    assert ensure_admin_account(ctx, _settings(tmp_path, ADMIN_USERNAME="other", ADMIN_PASSWORD="")) is None
    ctx.close()


def test_bootstrap_on_embedded_backend(tmp_path):
    ctx = main.bootstrap(_settings(tmp_path))

    assert ctx.kind is BackendKind.SQLITE
    assert ctx.users.find_by_username("admin") is None
    ctx.close()


def test_bootstrap_in_development_seeds_admin(tmp_path):
    ctx = main.bootstrap(_settings(tmp_path, ENVIRONMENT="development"))

    admin = ctx.users.find_by_username("admin")
    assert admin is not None
    assert admin["is_admin"] is True
    ctx.close()


def test_bootstrap_refuses_default_admin_password_in_production(tmp_path):
    with pytest.raises(RuntimeError):
        main.bootstrap(_settings(tmp_path, ENVIRONMENT="production"))
