from __future__ import annotations

import sys
import threading
from datetime import timedelta
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.context import DatabaseContext  # noqa: E402
from db.database import SQLiteBackend  # noqa: E402
from db.errors import RecordValidationError  # noqa: E402
from db.schema import ensure_schema  # noqa: E402
from services.sync_service import upload_meal  # noqa: E402
from utils.datetime_utils import to_iso, utcnow  # noqa: E402


def _new_ctx(tmp_path) -> DatabaseContext:
    handle = SQLiteBackend(tmp_path / "meals.db")
    ensure_schema(handle)
    return DatabaseContext.create(handle)


def _iso(**delta) -> str:
    return to_iso(utcnow() + timedelta(**delta))


def _component(component_id: str, name: str, purin: int = 10) -> dict:
    return {"id": component_id, "foodItemName": name, "estimatedWeight": 100, "purin": purin, "protein": 2.5}


def _meal(user_id: str, **overrides) -> dict:
    meal = {
        "id": "m1",
        "userId": user_id,
        "timestamp": "2024-05-01T12:00:00Z",
        "mealType": "LUNCH",
        "name": "Chicken and rice",
        "totalPurin": 180,
        "totalCalories": 650,
        "totalProtein": 32.5,
        "components": [_component("c1", "Chicken", 150), _component("c2", "Rice", 20), _component("c3", "Peas", 10)],
    }
    meal.update(overrides)
    return meal


def test_meal_is_stored_with_its_components(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")

    created = ctx.meals.create(_meal(user["id"]))

    assert created["meal_type"] == "LUNCH"
    assert created["total_protein"] == 32.5
    assert [c["id"] for c in created["components"]] == ["c1", "c2", "c3"]
    assert created["components"][0]["food_item_name"] == "Chicken"
    assert created["components"][0]["protein"] == 2.5
    assert ctx.meals.find_by_id("m1") == created
    assert [c["id"] for c in ctx.meals.get_components("m1")] == ["c1", "c2", "c3"]
    ctx.close()


def test_newer_upload_replaces_component_set(tmp_path):
    ctx = _new_ctx(tmp_path)
    upload_meal(ctx, "device-1", _meal("ignored"))

    updated = upload_meal(
        ctx,
        "device-1",
        _meal(
            "ignored",
            name="Chicken salad",
            updatedAt=_iso(hours=1),
            components=[_component("c4", "Chicken", 150), _component("c5", "Lettuce", 5)],
        ),
    )

    assert updated["name"] == "Chicken salad"
    assert [c["id"] for c in updated["components"]] == ["c4", "c5"]
    assert ctx.handle.count("meal_components") == 2
    ctx.close()


def test_failed_component_write_keeps_previous_meal(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    ctx.meals.create(_meal(user["id"]))

    with pytest.raises(RecordValidationError):
        ctx.meals.create(
            _meal(
                user["id"],
                name="Broken",
                updatedAt=_iso(hours=1),
                components=[_component("dup", "Fish"), _component("dup", "Chips")],
            )
        )

    meal = ctx.meals.find_by_id("m1")
    assert meal["name"] == "Chicken and rice"
    assert [c["id"] for c in meal["components"]] == ["c1", "c2", "c3"]
    ctx.close()


def test_stale_meal_upload_is_ignored(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    ctx.meals.create(_meal(user["id"], updatedAt=_iso(hours=2)))

    result = ctx.meals.create(_meal(user["id"], name="Older", updatedAt=_iso(hours=1), components=[]))

    assert result["name"] == "Chicken and rice"
    assert len(result["components"]) == 3
    ctx.close()


def test_partial_update_keeps_components_unless_given(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    ctx.meals.create(_meal(user["id"]))

    renamed = ctx.meals.update("m1", {"name": "Leftovers"})
    assert renamed["name"] == "Leftovers"
    assert [c["id"] for c in renamed["components"]] == ["c1", "c2", "c3"]

    trimmed = ctx.meals.update("m1", {"components": [_component("c9", "Rice")]})
    assert [c["id"] for c in trimmed["components"]] == ["c9"]
    assert ctx.meals.update("missing", {"name": "x"}) is None
    ctx.close()


@pytest.mark.parametrize(
    "override",
    [
        {"mealType": "BRUNCH"},
        {"timestamp": None},
        {"totalPurin": -5},
        {"components": [{"foodItemName": "", "estimatedWeight": 10}]},
    ],
)
def test_invalid_meals_are_rejected(tmp_path, override):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    with pytest.raises(RecordValidationError):
        ctx.meals.create(_meal(user["id"], **override))
    assert ctx.handle.count("meals") == 0
    ctx.close()


def test_fractional_amounts_are_rounded_to_whole_numbers(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")

    meal = ctx.meals.create(_meal(user["id"], totalPurin=180.6, components=[{"foodItemName": "Soup", "purin": "12.4"}]))

    assert meal["total_purin"] == 181
    assert meal["components"][0]["purin"] == 12
    ctx.close()


def test_diet_stats_and_listing(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    ctx.meals.create(
        _meal(
            user["id"],
            id="a",
            timestamp=_iso(days=-1),
            totalPurin=100,
            totalCalories=500,
            totalProtein=20.0,
            components=[_component("a1", "Beans")],
        )
    )
    ctx.meals.create(
        _meal(
            user["id"],
            id="b",
            timestamp=_iso(days=-2),
            totalPurin=200,
            totalCalories=700,
            totalProtein=30.0,
            components=[_component("b1", "Tofu")],
        )
    )
    ctx.meals.create(_meal(user["id"], id="old", timestamp=_iso(days=-30), totalPurin=900, components=[]))

    stats = ctx.meals.get_diet_stats(user["id"], days=7)

    assert stats == {"meal_count": 2, "avg_purin": 150, "avg_calories": 600, "avg_protein": 25.0}
    listed = ctx.meals.find_by_user_id(user["id"], limit=2)
    assert [m["id"] for m in listed] == ["a", "b"]
    assert [m["components"][0]["id"] for m in listed] == ["a1", "b1"]
    assert ctx.meals.count_by_user_id(user["id"]) == 3
    assert ctx.meals.get_diet_stats("nobody") == {"meal_count": 0, "avg_purin": 0, "avg_calories": 0, "avg_protein": 0.0}
    ctx.close()


def test_deleting_meal_or_owner_removes_components(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    ctx.meals.create(_meal(user["id"]))
    ctx.meals.create(_meal(user["id"], id="m2", components=[_component("c7", "Bread")]))

    assert ctx.meals.delete("m1") is True
    assert ctx.handle.count("meal_components") == 1

    ctx.users.delete(user["id"])
    assert ctx.handle.count("meals") == 0
    assert ctx.handle.count("meal_components") == 0
    ctx.close()


def test_readers_never_see_a_meal_between_component_sets(tmp_path):
    ctx = _new_ctx(tmp_path)
    user = ctx.users.get_or_create("device-1")
    three = [_component("c1", "Rice"), _component("c2", "Trout"), _component("c3", "Leek")]
    two = three[:2]
    ctx.meals.create(_meal(user["id"], components=three))
    stop = threading.Event()
    seen = []

    def _read() -> None:
        while True:
            seen.append(len(ctx.meals.find_by_id("m1")["components"]))
            if stop.is_set():
                return

    reader = threading.Thread(target=_read)
    reader.start()
    try:
        for index in range(20):
            ctx.meals.create(_meal(user["id"], components=two if index % 2 == 0 else three))
    finally:
        stop.set()
        reader.join(timeout=10)

    assert seen
    assert set(seen) <= {2, 3}
    assert len(ctx.meals.find_by_id("m1")["components"]) == 3
    ctx.close()
