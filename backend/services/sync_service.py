"""Client upload entry points: resolve the correlation id to a user, then write."""

from typing import Any

from db.context import DatabaseContext


def _with_owner(ctx: DatabaseContext, guid: str, data: dict[str, Any]) -> dict[str, Any]:
    user = ctx.users.get_or_create(guid)
    payload = {key: value for key, value in data.items() if key not in ("userId", "user_id")}
    payload["user_id"] = user["id"]
    return payload


def upload_reading(ctx: DatabaseContext, guid: str, data: dict[str, Any]) -> dict[str, Any]:
    return ctx.readings.create(_with_owner(ctx, guid, data))


def upload_meal(ctx: DatabaseContext, guid: str, data: dict[str, Any]) -> dict[str, Any]:
    return ctx.meals.create(_with_owner(ctx, guid, data))


def upload_food_item(ctx: DatabaseContext, guid: str, data: dict[str, Any]) -> dict[str, Any]:
    return ctx.food_items.create(_with_owner(ctx, guid, data))
