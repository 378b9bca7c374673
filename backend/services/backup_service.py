import logging
from typing import Any

from db.context import DatabaseContext
from utils.datetime_utils import utcnow_iso

logger = logging.getLogger(__name__)


def get_backup_metadata(ctx: DatabaseContext, guid: str) -> dict[str, Any] | None:
    """What the server holds for ``guid``: newest timestamps and row counts."""
    user = ctx.users.find_by_guid(guid)
    if user is None:
        return None
    user_id = user["id"]
    return {
        "guid": guid,
        "last_backup_timestamp": user.get("last_backup_timestamp"),
        "last_uric_acid_timestamp": ctx.readings.get_last_timestamp(user_id),
        "last_meal_timestamp": ctx.meals.get_last_timestamp(user_id),
        "uric_acid_count": ctx.readings.count_by_user_id(user_id),
        "meal_count": ctx.meals.count_by_user_id(user_id),
        "food_item_count": ctx.food_items.count_by_user_id(user_id),
    }


def record_backup(ctx: DatabaseContext, guid: str, timestamp=None) -> dict[str, Any]:
    """Mark a completed client backup; creates the user on first contact."""
    ctx.users.get_or_create(guid)
    user = ctx.users.update_last_backup(guid, timestamp or utcnow_iso())
    logger.info("Recorded backup for user %s at %s", guid, user["last_backup_timestamp"])
    return user


def list_backups(ctx: DatabaseContext, guid: str) -> list[dict[str, Any]]:
    """The server keeps no snapshots; the live data is the single latest backup."""
    metadata = get_backup_metadata(ctx, guid)
    if metadata is None:
        return []
    timestamp = (
        metadata["last_backup_timestamp"]
        or metadata["last_uric_acid_timestamp"]
        or metadata["last_meal_timestamp"]
    )
    return [
        {
            "id": "latest",
            "timestamp": timestamp,
            "uric_acid_count": metadata["uric_acid_count"],
            "meal_count": metadata["meal_count"],
            "food_item_count": metadata["food_item_count"],
        }
    ]
