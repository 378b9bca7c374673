import logging

from db.context import DatabaseContext

logger = logging.getLogger(__name__)


def delete_user_data(ctx: DatabaseContext, guid: str) -> dict[str, int] | None:
    """Remove a user and everything they own. Returns per-entity counts, or None if unknown."""
    user = ctx.users.find_by_guid(guid)
    if user is None:
        return None

    user_id = user["id"]
    with ctx.transaction() as tx:
        counts = {
            "uric_acid_values": _delete(tx, "uric_acid_values", user_id),
            "meal_components": _delete_components(tx, user_id),
            "meals": _delete(tx, "meals", user_id),
            "food_items": _delete(tx, "food_items", user_id),
            "analysis_results": _delete(tx, "analysis_results", user_id),
        }
        tx.run("UPDATE api_keys SET created_by = NULL WHERE created_by = ?", [user_id])
        counts["users"] = tx.run("DELETE FROM users WHERE id = ?", [user_id]).changes

    logger.info("Deleted all data for user %s: %s", guid, counts)
    return counts


def _delete(tx, table: str, user_id: str) -> int:
    return tx.run(f"DELETE FROM {table} WHERE user_id = ?", [user_id]).changes


def _delete_components(tx, user_id: str) -> int:
    return tx.run(
        "DELETE FROM meal_components WHERE meal_id IN (SELECT id FROM meals WHERE user_id = ?)",
        [user_id],
    ).changes
