import logging

from auth.utils import hash_password, normalize_username
from config import Settings
from db.context import DatabaseContext

logger = logging.getLogger(__name__)


def ensure_admin_account(ctx: DatabaseContext, settings: Settings) -> dict | None:
    """Create the configured administrator unless its username is already taken."""
    admin_username = normalize_username(settings.ADMIN_USERNAME) or "admin"
    if not settings.ADMIN_PASSWORD:
        logger.warning("ADMIN_PASSWORD is empty; not creating administrator %s", admin_username)
        return None

    existing = ctx.users.find_by_username(admin_username)
    if existing is not None:
        if not existing.get("is_admin"):
            logger.warning("Username %s exists but is not an administrator; leaving it unchanged", admin_username)
        return existing

    admin_user = ctx.users.create(
        {
            "username": admin_username,
            "password_hash": hash_password(settings.ADMIN_PASSWORD),
            "email": settings.ADMIN_EMAIL,
            "is_admin": True,
        }
    )
    logger.info("Created default administrator %s", admin_username)
    return admin_user
