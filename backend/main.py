import logging

from auth.bootstrap import ensure_admin_account
from config import Settings, settings as default_settings
from db.context import DatabaseContext
from db.selector import initialize

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def bootstrap(settings: Settings | None = None) -> DatabaseContext:
    """Select and prepare the database for this process. Raises if no backend is usable."""
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)
    settings.validate_security_configuration()

    ctx = initialize(settings)
    if settings.CREATE_DEFAULT_ADMIN and (ctx.seed_admin or settings.is_development):
        ensure_admin_account(ctx, settings)

    if ctx.migration_report is not None:
        logger.info(
            "Migrated %d rows from %s (%d failed)",
            ctx.migration_report.copied,
            ctx.migration_report.source_path,
            ctx.migration_report.failed,
        )
    logger.info("%s ready on %s backend", settings.APP_NAME, ctx.kind.value)
    return ctx


if __name__ == "__main__":
    context = bootstrap()
    context.close()
