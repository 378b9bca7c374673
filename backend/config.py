from pathlib import Path

from pydantic_settings import BaseSettings
from sqlalchemy.engine import URL


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Gout Diary"
    LOG_LEVEL: str = "INFO"

    # Preferred client/server backend (PostgreSQL). Left empty => embedded only.
    DB_HOST: str = ""
    DB_PORT: int = 5432
    DB_NAME: str = "gout_diary"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_CONNECT_TIMEOUT_SECONDS: int = 5
    DB_CONNECT_RETRIES: int = 0  # at most one retry is honoured
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE_SECONDS: int = 1800
    DB_SLOW_QUERY_MS: int = 500

    # Embedded fallback backend (SQLite)
    DB_PATH: Path = Path("data/harnsaeure.db")
    DB_BUSY_TIMEOUT_SECONDS: float = 30.0
    MIGRATED_SUFFIX: str = ".migrated"

    CREATE_DEFAULT_ADMIN: bool = True
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "change-me-admin!"
    ADMIN_EMAIL: str | None = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def is_development(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"development", "dev"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    @property
    def is_postgres_configured(self) -> bool:
        return bool((self.DB_HOST or "").strip())

    @property
    def postgres_url(self) -> URL:
        return URL.create(
            "postgresql+psycopg2",
            username=self.DB_USER or None,
            password=self.DB_PASSWORD or None,
            host=self.DB_HOST.strip() or None,
            port=self.DB_PORT,
            database=self.DB_NAME,
        )

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.CREATE_DEFAULT_ADMIN and self.ADMIN_PASSWORD == "change-me-admin!":
            errors.append("ADMIN_PASSWORD must be changed from the default value")
        if self.DB_CONNECT_RETRIES < 0:
            errors.append("DB_CONNECT_RETRIES must not be negative")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
