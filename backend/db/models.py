"""Table definitions shared by both backends.

Declared once as SQLAlchemy Core metadata; the engine's dialect renders the
concrete DDL (boolean, float and timestamp types differ per backend).
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)

metadata = MetaData()


def _flag(name: str, default: bool = False) -> Column:
    return Column(
        name,
        Boolean(create_constraint=False),
        default=default,
        server_default=true() if default else false(),
    )


def _timestamp(name: str, *, nullable: bool = True, now: bool = False) -> Column:
    return Column(
        name,
        DateTime(timezone=True),
        nullable=nullable,
        server_default=func.current_timestamp() if now else None,
    )


def _non_negative(name: str, type_=Integer) -> Column:
    return Column(name, type_, CheckConstraint(f"{name} >= 0"))


def _owner() -> Column:
    return Column("user_id", Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


USERS = Table(
    "users",
    metadata,
    Column("id", Text, primary_key=True),
    Column("guid", Text, nullable=False, unique=True),
    Column("gender", Text, CheckConstraint("gender IN ('MALE', 'FEMALE', 'DIVERSE')")),
    Column("birth_year", Integer, CheckConstraint("birth_year >= 1900 AND birth_year <= 2100")),
    _timestamp("last_backup_timestamp"),
    Column("email", Text),
    Column("google_id", Text),
    Column("username", Text),
    Column("password_hash", Text),
    _flag("is_admin"),
    _timestamp("created_at", now=True),
    _timestamp("updated_at", now=True),
)

READINGS = Table(
    "uric_acid_values",
    metadata,
    Column("id", Text, primary_key=True),
    _owner(),
    _timestamp("timestamp", nullable=False),
    Column("value", Float, CheckConstraint("value >= 0 AND value <= 20"), nullable=False),
    _flag("normal"),
    _flag("much_meat"),
    _flag("much_sport"),
    _flag("much_sugar"),
    _flag("much_alcohol"),
    _flag("fasten"),
    _flag("gout_attack"),
    Column("notes", Text),
    _timestamp("created_at", now=True),
    _timestamp("updated_at"),
)

MEALS = Table(
    "meals",
    metadata,
    Column("id", Text, primary_key=True),
    _owner(),
    _timestamp("timestamp", nullable=False),
    Column(
        "meal_type",
        Text,
        CheckConstraint("meal_type IN ('BREAKFAST', 'LUNCH', 'DINNER', 'SNACK')"),
        nullable=False,
    ),
    Column("name", Text),
    _non_negative("total_purin"),
    _non_negative("total_uric_acid"),
    _non_negative("total_calories"),
    _non_negative("total_protein", Float),
    Column("thumbnail_path", Text),
    _timestamp("created_at", now=True),
    _timestamp("updated_at"),
)

MEAL_COMPONENTS = Table(
    "meal_components",
    metadata,
    Column("id", Text, primary_key=True),
    Column("meal_id", Text, ForeignKey("meals.id", ondelete="CASCADE"), nullable=False),
    Column("food_item_name", Text, nullable=False),
    Column("estimated_weight", Integer, CheckConstraint("estimated_weight >= 0"), nullable=False),
    _non_negative("purin"),
    _non_negative("uric_acid"),
    _non_negative("calories"),
    _non_negative("protein", Float),
    _timestamp("created_at", now=True),
)

FOOD_ITEMS = Table(
    "food_items",
    metadata,
    Column("id", Text, primary_key=True),
    _owner(),
    Column("name", Text, nullable=False),
    _non_negative("purin_per_100g"),
    _non_negative("uric_acid_per_100g"),
    _non_negative("calories_per_100g"),
    _non_negative("protein_percentage", Float),
    Column("category", Text, nullable=False),
    Column("image_path", Text),
    Column("thumbnail_path", Text),
    _timestamp("created_at", now=True),
    _timestamp("updated_at", now=True),
    UniqueConstraint("user_id", "name"),
)

ANALYSIS_RESULTS = Table(
    "analysis_results",
    metadata,
    Column("id", Text, primary_key=True),
    _owner(),
    _timestamp("analysis_date", nullable=False),
    _timestamp("data_period_start", nullable=False),
    _timestamp("data_period_end", nullable=False),
    Column("insights", Text, nullable=False),
    Column("recommendations", Text, nullable=False),
    Column("confidence_score", Float, CheckConstraint("confidence_score >= 0 AND confidence_score <= 1")),
    _timestamp("created_at", now=True),
    info={"optional": True},
)

API_KEYS = Table(
    "api_keys",
    metadata,
    Column("id", Text, primary_key=True),
    Column("key_hash", Text, nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("description", Text),
    _flag("can_read_own_uric_acid"),
    _flag("can_write_own_uric_acid"),
    _flag("can_read_own_meals"),
    _flag("can_write_own_meals"),
    _flag("can_read_all_uric_acid"),
    _flag("can_read_all_meals"),
    Column("created_by", Text, ForeignKey("users.id", ondelete="SET NULL")),
    _timestamp("created_at", now=True),
    _timestamp("last_used_at"),
    _flag("is_active", default=True),
    info={"optional": True},
)

# Creation and copy order: parents before children.
TABLES: tuple[Table, ...] = (
    USERS,
    READINGS,
    MEALS,
    MEAL_COMPONENTS,
    FOOD_ITEMS,
    ANALYSIS_RESULTS,
    API_KEYS,
)


def _partial(column: Column):
    return {"sqlite_where": column.is_not(None), "postgresql_where": column.is_not(None)}


INDEXES: tuple[Index, ...] = (
    Index("idx_users_guid", USERS.c.guid, unique=True),
    Index("idx_users_email", USERS.c.email),
    Index("idx_users_google_id", USERS.c.google_id, unique=True, **_partial(USERS.c.google_id)),
    Index("idx_users_username", USERS.c.username, unique=True, **_partial(USERS.c.username)),
    Index("idx_uric_acid_user_timestamp", READINGS.c.user_id, READINGS.c.timestamp),
    Index("idx_meals_user_timestamp", MEALS.c.user_id, MEALS.c.timestamp),
    Index("idx_meal_components_meal_id", MEAL_COMPONENTS.c.meal_id),
    Index("idx_food_items_user_id", FOOD_ITEMS.c.user_id),
    Index("idx_food_items_user_name", FOOD_ITEMS.c.user_id, FOOD_ITEMS.c.name),
    Index("idx_analysis_user_date", ANALYSIS_RESULTS.c.user_id, ANALYSIS_RESULTS.c.analysis_date),
    Index("idx_api_keys_key_hash", API_KEYS.c.key_hash),
    Index("idx_api_keys_is_active", API_KEYS.c.is_active),
)

# Columns whose absence marks a users table created before correlation ids.
LEGACY_USER_MARKERS = ("guid", "gender", "birth_year")


def column_names(table: Table) -> list[str]:
    return [column.name for column in table.columns]


def boolean_columns(table: Table) -> set[str]:
    return {column.name for column in table.columns if isinstance(column.type, Boolean)}


def is_required(table: Table) -> bool:
    """Tables every embedded database must carry; optional ones arrived later."""
    return not table.info.get("optional", False)


def index_filter(index: Index):
    """The partial-index predicate, or None for a plain index."""
    return index.dialect_kwargs.get("sqlite_where")
