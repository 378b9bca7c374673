import logging
import uuid
from typing import Any

from db.models import MEAL_COMPONENTS, MEALS
from repositories.base import OwnedRepository, Repository, integrity_errors
from repositories.schemas import MealComponentIn, MealIn, field_names, validate_payload
from utils.datetime_utils import days_ago_iso, is_newer, to_iso, utcnow_iso

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = (
    "user_id",
    "timestamp",
    "meal_type",
    "name",
    "total_purin",
    "total_uric_acid",
    "total_calories",
    "total_protein",
    "thumbnail_path",
)


class _ComponentRows(Repository):
    table = MEAL_COMPONENTS
    entity = "meal component"


class MealRepository(OwnedRepository):
    """Meals and their components. Components are replaced as a set on every write."""

    table = MEALS
    entity = "meal"

    def __init__(self, db):
        super().__init__(db)
        self._components = _ComponentRows(db)

    def to_meal(self, db, row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        meal = dict(row)
        meal["components"] = self._load_components(db, meal["id"])
        return meal

    def create(self, data: Any) -> dict[str, Any]:
        payload: MealIn = validate_payload(MealIn, data)
        record_id = payload.id or str(uuid.uuid4())
        values = {name: getattr(payload, name) for name in _SCALAR_FIELDS}

        def write(tx):
            existing = self._fetch(tx, record_id)
            if existing is None:
                now = utcnow_iso()
                self._insert(tx, {"id": record_id, **values, "created_at": now, "updated_at": payload.updated_at or now})
                self._replace_components(tx, record_id, payload.components)
                return self.to_meal(tx, self._fetch(tx, record_id))

            if payload.updated_at is not None:
                stored = existing.get("updated_at") or existing.get("created_at")
                if not is_newer(payload.updated_at, stored):
                    logger.debug("Ignoring stale meal %s (%s <= %s)", record_id, payload.updated_at, stored)
                    return self.to_meal(tx, existing)

            self._update(tx, record_id, {**values, "updated_at": payload.updated_at or utcnow_iso()})
            self._replace_components(tx, record_id, payload.components)
            return self.to_meal(tx, self._fetch(tx, record_id))

        return self._upsert(write)

    def update(self, record_id: str, data: Any) -> dict[str, Any] | None:
        with integrity_errors(self.entity), self.db.transaction() as tx:
            existing = self._fetch(tx, record_id)
            if existing is None:
                return None
            changes = field_names(MealIn, data)
            merged = {**existing, **changes}
            if "components" not in changes:
                merged["components"] = self._load_components(tx, record_id)
            payload: MealIn = validate_payload(MealIn, merged)
            values = {name: getattr(payload, name) for name in _SCALAR_FIELDS}
            self._update(tx, record_id, {**values, "updated_at": utcnow_iso()})
            if "components" in changes:
                self._replace_components(tx, record_id, payload.components)
            return self.to_meal(tx, self._fetch(tx, record_id))

    def find_by_id(self, record_id: str) -> dict[str, Any] | None:
        with self.db.transaction(write=False) as tx:
            return self.to_meal(tx, self._fetch(tx, record_id))

    def find_by_user_id(self, user_id: str, start_date=None, end_date=None, limit=None, offset=None):
        meals = self._find_by_user_id(
            user_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
        return [self.to_meal(self.db, meal) for meal in meals]

    def get_components(self, meal_id: str) -> list[dict[str, Any]]:
        return self._load_components(self.db, meal_id)

    def get_diet_stats(self, user_id: str, days: int = 7) -> dict[str, Any]:
        row = self.db.get(
            """
            SELECT COUNT(*) AS meal_count,
                   AVG(total_purin) AS avg_purin,
                   AVG(total_calories) AS avg_calories,
                   AVG(total_protein) AS avg_protein
            FROM meals
            WHERE user_id = ? AND timestamp >= ?
            """,
            [user_id, days_ago_iso(days)],
        ) or {}
        return {
            "meal_count": int(row.get("meal_count") or 0),
            "avg_purin": _round_whole(row.get("avg_purin")),
            "avg_calories": _round_whole(row.get("avg_calories")),
            "avg_protein": round(float(row["avg_protein"]), 2) if row.get("avg_protein") is not None else 0.0,
        }

    def get_last_timestamp(self, user_id: str) -> str | None:
        row = self.db.get("SELECT MAX(timestamp) AS last FROM meals WHERE user_id = ?", [user_id])
        return to_iso(row["last"]) if row else None

    def _replace_components(self, tx, meal_id: str, components: list[MealComponentIn]) -> None:
        tx.run("DELETE FROM meal_components WHERE meal_id = ?", [meal_id])
        now = utcnow_iso()
        for component in components:
            self._components._insert(
                tx,
                {
                    "id": component.id or str(uuid.uuid4()),
                    "meal_id": meal_id,
                    "food_item_name": component.food_item_name,
                    "estimated_weight": component.estimated_weight,
                    "purin": component.purin,
                    "uric_acid": component.uric_acid,
                    "calories": component.calories,
                    "protein": component.protein,
                    "created_at": now,
                },
            )

    def _load_components(self, db, meal_id: str) -> list[dict[str, Any]]:
        rows = db.all("SELECT * FROM meal_components WHERE meal_id = ? ORDER BY created_at, id", [meal_id])
        return [self._components.to_record(row) for row in rows]


def _round_whole(value) -> int:
    if value is None:
        return 0
    return int(round(float(value)))
