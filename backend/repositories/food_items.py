import logging
import uuid
from typing import Any

from db.models import FOOD_ITEMS
from repositories.base import OwnedRepository, integrity_errors
from repositories.schemas import FoodItemIn, field_names, validate_payload
from utils.datetime_utils import is_newer, utcnow_iso

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = (
    "user_id",
    "name",
    "purin_per_100g",
    "uric_acid_per_100g",
    "calories_per_100g",
    "protein_percentage",
    "category",
    "image_path",
    "thumbnail_path",
)


class FoodItemRepository(OwnedRepository):
    """Per-user food catalogue keyed naturally by (user_id, name)."""

    table = FOOD_ITEMS
    entity = "food item"

    def create(self, data: Any) -> dict[str, Any]:
        payload: FoodItemIn = validate_payload(FoodItemIn, data)
        values = {name: getattr(payload, name) for name in _SCALAR_FIELDS}

        def write(tx):
            existing = self._fetch_by_name(tx, payload.user_id, payload.name)
            if existing is None and payload.id:
                # Same id under a new name is a rename of that item.
                existing = self._fetch(tx, payload.id)

            if existing is None:
                record_id = payload.id or str(uuid.uuid4())
                now = utcnow_iso()
                self._insert(tx, {"id": record_id, **values, "created_at": now, "updated_at": payload.updated_at or now})
                return self._fetch(tx, record_id)

            if payload.updated_at is not None:
                stored = existing.get("updated_at") or existing.get("created_at")
                if not is_newer(payload.updated_at, stored):
                    logger.debug("Ignoring stale food item %r for user %s", payload.name, payload.user_id)
                    return existing

            self._update(tx, existing["id"], {**values, "updated_at": payload.updated_at or utcnow_iso()})
            return self._fetch(tx, existing["id"])

        return self._upsert(write)

    def update(self, record_id: str, data: Any) -> dict[str, Any] | None:
        with integrity_errors(self.entity), self.db.transaction() as tx:
            existing = self._fetch(tx, record_id)
            if existing is None:
                return None
            merged = {**existing, **field_names(FoodItemIn, data)}
            payload: FoodItemIn = validate_payload(FoodItemIn, merged)
            values = {name: getattr(payload, name) for name in _SCALAR_FIELDS}
            self._update(tx, record_id, {**values, "updated_at": utcnow_iso()})
            return self._fetch(tx, record_id)

    def find_by_user_id(self, user_id: str, limit=None, offset=None):
        return self._find_by_user_id(
            user_id,
            date_column=None,
            order_by="name ASC",
            limit=limit,
            offset=offset,
        )

    def find_by_user_id_and_name(self, user_id: str, name: str) -> dict[str, Any] | None:
        return self._fetch_by_name(self.db, user_id, name.strip())

    def _fetch_by_name(self, db, user_id: str, name: str) -> dict[str, Any] | None:
        return self.to_record(db.get("SELECT * FROM food_items WHERE user_id = ? AND name = ?", [user_id, name]))
