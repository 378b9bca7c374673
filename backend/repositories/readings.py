import logging
import uuid
from typing import Any

from db.models import READINGS
from repositories.base import OwnedRepository, integrity_errors
from repositories.schemas import ReadingIn, field_names, validate_payload
from utils.datetime_utils import days_ago_iso, is_newer, to_iso, utcnow_iso

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = (
    "user_id",
    "timestamp",
    "value",
    "normal",
    "much_meat",
    "much_sport",
    "much_sugar",
    "much_alcohol",
    "fasten",
    "gout_attack",
    "notes",
)


class ReadingRepository(OwnedRepository):
    """Uric-acid readings, synced from client devices with last-write-wins."""

    table = READINGS
    entity = "reading"

    def create(self, data: Any) -> dict[str, Any]:
        payload: ReadingIn = validate_payload(ReadingIn, data)
        record_id = payload.id or str(uuid.uuid4())
        values = {name: getattr(payload, name) for name in _SCALAR_FIELDS}

        def write(tx):
            existing = self._fetch(tx, record_id)
            if existing is None:
                now = utcnow_iso()
                self._insert(tx, {"id": record_id, **values, "created_at": now, "updated_at": payload.updated_at or now})
                return self._fetch(tx, record_id)

            if payload.updated_at is not None:
                stored = existing.get("updated_at") or existing.get("created_at")
                if not is_newer(payload.updated_at, stored):
                    logger.debug("Ignoring stale reading %s (%s <= %s)", record_id, payload.updated_at, stored)
                    return existing

            self._update(tx, record_id, {**values, "updated_at": payload.updated_at or utcnow_iso()})
            return self._fetch(tx, record_id)

        return self._upsert(write)

    def update(self, record_id: str, data: Any) -> dict[str, Any] | None:
        with integrity_errors(self.entity), self.db.transaction() as tx:
            existing = self._fetch(tx, record_id)
            if existing is None:
                return None
            merged = {**existing, **field_names(ReadingIn, data)}
            payload: ReadingIn = validate_payload(ReadingIn, merged)
            values = {name: getattr(payload, name) for name in _SCALAR_FIELDS}
            self._update(tx, record_id, {**values, "updated_at": utcnow_iso()})
            return self._fetch(tx, record_id)

    def find_by_user_id(self, user_id: str, start_date=None, end_date=None, limit=None, offset=None):
        return self._find_by_user_id(
            user_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )

    def get_stats(self, user_id: str, days: int = 30) -> dict[str, Any]:
        row = self.db.get(
            """
            SELECT COUNT(*) AS count,
                   AVG(value) AS average,
                   MIN(value) AS min_value,
                   MAX(value) AS max_value,
                   SUM(CASE WHEN gout_attack = ? THEN 1 ELSE 0 END) AS gout_attacks
            FROM uric_acid_values
            WHERE user_id = ? AND timestamp >= ?
            """,
            [True, user_id, days_ago_iso(days)],
        ) or {}
        count = int(row.get("count") or 0)
        return {
            "count": count,
            "average": _round(row.get("average"), 2),
            "min": _round(row.get("min_value"), 2),
            "max": _round(row.get("max_value"), 2),
            "gout_attacks": int(row.get("gout_attacks") or 0),
        }

    def get_last_timestamp(self, user_id: str) -> str | None:
        row = self.db.get("SELECT MAX(timestamp) AS last FROM uric_acid_values WHERE user_id = ?", [user_id])
        return to_iso(row["last"]) if row else None


def _round(value, digits: int):
    if value is None:
        return None
    return round(float(value), digits)
