import logging
import uuid
from typing import Any

from auth.utils import generate_api_key, hash_api_key
from db.dialect import to_bool
from db.errors import RecordValidationError
from db.models import API_KEYS
from repositories.base import Repository, integrity_errors
from repositories.schemas import ApiKeyIn, field_names, validate_payload
from utils.datetime_utils import utcnow_iso

logger = logging.getLogger(__name__)

PERMISSIONS = (
    "can_read_own_uric_acid",
    "can_write_own_uric_acid",
    "can_read_own_meals",
    "can_write_own_meals",
    "can_read_all_uric_acid",
    "can_read_all_meals",
)

# A read of one's own data is also granted by the matching read-all scope.
# Nothing implies a write scope.
_IMPLIED_BY = {
    "can_read_own_uric_acid": ("can_read_all_uric_acid",),
    "can_read_own_meals": ("can_read_all_meals",),
}


def has_permission(api_key: dict[str, Any] | None, permission: str) -> bool:
    if not api_key or not api_key.get("is_active", True):
        return False
    if permission not in PERMISSIONS:
        raise ValueError(f"Unknown API key permission: {permission}")
    if api_key.get(permission):
        return True
    return any(api_key.get(broader) for broader in _IMPLIED_BY.get(permission, ()))


def can_access_user_data(api_key: dict[str, Any] | None, own_guid: str | None, requested_guid: str) -> bool:
    """Keys with a read-all scope see everyone; other keys only their owner's guid."""
    if not api_key or not api_key.get("is_active", True):
        return False
    if api_key.get("can_read_all_uric_acid") or api_key.get("can_read_all_meals"):
        return True
    return bool(own_guid) and own_guid == requested_guid


class ApiKeyRepository(Repository):
    """Service keys. Only the sha256 hash of a key is stored."""

    table = API_KEYS
    entity = "api key"

    generate_key = staticmethod(generate_api_key)
    hash_key = staticmethod(hash_api_key)
    has_permission = staticmethod(has_permission)
    can_access_user_data = staticmethod(can_access_user_data)

    def create(self, data: Any) -> dict[str, Any]:
        """Generate a key and store its hash. The plaintext is returned here only."""
        key = generate_api_key()
        record = self._store(validate_payload(ApiKeyIn, data), hash_api_key(key))
        return {**record, "key": key}

    def create_with_key(self, key: str, data: Any) -> dict[str, Any]:
        """Store a caller-chosen key; refuses a key whose hash already exists."""
        if not key:
            raise RecordValidationError("API key must not be empty", field="key")
        key_hash = hash_api_key(key)
        if self.db.get("SELECT id FROM api_keys WHERE key_hash = ?", [key_hash]) is not None:
            raise RecordValidationError("API key already exists", field="key")
        record = self._store(validate_payload(ApiKeyIn, data), key_hash)
        return {**record, "key": key}

    def get_all(self) -> list[dict[str, Any]]:
        rows = self.db.all("SELECT * FROM api_keys ORDER BY created_at DESC")
        return [self._public(self.to_record(row)) for row in rows]

    def find_by_key(self, key: str) -> dict[str, Any] | None:
        return self.find_by_key_hash(hash_api_key(key))

    def find_by_key_hash(self, key_hash: str) -> dict[str, Any] | None:
        """Active key for ``key_hash``. A NULL active flag counts as active and is repaired."""
        row = self.db.get("SELECT * FROM api_keys WHERE key_hash = ?", [key_hash])
        if row is None:
            return None
        if row.get("is_active") is None:
            logger.warning("API key %s had no active flag; marking active", row["id"])
            self.db.run("UPDATE api_keys SET is_active = ? WHERE id = ?", [True, row["id"]])
            row["is_active"] = True
        record = self.to_record(row)
        if not record["is_active"]:
            return None
        return record

    def find_by_id(self, record_id: str) -> dict[str, Any] | None:
        return self._public(super().find_by_id(record_id))

    def update(self, record_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
        """Change name, description, permissions or the active flag."""
        existing = self.find_by_id(record_id)
        if existing is None:
            return None
        changes = field_names(ApiKeyIn, data)
        payload: ApiKeyIn = validate_payload(ApiKeyIn, {**existing, **changes})
        values: dict[str, Any] = {name: getattr(payload, name) for name in changes if name != "created_by"}
        if "is_active" in data or "isActive" in data:
            values["is_active"] = to_bool(data.get("is_active", data.get("isActive")))
        if values:
            with integrity_errors(self.entity), self.db.transaction() as tx:
                self._update(tx, record_id, values)
        return self.find_by_id(record_id)

    def update_last_used(self, record_id: str) -> None:
        self.db.run("UPDATE api_keys SET last_used_at = ? WHERE id = ?", [utcnow_iso(), record_id])

    def delete(self, record_id: str) -> bool:
        """Deactivate; rows are kept so the hash can never be reissued."""
        result = self.db.run("UPDATE api_keys SET is_active = ? WHERE id = ?", [False, record_id])
        return result.changes > 0

    def _store(self, payload: ApiKeyIn, key_hash: str) -> dict[str, Any]:
        record_id = str(uuid.uuid4())
        values = {
            "id": record_id,
            "key_hash": key_hash,
            "name": payload.name,
            "description": payload.description,
            **{name: getattr(payload, name) for name in PERMISSIONS},
            "created_by": payload.created_by,
            "created_at": utcnow_iso(),
            "is_active": True,
        }
        with integrity_errors(self.entity), self.db.transaction() as tx:
            self._insert(tx, values)
        logger.info("Created API key %s (%s)", record_id, payload.name)
        return self._public(self.find_by_id(record_id))

    @staticmethod
    def _public(record: dict[str, Any] | None) -> dict[str, Any] | None:
        if record is None:
            return None
        return {name: value for name, value in record.items() if name != "key_hash"}
