import logging
import uuid
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.utils import normalize_username, verify_password
from db.errors import RecordValidationError
from db.models import USERS
from repositories.base import Repository, integrity_errors
from repositories.schemas import UserIn, field_names, validate_payload
from utils.datetime_utils import utcnow_iso

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = ("gender", "birth_year", "email", "last_backup_timestamp")


class UserRepository(Repository):
    """Users keyed externally by their correlation id (``guid``)."""

    table = USERS
    entity = "user"

    def __init__(self, db, *, development: bool = False):
        super().__init__(db)
        self.development = development

    def find_by_guid(self, guid: str) -> dict[str, Any] | None:
        return self.to_record(self.db.get("SELECT * FROM users WHERE guid = ?", [guid]))

    def find_by_username(self, username: str) -> dict[str, Any] | None:
        return self.to_record(self.db.get("SELECT * FROM users WHERE username = ?", [normalize_username(username)]))

    def find_by_email(self, email: str) -> dict[str, Any] | None:
        return self.to_record(self.db.get("SELECT * FROM users WHERE email = ?", [email.strip()]))

    def find_by_google_id(self, google_id: str) -> dict[str, Any] | None:
        return self.to_record(self.db.get("SELECT * FROM users WHERE google_id = ?", [google_id]))

    def get_all(self) -> list[dict[str, Any]]:
        return [self.to_record(row) for row in self.db.all("SELECT * FROM users ORDER BY created_at DESC")]

    def create(self, data: Any) -> dict[str, Any]:
        """Create a user, or refresh the profile of the user already holding ``guid``.

        A concurrent first write for the same guid is absorbed: when the insert
        collides, the row the other writer created is returned instead.
        """
        payload: UserIn = validate_payload(UserIn, data)
        if payload.guid:
            existing = self.find_by_guid(payload.guid)
            if existing is not None:
                return self._refresh_profile(existing, payload)

        guid = payload.guid or str(uuid.uuid4())
        record_id = payload.id or str(uuid.uuid4())
        now = utcnow_iso()
        values = {
            "id": record_id,
            "guid": guid,
            "gender": payload.gender,
            "birth_year": payload.birth_year,
            "last_backup_timestamp": payload.last_backup_timestamp,
            "email": payload.email,
            "google_id": payload.google_id,
            "username": normalize_username(payload.username) if payload.username else None,
            "password_hash": payload.password_hash,
            "is_admin": self._resolve_admin(payload),
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self.db.transaction() as tx:
                self._insert(tx, values)
        except IntegrityError as exc:
            raced = self.find_by_guid(guid)
            if raced is not None:
                logger.info("User %s was created concurrently; using the stored row", guid)
                return raced
            raise RecordValidationError(f"user violates a constraint: {exc.orig}") from exc

        logger.info("Created user %s%s", guid, " (admin)" if values["is_admin"] else "")
        return self.find_by_id(record_id)

    def get_or_create(self, guid: str) -> dict[str, Any]:
        existing = self.find_by_guid(guid)
        if existing is not None:
            return existing
        return self.create({"guid": guid})

    def create_or_update(self, data: Any) -> dict[str, Any]:
        payload: UserIn = validate_payload(UserIn, data)
        existing = self.find_by_guid(payload.guid) if payload.guid else None
        if existing is None:
            return self.create(payload)
        return self.update(payload.guid, payload.model_dump(exclude_unset=True))

    def update(self, guid: str, data: Any) -> dict[str, Any] | None:
        """Partial update by guid. ``last_backup_timestamp`` is kept unless given."""
        existing = self.find_by_guid(guid)
        if existing is None:
            return None
        if isinstance(data, UserIn):
            changes = data.model_dump(exclude_unset=True)
        else:
            changes = field_names(UserIn, data)
        merged = {**existing, **changes}
        payload: UserIn = validate_payload(UserIn, merged)

        values = {
            "gender": payload.gender,
            "birth_year": payload.birth_year,
            "last_backup_timestamp": payload.last_backup_timestamp,
            "email": payload.email,
            "google_id": payload.google_id,
            "username": normalize_username(payload.username) if payload.username else None,
            "password_hash": payload.password_hash,
            # Admin needs credentials; dropping them also drops the flag.
            "is_admin": bool(payload.is_admin) and payload.has_credentials,
            "updated_at": utcnow_iso(),
        }
        with integrity_errors(self.entity), self.db.transaction() as tx:
            self._update(tx, existing["id"], values)
        return self.find_by_guid(guid)

    def update_last_backup(self, guid: str, timestamp=None) -> dict[str, Any] | None:
        return self.update(guid, {"last_backup_timestamp": timestamp or utcnow_iso()})

    def verify_password(self, user: dict[str, Any] | None, password: str) -> bool:
        if not user:
            return False
        return verify_password(password, user.get("password_hash"))

    def _refresh_profile(self, existing: dict[str, Any], payload: UserIn) -> dict[str, Any]:
        provided = payload.model_fields_set & set(_PROFILE_FIELDS)
        if not any(getattr(payload, name) is not None for name in provided):
            return existing
        with integrity_errors(self.entity), self.db.transaction() as tx:
            tx.run(
                """
                UPDATE users
                SET gender = COALESCE(?, gender),
                    birth_year = COALESCE(?, birth_year),
                    email = COALESCE(?, email),
                    last_backup_timestamp = COALESCE(?, last_backup_timestamp),
                    updated_at = ?
                WHERE id = ?
                """,
                [
                    payload.gender,
                    payload.birth_year,
                    payload.email,
                    payload.last_backup_timestamp,
                    utcnow_iso(),
                    existing["id"],
                ],
            )
        return self.find_by_id(existing["id"])

    def _resolve_admin(self, payload: UserIn) -> bool:
        # Only username+password accounts can ever be administrators.
        if not payload.has_credentials:
            return False
        if payload.is_admin is not None:
            return bool(payload.is_admin)
        if self.development:
            return True
        row = self.db.get("SELECT COUNT(*) AS count FROM users WHERE username IS NOT NULL AND password_hash IS NOT NULL")
        return int(row["count"] if row else 0) == 0
