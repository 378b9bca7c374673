import hashlib
import secrets

import bcrypt

API_KEY_PREFIX = "hst_"


def normalize_username(username: str) -> str:
    return " ".join((username or "").strip().split())


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str | None) -> bool:
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(16)}"


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()
