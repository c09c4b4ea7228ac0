"""Credential hashing and token generation."""
import secrets

import bcrypt

API_KEY_LENGTH = 48
ID_LENGTH = 12
_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"


def hash_password(password: str) -> str:
    """Hash a plaintext password with bcrypt."""
    # bcrypt only looks at the first 72 bytes
    secret = password.encode("utf-8")[:72]
    return bcrypt.hashpw(secret, bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check a plaintext password against a stored bcrypt hash."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))
    except ValueError:
        return False


def random_token(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_api_key() -> str:
    return random_token(API_KEY_LENGTH)


def generate_id() -> str:
    return random_token(ID_LENGTH)


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)
