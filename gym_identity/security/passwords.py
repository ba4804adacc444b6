"""bcrypt password hashing and reset-token digests. Plaintext secrets are never logged."""

from __future__ import annotations

import hashlib
import secrets
from functools import lru_cache

import bcrypt

from ..config import get_settings


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Hash a plaintext password with bcrypt using the configured cost."""
    cost = rounds or get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return ``True`` when ``plain`` matches ``hashed``; malformed or missing hashes never match."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("dummy-password-for-timing")


def burn_verification(plain: str) -> None:
    """Spend the cost of one bcrypt check when no account matched the identifier."""
    verify_password(plain, _dummy_hash())


def new_reset_token() -> tuple[str, str]:
    """Return a one-time password reset token and the digest that is stored for it."""
    token = secrets.token_hex(32)
    return token, hash_reset_token(token)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
