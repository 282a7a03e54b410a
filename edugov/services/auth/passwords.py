"""Password hashing for principals created through the admin surface."""

from __future__ import annotations

import logging

import bcrypt

from edugov.core.config import get_settings


logger = logging.getLogger(__name__)


class PasswordHasher:
    """bcrypt hashing with a configurable work factor.

    The work factor comes from ``PASSWORD_HASH_ROUNDS`` (default 12).
    """

    def __init__(self, rounds: int | None = None) -> None:
        self._rounds = rounds if rounds is not None else get_settings().password_hash_rounds

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("Password cannot be empty")
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError as exc:
            # Malformed stored hashes never authenticate.
            logger.warning("password_hash_invalid", exc_info=exc)
            return False


def hash_password(password: str) -> str:
    return PasswordHasher().hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return PasswordHasher().verify(password, password_hash)
