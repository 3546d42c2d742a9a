from __future__ import annotations

import secrets
import string
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

PASSWORD_ALGO = "argon2id"
_APP_PASSWORD_ALPHABET = string.ascii_letters + string.digits


class Passwords:
    """argon2id hashing shared by primary and application passwords."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def burn(self, password: str) -> None:
        """Spend one verification so unknown accounts cost the same as known ones."""

        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(self._dummy_hash, password)

    @staticmethod
    def generate_app_password(length: int = 24) -> str:
        return "".join(secrets.choice(_APP_PASSWORD_ALPHABET) for _ in range(length))
