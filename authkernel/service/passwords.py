"""Peppered argon2id hashing with a uniform-cost failure path.

Login code must call :meth:`PasswordVerifier.verify` on every attempt, passing
``None`` when the account has no credential. The verifier then checks against a
reference hash computed at startup with the same parameters, so a missing
account costs the same as a wrong password.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.logging import get_logger
from authkernel.service.crypto import random_token

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


@dataclass(frozen=True)
class Argon2Params:
    memory_cost: int = 19456
    time_cost: int = 2
    parallelism: int = 1

    @classmethod
    def from_settings(cls, settings) -> "Argon2Params":
        return cls(
            memory_cost=settings.argon2_memory_cost,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hasher(self) -> PasswordHasher:
        return PasswordHasher(
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            type=Type.ID,
        )


def hash_password(password: str, pepper: str, params: Optional[Argon2Params] = None) -> str:
    hasher = (params or Argon2Params()).hasher()
    return hasher.hash(password + pepper)


def verify_password(
    password_hash: str,
    password: str,
    pepper: str,
    *,
    hasher: Optional[PasswordHasher] = None,
) -> bool:
    """Return True only for a matching hash; malformed input yields False."""
    # argon2-cffi reads the cost parameters from the encoded hash itself
    hasher = hasher or PasswordHasher(type=Type.ID)
    try:
        return hasher.verify(password_hash, password + pepper)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError, TypeError, ValueError):
        logger.warning("password_hash_malformed")
        return False


class PasswordVerifier:
    """Binds the pepper and hashing parameters for the service layer."""

    def __init__(self, pepper: str, params: Optional[Argon2Params] = None) -> None:
        self.pepper = pepper
        self.params = params or Argon2Params()
        self._hasher = self.params.hasher()
        # Built once per process; nobody knows the plaintext
        self._reference_hash = self._hasher.hash(random_token(32) + pepper)

    @classmethod
    def from_settings(cls, settings) -> "PasswordVerifier":
        return cls(settings.pepper, Argon2Params.from_settings(settings))

    @property
    def algorithm(self) -> str:
        return PASSWORD_ALGO

    def hash(self, password: str) -> str:
        return self._hasher.hash(password + self.pepper)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            # Result discarded; the work keeps the timing uniform
            verify_password(self._reference_hash, password, self.pepper, hasher=self._hasher)
            return False
        return verify_password(password_hash, password, self.pepper, hasher=self._hasher)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHash, ValueError):
            return True


__all__ = [
    "PASSWORD_ALGO",
    "Argon2Params",
    "PasswordVerifier",
    "hash_password",
    "verify_password",
]
