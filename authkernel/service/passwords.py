from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from typing import List

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.logging import get_logger
from authkernel.service.constants import (
    MSG_PASSWORDS_MISMATCH,
    PASSWORD_MAX_LENGTH,
    PASSWORD_MIN_LENGTH,
    PASSWORD_SPECIAL_CHARS,
)
from authkernel.service.errors import BadRequestError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


@dataclass
class PasswordStrength:
    valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordHasher:
    """argon2id hashing with a configurable work factor.

    ``cost`` maps onto argon2's time cost (iterations); memory cost is
    configured separately. Both calls are CPU bound, so async callers run
    them through ``asyncio.to_thread``.
    """

    algo = PASSWORD_ALGO

    def __init__(self, cost: int = 10, memory_kib: int = 19456) -> None:
        self.cost = cost
        self.memory_kib = memory_kib
        self._hasher = Argon2Hasher(
            time_cost=cost,
            memory_cost=memory_kib,
            parallelism=1,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True


def check_strength(plaintext: str) -> PasswordStrength:
    """Apply the password policy used by registration, reset and change."""
    errors: List[str] = []
    password = plaintext or ""
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"password must be at most {PASSWORD_MAX_LENGTH} characters long")
    if not any(c.isupper() for c in password):
        errors.append("password must contain at least one uppercase letter")
    if not any(c.islower() for c in password):
        errors.append("password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in password):
        errors.append("password must contain at least one number")
    if not any(c in PASSWORD_SPECIAL_CHARS for c in password):
        errors.append("password must contain at least one special character")
    return PasswordStrength(valid=not errors, errors=errors)


def generate_random_password(length: int = 12) -> str:
    """Random password that always satisfies ``check_strength``."""
    length = max(length, PASSWORD_MIN_LENGTH)
    pools = [
        string.ascii_uppercase,
        string.ascii_lowercase,
        string.digits,
        PASSWORD_SPECIAL_CHARS,
    ]
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def passwords_match(password: str, confirmation: str) -> None:
    if not secrets.compare_digest(password.encode(), confirmation.encode()):
        raise BadRequestError(MSG_PASSWORDS_MISMATCH)
