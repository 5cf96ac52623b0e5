from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.errors import WeakPasswordError

logger = get_logger(__name__)


class SecretHasher:
    """argon2id password hashing with configurable work factor."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost_kib=settings.password_memory_cost_kib,
            parallelism=settings.password_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: Optional[str]) -> bool:
        """Check ``plaintext`` against a stored hash; never raises."""
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return False


_POLICY_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
    (re.compile(r"[^A-Za-z0-9]"), "Password must contain at least one special character"),
)


def check_password_policy(password: str, min_length: int = 8) -> List[str]:
    """Return the list of unmet password rules (empty when acceptable)."""
    problems: List[str] = []
    if len(password or "") < min_length:
        problems.append(f"Password must be at least {min_length} characters")
    for pattern, message in _POLICY_RULES:
        if not pattern.search(password or ""):
            problems.append(message)
    return problems


def enforce_password_policy(password: str, min_length: int = 8) -> None:
    problems = check_password_policy(password, min_length)
    if problems:
        raise WeakPasswordError(
            "Password does not meet requirements", detail={"errors": problems}
        )
