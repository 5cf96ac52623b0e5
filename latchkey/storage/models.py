from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    """Third-party identity providers an account may be linked to."""

    GOOGLE = "google"
    GITHUB = "github"
    FACEBOOK = "facebook"
    MICROSOFT = "microsoft"


class TokenKind(str, Enum):
    """Single-use tokens delivered by email."""

    ACTIVATION = "activation"
    RESET = "reset"


@dataclass(frozen=True)
class LinkedIdentity:
    provider: Provider
    provider_id: str


@dataclass
class Account:
    id: str
    email: str
    name: str
    # None means the account has no local password (provider-only)
    password_hash: Optional[str] = None
    active: bool = False
    password_changed_at: Optional[datetime] = None
    email_changed_at: Optional[datetime] = None
    activation_token_digest: Optional[str] = None
    activation_expires_at: Optional[datetime] = None
    reset_token_digest: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    linked_identities: Tuple[LinkedIdentity, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        active: bool = False,
        linked_identities: Tuple[LinkedIdentity, ...] = (),
        now: Optional[datetime] = None,
    ) -> "Account":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            active=active,
            password_changed_at=now if password_hash else None,
            linked_identities=tuple(linked_identities),
            created_at=now,
            updated_at=now,
        )

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    def providers(self) -> set[Provider]:
        return {identity.provider for identity in self.linked_identities}

    def token_digest(self, kind: TokenKind) -> Optional[str]:
        if kind is TokenKind.ACTIVATION:
            return self.activation_token_digest
        return self.reset_token_digest

    def token_expires_at(self, kind: TokenKind) -> Optional[datetime]:
        if kind is TokenKind.ACTIVATION:
            return self.activation_expires_at
        return self.reset_expires_at

    def sessions_valid_after(self) -> Optional[datetime]:
        """Latest credential change; sessions issued before it are superseded."""
        stamps = [
            stamp
            for stamp in (self.password_changed_at, self.email_changed_at)
            if stamp is not None
        ]
        return max(stamps) if stamps else None

    def copy(self) -> "Account":
        return replace(self)


# Fields a caller may change through update_account
MUTABLE_ACCOUNT_FIELDS = frozenset(
    {
        "email",
        "name",
        "password_hash",
        "active",
        "password_changed_at",
        "email_changed_at",
        "activation_token_digest",
        "activation_expires_at",
        "reset_token_digest",
        "reset_expires_at",
        "linked_identities",
    }
)
