"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from latchkey.storage.models import (
    MUTABLE_ACCOUNT_FIELDS,
    Account,
    LinkedIdentity,
    Provider,
    TokenKind,
)


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(
        self, provider: Provider, provider_id: str
    ) -> Optional[Account]: ...

    def get_account_by_token_digest(
        self, kind: TokenKind, digest: str
    ) -> Optional[Account]: ...

    def update_account(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> Account: ...


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and compare them lowered."""
    return (email or "").strip().lower()


def validate_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - MUTABLE_ACCOUNT_FIELDS
    if unknown:
        raise ValueError(f"cannot update account fields: {sorted(unknown)}")
    normalized = dict(changes)
    if "email" in normalized:
        normalized["email"] = normalize_email(normalized["email"])
    if "linked_identities" in normalized:
        normalized["linked_identities"] = tuple(normalized["linked_identities"])
    return normalized


def serialize_identities(identities: Tuple[LinkedIdentity, ...]) -> list[dict]:
    return [
        {"provider": identity.provider.value, "provider_id": identity.provider_id}
        for identity in identities
    ]


def deserialize_identities(raw: Any) -> Tuple[LinkedIdentity, ...]:
    if not raw:
        return ()
    return tuple(
        LinkedIdentity(Provider(entry["provider"]), str(entry["provider_id"]))
        for entry in raw
    )


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely get a value from a database row (dict-like or object)."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)
