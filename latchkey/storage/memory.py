from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from latchkey.logging import get_logger
from latchkey.storage.common import (
    deserialize_identities,
    normalize_email,
    serialize_identities,
    validate_changes,
)
from latchkey.storage.errors import ConstraintViolation, StaleRecord, StoreUnavailable
from latchkey.storage.models import Account, Provider, TokenKind, utcnow


class MemoryStore:
    """In-memory account store with optional JSON state persistence.

    Every mutation happens under one re-entrant lock and returns copies, so
    ``update_account`` behaves as a compare-and-swap on ``Account.version``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # account records
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            email = normalize_email(account.email)
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            for identity in account.linked_identities:
                if self._identity_owner(identity.provider, identity.provider_id):
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"provider": identity.provider.value},
                    )
            stored = replace(account, email=email, version=1)
            self.accounts[stored.id] = stored
            try:
                self._persist_state()
            except StoreUnavailable:
                del self.accounts[stored.id]
                raise
            return stored.copy()

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return account.copy() if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return account.copy() if account else None

    def get_account_by_provider(
        self, provider: Provider, provider_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._identity_owner(provider, provider_id)
            return account.copy() if account else None

    def get_account_by_token_digest(
        self, kind: TokenKind, digest: str
    ) -> Optional[Account]:
        if not digest:
            return None
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.token_digest(kind) == digest),
                None,
            )
            return account.copy() if account else None

    def update_account(
        self,
        account_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> Account:
        normalized = validate_changes(changes)
        with self._data_lock:
            current = self.accounts.get(account_id)
            if current is None:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            if current.version != expected_version:
                raise StaleRecord(account_id, expected_version)
            if "email" in normalized and normalized["email"] != current.email:
                if any(
                    other.email == normalized["email"]
                    for other in self.accounts.values()
                    if other.id != account_id
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for identity in normalized.get("linked_identities", ()):
                owner = self._identity_owner(identity.provider, identity.provider_id)
                if owner is not None and owner.id != account_id:
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"provider": identity.provider.value},
                    )
            updated = replace(
                current,
                **normalized,
                version=current.version + 1,
                updated_at=utcnow(),
            )
            self.accounts[account_id] = updated
            try:
                self._persist_state()
            except StoreUnavailable:
                self.accounts[account_id] = current
                raise
            return updated.copy()

    def _identity_owner(self, provider: Provider, provider_id: str) -> Optional[Account]:
        for account in self.accounts.values():
            for identity in account.linked_identities:
                if identity.provider == provider and identity.provider_id == provider_id:
                    return account
        return None

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"accounts": [self._serialize_account(a) for a in self.accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "name": account.name,
            "password_hash": account.password_hash,
            "active": account.active,
            "password_changed_at": self._serialize_datetime(account.password_changed_at),
            "email_changed_at": self._serialize_datetime(account.email_changed_at),
            "activation_token_digest": account.activation_token_digest,
            "activation_expires_at": self._serialize_datetime(
                account.activation_expires_at
            ),
            "reset_token_digest": account.reset_token_digest,
            "reset_expires_at": self._serialize_datetime(account.reset_expires_at),
            "linked_identities": serialize_identities(account.linked_identities),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "version": account.version,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash"),
            active=bool(data.get("active", False)),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            email_changed_at=self._deserialize_datetime(data.get("email_changed_at")),
            activation_token_digest=data.get("activation_token_digest"),
            activation_expires_at=self._deserialize_datetime(
                data.get("activation_expires_at")
            ),
            reset_token_digest=data.get("reset_token_digest"),
            reset_expires_at=self._deserialize_datetime(data.get("reset_expires_at")),
            linked_identities=deserialize_identities(data.get("linked_identities")),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            version=int(data.get("version", 1)),
        )
