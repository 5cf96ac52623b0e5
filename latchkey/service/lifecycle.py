"""Issue, verify and single-use consume activation and reset tokens.

Each kind has at most one outstanding token per account: issuing writes a
fresh digest over the previous one, and consuming clears the digest in the
same conditional update as the account change it authorises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from latchkey.config import Settings
from latchkey.logging import email_fingerprint, get_logger
from latchkey.service.errors import (
    ConcurrentUpdateError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    store_errors,
)
from latchkey.service.tokens import TokenGenerator
from latchkey.storage.common import AccountStore
from latchkey.storage.errors import ConstraintViolation, StaleRecord
from latchkey.storage.models import Account, TokenKind, utcnow

logger = get_logger(__name__)

_FIELDS = {
    TokenKind.ACTIVATION: ("activation_token_digest", "activation_expires_at"),
    TokenKind.RESET: ("reset_token_digest", "reset_expires_at"),
}


@dataclass(frozen=True)
class IssuedToken:
    kind: TokenKind
    token: str = field(repr=False)
    expires_at: datetime
    account: Account
    # digest/expiry that were stored before this issuance
    previous: Dict[str, Any] = field(default_factory=dict, repr=False)


def outstanding_fields(
    kind: TokenKind, digest: str, expires_at: datetime
) -> Dict[str, Any]:
    digest_field, expires_field = _FIELDS[kind]
    return {digest_field: digest, expires_field: expires_at}


def cleared_fields(kind: TokenKind) -> Dict[str, Any]:
    digest_field, expires_field = _FIELDS[kind]
    return {digest_field: None, expires_field: None}


def current_fields(account: Account, kind: TokenKind) -> Dict[str, Any]:
    digest_field, expires_field = _FIELDS[kind]
    return {
        digest_field: account.token_digest(kind),
        expires_field: account.token_expires_at(kind),
    }


def check_outstanding(
    account: Optional[Account], kind: TokenKind, digest: str, now: datetime
) -> Account:
    """Raise unless ``account`` holds an unexpired token with ``digest``."""
    if account is None or not digest or account.token_digest(kind) != digest:
        raise TokenInvalidError("Token is invalid or has already been used")
    expires_at = account.token_expires_at(kind)
    if expires_at is None:
        raise TokenInvalidError("Token is invalid or has already been used")
    if now >= expires_at:
        raise TokenExpiredError("Token has expired; request a new one")
    return account


class TokenLifecycleManager:
    def __init__(
        self,
        store: AccountStore,
        generator: TokenGenerator,
        *,
        activation_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(minutes=10),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self._windows = {
            TokenKind.ACTIVATION: activation_ttl,
            TokenKind.RESET: reset_ttl,
        }
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls,
        store: AccountStore,
        generator: TokenGenerator,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "TokenLifecycleManager":
        return cls(
            store,
            generator,
            activation_ttl=timedelta(minutes=settings.activation_token_ttl_minutes),
            reset_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
            clock=clock,
        )

    def window(self, kind: TokenKind) -> timedelta:
        return self._windows[kind]

    def issue(self, kind: TokenKind, account: Account) -> IssuedToken:
        """Store a fresh token for ``account``, replacing any outstanding one."""
        generated = self.generator.generate()
        expires_at = self._clock() + self.window(kind)
        try:
            with store_errors():
                updated = self.store.update_account(
                    account.id,
                    outstanding_fields(kind, generated.digest, expires_at),
                    expected_version=account.version,
                )
        except StaleRecord as exc:
            logger.warning("token_issue_conflict", kind=kind.value, account_id=account.id)
            raise ConcurrentUpdateError("Account changed concurrently; try again") from exc
        except ConstraintViolation as exc:
            raise NotFoundError("Account not found") from exc
        logger.info(
            "token_issued",
            kind=kind.value,
            account_id=account.id,
            token_digest_prefix=generated.digest[:8],
            expires_at=expires_at.isoformat(),
        )
        return IssuedToken(
            kind=kind,
            token=generated.token,
            expires_at=expires_at,
            account=updated,
            previous=current_fields(account, kind),
        )

    def issue_for_email(self, kind: TokenKind, email: str) -> IssuedToken:
        with store_errors():
            account = self.store.get_account_by_email(email)
        if account is None:
            logger.info(
                "token_issue_unknown_email",
                kind=kind.value,
                email_hash=email_fingerprint(email),
            )
            raise NotFoundError("Account not found")
        return self.issue(kind, account)

    def consume(
        self,
        kind: TokenKind,
        token: str,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Account:
        """Verify ``token`` and apply ``changes`` while clearing it.

        Of several concurrent consumers of the same token at most one wins;
        the others get ``TokenInvalidError``.
        """
        digest = self.generator.digest(token) if token else ""
        with store_errors():
            account = (
                self.store.get_account_by_token_digest(kind, digest) if digest else None
            )
        try:
            check_outstanding(account, kind, digest, self._clock())
        except (TokenInvalidError, TokenExpiredError) as exc:
            logger.info(
                "token_rejected",
                kind=kind.value,
                reason=exc.error_code,
                token_digest_prefix=digest[:8],
            )
            raise
        fields = {**dict(changes or {}), **cleared_fields(kind)}
        try:
            with store_errors():
                updated = self.store.update_account(
                    account.id, fields, expected_version=account.version
                )
        except (StaleRecord, ConstraintViolation) as exc:
            logger.info(
                "token_consume_lost_race", kind=kind.value, account_id=account.id
            )
            raise TokenInvalidError("Token is invalid or has already been used") from exc
        logger.info("token_consumed", kind=kind.value, account_id=account.id)
        return updated

    def rollback(self, issued: IssuedToken) -> bool:
        """Restore the token fields that ``issued`` overwrote.

        Only applies if nothing else has written the account since; returns
        whether the rollback happened.
        """
        try:
            with store_errors():
                self.store.update_account(
                    issued.account.id,
                    issued.previous,
                    expected_version=issued.account.version,
                )
        except (StaleRecord, ConstraintViolation):
            logger.warning(
                "token_rollback_skipped",
                kind=issued.kind.value,
                account_id=issued.account.id,
            )
            return False
        logger.info(
            "token_rolled_back", kind=issued.kind.value, account_id=issued.account.id
        )
        return True
