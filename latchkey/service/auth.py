from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from latchkey.config import Settings
from latchkey.logging import email_fingerprint, get_logger
from latchkey.service.email import Mailer, MailKind
from latchkey.service.errors import (
    AccountInactiveError,
    AlreadyExistsError,
    ConcurrentUpdateError,
    InvalidCredentialError,
    MailDeliveryError,
    NotFoundError,
    ValidationError,
    store_errors,
)
from latchkey.service.identities import IdentityLinker, ProviderProfile
from latchkey.service.lifecycle import IssuedToken, TokenLifecycleManager, cleared_fields
from latchkey.service.passwords import SecretHasher, enforce_password_policy
from latchkey.service.sessions import CookieSpec, IssuedSession, SessionIssuer
from latchkey.storage.common import AccountStore, normalize_email
from latchkey.storage.errors import ConstraintViolation, StaleRecord
from latchkey.storage.models import Account, Provider, TokenKind, utcnow

logger = get_logger(__name__)

_TOKEN_MAIL = {
    TokenKind.ACTIVATION: (MailKind.ACTIVATION, "activate"),
    TokenKind.RESET: (MailKind.PASSWORD_RESET, "reset-password"),
}


@dataclass(frozen=True)
class AuthResult:
    account: Account
    session: IssuedSession


def describe_window(window: timedelta) -> str:
    """Human wording for a token lifetime, e.g. ``24 hours`` or ``10 minutes``."""
    seconds = int(window.total_seconds())
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(seconds // 60, 1)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def _validated_email(email: str) -> str:
    normalized = normalize_email(email)
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain or " " in normalized:
        raise ValidationError("Please provide a valid email address")
    return normalized


def _validated_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Please tell us your name")
    return cleaned


class AuthService:
    """Account registration, login, token flows and provider sign-in.

    Every collaborator is handed in by the caller (see ``Runtime``). Methods
    return data or raise ``ServiceError`` subclasses; turning those into
    HTTP responses and writing cookies is left to the route handlers.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: SecretHasher,
        lifecycle: TokenLifecycleManager,
        linker: IdentityLinker,
        sessions: SessionIssuer,
        mailer: Mailer,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lifecycle = lifecycle
        self.linker = linker
        self.sessions = sessions
        self.mailer = mailer
        self.settings = settings
        self._clock = clock or utcnow
        self._dummy_hash: Optional[str] = None

    # ------------------------------------------------------------------
    # registration and activation

    def register(
        self, name: str, email: str, password: str, password_confirm: str
    ) -> Account:
        name = _validated_name(name)
        email = _validated_email(email)
        if password != password_confirm:
            raise InvalidCredentialError("Passwords do not match")
        enforce_password_policy(password, self.settings.password_min_length)

        with store_errors():
            existing = self.store.get_account_by_email(email)
        if existing is not None:
            raise AlreadyExistsError("An account with this email already exists")

        account = Account.new(
            email, name, password_hash=self.hasher.hash(password), now=self._clock()
        )
        try:
            with store_errors():
                created = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise AlreadyExistsError(
                "An account with this email already exists", detail=exc.detail
            ) from exc
        logger.info(
            "account_registered",
            account_id=created.id,
            email_hash=email_fingerprint(email),
        )

        issued = self.lifecycle.issue(TokenKind.ACTIVATION, created)
        if not self._send_token_mail(issued):
            raise MailDeliveryError(
                "We could not send the activation email; request a new one shortly"
            )
        return issued.account

    def resend_activation(self, email: str) -> None:
        """Send a fresh activation link; the outcome is never revealed."""
        email = normalize_email(email)
        with store_errors():
            account = self.store.get_account_by_email(email)
        if account is None or account.active:
            logger.info(
                "activation_resend_skipped",
                email_hash=email_fingerprint(email),
                reason="unknown" if account is None else "already_active",
            )
            return None
        try:
            issued = self.lifecycle.issue(TokenKind.ACTIVATION, account)
        except (NotFoundError, ConcurrentUpdateError) as exc:
            logger.warning(
                "activation_resend_failed", account_id=account.id, reason=exc.error_code
            )
            return None
        self._send_token_mail(issued)
        return None

    def activate(self, token: str) -> AuthResult:
        account = self.lifecycle.consume(
            TokenKind.ACTIVATION, token, {"active": True}
        )
        logger.info("account_activated", account_id=account.id)
        return AuthResult(account=account, session=self.sessions.issue(account.id))

    # ------------------------------------------------------------------
    # login / logout / session checks

    def login(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        with store_errors():
            account = self.store.get_account_by_email(email)
        if account is None or not account.has_password:
            # burn the same hashing time as a real check
            self.hasher.verify(password or "", self._placeholder_hash())
            logger.info(
                "login_failed",
                email_hash=email_fingerprint(email),
                reason="unknown_account" if account is None else "no_local_password",
            )
            raise InvalidCredentialError("Incorrect email or password")
        if not self.hasher.verify(password or "", account.password_hash):
            logger.info("login_failed", account_id=account.id, reason="bad_password")
            raise InvalidCredentialError("Incorrect email or password")
        if not account.active:
            raise AccountInactiveError("Please activate your account before logging in")

        account = self._maybe_rehash(account, password)
        logger.info("login_succeeded", account_id=account.id)
        return AuthResult(account=account, session=self.sessions.issue(account.id))

    def logout(self) -> CookieSpec:
        return self.sessions.clear_cookie()

    def authenticate(self, token: str) -> Account:
        """Resolve a bearer session token to its active account."""
        return self.sessions.resolve(token)

    # ------------------------------------------------------------------
    # password reset and change

    def forgot_password(self, email: str) -> None:
        """Email a reset link if the address is registered.

        The result is the same whether or not the address exists, and a
        failed delivery only rolls the token back.
        """
        email = normalize_email(email)
        try:
            issued = self.lifecycle.issue_for_email(TokenKind.RESET, email)
        except NotFoundError:
            return None
        except ConcurrentUpdateError:
            logger.warning("password_reset_issue_conflict", email_hash=email_fingerprint(email))
            return None
        logger.info("password_reset_requested", account_id=issued.account.id)
        self._send_token_mail(issued)
        return None

    def reset_password(
        self, token: str, password: str, password_confirm: str
    ) -> AuthResult:
        if password != password_confirm:
            raise InvalidCredentialError("Passwords do not match")
        enforce_password_policy(password, self.settings.password_min_length)
        password_hash = self.hasher.hash(password)
        now = self._clock()
        # the reset link proves control of the address, so it also activates
        changes: Dict[str, Any] = {
            "password_hash": password_hash,
            "password_changed_at": now,
            "active": True,
            **cleared_fields(TokenKind.ACTIVATION),
        }
        account = self.lifecycle.consume(TokenKind.RESET, token, changes)
        logger.info("password_reset_completed", account_id=account.id)
        return AuthResult(
            account=account, session=self.sessions.issue(account.id, issued_at=now)
        )

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        password_confirm: str,
    ) -> AuthResult:
        account = self._load(account_id)
        if not self.hasher.verify(current_password or "", account.password_hash):
            logger.info("password_change_rejected", account_id=account.id)
            raise InvalidCredentialError("Your current password is wrong")
        if new_password != password_confirm:
            raise InvalidCredentialError("Passwords do not match")
        enforce_password_policy(new_password, self.settings.password_min_length)

        now = self._clock()
        updated = self._update(
            account,
            {
                "password_hash": self.hasher.hash(new_password),
                "password_changed_at": now,
                **cleared_fields(TokenKind.RESET),
            },
        )
        logger.info("password_changed", account_id=updated.id)
        return AuthResult(
            account=updated, session=self.sessions.issue(updated.id, issued_at=now)
        )

    # ------------------------------------------------------------------
    # profile

    def change_email(self, account_id: str, password: str, new_email: str) -> AuthResult:
        account = self._load(account_id)
        new_email = _validated_email(new_email)
        if new_email == account.email:
            raise ValidationError("New email must be different from the current one")
        if not self.hasher.verify(password or "", account.password_hash):
            logger.info("email_change_rejected", account_id=account.id)
            raise InvalidCredentialError("Incorrect password")
        with store_errors():
            taken = self.store.get_account_by_email(new_email)
        if taken is not None:
            raise AlreadyExistsError("This email is already in use")

        now = self._clock()
        previous = {"email": account.email, "email_changed_at": account.email_changed_at}
        updated = self._update(account, {"email": new_email, "email_changed_at": now})
        if not self._deliver(MailKind.EMAIL_CHANGED, account.email, None, None):
            self._revert(updated, previous, "email_change")
            raise MailDeliveryError(
                "We could not notify your current address; the email was not changed"
            )
        logger.info(
            "email_changed",
            account_id=updated.id,
            email_hash=email_fingerprint(new_email),
        )
        return AuthResult(
            account=updated, session=self.sessions.issue(updated.id, issued_at=now)
        )

    def update_profile(self, account_id: str, name: str) -> Account:
        account = self._load(account_id)
        updated = self._update(account, {"name": _validated_name(name)})
        logger.info("profile_updated", account_id=updated.id)
        return updated

    # ------------------------------------------------------------------
    # provider identities

    def complete_oauth(self, profile: ProviderProfile) -> AuthResult:
        """Sign in with a provider profile, merging into an existing account by email."""
        account = self.linker.resolve_or_create_from_provider(
            profile.provider,
            profile.provider_id,
            profile.email,
            profile.display_name,
        )
        if not account.active:
            raise AccountInactiveError("Account is not active")
        logger.info(
            "oauth_login_succeeded",
            account_id=account.id,
            provider=profile.provider.value,
        )
        return AuthResult(account=account, session=self.sessions.issue(account.id))

    def link_provider(
        self, account_id: str, provider: Provider, provider_id: str
    ) -> Account:
        return self.linker.link(self._load(account_id), provider, provider_id)

    def unlink_provider(self, account_id: str, provider: Provider) -> Account:
        return self.linker.unlink(self._load(account_id), provider)

    # ------------------------------------------------------------------
    # helpers

    def token_link(self, kind: TokenKind, token: str) -> str:
        _, path = _TOKEN_MAIL[kind]
        return f"{self.settings.app_base_url.rstrip('/')}/{path}/{token}"

    def _send_token_mail(self, issued: IssuedToken) -> bool:
        """Mail the token link; on failure undo the issuance and return False."""
        mail_kind, _ = _TOKEN_MAIL[issued.kind]
        delivered = self._deliver(
            mail_kind,
            issued.account.email,
            self.token_link(issued.kind, issued.token),
            describe_window(self.lifecycle.window(issued.kind)),
        )
        if not delivered:
            self.lifecycle.rollback(issued)
            logger.error(
                "token_mail_failed", kind=issued.kind.value, account_id=issued.account.id
            )
        return delivered

    def _deliver(
        self,
        kind: MailKind,
        to_email: str,
        link: Optional[str],
        expiry_description: Optional[str],
    ) -> bool:
        """Call the mailer, counting a raised error as a failed delivery."""
        try:
            return bool(self.mailer.send(kind, to_email, link, expiry_description))
        except Exception as exc:
            logger.error("mailer_raised", kind=kind.value, error=str(exc))
            return False

    def _placeholder_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
        return self._dummy_hash

    def _maybe_rehash(self, account: Account, password: str) -> Account:
        if not self.hasher.needs_rehash(account.password_hash):
            return account
        try:
            with store_errors():
                # password_changed_at stays put: same secret, so sessions survive
                return self.store.update_account(
                    account.id,
                    {"password_hash": self.hasher.hash(password)},
                    expected_version=account.version,
                )
        except (StaleRecord, ConstraintViolation):
            logger.info("password_rehash_skipped", account_id=account.id)
            return account

    def _load(self, account_id: str) -> Account:
        with store_errors():
            account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found", detail={"account_id": account_id})
        return account

    def _update(self, account: Account, changes: Dict[str, Any]) -> Account:
        try:
            with store_errors():
                return self.store.update_account(
                    account.id, changes, expected_version=account.version
                )
        except StaleRecord as exc:
            raise ConcurrentUpdateError("Account changed concurrently; try again") from exc
        except ConstraintViolation as exc:
            if exc.detail.get("account_id"):
                raise NotFoundError("Account not found") from exc
            raise AlreadyExistsError("This email is already in use", detail=exc.detail) from exc

    def _revert(self, account: Account, previous: Dict[str, Any], flow: str) -> None:
        try:
            with store_errors():
                self.store.update_account(
                    account.id, previous, expected_version=account.version
                )
        except (StaleRecord, ConstraintViolation):
            logger.warning("rollback_skipped", flow=flow, account_id=account.id)
            return
        logger.info("rolled_back", flow=flow, account_id=account.id)
