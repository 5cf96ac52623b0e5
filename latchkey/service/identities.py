from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from latchkey.logging import email_fingerprint, get_logger
from latchkey.service.errors import (
    AlreadyExistsError,
    ConcurrentUpdateError,
    LastCredentialError,
    NotFoundError,
    ValidationError,
    store_errors,
)
from latchkey.service.lifecycle import cleared_fields
from latchkey.storage.common import AccountStore, normalize_email
from latchkey.storage.errors import ConstraintViolation, StaleRecord
from latchkey.storage.models import (
    Account,
    LinkedIdentity,
    Provider,
    TokenKind,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    """What the linker needs from a provider's userinfo payload."""

    provider: Provider
    provider_id: str
    email: str
    display_name: str


def profile_from_userinfo(provider: str | Provider, userinfo: Dict[str, Any]) -> ProviderProfile:
    """Translate a provider's userinfo payload into a ``ProviderProfile``."""
    try:
        provider = Provider(provider)
    except ValueError as exc:
        raise ValidationError(f"Unsupported identity provider: {provider}") from exc

    if provider is Provider.GOOGLE:
        provider_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        name = userinfo.get("name")
    elif provider is Provider.GITHUB:
        provider_id = userinfo.get("id")
        email = userinfo.get("email")
        name = userinfo.get("name") or userinfo.get("login")
    elif provider is Provider.FACEBOOK:
        provider_id = userinfo.get("id")
        email = userinfo.get("email")
        name = userinfo.get("name") or " ".join(
            part
            for part in (userinfo.get("first_name"), userinfo.get("last_name"))
            if part
        )
    else:
        provider_id = userinfo.get("id")
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        name = userinfo.get("displayName")

    if provider_id is None or str(provider_id) == "":
        raise ValidationError("Provider profile has no subject id")
    if not email:
        raise ValidationError("No email associated with this account")
    email = normalize_email(email)
    return ProviderProfile(
        provider=provider,
        provider_id=str(provider_id),
        email=email,
        display_name=name or email.split("@")[0],
    )


def with_identity(account: Account, identity: LinkedIdentity) -> Tuple[LinkedIdentity, ...]:
    return (*account.linked_identities, identity)


def without_provider(account: Account, provider: Provider) -> Tuple[LinkedIdentity, ...]:
    return tuple(i for i in account.linked_identities if i.provider != provider)


class IdentityLinker:
    """Attach and detach provider identities without duplicating accounts."""

    def __init__(
        self,
        store: AccountStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def link(self, account: Account, provider: Provider, provider_id: str) -> Account:
        provider = Provider(provider)
        identity = LinkedIdentity(provider, str(provider_id))
        if provider in account.providers():
            logger.info(
                "identity_link_rejected",
                account_id=account.id,
                provider=provider.value,
                reason="provider_already_linked",
            )
            raise AlreadyExistsError(
                "This provider is already linked to the account",
                detail={"provider": provider.value},
            )
        with store_errors():
            owner = self.store.get_account_by_provider(provider, identity.provider_id)
        if owner is not None:
            logger.info(
                "identity_link_rejected",
                account_id=account.id,
                provider=provider.value,
                reason="identity_taken",
            )
            raise AlreadyExistsError(
                "This provider identity is already linked to an account",
                detail={"provider": provider.value},
            )
        updated = self._write(account, {"linked_identities": with_identity(account, identity)})
        logger.info("identity_linked", account_id=account.id, provider=provider.value)
        return updated

    def unlink(self, account: Account, provider: Provider) -> Account:
        provider = Provider(provider)
        remaining = without_provider(account, provider)
        if len(remaining) == len(account.linked_identities):
            raise NotFoundError(
                "Provider is not linked to this account",
                detail={"provider": provider.value},
            )
        if not account.has_password and not remaining:
            logger.info(
                "identity_unlink_rejected",
                account_id=account.id,
                provider=provider.value,
                reason="last_credential",
            )
            raise LastCredentialError(
                "Cannot remove the last way to sign in to this account",
                detail={"provider": provider.value},
            )
        updated = self._write(account, {"linked_identities": remaining})
        logger.info("identity_unlinked", account_id=account.id, provider=provider.value)
        return updated

    def resolve_or_create_from_provider(
        self,
        provider: Provider,
        provider_id: str,
        email: str,
        display_name: str,
    ) -> Account:
        """Find the account for a provider sign-in, merging by email.

        Lookup order: the provider identity itself, then an account with the
        same email (the identity gets appended), otherwise a new active
        account with no local password.
        """
        provider = Provider(provider)
        identity = LinkedIdentity(provider, str(provider_id))
        email = normalize_email(email)
        found = self._find_or_merge(identity, email)
        if found is not None:
            return found

        if not email:
            raise ValidationError("No email associated with this account")
        account = Account.new(
            email,
            display_name or email.split("@")[0],
            active=True,
            linked_identities=(identity,),
            now=self._clock(),
        )
        try:
            with store_errors():
                created = self.store.create_account(account)
        except ConstraintViolation as exc:
            # another sign-in created the account first
            found = self._find_or_merge(identity, email)
            if found is not None:
                logger.info(
                    "account_create_race_resolved",
                    account_id=found.id,
                    provider=provider.value,
                )
                return found
            raise AlreadyExistsError(
                "An account for this identity was created concurrently",
                detail=exc.detail,
            ) from exc
        logger.info(
            "account_created_from_provider",
            account_id=created.id,
            provider=provider.value,
            email_hash=email_fingerprint(email),
        )
        return created

    def _find_or_merge(self, identity: LinkedIdentity, email: str) -> Optional[Account]:
        with store_errors():
            existing = self.store.get_account_by_provider(
                identity.provider, identity.provider_id
            )
        if existing is not None:
            return existing

        with store_errors():
            by_email = self.store.get_account_by_email(email) if email else None
        if by_email is None:
            return None
        if identity.provider in by_email.providers():
            logger.info(
                "identity_merge_rejected",
                account_id=by_email.id,
                provider=identity.provider.value,
                reason="provider_already_linked",
            )
            raise AlreadyExistsError(
                "This email's account is linked to a different identity from this provider",
                detail={"provider": identity.provider.value},
            )
        changes: Dict[str, Any] = {"linked_identities": with_identity(by_email, identity)}
        if not by_email.active:
            # the provider verified the address
            changes.update(active=True, **cleared_fields(TokenKind.ACTIVATION))
        merged = self._write(by_email, changes)
        logger.info(
            "identity_merged_by_email",
            account_id=merged.id,
            provider=identity.provider.value,
            activated=not by_email.active,
        )
        return merged

    def _write(self, account: Account, changes: Dict[str, Any]) -> Account:
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
            raise AlreadyExistsError(
                "This provider identity is already linked to an account",
                detail=exc.detail,
            ) from exc
