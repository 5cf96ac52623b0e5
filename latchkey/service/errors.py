from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from latchkey.logging import get_logger
from latchkey.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions handed back to route handlers.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    a caller would normally map it to. The services never build responses
    themselves.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any state was touched (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    error_code = "weak_password"


class InvalidCredentialError(ServiceError):
    """Wrong password, or a confirmation that does not match (401)."""
    status_code = 401
    error_code = "invalid_credential"


class TokenInvalidError(ServiceError):
    """Token digest unknown, superseded or already consumed (400)."""
    status_code = 400
    error_code = "token_invalid"


class TokenExpiredError(ServiceError):
    status_code = 400
    error_code = "token_expired"


class SessionInvalidError(ServiceError):
    """Session token malformed, forged, or for an unknown account (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(SessionInvalidError):
    error_code = "session_expired"


class SessionSupersededError(SessionInvalidError):
    """Session issued before the account's latest credential change (401)."""
    error_code = "session_superseded"


class AccountInactiveError(ServiceError):
    """Account exists but has not been activated (403)."""
    status_code = 403
    error_code = "account_inactive"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    """Duplicate email or provider identity."""
    error_code = "already_exists"


class ConcurrentUpdateError(ConflictError):
    """The record changed between read and write; the caller may retry."""
    error_code = "concurrent_update"


class LastCredentialError(ConflictError):
    """Operation would leave the account without any way to sign in."""
    error_code = "last_credential"


class UnavailableError(ServiceError):
    """Backing store failed; details are logged, never returned (503)."""
    status_code = 503
    error_code = "unavailable"


class MailDeliveryError(ServiceError):
    """Email could not be sent; the flow's store changes were rolled back (502)."""
    status_code = 502
    error_code = "mail_delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidCredentialError",
    "TokenInvalidError",
    "TokenExpiredError",
    "SessionInvalidError",
    "SessionExpiredError",
    "SessionSupersededError",
    "AccountInactiveError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "ConcurrentUpdateError",
    "LastCredentialError",
    "UnavailableError",
    "MailDeliveryError",
    "store_errors",
]


@contextlib.contextmanager
def store_errors() -> Iterator[None]:
    """Surface backing-store outages as ``UnavailableError``.

    Constraint and version conflicts are left alone; each operation decides
    what they mean for its caller.
    """
    try:
        yield
    except StoreUnavailable as exc:
        logger.error("store_unavailable", error=str(exc))
        raise UnavailableError("Service temporarily unavailable") from exc
