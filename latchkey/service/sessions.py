from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.errors import (
    AccountInactiveError,
    SessionExpiredError,
    SessionInvalidError,
    SessionSupersededError,
    store_errors,
)
from latchkey.storage.common import AccountStore
from latchkey.storage.models import Account, utcnow

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _micros(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(microseconds=1)


@dataclass(frozen=True)
class CookieSpec:
    """Transport attributes for the session cookie; the caller sets it."""

    name: str
    value: str = field(repr=False)
    max_age: int
    expires: datetime
    http_only: bool = True
    secure: bool = True
    same_site: str = "lax"
    path: str = "/"


@dataclass(frozen=True)
class IssuedSession:
    token: str = field(repr=False)
    account_id: str = ""
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cookie: Optional[CookieSpec] = None
    token_type: str = "Bearer"


class SessionIssuer:
    """HS256 bearer tokens bound to an account and its credential history."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self._ttl = timedelta(minutes=settings.session_ttl_minutes)
        self._leeway = timedelta(seconds=settings.session_leeway_seconds)

    def issue(self, account_id: str, issued_at: Optional[datetime] = None) -> IssuedSession:
        issued_at = issued_at or self._clock()
        expires_at = issued_at + self._ttl
        payload = {
            "sub": account_id,
            # sub-second precision so a session minted right after a password
            # change is not mistaken for one minted before it
            "iat": round(issued_at.timestamp(), 6),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.session_issuer,
            "aud": self.settings.session_audience,
            "jti": str(uuid.uuid4()),
        }
        token = self._encode_jwt(payload)
        logger.info("session_issued", account_id=account_id, jti=payload["jti"])
        return IssuedSession(
            token=token,
            account_id=account_id,
            issued_at=issued_at,
            expires_at=expires_at,
            cookie=self._cookie(token, expires_at),
        )

    def validate(self, token: str) -> str:
        """Return the account id the session token belongs to."""
        return self.resolve(token).id

    def resolve(self, token: str) -> Account:
        payload = self._decode_jwt(token)
        if payload is None:
            raise SessionInvalidError("Invalid session token")
        now = self._clock()
        exp = payload.get("exp")
        iat = payload.get("iat")
        account_id = payload.get("sub")
        if not isinstance(exp, (int, float)) or not isinstance(iat, (int, float)):
            raise SessionInvalidError("Invalid session token")
        if not isinstance(account_id, str) or not account_id:
            raise SessionInvalidError("Invalid session token")
        if now.timestamp() >= exp + self._leeway.total_seconds():
            raise SessionExpiredError("Session has expired; please log in again")

        with store_errors():
            account = self.store.get_account(account_id)
        if account is None:
            logger.warning("session_account_missing", account_id=account_id)
            raise SessionInvalidError("The account for this session no longer exists")
        changed_at = account.sessions_valid_after()
        if changed_at is not None and round(iat * 1_000_000) < _micros(changed_at):
            logger.info("session_superseded", account_id=account_id, jti=payload.get("jti"))
            raise SessionSupersededError(
                "Credentials changed since this session began; please log in again"
            )
        if not account.active:
            raise AccountInactiveError("Account is not active")
        return account

    def clear_cookie(self) -> CookieSpec:
        """Cookie that replaces the session cookie on logout."""
        return CookieSpec(
            name=self.settings.session_cookie_name,
            value="",
            max_age=0,
            expires=datetime(1970, 1, 1, tzinfo=timezone.utc),
            http_only=True,
            secure=self.settings.session_cookie_secure,
            same_site=self.settings.session_cookie_samesite,
        )

    def _cookie(self, token: str, expires_at: datetime) -> CookieSpec:
        return CookieSpec(
            name=self.settings.session_cookie_name,
            value=token,
            max_age=int(self._ttl.total_seconds()),
            expires=expires_at,
            http_only=True,
            secure=self.settings.session_cookie_secure,
            same_site=self.settings.session_cookie_samesite,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.session_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Verify signature, algorithm, issuer and audience; expiry is left to the caller."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("session_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("session_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.session_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.session_audience in aud
        else:
            valid_aud = aud == self.settings.session_audience
        if not valid_aud:
            return None
        return payload
