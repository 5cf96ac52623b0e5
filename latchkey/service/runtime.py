from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from latchkey.config import Settings, get_settings
from latchkey.logging import get_logger
from latchkey.service.auth import AuthService
from latchkey.service.email import EmailService, Mailer
from latchkey.service.identities import IdentityLinker
from latchkey.service.lifecycle import TokenLifecycleManager
from latchkey.service.passwords import SecretHasher
from latchkey.service.sessions import SessionIssuer
from latchkey.service.tokens import TokenGenerator
from latchkey.storage.common import AccountStore
from latchkey.storage.memory import MemoryStore
from latchkey.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: postgresql://app:secret@db/latchkey -> postgresql://app:***@db/latchkey
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: Union[MemoryStore, PostgresStore] = MemoryStore(
                fs_root=settings.shared_fs_root
            )
        else:
            store = PostgresStore(settings.database_url)
            store.ensure_schema()
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Constructs the auth services once, at process start.

    Route handlers receive ``runtime.auth`` (or the individual components);
    nothing here is a module-level singleton, so tests build their own.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AccountStore] = None,
        mailer: Optional[Mailer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started", use_memory_store=self.settings.use_memory_store
        )
        self.store = store if store is not None else build_store(self.settings)
        self.hasher = SecretHasher.from_settings(self.settings)
        self.tokens = TokenGenerator(self.settings.token_bytes)
        self.lifecycle = TokenLifecycleManager.from_settings(
            self.store, self.tokens, self.settings, clock=clock
        )
        self.linker = IdentityLinker(self.store, clock=clock)
        self.sessions = SessionIssuer(self.store, self.settings, clock=clock)
        self.mailer = mailer if mailer is not None else EmailService.from_settings(
            self.settings
        )
        if isinstance(self.mailer, EmailService) and not self.mailer.is_configured:
            logger.warning(
                "email_not_configured",
                message="SMTP_HOST/EMAIL_FROM_ADDRESS unset; emails are logged, not sent",
            )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.lifecycle,
            self.linker,
            self.sessions,
            self.mailer,
            self.settings,
            clock=clock,
        )
        logger.info("runtime_init_completed")
