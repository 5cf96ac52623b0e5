from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from latchkey.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and token lifecycle services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/latchkey", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/latchkey", "SHARED_FS_ROOT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Session (bearer) tokens
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_issuer: str = env_field("latchkey", "SESSION_ISSUER")
    session_audience: str = env_field("latchkey-clients", "SESSION_AUDIENCE")
    session_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "SESSION_TTL_MINUTES",
        description="Lifetime of a bearer session token and its cookie",
    )
    session_cookie_name: str = env_field("jwt", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(
        True,
        "SESSION_COOKIE_SECURE",
        description="Mark the session cookie Secure; disable only for local http",
    )
    session_cookie_samesite: str = env_field("lax", "SESSION_COOKIE_SAMESITE")
    session_leeway_seconds: int = env_field(
        0,
        "SESSION_LEEWAY_SECONDS",
        description="Allowance for clock skew across nodes when checking expiry",
    )

    # Activation / reset tokens
    activation_token_ttl_minutes: int = env_field(
        60 * 24, "ACTIVATION_TOKEN_TTL_MINUTES"
    )
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")
    token_bytes: int = env_field(
        32,
        "TOKEN_BYTES",
        description="Random bytes per activation/reset token (minimum 32)",
    )

    # Password hashing and policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost_kib: int = env_field(65536, "PASSWORD_MEMORY_COST_KIB")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Latchkey", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("token_bytes")
    @classmethod
    def _validate_token_bytes(cls, value: int) -> int:
        if value < 32:
            raise ValueError("token_bytes must be at least 32 (256 bits)")
        return value

    @field_validator("session_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("session_cookie_samesite must be lax, strict or none")
        return normalized

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/latchkey"))
        secret_path = fs_root / ".session_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".session_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
