from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from buyerportal.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the buyer portal broker."""

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/buyerportal", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/buyerportal", "SHARED_FS_ROOT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and in-process state.",
    )

    # Internal session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: Optional[str] = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Signing key for refresh tokens; derived from JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("buyerportal", "JWT_ISSUER")
    jwt_audience: str = env_field("buyerportal-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Session state
    session_idle_timeout_seconds: int = env_field(
        3600,
        "SESSION_IDLE_TIMEOUT_SECONDS",
        gt=0,
        description="Inactivity window after which a session must log in again",
    )
    upstream_token_ttl_hours: int = env_field(24, "UPSTREAM_TOKEN_TTL_HOURS", gt=0)
    token_sweep_interval_seconds: int = env_field(
        300,
        "TOKEN_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Housekeeping interval for expired upstream token records; 0 disables",
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Upstream B2B platform
    upstream_base_url: str = env_field(
        "https://api-b2b.bigcommerce.com", "UPSTREAM_BASE_URL"
    )
    upstream_store_hash: str = env_field("", "UPSTREAM_STORE_HASH")
    upstream_channel_id: int = env_field(1, "UPSTREAM_CHANNEL_ID")
    upstream_access_token: Optional[str] = env_field(None, "UPSTREAM_ACCESS_TOKEN")
    upstream_timeout_seconds: float = env_field(10.0, "UPSTREAM_TIMEOUT_SECONDS", gt=0)
    upstream_connect_timeout_seconds: float = env_field(
        5.0, "UPSTREAM_CONNECT_TIMEOUT_SECONDS", gt=0
    )
    upstream_logout_path: str = env_field(
        "/api/io/auth/customers/logout", "UPSTREAM_LOGOUT_PATH"
    )
    upstream_token_key: Optional[str] = env_field(
        None,
        "UPSTREAM_TOKEN_KEY",
        description="Key material for encrypting upstream tokens at rest; defaults to JWT_SECRET",
    )

    # Abuse limits
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    reset_rate_limit: int = env_field(5, "RESET_RATE_LIMIT")
    reset_rate_window_seconds: int = env_field(300, "RESET_RATE_WINDOW_SECONDS")

    # Email (password reset delivery)
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Buyer Portal", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5000", "APP_BASE_URL")

    # HTTP surface
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    build_sha: Optional[str] = env_field(None, "BUILD_SHA")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("upstream_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/buyerportal"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _derive_refresh_secret(self) -> "Settings":
        if not self.jwt_refresh_secret:
            # Refresh tokens must not verify as access tokens, so never share the key
            self.jwt_refresh_secret = hashlib.sha256(
                b"refresh:" + self.jwt_secret.encode()
            ).hexdigest()
        return self

    @property
    def upstream_token_ttl_seconds(self) -> int:
        return self.upstream_token_ttl_hours * 3600


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
