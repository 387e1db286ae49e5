from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from laos.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PUBLIC_PATHS = [
    "/healthz",
    "/v1/login",
    "/v1/register",
    "/v1/oauth/callback",
    "/v1/auth/email",
]

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the account and token services."""

    database_url: str = env_field("postgresql://localhost:5432/laos", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/laos", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(14 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    access_token_header: str = env_field("Authorization", "ACCESS_TOKEN_HEADER")
    refresh_token_header: str = env_field("Authorization-Refresh", "REFRESH_TOKEN_HEADER")
    public_paths: list[str] = env_field(
        DEFAULT_PUBLIC_PATHS,
        "PUBLIC_PATHS",
        description="Path prefixes served without authentication (comma separated).",
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_google_redirect_uri: str | None = env_field(None, "OAUTH_GOOGLE_REDIRECT_URI")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Laos", "EMAIL_FROM_NAME")
    require_email_verification: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Require a mailed verification code at local registration.",
    )
    email_code_ttl_minutes: int = env_field(5, "EMAIL_CODE_TTL_MINUTES")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("public_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("public_paths")
    @classmethod
    def _normalize_public_paths(cls, value: list[str]) -> list[str]:
        normalized = []
        for prefix in value:
            if not prefix.startswith("/"):
                raise ValueError(f"public path '{prefix}' must start with '/'")
            normalized.append(prefix.rstrip("/") or "/")
        return normalized

    @field_validator(
        "access_token_ttl_minutes", "refresh_token_ttl_minutes", "email_code_ttl_minutes"
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_token_headers(self):
        access = self.access_token_header.strip()
        refresh = self.refresh_token_header.strip()
        if not access or not refresh:
            raise ValueError("token header names must not be empty")
        if access.lower() == refresh.lower():
            raise ValueError("access and refresh token headers must differ")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            value = str(value)
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/laos"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
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
