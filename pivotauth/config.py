from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pivotauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    """A pydantic field that records the environment variable it is read from."""
    extra = dict(kwargs.pop("json_schema_extra", None) or {})
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_name(name: str, field) -> str:
    extra = field.json_schema_extra
    if isinstance(extra, dict) and extra.get("env"):
        return extra["env"]
    return name.upper()


def _read_persisted_secret(path: Path) -> str | None:
    if not path.is_file() or path.is_symlink():
        return None
    try:
        stored = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_unreadable", path=str(path), error=str(exc))
        return None
    # too short to have come from token_urlsafe(64); regenerate
    return stored if len(stored) >= 32 else None


def _load_or_create_secret(state_root: Path) -> str:
    """Return the signing secret kept under ``state_root``, creating it once.

    A generated secret is written through a temp file and renamed into place
    so concurrent starts never observe a half-written file. Tokens issued
    before a restart keep verifying.
    """
    path = state_root / ".jwt_secret"
    try:
        state_root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("state_root_unavailable", path=str(state_root), error=str(exc))

    existing = _read_persisted_secret(path)
    if existing:
        return existing

    secret = secrets.token_urlsafe(64)
    tmp_name = None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(state_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("jwt_secret_write_failed", path=str(path), error=str(exc))
        raise RuntimeError(
            "cannot store a generated JWT secret; set JWT_SECRET or make STATE_ROOT writable"
        ) from exc
    return secret


class Settings(BaseModel):
    """Runtime settings for the authentication session engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/pivotauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_root: str = env_field("/srv/pivotauth", "STATE_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for tests.",
    )
    roles: str = env_field(
        "member,administrator",
        "AUTH_ROLES",
        description="Comma-separated role tags that get their own engine instance",
    )

    # Tokens
    jwt_secret: str | None = env_field(
        None, "JWT_SECRET", description="Generated and kept under state_root when unset"
    )
    jwt_issuer: str = env_field("pivotauth", "JWT_ISSUER")
    jwt_audience: str = env_field("pivotauth-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Allowed clock skew when checking expiry"
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES"
    )

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    lockout_write_retries: int = env_field(
        3,
        "LOCKOUT_WRITE_RETRIES",
        description="Compare-and-set attempts for counter writes before giving up",
    )

    # MFA
    mfa_issuer: str = env_field("PivotAuth", "MFA_ISSUER")
    mfa_recovery_code_count: int = env_field(10, "MFA_RECOVERY_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    mfa_rate_limit_attempts: int = env_field(5, "MFA_RATE_LIMIT_ATTEMPTS")
    mfa_rate_limit_window_seconds: int = env_field(300, "MFA_RATE_LIMIT_WINDOW_SECONDS")

    # Passwords
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    password_min_length: int = env_field(10, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then `.env` for anything unset."""
        file_values = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            key = _env_name(name, field)
            raw = os.environ.get(key, file_values.get(key))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @property
    def role_list(self) -> list[str]:
        return [role.strip() for role in self.roles.split(",") if role.strip()]

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "lockout_threshold",
        "lockout_window_minutes",
        "lockout_duration_minutes",
        "lockout_write_retries",
        "mfa_recovery_code_count",
        "mfa_rate_limit_attempts",
        "mfa_rate_limit_window_seconds",
        "password_reset_ttl_minutes",
        "password_min_length",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _clamp_leeway(cls, value: int) -> int:
        return max(0, min(value, 300))

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(Path(self.state_root))
        return self


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
