from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mytgate.logging import get_logger
from mytgate.service.errors import ConfigError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

# Values copied from sample .env files or docs; never accepted as real keys.
PLACEHOLDER_SECRETS = frozenset(
    {
        "changeme",
        "change-me",
        "change_me",
        "secret",
        "default",
        "your-secret-key",
        "your-secret-key-here",
        "your_jwt_secret",
        "your-hmac-key",
        "replace-me",
        "xxx",
    }
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _looks_like_placeholder(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in PLACEHOLDER_SECRETS:
        return True
    if "change" in lowered and "me" in lowered:
        return True
    # a single repeated character, e.g. "aaaa...."
    return len(set(lowered)) <= 1


class Settings(BaseModel):
    """Gateway settings, read from the environment with a .env fallback."""

    signing_key: str | None = env_field(
        None, "SIGNING_KEY", description="HS256 key for downstream access/refresh tokens"
    )
    identity_hash_key: str | None = env_field(
        None,
        "IDENTITY_HASH_KEY",
        description="HMAC key used to hash identities into storage keys",
    )
    jwt_issuer: str = env_field("mytgate", "JWT_ISSUER")
    jwt_audience: str = env_field("mytgate-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(900, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )

    # Circuit breaker
    failure_threshold: int = env_field(5, "FAILURE_THRESHOLD", ge=1)
    circuit_timeout_seconds: float = env_field(60, "CIRCUIT_TIMEOUT_SECONDS", gt=0)
    success_threshold: int = env_field(2, "SUCCESS_THRESHOLD", ge=1)

    # Rate limiting and lockout
    login_failure_limit: int = env_field(5, "LOGIN_FAILURE_LIMIT", ge=1)
    login_failure_window_seconds: int = env_field(
        900, "LOGIN_FAILURE_WINDOW_SECONDS", gt=0
    )
    lockout_seconds: int = env_field(900, "LOCKOUT_SECONDS", gt=0)
    requests_per_hour: int = env_field(1000, "REQUESTS_PER_HOUR", ge=0)

    # Upstream token cache inactivity TTL
    cache_ttl_seconds: int = env_field(3600, "CACHE_TTL_SECONDS", gt=0)

    # Upstream API
    upstream_auth_base_url: str = env_field(
        "https://b2c-login.toyota-europe.com", "UPSTREAM_AUTH_BASE_URL"
    )
    upstream_api_base_url: str = env_field(
        "https://ctpa-oneapi.tceu-ctp-prd.toyotaconnectedeurope.io",
        "UPSTREAM_API_BASE_URL",
    )
    upstream_client_id: str = env_field("oneapp", "UPSTREAM_CLIENT_ID")
    upstream_redirect_uri: str = env_field(
        "com.toyota.oneapp:/oauth2Callback", "UPSTREAM_REDIRECT_URI"
    )
    upstream_api_key: str | None = env_field(None, "UPSTREAM_API_KEY")
    upstream_timeout_seconds: float = env_field(10.0, "UPSTREAM_TIMEOUT_SECONDS", gt=0)

    # Storage
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for the test suite.",
    )

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
        try:
            return cls(**merged)
        except ValidationError as exc:
            fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
            logger.error("settings_invalid", fields=fields)
            raise ConfigError(
                f"invalid configuration: {', '.join(fields)}",
                field=fields[0] if fields else None,
            ) from exc

    @field_validator("upstream_auth_base_url", "upstream_api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def validate_secrets(self) -> None:
        """Refuse to run with missing, placeholder, short or shared keys."""
        for field_name, env_name in (
            ("signing_key", "SIGNING_KEY"),
            ("identity_hash_key", "IDENTITY_HASH_KEY"),
        ):
            value = getattr(self, field_name)
            if not value:
                raise ConfigError(f"{env_name} is not set", field=field_name)
            if _looks_like_placeholder(value):
                raise ConfigError(
                    f"{env_name} is a placeholder value", field=field_name
                )
            if len(value) < MIN_SECRET_LENGTH:
                raise ConfigError(
                    f"{env_name} must be at least {MIN_SECRET_LENGTH} characters",
                    field=field_name,
                )
        if self.signing_key == self.identity_hash_key:
            raise ConfigError(
                "SIGNING_KEY and IDENTITY_HASH_KEY must differ", field="identity_hash_key"
            )


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
