from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from baymax.logging import get_logger

logger = get_logger(__name__)


class AuthMode(str, Enum):
    """Credential strategies; exactly one is active per deployment."""

    AUTH0 = "auth0"
    TOKEN = "token"
    PASSWORD = "password"


DEFAULT_SYSTEM_PROMPT = "You are Baymax, a friendly medical AI giving safe health advice."

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost",
    "http://localhost:5173",
    "http://localhost:8080",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8080",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable process configuration, built once at startup."""

    # Declared first so later validators can consult them
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; allows the in-memory store fallback.",
    )
    auth_mode: AuthMode = env_field(AuthMode.AUTH0, "AUTH_MODE")

    # Remote JWKS (Auth0)
    auth0_domain: str | None = env_field(None, "AUTH0_DOMAIN")
    auth0_audience: str | None = env_field(None, "AUTH0_AUDIENCE")
    jwks_cache_seconds: int = env_field(600, "JWKS_CACHE_SECONDS")
    jwks_timeout_seconds: float = env_field(5.0, "JWKS_TIMEOUT_SECONDS")

    # Self-issued tokens (token and password modes)
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("baymax", "JWT_ISSUER")
    jwt_audience: str = env_field("baymax-clients", "JWT_AUDIENCE")
    token_ttl_seconds: int = env_field(3600, "TOKEN_TTL_SECONDS")
    token_refresh_threshold_seconds: int = env_field(
        600,
        "TOKEN_REFRESH_THRESHOLD_SECONDS",
        description="Tokens closer than this to expiry are replaced on use",
    )

    # Password mode
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_seconds: int = env_field(900, "LOGIN_WINDOW_SECONDS")
    login_lockout_seconds: int = env_field(900, "LOGIN_LOCKOUT_SECONDS")

    # Upstream chat completion
    groq_api_key: str | None = env_field(None, "GROQ_API_KEY")
    completion_url: str = env_field(
        "https://api.groq.com/openai/v1/chat/completions", "COMPLETION_URL"
    )
    model_id: str = env_field("llama-3.1-8b-instant", "MODEL_ID")
    model_temperature: float = env_field(0.7, "MODEL_TEMPERATURE")
    model_timeout_seconds: float = env_field(30.0, "MODEL_TIMEOUT_SECONDS")

    # Vector search
    vector_api_url: str | None = env_field(None, "VECTOR_API_URL")
    vector_timeout_seconds: float = env_field(5.0, "VECTOR_TIMEOUT_SECONDS")

    # History store
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    max_history: int = env_field(20, "MAX_HISTORY", ge=1)
    history_ttl_seconds: int = env_field(60 * 60 * 24 * 30, "HISTORY_TTL_SECONDS")
    system_prompt: str = env_field(DEFAULT_SYSTEM_PROMPT, "SYSTEM_PROMPT")

    # Request guard
    max_body_bytes: int = env_field(128 * 1024, "MAX_BODY_BYTES")
    max_message_chars: int = env_field(20000, "MAX_MESSAGE_CHARS")
    allowed_origins: List[str] = env_field(
        list(DEFAULT_ALLOWED_ORIGINS),
        "ALLOWED_ORIGINS",
        description="Comma separated; '*' accepts any origin",
    )

    model_config = ConfigDict(extra="ignore", frozen=True, protected_namespaces=())

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

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str | None:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        mode = info.data.get("auth_mode")
        if mode not in (AuthMode.TOKEN, AuthMode.PASSWORD):
            return None
        if info.data.get("test_mode"):
            # Tokens issued under TEST_MODE do not survive a restart
            logger.warning("jwt_secret_generated", auth_mode=str(mode.value))
            return secrets.token_urlsafe(48)
        raise ValueError(f"JWT_SECRET is required when AUTH_MODE={mode.value}")

    @property
    def allows_any_origin(self) -> bool:
        return "*" in self.allowed_origins


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
