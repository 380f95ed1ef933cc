"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the app can start with minimal configuration.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StateBackend(str, Enum):
    """Where the call record store and dedup window keep their state."""

    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """
    Central configuration for the callbridge telephony backend.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed; use `.env.example` as the template.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT

    # ── Twilio ───────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="", description="Twilio account SID")
    twilio_auth_token: str = Field(default="", description="Twilio auth token (REST + signature checks)")
    twilio_api_key: str = Field(default="", description="API key SID used to sign access tokens")
    twilio_api_secret: str = Field(default="", description="API key secret used to sign access tokens")
    twilio_app_sid: str = Field(default="", description="TwiML application SID for outgoing client calls")
    twilio_caller_id: str = Field(default="", description="Default caller ID for outbound legs")
    validate_twilio_signature: bool = Field(default=False, description="Reject webhooks without a valid X-Twilio-Signature")
    access_token_ttl_seconds: int = Field(default=86400, ge=60, description="Voice access token lifetime")

    # ── Public URL ───────────────────────────────────────────────
    backend_url: str = Field(default="http://localhost:3009", description="Public base URL used in webhook callbacks")

    # ── Call core timing ─────────────────────────────────────────
    dedup_debounce_ms: int = Field(default=3000, ge=0, description="Reject repeat (from, to) attempts inside this window")
    dedup_retention_ms: int = Field(default=60000, ge=0, description="Dedup entries older than this are swept")
    sweep_interval_seconds: float = Field(default=60.0, gt=0, description="State sweeper tick interval")
    ring_timeout_seconds: int = Field(default=30, ge=5, le=600, description="Dial ring timeout handed to the provider")
    call_record_grace_seconds: int = Field(default=300, ge=0, description="Keep terminal call records this long for late callbacks")
    stale_call_seconds: int = Field(default=14400, ge=60, description="Purge non-terminal records idle for this long")

    # ── Routing ──────────────────────────────────────────────────
    fallback_identity_prefix: str = Field(default="user_", description="Prefix of derived client identities")
    greet_on_fallback: bool = Field(default=True, description="Play a short prompt before fallback-routed dials")
    default_client_identity: str = Field(default="user", description="Client dialed when nothing else resolves")

    # ── State ────────────────────────────────────────────────────
    state_backend: StateBackend = StateBackend.MEMORY
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # ── Supabase ─────────────────────────────────────────────────
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")

    # ── Push notifications ───────────────────────────────────────
    fcm_project_id: str = Field(default="", description="Firebase project for FCM HTTP v1")
    fcm_access_token: str = Field(default="", description="OAuth bearer token for FCM HTTP v1")
    push_timeout_seconds: float = Field(default=10.0, gt=0, description="Per-device push request timeout")

    # ── HTTP ─────────────────────────────────────────────────────
    cors_origins: str = Field(default="*", description="Comma-separated list of allowed CORS origins")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def callback_url(self, path: str) -> str:
        """Absolute webhook URL for ``path`` under the public backend URL."""
        return f"{self.backend_url.rstrip('/')}/{path.lstrip('/')}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
