"""Runtime configuration for the call relay service."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for call relay runtime behavior.

    Values are loaded from environment variables, with `.env` used for local
    development defaults.

    Attributes:
        API_BASE_URL: Backend base URL used for relative callback addresses
            and the fixed call-end / ringing-ack routes.
        CALL_END_PATH: Route notified of declined/missed calls when an invite
            carries no callback address.
        RINGING_ACK_PATH: Route notified (best-effort) when a call starts
            ringing for a known receiver.
        BACKEND_TIMEOUT_SECONDS: Per-request timeout for backend calls.
        DEFAULT_TTL_SEC: Ringing time applied when an invite has no usable TTL.
        MIN_TTL_SEC: Lower clamp for invite TTL.
        MAX_TTL_SEC: Upper clamp for invite TTL.
        RETRY_BASE_DELAY_MS: Backoff unit for pending-action retries.
        RETRY_MAX_DELAY_MS: Backoff ceiling for pending-action retries.
        RETRY_MAX_EXPONENT: Largest exponent applied to the backoff unit.
        DB_CONNECTION_STRING: Optional Postgres DSN for durable state. An
            in-process store is used when unset.
        KV_TABLE_NAME: Table holding durable key/value records.
        LOG_LEVEL: Application log verbosity.
        STORAGE_LOG_LEVEL: Log level for storage internals.
        HTTPX_LOG_LEVEL: Log level for `httpx`/`httpcore` internals.
        GATEWAY_PORT: Local port where the relay listens.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    API_BASE_URL: str = "http://localhost:8081"
    CALL_END_PATH: str = "/api/call/Callend"
    RINGING_ACK_PATH: str = "/api/call/receiver-ringing-ack"
    BACKEND_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)

    DEFAULT_TTL_SEC: int = Field(default=30, ge=5, le=120)
    MIN_TTL_SEC: int = 5
    MAX_TTL_SEC: int = 120

    RETRY_BASE_DELAY_MS: int = Field(default=1000, ge=1)
    RETRY_MAX_DELAY_MS: int = Field(default=30000, ge=1)
    RETRY_MAX_EXPONENT: int = Field(default=5, ge=0)

    DB_CONNECTION_STRING: str | None = None
    KV_TABLE_NAME: str = Field(default="call_relay_kv", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    LOG_LEVEL: str = "info"
    STORAGE_LOG_LEVEL: str = "info"
    HTTPX_LOG_LEVEL: str = "warning"
    GATEWAY_PORT: int = 8090

    @property
    def api_base_url(self) -> str:
        """Returns the backend base URL without a trailing slash."""
        return self.API_BASE_URL.rstrip("/")


settings = Settings()
