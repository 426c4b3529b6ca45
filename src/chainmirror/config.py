from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
SYNC_SERVICES = ("events", "markets", "global", "trades", "user-nonces")
_COMMITMENTS = {"processed", "confirmed", "finalized"}


class ConfigurationError(ValueError):
    """Raised when runtime configuration is missing or inconsistent."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    program_id: str = Field(
        default="",
        validation_alias=AliasChoices("PROGRAM_ID", "NEXT_PUBLIC_PROGRAM_ID"),
        validate_default=True,
    )
    rpc_url: str = Field(
        default="https://api.devnet.solana.com",
        validation_alias=AliasChoices("SOLANA_RPC_URL", "ANCHOR_PROVIDER_URL"),
    )
    commitment: str = Field(default="confirmed", alias="SOLANA_COMMITMENT")
    state_db_path: str = Field(
        default="chainmirror.db",
        validation_alias=AliasChoices("STATE_DB_PATH", "DATABASE_PATH"),
    )

    sync_batch_size: int = Field(default=100, alias="SYNC_BATCH_SIZE")
    sync_interval_seconds: float = Field(default=10.0, alias="SYNC_INTERVAL_SECONDS")
    sync_max_backfill_pages: int = Field(default=10, alias="SYNC_MAX_BACKFILL_PAGES")
    dry_run: bool = Field(default=False, alias="DRY_RUN")
    sync_once: bool = Field(default=False, alias="SYNC_ONCE")
    sync_service: str = Field(default="events", alias="SYNC_SERVICE")

    rpc_timeout_seconds: float = Field(default=30.0, alias="SOLANA_RPC_TIMEOUT_SECONDS")
    rpc_max_retries: int = Field(default=3, alias="SOLANA_RPC_MAX_RETRIES")
    rpc_retry_delay_ms: int = Field(default=1000, alias="SOLANA_RPC_RETRY_DELAY_MS")
    rpc_max_delay_ms: int = Field(default=8000, alias="SOLANA_RPC_MAX_DELAY_MS")
    rpc_max_batch_size: int = Field(default=100, alias="RPC_MAX_BATCH_SIZE")
    rpc_fetch_concurrency: int = Field(default=4, alias="RPC_FETCH_CONCURRENCY")

    db_retry_max_attempts: int = Field(default=3, alias="DB_RETRY_MAX_ATTEMPTS")
    db_retry_base_delay_ms: int = Field(default=500, alias="DB_RETRY_BASE_DELAY_MS")
    db_retry_max_delay_ms: int = Field(default=5000, alias="DB_RETRY_MAX_DELAY_MS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("program_id")
    def validate_program_id(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate or candidate == SYSTEM_PROGRAM_ID:
            raise ValueError("PROGRAM_ID is required and must not be the system program")
        try:
            Pubkey.from_string(candidate)
        except ValueError as exc:
            raise ValueError(f"PROGRAM_ID is not a valid base58 public key: {candidate}") from exc
        return candidate

    @field_validator("rpc_url")
    def validate_rpc_url(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate.startswith(("http://", "https://")):
            raise ValueError("SOLANA_RPC_URL must be an http(s) URL")
        return candidate

    @field_validator("commitment")
    def validate_commitment(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _COMMITMENTS:
            raise ValueError(f"SOLANA_COMMITMENT must be one of {sorted(_COMMITMENTS)}")
        return normalized

    @field_validator("state_db_path")
    def validate_state_db_path(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("STATE_DB_PATH must not be empty")
        return value.strip()

    @field_validator("sync_batch_size")
    def validate_sync_batch_size(cls, value: int) -> int:
        if not 10 <= value <= 1000:
            raise ValueError("SYNC_BATCH_SIZE must be within 10..1000")
        return value

    @field_validator("sync_interval_seconds")
    def validate_sync_interval_seconds(cls, value: float) -> float:
        if value < 1:
            raise ValueError("SYNC_INTERVAL_SECONDS must be >= 1")
        return value

    @field_validator("sync_max_backfill_pages")
    def validate_sync_max_backfill_pages(cls, value: int) -> int:
        if value < 1:
            raise ValueError("SYNC_MAX_BACKFILL_PAGES must be >= 1")
        return value

    @field_validator("sync_service")
    def validate_sync_service(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SYNC_SERVICES:
            raise ValueError(f"SYNC_SERVICE must be one of {list(SYNC_SERVICES)}")
        return normalized

    @field_validator("rpc_timeout_seconds")
    def validate_rpc_timeout_seconds(cls, value: float) -> float:
        if not 5 <= value <= 120:
            raise ValueError("SOLANA_RPC_TIMEOUT_SECONDS must be within 5..120")
        return value

    @field_validator("rpc_max_retries")
    def validate_rpc_max_retries(cls, value: int) -> int:
        if not 1 <= value <= 10:
            raise ValueError("SOLANA_RPC_MAX_RETRIES must be within 1..10")
        return value

    @field_validator("rpc_retry_delay_ms")
    def validate_rpc_retry_delay_ms(cls, value: int) -> int:
        if not 100 <= value <= 10000:
            raise ValueError("SOLANA_RPC_RETRY_DELAY_MS must be within 100..10000")
        return value

    @field_validator("rpc_max_batch_size")
    def validate_rpc_max_batch_size(cls, value: int) -> int:
        if not 1 <= value <= 100:
            raise ValueError("RPC_MAX_BATCH_SIZE must be within 1..100")
        return value

    @field_validator("rpc_fetch_concurrency")
    def validate_rpc_fetch_concurrency(cls, value: int) -> int:
        if not 1 <= value <= 16:
            raise ValueError("RPC_FETCH_CONCURRENCY must be within 1..16")
        return value

    @field_validator("db_retry_max_attempts")
    def validate_db_retry_max_attempts(cls, value: int) -> int:
        if not 1 <= value <= 10:
            raise ValueError("DB_RETRY_MAX_ATTEMPTS must be within 1..10")
        return value

    @field_validator("rpc_max_delay_ms", "db_retry_base_delay_ms", "db_retry_max_delay_ms")
    def validate_non_negative_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry delays must be >= 0")
        return value
