import logging
import os
import sys
from typing import Literal, Optional

from pydantic import computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCHEDULE_NAME = "default"
SUPPORTER_SCHEDULE_NAME = "supporter"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Cycle orchestration
    batch_size: int = 400  # Unique URLs per worker batch
    parallel_batches: int = 2  # Concurrent worker processes per cycle
    hours_until_fail: int = 24  # 0 disables exclusion of failing URLs
    default_refresh_rate_minutes: float = 10
    supporter_refresh_rate_minutes: Optional[float] = None
    send_old_on_first_cycle: bool = True
    check_titles: bool = False
    check_dates: bool = True
    cycle_max_age_days: int = 1
    article_memory_max_entries: int = 1000  # Per collection, 0 keeps everything
    debug_subscription_ids: str = ""  # Comma separated
    fast_tier_excluded_subscription_ids: str = ""  # Comma separated, never moved to the fast tier

    # Worker processes
    worker_batch_timeout_seconds: int = 0  # 0 = hung batches wait for next tick
    worker_request_timeout_seconds: int = 15
    worker_max_concurrent_requests: int = 20

    # Sharding (channel ownership for in-process delivery)
    shard_id: int = 0
    shard_count: int = 1

    # Per-channel delivery budgets
    channel_rate_limit_count: int = 1
    supporter_channel_rate_limit_count: int = 3
    channel_rate_limit_window_seconds: int = 1
    rate_limiter_circuit_break_seconds: int = 30

    # Transport
    delivery_mode: Literal["in_process", "brokered"] = "in_process"
    discord_api_url: str = "https://discord.com/api/v10"
    discord_bot_token: Optional[str] = None
    delivery_max_attempts: int = 4
    max_payload_length: int = 2000

    # Storage
    storage_backend: Literal["database", "file"] = "file"
    file_storage_path: str = "./data"
    postgres_user: Optional[str] = None
    postgres_host: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_port: int = 5432
    postgres_db: Optional[str] = None

    # Redis (rate limiter + outbound broker)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: Optional[int] = None
    redis_conn_timeout: int = 5
    redis_conn_retries: int = 5
    redis_conn_retry_delay: int = 1
    redis_retry_on_timeout: bool = True
    redis_max_connections: Optional[int] = None
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30

    # Dev
    testing: bool = False
    dev: bool = False

    @model_validator(mode="after")
    def validate_cycle_settings(self):
        """Ensure cycle and budget configuration values are sane."""
        if self.batch_size <= 0:
            logging.error(
                "BATCH_SIZE must be greater than zero. Current value: %s",
                self.batch_size,
            )
            sys.exit(1)

        if self.parallel_batches <= 0:
            logging.error(
                "PARALLEL_BATCHES must be greater than zero. Current value: %s",
                self.parallel_batches,
            )
            sys.exit(1)

        if self.hours_until_fail < 0:
            logging.error(
                "HOURS_UNTIL_FAIL cannot be negative. Current value: %s",
                self.hours_until_fail,
            )
            sys.exit(1)

        if self.article_memory_max_entries < 0:
            logging.error(
                "ARTICLE_MEMORY_MAX_ENTRIES cannot be negative. Current value: %s",
                self.article_memory_max_entries,
            )
            sys.exit(1)

        if self.default_refresh_rate_minutes <= 0:
            logging.error(
                "DEFAULT_REFRESH_RATE_MINUTES must be greater than zero. Current value: %s",
                self.default_refresh_rate_minutes,
            )
            sys.exit(1)

        if self.supporter_refresh_rate_minutes is not None and (
            self.supporter_refresh_rate_minutes <= 0
            or self.supporter_refresh_rate_minutes == self.default_refresh_rate_minutes
        ):
            logging.error(
                "SUPPORTER_REFRESH_RATE_MINUTES (%s) must be positive and differ from"
                " DEFAULT_REFRESH_RATE_MINUTES (%s).",
                self.supporter_refresh_rate_minutes,
                self.default_refresh_rate_minutes,
            )
            sys.exit(1)

        for name in ("channel_rate_limit_count", "supporter_channel_rate_limit_count"):
            if getattr(self, name) < 1:
                logging.error(
                    "%s must be at least 1. Current value: %s",
                    name.upper(),
                    getattr(self, name),
                )
                sys.exit(1)

        if self.channel_rate_limit_window_seconds <= 0:
            logging.error(
                "CHANNEL_RATE_LIMIT_WINDOW_SECONDS must be greater than zero. Current value: %s",
                self.channel_rate_limit_window_seconds,
            )
            sys.exit(1)

        if not 0 <= self.shard_id < max(self.shard_count, 1):
            logging.error(
                "SHARD_ID (%s) must be within [0, SHARD_COUNT=%s).",
                self.shard_id,
                self.shard_count,
            )
            sys.exit(1)

        if self.supporter_channel_rate_limit_count < self.channel_rate_limit_count:
            logging.warning(
                "SUPPORTER_CHANNEL_RATE_LIMIT_COUNT (%s) is lower than CHANNEL_RATE_LIMIT_COUNT (%s)."
                " Supporter channels will be throttled harder than regular channels.",
                self.supporter_channel_rate_limit_count,
                self.channel_rate_limit_count,
            )

        return self

    @model_validator(mode="after")
    def validate_storage_settings(self):
        if self.storage_backend == "database":
            missing = [
                name
                for name in ("postgres_user", "postgres_host", "postgres_password", "postgres_db")
                if not getattr(self, name)
            ]
            if missing:
                logging.error(
                    "STORAGE_BACKEND=database requires %s to be set.",
                    ", ".join(name.upper() for name in missing),
                )
                sys.exit(1)

        if self.delivery_mode == "in_process" and not self.discord_bot_token and not self.dev:
            logging.warning(
                "DISCORD_BOT_TOKEN not set. Channel deliveries will fail; webhook deliveries still work."
            )

        return self

    @property
    def debug_ids(self) -> set[str]:
        return {item.strip() for item in self.debug_subscription_ids.split(",") if item.strip()}

    @property
    def fast_tier_excluded_ids(self) -> set[str]:
        return {
            item.strip()
            for item in self.fast_tier_excluded_subscription_ids.split(",")
            if item.strip()
        }

    @property
    def has_supporter_schedule(self) -> bool:
        return self.supporter_refresh_rate_minutes is not None

    @computed_field
    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override the process-wide settings, e.g. from a test."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_loglevel() -> int:
    return _LOG_LEVELS.get(os.getenv("LOGLEVEL", "INFO").upper(), logging.INFO)
