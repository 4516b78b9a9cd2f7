from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from itemsync.auth.models import OAuthConfig
from itemsync.core.backoff import BackoffStrategy
from itemsync.security.rate_limiter import RateLimitConfig
from itemsync.sync.models import ConflictStrategy
from itemsync.utils.retry_utils import RetryPolicy

from ._validators import _parse_int_in_range, _parse_positive_float


class RetrySettings(BaseModel):
    """Defaults for the per-call retry policy."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_retries: int = Field(default=3, validation_alias="RETRY_MAX_RETRIES")
    initial_delay: float = Field(default=1.0, validation_alias="RETRY_INITIAL_DELAY")
    max_delay: float = Field(default=30.0, validation_alias="RETRY_MAX_DELAY")
    backoff_multiplier: float = Field(default=2.0, validation_alias="RETRY_BACKOFF_MULTIPLIER")
    strategy: BackoffStrategy = Field(
        default=BackoffStrategy.EXPONENTIAL, validation_alias="RETRY_STRATEGY"
    )
    jitter: bool = Field(default=True, validation_alias="RETRY_JITTER")

    @field_validator("max_retries", mode="before")
    @classmethod
    def _validate_max_retries(cls, value: Any) -> int:
        return _parse_int_in_range(value, default=3, low=0, high=20, name="Retry max_retries")

    @field_validator("initial_delay", "max_delay", "backoff_multiplier", mode="before")
    @classmethod
    def _validate_positive(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        return _parse_positive_float(value, default=default, name=f"Retry {info.field_name}")

    @field_validator("strategy", mode="before")
    @classmethod
    def _validate_strategy(cls, value: Any) -> Any:
        if value in (None, ""):
            return BackoffStrategy.EXPONENTIAL
        return str(value).strip().lower() if isinstance(value, str) else value

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            strategy=self.strategy,
            jitter=self.jitter,
        )


class SyncConfig(BaseModel):
    """Reconciliation, scheduling and token refresh settings."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    default_conflict_strategy: ConflictStrategy = Field(
        default=ConflictStrategy.REMOTE_WINS, validation_alias="DEFAULT_CONFLICT_STRATEGY"
    )
    auto_sync_enabled: bool = Field(default=True, validation_alias="AUTO_SYNC_ENABLED")
    sync_interval_minutes: int = Field(default=30, validation_alias="SYNC_INTERVAL_MINUTES")
    rate_limiter_sweep_seconds: float = Field(
        default=60.0, validation_alias="RATE_LIMITER_SWEEP_SECONDS"
    )
    rate_limiter_idle_ttl_seconds: float = Field(
        default=3600.0, validation_alias="RATE_LIMITER_IDLE_TTL_SECONDS"
    )
    token_refresh_margin_seconds: int = Field(
        default=300, validation_alias="TOKEN_REFRESH_MARGIN_SECONDS"
    )

    @field_validator("default_conflict_strategy", mode="before")
    @classmethod
    def _validate_strategy(cls, value: Any) -> Any:
        if value in (None, ""):
            return ConflictStrategy.REMOTE_WINS
        return str(value).strip().lower() if isinstance(value, str) else value

    @field_validator("sync_interval_minutes", mode="before")
    @classmethod
    def _validate_sync_interval(cls, value: Any) -> int:
        return _parse_int_in_range(
            value, default=30, low=1, high=1440, name="Sync interval (minutes)"
        )

    @field_validator("rate_limiter_sweep_seconds", "rate_limiter_idle_ttl_seconds", mode="before")
    @classmethod
    def _validate_seconds(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        return _parse_positive_float(value, default=default, name=info.field_name)

    @field_validator("token_refresh_margin_seconds", mode="before")
    @classmethod
    def _validate_margin(cls, value: Any) -> int:
        return _parse_int_in_range(
            value, default=300, low=0, high=3600, name="Token refresh margin (seconds)"
        )


class ProviderConfig(BaseModel):
    """Configuration for one provider, supplied as JSON in ``ITEMSYNC_PROVIDERS``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = True
    namespace: str | None = None
    source_url: str | None = Field(default=None, alias="sourceUrl")
    oauth: OAuthConfig | None = None
    rate_limit: RateLimitConfig | None = Field(default=None, alias="rateLimit")
    conflict_strategy: ConflictStrategy | None = Field(default=None, alias="conflictStrategy")
    retry: RetrySettings | None = None

    @field_validator("namespace", "source_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        return str(value).strip() or None
