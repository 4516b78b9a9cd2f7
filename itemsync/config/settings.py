from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from ._validators import _parse_json_object, _validate_provider_id
from .sync import ProviderConfig, RetrySettings, SyncConfig

logger = logging.getLogger(__name__)


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_use_loguru: bool = Field(default=False, validation_alias="LOG_USE_LOGURU")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    log_include_location: bool = Field(default=True, validation_alias="LOG_INCLUDE_LOCATION")
    http_timeout_sec: float = Field(
        default=30.0, validation_alias=AliasChoices("HTTP_TIMEOUT_SEC", "REQUEST_TIMEOUT_SEC")
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> str:
        log_level = str(value or "INFO").upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if log_level not in valid_levels:
            msg = f"Invalid log level: {value}. Must be one of {valid_levels}"
            raise ValueError(msg)
        return log_level

    @field_validator("log_file", mode="before")
    @classmethod
    def _blank_log_file(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        return str(value).strip() or None

    @field_validator("http_timeout_sec", mode="before")
    @classmethod
    def _validate_timeout(cls, value: Any) -> float:
        try:
            timeout = float(str(value or 30))
        except ValueError as exc:
            msg = "Timeout must be a valid number"
            raise ValueError(msg) from exc
        if timeout <= 0 or timeout > 600:
            msg = "Timeout must be between 0 and 600 seconds"
            raise ValueError(msg)
        return timeout


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    sync: SyncConfig
    retry: RetrySettings
    providers: dict[str, ProviderConfig]


class Settings(BaseSettings):
    """Application settings loaded automatically from environment variables.

    Nested models are populated by matching ``validation_alias`` on each of
    their fields; providers come from the ``ITEMSYNC_PROVIDERS`` JSON object.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    providers: dict[str, ProviderConfig] = Field(
        default_factory=dict, validation_alias=AliasChoices("ITEMSYNC_PROVIDERS", "providers")
    )

    @field_validator("providers", mode="before")
    @classmethod
    def _parse_providers(cls, value: Any) -> dict[str, Any]:
        raw = _parse_json_object(value, name="ITEMSYNC_PROVIDERS")
        return {_validate_provider_id(str(key)): value for key, value in raw.items()}

    @model_validator(mode="before")
    @classmethod
    def _build_nested_from_env(cls, data: Any) -> Any:
        """Build nested config objects from flat environment variables.

        Constructor arguments take precedence over the environment.
        """
        if not isinstance(data, dict):
            return data

        result = dict(data)
        merged_source = {**os.environ, **data}

        for field_name, field_info in cls.model_fields.items():
            annotation = field_info.annotation
            if not isinstance(annotation, type) or not issubclass(annotation, BaseModel):
                continue

            nested_data: dict[str, Any] = {}
            for nested_field_name, nested_field in annotation.model_fields.items():
                env_value = cls._resolve_env_value(merged_source, nested_field)
                if env_value is not None:
                    nested_data[nested_field_name] = env_value

            if nested_data:
                if field_name in result and isinstance(result[field_name], dict):
                    result[field_name] = {**nested_data, **result[field_name]}
                else:
                    result[field_name] = nested_data
        return result

    @staticmethod
    def _resolve_env_value(data: dict[str, Any], field: Any) -> Any | None:
        """Resolve environment variable value for a field using its aliases."""
        aliases: list[str] = []
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            aliases.extend(choice for choice in alias.choices if isinstance(choice, str))
        elif isinstance(alias, str):
            aliases.append(alias)

        for name in aliases:
            if name in data:
                return data[name]
        return None

    def as_app_config(self) -> AppConfig:
        return AppConfig(
            runtime=self.runtime,
            sync=self.sync,
            retry=self.retry,
            providers=dict(self.providers),
        )


def load_config(**overrides: Any) -> AppConfig:
    """Load application configuration from environment variables.

    Sources, highest precedence first:
    1. Keyword overrides
    2. Environment variables
    3. .env file (if present)

    Returns:
        Immutable AppConfig instance with all configuration sections.

    Raises:
        RuntimeError: If configuration validation fails.
    """
    try:
        settings = Settings(**overrides)
    except (ValidationError, SettingsError) as exc:
        msg = f"Configuration validation failed: {exc}"
        raise RuntimeError(msg) from exc

    config = settings.as_app_config()
    logger.debug(
        "config_loaded",
        extra={
            "providers": sorted(config.providers),
            "sync_interval_minutes": config.sync.sync_interval_minutes,
            "default_conflict_strategy": config.sync.default_conflict_strategy.value,
        },
    )
    return config
