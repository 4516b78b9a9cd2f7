from __future__ import annotations

from itemsync.auth.models import OAuthConfig
from itemsync.security.rate_limiter import RateLimitConfig, RateLimitStrategy

from .settings import AppConfig, RuntimeConfig, Settings, load_config
from .sync import ProviderConfig, RetrySettings, SyncConfig

__all__ = [
    "AppConfig",
    "OAuthConfig",
    "ProviderConfig",
    "RateLimitConfig",
    "RateLimitStrategy",
    "RetrySettings",
    "RuntimeConfig",
    "Settings",
    "SyncConfig",
    "load_config",
]
