"""Wiring for the sync runtime.

Every service is built once here and handed to its consumers explicitly;
nothing in the package reaches for a module-level instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx

from itemsync.adapters.http_source import HttpItemSource
from itemsync.auth.manager import TokenLifecycleManager
from itemsync.auth.models import AuthEvent
from itemsync.auth.oauth_client import OAuthTokenClient
from itemsync.auth.store import InMemoryAuthStateStore
from itemsync.config import AppConfig, load_config
from itemsync.core.events import EventSink
from itemsync.core.logging_utils import get_logger, setup_json_logging
from itemsync.security.rate_limiter import ProviderRateLimiter
from itemsync.services.scheduler import SchedulerService
from itemsync.sync.conflicts import ConflictResolver
from itemsync.sync.engine import ReconciliationEngine
from itemsync.sync.models import ConflictEvent
from itemsync.sync.records import InMemoryRecordRepository
from itemsync.utils.retry_utils import RetryEngine

if TYPE_CHECKING:
    from itemsync.auth.protocols import AuthorizationFlow, AuthStateStore
    from itemsync.sync.protocols import LocalStateStore, RecordRepository

logger = get_logger(__name__)


@dataclass
class Container:
    """Holds the wired services and owns their start/stop lifecycle."""

    config: AppConfig
    auth_events: EventSink[AuthEvent]
    conflict_events: EventSink[ConflictEvent]
    tokens: TokenLifecycleManager
    rate_limiter: ProviderRateLimiter
    retry: RetryEngine
    resolver: ConflictResolver
    engine: ReconciliationEngine
    scheduler: SchedulerService
    _started: bool = field(default=False, init=False)

    async def start(self) -> None:
        """Restore token timers, start the limiter sweep and the scheduler."""
        if self._started:
            logger.warning("container_already_started")
            return
        await self.tokens.initialize()
        self.rate_limiter.start()
        await self.scheduler.start()
        self._started = True
        logger.info("container_started", extra={"providers": self.engine.provider_ids})

    async def stop(self) -> None:
        """Stop background work in reverse start order."""
        if not self._started:
            return
        await self.scheduler.stop()
        await self.rate_limiter.stop()
        await self.tokens.close()
        self._started = False
        logger.info("container_stopped")


def build_container(
    cfg: AppConfig | None = None,
    *,
    store: LocalStateStore,
    flow: AuthorizationFlow | None = None,
    auth_store: AuthStateStore | None = None,
    records: RecordRepository | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    configure_logging: bool = False,
) -> Container:
    """Construct the runtime from configuration.

    Args:
        cfg: Application configuration. If None, loads from environment.
        store: Host local state store that providers are mirrored into.
        flow: Host interactive authorization flow for ``authenticate``.
        auth_store: Persistence for auth state. If None, keeps it in memory.
        records: Persistence for local records. If None, keeps them in memory.
        transport: Optional httpx transport shared by OAuth and item sources.
        configure_logging: Install JSON logging from the runtime config.

    Returns:
        Configured Container; call ``start()`` from a running event loop.
    """
    cfg = cfg or load_config()

    if configure_logging:
        setup_json_logging(
            cfg.runtime.log_level,
            include_location=cfg.runtime.log_include_location,
            use_loguru=cfg.runtime.log_use_loguru,
            log_file=cfg.runtime.log_file,
        )

    auth_events: EventSink[AuthEvent] = EventSink("auth")
    conflict_events: EventSink[ConflictEvent] = EventSink("conflicts")

    tokens = TokenLifecycleManager(
        auth_store or InMemoryAuthStateStore(),
        flow=flow,
        token_client=OAuthTokenClient(timeout=cfg.runtime.http_timeout_sec, transport=transport),
        refresh_margin=timedelta(seconds=cfg.sync.token_refresh_margin_seconds),
        events=auth_events,
    )
    rate_limiter = ProviderRateLimiter(
        idle_ttl=cfg.sync.rate_limiter_idle_ttl_seconds,
        sweep_interval=cfg.sync.rate_limiter_sweep_seconds,
    )
    retry = RetryEngine(cfg.retry.to_policy())
    resolver = ConflictResolver(cfg.sync.default_conflict_strategy, events=conflict_events)
    engine = ReconciliationEngine(
        store,
        resolver=resolver,
        rate_limiter=rate_limiter,
        retry=retry,
        tokens=tokens,
        records=records or InMemoryRecordRepository(),
    )

    for provider_id, provider in cfg.providers.items():
        if provider.oauth is not None:
            tokens.register_config(provider_id, provider.oauth)
        if provider.rate_limit is not None:
            rate_limiter.configure(provider_id, provider.rate_limit)
        if provider.conflict_strategy is not None:
            resolver.set_provider_strategy(provider_id, provider.conflict_strategy)
        if provider.source_url:
            engine.register_provider(
                provider_id,
                HttpItemSource(
                    provider_id,
                    provider.source_url,
                    header_sink=rate_limiter,
                    timeout=cfg.runtime.http_timeout_sec,
                    transport=transport,
                ),
                namespace=provider.namespace,
                retry_policy=provider.retry.to_policy() if provider.retry else None,
                enabled=provider.enabled,
            )
        else:
            logger.info("provider_without_source", extra={"provider_id": provider_id})

    scheduler = SchedulerService(cfg.sync, engine)
    logger.debug("container_built", extra={"providers": sorted(cfg.providers)})
    return Container(
        config=cfg,
        auth_events=auth_events,
        conflict_events=conflict_events,
        tokens=tokens,
        rate_limiter=rate_limiter,
        retry=retry,
        resolver=resolver,
        engine=engine,
        scheduler=scheduler,
    )
