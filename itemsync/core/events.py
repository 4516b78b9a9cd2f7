"""Provider-scoped, synchronous event delivery.

Listeners subscribe per provider id (or to every provider with ``ALL_PROVIDERS``).
Events are delivered in subscription order on the publisher's call stack; a
listener that raises is logged and skipped so the publisher never sees it.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar

from itemsync.core.time_utils import utc_now

logger = logging.getLogger(__name__)

ALL_PROVIDERS = "*"


class ProviderEvent(Protocol):
    @property
    def provider_id(self) -> str: ...

    @property
    def type(self) -> str: ...


TEvent = TypeVar("TEvent", bound=ProviderEvent)

EventListener = Callable[[TEvent], None]


@dataclass(frozen=True)
class Event:
    """Base event carrying the provider it concerns."""

    type: str
    provider_id: str
    timestamp: datetime = field(default_factory=utc_now)
    data: dict[str, Any] = field(default_factory=dict)


class EventSink(Generic[TEvent]):
    """Callback registry keyed by provider id.

    Example:
        ```python
        sink: EventSink[AuthEvent] = EventSink("auth")

        def on_auth(event: AuthEvent) -> None:
            print(event.type, event.provider_id)

        sink.subscribe("github", on_auth)
        sink.emit(AuthEvent(type="auth_success", provider_id="github"))
        ```
    """

    def __init__(self, name: str = "events") -> None:
        self._name = name
        self._listeners: dict[str, list[EventListener[TEvent]]] = defaultdict(list)

    def subscribe(self, provider_id: str, listener: EventListener[TEvent]) -> None:
        listeners = self._listeners[provider_id]
        if listener not in listeners:
            listeners.append(listener)
        logger.debug(
            "event_listener_subscribed",
            extra={
                "sink": self._name,
                "provider_id": provider_id,
                "total_listeners": len(listeners),
            },
        )

    def unsubscribe(self, provider_id: str, listener: EventListener[TEvent]) -> None:
        listeners = self._listeners.get(provider_id)
        if not listeners or listener not in listeners:
            logger.warning(
                "event_listener_not_found",
                extra={"sink": self._name, "provider_id": provider_id},
            )
            return
        listeners.remove(listener)
        if not listeners:
            del self._listeners[provider_id]

    def listener_count(self, provider_id: str) -> int:
        return len(self._listeners.get(provider_id, ()))

    def emit(self, event: TEvent) -> int:
        """Deliver ``event`` to the provider's listeners and the wildcard listeners.

        Returns:
            Number of listeners that handled the event without raising.
        """
        targets = list(self._listeners.get(event.provider_id, ()))
        if event.provider_id != ALL_PROVIDERS:
            targets.extend(self._listeners.get(ALL_PROVIDERS, ()))

        delivered = 0
        for listener in targets:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "event_listener_failed",
                    extra={
                        "sink": self._name,
                        "event_type": event.type,
                        "provider_id": event.provider_id,
                    },
                )
        return delivered

    def clear(self) -> None:
        self._listeners.clear()
