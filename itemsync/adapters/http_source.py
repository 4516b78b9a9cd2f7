"""Generic JSON-over-HTTP remote item source."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pydantic import ValidationError

from itemsync.sync.models import Item

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_PAGES = 50

_URL_KEYS = ("url", "html_url", "web_url", "link")
_TITLE_KEYS = ("title", "name", "subject")
_MODIFIED_KEYS = ("last_modified", "lastModified", "updated_at", "updatedAt", "modified_at")


class IncompleteListingError(ValueError):
    """Raised when a listing has more pages than the source may follow.

    A partial listing cannot be diffed: items on unread pages would look
    deleted. Being a ``ValueError`` it is never retried.
    """


class HeaderSink(Protocol):
    def update_from_headers(self, provider_id: str, headers: Mapping[str, str]) -> None: ...


def _first(entry: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return value
    return None


def default_item_mapper(provider_id: str, entry: Mapping[str, Any]) -> Item | None:
    """Map a JSON object to an ``Item``; ``None`` when it has no URL."""
    url = _first(entry, _URL_KEYS)
    if not url:
        return None
    metadata = entry.get("metadata")
    return Item(
        url=str(url),
        title=str(_first(entry, _TITLE_KEYS) or url),
        provider_id=provider_id,
        last_modified=_first(entry, _MODIFIED_KEYS),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


def extract_entries(payload: Any) -> list[Mapping[str, Any]]:
    """Pull the list of objects out of a page body (bare list or ``items``/``data``)."""
    if isinstance(payload, dict):
        for key in ("items", "data", "results"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            return []
    if not isinstance(payload, list):
        return []
    return [entry for entry in payload if isinstance(entry, dict)]


class HttpItemSource:
    """Fetches items from a paginated JSON endpoint.

    Pages are followed through ``Link: <...>; rel="next"`` headers. Error
    responses raise ``httpx.HTTPStatusError`` so retry classification sees
    the status code. Response headers are fed to ``header_sink`` so the
    rate limiter tracks the upstream's reported quota. A listing longer than
    ``max_pages`` raises ``IncompleteListingError`` instead of returning a
    partial result.
    """

    def __init__(
        self,
        provider_id: str,
        url: str,
        *,
        header_sink: HeaderSink | None = None,
        item_mapper: Callable[[str, Mapping[str, Any]], Item | None] = default_item_mapper,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_pages: int = DEFAULT_MAX_PAGES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            provider_id: Provider the fetched items belong to
            url: First page URL
            header_sink: Receives every response's headers (usually the rate limiter)
            item_mapper: Converts one JSON object into an ``Item``
            headers: Extra request headers
            timeout: Request timeout in seconds
            max_pages: Upper bound on followed pages
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        """
        self.provider_id = provider_id
        self.url = url
        self._header_sink = header_sink
        self._item_mapper = item_mapper
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._timeout = timeout
        self._max_pages = max_pages
        self._transport = transport

    async def fetch_items(self, token: str | None) -> list[Item]:
        headers = dict(self._headers)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        items: list[Item] = []
        next_url: str | None = self.url
        pages = 0
        async with httpx.AsyncClient(
            timeout=self._timeout, headers=headers, transport=self._transport
        ) as client:
            while next_url and pages < self._max_pages:
                response = await client.get(next_url)
                pages += 1
                if self._header_sink is not None:
                    self._header_sink.update_from_headers(self.provider_id, response.headers)
                response.raise_for_status()
                items.extend(self._parse_page(response.json()))
                link = response.links.get("next", {}).get("url")
                next_url = str(response.url.join(link)) if link else None

        if next_url:
            logger.warning(
                "http_source_page_limit_reached",
                extra={"provider_id": self.provider_id, "max_pages": self._max_pages},
            )
            msg = f"Listing for {self.provider_id} has more than {self._max_pages} pages"
            raise IncompleteListingError(msg)
        logger.debug(
            "http_source_fetched",
            extra={"provider_id": self.provider_id, "pages": pages, "items": len(items)},
        )
        return items

    def _parse_page(self, payload: Any) -> list[Item]:
        parsed: list[Item] = []
        for entry in extract_entries(payload):
            try:
                item = self._item_mapper(self.provider_id, entry)
            except ValidationError as exc:
                logger.warning(
                    "http_source_item_invalid",
                    extra={"provider_id": self.provider_id, "error": str(exc)},
                )
                continue
            if item is not None:
                parsed.append(item)
        return parsed
