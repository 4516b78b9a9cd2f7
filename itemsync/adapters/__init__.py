"""Remote item source adapters."""

from itemsync.adapters.http_source import (
    HttpItemSource,
    IncompleteListingError,
    default_item_mapper,
)

__all__ = ["HttpItemSource", "IncompleteListingError", "default_item_mapper"]
