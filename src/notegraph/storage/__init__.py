"""Storage layer for Notegraph."""

from notegraph.storage.connection_repository import ConnectionRepository
from notegraph.storage.item_repository import ItemRepository

__all__ = [
    "ItemRepository",
    "ConnectionRepository",
]
