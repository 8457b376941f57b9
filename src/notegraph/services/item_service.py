"""Service layer for item operations."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

from notegraph.exceptions import (ErrorCode, ItemAccessError, ItemNotFoundError,
                                  ValidationError)
from notegraph.models.db_models import get_session_factory, init_db
from notegraph.models.schema import (BatchResult, Connection, Item, ItemKind,
                                     ItemStatus, ProcessResult, utc_now)
from notegraph.services.analysis_types import AnalysisProvider
from notegraph.services.batch_orchestrator import BatchOrchestrator
from notegraph.services.item_processor import DEFAULT_TEXT_TITLE, ItemProcessor
from notegraph.storage.connection_repository import ConnectionRepository
from notegraph.storage.item_repository import ItemRepository

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 512


def _parse_kind(kind: Union[str, ItemKind]) -> ItemKind:
    if isinstance(kind, ItemKind):
        return kind
    try:
        return ItemKind(str(kind).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid item kind: {kind}. Valid kinds are: "
            f"{', '.join(k.value for k in ItemKind)}",
            field="kind",
            value=kind,
            code=ErrorCode.INVALID_ITEM_KIND,
        ) from None


def _validate_url(url: Optional[str]) -> str:
    if not url or not url.strip():
        raise ValidationError("Link items require a URL", field="url")
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            "URL must be an absolute http(s) URL", field="url", value=url
        )
    return url.strip()


class ItemService:
    """Creates, reads, updates and deletes items, and triggers processing.

    Processing after create/update runs fire-and-forget on a single worker
    thread: the caller gets the stored item back immediately and the item
    moves to ``ready`` or ``error`` in the background.
    """

    def __init__(
        self,
        provider: Optional[AnalysisProvider] = None,
        items: Optional[ItemRepository] = None,
        connections: Optional[ConnectionRepository] = None,
        processor: Optional[ItemProcessor] = None,
        orchestrator: Optional[BatchOrchestrator] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the service.

        Args:
            provider: Analysis provider used to build the processor when
                none is given.
            items: Item storage. Created from ``engine`` if None.
            connections: Connection storage. Created from ``engine`` if None.
            processor: Pipeline for single items.
            orchestrator: Batch driver for pending items.
            engine: Pre-configured SQLAlchemy engine shared by the
                repositories. Only used when a repository is missing.
        """
        if items is None or connections is None:
            session_factory = get_session_factory(engine or init_db())
            items = items or ItemRepository(session_factory)
            connections = connections or ConnectionRepository(session_factory)
        self.items = items
        self.connections = connections

        if processor is None:
            if provider is None:
                raise ValueError("Either a processor or an analysis provider is required")
            processor = ItemProcessor(items, connections, provider)
        self.processor = processor
        self.orchestrator = orchestrator or BatchOrchestrator(items, processor)

        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="notegraph-process"
        )

    # =========================================================================
    # Background processing (fire-and-forget, never fails the caller)
    # =========================================================================

    def submit_processing(self, item_id: str, owner_id: str) -> Future:
        """Queue an item for processing on the background worker."""
        return self._executor.submit(self._process_in_background, item_id, owner_id)

    def _process_in_background(self, item_id: str, owner_id: str) -> Optional[ProcessResult]:
        try:
            result = self.processor.process_item(item_id, owner_id)
        except Exception as e:
            logger.error(f"Background processing of item {item_id} failed: {e}", exc_info=True)
            return None
        if not result.ok:
            logger.warning(
                f"Background processing of item {item_id} ended in "
                f"{result.category.value if result.category else 'error'}"
            )
        return result

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background worker, optionally draining queued work."""
        self._executor.shutdown(wait=wait)

    # =========================================================================
    # CRUD
    # =========================================================================

    def create_item(
        self,
        owner_id: str,
        content: str = "",
        kind: Union[str, ItemKind] = ItemKind.TEXT,
        url: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        process: bool = True,
    ) -> Item:
        """Store a new item in ``processing`` and queue it for enrichment."""
        if not owner_id or not owner_id.strip():
            raise ValidationError("Owner is required", field="owner_id")
        item_kind = _parse_kind(kind)
        content = content or ""
        title = title.strip() if title and title.strip() else None
        if title and len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters",
                field="title",
            )

        if item_kind == ItemKind.LINK:
            url = _validate_url(url)
            title = title or urlparse(url).hostname or url
        else:
            if not content.strip():
                raise ValidationError("Text items require content", field="content")
            url = None
            title = title or DEFAULT_TEXT_TITLE

        item = Item(
            owner_id=owner_id,
            content=content,
            kind=item_kind,
            url=url,
            title=title,
            tags=tags or [],
            status=ItemStatus.PROCESSING,
        )
        self.items.create(item)
        logger.info(f"Created {item_kind.value} item {item.id}")

        if process:
            self.submit_processing(item.id, owner_id)
        return item

    def get_item(self, item_id: str, owner_id: str) -> Item:
        """Get an item owned by ``owner_id``.

        Raises:
            ItemNotFoundError: If the item does not exist.
            ItemAccessError: If the item belongs to someone else.
        """
        item = self.items.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        if item.owner_id != owner_id:
            raise ItemAccessError(item_id, owner_id)
        return item

    def list_connections(self, item_id: str, owner_id: str) -> List[Tuple[Connection, Item]]:
        """Connections of an item with the item on the other end, strongest first."""
        self.get_item(item_id, owner_id)
        connections = self.connections.list_for_item(item_id)
        neighbours = self.items.get_many(c.other(item_id) for c in connections)
        return [
            (c, neighbours[c.other(item_id)])
            for c in connections
            if c.other(item_id) in neighbours
        ]

    def update_item(
        self,
        item_id: str,
        owner_id: str,
        content: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        reprocess: bool = False,
    ) -> Item:
        """Edit an item. Changing content (or ``reprocess``) re-runs enrichment."""
        item = self.get_item(item_id, owner_id)

        fields: Dict[str, Any] = {}
        if title is not None:
            if not title.strip():
                raise ValidationError("Title cannot be empty", field="title")
            fields["title"] = title.strip()
        if tags is not None:
            fields["tags"] = tags
        content_changed = content is not None and content != item.content
        if content_changed:
            if item.kind == ItemKind.TEXT and not content.strip():
                raise ValidationError("Text items require content", field="content")
            fields["content"] = content

        restart = content_changed or reprocess
        if restart and self.items.has_live_lease(item_id):
            raise ValidationError(
                "Item is being processed; try again once it finishes",
                field="item_id",
                value=item_id,
            )

        if fields:
            self.items.update_fields(item_id, **fields)

        if restart:
            self.items.reset_progress(item_id)

        updated = self.items.get(item_id) or item.model_copy(
            update={**fields, "updated_at": utc_now()}
        )
        if restart:
            self.submit_processing(item_id, owner_id)
            logger.info(f"Item {item_id} queued for reprocessing")
        return updated

    def delete_item(self, item_id: str, owner_id: str) -> None:
        """Delete an item and all of its connections."""
        self.get_item(item_id, owner_id)
        removed = self.connections.delete_for_item(item_id)
        self.items.delete(item_id)
        logger.info(f"Deleted item {item_id} and {removed} connections")

    def status_counts(self, owner_id: str) -> Dict[str, int]:
        return self.items.count_by_status(owner_id)

    # =========================================================================
    # Synchronous processing entry points
    # =========================================================================

    def process_item(self, item_id: str, owner_id: str) -> ProcessResult:
        return self.processor.process_item(item_id, owner_id)

    def process_pending(self, owner_id: str) -> BatchResult:
        return self.orchestrator.process_pending(owner_id)
