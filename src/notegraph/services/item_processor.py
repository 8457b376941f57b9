"""Enrichment pipeline for a single item.

``ItemProcessor.process_item`` moves one item from ``processing`` (or
``error``) to ``ready``: it analyzes the item's text, embeds the result,
connects the item to similar items of the same owner and finally marks it
ready. Each step persists its output together with a step marker, so a
later attempt continues where a failed or crashed one stopped instead of
repeating AI calls.

Concurrent runs on the same item are excluded by a lease: a run first
claims the item with an atomic conditional update, and every later write
of the run is conditional on still holding that lease.
"""
import logging
from typing import List, Optional

from notegraph.config import config
from notegraph.exceptions import (ErrorCategory, InsufficientContentError,
                                  classify_exception)
from notegraph.models.schema import (AnalysisResult, Connection, Item, ItemKind,
                                     ItemStatus, ProcessingStep, ProcessResult)
from notegraph.observability import timed_operation
from notegraph.services.analysis_types import AnalysisProvider
from notegraph.services.edge_materializer import EdgeMaterializer
from notegraph.services.similarity import rank_candidates
from notegraph.storage.connection_repository import ConnectionRepository
from notegraph.storage.item_repository import ItemRepository

logger = logging.getLogger(__name__)

DEFAULT_TEXT_TITLE = "New Note"


class _LeaseLost(Exception):
    """Another run took over the item while this one was working on it."""


def build_analysis_text(item: Item) -> str:
    """Text sent to the analysis call."""
    if item.kind == ItemKind.LINK:
        return (
            "URL Note\n"
            f"Title: {item.title or ''}\n"
            f"URL: {item.url or ''}\n"
            f"UserText: {item.content or ''}"
        )
    return item.content or ""


def content_length(item: Item) -> int:
    """Non-whitespace characters of user-supplied material."""
    if item.kind == ItemKind.LINK:
        parts = [item.title or "", item.url or "", item.content or ""]
    else:
        parts = [item.content or ""]
    return sum(1 for ch in "".join(parts) if not ch.isspace())


def choose_title(item: Item, analysis: AnalysisResult) -> Optional[str]:
    """Keep a meaningful link title; otherwise prefer the AI title."""
    existing = (item.title or "").strip()
    if item.kind == ItemKind.LINK and len(existing) >= 3:
        return item.title
    return analysis.title or item.title


class ItemProcessor:
    """Runs the enrichment pipeline for one item at a time."""

    def __init__(
        self,
        items: ItemRepository,
        connections: ConnectionRepository,
        provider: AnalysisProvider,
        materializer: Optional[EdgeMaterializer] = None,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        lease_ttl_seconds: Optional[int] = None,
        min_content_chars: Optional[int] = None,
    ):
        self.items = items
        self.connections = connections
        self.provider = provider
        self.materializer = materializer or EdgeMaterializer(connections, provider)
        self.threshold = config.similarity_threshold if threshold is None else threshold
        self.top_k = top_k or config.max_connections_per_item
        self.lease_ttl_seconds = lease_ttl_seconds or config.lease_ttl_seconds
        self.min_content_chars = (
            config.min_content_chars if min_content_chars is None else min_content_chars
        )

    def process_item(self, item_id: str, owner_id: str) -> ProcessResult:
        """Enrich one item and connect it to related items.

        Returns a result instead of raising for every domain outcome
        (not found, forbidden, already ready, already processing,
        insufficient content, AI failures). Storage failures while
        recording an error are the only exceptions that escape.
        """
        with timed_operation("process_item", item_id=item_id) as op:
            result = self._process(item_id, owner_id)
            op["ok"] = result.ok
            op["status"] = result.status
            if result.category:
                op["category"] = result.category.value
            return result

    def _process(self, item_id: str, owner_id: str) -> ProcessResult:
        item = self.items.get(item_id)
        if item is None:
            return ProcessResult.failure(ErrorCategory.NOT_FOUND)
        if item.owner_id != owner_id:
            logger.warning(f"Owner mismatch processing item {item_id}")
            return ProcessResult.failure(ErrorCategory.FORBIDDEN)
        if item.status == ItemStatus.READY:
            # Read-only: same result as the run that made the item ready.
            return ProcessResult(
                ok=True,
                status=ItemStatus.READY.value,
                item=item,
                connections=self.connections.list_for_item(item_id),
            )

        token = self.items.claim(item_id, owner_id, self.lease_ttl_seconds)
        if token is None:
            return self._already_processing(item_id)

        try:
            return self._run(item, token)
        except _LeaseLost:
            return self._already_processing(item_id)
        except Exception as e:
            category = classify_exception(e)
            if isinstance(e, InsufficientContentError):
                logger.info(f"Item {item_id} has insufficient content")
            else:
                logger.error(
                    f"Processing item {item_id} failed ({category.value}): {e}",
                    exc_info=category == ErrorCategory.UNKNOWN,
                )
            self.items.mark_error(item_id, category, lease_token=token)
            return ProcessResult.failure(category, status=ItemStatus.ERROR.value)

    def _already_processing(self, item_id: str) -> ProcessResult:
        logger.debug(f"Item {item_id} is being processed by another run")
        return ProcessResult(
            ok=True,
            status=ItemStatus.PROCESSING.value,
            message="already processing",
            already_processing=True,
        )

    def _save(self, item: Item, token: str, step: ProcessingStep, **fields) -> Item:
        if not self.items.save_progress(item.id, token, step, **fields):
            raise _LeaseLost(item.id)
        return item.model_copy(update={"processing_step": step, **fields})

    def _embed(self, item: Item, analysis: AnalysisResult) -> List[float]:
        """Embedding for the analysis result; ``[]`` if the call fails."""
        try:
            return list(self.provider.embed(analysis.embedding_input()) or [])
        except Exception as e:
            logger.warning(
                f"Embedding for item {item.id} failed "
                f"({classify_exception(e).value}): {e}"
            )
            return []

    def _run(self, item: Item, token: str) -> ProcessResult:
        length = content_length(item)
        if length < self.min_content_chars:
            raise InsufficientContentError(item.id, length, self.min_content_chars)

        step = item.processing_step
        if step == ProcessingStep.FINALIZED:
            # Picked up again by a batch: keep enrichment that exists,
            # redo everything when the summary is missing.
            step = (
                ProcessingStep.EMBEDDED
                if item.summary is not None
                else ProcessingStep.CONTENT_ASSEMBLED
            )

        if step == ProcessingStep.PENDING:
            item = self._save(item, token, ProcessingStep.CONTENT_ASSEMBLED)
            step = ProcessingStep.CONTENT_ASSEMBLED

        analysis: Optional[AnalysisResult] = None
        if not step.reached(ProcessingStep.ANALYZED):
            analysis = self.provider.analyze(build_analysis_text(item))
            title = choose_title(item, analysis)
            if analysis.title is None:
                analysis = analysis.model_copy(update={"title": title})
            item = self._save(
                item,
                token,
                ProcessingStep.ANALYZED,
                title=title,
                summary=analysis.summary,
                topics=analysis.topics,
            )
            step = ProcessingStep.ANALYZED

        if not step.reached(ProcessingStep.EMBEDDED):
            if analysis is None:
                analysis = AnalysisResult(
                    summary=item.summary or "", topics=item.topics, title=item.title
                )
            vector = self._embed(item, analysis)
            if not vector:
                logger.info(f"No embedding for item {item.id}; topic fallback applies")
            item = self._save(
                item, token, ProcessingStep.EMBEDDED, embedding=list(vector) or None
            )
            step = ProcessingStep.EMBEDDED

        connections: List[Connection]
        if not step.reached(ProcessingStep.CONNECTIONS_COMPUTED):
            candidates = self.items.list_candidates(item.owner_id, item.id)
            ranked = rank_candidates(
                item,
                candidates,
                threshold=self.threshold,
                top_k=self.top_k,
                match_floor=config.topic_match_floor,
            )
            connections = self.materializer.materialize(item, ranked)
            item = self._save(item, token, ProcessingStep.CONNECTIONS_COMPUTED)
        else:
            connections = self.connections.list_for_item(item.id)

        if not self.items.finalize(item.id, token):
            raise _LeaseLost(item.id)

        final = self.items.get(item.id) or item
        logger.info(f"Item {item.id} ready with {len(connections)} connections")
        return ProcessResult(
            ok=True,
            status=ItemStatus.READY.value,
            item=final,
            connections=connections,
        )
