"""Sequential re-processing of an owner's pending items."""
import logging
import time
from typing import Callable, List, Optional

from notegraph.config import config
from notegraph.exceptions import ErrorCategory
from notegraph.models.schema import BatchResult, BatchTermination
from notegraph.observability import timed_operation
from notegraph.services.item_processor import ItemProcessor
from notegraph.storage.item_repository import ItemRepository

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing interrupted"


class BatchOrchestrator:
    """Drives ``ItemProcessor`` over all pending items of one owner.

    Items are processed strictly one after another with a fixed delay in
    between, to stay under the AI provider's rate limits. The run stops
    early when the provider reports an exhausted quota, or when the
    processor itself fails (for example the database became unreachable);
    in both cases the items that were not attempted are put in ``error``
    so none of them is left in ``processing``.
    """

    def __init__(
        self,
        items: ItemRepository,
        processor: ItemProcessor,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.items = items
        self.processor = processor
        self.delay_seconds = (
            config.batch_delay_seconds if delay_seconds is None else delay_seconds
        )
        self._sleep = sleep

    def process_pending(self, owner_id: str) -> BatchResult:
        with timed_operation("process_pending", owner_id=owner_id) as op:
            result = self._process_pending(owner_id)
            op.update(
                processed=result.processed,
                failed=result.failed,
                skipped=result.skipped,
                termination=result.termination.value,
            )
            return result

    def _process_pending(self, owner_id: str) -> BatchResult:
        pending = self.items.list_pending(owner_id)
        if not pending:
            return BatchResult(message="No pending items")

        item_ids = [item.id for item in pending]
        self.items.bulk_mark_processing(item_ids)
        logger.info(f"Batch for owner {owner_id}: {len(item_ids)} pending items")

        result = BatchResult()
        for index, item_id in enumerate(item_ids):
            if index > 0 and self.delay_seconds > 0:
                self._sleep(self.delay_seconds)

            try:
                outcome = self.processor.process_item(item_id, owner_id)
            except Exception as e:
                logger.error(f"Batch interrupted at item {item_id}: {e}", exc_info=True)
                result.last_error = str(e)
                self._fail_remaining(
                    result, item_ids[index:], ErrorCategory.UNKNOWN, INTERRUPTED_MESSAGE
                )
                result.termination = BatchTermination.INTERRUPTED
                break

            if outcome.ok:
                if outcome.already_processing:
                    result.skipped += 1
                else:
                    result.processed += 1
                continue

            result.failed += 1
            result.last_error = outcome.message
            if outcome.category == ErrorCategory.AI_QUOTA:
                logger.warning(
                    f"AI quota exhausted at item {item_id}; "
                    f"{len(item_ids) - index - 1} items not attempted"
                )
                self._fail_remaining(
                    result,
                    item_ids[index + 1:],
                    ErrorCategory.AI_QUOTA,
                    ErrorCategory.AI_QUOTA.user_message,
                )
                result.termination = BatchTermination.QUOTA_STOPPED
                break

        result.message = self._summarize(result)
        logger.info(f"Batch for owner {owner_id} finished: {result.message}")
        return result

    def _fail_remaining(
        self,
        result: BatchResult,
        item_ids: List[str],
        category: ErrorCategory,
        message: str,
    ) -> None:
        result.failed += len(item_ids)
        if not item_ids:
            return
        try:
            self.items.bulk_mark_error(item_ids, category, message)
        except Exception as e:
            logger.error(
                f"Could not mark {len(item_ids)} items as failed: {e}", exc_info=True
            )
            result.last_error = f"{result.last_error}; marking items failed: {e}"

    @staticmethod
    def _summarize(result: BatchResult) -> str:
        counts = (
            f"{result.processed} processed, {result.failed} failed, "
            f"{result.skipped} skipped"
        )
        if result.termination == BatchTermination.QUOTA_STOPPED:
            return f"Stopped: AI quota exceeded ({counts})"
        if result.termination == BatchTermination.INTERRUPTED:
            return f"{INTERRUPTED_MESSAGE} ({counts})"
        return f"Completed ({counts})"
