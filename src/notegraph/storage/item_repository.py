"""Repository for item storage and retrieval."""
import datetime
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from notegraph.exceptions import ErrorCategory, ErrorCode, StorageError
from notegraph.models.db_models import (DBConnection, DBItem, blob_to_embedding,
                                        embedding_to_blob)
from notegraph.models.schema import (Item, ItemKind, ItemStatus, ProcessingStep,
                                     ensure_timezone_aware, utc_now)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "content",
    "url",
    "title",
    "summary",
    "topics",
    "tags",
    "embedding",
    "status",
    "processing_step",
    "error_category",
    "error_message",
}


def _to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert domain-level field values to column values."""
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

    values: Dict[str, Any] = {}
    for name, value in fields.items():
        if name == "embedding":
            value = embedding_to_blob(value)
        elif name in ("topics", "tags"):
            value = [str(v).strip() for v in (value or []) if v and str(v).strip()]
        elif isinstance(value, (ItemStatus, ProcessingStep, ErrorCategory, ItemKind)):
            value = value.value
        values[name] = value
    return values


def _live_lease_clause(now: datetime.datetime):
    return and_(DBItem.lease_token.isnot(None), DBItem.lease_expires_at >= now)


class ItemRepository:
    """Repository for items and their processing bookkeeping.

    Every method opens its own session and commits before returning, so a
    processing run is a sequence of independent writes. Writes made on
    behalf of a processing run are conditional on the run's lease token;
    they return False once the lease has been taken over.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _db_item_to_model(db_item: DBItem) -> Item:
        return Item(
            id=db_item.id,
            owner_id=db_item.owner_id,
            content=db_item.content or "",
            kind=ItemKind(db_item.kind),
            url=db_item.url,
            title=db_item.title,
            summary=db_item.summary,
            topics=db_item.topics or [],
            tags=db_item.tags or [],
            embedding=blob_to_embedding(db_item.embedding),
            status=ItemStatus(db_item.status),
            processing_step=ProcessingStep(db_item.processing_step),
            lease_token=db_item.lease_token,
            lease_expires_at=(
                ensure_timezone_aware(db_item.lease_expires_at)
                if db_item.lease_expires_at
                else None
            ),
            error_category=(
                ErrorCategory(db_item.error_category) if db_item.error_category else None
            ),
            error_message=db_item.error_message,
            created_at=ensure_timezone_aware(db_item.created_at),
            updated_at=ensure_timezone_aware(db_item.updated_at),
        )

    def _storage_error(self, operation: str, e: Exception, item_id: Optional[str] = None):
        target = f" for item {item_id}" if item_id else ""
        code = (
            ErrorCode.STORAGE_READ_FAILED
            if operation in ("read", "list")
            else ErrorCode.STORAGE_WRITE_FAILED
        )
        return StorageError(
            f"Item {operation} failed{target}",
            operation=operation,
            code=code,
            original_error=e,
        )

    # ------------------------------------------------------------------
    # Basic CRUD
    # ------------------------------------------------------------------

    def create(self, item: Item) -> Item:
        """Insert a new item."""
        try:
            with self.session_factory() as session:
                session.add(
                    DBItem(
                        id=item.id,
                        owner_id=item.owner_id,
                        kind=item.kind.value,
                        content=item.content,
                        url=item.url,
                        title=item.title,
                        summary=item.summary,
                        topics=list(item.topics),
                        tags=list(item.tags),
                        embedding=embedding_to_blob(item.embedding),
                        status=item.status.value,
                        processing_step=item.processing_step.value,
                        error_category=(
                            item.error_category.value if item.error_category else None
                        ),
                        error_message=item.error_message,
                        created_at=item.created_at,
                        updated_at=item.updated_at,
                    )
                )
                session.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("create", e, item.id) from e
        return item

    def get(self, item_id: str) -> Optional[Item]:
        try:
            with self.session_factory() as session:
                db_item = session.get(DBItem, item_id)
                return self._db_item_to_model(db_item) if db_item else None
        except SQLAlchemyError as e:
            raise self._storage_error("read", e, item_id) from e

    def get_many(self, item_ids: Iterable[str]) -> Dict[str, Item]:
        """Load several items at once, keyed by id. Missing ids are omitted."""
        ids = list(set(item_ids))
        if not ids:
            return {}
        try:
            with self.session_factory() as session:
                rows = session.scalars(select(DBItem).where(DBItem.id.in_(ids))).all()
                return {row.id: self._db_item_to_model(row) for row in rows}
        except SQLAlchemyError as e:
            raise self._storage_error("read", e) from e

    def update_fields(self, item_id: str, **fields: Any) -> bool:
        """Overwrite the given fields unconditionally.

        Returns:
            True if the item exists and was updated.
        """
        values = _to_columns(fields)
        values["updated_at"] = utc_now()
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem).where(DBItem.id == item_id).values(**values)
                )
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise self._storage_error("update", e, item_id) from e

    def reset_progress(self, item_id: str) -> bool:
        """Discard enrichment so the item is processed again from scratch."""
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem)
                    .where(DBItem.id == item_id)
                    .values(
                        status=ItemStatus.PROCESSING.value,
                        processing_step=ProcessingStep.PENDING.value,
                        summary=None,
                        topics=[],
                        embedding=None,
                        error_category=None,
                        error_message=None,
                        updated_at=utc_now(),
                    )
                )
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise self._storage_error("update", e, item_id) from e

    def delete(self, item_id: str) -> bool:
        """Delete an item together with all of its connections."""
        try:
            with self.session_factory() as session:
                session.execute(
                    delete(DBConnection).where(
                        or_(DBConnection.low_id == item_id, DBConnection.high_id == item_id)
                    )
                )
                db_item = session.get(DBItem, item_id)
                if db_item is None:
                    session.commit()
                    return False
                session.delete(db_item)
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise self._storage_error("delete", e, item_id) from e

    # ------------------------------------------------------------------
    # Lease handling
    # ------------------------------------------------------------------

    def claim(self, item_id: str, owner_id: str, ttl_seconds: int) -> Optional[str]:
        """Atomically take the processing lease on an item.

        Succeeds only when the item is not ``ready`` and no other run holds
        a live lease. The item is (re)confirmed as ``processing``.

        Returns:
            The new lease token, or None if the claim was refused.
        """
        now = utc_now()
        token = uuid.uuid4().hex
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem)
                    .where(
                        DBItem.id == item_id,
                        DBItem.owner_id == owner_id,
                        DBItem.status != ItemStatus.READY.value,
                        or_(
                            DBItem.lease_token.is_(None),
                            DBItem.lease_expires_at.is_(None),
                            DBItem.lease_expires_at < now,
                        ),
                    )
                    .values(
                        status=ItemStatus.PROCESSING.value,
                        lease_token=token,
                        lease_expires_at=now + datetime.timedelta(seconds=ttl_seconds),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("claim", e, item_id) from e

        if result.rowcount != 1:
            return None
        logger.debug(f"Lease {token[:8]} taken on item {item_id}")
        return token

    def has_live_lease(self, item_id: str) -> bool:
        try:
            with self.session_factory() as session:
                found = session.scalar(
                    select(DBItem.id).where(
                        DBItem.id == item_id, _live_lease_clause(utc_now())
                    )
                )
                return found is not None
        except SQLAlchemyError as e:
            raise self._storage_error("read", e, item_id) from e

    def save_progress(
        self, item_id: str, lease_token: str, step: ProcessingStep, **fields: Any
    ) -> bool:
        """Persist step output and advance the step marker under a lease.

        Returns:
            False if the lease is no longer held by ``lease_token``.
        """
        values = _to_columns(fields)
        values["processing_step"] = step.value
        values["updated_at"] = utc_now()
        return self._update_under_lease(item_id, lease_token, values)

    def finalize(self, item_id: str, lease_token: str) -> bool:
        """Mark the item ``ready`` and release the lease."""
        return self._update_under_lease(
            item_id,
            lease_token,
            {
                "status": ItemStatus.READY.value,
                "processing_step": ProcessingStep.FINALIZED.value,
                "lease_token": None,
                "lease_expires_at": None,
                "error_category": None,
                "error_message": None,
                "updated_at": utc_now(),
            },
        )

    def mark_error(
        self,
        item_id: str,
        category: ErrorCategory,
        message: Optional[str] = None,
        lease_token: Optional[str] = None,
    ) -> bool:
        """Write ``error`` with a category and release any lease.

        When ``lease_token`` is given the write only applies while that
        lease is still held.
        """
        values = {
            "status": ItemStatus.ERROR.value,
            "error_category": category.value,
            "error_message": message or category.user_message,
            "lease_token": None,
            "lease_expires_at": None,
            "updated_at": utc_now(),
        }
        if lease_token is not None:
            return self._update_under_lease(item_id, lease_token, values)
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem).where(DBItem.id == item_id).values(**values)
                )
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise self._storage_error("update", e, item_id) from e

    def _update_under_lease(
        self, item_id: str, lease_token: str, values: Dict[str, Any]
    ) -> bool:
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem)
                    .where(DBItem.id == item_id, DBItem.lease_token == lease_token)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise self._storage_error("update", e, item_id) from e

        if result.rowcount != 1:
            logger.warning(
                f"Lease {lease_token[:8]} on item {item_id} was lost; write skipped"
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Owner-scoped queries
    # ------------------------------------------------------------------

    def list_pending(self, owner_id: str) -> List[Item]:
        """Items of an owner that still need enrichment, oldest first.

        Pending means: no summary while ``ready`` or ``processing``, or
        any item in ``error``.
        """
        try:
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBItem)
                    .where(
                        DBItem.owner_id == owner_id,
                        or_(
                            and_(
                                DBItem.summary.is_(None),
                                DBItem.status.in_(
                                    [ItemStatus.READY.value, ItemStatus.PROCESSING.value]
                                ),
                            ),
                            DBItem.status == ItemStatus.ERROR.value,
                        ),
                    )
                    .order_by(DBItem.created_at.asc(), DBItem.id.asc())
                ).all()
                return [self._db_item_to_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._storage_error("list", e) from e

    def list_candidates(self, owner_id: str, exclude_id: str) -> List[Item]:
        """All ``ready`` items of an owner except ``exclude_id``."""
        try:
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBItem)
                    .where(
                        DBItem.owner_id == owner_id,
                        DBItem.status == ItemStatus.READY.value,
                        DBItem.id != exclude_id,
                    )
                    .order_by(DBItem.id.asc())
                ).all()
                return [self._db_item_to_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._storage_error("list", e) from e

    def bulk_mark_processing(self, item_ids: List[str]) -> int:
        """Batch marker: set ``processing`` on all given items.

        Leases are left untouched so a run already in flight keeps its claim.
        """
        if not item_ids:
            return 0
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem)
                    .where(DBItem.id.in_(item_ids))
                    .values(status=ItemStatus.PROCESSING.value, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise self._storage_error("bulk update", e) from e

    def bulk_mark_error(
        self, item_ids: List[str], category: ErrorCategory, message: str
    ) -> int:
        """Write ``error`` on all given items and release their leases."""
        if not item_ids:
            return 0
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBItem)
                    .where(DBItem.id.in_(item_ids))
                    .values(
                        status=ItemStatus.ERROR.value,
                        error_category=category.value,
                        error_message=message,
                        lease_token=None,
                        lease_expires_at=None,
                        updated_at=utc_now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise self._storage_error("bulk update", e) from e

    def count_by_status(self, owner_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in ItemStatus}
        try:
            with self.session_factory() as session:
                rows = session.execute(
                    select(DBItem.status, func.count(DBItem.id))
                    .where(DBItem.owner_id == owner_id)
                    .group_by(DBItem.status)
                ).all()
        except SQLAlchemyError as e:
            raise self._storage_error("read", e) from e
        for status, count in rows:
            counts[status] = count
        return counts
