"""Repository for connection storage and retrieval."""
import logging
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from notegraph.exceptions import ErrorCode, InvalidConnectionError, StorageError
from notegraph.models.db_models import DBConnection
from notegraph.models.schema import (Connection, canonical_pair,
                                     ensure_timezone_aware, utc_now)

logger = logging.getLogger(__name__)


class ConnectionRepository:
    """Repository for undirected connections between items.

    Callers may pass endpoints in either order; every method normalizes
    them to the canonical ``(low, high)`` pair first.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _to_model(db_conn: DBConnection) -> Connection:
        return Connection(
            id=db_conn.id,
            low_id=db_conn.low_id,
            high_id=db_conn.high_id,
            similarity=db_conn.similarity,
            explanation=db_conn.explanation,
            created_at=ensure_timezone_aware(db_conn.created_at),
            updated_at=ensure_timezone_aware(db_conn.updated_at),
        )

    @staticmethod
    def _pair(id_a: str, id_b: str):
        try:
            return canonical_pair(id_a, id_b)
        except ValueError as e:
            raise InvalidConnectionError(
                str(e), item_a=id_a, item_b=id_b, code=ErrorCode.CONNECTION_SELF_REFERENCE
            ) from e

    def upsert(
        self, id_a: str, id_b: str, similarity: float, explanation: str
    ) -> Connection:
        """Insert the pair's connection, or overwrite similarity and explanation.

        If another writer inserts the same pair between our lookup and our
        insert, the unique constraint fires and the write is retried as an
        update.
        """
        low, high = self._pair(id_a, id_b)
        try:
            created = self._insert_or_update(low, high, similarity, explanation)
        except IntegrityError:
            logger.debug(f"Concurrent insert of connection {low}-{high}; updating")
            created = self._update_existing(low, high, similarity, explanation)
            if created is None:
                raise
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write connection {low}-{high}",
                operation="upsert",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return created

    def _insert_or_update(
        self, low: str, high: str, similarity: float, explanation: str
    ) -> Connection:
        with self.session_factory() as session:
            existing = session.scalar(
                select(DBConnection).where(
                    DBConnection.low_id == low, DBConnection.high_id == high
                )
            )
            now = utc_now()
            if existing is not None:
                existing.similarity = similarity
                existing.explanation = explanation
                existing.updated_at = now
                session.commit()
                return self._to_model(existing)

            db_conn = DBConnection(
                low_id=low,
                high_id=high,
                similarity=similarity,
                explanation=explanation,
                created_at=now,
                updated_at=now,
            )
            session.add(db_conn)
            session.commit()
            return self._to_model(db_conn)

    def _update_existing(
        self, low: str, high: str, similarity: float, explanation: str
    ) -> Optional[Connection]:
        with self.session_factory() as session:
            result = session.execute(
                update(DBConnection)
                .where(DBConnection.low_id == low, DBConnection.high_id == high)
                .values(similarity=similarity, explanation=explanation, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount == 0:
                return None
        return self.get(low, high)

    def get(self, id_a: str, id_b: str) -> Optional[Connection]:
        """Get the connection between two items, in either order."""
        low, high = self._pair(id_a, id_b)
        try:
            with self.session_factory() as session:
                db_conn = session.scalar(
                    select(DBConnection).where(
                        DBConnection.low_id == low, DBConnection.high_id == high
                    )
                )
                return self._to_model(db_conn) if db_conn else None
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to read connection {low}-{high}",
                operation="read",
                original_error=e,
            ) from e

    def list_for_item(self, item_id: str) -> List[Connection]:
        """All connections touching an item, strongest first."""
        try:
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBConnection)
                    .where(
                        or_(
                            DBConnection.low_id == item_id,
                            DBConnection.high_id == item_id,
                        )
                    )
                    .order_by(DBConnection.similarity.desc(), DBConnection.id.asc())
                ).all()
                return [self._to_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list connections for item {item_id}",
                operation="list",
                original_error=e,
            ) from e

    def delete_for_item(self, item_id: str) -> int:
        """Delete every connection touching an item.

        Returns:
            Number of connections deleted.
        """
        try:
            with self.session_factory() as session:
                result = session.execute(
                    delete(DBConnection).where(
                        or_(
                            DBConnection.low_id == item_id,
                            DBConnection.high_id == item_id,
                        )
                    )
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to delete connections for item {item_id}",
                operation="delete",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def count_for_owner_items(self, item_ids: List[str]) -> int:
        """Number of distinct connections touching any of the given items."""
        if not item_ids:
            return 0
        try:
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBConnection.id).where(
                        or_(
                            DBConnection.low_id.in_(item_ids),
                            DBConnection.high_id.in_(item_ids),
                        )
                    )
                ).all()
                return len(rows)
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to count connections", operation="read", original_error=e
            ) from e
