"""SQLAlchemy database models for Notegraph."""
import logging
from typing import List, Optional

import numpy as np
from sqlalchemy import (JSON, CheckConstraint, Column, DateTime, Float,
                        ForeignKey, Index, Integer, LargeBinary, String, Text,
                        UniqueConstraint, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notegraph.config import config
from notegraph.models.schema import ItemKind, ItemStatus, ProcessingStep, utc_now

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()


def embedding_to_blob(embedding: Optional[List[float]]) -> Optional[bytes]:
    """Pack an embedding as float32 bytes; empty or missing becomes NULL."""
    if embedding is None:
        return None
    vector = np.asarray(embedding, dtype=np.float32)
    if vector.size == 0:
        return None
    return vector.tobytes()


def blob_to_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32).astype(float).tolist()


class DBItem(Base):
    """Database model for an item."""
    __tablename__ = "items"
    id = Column(String(64), primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    kind = Column(String(16), default=ItemKind.TEXT.value, nullable=False)
    content = Column(Text, nullable=False, default="")
    url = Column(Text, nullable=True)
    title = Column(String(512), nullable=True)
    summary = Column(Text, nullable=True)
    topics = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    embedding = Column(LargeBinary, nullable=True)
    status = Column(
        String(16), default=ItemStatus.PROCESSING.value, nullable=False, index=True
    )
    processing_step = Column(
        String(32), default=ProcessingStep.PENDING.value, nullable=False
    )
    lease_token = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    error_category = Column(String(32), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'ready', 'error')", name="valid_item_status"
        ),
        Index("ix_items_owner_status", "owner_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Item(id='{self.id}', status='{self.status}')>"


class DBConnection(Base):
    """Database model for a connection between two items.

    Endpoints are stored in canonical order, so the unique constraint on
    ``(low_id, high_id)`` allows a single row per unordered pair.
    """
    __tablename__ = "connections"
    id = Column(Integer, primary_key=True, autoincrement=True)
    low_id = Column(
        String(64), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    high_id = Column(
        String(64), ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    similarity = Column(Float, nullable=False)
    explanation = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("low_id", "high_id", name="unique_connection_pair"),
        CheckConstraint("low_id < high_id", name="canonical_connection_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<Connection(id={self.id}, low='{self.low_id}', "
            f"high='{self.high_id}', similarity={self.similarity})>"
        )


def init_db(database_url: Optional[str] = None) -> Engine:
    """Create the engine and the schema.

    File databases use WAL journaling with NORMAL sync and a small
    connection pool. ``sqlite://`` (in-memory) uses a single shared
    connection so every session sees the same database.
    """
    url = database_url or config.get_db_url()
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    if in_memory:
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    logger.debug(f"Database initialized at {url}")
    return engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
