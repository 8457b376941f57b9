"""Data models for Notegraph."""

import datetime
import os
import threading
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from notegraph.exceptions import ErrorCategory


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes even for values written as aware ones,
    so everything read from the database passes through here.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based ID that sorts in creation order.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc": date, ``T``
        separator, time, 6-digit microseconds and a 6-digit counter that
        keeps IDs unique within the same microsecond.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


def canonical_pair(id_a: str, id_b: str) -> Tuple[str, str]:
    """Order two item ids lexicographically.

    Connections are undirected; every read and write of a pair goes through
    this so ``(a, b)`` and ``(b, a)`` address the same row.

    Raises:
        ValueError: If both ids are the same.
    """
    if id_a == id_b:
        raise ValueError(f"An item cannot be connected to itself: {id_a}")
    return (id_a, id_b) if id_a < id_b else (id_b, id_a)


def _clean_strings(values: Optional[List[str]]) -> List[str]:
    """Strip entries and drop blanks and duplicates, keeping order."""
    cleaned: List[str] = []
    for value in values or []:
        if value is None:
            continue
        value = str(value).strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


class ItemStatus(str, Enum):
    """Lifecycle status of an item."""

    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class ItemKind(str, Enum):
    """What the user saved."""

    TEXT = "text"
    LINK = "link"


class ProcessingStep(str, Enum):
    """Last pipeline step whose output has been persisted for an item.

    A new run starts from the step after the recorded one, so the AI calls
    of a completed step are never repeated.
    """

    PENDING = "pending"
    CONTENT_ASSEMBLED = "content_assembled"
    ANALYZED = "analyzed"
    EMBEDDED = "embedded"
    CONNECTIONS_COMPUTED = "connections_computed"
    FINALIZED = "finalized"

    @property
    def order(self) -> int:
        return _STEP_ORDER.index(self)

    def reached(self, other: "ProcessingStep") -> bool:
        """True when this step is ``other`` or comes after it."""
        return self.order >= other.order


_STEP_ORDER = list(ProcessingStep)


class Item(BaseModel):
    """A user's note, enriched with AI-derived metadata once processed."""

    id: str = Field(default_factory=generate_id, description="Unique, sortable item ID")
    owner_id: str = Field(..., description="Owner of the item")
    content: str = Field(default="", description="User-entered text")
    kind: ItemKind = Field(default=ItemKind.TEXT, description="Text note or saved link")
    url: Optional[str] = Field(default=None, description="Link target for link items")
    title: Optional[str] = Field(default=None, description="Display title")
    summary: Optional[str] = Field(default=None, description="AI-written summary")
    topics: List[str] = Field(default_factory=list, description="AI-derived topics")
    tags: List[str] = Field(default_factory=list, description="User tags")
    embedding: Optional[List[float]] = Field(
        default=None, description="Vector embedding of the enriched text"
    )
    status: ItemStatus = Field(default=ItemStatus.PROCESSING)
    processing_step: ProcessingStep = Field(default=ProcessingStep.PENDING)
    lease_token: Optional[str] = Field(default=None)
    lease_expires_at: Optional[datetime.datetime] = Field(default=None)
    error_category: Optional[ErrorCategory] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the item was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the item was last updated (UTC)"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id", "owner_id")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Identifiers cannot be empty")
        return v

    @field_validator("topics", "tags", mode="before")
    @classmethod
    def drop_blank_strings(cls, v: Optional[List[str]]) -> List[str]:
        return _clean_strings(v)

    @field_validator("embedding", mode="before")
    @classmethod
    def normalize_embedding(cls, v: Any) -> Optional[List[float]]:
        """An empty vector means "no embedding"."""
        if v is None:
            return None
        values = [float(x) for x in v]
        return values or None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def describe(self) -> str:
        """Compact description used when explaining a connection."""
        return (
            f"Title: {self.title or ''}\n"
            f"Summary: {self.summary or ''}\n"
            f"Topics: {', '.join(self.topics)}"
        )

    def to_summary_dict(self) -> Dict[str, Any]:
        """Item fields safe to return to a caller (no embedding, no lease)."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "url": self.url,
            "summary": self.summary,
            "topics": list(self.topics),
            "tags": list(self.tags),
            "status": self.status.value,
            "error": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class Connection(BaseModel):
    """A weighted, undirected relationship between two items."""

    id: Optional[int] = Field(default=None, description="Database row id")
    low_id: str = Field(..., description="Lexicographically smaller item id")
    high_id: str = Field(..., description="Lexicographically larger item id")
    similarity: float = Field(..., ge=-1.0, le=1.0)
    explanation: str = Field(..., description="One-sentence explanation")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @model_validator(mode="after")
    def validate_canonical_order(self) -> "Connection":
        if not self.low_id < self.high_id:
            raise ValueError(
                f"Connection endpoints must be in canonical order: "
                f"{self.low_id!r} < {self.high_id!r}"
            )
        return self

    def other(self, item_id: str) -> str:
        """The endpoint that is not ``item_id``."""
        if item_id == self.low_id:
            return self.high_id
        if item_id == self.high_id:
            return self.low_id
        raise ValueError(f"Item {item_id} is not an endpoint of this connection")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "low_id": self.low_id,
            "high_id": self.high_id,
            "similarity": round(self.similarity, 4),
            "explanation": self.explanation,
        }


class AnalysisResult(BaseModel):
    """Structured output of the analysis call."""

    summary: str = Field(default="")
    topics: List[str] = Field(default_factory=list)
    title: Optional[str] = Field(default=None)

    @field_validator("topics", mode="before")
    @classmethod
    def drop_blank_topics(cls, v: Optional[List[str]]) -> List[str]:
        return _clean_strings(v)

    @field_validator("title", mode="before")
    @classmethod
    def blank_title_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        return str(v).strip()

    def embedding_input(self) -> str:
        """Text sent to the embedding model for this analysis."""
        return (
            f"Title: {self.title or ''}\n"
            f"Summary: {self.summary}\n"
            f"Topics: {', '.join(self.topics)}"
        )


@dataclass
class ProcessResult:
    """Outcome of a single ``process_item`` call.

    Attributes:
        ok: Whether the call succeeded (including no-op outcomes).
        status: Item status after the call, when known.
        message: Short human-readable outcome.
        item: The item as last persisted, for successful runs.
        connections: Connections written in this run.
        category: Failure category, for failed calls.
        retryable: Whether the failure may succeed on a later attempt.
        already_processing: Another run holds the item; nothing was done.
    """

    ok: bool
    status: Optional[str] = None
    message: str = ""
    item: Optional[Item] = None
    connections: List[Connection] = field(default_factory=list)
    category: Optional[ErrorCategory] = None
    retryable: bool = False
    already_processing: bool = False

    @classmethod
    def failure(
        cls, category: ErrorCategory, status: Optional[str] = None
    ) -> "ProcessResult":
        return cls(
            ok=False,
            status=status,
            message=category.user_message,
            category=category,
            retryable=category.retryable,
        )

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {
                "ok": False,
                "error": self.message,
                "category": self.category.value if self.category else None,
                "retryable": self.retryable,
            }
        data: Dict[str, Any] = {"ok": True, "status": self.status}
        if self.message:
            data["message"] = self.message
        if self.item is not None:
            data["item"] = self.item.to_summary_dict()
        if self.connections:
            data["connections"] = [c.to_dict() for c in self.connections]
        return data


class BatchTermination(str, Enum):
    """How a batch run ended."""

    COMPLETED = "completed"
    QUOTA_STOPPED = "quota_stopped"
    INTERRUPTED = "interrupted"


@dataclass
class BatchResult:
    """Aggregate outcome of ``process_pending``."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    last_error: Optional[str] = None
    termination: BatchTermination = BatchTermination.COMPLETED
    message: str = ""

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "lastError": self.last_error,
            "termination": self.termination.value,
            "message": self.message,
        }
