"""Configuration module for Notegraph."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notegraph import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the database
_USER_ENV = Path.home() / ".notegraph" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NotegraphConfig(BaseModel):
    """Configuration for the enrichment pipeline and its server."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEGRAPH_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEGRAPH_DATABASE_PATH", "data/db/notegraph.db")
        )
    )
    # In-memory SQLite (tests, throwaway sessions). Nothing survives the process.
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTEGRAPH_IN_MEMORY_DB", "false")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTEGRAPH_SERVER_NAME", "notegraph"))
    server_version: str = Field(default=__version__)

    # Similarity / connection discovery
    similarity_threshold: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEGRAPH_SIMILARITY_THRESHOLD", "0.3")
        )
    )
    max_connections_per_item: int = Field(
        default_factory=lambda: int(os.getenv("NOTEGRAPH_MAX_CONNECTIONS", "5"))
    )
    topic_match_floor: float = Field(
        default_factory=lambda: float(os.getenv("NOTEGRAPH_TOPIC_MATCH_FLOOR", "0.5"))
    )
    fallback_explanation: str = Field(
        default=os.getenv("NOTEGRAPH_FALLBACK_EXPLANATION", "Semantically related.")
    )
    min_content_chars: int = Field(
        default_factory=lambda: int(os.getenv("NOTEGRAPH_MIN_CONTENT_CHARS", "3"))
    )

    # Processing / batch throttling
    batch_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("NOTEGRAPH_BATCH_DELAY", "2.0"))
    )
    # How long a processing run may hold its claim on an item before
    # another caller is allowed to take over (crash recovery).
    lease_ttl_seconds: int = Field(
        default_factory=lambda: int(os.getenv("NOTEGRAPH_LEASE_TTL", "300"))
    )

    # AI provider configuration
    openai_api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEGRAPH_OPENAI_API_KEY")
        or os.getenv("OPENAI_API_KEY")
    )
    analysis_model: str = Field(
        default=os.getenv("NOTEGRAPH_ANALYSIS_MODEL", "gpt-4o-mini")
    )
    embedding_model: str = Field(
        default=os.getenv("NOTEGRAPH_EMBEDDING_MODEL", "text-embedding-3-small")
    )
    ai_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("NOTEGRAPH_AI_TIMEOUT", "30"))
    )
    explanation_max_tokens: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTEGRAPH_EXPLANATION_MAX_TOKENS", "100")
        )
    )

    @model_validator(mode="after")
    def _validate_pipeline_config(self) -> "NotegraphConfig":
        """Validate numeric ranges for the pipeline settings."""
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within [-1, 1]")
        if not 0.0 <= self.topic_match_floor <= 1.0:
            raise ValueError("topic_match_floor must be within [0, 1]")
        if self.max_connections_per_item < 1:
            raise ValueError("max_connections_per_item must be >= 1")
        if self.batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds must be >= 0")
        if self.lease_ttl_seconds < 1:
            raise ValueError("lease_ttl_seconds must be >= 1")
        if self.ai_timeout_seconds <= 0:
            raise ValueError("ai_timeout_seconds must be > 0")

        if self.lease_ttl_seconds < self.ai_timeout_seconds * 3:
            logger.warning(
                "Lease TTL (%ds) is shorter than three AI call timeouts (%.0fs). "
                "A slow run may lose its claim before it finishes.",
                self.lease_ttl_seconds,
                self.ai_timeout_seconds * 3,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NotegraphConfig()
