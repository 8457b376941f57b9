"""Turns ranked candidates into persisted connections."""
import logging
from typing import List, Optional

from notegraph.config import config
from notegraph.exceptions import classify_exception
from notegraph.models.schema import Connection, Item
from notegraph.services.analysis_types import AnalysisProvider
from notegraph.services.similarity import ScoredCandidate
from notegraph.storage.connection_repository import ConnectionRepository

logger = logging.getLogger(__name__)


class EdgeMaterializer:
    """Writes one connection per retained candidate.

    Each connection is explained by the analysis provider; when that call
    fails or returns nothing, a fixed fallback sentence is stored and the
    connection is still written. Storage failures propagate.
    """

    def __init__(
        self,
        connections: ConnectionRepository,
        provider: AnalysisProvider,
        fallback_explanation: Optional[str] = None,
    ):
        self.connections = connections
        self.provider = provider
        self.fallback_explanation = fallback_explanation or config.fallback_explanation

    def explain(self, item: Item, other: Item) -> str:
        try:
            explanation = self.provider.explain(item.describe(), other.describe())
        except Exception as e:
            logger.warning(
                f"Explanation for {item.id}-{other.id} failed "
                f"({classify_exception(e).value}); using fallback"
            )
            return self.fallback_explanation
        if not explanation or not explanation.strip():
            return self.fallback_explanation
        return explanation.strip()

    def materialize(self, item: Item, candidates: List[ScoredCandidate]) -> List[Connection]:
        """Upsert a connection between ``item`` and each candidate."""
        written: List[Connection] = []
        for candidate in candidates:
            explanation = self.explain(item, candidate.item)
            connection = self.connections.upsert(
                item.id, candidate.item.id, candidate.similarity, explanation
            )
            logger.debug(
                f"Connection {connection.low_id}-{connection.high_id} "
                f"similarity={candidate.similarity:.3f} via {candidate.method.value}"
            )
            written.append(connection)
        return written
