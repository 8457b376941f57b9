"""Type protocol for the AI analysis service.

Defines the structural contract that both the production OpenAI client
and test fakes must satisfy. Uses Protocol (PEP 544) for structural
subtyping; implementations don't need to inherit from it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Protocol, runtime_checkable

if TYPE_CHECKING:
    from notegraph.models.schema import AnalysisResult


@runtime_checkable
class AnalysisProvider(Protocol):
    """Contract for the three AI calls the pipeline makes.

    Failures of ``analyze`` and ``explain`` are raised as
    ``AIServiceError`` subclasses carrying their category. ``embed``
    reports failure by returning an empty list.
    """

    def analyze(self, text: str) -> AnalysisResult:
        """Summarize text and extract topics and a title."""
        ...

    def embed(self, text: str) -> List[float]:
        """Embed text into a dense vector; ``[]`` when unavailable."""
        ...

    def explain(self, text_a: str, text_b: str) -> str:
        """One sentence describing how two items relate."""
        ...
