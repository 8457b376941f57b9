"""Analysis provider backed by the OpenAI API.

Uses chat completions in JSON mode for analysis and connection
explanations, and the embeddings endpoint for vectors. SDK exceptions are
translated into categorized ``AIServiceError`` subclasses here, so the
pipeline never has to inspect OpenAI-specific types or messages.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import openai
from openai import OpenAI

from notegraph.config import config
from notegraph.exceptions import (AIAuthError, AINetworkError, AIQuotaError,
                                  AIServiceError, AITimeoutError,
                                  ConfigurationError, ErrorCode,
                                  ModelUnavailableError, classify_message)
from notegraph.models.schema import AnalysisResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANALYSIS_SYSTEM_PROMPT = (
    "You analyze notes for a personal knowledge base. "
    "Return a JSON object with:\n"
    '- "summary": a concise one-sentence summary of the note.\n'
    '- "topics": an array of 3-5 short topic strings.\n'
    '- "title": a short, descriptive title.'
)

EXPLANATION_SYSTEM_PROMPT = (
    "You describe how two notes are related, based on their metadata. "
    'Return a JSON object with a single key "explanation": one sentence, '
    "under 140 characters, naming the most obvious link."
)

# Content beyond this is not sent to the model.
MAX_INPUT_CHARS = 50000


def _translate_error(operation: str, error: Exception) -> AIServiceError:
    """Map an OpenAI SDK exception to a categorized error."""
    message = f"OpenAI {operation} failed: {error}"
    kwargs: Dict[str, Any] = {"operation": operation, "original_error": error}

    # APITimeoutError subclasses APIConnectionError; check it first.
    if isinstance(error, openai.APITimeoutError):
        return AITimeoutError(message, **kwargs)
    if isinstance(error, openai.APIConnectionError):
        return AINetworkError(message, **kwargs)
    if isinstance(error, openai.RateLimitError):
        return AIQuotaError(message, **kwargs)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AIAuthError(message, **kwargs)
    if isinstance(error, openai.NotFoundError):
        return ModelUnavailableError(message, **kwargs)
    if isinstance(error, openai.InternalServerError):
        return ModelUnavailableError(message, **kwargs)
    return AIServiceError(message, category=classify_message(str(error)), **kwargs)


class OpenAIAnalysisProvider:
    """Production ``AnalysisProvider``.

    Args:
        api_key: OpenAI API key. Defaults to the configured key.
        analysis_model: Chat model for analysis and explanations.
        embedding_model: Embedding model.
        timeout: Per-request timeout in seconds.
        client: Pre-built client (tests inject a mock here).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        analysis_model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        timeout: Optional[float] = None,
        explanation_max_tokens: Optional[int] = None,
        client: Optional[Any] = None,
    ):
        self.analysis_model = analysis_model or config.analysis_model
        self.embedding_model = embedding_model or config.embedding_model
        self.explanation_max_tokens = (
            explanation_max_tokens or config.explanation_max_tokens
        )

        if client is not None:
            self._client = client
            return

        key = api_key or config.openai_api_key
        if not key:
            raise ConfigurationError(
                "OpenAI API key required. Set NOTEGRAPH_OPENAI_API_KEY or OPENAI_API_KEY",
                config_key="openai_api_key",
                code=ErrorCode.CONFIG_MISSING,
            )
        self._client = OpenAI(
            api_key=key,
            timeout=timeout or config.ai_timeout_seconds,
            max_retries=1,
        )

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except openai.OpenAIError as e:
            raise _translate_error(operation, e) from e

    def _json_completion(
        self, operation: str, system: str, user: str, max_tokens: Optional[int] = None
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        response = self._call(
            operation,
            lambda: self._client.chat.completions.create(
                model=self.analysis_model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                response_format={"type": "json_object"},
                **kwargs,
            ),
        )
        content = response.choices[0].message.content if response.choices else None
        try:
            data = json.loads(content or "{}")
        except json.JSONDecodeError as e:
            raise AIServiceError(
                f"OpenAI {operation} returned invalid JSON",
                operation=operation,
                original_error=e,
            ) from e
        if not isinstance(data, dict):
            raise AIServiceError(
                f"OpenAI {operation} returned a non-object JSON value",
                operation=operation,
            )
        return data

    def analyze(self, text: str) -> AnalysisResult:
        data = self._json_completion(
            "analyze", ANALYSIS_SYSTEM_PROMPT, text[:MAX_INPUT_CHARS]
        )
        topics = data.get("topics") or []
        if isinstance(topics, str):
            topics = [topics]
        return AnalysisResult(
            summary=str(data.get("summary") or "").strip(),
            topics=[str(t) for t in topics if t is not None],
            title=data.get("title"),
        )

    def embed(self, text: str) -> List[float]:
        """Embed text; returns ``[]`` when the call fails."""
        try:
            response = self._call(
                "embed",
                lambda: self._client.embeddings.create(
                    model=self.embedding_model, input=text[:MAX_INPUT_CHARS]
                ),
            )
        except AIServiceError as e:
            logger.warning(f"Embedding unavailable, using topic fallback: {e}")
            return []
        if not response.data:
            return []
        return list(response.data[0].embedding)

    def explain(self, text_a: str, text_b: str) -> str:
        data = self._json_completion(
            "explain",
            EXPLANATION_SYSTEM_PROMPT,
            f"Note A:\n{text_a}\n\nNote B:\n{text_b}",
            max_tokens=self.explanation_max_tokens,
        )
        return str(data.get("explanation") or "").strip()
