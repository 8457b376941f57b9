"""Similarity scoring between items.

Pure functions, no I/O. Items with embeddings on both sides are compared
by cosine similarity; otherwise their topic lists are compared with a
word-overlap heuristic so that items still connect when the embedding
call failed.
"""
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from notegraph.models.schema import Item

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.3
DEFAULT_TOP_K = 5
TOPIC_MATCH_FLOOR = 0.5
MIN_MATCH_LENGTH = 3

_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)


class SimilarityMethod(str, Enum):
    EMBEDDING = "embedding"
    TOPICS = "topics"


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate item with its similarity to the item being processed."""

    item: Item
    similarity: float
    method: SimilarityMethod


def cosine_similarity(
    a: Optional[Sequence[float]], b: Optional[Sequence[float]]
) -> float:
    """Cosine similarity of two vectors, clamped to [-1, 1].

    Returns 0.0 instead of raising when either vector is missing, empty,
    not one-dimensional, of a different length than the other, has zero
    magnitude, or the result is not a number.
    """
    if a is None or b is None:
        return 0.0
    try:
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
    except (TypeError, ValueError):
        return 0.0

    if va.ndim != 1 or vb.ndim != 1 or va.size == 0 or va.shape != vb.shape:
        return 0.0

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0 or not math.isfinite(norm_a * norm_b):
        return 0.0

    score = float(np.dot(va, vb) / (norm_a * norm_b))
    if math.isnan(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def _phrases(topics: Iterable[str]) -> List[str]:
    return [t.strip().lower() for t in topics if t and t.strip()]


def _words(phrases: Iterable[str]) -> Set[str]:
    words: Set[str] = set()
    for phrase in phrases:
        words.update(_WORD_RE.findall(phrase))
    return words


def _has_substring_match(needles: Iterable[str], haystacks: Sequence[str]) -> bool:
    for needle in needles:
        if len(needle) < MIN_MATCH_LENGTH:
            continue
        if any(needle in hay for hay in haystacks):
            return True
    return False


def topic_similarity(
    a_topics: Sequence[str],
    b_topics: Sequence[str],
    match_floor: float = TOPIC_MATCH_FLOOR,
) -> float:
    """Word-overlap similarity of two topic lists, in [0, 1].

    The base score is the Jaccard index of the lowercase word sets. It is
    raised to at least ``match_floor`` when a topic phrase or topic word
    (3+ characters) from either side occurs inside a phrase or word of the
    other side, so ``["databases"]`` and ``["database systems"]`` still
    count as related.
    """
    phrases_a = _phrases(a_topics or [])
    phrases_b = _phrases(b_topics or [])
    if not phrases_a or not phrases_b:
        return 0.0

    words_a = _words(phrases_a)
    words_b = _words(phrases_b)
    union = words_a | words_b
    score = len(words_a & words_b) / len(union) if union else 0.0

    haystack_a = phrases_a + sorted(words_a)
    haystack_b = phrases_b + sorted(words_b)
    if _has_substring_match(haystack_a, haystack_b) or _has_substring_match(
        haystack_b, haystack_a
    ):
        score = max(score, match_floor)

    return min(1.0, score)


def item_similarity(
    a: Item, b: Item, match_floor: float = TOPIC_MATCH_FLOOR
) -> Tuple[float, SimilarityMethod]:
    """Similarity of two items and the method that produced it."""
    if a.has_embedding and b.has_embedding:
        return cosine_similarity(a.embedding, b.embedding), SimilarityMethod.EMBEDDING
    return topic_similarity(a.topics, b.topics, match_floor), SimilarityMethod.TOPICS


def rank_candidates(
    item: Item,
    others: Iterable[Item],
    threshold: float = DEFAULT_THRESHOLD,
    top_k: int = DEFAULT_TOP_K,
    match_floor: float = TOPIC_MATCH_FLOOR,
) -> List[ScoredCandidate]:
    """Score ``others`` against ``item`` and keep the strongest matches.

    Only scores strictly above ``threshold`` are kept. Results are sorted
    by similarity, highest first, with ties broken by item id, and capped
    at ``top_k``. ``item`` itself is never returned.
    """
    scored: List[ScoredCandidate] = []
    for other in others:
        if other.id == item.id:
            continue
        similarity, method = item_similarity(item, other, match_floor)
        if similarity > threshold:
            scored.append(ScoredCandidate(other, similarity, method))

    scored.sort(key=lambda c: (-c.similarity, c.item.id))
    kept = scored[:top_k]
    logger.debug(
        f"Item {item.id}: {len(scored)} candidates above {threshold}, kept {len(kept)}"
    )
    return kept
