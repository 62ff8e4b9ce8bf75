"""
Near-duplicate detection for pending requests.

Lexical heuristic: two queries on the same category and template fold
together when the Jaccard similarity of their normalized word sets
reaches the threshold. Missed duplicates are acceptable; the high
threshold bounds wrongly folded ones.
"""

import logging
from typing import FrozenSet, Iterable, Optional, TypeVar

from .cache import normalize_query

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8

R = TypeVar("R")


def word_set(query: str) -> FrozenSet[str]:
    normalized = normalize_query(query)
    return frozenset(normalized.split(" ")) if normalized else frozenset()


def jaccard_similarity(first: str, second: str) -> float:
    """|A ∩ B| / |A ∪ B| over the normalized word sets of two queries.

    Two empty queries are identical (1.0); one empty query shares
    nothing with a non-empty one (0.0).
    """
    a = word_set(first)
    b = word_set(second)
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class Deduplicator:
    """Finds a pending request that a new request can be folded onto."""

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        self.threshold = threshold

    def is_duplicate(self, first: str, second: str) -> bool:
        return jaccard_similarity(first, second) >= self.threshold

    def find_duplicate(self, request, pending: Iterable[R]) -> Optional[R]:
        """Return the first pending request the new one duplicates.

        Only candidates sharing the request's category and template id
        are compared.

        Args:
            request: Incoming request (needs ``category``, ``template_id``, ``query``)
            pending: Requests still waiting in the batcher, in FIFO order

        Returns:
            The matching pending request, or None
        """
        for candidate in pending:
            if candidate.category != request.category or candidate.template_id != request.template_id:
                continue
            similarity = jaccard_similarity(request.query, candidate.query)
            if similarity >= self.threshold:
                logger.debug(
                    "Request %r duplicates pending %r (similarity %.2f)",
                    request.query, candidate.query, similarity,
                )
                return candidate
        return None
