"""
Request batching.

Groups pending requests into queues keyed by (category, priority) and
flushes a queue when it fills up or its oldest member has waited long
enough. A flush combines requests sharing a template into a single
downstream request.

Enqueue, fold and flush all go through one lock; a flush drains and
clears its queue atomically, so a request is either in the drained
batch or still pending, never both and never lost.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .templates import PromptCategory

logger = logging.getLogger(__name__)

COMBINED_QUERY_DELIMITER = " | "


class Priority(Enum):
    """Queue partition for a request. Does not order flushes across queues."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


HIGH_PRIORITY_CATEGORIES = frozenset({PromptCategory.HEALTH_ANALYSIS, PromptCategory.SYMPTOM_CHECKER})
LOW_PRIORITY_CATEGORIES = frozenset({PromptCategory.GENERAL_CHAT, PromptCategory.LIFESTYLE_TIPS})


def classify_priority(category: PromptCategory) -> Priority:
    """Static category-to-priority mapping."""
    if category in HIGH_PRIORITY_CATEGORIES:
        return Priority.HIGH
    if category in LOW_PRIORITY_CATEGORIES:
        return Priority.LOW
    return Priority.MEDIUM


@dataclass(frozen=True)
class BatchedRequest:
    """A request waiting for a batch flush. Never mutated once created."""
    request_id: str
    user_id: str
    category: PromptCategory
    template_id: str
    query: str
    variables: Mapping[str, Any] = field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    enqueued_at: float = 0.0

    @property
    def queue_key(self) -> Tuple[PromptCategory, Priority]:
        return (self.category, self.priority)


@dataclass
class BatchFlushResult:
    """Outcome of flushing one queue."""
    batch_id: str
    reason: str
    original_requests: List[BatchedRequest]
    combined_requests: List[BatchedRequest]
    members: Dict[str, List[BatchedRequest]]
    duplicates: Dict[str, List[BatchedRequest]]
    tokens_saved: int
    cost_saved: float

    @property
    def batch_size(self) -> int:
        return len(self.combined_requests)

    @property
    def optimization_ratio(self) -> float:
        if not self.original_requests:
            return 1.0
        return len(self.combined_requests) / len(self.original_requests)


@dataclass(frozen=True)
class EnqueueResult:
    batch_id: str
    flushed: Optional[BatchFlushResult] = None


@dataclass(frozen=True)
class FoldResult:
    """A duplicate folded onto a pending request."""
    primary: BatchedRequest
    batch_id: str


@dataclass
class _Drained:
    batch_id: str
    requests: List[BatchedRequest]
    duplicates: Dict[str, List[BatchedRequest]]


def new_request_id() -> str:
    return uuid.uuid4().hex


def combine_requests(requests: List[BatchedRequest]) -> BatchedRequest:
    """Combine same-template requests into one representative request.

    The first request is the base; queries are concatenated in FIFO
    order and the variables gain ``batch_size`` and ``combined_queries``.
    """
    if not requests:
        raise ValueError("Cannot combine an empty request list")
    base = requests[0]
    combined_queries = COMBINED_QUERY_DELIMITER.join(r.query for r in requests)
    variables = dict(base.variables)
    variables["batch_size"] = len(requests)
    variables["combined_queries"] = combined_queries
    return replace(
        base,
        request_id=f"combined-{new_request_id()}",
        query=f"Multiple user requests: {combined_queries}",
        variables=variables,
    )


def optimize_batch(requests: List[BatchedRequest]) -> Tuple[List[BatchedRequest], Dict[str, List[BatchedRequest]]]:
    """Regroup a drained queue by (template, category) and combine each group.

    Returns:
        The downstream requests, and for each the original requests it covers
    """
    groups: Dict[Tuple[str, PromptCategory], List[BatchedRequest]] = {}
    for request in requests:
        groups.setdefault((request.template_id, request.category), []).append(request)

    optimized = []
    members = {}
    for group in groups.values():
        downstream = combine_requests(group) if len(group) > 1 else group[0]
        optimized.append(downstream)
        members[downstream.request_id] = group
    return optimized, members


class Batcher:
    """Per-(category, priority) request queues with size and time flushing."""

    def __init__(
        self,
        batch_size: int = 15,
        batch_timeout: float = 20.0,
        overhead_tokens_per_request: int = 50,
        cost_per_token: float = 0.00002,
        clock: Callable[[], float] = time.time,
        on_flush: Optional[Callable[[BatchFlushResult], None]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.overhead_tokens_per_request = overhead_tokens_per_request
        self.cost_per_token = cost_per_token
        self._clock = clock
        self._on_flush = on_flush
        self._lock = threading.Lock()
        self._queues: Dict[Tuple[PromptCategory, Priority], List[BatchedRequest]] = {}
        self._batch_ids: Dict[Tuple[PromptCategory, Priority], str] = {}
        self._duplicates: Dict[str, List[BatchedRequest]] = {}

    def create_request(
        self,
        user_id: str,
        category: PromptCategory,
        template_id: str,
        query: str,
        variables: Optional[Mapping[str, Any]] = None,
        priority: Optional[Priority] = None,
    ) -> BatchedRequest:
        """Build a request stamped with this batcher's clock."""
        return BatchedRequest(
            request_id=new_request_id(),
            user_id=user_id,
            category=category,
            template_id=template_id,
            query=query,
            variables=dict(variables or {}),
            priority=priority or classify_priority(category),
            enqueued_at=self._clock(),
        )

    def enqueue(self, request: BatchedRequest) -> EnqueueResult:
        """Append a request to its queue, flushing the queue once it is full."""
        key = request.queue_key
        with self._lock:
            queue = self._queues.setdefault(key, [])
            if not queue:
                self._batch_ids[key] = f"batch-{key[0].value}-{key[1].value}-{uuid.uuid4().hex[:8]}"
            queue.append(request)
            batch_id = self._batch_ids[key]
            drained = self._drain(key) if len(queue) >= self.batch_size else None

        flushed = self._flush(drained, "size") if drained else None
        return EnqueueResult(batch_id=batch_id, flushed=flushed)

    def fold_if_duplicate(self, request: BatchedRequest, deduplicator) -> Optional[FoldResult]:
        """Fold a request onto a similar pending one, if any.

        Lookup and fold happen under the queue lock, so the primary cannot
        be flushed in between.
        """
        with self._lock:
            candidates = [
                r for queue in self._queues.values() for r in queue
                if r.category == request.category and r.template_id == request.template_id
            ]
            primary = deduplicator.find_duplicate(request, candidates)
            if primary is None:
                return None
            self._duplicates.setdefault(primary.request_id, []).append(request)
            return FoldResult(primary=primary, batch_id=self._batch_ids[primary.queue_key])

    def _drain(self, key: Tuple[PromptCategory, Priority]) -> Optional[_Drained]:
        """Remove a queue and its folded duplicates. Caller holds the lock."""
        requests = self._queues.pop(key, [])
        batch_id = self._batch_ids.pop(key, "")
        if not requests:
            return None
        duplicates = {}
        for request in requests:
            folded = self._duplicates.pop(request.request_id, None)
            if folded:
                duplicates[request.request_id] = folded
        return _Drained(batch_id=batch_id, requests=requests, duplicates=duplicates)

    def _flush(self, drained: _Drained, reason: str) -> BatchFlushResult:
        combined, members = optimize_batch(drained.requests)
        tokens_saved = (len(drained.requests) - len(combined)) * self.overhead_tokens_per_request
        result = BatchFlushResult(
            batch_id=drained.batch_id,
            reason=reason,
            original_requests=drained.requests,
            combined_requests=combined,
            members=members,
            duplicates=drained.duplicates,
            tokens_saved=tokens_saved,
            cost_saved=tokens_saved * self.cost_per_token,
        )
        logger.info(
            "Processed batch %s (%s): %d requests -> %d, saved %d tokens, $%.4f",
            result.batch_id, reason, len(drained.requests), result.batch_size,
            result.tokens_saved, result.cost_saved,
        )
        if self._on_flush is not None:
            try:
                self._on_flush(result)
            except Exception:
                logger.exception("Flush handler failed for batch %s", result.batch_id)
        return result

    def periodic_flush(self, now: Optional[float] = None) -> List[BatchFlushResult]:
        """Flush every queue whose oldest request has waited at least the timeout."""
        now = self._clock() if now is None else now
        with self._lock:
            due = [
                key for key, queue in self._queues.items()
                if queue and now - queue[0].enqueued_at >= self.batch_timeout
            ]
            drained = [self._drain(key) for key in due]
        return [self._flush(d, "timeout") for d in drained if d]

    def flush_all(self) -> List[BatchFlushResult]:
        """Flush every queue regardless of size or age."""
        with self._lock:
            drained = [self._drain(key) for key in list(self._queues)]
        return [self._flush(d, "shutdown") for d in drained if d]

    def expire_stale(self, max_wait: float, now: Optional[float] = None) -> List[BatchedRequest]:
        """Remove requests that have waited longer than ``max_wait``.

        Returns:
            The expired requests, followed by any duplicates folded onto them
        """
        now = self._clock() if now is None else now
        expired: List[BatchedRequest] = []
        with self._lock:
            for key in list(self._queues):
                queue = self._queues[key]
                stale = [r for r in queue if now - r.enqueued_at > max_wait]
                if not stale:
                    continue
                self._queues[key] = [r for r in queue if now - r.enqueued_at <= max_wait]
                if not self._queues[key]:
                    del self._queues[key]
                    self._batch_ids.pop(key, None)
                for request in stale:
                    expired.append(request)
                    expired.extend(self._duplicates.pop(request.request_id, []))
        if expired:
            logger.warning("Expired %d pending requests after %.1fs", len(expired), max_wait)
        return expired

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values())
