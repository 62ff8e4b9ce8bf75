"""
Unit tests for request batching.
"""

import threading

import pytest

from prompt_cost_guard.core.batching import (
    Batcher,
    Priority,
    classify_priority,
    combine_requests,
    optimize_batch,
)
from prompt_cost_guard.core.deduplication import Deduplicator
from prompt_cost_guard.core.templates import PromptCategory


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestPriority:
    """Test the static category to priority mapping."""

    def test_mapping(self):
        assert classify_priority(PromptCategory.HEALTH_ANALYSIS) == Priority.HIGH
        assert classify_priority(PromptCategory.SYMPTOM_CHECKER) == Priority.HIGH
        assert classify_priority(PromptCategory.GENERAL_CHAT) == Priority.LOW
        assert classify_priority(PromptCategory.LIFESTYLE_TIPS) == Priority.LOW
        assert classify_priority(PromptCategory.NUTRITION_ADVICE) == Priority.MEDIUM
        assert classify_priority(PromptCategory.MEAL_PLANNING) == Priority.MEDIUM


class TestBatcher:
    """Test size flushes, timeout flushes and duplicate folding."""

    def setup_method(self):
        self.clock = FakeClock()
        self.flushed = []
        self.batcher = Batcher(
            batch_size=15,
            batch_timeout=20,
            overhead_tokens_per_request=50,
            cost_per_token=0.00002,
            clock=self.clock,
            on_flush=self.flushed.append,
        )

    def _enqueue(self, query, category=PromptCategory.NUTRITION_ADVICE, template_id="t1", user_id="u"):
        request = self.batcher.create_request(user_id, category, template_id, query, {"user_query": query})
        return request, self.batcher.enqueue(request)

    def test_flush_at_batch_size(self):
        """Test the 15th request flushes the queue and the 16th starts a new one."""
        results = [self._enqueue(f"question {i}")[1] for i in range(15)]

        assert all(r.flushed is None for r in results[:14])
        flushed = results[14].flushed
        assert flushed is not None
        assert flushed.reason == "size"
        assert len(flushed.original_requests) == 15
        assert flushed.batch_size == 1
        assert flushed.tokens_saved == 14 * 50
        assert flushed.cost_saved == pytest.approx(14 * 50 * 0.00002)
        assert len({r.batch_id for r in results}) == 1
        assert self.flushed == [flushed]
        assert self.batcher.pending_count() == 0

        _, sixteenth = self._enqueue("question 16")
        assert sixteenth.flushed is None
        assert sixteenth.batch_id != results[0].batch_id
        assert self.batcher.pending_count() == 1

    def test_batch_id_shape(self):
        """Test batch ids name the queue they belong to."""
        _, result = self._enqueue("q", category=PromptCategory.HEALTH_ANALYSIS)
        assert result.batch_id.startswith("batch-health_analysis-high-")

    def test_timeout_flush(self):
        """Test a queue flushes once its oldest request has waited the timeout."""
        self._enqueue("first")
        self.clock.now = 10
        self._enqueue("second")

        self.clock.now = 19.9
        assert self.batcher.periodic_flush() == []

        self.clock.now = 20
        results = self.batcher.periodic_flush()

        assert len(results) == 1
        assert results[0].reason == "timeout"
        assert [r.query for r in results[0].original_requests] == ["first", "second"]
        assert self.batcher.pending_count() == 0

    def test_queues_partitioned_by_category(self):
        """Test different categories never share a queue."""
        _, a = self._enqueue("q", category=PromptCategory.NUTRITION_ADVICE)
        _, b = self._enqueue("q", category=PromptCategory.MEAL_PLANNING)

        assert a.batch_id != b.batch_id
        assert self.batcher.pending_count() == 2
        assert len(self.batcher.flush_all()) == 2

    def test_fold_duplicate(self):
        """Test a similar request folds onto the pending one and flushes with it."""
        primary, enqueued = self._enqueue("what should i eat for breakfast")
        duplicate = self.batcher.create_request(
            "u2", PromptCategory.NUTRITION_ADVICE, "t1", "What should I eat for breakfast?"
        )

        fold = self.batcher.fold_if_duplicate(duplicate, Deduplicator(0.8))

        assert fold.primary.request_id == primary.request_id
        assert fold.batch_id == enqueued.batch_id
        assert self.batcher.pending_count() == 1

        result = self.batcher.flush_all()[0]
        assert result.reason == "shutdown"
        assert result.duplicates == {primary.request_id: [duplicate]}

    def test_no_fold_after_flush(self):
        """Test a request is not folded onto one that has already flushed."""
        self._enqueue("q")
        self.batcher.flush_all()
        duplicate = self.batcher.create_request("u2", PromptCategory.NUTRITION_ADVICE, "t1", "q")

        assert self.batcher.fold_if_duplicate(duplicate, Deduplicator(0.8)) is None

    def test_no_fold_across_templates(self):
        """Test a request on another template is not folded."""
        self._enqueue("what should i eat")
        other = self.batcher.create_request("u", PromptCategory.NUTRITION_ADVICE, "t2", "what should i eat")

        assert self.batcher.fold_if_duplicate(other, Deduplicator(0.8)) is None

    def test_expire_stale(self):
        """Test requests pending beyond the limit are removed with their duplicates."""
        primary, _ = self._enqueue("old question here")
        duplicate = self.batcher.create_request("u2", PromptCategory.NUTRITION_ADVICE, "t1", "old question here")
        self.batcher.fold_if_duplicate(duplicate, Deduplicator(0.8))
        self.clock.now = 30
        fresh, _ = self._enqueue("new question")

        expired = self.batcher.expire_stale(25)

        assert [r.request_id for r in expired] == [primary.request_id, duplicate.request_id]
        assert self.batcher.pending_count() == 1
        assert self.batcher.flush_all()[0].original_requests == [fresh]

    def test_failing_handler_does_not_raise(self):
        """Test an exception in the flush handler is logged, not propagated."""
        def broken(_result):
            raise RuntimeError("boom")

        batcher = Batcher(clock=self.clock, on_flush=broken)
        batcher.enqueue(batcher.create_request("u", PromptCategory.GENERAL_CHAT, "t1", "q"))

        results = batcher.flush_all()

        assert len(results) == 1
        assert batcher.pending_count() == 0


class TestConcurrentBatching:
    """Test enqueueing from several threads while queues are being flushed."""

    def test_every_request_flushed_exactly_once(self):
        """Test no request is lost or flushed twice when enqueue races periodic_flush."""
        flushed = []
        batcher = Batcher(batch_size=7, batch_timeout=0, on_flush=flushed.append)
        categories = [PromptCategory.NUTRITION_ADVICE, PromptCategory.HEALTH_ANALYSIS, PromptCategory.GENERAL_CHAT]
        created = []
        created_lock = threading.Lock()
        workers_done = threading.Event()

        def worker(worker_id):
            for i in range(200):
                request = batcher.create_request(
                    f"u{worker_id}", categories[i % len(categories)], "t1", f"question {worker_id}-{i}"
                )
                with created_lock:
                    created.append(request.request_id)
                batcher.enqueue(request)

        def flusher():
            while not workers_done.is_set():
                batcher.periodic_flush()

        flusher_thread = threading.Thread(target=flusher)
        workers = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        flusher_thread.start()
        for thread in workers:
            thread.start()
        for thread in workers:
            thread.join()
        workers_done.set()
        flusher_thread.join()
        batcher.flush_all()

        flushed_ids = [r.request_id for result in flushed for r in result.original_requests]
        assert len(flushed_ids) == len(created) == 800
        assert sorted(flushed_ids) == sorted(created)
        assert batcher.pending_count() == 0


class TestBatchOptimization:
    """Test combining drained requests."""

    def setup_method(self):
        self.batcher = Batcher(clock=FakeClock())

    def _request(self, query, template_id="t1"):
        return self.batcher.create_request("u", PromptCategory.NUTRITION_ADVICE, template_id, query, {"user_query": query})

    def test_combine_requests(self):
        """Test combined query text and batch variables."""
        first, second = self._request("q1"), self._request("q2")

        combined = combine_requests([first, second])

        assert combined.query == "Multiple user requests: q1 | q2"
        assert combined.variables["batch_size"] == 2
        assert combined.variables["combined_queries"] == "q1 | q2"
        assert combined.request_id.startswith("combined-")
        assert combined.user_id == first.user_id
        assert first.query == "q1"

    def test_combine_empty(self):
        with pytest.raises(ValueError):
            combine_requests([])

    def test_groups_by_template(self):
        """Test one downstream request per template, singletons kept as-is."""
        a1, a2, b1 = self._request("a1"), self._request("a2"), self._request("b1", template_id="t2")

        optimized, members = optimize_batch([a1, a2, b1])

        assert len(optimized) == 2
        assert optimized[1].request_id == b1.request_id
        assert members[optimized[0].request_id] == [a1, a2]
        assert members[b1.request_id] == [b1]
