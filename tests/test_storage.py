"""
Unit tests for storage layer.

Tests schema creation, event insertion, and retrieval operations.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from prompt_cost_guard.storage.db import get_connection
from prompt_cost_guard.storage.models import UsageEvent
from prompt_cost_guard.storage.repository import (
    UsageRepository,
    fetch_recent_usage_events,
    initialize_schema,
    insert_usage_event,
    insert_usage_events,
)


def make_event(timestamp, user_id="u1", category="nutrition_advice", tokens=100, cost=0.002, **kwargs):
    return UsageEvent(
        timestamp=timestamp,
        user_id=user_id,
        category=category,
        template_id=f"{category}_basic",
        tokens=tokens,
        estimated_cost=cost,
        **kwargs
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("PRAGMA table_info(prompt_usage_event)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'timestamp', 'user_id', 'category', 'template_id',
                    'tokens', 'estimated_cost', 'model', 'request_id', 'batch_id', 'deduplicated'
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        """Verify initializing twice keeps existing data."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            insert_usage_event(make_event(datetime(2024, 1, 1, 12)), db_path)

            initialize_schema(db_path)

            assert len(fetch_recent_usage_events(db_path=db_path)) == 1


class TestEventInsertion:
    """Test usage event insertion operations."""

    def test_insert_single_event(self):
        """Test inserting a single usage event."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_usage_event(
                make_event(datetime(2024, 1, 1, 12), model="gpt-4", request_id="req_123"),
                db_path,
            )

            events = fetch_recent_usage_events(db_path=db_path)
            assert len(events) == 1
            assert events[0].timestamp == datetime(2024, 1, 1, 12)
            assert events[0].user_id == "u1"
            assert events[0].category == "nutrition_advice"
            assert events[0].template_id == "nutrition_advice_basic"
            assert events[0].tokens == 100
            assert events[0].estimated_cost == 0.002
            assert events[0].model == "gpt-4"
            assert events[0].request_id == "req_123"

    def test_insert_multiple_events(self):
        """Test inserting multiple usage events in a transaction."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_usage_events([
                make_event(datetime(2024, 1, 1, 12, 0), category="nutrition_advice"),
                make_event(datetime(2024, 1, 1, 12, 1), category="meal_planning"),
            ], db_path)

            events = fetch_recent_usage_events(db_path=db_path)
            assert len(events) == 2
            assert events[0].category == "meal_planning"  # Most recent first
            assert events[1].category == "nutrition_advice"

    def test_insert_empty_event_list(self):
        """Test inserting empty list of events."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            insert_usage_events([], db_path)

            assert fetch_recent_usage_events(db_path=db_path) == []

    def test_insert_without_schema_fails(self):
        """Test the ledger must be initialized before writing."""
        import sqlite3
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            with pytest.raises(sqlite3.OperationalError):
                insert_usage_event(make_event(datetime(2024, 1, 1)), db_path)


class TestUsageRepository:
    """Test filtered reads through the repository."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = UsageRepository(self.db_path)
        now = datetime.now()
        insert_usage_events([
            make_event(now - timedelta(days=40), user_id="u1", category="general_chat", tokens=10, cost=0.1),
            make_event(now - timedelta(days=2), user_id="u1", category="nutrition_advice", tokens=20, cost=0.2),
            make_event(now - timedelta(hours=1), user_id="u2", category="nutrition_advice", tokens=30, cost=0.3),
        ], self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record(self):
        """Test record appends through the repository."""
        self.repository.record(make_event(datetime.now(), user_id="u3"))
        assert self.repository.get_user_ids() == ["u1", "u2", "u3"]

    def test_filter_by_user(self):
        events = self.repository.get_recent_events(user_id="u1")
        assert [e.tokens for e in events] == [20, 10]

    def test_filter_by_category(self):
        events = self.repository.get_recent_events(category="nutrition_advice")
        assert {e.user_id for e in events} == {"u1", "u2"}

    def test_filter_by_days(self):
        events = self.repository.get_recent_events(days=31)
        assert len(events) == 2

    def test_limit(self):
        assert len(self.repository.get_recent_events(limit=1)) == 1

    def test_usage_stats(self):
        """Test aggregates over the requested window."""
        stats = self.repository.get_usage_stats(days=30)
        assert stats["total_requests"] == 2
        assert stats["total_tokens"] == 50
        assert stats["total_cost"] == pytest.approx(0.5)
        assert stats["avg_cost"] == pytest.approx(0.25)

        user_stats = self.repository.get_usage_stats(user_id="u2", days=30)
        assert user_stats["total_requests"] == 1

    def test_usage_stats_empty_window(self):
        stats = UsageRepository(self.db_path).get_usage_stats(user_id="nobody")
        assert stats == {"total_requests": 0, "total_cost": 0.0, "avg_cost": 0.0, "total_tokens": 0}

    def test_optimization_counts(self):
        """Test batched members, downstream groups and duplicates are counted per window."""
        now = datetime.now()
        insert_usage_events(
            [make_event(now, user_id=f"m{i}", batch_id="b1") for i in range(3)]
            + [make_event(now, user_id=f"g{i}", category="general_chat", batch_id="b2") for i in range(2)]
            + [make_event(now, user_id="d1", tokens=0, batch_id="b1", deduplicated=True)],
            self.db_path,
        )

        counts = self.repository.get_optimization_counts(days=30)

        assert counts == {"total_requests": 8, "deduplicated": 1, "batched_original": 5, "batched_combined": 2}
        duplicate = self.repository.get_recent_events(user_id="d1")[0]
        assert duplicate.deduplicated is True
        assert duplicate.batch_id == "b1"

    def test_optimization_counts_empty_window(self):
        counts = UsageRepository(self.db_path).get_optimization_counts(days=0)
        assert counts == {"total_requests": 0, "deduplicated": 0, "batched_original": 0, "batched_combined": 0}


class TestAppendOnlyNature:
    """Test that storage maintains append-only behavior."""

    def test_no_update_methods_exist(self):
        """Verify that no UPDATE or DELETE helpers are exposed."""
        import prompt_cost_guard.storage.repository as repository
        public = [name for name in dir(repository) if not name.startswith("_")]
        assert not any("update" in name.lower() or "delete" in name.lower() for name in public)
