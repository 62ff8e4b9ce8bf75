"""
Per-user request quotas.

Daily and monthly usage are computed on demand from a bounded,
timestamped event history per user, so windows "reset" implicitly as
events age out of them.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional

from .pricing import DEFAULT_MODEL
from prompt_cost_guard.storage.models import UsageEvent


@dataclass(frozen=True)
class UsageRecord:
    """One tracked request in a user's history."""
    timestamp: datetime
    category: str
    template_id: str
    tokens: int
    cost: float
    model: str = DEFAULT_MODEL


@dataclass(frozen=True)
class QuotaStatus:
    """Point-in-time view of a user's quota windows."""
    user_id: str
    daily_used: int
    daily_quota: int
    monthly_used: int
    monthly_quota: int
    is_near_limit: bool
    is_over_limit: bool
    reset_time: datetime

    @property
    def daily_remaining(self) -> int:
        return max(self.daily_quota - self.daily_used, 0)

    @property
    def monthly_remaining(self) -> int:
        return max(self.monthly_quota - self.monthly_used, 0)


class QuotaExceeded(Exception):
    """Raised when a user over quota tries to submit a request."""
    def __init__(self, status: QuotaStatus):
        super().__init__(
            f"User {status.user_id} has exceeded their quota limit "
            f"(daily {status.daily_used}/{status.daily_quota}, "
            f"monthly {status.monthly_used}/{status.monthly_quota})"
        )
        self.status = status


@dataclass(frozen=True)
class CostMetrics:
    """Aggregate cost view of a user's tracked history."""
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_tokens_per_request: float = 0.0
    average_cost_per_request: float = 0.0
    cost_by_model: Dict[str, float] = field(default_factory=dict)
    tokens_by_model: Dict[str, int] = field(default_factory=dict)
    requests_by_category: Dict[str, int] = field(default_factory=dict)
    daily_cost: float = 0.0
    monthly_cost: float = 0.0
    projected_monthly_cost: float = 0.0


def next_daily_reset(now: datetime) -> datetime:
    """Midnight at the start of the day after ``now``."""
    tomorrow = now.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=now.tzinfo)


def _same_day(ts: datetime, now: datetime) -> bool:
    return ts.date() == now.date()


def _same_month(ts: datetime, now: datetime) -> bool:
    return ts.year == now.year and ts.month == now.month


class QuotaTracker:
    """Tracks request events per user and evaluates quota windows.

    Each user's history is capped at ``history_limit`` events, dropping the
    oldest first. When a ledger is given, every tracked event is also
    appended to it.
    """

    def __init__(
        self,
        daily_quota: int = 100,
        monthly_quota: int = 2000,
        near_limit_ratio: float = 0.8,
        history_limit: int = 1000,
        ledger=None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.daily_quota = daily_quota
        self.monthly_quota = monthly_quota
        self.near_limit_ratio = near_limit_ratio
        self.history_limit = history_limit
        self._ledger = ledger
        self._clock = clock
        self._lock = threading.Lock()
        self._history: Dict[str, Deque[UsageRecord]] = {}

    def _user_history(self, user_id: str) -> Deque[UsageRecord]:
        history = self._history.get(user_id)
        if history is None:
            history = deque(maxlen=self.history_limit)
            self._history[user_id] = history
        return history

    def track_request(
        self,
        user_id: str,
        category: str,
        template_id: str,
        tokens: int,
        cost: float,
        model: Optional[str] = None,
        request_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        batch_id: Optional[str] = None,
        deduplicated: bool = False,
    ) -> UsageRecord:
        """Append one usage event to a user's history (and the ledger, if any)."""
        record = UsageRecord(
            timestamp=timestamp or self._clock(),
            category=category,
            template_id=template_id,
            tokens=tokens,
            cost=cost,
            model=model or DEFAULT_MODEL,
        )
        with self._lock:
            self._user_history(user_id).append(record)

        if self._ledger is not None:
            self._ledger.record(UsageEvent(
                timestamp=record.timestamp,
                user_id=user_id,
                category=category,
                template_id=template_id,
                tokens=tokens,
                estimated_cost=cost,
                model=record.model,
                request_id=request_id,
                batch_id=batch_id,
                deduplicated=deduplicated,
            ))
        return record

    def load_history(self, events: Iterable[UsageEvent]) -> int:
        """Warm in-memory histories from ledger events, oldest first.

        Returns:
            Number of events loaded
        """
        ordered = sorted(events, key=lambda e: e.timestamp)
        with self._lock:
            for event in ordered:
                self._user_history(event.user_id).append(UsageRecord(
                    timestamp=event.timestamp,
                    category=event.category,
                    template_id=event.template_id,
                    tokens=event.tokens,
                    cost=event.estimated_cost,
                    model=event.model,
                ))
        return len(ordered)

    def history(self, user_id: str) -> List[UsageRecord]:
        with self._lock:
            return list(self._history.get(user_id, ()))

    def check_quota(self, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
        """Compute a user's daily and monthly usage against their quotas.

        Near limit means either window is at or above ``near_limit_ratio``
        of its quota; over limit means either window is at or above its
        quota.
        """
        now = now or self._clock()
        history = self.history(user_id)
        daily_used = sum(1 for r in history if _same_day(r.timestamp, now))
        monthly_used = sum(1 for r in history if _same_month(r.timestamp, now))

        return QuotaStatus(
            user_id=user_id,
            daily_used=daily_used,
            daily_quota=self.daily_quota,
            monthly_used=monthly_used,
            monthly_quota=self.monthly_quota,
            is_near_limit=(
                daily_used >= self.daily_quota * self.near_limit_ratio
                or monthly_used >= self.monthly_quota * self.near_limit_ratio
            ),
            is_over_limit=daily_used >= self.daily_quota or monthly_used >= self.monthly_quota,
            reset_time=next_daily_reset(now),
        )

    def enforce(self, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
        """Admission check.

        Raises:
            QuotaExceeded: If the user is over either quota
        """
        status = self.check_quota(user_id, now)
        if status.is_over_limit:
            raise QuotaExceeded(status)
        return status

    def get_cost_metrics(self, user_id: str, now: Optional[datetime] = None) -> CostMetrics:
        """Summarize a user's tracked history."""
        now = now or self._clock()
        history = self.history(user_id)
        if not history:
            return CostMetrics()

        total_tokens = sum(r.tokens for r in history)
        total_cost = sum(r.cost for r in history)
        cost_by_model: Dict[str, float] = {}
        tokens_by_model: Dict[str, int] = {}
        requests_by_category: Dict[str, int] = {}
        for r in history:
            cost_by_model[r.model] = cost_by_model.get(r.model, 0.0) + r.cost
            tokens_by_model[r.model] = tokens_by_model.get(r.model, 0) + r.tokens
            requests_by_category[r.category] = requests_by_category.get(r.category, 0) + 1

        daily_cost = sum(r.cost for r in history if _same_day(r.timestamp, now))
        monthly_cost = sum(r.cost for r in history if _same_month(r.timestamp, now))

        return CostMetrics(
            total_requests=len(history),
            total_tokens=total_tokens,
            total_cost=total_cost,
            average_tokens_per_request=total_tokens / len(history),
            average_cost_per_request=total_cost / len(history),
            cost_by_model=cost_by_model,
            tokens_by_model=tokens_by_model,
            requests_by_category=requests_by_category,
            daily_cost=daily_cost,
            monthly_cost=monthly_cost,
            projected_monthly_cost=daily_cost * 30,
        )
