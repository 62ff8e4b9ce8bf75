"""
Data models for storage layer.

Defines the usage ledger entity.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one billable prompt request.

    Append-only events feed both quota accounting and cost metrics.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    user_id: str
    category: str
    template_id: str
    tokens: int
    estimated_cost: float
    model: str = "gpt-3.5-turbo"
    request_id: Optional[str] = None
    batch_id: Optional[str] = None
    deduplicated: bool = False
