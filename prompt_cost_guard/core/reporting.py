"""
Optimization reporting.

Blends observed cache, deduplication and batching effectiveness into a
single bounded "optimization rate" plus rule-based recommendations.
Diagnostic output only; nothing here feeds back into the engine.

The weights, base and cap come from ReportingConfig and are tunable
heuristics rather than measured quantities.
"""

import threading
from dataclasses import dataclass, field
from typing import List, Optional

from prompt_cost_guard.config.loader import ReportingConfig


@dataclass(frozen=True)
class StatsSnapshot:
    requests: int = 0
    cache_hits: int = 0
    deduplicated: int = 0
    batched_original: int = 0
    batched_combined: int = 0
    cost_saved: float = 0.0


class OptimizationStats:
    """Thread-safe counters fed by the engine's optimized path."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests = 0
        self._cache_hits = 0
        self._deduplicated = 0
        self._batched_original = 0
        self._batched_combined = 0
        self._cost_saved = 0.0

    def record_request(self) -> None:
        with self._lock:
            self._requests += 1

    def record_cache_hit(self, cost_saved: float) -> None:
        with self._lock:
            self._cache_hits += 1
            self._cost_saved += cost_saved

    def record_duplicate(self, cost_saved: float) -> None:
        with self._lock:
            self._deduplicated += 1
            self._cost_saved += cost_saved

    def record_flush(self, original: int, combined: int, cost_saved: float) -> None:
        with self._lock:
            self._batched_original += original
            self._batched_combined += combined
            self._cost_saved += cost_saved

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                requests=self._requests,
                cache_hits=self._cache_hits,
                deduplicated=self._deduplicated,
                batched_original=self._batched_original,
                batched_combined=self._batched_combined,
                cost_saved=self._cost_saved,
            )


@dataclass(frozen=True)
class OptimizationReport:
    current_optimization_rate: float
    target_optimization_rate: float
    cache_hit_rate: float
    deduplication_rate: float
    batching_efficiency: float
    total_cost_saved: float
    recommendations: List[str] = field(default_factory=list)

    @property
    def meets_target(self) -> bool:
        return self.current_optimization_rate >= self.target_optimization_rate


def batching_efficiency(original: int, combined: int) -> float:
    """1 - combined/original; 0 when nothing has been batched."""
    if original <= 0:
        return 0.0
    return 1 - combined / original


def optimization_rate(
    cache_hit_rate: float,
    deduplication_rate: float,
    batching: float,
    config: ReportingConfig,
) -> float:
    """Weighted blend of the three ratios, capped. Monotonic in each input."""
    rate = (
        config.base_rate
        + cache_hit_rate * config.cache_weight
        + batching * config.batching_weight
        + deduplication_rate * config.deduplication_weight
    )
    return min(rate, config.rate_cap)


def generate_recommendations(rate: float, target: float) -> List[str]:
    recommendations = []
    if rate < target + 5:
        recommendations.append("Add prompt compression techniques to reduce token usage")
        recommendations.append("Implement smart context pruning for long conversations")
    if rate < target:
        recommendations.append("Increase cache TTL to 2 hours for better cache hit rates")
        recommendations.append("Implement more aggressive request batching (batch size: 20)")
        recommendations.append("Add semantic similarity matching for better deduplication")
    if rate < target - 5:
        recommendations.append("Prioritize free open-source models for low-priority requests")
        recommendations.append("Route more categories through cost-optimized templates")
    return recommendations


def build_optimization_report(
    snapshot: StatsSnapshot,
    config: Optional[ReportingConfig] = None,
) -> OptimizationReport:
    """Turn raw counters into an OptimizationReport (rates as percentages)."""
    config = config or ReportingConfig()

    if snapshot.requests > 0:
        cache_hit_rate = snapshot.cache_hits / snapshot.requests
        deduplication_rate = snapshot.deduplicated / snapshot.requests
    else:
        cache_hit_rate = 0.0
        deduplication_rate = config.assumed_deduplication_rate
    batching = batching_efficiency(snapshot.batched_original, snapshot.batched_combined)

    rate = optimization_rate(cache_hit_rate, deduplication_rate, batching, config)

    return OptimizationReport(
        current_optimization_rate=round(rate, 2),
        target_optimization_rate=config.target_rate,
        cache_hit_rate=round(cache_hit_rate * 100, 2),
        deduplication_rate=round(deduplication_rate * 100, 2),
        batching_efficiency=round(batching * 100, 2),
        total_cost_saved=snapshot.cost_saved,
        recommendations=generate_recommendations(rate, config.target_rate),
    )
