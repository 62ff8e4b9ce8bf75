"""
Prompt execution engine.

Direct path: quota -> template -> resolve -> render -> (gateway) -> track.
Optimized path: quota -> cache -> deduplication -> batch; rendering and
the downstream call happen when a batch flushes.

``execute`` always returns an ExecutionResult; failures never escape it.
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from prompt_cost_guard.config.loader import EngineConfig
from prompt_cost_guard.sdk.openai_client import UpstreamFailure
from .batching import BatchedRequest, BatchFlushResult, Batcher
from .cache import MISS, RequestCache, make_cache_key
from .deduplication import Deduplicator
from .pricing import cost_per_token, estimate_cost, estimate_request_cost
from .quota import CostMetrics, QuotaExceeded, QuotaStatus, QuotaTracker
from .renderer import render_prompt
from .reporting import OptimizationReport, OptimizationStats, build_optimization_report
from .resolver import (
    ResolutionStep,
    ResolvedValue,
    StaticUserDataProvider,
    UserContext,
    count_resolved,
    missing_required,
    resolve_variables,
)
from .scheduler import PeriodicTask
from .template_source import TemplateSource
from .templates import PromptCategory, PromptTemplate, TemplateNotFound, TemplateRegistry
from .token_counter import estimate_tokens

logger = logging.getLogger(__name__)

BATCHED_MESSAGE = "Request added to batch for cost optimization"
DEDUPLICATED_MESSAGE = "Request folded onto a similar pending request"


@dataclass
class ExecutionResult:
    """What ``execute`` hands back to the caller."""
    success: bool
    prompt: str = ""
    response: Optional[str] = None
    batch_id: Optional[str] = None
    request_id: Optional[str] = None
    error: Optional[str] = None
    execution_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


class OutcomeStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchOutcome:
    """Eventual result of a batched or deduplicated request."""
    request_id: str
    status: OutcomeStatus
    batch_id: Optional[str] = None
    prompt: str = ""
    response: Optional[str] = None
    error: Optional[str] = None
    deduplicated: bool = False
    cost_saved: float = 0.0


@dataclass(frozen=True)
class TemplateTestResult:
    success: bool
    prompt: Optional[str] = None
    error: Optional[str] = None
    missing_variables: List[str] = field(default_factory=list)


def _coerce_category(category: Union[str, PromptCategory]) -> PromptCategory:
    if isinstance(category, PromptCategory):
        return category
    try:
        return PromptCategory(category)
    except ValueError:
        raise TemplateNotFound(f"No template found for category: {category}", category=str(category))


def _query_text(user_input: Mapping[str, Any]) -> str:
    query = user_input.get("user_query")
    if query:
        return str(query)
    return json.dumps(dict(user_input), sort_keys=True, default=str)


class PromptEngine:
    """Renders prompts and decides when and how they are paid for."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[TemplateRegistry] = None,
        user_data_provider=None,
        gateway=None,
        ledger=None,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = datetime.now,
    ):
        """Wire the engine's components from a configuration.

        Args:
            config: Engine configuration (defaults when omitted)
            registry: Template registry; built from the configured template
                source when omitted
            user_data_provider: Supplies UserContext snapshots
            gateway: Optional AI gateway; without one, prompts are returned
                unsent and costs are estimated
            ledger: Optional UsageRepository for durable usage history
            clock: Epoch-seconds clock for cache and batch timing
            now: Wall clock for quota windows
        """
        self.config = config or EngineConfig()
        self.registry = registry or TemplateRegistry(TemplateSource(self.config.templates_dir))
        self.user_data = user_data_provider or StaticUserDataProvider()
        self.gateway = gateway
        self.ledger = ledger
        self._now = now

        quota_cfg = self.config.quota
        cache_cfg = self.config.cache
        batch_cfg = self.config.batching
        self.default_model = self.config.pricing.default_model

        self.quota = QuotaTracker(
            daily_quota=quota_cfg.daily,
            monthly_quota=quota_cfg.monthly,
            near_limit_ratio=quota_cfg.near_limit_ratio,
            history_limit=quota_cfg.history_limit,
            ledger=ledger,
            clock=now,
        )
        self.cache = RequestCache(
            ttl_seconds=cache_cfg.ttl_seconds,
            max_entries=cache_cfg.max_entries,
            eviction_fraction=cache_cfg.eviction_fraction,
            clock=clock,
        )
        self.deduplicator = Deduplicator(batch_cfg.similarity_threshold)
        self.batcher = Batcher(
            batch_size=batch_cfg.batch_size,
            batch_timeout=batch_cfg.batch_timeout_seconds,
            overhead_tokens_per_request=batch_cfg.overhead_tokens_per_request,
            cost_per_token=cost_per_token(self.default_model),
            clock=clock,
            on_flush=self._handle_flush,
        )
        self.stats = OptimizationStats()

        self._outcomes_lock = threading.Lock()
        self._outcomes: "OrderedDict[str, BatchOutcome]" = OrderedDict()
        self._max_outcomes = cache_cfg.max_entries

        self._tasks = [
            PeriodicTask("cache-sweep", cache_cfg.sweep_interval_seconds, self.cache.sweep),
            PeriodicTask("batch-flush", batch_cfg.batch_timeout_seconds, self.flush_due),
        ]

        if ledger is not None:
            self.load_usage_history()

    # Lifecycle

    def start(self) -> None:
        """Start the cache sweep and batch flush tickers."""
        for task in self._tasks:
            task.start()
        logger.info("Prompt engine started")

    def stop(self, flush: bool = True) -> None:
        """Stop background tasks and, by default, flush every pending queue."""
        for task in self._tasks:
            task.stop()
        if flush:
            logger.info("Flushing %d pending requests", self.batcher.pending_count())
            self.batcher.flush_all()
        logger.info("Prompt engine stopped")

    def __enter__(self) -> "PromptEngine":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def load_usage_history(self, days: int = 31) -> int:
        """Warm quota histories from the ledger, at most ``history_limit`` events per user."""
        loaded = 0
        for user_id in self.ledger.get_user_ids():
            events = self.ledger.get_recent_events(
                user_id=user_id, days=days, limit=self.config.quota.history_limit
            )
            loaded += self.quota.load_history(events)
        logger.info("Loaded %d usage events from ledger", loaded)
        return loaded

    # Execution

    def execute(
        self,
        user_id: str,
        category: Union[str, PromptCategory],
        user_input: Optional[Mapping[str, Any]] = None,
        template_id: Optional[str] = None,
        language: Optional[str] = None,
        enable_batching: bool = False,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> ExecutionResult:
        """Build (and optionally send) a prompt, or queue it for batching.

        Batching applies only when requested and the selected template is
        cost-optimized; otherwise the prompt is rendered immediately.
        """
        started = time.perf_counter()
        user_input = dict(user_input or {})
        try:
            category = _coerce_category(category)
            quota_status = self.quota.enforce(user_id)

            template = self.registry.select_template(category, template_id, language)
            if template is None:
                raise TemplateNotFound(
                    f"No template found for category: {category.value}",
                    category=category.value,
                    template_id=template_id,
                )

            if enable_batching and template.cost_optimized:
                result = self._execute_optimized(user_id, category, template, user_input, model)
            else:
                result = self._execute_direct(user_id, category, template, user_input, quota_status, model, max_tokens)
        except QuotaExceeded as e:
            logger.warning("Rejected request from %s: %s", user_id, e)
            status = e.status
            result = ExecutionResult(
                success=False,
                error=str(e),
                metadata={
                    "quota_exceeded": True,
                    "daily_remaining": status.daily_remaining,
                    "monthly_remaining": status.monthly_remaining,
                    "reset_time": status.reset_time.isoformat(),
                },
            )
        except TemplateNotFound as e:
            logger.warning("Prompt execution failed: %s", e)
            result = ExecutionResult(
                success=False,
                error=str(e),
                metadata={"not_found": True, "category": e.category, "template_id": e.template_id},
            )
        except UpstreamFailure as e:
            logger.error("Prompt execution failed upstream: %s", e)
            result = ExecutionResult(
                success=False,
                error=str(e),
                metadata={"upstream_failure": True, "provider": e.provider, "model": e.model},
            )
        except Exception as e:
            logger.exception("Prompt execution failed")
            result = ExecutionResult(success=False, error=str(e))

        result.execution_time = time.perf_counter() - started
        return result

    def _execute_direct(
        self,
        user_id: str,
        category: PromptCategory,
        template: PromptTemplate,
        user_input: Dict[str, Any],
        quota_status: QuotaStatus,
        model: Optional[str],
        max_tokens: Optional[int],
    ) -> ExecutionResult:
        context = self.user_data.get_user_context(user_id)
        resolved = resolve_variables(template, context, user_input, self._now())
        prompt = render_prompt(template, resolved)
        model = model or template.model or self.default_model

        response_text = None
        if self.gateway is not None:
            response = self.gateway.invoke(prompt, model=model, max_tokens=max_tokens)
            tokens = response.usage.total_tokens
            cost = response.cost
            model = response.model
            response_text = response.text
        else:
            tokens = template.estimated_tokens
            cost = estimate_cost(tokens, model)

        self.quota.track_request(user_id, category.value, template.id, tokens, cost, model)
        logger.info("Executed prompt for user %s, category: %s, template: %s", user_id, category.value, template.id)

        return ExecutionResult(
            success=True,
            prompt=prompt,
            response=response_text,
            metadata={
                "template_id": template.id,
                "category": category.value,
                "variables_resolved": count_resolved(resolved),
                "cost_optimized": template.cost_optimized,
                "model": model,
                "estimated_tokens": tokens,
                "estimated_cost": cost,
                "quota_remaining": max(quota_status.daily_remaining - 1, 0),
            },
        )

    def _execute_optimized(
        self,
        user_id: str,
        category: PromptCategory,
        template: PromptTemplate,
        user_input: Dict[str, Any],
        model: Optional[str],
    ) -> ExecutionResult:
        self.stats.record_request()
        query = _query_text(user_input)
        standalone_cost = estimate_request_cost(
            query, model or template.model, self.config.pricing.base_template_tokens
        )

        cached = self.cache.get(make_cache_key(category.value, template.id, query))
        if cached is not MISS:
            self.stats.record_cache_hit(standalone_cost)
            return ExecutionResult(
                success=True,
                prompt=cached.get("prompt", ""),
                response=cached.get("response"),
                batch_id=cached.get("batch_id"),
                metadata={
                    "template_id": template.id,
                    "category": category.value,
                    "from_cache": True,
                    "cost_saved": standalone_cost,
                },
            )

        request = self.batcher.create_request(user_id, category, template.id, query, user_input)
        # registered before fold/enqueue so a synchronous flush can overwrite it
        self._set_outcome(BatchOutcome(request.request_id, OutcomeStatus.PENDING))

        fold = self.batcher.fold_if_duplicate(request, self.deduplicator)
        if fold is not None:
            saved = standalone_cost * self.config.batching.duplicate_saving_ratio
            self.stats.record_duplicate(saved)
            logger.debug("Deduplicated request %s onto %s", request.request_id, fold.primary.request_id)
            return ExecutionResult(
                success=True,
                prompt=DEDUPLICATED_MESSAGE,
                batch_id=fold.batch_id,
                request_id=request.request_id,
                metadata={
                    "template_id": template.id,
                    "category": category.value,
                    "deduplicated": True,
                    "duplicate_of": fold.primary.request_id,
                    "cost_saved": saved,
                },
            )

        enqueued = self.batcher.enqueue(request)
        return ExecutionResult(
            success=True,
            prompt=BATCHED_MESSAGE,
            batch_id=enqueued.batch_id,
            request_id=request.request_id,
            metadata={
                "template_id": template.id,
                "category": category.value,
                "batched": True,
                "priority": request.priority.value,
                "flushed": enqueued.flushed is not None,
                "cost_optimized": True,
            },
        )

    # Batch completion

    def flush_due(self) -> List[BatchFlushResult]:
        """Periodic tick: fail requests stuck too long, then flush timed-out queues."""
        for request in self.batcher.expire_stale(self.config.batching.effective_pending_timeout):
            self._set_outcome(BatchOutcome(
                request.request_id,
                OutcomeStatus.FAILED,
                error="Request timed out waiting for batch flush",
            ))
        return self.batcher.periodic_flush()

    def _run_downstream(self, request: BatchedRequest) -> Dict[str, Any]:
        template = self.registry.get_template(request.template_id)
        if template is None:
            raise TemplateNotFound(
                f"Template {request.template_id} no longer registered",
                category=request.category.value,
                template_id=request.template_id,
            )
        context = self.user_data.get_user_context(request.user_id)
        user_input = dict(request.variables)
        user_input["user_query"] = request.query
        resolved = resolve_variables(template, context, user_input, self._now())
        if request.variables.get("batch_size", 1) > 1 and "user_query" in resolved:
            # a combined query carries every member query in full
            resolved["user_query"] = ResolvedValue("user_query", request.query, ResolutionStep.INPUT)
        prompt = render_prompt(template, resolved)
        model = template.model or self.default_model

        if self.gateway is not None:
            response = self.gateway.invoke(prompt, model=model)
            return {
                "prompt": prompt,
                "response": response.text,
                "tokens": response.usage.total_tokens,
                "cost": response.cost,
                "model": response.model,
            }
        tokens = estimate_tokens(prompt)
        return {
            "prompt": prompt,
            "response": None,
            "tokens": tokens,
            "cost": estimate_cost(tokens, model),
            "model": model,
        }

    def _handle_flush(self, result: BatchFlushResult) -> None:
        """Render and send each downstream request of a flushed batch."""
        self.stats.record_flush(len(result.original_requests), len(result.combined_requests), result.cost_saved)
        saving_ratio = self.config.batching.duplicate_saving_ratio

        for downstream in result.combined_requests:
            members = result.members[downstream.request_id]
            try:
                payload = self._run_downstream(downstream)
            except Exception as e:
                logger.error("Failed to process batch %s: %s", result.batch_id, e)
                for member in members:
                    for request in [member] + result.duplicates.get(member.request_id, []):
                        self._set_outcome(BatchOutcome(
                            request.request_id, OutcomeStatus.FAILED, batch_id=result.batch_id, error=str(e)
                        ))
                continue

            payload["batch_id"] = result.batch_id
            tokens_share = payload["tokens"] // len(members)
            cost_share = payload["cost"] / len(members)

            for member in members:
                self.cache.put(make_cache_key(member.category.value, member.template_id, member.query), payload)
                self.quota.track_request(
                    member.user_id, member.category.value, member.template_id,
                    tokens_share, cost_share, payload["model"], request_id=member.request_id,
                    batch_id=result.batch_id,
                )
                self._set_outcome(BatchOutcome(
                    member.request_id,
                    OutcomeStatus.COMPLETED,
                    batch_id=result.batch_id,
                    prompt=payload["prompt"],
                    response=payload["response"],
                ))
                for duplicate in result.duplicates.get(member.request_id, []):
                    self.cache.put(
                        make_cache_key(duplicate.category.value, duplicate.template_id, duplicate.query), payload
                    )
                    self.quota.track_request(
                        duplicate.user_id, duplicate.category.value, duplicate.template_id,
                        0, cost_share * (1 - saving_ratio), payload["model"],
                        request_id=duplicate.request_id, batch_id=result.batch_id, deduplicated=True,
                    )
                    self._set_outcome(BatchOutcome(
                        duplicate.request_id,
                        OutcomeStatus.COMPLETED,
                        batch_id=result.batch_id,
                        prompt=payload["prompt"],
                        response=payload["response"],
                        deduplicated=True,
                        cost_saved=cost_share * saving_ratio,
                    ))

    def _set_outcome(self, outcome: BatchOutcome) -> None:
        with self._outcomes_lock:
            self._outcomes[outcome.request_id] = outcome
            self._outcomes.move_to_end(outcome.request_id)
            while len(self._outcomes) > self._max_outcomes:
                self._outcomes.popitem(last=False)

    def get_request_result(self, request_id: str) -> Optional[BatchOutcome]:
        """Eventual outcome of a batched or deduplicated request."""
        with self._outcomes_lock:
            return self._outcomes.get(request_id)

    # Reporting and quota views

    def get_cost_metrics(self, user_id: str) -> CostMetrics:
        return self.quota.get_cost_metrics(user_id)

    def get_quota_status(self, user_id: str) -> QuotaStatus:
        return self.quota.check_quota(user_id)

    def get_optimization_report(self) -> OptimizationReport:
        return build_optimization_report(self.stats.snapshot(), self.config.reporting)

    # Template management

    def add_template(self, template: PromptTemplate) -> None:
        self.registry.add_template(template)

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        return self.registry.get_template(template_id)

    def get_templates_by_category(self, category: Union[str, PromptCategory]) -> List[PromptTemplate]:
        try:
            category = _coerce_category(category)
        except TemplateNotFound:
            return []
        return self.registry.get_templates_by_category(category)

    def reload_templates(self) -> int:
        return self.registry.reload()

    def get_template_statistics(self) -> Dict[str, Any]:
        return self.registry.statistics()

    def test_template(self, template_id: str, sample_data: Mapping[str, Any]) -> TemplateTestResult:
        """Render a template against sample data used as every data source."""
        template = self.registry.get_template(template_id)
        if template is None:
            return TemplateTestResult(success=False, error="Template not found")

        missing = missing_required(template, sample_data)
        if missing:
            return TemplateTestResult(success=False, missing_variables=missing)

        sample = dict(sample_data)
        context = UserContext(
            user_id="test-user",
            profile=sample,
            health_data=sample,
            preferences=sample,
        )
        prompt = render_prompt(template, resolve_variables(template, context, sample, self._now()))
        return TemplateTestResult(success=True, prompt=prompt)
