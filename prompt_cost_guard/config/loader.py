"""
Configuration management and loading.

Handles engine settings: quotas, cache bounds, batching thresholds,
pricing defaults and optimization reporting constants.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class QuotaConfig:
    """Per-user request budgets."""
    daily: int = 100
    monthly: int = 2000
    near_limit_ratio: float = 0.8
    history_limit: int = 1000

    def __post_init__(self):
        """Validate quota values are positive."""
        if self.daily <= 0:
            raise ValueError("daily quota must be > 0")
        if self.monthly <= 0:
            raise ValueError("monthly quota must be > 0")
        if not 0 < self.near_limit_ratio <= 1:
            raise ValueError("near_limit_ratio must be in (0, 1]")
        if self.history_limit <= 0:
            raise ValueError("history_limit must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Bounds for the in-process request cache."""
    ttl_seconds: float = 3600.0
    max_entries: int = 10000
    sweep_interval_seconds: float = 300.0
    eviction_fraction: float = 0.1

    def __post_init__(self):
        """Validate cache bounds."""
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if not 0 < self.eviction_fraction <= 1:
            raise ValueError("eviction_fraction must be in (0, 1]")


@dataclass(frozen=True)
class BatchingConfig:
    """Batching and deduplication thresholds."""
    batch_size: int = 15
    batch_timeout_seconds: float = 20.0
    similarity_threshold: float = 0.8
    overhead_tokens_per_request: int = 50
    duplicate_saving_ratio: float = 0.9
    pending_timeout_seconds: Optional[float] = None

    def __post_init__(self):
        """Validate batching thresholds."""
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_timeout_seconds <= 0:
            raise ValueError("batch_timeout_seconds must be > 0")
        if not 0 < self.similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be in (0, 1]")
        if self.overhead_tokens_per_request < 0:
            raise ValueError("overhead_tokens_per_request cannot be negative")
        if not 0 <= self.duplicate_saving_ratio <= 1:
            raise ValueError("duplicate_saving_ratio must be in [0, 1]")
        if self.pending_timeout_seconds is not None and self.pending_timeout_seconds <= 0:
            raise ValueError("pending_timeout_seconds must be > 0")

    @property
    def effective_pending_timeout(self) -> float:
        """Maximum wait before an unflushed request is failed."""
        if self.pending_timeout_seconds is not None:
            return self.pending_timeout_seconds
        return self.batch_timeout_seconds * 2


@dataclass(frozen=True)
class PricingConfig:
    """Default model used for cost estimates."""
    default_model: str = "gpt-3.5-turbo"
    base_template_tokens: int = 500

    def __post_init__(self):
        if not self.default_model:
            raise ValueError("default_model cannot be empty")
        if self.base_template_tokens < 0:
            raise ValueError("base_template_tokens cannot be negative")


@dataclass(frozen=True)
class ReportingConfig:
    """Tunable constants of the optimization-rate heuristic."""
    base_rate: float = 60.0
    rate_cap: float = 95.0
    target_rate: float = 80.0
    cache_weight: float = 30.0
    batching_weight: float = 20.0
    deduplication_weight: float = 15.0
    assumed_deduplication_rate: float = 0.15

    def __post_init__(self):
        if self.rate_cap <= 0 or self.rate_cap > 100:
            raise ValueError("rate_cap must be in (0, 100]")
        if self.base_rate < 0 or self.base_rate > self.rate_cap:
            raise ValueError("base_rate must be between 0 and rate_cap")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)
    templates_dir: Optional[str] = None


_SECTIONS = {
    'quota': QuotaConfig,
    'cache': CacheConfig,
    'batching': BatchingConfig,
    'pricing': PricingConfig,
    'reporting': ReportingConfig,
}

_SECTION_TYPES = {
    'quota': {'daily': int, 'monthly': int, 'near_limit_ratio': float, 'history_limit': int},
    'cache': {
        'ttl_seconds': float,
        'max_entries': int,
        'sweep_interval_seconds': float,
        'eviction_fraction': float,
    },
    'batching': {
        'batch_size': int,
        'batch_timeout_seconds': float,
        'similarity_threshold': float,
        'overhead_tokens_per_request': int,
        'duplicate_saving_ratio': float,
        'pending_timeout_seconds': float,
    },
    'pricing': {'default_model': str, 'base_template_tokens': int},
    'reporting': {
        'base_rate': float,
        'rate_cap': float,
        'target_rate': float,
        'cache_weight': float,
        'batching_weight': float,
        'deduplication_weight': float,
        'assumed_deduplication_rate': float,
    },
}


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Every section is optional; omitted sections and keys keep their
    defaults. Unknown keys are rejected so a typo never silently leaves
    a quota or threshold at its default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    return parse_engine_config(raw_config)


def parse_engine_config(raw_config: Dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig from an already-parsed mapping."""
    allowed_top_keys = set(_SECTIONS) | {'templates_dir'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, section_cls in _SECTIONS.items():
        data = raw_config.get(name)
        if data is None:
            sections[name] = section_cls()
            continue
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = section_cls(**_parse_section(name, data))

    templates_dir = raw_config.get('templates_dir')
    if templates_dir is not None and not isinstance(templates_dir, str):
        raise ValueError("'templates_dir' must be a string")

    return EngineConfig(templates_dir=templates_dir, **sections)


def _parse_section(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate key names and value types of one configuration section.

    Args:
        name: Section name, used for lookups and error messages
        data: Raw section mapping

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    types = _SECTION_TYPES[name]
    unknown_keys = set(data.keys()) - set(types)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = types[key]
        if expected is str:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' in {name} must be a string")
            parsed[key] = value
            continue
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {name} must be a number")
        if expected is int and float(value) != int(value):
            raise ValueError(f"'{key}' in {name} must be an integer")
        parsed[key] = expected(value)
    return parsed
