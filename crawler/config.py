"""
Run configuration for the crawl engine.

Every tunable lives on RunConfig with an explicit default. Options may be
supplied with camelCase or snake_case keys. Precedence, lowest to highest:
built-in defaults -> CRAWL_* environment variables -> nested `overrides`
block -> top-level keys.
"""

import os
import re
import dataclasses
from dataclasses import dataclass, field
from typing import Optional, Tuple, Dict, Any, Mapping, Union, get_type_hints, get_origin, get_args

from crawler.core import ConfigError, REQUEST_TIMEOUT, DEFAULT_WORKERS, STATE_DIR, logger

BALANCING_STRATEGIES = ("adaptive", "fixed", "priority", "time-based")
PRIORITIZATION_MODES = ("default", "geography-only")

ENV_PREFIX = "CRAWL_"


@dataclass
class RetryConfig:
    """Backoff and host circuit-breaker tuning shared by retry and throttle."""
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: float = 0.25
    retryable_statuses: Tuple[int, ...] = (429, 500, 502, 503, 504)
    # Connection resets within the window before a host is locked out
    reset_threshold: int = 3
    reset_window_ms: int = 60000
    # Any other failures within the window before a host is locked out
    host_max_errors: int = 5
    host_window_ms: int = 60000
    lockout_ms: int = 300000


@dataclass
class RunConfig:
    seeds: Tuple[str, ...] = ()
    job_id: Optional[str] = None

    # Worker pool
    workers: int = DEFAULT_WORKERS
    max_downloads: Optional[int] = None
    max_depth: int = 3
    request_timeout_s: float = REQUEST_TIMEOUT
    max_batch_duration_s: float = 30 * 60

    # Politeness
    rate_limit_ms: int = 1000
    max_concurrent_per_host: int = 2
    retry: RetryConfig = field(default_factory=RetryConfig)

    # Fetch pipeline
    prefer_cache: bool = True
    cache_ttl_s: float = 3600
    headless_enabled: bool = True
    headless_allowlist: Tuple[str, ...] = ()
    headless_timeout_s: float = 30
    # Resets inside one fetch before switching to the headless engine
    headless_reset_threshold: int = 2
    # Resets on a host within five minutes before it is auto-added to the allow-list
    headless_auto_learn_threshold: int = 3

    # Frontier admission
    prioritization_mode: str = "default"

    # Multi-modal scheduling
    batch_size: int = 1000
    max_total_batches: Optional[int] = None
    max_total_pages: Optional[int] = None
    historical_ratio: float = 0.3
    balancing_strategy: str = "adaptive"
    hub_discovery_enabled: bool = True
    hub_refresh_interval_ms: int = 60 * 60 * 1000
    hub_discovery_priority_batches: int = 2
    hub_confidence_threshold: float = 0.7
    min_new_signatures_to_learn: int = 3
    reanalysis_confidence_threshold: float = 0.6
    pause_between_batches_s: float = 5
    persistent_mode: bool = False
    stop_on_exhaustion: bool = False
    quota_skip_threshold: float = 0.2
    quota_ceiling: int = 500

    # Telemetry
    history_limit: int = 200
    url_batch_size: int = 50
    persist_decision_traces: bool = False

    state_dir: str = str(STATE_DIR)

    def validate(self) -> "RunConfig":
        """Raises ConfigError on the first invalid value; returns self for chaining."""
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_downloads is not None and self.max_downloads < 0:
            raise ConfigError(f"max_downloads must be >= 0, got {self.max_downloads}")
        if not 0.0 <= self.historical_ratio <= 1.0:
            raise ConfigError(f"historical_ratio must be within [0, 1], got {self.historical_ratio}")
        if self.balancing_strategy not in BALANCING_STRATEGIES:
            raise ConfigError(f"unknown balancing_strategy '{self.balancing_strategy}'")
        if self.prioritization_mode not in PRIORITIZATION_MODES:
            raise ConfigError(f"unknown prioritization_mode '{self.prioritization_mode}'")
        if self.rate_limit_ms < 0 or self.max_concurrent_per_host < 1:
            raise ConfigError("rate_limit_ms must be >= 0 and max_concurrent_per_host >= 1")
        if self.retry.max_retries < 0 or self.retry.reset_threshold < 1:
            raise ConfigError("retry.max_retries must be >= 0 and retry.reset_threshold >= 1")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# === KEY / VALUE COERCION ===

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Public option names that differ from the attribute they feed
_ALIASES = {
    "retryable_statuses": ("retry", "retryable_statuses"),
    "max_retries": ("retry", "max_retries"),
    "rate_limit": ("rate_limit_ms", None),
    "concurrency": ("workers", None),
    "reanalysis_threshold": ("reanalysis_confidence_threshold", None),
    "max_pages": ("max_total_pages", None),
    "max_batches": ("max_total_batches", None),
}


def to_snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).replace("-", "_").lower()


def _unwrap_optional(tp):
    if get_origin(tp) is Union:
        args = [a for a in get_args(tp) if a is not type(None)]
        return args[0] if args else tp
    return tp


def _coerce(name: str, tp, value):
    """Coerces a raw option (possibly a string from the environment) to the field type."""
    if value is None:
        return None
    tp = _unwrap_optional(tp)
    try:
        if tp is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if tp is int:
            return int(value)
        if tp is float:
            return float(value)
        if tp is str:
            return str(value)
        if get_origin(tp) is tuple:
            item_tp = get_args(tp)[0] if get_args(tp) else str
            if isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            return tuple(_coerce(name, item_tp, v) for v in value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for '{name}': {value!r} ({e})") from e
    return value


def _apply(target, options: Mapping[str, Any]):
    """Applies options onto a dataclass instance in place."""
    hints = get_type_hints(type(target))
    for raw_key, value in options.items():
        key = to_snake(raw_key)
        if key == "overrides":
            continue
        if key in _ALIASES:
            attr, sub = _ALIASES[key]
            if sub is not None:
                sub_target = getattr(target, attr, None)
                if sub_target is None:
                    logger.warning(f"[CONFIG] Ignoring unknown option '{raw_key}'")
                    continue
                _apply(sub_target, {sub: value})
                continue
            key = attr
        if key not in hints:
            logger.warning(f"[CONFIG] Ignoring unknown option '{raw_key}'")
            continue
        current = getattr(target, key)
        if dataclasses.is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"option '{raw_key}' expects a mapping")
            _apply(current, value)
            continue
        setattr(target, key, _coerce(key, hints[key], value))


def merge_config(base: RunConfig, overrides: Optional[Mapping[str, Any]]) -> RunConfig:
    """
    FLOW: Copies base -> Applies the nested `overrides` block -> Applies top-level keys
    (which win over the nested block) -> Validates.
    """
    merged = dataclasses.replace(base, retry=dataclasses.replace(base.retry))
    if overrides:
        nested = overrides.get("overrides") or {}
        if not isinstance(nested, Mapping):
            raise ConfigError("'overrides' must be a mapping")
        _apply(merged, nested)
        _apply(merged, overrides)
    return merged.validate()


def env_options(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collects CRAWL_* variables (e.g. CRAWL_BATCH_SIZE) as snake_case options."""
    environ = os.environ if environ is None else environ
    known = set(get_type_hints(RunConfig)) | set(_ALIASES)
    options = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        if key in known:
            options[key] = value
    return options


def load_config(options: Optional[Mapping[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None) -> RunConfig:
    """Builds the effective RunConfig: defaults -> environment -> overrides -> top-level."""
    config = RunConfig()
    _apply(config, env_options(environ))
    return merge_config(config, options)
