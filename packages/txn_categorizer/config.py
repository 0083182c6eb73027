"""Engine configuration.

Every tunable the engine uses lives on one immutable :class:`EngineConfig`
(with nested constant groups). Values are validated once in ``__post_init__``
and never mutated; callers derive variants with ``dataclasses.replace``.

The scoring bonuses, sigmoid centre and LLM temperature are empirically tuned
numbers. They are kept as named, overridable fields so they can be recalibrated
against labelled data without touching the algorithms.
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields

from .errors import ConfigError
from .models import SignalStrength, SignalType

_ENV_PREFIX = "TXN_CATEGORIZER_"


def _check_unit(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ConfigError(f"{name} must be a number")
    if not 0.0 <= float(value) <= 1.0:
        raise ConfigError(f"{name} must be between 0 and 1 (got {value})")


def _check_positive(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value > 0:
        raise ConfigError(f"{name} must be a positive number (got {value})")


@dataclass(frozen=True, slots=True)
class ScoringConstants:
    """Weights, strength modifiers, bonuses and thresholds used by the scorer."""

    weight_mcc: float = 4.5
    weight_vendor: float = 4.0
    weight_keyword: float = 2.5
    weight_pattern: float = 1.5
    weight_embedding: float = 1.0

    modifier_exact: float = 1.0
    modifier_strong: float = 0.9
    modifier_medium: float = 0.75
    modifier_weak: float = 0.6

    max_signal_confidence: float = 0.98

    bonus_mcc_vendor: float = 0.12
    bonus_vendor_keyword: float = 0.10
    bonus_mcc_keyword: float = 0.08
    bonus_three_types: float = 0.05

    signal_count_step: float = 0.05
    signal_count_cap: float = 0.15

    blend_max_share: float = 0.7
    blend_mean_share: float = 0.3

    min_total_score: float = 0.5
    min_confidence: float = 0.1
    competing_gap: float = 0.2

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name.startswith("weight_"):
                _check_positive(f.name, value)
            else:
                _check_unit(f.name, value)
        if not (
            self.modifier_exact >= self.modifier_strong >= self.modifier_medium >= self.modifier_weak
        ):
            raise ConfigError("strength modifiers must satisfy exact >= strong >= medium >= weak")
        if not math.isclose(self.blend_max_share + self.blend_mean_share, 1.0):
            raise ConfigError("blend_max_share + blend_mean_share must equal 1")

    def weight_for(self, signal_type: SignalType) -> float:
        return {
            SignalType.MCC: self.weight_mcc,
            SignalType.VENDOR: self.weight_vendor,
            SignalType.KEYWORD: self.weight_keyword,
            SignalType.PATTERN: self.weight_pattern,
            SignalType.EMBEDDING: self.weight_embedding,
        }[signal_type]

    def modifier_for(self, strength: SignalStrength) -> float:
        return {
            SignalStrength.EXACT: self.modifier_exact,
            SignalStrength.STRONG: self.modifier_strong,
            SignalStrength.MEDIUM: self.modifier_medium,
            SignalStrength.WEAK: self.modifier_weak,
        }[strength]


@dataclass(frozen=True, slots=True)
class CalibrationConstants:
    """Constants for the two calibration transforms."""

    floor: float = 0.05
    ceiling: float = 0.98
    high_zone: float = 0.90
    high_zone_bonus_rate: float = 0.02
    high_zone_bonus_cap: float = 0.03
    sigmoid_center: float = 0.45
    sigmoid_slope: float = 6.0
    sigmoid_floor: float = 0.1
    sigmoid_span: float = 0.75
    count_bonus_rate: float = 0.05
    count_bonus_cap: float = 0.1

    llm_temperature: float = 2.5
    llm_beta_blend: float = 0.3
    llm_beta_scale: float = 6.0
    llm_strong_pass1_bonus: float = 0.08
    llm_floor: float = 0.25
    llm_ceiling: float = 0.95
    llm_epsilon: float = 1e-10

    def __post_init__(self) -> None:
        _check_positive("sigmoid_slope", self.sigmoid_slope)
        _check_positive("llm_temperature", self.llm_temperature)
        _check_positive("llm_beta_scale", self.llm_beta_scale)
        _check_positive("llm_epsilon", self.llm_epsilon)
        for name in (
            "floor",
            "ceiling",
            "high_zone",
            "sigmoid_center",
            "sigmoid_floor",
            "sigmoid_span",
            "llm_beta_blend",
            "llm_strong_pass1_bonus",
            "llm_floor",
            "llm_ceiling",
        ):
            _check_unit(name, getattr(self, name))
        if self.floor > self.ceiling:
            raise ConfigError("calibration floor must not exceed ceiling")
        if self.llm_floor > self.llm_ceiling:
            raise ConfigError("llm_floor must not exceed llm_ceiling")


@dataclass(frozen=True, slots=True)
class GuardrailConfig:
    """Switches for the generic guardrail checks run inside Pass-1 and after Pass-2."""

    enforce_mcc_compatibility: bool = True
    min_confidence_threshold: float = 0.60
    enable_amount_checks: bool = True
    enable_pattern_checks: bool = True
    strict_mode: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_confidence_threshold <= 1.0:
            raise ConfigError("minConfidenceThreshold must be between 0 and 1")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry schedule for Pass-2 calls.

    ``max_retries`` counts retries after the first attempt, so the call runs
    at most ``max_retries + 1`` times. The wait before retry ``n`` (1-based) is
    ``backoff_base_sec * 2 ** (n - 1)``.
    """

    max_retries: int = 1
    backoff_base_sec: float = 1.0
    timeout_sec: float = 5.0

    def __post_init__(self) -> None:
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int):
            raise ConfigError("max_retries must be an integer")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.backoff_base_sec < 0:
            raise ConfigError("backoff_base_sec must be >= 0")
        _check_positive("timeout_sec", self.timeout_sec)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, retry_no: int) -> float:
        return self.backoff_base_sec * (2 ** (retry_no - 1))


@dataclass(frozen=True, slots=True)
class CanaryTestConfig:
    test_set_size: int = 100
    accuracy_threshold: float = 0.8
    precision_threshold: float = 0.75
    min_sample_size: int = 20
    holdout_min_age_days: int = 7

    def __post_init__(self) -> None:
        if self.test_set_size < 1:
            raise ConfigError("test_set_size must be >= 1")
        if self.min_sample_size < 1:
            raise ConfigError("min_sample_size must be >= 1")
        if self.holdout_min_age_days < 0:
            raise ConfigError("holdout_min_age_days must be >= 0")
        _check_unit("accuracy_threshold", self.accuracy_threshold)
        _check_unit("precision_threshold", self.precision_threshold)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Top-level configuration for one engine instance."""

    hybrid_threshold: float = 0.85
    auto_apply_threshold: float = 0.85
    enable_llm_fallback: bool = True
    enable_post_llm_guardrails: bool = True
    strong_pass1_signal_threshold: float = 0.80
    llm_model: str = "gpt-5-mini"
    batch_concurrency: int = 4
    oscillation_threshold: int = 3
    oscillation_lookback_days: int = 30

    scoring: ScoringConstants = field(default_factory=ScoringConstants)
    calibration: CalibrationConstants = field(default_factory=CalibrationConstants)
    guardrails: GuardrailConfig = field(default_factory=GuardrailConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    canary: CanaryTestConfig = field(default_factory=CanaryTestConfig)

    def __post_init__(self) -> None:
        _check_unit("hybrid_threshold", self.hybrid_threshold)
        _check_unit("auto_apply_threshold", self.auto_apply_threshold)
        _check_unit("strong_pass1_signal_threshold", self.strong_pass1_signal_threshold)
        if not self.llm_model.strip():
            raise ConfigError("llm_model must be non-empty")
        if (
            isinstance(self.batch_concurrency, bool)
            or not isinstance(self.batch_concurrency, int)
            or not 1 <= self.batch_concurrency <= 32
        ):
            raise ConfigError("batch_concurrency must be an integer between 1 and 32")
        if self.oscillation_threshold < 2:
            raise ConfigError("oscillation_threshold must be >= 2")
        if self.oscillation_lookback_days < 1:
            raise ConfigError("oscillation_lookback_days must be >= 1")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> EngineConfig:
        """Build a config from ``TXN_CATEGORIZER_*`` variables over the defaults.

        Recognised keys: ``HYBRID_THRESHOLD``, ``AUTO_APPLY_THRESHOLD``,
        ``ENABLE_LLM`` (``0``/``1``), ``LLM_MODEL``, ``LLM_TIMEOUT_SEC``,
        ``LLM_MAX_RETRIES``, ``BATCH_CONCURRENCY``.
        """

        src = os.environ if env is None else env

        def _get(key: str) -> str | None:
            raw = src.get(_ENV_PREFIX + key)
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        def _num(key: str, conv: type[int] | type[float]) -> int | float | None:
            raw = _get(key)
            if raw is None:
                return None
            try:
                return conv(raw)
            except ValueError as e:
                raise ConfigError(f"{_ENV_PREFIX}{key} is not a valid {conv.__name__}: {raw!r}") from e

        kwargs: dict[str, object] = {}
        for key, attr, conv in (
            ("HYBRID_THRESHOLD", "hybrid_threshold", float),
            ("AUTO_APPLY_THRESHOLD", "auto_apply_threshold", float),
            ("BATCH_CONCURRENCY", "batch_concurrency", int),
        ):
            val = _num(key, conv)
            if val is not None:
                kwargs[attr] = val

        enable = _get("ENABLE_LLM")
        if enable is not None:
            kwargs["enable_llm_fallback"] = enable.lower() in {"1", "true", "yes", "on"}
        model = _get("LLM_MODEL")
        if model is not None:
            kwargs["llm_model"] = model

        retry_kwargs: dict[str, object] = {}
        timeout = _num("LLM_TIMEOUT_SEC", float)
        if timeout is not None:
            retry_kwargs["timeout_sec"] = timeout
        retries = _num("LLM_MAX_RETRIES", int)
        if retries is not None:
            retry_kwargs["max_retries"] = retries
        if retry_kwargs:
            kwargs["retry"] = RetryPolicy(**retry_kwargs)  # type: ignore[arg-type]

        return cls(**kwargs)  # type: ignore[arg-type]


__all__ = [
    "CalibrationConstants",
    "CanaryTestConfig",
    "EngineConfig",
    "GuardrailConfig",
    "RetryPolicy",
    "ScoringConstants",
]
