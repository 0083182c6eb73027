"""Value types shared across the categorization engine.

Everything here is immutable: signals, scores and results are produced once
per call and never mutated afterwards. Discriminators (signal type, rule type,
rule source, engine) are closed ``StrEnum`` types so their string values can
be stored in the database and JSON unchanged.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SignalType(StrEnum):
    MCC = "mcc"
    VENDOR = "vendor"
    KEYWORD = "keyword"
    PATTERN = "pattern"
    EMBEDDING = "embedding"


class SignalStrength(StrEnum):
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"
    EXACT = "exact"


class RuleType(StrEnum):
    MCC = "mcc"
    VENDOR = "vendor"
    KEYWORD = "keyword"
    EMBEDDING = "embedding"


class RuleSource(StrEnum):
    SYSTEM = "system"
    LEARNED = "learned"
    MANUAL = "manual"


class Engine(StrEnum):
    PASS1 = "pass1"
    LLM = "llm"


class DecisionSource(StrEnum):
    PASS1 = "pass1"
    LLM = "llm"
    MANUAL = "manual"


class ReviewReason(StrEnum):
    LOW_CONFIDENCE = "low_confidence"
    NO_CONFIDENCE = "no_confidence"


class ViolationType(StrEnum):
    MCC_INCOMPATIBLE = "mcc_incompatible"
    AMOUNT_UNREALISTIC = "amount_unrealistic"
    CONFIDENCE_TOO_LOW = "confidence_too_low"
    CATEGORY_BLACKLISTED = "category_blacklisted"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    REFUND_AS_REVENUE = "refund_as_revenue"
    PROCESSOR_AS_REVENUE = "processor_as_revenue"
    SHIPPING_ROUTING = "shipping_routing"
    SALES_TAX_ROUTING = "sales_tax_routing"
    PAYOUT_ROUTING = "payout_routing"


class GuardrailAction(StrEnum):
    REJECT = "reject"
    FLAG = "flag"
    OVERRIDE = "override"


class HybridStage(StrEnum):
    PASS1_RUN = "pass1_run"
    ACCEPT_PASS1 = "accept_pass1"
    RUN_PASS2 = "run_pass2"
    RECONCILE = "reconcile"
    GUARDRAIL = "guardrail"
    DONE = "done"


# ---------------------------------------------------------------------------
# Input transaction
# ---------------------------------------------------------------------------

_CENTS_RE = re.compile(r"^-?\d+$")


@dataclass(frozen=True, slots=True)
class NormalizedTransaction:
    """A transaction as delivered by ingestion connectors.

    ``amount_cents`` is a decimal string of integer cents (``"-1250"``), never
    a float. Negative values are money leaving the account or refunds,
    depending on the connector; the engine only relies on the sign for refund
    detection.
    """

    id: str
    org_id: str
    date: str
    amount_cents: str
    currency: str = "USD"
    description: str = ""
    merchant_name: str | None = None
    mcc: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount_cents, str) or not _CENTS_RE.match(self.amount_cents.strip()):
            raise ValueError(
                f"amount_cents must be a decimal string of integer cents (got {self.amount_cents!r})"
            )

    @property
    def amount_cents_int(self) -> int:
        return int(self.amount_cents.strip())

    @property
    def search_text(self) -> str:
        """Lower-cased description and merchant joined for pattern checks."""

        return f"{self.description} {self.merchant_name or ''}".lower()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> NormalizedTransaction:
        """Build from a JSON-like mapping; accepts ``snake_case`` or ``camelCase`` keys."""

        def pick(*keys: str) -> Any:
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return None

        amount = pick("amount_cents", "amountCents")
        if isinstance(amount, bool) or not isinstance(amount, (str, int)):
            raise ValueError("amount_cents must be provided as a string (or int) of cents")
        mcc = pick("mcc")
        return cls(
            id=str(pick("id")),
            org_id=str(pick("org_id", "orgId")),
            date=str(pick("date") or ""),
            amount_cents=str(amount),
            currency=str(pick("currency") or "USD"),
            description=str(pick("description") or ""),
            merchant_name=pick("merchant_name", "merchantName"),
            mcc=str(mcc) if mcc is not None else None,
        )


# ---------------------------------------------------------------------------
# Signals and scores
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SignalMetadata:
    source: str
    details: str
    matched_terms: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class Signal:
    """One piece of evidence linking a transaction to a candidate category."""

    type: SignalType
    category_id: str
    category_name: str
    strength: SignalStrength
    confidence: float
    weight: float
    metadata: SignalMetadata


@dataclass(frozen=True, slots=True)
class CategoryScore:
    category_id: str
    category_name: str
    total_score: float
    confidence: float
    signals: tuple[Signal, ...]
    dominant_signal: Signal


@dataclass(frozen=True, slots=True)
class ScoringResult:
    best_category: CategoryScore | None
    all_candidates: tuple[CategoryScore, ...]
    rationale: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class GuardrailViolation:
    type: ViolationType
    reason: str
    suggested_action: GuardrailAction = GuardrailAction.FLAG
    original_category: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    """Engine output for one transaction."""

    category_id: str | None
    confidence: float
    rationale: tuple[str, ...]
    attributes: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class Pass1Result:
    category_id: str | None
    confidence: float
    rationale: tuple[str, ...]
    signals: tuple[Signal, ...]
    violations: tuple[GuardrailViolation, ...] = ()
    guardrails_applied: tuple[str, ...] = ()
    scoring: ScoringResult | None = None

    def as_categorization(self) -> CategorizationResult:
        return CategorizationResult(
            category_id=self.category_id, confidence=self.confidence, rationale=self.rationale
        )


@dataclass(frozen=True, slots=True)
class LlmResult:
    category_id: str
    confidence: float
    raw_confidence: float
    rationale: tuple[str, ...]
    attempts: int
    model: str
    violations: tuple[GuardrailViolation, ...] = ()
    attributes: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class PhaseTimings:
    pass1_ms: float
    total_ms: float
    pass2_ms: float | None = None


@dataclass(frozen=True, slots=True)
class HybridResult:
    """Final orchestrator output with provenance."""

    category_id: str | None
    confidence: float
    rationale: tuple[str, ...]
    engine: Engine
    llm_attempted: bool
    timings: PhaseTimings
    stages: tuple[HybridStage, ...]
    pass1: Pass1Result | None = None
    violations: tuple[GuardrailViolation, ...] = ()
    attributes: Mapping[str, Any] | None = None

    def as_categorization(self) -> CategorizationResult:
        return CategorizationResult(
            category_id=self.category_id,
            confidence=self.confidence,
            rationale=self.rationale,
            attributes=self.attributes,
        )


# ---------------------------------------------------------------------------
# LLM wire model
# ---------------------------------------------------------------------------


class LlmDecision(BaseModel):
    """Validated shape of the JSON object Pass-2 asks the model to return.

    Unknown keys are ignored. ``confidence`` is clamped into ``[0, 1]`` rather
    than rejected because models occasionally answer ``1.02`` or ``-0.1``.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    category_slug: str
    confidence: float = 0.5
    rationale: str = "LLM categorization"
    attributes: dict[str, Any] | None = None

    @field_validator("category_slug")
    @classmethod
    def _slug_non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("category_slug must be non-empty")
        return v.strip().lower()

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        if v is None:
            return 0.5
        fv = float(v)
        if fv != fv:  # NaN
            return 0.5
        return max(0.0, min(1.0, fv))

    @field_validator("rationale", mode="before")
    @classmethod
    def _rationale_text(cls, v: Any) -> str:
        if v is None:
            return "LLM categorization"
        if isinstance(v, list):
            v = "; ".join(str(x) for x in v if str(x).strip())
        s = str(v).strip()
        return s or "LLM categorization"


__all__ = [
    "CategorizationResult",
    "CategoryScore",
    "DecisionSource",
    "Engine",
    "GuardrailAction",
    "GuardrailViolation",
    "HybridResult",
    "HybridStage",
    "LlmDecision",
    "LlmResult",
    "NormalizedTransaction",
    "Pass1Result",
    "PhaseTimings",
    "ReviewReason",
    "RuleSource",
    "RuleType",
    "ScoringResult",
    "Signal",
    "SignalMetadata",
    "SignalStrength",
    "SignalType",
]
