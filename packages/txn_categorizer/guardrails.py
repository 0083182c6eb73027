"""Guardrails: deterministic checks applied on top of scorer and LLM output.

Two layers:

- **Generic checks** (:func:`apply_guardrails`) run inside Pass-1 and after
  Pass-2. Each check may *reject* (the category is withdrawn) or *flag* (the
  category stands with a confidence penalty).
- **Domain guardrails** (:func:`apply_domain_guardrails`) run last in the
  orchestrator and *redirect* categories that break accounting invariants:
  refunds and payment processors never land in revenue, sales-tax payments go
  to the liability account, processor payouts go to clearing.

Neither layer raises; firing is logged and surfaces in the rationale.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .config import GuardrailConfig
from .logging_setup import get_logger
from .models import (
    CategoryScore,
    GuardrailAction,
    GuardrailViolation,
    NormalizedTransaction,
    Signal,
    SignalMetadata,
    SignalStrength,
    SignalType,
    ViolationType,
)
from .money import parse_cents
from .rules.keywords import contains_term
from .rules.mcc import is_compatible, normalize_mcc
from .rules.tables import RuleTables
from .taxonomy import Category, Taxonomy

_logger = get_logger("txn_categorizer.guardrails")

_FLAG_PENALTY_FACTOR: float = 0.8
_FLAG_PENALTY_FLOOR: float = 0.1


# ---------------------------------------------------------------------------
# Generic checks
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _AmountLimit:
    category_slug: str
    min_abs_cents: int
    reason: str


_AMOUNT_LIMITS: tuple[_AmountLimit, ...] = (
    _AmountLimit(
        "hair_beauty_services", 100_000, "Hair services transactions above $1000 are likely misclassified"
    ),
    _AmountLimit("business_meals", 50_000, "Business meals above $500 should be reviewed"),
    _AmountLimit("bank_fees", 10_000, "Banking fees above $100 are unusual and should be reviewed"),
)


@dataclass(frozen=True, slots=True)
class _SuspiciousPattern:
    pattern: re.Pattern[str]
    reason: str
    action: GuardrailAction
    expense_only: bool


_SUSPICIOUS_PATTERNS: tuple[_SuspiciousPattern, ...] = (
    _SuspiciousPattern(
        re.compile(r"refund|return|credit|reversal", re.IGNORECASE),
        "Refund/return transactions may need special handling",
        GuardrailAction.FLAG,
        True,
    ),
    _SuspiciousPattern(
        re.compile(r"transfer|deposit|withdrawal", re.IGNORECASE),
        "Bank transfer transactions should not be categorized as business expenses",
        GuardrailAction.REJECT,
        True,
    ),
    _SuspiciousPattern(
        re.compile(r"\b(test|demo|sample)\b", re.IGNORECASE),
        "Test transactions should not be categorized",
        GuardrailAction.FLAG,
        False,
    ),
)


@dataclass(frozen=True, slots=True)
class GuardrailResult:
    allowed: bool
    violations: tuple[GuardrailViolation, ...]
    final_category_id: str | None
    final_confidence: float | None
    guardrails_applied: tuple[str, ...]


def _is_expense(category: Category | None) -> bool:
    # Unknown ids are treated as expenses so checks stay conservative.
    return category is None or category.is_expense


def _check_mcc(
    tx: NormalizedTransaction,
    category_id: str,
    category: Category | None,
    tables: RuleTables,
    config: GuardrailConfig,
) -> GuardrailViolation | None:
    if not config.enforce_mcc_compatibility or normalize_mcc(tx.mcc) is None:
        return None
    if not _is_expense(category):
        return None
    if is_compatible(tables.mcc, tables.mcc_families, tx.mcc, category_id):
        return None
    code = normalize_mcc(tx.mcc)
    mapping = tables.mcc.get(code) if code else None
    mcc_name = mapping.category_name if mapping is not None else "unknown"
    return GuardrailViolation(
        type=ViolationType.MCC_INCOMPATIBLE,
        reason=f"MCC {code} ({mcc_name}) is incompatible with {category_id}",
        suggested_action=GuardrailAction.REJECT,
        original_category=category_id,
        metadata={"mcc": code, "mcc_category": mapping.category_id if mapping else None},
    )


def _check_amount(
    tx: NormalizedTransaction, category_id: str, category: Category | None, config: GuardrailConfig
) -> GuardrailViolation | None:
    if not config.enable_amount_checks or category is None:
        return None
    try:
        cents = abs(parse_cents(tx.amount_cents))
    except ValueError:
        return None
    for limit in _AMOUNT_LIMITS:
        if limit.category_slug == category.slug and cents >= limit.min_abs_cents:
            return GuardrailViolation(
                type=ViolationType.AMOUNT_UNREALISTIC,
                reason=limit.reason,
                suggested_action=GuardrailAction.FLAG,
                original_category=category_id,
                metadata={"amount_cents": cents, "threshold": limit.min_abs_cents},
            )
    return None


def _check_patterns(
    tx: NormalizedTransaction, category_id: str, category: Category | None, config: GuardrailConfig
) -> GuardrailViolation | None:
    if not config.enable_pattern_checks:
        return None
    description = (tx.description or "").lower()
    merchant = (tx.merchant_name or "").lower()
    for sp in _SUSPICIOUS_PATTERNS:
        if sp.expense_only and not _is_expense(category):
            continue
        if sp.pattern.search(description) or sp.pattern.search(merchant):
            return GuardrailViolation(
                type=ViolationType.SUSPICIOUS_PATTERN,
                reason=sp.reason,
                suggested_action=sp.action,
                original_category=category_id,
                metadata={"pattern": sp.pattern.pattern},
            )
    return None


def _check_min_confidence(
    confidence: float, category_id: str, config: GuardrailConfig
) -> GuardrailViolation | None:
    if confidence >= config.min_confidence_threshold:
        return None
    return GuardrailViolation(
        type=ViolationType.CONFIDENCE_TOO_LOW,
        reason=f"Confidence {confidence:.3f} below threshold {config.min_confidence_threshold}",
        suggested_action=GuardrailAction.REJECT,
        original_category=category_id,
        metadata={"confidence": confidence, "threshold": config.min_confidence_threshold},
    )


def apply_guardrails(
    tx: NormalizedTransaction,
    category_id: str,
    confidence: float,
    *,
    tables: RuleTables | None = None,
    taxonomy: Taxonomy | None = None,
    config: GuardrailConfig | None = None,
) -> GuardrailResult:
    """Run the generic checks (MCC, amount, patterns, minimum confidence) in order.

    Any ``reject`` violation, or any violation at all in ``strict_mode``,
    withdraws the category. Otherwise ``flag`` violations scale the confidence
    by 0.8 (floored at 0.1).
    """

    cfg = config or GuardrailConfig()
    tbl = tables or RuleTables.default()
    tax = taxonomy or Taxonomy.default()
    category = tax.get(category_id)

    applied: list[str] = []
    violations: list[GuardrailViolation] = []
    checks = (
        ("MCC compatibility", lambda: _check_mcc(tx, category_id, category, tbl, cfg)),
        ("amount realism", lambda: _check_amount(tx, category_id, category, cfg)),
        ("suspicious patterns", lambda: _check_patterns(tx, category_id, category, cfg)),
        ("minimum confidence", lambda: _check_min_confidence(confidence, category_id, cfg)),
    )
    for name, check in checks:
        applied.append(name)
        v = check()
        if v is not None:
            violations.append(v)

    allowed = True
    final_category: str | None = category_id
    final_confidence: float | None = confidence
    if violations:
        rejected = any(v.suggested_action is GuardrailAction.REJECT for v in violations)
        if cfg.strict_mode or rejected:
            allowed = False
            final_category = None
            final_confidence = None
        elif any(v.suggested_action is GuardrailAction.FLAG for v in violations):
            final_confidence = max(_FLAG_PENALTY_FLOOR, confidence * _FLAG_PENALTY_FACTOR)
            applied.append("confidence penalty")
        _logger.info(
            "guardrails:violations tx_id=%s category=%s allowed=%s types=%s",
            tx.id,
            category_id,
            allowed,
            ",".join(v.type for v in violations),
        )

    return GuardrailResult(
        allowed=allowed,
        violations=tuple(violations),
        final_category_id=final_category,
        final_confidence=final_confidence,
        guardrails_applied=tuple(applied),
    )


def create_uncertain_result(
    violations: Iterable[GuardrailViolation], *, taxonomy: Taxonomy | None = None
) -> CategoryScore:
    """Placeholder score used when guardrails reject every option."""

    tax = taxonomy or Taxonomy.default()
    uncat = tax.by_slug("uncategorized") or tax.neutral_fallback
    types = ", ".join(v.type for v in violations)
    signal = Signal(
        type=SignalType.PATTERN,
        category_id=uncat.id,
        category_name=uncat.name,
        strength=SignalStrength.WEAK,
        confidence=0.05,
        weight=0.1,
        metadata=SignalMetadata(source="guardrails", details=f"Guardrail violations: {types}"),
    )
    return CategoryScore(
        category_id=uncat.id,
        category_name=uncat.name,
        total_score=0.1,
        confidence=0.05,
        signals=(),
        dominant_signal=signal,
    )


@dataclass(frozen=True, slots=True)
class GuardrailStats:
    total_checked: int
    total_violations: int
    violations_by_type: Mapping[ViolationType, int]
    rejection_rate: float
    flag_rate: float


def guardrail_stats(results: Iterable[GuardrailResult]) -> GuardrailStats:
    items = list(results)
    by_type: Counter[ViolationType] = Counter()
    rejected = 0
    flagged = 0
    total = 0
    for r in items:
        total += len(r.violations)
        if not r.allowed:
            rejected += 1
        elif any(v.suggested_action is GuardrailAction.FLAG for v in r.violations):
            flagged += 1
        by_type.update(v.type for v in r.violations)
    n = len(items)
    return GuardrailStats(
        total_checked=n,
        total_violations=total,
        violations_by_type={t: by_type.get(t, 0) for t in ViolationType},
        rejection_rate=rejected / n if n else 0.0,
        flag_rate=flagged / n if n else 0.0,
    )


# ---------------------------------------------------------------------------
# Domain guardrails
# ---------------------------------------------------------------------------

_REFUND_KEYWORDS: tuple[str, ...] = (
    "refund", "return", "chargeback", "reversal", "void",
    "cancelled", "dispute", "adjustment", "credit",
)
_PAYMENT_PROCESSORS: tuple[str, ...] = (
    "stripe", "paypal", "square", "shopify payments", "shop pay",
    "afterpay", "affirm", "klarna", "sezzle", "adyen", "braintree",
)
_OUTBOUND_CARRIERS: tuple[str, ...] = ("usps", "ups", "fedex", "dhl", "postal service")
_INBOUND_FREIGHT: tuple[str, ...] = ("freight from", "inbound freight", "supplier shipping", "wholesale freight")
_SHIPPING_PLATFORMS: tuple[str, ...] = ("shipstation", "shippo", "easypost", "pirate ship")
_SALES_TAX_KEYWORDS: tuple[str, ...] = (
    "sales tax", "state tax", "local tax", "use tax", "revenue department",
    "tax authority", "comptroller", "department of revenue", "tax commission",
)
_TAX_AUTHORITIES: tuple[str, ...] = (
    "state of", "city of", "county of", "department of revenue", "tax collector", "revenue service",
)
_PAYOUT_KEYWORDS: tuple[str, ...] = ("payout", "transfer", "deposit", "settlement", "disbursement")
_PAYOUT_PROCESSORS: tuple[str, ...] = ("shopify", "stripe", "paypal", "square", "amazon payments")


@dataclass(frozen=True, slots=True)
class GuardrailOutcome:
    category_id: str
    confidence: float
    violations: tuple[GuardrailViolation, ...] = ()
    applied: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.applied)


@dataclass(slots=True)
class _Redirect:
    slug: str
    violation: ViolationType
    reason: str
    penalty: float
    name: str


@dataclass(slots=True)
class _State:
    slug: str
    confidence: float
    violations: list[GuardrailViolation] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)


def _any_term(text: str, terms: Iterable[str]) -> bool:
    return any(contains_term(text, t) for t in terms)


def _revenue_check(tx: NormalizedTransaction, category: Category | None) -> _Redirect | None:
    if category is None or not category.is_revenue:
        return None
    text = tx.search_text
    if _any_term(text, _REFUND_KEYWORDS) or tx.amount_cents_int < 0:
        return _Redirect(
            "refunds_contra",
            ViolationType.REFUND_AS_REVENUE,
            "Refund/return cannot map to positive revenue",
            0.4,
            "revenue_block",
        )
    if _any_term(text, _PAYMENT_PROCESSORS):
        return _Redirect(
            "payment_processing_fees",
            ViolationType.PROCESSOR_AS_REVENUE,
            "Payment processor cannot map to revenue",
            0.3,
            "revenue_block",
        )
    return None


def _shipping_check(tx: NormalizedTransaction, category: Category | None) -> _Redirect | None:
    # Only expense categories are rerouted; shipping income stays revenue.
    if category is None or not category.is_expense:
        return None
    text = tx.search_text
    if _any_term(text, _SHIPPING_PLATFORMS):
        if category.slug != "operations_logistics":
            return _Redirect(
                "operations_logistics",
                ViolationType.SHIPPING_ROUTING,
                "Shipping software should map to operations_logistics (OpEx)",
                0.2,
                "shipping_direction_redirect",
            )
        return None
    if _any_term(text, _INBOUND_FREIGHT):
        if category.slug != "supplier_purchases":
            return _Redirect(
                "supplier_purchases",
                ViolationType.SHIPPING_ROUTING,
                "Inbound freight should map to supplier_purchases (COGS)",
                0.2,
                "shipping_direction_redirect",
            )
        return None
    if _any_term(text, _OUTBOUND_CARRIERS) and category.slug not in {"shipping_postage", "operations_logistics"}:
        return _Redirect(
            "shipping_postage",
            ViolationType.SHIPPING_ROUTING,
            "Outbound shipping should map to shipping_postage (COGS)",
            0.2,
            "shipping_direction_redirect",
        )
    return None


def _sales_tax_check(tx: NormalizedTransaction, category: Category | None) -> _Redirect | None:
    if category is not None and category.slug == "sales_tax_payable":
        return None
    text = tx.search_text
    merchant = (tx.merchant_name or "").lower()
    if _any_term(text, _SALES_TAX_KEYWORDS) or _any_term(merchant, _TAX_AUTHORITIES):
        return _Redirect(
            "sales_tax_payable",
            ViolationType.SALES_TAX_ROUTING,
            "Sales tax payment should map to liability account",
            0.2,
            "sales_tax_redirect",
        )
    return None


def _payout_check(tx: NormalizedTransaction, category: Category | None) -> _Redirect | None:
    if category is not None and category.slug == "payouts_clearing":
        return None
    description = (tx.description or "").lower()
    merchant = (tx.merchant_name or "").lower()
    if _any_term(merchant, _PAYOUT_PROCESSORS) and _any_term(description, _PAYOUT_KEYWORDS):
        return _Redirect(
            "payouts_clearing",
            ViolationType.PAYOUT_ROUTING,
            "Payment processor payouts should map to clearing account",
            0.1,
            "payout_redirect",
        )
    return None


_DOMAIN_CHECKS = (_revenue_check, _shipping_check, _sales_tax_check, _payout_check)


def apply_domain_guardrails(
    tx: NormalizedTransaction,
    category_id: str,
    confidence: float,
    taxonomy: Taxonomy | None = None,
) -> GuardrailOutcome:
    """Redirect categories that violate accounting invariants.

    Checks run in a fixed order (revenue, shipping direction, sales tax,
    payouts), each seeing the category produced by the previous one. A
    redirect whose target slug is missing from ``taxonomy`` still records the
    violation but keeps the category. Confidence penalties accumulate and the
    result is clamped to ``[0, 1]``.
    """

    tax = taxonomy or Taxonomy.default()
    current = tax.get(category_id)
    cat_id = category_id
    conf = confidence if confidence == confidence else 0.0
    violations: list[GuardrailViolation] = []
    applied: list[str] = []

    for check in _DOMAIN_CHECKS:
        redirect = check(tx, current)
        if redirect is None:
            continue
        violations.append(
            GuardrailViolation(
                type=redirect.violation,
                reason=redirect.reason,
                suggested_action=GuardrailAction.OVERRIDE,
                original_category=cat_id,
                metadata={"suggested_slug": redirect.slug, "penalty": redirect.penalty},
            )
        )
        target = tax.by_slug(redirect.slug)
        if target is not None:
            cat_id = target.id
            current = target
            applied.append(redirect.name)
        conf = max(0.0, conf - redirect.penalty)
        _logger.info(
            "guardrails:domain_redirect tx_id=%s rule=%s to=%s penalty=%.2f",
            tx.id,
            redirect.name,
            redirect.slug,
            redirect.penalty,
        )

    return GuardrailOutcome(
        category_id=cat_id,
        confidence=max(0.0, min(1.0, conf)),
        violations=tuple(violations),
        applied=tuple(applied),
    )


__all__ = [
    "GuardrailOutcome",
    "GuardrailResult",
    "GuardrailStats",
    "apply_domain_guardrails",
    "apply_guardrails",
    "create_uncertain_result",
    "guardrail_stats",
]
