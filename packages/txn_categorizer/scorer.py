"""Multi-signal scorer.

Signals are grouped per category; each group gets a weighted-mean score and a
blended confidence that rewards corroboration (several signals, several
independent signal types). Candidates under the minimum thresholds are
dropped, the rest ranked by score, and a human-readable rationale trail is
produced for the winner.
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from .config import ScoringConstants
from .models import CategoryScore, ScoringResult, Signal, SignalType
from .money import parse_cents
from .taxonomy import Taxonomy

NO_SIGNALS_RATIONALE = "No categorization signals found"
NO_CANDIDATE_RATIONALE = "No category met minimum scoring thresholds"

_MAX_SUPPORTING = 2


def compound_bonus(types: set[SignalType], constants: ScoringConstants) -> float:
    """Bonus for independent evidence sources agreeing on one category.

    Only the strongest matching pair counts; three or more distinct types add
    a further flat bonus.
    """

    bonus = 0.0
    if {SignalType.MCC, SignalType.VENDOR} <= types:
        bonus = constants.bonus_mcc_vendor
    elif {SignalType.VENDOR, SignalType.KEYWORD} <= types:
        bonus = constants.bonus_vendor_keyword
    elif {SignalType.MCC, SignalType.KEYWORD} <= types:
        bonus = constants.bonus_mcc_keyword
    if len(types) >= 3:
        bonus += constants.bonus_three_types
    return bonus


def score_category(signals: Sequence[Signal], constants: ScoringConstants) -> CategoryScore:
    """Aggregate signals that share one ``category_id``."""

    if not signals:
        raise ValueError("score_category requires at least one signal")

    total_weight = sum(s.weight for s in signals)
    weighted = sum(s.confidence * s.weight for s in signals)
    normalized = weighted / total_weight if total_weight > 0 else 0.0
    dominant = max(signals, key=lambda s: s.confidence)

    count_bonus = min(constants.signal_count_cap, (len(signals) - 1) * constants.signal_count_step)
    bonus = compound_bonus({s.type for s in signals}, constants)
    confidence = min(
        constants.max_signal_confidence,
        dominant.confidence * constants.blend_max_share
        + normalized * constants.blend_mean_share
        + count_bonus
        + bonus,
    )
    return CategoryScore(
        category_id=signals[0].category_id,
        category_name=signals[0].category_name,
        total_score=normalized,
        confidence=confidence,
        signals=tuple(signals),
        dominant_signal=dominant,
    )


def _signal_line(prefix: str, s: Signal) -> str:
    return f"{prefix}: {s.metadata.source} → {s.metadata.details}"


def _build_rationale(ranked: Sequence[CategoryScore], constants: ScoringConstants) -> list[str]:
    best = ranked[0]
    lines = [
        f"best: {best.category_name} (confidence: {best.confidence:.3f})",
        _signal_line("dominant", best.dominant_signal),
    ]
    supporting = [s for s in best.signals if s is not best.dominant_signal]
    supporting.sort(key=lambda s: s.confidence, reverse=True)
    for s in supporting[:_MAX_SUPPORTING]:
        lines.append(_signal_line("supporting", s))
    if len(ranked) > 1:
        gap = best.total_score - ranked[1].total_score
        if gap < constants.competing_gap:
            lines.append(f"competing: {ranked[1].category_name} (score diff: {gap:.3f})")
    return lines


def score_signals(
    signals: Iterable[Signal], constants: ScoringConstants | None = None
) -> ScoringResult:
    """Group, score, filter and rank signals into a :class:`ScoringResult`."""

    c = constants or ScoringConstants()
    items = list(signals)
    if not items:
        return ScoringResult(best_category=None, all_candidates=(), rationale=(NO_SIGNALS_RATIONALE,))

    groups: dict[str, list[Signal]] = {}
    for s in items:
        groups.setdefault(s.category_id, []).append(s)

    scored = [score_category(group, c) for group in groups.values()]
    candidates = [
        cs for cs in scored if cs.total_score >= c.min_total_score and cs.confidence >= c.min_confidence
    ]
    # Stable sort keeps first-seen order for exact ties.
    candidates.sort(key=lambda cs: cs.total_score, reverse=True)

    if not candidates:
        return ScoringResult(
            best_category=None,
            all_candidates=(),
            rationale=(
                NO_CANDIDATE_RATIONALE,
                f"signals processed: {len(items)}, categories considered: {len(groups)}",
            ),
        )

    return ScoringResult(
        best_category=candidates[0],
        all_candidates=tuple(candidates),
        rationale=tuple(_build_rationale(candidates, c)),
    )


# ---- Amount heuristics -------------------------------------------------------

_SAAS_PRICE_POINTS: tuple[int, ...] = (9, 19, 29, 39, 49, 59, 79, 99, 149, 199, 299)


@dataclass(frozen=True, slots=True)
class AmountHeuristic:
    modifier: float
    reason: str


_NEUTRAL = AmountHeuristic(0.0, "Amount within expected range")


def amount_heuristic(amount_cents: int, category_slug: str) -> AmountHeuristic:
    """Small confidence nudge when an amount is typical or atypical for a category."""

    cents = abs(amount_cents)
    dollars = cents / 100

    if category_slug == "payment_processing_fees":
        if dollars < 1:
            return AmountHeuristic(0.15, "Very small amount typical of processing fees")
        if dollars < 10:
            return AmountHeuristic(0.10, "Small amount consistent with processing fees")
        if dollars > 100:
            return AmountHeuristic(-0.10, "Large amount unusual for processing fees")
    elif category_slug == "refunds_contra":
        if amount_cents < 0:
            return AmountHeuristic(0.15, "Negative amount strongly indicates refund")
        if dollars > 1000:
            return AmountHeuristic(-0.08, "Large positive amount less typical for refund processing")
    elif category_slug == "payouts_clearing":
        if dollars > 1000:
            return AmountHeuristic(0.12, "Large amount typical of payout/settlement")
        if dollars < 100:
            return AmountHeuristic(-0.10, "Small amount unusual for payouts")
    elif category_slug == "supplier_purchases":
        if dollars > 500:
            return AmountHeuristic(0.08, "Large amount consistent with wholesale/supplier purchase")
        if dollars < 50:
            return AmountHeuristic(-0.08, "Small amount less typical for supplier purchases")
    elif category_slug == "shipping_postage":
        if 5 <= dollars <= 200:
            return AmountHeuristic(0.08, "Amount typical for shipping costs")
        if dollars > 500:
            return AmountHeuristic(-0.10, "Large amount unusual for individual shipping")
    elif category_slug == "marketing_ads":
        if cents >= 10_000 and cents % 10_000 == 0:
            return AmountHeuristic(0.05, "Round amount typical of ad spend budgets")
    elif category_slug == "software_subscriptions":
        if any(abs(cents - p * 100) < 50 for p in _SAAS_PRICE_POINTS):
            return AmountHeuristic(0.10, "Amount matches common SaaS pricing tiers")
    elif category_slug == "labor_payroll":
        if cents > 50_000 and cents % 5_000 == 0:
            return AmountHeuristic(0.08, "Large round amount typical of payroll")
    elif category_slug == "sales_tax_payable":
        if dollars > 100:
            return AmountHeuristic(0.08, "Substantial amount typical of tax payments")
    return _NEUTRAL


def apply_amount_heuristics(
    result: ScoringResult,
    amount_cents: str | int,
    *,
    taxonomy: Taxonomy | None = None,
    constants: ScoringConstants | None = None,
) -> ScoringResult:
    """Adjust the best candidate's confidence by :func:`amount_heuristic`.

    Returns ``result`` unchanged when there is no best category, the amount
    does not parse, or the heuristic is neutral.
    """

    best = result.best_category
    if best is None:
        return result
    try:
        cents = parse_cents(amount_cents)
    except ValueError:
        return result
    tax = taxonomy or Taxonomy.default()
    cat = tax.get(best.category_id)
    if cat is None:
        return result
    h = amount_heuristic(cents, cat.slug)
    if h.modifier == 0.0:
        return result

    c = constants or ScoringConstants()
    adjusted = min(c.max_signal_confidence, max(0.0, best.confidence + h.modifier))
    new_best = replace(best, confidence=adjusted)
    candidates = (new_best, *result.all_candidates[1:])
    rationale = list(result.rationale)
    if rationale and rationale[0].startswith("best: "):
        rationale[0] = f"best: {new_best.category_name} (confidence: {adjusted:.3f})"
    rationale.append(f"amount: {h.reason} ({h.modifier:+.2f})")
    return ScoringResult(best_category=new_best, all_candidates=candidates, rationale=tuple(rationale))


# ---- Distribution statistics -------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConfidenceDistribution:
    count: int
    mean: float
    median: float
    std: float
    min: float
    max: float
    bins: tuple[int, ...]


def confidence_distribution(values: Iterable[float], *, bins: int = 10) -> ConfidenceDistribution:
    """Summary statistics and a fixed-width histogram over ``[0, 1]``."""

    xs = [float(v) for v in values if not math.isnan(float(v))]
    counts = [0] * bins
    if not xs:
        return ConfidenceDistribution(0, 0.0, 0.0, 0.0, 0.0, 0.0, tuple(counts))
    for x in xs:
        idx = min(bins - 1, max(0, int(x * bins)))
        counts[idx] += 1
    return ConfidenceDistribution(
        count=len(xs),
        mean=statistics.fmean(xs),
        median=statistics.median(xs),
        std=statistics.pstdev(xs),
        min=min(xs),
        max=max(xs),
        bins=tuple(counts),
    )


__all__ = [
    "AmountHeuristic",
    "ConfidenceDistribution",
    "NO_CANDIDATE_RATIONALE",
    "NO_SIGNALS_RATIONALE",
    "amount_heuristic",
    "apply_amount_heuristics",
    "compound_bonus",
    "confidence_distribution",
    "score_category",
    "score_signals",
]
