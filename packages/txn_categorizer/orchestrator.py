"""Hybrid orchestrator: Pass-1 first, Pass-2 only when Pass-1 is not confident.

Per transaction the stages are::

    PASS1_RUN → ACCEPT_PASS1 | RUN_PASS2 → RECONCILE → GUARDRAIL → DONE

Reconciliation takes the more confident of the two results (ties keep
Pass-1). When Pass-2 fails the Pass-1 category is kept if there is one;
otherwise the transaction comes back with confidence 0 for manual review.
Domain guardrails run last on every branch that produced a category.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TypeAlias

from .errors import LlmCategorizationError
from .guardrails import apply_domain_guardrails
from .logging_setup import get_logger
from .models import (
    Engine,
    HybridResult,
    HybridStage,
    LlmResult,
    NormalizedTransaction,
    Pass1Result,
    PhaseTimings,
)
from .pass1 import CategorizerContext, categorize_pass1
from .pass2 import categorize_with_llm
from .pmap import p_map_settled

FAILED_RATIONALE = "Categorization failed — manual review required"

_logger = get_logger("txn_categorizer.orchestrator")

LlmCategorizer: TypeAlias = Callable[[NormalizedTransaction, Pass1Result, CategorizerContext], LlmResult]


def _default_llm(tx: NormalizedTransaction, pass1: Pass1Result, ctx: CategorizerContext) -> LlmResult:
    return categorize_with_llm(tx, ctx.taxonomy, pass1, ctx.config, tables=ctx.tables)


def _ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0


def categorize_transaction(
    tx: NormalizedTransaction,
    ctx: CategorizerContext | None = None,
    *,
    llm: LlmCategorizer | None = None,
) -> HybridResult:
    """Run the hybrid pipeline for one transaction.

    Parameters
    ----------
    tx:
        Transaction to categorize.
    ctx:
        Engine context (config, rule tables, taxonomy, optional embeddings).
    llm:
        Pass-2 implementation; defaults to the OpenAI-backed
        :func:`~txn_categorizer.pass2.categorize_with_llm`.

    Returns
    -------
    HybridResult
        Never raises for LLM failures; those become a Pass-1 fallback or a
        zero-confidence result.
    """

    c = ctx or CategorizerContext()
    run_llm = llm or _default_llm
    t_total = time.perf_counter()
    stages: list[HybridStage] = [HybridStage.PASS1_RUN]

    t1 = time.perf_counter()
    p1 = categorize_pass1(tx, c)
    pass1_ms = _ms(t1)
    _logger.info(
        "orchestrator:pass1_done tx_id=%s confidence=%.3f category=%s",
        tx.id,
        p1.confidence,
        p1.category_id,
    )

    category_id = p1.category_id
    confidence = p1.confidence
    rationale = list(p1.rationale)
    engine = Engine.PASS1
    llm_attempted = False
    pass2_ms: float | None = None
    violations = list(p1.violations)
    attributes = None

    if p1.category_id is not None and p1.confidence >= c.config.hybrid_threshold:
        stages.append(HybridStage.ACCEPT_PASS1)
    elif not c.config.enable_llm_fallback:
        stages.append(HybridStage.ACCEPT_PASS1)
        rationale.append("llm: disabled")
    else:
        stages.append(HybridStage.RUN_PASS2)
        llm_attempted = True
        t2 = time.perf_counter()
        llm_result: LlmResult | None = None
        try:
            llm_result = run_llm(tx, p1, c)
        except LlmCategorizationError as e:
            _logger.warning(
                "orchestrator:llm_failed tx_id=%s attempts=%d error=%s",
                tx.id,
                e.attempts,
                e.last_error.__class__.__name__ if e.last_error else "unknown",
            )
        pass2_ms = _ms(t2)
        stages.append(HybridStage.RECONCILE)

        if llm_result is not None:
            if p1.category_id is None or llm_result.confidence > p1.confidence:
                category_id = llm_result.category_id
                confidence = llm_result.confidence
                rationale = list(llm_result.rationale)
                engine = Engine.LLM
                violations = list(llm_result.violations)
                attributes = llm_result.attributes
            else:
                rationale.append(
                    f"reconcile: kept pass1 ({p1.confidence:.3f} >= llm {llm_result.confidence:.3f})"
                )
        elif p1.category_id is not None:
            rationale.append("llm: failed, using pass1 result")
        else:
            stages.append(HybridStage.DONE)
            _logger.warning("orchestrator:failed tx_id=%s", tx.id)
            return HybridResult(
                category_id=None,
                confidence=0.0,
                rationale=(FAILED_RATIONALE,),
                engine=Engine.PASS1,
                llm_attempted=True,
                timings=PhaseTimings(pass1_ms=pass1_ms, pass2_ms=pass2_ms, total_ms=_ms(t_total)),
                stages=tuple(stages),
                pass1=p1,
                violations=tuple(violations),
            )

    if category_id is not None:
        stages.append(HybridStage.GUARDRAIL)
        outcome = apply_domain_guardrails(tx, category_id, confidence, c.taxonomy)
        if outcome.violations:
            violations.extend(outcome.violations)
            for v in outcome.violations:
                rationale.append(f"guardrail: {v.reason}")
        category_id = outcome.category_id
        confidence = outcome.confidence

    stages.append(HybridStage.DONE)
    total_ms = _ms(t_total)
    _logger.info(
        "orchestrator:done tx_id=%s engine=%s category=%s confidence=%.3f total_ms=%.2f",
        tx.id,
        engine,
        category_id,
        confidence,
        total_ms,
    )
    return HybridResult(
        category_id=category_id,
        confidence=confidence,
        rationale=tuple(rationale),
        engine=engine,
        llm_attempted=llm_attempted,
        timings=PhaseTimings(pass1_ms=pass1_ms, pass2_ms=pass2_ms, total_ms=total_ms),
        stages=tuple(stages),
        pass1=p1,
        violations=tuple(violations),
        attributes=attributes,
    )


@dataclass(frozen=True, slots=True)
class BatchItem:
    tx_id: str
    result: HybridResult | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BatchSummary:
    total: int
    pass1_only: int
    llm_used: int
    failed: int
    avg_confidence: float
    total_ms: float


@dataclass(frozen=True, slots=True)
class BatchResult:
    items: tuple[BatchItem, ...]
    summary: BatchSummary


def _summarize(items: Sequence[BatchItem], total_ms: float) -> BatchSummary:
    ok = [i.result for i in items if i.result is not None]
    failed = sum(1 for i in items if i.result is None or i.result.category_id is None)
    confidences = [r.confidence for r in ok]
    return BatchSummary(
        total=len(items),
        pass1_only=sum(1 for r in ok if not r.llm_attempted),
        llm_used=sum(1 for r in ok if r.engine is Engine.LLM),
        failed=failed,
        avg_confidence=(sum(confidences) / len(confidences)) if confidences else 0.0,
        total_ms=total_ms,
    )


def batch_categorize(
    transactions: Iterable[NormalizedTransaction],
    ctx: CategorizerContext | None = None,
    *,
    llm: LlmCategorizer | None = None,
    concurrency: int | None = None,
) -> BatchResult:
    """Categorize many transactions with bounded concurrency.

    Output order matches input order. An unexpected error for one
    transaction is recorded on its item and never affects the others.
    """

    c = ctx or CategorizerContext()
    limit = concurrency if concurrency is not None else c.config.batch_concurrency
    txs = list(transactions)
    t0 = time.perf_counter()
    _logger.info("orchestrator:batch_start count=%d concurrency=%d", len(txs), limit)

    settled = p_map_settled(
        txs, lambda tx: categorize_transaction(tx, c, llm=llm), concurrency=limit
    )
    items: list[BatchItem] = []
    for s in settled:
        if s.ok:
            items.append(BatchItem(tx_id=s.item.id, result=s.value))
        else:
            _logger.error(
                "orchestrator:batch_item_failed tx_id=%s error=%s",
                s.item.id,
                s.error.__class__.__name__,
            )
            items.append(BatchItem(tx_id=s.item.id, result=None, error=str(s.error)))

    summary = _summarize(items, _ms(t0))
    _logger.info(
        "orchestrator:batch_done total=%d pass1_only=%d llm_used=%d failed=%d avg_confidence=%.3f",
        summary.total,
        summary.pass1_only,
        summary.llm_used,
        summary.failed,
        summary.avg_confidence,
    )
    return BatchResult(items=tuple(items), summary=summary)


__all__ = [
    "BatchItem",
    "BatchResult",
    "BatchSummary",
    "FAILED_RATIONALE",
    "LlmCategorizer",
    "batch_categorize",
    "categorize_transaction",
]
