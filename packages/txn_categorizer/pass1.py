"""Pass-1: deterministic rule-based categorization.

Pipeline: extract signals → score → amount heuristics → generic guardrails →
calibrate. Pure and synchronous; everything it reads comes from the injected
:class:`CategorizerContext`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .calibration import calibrate_confidence
from .config import EngineConfig
from .embeddings import EmbeddingIndex
from .guardrails import apply_guardrails
from .logging_setup import get_logger
from .models import NormalizedTransaction, Pass1Result
from .rules.tables import RuleTables
from .scorer import apply_amount_heuristics, score_signals
from .signals import SignalContext, extract_signals
from .taxonomy import Taxonomy

_logger = get_logger("txn_categorizer.pass1")


@dataclass(frozen=True, slots=True)
class CategorizerContext:
    """Read-only collaborators for one engine instance."""

    config: EngineConfig = field(default_factory=EngineConfig)
    tables: RuleTables = field(default_factory=RuleTables.default)
    taxonomy: Taxonomy = field(default_factory=Taxonomy.default)
    embedding_index: EmbeddingIndex | None = None

    @property
    def signal_context(self) -> SignalContext:
        return SignalContext(
            tables=self.tables,
            constants=self.config.scoring,
            embedding_index=self.embedding_index,
        )


def categorize_pass1(tx: NormalizedTransaction, ctx: CategorizerContext | None = None) -> Pass1Result:
    """Categorize ``tx`` from rule tables alone.

    Parameters
    ----------
    tx:
        Transaction to categorize.
    ctx:
        Engine context; defaults to the shipped tables and taxonomy.

    Returns
    -------
    Pass1Result
        ``category_id`` is ``None`` when no candidate survives scoring or the
        guardrails reject the best one. ``confidence`` is calibrated.
    """

    c = ctx or CategorizerContext()
    t0 = time.perf_counter()

    signals = extract_signals(tx, c.signal_context)
    scoring = score_signals(signals, c.config.scoring)
    scoring = apply_amount_heuristics(
        scoring, tx.amount_cents, taxonomy=c.taxonomy, constants=c.config.scoring
    )
    rationale = list(scoring.rationale)
    best = scoring.best_category

    if best is None:
        confidence = calibrate_confidence(0.0, len(signals), c.config.calibration)
        _logger.info(
            "pass1:no_candidate tx_id=%s signals=%d latency_ms=%.2f",
            tx.id,
            len(signals),
            (time.perf_counter() - t0) * 1000.0,
        )
        return Pass1Result(
            category_id=None,
            confidence=confidence,
            rationale=tuple(rationale),
            signals=tuple(signals),
            scoring=scoring,
        )

    gr = apply_guardrails(
        tx,
        best.category_id,
        best.confidence,
        tables=c.tables,
        taxonomy=c.taxonomy,
        config=c.config.guardrails,
    )
    if not gr.allowed:
        rationale.append("guardrails_rejected: " + "; ".join(v.reason for v in gr.violations))
        _logger.info(
            "pass1:guardrails_rejected tx_id=%s category=%s violations=%d",
            tx.id,
            best.category_id,
            len(gr.violations),
        )
        return Pass1Result(
            category_id=None,
            confidence=calibrate_confidence(0.0, len(signals), c.config.calibration),
            rationale=tuple(rationale),
            signals=tuple(signals),
            violations=gr.violations,
            guardrails_applied=gr.guardrails_applied,
            scoring=scoring,
        )

    raw = gr.final_confidence if gr.final_confidence is not None else best.confidence
    confidence = calibrate_confidence(raw, len(signals), c.config.calibration)
    if gr.violations:
        rationale.append("guardrails: " + "; ".join(v.reason for v in gr.violations))

    _logger.info(
        "pass1:done tx_id=%s category=%s confidence=%.3f signals=%d latency_ms=%.2f",
        tx.id,
        best.category_id,
        confidence,
        len(signals),
        (time.perf_counter() - t0) * 1000.0,
    )
    return Pass1Result(
        category_id=best.category_id,
        confidence=confidence,
        rationale=tuple(rationale),
        signals=tuple(signals),
        violations=gr.violations,
        guardrails_applied=gr.guardrails_applied,
        scoring=scoring,
    )


__all__ = ["CategorizerContext", "categorize_pass1"]
