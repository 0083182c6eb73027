"""Decision applier: persist a categorization and its audit row.

A result at or above ``EngineConfig.auto_apply_threshold`` is applied and any
review flag is cleared. Anything below is stored as a tentative category with
``needs_review`` set and an audit reason of ``low_confidence`` (or
``no_confidence`` when there is no category at all). Audit rows are
append-only; rows in ``decisions`` are never updated.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from db.client import session_scope
from db.models.categorizer import Decision, Transaction, utcnow
from sqlalchemy.orm import Session

from .config import EngineConfig
from .errors import TransactionNotFoundError, UnauthorizedTransactionError
from .logging_setup import get_logger
from .models import CategorizationResult, DecisionSource, ReviewReason

_logger = get_logger("txn_categorizer.decisions")


@dataclass(frozen=True, slots=True)
class AppliedDecision:
    tx_id: str
    decision_id: str
    applied: bool
    needs_review: bool
    reason: ReviewReason | None


@dataclass(frozen=True, slots=True)
class DecisionRequest:
    tx_id: str
    result: CategorizationResult
    source: DecisionSource


@dataclass(frozen=True, slots=True)
class FailedDecision:
    tx_id: str
    error: str


@dataclass(frozen=True, slots=True)
class BatchApplyResult:
    successful: int
    failed: tuple[FailedDecision, ...]


def _clamp_unit(x: float) -> float:
    return min(1.0, max(0.0, float(x)))


def decide_and_apply(
    session: Session,
    tx_id: str,
    result: CategorizationResult,
    source: DecisionSource,
    *,
    org_id: str,
    config: EngineConfig | None = None,
    decided_by: str | None = None,
) -> AppliedDecision:
    """Apply ``result`` to transaction ``tx_id`` and append a decision row.

    Parameters
    ----------
    session:
        SQLAlchemy session (callers own the transaction scope).
    tx_id:
        Transaction to update.
    result:
        Category, confidence and rationale to persist.
    source:
        Engine (or human) that produced ``result``.
    org_id:
        Organization of the caller; must own the transaction.

    Raises
    ------
    TransactionNotFoundError
        No transaction with ``tx_id`` exists.
    UnauthorizedTransactionError
        The transaction belongs to another organization. Nothing is written.
    """

    cfg = config or EngineConfig()
    tx = session.get(Transaction, tx_id)
    if tx is None:
        raise TransactionNotFoundError(tx_id)
    if tx.org_id != org_id:
        _logger.warning("decisions:unauthorized tx_id=%s org_id=%s", tx_id, org_id)
        raise UnauthorizedTransactionError(tx_id)

    confidence = _clamp_unit(result.confidence)
    has_category = result.category_id is not None and confidence > 0.0
    applied = has_category and confidence >= cfg.auto_apply_threshold

    reason: ReviewReason | None
    if applied:
        reason = None
    elif has_category:
        reason = ReviewReason.LOW_CONFIDENCE
    else:
        reason = ReviewReason.NO_CONFIDENCE

    if result.category_id is not None:
        tx.category_id = result.category_id
    tx.confidence = confidence
    tx.needs_review = not applied
    tx.updated_at = utcnow()

    decision = Decision(
        tx_id=tx_id,
        org_id=org_id,
        source=str(source),
        category_id=result.category_id,
        confidence=confidence,
        rationale=list(result.rationale),
        reason=str(reason) if reason is not None else None,
        decided_by=decided_by,
    )
    session.add(decision)
    session.flush()

    _logger.info(
        "decisions:applied tx_id=%s source=%s category=%s confidence=%.3f auto_applied=%s reason=%s",
        tx_id,
        source,
        result.category_id,
        confidence,
        applied,
        reason,
    )
    return AppliedDecision(
        tx_id=tx_id,
        decision_id=decision.id,
        applied=applied,
        needs_review=not applied,
        reason=reason,
    )


def batch_decide_and_apply(
    decisions: Sequence[DecisionRequest],
    *,
    org_id: str,
    database_url: str | None = None,
    config: EngineConfig | None = None,
    decided_by: str | None = None,
) -> BatchApplyResult:
    """Apply decisions in order, each in its own database transaction.

    A failing item is rolled back and recorded; later items still run.
    """

    successful = 0
    failed: list[FailedDecision] = []
    for req in decisions:
        try:
            with session_scope(database_url=database_url) as session:
                decide_and_apply(
                    session,
                    req.tx_id,
                    req.result,
                    req.source,
                    org_id=org_id,
                    config=config,
                    decided_by=decided_by,
                )
        except Exception as e:  # noqa: BLE001
            _logger.error(
                "decisions:batch_item_failed tx_id=%s error=%s", req.tx_id, e.__class__.__name__
            )
            failed.append(FailedDecision(tx_id=req.tx_id, error=str(e)))
            continue
        successful += 1

    _logger.info(
        "decisions:batch_done total=%d successful=%d failed=%d",
        len(decisions),
        successful,
        len(failed),
    )
    return BatchApplyResult(successful=successful, failed=tuple(failed))


__all__ = [
    "AppliedDecision",
    "BatchApplyResult",
    "DecisionRequest",
    "FailedDecision",
    "batch_decide_and_apply",
    "decide_and_apply",
]
