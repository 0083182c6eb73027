"""Rule learning loop: versioning, canary tests, promotion and oscillation tracking.

Lifecycle
---------
``create_rule_version`` → ``run_canary_test`` → ``promote_rule_version``
(or ``rollback_rule_version``). Learned and system versions start inactive and
only become active through a passing canary run; manual versions are active
from creation.

Operations that change which version is active for a key
``(org_id, rule_type, rule_identifier)`` own their database transaction and
are serialized twice: an in-process lock per key, and ``SELECT ... FOR UPDATE``
on the key's rows. A partial unique index on active rows is the last line.

Corrections feed the oscillation tracker: from the second category change of a
transaction onward an unresolved ``category_oscillations`` row records the
sequence of categories. Resolution is a conditional update, so exactly one
resolver wins.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, TypeAlias

from db.client import session_scope
from db.models.categorizer import (
    CanaryTestResult,
    CategoryOscillation,
    Correction,
    RuleEffectiveness,
    RuleVersion,
    Transaction,
    utcnow,
)
from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from .config import CanaryTestConfig
from .errors import (
    CanaryNotPassedError,
    CanaryTestError,
    RuleVersionNotFoundError,
    TransactionNotFoundError,
    UnauthorizedTransactionError,
)
from .logging_setup import get_logger
from .models import RuleSource, RuleType
from .rules.tables import ActiveRule, RuleTables
from .taxonomy import Taxonomy

_logger = get_logger("txn_categorizer.learning")

DEFAULT_OSCILLATION_THRESHOLD = 3
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_DRIFT_THRESHOLD_PCT = 10.0

# ---------------------------
# Per-key serialization
# ---------------------------

RuleKey: TypeAlias = tuple[str, str, str]

_KEY_LOCKS: dict[RuleKey, threading.Lock] = {}
_KEY_LOCKS_GUARD = threading.Lock()


def _key_lock(key: RuleKey) -> threading.Lock:
    with _KEY_LOCKS_GUARD:
        lock = _KEY_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _KEY_LOCKS[key] = lock
        return lock


def _lock_key_rows(session: Session, key: RuleKey) -> list[RuleVersion]:
    org_id, rule_type, identifier = key
    stmt = (
        select(RuleVersion)
        .where(
            RuleVersion.org_id == org_id,
            RuleVersion.rule_type == rule_type,
            RuleVersion.rule_identifier == identifier,
        )
        .order_by(RuleVersion.version.desc())
        .with_for_update()
    )
    return list(session.scalars(stmt).all())


def _as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if dt is None:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


# ---------------------------
# Result shapes
# ---------------------------


@dataclass(frozen=True, slots=True)
class RuleVersionInfo:
    id: str
    org_id: str
    rule_type: RuleType
    rule_identifier: str
    category_id: str
    confidence: float
    version: int
    source: RuleSource
    parent_version_id: str | None
    metadata: Mapping[str, Any]
    is_active: bool
    created_by: str | None
    created_at: datetime | None
    deactivated_at: datetime | None = None
    deactivated_by: str | None = None
    deactivation_reason: str | None = None

    @classmethod
    def from_row(cls, row: RuleVersion) -> RuleVersionInfo:
        return cls(
            id=row.id,
            org_id=row.org_id,
            rule_type=RuleType(row.rule_type),
            rule_identifier=row.rule_identifier,
            category_id=row.category_id,
            confidence=float(row.confidence),
            version=row.version,
            source=RuleSource(row.source),
            parent_version_id=row.parent_version_id,
            metadata=dict(row.rule_metadata or {}),
            is_active=bool(row.is_active),
            created_by=row.created_by,
            created_at=_as_utc(row.created_at),
            deactivated_at=_as_utc(row.deactivated_at),
            deactivated_by=row.deactivated_by,
            deactivation_reason=row.deactivation_reason,
        )

    def as_active_rule(self) -> ActiveRule:
        return ActiveRule(
            rule_type=self.rule_type,
            rule_identifier=self.rule_identifier,
            category_id=self.category_id,
            confidence=self.confidence,
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True, slots=True)
class CanaryOutcome:
    id: str
    rule_version_id: str
    test_set_size: int
    correct_count: int
    incorrect_count: int
    true_positives: int
    false_positives: int
    false_negatives: int
    accuracy: float
    precision: float | None
    recall: float | None
    f1_score: float | None
    passed_threshold: bool
    message: str


@dataclass(frozen=True, slots=True)
class CorrectionOutcome:
    correction_id: str
    correction_count: int
    oscillation_id: str | None


@dataclass(frozen=True, slots=True)
class OscillationReport:
    is_oscillating: bool
    affected_transactions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class OscillationInfo:
    id: str
    org_id: str
    tx_id: str
    oscillation_sequence: tuple[Mapping[str, Any], ...]
    oscillation_count: int
    first_detected_at: datetime | None
    last_detected_at: datetime | None
    is_resolved: bool
    resolution_category_id: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @classmethod
    def from_row(cls, row: CategoryOscillation) -> OscillationInfo:
        return cls(
            id=row.id,
            org_id=row.org_id,
            tx_id=row.tx_id,
            oscillation_sequence=tuple(row.oscillation_sequence or ()),
            oscillation_count=row.oscillation_count,
            first_detected_at=_as_utc(row.first_detected_at),
            last_detected_at=_as_utc(row.last_detected_at),
            is_resolved=bool(row.is_resolved),
            resolution_category_id=row.resolution_category_id,
            resolved_at=_as_utc(row.resolved_at),
            resolved_by=row.resolved_by,
        )


@dataclass(frozen=True, slots=True)
class EffectivenessPoint:
    rule_version_id: str
    measurement_date: date
    applications_count: int
    correct_count: int
    incorrect_count: int
    avg_confidence: float | None
    precision: float | None


@dataclass(frozen=True, slots=True)
class PrecisionDrift:
    rule_version_id: str
    baseline_precision: float
    latest_precision: float
    change_percentage: float
    drifted: bool
    points: tuple[EffectivenessPoint, ...] = field(default=())


# ---------------------------
# Rule matching (canary + effectiveness)
# ---------------------------


def _pattern_search(pattern: str | None, text: str) -> bool:
    if not pattern:
        return False
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        _logger.warning("learning:invalid_pattern pattern=%s", pattern)
        return False


def rule_matches(
    rule_type: RuleType | str,
    rule_identifier: str,
    metadata: Mapping[str, Any] | None,
    *,
    mcc: str | None,
    merchant_name: str | None,
    description: str | None,
) -> bool:
    """Return whether a rule version would fire for a stored transaction.

    - ``mcc``: exact code match.
    - ``vendor``: case-insensitive substring of the merchant name, or
      ``metadata["pattern"]`` as a case-insensitive regex.
    - ``keyword``: case-insensitive substring of the description.
    - ``embedding``: never (similarity is not evaluated offline).
    """

    rt = RuleType(rule_type)
    ident = (rule_identifier or "").strip().lower()
    if rt is RuleType.MCC:
        return bool(mcc) and mcc == rule_identifier
    if rt is RuleType.VENDOR:
        merchant = (merchant_name or "").lower()
        if ident and ident in merchant:
            return True
        return _pattern_search((metadata or {}).get("pattern"), merchant_name or "")
    if rt is RuleType.KEYWORD:
        return bool(ident) and ident in (description or "").lower()
    return False


def _tx_matches(rule: RuleVersion, tx: Transaction) -> bool:
    return rule_matches(
        rule.rule_type,
        rule.rule_identifier,
        rule.rule_metadata,
        mcc=tx.mcc,
        merchant_name=tx.merchant_name,
        description=tx.description,
    )


def _ratio(num: int, den: int) -> float | None:
    return num / den if den else None


# ---------------------------
# Rule versions
# ---------------------------


def create_rule_version(
    *,
    org_id: str,
    rule_type: RuleType | str,
    rule_identifier: str,
    category_id: str,
    confidence: float,
    source: RuleSource | str,
    metadata: Mapping[str, Any] | None = None,
    created_by: str | None = None,
    database_url: str | None = None,
) -> RuleVersionInfo:
    """Insert the next version of a rule.

    The new row gets ``version = previous + 1`` (1 for a new key) and points
    at the previous highest version via ``parent_version_id``. Manual
    versions start active and deactivate the key's current active row;
    learned and system versions start inactive.

    Raises
    ------
    ValueError
        Unknown ``rule_type``/``source``, empty identifier, or confidence
        outside ``[0, 1]``.
    """

    rt = RuleType(rule_type)
    src = RuleSource(source)
    ident = rule_identifier.strip()
    if not ident:
        raise ValueError("rule_identifier must be non-empty")
    if not 0.0 <= float(confidence) <= 1.0:
        raise ValueError(f"confidence must be between 0 and 1 (got {confidence})")

    key: RuleKey = (org_id, str(rt), ident)
    with _key_lock(key), session_scope(database_url=database_url) as session:
        rows = _lock_key_rows(session, key)
        previous = rows[0] if rows else None
        is_active = src is RuleSource.MANUAL
        if is_active:
            now = utcnow()
            for r in rows:
                if r.is_active:
                    r.is_active = False
                    r.deactivated_at = now
                    r.deactivated_by = created_by
                    r.deactivation_reason = "Replaced by manual version"
            session.flush()

        row = RuleVersion(
            org_id=org_id,
            rule_type=str(rt),
            rule_identifier=ident,
            category_id=category_id,
            confidence=float(confidence),
            version=(previous.version + 1) if previous is not None else 1,
            source=str(src),
            parent_version_id=previous.id if previous is not None else None,
            rule_metadata=dict(metadata or {}),
            is_active=is_active,
            created_by=created_by,
        )
        session.add(row)
        session.flush()
        info = RuleVersionInfo.from_row(row)

    _logger.info(
        "learning:rule_version_created id=%s key=%s/%s version=%d source=%s active=%s",
        info.id,
        info.rule_type,
        info.rule_identifier,
        info.version,
        info.source,
        info.is_active,
    )
    return info


def get_rule_version(session: Session, rule_version_id: str) -> RuleVersionInfo:
    row = session.get(RuleVersion, rule_version_id)
    if row is None:
        raise RuleVersionNotFoundError(rule_version_id)
    return RuleVersionInfo.from_row(row)


def get_rule_versions(
    session: Session, org_id: str, rule_type: RuleType | str, rule_identifier: str
) -> list[RuleVersionInfo]:
    """All versions of one key, oldest first."""

    stmt = (
        select(RuleVersion)
        .where(
            RuleVersion.org_id == org_id,
            RuleVersion.rule_type == str(RuleType(rule_type)),
            RuleVersion.rule_identifier == rule_identifier,
        )
        .order_by(RuleVersion.version.asc())
    )
    return [RuleVersionInfo.from_row(r) for r in session.scalars(stmt).all()]


def get_active_rule_versions(
    session: Session, org_id: str, rule_type: RuleType | str | None = None
) -> list[RuleVersionInfo]:
    """Active versions for ``org_id``, newest first."""

    stmt = select(RuleVersion).where(RuleVersion.org_id == org_id, RuleVersion.is_active.is_(True))
    if rule_type is not None:
        stmt = stmt.where(RuleVersion.rule_type == str(RuleType(rule_type)))
    stmt = stmt.order_by(RuleVersion.created_at.desc(), RuleVersion.version.desc())
    return [RuleVersionInfo.from_row(r) for r in session.scalars(stmt).all()]


def load_rule_tables(
    session: Session,
    org_id: str,
    *,
    base: RuleTables | None = None,
    taxonomy: Taxonomy | None = None,
) -> RuleTables:
    """Overlay the org's active rule versions onto ``base`` (shipped tables by default)."""

    active = get_active_rule_versions(session, org_id)
    tables = base or RuleTables.default()
    return tables.with_rule_versions((r.as_active_rule() for r in active), taxonomy=taxonomy)


# ---------------------------
# Canary tests
# ---------------------------


def _latest_canary(session: Session, rule_version_id: str) -> CanaryTestResult | None:
    stmt = (
        select(CanaryTestResult)
        .where(CanaryTestResult.rule_version_id == rule_version_id)
        .order_by(CanaryTestResult.created_at.desc(), CanaryTestResult.id.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def _ground_truth(session: Session, txs: Sequence[Transaction]) -> dict[str, str | None]:
    """Latest correction per transaction, else its current category."""

    truth: dict[str, str | None] = {t.id: t.category_id for t in txs}
    if not truth:
        return truth
    stmt = (
        select(Correction.tx_id, Correction.new_category_id)
        .where(Correction.tx_id.in_(list(truth)))
        .order_by(Correction.created_at.asc(), Correction.id.asc())
    )
    for tx_id, new_category_id in session.execute(stmt).all():
        truth[tx_id] = new_category_id
    return truth


def run_canary_test(
    session: Session,
    *,
    org_id: str,
    rule_version_id: str,
    config: CanaryTestConfig | None = None,
    now: datetime | None = None,
) -> CanaryOutcome:
    """Evaluate a rule version against held-out history and persist the result.

    Parameters
    ----------
    session:
        SQLAlchemy session (callers own the transaction scope).
    org_id:
        Organization owning the rule version.
    rule_version_id:
        Version under test. Its ``is_active`` flag is never changed here.
    config:
        Sample size, accuracy threshold, minimum sample and holdout age.

    Returns
    -------
    CanaryOutcome
        ``passed_threshold`` requires ``accuracy >= accuracy_threshold`` and at
        least ``min_sample_size`` tested transactions.

    Raises
    ------
    RuleVersionNotFoundError
        No such version for ``org_id``.
    CanaryTestError
        The holdout set is empty.
    """

    cfg = config or CanaryTestConfig()
    ts = now or utcnow()
    rule = session.scalars(
        select(RuleVersion).where(RuleVersion.id == rule_version_id, RuleVersion.org_id == org_id)
    ).first()
    if rule is None:
        raise RuleVersionNotFoundError(rule_version_id)

    cutoff = ts - timedelta(days=cfg.holdout_min_age_days)
    holdout = list(
        session.scalars(
            select(Transaction)
            .where(
                Transaction.org_id == org_id,
                Transaction.category_id.is_not(None),
                Transaction.created_at < cutoff,
            )
            .order_by(func.random())
            .limit(cfg.test_set_size)
        ).all()
    )
    if not holdout:
        raise CanaryTestError(f"No test transactions available for org {org_id}")

    truth = _ground_truth(session, holdout)
    tp = fp = fn = tn = 0
    for tx in holdout:
        expected = truth.get(tx.id)
        if _tx_matches(rule, tx):
            if expected == rule.category_id:
                tp += 1
            else:
                fp += 1
        elif expected == rule.category_id:
            fn += 1
        else:
            tn += 1

    total = len(holdout)
    correct = tp + tn
    incorrect = fp + fn
    accuracy = correct / total
    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    f1 = (
        2 * precision * recall / (precision + recall)
        if precision is not None and recall is not None and (precision + recall) > 0
        else None
    )

    enough = total >= cfg.min_sample_size
    passed = enough and accuracy >= cfg.accuracy_threshold
    if passed:
        message = "Canary test passed - safe to promote"
    elif not enough:
        message = (
            f"Canary test failed - insufficient sample ({total} < {cfg.min_sample_size})"
        )
    else:
        message = (
            f"Canary test failed - do not promote (accuracy: {accuracy * 100:.2f}%, "
            f"threshold: {cfg.accuracy_threshold * 100:.2f}%)"
        )

    row = CanaryTestResult(
        org_id=org_id,
        rule_version_id=rule_version_id,
        test_date=ts.date(),
        test_set_size=total,
        correct_count=correct,
        incorrect_count=incorrect,
        accuracy=accuracy,
        precision=precision,
        recall=recall,
        f1_score=f1,
        passed_threshold=passed,
        promoted_to_production=False,
        test_metadata={
            "true_positives": tp,
            "false_positives": fp,
            "false_negatives": fn,
            "true_negatives": tn,
            "threshold": cfg.accuracy_threshold,
            "min_sample_size": cfg.min_sample_size,
            "rule_type": rule.rule_type,
            "rule_identifier": rule.rule_identifier,
            "message": message,
        },
        created_at=ts,
    )
    session.add(row)
    session.flush()

    _logger.info(
        "learning:canary_done rule_version_id=%s size=%d accuracy=%.3f passed=%s",
        rule_version_id,
        total,
        accuracy,
        passed,
    )
    return CanaryOutcome(
        id=row.id,
        rule_version_id=rule_version_id,
        test_set_size=total,
        correct_count=correct,
        incorrect_count=incorrect,
        true_positives=tp,
        false_positives=fp,
        false_negatives=fn,
        accuracy=accuracy,
        precision=precision,
        recall=recall,
        f1_score=f1,
        passed_threshold=passed,
        message=message,
    )


# ---------------------------
# Promotion / rollback
# ---------------------------


def _key_of(rule_version_id: str, database_url: str | None) -> RuleKey:
    with session_scope(database_url=database_url) as session:
        row = session.get(RuleVersion, rule_version_id)
        if row is None:
            raise RuleVersionNotFoundError(rule_version_id)
        return (row.org_id, row.rule_type, row.rule_identifier)


def promote_rule_version(
    rule_version_id: str,
    *,
    promoted_by: str,
    database_url: str | None = None,
) -> RuleVersionInfo:
    """Make ``rule_version_id`` the single active version of its key.

    Requires that the most recent canary run for this exact version passed.
    The previously active version (if any) is deactivated with an audit
    trail, and the canary row is marked as promoted.

    Raises
    ------
    RuleVersionNotFoundError
        Unknown version id.
    CanaryNotPassedError
        No canary run for the version, or the latest one failed.
    """

    key = _key_of(rule_version_id, database_url)
    with _key_lock(key), session_scope(database_url=database_url) as session:
        rows = _lock_key_rows(session, key)
        target = next((r for r in rows if r.id == rule_version_id), None)
        if target is None:
            raise RuleVersionNotFoundError(rule_version_id)

        canary = _latest_canary(session, rule_version_id)
        if canary is None or not canary.passed_threshold:
            _logger.warning(
                "learning:promote_rejected rule_version_id=%s canary=%s",
                rule_version_id,
                "missing" if canary is None else "failed",
            )
            raise CanaryNotPassedError(rule_version_id)

        now = utcnow()
        for r in rows:
            if r.is_active and r.id != target.id:
                r.is_active = False
                r.deactivated_at = now
                r.deactivated_by = promoted_by
                r.deactivation_reason = "Replaced by newer version"
        # Deactivations must reach the database before the activation.
        session.flush()

        target.is_active = True
        target.deactivated_at = None
        target.deactivated_by = None
        target.deactivation_reason = None
        canary.promoted_to_production = True
        session.flush()
        info = RuleVersionInfo.from_row(target)

    _logger.info(
        "learning:promoted rule_version_id=%s key=%s/%s version=%d by=%s",
        rule_version_id,
        key[1],
        key[2],
        info.version,
        promoted_by,
    )
    return info


def rollback_rule_version(
    rule_version_id: str,
    *,
    rolled_back_by: str,
    reason: str,
    database_url: str | None = None,
) -> bool:
    """Deactivate ``rule_version_id`` and reactivate its parent.

    Returns ``False`` without touching anything when the version has no
    parent (version 1 cannot be rolled back).

    Raises
    ------
    ValueError
        ``reason`` is empty.
    RuleVersionNotFoundError
        Unknown version id.
    """

    if not reason or not reason.strip():
        raise ValueError("rollback requires a non-empty reason")

    key = _key_of(rule_version_id, database_url)
    with _key_lock(key), session_scope(database_url=database_url) as session:
        rows = _lock_key_rows(session, key)
        by_id = {r.id: r for r in rows}
        target = by_id.get(rule_version_id)
        if target is None:
            raise RuleVersionNotFoundError(rule_version_id)
        if target.parent_version_id is None:
            _logger.info("learning:rollback_no_parent rule_version_id=%s", rule_version_id)
            return False
        parent = by_id.get(target.parent_version_id)
        if parent is None:
            raise RuleVersionNotFoundError(target.parent_version_id)

        now = utcnow()
        for r in rows:
            if r.is_active and r.id != parent.id:
                r.is_active = False
                r.deactivated_at = now
                r.deactivated_by = rolled_back_by
                r.deactivation_reason = reason.strip()
        session.flush()
        parent.is_active = True
        session.flush()

    _logger.info(
        "learning:rolled_back rule_version_id=%s parent=%s by=%s reason=%s",
        rule_version_id,
        target.parent_version_id,
        rolled_back_by,
        reason.strip(),
    )
    return True


# ---------------------------
# Corrections & oscillations
# ---------------------------


def _changes_category() -> ColumnElement[bool]:
    # Re-confirming the current category is a correction but not a change.
    return Correction.old_category_id.is_distinct_from(Correction.new_category_id)


def _sequence_entry(
    category_id: str, changed_at: datetime, changed_by: str | None
) -> dict[str, Any]:
    return {
        "category_id": category_id,
        "changed_at": _as_utc(changed_at).isoformat(),  # type: ignore[union-attr]
        "changed_by": changed_by,
    }


def record_correction(
    session: Session,
    *,
    org_id: str,
    tx_id: str,
    new_category_id: str,
    user_id: str | None = None,
    now: datetime | None = None,
) -> CorrectionOutcome:
    """Record a human correction and keep the oscillation row current.

    The transaction takes the new category with confidence 1.0 and is marked
    reviewed. From the second category change of the same transaction onward
    the unresolved oscillation row is created or extended; a correction that
    keeps the current category is recorded but never tracked.
    """

    ts = now or utcnow()
    tx = session.get(Transaction, tx_id)
    if tx is None:
        raise TransactionNotFoundError(tx_id)
    if tx.org_id != org_id:
        raise UnauthorizedTransactionError(tx_id)

    changed = tx.category_id != new_category_id
    correction = Correction(
        org_id=org_id,
        tx_id=tx_id,
        old_category_id=tx.category_id,
        new_category_id=new_category_id,
        user_id=user_id,
        created_at=ts,
    )
    session.add(correction)
    tx.category_id = new_category_id
    tx.confidence = 1.0
    tx.needs_review = False
    tx.reviewed = True
    tx.updated_at = ts
    session.flush()

    count = (
        session.scalar(
            select(func.count()).select_from(Correction).where(Correction.tx_id == tx_id)
        )
        or 0
    )
    changes = (
        session.scalar(
            select(func.count())
            .select_from(Correction)
            .where(Correction.tx_id == tx_id, _changes_category())
        )
        or 0
    )
    oscillation_id: str | None = None
    if changed and changes >= 2:
        existing = session.scalars(
            select(CategoryOscillation)
            .where(CategoryOscillation.tx_id == tx_id, CategoryOscillation.is_resolved.is_(False))
            .limit(1)
            .with_for_update()
        ).first()
        if existing is not None:
            existing.oscillation_sequence = [
                *(existing.oscillation_sequence or []),
                _sequence_entry(new_category_id, ts, user_id),
            ]
            existing.oscillation_count = existing.oscillation_count + 1
            existing.last_detected_at = ts
            oscillation_id = existing.id
        else:
            history = session.scalars(
                select(Correction)
                .where(Correction.tx_id == tx_id, _changes_category())
                .order_by(Correction.created_at.asc(), Correction.id.asc())
            ).all()
            row = CategoryOscillation(
                org_id=org_id,
                tx_id=tx_id,
                oscillation_sequence=[
                    _sequence_entry(c.new_category_id, c.created_at, c.user_id) for c in history
                ],
                oscillation_count=changes,
                first_detected_at=ts,
                last_detected_at=ts,
                is_resolved=False,
            )
            session.add(row)
            session.flush()
            oscillation_id = row.id
        _logger.info(
            "learning:oscillation_tracked tx_id=%s changes=%d oscillation_id=%s",
            tx_id,
            changes,
            oscillation_id,
        )

    return CorrectionOutcome(
        correction_id=correction.id, correction_count=count, oscillation_id=oscillation_id
    )


def detect_rule_oscillations(
    session: Session,
    org_id: str,
    *,
    threshold: int = DEFAULT_OSCILLATION_THRESHOLD,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    now: datetime | None = None,
) -> OscillationReport:
    """Find transactions whose category changed ``threshold``+ times in the window.

    Changes are counted from corrections created within ``lookback_days``
    that moved the transaction to a different category. A transaction whose oscillation was resolved and has not been corrected
    again since is not reported.
    """

    if threshold < 1:
        raise ValueError("threshold must be >= 1")
    ts = now or utcnow()
    cutoff = ts - timedelta(days=lookback_days)

    counts = session.execute(
        select(Correction.tx_id, func.count(Correction.id), func.max(Correction.created_at))
        .where(
            Correction.org_id == org_id,
            Correction.created_at >= cutoff,
            _changes_category(),
        )
        .group_by(Correction.tx_id)
        .having(func.count(Correction.id) >= threshold)
        .order_by(Correction.tx_id)
    ).all()

    affected: list[str] = []
    for tx_id, _n, last_change in counts:
        latest_osc = session.scalars(
            select(CategoryOscillation)
            .where(CategoryOscillation.tx_id == tx_id)
            .order_by(CategoryOscillation.last_detected_at.desc())
            .limit(1)
        ).first()
        if (
            latest_osc is not None
            and latest_osc.is_resolved
            and latest_osc.resolved_at is not None
            and _as_utc(latest_osc.resolved_at) >= _as_utc(last_change)  # type: ignore[operator]
        ):
            continue
        affected.append(tx_id)

    report = OscillationReport(is_oscillating=bool(affected), affected_transactions=tuple(affected))
    _logger.info(
        "learning:oscillations_detected org_id=%s threshold=%d affected=%d",
        org_id,
        threshold,
        len(affected),
    )
    return report


def get_unresolved_oscillations(
    session: Session, org_id: str, *, limit: int = 50
) -> list[OscillationInfo]:
    stmt = (
        select(CategoryOscillation)
        .where(CategoryOscillation.org_id == org_id, CategoryOscillation.is_resolved.is_(False))
        .order_by(CategoryOscillation.last_detected_at.desc())
        .limit(limit)
    )
    return [OscillationInfo.from_row(r) for r in session.scalars(stmt).all()]


def resolve_oscillation(
    session: Session,
    oscillation_id: str,
    *,
    resolution_category_id: str,
    resolved_by: str,
    now: datetime | None = None,
) -> bool:
    """Mark an oscillation resolved; ``False`` if it was already resolved or unknown.

    Implemented as ``UPDATE ... WHERE is_resolved = false`` so concurrent
    resolvers cannot both succeed.
    """

    ts = now or utcnow()
    result = session.execute(
        update(CategoryOscillation)
        .where(
            CategoryOscillation.id == oscillation_id,
            CategoryOscillation.is_resolved.is_(False),
        )
        .values(
            is_resolved=True,
            resolution_category_id=resolution_category_id,
            resolved_at=ts,
            resolved_by=resolved_by,
        )
        .execution_options(synchronize_session=False)
    )
    won = (result.rowcount or 0) == 1
    _logger.info("learning:oscillation_resolve id=%s resolved=%s", oscillation_id, won)
    return won


# ---------------------------
# Effectiveness & drift
# ---------------------------


def _week_bounds(day: date) -> tuple[datetime, datetime]:
    start = day - timedelta(days=day.weekday())
    start_dt = datetime(start.year, start.month, start.day, tzinfo=UTC)
    return start_dt, start_dt + timedelta(days=7)


def track_rule_effectiveness(
    session: Session, org_id: str, *, measurement_date: date | None = None
) -> int:
    """Recompute the weekly effectiveness row of every active rule version.

    For the Monday-to-Sunday week containing ``measurement_date`` a rule's
    applications are the org's transactions created that week, carrying the
    rule's category and matching its criteria. An application is incorrect
    when the transaction was corrected during the week. Rules with no
    applications get no row. Returns the number of rows written.
    """

    day = measurement_date or utcnow().date()
    week_start, week_end = _week_bounds(day)
    rules = session.scalars(
        select(RuleVersion).where(RuleVersion.org_id == org_id, RuleVersion.is_active.is_(True))
    ).all()

    written = 0
    for rule in rules:
        candidates = session.scalars(
            select(Transaction).where(
                Transaction.org_id == org_id,
                Transaction.created_at >= week_start,
                Transaction.created_at < week_end,
                Transaction.category_id == rule.category_id,
            )
        ).all()
        matched = [t for t in candidates if _tx_matches(rule, t)]
        if not matched:
            continue

        corrected_ids = set(
            session.scalars(
                select(Correction.tx_id).where(
                    Correction.org_id == org_id,
                    Correction.tx_id.in_([t.id for t in matched]),
                    Correction.created_at >= week_start,
                    Correction.created_at < week_end,
                )
            ).all()
        )
        applications = len(matched)
        incorrect = sum(1 for t in matched if t.id in corrected_ids)
        correct = applications - incorrect

        row = session.scalars(
            select(RuleEffectiveness).where(
                RuleEffectiveness.org_id == org_id,
                RuleEffectiveness.rule_version_id == rule.id,
                RuleEffectiveness.measurement_date == day,
            )
        ).first()
        if row is None:
            row = RuleEffectiveness(org_id=org_id, rule_version_id=rule.id, measurement_date=day)
            session.add(row)
        row.applications_count = applications
        row.correct_count = correct
        row.incorrect_count = incorrect
        row.avg_confidence = float(rule.confidence)
        row.precision = correct / applications
        written += 1

    session.flush()
    _logger.info(
        "learning:effectiveness_tracked org_id=%s date=%s rules=%d written=%d",
        org_id,
        day.isoformat(),
        len(rules),
        written,
    )
    return written


def get_rule_effectiveness(
    session: Session,
    org_id: str,
    rule_version_id: str,
    *,
    days_since: int = DEFAULT_LOOKBACK_DAYS,
    today: date | None = None,
) -> list[EffectivenessPoint]:
    """Measurements from the last ``days_since`` days, newest first. Read-only."""

    cutoff = (today or utcnow().date()) - timedelta(days=days_since)
    rows = session.scalars(
        select(RuleEffectiveness)
        .where(
            RuleEffectiveness.org_id == org_id,
            RuleEffectiveness.rule_version_id == rule_version_id,
            RuleEffectiveness.measurement_date >= cutoff,
        )
        .order_by(RuleEffectiveness.measurement_date.desc())
    ).all()
    return [
        EffectivenessPoint(
            rule_version_id=r.rule_version_id,
            measurement_date=r.measurement_date,
            applications_count=r.applications_count,
            correct_count=r.correct_count,
            incorrect_count=r.incorrect_count,
            avg_confidence=r.avg_confidence,
            precision=r.precision,
        )
        for r in rows
    ]


def detect_precision_drift(
    session: Session,
    org_id: str,
    rule_version_id: str,
    *,
    days_since: int = DEFAULT_LOOKBACK_DAYS,
    threshold_percentage: float = DEFAULT_DRIFT_THRESHOLD_PCT,
    today: date | None = None,
) -> PrecisionDrift | None:
    """Compare the latest precision with the mean of the earlier measurements.

    Returns ``None`` when fewer than two measurements carry a precision.
    ``drifted`` is set when precision fell by at least ``threshold_percentage``
    percent of the baseline.
    """

    points = [
        p
        for p in get_rule_effectiveness(
            session, org_id, rule_version_id, days_since=days_since, today=today
        )
        if p.precision is not None
    ]
    if len(points) < 2:
        return None
    latest = points[0]
    earlier = points[1:]
    baseline = sum(p.precision for p in earlier) / len(earlier)  # type: ignore[misc]
    latest_precision = float(latest.precision)  # type: ignore[arg-type]
    change = ((baseline - latest_precision) / baseline * 100.0) if baseline > 0 else 0.0
    drifted = change >= threshold_percentage
    if drifted:
        _logger.warning(
            "learning:precision_drift rule_version_id=%s baseline=%.3f latest=%.3f change_pct=%.1f",
            rule_version_id,
            baseline,
            latest_precision,
            change,
        )
    return PrecisionDrift(
        rule_version_id=rule_version_id,
        baseline_precision=baseline,
        latest_precision=latest_precision,
        change_percentage=change,
        drifted=drifted,
        points=tuple(points),
    )


__all__ = [
    "CanaryOutcome",
    "CorrectionOutcome",
    "EffectivenessPoint",
    "OscillationInfo",
    "OscillationReport",
    "PrecisionDrift",
    "RuleVersionInfo",
    "create_rule_version",
    "detect_precision_drift",
    "detect_rule_oscillations",
    "get_active_rule_versions",
    "get_rule_effectiveness",
    "get_rule_version",
    "get_rule_versions",
    "get_unresolved_oscillations",
    "load_rule_tables",
    "promote_rule_version",
    "record_correction",
    "resolve_oscillation",
    "rollback_rule_version",
    "rule_matches",
    "run_canary_test",
    "track_rule_effectiveness",
]
