# ruff: noqa: I001
from __future__ import annotations

import threading
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select

from db.client import session_scope
from db.models.categorizer import CanaryTestResult, RuleEffectiveness, RuleVersion

from txn_categorizer.errors import (
    CanaryNotPassedError,
    CanaryTestError,
    RuleVersionNotFoundError,
    UnauthorizedTransactionError,
)
from txn_categorizer.learning import (
    create_rule_version,
    detect_precision_drift,
    detect_rule_oscillations,
    get_active_rule_versions,
    get_rule_effectiveness,
    get_rule_version,
    get_rule_versions,
    get_unresolved_oscillations,
    load_rule_tables,
    promote_rule_version,
    record_correction,
    resolve_oscillation,
    rollback_rule_version,
    rule_matches,
    run_canary_test,
    track_rule_effectiveness,
)
from txn_categorizer.models import NormalizedTransaction, RuleSource, RuleType
from txn_categorizer.pmap import p_map
from txn_categorizer.signals import SignalContext, extract_vendor_signals
from txn_categorizer.taxonomy import default_id

from tests.helpers.db import ORG, OTHER_ORG, bootstrap_sqlite_db, seed_history, seed_transaction

MARKETING = default_id("marketing_ads")
SOFTWARE = default_id("software_subscriptions")
OFFICE = default_id("office_admin")


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "learning.db")


def _version(url: str, *, category_id: str = MARKETING, source=RuleSource.LEARNED, ident="acme"):
    return create_rule_version(
        org_id=ORG,
        rule_type=RuleType.VENDOR,
        rule_identifier=ident,
        category_id=category_id,
        confidence=0.9,
        source=source,
        created_by="tester",
        database_url=url,
    )


def _active_count(url: str, ident: str = "acme") -> int:
    with session_scope(database_url=url) as s:
        return s.scalar(
            select(func.count())
            .select_from(RuleVersion)
            .where(
                RuleVersion.org_id == ORG,
                RuleVersion.rule_identifier == ident,
                RuleVersion.is_active.is_(True),
            )
        )


def _seed_acme_history(url: str) -> None:
    seed_history(url, count=20, category_id=MARKETING, merchant_name="Acme Media")
    seed_history(url, count=5, category_id=OFFICE, merchant_name="Office Depot")
    # too recent for the holdout
    seed_history(url, count=3, category_id=OFFICE, merchant_name="Acme Media", age_days=0)


def _canary(url: str, rule_version_id: str, now: datetime | None = None):
    with session_scope(database_url=url) as s:
        return run_canary_test(s, org_id=ORG, rule_version_id=rule_version_id, now=now)


# ---- versioning --------------------------------------------------------------


def test_versions_are_sequential_and_linked(db_url):
    v1 = _version(db_url)
    v2 = _version(db_url)
    v3 = _version(db_url)

    assert [v.version for v in (v1, v2, v3)] == [1, 2, 3]
    assert v1.parent_version_id is None
    assert v2.parent_version_id == v1.id
    assert v3.parent_version_id == v2.id
    assert not any(v.is_active for v in (v1, v2, v3))

    with session_scope(database_url=db_url) as s:
        versions = get_rule_versions(s, ORG, "vendor", "acme")
    assert [v.id for v in versions] == [v1.id, v2.id, v3.id]


def test_manual_version_is_active_and_replaces_previous(db_url):
    first = _version(db_url, source=RuleSource.MANUAL)
    assert first.is_active
    second = _version(db_url, source=RuleSource.MANUAL, category_id=SOFTWARE)
    assert second.is_active
    assert _active_count(db_url) == 1

    with session_scope(database_url=db_url) as s:
        old = get_rule_version(s, first.id)
        active = get_active_rule_versions(s, ORG, RuleType.VENDOR)
    assert not old.is_active
    assert old.deactivation_reason == "Replaced by manual version"
    assert [a.id for a in active] == [second.id]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"rule_identifier": "   "},
        {"confidence": 1.5},
        {"rule_type": "regex"},
        {"source": "imported"},
    ],
)
def test_invalid_versions_are_rejected(db_url, kwargs):
    args = {
        "org_id": ORG,
        "rule_type": "vendor",
        "rule_identifier": "acme",
        "category_id": MARKETING,
        "confidence": 0.9,
        "source": "learned",
        "database_url": db_url,
    }
    args.update(kwargs)
    with pytest.raises(ValueError):
        create_rule_version(**args)


def test_unknown_version_lookup_raises(db_url):
    with pytest.raises(RuleVersionNotFoundError), session_scope(database_url=db_url) as s:
        get_rule_version(s, "missing")


# ---- canary ------------------------------------------------------------------


def test_canary_passes_for_accurate_rule(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url)

    out = _canary(db_url, v1.id)

    assert out.passed_threshold
    assert out.test_set_size == 25
    assert out.true_positives == 20
    assert out.false_positives == 0
    assert out.accuracy == pytest.approx(1.0)
    assert out.precision == pytest.approx(1.0)
    assert out.message == "Canary test passed - safe to promote"

    with session_scope(database_url=db_url) as s:
        assert not get_rule_version(s, v1.id).is_active


def test_canary_fails_for_wrong_category(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url, category_id=SOFTWARE)

    out = _canary(db_url, v1.id)

    assert not out.passed_threshold
    assert out.false_positives == 20
    assert out.accuracy == pytest.approx(0.2)
    assert out.message.startswith("Canary test failed - do not promote")


def test_canary_needs_minimum_sample(db_url):
    seed_history(db_url, count=5, category_id=MARKETING, merchant_name="Acme Media")
    v1 = _version(db_url)

    out = _canary(db_url, v1.id)

    assert out.accuracy == pytest.approx(1.0)
    assert not out.passed_threshold
    assert "insufficient sample" in out.message


def test_canary_without_holdout_raises(db_url):
    seed_history(db_url, count=3, category_id=MARKETING, merchant_name="Acme", age_days=1)
    v1 = _version(db_url)
    with pytest.raises(CanaryTestError):
        _canary(db_url, v1.id)


def test_canary_for_unknown_version_raises(db_url):
    _seed_acme_history(db_url)
    with pytest.raises(RuleVersionNotFoundError):
        _canary(db_url, "missing")


def test_rule_matching_criteria():
    assert rule_matches("vendor", "acme", None, mcc=None, merchant_name="ACME Media", description="")
    assert rule_matches(
        "vendor", "x", {"pattern": r"^acm"}, mcc=None, merchant_name="Acme", description=""
    )
    assert rule_matches("mcc", "7230", None, mcc="7230", merchant_name=None, description=None)
    assert rule_matches("keyword", "payroll", None, mcc=None, merchant_name=None, description="Payroll run")
    assert not rule_matches("embedding", "acme", None, mcc=None, merchant_name="acme", description="acme")


# ---- promotion / rollback ----------------------------------------------------


def test_promotion_requires_a_canary_run(db_url):
    v1 = _version(db_url)
    with pytest.raises(CanaryNotPassedError):
        promote_rule_version(v1.id, promoted_by="admin", database_url=db_url)
    assert _active_count(db_url) == 0


def test_promotion_rejected_after_failed_canary(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url, category_id=SOFTWARE)
    _canary(db_url, v1.id)
    with pytest.raises(CanaryNotPassedError):
        promote_rule_version(v1.id, promoted_by="admin", database_url=db_url)


def test_latest_canary_run_governs_promotion(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url)
    earlier = datetime.now(UTC)
    assert _canary(db_url, v1.id, now=earlier).passed_threshold

    # ground truth changes so that a later run fails
    seed_history(db_url, count=100, category_id=OFFICE, merchant_name="Acme Media")
    assert not _canary(db_url, v1.id, now=earlier + timedelta(minutes=5)).passed_threshold

    with pytest.raises(CanaryNotPassedError):
        promote_rule_version(v1.id, promoted_by="admin", database_url=db_url)


def test_canary_runs_sharing_a_timestamp_resolve_deterministically(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url)
    at = datetime.now(UTC)
    assert _canary(db_url, v1.id, now=at).passed_threshold
    seed_history(db_url, count=100, category_id=OFFICE, merchant_name="Acme Media")
    assert not _canary(db_url, v1.id, now=at).passed_threshold

    with session_scope(database_url=db_url) as s:
        rows = s.scalars(
            select(CanaryTestResult).where(CanaryTestResult.rule_version_id == v1.id)
        ).all()
        deciding = max(rows, key=lambda r: r.id).passed_threshold

    if deciding:
        assert promote_rule_version(v1.id, promoted_by="admin", database_url=db_url).is_active
    else:
        with pytest.raises(CanaryNotPassedError):
            promote_rule_version(v1.id, promoted_by="admin", database_url=db_url)


def test_promote_then_replace_keeps_single_active_version(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url)
    _canary(db_url, v1.id)
    promoted = promote_rule_version(v1.id, promoted_by="admin", database_url=db_url)
    assert promoted.is_active

    v2 = _version(db_url)
    _canary(db_url, v2.id)
    promote_rule_version(v2.id, promoted_by="admin", database_url=db_url)

    assert _active_count(db_url) == 1
    with session_scope(database_url=db_url) as s:
        old = get_rule_version(s, v1.id)
        new = get_rule_version(s, v2.id)
        canary_rows = s.scalars(
            select(CanaryTestResult).where(CanaryTestResult.rule_version_id == v2.id)
        ).all()
    assert new.is_active
    assert not old.is_active
    assert old.deactivated_by == "admin"
    assert old.deactivation_reason == "Replaced by newer version"
    assert [r.promoted_to_production for r in canary_rows] == [True]


def test_rollback_without_parent_changes_nothing(db_url):
    v1 = _version(db_url, source=RuleSource.MANUAL)
    assert not rollback_rule_version(
        v1.id, rolled_back_by="admin", reason="bad rule", database_url=db_url
    )
    with session_scope(database_url=db_url) as s:
        assert get_rule_version(s, v1.id).is_active


def test_rollback_reactivates_parent(db_url):
    v1 = _version(db_url, source=RuleSource.MANUAL)
    v2 = _version(db_url, source=RuleSource.MANUAL, category_id=SOFTWARE)

    assert rollback_rule_version(
        v2.id, rolled_back_by="admin", reason="too many corrections", database_url=db_url
    )

    assert _active_count(db_url) == 1
    with session_scope(database_url=db_url) as s:
        parent = get_rule_version(s, v1.id)
        child = get_rule_version(s, v2.id)
    assert parent.is_active
    assert not child.is_active
    assert child.deactivation_reason == "too many corrections"
    assert child.deactivated_by == "admin"


def test_rollback_requires_reason(db_url):
    v1 = _version(db_url)
    with pytest.raises(ValueError):
        rollback_rule_version(v1.id, rolled_back_by="admin", reason="  ", database_url=db_url)


def test_active_versions_overlay_pass1_tables(db_url):
    _version(db_url, source=RuleSource.MANUAL, ident="Zebra Prints")
    with session_scope(database_url=db_url) as s:
        tables = load_rule_tables(s, ORG)
    tx = NormalizedTransaction(
        id="t1", org_id=ORG, date="2025-01-15", amount_cents="-2500", merchant_name="Zebra Prints"
    )
    (sig,) = extract_vendor_signals(tx, SignalContext(tables=tables))
    assert sig.category_id == MARKETING


# ---- corrections & oscillations ----------------------------------------------


def test_oscillation_row_appears_from_second_correction(db_url):
    tx_id = seed_transaction(db_url, category_id=OFFICE)
    with session_scope(database_url=db_url) as s:
        first = record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=MARKETING)
    assert first.correction_count == 1
    assert first.oscillation_id is None

    with session_scope(database_url=db_url) as s:
        second = record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=OFFICE)
        third = record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=MARKETING)
    assert second.oscillation_id is not None
    assert third.oscillation_id == second.oscillation_id
    assert third.correction_count == 3

    with session_scope(database_url=db_url) as s:
        (osc,) = get_unresolved_oscillations(s, ORG)
    assert osc.tx_id == tx_id
    assert osc.oscillation_count == 3
    assert [e["category_id"] for e in osc.oscillation_sequence] == [MARKETING, OFFICE, MARKETING]


def test_reconfirming_the_same_category_is_not_oscillation(db_url):
    tx_id = seed_transaction(db_url, category_id=OFFICE)
    with session_scope(database_url=db_url) as s:
        outs = [
            record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=OFFICE)
            for _ in range(3)
        ]
    assert [o.correction_count for o in outs] == [1, 2, 3]
    assert all(o.oscillation_id is None for o in outs)

    with session_scope(database_url=db_url) as s:
        assert not detect_rule_oscillations(s, ORG).is_oscillating
        assert get_unresolved_oscillations(s, ORG) == []

    # one real change, then re-confirmations: still a single change
    with session_scope(database_url=db_url) as s:
        changed = record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=MARKETING)
        record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=MARKETING)
    assert changed.oscillation_id is None
    with session_scope(database_url=db_url) as s:
        assert not detect_rule_oscillations(s, ORG, threshold=2).is_oscillating


def test_correction_of_foreign_transaction_is_rejected(db_url):
    tx_id = seed_transaction(db_url, org_id=OTHER_ORG)
    with pytest.raises(UnauthorizedTransactionError), session_scope(database_url=db_url) as s:
        record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=MARKETING)


def test_oscillation_detection_and_single_resolution(db_url):
    tx_id = seed_transaction(db_url, category_id=OFFICE)
    steady = seed_transaction(db_url, category_id=OFFICE)
    base = datetime.now(UTC) - timedelta(days=2)

    with session_scope(database_url=db_url) as s:
        for i, cat in enumerate((MARKETING, OFFICE, MARKETING)):
            out = record_correction(
                s, org_id=ORG, tx_id=tx_id, new_category_id=cat, now=base + timedelta(hours=i)
            )
        record_correction(s, org_id=ORG, tx_id=steady, new_category_id=SOFTWARE, now=base)

    with session_scope(database_url=db_url) as s:
        report = detect_rule_oscillations(s, ORG)
    assert report.is_oscillating
    assert report.affected_transactions == (tx_id,)

    resolved_at = base + timedelta(hours=3)
    with session_scope(database_url=db_url) as s:
        assert resolve_oscillation(
            s, out.oscillation_id, resolution_category_id=MARKETING, resolved_by="admin", now=resolved_at
        )
    with session_scope(database_url=db_url) as s:
        assert not resolve_oscillation(
            s, out.oscillation_id, resolution_category_id=OFFICE, resolved_by="other", now=resolved_at
        )

    with session_scope(database_url=db_url) as s:
        assert not detect_rule_oscillations(s, ORG).is_oscillating
        assert get_unresolved_oscillations(s, ORG) == []

    # a fresh correction after resolution reopens tracking
    with session_scope(database_url=db_url) as s:
        again = record_correction(
            s, org_id=ORG, tx_id=tx_id, new_category_id=OFFICE, now=base + timedelta(hours=4)
        )
    assert again.oscillation_id not in (None, out.oscillation_id)
    with session_scope(database_url=db_url) as s:
        assert detect_rule_oscillations(s, ORG).affected_transactions == (tx_id,)


def test_old_corrections_fall_outside_lookback(db_url):
    tx_id = seed_transaction(db_url, category_id=OFFICE)
    long_ago = datetime.now(UTC) - timedelta(days=90)
    with session_scope(database_url=db_url) as s:
        for i, cat in enumerate((MARKETING, OFFICE, MARKETING)):
            record_correction(
                s, org_id=ORG, tx_id=tx_id, new_category_id=cat, now=long_ago + timedelta(hours=i)
            )
    with session_scope(database_url=db_url) as s:
        assert not detect_rule_oscillations(s, ORG, lookback_days=30).is_oscillating
        assert detect_rule_oscillations(s, ORG, lookback_days=120).is_oscillating


# ---- effectiveness & drift ---------------------------------------------------


def test_weekly_effectiveness_counts_corrected_applications(db_url):
    rule = _version(db_url, source=RuleSource.MANUAL)
    in_week = datetime(2025, 3, 4, 12, tzinfo=UTC)
    for i in range(4):
        seed_transaction(
            db_url,
            merchant_name="Acme Media",
            category_id=MARKETING,
            created_at=in_week + timedelta(minutes=i),
        )
    corrected = seed_transaction(
        db_url, merchant_name="Acme Media", category_id=OFFICE, created_at=in_week
    )
    seed_transaction(
        db_url,
        merchant_name="Acme Media",
        category_id=MARKETING,
        created_at=datetime(2025, 3, 12, tzinfo=UTC),
    )
    with session_scope(database_url=db_url) as s:
        record_correction(
            s,
            org_id=ORG,
            tx_id=corrected,
            new_category_id=MARKETING,
            now=in_week + timedelta(hours=1),
        )

    wednesday = date(2025, 3, 5)
    with session_scope(database_url=db_url) as s:
        assert track_rule_effectiveness(s, ORG, measurement_date=wednesday) == 1
    # re-running the same day updates in place
    with session_scope(database_url=db_url) as s:
        assert track_rule_effectiveness(s, ORG, measurement_date=wednesday) == 1
        (point,) = get_rule_effectiveness(s, ORG, rule.id, today=date(2025, 3, 20))

    assert point.measurement_date == wednesday
    assert point.applications_count == 5
    assert point.incorrect_count == 1
    assert point.correct_count == 4
    assert point.precision == pytest.approx(0.8)
    assert point.avg_confidence == pytest.approx(0.9)


def test_rule_without_applications_gets_no_row(db_url):
    _version(db_url, source=RuleSource.MANUAL)
    with session_scope(database_url=db_url) as s:
        assert track_rule_effectiveness(s, ORG, measurement_date=date(2025, 3, 5)) == 0


def _seed_points(url: str, rule_id: str, precisions: dict[date, float]) -> None:
    with session_scope(database_url=url) as s:
        for day, precision in precisions.items():
            s.add(
                RuleEffectiveness(
                    org_id=ORG,
                    rule_version_id=rule_id,
                    measurement_date=day,
                    applications_count=10,
                    correct_count=round(10 * precision),
                    incorrect_count=10 - round(10 * precision),
                    avg_confidence=0.9,
                    precision=precision,
                )
            )


def test_precision_drift_against_earlier_baseline(db_url):
    rule = _version(db_url, source=RuleSource.MANUAL)
    _seed_points(
        db_url,
        rule.id,
        {date(2025, 3, 3): 0.9, date(2025, 3, 10): 0.9, date(2025, 3, 17): 0.72},
    )
    with session_scope(database_url=db_url) as s:
        drift = detect_precision_drift(s, ORG, rule.id, today=date(2025, 3, 20))
        recent = get_rule_effectiveness(s, ORG, rule.id, days_since=5, today=date(2025, 3, 20))

    assert drift is not None
    assert drift.baseline_precision == pytest.approx(0.9)
    assert drift.latest_precision == pytest.approx(0.72)
    assert drift.change_percentage == pytest.approx(20.0)
    assert drift.drifted
    assert [p.measurement_date for p in recent] == [date(2025, 3, 17)]


def test_small_drop_is_not_drift_and_single_point_is_none(db_url):
    rule = _version(db_url, source=RuleSource.MANUAL)
    _seed_points(db_url, rule.id, {date(2025, 3, 10): 0.9})
    with session_scope(database_url=db_url) as s:
        assert detect_precision_drift(s, ORG, rule.id, today=date(2025, 3, 20)) is None

    _seed_points(db_url, rule.id, {date(2025, 3, 17): 0.85})
    with session_scope(database_url=db_url) as s:
        drift = detect_precision_drift(s, ORG, rule.id, today=date(2025, 3, 20))
    assert drift is not None
    assert not drift.drifted


# ---- concurrent writers ------------------------------------------------------


def _in_step(n: int):
    """Wrap ``fn`` so that ``n`` worker threads start it together."""

    barrier = threading.Barrier(n, timeout=30)

    def wrap(fn):
        def run(arg):
            barrier.wait()
            return fn(arg)

        return run

    return wrap


def test_concurrent_creates_keep_versions_sequential(db_url):
    n = 8
    created = p_map(range(n), _in_step(n)(lambda _i: _version(db_url)), concurrency=n)

    by_version = {v.version: v for v in created}
    assert sorted(by_version) == list(range(1, n + 1))
    assert by_version[1].parent_version_id is None
    for k in range(2, n + 1):
        assert by_version[k].parent_version_id == by_version[k - 1].id


def test_concurrent_promote_and_rollback_leave_one_active_version(db_url):
    _seed_acme_history(db_url)
    v1 = _version(db_url)
    v2 = _version(db_url)
    assert _canary(db_url, v1.id).passed_threshold
    assert _canary(db_url, v2.id).passed_threshold
    promote_rule_version(v1.id, promoted_by="admin", database_url=db_url)

    def act(op: tuple[str, str]):
        kind, rule_version_id = op
        if kind == "promote":
            return promote_rule_version(rule_version_id, promoted_by="admin", database_url=db_url)
        return rollback_rule_version(
            rule_version_id, rolled_back_by="admin", reason="race", database_url=db_url
        )

    ops = [("promote", v2.id), ("rollback", v2.id), ("promote", v1.id)] * 3
    p_map(ops, _in_step(len(ops))(act), concurrency=len(ops))

    assert _active_count(db_url) == 1
    with session_scope(database_url=db_url) as s:
        (active,) = get_active_rule_versions(s, ORG, RuleType.VENDOR)
    assert active.id in (v1.id, v2.id)


def test_concurrent_resolvers_have_a_single_winner(db_url):
    tx_id = seed_transaction(db_url, category_id=OFFICE)
    with session_scope(database_url=db_url) as s:
        for cat in (MARKETING, OFFICE, MARKETING):
            out = record_correction(s, org_id=ORG, tx_id=tx_id, new_category_id=cat)
    assert out.oscillation_id is not None

    def resolve(who: str) -> bool:
        with session_scope(database_url=db_url) as s:
            return resolve_oscillation(
                s, out.oscillation_id, resolution_category_id=MARKETING, resolved_by=who
            )

    resolvers = ["a", "b", "c", "d", "e", "f"]
    wins = p_map(resolvers, _in_step(len(resolvers))(resolve), concurrency=len(resolvers))

    assert wins.count(True) == 1
    with session_scope(database_url=db_url) as s:
        assert get_unresolved_oscillations(s, ORG) == []
