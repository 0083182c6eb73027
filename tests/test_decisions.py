# ruff: noqa: I001
from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import func, select

from db.client import session_scope
from db.models.categorizer import Decision, Transaction

from txn_categorizer.decisions import DecisionRequest, batch_decide_and_apply, decide_and_apply
from txn_categorizer.errors import TransactionNotFoundError, UnauthorizedTransactionError
from txn_categorizer.models import CategorizationResult, DecisionSource, ReviewReason
from txn_categorizer.taxonomy import default_id

from tests.helpers.db import ORG, OTHER_ORG, bootstrap_sqlite_db, seed_transaction

SOFTWARE = default_id("software_subscriptions")
OFFICE = default_id("office_admin")


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "decisions.db")


def _result(category_id: str | None, confidence: float) -> CategorizationResult:
    return CategorizationResult(category_id=category_id, confidence=confidence, rationale=("why",))


def _decisions_for(url: str, tx_id: str) -> list[Decision]:
    with session_scope(database_url=url) as s:
        return list(s.scalars(select(Decision).where(Decision.tx_id == tx_id)).all())


def test_confident_result_is_applied(db_url):
    tx_id = seed_transaction(db_url, description="Slack")
    with session_scope(database_url=db_url) as s:
        out = decide_and_apply(
            s, tx_id, _result(SOFTWARE, 0.9), DecisionSource.PASS1, org_id=ORG, decided_by="worker"
        )
    assert out.applied
    assert not out.needs_review
    assert out.reason is None

    with session_scope(database_url=db_url) as s:
        tx = s.get(Transaction, tx_id)
        assert tx.category_id == SOFTWARE
        assert tx.confidence == pytest.approx(0.9)
        assert tx.needs_review is False

    (row,) = _decisions_for(db_url, tx_id)
    assert row.id == out.decision_id
    assert row.source == "pass1"
    assert row.rationale == ["why"]
    assert row.reason is None
    assert row.decided_by == "worker"


def test_threshold_is_inclusive(db_url):
    tx_id = seed_transaction(db_url)
    with session_scope(database_url=db_url) as s:
        out = decide_and_apply(s, tx_id, _result(SOFTWARE, 0.85), DecisionSource.LLM, org_id=ORG)
    assert out.applied


def test_low_confidence_is_stored_tentatively_for_review(db_url):
    tx_id = seed_transaction(db_url)
    with session_scope(database_url=db_url) as s:
        out = decide_and_apply(s, tx_id, _result(SOFTWARE, 0.6), DecisionSource.LLM, org_id=ORG)
    assert not out.applied
    assert out.needs_review
    assert out.reason is ReviewReason.LOW_CONFIDENCE

    with session_scope(database_url=db_url) as s:
        tx = s.get(Transaction, tx_id)
        assert tx.category_id == SOFTWARE
        assert tx.needs_review is True
    (row,) = _decisions_for(db_url, tx_id)
    assert row.reason == "low_confidence"
    assert row.source == "llm"


def test_missing_category_keeps_existing_and_flags_no_confidence(db_url):
    tx_id = seed_transaction(db_url, category_id=OFFICE, confidence=0.4)
    with session_scope(database_url=db_url) as s:
        out = decide_and_apply(s, tx_id, _result(None, 0.0), DecisionSource.PASS1, org_id=ORG)
    assert out.reason is ReviewReason.NO_CONFIDENCE
    with session_scope(database_url=db_url) as s:
        tx = s.get(Transaction, tx_id)
        assert tx.category_id == OFFICE
        assert tx.confidence == 0.0
        assert tx.needs_review is True


def test_foreign_org_is_rejected_before_any_write(db_url):
    tx_id = seed_transaction(db_url, org_id=OTHER_ORG)
    with pytest.raises(UnauthorizedTransactionError), session_scope(database_url=db_url) as s:
        decide_and_apply(s, tx_id, _result(SOFTWARE, 0.9), DecisionSource.PASS1, org_id=ORG)

    assert _decisions_for(db_url, tx_id) == []
    with session_scope(database_url=db_url) as s:
        assert s.get(Transaction, tx_id).category_id is None


def test_unknown_transaction_raises(db_url):
    with pytest.raises(TransactionNotFoundError), session_scope(database_url=db_url) as s:
        decide_and_apply(s, "nope", _result(SOFTWARE, 0.9), DecisionSource.PASS1, org_id=ORG)


def test_batch_continues_past_failures(db_url):
    good = seed_transaction(db_url)
    foreign = seed_transaction(db_url, org_id=OTHER_ORG)
    requests = [
        DecisionRequest(tx_id=foreign, result=_result(SOFTWARE, 0.9), source=DecisionSource.PASS1),
        DecisionRequest(tx_id=good, result=_result(SOFTWARE, 0.9), source=DecisionSource.PASS1),
        DecisionRequest(tx_id="missing", result=_result(SOFTWARE, 0.9), source=DecisionSource.LLM),
    ]
    out = batch_decide_and_apply(requests, org_id=ORG, database_url=db_url)

    assert out.successful == 1
    assert [f.tx_id for f in out.failed] == [foreign, "missing"]
    assert out.failed[0].error == "Unauthorized access to transaction"
    assert "missing" in out.failed[1].error

    with session_scope(database_url=db_url) as s:
        assert s.scalar(select(func.count()).select_from(Decision)) == 1
