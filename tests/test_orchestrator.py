from __future__ import annotations

import dataclasses

import pytest

from txn_categorizer.config import EngineConfig
from txn_categorizer.errors import LlmCategorizationError
from txn_categorizer.models import Engine, HybridStage, LlmResult, NormalizedTransaction
from txn_categorizer.orchestrator import FAILED_RATIONALE, batch_categorize, categorize_transaction
from txn_categorizer.pass1 import CategorizerContext, categorize_pass1
from txn_categorizer.taxonomy import default_id


def _tx(tx_id: str = "t1", **kw) -> NormalizedTransaction:
    base = {"id": tx_id, "org_id": "org", "date": "2025-03-03", "amount_cents": "-2500"}
    base.update(kw)
    return NormalizedTransaction(**base)


def _llm_returning(slug: str, confidence: float, calls: list[str] | None = None):
    def _llm(tx, pass1, ctx):
        if calls is not None:
            calls.append(tx.id)
        return LlmResult(
            category_id=default_id(slug),
            confidence=confidence,
            raw_confidence=confidence,
            rationale=(f"LLM: picked {slug}",),
            attempts=1,
            model="fake",
        )

    return _llm


def _llm_failing(tx, pass1, ctx):
    raise LlmCategorizationError("down", attempts=2, last_error=TimeoutError())


def _llm_forbidden(tx, pass1, ctx):
    raise AssertionError("LLM must not be called")


# ---- pass1 -------------------------------------------------------------------


def test_hair_salon_mcc_alone_is_confident():
    res = categorize_pass1(_tx(mcc="7230"))
    assert res.category_id == default_id("hair_beauty_services")
    assert len(res.signals) == 1
    assert res.confidence > 0.8


def test_no_signals_gives_no_category_and_zero_confidence():
    res = categorize_pass1(_tx(description="zzqx"))
    assert res.category_id is None
    assert res.confidence == 0.0
    assert res.rationale == ("No categorization signals found",)


def test_mcc_and_vendor_together_beat_either_alone():
    both = categorize_pass1(_tx(mcc="7372", merchant_name="Slack"))
    mcc_only = categorize_pass1(_tx(mcc="7372"))
    vendor_only = categorize_pass1(_tx(merchant_name="Slack"))
    assert both.category_id == default_id("software_subscriptions")
    assert both.confidence > mcc_only.confidence
    assert both.confidence > vendor_only.confidence


# ---- hybrid ------------------------------------------------------------------


def test_confident_pass1_skips_llm():
    res = categorize_transaction(_tx(mcc="7230"), llm=_llm_forbidden)
    assert res.engine is Engine.PASS1
    assert not res.llm_attempted
    assert res.category_id == default_id("hair_beauty_services")
    assert res.stages == (
        HybridStage.PASS1_RUN,
        HybridStage.ACCEPT_PASS1,
        HybridStage.GUARDRAIL,
        HybridStage.DONE,
    )
    assert res.timings.pass2_ms is None


def test_llm_fills_in_when_pass1_has_nothing():
    res = categorize_transaction(
        _tx(description="zzqx"), llm=_llm_returning("software_subscriptions", 0.7)
    )
    assert res.engine is Engine.LLM
    assert res.llm_attempted
    assert res.category_id == default_id("software_subscriptions")
    assert res.confidence == pytest.approx(0.7)
    assert HybridStage.RUN_PASS2 in res.stages
    assert HybridStage.RECONCILE in res.stages
    assert res.timings.pass2_ms is not None


def test_reconcile_keeps_more_confident_pass1():
    tx = _tx(description="Monthly payroll run")
    p1 = categorize_pass1(tx)
    assert p1.category_id == default_id("labor_payroll")
    assert p1.confidence < EngineConfig().hybrid_threshold

    res = categorize_transaction(tx, llm=_llm_returning("other_ops", p1.confidence))
    assert res.engine is Engine.PASS1
    assert res.llm_attempted
    assert res.category_id == default_id("labor_payroll")
    assert any(r.startswith("reconcile: kept pass1") for r in res.rationale)


def test_llm_failure_falls_back_to_pass1_category():
    res = categorize_transaction(_tx(description="Monthly payroll run"), llm=_llm_failing)
    assert res.engine is Engine.PASS1
    assert res.category_id == default_id("labor_payroll")
    assert "llm: failed, using pass1 result" in res.rationale


def test_llm_failure_without_pass1_needs_manual_review():
    res = categorize_transaction(_tx(description="zzqx"), llm=_llm_failing)
    assert res.category_id is None
    assert res.confidence == 0.0
    assert res.rationale == (FAILED_RATIONALE,)
    assert res.llm_attempted
    assert res.stages[-1] is HybridStage.DONE


def test_disabled_llm_returns_pass1_as_is():
    ctx = CategorizerContext(config=dataclasses.replace(EngineConfig(), enable_llm_fallback=False))
    res = categorize_transaction(_tx(description="zzqx"), ctx, llm=_llm_forbidden)
    assert res.category_id is None
    assert not res.llm_attempted
    assert res.rationale[-1] == "llm: disabled"


def test_domain_guardrail_redirects_llm_revenue_for_refund():
    tx = _tx(description="Refund order 1001", amount_cents="4500")
    res = categorize_transaction(tx, llm=_llm_returning("sales_revenue", 0.8))
    assert res.engine is Engine.LLM
    assert res.category_id == default_id("refunds_contra")
    assert res.confidence == pytest.approx(0.4)
    assert "guardrail: Refund/return cannot map to positive revenue" in res.rationale


# ---- batch -------------------------------------------------------------------


def test_batch_preserves_order_and_isolates_failures():
    calls: list[str] = []
    ok_llm = _llm_returning("office_admin", 0.7, calls)

    def llm(tx, pass1, ctx):
        if tx.id == "boom":
            raise RuntimeError("unexpected")
        return ok_llm(tx, pass1, ctx)

    txs = [
        _tx("a", mcc="7230"),
        _tx("boom", description="zzqx"),
        _tx("c", description="zzqx"),
    ]
    out = batch_categorize(txs, llm=llm, concurrency=2)

    assert [i.tx_id for i in out.items] == ["a", "boom", "c"]
    assert out.items[1].result is None
    assert "unexpected" in (out.items[1].error or "")
    assert out.items[2].result is not None
    assert out.items[2].result.engine is Engine.LLM
    assert calls == ["c"]

    s = out.summary
    assert s.total == 3
    assert s.pass1_only == 1
    assert s.llm_used == 1
    assert s.failed == 1
    assert 0.0 < s.avg_confidence <= 1.0


def test_batch_rejects_invalid_concurrency():
    with pytest.raises(ValueError):
        batch_categorize([_tx()], concurrency=0)


def test_missing_api_key_falls_back_to_pass1(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    res = categorize_transaction(_tx(description="Monthly payroll run"))
    assert res.llm_attempted
    assert res.engine is Engine.PASS1
    assert res.category_id == default_id("labor_payroll")
    assert "llm: failed, using pass1 result" in res.rationale
