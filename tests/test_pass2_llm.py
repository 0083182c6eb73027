# ruff: noqa: I001
from __future__ import annotations

import json
from typing import Any

import pytest
from openai import OpenAIError

import txn_categorizer.pass2 as pass2_mod
import txn_categorizer.retry as retry_mod
from txn_categorizer.calibration import calibrate_llm_confidence
from txn_categorizer.config import EngineConfig, RetryPolicy
from txn_categorizer.errors import LlmCategorizationError
from txn_categorizer.models import NormalizedTransaction
from txn_categorizer.pass2 import categorize_with_llm
from txn_categorizer.prompting import build_prompt, parse_llm_response, serialize_transaction
from txn_categorizer.retry import call_with_retry, is_retryable
from txn_categorizer.taxonomy import Taxonomy, default_id

from tests.helpers.openai_stub import OpenAIStub, StatusError, extract_transaction

TAX = Taxonomy.default()


def _tx(**kw) -> NormalizedTransaction:
    base = {
        "id": "t-42",
        "org_id": "org",
        "date": "2025-02-01",
        "amount_cents": "-2500",
        "description": "Notion Labs monthly",
        "merchant_name": "Notion",
    }
    base.update(kw)
    return NormalizedTransaction(**base)


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    out: list[float] = []
    monkeypatch.setattr(retry_mod, "_sleep_backoff", out.append)
    return out


def _install(monkeypatch: pytest.MonkeyPatch, decide) -> OpenAIStub:
    stub = OpenAIStub(decide)
    monkeypatch.setattr(pass2_mod, "OpenAI", stub)
    return stub


# ---- prompting ---------------------------------------------------------------


def test_prompt_embeds_transaction_json_with_dollar_amount():
    prompt = build_prompt(_tx(), TAX)
    payload = extract_transaction(prompt.user_content)
    assert list(payload) == ["id", "date", "description", "merchant_name", "amount", "currency", "mcc"]
    assert payload["amount"] == "-25.00"
    assert "- software_subscriptions:" in prompt.user_content
    assert "PASS-1 CONTEXT: none" in prompt.user_content
    assert "JSON" in prompt.instructions


def test_serialize_transaction_is_stable():
    assert serialize_transaction(_tx()) == serialize_transaction(_tx())


def test_parse_accepts_fenced_json_and_clamps_confidence():
    text = 'Sure!\n```json\n{"category_slug": "Marketing_Ads", "confidence": 1.02, "rationale": "ads"}\n```'
    parsed = parse_llm_response(text, TAX)
    assert parsed.category.slug == "marketing_ads"
    assert parsed.confidence == 1.0
    assert not parsed.fallback_used


@pytest.mark.parametrize(
    "text",
    [
        "not json at all",
        json.dumps({"confidence": 0.9}),
        json.dumps({"category_slug": "crypto_mining", "confidence": 0.9}),
    ],
)
def test_unusable_answers_fall_back_to_neutral_category(text):
    parsed = parse_llm_response(text, TAX)
    assert parsed.fallback_used
    assert parsed.category.slug == "other_ops"
    assert parsed.confidence == 0.5


# ---- categorize_with_llm -----------------------------------------------------


def test_llm_answer_is_calibrated(monkeypatch, sleeps):
    stub = _install(monkeypatch, lambda tx: ("software_subscriptions", 0.9, "Workspace SaaS"))
    cfg = EngineConfig(llm_model="test-model")

    res = categorize_with_llm(_tx(), TAX, None, cfg)

    assert res.category_id == default_id("software_subscriptions")
    assert res.raw_confidence == pytest.approx(0.9)
    assert res.confidence == pytest.approx(calibrate_llm_confidence(0.9, False))
    assert res.attempts == 1
    assert res.model == "test-model"
    assert res.rationale[0] == "LLM: Workspace SaaS"
    assert stub.calls[0]["model"] == "test-model"
    assert stub.init_kwargs == {"timeout": 5.0, "max_retries": 0}
    assert sleeps == []


def test_guardrail_rejection_reduces_llm_confidence_to_floor(monkeypatch, sleeps):
    _install(monkeypatch, lambda tx: ("software_subscriptions", 0.95, "saas"))
    cfg = EngineConfig()

    res = categorize_with_llm(_tx(mcc="7230"), TAX, None, cfg)

    assert res.category_id == default_id("software_subscriptions")
    assert res.confidence == pytest.approx(cfg.calibration.llm_floor)
    assert "guardrails_rejected: confidence reduced to floor" in res.rationale
    assert res.violations


def test_transient_failure_is_retried_with_backoff(monkeypatch, sleeps):
    seen: list[int] = []

    def decide(tx: dict[str, Any]):
        seen.append(1)
        if len(seen) == 1:
            raise StatusError(503)
        return ("software_subscriptions", 0.8, "ok")

    _install(monkeypatch, decide)
    res = categorize_with_llm(_tx(), TAX, None, EngineConfig())
    assert res.attempts == 2
    assert sleeps == [1.0]


def test_exhausted_retries_raise_with_attempt_count(monkeypatch, sleeps):
    def decide(tx: dict[str, Any]):
        raise StatusError(429)

    _install(monkeypatch, decide)
    cfg = EngineConfig(retry=RetryPolicy(max_retries=2, backoff_base_sec=1.0))
    with pytest.raises(LlmCategorizationError) as ei:
        categorize_with_llm(_tx(), TAX, None, cfg)
    assert ei.value.attempts == 3
    assert isinstance(ei.value.last_error, StatusError)
    assert sleeps == [1.0, 2.0]


def test_client_errors_are_not_retried(monkeypatch, sleeps):
    def decide(tx: dict[str, Any]):
        raise StatusError(400)

    _install(monkeypatch, decide)
    with pytest.raises(LlmCategorizationError) as ei:
        categorize_with_llm(_tx(), TAX, None, EngineConfig())
    assert ei.value.attempts == 1
    assert sleeps == []


def test_empty_output_counts_as_retryable_failure(monkeypatch, sleeps):
    _install(monkeypatch, lambda tx: "   ")
    cfg = EngineConfig(retry=RetryPolicy(max_retries=1, backoff_base_sec=0.5))
    with pytest.raises(LlmCategorizationError) as ei:
        categorize_with_llm(_tx(), TAX, None, cfg)
    assert ei.value.attempts == 2
    assert sleeps == [0.5]


def test_missing_api_key_raises_before_any_attempt(monkeypatch, sleeps):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(LlmCategorizationError) as ei:
        categorize_with_llm(_tx(), TAX, None, EngineConfig())
    assert ei.value.attempts == 0
    assert isinstance(ei.value.last_error, OpenAIError)
    assert sleeps == []


# ---- retry primitives --------------------------------------------------------


def test_retry_policy_schedule():
    policy = RetryPolicy(max_retries=3, backoff_base_sec=2.0)
    assert policy.max_attempts == 4
    assert [policy.delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_is_retryable_classification():
    assert is_retryable(StatusError(500))
    assert is_retryable(StatusError(429))
    assert is_retryable(TimeoutError())
    assert not is_retryable(StatusError(404))
    assert not is_retryable(ValueError("bad"))


def test_call_with_retry_returns_value_and_attempts(sleeps):
    value, attempts = call_with_retry(lambda: "ok", RetryPolicy())
    assert (value, attempts) == ("ok", 1)
