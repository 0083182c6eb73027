"""Pass-2: LLM fallback categorization via the OpenAI Responses API.

The client is created per call with the policy's timeout and SDK retries
disabled; retries are owned by :func:`txn_categorizer.retry.call_with_retry`.
The raw model confidence is recalibrated and, when enabled, the generic
guardrails are run on the answer.
"""

from __future__ import annotations

import time
from typing import Any

from openai import OpenAI, OpenAIError

from .calibration import calibrate_llm_confidence
from .config import EngineConfig
from .errors import LlmCategorizationError
from .guardrails import apply_guardrails
from .logging_setup import get_logger
from .models import LlmResult, NormalizedTransaction, Pass1Result
from .prompting import build_prompt, parse_llm_response
from .retry import EmptyResponseError, call_with_retry
from .rules.tables import RuleTables
from .taxonomy import Taxonomy

_logger = get_logger("txn_categorizer.pass2")


def _create_client(timeout_sec: float) -> OpenAI:
    """Build the SDK client; a missing API key surfaces as a Pass-2 failure."""

    try:
        return OpenAI(timeout=timeout_sec, max_retries=0)
    except OpenAIError as e:
        _logger.error("pass2:client_unavailable error=%s", e.__class__.__name__)
        raise LlmCategorizationError(
            f"OpenAI client unavailable: {e}", attempts=0, last_error=e
        ) from e


def _extract_output_text(resp: Any) -> str:
    """Prefer ``resp.output_text``; fall back to ``resp.output[0].content[0].text``."""

    text = getattr(resp, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text
    try:
        fallback = resp.output[0].content[0].text
    except (AttributeError, IndexError, TypeError):
        fallback = None
    if isinstance(fallback, str) and fallback.strip():
        return fallback
    raise EmptyResponseError("LLM response contained no output text")


def categorize_with_llm(
    tx: NormalizedTransaction,
    taxonomy: Taxonomy,
    pass1: Pass1Result | None = None,
    config: EngineConfig | None = None,
    *,
    tables: RuleTables | None = None,
) -> LlmResult:
    """Ask the model for a category and return a calibrated :class:`LlmResult`.

    Parameters
    ----------
    tx:
        Transaction to categorize.
    taxonomy:
        Categories the model may choose from (by slug).
    pass1:
        Pass-1 outcome; its top signals are included in the prompt and its
        confidence decides the strong-corroboration calibration bonus.
    config:
        Engine configuration (model, retry policy, calibration constants).

    Raises
    ------
    LlmCategorizationError
        When the client cannot be built (``attempts == 0``) or every attempt
        allowed by ``config.retry`` failed.
    """

    cfg = config or EngineConfig()
    prompt = build_prompt(tx, taxonomy, pass1)
    client = _create_client(cfg.retry.timeout_sec)

    _logger.info("pass2:llm_call tx_id=%s model=%s", tx.id, cfg.llm_model)
    t0 = time.perf_counter()

    def _call() -> str:
        resp = client.responses.create(
            model=cfg.llm_model,
            instructions=prompt.instructions,
            input=prompt.user_content,
        )
        return _extract_output_text(resp)

    text, attempts = call_with_retry(_call, cfg.retry, label=f"pass2 tx_id={tx.id}")
    latency_ms = (time.perf_counter() - t0) * 1000.0

    parsed = parse_llm_response(text, taxonomy)
    has_strong = pass1 is not None and pass1.confidence >= cfg.strong_pass1_signal_threshold
    calibrated = calibrate_llm_confidence(parsed.confidence, has_strong, cfg.calibration)

    rationale = [
        f"LLM: {parsed.rationale}",
        f"Model: {cfg.llm_model} ({latency_ms:.0f}ms)",
        f"Confidence: raw={parsed.confidence:.3f}, calibrated={calibrated:.3f}",
    ]
    if parsed.fallback_used:
        rationale.append(f"fallback: {parsed.category.slug}")

    category_id = parsed.category.id
    confidence = calibrated
    violations = ()
    if cfg.enable_post_llm_guardrails:
        gr = apply_guardrails(
            tx,
            category_id,
            calibrated,
            tables=tables,
            taxonomy=taxonomy,
            config=cfg.guardrails,
        )
        violations = gr.violations
        if gr.violations:
            rationale.append("guardrails: " + "; ".join(v.reason for v in gr.violations))
        if gr.allowed and gr.final_confidence is not None:
            confidence = gr.final_confidence
        elif not gr.allowed:
            # Keep the answer but mark it as the weakest possible LLM result.
            confidence = cfg.calibration.llm_floor
            rationale.append("guardrails_rejected: confidence reduced to floor")

    _logger.info(
        "pass2:llm_done tx_id=%s category=%s raw=%.3f calibrated=%.3f attempts=%d latency_ms=%.2f",
        tx.id,
        parsed.category.slug,
        parsed.confidence,
        confidence,
        attempts,
        latency_ms,
    )
    return LlmResult(
        category_id=category_id,
        confidence=confidence,
        raw_confidence=parsed.confidence,
        rationale=tuple(rationale),
        attempts=attempts,
        model=cfg.llm_model,
        violations=tuple(violations),
        attributes=parsed.attributes,
    )


__all__ = ["categorize_with_llm"]
