"""Prompt construction and response parsing for Pass-2.

The user content embeds the transaction as a JSON object between
``BEGIN_TRANSACTION_JSON`` / ``END_TRANSACTION_JSON`` markers, followed by the
allowed category list and up to three Pass-1 signals as context. The model is
asked to reply with one JSON object; :func:`parse_llm_response` is tolerant of
markdown fences and surrounding prose.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .models import LlmDecision, NormalizedTransaction, Pass1Result
from .money import dollars, parse_cents
from .taxonomy import Category, Taxonomy

BEGIN = "BEGIN_TRANSACTION_JSON\n"
END = "\nEND_TRANSACTION_JSON"

TX_FIELD_ORDER: tuple[str, ...] = (
    "id",
    "date",
    "description",
    "merchant_name",
    "amount",
    "currency",
    "mcc",
)

_MAX_PASS1_SIGNALS = 3
_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_NEUTRAL_CONFIDENCE = 0.5


@dataclass(frozen=True, slots=True)
class Prompt:
    instructions: str
    user_content: str


@dataclass(frozen=True, slots=True)
class ParsedLlmResponse:
    category: Category
    confidence: float
    rationale: str
    attributes: dict[str, Any] | None
    fallback_used: bool


def serialize_transaction(tx: NormalizedTransaction) -> str:
    """Serialize ``tx`` with a fixed field order; the amount is shown in dollars."""

    try:
        amount = f"{dollars(parse_cents(tx.amount_cents))}"
    except ValueError:
        amount = tx.amount_cents
    values = {
        "id": tx.id,
        "date": tx.date,
        "description": tx.description,
        "merchant_name": tx.merchant_name,
        "amount": amount,
        "currency": tx.currency,
        "mcc": tx.mcc,
    }
    return json.dumps({k: values[k] for k in TX_FIELD_ORDER}, ensure_ascii=False)


def build_system_instructions() -> str:
    return (
        "You are a financial categorization expert for small e-commerce and service "
        "businesses. Assign the transaction to exactly one category from the provided "
        "list, chosen by the PURPOSE of the spend or income. Vendor names are not "
        "categories; report them as attributes. Payment processors (Stripe, PayPal, "
        "Square) charging fees map to payment_processing_fees; ad platforms map to "
        "marketing_ads; software vendors map to software_subscriptions. Refunds and "
        "returns are never revenue. If truly unclear, use other_ops. Respond with a "
        "single JSON object only, no prose and no markdown."
    )


def _category_lines(taxonomy: Taxonomy) -> str:
    lines = []
    for c in taxonomy:
        line = f'- {c.slug}: "{c.name}" ({c.type})'
        if c.attribute_schema:
            line += f" attributes: {', '.join(sorted(c.attribute_schema))}"
        lines.append(line)
    return "\n".join(lines)


def _pass1_section(pass1: Pass1Result | None, taxonomy: Taxonomy) -> str:
    if pass1 is None or not pass1.signals:
        return "PASS-1 CONTEXT: none (no rule signals matched)"
    top = sorted(pass1.signals, key=lambda s: s.confidence, reverse=True)[:_MAX_PASS1_SIGNALS]
    lines = ["PASS-1 CONTEXT (rule signals, may be wrong):"]
    if pass1.category_id is not None:
        cat = taxonomy.get(pass1.category_id)
        slug = cat.slug if cat is not None else pass1.category_id
        lines.append(f"- suggested: {slug} (confidence: {pass1.confidence:.2f})")
    for s in top:
        lines.append(f"- {s.type}: {s.metadata.details} (confidence: {s.confidence:.2f})")
    return "\n".join(lines)


def build_user_content(
    tx: NormalizedTransaction, taxonomy: Taxonomy, pass1: Pass1Result | None = None
) -> str:
    return (
        "TRANSACTION TO CATEGORIZE:\n"
        f"{BEGIN}{serialize_transaction(tx)}{END}\n\n"
        f"{_pass1_section(pass1, taxonomy)}\n\n"
        "AVAILABLE CATEGORIES (use the slug):\n"
        f"{_category_lines(taxonomy)}\n\n"
        "Respond with JSON only:\n"
        '{"category_slug": "<slug>", "confidence": <0..1>, '
        '"attributes": {"key": "value"}, "rationale": "<one sentence>"}'
    )


def build_prompt(
    tx: NormalizedTransaction, taxonomy: Taxonomy, pass1: Pass1Result | None = None
) -> Prompt:
    return Prompt(
        instructions=build_system_instructions(),
        user_content=build_user_content(tx, taxonomy, pass1),
    )


def _extract_json_object(text: str) -> dict[str, Any] | None:
    cleaned = text.strip()
    candidates: list[str] = []
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(cleaned)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start : end + 1])

    for cand in candidates:
        try:
            obj = json.loads(cand)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def parse_llm_response(text: str, taxonomy: Taxonomy) -> ParsedLlmResponse:
    """Decode the model's reply into a category of ``taxonomy``.

    Unparseable replies, invalid fields and unknown slugs resolve to the
    taxonomy's neutral fallback category with confidence 0.5.
    """

    fallback = taxonomy.neutral_fallback
    obj = _extract_json_object(text or "")
    if obj is None:
        return ParsedLlmResponse(
            category=fallback,
            confidence=_NEUTRAL_CONFIDENCE,
            rationale="Failed to parse LLM response",
            attributes=None,
            fallback_used=True,
        )
    try:
        decision = LlmDecision.model_validate(obj)
    except (ValidationError, TypeError, ValueError):
        return ParsedLlmResponse(
            category=fallback,
            confidence=_NEUTRAL_CONFIDENCE,
            rationale="LLM response missing required fields",
            attributes=None,
            fallback_used=True,
        )
    category = taxonomy.by_slug(decision.category_slug)
    if category is None:
        return ParsedLlmResponse(
            category=fallback,
            confidence=_NEUTRAL_CONFIDENCE,
            rationale=f"Unknown category slug '{decision.category_slug}': {decision.rationale}",
            attributes=decision.attributes,
            fallback_used=True,
        )
    return ParsedLlmResponse(
        category=category,
        confidence=decision.confidence,
        rationale=decision.rationale,
        attributes=decision.attributes,
        fallback_used=False,
    )


__all__ = [
    "BEGIN",
    "END",
    "ParsedLlmResponse",
    "Prompt",
    "build_prompt",
    "build_system_instructions",
    "build_user_content",
    "parse_llm_response",
    "serialize_transaction",
]
