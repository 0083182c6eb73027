"""Signal extractors.

Each extractor looks at one kind of evidence (MCC, vendor name, keywords,
embedding similarity) and returns zero or more :class:`Signal` values. The
extractors are independent of each other; an unmatched transaction yields an
empty list, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .config import ScoringConstants
from .embeddings import EmbeddingIndex
from .logging_setup import get_logger
from .models import NormalizedTransaction, Signal, SignalMetadata, SignalStrength, SignalType
from .rules.keywords import keyword_confidence, match_keyword_rules
from .rules.mcc import MccStrength, normalize_mcc
from .rules.tables import RuleTables
from .rules.vendors import VendorMatchType, VendorPattern, matches, normalize_vendor_name

_logger = get_logger("txn_categorizer.signals")

_EMBEDDING_SIMILARITY_FLOOR: float = 0.7
_EMBEDDING_CONFIDENCE_SCALE: float = 0.3


@dataclass(frozen=True, slots=True)
class SignalContext:
    """Read-only collaborators shared by every extractor call."""

    tables: RuleTables = field(default_factory=RuleTables.default)
    constants: ScoringConstants = field(default_factory=ScoringConstants)
    embedding_index: EmbeddingIndex | None = None


def create_signal(
    type: SignalType,
    category_id: str,
    category_name: str,
    strength: SignalStrength,
    base_confidence: float,
    source: str,
    details: str,
    matched_terms: tuple[str, ...] | None = None,
    *,
    constants: ScoringConstants | None = None,
) -> Signal:
    """Build a signal, scaling ``base_confidence`` by the strength modifier.

    ``confidence = min(max_signal_confidence, base * modifier)`` and
    ``weight`` is the class weight of ``type``.
    """

    c = constants or ScoringConstants()
    confidence = min(c.max_signal_confidence, max(0.0, base_confidence) * c.modifier_for(strength))
    return Signal(
        type=type,
        category_id=category_id,
        category_name=category_name,
        strength=strength,
        confidence=confidence,
        weight=c.weight_for(type),
        metadata=SignalMetadata(source=source, details=details, matched_terms=matched_terms),
    )


def extract_mcc_signals(tx: NormalizedTransaction, ctx: SignalContext) -> list[Signal]:
    code = normalize_mcc(tx.mcc)
    if code is None:
        return []
    mapping = ctx.tables.mcc.get(code)
    if mapping is None:
        return []
    strength = SignalStrength.EXACT if mapping.strength is MccStrength.EXACT else SignalStrength.STRONG
    return [
        create_signal(
            SignalType.MCC,
            mapping.category_id,
            mapping.category_name,
            strength,
            mapping.base_confidence,
            f"mcc:{code}",
            f"MCC {code} → {mapping.category_name} ({mapping.strength})",
            constants=ctx.constants,
        )
    ]


def extract_vendor_signals(tx: NormalizedTransaction, ctx: SignalContext) -> list[Signal]:
    """One signal per matched category; the highest-priority hit speaks for it."""

    texts = [
        normalize_vendor_name(t)
        for t in (tx.merchant_name or "", tx.description or "")
        if t and t.strip()
    ]
    if not texts:
        return []

    best: dict[str, VendorPattern] = {}
    for pattern in ctx.tables.vendors:
        if not any(matches(pattern, t) for t in texts):
            continue
        current = best.get(pattern.category_id)
        if current is None or pattern.priority > current.priority:
            best[pattern.category_id] = pattern

    out: list[Signal] = []
    for pattern in best.values():
        strength = (
            SignalStrength.EXACT
            if pattern.match_type is VendorMatchType.EXACT
            else SignalStrength.STRONG
        )
        out.append(
            create_signal(
                SignalType.VENDOR,
                pattern.category_id,
                pattern.category_name,
                strength,
                pattern.confidence,
                f"vendor:{pattern.pattern}",
                f"Vendor pattern '{pattern.pattern}' ({pattern.match_type}) → {pattern.category_name}",
                (pattern.pattern,),
                constants=ctx.constants,
            )
        )
    return out


def extract_keyword_signals(tx: NormalizedTransaction, ctx: SignalContext) -> list[Signal]:
    """Best keyword rule per category (by ``weight × matched``) as medium signals."""

    text = f"{tx.description} {tx.merchant_name or ''}"
    found = match_keyword_rules(text, ctx.tables.keywords, ctx.tables.keyword_penalties)
    if not found:
        return []

    best = {}
    for m in found:
        cur = best.get(m.rule.category_id)
        if cur is None or m.score > cur.score:
            best[m.rule.category_id] = m

    out: list[Signal] = []
    for m in best.values():
        conf = keyword_confidence(m, ctx.tables.keyword_penalties)
        details = f"keywords: [{', '.join(m.matched)}] → {m.rule.category_name}"
        if m.penalized:
            details += f"; penalties: [{', '.join(m.penalized)}]"
        out.append(
            create_signal(
                SignalType.KEYWORD,
                m.rule.category_id,
                m.rule.category_name,
                SignalStrength.MEDIUM,
                conf,
                "keywords",
                details,
                m.matched,
                constants=ctx.constants,
            )
        )
    return out


def extract_embedding_signals(tx: NormalizedTransaction, ctx: SignalContext) -> list[Signal]:
    if ctx.embedding_index is None:
        return []
    query = tx.merchant_name or tx.description
    if not query or not query.strip():
        return []
    try:
        found = ctx.embedding_index.lookup(query, max_results=1)
    except Exception as e:  # noqa: BLE001
        _logger.warning(
            "signals:embedding_lookup_failed tx_id=%s error=%s", tx.id, e.__class__.__name__
        )
        return []
    out: list[Signal] = []
    for m in found:
        if m.similarity <= _EMBEDDING_SIMILARITY_FLOOR:
            continue
        out.append(
            create_signal(
                SignalType.EMBEDDING,
                m.category_id,
                m.category_name,
                SignalStrength.WEAK,
                m.similarity * _EMBEDDING_CONFIDENCE_SCALE,
                f"embedding:{m.vendor}",
                f"Similar to vendor '{m.vendor}' (similarity: {m.similarity:.3f})",
                constants=ctx.constants,
            )
        )
    return out


def extract_signals(tx: NormalizedTransaction, ctx: SignalContext) -> list[Signal]:
    signals = [
        *extract_mcc_signals(tx, ctx),
        *extract_vendor_signals(tx, ctx),
        *extract_keyword_signals(tx, ctx),
        *extract_embedding_signals(tx, ctx),
    ]
    _logger.debug("signals:extracted tx_id=%s count=%d", tx.id, len(signals))
    return signals


__all__ = [
    "SignalContext",
    "create_signal",
    "extract_embedding_signals",
    "extract_keyword_signals",
    "extract_mcc_signals",
    "extract_signals",
    "extract_vendor_signals",
]
