"""Immutable bundle of rule tables injected into every Pass-1 call."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ..logging_setup import get_logger
from ..models import RuleType
from ..taxonomy import Taxonomy
from .keywords import DEFAULT_KEYWORD_PENALTIES, DEFAULT_KEYWORD_RULES, KeywordRule
from .mcc import DEFAULT_MCC_FAMILIES, DEFAULT_MCC_TABLE, MccMapping, MccStrength, normalize_mcc
from .vendors import DEFAULT_VENDOR_PATTERNS, VendorMatchType, VendorPattern, normalize_vendor_name

_logger = get_logger("txn_categorizer.rules")

# Learned/manual overrides outrank every shipped vendor pattern.
_OVERRIDE_PRIORITY = 1000
_OVERRIDE_KEYWORD_WEIGHT = 6.0


@dataclass(frozen=True, slots=True)
class ActiveRule:
    """The subset of a rule-version row needed to overlay it onto the tables."""

    rule_type: RuleType
    rule_identifier: str
    category_id: str
    confidence: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RuleTables:
    mcc: Mapping[str, MccMapping]
    mcc_families: tuple[frozenset[str], ...]
    vendors: tuple[VendorPattern, ...]
    keywords: tuple[KeywordRule, ...]
    keyword_penalties: Mapping[str, float]

    @classmethod
    def default(cls) -> RuleTables:
        return cls(
            mcc=MappingProxyType(dict(DEFAULT_MCC_TABLE)),
            mcc_families=DEFAULT_MCC_FAMILIES,
            vendors=DEFAULT_VENDOR_PATTERNS,
            keywords=DEFAULT_KEYWORD_RULES,
            keyword_penalties=MappingProxyType(dict(DEFAULT_KEYWORD_PENALTIES)),
        )

    def with_rule_versions(
        self, rules: Iterable[ActiveRule], *, taxonomy: Taxonomy | None = None
    ) -> RuleTables:
        """Return a copy with active rule versions layered over the static tables.

        - ``mcc``: replaces the mapping for that code with an ``exact`` one.
        - ``vendor``: a top-priority ``contains`` pattern on the identifier, or a
          ``regex`` pattern when ``metadata["pattern"]`` is set; shipped patterns
          with the same text are dropped.
        - ``keyword``: a single-keyword rule placed ahead of the shipped rules.
        - ``embedding``: no table representation; ignored here.
        """

        tax = taxonomy or Taxonomy.default()
        mcc = dict(self.mcc)
        vendors: list[VendorPattern] = []
        keywords: list[KeywordRule] = []
        overridden_vendor_texts: set[str] = set()
        applied = 0

        for rule in rules:
            name = tax.name_of(rule.category_id)
            conf = float(rule.confidence)
            if rule.rule_type is RuleType.MCC:
                code = normalize_mcc(rule.rule_identifier)
                if code is None:
                    _logger.warning(
                        "rules:skip_invalid_mcc identifier=%s", rule.rule_identifier
                    )
                    continue
                mcc[code] = MccMapping(
                    category_id=rule.category_id,
                    category_name=name,
                    strength=MccStrength.EXACT,
                    base_confidence=conf,
                )
            elif rule.rule_type is RuleType.VENDOR:
                regex = (rule.metadata or {}).get("pattern")
                if regex:
                    pattern = VendorPattern(
                        pattern=str(regex),
                        match_type=VendorMatchType.REGEX,
                        category_id=rule.category_id,
                        category_name=name,
                        confidence=conf,
                        priority=_OVERRIDE_PRIORITY,
                    )
                else:
                    text = normalize_vendor_name(rule.rule_identifier)
                    overridden_vendor_texts.add(text)
                    pattern = VendorPattern(
                        pattern=text,
                        match_type=VendorMatchType.CONTAINS,
                        category_id=rule.category_id,
                        category_name=name,
                        confidence=conf,
                        priority=_OVERRIDE_PRIORITY,
                    )
                vendors.append(pattern)
            elif rule.rule_type is RuleType.KEYWORD:
                keywords.append(
                    KeywordRule(
                        keywords=(rule.rule_identifier.strip().lower(),),
                        category_id=rule.category_id,
                        category_name=name,
                        confidence=conf,
                        weight=_OVERRIDE_KEYWORD_WEIGHT,
                        domain="learned",
                    )
                )
            else:
                continue
            applied += 1

        kept_vendors = tuple(
            v
            for v in self.vendors
            if normalize_vendor_name(v.pattern) not in overridden_vendor_texts
            or v.match_type is VendorMatchType.REGEX
        )
        _logger.debug("rules:overlay applied=%d", applied)
        return RuleTables(
            mcc=MappingProxyType(mcc),
            mcc_families=self.mcc_families,
            vendors=tuple(vendors) + kept_vendors,
            keywords=tuple(keywords) + self.keywords,
            keyword_penalties=self.keyword_penalties,
        )


__all__ = ["ActiveRule", "RuleTables"]
