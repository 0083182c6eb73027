"""Keyword rules and the generic-term penalty table.

Keywords are matched as whole words/phrases on the lower-cased description and
merchant name; a rule whose ``exclude_keywords`` appear in the text is skipped
entirely, which keeps ``rent`` from firing on ``"car rental"``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache

from ..taxonomy import default_id


@dataclass(frozen=True, slots=True)
class KeywordRule:
    keywords: tuple[str, ...]
    category_id: str
    category_name: str
    confidence: float
    weight: float
    domain: str
    exclude_keywords: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class KeywordMatch:
    rule: KeywordRule
    matched: tuple[str, ...]
    penalized: tuple[str, ...]

    @property
    def score(self) -> float:
        return self.rule.weight * len(self.matched)


# Generic terms that make a keyword hit less trustworthy (deducted from confidence).
DEFAULT_KEYWORD_PENALTIES: Mapping[str, float] = {
    "com": 0.10,
    "inc": 0.05,
    "llc": 0.05,
    "bill": 0.15,
    "payment": 0.10,
    "purchase": 0.10,
    "transaction": 0.15,
}


@lru_cache(maxsize=2048)
def _term_re(term: str) -> re.Pattern[str]:
    return re.compile(r"(?<![a-z0-9])" + re.escape(term.lower()) + r"(?![a-z0-9])")


def contains_term(text: str, term: str) -> bool:
    """Whole-word (or whole-phrase) containment on lower-cased ``text``."""

    return _term_re(term).search(text) is not None


def match_keyword_rules(
    text: str,
    rules: tuple[KeywordRule, ...],
    penalties: Mapping[str, float],
) -> list[KeywordMatch]:
    normalized = text.lower().strip()
    if not normalized:
        return []
    penalized = tuple(k for k in penalties if contains_term(normalized, k))
    out: list[KeywordMatch] = []
    for rule in rules:
        if any(contains_term(normalized, ex) for ex in rule.exclude_keywords):
            continue
        matched = tuple(k for k in rule.keywords if contains_term(normalized, k))
        if matched:
            out.append(KeywordMatch(rule=rule, matched=matched, penalized=penalized))
    return out


def keyword_confidence(match: KeywordMatch, penalties: Mapping[str, float]) -> float:
    """Rule confidence plus a multi-keyword bonus minus generic-term penalties.

    Capped at 0.95 and floored at 0.05 so penalties reduce a hit without
    erasing it.
    """

    bonus = min(0.2, len(match.matched) * 0.05)
    deduction = sum(penalties.get(k, 0.0) for k in match.penalized)
    return min(0.95, max(0.05, match.rule.confidence + bonus - deduction))


def _k(
    keywords: tuple[str, ...],
    slug: str,
    name: str,
    confidence: float,
    weight: float,
    domain: str,
    exclude: tuple[str, ...] = (),
) -> KeywordRule:
    return KeywordRule(
        keywords=keywords,
        category_id=default_id(slug),
        category_name=name,
        confidence=confidence,
        weight=weight,
        domain=domain,
        exclude_keywords=exclude,
    )


_FEES = ("payment_processing_fees", "Payment Processing Fees")
_REFUNDS = ("refunds_contra", "Refunds & Returns")
_SUPPLIER = ("supplier_purchases", "Supplier Purchases")
_PACKAGING = ("packaging", "Packaging")
_SHIPPING = ("shipping_postage", "Shipping & Postage")
_MARKETING = ("marketing_ads", "Marketing & Advertising")
_SOFTWARE = ("software_subscriptions", "Software & Subscriptions")
_LABOR = ("labor_payroll", "Labor & Payroll")
_LOGISTICS = ("operations_logistics", "Operations & Logistics")

DEFAULT_KEYWORD_RULES: tuple[KeywordRule, ...] = (
    # Payment processing
    _k(
        ("processing fee", "transaction fee", "payment fee", "merchant fee", "card fee"),
        *_FEES, 0.90, 5, "payment_processing", ("payout", "deposit", "transfer"),
    ),
    _k(("chargeback fee", "dispute fee", "declined transaction"), *_FEES, 0.92, 5, "payment_disputes"),
    # Payouts
    _k(
        ("payout", "transfer", "deposit", "settlement", "disbursement"),
        "payouts_clearing", "Payouts Clearing", 0.88, 5, "payouts", ("fee", "charge"),
    ),
    # Refunds
    _k(("refund", "return", "chargeback", "reversal", "void"), *_REFUNDS, 0.92, 6, "refunds"),
    _k(("customer return", "order cancellation", "cancelled order"), *_REFUNDS, 0.88, 5, "order_cancellations"),
    # Cost of goods
    _k(
        ("wholesale", "supplier invoice", "purchase order", "po#", "net 30", "net 60"),
        *_SUPPLIER, 0.90, 6, "inventory_purchasing", ("refund", "credit"),
    ),
    _k(("inventory purchase", "product cost", "goods purchased", "merchandise"), *_SUPPLIER, 0.85, 5, "inventory"),
    _k(("alibaba", "aliexpress", "wholesale order", "bulk purchase"), *_SUPPLIER, 0.82, 4, "wholesale_platforms"),
    _k(("packaging", "boxes", "mailers", "poly bags", "bubble wrap", "packing tape"), *_PACKAGING, 0.92, 6, "packaging_materials"),
    _k(("shipping supplies", "packing materials", "cartons", "labels"), *_PACKAGING, 0.88, 5, "packing_supplies"),
    _k(("postage", "shipping label", "freight", "delivery charge", "carrier fee"), *_SHIPPING, 0.90, 5, "outbound_shipping"),
    _k(("priority mail", "ground shipping", "express delivery", "overnight"), *_SHIPPING, 0.88, 5, "shipping_services"),
    # Marketing
    _k(("advertising", "ad spend", "campaign", "sponsored", "promotion"), *_MARKETING, 0.88, 5, "advertising"),
    _k(("facebook ads", "google ads", "tiktok ads", "instagram ads", "pinterest ads"), *_MARKETING, 0.93, 6, "digital_advertising"),
    _k(("influencer", "affiliate", "marketing agency", "creative services"), *_MARKETING, 0.85, 4, "marketing_services"),
    # Software
    _k(("subscription", "saas", "monthly plan", "annual plan", "license fee"), *_SOFTWARE, 0.85, 4, "software_licensing"),
    _k(("app charge", "shopify app", "plugin", "extension", "integration"), *_SOFTWARE, 0.88, 5, "ecommerce_apps"),
    _k(("domain", "hosting", "ssl certificate", "cdn", "cloud storage"), *_SOFTWARE, 0.90, 5, "web_services"),
    _k(("email marketing", "sms platform", "analytics", "crm"), *_SOFTWARE, 0.87, 4, "marketing_tools"),
    # People
    _k(("payroll", "wages", "salary", "contractor", "freelance"), *_LABOR, 0.92, 6, "payroll"),
    _k(("employee benefits", "workers comp", "fica", "withholding"), *_LABOR, 0.90, 5, "employment_taxes"),
    # Operations
    _k(("3pl", "fulfillment center", "pick and pack", "warehouse", "storage fee"), *_LOGISTICS, 0.92, 6, "fulfillment"),
    _k(("prep service", "kitting", "assembly", "inventory management"), *_LOGISTICS, 0.88, 5, "fulfillment_services"),
    _k(("customer service", "support tickets", "helpdesk", "live chat"), *_LOGISTICS, 0.80, 3, "customer_support"),
    # Facilities and admin
    _k(("rent", "lease", "office space", "co-working"), "rent_utilities", "Rent & Utilities", 0.90, 5, "facilities", ("car", "vehicle")),
    _k(
        ("electric", "electricity", "gas", "water", "utilities", "internet", "phone"),
        "rent_utilities", "Rent & Utilities", 0.88, 5, "utilities", ("gasoline", "fuel"),
    ),
    _k(("insurance", "liability", "coverage", "premium", "policy"), "insurance", "Insurance", 0.92, 5, "insurance"),
    _k(
        ("accountant", "bookkeeping", "lawyer", "attorney", "legal fees"),
        "professional_services", "Professional Services", 0.90, 5, "professional_services",
    ),
    _k(("office supplies", "paper", "pens", "furniture", "desk"), "office_admin", "Office & Admin", 0.82, 3, "office_supplies"),
    _k(
        ("bank fee", "monthly fee", "overdraft", "wire fee"),
        "bank_fees", "Banking & Fees", 0.85, 4, "banking", ("payment processing", "merchant"),
    ),
    # Travel and meals
    _k(("travel", "hotel", "airfare", "conference", "trade show"), "vehicle_travel", "Vehicle & Travel", 0.85, 4, "business_travel"),
    _k(("gasoline", "fuel", "parking", "toll", "mileage"), "vehicle_travel", "Vehicle & Travel", 0.82, 3, "vehicle"),
    _k(("lunch", "dinner", "meal", "restaurant", "catering"), "business_meals", "Business Meals", 0.75, 3, "meals", ("personal",)),
    # Liabilities
    _k(("sales tax", "state tax", "tax payment", "revenue department"), "sales_tax_payable", "Sales Tax Payable", 0.95, 6, "tax_payments"),
)


__all__ = [
    "DEFAULT_KEYWORD_PENALTIES",
    "DEFAULT_KEYWORD_RULES",
    "KeywordMatch",
    "KeywordRule",
    "contains_term",
    "keyword_confidence",
    "match_keyword_rules",
]
