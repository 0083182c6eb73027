"""Vendor name patterns.

Patterns are matched against the *normalized* merchant name and description
(see :func:`normalize_vendor_name`). ``contains``/``prefix``/``suffix`` compare
whole tokens, so ``ups`` matches ``"ups store 1234"`` but not ``"groups"``.
``priority`` only breaks ties between hits for the same category.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache

from ..taxonomy import default_id

_CORPORATE_SUFFIXES: tuple[str, ...] = ("llc", "inc", "corp", "ltd", "co", "company")
_SUFFIX_RE = re.compile(r"\b(" + "|".join(_CORPORATE_SUFFIXES) + r")\b")
_MIN_VENDOR_NAME_LENGTH = 4


class VendorMatchType(StrEnum):
    EXACT = "exact"
    CONTAINS = "contains"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    REGEX = "regex"


@dataclass(frozen=True, slots=True)
class VendorPattern:
    pattern: str
    match_type: VendorMatchType
    category_id: str
    category_name: str
    confidence: float
    priority: int


def normalize_vendor_name(vendor: str) -> str:
    """Lowercase, turn punctuation into spaces, collapse whitespace, drop legal suffixes.

    The suffix is kept when removing it would leave a name of four characters
    or fewer (``"AT&T Corp"`` stays ``"at t corp"``).
    """

    normalized = re.sub(r"[^\w\s]", " ", vendor.strip().lower())
    normalized = re.sub(r"\s+", " ", normalized).strip()
    stripped = re.sub(r"\s+", " ", _SUFFIX_RE.sub("", normalized)).strip()
    if len(stripped) <= _MIN_VENDOR_NAME_LENGTH and len(normalized) > len(stripped):
        return normalized
    return stripped


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def matches(pattern: VendorPattern, normalized_text: str) -> bool:
    if not normalized_text:
        return False
    if pattern.match_type is VendorMatchType.REGEX:
        rx = _compile(pattern.pattern)
        return rx is not None and rx.search(normalized_text) is not None

    needle = normalize_vendor_name(pattern.pattern)
    if not needle:
        return False
    if pattern.match_type is VendorMatchType.EXACT:
        return normalized_text == needle
    padded = f" {normalized_text} "
    if pattern.match_type is VendorMatchType.CONTAINS:
        return f" {needle} " in padded
    if pattern.match_type is VendorMatchType.PREFIX:
        return padded.startswith(f" {needle} ")
    return padded.endswith(f" {needle} ")


def _v(
    pattern: str, match_type: str, slug: str, name: str, confidence: float, priority: int
) -> VendorPattern:
    return VendorPattern(
        pattern=pattern,
        match_type=VendorMatchType(match_type),
        category_id=default_id(slug),
        category_name=name,
        confidence=confidence,
        priority=priority,
    )


_SOFTWARE = ("software_subscriptions", "Software & Subscriptions")
_MARKETING = ("marketing_ads", "Marketing & Advertising")
_SHIPPING = ("shipping_postage", "Shipping & Postage")
_LOGISTICS = ("operations_logistics", "Operations & Logistics")
_OFFICE = ("office_admin", "Office & Admin")

DEFAULT_VENDOR_PATTERNS: tuple[VendorPattern, ...] = (
    # Software and SaaS
    _v("adobe", "contains", *_SOFTWARE, 0.92, 95),
    _v("microsoft", "contains", *_SOFTWARE, 0.92, 95),
    _v("canva", "exact", *_SOFTWARE, 0.95, 95),
    _v("squarespace", "exact", *_SOFTWARE, 0.95, 100),
    _v("wix", "exact", *_SOFTWARE, 0.95, 100),
    _v("zoom", "exact", *_SOFTWARE, 0.92, 90),
    _v("slack", "exact", *_SOFTWARE, 0.95, 90),
    _v("asana", "exact", *_SOFTWARE, 0.95, 90),
    _v("klaviyo", "exact", *_SOFTWARE, 0.95, 90),
    _v("mailchimp", "exact", *_SOFTWARE, 0.95, 90),
    _v("attentive", "exact", *_SOFTWARE, 0.92, 90),
    _v("postscript", "exact", *_SOFTWARE, 0.92, 90),
    # Advertising platforms
    _v("facebook ads", "contains", *_MARKETING, 0.93, 95),
    _v("meta for business", "contains", *_MARKETING, 0.93, 95),
    _v("google ads", "contains", *_MARKETING, 0.93, 95),
    _v("tiktok ads", "contains", *_MARKETING, 0.93, 95),
    _v("pinterest ads", "contains", *_MARKETING, 0.92, 90),
    # Carriers and fulfilment
    _v("usps", "contains", *_SHIPPING, 0.93, 95),
    _v("fedex", "contains", *_SHIPPING, 0.93, 95),
    _v("ups", "contains", *_SHIPPING, 0.93, 95),
    _v("dhl", "contains", *_SHIPPING, 0.92, 95),
    _v("shipbob", "contains", *_LOGISTICS, 0.95, 95),
    _v("shipmonk", "contains", *_LOGISTICS, 0.95, 95),
    _v("deliverr", "contains", *_LOGISTICS, 0.95, 95),
    # Back office
    _v("quickbooks", "contains", *_OFFICE, 0.95, 90),
    _v("staples", "contains", *_OFFICE, 0.85, 75),
    _v("office depot", "contains", *_OFFICE, 0.85, 75),
    _v("gusto", "exact", "labor_payroll", "Labor & Payroll", 0.95, 95),
    _v("rippling", "exact", "labor_payroll", "Labor & Payroll", 0.95, 95),
    _v("state farm", "contains", "insurance", "Insurance", 0.93, 90),
    _v("allstate", "contains", "insurance", "Insurance", 0.93, 90),
    _v("geico", "contains", "insurance", "Insurance", 0.93, 90),
    # Everyday spend with weaker business intent
    _v("starbucks", "contains", "business_meals", "Business Meals", 0.75, 70),
    _v("dunkin", "contains", "business_meals", "Business Meals", 0.75, 70),
    _v("shell", "contains", "vehicle_travel", "Vehicle & Travel", 0.80, 75),
    _v("chevron", "contains", "vehicle_travel", "Vehicle & Travel", 0.80, 75),
    _v("exxon", "contains", "vehicle_travel", "Vehicle & Travel", 0.80, 75),
)


__all__ = [
    "DEFAULT_VENDOR_PATTERNS",
    "VendorMatchType",
    "VendorPattern",
    "matches",
    "normalize_vendor_name",
]
