"""Rule tables: MCC codes, vendor patterns and keyword rules."""

from .keywords import KeywordRule
from .mcc import MccMapping, MccStrength
from .tables import ActiveRule, RuleTables
from .vendors import VendorMatchType, VendorPattern, normalize_vendor_name

__all__ = [
    "ActiveRule",
    "KeywordRule",
    "MccMapping",
    "MccStrength",
    "RuleTables",
    "VendorMatchType",
    "VendorPattern",
    "normalize_vendor_name",
]
