"""Merchant Category Code table.

Maps ISO 18245 merchant category codes to categories of the shipped taxonomy.
``exact`` mappings identify the category outright; ``family`` mappings point at
a plausible category within a broader family of spend (restaurants could be a
client lunch or travel, a pharmacy could be supplies or personal spend).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from ..taxonomy import default_id


class MccStrength(StrEnum):
    EXACT = "exact"
    FAMILY = "family"


@dataclass(frozen=True, slots=True)
class MccMapping:
    category_id: str
    category_name: str
    strength: MccStrength
    base_confidence: float


def _m(slug: str, name: str, strength: MccStrength, conf: float) -> MccMapping:
    return MccMapping(
        category_id=default_id(slug), category_name=name, strength=strength, base_confidence=conf
    )


_E = MccStrength.EXACT
_F = MccStrength.FAMILY

DEFAULT_MCC_TABLE: Mapping[str, MccMapping] = {
    # Personal care services
    "7230": _m("hair_beauty_services", "Hair & Beauty Services", _E, 0.95),
    "7298": _m("hair_beauty_services", "Hair & Beauty Services", _E, 0.95),
    "7297": _m("hair_beauty_services", "Hair & Beauty Services", _E, 0.95),
    # Supplies and inventory
    "5912": _m("supplies_inventory", "Supplies & Inventory", _F, 0.85),
    "5977": _m("supplies_inventory", "Supplies & Inventory", _F, 0.80),
    "5310": _m("supplies_inventory", "Supplies & Inventory", _F, 0.75),
    # Utilities and telecom
    "4900": _m("rent_utilities", "Rent & Utilities", _E, 0.90),
    "4814": _m("software_subscriptions", "Software & Subscriptions", _E, 0.90),
    "4815": _m("software_subscriptions", "Software & Subscriptions", _E, 0.90),
    "7372": _m("software_subscriptions", "Software & Subscriptions", _E, 0.90),
    "7379": _m("software_subscriptions", "Software & Subscriptions", _E, 0.85),
    # Food and drink
    "5812": _m("business_meals", "Business Meals", _F, 0.70),
    "5814": _m("business_meals", "Business Meals", _F, 0.75),
    # Fuel and transport
    "5541": _m("vehicle_travel", "Vehicle & Travel", _E, 0.90),
    "5542": _m("vehicle_travel", "Vehicle & Travel", _E, 0.90),
    "4111": _m("vehicle_travel", "Vehicle & Travel", _F, 0.75),
    "4121": _m("vehicle_travel", "Vehicle & Travel", _F, 0.75),
    # Professional services
    "8931": _m("professional_services", "Professional Services", _F, 0.75),
    "8999": _m("professional_services", "Professional Services", _F, 0.70),
    "7311": _m("marketing_ads", "Marketing & Advertising", _E, 0.85),
    "6300": _m("insurance", "Insurance", _E, 0.90),
    "9399": _m("licenses_permits", "Licenses & Permits", _E, 0.85),
    # Equipment and office
    "5200": _m("equipment_hardware", "Equipment & Hardware", _F, 0.75),
    "5211": _m("equipment_hardware", "Equipment & Hardware", _F, 0.80),
    "5943": _m("office_admin", "Office & Admin", _F, 0.75),
    # Financial institutions
    "6010": _m("bank_fees", "Banking & Fees", _E, 0.90),
    "6011": _m("bank_fees", "Banking & Fees", _E, 0.90),
    # Shipping
    "4215": _m("shipping_postage", "Shipping & Postage", _E, 0.90),
    "9402": _m("shipping_postage", "Shipping & Postage", _E, 0.90),
}

# Categories that may legitimately be chosen for a transaction whose MCC maps
# to another member of the same family.
DEFAULT_MCC_FAMILIES: tuple[frozenset[str], ...] = tuple(
    frozenset(default_id(s) for s in family)
    for family in (
        ("office_admin", "rent_utilities", "software_subscriptions"),
        ("hair_beauty_services", "supplies_inventory"),
        ("supplies_inventory", "equipment_hardware", "supplier_purchases", "packaging"),
        ("marketing_ads", "professional_services"),
        ("vehicle_travel", "business_meals"),
        ("shipping_postage", "operations_logistics"),
        ("bank_fees", "payment_processing_fees"),
    )
)


def normalize_mcc(raw: str | None) -> str | None:
    """Return a 4-digit MCC string or ``None`` when ``raw`` is not one."""

    if raw is None:
        return None
    s = str(raw).strip()
    if len(s) != 4 or not s.isdigit():
        return None
    return s


def is_compatible(
    table: Mapping[str, MccMapping],
    families: tuple[frozenset[str], ...],
    mcc: str | None,
    category_id: str,
) -> bool:
    """True when ``category_id`` is consistent with what ``mcc`` says.

    Unknown or missing MCCs impose no constraint.
    """

    code = normalize_mcc(mcc)
    mapping = table.get(code) if code is not None else None
    if mapping is None:
        return True
    if mapping.category_id == category_id:
        return True
    return any(mapping.category_id in fam and category_id in fam for fam in families)


__all__ = [
    "DEFAULT_MCC_FAMILIES",
    "DEFAULT_MCC_TABLE",
    "MccMapping",
    "MccStrength",
    "is_compatible",
    "normalize_mcc",
]
