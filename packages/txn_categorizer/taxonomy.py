"""Category taxonomy consumed by the engine as read-only data.

The registry that owns categories lives outside this package; the engine only
needs ``id``, ``slug``, ``name`` and ``type`` for each category. A small default
taxonomy ships so the engine and its tests are runnable without a registry.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any


class CategoryType(StrEnum):
    REVENUE = "revenue"
    CONTRA_REVENUE = "contra_revenue"
    COGS = "cogs"
    OPEX = "opex"
    LIABILITY = "liability"
    CLEARING = "clearing"
    OTHER = "other"


_EXPENSE_TYPES = frozenset({CategoryType.COGS, CategoryType.OPEX})

# Slug of the category Pass-2 falls back to when the model answer is unusable.
NEUTRAL_FALLBACK_SLUG = "other_ops"


def category_id(n: int) -> str:
    """Stable UUID for the ``n``-th category of the shipped taxonomy."""

    return f"550e8400-e29b-41d4-a716-446655440{n:03d}"


@dataclass(frozen=True, slots=True)
class Category:
    id: str
    slug: str
    name: str
    type: CategoryType
    parent_id: str | None = None
    attribute_schema: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_revenue(self) -> bool:
        return self.type is CategoryType.REVENUE

    @property
    def is_expense(self) -> bool:
        return self.type in _EXPENSE_TYPES


class Taxonomy:
    """Immutable lookup over a list of categories (by id and by slug)."""

    __slots__ = ("_by_id", "_by_slug", "_ordered")

    def __init__(self, categories: Iterable[Category]) -> None:
        ordered = tuple(categories)
        by_id: dict[str, Category] = {}
        by_slug: dict[str, Category] = {}
        for c in ordered:
            if c.id in by_id:
                raise ValueError(f"Duplicate category id: {c.id}")
            if c.slug in by_slug:
                raise ValueError(f"Duplicate category slug: {c.slug}")
            by_id[c.id] = c
            by_slug[c.slug] = c
        if not ordered:
            raise ValueError("Taxonomy must contain at least one category")
        self._ordered = ordered
        self._by_id = by_id
        self._by_slug = by_slug

    def __iter__(self) -> Iterator[Category]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._by_id

    def get(self, category_id: str | None) -> Category | None:
        if category_id is None:
            return None
        return self._by_id.get(category_id)

    def by_slug(self, slug: str) -> Category | None:
        return self._by_slug.get(slug.strip().lower())

    def require_slug(self, slug: str) -> Category:
        cat = self.by_slug(slug)
        if cat is None:
            raise KeyError(f"Unknown category slug: {slug}")
        return cat

    def name_of(self, category_id: str) -> str:
        cat = self._by_id.get(category_id)
        return cat.name if cat is not None else category_id

    def is_revenue(self, category_id: str | None) -> bool:
        cat = self.get(category_id)
        return cat is not None and cat.is_revenue

    @property
    def neutral_fallback(self) -> Category:
        cat = self._by_slug.get(NEUTRAL_FALLBACK_SLUG)
        if cat is not None:
            return cat
        # Last category of type "other" (or simply the last one) when the
        # conventional slug is missing.
        others = [c for c in self._ordered if c.type is CategoryType.OTHER]
        return (others or list(self._ordered))[-1]

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> Taxonomy:
        cats: list[Category] = []
        for r in records:
            cats.append(
                Category(
                    id=str(r["id"]),
                    slug=str(r["slug"]).strip().lower(),
                    name=str(r.get("name") or r["slug"]),
                    type=CategoryType(str(r.get("type") or "other")),
                    parent_id=r.get("parent_id") or r.get("parentId"),
                    attribute_schema=dict(r.get("attribute_schema") or r.get("attributeSchema") or {}),
                )
            )
        return cls(cats)

    @classmethod
    def from_json(cls, path: Path | str) -> Taxonomy:
        """Load a taxonomy from a JSON array of ``{id, slug, name, type}`` objects."""

        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError("Taxonomy JSON must be an array of category objects")
        return cls.from_records(data)

    @classmethod
    def default(cls) -> Taxonomy:
        return _DEFAULT


_DEFAULT_ROWS: tuple[tuple[int, str, str, CategoryType], ...] = (
    (101, "sales_revenue", "Sales Revenue", CategoryType.REVENUE),
    (102, "shipping_income", "Shipping Income", CategoryType.REVENUE),
    (103, "service_revenue", "Service Revenue", CategoryType.REVENUE),
    (105, "refunds_contra", "Refunds & Returns", CategoryType.CONTRA_REVENUE),
    (106, "discounts_contra", "Discounts", CategoryType.CONTRA_REVENUE),
    (201, "supplier_purchases", "Supplier Purchases", CategoryType.COGS),
    (202, "packaging", "Packaging", CategoryType.COGS),
    (203, "shipping_postage", "Shipping & Postage", CategoryType.COGS),
    (204, "supplies_inventory", "Supplies & Inventory", CategoryType.COGS),
    (301, "payment_processing_fees", "Payment Processing Fees", CategoryType.OPEX),
    (302, "marketing_ads", "Marketing & Advertising", CategoryType.OPEX),
    (303, "software_subscriptions", "Software & Subscriptions", CategoryType.OPEX),
    (304, "labor_payroll", "Labor & Payroll", CategoryType.OPEX),
    (305, "rent_utilities", "Rent & Utilities", CategoryType.OPEX),
    (306, "office_admin", "Office & Admin", CategoryType.OPEX),
    (307, "professional_services", "Professional Services", CategoryType.OPEX),
    (308, "insurance", "Insurance", CategoryType.OPEX),
    (309, "licenses_permits", "Licenses & Permits", CategoryType.OPEX),
    (310, "vehicle_travel", "Vehicle & Travel", CategoryType.OPEX),
    (311, "business_meals", "Business Meals", CategoryType.OPEX),
    (312, "bank_fees", "Banking & Fees", CategoryType.OPEX),
    (313, "equipment_hardware", "Equipment & Hardware", CategoryType.OPEX),
    (314, "hair_beauty_services", "Hair & Beauty Services", CategoryType.OPEX),
    (315, "operations_logistics", "Operations & Logistics", CategoryType.OPEX),
    (359, "other_ops", "Other Operating Expenses", CategoryType.OPEX),
    (503, "payouts_clearing", "Payouts Clearing", CategoryType.CLEARING),
    (601, "sales_tax_payable", "Sales Tax Payable", CategoryType.LIABILITY),
    (999, "uncategorized", "Uncategorized", CategoryType.OTHER),
)

_DEFAULT = Taxonomy(
    Category(id=category_id(n), slug=slug, name=name, type=ctype)
    for n, slug, name, ctype in _DEFAULT_ROWS
)


def default_id(slug: str) -> str:
    """Id of ``slug`` in the shipped taxonomy (``KeyError`` if unknown)."""

    return _DEFAULT.require_slug(slug).id


__all__ = [
    "Category",
    "CategoryType",
    "NEUTRAL_FALLBACK_SLUG",
    "Taxonomy",
    "category_id",
    "default_id",
]
