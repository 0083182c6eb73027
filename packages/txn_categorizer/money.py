"""Integer-cents helpers and payout reconciliation.

Amounts travel between services as decimal strings of integer cents
(``"10000"`` is $100.00). Parsing never goes through ``float``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENTS_RE = re.compile(r"^[+-]?\d+$")
_ONE_CENT = Decimal("0.01")


def parse_cents(raw: str | int) -> int:
    """Parse a decimal-string of integer cents. Raises ``ValueError`` otherwise.

    ``"10.50"`` is rejected: that is a dollar amount, not cents.
    """

    if isinstance(raw, bool):
        raise ValueError(f"Invalid cents value: {raw!r}")
    if isinstance(raw, int):
        return raw
    s = str(raw).strip()
    if not _CENTS_RE.match(s):
        raise ValueError(f"Invalid cents string: {raw!r}")
    return int(s)


def format_cents(cents: int) -> str:
    return str(int(cents))


def cents_from_decimal_amount(amount: str | Decimal | int) -> int:
    """Convert a dollar amount (``"12.345"``) to integer cents, rounding half up."""

    try:
        d = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid decimal amount: {amount!r}") from e
    if not d.is_finite():
        raise ValueError(f"Invalid decimal amount: {amount!r}")
    return int((d.quantize(_ONE_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def dollars(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_ONE_CENT)


@dataclass(frozen=True, slots=True)
class PayoutReconciliation:
    reconciled: bool
    payout_cents: int
    constituents_total_cents: int
    difference_cents: int
    errors: tuple[str, ...] = ()


def reconcile_payout(
    payout_amount_cents: str | int,
    constituent_amounts_cents: Iterable[str | int],
    *,
    tolerance_cents: int = 1,
) -> PayoutReconciliation:
    """Check that a payout equals the sum of its constituent transactions.

    The difference is ``abs(payout - sum(constituents))`` in cents; the payout
    reconciles when it is within ``tolerance_cents`` (one cent by default, for
    processor-side rounding). Unparseable constituent amounts are reported in
    ``errors`` and excluded from the sum; an unparseable payout amount never
    reconciles.
    """

    if tolerance_cents < 0:
        raise ValueError("tolerance_cents must be >= 0")

    errors: list[str] = []
    try:
        payout = parse_cents(payout_amount_cents)
    except ValueError:
        return PayoutReconciliation(
            reconciled=False,
            payout_cents=0,
            constituents_total_cents=0,
            difference_cents=0,
            errors=(f"Invalid payout amount: {payout_amount_cents!r}",),
        )

    total = 0
    for raw in constituent_amounts_cents:
        try:
            total += parse_cents(raw)
        except ValueError:
            errors.append(f"Invalid transaction amount: {raw!r}")

    difference = abs(payout - total)
    reconciled = difference <= tolerance_cents and not errors
    if difference > tolerance_cents:
        errors.append(
            f"Payout reconciliation failed: payout={payout} cents, "
            f"sum={total} cents, difference={difference} cents"
        )
    return PayoutReconciliation(
        reconciled=reconciled,
        payout_cents=payout,
        constituents_total_cents=total,
        difference_cents=difference,
        errors=tuple(errors),
    )


__all__ = [
    "PayoutReconciliation",
    "cents_from_decimal_amount",
    "dollars",
    "format_cents",
    "parse_cents",
    "reconcile_payout",
]
