"""Monetary calculations for single-line invoices.

All figures are ``Decimal``. Intermediate values are kept at full precision
and only the final figures are quantized to the minor currency unit with
round-half-up.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from src.api.common.errors import InvoiceValidationError

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class MonetaryBreakdown:
    subtotal: Decimal
    vat_amount: Decimal
    total_amount: Decimal


def to_decimal(value: Number) -> Decimal:
    """Convert user input to ``Decimal`` without going through binary floats."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    """Round to 2 decimal places, halves away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _validate_vat_percentage(vat_percentage: Number) -> Decimal:
    percentage = to_decimal(vat_percentage)
    if percentage < 0 or percentage > HUNDRED:
        raise InvoiceValidationError(
            f"VAT percentage must be between 0 and 100, got {percentage}",
            step="monetary_calculation")
    return percentage


def compute_from_tax_exclusive(subtotal: Number, vat_percentage: Number) -> MonetaryBreakdown:
    """
    VAT is added on top of the quoted amount.

    Args:
        subtotal: Amount before VAT
        vat_percentage: VAT rate in percent (0-100)

    Returns:
        MonetaryBreakdown with rounded subtotal, VAT and total
    """
    percentage = _validate_vat_percentage(vat_percentage)
    net = to_decimal(subtotal)
    vat = net * percentage / HUNDRED
    return MonetaryBreakdown(
        subtotal=round_money(net),
        vat_amount=round_money(vat),
        total_amount=round_money(net + vat),
    )


def compute_from_tax_inclusive(total: Number, vat_percentage: Number) -> MonetaryBreakdown:
    """
    VAT is extracted from a quoted amount that already contains it.

    Args:
        total: Amount including VAT
        vat_percentage: VAT rate in percent (0-100)

    Returns:
        MonetaryBreakdown with rounded subtotal, VAT and total
    """
    percentage = _validate_vat_percentage(vat_percentage)
    gross = to_decimal(total)
    net = gross / (1 + percentage / HUNDRED)
    vat = gross - net
    return MonetaryBreakdown(
        subtotal=round_money(net),
        vat_amount=round_money(vat),
        total_amount=round_money(gross),
    )


def compute_breakdown(amount: Number, vat_percentage: Number, prices_include_vat: bool) -> MonetaryBreakdown:
    if prices_include_vat:
        return compute_from_tax_inclusive(amount, vat_percentage)
    return compute_from_tax_exclusive(amount, vat_percentage)
