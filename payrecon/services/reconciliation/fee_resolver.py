"""Discount-rate resolution and fee arithmetic for agent settlements.

An agent's fee for a transaction depends on where it was sold and how it
was paid.  Rates are looked up in a fixed priority order:

  1. ``discount_rates_by_point_of_sale[point_of_sale][method]`` (point of
     sale names compared ignoring case and whitespace)
  2. ``discount_rates[method]`` (legacy flat table, read-only)
  3. 0

Missing rates never raise; they fall through to the next tier.

All arithmetic is exact ``Decimal`` with no quantization: a 1.5% fee on
100001 is 1500.015.  Rounding, if any, belongs to the export layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

from payrecon.core.errors import ValidationError
from payrecon.core.logging import get_logger
from payrecon.services.ingestion.normalizer import point_of_sale_key

logger = get_logger(__name__)

_HUNDRED = Decimal(100)
_ZERO = Decimal(0)

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of applying a discount percentage to an amount."""

    amount: Decimal
    percentage: Decimal
    fee: Decimal
    net: Decimal


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 2.1 do not carry binary noise
    return Decimal(str(value))


def _point_of_sale_table(by_pos: dict, point_of_sale_name: Optional[str]) -> Optional[dict]:
    """Rate table for a point of sale; names compare ignoring case and whitespace."""
    if not point_of_sale_name:
        return None
    if point_of_sale_name in by_pos:
        return by_pos[point_of_sale_name]
    wanted = point_of_sale_key(point_of_sale_name)
    for name in sorted(by_pos):
        if point_of_sale_key(name) == wanted:
            return by_pos[name]
    return None


def resolve_discount_percentage(
    agent: Any,
    point_of_sale_name: Optional[str],
    payment_method: Optional[str],
) -> Decimal:
    """Return the discount percentage that applies to one transaction.

    Args:
        agent: Anything with ``discount_rates_by_point_of_sale`` and
            ``discount_rates`` mappings (an ``Agent`` schema in practice).
        point_of_sale_name: Point of sale the transaction was made at.
        payment_method: Canonical payment-method label.

    Returns:
        A percentage in [0, 100]; ``Decimal(0)`` when nothing is configured.
    """
    if agent is None or not payment_method:
        return _ZERO

    by_pos = getattr(agent, "discount_rates_by_point_of_sale", None) or {}
    table = _point_of_sale_table(by_pos, point_of_sale_name)
    if table:
        rate = table.get(payment_method)
        if rate is not None:
            return _as_decimal(rate)

    flat = getattr(agent, "discount_rates", None) or {}
    rate = flat.get(payment_method)
    if rate is not None:
        return _as_decimal(rate)

    return _ZERO


def compute_fee(amount: Number, percentage: Number) -> FeeBreakdown:
    """Apply ``percentage`` to ``amount``: fee = amount * pct / 100.

    Raises:
        ValidationError: If the amount is negative or the percentage falls
            outside [0, 100].
    """
    amt = _as_decimal(amount)
    pct = _as_decimal(percentage)
    if amt < _ZERO:
        raise ValidationError("Amount must be non-negative", {"amount": str(amt)})
    if pct < _ZERO or pct > _HUNDRED:
        raise ValidationError(
            "Percentage must be within [0, 100]",
            {"percentage": str(pct)},
        )
    fee = amt * pct / _HUNDRED
    return FeeBreakdown(amount=amt, percentage=pct, fee=fee, net=amt - fee)


def fee_for_record(agent: Any, record: Any, default_method: Optional[str] = None) -> FeeBreakdown:
    """Resolve the rate for a reconciliation record and compute its fee."""
    method = record.payment_method
    if not method and getattr(record, "merchant_data", None) is not None:
        method = record.merchant_data.method
    method = method or default_method
    percentage = resolve_discount_percentage(agent, record.point_of_sale_name, method)
    return compute_fee(record.merchant_amount or 0, percentage)
