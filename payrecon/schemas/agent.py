"""Pydantic schemas for settlement counterparties (agents) and merchants."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator

from payrecon.schemas.base import StoredModel

_MIN_RATE = Decimal("0")
_MAX_RATE = Decimal("100")


def _check_rates(rates: dict[str, Decimal], where: str) -> dict[str, Decimal]:
    for method, rate in rates.items():
        if rate < _MIN_RATE or rate > _MAX_RATE:
            raise ValueError(
                f"Discount rate for {method!r} in {where} must be within [0, 100], got {rate}"
            )
    return rates


class Agent(StoredModel):
    """An intermediary reseller that gets paid for matched transactions.

    ``discount_rates_by_point_of_sale`` is the authoritative rate table.
    ``discount_rates`` is the legacy flat table kept for agents that were
    never migrated; it is read by the fee resolver but never written.
    """

    name: str = ""
    code: str = Field(..., min_length=1, max_length=50)
    bank_account: str = ""
    discount_rates: dict[str, Decimal] = Field(default_factory=dict)
    discount_rates_by_point_of_sale: dict[str, dict[str, Decimal]] = Field(
        default_factory=dict,
    )
    assigned_point_of_sales: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("discount_rates")
    @classmethod
    def _flat_rates_in_range(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        return _check_rates(value, "discount_rates")

    @field_validator("discount_rates_by_point_of_sale")
    @classmethod
    def _pos_rates_in_range(
        cls, value: dict[str, dict[str, Decimal]]
    ) -> dict[str, dict[str, Decimal]]:
        for pos_name, rates in value.items():
            _check_rates(rates, f"point of sale {pos_name!r}")
        return value


class Merchant(StoredModel):
    """A merchant (point of sale owner) and the accounts its money settles to."""

    name: str = ""
    code: str = Field(..., min_length=1, max_length=100)
    bank_account: str = ""
    bank_name: str = ""
    admin_accounts: list[str] = Field(
        default_factory=list,
        description="Settlement bank accounts this merchant routes to",
    )
    point_of_sale_name: Optional[str] = None
    branch_name: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
