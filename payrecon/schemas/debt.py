"""Pydantic schemas for derived debt reports (never persisted)."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class DateRange(BaseModel):
    """Inclusive calendar-day window; either bound may be open."""

    date_from: Optional[date] = Field(None, description="First day included")
    date_to: Optional[date] = Field(None, description="Last day included")

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def contains(self, day: Optional[date]) -> bool:
        if self.date_from is None and self.date_to is None:
            return True
        if day is None:
            return False
        if self.date_from is not None and day < self.date_from:
            return False
        if self.date_to is not None and day > self.date_to:
            return False
        return True


class AgentDebtRow(BaseModel):
    """What is owed to one agent for matched transactions in a window."""

    agent_id: str
    agent_code: str
    agent_name: str
    total_transactions: int = 0
    total_amount: Decimal = Decimal(0)
    total_fee: Decimal = Decimal(0)
    net_amount: Decimal = Decimal(0)
    paid_amount: Decimal = Decimal(0)
    unpaid_amount: Decimal = Decimal(0)
    last_transaction_date: Optional[date] = None
    point_of_sales: list[str] = Field(default_factory=list)


class MerchantDebtLine(BaseModel):
    merchant_id: str
    merchant_code: str
    merchant_name: str
    total_amount: int = 0
    transaction_count: int = 0
    point_of_sale_name: Optional[str] = None
    point_of_sales: list[str] = Field(default_factory=list)


class AccountDebtRow(BaseModel):
    """Matched volume routed to one settlement bank account."""

    admin_account: str
    merchants: list[MerchantDebtLine] = Field(default_factory=list)
    total_amount: int = 0
    total_transactions: int = 0
