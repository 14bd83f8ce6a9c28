"""Pydantic schemas for payments to agents and payment batches."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from payrecon.schemas.base import StoredModel


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class BatchStatus(str, Enum):
    DRAFT = "DRAFT"
    PAID = "PAID"


class Payment(StoredModel):
    """One settlement entry owed to an agent for a set of matched records."""

    agent_id: str
    agent_code: Optional[str] = None
    agent_name: Optional[str] = None
    bank_account: Optional[str] = None
    total_amount: Decimal = Decimal(0)
    fee_amount: Decimal = Decimal(0)
    net_amount: Decimal = Decimal(0)
    transaction_ids: list[str] = Field(
        default_factory=list,
        description="ReconciliationRecord ids this payment covers",
    )
    transaction_count: int = 0
    status: PaymentStatus = PaymentStatus.PENDING
    batch_id: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: str = "system"
    paid_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _derived_fields(self) -> "Payment":
        if self.fee_amount > self.total_amount:
            raise ValueError("fee_amount cannot exceed total_amount")
        self.net_amount = self.total_amount - self.fee_amount
        self.transaction_count = len(self.transaction_ids)
        return self


class PaymentBatch(StoredModel):
    """A group of payments settled together."""

    name: str = ""
    created_at: Optional[datetime] = None
    created_by: str = "system"
    payment_ids: list[str] = Field(default_factory=list)
    payment_count: int = 0
    agent_count: int = 0
    total_amount: Decimal = Decimal(0)
    total_fees: Decimal = Decimal(0)
    net_amount: Decimal = Decimal(0)
    payment_status: BatchStatus = BatchStatus.DRAFT
    paid_at: Optional[datetime] = None
    approval_code: Optional[str] = None
    notes: Optional[str] = None


class BatchPage(BaseModel):
    batches: list[PaymentBatch]
    has_more: bool
    total: int


class PaymentStats(BaseModel):
    total_pending: int = 0
    total_paid: int = 0


class BatchSummary(BaseModel):
    """Totals an export consumer needs for one batch."""

    batch: PaymentBatch
    payments: list[Payment]
    total_gross: Decimal = Decimal(0)
    total_fees: Decimal = Decimal(0)
    total_net: Decimal = Decimal(0)
    agent_count: int = 0
