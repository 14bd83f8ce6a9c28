"""Pydantic schemas for merchant-side and agent-side transactions."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import Field, field_validator

from payrecon.schemas.base import StoredModel
from payrecon.services.ingestion.normalizer import (
    normalize_date,
    normalize_payment_method,
    normalize_transaction_code,
    sanitize_raw_data,
)


class _TransactionFields(StoredModel):
    """Fields both sides report for a transaction."""

    transaction_code: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Approval code issued by the payment channel; the matching key",
    )
    amount: int = Field(
        ...,
        ge=0,
        description="Transaction amount in whole currency units",
    )
    point_of_sale_name: Optional[str] = Field(None, max_length=200)
    payment_method: Optional[str] = Field(
        None,
        description="QR 1 (VNPay) | QR 2 (App Bank) | Sofpos | POS",
    )
    transaction_date: Optional[date] = None
    upload_session_id: Optional[str] = Field(
        None,
        description="Groups the rows of a single upload",
    )

    @field_validator("transaction_code", mode="before")
    @classmethod
    def _strip_code(cls, value: Any) -> str:
        return normalize_transaction_code(value)

    @field_validator("payment_method", mode="before")
    @classmethod
    def _canonical_method(cls, value: Any) -> Optional[str]:
        return normalize_payment_method(value)

    @field_validator("transaction_date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Optional[date]:
        if value is None or value == "":
            return None
        parsed = normalize_date(value)
        if parsed is None:
            raise ValueError(f"Unrecognised date: {value!r}")
        return parsed


class MerchantTransaction(_TransactionFields):
    """One transaction row from the payment channel's export."""

    merchant_code: Optional[str] = Field(None, max_length=100)
    transaction_date: date
    raw_data: dict[str, Any] = Field(
        default_factory=dict,
        description="Every column of the source row, keys made path-safe",
    )
    created_at: Optional[datetime] = None

    @field_validator("raw_data", mode="before")
    @classmethod
    def _sanitize_raw(cls, value: Any) -> dict[str, Any]:
        return sanitize_raw_data(value)


class AgentTransaction(_TransactionFields):
    """One bill reported by an agent for the same transaction code domain."""

    agent_id: Optional[str] = Field(
        None,
        description="Agent id or code; resolved from point of sale when absent",
    )
