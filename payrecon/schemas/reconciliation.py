"""Pydantic schemas for matching runs and their per-transaction records."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from payrecon.schemas.base import StoredModel
from payrecon.schemas.transaction import AgentTransaction, MerchantTransaction


class TransactionStatus(str, Enum):
    MATCHED = "MATCHED"
    ERROR_AMOUNT = "ERROR_AMOUNT"
    ERROR_DUPLICATE = "ERROR_DUPLICATE"
    MISSING_IN_AGENT = "MISSING_IN_AGENT"
    MISSING_IN_MERCHANT = "MISSING_IN_MERCHANT"


class SessionStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AdminPaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    DRAFT = "DRAFT"
    PAID = "PAID"


class MerchantSnapshot(StoredModel):
    """Merchant-side fields copied into a record at match time."""

    transaction_id: Optional[str] = None
    amount: int = 0
    merchant_code: Optional[str] = None
    method: Optional[str] = None
    point_of_sale_name: Optional[str] = None


class AgentSnapshot(StoredModel):
    """Agent-side fields copied into a record at match time."""

    agent_id: Optional[str] = None
    amount: int = 0
    point_of_sale_name: Optional[str] = None


class ReconciliationRecord(StoredModel):
    """The classified outcome of one transaction code in one matching run.

    Snapshots are copies, not references: editing a source transaction later
    never changes a historical record.  ``payment_id`` / ``is_paid`` and the
    ``admin_*`` linkage fields are written by the settlement ledger only.
    """

    session_id: Optional[str] = None
    transaction_code: str
    status: TransactionStatus
    merchant_data: Optional[MerchantSnapshot] = None
    agent_data: Optional[AgentSnapshot] = None
    point_of_sale_name: Optional[str] = None
    payment_method: Optional[str] = None
    merchant_amount: int = 0
    agent_amount: Optional[int] = None
    difference: int = Field(0, description="agent amount minus merchant amount")
    transaction_date: Optional[date] = None
    error_detail: Optional[str] = None
    processed_at: Optional[datetime] = None

    # Settlement linkage
    payment_id: Optional[str] = None
    is_paid: bool = False
    admin_batch_id: Optional[str] = None
    admin_paid_at: Optional[datetime] = None
    admin_payment_status: AdminPaymentStatus = AdminPaymentStatus.UNPAID

    note: Optional[str] = None
    note_updated_at: Optional[datetime] = None

    @property
    def agent_id(self) -> Optional[str]:
        return self.agent_data.agent_id if self.agent_data else None


class ReconciliationSession(StoredModel):
    """One matching run over an upload.

    ``error_count`` counts ERROR_AMOUNT records only; MISSING_* and
    ERROR_DUPLICATE records are tallied in ``discrepancy_count``.
    """

    created_at: Optional[datetime] = None
    created_by: str = "system"
    status: SessionStatus = SessionStatus.PROCESSING
    total_records: int = 0
    matched_count: int = 0
    error_count: int = 0
    discrepancy_count: int = 0
    total_amount: int = 0
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    notes: Optional[str] = None
    upload_session_id: Optional[str] = None
    by_status: dict[str, int] = Field(default_factory=dict)


class MatchingRequest(BaseModel):
    """Both sides of one upload, handed to the matching engine.

    With ``upload_session_id`` the merchant side is read from the rows the
    duplicate guard stored for that upload, in addition to any inline rows.
    """

    upload_session_id: Optional[str] = None
    merchant_transactions: list[MerchantTransaction] = Field(default_factory=list)
    agent_transactions: list[AgentTransaction] = Field(default_factory=list)
    created_by: str = "system"
    notes: Optional[str] = None


class SessionPage(BaseModel):
    sessions: list[ReconciliationSession]
    has_more: bool
    total: int


class DashboardStats(BaseModel):
    """Headline numbers over the records of non-failed sessions."""

    total_volume: int = 0
    total_transactions: int = 0
    matched_count: int = 0
    error_count: int = 0
