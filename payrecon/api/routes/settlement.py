"""Settlement endpoints: payable records, payments and payment batches."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from payrecon.api.deps import get_store
from payrecon.core.config import settings
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore
from payrecon.schemas.reconciliation import ReconciliationRecord
from payrecon.schemas.settlement import BatchPage, BatchSummary, Payment, PaymentBatch, PaymentStats
from payrecon.services.settlement.ledger import SettlementLedger

logger = get_logger(__name__)

router = APIRouter()


class CreatePaymentsRequest(BaseModel):
    record_ids: list[str] = Field(..., min_length=1)
    created_by: str = "system"


class CreateBatchRequest(BaseModel):
    name: str = ""
    payment_ids: list[str] = Field(..., min_length=1)
    created_by: str = "system"
    notes: Optional[str] = None


class SettleRequest(BaseModel):
    approval_code: Optional[str] = None


@router.get("/unpaid", response_model=list[ReconciliationRecord])
def list_unpaid(
    agent_id: Optional[str] = Query(None, description="Only records of this agent"),
    store: KeyedStore = Depends(get_store),
) -> list[ReconciliationRecord]:
    """MATCHED records not yet covered by any payment."""
    return SettlementLedger(store, settings).list_unpaid_matched(agent_id)


@router.post("/payments", response_model=list[Payment])
def create_payments(
    body: CreatePaymentsRequest,
    store: KeyedStore = Depends(get_store),
) -> list[Payment]:
    """Create one PENDING payment per agent from the selected records."""
    return SettlementLedger(store, settings).create_payments_for_records(
        body.record_ids,
        created_by=body.created_by,
    )


@router.get("/payments/stats", response_model=PaymentStats)
def payment_stats(store: KeyedStore = Depends(get_store)) -> PaymentStats:
    return SettlementLedger(store, settings).get_payment_stats()


@router.get("/agents/{agent_id}/payments", response_model=list[Payment])
def payments_by_agent(
    agent_id: str,
    store: KeyedStore = Depends(get_store),
) -> list[Payment]:
    return SettlementLedger(store, settings).get_payments_by_agent(agent_id)


@router.post("/batches", response_model=PaymentBatch)
def create_batch(
    body: CreateBatchRequest,
    store: KeyedStore = Depends(get_store),
) -> PaymentBatch:
    return SettlementLedger(store, settings).create_batch(
        body.name,
        body.payment_ids,
        created_by=body.created_by,
        notes=body.notes,
    )


@router.get("/batches", response_model=BatchPage)
def list_batches(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: Optional[int] = Query(None, ge=1, le=200, description="Batches per page"),
    store: KeyedStore = Depends(get_store),
) -> BatchPage:
    return SettlementLedger(store, settings).list_batches(page, page_size)


@router.get("/batches/{batch_id}", response_model=PaymentBatch)
def get_batch(batch_id: str, store: KeyedStore = Depends(get_store)) -> PaymentBatch:
    return SettlementLedger(store, settings).get_batch(batch_id)


@router.get("/batches/{batch_id}/summary", response_model=BatchSummary)
def batch_summary(batch_id: str, store: KeyedStore = Depends(get_store)) -> BatchSummary:
    """Gross, fee and net totals plus the payments of one batch."""
    return SettlementLedger(store, settings).batch_summary(batch_id)


@router.post("/batches/{batch_id}/settle", response_model=PaymentBatch)
def settle_batch(
    batch_id: str,
    body: Optional[SettleRequest] = None,
    store: KeyedStore = Depends(get_store),
) -> PaymentBatch:
    approval_code = body.approval_code if body else None
    return SettlementLedger(store, settings).settle_batch(batch_id, approval_code)


@router.post("/batches/{batch_id}/revert")
def revert_batch(batch_id: str, store: KeyedStore = Depends(get_store)) -> dict:
    """Return a PAID batch to DRAFT; a DRAFT batch is left untouched."""
    reverted = SettlementLedger(store, settings).revert_batch(batch_id)
    return {"batch_id": batch_id, "reverted": reverted}


@router.delete("/batches/{batch_id}")
def delete_batch(batch_id: str, store: KeyedStore = Depends(get_store)) -> dict:
    removed = SettlementLedger(store, settings).delete_batch(batch_id)
    return {"batch_id": batch_id, "payments_deleted": removed}
