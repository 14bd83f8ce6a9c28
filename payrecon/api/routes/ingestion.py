"""Merchant transaction ingestion endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from payrecon.api.deps import get_store
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore
from payrecon.services.ingestion.duplicate_guard import DuplicateGuard

logger = get_logger(__name__)

router = APIRouter()


class MerchantBatchRequest(BaseModel):
    transactions: list[dict[str, Any]] = Field(
        ...,
        description="Merchant rows (camelCase or snake_case field names)",
    )
    upload_session_id: Optional[str] = None


@router.post("/merchant-batch")
def ingest_merchant_batch(
    body: MerchantBatchRequest,
    store: KeyedStore = Depends(get_store),
) -> dict:
    """Store a batch of merchant transactions, skipping known codes.

    The whole batch is rejected (422) if any row is malformed.  Duplicate
    codes are listed under ``skipped`` with reason ``duplicate``.
    """
    logger.info("Merchant batch received: rows=%d", len(body.transactions))
    result = DuplicateGuard(store).ingest_merchant_batch(
        body.transactions,
        upload_session_id=body.upload_session_id,
    )
    return {
        "status": result.status,
        "created": result.created,
        "skipped": [s.model_dump() for s in result.skipped],
    }


@router.post("/deduplicate")
def deduplicate_merchant_transactions(store: KeyedStore = Depends(get_store)) -> dict:
    """Drop stored rows that repeat an older row's transaction code."""
    return DuplicateGuard(store).deduplicate_merchant_transactions()
