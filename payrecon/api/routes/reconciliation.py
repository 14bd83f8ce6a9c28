"""Matching session endpoints.

Provides routes to run a matching session, page through past sessions,
read their records and annotate or delete them.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from payrecon.api.deps import get_date_range, get_store
from payrecon.core.config import settings
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore
from payrecon.schemas.debt import DateRange
from payrecon.schemas.reconciliation import (
    DashboardStats,
    MatchingRequest,
    ReconciliationRecord,
    ReconciliationSession,
    SessionPage,
)
from payrecon.services.reconciliation.engine import ReconciliationEngine

logger = get_logger(__name__)

router = APIRouter()


class NoteUpdate(BaseModel):
    note: Optional[str] = None


@router.post("/run", response_model=ReconciliationSession)
def run_matching(
    body: MatchingRequest,
    store: KeyedStore = Depends(get_store),
) -> ReconciliationSession:
    """Match merchant rows against agent rows and return the session."""
    logger.info(
        "Matching requested: upload=%s merchant_rows=%d agent_rows=%d by=%s",
        body.upload_session_id,
        len(body.merchant_transactions),
        len(body.agent_transactions),
        body.created_by,
    )
    engine = ReconciliationEngine(store, settings)
    session_id = engine.run_matching(body)
    return engine.get_session(session_id)


@router.get("/sessions", response_model=SessionPage)
def list_sessions(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: Optional[int] = Query(None, ge=1, le=200, description="Sessions per page"),
    store: KeyedStore = Depends(get_store),
) -> SessionPage:
    """List sessions newest first; FAILED sessions are not shown."""
    return ReconciliationEngine(store, settings).list_sessions(page, page_size)


@router.get("/sessions/{session_id}", response_model=ReconciliationSession)
def get_session(
    session_id: str,
    store: KeyedStore = Depends(get_store),
) -> ReconciliationSession:
    return ReconciliationEngine(store, settings).get_session(session_id)


@router.get("/sessions/{session_id}/records", response_model=list[ReconciliationRecord])
def get_session_records(
    session_id: str,
    store: KeyedStore = Depends(get_store),
) -> list[ReconciliationRecord]:
    return ReconciliationEngine(store, settings).get_records_by_session(session_id)


@router.delete("/sessions/{session_id}")
def delete_session(
    session_id: str,
    store: KeyedStore = Depends(get_store),
) -> dict:
    """Delete a session and every record it produced."""
    removed = ReconciliationEngine(store, settings).delete_session(session_id)
    return {"session_id": session_id, "records_deleted": removed}


@router.patch("/records/{record_id}/note", response_model=ReconciliationRecord)
def update_record_note(
    record_id: str,
    body: NoteUpdate,
    store: KeyedStore = Depends(get_store),
) -> ReconciliationRecord:
    return ReconciliationEngine(store, settings).update_record_note(record_id, body.note)


@router.get("/stats", response_model=DashboardStats)
def get_stats(
    date_range: DateRange = Depends(get_date_range),
    store: KeyedStore = Depends(get_store),
) -> DashboardStats:
    return ReconciliationEngine(store, settings).get_stats(date_range)


@router.get("/unmatched", response_model=list[ReconciliationRecord])
def get_unmatched(store: KeyedStore = Depends(get_store)) -> list[ReconciliationRecord]:
    """Merchant transactions no agent reported."""
    return ReconciliationEngine(store, settings).get_unmatched_transactions()


@router.post("/duplicates/resolve")
def resolve_duplicate_matches(store: KeyedStore = Depends(get_store)) -> dict:
    """Downgrade extra MATCHED records of one transaction code to ERROR_DUPLICATE."""
    return {"downgraded": ReconciliationEngine(store, settings).resolve_duplicate_matches()}
