"""Reconciliation engine: runs a matching session and persists its outcome.

A run goes through these steps:
  1. Record a new session (status=PROCESSING).
  2. Match merchant rows against agent rows by transaction code.
  3. Write every record, its back-references and the COMPLETED session in
     one atomic multi-path update.
  4. If that write fails, mark the session FAILED and raise
     ``ConsistencyError``.

FAILED sessions and their records are invisible to every read below and
to the settlement and reporting services.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from payrecon.core.config import Settings
from payrecon.core.errors import ConsistencyError, NotFoundError, PayReconError, ValidationError
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore, join_path, sanitize_key
from payrecon.schemas.agent import Agent
from payrecon.schemas.debt import DateRange
from payrecon.schemas.reconciliation import (
    DashboardStats,
    MatchingRequest,
    ReconciliationRecord,
    ReconciliationSession,
    SessionPage,
    SessionStatus,
    TransactionStatus,
)
from payrecon.schemas.transaction import MerchantTransaction
from payrecon.services.ingestion.duplicate_guard import DuplicateGuard
from payrecon.services.reconciliation.matcher import MatchResult, TransactionMatcher

logger = get_logger(__name__)

SESSIONS_PATH = "reconciliation_sessions"
RECORDS_PATH = "reconciliation_records"
SESSION_RECORDS_INDEX = "indexes/session_records"
RECORD_CODE_INDEX = "indexes/record_code"
AGENTS_PATH = "agents"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_agents(store: KeyedStore) -> list[Agent]:
    return [Agent.from_document(agent_id, doc) for agent_id, doc in store.children(AGENTS_PATH).items()]


def failed_session_ids(store: KeyedStore) -> set[str]:
    return {
        session_id
        for session_id, doc in store.children(SESSIONS_PATH).items()
        if doc.get("status") == SessionStatus.FAILED.value
    }


def record_day(record: ReconciliationRecord) -> Optional[date]:
    """Day a record counts towards in date windows: its transaction date, else when it was processed."""
    if record.transaction_date is not None:
        return record.transaction_date
    return record.processed_at.date() if record.processed_at else None


def load_live_records(store: KeyedStore) -> list[ReconciliationRecord]:
    """Every record whose session has not FAILED, ordered by id."""
    failed = failed_session_ids(store)
    records = [
        ReconciliationRecord.from_document(record_id, doc)
        for record_id, doc in store.children(RECORDS_PATH).items()
        if doc.get("sessionId") not in failed
    ]
    return sorted(records, key=lambda r: r.id or "")


class ReconciliationEngine:
    """Runs matching sessions and serves session/record reads."""

    def __init__(
        self,
        store: KeyedStore,
        config: Settings,
        agents: Optional[Iterable[Agent]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self._agents = list(agents) if agents is not None else None

    # ── Public API ───────────────────────────────────────────────────

    def run_matching(self, request: Union[MatchingRequest, dict[str, Any]]) -> str:
        """Execute one matching session.

        Args:
            request: Both sides of an upload.

        Returns:
            The id of the COMPLETED session.

        Raises:
            ValidationError: If the request is malformed (nothing written).
            ConsistencyError: If the records could not be persisted; the
                session is left FAILED.
        """
        request = self._parse_request(request)
        merchant_rows = self._merchant_rows(request)

        # 1. Create session (status=PROCESSING)
        session_id = self.store.push_key(SESSIONS_PATH)
        session = ReconciliationSession(
            id=session_id,
            created_at=_utcnow(),
            created_by=request.created_by,
            status=SessionStatus.PROCESSING,
            notes=request.notes,
            upload_session_id=request.upload_session_id,
        )
        self.store.set(join_path(SESSIONS_PATH, session_id), session.to_document())
        logger.info(
            "Matching session started: id=%s upload=%s merchant_rows=%d agent_rows=%d",
            session_id,
            request.upload_session_id,
            len(merchant_rows),
            len(request.agent_transactions),
        )

        try:
            # 2. Match, downgrading codes another live session already matched
            agents = self._agents if self._agents is not None else load_agents(self.store)
            matcher = TransactionMatcher(agents, self.config.default_payment_method)
            codes = {t.transaction_code for t in merchant_rows}
            codes.update(t.transaction_code for t in request.agent_transactions)
            result = matcher.match(
                merchant_rows,
                request.agent_transactions,
                already_matched=self._matched_elsewhere(codes),
            )

            # 3. Persist records + COMPLETED session atomically
            updates = self._build_updates(session, result)
            self.store.update(updates)
        except Exception as exc:
            logger.exception("Matching session failed: id=%s", session_id)
            self._mark_failed(session, exc)
            raise ConsistencyError(
                f"Matching session {session_id} could not be persisted",
                {"session_id": session_id, "reason": str(exc)},
            ) from exc

        logger.info(
            "Matching session complete: id=%s records=%d matched=%d errors=%d",
            session_id,
            len(result.records),
            result.count(TransactionStatus.MATCHED),
            result.count(TransactionStatus.ERROR_AMOUNT),
        )
        return session_id

    def get_session(self, session_id: str) -> ReconciliationSession:
        doc = self.store.get(join_path(SESSIONS_PATH, session_id))
        if not doc:
            raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
        return ReconciliationSession.from_document(session_id, doc)

    def list_sessions(self, page: int = 1, page_size: Optional[int] = None) -> SessionPage:
        """Newest sessions first, FAILED excluded."""
        page_size = page_size or self.config.default_page_size
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive", {"page": page, "page_size": page_size})

        sessions = [
            ReconciliationSession.from_document(session_id, doc)
            for session_id, doc in self.store.children(SESSIONS_PATH).items()
            if doc.get("status") != SessionStatus.FAILED.value
        ]
        sessions.sort(key=lambda s: (s.created_at or datetime.min.replace(tzinfo=timezone.utc), s.id), reverse=True)

        start = (page - 1) * page_size
        chunk = sessions[start : start + page_size]
        return SessionPage(sessions=chunk, has_more=start + page_size < len(sessions), total=len(sessions))

    def get_records_by_session(self, session_id: str) -> list[ReconciliationRecord]:
        """Records of one session, ordered by transaction code."""
        session = self.get_session(session_id)
        if session.status == SessionStatus.FAILED:
            return []
        record_ids = self.store.children(join_path(SESSION_RECORDS_INDEX, session_id))
        records = []
        for record_id in record_ids:
            doc = self.store.get(join_path(RECORDS_PATH, record_id))
            if doc:
                records.append(ReconciliationRecord.from_document(record_id, doc))
        records.sort(key=lambda r: (r.transaction_code, r.id))
        return records

    def get_record(self, record_id: str) -> ReconciliationRecord:
        doc = self.store.get(join_path(RECORDS_PATH, record_id))
        if not doc:
            raise NotFoundError(f"Record {record_id} not found", {"record_id": record_id})
        return ReconciliationRecord.from_document(record_id, doc)

    def delete_session(self, session_id: str) -> int:
        """Delete a session and all of its records; returns records removed.

        Raises:
            ConsistencyError: If a record of the session is linked to a
                payment (revert or delete its batch first).
        """
        self.get_session(session_id)
        record_ids = list(self.store.children(join_path(SESSION_RECORDS_INDEX, session_id)))

        updates: dict[str, Any] = {join_path(SESSIONS_PATH, session_id): None}
        for record_id in record_ids:
            doc = self.store.get(join_path(RECORDS_PATH, record_id)) or {}
            if doc.get("paymentId"):
                raise ConsistencyError(
                    f"Record {record_id} is linked to payment {doc['paymentId']}",
                    {"record_id": record_id, "payment_id": doc["paymentId"]},
                )
            updates[join_path(RECORDS_PATH, record_id)] = None
            code = doc.get("transactionCode")
            if code:
                updates[join_path(RECORD_CODE_INDEX, sanitize_key(code), record_id)] = None
        updates[join_path(SESSION_RECORDS_INDEX, session_id)] = None

        self.store.update(updates)
        logger.info("Session deleted: id=%s records=%d", session_id, len(record_ids))
        return len(record_ids)

    def update_record_note(self, record_id: str, note: Optional[str]) -> ReconciliationRecord:
        record = self.get_record(record_id)
        now = _utcnow()
        note = (note or "").strip() or None
        self.store.update(
            {
                join_path(RECORDS_PATH, record_id, "note"): note,
                join_path(RECORDS_PATH, record_id, "noteUpdatedAt"): now.isoformat(),
            }
        )
        return record.model_copy(update={"note": note, "note_updated_at": now})

    def get_stats(self, date_range: Optional[DateRange] = None) -> DashboardStats:
        """Headline numbers across live sessions in ``date_range``."""
        date_range = date_range or DateRange()
        stats = DashboardStats()
        for record in load_live_records(self.store):
            if not date_range.contains(record_day(record)):
                continue
            stats.total_transactions += 1
            stats.total_volume += record.merchant_data.amount if record.merchant_data else 0
            if record.status == TransactionStatus.MATCHED:
                stats.matched_count += 1
            elif record.status == TransactionStatus.ERROR_AMOUNT:
                stats.error_count += 1
        return stats

    def get_unmatched_transactions(self) -> list[ReconciliationRecord]:
        """Merchant rows no agent reported (MISSING_IN_AGENT)."""
        return [r for r in load_live_records(self.store) if r.status == TransactionStatus.MISSING_IN_AGENT]

    def resolve_duplicate_matches(self) -> int:
        """Leave at most one MATCHED record per transaction code.

        Repairs data written before cross-session checks existed.  Per code
        the record linked to a payment is kept, otherwise the oldest one;
        the other unlinked records become ERROR_DUPLICATE and their
        sessions' counters are adjusted.  Linked records are never touched.

        Returns:
            The number of records downgraded.
        """
        by_code: dict[str, list[ReconciliationRecord]] = {}
        for record in load_live_records(self.store):
            if record.status == TransactionStatus.MATCHED:
                by_code.setdefault(sanitize_key(record.transaction_code), []).append(record)

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        updates: dict[str, Any] = {}
        session_deltas: dict[str, int] = {}
        for records in by_code.values():
            if len(records) < 2:
                continue
            records.sort(key=lambda r: (not (r.payment_id or r.is_paid), r.processed_at or epoch, r.id))
            keeper = records[0]
            for record in records[1:]:
                if record.payment_id or record.is_paid:
                    continue
                updates[join_path(RECORDS_PATH, record.id, "status")] = TransactionStatus.ERROR_DUPLICATE.value
                updates[join_path(RECORDS_PATH, record.id, "errorDetail")] = (
                    f"Transaction code {record.transaction_code} already matched in record {keeper.id}"
                )
                session_deltas[record.session_id] = session_deltas.get(record.session_id, 0) + 1

        for session_id, moved in session_deltas.items():
            doc = self.store.get(join_path(SESSIONS_PATH, session_id))
            if not doc:
                continue
            session = ReconciliationSession.from_document(session_id, doc)
            by_status = dict(session.by_status)
            by_status[TransactionStatus.MATCHED.value] = by_status.get(TransactionStatus.MATCHED.value, 0) - moved
            by_status[TransactionStatus.ERROR_DUPLICATE.value] = (
                by_status.get(TransactionStatus.ERROR_DUPLICATE.value, 0) + moved
            )
            updates[join_path(SESSIONS_PATH, session_id, "matchedCount")] = session.matched_count - moved
            updates[join_path(SESSIONS_PATH, session_id, "discrepancyCount")] = session.discrepancy_count + moved
            updates[join_path(SESSIONS_PATH, session_id, "byStatus")] = dict(sorted(by_status.items()))

        if updates:
            self.store.update(updates)
        downgraded = sum(session_deltas.values())
        logger.info("Duplicate matches resolved: downgraded=%d", downgraded)
        return downgraded

    # ── Private helpers ──────────────────────────────────────────────

    def _merchant_rows(self, request: MatchingRequest) -> list[MerchantTransaction]:
        """Inline merchant rows plus the rows stored for the request's upload."""
        if not request.upload_session_id:
            return list(request.merchant_transactions)
        stored = DuplicateGuard(self.store).list_by_upload(request.upload_session_id)
        if not stored and not request.merchant_transactions:
            raise ValidationError(
                f"Upload {request.upload_session_id} has no stored merchant transactions",
                {"upload_session_id": request.upload_session_id},
            )
        return stored + list(request.merchant_transactions)

    def _matched_elsewhere(self, codes: Iterable[str]) -> dict[str, str]:
        """Code -> id of a live MATCHED record already stored for it."""
        failed = failed_session_ids(self.store)
        found: dict[str, str] = {}
        for code in codes:
            for record_id in sorted(self.store.children(join_path(RECORD_CODE_INDEX, sanitize_key(code)))):
                doc = self.store.get(join_path(RECORDS_PATH, record_id)) or {}
                if doc.get("status") == TransactionStatus.MATCHED.value and doc.get("sessionId") not in failed:
                    found[code] = record_id
                    break
        return found

    @staticmethod
    def _parse_request(request: Union[MatchingRequest, dict[str, Any]]) -> MatchingRequest:
        if isinstance(request, MatchingRequest):
            return request
        try:
            return MatchingRequest.model_validate(request)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Matching request is invalid",
                {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
            ) from exc

    def _build_updates(self, session: ReconciliationSession, result: MatchResult) -> dict[str, Any]:
        now = _utcnow()
        updates: dict[str, Any] = {}
        for record in result.records:
            record_id = self.store.push_key(RECORDS_PATH)
            stored = record.model_copy(update={"session_id": session.id, "processed_at": now})
            updates[join_path(RECORDS_PATH, record_id)] = stored.to_document()
            updates[join_path(SESSION_RECORDS_INDEX, session.id, record_id)] = True
            updates[join_path(RECORD_CODE_INDEX, sanitize_key(record.transaction_code), record_id)] = True

        matched = result.count(TransactionStatus.MATCHED)
        amount_errors = result.count(TransactionStatus.ERROR_AMOUNT)
        completed = session.model_copy(
            update={
                "status": SessionStatus.COMPLETED,
                "total_records": len(result.records),
                "matched_count": matched,
                "error_count": amount_errors,
                "discrepancy_count": len(result.records) - matched - amount_errors,
                "total_amount": sum(r.merchant_data.amount for r in result.records if r.merchant_data),
                "processed_at": now,
                "by_status": dict(sorted(result.by_status.items())),
            }
        )
        updates[join_path(SESSIONS_PATH, session.id)] = completed.to_document()
        return updates

    def _mark_failed(self, session: ReconciliationSession, exc: Exception) -> None:
        failed = session.model_copy(
            update={
                "status": SessionStatus.FAILED,
                "processed_at": _utcnow(),
                "failure_reason": str(exc) or exc.__class__.__name__,
            }
        )
        try:
            self.store.set(join_path(SESSIONS_PATH, session.id), failed.to_document())
        except PayReconError:
            logger.exception("Could not mark session FAILED: id=%s", session.id)
