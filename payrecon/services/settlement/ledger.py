"""Settlement ledger: payments to agents and the batch lifecycle.

Turns MATCHED, unpaid reconciliation records into PENDING payments, groups
payments into batches and moves batches through

    DRAFT --settle--> PAID --revert--> DRAFT        (delete from either)

Every transition writes the batch, its payments and the linked records in
one atomic multi-path update, so no record is ever left pointing at a
payment that does not exist.

Back-references maintained at write time:
  - record ``paymentId`` / ``adminBatchId``  -> payment / batch
  - payment ``transactionIds`` / ``batchId`` -> records / batch
  - ``indexes/agent_payments/{agentId}/{paymentId}``
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Union

from payrecon.core.config import Settings
from payrecon.core.errors import ConsistencyError, NotFoundError, ValidationError
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore, join_path, sanitize_key
from payrecon.schemas.agent import Agent
from payrecon.schemas.reconciliation import AdminPaymentStatus, ReconciliationRecord, TransactionStatus
from payrecon.schemas.settlement import (
    BatchPage,
    BatchStatus,
    BatchSummary,
    Payment,
    PaymentBatch,
    PaymentStats,
    PaymentStatus,
)
from payrecon.services.reconciliation.engine import (
    AGENTS_PATH,
    RECORD_CODE_INDEX,
    RECORDS_PATH,
    failed_session_ids,
    load_live_records,
)
from payrecon.services.reconciliation.fee_resolver import fee_for_record

logger = get_logger(__name__)

PAYMENTS_PATH = "payments"
BATCHES_PATH = "payment_batches"
AGENT_PAYMENTS_INDEX = "indexes/agent_payments"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _record_field(record_id: str, field: str) -> str:
    return join_path(RECORDS_PATH, record_id, field)


class SettlementLedger:
    """Creates payments and runs the payment batch state machine."""

    def __init__(self, store: KeyedStore, config: Settings) -> None:
        self.store = store
        self.config = config

    # ── Payments ─────────────────────────────────────────────────────

    def is_transaction_paid(self, transaction_code: str) -> bool:
        """True when any record for ``transaction_code`` is covered by a PAID payment."""
        record_ids = self.store.children(join_path(RECORD_CODE_INDEX, sanitize_key(transaction_code)))
        for record_id in sorted(record_ids):
            doc = self.store.get(join_path(RECORDS_PATH, record_id)) or {}
            if doc.get("isPaid"):
                return True
            payment_id = doc.get("paymentId")
            if payment_id and self.store.get(join_path(PAYMENTS_PATH, payment_id, "status")) == PaymentStatus.PAID.value:
                return True
        return False

    def list_unpaid_matched(self, agent_id: Optional[str] = None) -> list[ReconciliationRecord]:
        """MATCHED records with no payment yet, optionally for one agent.

        A record whose transaction code is paid or linked through another
        record is left out.
        """
        return [
            record
            for record in load_live_records(self.store)
            if self._is_payable(record)
            and (agent_id is None or record.agent_id == agent_id)
            and not self._code_claimed(record.transaction_code)
        ]

    def create_payment_from_record(
        self,
        record: Union[ReconciliationRecord, str],
        agent: Agent,
        created_by: str = "system",
    ) -> Optional[Payment]:
        """Create a PENDING payment covering exactly one record.

        Returns:
            The new payment, or ``None`` when the transaction is already
            paid or the record is already linked to a payment.

        Raises:
            NotFoundError: If the record does not exist.
            ValidationError: If the record is not MATCHED or belongs to
                another agent.
        """
        record = self._load_record(record.id if isinstance(record, ReconciliationRecord) else record)
        if record.status != TransactionStatus.MATCHED:
            raise ValidationError(
                f"Record {record.id} is {record.status.value}, only MATCHED records can be paid",
                {"record_id": record.id, "transaction_code": record.transaction_code},
            )
        if record.agent_id and agent.id and record.agent_id != agent.id:
            raise ValidationError(
                f"Record {record.id} belongs to agent {record.agent_id}",
                {"record_id": record.id, "agent_id": agent.id},
            )

        if record.payment_id or record.is_paid or self._code_claimed(record.transaction_code):
            logger.warning(
                "Payment not created, transaction already settled or claimed: code=%s record=%s",
                record.transaction_code,
                record.id,
            )
            return None

        payment = self._build_payment(agent, [record], created_by)
        updates = self._payment_updates(payment, [record])
        self.store.update(updates)
        logger.info(
            "Payment created: id=%s agent=%s record=%s net=%s",
            payment.id,
            agent.id,
            record.id,
            payment.net_amount,
        )
        return payment

    def create_payments_for_records(
        self,
        record_ids: Iterable[str],
        agents: Optional[Iterable[Agent]] = None,
        created_by: str = "system",
    ) -> list[Payment]:
        """Group payable records into one PENDING payment per agent.

        Records that are not payable (not MATCHED, already linked, already
        paid, from a FAILED session or with no known agent) are skipped.
        All payments are written in a single update.
        """
        agent_map = {a.id: a for a in (agents if agents is not None else self._load_agents())}
        failed = failed_session_ids(self.store)

        grouped: dict[str, list[ReconciliationRecord]] = defaultdict(list)
        claimed_codes: set[str] = set()
        skipped = 0
        for record_id in dict.fromkeys(record_ids):
            record = self._load_record(record_id)
            if (
                record.session_id in failed
                or not self._is_payable(record)
                or record.agent_id not in agent_map
                or record.transaction_code in claimed_codes
                or self._code_claimed(record.transaction_code)
            ):
                skipped += 1
                continue
            claimed_codes.add(record.transaction_code)
            grouped[record.agent_id].append(record)

        payments: list[Payment] = []
        updates: dict[str, Any] = {}
        for agent_id in sorted(grouped):
            payment = self._build_payment(agent_map[agent_id], grouped[agent_id], created_by)
            updates.update(self._payment_updates(payment, grouped[agent_id]))
            payments.append(payment)

        if updates:
            self.store.update(updates)
        logger.info(
            "Payments created: count=%d records=%d skipped=%d",
            len(payments),
            sum(p.transaction_count for p in payments),
            skipped,
        )
        return payments

    def get_payment(self, payment_id: str) -> Payment:
        doc = self.store.get(join_path(PAYMENTS_PATH, payment_id))
        if not doc:
            raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
        return Payment.from_document(payment_id, doc)

    def get_payments_by_agent(self, agent_id: str) -> list[Payment]:
        """Payments of one agent, newest first."""
        payment_ids = self.store.children(join_path(AGENT_PAYMENTS_INDEX, agent_id))
        payments = []
        for payment_id in payment_ids:
            doc = self.store.get(join_path(PAYMENTS_PATH, payment_id))
            if doc:
                payments.append(Payment.from_document(payment_id, doc))
        payments.sort(key=lambda p: (p.created_at or _EPOCH, p.id), reverse=True)
        return payments

    def get_payment_stats(self) -> PaymentStats:
        stats = PaymentStats()
        for doc in self.store.children(PAYMENTS_PATH).values():
            if doc.get("status") == PaymentStatus.PAID.value:
                stats.total_paid += 1
            else:
                stats.total_pending += 1
        return stats

    # ── Batches ──────────────────────────────────────────────────────

    def create_batch(
        self,
        name: str,
        payment_ids: Iterable[str],
        created_by: str = "system",
        notes: Optional[str] = None,
    ) -> PaymentBatch:
        """Attach PENDING, unbatched payments to a new DRAFT batch."""
        payments = [self.get_payment(pid) for pid in dict.fromkeys(payment_ids)]
        if not payments:
            raise ValidationError("A batch needs at least one payment")
        for payment in payments:
            if payment.status != PaymentStatus.PENDING or payment.batch_id:
                raise ValidationError(
                    f"Payment {payment.id} is already batched or paid",
                    {"payment_id": payment.id, "batch_id": payment.batch_id},
                )

        batch_id = self.store.push_key(BATCHES_PATH)
        batch = PaymentBatch(
            id=batch_id,
            name=name.strip() or f"Batch {batch_id[:8]}",
            created_at=_utcnow(),
            created_by=created_by,
            notes=notes,
        )
        batch = self._with_totals(batch, payments)

        updates: dict[str, Any] = {join_path(BATCHES_PATH, batch_id): batch.to_document()}
        for payment in payments:
            updates[join_path(PAYMENTS_PATH, payment.id, "batchId")] = batch_id
            for record_id in payment.transaction_ids:
                updates[_record_field(record_id, "adminBatchId")] = batch_id
                updates[_record_field(record_id, "adminPaymentStatus")] = AdminPaymentStatus.DRAFT.value
        self.store.update(updates)

        logger.info(
            "Batch created: id=%s payments=%d agents=%d net=%s",
            batch_id,
            batch.payment_count,
            batch.agent_count,
            batch.net_amount,
        )
        return batch

    def settle_batch(self, batch_id: str, approval_code: Optional[str] = None) -> PaymentBatch:
        """Mark a DRAFT batch PAID and mirror it onto payments and records.

        Settling an already PAID batch returns it unchanged.

        Raises:
            NotFoundError: If the batch or one of its payments is missing.
            ConsistencyError: If a covered record is already paid through
                another payment.
        """
        batch = self.get_batch(batch_id)
        if batch.payment_status == BatchStatus.PAID:
            logger.warning("Batch already settled: id=%s", batch_id)
            return batch

        payments = [self.get_payment(pid) for pid in batch.payment_ids]
        paid_at = _utcnow()
        stamp = paid_at.isoformat()

        updates: dict[str, Any] = {}
        for payment in payments:
            for record_id in payment.transaction_ids:
                record = self._load_record(record_id)
                if record.is_paid or (record.payment_id and record.payment_id != payment.id):
                    raise ConsistencyError(
                        f"Record {record_id} is already paid through payment {record.payment_id}",
                        {"record_id": record_id, "payment_id": payment.id, "batch_id": batch_id},
                    )
                updates[_record_field(record_id, "isPaid")] = True
                updates[_record_field(record_id, "adminPaymentStatus")] = AdminPaymentStatus.PAID.value
                updates[_record_field(record_id, "adminPaidAt")] = stamp
            updates[join_path(PAYMENTS_PATH, payment.id, "status")] = PaymentStatus.PAID.value
            updates[join_path(PAYMENTS_PATH, payment.id, "paidAt")] = stamp

        settled = batch.model_copy(
            update={
                "payment_status": BatchStatus.PAID,
                "paid_at": paid_at,
                "approval_code": approval_code or batch.approval_code,
            }
        )
        updates[join_path(BATCHES_PATH, batch_id)] = settled.to_document()
        self.store.update(updates)

        logger.info("Batch settled: id=%s payments=%d", batch_id, len(payments))
        return settled

    def revert_batch(self, batch_id: str) -> bool:
        """Return a PAID batch to DRAFT, deleting its payments.

        Every record the payments covered gets its linkage cleared, so it is
        payable again.  Reverting a DRAFT batch does nothing and returns
        ``False``.
        """
        batch = self.get_batch(batch_id)
        if batch.payment_status != BatchStatus.PAID:
            logger.info("Revert skipped, batch is not PAID: id=%s", batch_id)
            return False

        updates = self._unlink_payments(batch)
        reverted = batch.model_copy(
            update={
                "payment_status": BatchStatus.DRAFT,
                "paid_at": None,
                "approval_code": None,
            }
        )
        reverted = self._with_totals(reverted, [])
        updates[join_path(BATCHES_PATH, batch_id)] = reverted.to_document()
        self.store.update(updates)

        logger.info("Batch reverted: id=%s payments_removed=%d", batch_id, len(batch.payment_ids))
        return True

    def delete_batch(self, batch_id: str) -> int:
        """Delete a batch in any state together with its payments."""
        batch = self.get_batch(batch_id)
        updates = self._unlink_payments(batch)
        updates[join_path(BATCHES_PATH, batch_id)] = None
        self.store.update(updates)

        logger.info("Batch deleted: id=%s payments_removed=%d", batch_id, len(batch.payment_ids))
        return len(batch.payment_ids)

    def get_batch(self, batch_id: str) -> PaymentBatch:
        doc = self.store.get(join_path(BATCHES_PATH, batch_id))
        if not doc:
            raise NotFoundError(f"Batch {batch_id} not found", {"batch_id": batch_id})
        return PaymentBatch.from_document(batch_id, doc)

    def list_batches(self, page: int = 1, page_size: Optional[int] = None) -> BatchPage:
        page_size = page_size or self.config.default_page_size
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive", {"page": page, "page_size": page_size})
        batches = [
            PaymentBatch.from_document(batch_id, doc)
            for batch_id, doc in self.store.children(BATCHES_PATH).items()
        ]
        batches.sort(key=lambda b: (b.created_at or _EPOCH, b.id), reverse=True)
        start = (page - 1) * page_size
        return BatchPage(
            batches=batches[start : start + page_size],
            has_more=start + page_size < len(batches),
            total=len(batches),
        )

    def batch_summary(self, batch_id: str) -> BatchSummary:
        """Totals an export needs for one batch (payments sorted by agent code)."""
        batch = self.get_batch(batch_id)
        payments = [self.get_payment(pid) for pid in batch.payment_ids]
        payments.sort(key=lambda p: (p.agent_code or "", p.id))
        return BatchSummary(
            batch=batch,
            payments=payments,
            total_gross=sum((p.total_amount for p in payments), Decimal(0)),
            total_fees=sum((p.fee_amount for p in payments), Decimal(0)),
            total_net=sum((p.net_amount for p in payments), Decimal(0)),
            agent_count=len({p.agent_id for p in payments}),
        )

    # ── Private helpers ──────────────────────────────────────────────

    @staticmethod
    def _is_payable(record: ReconciliationRecord) -> bool:
        return record.status == TransactionStatus.MATCHED and not record.payment_id and not record.is_paid

    def _code_claimed(self, transaction_code: str) -> bool:
        """Paid, or already linked to a payment through another record."""
        if self.is_transaction_paid(transaction_code):
            return True
        record_ids = self.store.children(join_path(RECORD_CODE_INDEX, sanitize_key(transaction_code)))
        return any(self.store.get(_record_field(rid, "paymentId")) for rid in record_ids)

    def _load_record(self, record_id: Optional[str]) -> ReconciliationRecord:
        doc = self.store.get(join_path(RECORDS_PATH, record_id)) if record_id else None
        if not doc:
            raise NotFoundError(f"Record {record_id} not found", {"record_id": record_id})
        return ReconciliationRecord.from_document(record_id, doc)

    def _load_agents(self) -> list[Agent]:
        return [Agent.from_document(aid, doc) for aid, doc in self.store.children(AGENTS_PATH).items()]

    def _build_payment(self, agent: Agent, records: list[ReconciliationRecord], created_by: str) -> Payment:
        total = Decimal(0)
        fees = Decimal(0)
        for record in records:
            breakdown = fee_for_record(agent, record, self.config.default_payment_method)
            total += breakdown.amount
            fees += breakdown.fee
        return Payment(
            id=self.store.push_key(PAYMENTS_PATH),
            agent_id=agent.id,
            agent_code=agent.code,
            agent_name=agent.name,
            bank_account=agent.bank_account,
            total_amount=total,
            fee_amount=fees,
            transaction_ids=[r.id for r in records],
            status=PaymentStatus.PENDING,
            created_at=_utcnow(),
            created_by=created_by,
        )

    @staticmethod
    def _payment_updates(payment: Payment, records: list[ReconciliationRecord]) -> dict[str, Any]:
        updates: dict[str, Any] = {
            join_path(PAYMENTS_PATH, payment.id): payment.to_document(),
            join_path(AGENT_PAYMENTS_INDEX, payment.agent_id, payment.id): True,
        }
        for record in records:
            updates[_record_field(record.id, "paymentId")] = payment.id
        return updates

    def _unlink_payments(self, batch: PaymentBatch) -> dict[str, Any]:
        """Writes that delete the batch's payments and clear record linkage."""
        updates: dict[str, Any] = {}
        for payment_id in batch.payment_ids:
            doc = self.store.get(join_path(PAYMENTS_PATH, payment_id))
            if not doc:
                logger.warning("Batch %s references missing payment %s", batch.id, payment_id)
                continue
            payment = Payment.from_document(payment_id, doc)
            for record_id in payment.transaction_ids:
                if self.store.get(join_path(RECORDS_PATH, record_id)) is None:
                    continue
                updates[_record_field(record_id, "paymentId")] = None
                updates[_record_field(record_id, "isPaid")] = False
                updates[_record_field(record_id, "adminBatchId")] = None
                updates[_record_field(record_id, "adminPaidAt")] = None
                updates[_record_field(record_id, "adminPaymentStatus")] = AdminPaymentStatus.UNPAID.value
            updates[join_path(PAYMENTS_PATH, payment_id)] = None
            updates[join_path(AGENT_PAYMENTS_INDEX, payment.agent_id, payment_id)] = None
        return updates

    @staticmethod
    def _with_totals(batch: PaymentBatch, payments: list[Payment]) -> PaymentBatch:
        return batch.model_copy(
            update={
                "payment_ids": [p.id for p in payments],
                "payment_count": len(payments),
                "agent_count": len({p.agent_id for p in payments}),
                "total_amount": sum((p.total_amount for p in payments), Decimal(0)),
                "total_fees": sum((p.fee_amount for p in payments), Decimal(0)),
                "net_amount": sum((p.net_amount for p in payments), Decimal(0)),
            }
        )
