"""Tests for the settlement ledger: payments and the batch state machine."""

from __future__ import annotations

import random
from collections import Counter
from decimal import Decimal

import pytest

from helpers import agent_row, merchant_row, seed_agent
from payrecon.core.errors import NotFoundError, ValidationError
from payrecon.schemas.agent import Agent
from payrecon.schemas.reconciliation import AdminPaymentStatus, TransactionStatus
from payrecon.schemas.settlement import BatchStatus, PaymentStatus
from payrecon.services.ingestion.normalizer import QR_VNPAY
from payrecon.services.reconciliation.engine import ReconciliationEngine
from payrecon.services.settlement.ledger import SettlementLedger


@pytest.fixture
def agent(store) -> Agent:
    doc = seed_agent(
        store,
        "ag1",
        "AG01",
        discount_rates={QR_VNPAY: "5"},
        discount_rates_by_point_of_sale={"POS_A": {QR_VNPAY: "2"}},
    )
    return Agent.from_document("ag1", doc)


@pytest.fixture
def ledger(store, config) -> SettlementLedger:
    return SettlementLedger(store, config)


@pytest.fixture
def records(store, config, agent):
    engine = ReconciliationEngine(store, config)
    session_id = engine.run_matching(
        {
            "merchant_transactions": [
                merchant_row("TX1", 100000),
                merchant_row("TX2", 50000),
                merchant_row("TX3", 10),
            ],
            "agent_transactions": [agent_row("TX1", 100000), agent_row("TX2", 50000), agent_row("TX3", 99)],
        }
    )
    return {r.transaction_code: r for r in engine.get_records_by_session(session_id)}


def _record(store, record_id):
    return store.get(f"reconciliation_records/{record_id}")


class TestPayments:
    def test_list_unpaid_matched(self, ledger: SettlementLedger, records) -> None:
        unpaid = ledger.list_unpaid_matched()
        assert sorted(r.transaction_code for r in unpaid) == ["TX1", "TX2"]
        assert ledger.list_unpaid_matched(agent_id="other") == []

    def test_create_payment_from_record(self, ledger: SettlementLedger, records, agent, store) -> None:
        payment = ledger.create_payment_from_record(records["TX1"], agent)

        assert payment.status == PaymentStatus.PENDING
        assert payment.total_amount == Decimal(100000)
        assert payment.fee_amount == Decimal(2000)
        assert payment.net_amount == Decimal(98000)
        assert payment.transaction_ids == [records["TX1"].id]
        assert _record(store, records["TX1"].id)["paymentId"] == payment.id
        assert [p.id for p in ledger.get_payments_by_agent("ag1")] == [payment.id]
        assert "TX1" not in [r.transaction_code for r in ledger.list_unpaid_matched()]

    def test_second_attempt_is_noop(self, ledger: SettlementLedger, records, agent, store) -> None:
        first = ledger.create_payment_from_record(records["TX1"], agent)
        second = ledger.create_payment_from_record(records["TX1"].id, agent)

        assert first is not None
        assert second is None
        assert len(store.children("payments")) == 1

    def test_only_matched_records_can_be_paid(self, ledger: SettlementLedger, records, agent) -> None:
        with pytest.raises(ValidationError):
            ledger.create_payment_from_record(records["TX3"], agent)

    def test_missing_record(self, ledger: SettlementLedger, agent) -> None:
        with pytest.raises(NotFoundError):
            ledger.create_payment_from_record("nope", agent)

    def test_create_payments_for_records_groups_by_agent(self, ledger: SettlementLedger, records) -> None:
        ids = [records["TX1"].id, records["TX2"].id, records["TX3"].id, records["TX1"].id]

        payments = ledger.create_payments_for_records(ids)

        assert len(payments) == 1
        payment = payments[0]
        assert payment.transaction_count == 2
        assert payment.total_amount == Decimal(150000)
        assert payment.fee_amount == Decimal(3000)
        assert ledger.create_payments_for_records(ids) == []

    def test_payment_stats(self, ledger: SettlementLedger, records, agent) -> None:
        ledger.create_payment_from_record(records["TX1"], agent)
        assert ledger.get_payment_stats().total_pending == 1
        assert ledger.get_payment_stats().total_paid == 0


class TestBatchLifecycle:
    @pytest.fixture
    def batch(self, ledger: SettlementLedger, records):
        payments = ledger.create_payments_for_records([records["TX1"].id, records["TX2"].id])
        return ledger.create_batch("March payout", [p.id for p in payments])

    def test_create_batch_totals_and_linkage(self, batch, records, store) -> None:
        assert batch.payment_status == BatchStatus.DRAFT
        assert batch.payment_count == 1
        assert batch.agent_count == 1
        assert batch.total_amount == Decimal(150000)
        assert batch.net_amount == Decimal(147000)
        doc = _record(store, records["TX1"].id)
        assert doc["adminBatchId"] == batch.id
        assert doc["adminPaymentStatus"] == AdminPaymentStatus.DRAFT.value

    def test_payment_cannot_join_two_batches(self, ledger: SettlementLedger, batch) -> None:
        with pytest.raises(ValidationError):
            ledger.create_batch("again", batch.payment_ids)

    def test_settle_mirrors_onto_payments_and_records(self, ledger: SettlementLedger, batch, records, store) -> None:
        settled = ledger.settle_batch(batch.id, approval_code="APR-1")

        assert settled.payment_status == BatchStatus.PAID
        assert settled.paid_at is not None
        assert settled.approval_code == "APR-1"
        payment = ledger.get_payment(batch.payment_ids[0])
        assert payment.status == PaymentStatus.PAID
        doc = _record(store, records["TX1"].id)
        assert doc["isPaid"] is True
        assert doc["adminPaymentStatus"] == AdminPaymentStatus.PAID.value
        assert ledger.is_transaction_paid("TX1") is True
        assert ledger.is_transaction_paid("TX3") is False

    def test_paid_transaction_cannot_be_paid_again(
        self, ledger: SettlementLedger, batch, records, agent
    ) -> None:
        ledger.settle_batch(batch.id)
        assert ledger.create_payment_from_record(records["TX1"], agent) is None

    def test_revert_clears_linkage_and_is_idempotent(
        self, ledger: SettlementLedger, batch, records, store
    ) -> None:
        ledger.settle_batch(batch.id)

        assert ledger.revert_batch(batch.id) is True
        assert ledger.revert_batch(batch.id) is False

        reverted = ledger.get_batch(batch.id)
        assert reverted.payment_status == BatchStatus.DRAFT
        assert reverted.paid_at is None
        assert reverted.payment_ids == []
        assert store.children("payments") == {}
        assert store.children("indexes/agent_payments/ag1") == {}
        for code in ("TX1", "TX2"):
            doc = _record(store, records[code].id)
            assert "paymentId" not in doc
            assert doc["isPaid"] is False
            assert "adminBatchId" not in doc
            assert "adminPaidAt" not in doc
            assert doc["adminPaymentStatus"] == AdminPaymentStatus.UNPAID.value
        assert sorted(r.transaction_code for r in ledger.list_unpaid_matched()) == ["TX1", "TX2"]

    def test_revert_resettle_revert_cycle(self, ledger: SettlementLedger, batch, records, store) -> None:
        before = _record(store, records["TX1"].id)
        ledger.settle_batch(batch.id)
        ledger.revert_batch(batch.id)

        payments = ledger.create_payments_for_records([records["TX1"].id])
        second = ledger.create_batch("retry", [p.id for p in payments])
        ledger.settle_batch(second.id)
        ledger.revert_batch(second.id)

        after = _record(store, records["TX1"].id)
        for field in ("paymentId", "adminBatchId", "adminPaidAt"):
            assert field not in after
        assert after["isPaid"] is False
        assert after["status"] == before["status"] == TransactionStatus.MATCHED.value

    def test_delete_batch_removes_payments(self, ledger: SettlementLedger, batch, records, store) -> None:
        removed = ledger.delete_batch(batch.id)

        assert removed == 1
        assert store.children("payments") == {}
        with pytest.raises(NotFoundError):
            ledger.get_batch(batch.id)
        assert "paymentId" not in _record(store, records["TX1"].id)

    def test_settle_twice_is_noop(self, ledger: SettlementLedger, batch) -> None:
        first = ledger.settle_batch(batch.id)
        second = ledger.settle_batch(batch.id)
        assert second.paid_at == first.paid_at

    def test_batch_summary(self, ledger: SettlementLedger, batch) -> None:
        summary = ledger.batch_summary(batch.id)
        assert summary.total_gross == Decimal(150000)
        assert summary.total_fees == Decimal(3000)
        assert summary.total_net == Decimal(147000)
        assert summary.agent_count == 1

    def test_list_batches(self, ledger: SettlementLedger, batch) -> None:
        page = ledger.list_batches()
        assert page.total == 1
        assert page.batches[0].id == batch.id
        assert page.has_more is False

    def test_missing_batch(self, ledger: SettlementLedger) -> None:
        with pytest.raises(NotFoundError):
            ledger.settle_batch("nope")


# ── Transaction codes shared between sessions ───────────────────────


def _rematch_as_legacy(store, config, codes) -> dict:
    """Run a second session over ``codes`` and force its records back to MATCHED.

    Reproduces data written before earlier matches were checked.
    """
    engine = ReconciliationEngine(store, config)
    session_id = engine.run_matching(
        {
            "merchant_transactions": [merchant_row(code, amount) for code, amount in codes],
            "agent_transactions": [agent_row(code, amount) for code, amount in codes],
        }
    )
    records = engine.get_records_by_session(session_id)
    store.update({f"reconciliation_records/{r.id}/status": TransactionStatus.MATCHED.value for r in records})
    return {r.transaction_code: engine.get_record(r.id) for r in records}


class TestSharedCodes:
    def test_rematched_code_is_not_payable_again(self, ledger: SettlementLedger, records, store, config) -> None:
        engine = ReconciliationEngine(store, config)
        session_id = engine.run_matching(
            {"merchant_transactions": [merchant_row("TX1", 100000)], "agent_transactions": [agent_row("TX1", 100000)]}
        )

        repeat = engine.get_records_by_session(session_id)[0]
        assert repeat.status == TransactionStatus.ERROR_DUPLICATE
        assert sorted(r.transaction_code for r in ledger.list_unpaid_matched()) == ["TX1", "TX2"]

    def test_paid_code_leaves_unpaid_list_in_every_session(
        self, ledger: SettlementLedger, records, store, config
    ) -> None:
        legacy = _rematch_as_legacy(store, config, [("TX1", 100000)])
        payments = ledger.create_payments_for_records([records["TX1"].id])
        ledger.settle_batch(ledger.create_batch("march", [p.id for p in payments]).id)

        assert ledger.is_transaction_paid("TX1") is True
        assert "TX1" not in [r.transaction_code for r in ledger.list_unpaid_matched()]
        assert ledger.create_payments_for_records([legacy["TX1"].id]) == []

    def test_at_most_one_payment_per_code_under_random_operations(
        self, ledger: SettlementLedger, records, agent, store, config
    ) -> None:
        legacy = _rematch_as_legacy(store, config, [("TX1", 100000), ("TX2", 50000)])
        record_ids = [records["TX1"].id, records["TX2"].id, legacy["TX1"].id, legacy["TX2"].id]
        code_of = {rid: store.get(f"reconciliation_records/{rid}/transactionCode") for rid in record_ids}
        rng = random.Random(315)

        for _ in range(80):
            batches = store.children("payment_batches")
            payments = store.children("payments")
            action = rng.choice(["single", "grouped", "batch", "settle", "revert", "delete"])
            if action == "single":
                ledger.create_payment_from_record(rng.choice(record_ids), agent)
            elif action == "grouped":
                ledger.create_payments_for_records(rng.sample(record_ids, rng.randint(1, len(record_ids))))
            elif action == "batch":
                open_ids = [pid for pid, doc in payments.items() if doc["status"] == "PENDING" and not doc.get("batchId")]
                if open_ids:
                    ledger.create_batch("b", rng.sample(open_ids, rng.randint(1, len(open_ids))))
            elif batches and action == "settle":
                ledger.settle_batch(rng.choice(sorted(batches)))
            elif batches and action == "revert":
                ledger.revert_batch(rng.choice(sorted(batches)))
            elif batches and action == "delete":
                ledger.delete_batch(rng.choice(sorted(batches)))

            payments = store.children("payments")
            covering = Counter()
            paid_covering = Counter()
            for payment_id, doc in payments.items():
                for rid in doc.get("transactionIds", []):
                    assert store.get(f"reconciliation_records/{rid}/paymentId") == payment_id
                    covering[code_of[rid]] += 1
                    if doc["status"] == PaymentStatus.PAID.value:
                        paid_covering[code_of[rid]] += 1
            assert all(n <= 1 for n in covering.values())
            assert all(n <= 1 for n in paid_covering.values())
            for rid in record_ids:
                payment_id = store.get(f"reconciliation_records/{rid}/paymentId")
                assert payment_id is None or payment_id in payments
