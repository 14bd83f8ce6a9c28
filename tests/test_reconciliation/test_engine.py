"""Integration tests for the ReconciliationEngine against the SQLite store."""

from __future__ import annotations

from datetime import date

import pytest

from helpers import agent_row, merchant_row, seed_agent
from payrecon.core.errors import ConsistencyError, NotFoundError, StoreError, ValidationError
from payrecon.core.store import SqlKeyedStore
from payrecon.schemas.debt import DateRange
from payrecon.schemas.reconciliation import SessionStatus, TransactionStatus
from payrecon.services.ingestion.duplicate_guard import DuplicateGuard
from payrecon.services.reconciliation.engine import ReconciliationEngine


@pytest.fixture
def engine(store, config) -> ReconciliationEngine:
    seed_agent(store, "ag1", "AG01", assigned_point_of_sales=["POS_A"])
    return ReconciliationEngine(store, config)


def _request(merchants, agents, **kw) -> dict:
    return {"merchant_transactions": merchants, "agent_transactions": agents, **kw}


class FailingUpdateStore(SqlKeyedStore):
    """Lets the PROCESSING write through, then fails multi-path updates."""

    def update(self, changes):
        if len(changes) > 1:
            raise StoreError("simulated outage")
        return super().update(changes)


class TestRunMatching:
    def test_session_completed_with_counts(self, engine: ReconciliationEngine) -> None:
        session_id = engine.run_matching(
            _request(
                [merchant_row("TX1", 100000), merchant_row("TX2", 5000), merchant_row("TX3", 10)],
                [agent_row("TX1", 100000), agent_row("TX3", 11), agent_row("TX4", 7)],
            )
        )

        session = engine.get_session(session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.total_records == 4
        assert session.matched_count == 1
        assert session.error_count == 1
        assert session.discrepancy_count == 2
        assert session.total_amount == 105010
        assert session.by_status[TransactionStatus.MISSING_IN_MERCHANT.value] == 1

    def test_records_persisted_with_back_references(self, engine: ReconciliationEngine, store) -> None:
        session_id = engine.run_matching(_request([merchant_row("TX1", 100000)], [agent_row("TX1", 100000)]))

        records = engine.get_records_by_session(session_id)
        assert len(records) == 1
        record = records[0]
        assert record.status == TransactionStatus.MATCHED
        assert record.session_id == session_id
        assert record.agent_id == "ag1"
        assert record.transaction_date == date(2024, 3, 15)
        assert store.get(f"indexes/record_code/TX1/{record.id}") is True

    def test_duplicate_error_not_counted_as_error(self, engine: ReconciliationEngine) -> None:
        session_id = engine.run_matching(
            _request([merchant_row("TX1", 1), merchant_row("TX1", 1)], [agent_row("TX1", 1)])
        )
        session = engine.get_session(session_id)
        assert session.error_count == 0
        assert session.discrepancy_count == 1

    def test_invalid_request_writes_nothing(self, engine: ReconciliationEngine, store) -> None:
        with pytest.raises(ValidationError):
            engine.run_matching(_request([{"amount": 5}], []))
        assert store.children("reconciliation_sessions") == {}

    def test_failed_persist_marks_session_failed(self, db_session, config) -> None:
        store = FailingUpdateStore(db_session)
        engine = ReconciliationEngine(store, config, agents=[])

        with pytest.raises(ConsistencyError) as exc_info:
            engine.run_matching(_request([merchant_row("TX1", 1)], [agent_row("TX1", 1)]))

        session_id = exc_info.value.details["session_id"]
        session = engine.get_session(session_id)
        assert session.status == SessionStatus.FAILED
        assert "simulated outage" in session.failure_reason
        assert store.children("reconciliation_records") == {}
        assert engine.list_sessions().total == 0


class TestSessionReads:
    def test_list_sessions_newest_first_with_pages(self, engine: ReconciliationEngine) -> None:
        ids = [
            engine.run_matching(_request([merchant_row(f"TX{i}", i)], [], notes=f"run {i}"))
            for i in range(3)
        ]

        first = engine.list_sessions(page=1, page_size=2)
        second = engine.list_sessions(page=2, page_size=2)

        assert first.total == 3
        assert first.has_more is True
        assert second.has_more is False
        listed = first.sessions + second.sessions
        assert {s.id for s in listed} == set(ids)
        stamps = [s.created_at for s in listed]
        assert stamps == sorted(stamps, reverse=True)

    def test_invalid_page(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError):
            engine.list_sessions(page=0)

    def test_missing_session(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.get_session("nope")

    def test_delete_session_cascades(self, engine: ReconciliationEngine, store) -> None:
        session_id = engine.run_matching(
            _request([merchant_row("TX1", 1), merchant_row("TX2", 2)], [agent_row("TX1", 1)])
        )

        removed = engine.delete_session(session_id)

        assert removed == 2
        assert store.children("reconciliation_records") == {}
        assert store.children(f"indexes/session_records/{session_id}") == {}
        assert store.children("indexes/record_code") == {}
        with pytest.raises(NotFoundError):
            engine.get_session(session_id)

    def test_update_record_note(self, engine: ReconciliationEngine) -> None:
        session_id = engine.run_matching(_request([merchant_row("TX1", 1)], []))
        record = engine.get_records_by_session(session_id)[0]

        updated = engine.update_record_note(record.id, "  called the agent ")

        assert updated.note == "called the agent"
        assert engine.get_record(record.id).note == "called the agent"
        assert engine.get_record(record.id).note_updated_at is not None

    def test_stats_and_unmatched(self, engine: ReconciliationEngine) -> None:
        engine.run_matching(
            _request(
                [
                    merchant_row("TX1", 100),
                    merchant_row("TX2", 200),
                    merchant_row("TX3", 300, transaction_date="2024-04-01"),
                ],
                [agent_row("TX1", 100), agent_row("TX2", 250)],
            )
        )

        march = engine.get_stats(DateRange(date_from=date(2024, 3, 1), date_to=date(2024, 3, 31)))
        assert march.total_transactions == 2
        assert march.total_volume == 300
        assert march.matched_count == 1
        assert march.error_count == 1

        unmatched = engine.get_unmatched_transactions()
        assert [r.transaction_code for r in unmatched] == ["TX3"]

    def test_stats_window_uses_processed_day_when_undated(self, engine: ReconciliationEngine) -> None:
        """Agent-only rows carry no date; they count on the day they were processed."""
        session_id = engine.run_matching(_request([], [agent_row("TX8", 80)]))
        record = engine.get_records_by_session(session_id)[0]
        assert record.transaction_date is None
        today = record.processed_at.date()

        assert engine.get_stats(DateRange(date_from=today, date_to=today)).total_transactions == 1
        assert engine.get_stats(DateRange(date_from=date(2024, 3, 1), date_to=date(2024, 3, 31))).total_transactions == 0


# ── Codes seen in earlier sessions ──────────────────────────────────


class TestCrossSessionMatching:
    def test_code_matched_earlier_is_reported_as_duplicate(self, engine: ReconciliationEngine) -> None:
        first = engine.run_matching(_request([merchant_row("TX1", 100000)], [agent_row("TX1", 100000)]))
        second = engine.run_matching(_request([merchant_row("TX1", 100000)], [agent_row("TX1", 100000)]))

        original = engine.get_records_by_session(first)[0]
        repeat = engine.get_records_by_session(second)[0]
        assert original.status == TransactionStatus.MATCHED
        assert repeat.status == TransactionStatus.ERROR_DUPLICATE
        assert original.id in repeat.error_detail
        session = engine.get_session(second)
        assert session.matched_count == 0
        assert session.discrepancy_count == 1

    def test_failed_session_does_not_claim_code(self, engine: ReconciliationEngine, store) -> None:
        first = engine.run_matching(_request([merchant_row("TX1", 5)], [agent_row("TX1", 5)]))
        store.set(f"reconciliation_sessions/{first}/status", SessionStatus.FAILED.value)

        second = engine.run_matching(_request([merchant_row("TX1", 5)], [agent_row("TX1", 5)]))

        assert engine.get_records_by_session(second)[0].status == TransactionStatus.MATCHED

    def test_merchant_side_read_from_stored_upload(self, engine: ReconciliationEngine) -> None:
        guard = DuplicateGuard(engine.store)
        created = guard.ingest_merchant_batch(
            [merchant_row("TX1", 100000), merchant_row("TX2", 5000)],
            upload_session_id="up1",
        ).created
        guard.ingest_merchant_batch([merchant_row("TX1", 100000)], upload_session_id="up2")

        session_id = engine.run_matching({"upload_session_id": "up1", "agent_transactions": [agent_row("TX1", 100000)]})

        records = {r.transaction_code: r for r in engine.get_records_by_session(session_id)}
        assert records["TX1"].status == TransactionStatus.MATCHED
        assert records["TX2"].status == TransactionStatus.MISSING_IN_AGENT
        assert {r.merchant_data.transaction_id for r in records.values()} == set(created)
        assert engine.get_session(session_id).upload_session_id == "up1"

    def test_unknown_upload_is_rejected(self, engine: ReconciliationEngine, store) -> None:
        with pytest.raises(ValidationError):
            engine.run_matching({"upload_session_id": "nope"})
        assert store.children("reconciliation_sessions") == {}


class TestResolveDuplicateMatches:
    def _legacy_pair(self, engine: ReconciliationEngine, store) -> tuple:
        """Two MATCHED records for TX1, as written before cross-session checks."""
        first = engine.run_matching(_request([merchant_row("TX1", 100)], [agent_row("TX1", 100)]))
        second = engine.run_matching(_request([merchant_row("TX1", 100)], [agent_row("TX1", 100)]))
        older = engine.get_records_by_session(first)[0]
        newer = engine.get_records_by_session(second)[0]
        store.update(
            {
                f"reconciliation_records/{older.id}/processedAt": "2024-03-15T08:00:00+00:00",
                f"reconciliation_records/{newer.id}/processedAt": "2024-03-16T08:00:00+00:00",
                f"reconciliation_records/{newer.id}/status": TransactionStatus.MATCHED.value,
                f"reconciliation_sessions/{second}/matchedCount": 1,
                f"reconciliation_sessions/{second}/discrepancyCount": 0,
                f"reconciliation_sessions/{second}/byStatus": {"MATCHED": 1},
            }
        )
        return second, older, newer

    def test_oldest_record_kept(self, engine: ReconciliationEngine, store) -> None:
        second, older, newer = self._legacy_pair(engine, store)

        assert engine.resolve_duplicate_matches() == 1

        assert engine.get_record(older.id).status == TransactionStatus.MATCHED
        assert engine.get_record(newer.id).status == TransactionStatus.ERROR_DUPLICATE
        session = engine.get_session(second)
        assert session.matched_count == 0
        assert session.discrepancy_count == 1
        assert session.by_status == {"ERROR_DUPLICATE": 1, "MATCHED": 0}
        assert engine.resolve_duplicate_matches() == 0

    def test_record_linked_to_payment_kept(self, engine: ReconciliationEngine, store) -> None:
        _, older, newer = self._legacy_pair(engine, store)
        store.set(f"reconciliation_records/{newer.id}/paymentId", "p1")

        assert engine.resolve_duplicate_matches() == 1

        assert engine.get_record(newer.id).status == TransactionStatus.MATCHED
        assert engine.get_record(older.id).status == TransactionStatus.ERROR_DUPLICATE
