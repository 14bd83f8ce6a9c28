"""API integration tests for ingestion and matching session endpoints."""

from __future__ import annotations

from helpers import agent_row, merchant_row


def _run(client, merchants, agents):
    response = client.post(
        "/api/v1/reconciliation/run",
        json={"merchant_transactions": merchants, "agent_transactions": agents},
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_ingest_merchant_batch_skips_duplicates(client):
    """POST /api/v1/ingestion/merchant-batch twice with the same code."""
    body = {"transactions": [merchant_row("TX1", 100000)]}

    first = client.post("/api/v1/ingestion/merchant-batch", json=body)
    second = client.post("/api/v1/ingestion/merchant-batch", json=body)

    assert first.status_code == 200, first.text
    assert first.json()["status"] == "success"
    assert len(first.json()["created"]) == 1
    assert second.json()["status"] == "skipped"
    assert second.json()["skipped"][0]["reason"] == "duplicate"


def test_ingest_invalid_row_returns_422(client):
    response = client.post(
        "/api/v1/ingestion/merchant-batch",
        json={"transactions": [{"transactionCode": "TX1", "amount": -5, "transactionDate": "2024-01-01"}]},
    )
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "ValidationError"


def test_run_matching_returns_completed_session(client):
    session = _run(client, [merchant_row("TX1", 100000)], [agent_row("TX1", 90000)])

    assert session["status"] == "COMPLETED"
    assert session["matchedCount"] == 0
    assert session["errorCount"] == 1

    records = client.get(f"/api/v1/reconciliation/sessions/{session['id']}/records").json()
    assert records[0]["status"] == "ERROR_AMOUNT"
    assert records[0]["merchantAmount"] == 100000


def test_list_and_delete_sessions(client):
    session = _run(client, [merchant_row("TX1", 1)], [])

    page = client.get("/api/v1/reconciliation/sessions").json()
    assert page["total"] == 1
    assert page["has_more"] is False
    assert page["sessions"][0]["matchedCount"] == 0

    deleted = client.delete(f"/api/v1/reconciliation/sessions/{session['id']}")
    assert deleted.status_code == 200
    assert deleted.json()["records_deleted"] == 1
    assert client.get(f"/api/v1/reconciliation/sessions/{session['id']}").status_code == 404


def test_note_stats_and_unmatched(client):
    session = _run(client, [merchant_row("TX1", 100), merchant_row("TX2", 50)], [agent_row("TX1", 100)])
    records = client.get(f"/api/v1/reconciliation/sessions/{session['id']}/records").json()
    tx2 = [r for r in records if r["transactionCode"] == "TX2"][0]

    noted = client.patch(f"/api/v1/reconciliation/records/{tx2['id']}/note", json={"note": "ask agent"})
    assert noted.json()["note"] == "ask agent"

    stats = client.get("/api/v1/reconciliation/stats", params={"date_from": "2024-03-01", "date_to": "2024-03-31"})
    assert stats.json()["total_transactions"] == 2

    unmatched = client.get("/api/v1/reconciliation/unmatched").json()
    assert [r["transactionCode"] for r in unmatched] == ["TX2"]


def test_reversed_date_range_returns_422(client):
    response = client.get("/api/v1/reconciliation/stats", params={"date_from": "2024-04-01", "date_to": "2024-03-01"})
    assert response.status_code == 422


def test_run_from_stored_upload_and_repeat_is_duplicate(client):
    stored = client.post(
        "/api/v1/ingestion/merchant-batch",
        json={"transactions": [merchant_row("TX1", 100000)], "upload_session_id": "up-1"},
    )
    assert stored.status_code == 200, stored.text

    body = {"upload_session_id": "up-1", "agent_transactions": [agent_row("TX1", 100000)]}
    first = client.post("/api/v1/reconciliation/run", json=body).json()
    second = client.post("/api/v1/reconciliation/run", json=body).json()

    assert first["matchedCount"] == 1
    assert first["uploadSessionId"] == "up-1"
    assert second["matchedCount"] == 0
    records = client.get(f"/api/v1/reconciliation/sessions/{second['id']}/records").json()
    assert records[0]["status"] == "ERROR_DUPLICATE"


def test_repair_endpoints_on_clean_data(client):
    client.post("/api/v1/ingestion/merchant-batch", json={"transactions": [merchant_row("TX1", 1)]})
    _run(client, [merchant_row("TX1", 1)], [agent_row("TX1", 1)])

    deduplicated = client.post("/api/v1/ingestion/deduplicate")
    resolved = client.post("/api/v1/reconciliation/duplicates/resolve")

    assert deduplicated.status_code == 200, deduplicated.text
    assert deduplicated.json() == {"removed": 0, "kept": 1}
    assert resolved.json() == {"downgraded": 0}
