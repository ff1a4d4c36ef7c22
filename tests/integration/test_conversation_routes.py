"""
HTTP-level tests for the conversation routes.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from leadinbox.routes import conversations
from leadinbox.services.conversations.service import ConversationService
from leadinbox.services.record_store_client import RecordStoreError


@pytest.fixture
def app(fake_repository, clock, apply_auth_override):
    app = FastAPI()
    app.include_router(conversations.router)
    app.state.conversation_service = ConversationService(
        fake_repository, None, clock=clock, mutation_timeout=1.0, refresh_after_commit=False
    )
    apply_auth_override(app)
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def test_list_conversations_simple_view(client):
    response = client.get("/conversations")

    assert response.status_code == 200
    data = response.json()
    assert data["view"] == "simple"
    assert data["total_count"] == 3
    assert [item["conversation_id"] for item in data["conversations"]] == ["conv-1", "conv-2", "conv-3"]
    assert "messages" not in data["conversations"][0]
    assert data["conversations"][0]["status"] == "pending"


def test_list_conversations_filters_sorts_and_detailed_view(client):
    response = client.get(
        "/conversations",
        params={"statuses": ["pending", "active"], "sort": "ai_score", "direction": "asc", "view": "detailed"},
    )

    assert response.status_code == 200
    items = response.json()["conversations"]
    assert [item["conversation_id"] for item in items] == ["conv-2", "conv-1"]
    assert items[0]["lead_name"] == "Bob Seller"
    assert len(items[0]["messages"]) == 2


def test_list_conversations_date_filter_accepts_naive_datetimes(client):
    response = client.get("/conversations", params={"date_from": "2024-06-09T00:00:00"})

    assert response.status_code == 200
    assert response.json()["total_count"] == 2


@pytest.mark.parametrize(
    "params",
    [{"statuses": ["archived"]}, {"ev_min": 80, "ev_max": 20}, {"sort": "color"}],
)
def test_list_conversations_rejects_bad_queries(client, params):
    assert client.get("/conversations", params=params).status_code == 400


def test_metrics_and_trends(client):
    metrics = client.get("/conversations/metrics").json()
    assert metrics["total"] == 3
    assert metrics["average_ev_score"] == 43.33

    trends = client.get(
        "/conversations/trends", params={"start": "2024-06-09T00:00:00Z", "end": "2024-06-11T00:00:00Z"}
    ).json()
    total = trends["trends"]["total_conversations"]
    assert total["current"] == 2
    assert total["percent_change"] is None
    assert total["show"] is False


def test_get_conversation_detail_and_404(client):
    response = client.get("/conversations/conv-1")
    assert response.status_code == 200
    assert response.json()["ai_summary"] == "Looking for a 3 bed condo"

    assert client.get("/conversations/missing").status_code == 404


def test_mutation_endpoints(client, fake_repository):
    assert client.post("/conversations/conv-1/read").json()["conversation"]["read"] is True
    assert client.post("/conversations/conv-1/lcp/toggle").json()["conversation"]["lcp_enabled"] is True
    assert client.post("/conversations/conv-3/not-spam").status_code == 200
    assert client.post("/conversations/conv-2/spam").json()["conversation"]["status"] == "spam"

    notes = client.post("/conversations/conv-1/notes", json={"notes": "Pre-approved"})
    assert notes.status_code == 200
    assert fake_repository.threads["conv-1"]["notes"] == "Pre-approved"

    complete = client.post("/conversations/conv-1/complete", json={"reason": "Closed", "next_steps": ""})
    assert complete.json()["conversation"]["status"] == "completed"


def test_failed_mutation_returns_conflict_and_reverts(client, fake_repository):
    fake_repository.fail_ids.add("conv-1")

    response = client.post("/conversations/conv-1/read")

    assert response.status_code == 409
    assert client.get("/conversations/conv-1").json()["read"] is False


def test_mutation_on_unknown_id_is_404(client):
    assert client.post("/conversations/missing/unflag").status_code == 404


def test_delete_removes_from_list(client):
    assert client.delete("/conversations/conv-2").status_code == 200
    ids = [item["conversation_id"] for item in client.get("/conversations").json()["conversations"]]
    assert ids == ["conv-1", "conv-3"]


def test_bulk_reports_partial_failure(client, fake_repository):
    fake_repository.fail_ids.add("conv-2")

    response = client.post(
        "/conversations/bulk", json={"ids": ["conv-1", "conv-2", "conv-3"], "operation": "flag_for_review"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["succeeded"] == ["conv-1", "conv-3"]
    assert data["failed"] == ["conv-2"]


@pytest.mark.parametrize(
    "body",
    [{"ids": ["conv-1"], "operation": "archive"}, {"ids": ["conv-1"], "operation": "add_note"}],
)
def test_bulk_rejects_invalid_requests(client, body):
    assert client.post("/conversations/bulk", json=body).status_code == 422


def test_poll_refreshes_on_new_email(client, fake_repository):
    client.get("/conversations")
    fake_repository.new_email["user-123"] = True

    response = client.post("/conversations/poll")

    assert response.json() == {"new_email": True, "total_count": 3}
    assert fake_repository.fetch_count == 2


def test_store_outage_maps_to_bad_gateway(client, fake_repository, monkeypatch):
    async def broken_fetch(account_id):
        raise RecordStoreError("down", error_code="network_error")

    monkeypatch.setattr(fake_repository, "fetch_account", broken_fetch)

    response = client.get("/conversations", params={"refresh": True})

    assert response.status_code == 502
    assert response.headers["Retry-After"] == "5"
