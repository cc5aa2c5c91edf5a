"""
Integration tests for the webhook ingestion API on SQLite.
"""
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from ingestion.adapters.signature import SignatureVerifier, compute_signature
from ingestion.entrypoints.webhook_api import app, get_uow, get_verifier
from ingestion.service_layer.unit_of_work import SqlAlchemyUnitOfWork

SECRET = "test-webhook-secret"


class UnavailableStoreUnitOfWork(SqlAlchemyUnitOfWork):
    def _commit(self):
        raise OperationalError("INSERT INTO events", {}, Exception("database is down"))


@pytest.fixture
def client(sqlite_session_factory, change_stream):
    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(sqlite_session_factory, change_stream=change_stream)
    app.dependency_overrides[get_verifier] = lambda: SignatureVerifier(primary_secret=SECRET)
    yield TestClient(app)
    app.dependency_overrides.clear()


def post_webhook(client, payload, source="github", secret=SECRET, delivery_id=None, body=None):
    raw = body if body is not None else json.dumps(payload).encode("utf-8")
    headers = {"X-Hub-Signature-256": compute_signature(raw, secret), "Content-Type": "application/json"}
    if delivery_id:
        headers["X-GitHub-Delivery"] = delivery_id
    return client.post(f"/webhooks/{source}", content=raw, headers=headers)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestReceiveWebhook:

    def test_accepts_signed_webhook(self, client, change_stream):
        response = post_webhook(client, {"action": "opened", "issue": {"number": 42}})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["event_key"].startswith("github/42/")
        [notification] = change_stream.read("github")
        assert notification.event_key == data["event_key"]

    def test_stored_event_is_retrievable(self, client):
        event_key = post_webhook(client, {"action": "opened", "issue": {"number": 42}}).json()["event_key"]

        response = client.get(f"/api/v1/events/{event_key}")

        assert response.status_code == 200
        assert response.json()["payload"] == {"action": "opened", "issue": {"number": 42}}
        assert response.json()["event_type"] == "opened"

    def test_bad_signature_is_rejected_before_storage(self, client, change_stream):
        response = post_webhook(client, {"action": "opened"}, secret="wrong-secret")

        assert response.status_code == 401
        assert change_stream.partitions() == []

    def test_missing_signature_is_rejected(self, client):
        response = client.post("/webhooks/github", content=b'{"action": "opened"}')

        assert response.status_code == 401

    def test_signed_non_json_body_is_bad_request(self, client):
        response = post_webhook(client, None, body=b"not json")

        assert response.status_code == 400

    def test_invalid_source_is_rejected(self, client):
        response = post_webhook(client, {"action": "opened"}, source="Not A Source!")

        assert response.status_code == 422

    def test_redelivery_returns_same_event_key(self, client, change_stream):
        first = post_webhook(client, {"action": "opened"}, delivery_id="d-1").json()["event_key"]
        second = post_webhook(client, {"action": "opened"}, delivery_id="d-1").json()["event_key"]

        assert first == second
        assert len(change_stream.read("github")) == 1

    def test_store_outage_returns_500_so_sender_retries(self, client, sqlite_session_factory, change_stream):
        app.dependency_overrides[get_uow] = lambda: UnavailableStoreUnitOfWork(
            sqlite_session_factory, change_stream=change_stream
        )

        response = post_webhook(client, {"action": "opened"})

        assert response.status_code == 500
        assert change_stream.partitions() == []


class TestReadEndpoints:

    def test_unknown_event_is_404(self, client):
        assert client.get("/api/v1/events/github/42/missing").status_code == 404

    def test_correlation_events(self, client):
        post_webhook(client, {"requestId": "r-1", "eventType": "query"}, source="cv-assistant")
        post_webhook(client, {"requestId": "r-1", "eventType": "response"}, source="cv-assistant")
        post_webhook(client, {"requestId": "r-2", "eventType": "query"}, source="cv-assistant")

        response = client.get("/api/v1/correlations/r-1/events")

        assert response.json()["count"] == 2
        assert [e["event_type"] for e in response.json()["events"]] == ["query", "response"]

    def test_resync_re_emits_changes(self, client, change_stream):
        post_webhook(client, {"requestId": "r-1"}, source="cv-assistant")
        post_webhook(client, {"requestId": "r-2"}, source="cv-assistant")

        response = client.post("/api/v1/changes/cv-assistant/resync", params={"after_sequence": 0})

        assert response.json() == {"partition": "cv-assistant", "emitted": 2}
        assert len(change_stream.read("cv-assistant")) == 4

    def test_resync_after_position(self, client, change_stream):
        post_webhook(client, {"requestId": "r-1"}, source="cv-assistant")

        response = client.post("/api/v1/changes/cv-assistant/resync", params={"after_position": "0-0"})

        assert response.json() == {"partition": "cv-assistant", "emitted": 1}

    def test_emit_pending_with_nothing_pending(self, client):
        post_webhook(client, {"requestId": "r-1"}, source="cv-assistant")

        response = client.post("/api/v1/changes/emit-pending")

        assert response.status_code == 200
        assert response.json() == {"emitted": 0}
