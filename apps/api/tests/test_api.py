"""HTTP tests for token issuance, ballot submission and admin routes."""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from ballotgate_api.admission.coordinator import get_coordinator
from ballotgate_api.audit.ledger import get_audit_ledger
from ballotgate_api.auth.api_key import compute_key_digest, compute_key_prefix
from ballotgate_api.auth.scopes import ADMIN, TOKENS_ISSUE
from ballotgate_api.db.session import get_db
from ballotgate_api.elections.service import ElectionService
from ballotgate_api.errors import ShardUnavailable
from ballotgate_api.main import app
from ballotgate_api.models import AnomalyFlag, ApiClient, IdentityRecord, VotingIdentifier
from ballotgate_api.sharding.router import get_router
from ballotgate_api.storage.partition import get_partition_registry
from ballotgate_api.utils.clock import utcnow
from conftest import ELECTION_ID

GATEWAY_KEY = "bg_test-gateway-key-12345"
ADMIN_KEY = "bg_test-admin-key-67890"


def add_client(db, label, raw_key, scopes):
    db.add(
        ApiClient(
            label=label,
            prefix=compute_key_prefix(raw_key),
            digest=compute_key_digest(raw_key),
            scopes=json.dumps(scopes),
            is_active=True,
        )
    )
    db.commit()


def assertion(subject="subject-1", national_id="NID-1"):
    return {
        "provider": "test-idp",
        "subject": subject,
        "attributes": {"national_id": national_id, "date_of_birth": "1990-01-01"},
    }


@pytest.fixture
def client(db, session_factory, single_partition, make_coordinator, ledger, monkeypatch):
    """Test client wired to the per-test databases."""
    partitions, router = single_partition
    coordinator = make_coordinator(partitions, router, clock=utcnow)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr("ballotgate_api.middleware.auth.SessionLocal", session_factory)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_router] = lambda: router
    app.dependency_overrides[get_partition_registry] = lambda: partitions
    app.dependency_overrides[get_audit_ledger] = lambda: ledger

    ElectionService(db).upsert(ELECTION_ID, "API Election", "open")
    db.commit()
    add_client(db, "gateway", GATEWAY_KEY, [TOKENS_ISSUE])
    add_client(db, "operator", ADMIN_KEY, [ADMIN])

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def request_token(client, **kwargs):
    return client.post(
        "/v1/tokens",
        json={"assertion": assertion(**kwargs), "election_id": ELECTION_ID},
        headers={"x-api-key": GATEWAY_KEY},
    )


class TestAuthentication:
    """API key and scope enforcement on protected paths."""

    def test_missing_api_key(self, client):
        response = client.post("/v1/tokens", json={"assertion": assertion(), "election_id": ELECTION_ID})

        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHENTICATED"

    def test_invalid_api_key(self, client):
        response = client.get("/admin/topology", headers={"x-api-key": "bg_not-a-real-key"})

        assert response.status_code == 401

    def test_gateway_key_cannot_use_admin(self, client):
        response = client.get("/admin/topology", headers={"x-api-key": GATEWAY_KEY})

        assert response.status_code == 403
        assert "admin" in response.json()["detail"]

    def test_admin_key_cannot_issue_tokens(self, client):
        response = client.post(
            "/v1/tokens",
            json={"assertion": assertion(), "election_id": ELECTION_ID},
            headers={"x-api-key": ADMIN_KEY},
        )

        assert response.status_code == 403

    def test_unsafe_correlation_id_replaced(self, client):
        response = client.get("/health", headers={"x-correlation-id": "bad id with spaces"})

        assert response.headers["x-correlation-id"] != "bad id with spaces"
        assert len(response.headers["x-correlation-id"]) == 36

    def test_ballot_submission_needs_no_api_key(self, client):
        response = client.post(f"/v1/elections/{ELECTION_ID}/ballots", json={"token": "x", "payload": "b"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "TOKEN_INVALID"


class TestTokenEndpoint:
    """POST /v1/tokens."""

    def test_issue_token(self, client):
        response = request_token(client)

        assert response.status_code == 201
        data = response.json()
        assert data["election_id"] == ELECTION_ID
        assert data["token"].count(".") == 2

    def test_unknown_election(self, client, db):
        response = client.post(
            "/v1/tokens",
            json={"assertion": assertion(), "election_id": "missing"},
            headers={"x-api-key": GATEWAY_KEY},
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "ELECTION_NOT_FOUND"
        assert db.query(VotingIdentifier).count() == 0
        assert db.query(IdentityRecord).count() == 0

    def test_closed_election_mints_no_identifier(self, client, db):
        ElectionService(db).upsert("closed-election", "Closed", "closed")
        db.commit()

        response = client.post(
            "/v1/tokens",
            json={"assertion": assertion(), "election_id": "closed-election"},
            headers={"x-api-key": GATEWAY_KEY},
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "ELECTION_CLOSED"
        assert db.query(VotingIdentifier).count() == 0

    def test_same_person_second_account_conflicts(self, client):
        assert request_token(client, subject="account-a").status_code == 201

        response = request_token(client, subject="account-b")

        assert response.status_code == 409
        assert response.json()["error_code"] == "IDENTITY_CONFLICT"


class TestBallotEndpoint:
    """POST /v1/elections/{election_id}/ballots."""

    def test_submit_then_duplicate(self, client):
        token = request_token(client).json()["token"]
        response = client.post(
            f"/v1/elections/{ELECTION_ID}/ballots",
            json={"token": token, "payload": "encrypted-ballot"},
            headers={"x-correlation-id": "corr-1"},
        )

        assert response.status_code == 201
        assert response.json()["receipt_id"].startswith("RCPT-")
        assert response.headers["x-correlation-id"] == "corr-1"

        second = request_token(client).json()["token"]
        duplicate = client.post(
            f"/v1/elections/{ELECTION_ID}/ballots",
            json={"token": second, "payload": "another-ballot"},
        )

        assert duplicate.status_code == 409
        assert duplicate.json() == {
            "status": "failed",
            "error_code": "ALREADY_VOTED",
            "detail": "A ballot has already been recorded for this voter in this election.",
        }

    def test_reused_token(self, client):
        token = request_token(client).json()["token"]
        client.post(f"/v1/elections/{ELECTION_ID}/ballots", json={"token": token, "payload": "a"})

        response = client.post(f"/v1/elections/{ELECTION_ID}/ballots", json={"token": token, "payload": "b"})

        assert response.status_code == 409
        assert response.json()["error_code"] == "TOKEN_ALREADY_CONSUMED"

    def test_shard_unavailable_is_retryable(self, client):
        coordinator = MagicMock()
        coordinator.admit.side_effect = ShardUnavailable()
        app.dependency_overrides[get_coordinator] = lambda: coordinator

        response = client.post(f"/v1/elections/{ELECTION_ID}/ballots", json={"token": "t", "payload": "b"})

        assert response.status_code == 503
        assert response.json()["error_code"] == "SHARD_UNAVAILABLE"
        assert response.headers["Retry-After"] == "2"

    def test_empty_payload_rejected(self, client):
        response = client.post(f"/v1/elections/{ELECTION_ID}/ballots", json={"token": "t", "payload": ""})

        assert response.status_code == 422


class TestAdminRoutes:
    """Operator endpoints."""

    headers = {"x-api-key": ADMIN_KEY}

    def test_upsert_election(self, client):
        response = client.put(
            "/admin/elections/new-election",
            json={"display_name": "New", "status": "draft"},
            headers=self.headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "draft"

    def test_upsert_election_rejects_unknown_status(self, client):
        response = client.put(
            "/admin/elections/new-election",
            json={"display_name": "New", "status": "paused"},
            headers=self.headers,
        )

        assert response.status_code == 422

    def test_topology(self, client):
        response = client.get("/admin/topology", headers=self.headers)

        assert response.status_code == 200
        assert response.json()["partitions"] == ["p0"]

    def test_audit_status(self, client):
        response = client.get("/admin/audit/status", headers=self.headers)

        assert response.status_code == 200
        assert response.json()["degraded"] is False
        assert response.json()["redelivered"] == 0

    def test_reconciliation(self, client):
        token = request_token(client).json()["token"]
        client.post(f"/v1/elections/{ELECTION_ID}/ballots", json={"token": token, "payload": "a"})

        response = client.get(f"/admin/elections/{ELECTION_ID}/reconciliation", headers=self.headers)

        data = response.json()
        assert response.status_code == 200
        assert data["ballots"] == 1
        assert data["consistent"] is True
        assert data["audit_integrity"]["valid"] is True

    def test_list_anomalies(self, client, db):
        seen = datetime(2026, 3, 1, 12, 0, 0)
        db.add(
            AnomalyFlag(
                election_id=ELECTION_ID,
                voter_hash="a" * 64,
                rule="repeated_duplicates",
                event_count=4,
                first_seen_at=seen,
                last_seen_at=seen,
            )
        )
        db.commit()

        response = client.get(f"/admin/elections/{ELECTION_ID}/anomalies", headers=self.headers)

        assert response.status_code == 200
        flags = response.json()["flags"]
        assert [(f["rule"], f["event_count"]) for f in flags] == [("repeated_duplicates", 4)]

    def test_rebalance_rejects_unknown_strategy(self, client):
        response = client.post(
            "/admin/topology/rebalance",
            json={"strategy": "round_robin", "partitions": ["p0"]},
            headers=self.headers,
        )

        assert response.status_code == 422

    @patch("ballotgate_api.routes.admin.get_celery_app")
    def test_anomaly_scan_enqueued(self, mock_get_celery_app, client):
        mock_get_celery_app.return_value.send_task.return_value = MagicMock(id="task-1")

        response = client.post(f"/admin/elections/{ELECTION_ID}/anomaly-scan", headers=self.headers)

        assert response.status_code == 202
        assert response.json()["task_id"] == "task-1"

    @patch("ballotgate_api.routes.admin.get_celery_app")
    def test_anomaly_scan_broker_down(self, mock_get_celery_app, client):
        mock_get_celery_app.return_value.send_task.side_effect = ConnectionError("Broker connection failed")

        response = client.post(f"/admin/elections/{ELECTION_ID}/anomaly-scan", headers=self.headers)

        assert response.status_code == 503
        assert response.json()["error_code"] == "WORKER_UNAVAILABLE"
        assert response.headers["Retry-After"] == "30"
