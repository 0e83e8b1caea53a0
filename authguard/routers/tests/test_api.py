"""HTTP tests for the security and incident routers and the request middleware.

The app is built over an in-memory SQLite database with the default rules
seeded, the in-process counter store and a fixed clock.

Run with: pytest authguard/routers/tests/test_api.py -v
"""

import base64
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from ...config import Settings
from ...database import init_db, make_engine, make_session_factory
from ...main import create_app
from ...seed_rules import seed_rules
from ...services.security_service import SecurityService
from ...stores.counter_store import MemoryCounterStore
from ...utils.clock import to_epoch_ms

# Start of a 15-minute login window
NOON = datetime(2026, 3, 2, 12, 0, 0)
LOGIN_WINDOW_MS = 15 * 60 * 1000

ADMIN = {"X-Actor-Id": "analyst@example.edu", "X-CSRF-Token": "token-123"}
CSRF = {"X-CSRF-Token": "token-123"}


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:

    def __init__(self):
        self.sent = []

    def notify(self, channel, payload):
        self.sent.append((channel, payload))


def make_service(clock: FakeClock) -> SecurityService:
    """SecurityService over a fresh seeded in-memory database."""
    engine = make_engine("sqlite://")
    init_db(engine)
    session_factory = make_session_factory(engine)
    db = session_factory()
    try:
        seed_rules(db, verbose=False)
    finally:
        db.close()
    return SecurityService(
        session_factory,
        MemoryCounterStore(clock=clock),
        settings=Settings(database_url="sqlite://"),
        notifier=RecordingNotifier(),
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(clock):
    app = create_app(settings=Settings(database_url="sqlite://"), service=make_service(clock),
                     run_maintenance=False)
    with TestClient(app) as test_client:
        yield test_client


def login_attempt(client, success=False, user_id="student@example.edu", ip_address="203.0.113.66"):
    return client.post(
        "/api/security/login-attempts",
        json={
            "user_id": user_id,
            "ip_address": ip_address,
            "user_agent": "Mozilla/5.0",
            "success": success,
            "metadata": {},
        },
        headers=CSRF,
    )


def create_incident(client, severity="high"):
    response = client.post(
        "/api/security/incidents",
        json={
            "type": "unauthorized_access",
            "severity": severity,
            "title": "Credential stuffing against student portal",
            "description": "Repeated failed logins from one network",
            "affected_systems": ["authentication"],
        },
        headers=ADMIN,
    )
    assert response.status_code == 201
    return response.json()


# =============================================================================
# Middleware
# =============================================================================

class TestSecurityMiddleware:
    """Tests for request screening."""

    def test_sql_injection_refused_with_403(self, client):
        """Should refuse a SQL injection body with 403 and open no incident."""
        response = client.post(
            "/api/security/registrations/score",
            json={"email": "'; DROP TABLE users; --", "ip_address": "203.0.113.66", "reason": "x"},
            headers=CSRF,
        )

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "Forbidden"
        assert body["reason"] == "Critical security threat detected"
        assert body["requestId"] == response.headers["X-Request-ID"]
        assert body["timestamp"].endswith("Z")

        incidents = client.get("/api/security/incidents", headers=ADMIN).json()
        assert incidents["count"] == 0

    def test_missing_csrf_token_alone_is_allowed(self, client):
        """Should let a single high-severity finding through."""
        response = login_attempt(client, success=True)
        assert response.status_code == 200

        response = client.post("/api/security/block/ip", json={"ip_address": "198.51.100.1", "reason": "manual"},
                               headers={"X-Actor-Id": "analyst@example.edu"})
        assert response.status_code == 200

    def test_blocked_ip_refused(self, client):
        """Should refuse every API request from a blocklisted client IP."""
        client.post("/api/security/block/ip", json={"ip_address": "testclient", "reason": "manual"}, headers=ADMIN)

        response = client.get("/api/security/threats", headers=ADMIN)

        assert response.status_code == 403
        assert response.json()["reason"] == "IP address is blocked"

    def test_health_is_exempt(self, client):
        """Should answer health checks without screening."""
        response = client.get("/api/security/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": True,
            "counter_store": True,
            "service": "authguard",
        }


# =============================================================================
# Login rate limiting
# =============================================================================

class TestLoginAttempts:
    """Tests for the login-attempt endpoint and brute-force response."""

    def test_seventh_attempt_rate_limited(self, client, clock):
        """Should report brute force on the sixth failure and return 429 on the seventh."""
        responses = [login_attempt(client) for _ in range(6)]

        assert [r.status_code for r in responses] == [200] * 6
        assert [r.json()["threat_count"] for r in responses] == [0, 0, 0, 0, 0, 1]
        assert responses[5].json()["threats"][0]["type"] == "brute_force"

        seventh = login_attempt(client)

        assert seventh.status_code == 429
        body = seventh.json()
        now_ms = to_epoch_ms(clock())
        remaining_s = ((now_ms // LOGIN_WINDOW_MS + 1) * LOGIN_WINDOW_MS - now_ms) / 1000
        assert abs(body["retryAfter"] - remaining_s) <= 1
        assert body["remaining"] == 0
        assert body["limit"] == 10
        assert seventh.headers["Retry-After"] == str(body["retryAfter"])

    def test_other_ip_not_limited(self, client):
        """Should keep the login window per client IP."""
        for _ in range(7):
            login_attempt(client)

        assert login_attempt(client, ip_address="198.51.100.2").status_code == 200

    def test_invalid_payload(self, client):
        """Should reject an attempt without a user id."""
        response = client.post("/api/security/login-attempts",
                               json={"ip_address": "203.0.113.66", "success": False}, headers=CSRF)

        assert response.status_code == 422


# =============================================================================
# Threats and stats
# =============================================================================

class TestThreatRoutes:
    """Tests for admin threat routes."""

    def test_actor_required(self, client):
        """Should reject admin routes without an actor header."""
        assert client.get("/api/security/threats").status_code == 401

    def test_resolve_threat(self, client):
        """Should resolve an active threat and drop it from the list."""
        for _ in range(6):
            login_attempt(client)
        [threat] = client.get("/api/security/threats", headers=ADMIN).json()["threats"]

        response = client.post(f"/api/security/threats/{threat['id']}/resolve",
                               json={"resolution": "Confirmed attack, account reset"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["resolved_by"] == "analyst@example.edu"
        assert client.get("/api/security/threats", headers=ADMIN).json()["count"] == 0

    def test_resolve_unknown_threat(self, client):
        """Should return 404 for an unknown threat."""
        response = client.post("/api/security/threats/missing/resolve", json={"resolution": "n/a"}, headers=ADMIN)

        assert response.status_code == 404

    def test_rate_limit_status(self, client):
        """Should report a window without counting and 404 an unknown policy."""
        login_attempt(client)

        status = client.get("/api/security/rate-limits/login/203.0.113.66", headers=ADMIN).json()

        assert status["remaining"] == 9
        assert client.get("/api/security/rate-limits/nope/x", headers=ADMIN).status_code == 404

    def test_stats(self, client):
        """Should expose threat, blocklist and rule counts."""
        stats = client.get("/api/security/stats", headers=ADMIN).json()

        assert stats["rules_loaded"] == 6
        assert stats["active_threats"] == 0


# =============================================================================
# Incidents
# =============================================================================

class TestIncidentRoutes:
    """Tests for the incident lifecycle over HTTP."""

    def test_create_and_fetch(self, client):
        """Should create an incident in detected with baseline actions."""
        incident = create_incident(client)

        fetched = client.get(f"/api/security/incidents/{incident['id']}", headers=ADMIN).json()

        assert fetched["status"] == "detected"
        assert fetched["priority"] == "high"
        assert len(fetched["actions"]) == 2
        assert fetched["timeline"][0]["actor"] == "analyst@example.edu"

    def test_skipping_status_conflicts(self, client):
        """Should answer 409 with both states for an out-of-order transition."""
        incident = create_incident(client)

        response = client.post(f"/api/security/incidents/{incident['id']}/status",
                               json={"status": "closed"}, headers=ADMIN)

        assert response.status_code == 409
        assert response.json() == {"error": "invalid transition", "current": "detected", "requested": "closed"}

    def test_next_status_accepted(self, client):
        """Should move to the next status."""
        incident = create_incident(client)

        response = client.post(f"/api/security/incidents/{incident['id']}/status",
                               json={"status": "investigating", "notes": "Triage started"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["status"] == "investigating"

    def test_unknown_incident(self, client):
        """Should return 404 for an unknown incident."""
        assert client.get("/api/security/incidents/missing", headers=ADMIN).status_code == 404

    def test_evidence_verification(self, client):
        """Should hash uploaded evidence and flag mismatching content."""
        incident = create_incident(client)
        content = base64.b64encode(b"auth log contents").decode()

        evidence = client.post(f"/api/security/incidents/{incident['id']}/evidence",
                               json={"type": "log_file", "name": "auth.log", "content_base64": content},
                               headers=ADMIN).json()
        tampered = base64.b64encode(b"edited log").decode()
        result = client.post(f"/api/security/evidence/{evidence['id']}/verify",
                             json={"content_base64": tampered}, headers=ADMIN).json()

        assert len(evidence["hash"]) == 64
        assert result == {"evidence_id": evidence["id"], "intact": False}

    def test_action_lifecycle(self, client):
        """Should start and complete a baseline action."""
        incident = create_incident(client, severity="low")
        action_id = incident["actions"][0]["id"]

        started = client.post(f"/api/security/actions/{action_id}/start", headers=ADMIN)
        completed = client.post(f"/api/security/actions/{action_id}/complete",
                                json={"notes": "Done"}, headers=ADMIN)
        again = client.post(f"/api/security/actions/{action_id}/complete", json={}, headers=ADMIN)

        assert started.json()["status"] == "in_progress"
        assert completed.json()["status"] == "completed"
        assert again.status_code == 409
