"""Integration tests for SecurityService over the seeded rule set.

Uses an in-memory SQLite database, the in-process counter store and a
fixed clock at noon so time-of-day heuristics stay quiet.

Run with: pytest authguard/services/tests/test_security_service.py -v
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from ...config import DetectionConfig, Settings
from ...database import init_db, make_engine, make_session_factory
from ...detection.detectors import RequestDetector, SqlInjectionDetector
from ...detection.indicators import RequestDescriptor
from ...errors import NotFoundError, ValidationError
from ...models import AuditEvent, AuditEventType, BlocklistKind, IncidentType, SecurityThreat, ThreatType
from ...seed_rules import seed_rules
from ...stores.counter_store import MemoryCounterStore
from ..security_service import SecurityService

NOON = datetime(2026, 3, 2, 12, 0, 0)
USER = "student@example.edu"
IP = "203.0.113.66"
SQLI_BODY = {"email": "'; DROP TABLE users; --"}


# =============================================================================
# Fixtures
# =============================================================================

class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Keeps every notification in memory."""

    def __init__(self):
        self.sent = []

    def notify(self, channel, payload):
        self.sent.append((channel, payload))


class ExplodingRequestDetector(RequestDetector):
    name = "exploding"

    def detect(self, request, serialized, user_id, ip_address, user_agent, ctx):
        raise RuntimeError("signature bank unavailable")


def make_db():
    """Fresh in-memory database with the default rules seeded."""
    engine = make_engine("sqlite://")
    init_db(engine)
    session_factory = make_session_factory(engine)
    db = session_factory()
    try:
        seed_rules(db, verbose=False)
    finally:
        db.close()
    return session_factory


def make_service(clock=None, session_factory=None, **detection) -> SecurityService:
    """Started SecurityService with overridable detection thresholds."""
    clock = clock or FakeClock()
    service = SecurityService(
        session_factory or make_db(),
        MemoryCounterStore(clock=clock),
        settings=Settings(database_url="sqlite://", detection=DetectionConfig(**detection)),
        notifier=RecordingNotifier(),
        clock=clock,
    )
    service.start()
    return service


def make_threat_write_failing(session_factory):
    """Session factory whose commits fail whenever a threat row is pending."""
    def factory():
        db = session_factory()
        commit = db.commit

        def guarded_commit():
            if any(isinstance(obj, SecurityThreat) for obj in db.new):
                raise OperationalError("INSERT INTO security_threats", {}, Exception("disk I/O error"))
            commit()

        db.commit = guarded_commit
        return db
    return factory


def make_request(method="POST", body=None, url="/api/profile") -> RequestDescriptor:
    return RequestDescriptor(
        method=method,
        url=url,
        headers={"Content-Type": "application/json", "X-CSRF-Token": "token-123"},
        body=body,
    )


def audit_events(service: SecurityService, event_type: AuditEventType):
    db = service.session_factory()
    try:
        return db.query(AuditEvent).filter(AuditEvent.event_type == event_type.value).all()
    finally:
        db.close()


# =============================================================================
# Login analysis
# =============================================================================

class TestLoginAnalysis:
    """Tests for analyze_login_attempt and the brute-force rule."""

    def test_five_failures_then_sixth_fires(self):
        """Should stay quiet for five failures and report brute force on the sixth."""
        service = make_service()

        quiet = [service.analyze_login_attempt(USER, IP, "Mozilla/5.0", False) for _ in range(5)]
        sixth = service.analyze_login_attempt(USER, IP, "Mozilla/5.0", False)

        assert all(result == [] for result in quiet)
        assert [t.type for t in sixth] == [ThreatType.BRUTE_FORCE]
        assert sixth[0].risk_score == 50
        assert len(audit_events(service, AuditEventType.LOGIN_FAILURE)) == 6

    def test_brute_force_rule_actions(self):
        """Should exhaust the login window, lock the account and alert."""
        service = make_service()
        for _ in range(6):
            service.analyze_login_attempt(USER, IP, "Mozilla/5.0", False)

        assert not service.rate_limiter.status("login", IP).allowed
        account = service.accounts.get_account(USER)
        assert account.locked_until == NOON + timedelta(seconds=900)
        assert [c for c, _ in service.notifier.sent] == ["email", "slack"]
        assert service.notifier.sent[0][1]['message'] == "Brute force attack in progress"

    def test_success_audited_with_fingerprint(self):
        """Should audit a successful login with its device fingerprint."""
        service = make_service()

        service.analyze_login_attempt(USER, IP, "Mozilla/5.0", True, {'platform': 'MacIntel'})

        [event] = audit_events(service, AuditEventType.LOGIN_SUCCESS)
        assert event.severity == "low"
        assert len(event.details['device_fingerprint']) == 64

    def test_failed_threat_write_does_not_abort_analysis(self):
        """Should still audit the attempt, run the rules and record the failed write as degraded."""
        service = make_service(session_factory=make_threat_write_failing(make_db()))
        for _ in range(5):
            service.analyze_login_attempt(USER, IP, "Mozilla/5.0", False)

        sixth = service.analyze_login_attempt(USER, IP, "Mozilla/5.0", False)

        assert [t.type for t in sixth] == [ThreatType.BRUTE_FORCE]
        assert len(audit_events(service, AuditEventType.LOGIN_FAILURE)) == 6
        [event] = audit_events(service, AuditEventType.ANALYSIS_DEGRADED)
        assert event.details['failures'] == {"persist:brute_force": "OperationalError"}
        assert not service.rate_limiter.status("login", IP).allowed
        assert [t.id for t in service.get_active_threats()] == [sixth[0].id]

        resolved = service.resolve_threat(sixth[0].id, "analyst", "Handled")
        assert not resolved.is_active
        assert service.get_active_threats() == []

    def test_malformed_attempt_rejected(self):
        """Should reject an attempt without an IP before any detector runs."""
        service = make_service()

        with pytest.raises(ValidationError):
            service.analyze_login_attempt(USER, "", "Mozilla/5.0", False)
        assert audit_events(service, AuditEventType.LOGIN_FAILURE) == []


# =============================================================================
# Request evaluation
# =============================================================================

class TestEvaluateRequest:
    """Tests for request decisions, suspicious IPs and rule escalation."""

    def test_sql_injection_blocked_without_incident(self):
        """Should block a SQL injection request, alert and log, but open no incident."""
        service = make_service()

        decision = service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")

        assert not decision.allowed
        assert decision.reason == "Critical security threat detected"
        assert [t.type for t in decision.threats] == [ThreatType.SQL_INJECTION]
        assert service.get_active_incidents() == []
        assert len(audit_events(service, AuditEventType.REQUEST_BLOCKED)) == 1
        assert len(service.notifier.sent) == 2

    def test_clean_request_allowed(self):
        """Should allow an ordinary request."""
        service = make_service()

        decision = service.evaluate_request(make_request(body={"name": "Jane"}), USER, IP, "Mozilla/5.0")

        assert decision.allowed
        assert decision.risk_score == 0

    def test_repeated_suspicious_requests_block_ip(self):
        """Should blocklist an IP after five suspicious requests."""
        service = make_service()

        for _ in range(5):
            service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")
        decision = service.evaluate_request(make_request(method="GET"), None, IP, "curl/8")

        assert not decision.allowed
        assert decision.reason == "IP address is blocked"
        assert decision.risk_score == 100

    def test_blocked_user_refused(self):
        """Should refuse requests from a blocked user."""
        service = make_service()
        service.block_user(USER, "compromised account")

        decision = service.evaluate_request(make_request(method="GET"), USER, IP, "Mozilla/5.0")

        assert decision.reason == "User account is blocked"

    def test_request_flood_opens_incident_and_blocks(self):
        """Should block the flooding IP and open a DDoS incident through the seeded rule."""
        service = make_service(request_flood_limit=2)

        decisions = [service.evaluate_request(make_request(method="GET"), None, IP, "ab/2.3") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        [incident] = service.get_active_incidents()
        assert incident.type == IncidentType.DDOS_ATTACK
        assert incident.threat_id == decisions[2].threats[0].id
        assert service.blocklist.is_blocked(BlocklistKind.IP, IP)
        assert not service.evaluate_request(make_request(method="GET"), None, IP, "ab/2.3").allowed

    def test_auto_block_disabled(self):
        """Should skip the block action when auto-blocking is off."""
        service = make_service(request_flood_limit=2, auto_block_enabled=False)

        for _ in range(3):
            service.evaluate_request(make_request(method="GET"), None, IP, "ab/2.3")

        assert service.evaluate_request(make_request(method="GET"), None, IP, "ab/2.3").allowed
        assert len(service.get_active_incidents()) == 1

    def test_failing_detector_audited_as_degraded(self):
        """Should keep analysing and audit the degraded run when a detector raises."""
        service = make_service()
        service.detection.request_detectors = [ExplodingRequestDetector(), SqlInjectionDetector()]

        threats = service.analyze_request(None, IP, "curl/8", make_request(body=SQLI_BODY))

        assert [t.type for t in threats] == [ThreatType.SQL_INJECTION]
        [event] = audit_events(service, AuditEventType.ANALYSIS_DEGRADED)
        assert event.details['failures'] == {"exploding": "RuntimeError"}


# =============================================================================
# Threat lifecycle
# =============================================================================

class TestThreats:
    """Tests for resolution, staleness and restart."""

    def test_resolve_is_idempotent(self):
        """Should resolve once and treat a second resolve as a no-op."""
        service = make_service()
        service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")
        [threat] = service.get_active_threats()

        first = service.resolve_threat(threat.id, "analyst", "False positive")
        second = service.resolve_threat(threat.id, "someone-else", "Duplicate")

        assert not first.is_active
        assert second.resolved_by == "analyst"
        assert second.resolution == "False positive"
        assert service.get_active_threats() == []
        resolved = [e for e in audit_events(service, AuditEventType.SECURITY_EVENT)
                    if e.description == f"Threat resolved: {threat.id}"]
        assert len(resolved) == 1

    def test_resolve_unknown_threat(self):
        """Should raise NotFoundError for an unknown threat."""
        with pytest.raises(NotFoundError):
            make_service().resolve_threat("missing", "analyst", "n/a")

    def test_stale_threats_deactivated(self):
        """Should deactivate threats older than the stale threshold."""
        clock = FakeClock()
        service = make_service(clock)
        service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")

        clock.advance(hours=25)

        assert service.deactivate_stale_threats() == 1
        assert service.get_active_threats() == []

    def test_restart_rebuilds_active_threats(self):
        """Should rebuild active threats, with descriptions, from the database."""
        clock = FakeClock()
        session_factory = make_db()
        service = make_service(clock, session_factory)
        service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")
        [original] = service.get_active_threats()

        restarted = make_service(clock, session_factory)
        [rebuilt] = restarted.get_active_threats()

        assert rebuilt.id == original.id
        assert rebuilt.description == original.description
        assert rebuilt.metadata['matched_patterns'] == original.metadata['matched_patterns']

    def test_decay_suspicious_ips(self):
        """Should clear suspicious-IP counters."""
        service = make_service()
        service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")

        assert service.decay_suspicious_ips() == 1
        assert service.get_security_stats()['suspicious_ips'] == 0


# =============================================================================
# Rate limits, fraud and metrics
# =============================================================================

class TestStatsAndLimits:
    """Tests for audited rate limits, registration scoring and metrics."""

    def test_rejected_rate_limit_audited(self):
        """Should audit only the rejected check."""
        service = make_service()

        results = [service.check_rate_limit("registration", IP) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        [event] = audit_events(service, AuditEventType.RATE_LIMITED)
        assert event.details['policy'] == "registration"

    def test_blocked_registration_audited(self):
        """Should audit a registration blocked as fraudulent."""
        service = make_service()
        service.store.set("fraud_email:testuser7@campus.edu", 3)

        score = service.score_registration_email("testuser7@campus.edu", IP, 'Invalid email format.')

        assert score.blocked
        assert len(audit_events(service, AuditEventType.SECURITY_EVENT)) == 1

    def test_metrics_cached_until_refresh(self):
        """Should serve cached metrics until asked to refresh."""
        service = make_service()
        first = service.get_security_metrics()

        service.block_ip("198.51.100.1", "manual block")
        cached = service.get_security_metrics()
        fresh = service.get_security_metrics(refresh=True)

        assert first['security_score'] == 100
        assert cached is first
        assert fresh['blocked_ips'] == 1
        assert fresh['security_score'] == 95

    def test_stats_shape(self):
        """Should report counts for threats, blocklists and rules."""
        service = make_service()
        service.evaluate_request(make_request(body=SQLI_BODY), None, IP, "curl/8")

        stats = service.get_security_stats()

        assert stats['active_threats'] == 1
        assert stats['threats_by_type'] == {'sql_injection': 1}
        assert stats['threats_by_severity'] == {'critical': 1}
        assert stats['rules_loaded'] == 6
