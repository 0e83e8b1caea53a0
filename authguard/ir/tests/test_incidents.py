"""Unit tests for the incident tracker state machine.

Uses an in-memory SQLite database; no external services required.

Run with: pytest authguard/ir/tests/test_incidents.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from ...database import init_db, make_engine, make_session_factory
from ...errors import InvalidTransitionError, NotFoundError, PersistenceError, ValidationError
from ...models import (
    ActionStatus,
    ActionType,
    EvidenceType,
    IncidentPriority,
    IncidentSeverity,
    IncidentStatus,
    IncidentType,
    SecurityIncident,
)
from ..incidents import STATUS_ORDER, IncidentTracker

NOON = datetime(2026, 3, 2, 12, 0, 0)


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


def make_db():
    """Fresh in-memory database."""
    engine = make_engine("sqlite://")
    init_db(engine)
    return make_session_factory(engine)


def make_failing_factory(session_factory):
    """Session factory whose commits fail, as when the database goes away mid-write."""
    def factory():
        db = session_factory()

        def fail():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        db.commit = fail
        return db
    return factory


def make_tracker(clock=None, notifier=None, session_factory=None) -> IncidentTracker:
    return IncidentTracker(
        session_factory or make_db(),
        notifier=notifier,
        clock=clock or FakeClock(),
        notify_channels=["email", "slack"],
    )


def make_incident(tracker: IncidentTracker, severity: IncidentSeverity = IncidentSeverity.HIGH):
    return tracker.create_incident(
        type=IncidentType.UNAUTHORIZED_ACCESS,
        severity=severity,
        title="Credential stuffing against student portal",
        description="Repeated failed logins from one network",
        detected_by="analyst@example.edu",
        affected_users=["user@example.edu"],
        affected_systems=["authentication"],
    )


def advance_to(tracker: IncidentTracker, incident_id: str, target: IncidentStatus, clock: FakeClock = None):
    """Walk an incident forward one status at a time."""
    for status in STATUS_ORDER[1:STATUS_ORDER.index(target) + 1]:
        if clock:
            clock.advance(minutes=10)
        tracker.update_incident_status(incident_id, status, "analyst@example.edu")


# =============================================================================
# Creation
# =============================================================================

class TestCreateIncident:
    """Tests for incident creation and baseline actions."""

    def test_critical_incident_baseline(self):
        """Should start in detected with urgent priority and three baseline actions."""
        incident = make_incident(make_tracker(), IncidentSeverity.CRITICAL)

        assert incident.status == IncidentStatus.DETECTED
        assert incident.priority == IncidentPriority.URGENT
        assert [a.type for a in incident.actions] == [ActionType.INVESTIGATE, ActionType.CONTAIN, ActionType.NOTIFY]
        assert all(a.status == ActionStatus.PENDING for a in incident.actions)
        assert len(incident.timeline) == 4
        assert incident.timeline.entries[0].event == "Incident Created"

    def test_low_incident_investigate_only(self):
        """Should create only the investigate action for low severity."""
        incident = make_incident(make_tracker(), IncidentSeverity.LOW)

        assert incident.priority == IncidentPriority.LOW
        assert [a.type for a in incident.actions] == [ActionType.INVESTIGATE]
        assert incident.actions[0].due_date == NOON + timedelta(hours=4)

    def test_high_incident_notifies_channels(self):
        """Should notify every configured channel for high severity."""
        notifier = RecordingNotifier()

        incident = make_incident(make_tracker(notifier=notifier), IncidentSeverity.HIGH)

        assert [c for c, _ in notifier.sent] == ["email", "slack"]
        assert notifier.sent[0][1]['incident_id'] == incident.id

    def test_medium_incident_does_not_notify(self):
        """Should not notify for medium severity."""
        notifier = RecordingNotifier()

        make_incident(make_tracker(notifier=notifier), IncidentSeverity.MEDIUM)

        assert notifier.sent == []

    def test_blank_title_rejected(self):
        """Should reject an incident without a title."""
        with pytest.raises(ValidationError):
            make_tracker().create_incident(IncidentType.DATA_BREACH, IncidentSeverity.LOW, "  ", "", "analyst")

    def test_persisted_and_rebuilt(self):
        """Should rebuild the same open incident from the database."""
        session_factory = make_db()
        incident = make_incident(make_tracker(session_factory=session_factory))

        fresh = make_tracker(session_factory=session_factory)
        assert fresh.rebuild_active() == 1
        [rebuilt] = fresh.get_active_incidents()

        assert rebuilt.id == incident.id
        assert sorted(a.id for a in rebuilt.actions) == sorted(a.id for a in incident.actions)
        assert [e.id for e in rebuilt.timeline] == [e.id for e in incident.timeline]


# =============================================================================
# Status transitions
# =============================================================================

class TestStatusTransitions:
    """Tests for the sequential lifecycle."""

    def test_full_lifecycle(self):
        """Should walk detected through closed, stamping resolved_at on close."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker)

        advance_to(tracker, incident.id, IncidentStatus.CLOSED, clock)

        assert incident.status == IncidentStatus.CLOSED
        assert incident.resolved_at == NOON + timedelta(minutes=50)
        assert tracker.get_active_incidents() == []
        assert tracker.get_incident(incident.id).status == IncidentStatus.CLOSED

    def test_skipping_a_status_rejected(self):
        """Should reject detected -> closed and leave the incident untouched."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        before = len(incident.timeline)

        with pytest.raises(InvalidTransitionError) as exc_info:
            tracker.update_incident_status(incident.id, IncidentStatus.CLOSED, "analyst")

        assert exc_info.value.current == "detected"
        assert exc_info.value.requested == "closed"
        assert incident.status == IncidentStatus.DETECTED
        assert len(incident.timeline) == before

    def test_same_status_rejected(self):
        """Should reject a transition to the current status."""
        tracker = make_tracker()
        incident = make_incident(tracker)

        with pytest.raises(InvalidTransitionError):
            tracker.update_incident_status(incident.id, IncidentStatus.DETECTED, "analyst")

    def test_backwards_rejected(self):
        """Should reject moving back to an earlier status."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        advance_to(tracker, incident.id, IncidentStatus.CONTAINED)

        with pytest.raises(InvalidTransitionError):
            tracker.update_incident_status(incident.id, IncidentStatus.INVESTIGATING, "analyst")

    def test_closed_incident_is_final(self):
        """Should reject any transition out of closed."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        advance_to(tracker, incident.id, IncidentStatus.CLOSED)

        with pytest.raises(InvalidTransitionError):
            tracker.update_incident_status(incident.id, IncidentStatus.INVESTIGATING, "analyst")

    def test_unknown_incident(self):
        """Should raise NotFoundError for an unknown id."""
        with pytest.raises(NotFoundError):
            make_tracker().update_incident_status("missing", IncidentStatus.INVESTIGATING, "analyst")

    def test_timeline_is_append_only(self):
        """Should grow the timeline by one per mutation and never alter earlier entries."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker)
        snapshot = incident.timeline.entries

        clock.advance(minutes=5)
        tracker.update_incident_status(incident.id, IncidentStatus.INVESTIGATING, "analyst", "triage started")
        evidence = tracker.add_evidence(incident.id, EvidenceType.LOG_FILE, "auth.log", "", "analyst", b"log")
        tracker.record_custody(evidence.id, "Transferred", "analyst", "Evidence locker")
        tracker.start_action(incident.actions[0].id, "analyst")

        entries = incident.timeline.entries
        assert len(entries) == len(snapshot) + 4
        assert entries[:len(snapshot)] == snapshot
        assert [e.sequence for e in entries] == list(range(len(entries)))
        assert all(a.timestamp <= b.timestamp for a, b in zip(entries, entries[1:]))

    def test_failed_write_leaves_state_unchanged(self):
        """Should raise PersistenceError and keep memory and database as they were."""
        session_factory = make_db()
        tracker = make_tracker(session_factory=session_factory)
        incident = make_incident(tracker)
        before = len(incident.timeline)

        tracker.session_factory = make_failing_factory(session_factory)
        with pytest.raises(PersistenceError):
            tracker.update_incident_status(incident.id, IncidentStatus.INVESTIGATING, "analyst")

        assert incident.status == IncidentStatus.DETECTED
        assert len(incident.timeline) == before
        db = session_factory()
        try:
            assert db.query(SecurityIncident).filter_by(id=incident.id).one().status == IncidentStatus.DETECTED
        finally:
            db.close()

        tracker.session_factory = session_factory
        tracker.update_incident_status(incident.id, IncidentStatus.INVESTIGATING, "analyst")
        assert incident.status == IncidentStatus.INVESTIGATING

    def test_details_update(self):
        """Should record findings and add one timeline entry."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        before = len(incident.timeline)

        tracker.update_incident_details(incident.id, "analyst", root_cause="Reused password",
                                        prevention_measures=["Enforce MFA"])

        assert incident.root_cause == "Reused password"
        assert incident.prevention_measures == ["Enforce MFA"]
        assert len(incident.timeline) == before + 1

    def test_mutating_closed_incident_rejected(self):
        """Should refuse new evidence on a closed incident."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        advance_to(tracker, incident.id, IncidentStatus.CLOSED)

        with pytest.raises(ValidationError):
            tracker.add_evidence(incident.id, EvidenceType.LOG_FILE, "late.log", "", "analyst", b"x")


# =============================================================================
# Evidence
# =============================================================================

class TestEvidence:
    """Tests for evidence hashing, custody and tamper detection."""

    def test_hash_and_initial_custody(self):
        """Should store the SHA-256 of the content and an initial custody entry."""
        tracker = make_tracker()
        incident = make_incident(tracker)

        evidence = tracker.add_evidence(incident.id, EvidenceType.LOG_FILE, "auth.log",
                                        "Authentication log", "analyst", b"hello")

        assert evidence.file_hash == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        assert evidence.file_size == 5
        assert [c.action for c in evidence.custody] == ["Collected"]

    def test_custody_appends(self):
        """Should number custody entries in order."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        evidence = tracker.add_evidence(incident.id, EvidenceType.SCREENSHOT, "shot.png", "", "analyst", b"png")

        tracker.record_custody(evidence.id, "Transferred", "forensics", "Lab")

        assert [c.sequence for c in evidence.custody] == [0, 1]
        assert evidence.custody[1].performed_by == "forensics"

    def test_tamper_flag_is_permanent(self):
        """Should flag a mismatch and keep the flag after a later match."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        evidence = tracker.add_evidence(incident.id, EvidenceType.LOG_FILE, "auth.log", "", "analyst", b"original")

        assert tracker.verify_evidence(evidence.id, b"original")
        assert not evidence.is_tampered

        assert not tracker.verify_evidence(evidence.id, b"modified")
        assert evidence.is_tampered

        assert tracker.verify_evidence(evidence.id, b"original")
        assert evidence.is_tampered
        assert tracker.get_incident(incident.id).timeline.entries[-2].event == "Evidence Tampering Detected"

    def test_unknown_evidence(self):
        """Should raise NotFoundError for unknown evidence."""
        with pytest.raises(NotFoundError):
            make_tracker().verify_evidence("missing", b"x")


# =============================================================================
# Actions
# =============================================================================

class TestActions:
    """Tests for remediation action transitions."""

    def test_start_then_complete(self):
        """Should move pending -> in_progress -> completed with timestamps."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker)
        action = incident.actions[0]

        tracker.start_action(action.id, "analyst")
        clock.advance(minutes=30)
        tracker.complete_action(action.id, "analyst", "Source network identified")

        assert action.status == ActionStatus.COMPLETED
        assert action.started_at == NOON
        assert action.completed_at == NOON + timedelta(minutes=30)
        assert action.notes == "Source network identified"

    def test_completed_action_is_final(self):
        """Should reject any transition out of completed."""
        tracker = make_tracker()
        incident = make_incident(tracker)
        action = incident.actions[0]
        tracker.complete_action(action.id, "analyst")

        with pytest.raises(InvalidTransitionError):
            tracker.cancel_action(action.id, "analyst", "duplicate")

    def test_custom_action(self):
        """Should attach a new pending action with one timeline entry."""
        tracker = make_tracker()
        incident = make_incident(tracker, IncidentSeverity.LOW)
        before = len(incident.timeline)

        action = tracker.create_action(incident.id, ActionType.REVIEW, "Post-incident review", "analyst",
                                       priority=IncidentPriority.LOW)

        assert action.status == ActionStatus.PENDING
        assert incident.find_action(action.id) is action
        assert len(incident.timeline) == before + 1

    def test_overdue_actions_marked(self):
        """Should mark actions past their due date and leave the rest."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker, IncidentSeverity.HIGH)

        clock.advance(hours=3)
        marked = tracker.mark_overdue_actions()

        statuses = {a.type: a.status for a in incident.actions}
        assert marked == 1
        assert statuses[ActionType.CONTAIN] == ActionStatus.OVERDUE
        assert statuses[ActionType.INVESTIGATE] == ActionStatus.PENDING

    def test_aware_due_date_normalized(self):
        """Should store an offset due date as naive UTC so the overdue scan can compare it."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker, IncidentSeverity.LOW)
        due = datetime(2026, 3, 2, 14, 0, 0, tzinfo=timezone(timedelta(hours=1)))

        action = tracker.create_action(incident.id, ActionType.CONTAIN, "Disable shared account", "analyst",
                                       due_date=due)
        clock.advance(hours=2)
        marked = tracker.mark_overdue_actions()

        assert action.due_date == NOON + timedelta(hours=1)
        assert action.due_date.tzinfo is None
        assert marked == 1
        assert action.status == ActionStatus.OVERDUE
        assert incident.actions[0].status == ActionStatus.PENDING

    def test_overdue_action_can_complete(self):
        """Should allow completing an overdue action."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker, IncidentSeverity.LOW)
        clock.advance(hours=5)
        tracker.mark_overdue_actions()

        action = tracker.complete_action(incident.actions[0].id, "analyst")

        assert action.status == ActionStatus.COMPLETED


# =============================================================================
# Reporting and retention
# =============================================================================

class TestReporting:
    """Tests for counts and retention."""

    def test_incident_counts(self):
        """Should count open and resolved incidents and average resolution time."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        first = make_incident(tracker, IncidentSeverity.HIGH)
        make_incident(tracker, IncidentSeverity.LOW)
        advance_to(tracker, first.id, IncidentStatus.CLOSED, clock)

        counts = tracker.incident_counts()

        assert counts['total_incidents'] == 2
        assert counts['open_incidents'] == 1
        assert counts['resolved_incidents'] == 1
        assert counts['average_resolution_hours'] == pytest.approx(50 / 60)
        assert counts['incidents_by_severity'] == {'high': 1, 'low': 1}

    def test_purge_after_retention(self):
        """Should delete closed incidents only after the retention period."""
        clock = FakeClock()
        tracker = make_tracker(clock)
        incident = make_incident(tracker)
        advance_to(tracker, incident.id, IncidentStatus.CLOSED)

        assert tracker.purge_closed_incidents() == 0
        clock.advance(days=731)
        assert tracker.purge_closed_incidents() == 1
        with pytest.raises(NotFoundError):
            tracker.get_incident(incident.id)
