"""
Incident Tracker.

Owns the security-incident state machine:

    detected -> investigating -> contained -> eradicated -> recovered -> closed

Transitions are strictly sequential, one step forward at a time. Every
mutation writes the durable store first and only then touches the in-memory
aggregate and active set, so a failed write leaves both unchanged. Every
mutation also appends exactly one timeline entry.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..config import IncidentConfig
from ..database import session_scope
from ..errors import InvalidTransitionError, NotFoundError, PersistenceError, ValidationError
from ..integrations.audit import AuditSink
from ..integrations.notifier import Notifier
from ..models import (
    ActionStatus,
    ActionType,
    AuditEventType,
    EvidenceCustodyEntry,
    EvidenceType,
    IncidentAction as IncidentActionRow,
    IncidentEvidence,
    IncidentPriority,
    IncidentSeverity,
    IncidentStatus,
    IncidentTimelineEntry,
    IncidentType,
    SecurityIncident,
    TimelineCategory,
)
from ..utils.clock import to_naive_utc, utcnow
from .evidence import (
    INITIAL_CUSTODY_ACTION,
    INITIAL_CUSTODY_LOCATION,
    CustodyEntry,
    Evidence,
    hash_content,
)
from .timeline import STATUS_CATEGORY_MAPPING, Timeline, TimelineEntry

logger = logging.getLogger(__name__)

STATUS_ORDER = [
    IncidentStatus.DETECTED,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.CONTAINED,
    IncidentStatus.ERADICATED,
    IncidentStatus.RECOVERED,
    IncidentStatus.CLOSED,
]

NEXT_STATUS = {current: nxt for current, nxt in zip(STATUS_ORDER, STATUS_ORDER[1:])}

ACTION_TRANSITIONS = {
    ActionStatus.PENDING: {ActionStatus.IN_PROGRESS, ActionStatus.COMPLETED, ActionStatus.CANCELLED, ActionStatus.OVERDUE},
    ActionStatus.IN_PROGRESS: {ActionStatus.COMPLETED, ActionStatus.CANCELLED, ActionStatus.OVERDUE},
    ActionStatus.OVERDUE: {ActionStatus.COMPLETED, ActionStatus.CANCELLED},
    ActionStatus.COMPLETED: set(),
    ActionStatus.CANCELLED: set(),
}

SEVERITY_PRIORITY = {
    IncidentSeverity.CRITICAL: IncidentPriority.URGENT,
    IncidentSeverity.HIGH: IncidentPriority.HIGH,
    IncidentSeverity.MEDIUM: IncidentPriority.MEDIUM,
    IncidentSeverity.LOW: IncidentPriority.LOW,
}

ACTION_CATEGORY = {
    ActionType.INVESTIGATE: TimelineCategory.INVESTIGATION,
    ActionType.CONTAIN: TimelineCategory.CONTAINMENT,
    ActionType.ERADICATE: TimelineCategory.ERADICATION,
    ActionType.RECOVER: TimelineCategory.RECOVERY,
    ActionType.NOTIFY: TimelineCategory.NOTIFICATION,
    ActionType.REVIEW: TimelineCategory.REVIEW,
}

SYSTEM_ACTOR = "system"


@dataclass
class IncidentAction:
    """Remediation task."""
    id: str
    incident_id: str
    type: ActionType
    title: str
    description: str
    priority: IncidentPriority
    status: ActionStatus
    created_at: datetime
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'incident_id': self.incident_id,
            'type': self.type.value,
            'title': self.title,
            'description': self.description,
            'priority': self.priority.value,
            'status': self.status.value,
            'assigned_to': self.assigned_to,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'created_at': self.created_at.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'notes': self.notes,
        }


@dataclass
class Incident:
    """In-memory incident aggregate."""
    id: str
    title: str
    description: str
    type: IncidentType
    severity: IncidentSeverity
    status: IncidentStatus
    priority: IncidentPriority
    detected_at: datetime
    affected_users: List[str] = field(default_factory=list)
    affected_systems: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    threat_id: Optional[str] = None
    assigned_to: Optional[str] = None
    root_cause: Optional[str] = None
    lessons_learned: Optional[str] = None
    prevention_measures: List[str] = field(default_factory=list)
    resolved_at: Optional[datetime] = None
    evidence: List[Evidence] = field(default_factory=list)
    actions: List[IncidentAction] = field(default_factory=list)
    timeline: Timeline = field(default_factory=Timeline)

    @property
    def is_active(self) -> bool:
        return self.status != IncidentStatus.CLOSED

    def find_action(self, action_id: str) -> Optional[IncidentAction]:
        return next((a for a in self.actions if a.id == action_id), None)

    def find_evidence(self, evidence_id: str) -> Optional[Evidence]:
        return next((e for e in self.evidence if e.id == evidence_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'type': self.type.value,
            'severity': self.severity.value,
            'status': self.status.value,
            'priority': self.priority.value,
            'affected_users': list(self.affected_users),
            'affected_systems': list(self.affected_systems),
            'tags': list(self.tags),
            'threat_id': self.threat_id,
            'assigned_to': self.assigned_to,
            'root_cause': self.root_cause,
            'lessons_learned': self.lessons_learned,
            'prevention_measures': list(self.prevention_measures),
            'detected_at': self.detected_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'evidence': [e.to_dict() for e in self.evidence],
            'actions': [a.to_dict() for a in self.actions],
            'timeline': self.timeline.to_list(),
        }


# =============================================================================
# Row <-> aggregate conversion
# =============================================================================

def _timeline_row(incident_id: str, entry: TimelineEntry) -> IncidentTimelineEntry:
    return IncidentTimelineEntry(
        id=entry.id,
        incident_id=incident_id,
        sequence=entry.sequence,
        timestamp=entry.timestamp,
        event=entry.event,
        description=entry.description,
        actor=entry.actor,
        category=entry.category,
        details=entry.metadata,
    )


def _action_row(action: IncidentAction) -> IncidentActionRow:
    return IncidentActionRow(
        id=action.id,
        incident_id=action.incident_id,
        type=action.type,
        title=action.title,
        description=action.description,
        assigned_to=action.assigned_to,
        priority=action.priority,
        status=action.status,
        due_date=action.due_date,
        created_at=action.created_at,
    )


def incident_from_row(row: SecurityIncident) -> Incident:
    """Build the aggregate from a loaded row. Must run inside the row's session."""
    return Incident(
        id=row.id,
        title=row.title,
        description=row.description or "",
        type=row.type,
        severity=row.severity,
        status=row.status,
        priority=row.priority,
        detected_at=row.detected_at,
        affected_users=list(row.affected_users or []),
        affected_systems=list(row.affected_systems or []),
        tags=list(row.tags or []),
        threat_id=row.threat_id,
        assigned_to=row.assigned_to,
        root_cause=row.root_cause,
        lessons_learned=row.lessons_learned,
        prevention_measures=list(row.prevention_measures or []),
        resolved_at=row.resolved_at,
        evidence=[
            Evidence(
                id=ev.id,
                incident_id=row.id,
                type=ev.type,
                name=ev.name,
                description=ev.description or "",
                file_hash=ev.file_hash,
                file_size=ev.file_size,
                collected_by=ev.collected_by,
                collected_at=ev.collected_at,
                is_tampered=ev.is_tampered,
                custody=[
                    CustodyEntry(c.sequence, c.timestamp, c.action, c.performed_by, c.location, c.notes)
                    for c in ev.custody
                ],
            )
            for ev in row.evidence
        ],
        actions=[
            IncidentAction(
                id=a.id,
                incident_id=row.id,
                type=a.type,
                title=a.title,
                description=a.description or "",
                priority=a.priority,
                status=a.status,
                created_at=a.created_at,
                assigned_to=a.assigned_to,
                due_date=a.due_date,
                started_at=a.started_at,
                completed_at=a.completed_at,
                notes=a.notes,
            )
            for a in row.actions
        ],
        timeline=Timeline([
            TimelineEntry(
                id=t.id,
                sequence=t.sequence,
                timestamp=t.timestamp,
                event=t.event,
                description=t.description or "",
                actor=t.actor,
                category=t.category,
                metadata=t.details or {},
            )
            for t in row.timeline
        ]),
    )


# =============================================================================
# Tracker
# =============================================================================

class IncidentTracker:
    """Incident state machine with evidence, actions and timeline."""

    def __init__(
        self,
        session_factory: sessionmaker,
        audit: Optional[AuditSink] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[IncidentConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        notify_channels: Optional[List[str]] = None,
    ):
        self.session_factory = session_factory
        self.audit = audit
        self.notifier = notifier
        self.config = config or IncidentConfig()
        self.clock = clock
        self.notify_channels = notify_channels or ["email"]
        self._active: Dict[str, Incident] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _write(self, fn: Callable[[Any], None], what: str):
        """Run ``fn(db)`` in one transaction; failures become PersistenceError."""
        try:
            with session_scope(self.session_factory) as db:
                fn(db)
        except SQLAlchemyError as e:
            logger.error(f"Incident store write failed ({what}): {e}")
            raise PersistenceError(f"{what} failed") from e

    def _audit(self, incident: Incident, description: str, actor: str, metadata: Dict[str, Any]):
        if self.audit is None:
            return
        self.audit.record_event(
            AuditEventType.INCIDENT_EVENT.value,
            "incident",
            incident.severity.value,
            description,
            dict(metadata, incident_id=incident.id, incident_type=incident.type.value),
            {"user_id": actor},
        )

    def _require_active(self, incident_id: str) -> Incident:
        incident = self._active.get(incident_id)
        if incident is not None:
            return incident
        stored = self._load(incident_id)
        if stored is None:
            raise NotFoundError(f"Incident not found: {incident_id}")
        raise ValidationError(f"Incident {incident_id} is closed")

    def _find_action(self, action_id: str) -> Tuple[Incident, IncidentAction]:
        for incident in self._active.values():
            action = incident.find_action(action_id)
            if action is not None:
                return incident, action
        raise NotFoundError(f"Action not found: {action_id}")

    def _find_evidence(self, evidence_id: str) -> Tuple[Incident, Evidence]:
        for incident in self._active.values():
            evidence = incident.find_evidence(evidence_id)
            if evidence is not None:
                return incident, evidence
        raise NotFoundError(f"Evidence not found: {evidence_id}")

    def _load(self, incident_id: str) -> Optional[Incident]:
        db = self.session_factory()
        try:
            row = db.query(SecurityIncident).filter(SecurityIncident.id == incident_id).first()
            return incident_from_row(row) if row is not None else None
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Working set
    # -------------------------------------------------------------------------

    def rebuild_active(self) -> int:
        """Reload every non-closed incident from the durable store."""
        db = self.session_factory()
        try:
            rows = db.query(SecurityIncident).filter(SecurityIncident.status != IncidentStatus.CLOSED).all()
            incidents = {row.id: incident_from_row(row) for row in rows}
        finally:
            db.close()
        with self._lock:
            self._active = incidents
        logger.info(f"Rebuilt active incident set: {len(incidents)} open incidents")
        return len(incidents)

    def get_active_incidents(self) -> List[Incident]:
        with self._lock:
            return sorted(self._active.values(), key=lambda i: i.detected_at, reverse=True)

    def get_incident(self, incident_id: str) -> Incident:
        """Active set first, then the durable store."""
        with self._lock:
            incident = self._active.get(incident_id)
        if incident is not None:
            return incident
        incident = self._load(incident_id)
        if incident is None:
            raise NotFoundError(f"Incident not found: {incident_id}")
        return incident

    def list_incidents(self, status: Optional[IncidentStatus] = None, limit: int = 100) -> List[Incident]:
        db = self.session_factory()
        try:
            query = db.query(SecurityIncident)
            if status is not None:
                query = query.filter(SecurityIncident.status == status)
            rows = query.order_by(SecurityIncident.detected_at.desc()).limit(limit).all()
            return [incident_from_row(row) for row in rows]
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Incident lifecycle
    # -------------------------------------------------------------------------

    def create_incident(
        self,
        type: IncidentType,
        severity: IncidentSeverity,
        title: str,
        description: str,
        detected_by: str,
        affected_users: Optional[List[str]] = None,
        affected_systems: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        threat_id: Optional[str] = None,
    ) -> Incident:
        """
        Create an incident in ``detected`` with its baseline actions.

        Args:
            type: Incident type
            severity: Incident severity; also drives priority and baseline actions
            title: Short title
            description: Free-text description
            detected_by: Actor (user id, or "system" for rule-driven creation)
            affected_users: User ids involved
            affected_systems: Systems involved
            tags: Free-form labels
            threat_id: Threat indicator that triggered the incident, if any

        Returns:
            The new Incident, already in the active set
        """
        if not title or not title.strip():
            raise ValidationError("title is required")
        now = self.clock()
        incident = Incident(
            id=uuid.uuid4().hex,
            title=title.strip(),
            description=description or "",
            type=IncidentType(type),
            severity=IncidentSeverity(severity),
            status=IncidentStatus.DETECTED,
            priority=SEVERITY_PRIORITY[IncidentSeverity(severity)],
            detected_at=now,
            affected_users=list(affected_users or []),
            affected_systems=list(affected_systems or []),
            tags=list(tags or []),
            threat_id=threat_id,
        )
        incident.timeline.append(incident.timeline.next_entry(
            "Incident Created", f"Security incident created: {incident.title}",
            detected_by, TimelineCategory.DETECTION, now,
        ))
        for action in self._baseline_actions(incident, now):
            incident.actions.append(action)
            incident.timeline.append(incident.timeline.next_entry(
                "Action Created", f"Action created: {action.title}",
                SYSTEM_ACTOR, ACTION_CATEGORY.get(action.type, TimelineCategory.DOCUMENTATION), now,
                {'action_id': action.id, 'action_type': action.type.value},
            ))

        def write(db):
            db.add(SecurityIncident(
                id=incident.id,
                title=incident.title,
                description=incident.description,
                type=incident.type,
                severity=incident.severity,
                status=incident.status,
                priority=incident.priority,
                affected_users=incident.affected_users,
                affected_systems=incident.affected_systems,
                tags=incident.tags,
                threat_id=incident.threat_id,
                prevention_measures=[],
                detected_at=now,
                created_at=now,
            ))
            # Parent row first so foreign keys hold
            db.flush()
            for action in incident.actions:
                db.add(_action_row(action))
            for entry in incident.timeline:
                db.add(_timeline_row(incident.id, entry))

        with self._lock:
            self._write(write, "incident create")
            self._active[incident.id] = incident

        logger.warning(f"Security incident created: {incident.id} ({incident.type.value}, {incident.severity.value})")
        self._audit(incident, f"Security incident created: {incident.title}", detected_by, {
            'severity': incident.severity.value,
            'affected_users': incident.affected_users,
        })
        self._notify(incident)
        return incident

    def _baseline_actions(self, incident: Incident, now: datetime) -> List[IncidentAction]:
        actions = [IncidentAction(
            id=uuid.uuid4().hex,
            incident_id=incident.id,
            type=ActionType.INVESTIGATE,
            title=f"Investigate {incident.type.value} incident: {incident.title}",
            description="Initial investigation",
            priority=SEVERITY_PRIORITY[incident.severity],
            status=ActionStatus.PENDING,
            created_at=now,
            assigned_to="security-team",
            due_date=now + timedelta(hours=4),
        )]
        if incident.severity in (IncidentSeverity.HIGH, IncidentSeverity.CRITICAL):
            actions.append(IncidentAction(
                id=uuid.uuid4().hex,
                incident_id=incident.id,
                type=ActionType.CONTAIN,
                title=f"Contain {incident.type.value} incident to prevent further damage",
                description="Containment",
                priority=IncidentPriority.URGENT,
                status=ActionStatus.PENDING,
                created_at=now,
                assigned_to="security-team",
                due_date=now + timedelta(hours=2),
            ))
        if incident.severity == IncidentSeverity.CRITICAL:
            actions.append(IncidentAction(
                id=uuid.uuid4().hex,
                incident_id=incident.id,
                type=ActionType.NOTIFY,
                title=f"Notify stakeholders about critical {incident.type.value} incident",
                description="Stakeholder notification",
                priority=IncidentPriority.URGENT,
                status=ActionStatus.PENDING,
                created_at=now,
                assigned_to="incident-commander",
                due_date=now + timedelta(minutes=30),
            ))
        return actions

    def _notify(self, incident: Incident):
        if self.notifier is None:
            return
        if incident.severity not in (IncidentSeverity.HIGH, IncidentSeverity.CRITICAL):
            return
        payload = {
            'incident_id': incident.id,
            'title': incident.title,
            'type': incident.type.value,
            'severity': incident.severity.value,
            'priority': incident.priority.value,
        }
        for channel in self.notify_channels:
            self.notifier.notify(channel, payload)

    def update_incident_status(self, incident_id: str, new_status: IncidentStatus, actor: str,
                               notes: Optional[str] = None) -> Incident:
        """
        Move an incident one step forward in its lifecycle.

        Raises:
            NotFoundError: unknown incident
            InvalidTransitionError: anything but the next status in order
            PersistenceError: durable write failed; nothing changed
        """
        new_status = IncidentStatus(new_status)
        with self._lock:
            incident = self._active.get(incident_id)
            if incident is None:
                stored = self._load(incident_id)
                if stored is None:
                    raise NotFoundError(f"Incident not found: {incident_id}")
                raise InvalidTransitionError("incident", stored.status.value, new_status.value)

            previous = incident.status
            if NEXT_STATUS.get(previous) != new_status:
                raise InvalidTransitionError("incident", previous.value, new_status.value)

            now = self.clock()
            resolved_at = now if new_status == IncidentStatus.CLOSED else incident.resolved_at
            entry = incident.timeline.next_entry(
                "Status Updated",
                f"Status changed from {previous.value} to {new_status.value}" + (f": {notes}" if notes else ""),
                actor,
                STATUS_CATEGORY_MAPPING[new_status],
                now,
                {'previous_status': previous.value, 'new_status': new_status.value, 'notes': notes},
            )

            def write(db):
                row = db.query(SecurityIncident).filter(SecurityIncident.id == incident_id).one()
                row.status = new_status
                row.resolved_at = resolved_at
                row.updated_at = now
                db.add(_timeline_row(incident_id, entry))

            self._write(write, "incident status update")

            incident.status = new_status
            incident.resolved_at = resolved_at
            incident.timeline.append(entry)
            if new_status == IncidentStatus.CLOSED:
                del self._active[incident_id]

        logger.info(f"Incident {incident_id} status updated: {previous.value} -> {new_status.value}")
        self._audit(incident, f"Incident status updated: {incident_id}", actor, {
            'previous_status': previous.value,
            'new_status': new_status.value,
            'notes': notes,
        })
        return incident

    def update_incident_details(
        self,
        incident_id: str,
        actor: str,
        assigned_to: Optional[str] = None,
        root_cause: Optional[str] = None,
        lessons_learned: Optional[str] = None,
        prevention_measures: Optional[List[str]] = None,
    ) -> Incident:
        """Record assignment and post-incident findings."""
        changes = {
            'assigned_to': assigned_to,
            'root_cause': root_cause,
            'lessons_learned': lessons_learned,
            'prevention_measures': list(prevention_measures) if prevention_measures is not None else None,
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise ValidationError("no incident details to update")

        with self._lock:
            incident = self._require_active(incident_id)
            now = self.clock()
            entry = incident.timeline.next_entry(
                "Details Updated", f"Updated {', '.join(sorted(changes))}", actor,
                TimelineCategory.DOCUMENTATION, now, {'fields': sorted(changes)},
            )

            def write(db):
                row = db.query(SecurityIncident).filter(SecurityIncident.id == incident_id).one()
                for name, value in changes.items():
                    setattr(row, name, value)
                row.updated_at = now
                db.add(_timeline_row(incident_id, entry))

            self._write(write, "incident details update")
            for name, value in changes.items():
                setattr(incident, name, value)
            incident.timeline.append(entry)
        return incident

    # -------------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------------

    def add_evidence(self, incident_id: str, type: EvidenceType, name: str, description: str,
                     collected_by: str, data: bytes) -> Evidence:
        """Hash and attach evidence, with its initial custody entry."""
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationError("evidence data must be bytes")
        with self._lock:
            incident = self._require_active(incident_id)
            now = self.clock()
            evidence = Evidence(
                id=uuid.uuid4().hex,
                incident_id=incident_id,
                type=EvidenceType(type),
                name=name,
                description=description or "",
                file_hash=hash_content(bytes(data)),
                file_size=len(data),
                collected_by=collected_by,
                collected_at=now,
                custody=[CustodyEntry(0, now, INITIAL_CUSTODY_ACTION, collected_by,
                                      INITIAL_CUSTODY_LOCATION, "Initial collection")],
            )
            entry = incident.timeline.next_entry(
                "Evidence Added", f"Evidence added: {name}", collected_by,
                TimelineCategory.INVESTIGATION, now,
                {'evidence_id': evidence.id, 'evidence_type': evidence.type.value, 'hash': evidence.file_hash},
            )

            def write(db):
                db.add(IncidentEvidence(
                    id=evidence.id,
                    incident_id=incident_id,
                    type=evidence.type,
                    name=evidence.name,
                    description=evidence.description,
                    file_hash=evidence.file_hash,
                    file_size=evidence.file_size,
                    collected_by=collected_by,
                    collected_at=now,
                    is_tampered=False,
                ))
                db.flush()
                first = evidence.custody[0]
                db.add(EvidenceCustodyEntry(
                    evidence_id=evidence.id, sequence=0, timestamp=first.timestamp, action=first.action,
                    performed_by=first.performed_by, location=first.location, notes=first.notes,
                ))
                db.add(_timeline_row(incident_id, entry))

            self._write(write, "evidence add")
            incident.evidence.append(evidence)
            incident.timeline.append(entry)

        self._audit(incident, f"Evidence collected for incident: {incident_id}", collected_by, {
            'evidence_id': evidence.id,
            'evidence_type': evidence.type.value,
            'evidence_size': evidence.file_size,
        })
        return evidence

    def record_custody(self, evidence_id: str, action: str, performed_by: str,
                       location: Optional[str] = None, notes: Optional[str] = None) -> Evidence:
        """Append a chain-of-custody entry."""
        with self._lock:
            incident, evidence = self._find_evidence(evidence_id)
            now = self.clock()
            custody = CustodyEntry(len(evidence.custody), now, action, performed_by, location, notes)
            entry = incident.timeline.next_entry(
                "Custody Recorded", f"Evidence {evidence.name}: {action}", performed_by,
                TimelineCategory.DOCUMENTATION, now, {'evidence_id': evidence_id, 'location': location},
            )

            def write(db):
                db.add(EvidenceCustodyEntry(
                    evidence_id=evidence_id, sequence=custody.sequence, timestamp=now, action=action,
                    performed_by=performed_by, location=location, notes=notes,
                ))
                db.add(_timeline_row(incident.id, entry))

            self._write(write, "custody record")
            evidence.custody.append(custody)
            incident.timeline.append(entry)
        return evidence

    def verify_evidence(self, evidence_id: str, data: bytes, verified_by: str = SYSTEM_ACTOR) -> bool:
        """
        Compare ``data`` with the stored hash.

        A mismatch marks the evidence tampered; the flag is never cleared.

        Returns:
            True when the content matches the stored hash
        """
        with self._lock:
            incident, evidence = self._find_evidence(evidence_id)
            intact = evidence.matches(bytes(data))
            tampered = evidence.is_tampered or not intact
            now = self.clock()
            entry = incident.timeline.next_entry(
                "Evidence Verified" if intact else "Evidence Tampering Detected",
                f"Evidence {evidence.name} {'matches' if intact else 'does not match'} its recorded hash",
                verified_by, TimelineCategory.INVESTIGATION, now,
                {'evidence_id': evidence_id, 'intact': intact},
            )

            def write(db):
                if tampered and not evidence.is_tampered:
                    row = db.query(IncidentEvidence).filter(IncidentEvidence.id == evidence_id).one()
                    row.is_tampered = True
                db.add(_timeline_row(incident.id, entry))

            self._write(write, "evidence verify")
            evidence.is_tampered = tampered
            incident.timeline.append(entry)

        if not intact:
            logger.warning(f"Evidence {evidence_id} on incident {incident.id} failed hash verification")
        return intact

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def create_action(
        self,
        incident_id: str,
        type: ActionType,
        title: str,
        actor: str,
        description: str = "",
        assigned_to: Optional[str] = None,
        due_date: Optional[datetime] = None,
        priority: IncidentPriority = IncidentPriority.MEDIUM,
    ) -> IncidentAction:
        with self._lock:
            incident = self._require_active(incident_id)
            now = self.clock()
            action = IncidentAction(
                id=uuid.uuid4().hex,
                incident_id=incident_id,
                type=ActionType(type),
                title=title,
                description=description or "",
                priority=IncidentPriority(priority),
                status=ActionStatus.PENDING,
                created_at=now,
                assigned_to=assigned_to,
                due_date=to_naive_utc(due_date) if due_date is not None else None,
            )
            entry = incident.timeline.next_entry(
                "Action Created", f"Action created: {title}", actor,
                ACTION_CATEGORY.get(action.type, TimelineCategory.DOCUMENTATION), now,
                {'action_id': action.id, 'action_type': action.type.value},
            )

            def write(db):
                db.add(_action_row(action))
                db.add(_timeline_row(incident_id, entry))

            self._write(write, "action create")
            incident.actions.append(action)
            incident.timeline.append(entry)

        logger.info(f"Action created for incident {incident_id}: {action.id}")
        return action

    def _transition_action(self, action_id: str, target: ActionStatus, actor: str, event: str,
                           notes: Optional[str] = None) -> IncidentAction:
        with self._lock:
            incident, action = self._find_action(action_id)
            if target not in ACTION_TRANSITIONS[action.status]:
                raise InvalidTransitionError("action", action.status.value, target.value)

            now = self.clock()
            previous = action.status
            started_at = now if target == ActionStatus.IN_PROGRESS else action.started_at
            completed_at = now if target in (ActionStatus.COMPLETED, ActionStatus.CANCELLED) else action.completed_at
            new_notes = notes if notes is not None else action.notes
            entry = incident.timeline.next_entry(
                event, f"{event}: {action.title}" + (f" ({notes})" if notes else ""), actor,
                ACTION_CATEGORY.get(action.type, TimelineCategory.DOCUMENTATION), now,
                {'action_id': action_id, 'previous_status': previous.value, 'new_status': target.value},
            )

            def write(db):
                row = db.query(IncidentActionRow).filter(IncidentActionRow.id == action_id).one()
                row.status = target
                row.started_at = started_at
                row.completed_at = completed_at
                row.notes = new_notes
                db.add(_timeline_row(incident.id, entry))

            self._write(write, f"action {target.value}")
            action.status = target
            action.started_at = started_at
            action.completed_at = completed_at
            action.notes = new_notes
            incident.timeline.append(entry)

        logger.info(f"Action {action_id} on incident {incident.id}: {previous.value} -> {target.value}")
        return action

    def start_action(self, action_id: str, actor: str) -> IncidentAction:
        return self._transition_action(action_id, ActionStatus.IN_PROGRESS, actor, "Action Started")

    def complete_action(self, action_id: str, actor: str, notes: Optional[str] = None) -> IncidentAction:
        return self._transition_action(action_id, ActionStatus.COMPLETED, actor, "Action Completed", notes)

    def cancel_action(self, action_id: str, actor: str, reason: Optional[str] = None) -> IncidentAction:
        return self._transition_action(action_id, ActionStatus.CANCELLED, actor, "Action Cancelled", reason)

    def mark_overdue_actions(self) -> int:
        """Flag pending or in-progress actions past their due date."""
        now = self.clock()
        with self._lock:
            due = [
                action.id
                for incident in self._active.values()
                for action in incident.actions
                if action.due_date is not None and action.due_date < now
                and action.status in (ActionStatus.PENDING, ActionStatus.IN_PROGRESS)
            ]
        marked = 0
        for action_id in due:
            try:
                self._transition_action(action_id, ActionStatus.OVERDUE, SYSTEM_ACTOR, "Action Overdue")
                marked += 1
            except (InvalidTransitionError, NotFoundError):
                # Completed, cancelled or closed since the scan
                continue
        if marked:
            logger.warning(f"Marked {marked} incident actions overdue")
        return marked

    # -------------------------------------------------------------------------
    # Reporting and retention
    # -------------------------------------------------------------------------

    def incident_counts(self) -> Dict[str, Any]:
        """Totals and breakdowns over every stored incident."""
        db = self.session_factory()
        try:
            rows = db.query(
                SecurityIncident.type, SecurityIncident.severity, SecurityIncident.status,
                SecurityIncident.detected_at, SecurityIncident.resolved_at,
            ).all()
        finally:
            db.close()

        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        resolution_hours = []
        for type_, severity, status, detected_at, resolved_at in rows:
            by_type[type_.value] = by_type.get(type_.value, 0) + 1
            by_severity[severity.value] = by_severity.get(severity.value, 0) + 1
            by_status[status.value] = by_status.get(status.value, 0) + 1
            if status == IncidentStatus.CLOSED and resolved_at is not None:
                resolution_hours.append((resolved_at - detected_at).total_seconds() / 3600)

        total = len(rows)
        resolved = by_status.get(IncidentStatus.CLOSED.value, 0)
        return {
            'total_incidents': total,
            'open_incidents': total - resolved,
            'resolved_incidents': resolved,
            'average_resolution_hours': (sum(resolution_hours) / len(resolution_hours)) if resolution_hours else 0.0,
            'incidents_by_type': by_type,
            'incidents_by_severity': by_severity,
            'incidents_by_status': by_status,
        }

    def purge_closed_incidents(self) -> int:
        """Hard-delete incidents closed longer ago than the retention period."""
        cutoff = self.clock() - timedelta(days=self.config.closed_retention_days)
        purged = 0
        with session_scope(self.session_factory) as db:
            rows = db.query(SecurityIncident).filter(
                SecurityIncident.status == IncidentStatus.CLOSED,
                SecurityIncident.resolved_at < cutoff,
            ).all()
            for row in rows:
                db.delete(row)
                purged += 1
        if purged:
            logger.info(f"Purged {purged} closed incidents past retention")
        return purged
