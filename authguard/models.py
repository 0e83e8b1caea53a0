"""SQLAlchemy models for the authguard security core."""

import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean,
    ForeignKey, Enum, JSON, Index
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


# =============================================================================
# THREAT DETECTION ENUMS
# =============================================================================

class ThreatType(str, enum.Enum):
    """Kinds of threat a detector can report."""
    BRUTE_FORCE = "brute_force"
    SUSPICIOUS_LOGIN = "suspicious_login"
    ACCOUNT_TAKEOVER = "account_takeover"
    MALICIOUS_REQUEST = "malicious_request"
    DATA_EXFILTRATION = "data_exfiltration"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    SESSION_HIJACKING = "session_hijacking"
    PHISHING_ATTEMPT = "phishing_attempt"
    MALWARE_DETECTED = "malware_detected"
    DDOS_ATTACK = "ddos_attack"
    SQL_INJECTION = "sql_injection"
    XSS_ATTACK = "xss_attack"
    CSRF_ATTACK = "csrf_attack"
    UNUSUAL_ACTIVITY = "unusual_activity"
    GEOGRAPHIC_ANOMALY = "geographic_anomaly"
    DEVICE_ANOMALY = "device_anomaly"
    BEHAVIORAL_ANOMALY = "behavioral_anomaly"


class ThreatSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, enum.Enum):
    """Audit event types emitted by the security core."""
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SECURITY_EVENT = "security_event"
    RATE_LIMITED = "rate_limited"
    REQUEST_BLOCKED = "request_blocked"
    ANALYSIS_DEGRADED = "analysis_degraded"
    INCIDENT_EVENT = "incident_event"


class BlocklistKind(str, enum.Enum):
    IP = "ip"
    EMAIL = "email"
    USER = "user"


# =============================================================================
# INCIDENT RESPONSE ENUMS
# =============================================================================

class IncidentType(str, enum.Enum):
    DATA_BREACH = "data_breach"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    MALWARE_INFECTION = "malware_infection"
    PHISHING_ATTACK = "phishing_attack"
    DDOS_ATTACK = "ddos_attack"
    INSIDER_THREAT = "insider_threat"
    SYSTEM_COMPROMISE = "system_compromise"
    PRIVACY_VIOLATION = "privacy_violation"
    COMPLIANCE_VIOLATION = "compliance_violation"
    SECURITY_MISCONFIGURATION = "security_misconfiguration"
    VULNERABILITY_EXPLOITATION = "vulnerability_exploitation"
    ACCOUNT_TAKEOVER = "account_takeover"
    SOCIAL_ENGINEERING = "social_engineering"
    PHYSICAL_SECURITY_BREACH = "physical_security_breach"
    SUPPLY_CHAIN_ATTACK = "supply_chain_attack"


class IncidentSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, enum.Enum):
    """Incident lifecycle, in order."""
    DETECTED = "detected"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    ERADICATED = "eradicated"
    RECOVERED = "recovered"
    CLOSED = "closed"


class IncidentPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class EvidenceType(str, enum.Enum):
    LOG_FILE = "log_file"
    SCREENSHOT = "screenshot"
    NETWORK_CAPTURE = "network_capture"
    MEMORY_DUMP = "memory_dump"
    DISK_IMAGE = "disk_image"
    DATABASE_BACKUP = "database_backup"
    EMAIL = "email"
    DOCUMENT = "document"
    VIDEO_RECORDING = "video_recording"
    AUDIO_RECORDING = "audio_recording"


class ActionType(str, enum.Enum):
    INVESTIGATE = "investigate"
    CONTAIN = "contain"
    ERADICATE = "eradicate"
    RECOVER = "recover"
    NOTIFY = "notify"
    DOCUMENT = "document"
    REVIEW = "review"
    IMPLEMENT = "implement"
    TEST = "test"
    TRAIN = "train"


class ActionStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


class TimelineCategory(str, enum.Enum):
    DETECTION = "detection"
    INVESTIGATION = "investigation"
    CONTAINMENT = "containment"
    ERADICATION = "eradication"
    RECOVERY = "recovery"
    NOTIFICATION = "notification"
    DOCUMENTATION = "documentation"
    REVIEW = "review"


# =============================================================================
# AUDIT / ACCOUNT MODELS
# =============================================================================

class AuditEvent(Base):
    """Audit trail row. Doubles as the historical-event store for detectors."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    category = Column(String(50), nullable=False, default="security")
    severity = Column(String(20), nullable=False, default="low")
    description = Column(Text, nullable=True)
    user_id = Column(String(255), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    details = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_user_type_time', 'user_id', 'event_type', 'created_at'),
    )


class UserAccount(Base):
    """Minimal account record mutated by lock / 2FA actions."""
    __tablename__ = "user_accounts"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    locked_until = Column(DateTime, nullable=True)
    locked_reason = Column(Text, nullable=True)
    require_2fa = Column(Boolean, default=False, nullable=False)
    require_2fa_reason = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# THREAT / RULE / FRAUD MODELS
# =============================================================================

class SecurityThreat(Base):
    """Persisted threat indicator."""
    __tablename__ = "security_threats"

    id = Column(String(64), primary_key=True)
    type = Column(Enum(ThreatType), nullable=False, index=True)
    severity = Column(Enum(ThreatSeverity), nullable=False)
    risk_score = Column(Integer, nullable=False, default=0)
    user_id = Column(String(255), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    details = Column("metadata", JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolution = Column(Text, nullable=True)


class SecurityRule(Base):
    """Weighted detection-response rule."""
    __tablename__ = "security_rules"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Enum(ThreatType), nullable=False, index=True)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    cooldown_minutes = Column(Integer, default=0, nullable=False)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FraudAttempt(Base):
    """Registration-time fraud attempt."""
    __tablename__ = "fraud_attempts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, index=True)
    ip_address = Column(String(64), nullable=True, index=True)
    reason = Column(Text, nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)
    is_blocked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class BlocklistEntry(Base):
    """Durable record of a blocklisted IP, email or user."""
    __tablename__ = "blocklist_entries"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(Enum(BlocklistKind), nullable=False)
    identifier = Column(String(255), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    risk_score = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    unblocked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_blocklist_kind_identifier', 'kind', 'identifier'),
    )


# =============================================================================
# INCIDENT RESPONSE MODELS
# =============================================================================

class SecurityIncident(Base):
    """Security incident aggregate root."""
    __tablename__ = "security_incidents"

    id = Column(String(64), primary_key=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Enum(IncidentType), nullable=False)
    severity = Column(Enum(IncidentSeverity), nullable=False)
    status = Column(Enum(IncidentStatus), default=IncidentStatus.DETECTED, nullable=False, index=True)
    priority = Column(Enum(IncidentPriority), nullable=False)
    affected_users = Column(JSON, default=list)
    affected_systems = Column(JSON, default=list)
    tags = Column(JSON, default=list)
    threat_id = Column(String(64), nullable=True)
    assigned_to = Column(String(255), nullable=True)
    root_cause = Column(Text, nullable=True)
    lessons_learned = Column(Text, nullable=True)
    prevention_measures = Column(JSON, default=list)
    detected_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    evidence = relationship("IncidentEvidence", back_populates="incident",
                            cascade="all, delete-orphan", order_by="IncidentEvidence.collected_at")
    actions = relationship("IncidentAction", back_populates="incident",
                           cascade="all, delete-orphan", order_by="IncidentAction.created_at")
    timeline = relationship("IncidentTimelineEntry", back_populates="incident",
                            cascade="all, delete-orphan", order_by="IncidentTimelineEntry.sequence")


class IncidentEvidence(Base):
    """Evidence item, content-addressed by SHA-256."""
    __tablename__ = "incident_evidence"

    id = Column(String(64), primary_key=True)
    incident_id = Column(String(64), ForeignKey("security_incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Enum(EvidenceType), nullable=False)
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    file_hash = Column(String(64), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    collected_by = Column(String(255), nullable=False)
    collected_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_tampered = Column(Boolean, default=False, nullable=False)

    incident = relationship("SecurityIncident", back_populates="evidence")
    custody = relationship("EvidenceCustodyEntry", back_populates="evidence",
                           cascade="all, delete-orphan", order_by="EvidenceCustodyEntry.sequence")


class EvidenceCustodyEntry(Base):
    """Append-only chain-of-custody entry."""
    __tablename__ = "evidence_custody"

    id = Column(Integer, primary_key=True, index=True)
    evidence_id = Column(String(64), ForeignKey("incident_evidence.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    action = Column(String(255), nullable=False)
    performed_by = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    evidence = relationship("IncidentEvidence", back_populates="custody")


class IncidentAction(Base):
    """Remediation task attached to an incident."""
    __tablename__ = "incident_actions"

    id = Column(String(64), primary_key=True)
    incident_id = Column(String(64), ForeignKey("security_incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Enum(ActionType), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    assigned_to = Column(String(255), nullable=True)
    priority = Column(Enum(IncidentPriority), nullable=False)
    status = Column(Enum(ActionStatus), default=ActionStatus.PENDING, nullable=False, index=True)
    due_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    incident = relationship("SecurityIncident", back_populates="actions")


class IncidentTimelineEntry(Base):
    """Append-only incident timeline entry."""
    __tablename__ = "incident_timeline"

    id = Column(String(64), primary_key=True)
    incident_id = Column(String(64), ForeignKey("security_incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    event = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    actor = Column(String(255), nullable=False)
    category = Column(Enum(TimelineCategory), nullable=False)
    details = Column("metadata", JSON, default=dict)

    incident = relationship("SecurityIncident", back_populates="timeline")
