"""Threat indicator and normalized event payloads.

A ThreatIndicator is one detector's finding. Evidence fields never change
after creation; only the resolution fields are written later.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..errors import ValidationError
from ..models import ThreatSeverity, ThreatType
from ..utils.clock import utcnow
from ..utils.mitre import map_threat_to_mitre

STATE_CHANGING_METHODS = ("POST", "PUT", "DELETE")
KNOWN_METHODS = ("GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE")


def clamp_score(value: float) -> int:
    """Bound a risk score to [0, 100]."""
    return max(0, min(100, int(round(value))))


@dataclass
class ThreatIndicator:
    """One detector's finding of a possible threat."""
    id: str
    type: ThreatType
    severity: ThreatSeverity
    risk_score: int
    ip_address: str
    user_agent: str
    description: str
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None

    def __post_init__(self):
        self.risk_score = clamp_score(self.risk_score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'severity': self.severity.value,
            'risk_score': self.risk_score,
            'user_id': self.user_id,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'description': self.description,
            'metadata': self.metadata,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'resolved_by': self.resolved_by,
            'resolution': self.resolution,
        }


def make_indicator(
    threat_type: ThreatType,
    severity: ThreatSeverity,
    risk_score: float,
    description: str,
    ip_address: str,
    user_agent: str,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ThreatIndicator:
    """Helper to create an indicator with its MITRE reference attached."""
    details = dict(metadata or {})
    mitre = map_threat_to_mitre(threat_type.value)
    if mitre:
        details['mitre'] = mitre
    return ThreatIndicator(
        id=uuid.uuid4().hex,
        type=threat_type,
        severity=severity,
        risk_score=risk_score,
        ip_address=ip_address,
        user_agent=user_agent,
        description=description,
        user_id=user_id,
        metadata=details,
        created_at=now or utcnow(),
    )


def _require_ip(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("ip_address is required")
    return value.strip()


@dataclass
class LoginAttempt:
    """Normalized login attempt."""
    user_id: str
    ip_address: str
    user_agent: str
    success: bool
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.user_id, str) or not self.user_id.strip():
            raise ValidationError("user_id is required")
        self.ip_address = _require_ip(self.ip_address)
        if not isinstance(self.success, bool):
            raise ValidationError("success must be a boolean")
        if self.user_agent is None:
            self.user_agent = ""
        if self.metadata is None:
            self.metadata = {}
        if not isinstance(self.metadata, dict):
            raise ValidationError("metadata must be an object")


@dataclass
class RequestDescriptor:
    """Normalized view of an inbound HTTP request."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    query: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.method, str) or self.method.upper() not in KNOWN_METHODS:
            raise ValidationError(f"unsupported method: {self.method!r}")
        self.method = self.method.upper()
        if not isinstance(self.url, str) or not self.url:
            raise ValidationError("url is required")
        # Header names are case-insensitive
        self.headers = {str(k).lower(): str(v) for k, v in (self.headers or {}).items()}
        self.query = dict(self.query or {})

    @property
    def is_state_changing(self) -> bool:
        return self.method in STATE_CHANGING_METHODS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method,
            'url': self.url,
            'headers': self.headers,
            'query': self.query,
            'body': self.body,
        }
