"""Pydantic schemas for the authguard API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import ActionType, EvidenceType, IncidentPriority, IncidentSeverity, IncidentStatus, IncidentType


# ============ Login / Registration Schemas ============

class LoginAttemptRequest(BaseModel):
    user_id: str
    ip_address: str
    user_agent: str = ""
    success: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LoginAttemptResponse(BaseModel):
    threat_count: int
    threats: List[Dict[str, Any]]


class RegistrationScoreRequest(BaseModel):
    email: str
    ip_address: str
    reason: str
    user_agent: Optional[str] = None


class RegistrationScoreResponse(BaseModel):
    risk_score: int
    blocked: bool
    matched_pattern: Optional[str] = None


# ============ Threat / Blocklist Schemas ============

class ResolveThreatRequest(BaseModel):
    resolution: str


class BlockIPRequest(BaseModel):
    ip_address: str
    reason: str
    duration_seconds: int = Field(default=3600, gt=0)


class UnblockIPRequest(BaseModel):
    ip_address: str


class BlockUserRequest(BaseModel):
    user_id: str
    reason: str
    duration_seconds: int = Field(default=3600, gt=0)


class UnblockUserRequest(BaseModel):
    user_id: str


# ============ Incident Schemas ============

class IncidentCreateRequest(BaseModel):
    type: IncidentType
    severity: IncidentSeverity
    title: str
    description: str = ""
    affected_users: List[str] = Field(default_factory=list)
    affected_systems: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    threat_id: Optional[str] = None


class IncidentStatusUpdate(BaseModel):
    status: IncidentStatus
    notes: Optional[str] = None


class IncidentDetailsUpdate(BaseModel):
    assigned_to: Optional[str] = None
    root_cause: Optional[str] = None
    lessons_learned: Optional[str] = None
    prevention_measures: Optional[List[str]] = None


class EvidenceCreateRequest(BaseModel):
    type: EvidenceType
    name: str
    description: str = ""
    content_base64: str


class EvidenceVerifyRequest(BaseModel):
    content_base64: str


class CustodyRecordRequest(BaseModel):
    action: str
    location: Optional[str] = None
    notes: Optional[str] = None


class ActionCreateRequest(BaseModel):
    type: ActionType
    title: str
    description: str = ""
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: IncidentPriority = IncidentPriority.MEDIUM


class ActionUpdateRequest(BaseModel):
    notes: Optional[str] = None
