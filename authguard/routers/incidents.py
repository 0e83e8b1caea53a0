"""
Incidents Router.

Incident lifecycle, evidence and remediation actions.
"""

import base64
import binascii
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..deps.services import get_actor, get_security_service
from ..models import IncidentStatus
from ..schemas import (
    ActionCreateRequest,
    ActionUpdateRequest,
    CustodyRecordRequest,
    EvidenceCreateRequest,
    EvidenceVerifyRequest,
    IncidentCreateRequest,
    IncidentDetailsUpdate,
    IncidentStatusUpdate,
)
from ..services.security_service import SecurityService

router = APIRouter(prefix="/api/security", tags=["incidents"])


def _decode(content: str) -> bytes:
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail="content_base64 is not valid base64")


# =============================================================================
# Incidents
# =============================================================================

@router.get("/incidents")
async def list_incidents(status: Optional[IncidentStatus] = None, active: bool = False, limit: int = 100,
                         service: SecurityService = Depends(get_security_service),
                         actor: str = Depends(get_actor)):
    """
    List incidents, newest first.

    ``active=true`` reads the in-memory working set instead of the database.
    """
    if active:
        incidents = service.get_active_incidents()
    else:
        incidents = service.incidents.list_incidents(status=status, limit=limit)
    return {"count": len(incidents), "incidents": [i.to_dict() for i in incidents]}


@router.post("/incidents", status_code=201)
async def create_incident(data: IncidentCreateRequest, service: SecurityService = Depends(get_security_service),
                          actor: str = Depends(get_actor)):
    incident = service.create_incident(
        type=data.type,
        severity=data.severity,
        title=data.title,
        description=data.description,
        detected_by=actor,
        affected_users=data.affected_users,
        affected_systems=data.affected_systems,
        tags=data.tags,
        threat_id=data.threat_id,
    )
    return incident.to_dict()


@router.get("/incidents/{incident_id}")
async def get_incident(incident_id: str, service: SecurityService = Depends(get_security_service),
                       actor: str = Depends(get_actor)):
    return service.incidents.get_incident(incident_id).to_dict()


@router.post("/incidents/{incident_id}/status")
async def update_incident_status(incident_id: str, data: IncidentStatusUpdate,
                                 service: SecurityService = Depends(get_security_service),
                                 actor: str = Depends(get_actor)):
    incident = service.update_incident_status(incident_id, data.status, actor, data.notes)
    return incident.to_dict()


@router.post("/incidents/{incident_id}/details")
async def update_incident_details(incident_id: str, data: IncidentDetailsUpdate,
                                  service: SecurityService = Depends(get_security_service),
                                  actor: str = Depends(get_actor)):
    incident = service.incidents.update_incident_details(
        incident_id, actor,
        assigned_to=data.assigned_to,
        root_cause=data.root_cause,
        lessons_learned=data.lessons_learned,
        prevention_measures=data.prevention_measures,
    )
    return incident.to_dict()


# =============================================================================
# Evidence
# =============================================================================

@router.post("/incidents/{incident_id}/evidence", status_code=201)
async def add_evidence(incident_id: str, data: EvidenceCreateRequest,
                       service: SecurityService = Depends(get_security_service),
                       actor: str = Depends(get_actor)):
    evidence = service.add_evidence(incident_id, data.type, data.name, data.description, actor,
                                    _decode(data.content_base64))
    return evidence.to_dict()


@router.post("/evidence/{evidence_id}/custody")
async def record_custody(evidence_id: str, data: CustodyRecordRequest,
                         service: SecurityService = Depends(get_security_service),
                         actor: str = Depends(get_actor)):
    evidence = service.incidents.record_custody(evidence_id, data.action, actor, data.location, data.notes)
    return evidence.to_dict()


@router.post("/evidence/{evidence_id}/verify")
async def verify_evidence(evidence_id: str, data: EvidenceVerifyRequest,
                          service: SecurityService = Depends(get_security_service),
                          actor: str = Depends(get_actor)):
    intact = service.incidents.verify_evidence(evidence_id, _decode(data.content_base64), actor)
    return {"evidence_id": evidence_id, "intact": intact}


# =============================================================================
# Actions
# =============================================================================

@router.post("/incidents/{incident_id}/actions", status_code=201)
async def create_action(incident_id: str, data: ActionCreateRequest,
                        service: SecurityService = Depends(get_security_service),
                        actor: str = Depends(get_actor)):
    action = service.create_action(
        incident_id, data.type, data.title, actor,
        description=data.description,
        assigned_to=data.assigned_to,
        due_date=data.due_date,
        priority=data.priority,
    )
    return action.to_dict()


@router.post("/actions/{action_id}/start")
async def start_action(action_id: str, service: SecurityService = Depends(get_security_service),
                       actor: str = Depends(get_actor)):
    return service.incidents.start_action(action_id, actor).to_dict()


@router.post("/actions/{action_id}/complete")
async def complete_action(action_id: str, data: ActionUpdateRequest,
                          service: SecurityService = Depends(get_security_service),
                          actor: str = Depends(get_actor)):
    return service.complete_action(action_id, actor, data.notes).to_dict()


@router.post("/actions/{action_id}/cancel")
async def cancel_action(action_id: str, data: ActionUpdateRequest,
                        service: SecurityService = Depends(get_security_service),
                        actor: str = Depends(get_actor)):
    return service.incidents.cancel_action(action_id, actor, data.notes).to_dict()
