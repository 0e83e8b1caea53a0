"""
Security Router.

Login-attempt and registration analysis, threats, blocklist administration,
stats and health.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps.services import enforce_rate_limit, get_actor, get_db, get_security_service
from ..errors import ConfigurationError
from ..schemas import (
    BlockIPRequest,
    BlockUserRequest,
    LoginAttemptRequest,
    LoginAttemptResponse,
    RegistrationScoreRequest,
    RegistrationScoreResponse,
    ResolveThreatRequest,
    UnblockIPRequest,
    UnblockUserRequest,
)
from ..services.security_service import SecurityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/security", tags=["security"])


# =============================================================================
# Login / Registration
# =============================================================================

@router.post("/login-attempts", response_model=LoginAttemptResponse)
async def record_login_attempt(data: LoginAttemptRequest,
                               service: SecurityService = Depends(get_security_service)):
    """
    Analyze one login attempt reported by the login flow.

    Rate limited per client IP under the ``login`` policy.
    """
    enforce_rate_limit(service, "login", data.ip_address, data.user_agent)
    threats = service.analyze_login_attempt(
        data.user_id, data.ip_address, data.user_agent, data.success, data.metadata,
    )
    return {"threat_count": len(threats), "threats": [t.to_dict() for t in threats]}


@router.post("/registrations/score", response_model=RegistrationScoreResponse)
async def score_registration(data: RegistrationScoreRequest,
                             service: SecurityService = Depends(get_security_service)):
    """Score a rejected registration email for fraud."""
    enforce_rate_limit(service, "registration", data.ip_address, data.user_agent)
    score = service.score_registration_email(data.email, data.ip_address, data.reason, data.user_agent)
    return {"risk_score": score.risk_score, "blocked": score.blocked, "matched_pattern": score.matched_pattern}


# =============================================================================
# Threats
# =============================================================================

@router.get("/threats")
async def list_active_threats(service: SecurityService = Depends(get_security_service),
                              actor: str = Depends(get_actor)):
    threats = service.get_active_threats()
    return {"count": len(threats), "threats": [t.to_dict() for t in threats]}


@router.post("/threats/{threat_id}/resolve")
async def resolve_threat(threat_id: str, data: ResolveThreatRequest,
                         service: SecurityService = Depends(get_security_service),
                         actor: str = Depends(get_actor)):
    threat = service.resolve_threat(threat_id, actor, data.resolution)
    return threat.to_dict()


# =============================================================================
# Blocklist
# =============================================================================

@router.post("/block/ip")
async def block_ip(data: BlockIPRequest, service: SecurityService = Depends(get_security_service),
                   actor: str = Depends(get_actor)):
    service.block_ip(data.ip_address, f"{data.reason} (by {actor})", data.duration_seconds)
    return {"success": True, "ip_address": data.ip_address, "duration_seconds": data.duration_seconds}


@router.post("/unblock/ip")
async def unblock_ip(data: UnblockIPRequest, service: SecurityService = Depends(get_security_service),
                     actor: str = Depends(get_actor)):
    removed = service.unblock_ip(data.ip_address)
    return {"success": removed, "ip_address": data.ip_address}


@router.post("/block/user")
async def block_user(data: BlockUserRequest, service: SecurityService = Depends(get_security_service),
                     actor: str = Depends(get_actor)):
    service.block_user(data.user_id, f"{data.reason} (by {actor})", data.duration_seconds)
    return {"success": True, "user_id": data.user_id, "duration_seconds": data.duration_seconds}


@router.post("/unblock/user")
async def unblock_user(data: UnblockUserRequest, service: SecurityService = Depends(get_security_service),
                       actor: str = Depends(get_actor)):
    removed = service.unblock_user(data.user_id)
    return {"success": removed, "user_id": data.user_id}


# =============================================================================
# Stats / Metrics
# =============================================================================

@router.get("/stats")
async def security_stats(service: SecurityService = Depends(get_security_service),
                         actor: str = Depends(get_actor)):
    return service.get_security_stats()


@router.get("/metrics")
async def security_metrics(refresh: bool = False, service: SecurityService = Depends(get_security_service),
                           actor: str = Depends(get_actor)):
    return service.get_security_metrics(refresh=refresh)


@router.get("/rate-limits/{policy}/{actor_key}")
async def rate_limit_status(policy: str, actor_key: str,
                            service: SecurityService = Depends(get_security_service),
                            actor: str = Depends(get_actor)):
    """Current window for an actor without counting a request."""
    try:
        result = service.rate_limiter.status(policy, actor_key)
    except ConfigurationError:
        raise HTTPException(status_code=404, detail="Unknown rate limit policy")
    return result.to_dict()


@router.get("/health")
async def health_check(service: SecurityService = Depends(get_security_service), db: Session = Depends(get_db)):
    """Database and counter store reachability."""
    db_ok = True
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        db_ok = False
    store_ok = service.store.ping()
    return {
        "status": "healthy" if db_ok and store_ok else "degraded",
        "database": db_ok,
        "counter_store": store_ok,
        "service": "authguard",
    }
