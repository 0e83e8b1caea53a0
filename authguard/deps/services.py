"""Service dependencies for route handlers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..services.rate_limiter import RateLimitResult
from ..services.security_service import SecurityService


class RateLimitExceeded(Exception):
    """Raised by routes when a rate-limit check rejects the request."""

    def __init__(self, result: RateLimitResult):
        self.result = result
        super().__init__(f"rate limit exceeded on {result.policy}")


def get_security_service(request: Request) -> SecurityService:
    """The SecurityService built at startup."""
    service = getattr(request.app.state, "security_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return service


def get_db(service: SecurityService = Depends(get_security_service)):
    """Dependency that provides a session on the service's database."""
    db = service.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    """
    Operator identity for admin routes.

    Credentials are verified upstream; this only requires the identity header.
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return x_actor_id.strip()


def enforce_rate_limit(service: SecurityService, policy: str, actor_key: str,
                       user_agent: Optional[str] = None) -> RateLimitResult:
    """Count one request against ``policy``; raise RateLimitExceeded when rejected."""
    result = service.check_rate_limit(policy, actor_key, {'ip_address': actor_key, 'user_agent': user_agent})
    if not result.allowed:
        raise RateLimitExceeded(result)
    return result
