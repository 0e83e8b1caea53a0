"""
Security middleware.

Evaluates every API request before it reaches a route. Blocked requests are
answered here with 403 and never reach the application; the decision is
audited by the SecurityService before the response goes out.
"""

import json
import logging
import uuid
from typing import Any, Iterable

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from .detection.indicators import RequestDescriptor
from .errors import SecurityCoreError, ValidationError
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api/"
EXEMPT_PATHS = ("/api/security/health",)


def _parse_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


class SecurityMiddleware:
    """ASGI middleware; the SecurityService is read from ``app.state.security_service``."""

    def __init__(self, app: ASGIApp, exempt_paths: Iterable[str] = EXEMPT_PATHS):
        self.app = app
        self.exempt_paths = tuple(exempt_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        path = scope.get("path", "")
        if not path.startswith(PROTECTED_PREFIX) or path in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        service = getattr(scope["app"].state, "security_service", None)
        if service is None:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        raw_body = await request.body()
        request_id = uuid.uuid4().hex
        ip_address = request.client.host if request.client else "unknown"
        user_agent = request.headers.get("user-agent", "")
        user_id = request.headers.get("x-actor-id")

        try:
            descriptor = RequestDescriptor(
                method=request.method,
                url=str(request.url.path),
                headers=dict(request.headers),
                body=_parse_body(raw_body, request.headers.get("content-type", "")),
                query=dict(request.query_params),
            )
            decision = service.evaluate_request(descriptor, user_id, ip_address, user_agent)
        except ValidationError:
            response = JSONResponse({"error": "invalid request", "requestId": request_id}, status_code=400)
            await response(scope, receive, send)
            return
        except SecurityCoreError as e:
            logger.error(f"Security evaluation failed for {request.method} {path}: {e}")
            response = JSONResponse({"error": "internal error", "requestId": request_id}, status_code=503)
            await response(scope, receive, send)
            return

        if not decision.allowed:
            logger.warning(
                f"Blocked {request.method} {path} from {ip_address}: {decision.reason} (score {decision.risk_score})"
            )
            response = JSONResponse(
                {
                    "error": "Forbidden",
                    "reason": decision.reason,
                    "requestId": request_id,
                    "timestamp": utcnow().isoformat() + "Z",
                },
                status_code=403,
                headers={"X-Request-ID": request_id},
            )
            await response(scope, receive, send)
            return

        # Replay the buffered body for the application
        body_sent = False

        async def replay() -> dict:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": raw_body, "more_body": False}
            return await receive()

        await self.app(scope, replay, send)
