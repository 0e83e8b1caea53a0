"""
AUTHGUARD - Security core for the university authentication platform
Main FastAPI Application
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings
from .database import SessionLocal, engine, init_db
from .deps.services import RateLimitExceeded
from .errors import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    StoreUnavailable,
    ValidationError,
)
from .integrations.notifier import LoggingNotifier, WebhookNotifier
from .maintenance import MaintenanceScheduler, default_jobs
from .middleware import SecurityMiddleware
from .routers import incidents, security
from .seed_rules import seed_rules
from .services.security_service import SecurityService
from .stores.counter_store import build_counter_store

logger = logging.getLogger(__name__)


def build_service(settings: Settings) -> SecurityService:
    """Wire the SecurityService from settings against the default database."""
    notifier = WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else LoggingNotifier()
    return SecurityService(
        session_factory=SessionLocal,
        store=build_counter_store(settings.redis_url),
        settings=settings,
        notifier=notifier,
    )


def create_app(settings: Optional[Settings] = None, service: Optional[SecurityService] = None,
               run_maintenance: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings; read from the environment when omitted
        service: Prebuilt SecurityService (tests inject one over their own database)
        run_maintenance: Start the background maintenance scheduler

    Returns:
        Configured FastAPI app
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        print("=" * 50)
        print("  AUTHGUARD - Starting up...")
        print("=" * 50)

        if app.state.security_service is None:
            init_db(engine)
            print("[STARTUP] Database initialized")

            db = SessionLocal()
            try:
                seed_rules(db)
            finally:
                db.close()

            app.state.security_service = build_service(settings)

        svc = app.state.security_service
        svc.start()
        print(f"[STARTUP] {len(svc.get_active_threats())} active threats, "
              f"{len(svc.get_active_incidents())} open incidents restored")

        scheduler = None
        if run_maintenance:
            scheduler = MaintenanceScheduler(default_jobs(svc))
            await scheduler.start()
            print("[STARTUP] Maintenance scheduler started")
        else:
            print("[STARTUP] Maintenance scheduler skipped")

        print("[STARTUP] Ready to accept connections")
        print("=" * 50)

        yield  # Application runs here

        # Shutdown
        print("[SHUTDOWN] Stopping services...")
        if scheduler:
            await scheduler.stop()
            print("[SHUTDOWN] Maintenance scheduler stopped")
        print("[SHUTDOWN] Complete")

    app = FastAPI(
        title="AUTHGUARD",
        description="Threat detection, rate limiting, fraud scoring and incident response",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.security_service = service

    app.add_middleware(SecurityMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(security.router)
    app.include_router(incidents.router)
    register_exception_handlers(app)

    @app.get("/api")
    def api_info():
        """API information endpoint."""
        return {
            "name": "AUTHGUARD API",
            "version": __version__,
            "endpoints": {
                "analysis": {
                    "login_attempt": "POST /api/security/login-attempts",
                    "registration_score": "POST /api/security/registrations/score",
                },
                "threats": {
                    "list": "GET /api/security/threats",
                    "resolve": "POST /api/security/threats/{id}/resolve",
                },
                "incidents": {
                    "list": "GET /api/security/incidents",
                    "create": "POST /api/security/incidents",
                    "status": "POST /api/security/incidents/{id}/status",
                },
                "health": "GET /api/security/health",
            },
        }

    return app


def register_exception_handlers(app: FastAPI):
    """Map the error taxonomy to generic responses; no internal detail leaves the service."""

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded):
        result = exc.result
        return JSONResponse(
            {
                "error": "rate limited",
                "retryAfter": result.retry_after,
                "limit": result.limit,
                "remaining": 0,
            },
            status_code=429,
            headers={"Retry-After": str(result.retry_after)},
        )

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"error": "not found"}, status_code=404)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return JSONResponse(
            {"error": "invalid transition", "current": exc.current, "requested": exc.requested},
            status_code=409,
        )

    @app.exception_handler(ValidationError)
    async def invalid_request(request: Request, exc: ValidationError):
        return JSONResponse({"error": "invalid request"}, status_code=422)

    @app.exception_handler(StoreUnavailable)
    @app.exception_handler(PersistenceError)
    async def unavailable(request: Request, exc: Exception):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse({"error": "internal error"}, status_code=503)

    @app.exception_handler(ConfigurationError)
    async def misconfigured(request: Request, exc: ConfigurationError):
        logger.error(f"{request.method} {request.url.path} configuration error: {exc}")
        return JSONResponse({"error": "internal error"}, status_code=500)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
