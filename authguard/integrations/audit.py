"""Audit sink.

The security core only emits audit records. Writes are best-effort: a failed
write is logged locally and never propagates into the calling path.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models import AuditEvent
from ..utils.clock import utcnow
from ..utils.redaction import redact

logger = logging.getLogger(__name__)


class AuditSink(ABC):

    @abstractmethod
    def record_event(
        self,
        event_type: str,
        category: str,
        severity: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record one audit event.

        Args:
            event_type: AuditEventType value (e.g. "login_failure")
            category: Coarse grouping such as "authentication" or "security"
            severity: low | medium | high | critical
            description: Human readable summary
            metadata: Free-form evidence, redacted before it is stored
            actor: user_id / ip_address / user_agent of the acting party
        """


class SqlAuditSink(AuditSink):
    """Writes audit_events rows, which SqlEventHistory reads back."""

    def __init__(self, session_factory: sessionmaker, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def record_event(self, event_type, category, severity, description, metadata=None, actor=None):
        actor = actor or {}
        db = self.session_factory()
        try:
            db.add(AuditEvent(
                event_type=str(event_type),
                category=category,
                severity=str(severity),
                description=description,
                user_id=actor.get("user_id"),
                ip_address=actor.get("ip_address"),
                user_agent=actor.get("user_agent"),
                details=redact(metadata or {}),
                created_at=self.clock(),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Audit write failed for {event_type}: {e}")
        finally:
            db.close()
