"""Historical-event query used by the anomaly detectors."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from ..models import AuditEvent


@dataclass
class HistoricalEvent:
    event_type: str
    created_at: datetime
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class EventHistory(ABC):

    @abstractmethod
    def query_events(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[HistoricalEvent]:
        """Events matching the filter, newest first."""


class SqlEventHistory(EventHistory):
    """Reads the audit_events table written by SqlAuditSink."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def query_events(self, user_id=None, event_type=None, since=None, limit=100):
        db = self.session_factory()
        try:
            query = db.query(AuditEvent)
            if user_id is not None:
                query = query.filter(AuditEvent.user_id == user_id)
            if event_type is not None:
                query = query.filter(AuditEvent.event_type == str(event_type))
            if since is not None:
                query = query.filter(AuditEvent.created_at >= since)
            rows = query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).all()
            return [
                HistoricalEvent(
                    event_type=row.event_type,
                    created_at=row.created_at,
                    user_id=row.user_id,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    metadata=row.details or {},
                )
                for row in rows
            ]
        finally:
            db.close()
