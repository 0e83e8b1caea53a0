"""Default implementations of the collaborators the security core calls out to."""

from .audit import AuditSink, SqlAuditSink
from .history import EventHistory, HistoricalEvent, SqlEventHistory
from .accounts import AccountService, SqlAccountService
from .notifier import Notifier, LoggingNotifier, WebhookNotifier

__all__ = [
    "AuditSink", "SqlAuditSink",
    "EventHistory", "HistoricalEvent", "SqlEventHistory",
    "AccountService", "SqlAccountService",
    "Notifier", "LoggingNotifier", "WebhookNotifier",
]
