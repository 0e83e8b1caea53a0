"""Incident response: incident lifecycle, evidence custody and timeline."""

from .evidence import CustodyEntry, Evidence, hash_content
from .incidents import ACTION_TRANSITIONS, NEXT_STATUS, Incident, IncidentAction, IncidentTracker
from .timeline import STATUS_CATEGORY_MAPPING, Timeline, TimelineEntry

__all__ = [
    "CustodyEntry", "Evidence", "hash_content",
    "ACTION_TRANSITIONS", "NEXT_STATUS", "Incident", "IncidentAction", "IncidentTracker",
    "STATUS_CATEGORY_MAPPING", "Timeline", "TimelineEntry",
]
