"""
Incident Timeline.

Append-only, ordered record of everything that happens to an incident.
Entries are frozen once created; the timeline only ever grows.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..models import IncidentStatus, TimelineCategory


# Status an incident moves into -> timeline category of that phase
STATUS_CATEGORY_MAPPING = {
    IncidentStatus.DETECTED: TimelineCategory.DETECTION,
    IncidentStatus.INVESTIGATING: TimelineCategory.INVESTIGATION,
    IncidentStatus.CONTAINED: TimelineCategory.CONTAINMENT,
    IncidentStatus.ERADICATED: TimelineCategory.ERADICATION,
    IncidentStatus.RECOVERED: TimelineCategory.RECOVERY,
    IncidentStatus.CLOSED: TimelineCategory.REVIEW,
}


@dataclass(frozen=True)
class TimelineEntry:
    """Single timeline event."""
    id: str
    sequence: int
    timestamp: datetime
    event: str
    description: str
    actor: str
    category: TimelineCategory
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'timestamp': self.timestamp.isoformat(),
            'event': self.event,
            'description': self.description,
            'actor': self.actor,
            'category': self.category.value,
            'metadata': dict(self.metadata),
        }


class Timeline:
    """Append-only list of TimelineEntry objects."""

    def __init__(self, entries: Optional[List[TimelineEntry]] = None):
        self._entries: List[TimelineEntry] = sorted(entries or [], key=lambda e: e.sequence)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TimelineEntry]:
        return iter(tuple(self._entries))

    @property
    def entries(self) -> Tuple[TimelineEntry, ...]:
        return tuple(self._entries)

    def next_entry(
        self,
        event: str,
        description: str,
        actor: str,
        category: TimelineCategory,
        timestamp: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimelineEntry:
        """Build the entry that would be appended next, without appending it."""
        # Timestamps never go backwards
        if self._entries and timestamp < self._entries[-1].timestamp:
            timestamp = self._entries[-1].timestamp
        return TimelineEntry(
            id=uuid.uuid4().hex,
            sequence=len(self._entries),
            timestamp=timestamp,
            event=event,
            description=description,
            actor=actor,
            category=category,
            metadata=dict(metadata or {}),
        )

    def append(self, entry: TimelineEntry):
        if entry.sequence != len(self._entries):
            raise ValueError(f"timeline entry out of order: {entry.sequence} != {len(self._entries)}")
        self._entries.append(entry)

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self._entries]
