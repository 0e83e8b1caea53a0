"""Evidence handling: content hashing and chain of custody."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models import EvidenceType

INITIAL_CUSTODY_ACTION = "Collected"
INITIAL_CUSTODY_LOCATION = "Incident Response System"


def hash_content(data: bytes) -> str:
    """SHA-256 hex digest of raw evidence bytes."""
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class CustodyEntry:
    sequence: int
    timestamp: datetime
    action: str
    performed_by: str
    location: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'timestamp': self.timestamp.isoformat(),
            'action': self.action,
            'performed_by': self.performed_by,
            'location': self.location,
            'notes': self.notes,
        }


@dataclass
class Evidence:
    """Content-addressed evidence item owned by one incident."""
    id: str
    incident_id: str
    type: EvidenceType
    name: str
    description: str
    file_hash: str
    file_size: int
    collected_by: str
    collected_at: datetime
    is_tampered: bool = False
    custody: List[CustodyEntry] = field(default_factory=list)

    def matches(self, data: bytes) -> bool:
        return hash_content(data) == self.file_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'incident_id': self.incident_id,
            'type': self.type.value,
            'name': self.name,
            'description': self.description,
            'hash': self.file_hash,
            'size': self.file_size,
            'collected_by': self.collected_by,
            'collected_at': self.collected_at.isoformat(),
            'is_tampered': self.is_tampered,
            'chain_of_custody': [c.to_dict() for c in self.custody],
        }
