"""Risk Scorer - aggregates indicators into one bounded request score."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..detection.indicators import ThreatIndicator
from ..models import ThreatSeverity

SEVERITY_POINTS = {
    ThreatSeverity.LOW: 10,
    ThreatSeverity.MEDIUM: 30,
    ThreatSeverity.HIGH: 60,
    ThreatSeverity.CRITICAL: 90,
}

BLOCK_SCORE = 80
HIGH_COUNT_TO_BLOCK = 2


@dataclass
class SecurityDecision:
    """Outcome of scoring one request."""
    allowed: bool
    risk_score: int
    reason: Optional[str] = None
    threats: List[ThreatIndicator] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'risk_score': self.risk_score,
            'reason': self.reason,
            'threats': [t.to_dict() for t in self.threats],
        }


def aggregate_score(indicators: Iterable[ThreatIndicator]) -> int:
    """Sum severity points, capped at 100."""
    total = sum(SEVERITY_POINTS.get(i.severity, 0) for i in indicators)
    return max(0, min(100, total))


def block_reason(indicators: List[ThreatIndicator], score: int) -> Optional[str]:
    """Reason to block, or None when the request may proceed."""
    if any(i.severity == ThreatSeverity.CRITICAL for i in indicators):
        return "Critical security threat detected"
    if sum(1 for i in indicators if i.severity == ThreatSeverity.HIGH) >= HIGH_COUNT_TO_BLOCK:
        return "Multiple high-severity threats detected"
    if score >= BLOCK_SCORE:
        return "Risk score too high"
    return None


def decide(indicators: List[ThreatIndicator]) -> SecurityDecision:
    score = aggregate_score(indicators)
    reason = block_reason(indicators, score)
    return SecurityDecision(
        allowed=reason is None,
        risk_score=score,
        reason=reason,
        threats=list(indicators),
    )


def audit_severity(score: int) -> str:
    if score >= 80:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"
