"""Unit tests for request risk aggregation.

Run with: pytest authguard/services/tests/test_risk_scorer.py -v
"""

from ...detection.indicators import make_indicator
from ...models import ThreatSeverity, ThreatType
from ..risk_scorer import aggregate_score, audit_severity, decide


def make_threat(severity: ThreatSeverity, threat_type: ThreatType = ThreatType.MALICIOUS_REQUEST):
    """Indicator with the given severity."""
    return make_indicator(threat_type, severity, 50, "test threat", "203.0.113.5", "pytest")


class TestDecide:
    """Tests for the block decision."""

    def test_no_threats_allowed(self):
        """Should allow a clean request with score 0."""
        decision = decide([])

        assert decision.allowed
        assert decision.risk_score == 0
        assert decision.reason is None

    def test_single_critical_blocks(self):
        """Should block on any critical indicator."""
        decision = decide([make_threat(ThreatSeverity.CRITICAL, ThreatType.SQL_INJECTION)])

        assert not decision.allowed
        assert decision.risk_score == 90
        assert decision.reason == "Critical security threat detected"

    def test_two_highs_block(self):
        """Should block on two high-severity indicators."""
        decision = decide([make_threat(ThreatSeverity.HIGH), make_threat(ThreatSeverity.HIGH)])

        assert not decision.allowed
        assert decision.reason == "Multiple high-severity threats detected"

    def test_single_high_allowed(self):
        """Should allow one high-severity indicator (score 60)."""
        decision = decide([make_threat(ThreatSeverity.HIGH)])

        assert decision.allowed
        assert decision.risk_score == 60

    def test_score_threshold_blocks(self):
        """Should block when medium indicators add up to 80 or more."""
        decision = decide([make_threat(ThreatSeverity.MEDIUM)] * 3)

        assert not decision.allowed
        assert decision.risk_score == 90
        assert decision.reason == "Risk score too high"

    def test_score_is_bounded(self):
        """Should cap the aggregate at 100."""
        assert aggregate_score([make_threat(ThreatSeverity.CRITICAL)] * 4) == 100

    def test_audit_severity_bands(self):
        """Should map scores to audit severities."""
        assert [audit_severity(s) for s in (0, 30, 60, 80)] == ["low", "medium", "high", "critical"]
