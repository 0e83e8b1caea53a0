"""Fraud Detection - risk scoring for registration-time email abuse.

Score components:
    reason table           20 - 50 (25 for unlisted reasons)
    suspicious local part  low 10 / medium 25 / high 50 / critical 75 (first match wins)
    IP history             count x 10, capped at 50
    email history          count x 15, capped at 60
    blocklisted IP/email   +100
Total is capped at 100; 80 or more blocklists both the email and the IP.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Pattern

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..config import FraudConfig
from ..database import session_scope
from ..errors import PersistenceError, ValidationError
from ..models import BlocklistEntry, BlocklistKind, FraudAttempt
from ..stores.counter_store import CounterStore
from ..utils.clock import utcnow
from .blocklist import Blocklist

logger = logging.getLogger(__name__)

REASON_SCORES = {
    'Disposable email addresses are not allowed.': 30,
    'Email prefix does not match approved patterns for this university.': 40,
    'Email domain not associated with an approved university.': 50,
    'Invalid email format.': 20,
    'Server error during email validation.': 10,
}
DEFAULT_REASON_SCORE = 25

PATTERN_SCORES = {
    'low': 10,
    'medium': 25,
    'high': 50,
    'critical': 75,
}

IP_HISTORY_POINTS, IP_HISTORY_CAP = 10, 50
EMAIL_HISTORY_POINTS, EMAIL_HISTORY_CAP = 15, 60
BLOCKLISTED_POINTS = 100


@dataclass
class SuspiciousPattern:
    pattern: Pattern
    description: str
    risk_level: str

    def matches(self, email: str) -> bool:
        return bool(self.pattern.search(email))


# Ordered; the first matching pattern is the one scored
SUSPICIOUS_PATTERNS: List[SuspiciousPattern] = [
    SuspiciousPattern(
        re.compile(r'^(test|temp|fake|spam|throwaway)[a-z]*\d*@[a-z]+\.edu$'),
        'Throwaway account name', 'critical'),
    SuspiciousPattern(
        re.compile(r'^[a-z]+\d+@[a-z]+\.edu$'),
        'Generic username with numbers pattern', 'medium'),
    SuspiciousPattern(
        re.compile(r'^[a-z]{1,3}\d{4,}@[a-z]+\.edu$'),
        'Very short username with many numbers', 'high'),
    SuspiciousPattern(
        re.compile(r'^[a-z]+\d{2,}@[a-z]+\.edu$'),
        'Username with multiple consecutive numbers', 'medium'),
    SuspiciousPattern(
        re.compile(r'^[a-z]+\d+[a-z]+@[a-z]+\.edu$'),
        'Username with numbers in the middle', 'low'),
    SuspiciousPattern(
        re.compile(r'^[a-z]+\d+[a-z]+\d+@[a-z]+\.edu$'),
        'Username with multiple number groups', 'high'),
]


@dataclass
class FraudScore:
    email: str
    ip_address: str
    risk_score: int
    blocked: bool
    reason: str
    matched_pattern: Optional[str] = None
    blocklisted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'email': self.email,
            'ip_address': self.ip_address,
            'risk_score': self.risk_score,
            'blocked': self.blocked,
            'reason': self.reason,
            'matched_pattern': self.matched_pattern,
            'blocklisted': self.blocklisted,
        }


class FraudDetectionService:
    """Scores rejected registrations and blocklists repeat offenders."""

    def __init__(
        self,
        session_factory: sessionmaker,
        store: CounterStore,
        blocklist: Blocklist,
        config: Optional[FraudConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        patterns: Optional[List[SuspiciousPattern]] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.blocklist = blocklist
        self.config = config or FraudConfig()
        self.clock = clock
        self.patterns = patterns if patterns is not None else list(SUSPICIOUS_PATTERNS)

    @staticmethod
    def _normalize_email(email: str) -> str:
        # Malformed addresses are scored like any other; blank ones are rejected
        if not isinstance(email, str) or not email.strip():
            raise ValidationError("email is required")
        return email.strip().lower()

    def match_pattern(self, email: str) -> Optional[SuspiciousPattern]:
        for pattern in self.patterns:
            if pattern.matches(email):
                return pattern
        return None

    def is_ip_blocked(self, ip_address: str) -> bool:
        return self.blocklist.is_blocked(BlocklistKind.IP, ip_address)

    def is_email_blocked(self, email: str) -> bool:
        return self.blocklist.is_blocked(BlocklistKind.EMAIL, email)

    def calculate_risk_score(self, email: str, ip_address: str, reason: str) -> int:
        """Score an attempt from the reason, the local part and prior history."""
        email = self._normalize_email(email)
        score = REASON_SCORES.get(reason, DEFAULT_REASON_SCORE)

        pattern = self.match_pattern(email)
        if pattern:
            score += PATTERN_SCORES[pattern.risk_level]

        ip_count = self.store.get(f"fraud_ip:{ip_address}") or 0
        score += min(ip_count * IP_HISTORY_POINTS, IP_HISTORY_CAP)

        email_count = self.store.get(f"fraud_email:{email}") or 0
        score += min(email_count * EMAIL_HISTORY_POINTS, EMAIL_HISTORY_CAP)

        if self.is_ip_blocked(ip_address):
            score += BLOCKLISTED_POINTS
        if self.is_email_blocked(email):
            score += BLOCKLISTED_POINTS

        return min(score, 100)

    def score_registration_email(self, email: str, ip_address: str, reason: str,
                                 user_agent: Optional[str] = None) -> FraudScore:
        """
        Score a registration attempt and record it.

        Blocklist membership is checked first, so repeat offenders score 100
        without consulting the pattern bank or history.

        Args:
            email: Email the registration used
            ip_address: Client IP
            reason: Rejection reason from the email validator
            user_agent: Optional client user agent

        Returns:
            FraudScore with the final score and whether the attempt is blocked
        """
        email = self._normalize_email(email)
        if self.is_email_blocked(email) or self.is_ip_blocked(ip_address):
            self.record_fraud_attempt(email, ip_address, reason, 100, True, user_agent)
            return FraudScore(email=email, ip_address=ip_address, risk_score=100,
                              blocked=True, reason=reason, blocklisted=True)

        pattern = self.match_pattern(email)
        score = self.calculate_risk_score(email, ip_address, reason)
        blocked = score >= self.config.auto_block_threshold
        self.record_fraud_attempt(email, ip_address, reason, score, blocked, user_agent)

        if blocked:
            self.blocklist.block(BlocklistKind.EMAIL, email, reason,
                                 self.config.blocklist_ttl_seconds, risk_score=score)
            self.blocklist.block(BlocklistKind.IP, ip_address, reason,
                                 self.config.blocklist_ttl_seconds, risk_score=score)

        return FraudScore(
            email=email,
            ip_address=ip_address,
            risk_score=score,
            blocked=blocked,
            reason=reason,
            matched_pattern=pattern.description if pattern else None,
        )

    def record_fraud_attempt(self, email: str, ip_address: str, reason: str, risk_score: int,
                             is_blocked: bool, user_agent: Optional[str] = None):
        """Persist the attempt and bump the 24 h IP and email counters."""
        try:
            with session_scope(self.session_factory) as db:
                db.add(FraudAttempt(
                    email=email,
                    ip_address=ip_address,
                    reason=reason,
                    risk_score=risk_score,
                    is_blocked=is_blocked,
                    created_at=self.clock(),
                ))
        except SQLAlchemyError as e:
            raise PersistenceError("fraud attempt write failed") from e

        ttl = self.config.counter_ttl_seconds
        self.store.incr(f"fraud_ip:{ip_address}", ttl)
        self.store.incr(f"fraud_email:{email}", ttl)
        logger.warning(
            f"Fraud attempt recorded: {email} from {ip_address}, risk score: {risk_score}, blocked: {is_blocked}"
        )

    def remove_from_blocklist(self, identifier: str) -> bool:
        """Unblock an email (contains '@') or an IP."""
        kind = BlocklistKind.EMAIL if '@' in identifier else BlocklistKind.IP
        return self.blocklist.unblock(kind, identifier)

    def _stats(self, counter_key: str, column, value: str) -> Dict[str, Any]:
        total = self.store.get(counter_key) or 0
        db = self.session_factory()
        try:
            attempts = db.query(FraudAttempt).filter(column == value) \
                .order_by(FraudAttempt.created_at.desc(), FraudAttempt.id.desc()).limit(10).all()
        finally:
            db.close()
        return {
            'total_attempts': total,
            'blocked_attempts': sum(1 for a in attempts if a.is_blocked),
            'risk_score': attempts[0].risk_score if attempts else 0,
            'last_attempt': attempts[0].created_at.isoformat() if attempts else None,
        }

    def get_fraud_stats(self, ip_address: str) -> Dict[str, Any]:
        return self._stats(f"fraud_ip:{ip_address}", FraudAttempt.ip_address, ip_address)

    def get_email_fraud_stats(self, email: str) -> Dict[str, Any]:
        email = self._normalize_email(email)
        return self._stats(f"fraud_email:{email}", FraudAttempt.email, email)

    def cleanup_old_entries(self) -> Dict[str, int]:
        """Delete fraud attempts and inactive or expired blocklist rows past retention."""
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        now = self.clock()
        with session_scope(self.session_factory) as db:
            attempts = db.query(FraudAttempt).filter(FraudAttempt.created_at < cutoff) \
                .delete(synchronize_session=False)
            entries = db.query(BlocklistEntry).filter(
                BlocklistEntry.created_at < cutoff,
                (BlocklistEntry.is_active == False) | (BlocklistEntry.expires_at < now),
            ).delete(synchronize_session=False)
        if attempts or entries:
            logger.info(f"Cleaned up {attempts} fraud attempts and {entries} blocklist entries")
        return {'fraud_attempts': attempts, 'blocklist_entries': entries}
