"""Pattern detectors for login attempts and inbound requests.

Each detector inspects one normalized payload and returns a ThreatIndicator
or None. Detectors read history and counters through the DetectionContext and
never write durable state; the request-flood detector is the only one that
increments counters.

Fixed risk scores:
    geographic anomaly   60  (medium)
    device anomaly       50  (medium)
    behavioral anomaly   40  (medium)
    SQL injection        95  (critical)
    XSS                  85  (high)
    CSRF                 80  (high)
    malicious request    90  (high)
    IP request flood     70  (high)
    user request flood   60  (medium)
"""

import hashlib
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Pattern

from ..config import DetectionConfig
from ..integrations.history import EventHistory
from ..models import AuditEventType, ThreatSeverity, ThreatType
from ..stores.counter_store import CounterStore
from ..utils.clock import local_hour
from .indicators import LoginAttempt, RequestDescriptor, ThreatIndicator, make_indicator


@dataclass
class DetectionContext:
    """Read-side dependencies shared by every detector for one analysis."""
    history: EventHistory
    store: CounterStore
    config: DetectionConfig
    now: datetime


def device_fingerprint(user_agent: str, metadata: Dict[str, Any]) -> str:
    """SHA-256 over the user agent and the client-reported device traits."""
    data = {
        'userAgent': user_agent,
        'screenResolution': metadata.get('screenResolution'),
        'timezone': metadata.get('timezone'),
        'language': metadata.get('language'),
        'platform': metadata.get('platform'),
    }
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()


def serialize_request(request: RequestDescriptor) -> str:
    """Lower-cased JSON view of method, URL, headers, query and body."""
    return json.dumps(request.to_dict(), default=str, sort_keys=True).lower()


# =============================================================================
# Login detectors
# =============================================================================

class LoginDetector(ABC):
    """Base class for login-attempt detectors."""

    name: str = "login-detector"
    threat_type: ThreatType = ThreatType.SUSPICIOUS_LOGIN

    @abstractmethod
    def detect(self, attempt: LoginAttempt, ctx: DetectionContext) -> Optional[ThreatIndicator]:
        """
        Inspect a login attempt.

        Args:
            attempt: Normalized login attempt
            ctx: History, counters, thresholds and the analysis time

        Returns:
            ThreatIndicator if the detector fires, None otherwise
        """
        pass

    def _indicator(self, attempt: LoginAttempt, ctx: DetectionContext, severity: ThreatSeverity,
                   risk_score: float, description: str, metadata: Dict[str, Any]) -> ThreatIndicator:
        return make_indicator(
            threat_type=self.threat_type,
            severity=severity,
            risk_score=risk_score,
            description=description,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            user_id=attempt.user_id,
            metadata=metadata,
            now=ctx.now,
        )


class BruteForceDetector(LoginDetector):
    """Failed logins for one user inside the trailing window.

    Counts failures recorded before the current attempt.
    """

    name = "brute_force"
    threat_type = ThreatType.BRUTE_FORCE

    def detect(self, attempt, ctx):
        window = ctx.config.brute_force_window_minutes
        since = ctx.now - timedelta(minutes=window)
        failures = ctx.history.query_events(
            user_id=attempt.user_id,
            event_type=AuditEventType.LOGIN_FAILURE.value,
            since=since,
            limit=1000,
        )
        failed_count = len(failures)
        if failed_count < ctx.config.brute_force_threshold:
            return None

        return self._indicator(
            attempt, ctx,
            severity=ThreatSeverity.HIGH,
            risk_score=min(100, failed_count * 10),
            description=f"Brute force attack detected: {failed_count} failed attempts in {window} minutes",
            metadata={
                'failed_attempts': failed_count,
                'window_minutes': window,
                'threshold': ctx.config.brute_force_threshold,
            },
        )


class SuspiciousLoginDetector(LoginDetector):
    """
    Unusual hour (+30) plus a device/IP unseen in 30 days (+40).

    The hour is read in the client timezone reported in the attempt metadata,
    falling back to UTC.
    """

    name = "suspicious_login"
    threat_type = ThreatType.SUSPICIOUS_LOGIN

    UNUSUAL_HOUR_POINTS = 30
    NEW_DEVICE_POINTS = 40

    def detect(self, attempt, ctx):
        hour = local_hour(ctx.now, attempt.metadata.get('timezone'))
        is_unusual_time = hour < 6 or hour > 22

        previous = ctx.history.query_events(
            user_id=attempt.user_id,
            event_type=AuditEventType.LOGIN_SUCCESS.value,
            since=ctx.now - timedelta(days=30),
            limit=10,
        )
        is_new_device = not any(
            e.user_agent == attempt.user_agent or e.ip_address == attempt.ip_address
            for e in previous
        )

        score = (self.UNUSUAL_HOUR_POINTS if is_unusual_time else 0) + \
                (self.NEW_DEVICE_POINTS if is_new_device else 0)
        if score < ctx.config.suspicious_login_threshold:
            return None

        reasons = []
        if is_unusual_time:
            reasons.append("unusual time")
        if is_new_device:
            reasons.append("new device")
        return self._indicator(
            attempt, ctx,
            severity=ThreatSeverity.MEDIUM,
            risk_score=score,
            description=f"Suspicious login detected: {', '.join(reasons)}",
            metadata={
                'is_unusual_time': is_unusual_time,
                'is_new_device': is_new_device,
                'hour': hour,
            },
        )


class GeographicAnomalyDetector(LoginDetector):
    """Country not seen in the last 5 successful logins (7 days)."""

    name = "geographic_anomaly"
    threat_type = ThreatType.GEOGRAPHIC_ANOMALY

    def detect(self, attempt, ctx):
        location = attempt.metadata.get('location') or {}
        country = location.get('country') if isinstance(location, dict) else None
        if not country:
            return None

        previous = ctx.history.query_events(
            user_id=attempt.user_id,
            event_type=AuditEventType.LOGIN_SUCCESS.value,
            since=ctx.now - timedelta(days=7),
            limit=5,
        )
        previous_countries = [
            (e.metadata.get('location') or {}).get('country')
            for e in previous
            if isinstance(e.metadata.get('location'), dict)
        ]
        previous_countries = [c for c in previous_countries if c]
        # Cold-start users have nothing to compare against
        if not previous_countries or country in previous_countries:
            return None

        return self._indicator(
            attempt, ctx,
            severity=ThreatSeverity.MEDIUM,
            risk_score=60,
            description=f"Geographic anomaly detected: login from new location {country}",
            metadata={
                'current_country': country,
                'previous_countries': sorted(set(previous_countries)),
            },
        )


class DeviceAnomalyDetector(LoginDetector):
    """Device fingerprint not seen in the last 10 successful logins (30 days)."""

    name = "device_anomaly"
    threat_type = ThreatType.DEVICE_ANOMALY

    def detect(self, attempt, ctx):
        fingerprint = device_fingerprint(attempt.user_agent, attempt.metadata)
        previous = ctx.history.query_events(
            user_id=attempt.user_id,
            event_type=AuditEventType.LOGIN_SUCCESS.value,
            since=ctx.now - timedelta(days=30),
            limit=10,
        )
        known = [e.metadata.get('device_fingerprint') for e in previous]
        known = [fp for fp in known if fp]
        if not known or fingerprint in known:
            return None

        return self._indicator(
            attempt, ctx,
            severity=ThreatSeverity.MEDIUM,
            risk_score=50,
            description="Device anomaly detected: new device fingerprint",
            metadata={
                'device_fingerprint': fingerprint,
                'known_fingerprints': len(set(known)),
            },
        )


class BehavioralAnomalyDetector(LoginDetector):
    """More events for the user in the trailing hour than the threshold."""

    name = "behavioral_anomaly"
    threat_type = ThreatType.BEHAVIORAL_ANOMALY

    def detect(self, attempt, ctx):
        recent = ctx.history.query_events(
            user_id=attempt.user_id,
            since=ctx.now - timedelta(hours=1),
            limit=100,
        )
        activity = len(recent)
        threshold = ctx.config.behavioral_anomaly_threshold
        if activity <= threshold:
            return None

        return self._indicator(
            attempt, ctx,
            severity=ThreatSeverity.MEDIUM,
            risk_score=40,
            description=f"Behavioral anomaly detected: unusual activity volume ({activity} events in last hour)",
            metadata={
                'activity_count': activity,
                'time_window': '1 hour',
                'threshold': threshold,
            },
        )


# =============================================================================
# Request detectors
# =============================================================================

class RequestDetector(ABC):
    """Base class for request detectors."""

    name: str = "request-detector"
    threat_type: ThreatType = ThreatType.MALICIOUS_REQUEST

    @abstractmethod
    def detect(self, request: RequestDescriptor, serialized: str, user_id: Optional[str],
               ip_address: str, user_agent: str, ctx: DetectionContext) -> Optional[ThreatIndicator]:
        pass

    def _indicator(self, severity, risk_score, description, user_id, ip_address, user_agent,
                   ctx, metadata) -> ThreatIndicator:
        return make_indicator(
            threat_type=self.threat_type,
            severity=severity,
            risk_score=risk_score,
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=user_id,
            metadata=metadata,
            now=ctx.now,
        )


class SignatureDetector(RequestDetector):
    """Regex signature bank matched against the serialized request."""

    patterns: List[Pattern] = []
    severity: ThreatSeverity = ThreatSeverity.HIGH
    risk_score: int = 0
    label: str = "Malicious pattern"

    def detect(self, request, serialized, user_id, ip_address, user_agent, ctx):
        matched = [p.pattern for p in self.patterns if p.search(serialized)]
        if not matched:
            return None
        return self._indicator(
            self.severity, self.risk_score,
            f"{self.label} detected in {request.method} {request.url}",
            user_id, ip_address, user_agent, ctx,
            metadata={
                'method': request.method,
                'url': request.url,
                'matched_patterns': matched,
            },
        )


class SqlInjectionDetector(SignatureDetector):
    name = "sql_injection"
    threat_type = ThreatType.SQL_INJECTION
    severity = ThreatSeverity.CRITICAL
    risk_score = 95
    label = "SQL injection attempt"

    # Structural signatures only; bare keywords like "update" appear in ordinary URLs
    patterns = [
        re.compile(r"\bunion\s+(all\s+)?select\b"),
        re.compile(r"\bselect\s+[\w\*,\s()]+?\s+from\s+\w+"),
        re.compile(r"\binsert\s+into\s+\w+"),
        re.compile(r"\bupdate\s+\w+\s+set\s+\w+"),
        re.compile(r"\bdelete\s+from\s+\w+"),
        re.compile(r"\bdrop\s+(table|database)\b"),
        re.compile(r"\b(alter|create)\s+table\b"),
        re.compile(r"\bexec(ute)?\s*\("),
        re.compile(r"'\s*;"),
        re.compile(r"'\s*--"),
        re.compile(r";\s*--"),
        re.compile(r"'\s*or\s+'?\d+'?\s*=\s*'?\d+"),
        re.compile(r"\bor\s+1\s*=\s*1\b"),
    ]


class XssDetector(SignatureDetector):
    name = "xss_attack"
    threat_type = ThreatType.XSS_ATTACK
    severity = ThreatSeverity.HIGH
    risk_score = 85
    label = "XSS attempt"

    patterns = [
        re.compile(r"<\s*script\b"),
        re.compile(r"<\s*iframe\b"),
        re.compile(r"<\s*object\b"),
        re.compile(r"<\s*embed\b"),
        re.compile(r"<\s*applet\b"),
        re.compile(r"<\s*meta\b"),
        re.compile(r"<\s*link\b"),
        re.compile(r"<\s*style\b"),
        re.compile(r"javascript:"),
        re.compile(r"vbscript:"),
        re.compile(r"\bon(load|error|click|mouseover)\s*="),
    ]


class MaliciousRequestDetector(SignatureDetector):
    name = "malicious_request"
    threat_type = ThreatType.MALICIOUS_REQUEST
    severity = ThreatSeverity.HIGH
    risk_score = 90
    label = "Malicious request pattern"

    patterns = [
        re.compile(r"\.\./"),
        re.compile(r"\.\.\\"),
        re.compile(r"<script"),
        re.compile(r"javascript:"),
        re.compile(r"vbscript:"),
        re.compile(r"data:text/html"),
        re.compile(r"eval\("),
        re.compile(r"expression\("),
    ]


class CsrfDetector(RequestDetector):
    """State-changing request without a CSRF token header."""

    name = "csrf_attack"
    threat_type = ThreatType.CSRF_ATTACK

    TOKEN_HEADERS = ('x-csrf-token', 'csrf-token')

    def detect(self, request, serialized, user_id, ip_address, user_agent, ctx):
        if not request.is_state_changing:
            return None
        if any(request.headers.get(h) for h in self.TOKEN_HEADERS):
            return None
        return self._indicator(
            ThreatSeverity.HIGH, 80,
            "CSRF attack attempt detected: missing CSRF token",
            user_id, ip_address, user_agent, ctx,
            metadata={
                'method': request.method,
                'url': request.url,
                'missing_csrf_token': True,
            },
        )


class RequestFloodDetector(RequestDetector):
    """Per-IP and per-user request counters over a fixed window."""

    name = "request_flood"
    threat_type = ThreatType.DDOS_ATTACK

    def detect(self, request, serialized, user_id, ip_address, user_agent, ctx):
        ttl = ctx.config.request_flood_window_minutes * 60
        limit = ctx.config.request_flood_limit

        ip_count = ctx.store.incr(f"req_flood:ip:{ip_address}", ttl)
        if ip_count > limit:
            return make_indicator(
                threat_type=ThreatType.DDOS_ATTACK,
                severity=ThreatSeverity.HIGH,
                risk_score=70,
                description=f"Request flood from IP {ip_address}: {ip_count} requests",
                ip_address=ip_address,
                user_agent=user_agent,
                user_id=user_id,
                metadata={'request_count': ip_count, 'limit': limit, 'scope': 'ip'},
                now=ctx.now,
            )

        if user_id:
            user_count = ctx.store.incr(f"req_flood:user:{user_id}", ttl)
            if user_count > limit:
                return make_indicator(
                    threat_type=ThreatType.UNUSUAL_ACTIVITY,
                    severity=ThreatSeverity.MEDIUM,
                    risk_score=60,
                    description=f"Unusual request volume for user {user_id}: {user_count} requests",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    user_id=user_id,
                    metadata={'request_count': user_count, 'limit': limit, 'scope': 'user'},
                    now=ctx.now,
                )
        return None


# =============================================================================
# Registries
# =============================================================================

LOGIN_DETECTORS: List[LoginDetector] = [
    BruteForceDetector(),
    SuspiciousLoginDetector(),
    GeographicAnomalyDetector(),
    DeviceAnomalyDetector(),
    BehavioralAnomalyDetector(),
]

REQUEST_DETECTORS: List[RequestDetector] = [
    SqlInjectionDetector(),
    XssDetector(),
    CsrfDetector(),
    MaliciousRequestDetector(),
    RequestFloodDetector(),
]
