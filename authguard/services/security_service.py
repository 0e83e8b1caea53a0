"""
Security Service.

Composition root of the security core. One instance is built at process start
with its stores injected; it owns the active-threat working set and wires the
detection engine, risk scorer, rate limiter, fraud scorer, blocklist, rule
engine and incident tracker together.

Handles:
- Login and request analysis with per-detector isolation
- Request decisions (allow / block) and suspicious-IP tracking
- Threat persistence, resolution and staleness
- Rule-engine action handlers
- Stats and cached metrics for the dashboard
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..database import session_scope
from ..detection.detectors import device_fingerprint
from ..detection.engine import DetectionEngine, DetectionResult
from ..detection.indicators import LoginAttempt, RequestDescriptor, ThreatIndicator
from ..errors import NotFoundError, PersistenceError, ValidationError
from ..integrations.accounts import AccountService, SqlAccountService
from ..integrations.audit import AuditSink, SqlAuditSink
from ..integrations.history import EventHistory, SqlEventHistory
from ..integrations.notifier import LoggingNotifier, Notifier
from ..ir.incidents import Incident, IncidentTracker
from ..models import (
    AuditEventType,
    BlocklistKind,
    IncidentSeverity,
    IncidentType,
    SecurityThreat,
    ThreatSeverity,
    ThreatType,
)
from ..stores.counter_store import CounterStore
from ..utils.clock import utcnow
from ..utils.mitre import get_mitre_technique
from .blocklist import Blocklist
from .fraud_detection import FraudDetectionService, FraudScore
from .rate_limiter import RateLimiter, RateLimitResult
from .risk_scorer import SecurityDecision, audit_severity, decide
from .rule_engine import RuleEngine

logger = logging.getLogger(__name__)

SUSPICIOUS_IP_PREFIX = "suspicious_ip:"

DEFAULT_BLOCK_SECONDS = 3600
DEFAULT_LOCK_SECONDS = 3600

# Threat type -> incident type used when a rule escalates without naming one
THREAT_INCIDENT_TYPES = {
    ThreatType.BRUTE_FORCE: IncidentType.UNAUTHORIZED_ACCESS,
    ThreatType.SUSPICIOUS_LOGIN: IncidentType.UNAUTHORIZED_ACCESS,
    ThreatType.ACCOUNT_TAKEOVER: IncidentType.ACCOUNT_TAKEOVER,
    ThreatType.SESSION_HIJACKING: IncidentType.ACCOUNT_TAKEOVER,
    ThreatType.DATA_EXFILTRATION: IncidentType.DATA_BREACH,
    ThreatType.PRIVILEGE_ESCALATION: IncidentType.SYSTEM_COMPROMISE,
    ThreatType.PHISHING_ATTEMPT: IncidentType.PHISHING_ATTACK,
    ThreatType.MALWARE_DETECTED: IncidentType.MALWARE_INFECTION,
    ThreatType.DDOS_ATTACK: IncidentType.DDOS_ATTACK,
    ThreatType.SQL_INJECTION: IncidentType.VULNERABILITY_EXPLOITATION,
    ThreatType.XSS_ATTACK: IncidentType.VULNERABILITY_EXPLOITATION,
    ThreatType.CSRF_ATTACK: IncidentType.VULNERABILITY_EXPLOITATION,
    ThreatType.MALICIOUS_REQUEST: IncidentType.VULNERABILITY_EXPLOITATION,
}


def threat_from_row(row: SecurityThreat) -> ThreatIndicator:
    return ThreatIndicator(
        id=row.id,
        type=row.type,
        severity=row.severity,
        risk_score=row.risk_score,
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        description=row.description or "",
        user_id=row.user_id,
        metadata=dict(row.details or {}),
        is_active=row.is_active,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
        resolution=row.resolution,
    )


class SecurityService:
    """Entry point the HTTP layer, login flow and registration flow call into."""

    def __init__(
        self,
        session_factory: sessionmaker,
        store: CounterStore,
        settings: Optional[Settings] = None,
        audit: Optional[AuditSink] = None,
        history: Optional[EventHistory] = None,
        accounts: Optional[AccountService] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        timer_factory: Optional[Callable[..., Any]] = None,
    ):
        self.settings = settings or Settings()
        self.config = self.settings.detection
        self.session_factory = session_factory
        self.store = store
        self.clock = clock

        self.audit = audit or SqlAuditSink(session_factory, clock)
        self.history = history or SqlEventHistory(session_factory)
        self.accounts = accounts or SqlAccountService(session_factory)
        self.notifier = notifier or LoggingNotifier()

        self.detection = DetectionEngine(self.history, store, self.config, clock)
        self.rate_limiter = RateLimiter(store, self.settings.rate_limit, clock)
        self.blocklist = Blocklist(session_factory, store, clock)
        self.fraud = FraudDetectionService(session_factory, store, self.blocklist, self.settings.fraud, clock)
        self.incidents = IncidentTracker(
            session_factory, self.audit, self.notifier, self.settings.incident, clock,
            notify_channels=self.config.alert_channels,
        )
        engine_kwargs = {'timer_factory': timer_factory} if timer_factory is not None else {}
        self.rule_engine = RuleEngine(self._action_handlers(), session_factory, clock, **engine_kwargs)

        self._active_threats: Dict[str, ThreatIndicator] = {}
        self._threat_lock = threading.Lock()
        self._metrics_cache: Optional[Dict[str, Any]] = None
        self._metrics_cached_at: Optional[datetime] = None

    # =========================================================================
    # Startup
    # =========================================================================

    def start(self):
        """Rebuild every working set from durable state."""
        self.rule_engine.load_rules()
        self.rebuild_active_threats()
        self.incidents.rebuild_active()
        self.blocklist.restore()

    def rebuild_active_threats(self) -> int:
        db = self.session_factory()
        try:
            rows = db.query(SecurityThreat).filter(SecurityThreat.is_active == True).all()
            threats = {row.id: threat_from_row(row) for row in rows}
        finally:
            db.close()
        with self._threat_lock:
            self._active_threats = threats
        logger.info(f"Rebuilt active threat set: {len(threats)} active threats")
        return len(threats)

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze_login_attempt(
        self,
        user_id: str,
        ip_address: str,
        user_agent: str,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[ThreatIndicator]:
        """
        Run the login detectors for one attempt and record it.

        The attempt is audited after detection, so detectors only ever see
        earlier attempts in the history.

        Args:
            user_id: Account the attempt targeted
            ip_address: Client IP
            user_agent: Client user agent
            success: Whether the credentials were accepted
            metadata: Client-reported device traits and location

        Returns:
            Indicators produced, in detector order

        Raises:
            ValidationError: malformed attempt; no detector runs
        """
        attempt = LoginAttempt(user_id, ip_address, user_agent, success, metadata or {})
        result = self.detection.run_login_detectors(attempt)

        for indicator in result.indicators:
            self._handle_threat(indicator, result.failures)

        actor = {'user_id': attempt.user_id, 'ip_address': attempt.ip_address, 'user_agent': attempt.user_agent}
        if attempt.success:
            event_type, severity, description = AuditEventType.LOGIN_SUCCESS, "low", "Successful login"
        else:
            event_type, severity, description = AuditEventType.LOGIN_FAILURE, "medium", "Failed login attempt"
        self.audit.record_event(
            event_type.value, "authentication", severity, description,
            {
                'device_fingerprint': device_fingerprint(attempt.user_agent, attempt.metadata),
                'location': attempt.metadata.get('location'),
                'threats': [i.type.value for i in result.indicators],
            },
            actor,
        )
        self._audit_degraded(result, "login", actor)
        return result.indicators

    def analyze_request(
        self,
        user_id: Optional[str],
        ip_address: str,
        user_agent: str,
        request: RequestDescriptor,
    ) -> List[ThreatIndicator]:
        """Run the request detectors and handle every indicator produced."""
        if not ip_address:
            raise ValidationError("ip_address is required")
        result = self.detection.run_request_detectors(request, user_id, ip_address, user_agent or "")
        for indicator in result.indicators:
            self._handle_threat(indicator, result.failures)
        self._audit_degraded(result, "request",
                             {'user_id': user_id, 'ip_address': ip_address, 'user_agent': user_agent})
        return result.indicators

    def evaluate_request(
        self,
        request: RequestDescriptor,
        user_id: Optional[str],
        ip_address: str,
        user_agent: str,
    ) -> SecurityDecision:
        """
        Decide whether a request may proceed.

        Blocked IPs and users are refused without analysis. Otherwise the
        request detectors run and the risk scorer decides; a request scoring
        above the suspicious threshold counts against its IP, and enough of
        those blocklists the IP.
        """
        if self.blocklist.is_blocked(BlocklistKind.IP, ip_address):
            decision = SecurityDecision(allowed=False, risk_score=100, reason="IP address is blocked")
        elif user_id and self.blocklist.is_blocked(BlocklistKind.USER, user_id):
            decision = SecurityDecision(allowed=False, risk_score=100, reason="User account is blocked")
        else:
            decision = decide(self.analyze_request(user_id, ip_address, user_agent, request))
            if decision.risk_score > self.config.suspicious_ip_score:
                self._track_suspicious_ip(ip_address)

        if not decision.allowed:
            self.audit.record_event(
                AuditEventType.REQUEST_BLOCKED.value, "security", audit_severity(decision.risk_score),
                f"Request blocked: {decision.reason}",
                {
                    'method': request.method,
                    'url': request.url,
                    'risk_score': decision.risk_score,
                    'threats': [t.type.value for t in decision.threats],
                },
                {'user_id': user_id, 'ip_address': ip_address, 'user_agent': user_agent},
            )
        return decision

    def _track_suspicious_ip(self, ip_address: str):
        count = self.store.incr(f"{SUSPICIOUS_IP_PREFIX}{ip_address}", self.config.suspicious_ip_ttl_seconds)
        if count >= self.config.suspicious_ip_block_count and self.config.auto_block_enabled:
            self.blocklist.block(
                BlocklistKind.IP, ip_address,
                f"Repeated suspicious requests ({count} in the last hour)",
                DEFAULT_BLOCK_SECONDS,
            )

    def _handle_threat(self, indicator: ThreatIndicator, failures: Dict[str, str]):
        """
        Persist, track, run rules and audit one indicator.

        A failed threat write is recorded in ``failures`` under
        ``persist:<threat type>``; the indicator is still tracked in memory and
        run through the rules.
        """
        try:
            with session_scope(self.session_factory) as db:
                db.add(SecurityThreat(
                    id=indicator.id,
                    type=indicator.type,
                    severity=indicator.severity,
                    risk_score=indicator.risk_score,
                    user_id=indicator.user_id,
                    ip_address=indicator.ip_address,
                    user_agent=indicator.user_agent,
                    description=indicator.description,
                    details=indicator.metadata,
                    is_active=True,
                    created_at=indicator.created_at,
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist threat {indicator.id}: {e}")
            failures[f"persist:{indicator.type.value}"] = type(e).__name__

        with self._threat_lock:
            self._active_threats[indicator.id] = indicator

        logger.warning(
            f"Security threat detected: {indicator.type.value} ({indicator.severity.value}, "
            f"score {indicator.risk_score}) from {indicator.ip_address}"
        )

        outcomes = self.rule_engine.process(indicator)
        failed = {o.rule_id: o.failures for o in outcomes if o.failures}

        self.audit.record_event(
            AuditEventType.SUSPICIOUS_ACTIVITY.value, "security", indicator.severity.value,
            indicator.description,
            {
                'threat_id': indicator.id,
                'threat_type': indicator.type.value,
                'risk_score': indicator.risk_score,
                'mitre_technique': get_mitre_technique(indicator.type.value),
                'rules_fired': [o.rule_id for o in outcomes if o.fired],
                'details': indicator.metadata,
            },
            {'user_id': indicator.user_id, 'ip_address': indicator.ip_address, 'user_agent': indicator.user_agent},
        )
        if failed:
            self.audit.record_event(
                AuditEventType.ANALYSIS_DEGRADED.value, "security", "medium",
                f"Security rule failures while handling threat {indicator.id}",
                {'stage': 'rules', 'failures': failed},
                {'ip_address': indicator.ip_address},
            )

    def _audit_degraded(self, result: DetectionResult, stage: str, actor: Dict[str, Any]):
        if not result.degraded:
            return
        self.audit.record_event(
            AuditEventType.ANALYSIS_DEGRADED.value, "security", "medium",
            f"Degraded {stage} analysis: {', '.join(sorted(result.failures))} failed",
            {'stage': stage, 'failures': result.failures},
            actor,
        )

    # =========================================================================
    # Rate limiting and fraud
    # =========================================================================

    def check_rate_limit(self, policy_name: str, actor_key: str,
                         actor: Optional[Dict[str, Any]] = None) -> RateLimitResult:
        """Count one request; rejected checks are audited."""
        result = self.rate_limiter.check(policy_name, actor_key)
        if not result.allowed:
            self.audit.record_event(
                AuditEventType.RATE_LIMITED.value, "security", "medium",
                f"Rate limit exceeded on {policy_name}",
                {
                    'policy': policy_name,
                    'actor_key': actor_key,
                    'limit': result.limit,
                    'retry_after': result.retry_after,
                    'degraded': result.degraded,
                },
                actor or {'ip_address': actor_key},
            )
        return result

    def score_registration_email(self, email: str, ip_address: str, reason: str,
                                 user_agent: Optional[str] = None) -> FraudScore:
        score = self.fraud.score_registration_email(email, ip_address, reason, user_agent)
        if score.blocked:
            self.audit.record_event(
                AuditEventType.SECURITY_EVENT.value, "fraud", audit_severity(score.risk_score),
                "Registration blocked as fraudulent",
                score.to_dict(),
                {'ip_address': ip_address, 'user_agent': user_agent},
            )
        return score

    # =========================================================================
    # Threats
    # =========================================================================

    def get_active_threats(self) -> List[ThreatIndicator]:
        with self._threat_lock:
            return sorted(self._active_threats.values(), key=lambda t: t.created_at, reverse=True)

    def get_threat(self, threat_id: str) -> ThreatIndicator:
        with self._threat_lock:
            threat = self._active_threats.get(threat_id)
        if threat is not None:
            return threat
        db = self.session_factory()
        try:
            row = db.query(SecurityThreat).filter(SecurityThreat.id == threat_id).first()
            if row is None:
                raise NotFoundError(f"Threat not found: {threat_id}")
            return threat_from_row(row)
        finally:
            db.close()

    def resolve_threat(self, threat_id: str, resolved_by: str, resolution: str) -> ThreatIndicator:
        """
        Mark a threat resolved.

        Resolving an already-resolved threat returns it unchanged and writes
        nothing.

        Raises:
            NotFoundError: unknown threat id
            PersistenceError: durable write failed; the threat stays active
        """
        now = self.clock()
        try:
            with session_scope(self.session_factory) as db:
                row = db.query(SecurityThreat).filter(SecurityThreat.id == threat_id).first()
                if row is None:
                    # Tracked in memory only when its write failed
                    with self._threat_lock:
                        if threat_id not in self._active_threats:
                            raise NotFoundError(f"Threat not found: {threat_id}")
                elif not row.is_active:
                    return threat_from_row(row)
                else:
                    row.is_active = False
                    row.resolved_at = now
                    row.resolved_by = resolved_by
                    row.resolution = resolution
        except SQLAlchemyError as e:
            raise PersistenceError("threat resolve failed") from e

        with self._threat_lock:
            threat = self._active_threats.pop(threat_id, None)
        if threat is None:
            threat = self.get_threat(threat_id)
        else:
            threat.is_active = False
            threat.resolved_at = now
            threat.resolved_by = resolved_by
            threat.resolution = resolution

        logger.info(f"Threat {threat_id} resolved by {resolved_by}")
        self.audit.record_event(
            AuditEventType.SECURITY_EVENT.value, "security", "low",
            f"Threat resolved: {threat_id}",
            {'threat_id': threat_id, 'resolution': resolution},
            {'user_id': resolved_by},
        )
        return threat

    def deactivate_stale_threats(self) -> int:
        """Deactivate active threats older than the stale threshold."""
        cutoff = self.clock() - timedelta(hours=self.settings.incident.stale_threat_hours)
        with session_scope(self.session_factory) as db:
            rows = db.query(SecurityThreat).filter(
                SecurityThreat.is_active == True,
                SecurityThreat.created_at < cutoff,
            ).all()
            stale_ids = [row.id for row in rows]
            for row in rows:
                row.is_active = False
        with self._threat_lock:
            for threat_id in stale_ids:
                self._active_threats.pop(threat_id, None)
        if stale_ids:
            logger.info(f"Deactivated {len(stale_ids)} stale threats")
        return len(stale_ids)

    def decay_suspicious_ips(self) -> int:
        """Reset the suspicious-IP counters."""
        cleared = 0
        for key in self.store.keys(SUSPICIOUS_IP_PREFIX):
            if self.store.delete(key):
                cleared += 1
        return cleared

    # =========================================================================
    # Blocklist pass-throughs
    # =========================================================================

    def block_ip(self, ip_address: str, reason: str, duration_seconds: int = DEFAULT_BLOCK_SECONDS):
        return self.blocklist.block(BlocklistKind.IP, ip_address, reason, duration_seconds)

    def unblock_ip(self, ip_address: str) -> bool:
        return self.blocklist.unblock(BlocklistKind.IP, ip_address)

    def block_user(self, user_id: str, reason: str, duration_seconds: int = DEFAULT_BLOCK_SECONDS):
        return self.blocklist.block(BlocklistKind.USER, user_id, reason, duration_seconds)

    def unblock_user(self, user_id: str) -> bool:
        return self.blocklist.unblock(BlocklistKind.USER, user_id)

    # =========================================================================
    # Incidents
    # =========================================================================

    def create_incident(self, **kwargs) -> Incident:
        return self.incidents.create_incident(**kwargs)

    def update_incident_status(self, incident_id, new_status, actor, notes=None) -> Incident:
        return self.incidents.update_incident_status(incident_id, new_status, actor, notes)

    def add_evidence(self, incident_id, type, name, description, collected_by, data):
        return self.incidents.add_evidence(incident_id, type, name, description, collected_by, data)

    def create_action(self, incident_id, type, title, actor, **kwargs):
        return self.incidents.create_action(incident_id, type, title, actor, **kwargs)

    def complete_action(self, action_id, actor, notes=None):
        return self.incidents.complete_action(action_id, actor, notes)

    def get_active_incidents(self) -> List[Incident]:
        return self.incidents.get_active_incidents()

    # =========================================================================
    # Rule actions
    # =========================================================================

    def _action_handlers(self) -> Dict[str, Callable[[Dict[str, Any], ThreatIndicator], None]]:
        return {
            'block': self._action_block,
            'alert': self._action_notify,
            'notify': self._action_notify,
            'lock_account': self._action_lock_account,
            'require_2fa': self._action_require_2fa,
            'rate_limit': self._action_rate_limit,
            'log': self._action_log,
            'create_incident': self._action_create_incident,
        }

    def _action_block(self, params: Dict[str, Any], indicator: ThreatIndicator):
        if not self.config.auto_block_enabled:
            logger.info(f"Auto-block disabled; not blocking {indicator.ip_address}")
            return
        self.blocklist.block(
            BlocklistKind.IP, indicator.ip_address,
            params.get('reason') or f"Security rule: {indicator.type.value}",
            int(params.get('duration', DEFAULT_BLOCK_SECONDS)),
            risk_score=indicator.risk_score,
        )

    def _action_notify(self, params: Dict[str, Any], indicator: ThreatIndicator):
        if not self.config.notification_enabled:
            return
        payload = {
            'message': params.get('message') or indicator.description,
            'threat_id': indicator.id,
            'threat_type': indicator.type.value,
            'severity': indicator.severity.value,
            'risk_score': indicator.risk_score,
            'ip_address': indicator.ip_address,
            'user_id': indicator.user_id,
        }
        for channel in params.get('channels') or self.config.alert_channels:
            self.notifier.notify(channel, payload)

    def _action_lock_account(self, params: Dict[str, Any], indicator: ThreatIndicator):
        if not indicator.user_id:
            logger.info(f"lock_account skipped for threat {indicator.id}: no user")
            return
        until = self.clock() + timedelta(seconds=int(params.get('duration', DEFAULT_LOCK_SECONDS)))
        self.accounts.lock_account(
            indicator.user_id, until,
            params.get('reason') or f"Security rule: {indicator.type.value}",
        )

    def _action_require_2fa(self, params: Dict[str, Any], indicator: ThreatIndicator):
        if not indicator.user_id:
            logger.info(f"require_2fa skipped for threat {indicator.id}: no user")
            return
        self.accounts.require_2fa(indicator.user_id, params.get('reason') or f"Security rule: {indicator.type.value}")

    def _action_rate_limit(self, params: Dict[str, Any], indicator: ThreatIndicator):
        scope = params.get('scope', 'ip')
        actor_key = indicator.user_id if scope == 'user' else indicator.ip_address
        if not actor_key:
            return
        self.rate_limiter.exhaust(
            params.get('policy', 'api_strict'), actor_key,
            limit=params.get('limit'), window_ms=params.get('window_ms'),
        )

    def _action_log(self, params: Dict[str, Any], indicator: ThreatIndicator):
        self.audit.record_event(
            AuditEventType.SECURITY_EVENT.value, "security", indicator.severity.value,
            params.get('message') or f"Security rule logged {indicator.type.value} threat",
            {'threat_id': indicator.id, 'risk_score': indicator.risk_score},
            {'user_id': indicator.user_id, 'ip_address': indicator.ip_address},
        )

    def _action_create_incident(self, params: Dict[str, Any], indicator: ThreatIndicator):
        if indicator.risk_score < int(params.get('min_risk_score', 0)):
            return
        incident_type = params.get('incident_type') or \
            THREAT_INCIDENT_TYPES.get(indicator.type, IncidentType.SECURITY_MISCONFIGURATION).value
        self.incidents.create_incident(
            type=IncidentType(incident_type),
            severity=IncidentSeverity(indicator.severity.value),
            title=f"{indicator.type.value.replace('_', ' ').title()} from {indicator.ip_address}",
            description=indicator.description,
            detected_by="system",
            affected_users=[indicator.user_id] if indicator.user_id else [],
            affected_systems=["authentication"],
            tags=[indicator.type.value, get_mitre_technique(indicator.type.value)],
            threat_id=indicator.id,
        )

    # =========================================================================
    # Stats and metrics
    # =========================================================================

    def get_security_stats(self) -> Dict[str, Any]:
        threats = self.get_active_threats()
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for threat in threats:
            by_type[threat.type.value] = by_type.get(threat.type.value, 0) + 1
            by_severity[threat.severity.value] = by_severity.get(threat.severity.value, 0) + 1
        return {
            'active_threats': len(threats),
            'threats_by_type': by_type,
            'threats_by_severity': by_severity,
            'blocked_ips': self.blocklist.count_active(BlocklistKind.IP),
            'blocked_users': self.blocklist.count_active(BlocklistKind.USER),
            'blocked_emails': self.blocklist.count_active(BlocklistKind.EMAIL),
            'suspicious_ips': len(self.store.keys(SUSPICIOUS_IP_PREFIX)),
            'active_incidents': len(self.incidents.get_active_incidents()),
            'rules_loaded': len(self.rule_engine.rules),
        }

    def get_security_metrics(self, refresh: bool = False) -> Dict[str, Any]:
        """Incident and threat metrics, cached for ``metrics_cache_seconds``."""
        now = self.clock()
        ttl = timedelta(seconds=self.settings.incident.metrics_cache_seconds)
        if not refresh and self._metrics_cache is not None and now - self._metrics_cached_at < ttl:
            return self._metrics_cache

        stats = self.get_security_stats()
        metrics = self.incidents.incident_counts()
        top_threats = sorted(stats['threats_by_type'].items(), key=lambda kv: kv[1], reverse=True)[:5]
        penalty = (stats['blocked_ips'] * 5 + stats['blocked_users'] * 10 +
                   stats['suspicious_ips'] * 3 + stats['active_threats'] * 8)
        metrics.update({
            'active_threats': stats['active_threats'],
            'top_threat_types': [{'type': t, 'count': c} for t, c in top_threats],
            'blocked_ips': stats['blocked_ips'],
            'blocked_users': stats['blocked_users'],
            'suspicious_ips': stats['suspicious_ips'],
            'security_score': max(0, 100 - penalty),
            'generated_at': now.isoformat(),
        })
        self._metrics_cache = metrics
        self._metrics_cached_at = now
        return metrics
