"""
Rule Engine - maps detected threats to automated responses.

Handles:
- Weighted condition evaluation against indicator fields
- Ordered action execution with per-action isolation
- Per-rule cooldown claimed by compare-and-set
- Delayed actions on a timer thread
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..detection.indicators import ThreatIndicator
from ..errors import ConfigurationError
from ..models import SecurityRule, ThreatType
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

OPERATORS = (
    'equals', 'not_equals', 'greater_than', 'less_than',
    'contains', 'regex', 'in', 'not_in',
)

ACTION_TYPES = (
    'block', 'alert', 'notify', 'lock_account', 'require_2fa',
    'rate_limit', 'log', 'create_incident',
)

# Rule fires when matched weight reaches this share of total weight (inclusive)
MATCH_RATIO = 0.5


@dataclass
class RuleCondition:
    field: str
    operator: str
    value: Any
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {'field': self.field, 'operator': self.operator, 'value': self.value, 'weight': self.weight}


@dataclass
class RuleAction:
    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    delay: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'parameters': self.parameters, 'delay': self.delay}


@dataclass
class Rule:
    id: str
    name: str
    type: ThreatType
    conditions: List[RuleCondition]
    actions: List[RuleAction]
    enabled: bool = True
    priority: int = 0
    cooldown_minutes: int = 0
    last_triggered: Optional[datetime] = None
    description: str = ""
    persisted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], persisted: bool = False) -> "Rule":
        """Build and validate a rule. Raises ConfigurationError when malformed."""
        rule_id = data.get('id') or data.get('name')
        try:
            threat_type = ThreatType(data['type'])
        except (KeyError, ValueError):
            raise ConfigurationError(f"Rule {rule_id}: unknown threat type {data.get('type')!r}")

        conditions = []
        for raw in data.get('conditions') or []:
            operator = raw.get('operator')
            if operator not in OPERATORS:
                raise ConfigurationError(f"Rule {rule_id}: unknown operator {operator!r}")
            if not raw.get('field'):
                raise ConfigurationError(f"Rule {rule_id}: condition without field")
            try:
                weight = float(raw.get('weight', 1))
            except (TypeError, ValueError):
                raise ConfigurationError(f"Rule {rule_id}: weight must be numeric")
            if weight < 0:
                raise ConfigurationError(f"Rule {rule_id}: weight must not be negative")
            if operator == 'regex':
                try:
                    re.compile(str(raw.get('value')))
                except re.error:
                    raise ConfigurationError(f"Rule {rule_id}: invalid regex {raw.get('value')!r}")
            conditions.append(RuleCondition(raw['field'], operator, raw.get('value'), weight))

        actions = []
        for raw in data.get('actions') or []:
            action_type = raw.get('type')
            if action_type not in ACTION_TYPES:
                raise ConfigurationError(f"Rule {rule_id}: unknown action {action_type!r}")
            actions.append(RuleAction(action_type, dict(raw.get('parameters') or {}), int(raw.get('delay') or 0)))

        return cls(
            id=str(rule_id),
            name=data.get('name') or str(rule_id),
            type=threat_type,
            conditions=conditions,
            actions=actions,
            enabled=bool(data.get('enabled', True)),
            priority=int(data.get('priority', 0)),
            cooldown_minutes=int(data.get('cooldown_minutes', 0)),
            last_triggered=data.get('last_triggered'),
            description=data.get('description') or "",
            persisted=persisted,
        )

    @classmethod
    def from_model(cls, row: SecurityRule) -> "Rule":
        return cls.from_dict({
            'id': row.id,
            'name': row.name,
            'description': row.description,
            'type': row.type,
            'conditions': row.conditions,
            'actions': row.actions,
            'enabled': row.enabled,
            'priority': row.priority,
            'cooldown_minutes': row.cooldown_minutes,
            'last_triggered': row.last_triggered,
        }, persisted=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'type': self.type.value,
            'conditions': [c.to_dict() for c in self.conditions],
            'actions': [a.to_dict() for a in self.actions],
            'enabled': self.enabled,
            'priority': self.priority,
            'cooldown_minutes': self.cooldown_minutes,
            'last_triggered': self.last_triggered.isoformat() if self.last_triggered else None,
        }


@dataclass
class RuleOutcome:
    """What one rule did for one indicator."""
    rule_id: str
    fired: bool
    executed: List[str] = field(default_factory=list)
    scheduled: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_id': self.rule_id,
            'fired': self.fired,
            'executed': self.executed,
            'scheduled': self.scheduled,
            'failures': self.failures,
            'skipped_reason': self.skipped_reason,
        }


# =============================================================================
# Condition evaluation
# =============================================================================

def get_field(source: Dict, field_path: str, default=None):
    """Safely get nested field using dot notation."""
    value = source
    for key in field_path.split('.'):
        if isinstance(value, dict):
            value = value.get(key)
        else:
            return default
        if value is None:
            return default
    return value


def _as_number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: RuleCondition, subject: Dict[str, Any]) -> bool:
    actual = get_field(subject, condition.field)
    op = condition.operator
    expected = condition.value

    if op == 'equals':
        return actual == expected
    if op == 'not_equals':
        return actual != expected
    if op in ('greater_than', 'less_than'):
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return a > b if op == 'greater_than' else a < b
    if op == 'contains':
        if actual is None:
            return False
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return str(expected) in str(actual)
    if op == 'regex':
        if actual is None:
            return False
        return re.search(str(expected), str(actual)) is not None
    if op == 'in':
        return isinstance(expected, (list, tuple)) and actual in expected
    if op == 'not_in':
        return isinstance(expected, (list, tuple)) and actual not in expected
    raise ConfigurationError(f"unknown operator {op!r}")


def evaluate(rule: Rule, indicator: ThreatIndicator) -> bool:
    """
    Weighted match of a rule against an indicator.

    Args:
        rule: Rule to evaluate
        indicator: Indicator whose to_dict() view supplies the fields

    Returns:
        True when matched weight >= 0.5 x total weight
    """
    subject = indicator.to_dict()
    total_weight = 0.0
    matched_weight = 0.0
    for condition in rule.conditions:
        total_weight += condition.weight
        if evaluate_condition(condition, subject):
            matched_weight += condition.weight
    return matched_weight >= total_weight * MATCH_RATIO


# =============================================================================
# Engine
# =============================================================================

ActionHandler = Callable[[Dict[str, Any], ThreatIndicator], None]


class RuleEngine:
    """Holds the rule set and runs fired rules' actions."""

    def __init__(
        self,
        handlers: Dict[str, ActionHandler],
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.handlers = handlers
        self.session_factory = session_factory
        self.clock = clock
        self.timer_factory = timer_factory
        self._rules: List[Rule] = []
        self._lock = threading.Lock()

    @property
    def rules(self) -> List[Rule]:
        with self._lock:
            return list(self._rules)

    def set_rules(self, rules: List[Rule]):
        ordered = sorted(rules, key=lambda r: r.priority, reverse=True)
        with self._lock:
            self._rules = ordered

    def load_rules(self) -> int:
        """
        Load enabled rules from the database, highest priority first.

        Malformed rows are logged and skipped so one bad rule does not
        disable the rest.
        """
        if self.session_factory is None:
            return len(self.rules)
        db = self.session_factory()
        try:
            rows = db.query(SecurityRule).filter(SecurityRule.enabled == True) \
                .order_by(SecurityRule.priority.desc()).all()
        finally:
            db.close()

        loaded = []
        for row in rows:
            try:
                loaded.append(Rule.from_model(row))
            except ConfigurationError as e:
                logger.error(f"Skipping malformed security rule {row.id}: {e}")
        self.set_rules(loaded)
        logger.info(f"Loaded {len(loaded)} security rules")
        return len(loaded)

    def rules_for(self, threat_type: ThreatType) -> List[Rule]:
        return [r for r in self.rules if r.enabled and r.type == threat_type]

    # -------------------------------------------------------------------------
    # Cooldown
    # -------------------------------------------------------------------------

    def _claim(self, rule: Rule, now: datetime) -> bool:
        """Claim the right to fire. Only one caller wins per cooldown period."""
        if rule.persisted and self.session_factory is not None:
            return self._claim_persisted(rule, now)
        with self._lock:
            if rule.cooldown_minutes > 0 and rule.last_triggered is not None:
                if now - rule.last_triggered < timedelta(minutes=rule.cooldown_minutes):
                    return False
            rule.last_triggered = now
            return True

    def _claim_persisted(self, rule: Rule, now: datetime) -> bool:
        stmt = update(SecurityRule).where(SecurityRule.id == rule.id)
        if rule.cooldown_minutes > 0:
            threshold = now - timedelta(minutes=rule.cooldown_minutes)
            stmt = stmt.where(or_(
                SecurityRule.last_triggered.is_(None),
                SecurityRule.last_triggered <= threshold,
            ))
        stmt = stmt.values(last_triggered=now).execution_options(synchronize_session=False)
        with session_scope(self.session_factory) as db:
            claimed = db.execute(stmt).rowcount == 1
        if claimed:
            with self._lock:
                rule.last_triggered = now
        return claimed

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(self, indicator: ThreatIndicator) -> List[RuleOutcome]:
        """
        Evaluate every applicable rule and execute the actions of those that fire.

        Args:
            indicator: Indicator that was just detected

        Returns:
            One RuleOutcome per applicable rule
        """
        outcomes = []
        for rule in self.rules_for(indicator.type):
            outcome = RuleOutcome(rule_id=rule.id, fired=False)
            outcomes.append(outcome)
            try:
                if not evaluate(rule, indicator):
                    continue
                if not self._claim(rule, self.clock()):
                    outcome.skipped_reason = "cooldown"
                    logger.info(f"Rule {rule.id} matched threat {indicator.id} but is cooling down")
                    continue
            except Exception as e:
                logger.error(f"Rule {rule.id} evaluation error: {e}", exc_info=True)
                outcome.failures['evaluate'] = type(e).__name__
                continue

            outcome.fired = True
            logger.info(f"Rule {rule.id} fired for {indicator.type.value} threat {indicator.id}")
            for action in rule.actions:
                if action.delay > 0:
                    timer = self.timer_factory(action.delay, self._run_action, args=(rule, action, indicator, None))
                    timer.daemon = True
                    timer.start()
                    outcome.scheduled.append(action.type)
                    continue
                self._run_action(rule, action, indicator, outcome)
        return outcomes

    def _run_action(self, rule: Rule, action: RuleAction, indicator: ThreatIndicator,
                    outcome: Optional[RuleOutcome]):
        handler = self.handlers.get(action.type)
        try:
            if handler is None:
                raise ConfigurationError(f"no handler for action {action.type}")
            handler(action.parameters, indicator)
            if outcome is not None:
                outcome.executed.append(action.type)
        except Exception as e:
            logger.error(f"Error executing security action {action.type} for rule {rule.id}: {e}", exc_info=True)
            if outcome is not None:
                outcome.failures[action.type] = type(e).__name__
