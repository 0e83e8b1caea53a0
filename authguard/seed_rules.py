"""Seed default security rules."""

from sqlalchemy.orm import Session

from .database import SessionLocal
from .models import SecurityRule
from .services.rule_engine import Rule

DEFAULT_RULES = [
    {
        "id": "RULE-BF-01",
        "name": "Brute force lockout",
        "description": "Exhausts the login window for the source IP and locks the targeted account",
        "type": "brute_force",
        "priority": 100,
        "cooldown_minutes": 15,
        "conditions": [
            {"field": "risk_score", "operator": "greater_than", "value": 40, "weight": 1},
        ],
        "actions": [
            {"type": "rate_limit", "parameters": {"policy": "login", "scope": "ip"}},
            {"type": "lock_account", "parameters": {"duration": 900}},
            {"type": "alert", "parameters": {"message": "Brute force attack in progress"}},
        ],
    },
    {
        "id": "RULE-SL-01",
        "name": "Suspicious login step-up",
        "description": "Requires 2FA after a login at an unusual hour from an unknown device",
        "type": "suspicious_login",
        "priority": 80,
        "cooldown_minutes": 60,
        "conditions": [
            {"field": "metadata.is_new_device", "operator": "equals", "value": True, "weight": 2},
            {"field": "metadata.is_unusual_time", "operator": "equals", "value": True, "weight": 1},
        ],
        "actions": [
            {"type": "require_2fa", "parameters": {}},
            {"type": "notify", "parameters": {"channels": ["email"]}},
        ],
    },
    {
        "id": "RULE-GEO-01",
        "name": "New country step-up",
        "description": "Requires 2FA when a login arrives from a country not seen recently",
        "type": "geographic_anomaly",
        "priority": 70,
        "cooldown_minutes": 60,
        "conditions": [],
        "actions": [
            {"type": "require_2fa", "parameters": {}},
            {"type": "alert", "parameters": {}},
        ],
    },
    {
        "id": "RULE-SQLI-01",
        "name": "SQL injection alert",
        "description": "Records and alerts on SQL injection attempts; the request itself is refused by the risk scorer",
        "type": "sql_injection",
        "priority": 100,
        "cooldown_minutes": 0,
        "conditions": [
            {"field": "severity", "operator": "equals", "value": "critical", "weight": 1},
        ],
        "actions": [
            {"type": "log", "parameters": {"message": "SQL injection attempt refused"}},
            {"type": "alert", "parameters": {}},
        ],
    },
    {
        "id": "RULE-XSS-01",
        "name": "XSS logging",
        "description": "Records cross-site scripting attempts",
        "type": "xss_attack",
        "priority": 50,
        "cooldown_minutes": 0,
        "conditions": [],
        "actions": [
            {"type": "log", "parameters": {}},
        ],
    },
    {
        "id": "RULE-DDOS-01",
        "name": "Request flood containment",
        "description": "Blocks a flooding IP and opens a DDoS incident",
        "type": "ddos_attack",
        "priority": 90,
        "cooldown_minutes": 30,
        "conditions": [
            {"field": "metadata.scope", "operator": "equals", "value": "ip", "weight": 1},
        ],
        "actions": [
            {"type": "block", "parameters": {"duration": 3600}},
            {"type": "alert", "parameters": {}},
            {"type": "create_incident", "parameters": {"min_risk_score": 70, "incident_type": "ddos_attack"}},
        ],
    },
]


def seed_rules(db: Session, verbose: bool = True) -> int:
    """Insert the default rules that are not already present."""
    if verbose:
        print("\n" + "=" * 60)
        print("  SEEDING SECURITY RULES")
        print("=" * 60)

    created = 0
    for rule_data in DEFAULT_RULES:
        existing = db.query(SecurityRule).filter(SecurityRule.id == rule_data["id"]).first()
        if existing:
            if verbose:
                print(f"  [SKIP] {rule_data['id']}: {rule_data['name']} (already exists)")
            continue

        # Validates operators and action types before anything is written
        rule = Rule.from_dict(rule_data)
        db.add(SecurityRule(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            type=rule.type,
            conditions=[c.to_dict() for c in rule.conditions],
            actions=[a.to_dict() for a in rule.actions],
            enabled=rule.enabled,
            priority=rule.priority,
            cooldown_minutes=rule.cooldown_minutes,
        ))
        created += 1
        if verbose:
            print(f"  [OK] {rule.id}: {rule.name}")

    db.commit()
    if verbose:
        print("=" * 60 + "\n")
    return created


if __name__ == "__main__":
    db = SessionLocal()
    try:
        seed_rules(db)
    finally:
        db.close()
