"""Configuration for the authguard security core.

Values come from environment variables. Every component also accepts the
config dataclass directly, so tests and embedding services can build them
without touching the environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# Load environment variables from .env file
env_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", ".env")
load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class DetectionConfig:
    """Thresholds for the pattern detectors and automatic responses."""
    brute_force_threshold: int = 5
    brute_force_window_minutes: int = 15
    suspicious_login_threshold: int = 50
    behavioral_anomaly_threshold: int = 50
    request_flood_limit: int = 100
    request_flood_window_minutes: int = 15
    suspicious_ip_score: int = 50
    suspicious_ip_block_count: int = 5
    suspicious_ip_ttl_seconds: int = 3600
    auto_block_enabled: bool = True
    notification_enabled: bool = True
    alert_channels: List[str] = field(default_factory=lambda: ["email", "slack"])

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        return cls(
            brute_force_threshold=_env_int("BRUTE_FORCE_THRESHOLD", 5),
            brute_force_window_minutes=_env_int("BRUTE_FORCE_WINDOW_MINUTES", 15),
            suspicious_login_threshold=_env_int("SUSPICIOUS_LOGIN_THRESHOLD", 50),
            behavioral_anomaly_threshold=_env_int("BEHAVIORAL_ANOMALY_THRESHOLD", 50),
            request_flood_limit=_env_int("REQUEST_FLOOD_LIMIT", 100),
            auto_block_enabled=_env_bool("AUTO_BLOCK_ENABLED", True),
            notification_enabled=_env_bool("NOTIFICATION_ENABLED", True),
            alert_channels=_env_list("ALERT_CHANNELS", "email,slack"),
        )


@dataclass
class RateLimitConfig:
    # allow | deny for policies nobody registered
    unknown_policy: str = "allow"

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        value = os.getenv("RATE_LIMIT_UNKNOWN_POLICY", "allow").strip().lower()
        if value not in ("allow", "deny"):
            raise ConfigurationError(
                f"RATE_LIMIT_UNKNOWN_POLICY must be 'allow' or 'deny', got {value!r}"
            )
        return cls(unknown_policy=value)


@dataclass
class FraudConfig:
    auto_block_threshold: int = 80
    blocklist_ttl_seconds: int = 7 * 24 * 3600
    counter_ttl_seconds: int = 24 * 3600
    retention_days: int = 30


@dataclass
class IncidentConfig:
    closed_retention_days: int = 730
    stale_threat_hours: int = 24
    metrics_cache_seconds: int = 3600


@dataclass
class Settings:
    """Top-level settings composed from the environment."""
    database_url: str = "sqlite:///./authguard.db"
    redis_url: Optional[str] = None
    notify_webhook_url: Optional[str] = None
    log_level: str = "INFO"
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    fraud: FraudConfig = field(default_factory=FraudConfig)
    incident: IncidentConfig = field(default_factory=IncidentConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("AUTHGUARD_DATABASE_URL", "sqlite:///./authguard.db"),
            redis_url=os.getenv("AUTHGUARD_REDIS_URL") or None,
            notify_webhook_url=os.getenv("AUTHGUARD_NOTIFY_WEBHOOK_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            detection=DetectionConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            fraud=FraudConfig(),
            incident=IncidentConfig(),
        )
