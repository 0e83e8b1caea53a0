"""Threat detection for login attempts and inbound requests."""

from .indicators import ThreatIndicator, LoginAttempt, RequestDescriptor, make_indicator
from .detectors import LOGIN_DETECTORS, REQUEST_DETECTORS, DetectionContext
from .engine import DetectionEngine, DetectionResult

__all__ = [
    "ThreatIndicator",
    "LoginAttempt",
    "RequestDescriptor",
    "make_indicator",
    "LOGIN_DETECTORS",
    "REQUEST_DETECTORS",
    "DetectionContext",
    "DetectionEngine",
    "DetectionResult",
]
