"""Detection Engine - runs every registered detector against one payload.

Each detector runs in isolation: a detector that raises is logged and
reported as a failure, and the remaining detectors still run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..config import DetectionConfig
from ..integrations.history import EventHistory
from ..stores.counter_store import CounterStore
from ..utils.clock import utcnow
from .detectors import (
    LOGIN_DETECTORS,
    REQUEST_DETECTORS,
    DetectionContext,
    LoginDetector,
    RequestDetector,
    serialize_request,
)
from .indicators import LoginAttempt, RequestDescriptor, ThreatIndicator

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Indicators produced plus the detectors that failed."""
    indicators: List[ThreatIndicator] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.failures)


class DetectionEngine:
    """Runs the login and request detector registries."""

    def __init__(
        self,
        history: EventHistory,
        store: CounterStore,
        config: Optional[DetectionConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        login_detectors: Optional[List[LoginDetector]] = None,
        request_detectors: Optional[List[RequestDetector]] = None,
    ):
        self.history = history
        self.store = store
        self.config = config or DetectionConfig()
        self.clock = clock
        self.login_detectors = login_detectors if login_detectors is not None else list(LOGIN_DETECTORS)
        self.request_detectors = request_detectors if request_detectors is not None else list(REQUEST_DETECTORS)

    def _context(self) -> DetectionContext:
        return DetectionContext(
            history=self.history,
            store=self.store,
            config=self.config,
            now=self.clock(),
        )

    def run_login_detectors(self, attempt: LoginAttempt) -> DetectionResult:
        """
        Run every login detector against one attempt.

        Args:
            attempt: Validated login attempt

        Returns:
            DetectionResult with indicators in registry order
        """
        ctx = self._context()
        result = DetectionResult()
        for detector in self.login_detectors:
            try:
                indicator = detector.detect(attempt, ctx)
            except Exception as e:
                logger.error(f"Detector {detector.name} error: {e}", exc_info=True)
                result.failures[detector.name] = type(e).__name__
                continue
            if indicator is not None:
                result.indicators.append(indicator)
        return result

    def run_request_detectors(
        self,
        request: RequestDescriptor,
        user_id: Optional[str],
        ip_address: str,
        user_agent: str,
    ) -> DetectionResult:
        """Run every request detector against one request descriptor."""
        ctx = self._context()
        serialized = serialize_request(request)
        result = DetectionResult()
        for detector in self.request_detectors:
            try:
                indicator = detector.detect(request, serialized, user_id, ip_address, user_agent, ctx)
            except Exception as e:
                logger.error(f"Detector {detector.name} error: {e}", exc_info=True)
                result.failures[detector.name] = type(e).__name__
                continue
            if indicator is not None:
                result.indicators.append(indicator)
        return result
