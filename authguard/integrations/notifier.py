"""Notifiers for alert / notify actions. Fire-and-forget: errors are logged."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

import requests

from ..utils.redaction import redact

logger = logging.getLogger(__name__)


class Notifier(ABC):

    @abstractmethod
    def notify(self, channel: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the log."""

    def notify(self, channel, payload):
        logger.warning(f"[{channel}] security notification: {redact(payload)}")


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: int = 5):
        self.url = url
        self.timeout = timeout

    def notify(self, channel, payload):
        body = {"channel": channel, "payload": redact(payload)}
        try:
            response = requests.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Webhook notification to {channel} failed: {e}")
