"""
Notification senders.

Agents hand alerts to a ``Notifier``; delivery is fire-and-forget from
their point of view. The default notifier only logs, and tests use the
recording one to inspect what would have been sent.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Protocol

from nudgecast.features.window_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    to: str
    subject: str
    template_type: str  # predictive-alert, guardian-alert, budget-alert, digest
    data: Dict
    sent_at: datetime = field(default_factory=utcnow)


class Notifier(Protocol):
    def send(self, to: str, subject: str, template_type: str, data: Dict) -> None:
        ...


class LoggingNotifier:
    """Writes each notification to the log instead of delivering it."""

    def send(self, to: str, subject: str, template_type: str, data: Dict) -> None:
        logger.info("Notification to %s [%s]: %s", to, template_type, subject)


class RecordingNotifier:
    """Keeps sent notifications in memory."""

    def __init__(self):
        self.sent: List[Notification] = []

    def send(self, to: str, subject: str, template_type: str, data: Dict) -> None:
        self.sent.append(Notification(to, subject, template_type, data))

    def of_type(self, template_type: str) -> List[Notification]:
        return [n for n in self.sent if n.template_type == template_type]
