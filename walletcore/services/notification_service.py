"""
NOTIFICATION BOUNDARY
=====================

The core only emits NotificationEvent objects. Delivery (email, SMS,
in-app) and user preference filtering belong to an external service that
connects to the notification_requested signal.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional

from walletcore.signals import notification_requested

logger = logging.getLogger(__name__)

# Event types
FUNDING = 'funding'
TRANSFER = 'transfer'
SAVINGS = 'savings'
SPLIT_PAYMENT = 'split_payment'
SECURITY = 'security'


@dataclass(frozen=True)
class NotificationEvent:
    user_id: int
    type: str
    title: str
    message: str
    reference: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def notify(user_id, type, title, message, reference=None):
    """Build a NotificationEvent and hand it to whoever delivers notifications."""
    event = NotificationEvent(user_id=user_id, type=type, title=title,
                              message=message, reference=reference)
    notification_requested.send(event)
    return event


def log_notification(event, **extra):
    """Default receiver: records the event in the application log."""
    logger.info("Notification for user %s [%s] %s (%s)",
                event.user_id, event.type, event.title, event.reference or "-")
