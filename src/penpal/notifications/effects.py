"""Side effects emitted by workflow transitions, and their execution.

Transition code never talks to the notification sink directly. It
returns a list of effect values (Notify, AdminAlert) alongside the
updated record; the service hands that list to an EffectDispatcher
after the state change has been committed.

Delivery is best-effort: a failing sink is logged and skipped, and the
state change that produced the effect stands.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Union

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    """User-facing notification categories."""
    APPLICATION_RECEIVED = "application_received"
    APPLICATION_ACCEPTED = "application_accepted"
    APPLICATION_REJECTED = "application_rejected"
    ADDRESS_REMINDER = "address_reminder"
    MATCH_APPROVED = "match_approved"
    MATCH_REJECTED = "match_rejected"
    LETTER_SENT = "letter_sent"
    LETTER_RECEIVED = "letter_received"
    VERIFICATION_REMINDER = "verification_reminder"
    AUTO_VERIFIED = "auto_verified"
    LETTER_NOT_ARRIVED = "letter_not_arrived"
    MISSION_COMPLETED = "mission_completed"
    PENPAL_CANCELLED = "penpal_cancelled"
    CANCEL_REQUEST_REJECTED = "cancel_request_rejected"


class AdminAlertType(str, enum.Enum):
    """Admin queue item categories."""
    MATCH_REVIEW = "match_review"
    LETTER_DISPUTE = "letter_dispute"
    VERIFICATION_DELAY = "verification_delay"
    CANCEL_REQUEST = "cancel_request"
    STALE_CANCEL_REQUEST = "stale_cancel_request"


class AlertPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Notify:
    """Send a notification to one user."""
    user_id: str
    notification_type: NotificationType
    title: str
    message: str
    link: str = ""
    expires_utc: Optional[datetime] = None


@dataclass(frozen=True)
class AdminAlert:
    """Put an item in the admin queue."""
    alert_type: AdminAlertType
    priority: AlertPriority
    title: str
    message: str
    link: str = ""
    subject: dict[str, str] = field(default_factory=dict)


Effect = Union[Notify, AdminAlert]


class NotificationSink(Protocol):
    """Write-only delivery channel for notifications and admin alerts."""

    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str,
        expires_utc: Optional[datetime] = None,
    ) -> None: ...

    def alert_admins(
        self,
        alert_type: AdminAlertType,
        priority: AlertPriority,
        title: str,
        message: str,
        link: str,
        subject: dict[str, str],
    ) -> None: ...


class InMemoryNotificationSink:
    """Sink that keeps everything in lists. Used by tests and the CLI."""

    def __init__(self) -> None:
        self.notifications: list[Notify] = []
        self.admin_alerts: list[AdminAlert] = []

    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str,
        expires_utc: Optional[datetime] = None,
    ) -> None:
        self.notifications.append(Notify(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            link=link,
            expires_utc=expires_utc,
        ))

    def alert_admins(
        self,
        alert_type: AdminAlertType,
        priority: AlertPriority,
        title: str,
        message: str,
        link: str,
        subject: dict[str, str],
    ) -> None:
        self.admin_alerts.append(AdminAlert(
            alert_type=alert_type,
            priority=priority,
            title=title,
            message=message,
            link=link,
            subject=dict(subject),
        ))

    def for_user(
        self,
        user_id: str,
        notification_type: Optional[NotificationType] = None,
    ) -> list[Notify]:
        return [
            n for n in self.notifications
            if n.user_id == user_id
            and (notification_type is None or n.notification_type == notification_type)
        ]


class EffectDispatcher:
    """Executes effects against a sink, swallowing delivery failures."""

    def __init__(self, sink: NotificationSink) -> None:
        self._sink = sink

    def dispatch(self, effects: list[Effect]) -> int:
        """Deliver effects in order. Returns how many were delivered."""
        delivered = 0
        for effect in effects:
            try:
                if isinstance(effect, Notify):
                    self._sink.notify(
                        effect.user_id,
                        effect.notification_type,
                        effect.title,
                        effect.message,
                        effect.link,
                        expires_utc=effect.expires_utc,
                    )
                else:
                    self._sink.alert_admins(
                        effect.alert_type,
                        effect.priority,
                        effect.title,
                        effect.message,
                        effect.link,
                        effect.subject,
                    )
                delivered += 1
            except Exception:
                logger.warning("Notification delivery failed for %r", effect, exc_info=True)
        return delivered
