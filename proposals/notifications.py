"""Notification records and fire-and-forget delivery."""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol

import httpx
import structlog
from sqlalchemy.orm import Session

from proposals.config import get_settings
from proposals.errors import NotFound
from proposals.models import Notification, Project, User

logger = structlog.get_logger()

REVIEW_REQUESTED = "review_requested"
REVIEWER_VOTED = "reviewer_voted"
FINAL_APPROVAL_REQUESTED = "final_approval_requested"
APPLICATION_APPROVED = "application_approved"
APPLICATION_REJECTED = "application_rejected"


@dataclass
class OutgoingNotification:
    recipient_id: int
    template: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def notify(self, recipient: User, template: str, data: dict[str, Any]) -> None:
        ...


class LoggingDispatcher:
    """Used when no delivery channel is configured."""

    def notify(self, recipient: User, template: str, data: dict[str, Any]) -> None:
        logger.info(
            "notification_logged",
            recipient_id=recipient.id,
            template=template,
            project_id=data.get("project_id"),
        )


class WebhookDispatcher:
    """Posts notifications to an external mail/chat relay."""

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout_seconds = timeout_seconds

    def notify(self, recipient: User, template: str, data: dict[str, Any]) -> None:
        payload = {
            "recipient": {"id": recipient.id, "email": recipient.email, "name": recipient.name},
            "template": template,
            "data": data,
        }
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(self.url, json=payload)
        response.raise_for_status()


def get_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookDispatcher(
            settings.NOTIFICATION_WEBHOOK_URL, settings.NOTIFICATION_TIMEOUT_SECONDS
        )
    return LoggingDispatcher()


def record(
    db: Session, project: Project, outgoing: Iterable[OutgoingNotification]
) -> List[OutgoingNotification]:
    """Stage notification rows in the caller's transaction."""
    staged = list(outgoing)
    for item in staged:
        db.add(
            Notification(
                project_id=project.id,
                recipient_id=item.recipient_id,
                template=item.template,
                message=item.message,
            )
        )
    return staged


def deliver(
    db: Session,
    dispatcher: Optional[NotificationDispatcher],
    outgoing: Iterable[OutgoingNotification],
) -> int:
    """Deliver already-committed notifications. Failures are logged and skipped.

    Returns the number of successful deliveries.
    """
    if dispatcher is None:
        return 0
    delivered = 0
    for item in outgoing:
        recipient = db.get(User, item.recipient_id)
        if recipient is None:
            logger.warning("notification_recipient_missing", recipient_id=item.recipient_id)
            continue
        try:
            dispatcher.notify(recipient, item.template, item.data)
            delivered += 1
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_delivery_failed",
                recipient_id=item.recipient_id,
                template=item.template,
                error=str(exc),
            )
    return delivered


def list_notifications(db: Session, project_id: int) -> List[Notification]:
    if db.get(Project, project_id) is None:
        raise NotFound(f"Project {project_id} not found")
    return (
        db.query(Notification)
        .filter(Notification.project_id == project_id)
        .order_by(Notification.created_at, Notification.id)
        .all()
    )
