"""
Leave decision notifications.

Delivery is best-effort: the workflow calls the dispatcher after its own
commit and never depends on the outcome.
"""
from dataclasses import dataclass
from typing import List, Optional, Protocol
import logging

from sqlalchemy.orm import Session

from leaveflow.models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaveEvent:
    request_id: int
    staff_id: str
    leave_type: str
    new_status: str
    level: Optional[int] = None
    days: Optional[int] = None
    comments: Optional[str] = None


class NotificationDispatcher(Protocol):
    def notify(self, event: LeaveEvent) -> None:
        ...


_MESSAGES = {
    "approved": ("Leave Approved", "Your {leave_type} request for {days} days has been APPROVED.", "success"),
    "rejected": ("Leave Rejected", "Your {leave_type} request has been REJECTED.", "error"),
    "cancelled": ("Leave Cancelled", "Your {leave_type} request has been cancelled.", "info"),
    "pending": (
        "Leave Update",
        "Your {leave_type} request has been approved at level {level} and is pending next approval.",
        "info",
    ),
}


class DatabaseNotificationDispatcher:
    """Stores an in-app notification for the requester."""

    def __init__(self, db: Session):
        self.db = db

    def notify(self, event: LeaveEvent) -> None:
        title, template, kind = _MESSAGES.get(event.new_status, _MESSAGES["pending"])
        message = template.format(leave_type=event.leave_type, days=event.days, level=event.level)
        if event.comments and event.new_status == "rejected":
            message = f"{message} Reason: {event.comments}"
        notification = Notification(
            staff_id=event.staff_id,
            title=title,
            message=message,
            type=kind,
            link=f"/leaves/{event.request_id}",
        )
        self.db.add(notification)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


class RecordingDispatcher:
    """Keeps events in memory; handy for scripts and tests."""

    def __init__(self):
        self.events: List[LeaveEvent] = []

    def notify(self, event: LeaveEvent) -> None:
        self.events.append(event)


def dispatch_safely(dispatcher: Optional[NotificationDispatcher], event: LeaveEvent) -> bool:
    if dispatcher is None:
        return False
    try:
        dispatcher.notify(event)
        return True
    except Exception as e:
        # Don't fail the request if notification fails
        logger.warning(f"Notification failed for leave request {event.request_id}: {e}", exc_info=True)
        return False
