"""
Enrollment Notifications

Fire-and-forget delivery of enrollment notifications. Delivery failures
are logged and never reach the operation that triggered them.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class NotificationType(str, Enum):
    ENROLLMENT_AVAILABLE = "enrollment_available"
    ENROLLMENT_APPROVED = "enrollment_approved"
    ENROLLMENT_DENIED = "enrollment_denied"
    ENROLLMENT_REQUEST_RECEIVED = "enrollment_request_received"
    CLASS_INVITATION = "class_invitation"


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: NotificationType
    recipient_id: str
    class_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None


class NotificationSender(Protocol):
    """Outbound notification channel (email, push, in-app)."""

    async def send(self, notification: Notification) -> None: ...


class LoggingNotificationSender:
    """Sender that only logs; used when no channel is configured."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification",
            type=notification.type.value,
            recipient_id=notification.recipient_id,
            class_id=notification.class_id,
        )


class NotificationDispatcher:
    """
    Schedules notification delivery as background tasks.

    Keeps a reference to every in-flight task until it finishes.
    """

    def __init__(self, sender: NotificationSender | None = None):
        self.sender = sender or LoggingNotificationSender()
        self._pending: set[asyncio.Task[None]] = set()

    def dispatch(self, notification: Notification) -> None:
        """Schedule delivery and return immediately."""
        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self.sender.send(notification)
        except Exception as e:
            logger.error(
                "Notification delivery failed",
                type=notification.type.value,
                recipient_id=notification.recipient_id,
                class_id=notification.class_id,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for all in-flight deliveries (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
