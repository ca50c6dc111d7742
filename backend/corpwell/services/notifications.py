"""
Welcome notifications for onboarded employees.

Delivery is handed to an injected sender (the email service). Notifications
run on their own worker pool so slow delivery never holds a batch slot.
"""

import logging
from typing import Callable, Optional

from pydantic import BaseModel

from corpwell.schemas.onboarding import AssignmentResult
from corpwell.services.batch_queue import TaskQueue

logger = logging.getLogger(__name__)


class WelcomeNotification(BaseModel):
    tenant_id: str
    job_id: str
    employee_id: str
    email: str
    login_url: str
    app_assignments: list[AssignmentResult] = []


WelcomeSender = Callable[[WelcomeNotification], None]


def log_only_sender(notification: WelcomeNotification) -> None:
    """Default sender when no email service is wired in."""
    logger.info(
        "Welcome notification ready (no email sender configured): tenant=%s employee=%s apps=%d",
        notification.tenant_id, notification.employee_id, len(notification.app_assignments),
    )


class NotificationQueue:
    def __init__(self, queue: TaskQueue, sender: Optional[WelcomeSender] = None):
        self._queue = queue
        self._sender = sender or log_only_sender

    def enqueue_welcome(self, notification: WelcomeNotification) -> None:
        self._queue.submit(self._deliver, notification.model_dump(mode="json"))

    def _deliver(self, payload: dict) -> None:
        notification = WelcomeNotification.model_validate(payload)
        try:
            self._sender(notification)
        except Exception as e:
            logger.error(
                "Failed to send welcome email: tenant=%s employee=%s error=%s",
                notification.tenant_id, notification.employee_id, e,
            )
            return
        logger.info("Welcome email sent: tenant=%s employee=%s", notification.tenant_id, notification.employee_id)
