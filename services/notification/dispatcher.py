"""
services/notification/dispatcher.py
Best-effort, multi-channel notification delivery to a user:
1. Save to DB (in-app notification)
2. Push over the user's WebSocket, if connected
3. SMS via Twilio, fire-and-forget

Runs only after the triggering state change has committed. A failure in one
channel is logged and never blocks the other channels or the caller.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from services.notification.sms import TwilioSmsSender
from services.realtime.registry import ConnectionRegistry
from shared.exceptions import DeliveryError
from shared.models.models import Notification, NotificationType, User

logger = logging.getLogger(__name__)


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    "EMERGENCY": {
        "title": "Emergency Blood Request",
        "message": "Patient {patient_name} needs {blood_group} blood at {hospital_name}",
        "sms": (
            "URGENT: Patient {patient_name} needs {blood_group} blood at {hospital_name}. "
            "Your donation code is {otp}. Please check your BloodCare app for details."
        ),
    },
    "REQUEST_CANCELLED": {
        "title": "Blood Request Cancelled",
        "message": "The request for patient {patient_name} at {hospital_name} has been cancelled.",
        "sms": None,
    },
    "DONATION_COMPLETED": {
        "title": "Thank You for Donating",
        "message": "Your {blood_group} donation at {hospital_name} has been recorded.",
        "sms": None,
    },
}


class NotificationDispatcher:
    """
    Delivers one notification over every configured channel.

    SMS goes through `background_tasks` when the caller is an HTTP route (sent
    after the response). Callers with no HTTP response to defer to, such as the
    WebSocket message handler and scripts driving `RequestLifecycle` directly,
    leave it as None and the send runs in the thread pool before `dispatch`
    returns.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: ConnectionRegistry,
        sms_sender: TwilioSmsSender,
        background_tasks: Optional[BackgroundTasks] = None,
    ):
        self.db = db
        self.registry = registry
        self.sms_sender = sms_sender
        self.background_tasks = background_tasks

    async def dispatch(
        self,
        user: User,
        notification_type: NotificationType,
        template_vars: dict,
        request_id: Optional[UUID] = None,
        push_payload: Optional[dict] = None,
        send_sms: bool = True,
    ) -> None:
        # Captured up front: a failed notification commit expires ORM state
        user_id, phone = user.id, user.phone_number
        template = TEMPLATES[notification_type.value]
        title = template["title"]
        message = template["message"].format(**template_vars)

        await self.append(user_id, notification_type, title, message, request_id)

        if push_payload is not None:
            await self.push(user_id, push_payload)

        if send_sms and template["sms"]:
            await self.schedule_sms(phone, template["sms"].format(**template_vars))

    # ── Channels ───────────────────────────────────────────────

    async def append(
        self,
        user_id: UUID,
        notification_type: NotificationType,
        title: str,
        message: str,
        request_id: Optional[UUID] = None,
    ) -> Optional[Notification]:
        """Persist an in-app notification in its own commit."""
        notif = Notification(
            user_id=user_id,
            request_id=request_id,
            type=notification_type,
            title=title,
            message=message,
        )
        try:
            self.db.add(notif)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to store notification for user {user_id}: {e}")
            return None
        return notif

    async def push(self, user_id: UUID, payload: dict) -> bool:
        try:
            delivered = await self.registry.send_if_open(user_id, payload)
        except Exception as e:
            logger.warning(f"Realtime push to user {user_id} failed: {e}")
            return False
        if not delivered:
            logger.debug(f"User {user_id} not connected, push skipped")
        return delivered

    async def schedule_sms(self, phone: str, body: str) -> None:
        if self.background_tasks is not None:
            self.background_tasks.add_task(self.send_sms_safely, phone, body)
        else:
            # WebSocket handler or direct lifecycle use: run now, off the event loop
            await run_in_threadpool(self.send_sms_safely, phone, body)

    def send_sms_safely(self, phone: str, body: str) -> bool:
        try:
            sid = self.sms_sender.send(phone, body)
        except DeliveryError as e:
            logger.warning(f"SMS to {phone} not delivered: {e.message}")
            return False
        except Exception as e:
            logger.error(f"Unexpected SMS failure for {phone}: {e}", exc_info=True)
            return False
        logger.info(f"SMS queued with provider: {sid}")
        return True
