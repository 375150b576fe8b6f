"""Notification Service — builds typed notification payloads.

Every externally visible change produces one notification per affected party.
Payloads carry a title, a message and a link to the escrow so the delivery
layer (email, push, in-app) needs no knowledge of escrow internals.

Notifications are sent after the transition is committed. A dispatcher failure
is logged and does not undo the transition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_engine.domain.enums import NotificationType
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from escrow_engine.domain.ports import NotificationDispatcher

logger = get_logger(__name__)

_TITLES: dict[NotificationType, str] = {
    NotificationType.DEPOSIT_RECEIVED: "Deposit received",
    NotificationType.WORK_SUBMITTED: "Work submitted",
    NotificationType.MILESTONE_APPROVED: "Milestone approved",
    NotificationType.DISPUTE_RAISED: "Dispute raised",
    NotificationType.DISPUTE_RESOLVED: "Dispute resolved",
    NotificationType.ESCROW_COMPLETED: "Escrow completed",
    NotificationType.REFUND_PROCESSED: "Refund processed",
    NotificationType.SWAP_EXECUTED: "Swap executed",
    NotificationType.ACTION_REQUIRED: "Action required",
    NotificationType.CANCELLATION_REQUESTED: "Cancellation requested",
    NotificationType.ESCROW_CANCELLED: "Escrow cancelled",
    NotificationType.EXPIRY_WARNING: "Escrow expiring soon",
    NotificationType.EXPIRY_EXTENDED: "Escrow deadline extended",
}


class NotificationService:
    """Thin layer over a NotificationDispatcher."""

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    async def notify(
        self,
        recipient: str,
        notification_type: NotificationType,
        escrow_id: uuid.UUID,
        message: str,
        **extra: object,
    ) -> None:
        payload = {
            "title": _TITLES[notification_type],
            "message": message,
            "link": f"/escrow/{escrow_id}",
            "escrow_id": str(escrow_id),
            **extra,
        }
        try:
            await self._dispatcher.enqueue(recipient, notification_type.value, payload)
        except Exception as exc:
            logger.error(
                "notification.enqueue_failed",
                recipient=recipient,
                type=notification_type.value,
                escrow_id=str(escrow_id),
                error=str(exc),
            )

    async def notify_many(
        self,
        recipients: list[str],
        notification_type: NotificationType,
        escrow_id: uuid.UUID,
        message: str,
        **extra: object,
    ) -> None:
        for recipient in recipients:
            await self.notify(recipient, notification_type, escrow_id, message, **extra)
