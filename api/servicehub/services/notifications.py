"""Outbound notifications for booking and payment events.

Delivery is fire-and-forget. ``notify`` is only called once the triggering
write has committed, and a failing sink is logged, never raised, so a lost
notification can never undo a booking or payment change.
"""

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from servicehub.domain.booking import Booking

logger = logging.getLogger(__name__)


class NotificationEvent(enum.StrEnum):
    BOOKING_CREATED = "booking.created"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_STATUS_CHANGED = "booking.status_changed"
    BOOKING_CANCELLED = "booking.cancelled"
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"


@dataclass(frozen=True)
class Notification:
    recipient: str  # user id
    event: NotificationEvent
    summary: Mapping[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    def send(self, notification: Notification) -> None: ...


class CeleryNotificationSink:
    """Queues each notification for the ``deliver_notification`` worker task."""

    def send(self, notification: Notification) -> None:
        from servicehub.worker import deliver_notification

        deliver_notification.delay(notification.recipient, str(notification.event), dict(notification.summary))


def booking_summary(booking: Booking, **extra: Any) -> dict[str, Any]:
    summary = {
        "booking_id": booking.id,
        "booking_number": booking.booking_number,
        "status": booking.status.value,
        "payment_status": booking.payment.status.value,
        "scheduled_date": booking.scheduled_date.isoformat(),
        "amount": booking.pricing.total_amount,
    }
    summary.update(extra)
    return summary


def notify(sink: NotificationSink, recipient: str, event: NotificationEvent, booking: Booking, **extra: Any) -> None:
    """Best-effort delivery."""
    try:
        sink.send(Notification(recipient=recipient, event=event, summary=booking_summary(booking, **extra)))
    except Exception:
        logger.exception("Failed to send %s notification for booking %s", event, booking.booking_number)
