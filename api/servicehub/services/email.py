"""Email sending via SMTP."""

import logging
from collections.abc import Mapping
from email.message import EmailMessage

import aiosmtplib

from servicehub.core.config import settings

logger = logging.getLogger(__name__)

SUBJECTS = {
    "booking.created": "Booking {booking_number} received",
    "booking.confirmed": "Booking {booking_number} confirmed",
    "booking.status_changed": "Booking {booking_number} is now {status}",
    "booking.cancelled": "Booking {booking_number} cancelled",
    "payment.success": "Payment received for booking {booking_number}",
    "payment.failed": "Payment failed for booking {booking_number}",
    "payment.refunded": "Refund issued for booking {booking_number}",
}


async def send_email(to: str, subject: str, body: str) -> None:
    """Send a plain-text email via SMTP."""
    message = EmailMessage()
    message["From"] = settings.smtp_from
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)

    await aiosmtplib.send(message, hostname=settings.smtp_host, port=settings.smtp_port)


def render_notification(event: str, name: str, summary: Mapping[str, object]) -> tuple[str, str]:
    """Build the subject and plain-text body for a booking/payment event."""
    values = {"booking_number": "", "status": "", **summary}
    subject = SUBJECTS.get(event, "Update on booking {booking_number}").format(**values)

    lines = [f"Hi {name},", "", subject + "."]
    if summary.get("scheduled_date"):
        lines.append(f"Scheduled for: {summary['scheduled_date']}")
    if summary.get("amount") is not None:
        lines.append(f"Amount: Rs. {summary['amount']}")
    if summary.get("reason"):
        lines.append(f"Reason: {summary['reason']}")
    lines += [
        "",
        f"View your booking: {settings.frontend_url}/bookings/{summary.get('booking_id', '')}",
        "",
        settings.app_name,
    ]
    return subject, "\n".join(lines)


async def send_notification_email(to: str, name: str, event: str, summary: Mapping[str, object]) -> None:
    subject, body = render_notification(event, name, summary)
    await send_email(to, subject, body)
    logger.info("%s email sent to %s", event, to)
