"""
Notification Dispatcher
Sends one email or SMS per (booking, recipient, type) and records the delivery.

A repeat request for the same tuple inside the dedup window is absorbed
instead of sent again, so upstream retries (job retries, webhook replays,
re-run dispatches) never spam a worker or customer.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import NOTIFICATION_DEDUP_WINDOW_SECONDS
from ..models import NotificationDelivery
from ..shared.validators import is_email_address, validate_us_phone
from ..utils.clock import utcnow
from .email_service import send_email
from .twilio_service import send_sms

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"

DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"
DELIVERY_SKIPPED = "skipped"

# notification_type -> (email subject, message body)
TEMPLATES = {
    "coverage_request": (
        "Job coverage available",
        "📋 Job coverage needed in {zipcode} on {scheduled_date} at {scheduled_start}. "
        "Open the app to accept or decline. Coverage ID: {notification_id}",
    ),
    "job_assigned": (
        "You have a new job",
        "✅ You've been assigned a job in {zipcode} on {scheduled_date} at {scheduled_start}.",
    ),
    "worker_assigned": (
        "Your pro is confirmed",
        "Good news! {worker_name} will handle your booking on {scheduled_date} at {scheduled_start}.",
    ),
    "booking_confirmed": (
        "Your booking is confirmed",
        "✅ Your booking on {scheduled_date} at {scheduled_start} is confirmed. "
        "${amount} is on hold and will be charged after the service. Booking ID: {booking_id}",
    ),
    "payment_pending_reminder": (
        "Finish booking your service",
        "⏰ Your booking on {scheduled_date} at {scheduled_start} is waiting for payment. "
        "Complete checkout within {minutes_left} minutes or the slot will be released.",
    ),
    "booking_cancelled": (
        "Your booking was cancelled",
        "Your booking for {scheduled_date} has been cancelled. {payment_note}",
    ),
    "ops_no_coverage": (
        "[Action needed] No coverage for booking",
        "⚠️ Booking {booking_id} in {zipcode} on {scheduled_date} has no eligible workers.",
    ),
    "ops_all_declined": (
        "[Action needed] All workers declined booking",
        "⚠️ Every notified worker declined booking {booking_id} in {zipcode} on {scheduled_date}.",
    ),
    "ops_gateway_mismatch": (
        "[Action needed] Payment state mismatch",
        "⚠️ Booking {booking_id} disagrees with the payment gateway: {detail}",
    ),
}


class _BlankMissing(dict):
    def __missing__(self, key):
        return ""


def render(notification_type: str, context: Optional[dict]) -> tuple[str, str]:
    subject, body = TEMPLATES.get(notification_type, (notification_type, "{message}"))
    return subject, body.format_map(_BlankMissing(context or {}))


class NotificationDispatcher:
    """Idempotent single-notification sender backed by the delivery log"""

    def __init__(
        self,
        db: Session,
        email_sender=send_email,
        sms_sender=send_sms,
        dedup_window_seconds: int = NOTIFICATION_DEDUP_WINDOW_SECONDS,
    ):
        self.db = db
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.dedup_window = timedelta(seconds=dedup_window_seconds)

    def _recent_delivery(
        self, booking_id: str, recipient: str, notification_type: str
    ) -> Optional[NotificationDelivery]:
        return (
            self.db.query(NotificationDelivery)
            .filter(
                NotificationDelivery.booking_id == booking_id,
                NotificationDelivery.recipient == recipient,
                NotificationDelivery.notification_type == notification_type,
                NotificationDelivery.status == DELIVERY_SENT,
                NotificationDelivery.created_at >= utcnow() - self.dedup_window,
            )
            .first()
        )

    def _record(self, booking_id, recipient, notification_type, channel, status, error=None):
        self.db.add(
            NotificationDelivery(
                booking_id=booking_id,
                recipient=recipient,
                notification_type=notification_type,
                channel=channel,
                status=status,
                error=error,
            )
        )
        self.db.commit()

    async def dispatch(
        self,
        booking_id: str,
        recipient: Optional[str],
        notification_type: str,
        context: Optional[dict] = None,
    ) -> dict:
        """
        Send one notification.

        Args:
            booking_id: Booking the notification is about
            recipient: Email address or phone number
            notification_type: Key into TEMPLATES
            context: Values for the message template

        Returns:
            Dict with sent, deduplicated and error
        """
        result = {"sent": False, "deduplicated": False, "error": None}

        if not recipient:
            logger.debug(f"⚠️ No recipient for {notification_type} on booking {booking_id}")
            result["error"] = "No recipient"
            return result

        if is_email_address(recipient):
            channel = CHANNEL_EMAIL
        else:
            channel = CHANNEL_SMS
            try:
                recipient = validate_us_phone(recipient)
            except ValueError:
                logger.warning(f"⚠️ Invalid phone number for {notification_type}: {recipient}")
                self._record(
                    booking_id, recipient, notification_type, channel, DELIVERY_SKIPPED,
                    "Invalid phone number format",
                )
                result["error"] = "Invalid phone number format"
                return result

        if self._recent_delivery(booking_id, recipient, notification_type):
            logger.info(f"🔁 {notification_type} to {recipient} already sent for booking {booking_id}")
            result["sent"] = True
            result["deduplicated"] = True
            return result

        subject, body = render(notification_type, {"booking_id": booking_id, **(context or {})})

        try:
            if channel == CHANNEL_EMAIL:
                logger.info(f"📧 Sending {notification_type} email to {recipient}")
                success, error = await self.email_sender(
                    to=recipient, subject=subject, html_content=f"<p>{body}</p>"
                )
            else:
                logger.info(f"📱 Sending {notification_type} SMS to {recipient}")
                success, error = await self.sms_sender(to_phone=recipient, message_body=body)
        except Exception as e:
            success, error = False, str(e)

        self._record(
            booking_id, recipient, notification_type, channel,
            DELIVERY_SENT if success else DELIVERY_FAILED, error,
        )

        if success:
            logger.info(f"✅ {notification_type} {channel} sent to {recipient}")
            result["sent"] = True
        else:
            logger.error(f"❌ Failed to send {notification_type} {channel} to {recipient}: {error}")
            result["error"] = error
        return result


async def send_best_effort(
    dispatcher: NotificationDispatcher,
    booking_id: str,
    recipient: Optional[str],
    notification_type: str,
    context: Optional[dict] = None,
) -> dict:
    """Dispatch without letting a delivery problem fail the calling operation"""
    try:
        return await dispatcher.dispatch(booking_id, recipient, notification_type, context)
    except Exception as e:
        dispatcher.db.rollback()
        logger.error(f"❌ {notification_type} for booking {booking_id} not delivered: {e}")
        return {"sent": False, "deduplicated": False, "error": str(e)}
