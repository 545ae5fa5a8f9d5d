"""
Payment sync service
Brings a booking's payment state in line with what the gateway reports.

Shared by the webhook handler (push) and the reconciliation job (pull). It
never writes payment state directly: every change goes through the booking
state machine, so duplicate or stale gateway views are rejected the same way
out-of-order API calls are.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import OPS_ALERT_EMAIL
from ...models import (
    PAYMENT_AUTHORIZED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    TERMINAL_BOOKING_STATUSES,
    Booking,
)
from ...services.notification_service import NotificationDispatcher, send_best_effort
from ..bookings.repository import BookingRepository
from ..bookings.service import MANUAL_GATEWAY_MISMATCH, BookingService, notification_context
from .gateway import GatewayPayment

logger = logging.getLogger(__name__)

ACTION_NONE = "none"
ACTION_AUTHORIZED = "authorized"
ACTION_CAPTURED = "captured"
ACTION_FAILED = "failed"
ACTION_REFUNDED = "refunded"
ACTION_FLAGGED = "flagged"
ACTION_REJECTED = "rejected"


class PaymentSyncService:
    """Applies a gateway payment view to the local booking"""

    def __init__(self, db: Session, gateway=None, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.repo = BookingRepository()
        self.notifier = notifier or NotificationDispatcher(db)
        self.bookings = BookingService(db, gateway=gateway, notifier=self.notifier)

    def find_booking(self, payment: GatewayPayment) -> Optional[Booking]:
        """Locate the booking a gateway payment belongs to"""
        booking = self.repo.get_booking_by_gateway_ref(self.db, payment.ref)
        if booking is None and payment.reference_id:
            booking = self.repo.get_booking(self.db, payment.reference_id)
            if booking is not None and booking.gateway_payment_ref not in (None, payment.ref):
                logger.warning(
                    f"⚠️ Payment {payment.ref} references booking {booking.id} "
                    f"which is attached to {booking.gateway_payment_ref}"
                )
                return None
        return booking

    def _steps(self, booking: Booking, payment: GatewayPayment) -> list[tuple[str, Callable]]:
        ref = payment.ref
        local = booking.payment_status

        authorize = (
            ACTION_AUTHORIZED,
            lambda: self.bookings.record_authorization(booking.id, ref, payment.amount_cents),
        )
        capture = (
            ACTION_CAPTURED,
            lambda: self.bookings.record_capture(booking.id, ref, payment.amount_cents),
        )
        refund = (
            ACTION_REFUNDED,
            lambda: self.bookings.record_refund(booking.id, ref, payment.refunded_cents or None),
        )
        fail = (
            ACTION_FAILED,
            lambda: self.bookings.record_payment_failure(
                booking.id, ref, f"Gateway reported {payment.raw_status}"
            ),
        )

        if payment.status == PAYMENT_AUTHORIZED:
            return [authorize] if local in (PAYMENT_PENDING, PAYMENT_FAILED) else []
        if payment.status == PAYMENT_PAID:
            if local in (PAYMENT_PENDING, PAYMENT_FAILED):
                return [authorize, capture]
            return [capture] if local == PAYMENT_AUTHORIZED else []
        if payment.status == PAYMENT_FAILED:
            return [fail] if local in (PAYMENT_PENDING, PAYMENT_AUTHORIZED) else []
        if payment.status == PAYMENT_REFUNDED:
            if local in (PAYMENT_PENDING, PAYMENT_FAILED):
                return [authorize, capture, refund]
            if local == PAYMENT_AUTHORIZED:
                return [capture, refund]
            return [refund] if local == PAYMENT_PAID else []
        return []

    async def apply_gateway_payment(self, booking: Booking, payment: GatewayPayment) -> dict:
        """
        Apply the gateway's view of a payment to its booking.

        Returns:
            Dict with the last action taken, ok and the failure kind if any
        """
        if booking.gateway_payment_ref not in (None, payment.ref):
            logger.info(f"Payment {payment.ref} is not the current payment of booking {booking.id}; ignored")
            return {"action": ACTION_NONE, "ok": True, "kind": None}

        steps = self._steps(booking, payment)
        if not steps:
            return {"action": ACTION_NONE, "ok": True, "kind": None}

        action = ACTION_NONE
        for step_action, step in steps:
            result = step()
            if not result.ok:
                current = result.booking or booking
                if self._money_stranded(current, payment):
                    await self.flag_mismatch(
                        booking.id,
                        f"gateway {payment.status} ({payment.ref}) but booking is "
                        f"{current.status}/{current.payment_status}",
                    )
                    return {"action": ACTION_FLAGGED, "ok": False, "kind": result.kind.value}
                logger.info(f"Gateway view of {payment.ref} not applied to {booking.id}: {result.message}")
                return {"action": ACTION_REJECTED, "ok": False, "kind": result.kind.value}
            action = step_action
            if step_action == ACTION_AUTHORIZED and (result.data or {}).get("confirmed"):
                await self.bookings.send_booking_confirmation(result.booking)

        logger.info(f"🔄 Booking {booking.id} synced with gateway: {action}")
        return {"action": action, "ok": True, "kind": None}

    def _money_stranded(self, booking: Booking, payment: GatewayPayment) -> bool:
        self.db.expire_all()
        current = self.repo.get_booking(self.db, booking.id) or booking
        return (
            current.status in TERMINAL_BOOKING_STATUSES
            and payment.status in (PAYMENT_AUTHORIZED, PAYMENT_PAID)
            and current.payment_status not in (PAYMENT_AUTHORIZED, PAYMENT_PAID)
        )

    async def flag_mismatch(self, booking_id: str, detail: str) -> None:
        """Flag a booking whose local payment state contradicts the gateway and alert ops"""
        booking = self.repo.get_booking(self.db, booking_id)
        if booking is None:
            return
        if booking.manual_attention_reason == MANUAL_GATEWAY_MISMATCH:
            return

        result = self.bookings.flag_manual_attention(booking_id, MANUAL_GATEWAY_MISMATCH, detail)
        if result.ok:
            await self.alert_mismatch(result.booking, detail)

    async def alert_mismatch(self, booking: Booking, detail: str) -> None:
        if not OPS_ALERT_EMAIL:
            logger.warning(f"⚠️ OPS_ALERT_EMAIL not set; gateway mismatch on {booking.id} only logged")
            return
        await send_best_effort(
            self.notifier,
            booking.id,
            OPS_ALERT_EMAIL,
            "ops_gateway_mismatch",
            {**notification_context(booking), "detail": detail},
        )
