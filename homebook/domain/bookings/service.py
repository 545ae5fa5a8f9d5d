"""
Booking service - the booking fulfillment state machine

Job status:      pending -> payment_pending -> confirmed -> in_progress -> completed
                 any non-terminal -> cancelled, payment_pending -> expired
Payment status:  pending -> authorized -> paid, with failed / refunded exits

Every transition is one conditional UPDATE guarded by the expected prior
state, committed in the same transaction as its ledger row. A caller whose
precondition no longer holds gets StateConflict and nothing is written.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import PAYMENT_PENDING_GRACE_MINUTES
from ...models import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_EXPIRED,
    BOOKING_IN_PROGRESS,
    BOOKING_PAYMENT_PENDING,
    BOOKING_PENDING,
    PAYMENT_AUTHORIZED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    TERMINAL_BOOKING_STATUSES,
    TXN_AUTHORIZATION,
    TXN_AUTHORIZED,
    TXN_CAPTURE,
    TXN_COMPLETED,
    TXN_FAILED,
    TXN_REFUND,
    Booking,
)
from ...services.coverage_resolver import CoverageResolver
from ...services.notification_service import NotificationDispatcher, send_best_effort
from ...utils.clock import utcnow
from ..payments.gateway import PATH_CANCEL, PATH_REFUND, idempotency_key, payment_gateway
from .errors import BookingNotFound, BookingValidationError, GatewayError, StateConflict
from .repository import BookingRepository
from .results import OperationResult, operation
from .schemas import BookingIntake

logger = logging.getLogger(__name__)

MANUAL_PAYMENT_FAILED = "payment_failed"
MANUAL_GATEWAY_MISMATCH = "gateway_mismatch"
MANUAL_REFUNDED_AFTER_COMPLETION = "refunded_after_completion"


def describe_status(booking: Booking) -> dict:
    """Customer-facing label for the combined job/payment state"""
    if booking.status == BOOKING_CANCELLED:
        return {"label": "Cancelled", "message": "Booking has been cancelled", "action_required": False}
    if booking.status == BOOKING_EXPIRED:
        return {
            "label": "Expired",
            "message": "Payment session expired - please create a new booking",
            "action_required": True,
        }
    if booking.status == BOOKING_COMPLETED:
        return {"label": "Completed", "message": "Service completed and paid", "action_required": False}
    if booking.payment_status == PAYMENT_FAILED:
        return {
            "label": "Payment Failed",
            "message": "Payment was not completed - please try again",
            "action_required": True,
        }
    if booking.payment_status == PAYMENT_PENDING:
        return {
            "label": "Payment Pending",
            "message": "Waiting for payment authorization",
            "action_required": True,
        }
    if booking.status == BOOKING_IN_PROGRESS:
        return {"label": "In Progress", "message": "Your pro is on the job", "action_required": False}
    if booking.worker_id is None:
        return {
            "label": "Booking Confirmed",
            "message": "Payment authorized - we're matching you with a pro",
            "action_required": False,
        }
    return {"label": "Booking Confirmed", "message": "Your booking is confirmed", "action_required": False}


class BookingService:
    """Service layer for the booking lifecycle"""

    def __init__(
        self,
        db: Session,
        gateway=None,
        notifier: Optional[NotificationDispatcher] = None,
        resolver: Optional[CoverageResolver] = None,
    ):
        self.db = db
        self.repo = BookingRepository()
        self.gateway = gateway or payment_gateway
        self.notifier = notifier or NotificationDispatcher(db)
        self.resolver = resolver or CoverageResolver(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise BookingNotFound(f"Booking {booking_id} not found", "Booking not found")
        return booking

    def _reload(self, booking_id: str) -> Booking:
        self.db.expire_all()
        return self._get(booking_id)

    def _commit_or_conflict(self, what: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise StateConflict(f"{what} already recorded: {e.orig}") from e

    async def _notify_customer(self, booking: Booking, notification_type: str, **context) -> dict:
        return await send_best_effort(
            self.notifier,
            booking.id,
            booking.contact_phone or booking.contact_email,
            notification_type,
            {**notification_context(booking), **context},
        )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    @operation
    def create_booking(self, intake: BookingIntake):
        """Validate an intake and persist it; no payment or dispatch happens here"""
        if bool(intake.customer_id) == bool(intake.guest):
            raise BookingValidationError(
                "Booking needs exactly one of customer_id or guest contact",
                "Please sign in or provide guest contact details",
            )
        if intake.guest and not (intake.guest.email or intake.guest.phone):
            raise BookingValidationError("Guest bookings need an email or phone number")

        if any(item.quantity < 1 or item.unit_price_cents < 0 for item in intake.line_items):
            raise BookingValidationError("Line item quantities and prices must be positive")
        if not any(item.unit_price_cents > 0 for item in intake.line_items):
            raise BookingValidationError("At least one priced line item is required")
        if intake.duration_minutes <= 0:
            raise BookingValidationError("Duration must be positive")
        if intake.scheduled_date < utcnow().date():
            raise BookingValidationError("Scheduled date is in the past")

        location = self.resolver.resolve_location(intake.zipcode)
        if not location:
            raise BookingValidationError(
                f"ZIP code {intake.zipcode!r} could not be resolved",
                "Please enter a valid US ZIP code",
            )

        amount_cents = sum(item.quantity * item.unit_price_cents for item in intake.line_items)
        status = BOOKING_PENDING if intake.defer_payment else BOOKING_PAYMENT_PENDING
        guest = intake.guest.model_dump() if intake.guest else None

        booking = self.repo.create_booking(
            self.db,
            status=status,
            payment_status=PAYMENT_PENDING,
            customer_id=intake.customer_id,
            guest_contact=guest,
            contact_email=(guest or {}).get("email") or intake.contact_email,
            contact_phone=(guest or {}).get("phone") or intake.contact_phone,
            zipcode=location["zipcode"],
            address=intake.address,
            location_notes=intake.location_notes,
            scheduled_date=intake.scheduled_date,
            scheduled_start=intake.scheduled_start,
            duration_minutes=intake.duration_minutes,
            line_items=[item.model_dump() for item in intake.line_items],
            amount_cents=amount_cents,
            payment_pending_since=None if intake.defer_payment else utcnow(),
        )
        logger.info(
            f"📥 Booking {booking.id} created ({status}) for {location['zipcode']}: "
            f"${amount_cents / 100:.2f}"
        )
        return booking

    # ------------------------------------------------------------------
    # Payment side
    # ------------------------------------------------------------------

    @operation
    async def begin_checkout(self, booking_id: str, source_id: str):
        """
        Open a payment attempt at the gateway and attach its ref to the booking.

        Repeat calls return the existing ref. A new attempt is only made after
        the previous one failed.
        """
        booking = self._get(booking_id)
        if booking.status in TERMINAL_BOOKING_STATUSES:
            raise StateConflict(f"Booking {booking_id} is {booking.status}; checkout not allowed")

        previous_ref = booking.gateway_payment_ref
        if previous_ref and booking.payment_status != PAYMENT_FAILED:
            logger.info(f"🔁 Checkout already started for booking {booking_id} ({previous_ref})")
            return OperationResult.success(booking, gateway_ref=previous_ref)
        if booking.status not in (BOOKING_PENDING, BOOKING_PAYMENT_PENDING):
            raise StateConflict(f"Booking {booking_id} is {booking.status}; checkout not allowed")

        key = idempotency_key(booking.id, "authorize", previous_ref or "initial")
        payment = await self.gateway.authorize(
            booking.amount_cents, booking.customer_ref, source_id, key, reference_id=booking.id
        )

        ref_condition = (
            Booking.gateway_payment_ref.is_(None)
            if previous_ref is None
            else Booking.gateway_payment_ref == previous_ref
        )
        pending_since = booking.payment_pending_since
        if booking.status == BOOKING_PENDING or pending_since is None:
            pending_since = utcnow()

        won = self.repo.compare_and_set(
            self.db,
            booking.id,
            [ref_condition, Booking.status.in_((BOOKING_PENDING, BOOKING_PAYMENT_PENDING))],
            gateway_payment_ref=payment.ref,
            payment_status=PAYMENT_PENDING,
            status=BOOKING_PAYMENT_PENDING,
            payment_pending_since=pending_since,
        )
        if not won:
            self.db.rollback()
            current = self._reload(booking.id)
            if current.gateway_payment_ref == payment.ref:
                return OperationResult.success(current, gateway_ref=payment.ref)
            logger.warning(f"⚠️ Lost checkout race on booking {booking.id}; releasing {payment.ref}")
            try:
                await self.gateway.cancel_or_refund(payment.ref)
            except GatewayError as e:
                logger.error(f"❌ Could not release orphan payment {payment.ref}: {e}")
            raise StateConflict(f"Booking {booking.id} changed during checkout")
        self.db.commit()
        logger.info(f"💳 Booking {booking.id} attached to payment {payment.ref} ({payment.raw_status})")

        if payment.status == PAYMENT_AUTHORIZED:
            booking, confirmed = self._record_authorization(booking.id, payment.ref, payment.amount_cents)
            if confirmed:
                await self.send_booking_confirmation(booking)
        elif payment.status == PAYMENT_FAILED:
            self._record_payment_failure(
                booking.id, payment.ref, f"Gateway reported {payment.raw_status} at checkout"
            )
            raise GatewayError(f"Payment {payment.ref} returned {payment.raw_status}", recoverable=False)
        else:
            booking = self._reload(booking.id)

        return OperationResult.success(booking, gateway_ref=payment.ref)

    @operation
    def record_authorization(self, booking_id: str, gateway_ref: str, amount_cents: int):
        """`data["confirmed"]` is True only for the call that moved the booking to confirmed"""
        booking, confirmed = self._record_authorization(booking_id, gateway_ref, amount_cents)
        return OperationResult.success(booking, confirmed=confirmed)

    async def send_booking_confirmation(self, booking: Booking) -> None:
        await self._notify_customer(booking, "booking_confirmed")

    async def send_payment_reminder(self, booking: Booking, now: Optional[datetime] = None) -> dict:
        """Nudge the customer to finish checkout before the booking expires"""
        now = now or utcnow()
        pending_since = booking.payment_pending_since or booking.created_at
        deadline = pending_since + timedelta(minutes=PAYMENT_PENDING_GRACE_MINUTES)
        minutes_left = max(int((deadline - now).total_seconds() // 60), 0)
        return await self._notify_customer(booking, "payment_pending_reminder", minutes_left=minutes_left)

    @staticmethod
    def _holds_authorization(booking: Booking, gateway_ref: str) -> bool:
        return booking.gateway_payment_ref == gateway_ref and booking.payment_status in (
            PAYMENT_AUTHORIZED,
            PAYMENT_PAID,
            PAYMENT_REFUNDED,
        )

    def _record_authorization(
        self, booking_id: str, gateway_ref: str, amount_cents: int
    ) -> tuple[Booking, bool]:
        booking = self._get(booking_id)
        if self._holds_authorization(booking, gateway_ref):
            logger.info(f"🔁 Authorization {gateway_ref} already recorded for booking {booking_id}")
            return booking, False

        if amount_cents != booking.amount_cents:
            logger.warning(
                f"⚠️ Authorization {gateway_ref} amount {amount_cents} differs from "
                f"booking {booking_id} amount {booking.amount_cents}"
            )

        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [
                Booking.status == BOOKING_PAYMENT_PENDING,
                Booking.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
                or_(
                    Booking.gateway_payment_ref.is_(None),
                    Booking.gateway_payment_ref == gateway_ref,
                ),
            ],
            status=BOOKING_CONFIRMED,
            payment_status=PAYMENT_AUTHORIZED,
            gateway_payment_ref=gateway_ref,
        )
        if won:
            self.repo.append_transaction(
                self.db, booking_id, gateway_ref, amount_cents, TXN_AUTHORIZATION, TXN_AUTHORIZED
            )
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                won = False

        if not won:
            self.db.rollback()
            current = self._reload(booking_id)
            if self._holds_authorization(current, gateway_ref):
                return current, False
            raise StateConflict(
                f"Cannot authorize booking {booking_id} with {gateway_ref}: booking is "
                f"{current.status}/{current.payment_status} (ref {current.gateway_payment_ref})"
            )

        logger.info(f"✅ Booking {booking_id} confirmed: payment {gateway_ref} authorized")
        return self._reload(booking_id), True

    @operation
    def record_capture(self, booking_id: str, gateway_ref: str, amount_cents: Optional[int] = None):
        return self._record_capture(booking_id, gateway_ref, amount_cents)

    def _record_capture(
        self, booking_id: str, gateway_ref: str, amount_cents: Optional[int] = None
    ) -> Booking:
        # Two passes: a concurrent start/finish of the service can move status under us
        for _ in range(2):
            booking = self._reload(booking_id)
            if booking.payment_status != PAYMENT_AUTHORIZED or booking.gateway_payment_ref != gateway_ref:
                raise StateConflict(
                    f"Cannot capture {gateway_ref} on booking {booking_id}: payment is "
                    f"{booking.payment_status} (ref {booking.gateway_payment_ref})"
                )

            authorization = self.repo.find_transaction(
                self.db, gateway_ref, TXN_AUTHORIZATION, TXN_AUTHORIZED
            )
            if not authorization or authorization.booking_id != booking_id:
                raise StateConflict(f"No authorization for {gateway_ref} on the ledger")

            service_done = booking.service_completed_at is not None
            completes = service_done and booking.status in (BOOKING_CONFIRMED, BOOKING_IN_PROGRESS)
            values = {"payment_status": PAYMENT_PAID}
            if completes:
                values["status"] = BOOKING_COMPLETED

            won = self.repo.compare_and_set(
                self.db,
                booking_id,
                [
                    Booking.payment_status == PAYMENT_AUTHORIZED,
                    Booking.gateway_payment_ref == gateway_ref,
                    Booking.status == booking.status,
                    Booking.service_completed_at.isnot(None)
                    if service_done
                    else Booking.service_completed_at.is_(None),
                ],
                **values,
            )
            if won:
                self.repo.append_transaction(
                    self.db,
                    booking_id,
                    gateway_ref,
                    amount_cents if amount_cents is not None else authorization.amount_cents,
                    TXN_CAPTURE,
                    TXN_COMPLETED,
                )
                self._commit_or_conflict(f"Capture of {gateway_ref}")
                logger.info(
                    f"💰 Booking {booking_id} paid ({gateway_ref})"
                    + (" and completed" if completes else "")
                )
                return self._reload(booking_id)
            self.db.rollback()

        raise StateConflict(f"Booking {booking_id} changed while recording capture")

    @operation
    async def capture_payment(self, booking_id: str):
        """Capture the held authorization at the gateway, then record it"""
        booking = self._get(booking_id)
        if booking.payment_status == PAYMENT_PAID:
            logger.info(f"🔁 Booking {booking_id} already paid")
            return booking
        if booking.payment_status != PAYMENT_AUTHORIZED or not booking.gateway_payment_ref:
            raise StateConflict(
                f"Booking {booking_id} has no authorized payment to capture ({booking.payment_status})"
            )

        gateway_ref = booking.gateway_payment_ref
        try:
            payment = await self.gateway.capture(gateway_ref)
        except GatewayError as e:
            # An earlier attempt may have captured before timing out
            payment = await self.gateway.retrieve(gateway_ref)
            if payment.status != PAYMENT_PAID:
                raise e
        if payment.status != PAYMENT_PAID:
            raise GatewayError(
                f"Capture of {gateway_ref} returned {payment.raw_status}", recoverable=False
            )

        return self._record_capture(booking_id, gateway_ref, payment.amount_cents)

    @operation
    def record_payment_failure(self, booking_id: str, gateway_ref: str, detail: Optional[str] = None):
        return self._record_payment_failure(booking_id, gateway_ref, detail)

    def _record_payment_failure(
        self, booking_id: str, gateway_ref: str, detail: Optional[str] = None
    ) -> Booking:
        booking = self._get(booking_id)
        if booking.gateway_payment_ref != gateway_ref:
            raise StateConflict(
                f"Failure for {gateway_ref} does not match booking {booking_id} ref {booking.gateway_payment_ref}"
            )
        if booking.payment_status == PAYMENT_FAILED:
            return booking
        if booking.payment_status not in (PAYMENT_PENDING, PAYMENT_AUTHORIZED):
            raise StateConflict(
                f"Cannot record failure for booking {booking_id}: payment is {booking.payment_status}"
            )

        values = {"payment_status": PAYMENT_FAILED}
        if booking.status in (BOOKING_CONFIRMED, BOOKING_IN_PROGRESS):
            # Authorization voided outside our flow; the job needs a human
            values["manual_attention_reason"] = MANUAL_PAYMENT_FAILED

        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [
                Booking.gateway_payment_ref == gateway_ref,
                Booking.payment_status == booking.payment_status,
            ],
            **values,
        )
        if not won:
            self.db.rollback()
            raise StateConflict(f"Booking {booking_id} changed while recording payment failure")

        self.repo.append_transaction(
            self.db, booking_id, gateway_ref, booking.amount_cents, TXN_AUTHORIZATION, TXN_FAILED, detail
        )
        self._commit_or_conflict(f"Failure of {gateway_ref}")
        logger.warning(f"⚠️ Payment {gateway_ref} failed for booking {booking_id}: {detail}")
        return self._reload(booking_id)

    @operation
    def record_refund(self, booking_id: str, gateway_ref: str, amount_cents: Optional[int] = None):
        return self._record_refund(booking_id, gateway_ref, amount_cents)

    def _record_refund(
        self, booking_id: str, gateway_ref: str, amount_cents: Optional[int] = None
    ) -> Booking:
        booking = self._get(booking_id)
        if booking.gateway_payment_ref != gateway_ref:
            raise StateConflict(f"Refund for {gateway_ref} does not match booking {booking_id}")
        if booking.payment_status == PAYMENT_REFUNDED:
            return booking
        if booking.payment_status != PAYMENT_PAID:
            raise StateConflict(
                f"Cannot record refund for booking {booking_id}: payment is {booking.payment_status}"
            )

        capture = self.repo.find_transaction(self.db, gateway_ref, TXN_CAPTURE, TXN_COMPLETED)
        refund_amount = amount_cents or (capture.amount_cents if capture else booking.amount_cents)

        if booking.status == BOOKING_COMPLETED:
            return self._record_refund_after_completion(booking, refund_amount, "Refunded at payment gateway")

        values = {"payment_status": PAYMENT_REFUNDED}
        if booking.status not in TERMINAL_BOOKING_STATUSES:
            values["status"] = BOOKING_CANCELLED
            values["cancellation_reason"] = booking.cancellation_reason or "Refunded at payment gateway"

        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [
                Booking.gateway_payment_ref == gateway_ref,
                Booking.payment_status == PAYMENT_PAID,
                Booking.status == booking.status,
            ],
            **values,
        )
        if not won:
            self.db.rollback()
            raise StateConflict(f"Booking {booking_id} changed while recording refund")

        self.repo.append_transaction(
            self.db, booking_id, gateway_ref, refund_amount, TXN_REFUND, TXN_COMPLETED
        )
        self._commit_or_conflict(f"Refund of {gateway_ref}")
        logger.info(f"↩️ Booking {booking_id} refunded ${refund_amount / 100:.2f} ({gateway_ref})")
        return self._reload(booking_id)

    def _record_refund_after_completion(self, booking: Booking, amount_cents: int, detail: str) -> Booking:
        """
        Refund of a booking that already completed.

        A completed booking stays paid. The refund goes on the ledger and the
        booking is flagged so someone follows up with the customer.
        """
        gateway_ref = booking.gateway_payment_ref
        if self.repo.find_transaction(self.db, gateway_ref, TXN_REFUND, TXN_COMPLETED):
            return booking

        self.repo.compare_and_set(
            self.db,
            booking.id,
            [Booking.status == BOOKING_COMPLETED, Booking.gateway_payment_ref == gateway_ref],
            manual_attention_reason=MANUAL_REFUNDED_AFTER_COMPLETION,
        )
        self.repo.append_transaction(
            self.db, booking.id, gateway_ref, amount_cents, TXN_REFUND, TXN_COMPLETED, detail
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._reload(booking.id)

        logger.warning(
            f"🚩 Completed booking {booking.id} refunded ${amount_cents / 100:.2f} ({gateway_ref}); "
            "flagged for follow-up"
        )
        return self._reload(booking.id)

    def _record_orphaned_release(self, booking_id: str, gateway_ref: str, ledger_row: tuple, detail: str) -> None:
        """Ledger a gateway cancel/refund whose booking moved on before it could be cancelled"""
        amount, operation_type, status = ledger_row
        current = self._reload(booking_id)
        if (
            operation_type == TXN_REFUND
            and current.status == BOOKING_COMPLETED
            and current.payment_status == PAYMENT_PAID
        ):
            self._record_refund_after_completion(current, amount, detail)
            return
        if self.repo.find_transaction(self.db, gateway_ref, operation_type, status):
            return

        self.repo.compare_and_set(self.db, booking_id, [], manual_attention_reason=MANUAL_GATEWAY_MISMATCH)
        self.repo.append_transaction(self.db, booking_id, gateway_ref, amount, operation_type, status, detail)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return
        logger.error(
            f"❌ Gateway {operation_type} of {gateway_ref} went through but booking {booking_id} "
            f"is {current.status}/{current.payment_status}; flagged {MANUAL_GATEWAY_MISMATCH}"
        )

    # ------------------------------------------------------------------
    # Service delivery
    # ------------------------------------------------------------------

    @operation
    def start_service(self, booking_id: str):
        booking = self._get(booking_id)
        if booking.status == BOOKING_IN_PROGRESS:
            return booking
        if booking.status != BOOKING_CONFIRMED:
            raise StateConflict(f"Cannot start service on booking {booking_id} in {booking.status}")
        if not booking.worker_id:
            raise StateConflict(f"Booking {booking_id} has no worker bound")

        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [Booking.status == BOOKING_CONFIRMED, Booking.worker_id.isnot(None)],
            status=BOOKING_IN_PROGRESS,
        )
        if not won:
            self.db.rollback()
            raise StateConflict(f"Booking {booking_id} changed before service could start")
        self.db.commit()
        logger.info(f"🧹 Service started for booking {booking_id}")
        return self._reload(booking_id)

    @operation
    def mark_service_done(self, booking_id: str):
        """
        Record that the service was delivered.

        Completes the booking when payment is already captured; otherwise it
        stays in_progress until the capture lands.
        """
        booking = self._get(booking_id)
        if booking.status == BOOKING_COMPLETED or booking.service_completed_at is not None:
            return booking
        if booking.status not in (BOOKING_CONFIRMED, BOOKING_IN_PROGRESS):
            raise StateConflict(f"Cannot complete service on booking {booking_id} in {booking.status}")
        if not booking.worker_id:
            raise StateConflict(f"Booking {booking_id} has no worker bound")

        paid = booking.payment_status == PAYMENT_PAID
        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [
                Booking.status == booking.status,
                Booking.payment_status == booking.payment_status,
                Booking.service_completed_at.is_(None),
            ],
            status=BOOKING_COMPLETED if paid else BOOKING_IN_PROGRESS,
            service_completed_at=utcnow(),
        )
        if not won:
            self.db.rollback()
            raise StateConflict(f"Booking {booking_id} changed while recording service completion")
        self.db.commit()
        logger.info(
            f"✅ Service done for booking {booking_id}"
            + ("; booking completed" if paid else "; awaiting capture")
        )
        return self._reload(booking_id)

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    @operation
    async def cancel(self, booking_id: str, reason: Optional[str] = None):
        """
        Cancel a non-terminal booking, releasing any money held or moved.

        The gateway is called first; if it fails the booking is left untouched.
        """
        booking = self._get(booking_id)
        if booking.status in TERMINAL_BOOKING_STATUSES:
            raise StateConflict(f"Booking {booking_id} is already {booking.status}")

        gateway_ref = booking.gateway_payment_ref
        values = {"status": BOOKING_CANCELLED, "cancellation_reason": reason}
        ledger_row = None

        if gateway_ref and booking.payment_status in (PAYMENT_PENDING, PAYMENT_AUTHORIZED, PAYMENT_PAID):
            outcome = await self.gateway.cancel_or_refund(gateway_ref)
            if outcome.path == PATH_REFUND:
                capture = self.repo.find_transaction(self.db, gateway_ref, TXN_CAPTURE, TXN_COMPLETED)
                values["payment_status"] = PAYMENT_REFUNDED
                ledger_row = (
                    capture.amount_cents if capture else booking.amount_cents,
                    TXN_REFUND,
                    TXN_COMPLETED,
                )
            elif outcome.path == PATH_CANCEL:
                values["payment_status"] = PAYMENT_FAILED
                ledger_row = (booking.amount_cents, TXN_AUTHORIZATION, TXN_FAILED)
            elif outcome.status in (PAYMENT_FAILED, PAYMENT_REFUNDED):
                values["payment_status"] = outcome.status

        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [Booking.status.notin_(TERMINAL_BOOKING_STATUSES)],
            **values,
        )
        detail = f"Cancelled: {reason}" if reason else "Cancelled"
        if not won:
            self.db.rollback()
            if ledger_row:
                self._record_orphaned_release(booking_id, gateway_ref, ledger_row, detail)
            raise StateConflict(f"Booking {booking_id} reached a final state during cancellation")

        if ledger_row:
            amount, operation_type, status = ledger_row
            self.repo.append_transaction(
                self.db, booking_id, gateway_ref, amount, operation_type, status, detail
            )
        self._commit_or_conflict(f"Cancellation of {gateway_ref}")
        logger.info(f"🚫 Booking {booking_id} cancelled ({reason or 'no reason given'})")

        booking = self._reload(booking_id)
        payment_note = {
            PAYMENT_REFUNDED: "Your payment has been refunded.",
            PAYMENT_FAILED: "The hold on your card has been released.",
        }.get(booking.payment_status, "")
        await self._notify_customer(booking, "booking_cancelled", payment_note=payment_note)
        return booking

    @operation
    async def expire(self, booking_id: str, now: Optional[datetime] = None):
        """Expire an abandoned checkout once the grace period has passed"""
        now = now or utcnow()
        booking = self._get(booking_id)
        if booking.status != BOOKING_PAYMENT_PENDING:
            raise StateConflict(f"Only payment_pending bookings expire; {booking_id} is {booking.status}")
        if booking.payment_status in (PAYMENT_AUTHORIZED, PAYMENT_PAID):
            raise StateConflict(f"Booking {booking_id} holds an authorized payment")

        pending_since = booking.payment_pending_since or booking.created_at
        if pending_since > now - timedelta(minutes=PAYMENT_PENDING_GRACE_MINUTES):
            raise StateConflict(f"Booking {booking_id} is still inside its payment grace period")

        values = {"status": BOOKING_EXPIRED}
        voided = False
        gateway_ref = booking.gateway_payment_ref
        if gateway_ref:
            try:
                payment = await self.gateway.retrieve(gateway_ref)
            except GatewayError as e:
                logger.warning(f"⚠️ Could not check payment {gateway_ref} before expiring: {e}")
                payment = None

            if payment and payment.status == PAYMENT_PAID:
                raise StateConflict(
                    f"Payment {gateway_ref} was captured at the gateway; reconcile instead of expiring"
                )
            if payment and payment.status == PAYMENT_AUTHORIZED:
                try:
                    outcome = await self.gateway.cancel_or_refund(gateway_ref)
                    voided = outcome.path == PATH_CANCEL
                except GatewayError as e:
                    logger.warning(f"⚠️ Could not void dangling authorization {gateway_ref}: {e}")
            if voided:
                values["payment_status"] = PAYMENT_FAILED

        won = self.repo.compare_and_set(
            self.db,
            booking_id,
            [
                Booking.status == BOOKING_PAYMENT_PENDING,
                Booking.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
            ],
            **values,
        )
        if not won:
            self.db.rollback()
            raise StateConflict(f"Booking {booking_id} changed before it could expire")

        if voided:
            self.repo.append_transaction(
                self.db, booking_id, gateway_ref, booking.amount_cents,
                TXN_AUTHORIZATION, TXN_FAILED, "Voided on expiry",
            )
        self._commit_or_conflict(f"Expiry void of {gateway_ref}")
        logger.info(f"⌛ Booking {booking_id} expired after payment grace period")
        return self._reload(booking_id)

    # ------------------------------------------------------------------
    # Reconciliation support
    # ------------------------------------------------------------------

    @operation
    def backfill_ledger(self, booking_id: str, payment):
        """
        Insert ledger rows missing for money the booking says is held or moved.

        `payment` is the gateway's current view. If it disagrees with the local
        payment status nothing is written and the booking is flagged instead.
        """
        booking = self._get(booking_id)
        gateway_ref = booking.gateway_payment_ref
        if not gateway_ref or gateway_ref != payment.ref:
            raise StateConflict(f"Gateway payment {payment.ref} does not belong to booking {booking_id}")

        missing = []
        if booking.payment_status in (PAYMENT_AUTHORIZED, PAYMENT_PAID) and not self.repo.find_transaction(
            self.db, gateway_ref, TXN_AUTHORIZATION, TXN_AUTHORIZED
        ):
            missing.append((TXN_AUTHORIZATION, TXN_AUTHORIZED))
        if booking.payment_status == PAYMENT_PAID and not self.repo.find_transaction(
            self.db, gateway_ref, TXN_CAPTURE, TXN_COMPLETED
        ):
            missing.append((TXN_CAPTURE, TXN_COMPLETED))

        if not missing:
            return OperationResult.success(booking, backfilled=0)

        agrees = {
            PAYMENT_AUTHORIZED: (PAYMENT_AUTHORIZED, PAYMENT_PAID),
            PAYMENT_PAID: (PAYMENT_PAID, PAYMENT_REFUNDED),
        }[booking.payment_status]
        if payment.status not in agrees:
            booking = self._flag(
                booking_id,
                MANUAL_GATEWAY_MISMATCH,
                f"local {booking.payment_status}, gateway {payment.status}",
            )
            return OperationResult.success(booking, backfilled=0, flagged=True)

        for operation_type, status in missing:
            self.repo.append_transaction(
                self.db, booking_id, gateway_ref, payment.amount_cents, operation_type, status,
                "Backfilled from gateway",
            )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return OperationResult.success(self._reload(booking_id), backfilled=0)

        logger.warning(f"🧾 Backfilled {len(missing)} ledger row(s) for booking {booking_id}")
        return OperationResult.success(self._reload(booking_id), backfilled=len(missing))

    def _flag(self, booking_id: str, reason: str, detail: str = "") -> Booking:
        self.repo.compare_and_set(self.db, booking_id, [], manual_attention_reason=reason)
        self.db.commit()
        logger.warning(f"🚩 Booking {booking_id} flagged for manual attention: {reason} {detail}".rstrip())
        return self._reload(booking_id)

    @operation
    def flag_manual_attention(self, booking_id: str, reason: str, detail: str = ""):
        self._get(booking_id)
        return self._flag(booking_id, reason, detail)

    def purge_expired(self, older_than: datetime, limit: int) -> int:
        """Delete long-expired, never-paid bookings that left no ledger or dispatch trail"""
        return self.repo.purge_bookings(
            self.db,
            [
                Booking.status == BOOKING_EXPIRED,
                Booking.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
            ],
            older_than,
            limit,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_booking_status(self, booking_id: str) -> dict:
        booking = self._get(booking_id)
        return {
            "booking_id": booking.id,
            "status": booking.status,
            "payment_status": booking.payment_status,
            "dispatch_status": booking.dispatch_status,
            "worker_id": booking.worker_id,
            # confirmed while a broadcast is still open (or nobody was found yet)
            "awaiting_dispatch": booking.status == BOOKING_CONFIRMED and booking.worker_id is None,
            "manual_attention_reason": booking.manual_attention_reason,
            **describe_status(booking),
        }


def notification_context(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "zipcode": booking.zipcode,
        "scheduled_date": booking.scheduled_date.isoformat(),
        "scheduled_start": booking.scheduled_start.strftime("%H:%M"),
        "amount": f"{booking.amount_cents / 100:.2f}",
    }
