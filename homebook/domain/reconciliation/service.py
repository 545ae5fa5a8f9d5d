"""
Reconciliation job
Periodic sweep that converges local payment state on the gateway's.

Order matters: gateway reconciliation runs first so a missed authorization
confirms its booking before the expiry sweep could expire it.

1. Gateway reconciliation - re-fetch payments still pending/authorized locally
2. Ledger backfill        - money held or moved without a matching ledger row
3. Payment reminders      - nudge customers whose checkout is still open
4. Expiry                 - abandoned checkouts past the grace period
5. Coverage redelivery    - coverage requests of open broadcasts that never went out
6. Purge                  - long-expired, never-paid bookings with no trail

Each duty takes the bookings it visited least recently first and stamps
every visit, so a backlog larger than one batch still rotates through.

Every write goes through the booking state machine, so the sweep is safe to
run while live traffic touches the same bookings.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, exists, func, or_
from sqlalchemy.orm import Session

from ...config import (
    PAYMENT_PENDING_GRACE_MINUTES,
    PAYMENT_REMINDER_AFTER_MINUTES,
    PURGE_EXPIRED_AFTER_DAYS,
    RECONCILE_BATCH_SIZE,
    RECONCILE_SETTLE_MINUTES,
)
from ...models import (
    BOOKING_PAYMENT_PENDING,
    PAYMENT_AUTHORIZED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    TXN_AUTHORIZATION,
    TXN_AUTHORIZED,
    TXN_CAPTURE,
    TXN_COMPLETED,
    Booking,
    NotificationDelivery,
    Transaction,
)
from ...services.notification_service import DELIVERY_SENT, NotificationDispatcher
from ...utils.clock import utcnow
from ..bookings.errors import ErrorKind, GatewayError
from ..bookings.repository import BookingRepository
from ..bookings.service import MANUAL_GATEWAY_MISMATCH
from ..dispatch.service import DispatchService
from ..payments.service import ACTION_FLAGGED, ACTION_NONE, PaymentSyncService

logger = logging.getLogger(__name__)


def _has_ledger_row(operation_type: str, status: str):
    return exists().where(
        Transaction.booking_id == Booking.id,
        Transaction.gateway_payment_ref == Booking.gateway_payment_ref,
        Transaction.operation_type == operation_type,
        Transaction.status == status,
    )


class ReconciliationService:
    """Runs one reconciliation sweep"""

    def __init__(
        self,
        db: Session,
        gateway=None,
        notifier: Optional[NotificationDispatcher] = None,
        batch_size: int = RECONCILE_BATCH_SIZE,
    ):
        self.db = db
        self.repo = BookingRepository()
        self.notifier = notifier or NotificationDispatcher(db)
        self.sync = PaymentSyncService(db, gateway=gateway, notifier=self.notifier)
        self.bookings = self.sync.bookings
        self.gateway = self.bookings.gateway
        self.dispatch = DispatchService(db, notifier=self.notifier)
        self.batch_size = batch_size

    async def run(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        logger.info(f"🔄 Starting reconciliation sweep at {now.isoformat()}")

        summary = {
            "gateway": await self.reconcile_gateway(now),
            "backfill": await self.backfill_ledger(now),
            "reminders": await self.remind_pending_payments(now),
            "expiry": await self.expire_stale(now),
            "coverage": await self.resend_coverage_requests(now),
            "purge": self.purge_expired(now),
        }

        errors = sum(section.get("errors", 0) for section in summary.values())
        logger.info(f"✅ Reconciliation sweep finished: {summary}")
        if errors:
            logger.warning(f"⚠️ Reconciliation sweep hit {errors} error(s); they will be retried next run")
        return summary

    # ------------------------------------------------------------------
    # 1. Gateway reconciliation
    # ------------------------------------------------------------------

    async def reconcile_gateway(self, now: datetime) -> dict:
        counts = {"checked": 0, "updated": 0, "flagged": 0, "errors": 0}
        settled_before = now - timedelta(minutes=RECONCILE_SETTLE_MINUTES)

        candidates = self.repo.find_bookings(
            self.db,
            [
                Booking.gateway_payment_ref.isnot(None),
                Booking.payment_status.in_((PAYMENT_PENDING, PAYMENT_AUTHORIZED)),
                Booking.updated_at < settled_before,
            ],
            self.batch_size,
        )
        targets = [(b.id, b.gateway_payment_ref) for b in candidates]
        self.repo.mark_reconciled(self.db, [booking_id for booking_id, _ in targets], now)

        for booking_id, gateway_ref in targets:
            counts["checked"] += 1
            try:
                payment = await self.gateway.retrieve(gateway_ref)
            except GatewayError as e:
                counts["errors"] += 1
                logger.warning(f"⚠️ Could not fetch payment {gateway_ref} for booking {booking_id}: {e}")
                continue

            self.db.expire_all()
            booking = self.repo.get_booking(self.db, booking_id)
            if booking is None:
                continue

            outcome = await self.sync.apply_gateway_payment(booking, payment)
            if outcome["action"] == ACTION_FLAGGED:
                counts["flagged"] += 1
            elif outcome["ok"] and outcome["action"] != ACTION_NONE:
                counts["updated"] += 1

        if counts["checked"]:
            logger.info(f"💳 Gateway reconciliation: {counts}")
        return counts

    # ------------------------------------------------------------------
    # 2. Ledger backfill
    # ------------------------------------------------------------------

    async def backfill_ledger(self, now: datetime) -> dict:
        counts = {"checked": 0, "backfilled": 0, "flagged": 0, "errors": 0}

        missing_authorization = and_(
            Booking.payment_status.in_((PAYMENT_AUTHORIZED, PAYMENT_PAID)),
            ~_has_ledger_row(TXN_AUTHORIZATION, TXN_AUTHORIZED),
        )
        missing_capture = and_(
            Booking.payment_status == PAYMENT_PAID,
            ~_has_ledger_row(TXN_CAPTURE, TXN_COMPLETED),
        )
        candidates = self.repo.find_bookings(
            self.db,
            [
                Booking.gateway_payment_ref.isnot(None),
                or_(missing_authorization, missing_capture),
                or_(
                    Booking.manual_attention_reason.is_(None),
                    Booking.manual_attention_reason != MANUAL_GATEWAY_MISMATCH,
                ),
            ],
            self.batch_size,
        )
        targets = [(b.id, b.gateway_payment_ref) for b in candidates]
        self.repo.mark_reconciled(self.db, [booking_id for booking_id, _ in targets], now)

        for booking_id, gateway_ref in targets:
            counts["checked"] += 1
            try:
                payment = await self.gateway.retrieve(gateway_ref)
            except GatewayError as e:
                counts["errors"] += 1
                logger.warning(f"⚠️ Could not fetch payment {gateway_ref} for ledger backfill: {e}")
                continue

            result = self.bookings.backfill_ledger(booking_id, payment)
            if not result.ok:
                counts["errors"] += 1
                continue
            data = result.data or {}
            if data.get("flagged"):
                counts["flagged"] += 1
                await self.sync.alert_mismatch(
                    result.booking, f"ledger backfill: gateway reports {payment.status}"
                )
            counts["backfilled"] += data.get("backfilled", 0)

        if counts["checked"]:
            logger.info(f"🧾 Ledger backfill: {counts}")
        return counts

    # ------------------------------------------------------------------
    # 3. Payment reminders
    # ------------------------------------------------------------------

    async def remind_pending_payments(self, now: datetime) -> dict:
        counts = {"checked": 0, "sent": 0, "errors": 0}
        pending_since = func.coalesce(Booking.payment_pending_since, Booking.created_at)
        already_reminded = exists().where(
            NotificationDelivery.booking_id == Booking.id,
            NotificationDelivery.notification_type == "payment_pending_reminder",
            NotificationDelivery.status == DELIVERY_SENT,
        )

        candidates = self.repo.find_bookings(
            self.db,
            [
                Booking.status == BOOKING_PAYMENT_PENDING,
                Booking.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
                pending_since < now - timedelta(minutes=PAYMENT_REMINDER_AFTER_MINUTES),
                pending_since >= now - timedelta(minutes=PAYMENT_PENDING_GRACE_MINUTES),
                or_(Booking.contact_email.isnot(None), Booking.contact_phone.isnot(None)),
                ~already_reminded,
            ],
            self.batch_size,
            order_by=pending_since,
        )
        self.repo.mark_reconciled(self.db, [b.id for b in candidates], now)

        for booking in candidates:
            counts["checked"] += 1
            receipt = await self.bookings.send_payment_reminder(booking, now=now)
            if receipt["sent"]:
                counts["sent"] += 1
            else:
                counts["errors"] += 1

        if counts["checked"]:
            logger.info(f"⏰ Payment reminders: {counts}")
        return counts

    # ------------------------------------------------------------------
    # 4. Expiry
    # ------------------------------------------------------------------

    async def expire_stale(self, now: datetime) -> dict:
        counts = {"checked": 0, "expired": 0, "skipped": 0, "errors": 0}
        cutoff = now - timedelta(minutes=PAYMENT_PENDING_GRACE_MINUTES)

        candidates = self.repo.find_bookings(
            self.db,
            [
                Booking.status == BOOKING_PAYMENT_PENDING,
                Booking.payment_status.notin_((PAYMENT_AUTHORIZED, PAYMENT_PAID)),
                or_(
                    Booking.payment_pending_since < cutoff,
                    and_(Booking.payment_pending_since.is_(None), Booking.created_at < cutoff),
                ),
            ],
            self.batch_size,
            order_by=Booking.payment_pending_since,
        )
        booking_ids = [b.id for b in candidates]
        self.repo.mark_reconciled(self.db, booking_ids, now)

        for booking_id in booking_ids:
            counts["checked"] += 1
            result = await self.bookings.expire(booking_id, now=now)
            if result.ok:
                counts["expired"] += 1
            elif result.kind == ErrorKind.GATEWAY_ERROR:
                counts["errors"] += 1
            else:
                # Lost a race with checkout, or the gateway says the payment was captured
                counts["skipped"] += 1

        if counts["checked"]:
            logger.info(f"⌛ Expiry sweep: {counts}")
        return counts

    # ------------------------------------------------------------------
    # 5. Coverage redelivery
    # ------------------------------------------------------------------

    async def resend_coverage_requests(self, now: datetime) -> dict:
        counts = await self.dispatch.resend_coverage_requests(
            now - timedelta(minutes=RECONCILE_SETTLE_MINUTES), limit=self.batch_size
        )
        return {**counts, "errors": counts["failed"]}

    # ------------------------------------------------------------------
    # 6. Purge
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> dict:
        older_than = now - timedelta(days=PURGE_EXPIRED_AFTER_DAYS)
        purged = self.bookings.purge_expired(older_than, self.batch_size)
        if purged:
            logger.info(f"🗑️ Purged {purged} expired booking(s) older than {PURGE_EXPIRED_AFTER_DAYS} days")
        return {"purged": purged, "errors": 0}
