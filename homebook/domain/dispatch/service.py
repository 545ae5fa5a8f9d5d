"""
Dispatch service - binds a booking to exactly one worker

unassigned -> direct_assigned            (one clear candidate)
unassigned -> broadcast_open -> bound    (first accepted response wins)

The only contended write is bookings.worker_id, set by a conditional UPDATE
that requires it to still be NULL. Whoever's UPDATE matches the row wins.
Dispatch never touches the job or payment status.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import OPS_ALERT_EMAIL, RECONCILE_BATCH_SIZE, RECONCILE_SETTLE_MINUTES
from ...models import (
    DISPATCH_BOUND,
    DISPATCH_BROADCAST_OPEN,
    DISPATCH_DIRECT_ASSIGNED,
    DISPATCH_UNASSIGNED,
    RESPONSE_ACCEPTED,
    RESPONSE_DECLINED,
    TERMINAL_BOOKING_STATUSES,
    Booking,
    CoverageNotification,
)
from ...services.coverage_resolver import CoverageCandidate, CoverageResolver
from ...services.notification_service import NotificationDispatcher, send_best_effort
from ...utils.clock import utcnow
from ..bookings.errors import (
    BookingNotFound,
    BookingValidationError,
    DispatchExhausted,
    JobAlreadyTaken,
    StateConflict,
)
from ..bookings.repository import BookingRepository
from ..bookings.results import operation
from ..bookings.service import notification_context
from .repository import DispatchRepository

logger = logging.getLogger(__name__)

MANUAL_NO_COVERAGE = "no_coverage"
MANUAL_ALL_DECLINED = "all_declined"


class DispatchService:
    """Service layer for worker dispatch"""

    def __init__(
        self,
        db: Session,
        resolver: Optional[CoverageResolver] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.repo = DispatchRepository()
        self.bookings = BookingRepository()
        self.resolver = resolver or CoverageResolver(db)
        self.notifier = notifier or NotificationDispatcher(db)

    def _get_booking(self, booking_id: str) -> Booking:
        self.db.expire_all()
        booking = self.bookings.get_booking(self.db, booking_id)
        if not booking:
            raise BookingNotFound(f"Booking {booking_id} not found", "Booking not found")
        return booking

    async def _alert_ops(self, booking: Booking, notification_type: str) -> None:
        if not OPS_ALERT_EMAIL:
            logger.warning(f"⚠️ OPS_ALERT_EMAIL not set; {notification_type} for {booking.id} only logged")
            return
        await send_best_effort(
            self.notifier, booking.id, OPS_ALERT_EMAIL, notification_type, notification_context(booking)
        )

    async def _notify_worker(self, booking: Booking, worker_id: str, notification_type: str, **context) -> dict:
        worker = self.repo.get_workers(self.db, [worker_id]).get(worker_id)
        recipient = (worker.phone or worker.email) if worker else None
        return await send_best_effort(
            self.notifier,
            booking.id,
            recipient,
            notification_type,
            {**notification_context(booking), **context},
        )

    async def _notify_customer_of_assignment(self, booking: Booking) -> None:
        worker = self.repo.get_workers(self.db, [booking.worker_id]).get(booking.worker_id)
        await send_best_effort(
            self.notifier,
            booking.id,
            booking.contact_phone or booking.contact_email,
            "worker_assigned",
            {**notification_context(booking), "worker_name": worker.name if worker else "Your pro"},
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @operation
    async def dispatch(self, booking_id: str):
        """
        Find workers for a booking and either assign one directly or open a broadcast.

        Re-running on a booking that already left `unassigned` returns it
        unchanged, after retrying any coverage request of its open broadcast
        that was never delivered.
        """
        booking = self._get_booking(booking_id)
        if booking.dispatch_status != DISPATCH_UNASSIGNED:
            logger.info(f"🔁 Booking {booking_id} already dispatched ({booking.dispatch_status})")
            if booking.dispatch_status == DISPATCH_BROADCAST_OPEN:
                await self.resend_coverage_requests(
                    utcnow() - timedelta(minutes=RECONCILE_SETTLE_MINUTES), booking_id=booking_id
                )
                return self._get_booking(booking_id)
            return booking
        if booking.status in TERMINAL_BOOKING_STATUSES:
            raise StateConflict(f"Booking {booking_id} is {booking.status}; nothing to dispatch")

        coverage = self.resolver.resolve_coverage(
            booking.zipcode,
            booking.scheduled_date,
            booking.scheduled_start,
            booking.duration_minutes,
            exclude_booking_id=booking.id,
        )

        if not coverage.has_coverage:
            return await self._no_coverage(booking)

        available = coverage.available
        if len(available) == 1:
            return await self._assign_directly(booking, available[0])
        return await self._broadcast(booking, coverage.eligible)

    async def _no_coverage(self, booking: Booking):
        self.bookings.compare_and_set(
            self.db,
            booking.id,
            [Booking.dispatch_status == DISPATCH_UNASSIGNED, Booking.worker_id.is_(None)],
            manual_attention_reason=MANUAL_NO_COVERAGE,
        )
        self.db.commit()
        logger.warning(f"⚠️ No coverage for booking {booking.id} in {booking.zipcode}")

        booking = self._get_booking(booking.id)
        await self._alert_ops(booking, "ops_no_coverage")
        raise DispatchExhausted(
            f"No eligible workers for booking {booking.id} in {booking.zipcode}",
            booking=booking,
        )

    async def _assign_directly(self, booking: Booking, candidate: CoverageCandidate):
        won = self.bookings.compare_and_set(
            self.db,
            booking.id,
            [
                Booking.worker_id.is_(None),
                Booking.dispatch_status == DISPATCH_UNASSIGNED,
                Booking.status.notin_(TERMINAL_BOOKING_STATUSES),
            ],
            worker_id=candidate.worker_id,
            dispatch_status=DISPATCH_DIRECT_ASSIGNED,
            manual_attention_reason=None,
        )
        if not won:
            self.db.rollback()
            logger.info(f"🔁 Booking {booking.id} was dispatched concurrently")
            return self._get_booking(booking.id)
        self.db.commit()
        logger.info(f"✅ Booking {booking.id} assigned directly to worker {candidate.worker_id}")

        booking = self._get_booking(booking.id)
        await self._notify_worker(booking, candidate.worker_id, "job_assigned")
        await self._notify_customer_of_assignment(booking)
        return booking

    async def _broadcast(self, booking: Booking, candidates: list):
        won = self.bookings.compare_and_set(
            self.db,
            booking.id,
            [
                Booking.worker_id.is_(None),
                Booking.dispatch_status == DISPATCH_UNASSIGNED,
                Booking.status.notin_(TERMINAL_BOOKING_STATUSES),
            ],
            dispatch_status=DISPATCH_BROADCAST_OPEN,
            manual_attention_reason=None,
        )
        if not won:
            self.db.rollback()
            logger.info(f"🔁 Booking {booking.id} was dispatched concurrently")
            return self._get_booking(booking.id)

        notifications = self.repo.add_notifications(self.db, booking.id, candidates)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"⚠️ Coverage notifications for booking {booking.id} already exist")
            return self._get_booking(booking.id)

        offers = [(n.id, n.worker_id) for n in notifications]
        logger.info(f"📣 Booking {booking.id} broadcast to {len(offers)} workers")

        booking = self._get_booking(booking.id)
        for notification_id, worker_id in offers:
            await self._deliver_offer(booking, notification_id, worker_id)

        return self._get_booking(booking.id)

    async def _deliver_offer(self, booking: Booking, notification_id: int, worker_id: str) -> bool:
        receipt = await self._notify_worker(
            booking, worker_id, "coverage_request", notification_id=notification_id
        )
        self.repo.mark_delivery(self.db, notification_id, "sent" if receipt["sent"] else "failed")
        return receipt["sent"]

    async def resend_coverage_requests(
        self,
        pending_before: datetime,
        limit: int = RECONCILE_BATCH_SIZE,
        booking_id: Optional[str] = None,
    ) -> dict:
        """
        Retry coverage requests of open broadcasts that failed or never went out.

        A request that did go out shortly before a crash is absorbed by the
        notification dispatcher's dedup window.

        Returns:
            Dict with retried, sent and failed counts
        """
        counts = {"retried": 0, "sent": 0, "failed": 0}
        rows = [
            (n.id, n.booking_id, n.worker_id)
            for n in self.repo.get_undelivered(self.db, pending_before, limit, booking_id)
        ]
        for notification_id, row_booking_id, worker_id in rows:
            counts["retried"] += 1
            booking = self._get_booking(row_booking_id)
            if await self._deliver_offer(booking, notification_id, worker_id):
                counts["sent"] += 1
            else:
                counts["failed"] += 1

        if counts["retried"]:
            logger.info(f"📣 Coverage request redelivery: {counts}")
        return counts

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    @operation
    async def respond(self, notification_id: int, response: str):
        """Record a worker's answer to a coverage notification"""
        response = (response or "").strip().lower()
        if response not in (RESPONSE_ACCEPTED, RESPONSE_DECLINED):
            raise BookingValidationError(f"Unknown response {response!r}", "Response must be accepted or declined")

        notification = self.repo.get_notification(self.db, notification_id)
        if not notification:
            raise BookingNotFound(
                f"Coverage notification {notification_id} not found", "Coverage request not found"
            )

        if response == RESPONSE_DECLINED:
            return await self._decline(notification)
        return await self._accept(notification)

    async def _decline(self, notification: CoverageNotification):
        booking = self._get_booking(notification.booking_id)
        if notification.response == RESPONSE_DECLINED:
            return booking
        if notification.response == RESPONSE_ACCEPTED:
            raise StateConflict(f"Notification {notification.id} was already accepted")

        if not self.repo.record_response(self.db, notification.id, RESPONSE_DECLINED):
            self.db.rollback()
            current = self.repo.get_notification(self.db, notification.id)
            if current and current.response == RESPONSE_DECLINED:
                return self._get_booking(notification.booking_id)
            raise StateConflict(f"Notification {notification.id} already answered")
        self.db.commit()
        logger.info(f"👎 Worker {notification.worker_id} declined booking {notification.booking_id}")

        booking = self._get_booking(notification.booking_id)
        if (
            booking.worker_id is None
            and booking.dispatch_status == DISPATCH_BROADCAST_OPEN
            and self.repo.all_declined(self.db, booking.id)
        ):
            flagged = self.bookings.compare_and_set(
                self.db,
                booking.id,
                [
                    Booking.worker_id.is_(None),
                    Booking.dispatch_status == DISPATCH_BROADCAST_OPEN,
                    Booking.manual_attention_reason.is_(None),
                ],
                manual_attention_reason=MANUAL_ALL_DECLINED,
            )
            self.db.commit()
            if flagged:
                logger.warning(f"⚠️ All notified workers declined booking {booking.id}")
                booking = self._get_booking(booking.id)
                await self._alert_ops(booking, "ops_all_declined")
        return self._get_booking(booking.id)

    async def _accept(self, notification: CoverageNotification):
        booking = self._get_booking(notification.booking_id)
        if booking.worker_id == notification.worker_id:
            logger.info(f"🔁 Worker {notification.worker_id} already holds booking {booking.id}")
            return booking
        if booking.worker_id is not None or booking.status in TERMINAL_BOOKING_STATUSES:
            raise JobAlreadyTaken(f"Booking {booking.id} is no longer open (worker {booking.worker_id})")
        if notification.response == RESPONSE_DECLINED:
            raise StateConflict(
                f"Worker {notification.worker_id} already declined booking {booking.id}",
                "You already declined this job.",
            )

        won = self.bookings.compare_and_set(
            self.db,
            booking.id,
            [
                Booking.worker_id.is_(None),
                Booking.dispatch_status == DISPATCH_BROADCAST_OPEN,
                Booking.status.notin_(TERMINAL_BOOKING_STATUSES),
            ],
            worker_id=notification.worker_id,
            dispatch_status=DISPATCH_BOUND,
            manual_attention_reason=None,
        )
        if not won:
            self.db.rollback()
            raise JobAlreadyTaken(f"Worker {notification.worker_id} lost the race for booking {booking.id}")

        if not self.repo.record_response(self.db, notification.id, RESPONSE_ACCEPTED):
            self.db.rollback()
            raise StateConflict(f"Notification {notification.id} already answered")
        self.db.commit()
        logger.info(f"🎉 Worker {notification.worker_id} won booking {booking.id}")

        booking = self._get_booking(booking.id)
        await self._notify_customer_of_assignment(booking)
        return booking

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def list_notifications(self, booking_id: str) -> list[dict]:
        booking = self._get_booking(booking_id)
        return [
            {
                "id": n.id,
                "booking_id": n.booking_id,
                "worker_id": n.worker_id,
                "priority": n.priority,
                "distance_miles": n.distance_miles,
                "delivery_status": n.delivery_status,
                "sent_at": n.sent_at,
                "response": n.response,
                "responded_at": n.responded_at,
                "is_closed": n.response is not None or booking.worker_id is not None,
            }
            for n in self.repo.get_notifications(self.db, booking_id)
        ]
