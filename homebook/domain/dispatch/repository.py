"""Dispatch repository - Coverage notification and worker lookups"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ...models import (
    DISPATCH_BROADCAST_OPEN,
    RESPONSE_DECLINED,
    TERMINAL_BOOKING_STATUSES,
    Booking,
    CoverageNotification,
)
from ...models_worker import Worker
from ...utils.clock import utcnow


class DispatchRepository:
    """Repository for coverage notification database operations"""

    @staticmethod
    def get_notification(db: Session, notification_id: int) -> Optional[CoverageNotification]:
        return db.query(CoverageNotification).filter(CoverageNotification.id == notification_id).first()

    @staticmethod
    def get_notifications(db: Session, booking_id: str) -> list[CoverageNotification]:
        return (
            db.query(CoverageNotification)
            .filter(CoverageNotification.booking_id == booking_id)
            .order_by(
                CoverageNotification.priority,
                CoverageNotification.distance_miles,
                CoverageNotification.id,
            )
            .all()
        )

    @staticmethod
    def add_notifications(db: Session, booking_id: str, candidates: list) -> list[CoverageNotification]:
        """Stage one notification per candidate, best candidate first (not committed)"""
        now = utcnow()
        notifications = [
            CoverageNotification(
                booking_id=booking_id,
                worker_id=candidate.worker_id,
                priority=candidate.priority,
                distance_miles=candidate.distance_miles,
                created_at=now,
            )
            for candidate in candidates
        ]
        db.add_all(notifications)
        return notifications

    @staticmethod
    def record_response(db: Session, notification_id: int, response: str) -> bool:
        """Set the response only if none was recorded yet. Not committed."""
        updated = (
            db.query(CoverageNotification)
            .filter(
                CoverageNotification.id == notification_id,
                CoverageNotification.response.is_(None),
            )
            .update({"response": response, "responded_at": utcnow()}, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def mark_delivery(db: Session, notification_id: int, delivery_status: str) -> None:
        values = {"delivery_status": delivery_status, "delivery_attempted_at": utcnow()}
        if delivery_status == "sent":
            values["sent_at"] = utcnow()
        db.query(CoverageNotification).filter(CoverageNotification.id == notification_id).update(
            values, synchronize_session=False
        )
        db.commit()

    @staticmethod
    def get_undelivered(
        db: Session, pending_before: datetime, limit: int, booking_id: Optional[str] = None
    ) -> list[CoverageNotification]:
        """
        Unanswered coverage requests of open broadcasts that never reached their worker.

        Failed rows always qualify; pending rows only once they are older than
        `pending_before`, so an in-flight broadcast is left to finish.
        """
        query = (
            db.query(CoverageNotification)
            .join(Booking, Booking.id == CoverageNotification.booking_id)
            .filter(
                CoverageNotification.response.is_(None),
                or_(
                    CoverageNotification.delivery_status == "failed",
                    and_(
                        CoverageNotification.delivery_status == "pending",
                        CoverageNotification.created_at < pending_before,
                    ),
                ),
                Booking.worker_id.is_(None),
                Booking.dispatch_status == DISPATCH_BROADCAST_OPEN,
                Booking.status.notin_(TERMINAL_BOOKING_STATUSES),
            )
        )
        if booking_id:
            query = query.filter(CoverageNotification.booking_id == booking_id)
        return (
            query.order_by(
                CoverageNotification.delivery_attempted_at.isnot(None),
                CoverageNotification.delivery_attempted_at,
                CoverageNotification.id,
            )
            .limit(limit)
            .all()
        )

    @staticmethod
    def all_declined(db: Session, booking_id: str) -> bool:
        responses = [
            row.response
            for row in db.query(CoverageNotification.response)
            .filter(CoverageNotification.booking_id == booking_id)
            .all()
        ]
        return bool(responses) and all(r == RESPONSE_DECLINED for r in responses)

    @staticmethod
    def get_workers(db: Session, worker_ids: list[str]) -> dict[str, Worker]:
        if not worker_ids:
            return {}
        workers = db.query(Worker).filter(Worker.id.in_(worker_ids)).all()
        return {w.id: w for w in workers}
