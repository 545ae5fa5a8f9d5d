"""Booking repository - Database operations for bookings and the payment ledger"""

from datetime import datetime
from typing import Optional

from sqlalchemy import exists
from sqlalchemy.orm import Session

from ...models import (
    Booking,
    CoverageNotification,
    Transaction,
)
from ...utils.clock import utcnow


class BookingRepository:
    """Repository for booking and ledger database operations"""

    @staticmethod
    def get_booking(db: Session, booking_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    @staticmethod
    def get_booking_by_gateway_ref(db: Session, gateway_ref: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.gateway_payment_ref == gateway_ref).first()

    @staticmethod
    def create_booking(db: Session, **booking_data) -> Booking:
        now = utcnow()
        booking = Booking(created_at=now, updated_at=now, **booking_data)
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    @staticmethod
    def compare_and_set(db: Session, booking_id: str, conditions: list, **values) -> bool:
        """
        Single-row conditional UPDATE.

        Returns True only if the row still matched every condition, i.e. this
        caller won. Does not commit; the caller commits together with any
        ledger row it appends.
        """
        values["updated_at"] = utcnow()
        updated = (
            db.query(Booking)
            .filter(Booking.id == booking_id, *conditions)
            .update(values, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def append_transaction(
        db: Session,
        booking_id: str,
        gateway_ref: str,
        amount_cents: int,
        operation_type: str,
        status: str,
        detail: Optional[str] = None,
    ) -> Transaction:
        """Add a ledger row to the session (not committed)"""
        txn = Transaction(
            booking_id=booking_id,
            gateway_payment_ref=gateway_ref,
            amount_cents=amount_cents,
            operation_type=operation_type,
            status=status,
            idempotency_key=f"{gateway_ref}:{operation_type}:{status}",
            detail=detail,
            created_at=utcnow(),
        )
        db.add(txn)
        return txn

    @staticmethod
    def find_transaction(
        db: Session, gateway_ref: str, operation_type: str, status: str
    ) -> Optional[Transaction]:
        return (
            db.query(Transaction)
            .filter(
                Transaction.gateway_payment_ref == gateway_ref,
                Transaction.operation_type == operation_type,
                Transaction.status == status,
            )
            .first()
        )

    @staticmethod
    def find_bookings(db: Session, conditions: list, limit: int, order_by=None) -> list[Booking]:
        """
        Bookings matching conditions, least recently reconciled first.

        Never-visited rows come first, then `order_by` (default updated_at)
        breaks ties.
        """
        return (
            db.query(Booking)
            .filter(*conditions)
            .order_by(
                Booking.last_reconciled_at.isnot(None),
                Booking.last_reconciled_at,
                order_by if order_by is not None else Booking.updated_at,
            )
            .limit(limit)
            .all()
        )

    @staticmethod
    def mark_reconciled(db: Session, booking_ids: list[str], visited_at: datetime) -> None:
        """Stamp a sweep visit. Leaves updated_at alone so the settle window still applies."""
        if not booking_ids:
            return
        db.query(Booking).filter(Booking.id.in_(booking_ids)).update(
            {"last_reconciled_at": visited_at}, synchronize_session=False
        )
        db.commit()

    @staticmethod
    def purge_bookings(db: Session, conditions: list, older_than: datetime, limit: int) -> int:
        """
        Delete bookings matching conditions that have no ledger or notification rows.
        Returns the number of bookings deleted.
        """
        candidates = (
            db.query(Booking.id)
            .filter(
                *conditions,
                Booking.updated_at < older_than,
                ~exists().where(Transaction.booking_id == Booking.id),
                ~exists().where(CoverageNotification.booking_id == Booking.id),
            )
            .limit(limit)
            .all()
        )
        ids = [row.id for row in candidates]
        if not ids:
            return 0

        deleted = (
            db.query(Booking)
            .filter(Booking.id.in_(ids), *conditions)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted
