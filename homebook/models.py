"""
Booking fulfillment models

Booking carries two independent status axes (job status and payment status)
plus the dispatch state. Transactions form an append-only payment ledger.
"""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from . import models_worker  # noqa: F401 - Worker must be registered for relationships
from .database import Base
from .utils.clock import utcnow

# Job status
BOOKING_PENDING = "pending"
BOOKING_PAYMENT_PENDING = "payment_pending"
BOOKING_CONFIRMED = "confirmed"
BOOKING_IN_PROGRESS = "in_progress"
BOOKING_COMPLETED = "completed"
BOOKING_CANCELLED = "cancelled"
BOOKING_EXPIRED = "expired"
TERMINAL_BOOKING_STATUSES = (BOOKING_COMPLETED, BOOKING_CANCELLED, BOOKING_EXPIRED)

# Payment status
PAYMENT_PENDING = "pending"
PAYMENT_AUTHORIZED = "authorized"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

# Dispatch status
DISPATCH_UNASSIGNED = "unassigned"
DISPATCH_DIRECT_ASSIGNED = "direct_assigned"
DISPATCH_BROADCAST_OPEN = "broadcast_open"
DISPATCH_BOUND = "bound"

# Ledger
TXN_AUTHORIZATION = "authorization"
TXN_CAPTURE = "capture"
TXN_REFUND = "refund"
TXN_AUTHORIZED = "authorized"
TXN_COMPLETED = "completed"
TXN_FAILED = "failed"

# Coverage notification responses
RESPONSE_ACCEPTED = "accepted"
RESPONSE_DECLINED = "declined"


def _new_id() -> str:
    return str(uuid.uuid4())


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_new_id)

    status = Column(String(20), nullable=False, default=BOOKING_PAYMENT_PENDING, index=True)
    payment_status = Column(String(20), nullable=False, default=PAYMENT_PENDING, index=True)
    dispatch_status = Column(String(20), nullable=False, default=DISPATCH_UNASSIGNED)

    # Exactly one of customer_id / guest_contact is set
    customer_id = Column(String(64), nullable=True, index=True)
    guest_contact = Column(JSON, nullable=True)  # {name, email, phone}
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(20), nullable=True)

    worker_id = Column(String(36), ForeignKey("workers.id"), nullable=True, index=True)
    gateway_payment_ref = Column(String(255), nullable=True, index=True)

    zipcode = Column(String(10), nullable=False)
    address = Column(Text, nullable=True)
    location_notes = Column(Text, nullable=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_start = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=120)

    line_items = Column(JSON, nullable=False)  # [{name, quantity, unit_price_cents}]
    amount_cents = Column(Integer, nullable=False)

    payment_pending_since = Column(DateTime, nullable=True)
    service_completed_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    manual_attention_reason = Column(String(50), nullable=True)
    # Stamped on every reconciliation visit; sweeps take the least recently visited first
    last_reconciled_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    transactions = relationship(
        "Transaction", back_populates="booking", order_by="Transaction.id"
    )
    coverage_notifications = relationship(
        "CoverageNotification", back_populates="booking", order_by="CoverageNotification.priority"
    )
    worker = relationship("Worker")

    @property
    def customer_ref(self) -> str:
        return self.customer_id or (self.guest_contact or {}).get("email")


class Transaction(Base):
    """Append-only ledger row, one per gateway operation"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    gateway_payment_ref = Column(String(255), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    operation_type = Column(String(20), nullable=False)
    # "{gateway_ref}:{operation_type}:{status}" - replays collide here instead of duplicating
    idempotency_key = Column(String(320), nullable=False, unique=True)
    detail = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    booking = relationship("Booking", back_populates="transactions")

    __table_args__ = (
        Index(
            "uq_transactions_one_completed_capture",
            "gateway_payment_ref",
            unique=True,
            postgresql_where=text("operation_type = 'capture' AND status = 'completed'"),
            sqlite_where=text("operation_type = 'capture' AND status = 'completed'"),
        ),
    )


class CoverageNotification(Base):
    """Broadcast offer of a booking to one eligible worker"""

    __tablename__ = "coverage_notifications"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    worker_id = Column(String(36), ForeignKey("workers.id"), nullable=False, index=True)
    priority = Column(Integer, nullable=False)  # 1 = same ZIP, 2 = nearby, 3 = regional
    distance_miles = Column(Float, nullable=True)

    delivery_status = Column(String(20), nullable=False, default="pending")  # pending, sent, failed
    sent_at = Column(DateTime, nullable=True)
    delivery_attempted_at = Column(DateTime, nullable=True)
    response = Column(String(20), nullable=True)  # null, accepted, declined
    responded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    booking = relationship("Booking", back_populates="coverage_notifications")
    worker = relationship("Worker")

    __table_args__ = (UniqueConstraint("booking_id", "worker_id", name="uq_coverage_booking_worker"),)


class NotificationDelivery(Base):
    """Outbound email/SMS delivery log, also the dedup record for retries"""

    __tablename__ = "notification_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), nullable=False)
    recipient = Column(String(255), nullable=False)
    notification_type = Column(String(50), nullable=False)
    channel = Column(String(10), nullable=False)  # email, sms
    status = Column(String(20), nullable=False)  # sent, failed, skipped
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_notification_dedup", "booking_id", "recipient", "notification_type"),
    )
