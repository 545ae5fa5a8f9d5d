from datetime import date, time, timedelta
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from homebook import models  # noqa: F401
from homebook.database import Base
from homebook.domain.bookings.errors import GatewayError
from homebook.domain.bookings.schemas import BookingIntake, GuestContact, LineItem
from homebook.domain.bookings.service import BookingService
from homebook.domain.dispatch.service import DispatchService
from homebook.domain.payments.gateway import (
    PATH_CANCEL,
    PATH_NOOP,
    PATH_REFUND,
    CancelOrRefundOutcome,
    GatewayPayment,
)
from homebook.models import PAYMENT_AUTHORIZED, PAYMENT_FAILED, PAYMENT_PAID, PAYMENT_REFUNDED
from homebook.models_worker import Worker, WorkerAvailability, WorkerServiceArea
from homebook.services.coverage_resolver import CoverageResolver, lookup_zipcode
from homebook.services.notification_service import NotificationDispatcher


def add_service_area(db, worker_id, zipcode):
    location = lookup_zipcode(zipcode)
    assert location, f"Unknown ZIP code in fixture: {zipcode}"
    area = WorkerServiceArea(
        worker_id=worker_id,
        zipcode=location["zipcode"],
        latitude=location["latitude"],
        longitude=location["longitude"],
    )
    db.add(area)
    db.commit()
    return area


class FakeGateway:
    """In-memory stand-in for the Square adapter"""

    def __init__(self):
        self.payments: dict[str, GatewayPayment] = {}
        self.by_key: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.authorize_status = PAYMENT_AUTHORIZED
        self.errors: dict[str, GatewayError] = {}

    def _maybe_fail(self, operation: str):
        error = self.errors.get(operation)
        if error:
            raise error

    def add_payment(self, ref: str, status: str, amount_cents: int, reference_id: Optional[str] = None):
        self.payments[ref] = GatewayPayment(
            ref=ref,
            status=status,
            amount_cents=amount_cents,
            raw_status=status.upper(),
            refunded_cents=amount_cents if status == PAYMENT_REFUNDED else 0,
            reference_id=reference_id,
        )
        return self.payments[ref]

    def set_status(self, ref: str, status: str):
        payment = self.payments[ref]
        payment.status = status
        payment.raw_status = status.upper()
        if status == PAYMENT_REFUNDED:
            payment.refunded_cents = payment.amount_cents

    async def authorize(self, amount_cents, customer_ref, source_id, idempotency_key, reference_id=None):
        self.calls.append(("authorize", idempotency_key))
        self._maybe_fail("authorize")
        if idempotency_key in self.by_key:
            return self.payments[self.by_key[idempotency_key]]
        ref = f"pay_{len(self.payments) + 1}"
        self.by_key[idempotency_key] = ref
        return self.add_payment(ref, self.authorize_status, amount_cents, reference_id)

    async def capture(self, gateway_ref):
        self.calls.append(("capture", gateway_ref))
        self._maybe_fail("capture")
        self.set_status(gateway_ref, PAYMENT_PAID)
        return self.payments[gateway_ref]

    async def retrieve(self, gateway_ref):
        self.calls.append(("retrieve", gateway_ref))
        self._maybe_fail("retrieve")
        return self.payments[gateway_ref]

    async def cancel_or_refund(self, gateway_ref, amount_cents=None):
        self.calls.append(("cancel_or_refund", gateway_ref))
        self._maybe_fail("cancel_or_refund")
        payment = self.payments[gateway_ref]
        if payment.status == PAYMENT_AUTHORIZED:
            self.set_status(gateway_ref, PAYMENT_FAILED)
            return CancelOrRefundOutcome(path=PATH_CANCEL, status=PAYMENT_FAILED)
        if payment.status == PAYMENT_PAID:
            self.set_status(gateway_ref, PAYMENT_REFUNDED)
            return CancelOrRefundOutcome(path=PATH_REFUND, status=PAYMENT_REFUNDED)
        return CancelOrRefundOutcome(path=PATH_NOOP, status=payment.status)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


class FakeChannel:
    """Records outbound email/SMS instead of sending it"""

    def __init__(self):
        self.sent: list[dict] = []
        self.failing: set[str] = set()

    async def __call__(self, **kwargs):
        recipient = kwargs.get("to") or kwargs.get("to_phone")
        if recipient in self.failing:
            return False, "provider rejected"
        self.sent.append(kwargs)
        return True, None

    def to(self, recipient: str) -> list[dict]:
        return [m for m in self.sent if recipient in (m.get("to"), m.get("to_phone"))]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email_channel():
    return FakeChannel()


@pytest.fixture
def sms_channel():
    return FakeChannel()


@pytest.fixture
def notifier(db, email_channel, sms_channel):
    return NotificationDispatcher(db, email_sender=email_channel, sms_sender=sms_channel)


@pytest.fixture
def booking_service(db, gateway, notifier):
    return BookingService(db, gateway=gateway, notifier=notifier, resolver=CoverageResolver(db))


@pytest.fixture
def dispatch_service(db, notifier):
    return DispatchService(db, resolver=CoverageResolver(db), notifier=notifier)


@pytest.fixture
def service_date():
    return date.today() + timedelta(days=7)


@pytest.fixture
def make_worker(db, service_date):
    counter = {"n": 0}

    def _make(zipcodes=("10001",), available=True, radius=None, email=None, phone=None):
        counter["n"] += 1
        n = counter["n"]
        worker = Worker(
            name=f"Worker {n}",
            email=email or f"worker{n}@example.com",
            phone=phone,
            service_radius_miles=radius,
        )
        db.add(worker)
        db.commit()
        db.refresh(worker)

        for zipcode in zipcodes:
            add_service_area(db, worker.id, zipcode)
        if available:
            db.add(
                WorkerAvailability(
                    worker_id=worker.id,
                    day_of_week=service_date.weekday(),
                    start_time=time(8, 0),
                    end_time=time(18, 0),
                )
            )
            db.commit()
        return worker

    return _make


@pytest.fixture
def make_intake(service_date):
    def _make(**overrides):
        data = {
            "guest": GuestContact(name="Pat Guest", email="pat@example.com"),
            "zipcode": "10001",
            "scheduled_date": service_date,
            "scheduled_start": time(10, 0),
            "duration_minutes": 120,
            "line_items": [LineItem(name="Standard clean", quantity=1, unit_price_cents=15000)],
        }
        data.update(overrides)
        return BookingIntake(**data)

    return _make


@pytest.fixture
def make_booking(booking_service, make_intake):
    def _make(**overrides):
        result = booking_service.create_booking(make_intake(**overrides))
        assert result.ok, result.message
        return result.booking

    return _make


@pytest.fixture
def confirmed_booking(booking_service, make_booking):
    """Booking whose payment the gateway has authorized"""

    async def _make(**overrides):
        booking = make_booking(**overrides)
        result = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")
        assert result.ok, result.message
        return result.booking

    return _make
