from datetime import date, timedelta

import pytest

from homebook.domain.bookings.errors import ErrorKind, GatewayError
from homebook.domain.bookings.repository import BookingRepository
from homebook.domain.bookings.schemas import LineItem
from homebook.models import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_EXPIRED,
    BOOKING_IN_PROGRESS,
    BOOKING_PAYMENT_PENDING,
    BOOKING_PENDING,
    DISPATCH_UNASSIGNED,
    PAYMENT_AUTHORIZED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    TXN_AUTHORIZATION,
    TXN_AUTHORIZED,
    TXN_CAPTURE,
    TXN_COMPLETED,
    TXN_FAILED,
    TXN_REFUND,
    Booking,
    Transaction,
)
from homebook.utils.clock import utcnow


def ledger(db, booking_id):
    rows = db.query(Transaction).filter(Transaction.booking_id == booking_id).order_by(Transaction.id)
    return [(t.operation_type, t.status) for t in rows]


async def bind_worker(dispatch_service, make_worker, booking):
    make_worker()
    result = await dispatch_service.dispatch(booking.id)
    assert result.ok and result.booking.worker_id
    return result.booking


# ----------------------------------------------------------------------
# create_booking
# ----------------------------------------------------------------------


def test_create_booking_starts_payment_pending(make_booking):
    booking = make_booking(
        line_items=[
            LineItem(name="Standard clean", quantity=1, unit_price_cents=15000),
            LineItem(name="Inside oven", quantity=2, unit_price_cents=2500),
        ]
    )

    assert booking.status == BOOKING_PAYMENT_PENDING
    assert booking.payment_status == PAYMENT_PENDING
    assert booking.dispatch_status == DISPATCH_UNASSIGNED
    assert booking.amount_cents == 20000
    assert booking.payment_pending_since is not None
    assert booking.worker_id is None
    assert booking.contact_email == "pat@example.com"


def test_create_booking_deferred_payment_starts_pending(make_booking):
    booking = make_booking(defer_payment=True)

    assert booking.status == BOOKING_PENDING
    assert booking.payment_pending_since is None


def test_create_booking_requires_priced_line_item(booking_service, make_intake):
    result = booking_service.create_booking(
        make_intake(line_items=[LineItem(name="Free consult", unit_price_cents=0)])
    )

    assert result.ok is False
    assert result.kind == ErrorKind.VALIDATION_ERROR


def test_create_booking_requires_resolvable_zip(booking_service, make_intake):
    result = booking_service.create_booking(make_intake(zipcode="00000"))

    assert result.ok is False
    assert result.kind == ErrorKind.VALIDATION_ERROR
    assert "ZIP" in result.message


def test_create_booking_rejects_customer_and_guest_together(booking_service, make_intake):
    result = booking_service.create_booking(make_intake(customer_id="cust_1"))

    assert result.ok is False
    assert result.kind == ErrorKind.VALIDATION_ERROR


def test_create_booking_rejects_past_date(booking_service, make_intake):
    result = booking_service.create_booking(
        make_intake(scheduled_date=date.today() - timedelta(days=2))
    )

    assert result.ok is False
    assert result.kind == ErrorKind.VALIDATION_ERROR


# ----------------------------------------------------------------------
# Authorization
# ----------------------------------------------------------------------


def test_record_authorization_twice_is_a_noop(booking_service, make_booking, db):
    booking = make_booking()

    first = booking_service.record_authorization(booking.id, "gw_123", 15000)
    second = booking_service.record_authorization(booking.id, "gw_123", 15000)

    assert first.ok and second.ok
    assert second.booking.status == BOOKING_CONFIRMED
    assert (first.data["confirmed"], second.data["confirmed"]) == (True, False)
    assert second.booking.payment_status == PAYMENT_AUTHORIZED
    assert ledger(db, booking.id) == [(TXN_AUTHORIZATION, TXN_AUTHORIZED)]


def test_record_authorization_with_different_ref_conflicts(booking_service, make_booking, db):
    booking = make_booking()
    booking_service.record_authorization(booking.id, "gw_123", 15000)

    result = booking_service.record_authorization(booking.id, "gw_999", 15000)

    assert result.ok is False
    assert result.kind == ErrorKind.STATE_CONFLICT
    assert BookingRepository.get_booking(db, booking.id).gateway_payment_ref == "gw_123"
    assert len(ledger(db, booking.id)) == 1


def test_record_authorization_on_cancelled_booking_conflicts(booking_service, make_booking):
    booking = make_booking()
    booking_service.repo.compare_and_set(booking_service.db, booking.id, [], status=BOOKING_CANCELLED)
    booking_service.db.commit()

    result = booking_service.record_authorization(booking.id, "gw_123", 15000)

    assert result.kind == ErrorKind.STATE_CONFLICT


@pytest.mark.asyncio
async def test_begin_checkout_authorizes_and_confirms(booking_service, make_booking, gateway, db):
    booking = make_booking()

    result = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")

    assert result.ok
    assert result.data["gateway_ref"] == "pay_1"
    assert result.booking.status == BOOKING_CONFIRMED
    assert result.booking.payment_status == PAYMENT_AUTHORIZED
    assert ledger(db, booking.id) == [(TXN_AUTHORIZATION, TXN_AUTHORIZED)]


@pytest.mark.asyncio
async def test_begin_checkout_sends_customer_confirmation_once(booking_service, make_booking, email_channel):
    booking = make_booking()

    await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")
    await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")

    [message] = email_channel.to("pat@example.com")
    assert message["subject"] == "Your booking is confirmed"
    assert "$150.00" in message["html_content"]


@pytest.mark.asyncio
async def test_begin_checkout_is_idempotent(booking_service, make_booking, gateway):
    booking = make_booking()

    await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")
    again = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")

    assert again.ok
    assert again.data["gateway_ref"] == "pay_1"
    assert gateway.count("authorize") == 1


@pytest.mark.asyncio
async def test_begin_checkout_gateway_down_leaves_booking_untouched(booking_service, make_booking, gateway, db):
    booking = make_booking()
    gateway.errors["authorize"] = GatewayError("connect timeout")

    result = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")

    assert result.ok is False
    assert result.kind == ErrorKind.GATEWAY_ERROR
    assert result.message == "Payment was not completed."
    current = BookingRepository.get_booking(db, booking.id)
    assert current.gateway_payment_ref is None
    assert current.status == BOOKING_PAYMENT_PENDING


@pytest.mark.asyncio
async def test_declined_card_can_be_retried(booking_service, make_booking, gateway, db):
    booking = make_booking()
    gateway.authorize_status = PAYMENT_FAILED

    declined = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-declined")

    assert declined.kind == ErrorKind.GATEWAY_ERROR
    db.expire_all()
    assert BookingRepository.get_booking(db, booking.id).payment_status == PAYMENT_FAILED

    gateway.authorize_status = PAYMENT_AUTHORIZED
    retried = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")

    assert retried.ok
    assert retried.data["gateway_ref"] == "pay_2"
    assert retried.booking.status == BOOKING_CONFIRMED
    assert ledger(db, booking.id) == [
        (TXN_AUTHORIZATION, TXN_FAILED),
        (TXN_AUTHORIZATION, TXN_AUTHORIZED),
    ]


# ----------------------------------------------------------------------
# Capture and completion
# ----------------------------------------------------------------------


def test_record_capture_without_authorization_conflicts(booking_service, make_booking, db):
    booking = make_booking()
    before = (booking.status, booking.payment_status, booking.updated_at)

    result = booking_service.record_capture(booking.id, "gw_123", 15000)

    assert result.ok is False
    assert result.kind == ErrorKind.STATE_CONFLICT
    db.expire_all()
    current = BookingRepository.get_booking(db, booking.id)
    assert (current.status, current.payment_status, current.updated_at) == before
    assert ledger(db, booking.id) == []


def test_record_capture_with_wrong_ref_conflicts(booking_service, make_booking):
    booking = make_booking()
    booking_service.record_authorization(booking.id, "gw_123", 15000)

    result = booking_service.record_capture(booking.id, "gw_other", 15000)

    assert result.kind == ErrorKind.STATE_CONFLICT


@pytest.mark.asyncio
async def test_full_lifecycle_completes_after_service_and_capture(
    booking_service, dispatch_service, make_worker, confirmed_booking, gateway, db
):
    booking = await confirmed_booking()
    await bind_worker(dispatch_service, make_worker, booking)

    started = booking_service.start_service(booking.id)
    assert started.booking.status == BOOKING_IN_PROGRESS

    done = booking_service.mark_service_done(booking.id)
    assert done.booking.status == BOOKING_IN_PROGRESS
    assert done.booking.service_completed_at is not None

    captured = await booking_service.capture_payment(booking.id)

    assert captured.ok
    assert captured.booking.status == BOOKING_COMPLETED
    assert captured.booking.payment_status == PAYMENT_PAID
    assert ledger(db, booking.id) == [
        (TXN_AUTHORIZATION, TXN_AUTHORIZED),
        (TXN_CAPTURE, TXN_COMPLETED),
    ]


@pytest.mark.asyncio
async def test_capture_before_service_done_does_not_complete(
    booking_service, dispatch_service, make_worker, confirmed_booking
):
    booking = await confirmed_booking()
    await bind_worker(dispatch_service, make_worker, booking)

    captured = await booking_service.capture_payment(booking.id)
    assert captured.booking.status == BOOKING_CONFIRMED
    assert captured.booking.payment_status == PAYMENT_PAID

    done = booking_service.mark_service_done(booking.id)
    assert done.booking.status == BOOKING_COMPLETED


@pytest.mark.asyncio
async def test_capture_payment_twice_calls_gateway_once(booking_service, confirmed_booking, gateway, db):
    booking = await confirmed_booking()

    await booking_service.capture_payment(booking.id)
    again = await booking_service.capture_payment(booking.id)

    assert again.ok
    assert gateway.count("capture") == 1
    assert ledger(db, booking.id).count((TXN_CAPTURE, TXN_COMPLETED)) == 1


@pytest.mark.asyncio
async def test_capture_timeout_after_gateway_captured_is_recorded(booking_service, confirmed_booking, gateway):
    booking = await confirmed_booking()
    gateway.set_status(booking.gateway_payment_ref, PAYMENT_PAID)
    gateway.errors["capture"] = GatewayError("read timeout")

    result = await booking_service.capture_payment(booking.id)

    assert result.ok
    assert result.booking.payment_status == PAYMENT_PAID


def test_start_service_requires_bound_worker(booking_service, make_booking):
    booking = make_booking()
    booking_service.record_authorization(booking.id, "gw_123", 15000)

    result = booking_service.start_service(booking.id)

    assert result.kind == ErrorKind.STATE_CONFLICT


# ----------------------------------------------------------------------
# Payment failures and refunds reported by the gateway
# ----------------------------------------------------------------------


def test_payment_failure_after_confirmation_needs_attention(booking_service, make_booking, db):
    booking = make_booking()
    booking_service.record_authorization(booking.id, "gw_123", 15000)

    result = booking_service.record_payment_failure(booking.id, "gw_123", "voided in dashboard")

    assert result.ok
    assert result.booking.payment_status == PAYMENT_FAILED
    assert result.booking.manual_attention_reason == "payment_failed"
    assert (TXN_AUTHORIZATION, TXN_FAILED) in ledger(db, booking.id)


@pytest.mark.asyncio
async def test_refund_cancels_open_booking(booking_service, confirmed_booking, db):
    booking = await confirmed_booking()
    await booking_service.capture_payment(booking.id)

    result = booking_service.record_refund(booking.id, booking.gateway_payment_ref, 15000)
    again = booking_service.record_refund(booking.id, booking.gateway_payment_ref, 15000)

    assert result.ok and again.ok
    assert result.booking.payment_status == PAYMENT_REFUNDED
    assert result.booking.status == BOOKING_CANCELLED
    assert ledger(db, booking.id).count((TXN_REFUND, TXN_COMPLETED)) == 1


def test_refund_requires_captured_payment(booking_service, make_booking):
    booking = make_booking()
    booking_service.record_authorization(booking.id, "gw_123", 15000)

    result = booking_service.record_refund(booking.id, "gw_123", 15000)

    assert result.kind == ErrorKind.STATE_CONFLICT


@pytest.mark.asyncio
async def test_refund_after_completion_keeps_booking_paid(
    booking_service, dispatch_service, make_worker, confirmed_booking, db
):
    booking = await confirmed_booking()
    await bind_worker(dispatch_service, make_worker, booking)
    booking_service.mark_service_done(booking.id)
    await booking_service.capture_payment(booking.id)

    result = booking_service.record_refund(booking.id, booking.gateway_payment_ref, 15000)
    again = booking_service.record_refund(booking.id, booking.gateway_payment_ref, 15000)

    assert result.ok and again.ok
    assert result.booking.status == BOOKING_COMPLETED
    assert result.booking.payment_status == PAYMENT_PAID
    assert result.booking.manual_attention_reason == "refunded_after_completion"
    assert ledger(db, booking.id).count((TXN_REFUND, TXN_COMPLETED)) == 1


# ----------------------------------------------------------------------
# Cancel
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_authorized_booking_voids_hold(booking_service, confirmed_booking, gateway, email_channel, db):
    booking = await confirmed_booking()

    result = await booking_service.cancel(booking.id, "customer changed plans")

    assert result.ok
    assert result.booking.status == BOOKING_CANCELLED
    assert result.booking.payment_status == PAYMENT_FAILED
    assert result.booking.cancellation_reason == "customer changed plans"
    assert gateway.payments[booking.gateway_payment_ref].status == PAYMENT_FAILED
    assert ledger(db, booking.id) == [
        (TXN_AUTHORIZATION, TXN_AUTHORIZED),
        (TXN_AUTHORIZATION, TXN_FAILED),
    ]
    assert [m["subject"] for m in email_channel.to("pat@example.com")] == [
        "Your booking is confirmed",
        "Your booking was cancelled",
    ]


@pytest.mark.asyncio
async def test_cancel_paid_booking_refunds(booking_service, confirmed_booking, db):
    booking = await confirmed_booking()
    await booking_service.capture_payment(booking.id)

    result = await booking_service.cancel(booking.id, "rained out")

    assert result.booking.status == BOOKING_CANCELLED
    assert result.booking.payment_status == PAYMENT_REFUNDED
    assert (TXN_REFUND, TXN_COMPLETED) in ledger(db, booking.id)


def finish_during_gateway_call(gateway, db, booking_id, **values):
    """Make cancel_or_refund move the booking on before the cancellation is written"""
    release = gateway.cancel_or_refund

    async def _release_then_move(gateway_ref, amount_cents=None):
        outcome = await release(gateway_ref, amount_cents)
        db.query(Booking).filter(Booking.id == booking_id).update(values, synchronize_session=False)
        db.commit()
        return outcome

    gateway.cancel_or_refund = _release_then_move


@pytest.mark.asyncio
async def test_refund_is_ledgered_when_booking_completes_during_cancel(
    booking_service, confirmed_booking, gateway, db
):
    booking = await confirmed_booking()
    await booking_service.capture_payment(booking.id)
    finish_during_gateway_call(
        gateway, db, booking.id, status=BOOKING_COMPLETED, service_completed_at=utcnow()
    )

    result = await booking_service.cancel(booking.id, "customer changed plans")

    assert result.kind == ErrorKind.STATE_CONFLICT
    db.expire_all()
    current = BookingRepository.get_booking(db, booking.id)
    assert current.status == BOOKING_COMPLETED
    assert current.payment_status == PAYMENT_PAID
    assert current.manual_attention_reason == "refunded_after_completion"
    assert (TXN_REFUND, TXN_COMPLETED) in ledger(db, booking.id)


@pytest.mark.asyncio
async def test_void_is_ledgered_and_flagged_when_booking_closes_during_cancel(
    booking_service, confirmed_booking, gateway, db
):
    booking = await confirmed_booking()
    finish_during_gateway_call(gateway, db, booking.id, status=BOOKING_CANCELLED)

    result = await booking_service.cancel(booking.id, None)

    assert result.kind == ErrorKind.STATE_CONFLICT
    db.expire_all()
    assert BookingRepository.get_booking(db, booking.id).manual_attention_reason == "gateway_mismatch"
    assert (TXN_AUTHORIZATION, TXN_FAILED) in ledger(db, booking.id)


@pytest.mark.asyncio
async def test_cancel_without_payment_skips_gateway(booking_service, make_booking, gateway):
    booking = make_booking()

    result = await booking_service.cancel(booking.id, None)

    assert result.booking.status == BOOKING_CANCELLED
    assert result.booking.payment_status == PAYMENT_PENDING
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_cancel_gateway_failure_leaves_booking_unchanged(booking_service, confirmed_booking, gateway, db):
    booking = await confirmed_booking()
    gateway.errors["cancel_or_refund"] = GatewayError("503 from gateway")

    result = await booking_service.cancel(booking.id, "duplicate")

    assert result.kind == ErrorKind.GATEWAY_ERROR
    db.expire_all()
    current = BookingRepository.get_booking(db, booking.id)
    assert current.status == BOOKING_CONFIRMED
    assert current.payment_status == PAYMENT_AUTHORIZED


@pytest.mark.asyncio
async def test_cancel_terminal_booking_conflicts(booking_service, make_booking):
    booking = make_booking()
    await booking_service.cancel(booking.id, None)

    result = await booking_service.cancel(booking.id, None)

    assert result.kind == ErrorKind.STATE_CONFLICT


# ----------------------------------------------------------------------
# Expire
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expire_inside_grace_period_conflicts(booking_service, make_booking):
    booking = make_booking()

    result = await booking_service.expire(booking.id, now=utcnow())

    assert result.kind == ErrorKind.STATE_CONFLICT


@pytest.mark.asyncio
async def test_expire_after_grace_period_without_ref(booking_service, make_booking, gateway):
    booking = make_booking()

    result = await booking_service.expire(booking.id, now=utcnow() + timedelta(minutes=181))

    assert result.ok
    assert result.booking.status == BOOKING_EXPIRED
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_expire_voids_dangling_authorization(booking_service, make_booking, gateway, db):
    booking = make_booking()
    gateway.authorize_status = "pending"
    checkout = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")
    gateway.set_status(checkout.data["gateway_ref"], PAYMENT_AUTHORIZED)

    result = await booking_service.expire(booking.id, now=utcnow() + timedelta(minutes=181))

    assert result.ok
    assert result.booking.status == BOOKING_EXPIRED
    assert result.booking.payment_status == PAYMENT_FAILED
    assert gateway.payments["pay_1"].status == PAYMENT_FAILED
    assert ledger(db, booking.id) == [(TXN_AUTHORIZATION, TXN_FAILED)]


@pytest.mark.asyncio
async def test_expire_refuses_when_gateway_captured(booking_service, make_booking, gateway):
    booking = make_booking()
    gateway.authorize_status = "pending"
    checkout = await booking_service.begin_checkout(booking.id, "cnon:card-nonce-ok")
    gateway.set_status(checkout.data["gateway_ref"], PAYMENT_PAID)

    result = await booking_service.expire(booking.id, now=utcnow() + timedelta(minutes=181))

    assert result.kind == ErrorKind.STATE_CONFLICT


# ----------------------------------------------------------------------
# Status view
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_status_view_flags_confirmed_booking_awaiting_dispatch(booking_service, confirmed_booking):
    booking = await confirmed_booking()

    status = booking_service.get_booking_status(booking.id)

    assert status["status"] == BOOKING_CONFIRMED
    assert status["payment_status"] == PAYMENT_AUTHORIZED
    assert status["dispatch_status"] == DISPATCH_UNASSIGNED
    assert status["awaiting_dispatch"] is True
    assert status["label"] == "Booking Confirmed"
    assert status["action_required"] is False


def test_status_view_for_pending_payment(booking_service, make_booking):
    booking = make_booking()

    status = booking_service.get_booking_status(booking.id)

    assert status["label"] == "Payment Pending"
    assert status["action_required"] is True
