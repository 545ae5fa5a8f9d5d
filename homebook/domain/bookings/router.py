"""Bookings router - FastAPI endpoints for the booking lifecycle"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...database import get_db
from ...models import BOOKING_CONFIRMED, DISPATCH_UNASSIGNED, PAYMENT_AUTHORIZED
from ...utils.jobs import JobQueue, get_job_queue
from ..payments.gateway import get_payment_gateway
from .errors import BookingNotFound
from .responses import operation_response
from .schemas import (
    AuthorizationRecord,
    BookingIntake,
    BookingStatusResponse,
    CancelRequest,
    CaptureRecord,
    CheckoutRequest,
)
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_booking_service(db: Session = Depends(get_db), gateway=Depends(get_payment_gateway)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, gateway=gateway)


async def _queue_dispatch_if_confirmed(result, jobs: JobQueue) -> None:
    booking = result.booking
    if result.ok and booking.status == BOOKING_CONFIRMED and booking.dispatch_status == DISPATCH_UNASSIGNED:
        await jobs.enqueue("dispatch_booking_task", booking.id)


# ============================================================================
# INTAKE & STATUS
# ============================================================================


@router.post("")
async def create_booking(body: BookingIntake, service: BookingService = Depends(get_booking_service)):
    """Create a booking. Payment and dispatch are separate steps."""
    return operation_response(service.create_booking(body), success_status=201)


@router.get("/{booking_id}/status", response_model=BookingStatusResponse)
async def get_booking_status(booking_id: str, service: BookingService = Depends(get_booking_service)):
    try:
        return service.get_booking_status(booking_id)
    except BookingNotFound as e:
        raise HTTPException(status_code=404, detail=e.user_message) from e


# ============================================================================
# PAYMENT
# ============================================================================


@router.post("/{booking_id}/checkout")
async def begin_checkout(
    booking_id: str,
    body: CheckoutRequest,
    service: BookingService = Depends(get_booking_service),
    jobs: JobQueue = Depends(get_job_queue),
):
    """Authorize the booking's amount with the card token from the payment form"""
    result = await service.begin_checkout(booking_id, body.source_id)
    await _queue_dispatch_if_confirmed(result, jobs)
    return operation_response(result)


@router.post("/{booking_id}/authorization")
async def record_authorization(
    booking_id: str,
    body: AuthorizationRecord,
    service: BookingService = Depends(get_booking_service),
    jobs: JobQueue = Depends(get_job_queue),
):
    result = service.record_authorization(booking_id, body.gateway_ref, body.amount_cents)
    if result.ok and result.data["confirmed"]:
        await service.send_booking_confirmation(result.booking)
    await _queue_dispatch_if_confirmed(result, jobs)
    return operation_response(result)


@router.post("/{booking_id}/capture")
async def capture_payment(booking_id: str, service: BookingService = Depends(get_booking_service)):
    """Capture the held authorization at the gateway"""
    return operation_response(await service.capture_payment(booking_id))


@router.post("/{booking_id}/capture/record")
async def record_capture(
    booking_id: str,
    body: CaptureRecord,
    service: BookingService = Depends(get_booking_service),
):
    """Record a capture that already happened at the gateway"""
    return operation_response(service.record_capture(booking_id, body.gateway_ref, body.amount_cents))


# ============================================================================
# SERVICE DELIVERY
# ============================================================================


@router.post("/{booking_id}/start")
async def start_service(booking_id: str, service: BookingService = Depends(get_booking_service)):
    return operation_response(service.start_service(booking_id))


@router.post("/{booking_id}/complete")
async def mark_service_done(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    jobs: JobQueue = Depends(get_job_queue),
):
    """Signal that the service was delivered; capture is queued in the background"""
    result = service.mark_service_done(booking_id)
    if result.ok and result.booking.payment_status == PAYMENT_AUTHORIZED:
        await jobs.enqueue("capture_payment_task", booking_id)
    return operation_response(result)


# ============================================================================
# EXITS
# ============================================================================


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    body: CancelRequest,
    service: BookingService = Depends(get_booking_service),
):
    return operation_response(await service.cancel(booking_id, body.reason))


@router.post("/{booking_id}/expire")
async def expire_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    return operation_response(await service.expire(booking_id))
