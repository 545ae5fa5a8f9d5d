"""Dispatch router - FastAPI endpoints for worker dispatch"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...database import get_db
from ..bookings.errors import BookingNotFound
from ..bookings.responses import operation_response
from .schemas import CoverageNotificationResponse, RespondRequest
from .service import DispatchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dispatch", tags=["Dispatch"])


def get_dispatch_service(db: Session = Depends(get_db)) -> DispatchService:
    """Dependency injection for DispatchService"""
    return DispatchService(db)


@router.post("/{booking_id}")
async def dispatch_booking(booking_id: str, service: DispatchService = Depends(get_dispatch_service)):
    """Assign a worker directly or open a broadcast to every eligible worker"""
    return operation_response(await service.dispatch(booking_id))


@router.post("/notifications/{notification_id}/respond")
async def respond_to_notification(
    notification_id: int,
    body: RespondRequest,
    service: DispatchService = Depends(get_dispatch_service),
):
    """Accept or decline a coverage request. Only the first acceptance wins."""
    return operation_response(await service.respond(notification_id, body.response))


@router.get("/{booking_id}/notifications", response_model=list[CoverageNotificationResponse])
async def list_notifications(booking_id: str, service: DispatchService = Depends(get_dispatch_service)):
    try:
        return service.list_notifications(booking_id)
    except BookingNotFound as e:
        raise HTTPException(status_code=404, detail=e.user_message) from e
