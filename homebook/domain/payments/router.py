"""
Payment gateway webhooks
Square notifies us of payment and refund changes; each event is routed
through the booking state machine.

Every well-signed event is acknowledged, even when it cannot be applied:
duplicates are no-ops, out-of-order events are rejected by the state machine
and the reconciliation job converges the booking later.
"""

import base64
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ... import config
from ...database import get_db
from .gateway import get_payment_gateway, parse_square_payment
from .service import PaymentSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

PAYMENT_EVENTS = ("payment.created", "payment.updated")
REFUND_EVENTS = ("refund.created", "refund.updated")


def get_payment_sync_service(
    db: Session = Depends(get_db), gateway=Depends(get_payment_gateway)
) -> PaymentSyncService:
    """Dependency injection for PaymentSyncService"""
    return PaymentSyncService(db, gateway=gateway)


def verify_square_signature(body: bytes, signature: str, notification_url: str) -> bool:
    """
    Verify Square webhook signature
    https://developer.squareup.com/docs/webhooks/step3validate

    Square signs HMAC-SHA256(signature_key, notification_url + request_body), base64 encoded.
    """
    signature_key = config.SQUARE_WEBHOOK_SIGNATURE_KEY
    if not signature_key:
        logger.warning("⚠️ SQUARE_WEBHOOK_SIGNATURE_KEY not configured, skipping verification")
        return True

    message = notification_url.encode("utf-8") + body
    computed = base64.b64encode(
        hmac.new(signature_key.encode("utf-8"), message, hashlib.sha256).digest()
    ).decode("utf-8")

    is_valid = hmac.compare_digest(computed, signature or "")
    if not is_valid:
        logger.warning(f"⚠️ Signature mismatch - Expected: {computed[:20]}..., Got: {(signature or '')[:20]}...")
    return is_valid


@router.post("/payments")
async def handle_payment_webhook(
    request: Request, service: PaymentSyncService = Depends(get_payment_sync_service)
):
    """
    Handle Square payment webhook events

    Events handled:
    - payment.created / payment.updated - authorization, capture, void
    - refund.created / refund.updated - refunds issued from the Square dashboard
    """
    body = await request.body()
    signature = request.headers.get("x-square-hmacsha256-signature", "")
    notification_url = config.SQUARE_WEBHOOK_URL or str(request.url)

    if not verify_square_signature(body, signature, notification_url):
        logger.error("❌ Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error("❌ Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON") from None

    event_type = payload.get("type")
    event_object = (payload.get("data") or {}).get("object") or {}
    logger.info(f"📥 Received Square webhook: {event_type} ({payload.get('event_id')})")

    if event_type in PAYMENT_EVENTS:
        outcome = await handle_payment_event(event_object.get("payment") or {}, service)
    elif event_type in REFUND_EVENTS:
        outcome = await handle_refund_event(event_object.get("refund") or {}, service)
    else:
        logger.info(f"ℹ️ Unhandled event type: {event_type}")
        outcome = {"action": "none", "ok": True, "kind": None}

    return {"status": "success", "event_type": event_type, **outcome}


async def handle_payment_event(payment_data: dict, service: PaymentSyncService) -> dict:
    if not payment_data.get("id"):
        logger.warning("⚠️ No payment ID in webhook payload")
        return {"action": "none", "ok": True, "kind": None}

    payment = parse_square_payment(payment_data)
    booking = service.find_booking(payment)
    if not booking:
        logger.warning(f"⚠️ No booking found for Square payment: {payment.ref}")
        return {"action": "none", "ok": True, "kind": None}

    logger.info(f"💳 Payment event {payment.ref} ({payment.raw_status}) for booking {booking.id}")
    return await service.apply_gateway_payment(booking, payment)


async def handle_refund_event(refund_data: dict, service: PaymentSyncService) -> dict:
    payment_ref = refund_data.get("payment_id")
    refund_status = (refund_data.get("status") or "").upper()
    refund_amount = (refund_data.get("amount_money") or {}).get("amount") or 0

    if refund_status != "COMPLETED" or not payment_ref:
        logger.info(f"ℹ️ Refund {refund_data.get('id')} is {refund_status or 'unknown'}; waiting for completion")
        return {"action": "none", "ok": True, "kind": None}

    booking = service.repo.get_booking_by_gateway_ref(service.db, payment_ref)
    if not booking:
        logger.warning(f"⚠️ No booking found for refunded Square payment: {payment_ref}")
        return {"action": "none", "ok": True, "kind": None}

    if refund_amount < booking.amount_cents:
        logger.warning(
            f"⚠️ Partial refund of ${refund_amount / 100:.2f} on booking {booking.id}; "
            "booking stays paid"
        )
        return {"action": "none", "ok": True, "kind": None}

    result = service.bookings.record_refund(booking.id, payment_ref, refund_amount)
    return {
        "action": "refunded" if result.ok else "rejected",
        "ok": result.ok,
        "kind": result.kind.value if result.kind else None,
    }
