"""
Payment gateway adapter - Square Payments API with delayed capture
https://developer.squareup.com/docs/payments-api/take-payments/card-payments/delayed-capture

The fulfillment core only ever sees normalized statuses (authorized, paid,
failed, refunded). Any object exposing authorize / capture / retrieve /
cancel_or_refund with these signatures can stand in for the Square client.
"""

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from ...config import (
    GATEWAY_MAX_RETRIES,
    GATEWAY_RETRY_BASE_DELAY,
    GATEWAY_TIMEOUT_SECONDS,
    PAYMENT_CURRENCY,
    SQUARE_ACCESS_TOKEN,
    SQUARE_API_VERSION,
    SQUARE_ENVIRONMENT,
    SQUARE_LOCATION_ID,
)
from ...models import PAYMENT_AUTHORIZED, PAYMENT_PAID, PAYMENT_REFUNDED
from ..bookings.errors import GatewayError
from .status_mapping import normalize_gateway_status

logger = logging.getLogger(__name__)

SQUARE_PRODUCTION_URL = "https://connect.squareup.com"
SQUARE_SANDBOX_URL = "https://connect.squareupsandbox.com"

PATH_CANCEL = "cancel"
PATH_REFUND = "refund"
PATH_NOOP = "noop"

_IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c9b1e-3f5a-4c1e-9d65-8a2f3e7b4c10")


@dataclass
class GatewayPayment:
    ref: str
    status: str  # normalized
    amount_cents: int
    raw_status: Optional[str] = None
    refunded_cents: int = 0
    reference_id: Optional[str] = None


@dataclass
class CancelOrRefundOutcome:
    path: str  # cancel, refund, noop
    status: str  # normalized status after the call


def idempotency_key(*parts) -> str:
    """Deterministic key so a retried call is recognised by the gateway, never re-executed"""
    return str(uuid.uuid5(_IDEMPOTENCY_NAMESPACE, ":".join(str(p) for p in parts)))


def with_gateway_retry(max_retries: Optional[int] = None, base_delay: Optional[float] = None):
    """
    Retry gateway calls on transient failures with exponential backoff.

    Transport errors, timeouts, 429 and 5xx responses are retried; anything the
    gateway rejected outright (4xx) is raised immediately. Safe only because
    every mutating call carries a deterministic idempotency key.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retries = GATEWAY_MAX_RETRIES if max_retries is None else max_retries
            delay_base = GATEWAY_RETRY_BASE_DELAY if base_delay is None else base_delay
            last_error = None

            for attempt in range(retries + 1):
                try:
                    return await func(*args, **kwargs)
                except httpx.TransportError as e:
                    last_error = GatewayError(f"Gateway unreachable: {e}", recoverable=True)
                except GatewayError as e:
                    if not e.recoverable:
                        raise
                    last_error = e

                if attempt < retries:
                    delay = delay_base * (2**attempt)
                    logger.warning(
                        f"⚠️ Gateway call {func.__name__} failed (attempt {attempt + 1}/{retries + 1}), "
                        f"retrying in {delay:.1f}s: {last_error}"
                    )
                    await asyncio.sleep(delay)

            logger.error(f"❌ Gateway call {func.__name__} failed after {retries + 1} attempts: {last_error}")
            raise last_error

        return wrapper

    return decorator


def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return response.text[:200]
    if not errors:
        return response.text[:200]
    return "; ".join(f"{e.get('code')}: {e.get('detail')}" for e in errors)


def parse_square_payment(payment: dict) -> GatewayPayment:
    """Translate a Square Payment object into a GatewayPayment"""
    raw_status = payment.get("status")
    amount = (payment.get("amount_money") or {}).get("amount") or 0
    refunded = (payment.get("refunded_money") or {}).get("amount") or 0

    status = normalize_gateway_status(raw_status)
    # Square keeps a refunded payment COMPLETED and reports the refund separately
    if status == PAYMENT_PAID and amount and refunded >= amount:
        status = PAYMENT_REFUNDED

    return GatewayPayment(
        ref=payment["id"],
        status=status,
        amount_cents=int(amount),
        raw_status=raw_status,
        refunded_cents=int(refunded),
        reference_id=payment.get("reference_id"),
    )


class SquarePaymentGateway:
    """Square Payments API client used by the booking state machine"""

    def __init__(
        self,
        access_token: Optional[str] = SQUARE_ACCESS_TOKEN,
        location_id: Optional[str] = SQUARE_LOCATION_ID,
        environment: str = SQUARE_ENVIRONMENT,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.location_id = location_id
        self.timeout = timeout
        self.base_url = SQUARE_PRODUCTION_URL if environment == "production" else SQUARE_SANDBOX_URL
        self._transport = transport

        if not self.access_token:
            logger.warning("SQUARE_ACCESS_TOKEN not set; payment calls will fail until configured")

    def _headers(self) -> dict:
        return {
            "Square-Version": SQUARE_API_VERSION,
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @with_gateway_retry()
    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        if not self.access_token:
            raise GatewayError("Square access token not configured", recoverable=False)

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as http_client:
            response = await http_client.request(method, path, json=payload, headers=self._headers())

        if response.status_code in (200, 201):
            return response.json()

        detail = _error_detail(response)
        recoverable = response.status_code == 429 or response.status_code >= 500
        raise GatewayError(
            f"Square {method} {path} failed [{response.status_code}]: {detail}",
            recoverable=recoverable,
            status_code=response.status_code,
        )

    async def authorize(
        self,
        amount_cents: int,
        customer_ref: Optional[str],
        source_id: str,
        idempotency_key: str,
        reference_id: Optional[str] = None,
    ) -> GatewayPayment:
        """Create a payment with autocomplete disabled so funds are only held"""
        payload = {
            "source_id": source_id,
            "idempotency_key": idempotency_key,
            "amount_money": {"amount": amount_cents, "currency": PAYMENT_CURRENCY},
            "autocomplete": False,
            "location_id": self.location_id,
        }
        if reference_id:
            payload["reference_id"] = reference_id
        if customer_ref and "@" in customer_ref:
            payload["buyer_email_address"] = customer_ref

        logger.info(f"💳 Authorizing ${amount_cents / 100:.2f} for {reference_id or customer_ref}")
        data = await self._request("POST", "/v2/payments", payload)
        payment = parse_square_payment(data["payment"])
        logger.info(f"✅ Payment {payment.ref} created with status {payment.raw_status}")
        return payment

    async def capture(self, gateway_ref: str) -> GatewayPayment:
        logger.info(f"💰 Capturing payment {gateway_ref}")
        data = await self._request("POST", f"/v2/payments/{gateway_ref}/complete", {})
        return parse_square_payment(data["payment"])

    async def retrieve(self, gateway_ref: str) -> GatewayPayment:
        data = await self._request("GET", f"/v2/payments/{gateway_ref}")
        return parse_square_payment(data["payment"])

    async def cancel_or_refund(
        self, gateway_ref: str, amount_cents: Optional[int] = None
    ) -> CancelOrRefundOutcome:
        """
        Release money held or moved for a payment.

        Inspects the gateway first: an authorization is voided, a captured
        payment is refunded (fully unless amount_cents is given), anything else
        needs no call.
        """
        payment = await self.retrieve(gateway_ref)

        if payment.status == PAYMENT_AUTHORIZED:
            logger.info(f"↩️ Cancelling authorization {gateway_ref}")
            data = await self._request("POST", f"/v2/payments/{gateway_ref}/cancel", {})
            cancelled = parse_square_payment(data["payment"])
            return CancelOrRefundOutcome(path=PATH_CANCEL, status=cancelled.status)

        if payment.status == PAYMENT_PAID:
            refund_amount = amount_cents or (payment.amount_cents - payment.refunded_cents)
            logger.info(f"↩️ Refunding ${refund_amount / 100:.2f} on payment {gateway_ref}")
            data = await self._request(
                "POST",
                "/v2/refunds",
                {
                    "idempotency_key": idempotency_key(gateway_ref, "refund", refund_amount),
                    "payment_id": gateway_ref,
                    "amount_money": {"amount": refund_amount, "currency": PAYMENT_CURRENCY},
                },
            )
            refund_status = (data.get("refund") or {}).get("status", "")
            if refund_status.upper() in ("REJECTED", "FAILED"):
                raise GatewayError(
                    f"Refund for {gateway_ref} was {refund_status}", recoverable=False
                )
            return CancelOrRefundOutcome(path=PATH_REFUND, status=PAYMENT_REFUNDED)

        logger.info(f"Payment {gateway_ref} is {payment.status}; nothing to cancel or refund")
        return CancelOrRefundOutcome(path=PATH_NOOP, status=payment.status)


payment_gateway = SquarePaymentGateway()


def get_payment_gateway() -> SquarePaymentGateway:
    """Dependency injection for the payment gateway"""
    return payment_gateway
