"""
Gateway status normalization

Every status string the processor can report is translated here and nowhere
else. Unknown values fail closed to "failed" so a new gateway status is never
mistaken for money being held or moved.
"""

import logging
from typing import Optional

from ...models import PAYMENT_AUTHORIZED, PAYMENT_FAILED, PAYMENT_PAID, PAYMENT_REFUNDED

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP = {
    # Funds held, not yet transferred
    "requires_capture": PAYMENT_AUTHORIZED,
    "approved": PAYMENT_AUTHORIZED,  # Square, autocomplete=false
    "authorized": PAYMENT_AUTHORIZED,
    # Funds transferred
    "succeeded": PAYMENT_PAID,
    "captured": PAYMENT_PAID,
    "completed": PAYMENT_PAID,  # Square
    "paid": PAYMENT_PAID,
    # Nothing held or moved
    "canceled": PAYMENT_FAILED,
    "cancelled": PAYMENT_FAILED,
    "failed": PAYMENT_FAILED,
    "payment_failed": PAYMENT_FAILED,
    "voided": PAYMENT_FAILED,
    # Funds returned
    "refunded": PAYMENT_REFUNDED,
}


def normalize_gateway_status(raw_status: Optional[str]) -> str:
    """Map a raw gateway status onto authorized / paid / failed / refunded"""
    key = (raw_status or "").strip().lower()
    normalized = GATEWAY_STATUS_MAP.get(key)
    if normalized is None:
        logger.warning(f"⚠️ Unknown gateway status '{raw_status}', treating as failed")
        return PAYMENT_FAILED
    return normalized
