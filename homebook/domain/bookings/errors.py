"""Fulfillment error taxonomy shared by bookings, dispatch and payments"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    STATE_CONFLICT = "state_conflict"
    GATEWAY_ERROR = "gateway_error"
    DISPATCH_EXHAUSTED = "dispatch_exhausted"
    NOT_FOUND = "not_found"


class FulfillmentError(Exception):
    """
    Base error for fulfillment operations.

    `str(err)` is the precise internal reason (logged, stored in the ledger);
    `user_message` is what the caller is shown.
    """

    kind = ErrorKind.VALIDATION_ERROR
    default_user_message: Optional[str] = None

    def __init__(self, message: str, user_message: Optional[str] = None, booking=None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message or message
        # Current booking state, returned alongside non-fatal failures
        self.booking = booking


class BookingValidationError(FulfillmentError):
    """Bad intake; never retried"""

    kind = ErrorKind.VALIDATION_ERROR


class BookingNotFound(FulfillmentError):
    kind = ErrorKind.NOT_FOUND


class StateConflict(FulfillmentError):
    """Precondition not met: out-of-order callback, lost race, wrong state"""

    kind = ErrorKind.STATE_CONFLICT


class JobAlreadyTaken(StateConflict):
    default_user_message = "This job is no longer available."


class GatewayError(FulfillmentError):
    """Payment processor unreachable or rejected the call"""

    kind = ErrorKind.GATEWAY_ERROR
    default_user_message = "Payment was not completed."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        recoverable: bool = True,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, user_message)
        self.recoverable = recoverable
        self.status_code = status_code


class DispatchExhausted(FulfillmentError):
    """No eligible workers; surfaced for manual follow-up"""

    kind = ErrorKind.DISPATCH_EXHAUSTED
    default_user_message = "No workers are available for this location. Our team will follow up."
