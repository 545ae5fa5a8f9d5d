"""Booking domain schemas - Pydantic models for validation"""

from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ...config import DEFAULT_JOB_DURATION_MINUTES
from ...shared.validators import validate_email, validate_us_phone


class GuestContact(BaseModel):
    """Contact details for a customer booking without an account"""

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v:
            return validate_us_phone(v)
        return v

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v):
        if v:
            return validate_email(v)
        return v


class LineItem(BaseModel):
    name: str
    quantity: int = 1
    unit_price_cents: int


class BookingIntake(BaseModel):
    """Schema for creating a booking"""

    customer_id: Optional[str] = None
    guest: Optional[GuestContact] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None

    zipcode: str
    address: Optional[str] = None
    location_notes: Optional[str] = None
    scheduled_date: date
    scheduled_start: time
    duration_minutes: int = DEFAULT_JOB_DURATION_MINUTES

    line_items: list[LineItem] = []
    # Admin-created bookings collected later start in "pending"
    defer_payment: bool = False

    @field_validator("contact_phone")
    @classmethod
    def validate_phone(cls, v):
        if v:
            return validate_us_phone(v)
        return v

    @field_validator("contact_email")
    @classmethod
    def validate_email_format(cls, v):
        if v:
            return validate_email(v)
        return v


class CheckoutRequest(BaseModel):
    source_id: str  # card nonce / token from the payment form


class AuthorizationRecord(BaseModel):
    gateway_ref: str
    amount_cents: int


class CaptureRecord(BaseModel):
    gateway_ref: str
    amount_cents: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    payment_status: str
    dispatch_status: str
    worker_id: Optional[str] = None
    gateway_payment_ref: Optional[str] = None
    zipcode: str
    scheduled_date: date
    scheduled_start: time
    amount_cents: int
    manual_attention_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OperationResponse(BaseModel):
    ok: bool
    booking: Optional[BookingResponse] = None
    kind: Optional[str] = None
    message: Optional[str] = None
    data: Optional[dict] = None


class BookingStatusResponse(BaseModel):
    booking_id: str
    status: str
    payment_status: str
    dispatch_status: str
    worker_id: Optional[str] = None
    awaiting_dispatch: bool
    manual_attention_reason: Optional[str] = None
    label: str
    message: str
    action_required: bool
