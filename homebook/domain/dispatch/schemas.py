"""Dispatch domain schemas"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator


class RespondRequest(BaseModel):
    response: Literal["accepted", "declined"]

    @field_validator("response", mode="before")
    @classmethod
    def normalize_response(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class CoverageNotificationResponse(BaseModel):
    id: int
    booking_id: str
    worker_id: str
    priority: int
    distance_miles: Optional[float] = None
    delivery_status: str
    sent_at: Optional[datetime] = None
    response: Optional[str] = None
    responded_at: Optional[datetime] = None
    is_closed: bool
