"""
Coverage Resolver

Answers "which workers can service this location and slot?".
Distances are computed between ZIP centroids from the zipcodes library, so
no geocoding provider is involved.

Priority tiers (lower is better):
    1 - worker lists the booking's ZIP as a service area
    2 - within NEARBY_RADIUS_MILES of one of the worker's ZIPs
    3 - within the worker's own service radius
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

import zipcodes
from sqlalchemy.orm import Session, selectinload

from ..config import DEFAULT_JOB_DURATION_MINUTES, DEFAULT_SERVICE_RADIUS_MILES, NEARBY_RADIUS_MILES
from ..models import BOOKING_CANCELLED, BOOKING_EXPIRED, Booking
from ..models_worker import Worker, WorkerServiceArea
from ..shared.validators import normalize_zipcode

logger = logging.getLogger(__name__)

PRIORITY_SAME_ZIP = 1
PRIORITY_NEARBY = 2
PRIORITY_REGIONAL = 3

EARTH_RADIUS_MILES = 3958.8


@dataclass
class CoverageCandidate:
    worker_id: str
    priority: int
    distance_miles: float
    is_available: bool = False


@dataclass
class CoverageResult:
    eligible: list = field(default_factory=list)  # CoverageCandidate, best first

    @property
    def has_coverage(self) -> bool:
        return bool(self.eligible)

    @property
    def available(self) -> list:
        return [c for c in self.eligible if c.is_available]


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def lookup_zipcode(zipcode: str) -> Optional[dict]:
    """
    Location data for a ZIP code from the zipcodes library.
    Returns {zipcode, city, state, latitude, longitude} or None if unknown.
    """
    normalized = normalize_zipcode(zipcode)
    if not normalized:
        return None

    matches = zipcodes.matching(normalized)
    if not matches:
        logger.debug(f"ZIP code {normalized} not found in database")
        return None

    zip_data = matches[0]
    try:
        latitude = float(zip_data["lat"])
        longitude = float(zip_data["long"])
    except (KeyError, TypeError, ValueError):
        logger.debug(f"ZIP code {normalized} has no usable coordinates")
        return None

    return {
        "zipcode": normalized,
        "city": zip_data.get("city"),
        "state": (zip_data.get("state") or "").upper(),
        "latitude": latitude,
        "longitude": longitude,
    }


class CoverageResolver:
    """Resolves eligible workers for a booking location and time slot"""

    def __init__(self, db: Session):
        self.db = db

    def resolve_location(self, zipcode: str) -> Optional[dict]:
        return lookup_zipcode(zipcode)

    def resolve_coverage(
        self,
        zipcode: str,
        scheduled_date: Optional[date] = None,
        scheduled_start: Optional[time] = None,
        duration_minutes: int = DEFAULT_JOB_DURATION_MINUTES,
        exclude_booking_id: Optional[str] = None,
    ) -> CoverageResult:
        location = lookup_zipcode(zipcode)
        if not location:
            logger.warning(f"⚠️ Cannot resolve coverage for unknown ZIP {zipcode}")
            return CoverageResult()

        workers = (
            self.db.query(Worker)
            .options(selectinload(Worker.service_areas), selectinload(Worker.availability))
            .filter(Worker.is_active.is_(True))
            .all()
        )

        eligible = []
        for worker in workers:
            tier = self._coverage_tier(worker, location)
            if tier is None:
                continue
            priority, distance = tier
            candidate = CoverageCandidate(
                worker_id=worker.id, priority=priority, distance_miles=round(distance, 2)
            )
            if scheduled_date and scheduled_start:
                candidate.is_available = self._is_available(
                    worker, scheduled_date, scheduled_start, duration_minutes, exclude_booking_id
                )
            eligible.append(candidate)

        eligible.sort(key=lambda c: (c.priority, c.distance_miles, c.worker_id))
        logger.info(
            f"📍 Coverage for {location['zipcode']}: {len(eligible)} eligible, "
            f"{sum(1 for c in eligible if c.is_available)} available"
        )
        return CoverageResult(eligible=eligible)

    def _coverage_tier(self, worker: Worker, location: dict) -> Optional[tuple]:
        best = None
        radius = worker.service_radius_miles or DEFAULT_SERVICE_RADIUS_MILES

        for area in worker.service_areas:
            if area.zipcode == location["zipcode"]:
                return PRIORITY_SAME_ZIP, 0.0

            coords = self._area_coordinates(area)
            if not coords:
                continue
            distance = haversine_miles(
                location["latitude"], location["longitude"], coords[0], coords[1]
            )
            if distance <= NEARBY_RADIUS_MILES:
                tier = (PRIORITY_NEARBY, distance)
            elif distance <= radius:
                tier = (PRIORITY_REGIONAL, distance)
            else:
                continue
            if best is None or tier < best:
                best = tier

        return best

    def _area_coordinates(self, area: WorkerServiceArea) -> Optional[tuple]:
        if area.latitude is not None and area.longitude is not None:
            return area.latitude, area.longitude
        location = lookup_zipcode(area.zipcode)
        if not location:
            return None
        return location["latitude"], location["longitude"]

    def _is_available(
        self,
        worker: Worker,
        scheduled_date: date,
        scheduled_start: time,
        duration_minutes: int,
        exclude_booking_id: Optional[str],
    ) -> bool:
        """Weekly availability covers the slot and no other live booking overlaps it"""
        slot_start = datetime.combine(scheduled_date, scheduled_start)
        slot_end = slot_start + timedelta(minutes=duration_minutes)

        covers_slot = any(
            window.day_of_week == scheduled_date.weekday()
            and datetime.combine(scheduled_date, window.start_time) <= slot_start
            and datetime.combine(scheduled_date, window.end_time) >= slot_end
            for window in worker.availability
        )
        if not covers_slot:
            return False

        query = self.db.query(Booking).filter(
            Booking.worker_id == worker.id,
            Booking.scheduled_date == scheduled_date,
            Booking.status.notin_((BOOKING_CANCELLED, BOOKING_EXPIRED)),
        )
        if exclude_booking_id:
            query = query.filter(Booking.id != exclude_booking_id)

        for other in query.all():
            other_start = datetime.combine(other.scheduled_date, other.scheduled_start)
            other_end = other_start + timedelta(minutes=other.duration_minutes)
            if other_start < slot_end and slot_start < other_end:
                return False
        return True

