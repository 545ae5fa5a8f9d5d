from datetime import time

import pytest

from homebook.domain.bookings.repository import BookingRepository
from homebook.models import BOOKING_CANCELLED
from homebook.models_worker import Worker
from homebook.services.coverage_resolver import (
    PRIORITY_NEARBY,
    PRIORITY_REGIONAL,
    PRIORITY_SAME_ZIP,
    CoverageResolver,
    haversine_miles,
    lookup_zipcode,
)


@pytest.fixture
def resolver(db):
    return CoverageResolver(db)


def test_haversine_is_zero_for_same_point():
    assert haversine_miles(40.75, -73.99, 40.75, -73.99) == 0


def test_haversine_new_york_to_los_angeles():
    assert haversine_miles(40.7128, -74.0060, 34.0522, -118.2437) == pytest.approx(2445, rel=0.01)


def test_lookup_zipcode_normalizes_plus_four():
    location = lookup_zipcode("10001-1234")

    assert location["zipcode"] == "10001"
    assert location["state"] == "NY"


@pytest.mark.parametrize("zipcode", ["00000", "abc", "", None])
def test_lookup_zipcode_unknown(zipcode):
    assert lookup_zipcode(zipcode) is None


def test_unknown_zip_has_no_coverage(resolver, make_worker):
    make_worker()

    result = resolver.resolve_coverage("00000")

    assert result.has_coverage is False
    assert result.eligible == []


def test_priority_tiers(resolver, make_worker):
    same_zip = make_worker(zipcodes=("10001",))
    nearby = make_worker(zipcodes=("10011",))
    regional = make_worker(zipcodes=("06901",), radius=50)
    make_worker(zipcodes=("06901",))  # outside the default radius
    make_worker(zipcodes=("90210",))

    result = resolver.resolve_coverage("10001")

    assert [(c.worker_id, c.priority) for c in result.eligible] == [
        (same_zip.id, PRIORITY_SAME_ZIP),
        (nearby.id, PRIORITY_NEARBY),
        (regional.id, PRIORITY_REGIONAL),
    ]
    assert result.eligible[0].distance_miles == 0.0
    assert result.eligible[1].distance_miles < result.eligible[2].distance_miles


def test_best_service_area_wins(resolver, make_worker):
    worker = make_worker(zipcodes=("06901", "10011"), radius=50)

    [candidate] = resolver.resolve_coverage("10001").eligible

    assert candidate.worker_id == worker.id
    assert candidate.priority == PRIORITY_NEARBY


def test_inactive_workers_are_ignored(resolver, make_worker, db):
    worker = make_worker()
    db.query(Worker).filter(Worker.id == worker.id).update({"is_active": False})
    db.commit()

    assert resolver.resolve_coverage("10001").has_coverage is False


def test_availability_requires_a_slot(resolver, make_worker):
    make_worker()

    result = resolver.resolve_coverage("10001")

    assert result.has_coverage
    assert result.available == []


def test_availability_window_must_cover_whole_job(resolver, make_worker, service_date):
    make_worker()

    inside = resolver.resolve_coverage("10001", service_date, time(9, 0), 120)
    late = resolver.resolve_coverage("10001", service_date, time(17, 0), 120)

    assert len(inside.available) == 1
    assert late.available == []
    assert late.has_coverage


def test_worker_without_hours_that_day_is_eligible_but_unavailable(resolver, make_worker, service_date):
    make_worker(available=False)

    result = resolver.resolve_coverage("10001", service_date, time(10, 0), 120)

    assert result.has_coverage
    assert result.available == []


def test_overlapping_booking_makes_worker_unavailable(resolver, make_worker, make_booking, service_date, db):
    worker = make_worker()
    booked = make_booking(scheduled_start=time(9, 0), duration_minutes=120)
    BookingRepository.compare_and_set(db, booked.id, [], worker_id=worker.id)
    db.commit()

    overlapping = resolver.resolve_coverage("10001", service_date, time(10, 0), 120)
    after = resolver.resolve_coverage("10001", service_date, time(11, 0), 120)
    same_booking = resolver.resolve_coverage(
        "10001", service_date, time(10, 0), 120, exclude_booking_id=booked.id
    )

    assert overlapping.available == []
    assert len(after.available) == 1
    assert len(same_booking.available) == 1


def test_cancelled_booking_frees_the_slot(resolver, make_worker, make_booking, service_date, db):
    worker = make_worker()
    booked = make_booking()
    BookingRepository.compare_and_set(db, booked.id, [], worker_id=worker.id, status=BOOKING_CANCELLED)
    db.commit()

    result = resolver.resolve_coverage("10001", service_date, time(10, 0), 120)

    assert len(result.available) == 1
