from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime

import pytest

from backend.domain.models import EventStatus, ViewMode, VisualState
from backend.repository.data_repository import (
    BookingConflictError,
    BookingNotFoundError,
    DataRepository,
    ResourceNotFoundError,
)
from backend.services.gateway import RepositoryScheduleGateway
from backend.services.layout_service import layout
from backend.services.timegrid_service import TimeGridProjector
from backend.utils.config import get_settings


DAY = datetime(2026, 3, 4)


@pytest.fixture
def repository(tmp_path) -> DataRepository:
    settings = replace(get_settings(), database_path=tmp_path / "fleet.db")
    repo = DataRepository(settings)
    repo.initialize_database()
    return repo


@pytest.fixture
def fleet(repository) -> DataRepository:
    repository.create_car("car-a", "Toyota", "Vios", "NAB 1234", buffer_hours=2)
    repository.create_car("car-b", "Honda", "City", "NCD 5678")
    return repository


def test_seed_is_deterministic_and_runs_once(repository) -> None:
    repository.seed_demo_fleet(reference=DAY)
    repository.seed_demo_fleet(reference=DAY)

    assert repository.count_cars() == 6
    assert repository.count_bookings() == 9


def test_resources_are_ordered_rows(repository) -> None:
    repository.seed_demo_fleet(reference=DAY)

    resources = repository.list_resources()

    assert resources[0].title == "Honda City"
    assert resources[0].subtitle == "NCD 5678"
    assert resources[0].tags == ("Automatic", "Gas")
    assert resources[-1].title == "Toyota Vios"


def test_range_query_returns_touching_bookings(repository) -> None:
    repository.seed_demo_fleet(reference=DAY)

    events = repository.list_events_in_range(DAY, datetime(2026, 3, 5))

    assert {event.event_id for event in events} == {"bk-1001", "bk-1003", "bk-1004", "bk-1006", "bk-1008"}


def test_booking_buffer_falls_back_to_car_buffer(repository) -> None:
    repository.seed_demo_fleet(reference=DAY)

    assert repository.get_event("bk-1001").buffer_minutes == 120
    repository.update_buffer("bk-1001", 30)
    assert repository.get_event("bk-1001").buffer_minutes == 30

    with pytest.raises(ValueError):
        repository.update_buffer("bk-1001", -1)


def test_updates_on_unknown_booking_raise(repository) -> None:
    with pytest.raises(BookingNotFoundError):
        repository.update_booking_status("missing", EventStatus.CONFIRMED)
    with pytest.raises(BookingNotFoundError):
        repository.update_booking_end("missing", DAY)


def test_conflict_check_is_buffer_inclusive(fleet) -> None:
    fleet.create_booking("car-a", DAY.replace(hour=9), DAY.replace(hour=12), booking_id="bk-1", status=EventStatus.CONFIRMED)

    assert fleet.check_conflict("car-a", DAY.replace(hour=13), DAY.replace(hour=15)) == ["bk-1"]
    assert fleet.check_conflict("car-a", DAY.replace(hour=14), DAY.replace(hour=16)) == []
    assert fleet.check_conflict("car-a", DAY.replace(hour=13), DAY.replace(hour=15), excluding_booking_id="bk-1") == []


def test_candidate_window_carries_car_buffer(fleet) -> None:
    fleet.create_booking("car-a", DAY.replace(hour=15), DAY.replace(hour=18), booking_id="bk-1", status=EventStatus.CONFIRMED)

    assert fleet.check_conflict("car-a", DAY.replace(hour=12), DAY.replace(hour=14)) == ["bk-1"]


def test_cancelled_bookings_never_conflict(fleet) -> None:
    fleet.create_booking("car-b", DAY.replace(hour=9), DAY.replace(hour=12), status=EventStatus.CANCELLED)

    assert fleet.check_conflict("car-b", DAY.replace(hour=10), DAY.replace(hour=11)) == []
    with pytest.raises(ResourceNotFoundError):
        fleet.check_conflict("car-z", DAY, DAY.replace(hour=1))


def test_reassign_requires_override_on_conflict(fleet) -> None:
    fleet.create_booking("car-b", DAY.replace(hour=14), DAY.replace(hour=18), booking_id="bk-c", status=EventStatus.CONFIRMED)
    fleet.create_booking("car-a", DAY.replace(hour=13), DAY.replace(hour=17), booking_id="bk-p")

    with pytest.raises(BookingConflictError) as excinfo:
        fleet.reassign_booking("bk-p", "car-b", 2500.0)
    assert excinfo.value.conflicting_ids == ("bk-c",)
    assert fleet.get_event("bk-p").resource_id == "car-a"

    bumped = fleet.reassign_booking("bk-p", "car-b", 2500.0, override=True)

    assert bumped == ["bk-c"]
    moved = fleet.get_event("bk-p")
    assert moved.resource_id == "car-b"
    assert moved.status is EventStatus.CONFIRMED
    assert moved.amount == 2500.0
    assert fleet.get_event("bk-c").status is EventStatus.DISPLACED


def test_split_divides_price_by_duration(fleet) -> None:
    fleet.create_booking(
        "car-b",
        datetime(2026, 3, 4, 9),
        datetime(2026, 3, 6, 9),
        booking_id="bk-1",
        customer_name="Ana Reyes",
        status=EventStatus.CONFIRMED,
        total_price=3000.0,
    )

    tail_id = fleet.split_booking("bk-1", datetime(2026, 3, 4, 21))

    head = fleet.get_event("bk-1")
    tail = fleet.get_event(tail_id)
    assert head.end == datetime(2026, 3, 4, 21)
    assert head.amount == pytest.approx(750.0)
    assert tail.start == datetime(2026, 3, 4, 21)
    assert tail.end == datetime(2026, 3, 6, 9)
    assert tail.amount == pytest.approx(2250.0)
    assert tail.title == "Ana Reyes (Part 2)"
    assert tail.status is EventStatus.PENDING

    with pytest.raises(ValueError):
        fleet.split_booking("bk-1", datetime(2026, 3, 5, 9))


def test_early_return_records_refund(fleet) -> None:
    fleet.create_booking(
        "car-b",
        datetime(2026, 3, 2, 9),
        datetime(2026, 3, 5, 9),
        booking_id="bk-1",
        status=EventStatus.ONGOING,
        total_price=3000.0,
    )

    fleet.process_early_return("bk-1", datetime(2026, 3, 3, 12), 2000.0, 1000.0, True)

    event = fleet.get_event("bk-1")
    assert event.status is EventStatus.COMPLETED
    assert event.end == datetime(2026, 3, 3, 12)
    assert event.amount == 2000.0
    assert fleet.list_refunds("bk-1") == [1000.0]


def test_maintenance_block_is_titled_and_validated(fleet) -> None:
    block_id = fleet.create_maintenance_block("car-a", DAY, DAY.replace(hour=8))

    block = fleet.get_event(block_id)
    assert block.status is EventStatus.MAINTENANCE
    assert block.title == "Maintenance"
    with pytest.raises(ValueError):
        fleet.create_maintenance_block("car-a", DAY, DAY)


def test_gateway_reports_rejections_as_failed_outcomes(fleet) -> None:
    gateway = RepositoryScheduleGateway(fleet)
    fleet.create_booking("car-b", DAY.replace(hour=14), DAY.replace(hour=18), booking_id="bk-c", status=EventStatus.CONFIRMED)
    fleet.create_booking("car-a", DAY.replace(hour=13), DAY.replace(hour=17), booking_id="bk-p")

    rejected = asyncio.run(gateway.submit_reassign("bk-p", "car-b", 100.0))
    forced = asyncio.run(gateway.submit_reassign("bk-p", "car-b", 100.0, override=True))
    missing = asyncio.run(gateway.submit_status_change("missing", EventStatus.CONFIRMED))

    assert not rejected.success
    assert "already booked" in rejected.message
    assert forced.success
    assert forced.displaced_event_ids == ("bk-c",)
    assert not missing.success


def test_gateway_fetch_returns_snapshot(fleet) -> None:
    gateway = RepositoryScheduleGateway(fleet)
    fleet.create_booking("car-a", DAY.replace(hour=9), DAY.replace(hour=12), booking_id="bk-1")

    snapshot = asyncio.run(gateway.fetch_schedule_view(DAY, datetime(2026, 3, 5)))

    assert [resource.resource_id for resource in snapshot.resources] == ["car-b", "car-a"]
    assert [event.event_id for event in snapshot.events] == ["bk-1"]
    assert snapshot.events[0].buffer_minutes == 120


def test_range_query_includes_buffer_reaching_into_window(repository) -> None:
    repository.create_car("car-a", "Toyota", "Vios", "NAB 1234", buffer_hours=3)
    repository.create_booking(
        "car-a", datetime(2026, 3, 3, 9), datetime(2026, 3, 3, 23), booking_id="bk-prev", status=EventStatus.CONFIRMED
    )
    repository.create_booking(
        "car-a", datetime(2026, 3, 4, 0, 30), datetime(2026, 3, 4, 8), booking_id="bk-next", status=EventStatus.CONFIRMED
    )
    repository.create_booking(
        "car-a", datetime(2026, 3, 2, 9), datetime(2026, 3, 2, 12), booking_id="bk-old", status=EventStatus.COMPLETED
    )

    events = repository.list_events_in_range(DAY, datetime(2026, 3, 5))

    assert [event.event_id for event in events] == ["bk-prev", "bk-next"]
    assert repository.check_conflict("car-a", datetime(2026, 3, 4, 0, 30), datetime(2026, 3, 4, 8), "bk-next") == [
        "bk-prev"
    ]

    grid = TimeGridProjector(get_settings()).project(ViewMode.DAY, DAY, DAY)
    [row] = layout(grid, repository.list_resources(), events, DAY)
    states = {placement.event.event_id: placement.visual_state for placement in row.placements}
    assert states["bk-next"] is VisualState.DISPLACED
