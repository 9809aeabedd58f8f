from __future__ import annotations

from datetime import datetime

import pytest

from backend.domain.models import Event, EventStatus, FilterMode, Resource, ViewMode, VisualState
from backend.services.layout_service import (
    buffer_band,
    classify,
    event_geometry,
    filter_resources,
    layout,
)
from backend.services.timegrid_service import TimeGridProjector
from backend.utils.config import get_settings


NOW = datetime(2026, 3, 4, 12, 0)


@pytest.fixture
def day_grid():
    return TimeGridProjector(get_settings()).project(ViewMode.DAY, NOW, NOW)


def make_event(event_id: str, start: datetime, end: datetime, **overrides) -> Event:
    fields = {
        "event_id": event_id,
        "resource_id": "R1",
        "start": start,
        "end": end,
        "status": EventStatus.CONFIRMED,
    }
    fields.update(overrides)
    return Event(**fields)


def test_event_starting_before_window_is_clipped(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 2, 9), datetime(2026, 3, 4, 9))

    left, width = event_geometry(event, day_grid)

    assert left == 0
    assert width == 9 * 80


def test_event_past_window_end_is_clipped(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 4, 18), datetime(2026, 3, 6, 9))

    left, width = event_geometry(event, day_grid)

    assert left == 18 * 80
    assert left + width == day_grid.total_width


def test_short_event_gets_minimum_width(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 4, 10), datetime(2026, 3, 4, 10, 5))

    _, width = event_geometry(event, day_grid)

    assert width == 20


def test_non_positive_duration_is_drawn_as_one_day(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 4, 6), datetime(2026, 3, 4, 6))

    left, width = event_geometry(event, day_grid)

    assert left == 6 * 80
    assert width == 18 * 80


def test_events_outside_window_are_excluded(day_grid) -> None:
    before = make_event("e1", datetime(2026, 3, 1, 9), datetime(2026, 3, 2, 9))
    after = make_event("e2", datetime(2026, 3, 6, 9), datetime(2026, 3, 7, 9))

    assert event_geometry(before, day_grid) is None
    assert event_geometry(after, day_grid) is None


def test_buffer_band_starts_at_end_and_is_clipped(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 3, 9), datetime(2026, 3, 4, 22), buffer_minutes=180)

    band = buffer_band(event, day_grid)

    assert band is not None
    assert band.left == 22 * 80
    assert band.width == 2 * 80
    assert band.end == datetime(2026, 3, 5)


def test_buffer_band_follows_drag_preview(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 3, 9), datetime(2026, 3, 4, 9), buffer_minutes=60)

    band = buffer_band(event, day_grid, end_override=datetime(2026, 3, 4, 12), buffer_override=120)

    assert band.left == 12 * 80
    assert band.width == 2 * 80


def test_zero_buffer_has_no_band(day_grid) -> None:
    event = make_event("e1", datetime(2026, 3, 4, 9), datetime(2026, 3, 4, 12))

    assert buffer_band(event, day_grid) is None


def test_ongoing_past_end_is_overdue() -> None:
    event = make_event("e1", datetime(2026, 3, 2, 9), datetime(2026, 3, 4, 9), status=EventStatus.ONGOING)

    assert classify(event, [event], NOW) is VisualState.OVERDUE_RETURN


def test_classification_priority() -> None:
    ongoing = make_event("on", datetime(2026, 3, 4, 9), datetime(2026, 3, 5, 9), status=EventStatus.ONGOING)
    late = make_event("late", datetime(2026, 3, 4, 9), datetime(2026, 3, 5, 9), resource_id="R2")
    future = make_event("fut", datetime(2026, 3, 6, 9), datetime(2026, 3, 7, 9), resource_id="R3")
    maintenance = make_event(
        "mt",
        datetime(2026, 3, 4, 9),
        datetime(2026, 3, 5, 9),
        status=EventStatus.MAINTENANCE,
    )
    clash = make_event("clash", datetime(2026, 3, 4, 10), datetime(2026, 3, 4, 11))

    assert classify(ongoing, [ongoing], NOW) is VisualState.ONGOING
    assert classify(late, [late], NOW) is VisualState.LATE_ARRIVAL
    assert classify(future, [future], NOW) is VisualState.CONFIRMED
    assert classify(maintenance, [maintenance, clash], NOW) is VisualState.MAINTENANCE
    assert classify(clash, [maintenance, clash], NOW) is VisualState.DISPLACED
    assert classify(ongoing, [ongoing, clash], NOW) is VisualState.DISPLACED


def test_stored_statuses_fall_through() -> None:
    for status, expected in [
        (EventStatus.PENDING, VisualState.PENDING),
        (EventStatus.NO_SHOW, VisualState.NO_SHOW),
        (EventStatus.CANCELLED, VisualState.CANCELLED),
        (EventStatus.COMPLETED, VisualState.COMPLETED),
        (EventStatus.DISPLACED, VisualState.DISPLACED),
    ]:
        event = make_event("e1", datetime(2026, 3, 4, 9), datetime(2026, 3, 5, 9), status=status)
        assert classify(event, [event], NOW) is expected


def test_filter_and_search_compose(day_grid) -> None:
    resources = [
        Resource("R1", "Toyota Vios", "NAB 1234"),
        Resource("R2", "Honda City", "NCD 5678"),
        Resource("R3", "Toyota Innova", "NGH 3456"),
    ]
    events = [
        make_event("e1", datetime(2026, 3, 4, 9), datetime(2026, 3, 4, 18)),
        make_event("e2", datetime(2026, 3, 4, 9), datetime(2026, 3, 4, 18), resource_id="R3", status=EventStatus.CANCELLED),
    ]

    booked = filter_resources(resources, events, day_grid, filter_mode=FilterMode.BOOKED)
    available = filter_resources(resources, events, day_grid, search="toyota", filter_mode=FilterMode.AVAILABLE)
    by_plate = filter_resources(resources, events, day_grid, search="ncd")

    assert [resource.resource_id for resource in booked] == ["R1"]
    assert [resource.resource_id for resource in available] == ["R3"]
    assert [resource.resource_id for resource in by_plate] == ["R2"]


def test_layout_marks_in_flight_and_places_ghost(day_grid) -> None:
    resources = [Resource("R1", "Toyota Vios"), Resource("R2", "Honda City")]
    pending = make_event("p1", datetime(2026, 3, 4, 13), datetime(2026, 3, 4, 17), status=EventStatus.PENDING)
    confirmed = make_event("c1", datetime(2026, 3, 4, 14), datetime(2026, 3, 4, 18), resource_id="R2")
    ghost = make_event(
        "p1",
        datetime(2026, 3, 4, 13),
        datetime(2026, 3, 4, 17),
        resource_id="R2",
        status=EventStatus.PENDING,
    )

    rows = layout(
        day_grid,
        resources,
        [pending, confirmed],
        NOW,
        in_flight_ids=["c1"],
        end_overrides={"p1": datetime(2026, 3, 4, 20)},
        ghost=ghost,
    )

    by_resource = {row.resource.resource_id: row for row in rows}
    placed_p1 = by_resource["R1"].placements[0]
    assert placed_p1.width == 7 * 80
    assert placed_p1.resizable
    r2_placements = {(placement.event.event_id, placement.is_ghost): placement for placement in by_resource["R2"].placements}
    assert r2_placements[("c1", False)].in_flight
    assert r2_placements[("p1", True)].visual_state is VisualState.DISPLACED
    assert not r2_placements[("p1", True)].resizable
    assert all(row.has_active_booking for row in rows)
