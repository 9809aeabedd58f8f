"""Domain-level rules for timeline configuration and booking overlap."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from backend.domain.models import Event, EventStatus


# Statuses that occupy a resource for conflict purposes.
BLOCKING_STATUSES = frozenset(
    {
        EventStatus.PENDING,
        EventStatus.CONFIRMED,
        EventStatus.ONGOING,
        EventStatus.MAINTENANCE,
        EventStatus.DISPLACED,
    }
)

# Peers that never make another event conflicting. Displaced peers are skipped
# so one bumped booking does not cascade conflicts across the whole row.
IGNORED_PEER_STATUSES = frozenset(
    {EventStatus.CANCELLED, EventStatus.NO_SHOW, EventStatus.DISPLACED}
)

INACTIVE_STATUSES = frozenset({EventStatus.CANCELLED, EventStatus.NO_SHOW})


@dataclass(frozen=True)
class TimelineConfig:
    hour_cell_width: int
    month_cell_width: int
    min_visible_minutes: int
    drag_threshold_px: int
    snap_minutes: int


def validate_timeline_config(config: TimelineConfig) -> None:
    if config.hour_cell_width <= 0:
        raise ValueError("hour_cell_width must be > 0")
    if config.month_cell_width <= 0:
        raise ValueError("month_cell_width must be > 0")
    if config.min_visible_minutes <= 0:
        raise ValueError("min_visible_minutes must be > 0")
    if config.drag_threshold_px < 0:
        raise ValueError("drag_threshold_px must be >= 0")
    if config.snap_minutes <= 0 or 1440 % config.snap_minutes != 0:
        raise ValueError("snap_minutes must be > 0 and divide a day evenly")


def intervals_overlap(
    start_a: datetime,
    occupied_until_a: datetime,
    start_b: datetime,
    occupied_until_b: datetime,
) -> bool:
    return start_b < occupied_until_a and occupied_until_b > start_a


def events_overlap(first: Event, second: Event) -> bool:
    """Buffer-inclusive overlap test; symmetric in its arguments."""
    return intervals_overlap(
        first.start,
        first.occupied_until,
        second.start,
        second.occupied_until,
    )


def find_conflicts(
    candidate: Event,
    events: Iterable[Event],
    *,
    exclude_ids: Optional[Iterable[str]] = None,
) -> list[Event]:
    """Return events on the candidate's resource that overlap it."""
    excluded = set(exclude_ids or ())
    excluded.add(candidate.event_id)
    return [
        other
        for other in events
        if other.resource_id == candidate.resource_id
        and other.event_id not in excluded
        and other.status not in IGNORED_PEER_STATUSES
        and events_overlap(candidate, other)
    ]


def window_conflicts(
    resource_id: str,
    start: datetime,
    end: datetime,
    events: Iterable[Event],
    *,
    buffer_minutes: int = 0,
) -> list[Event]:
    """Advisory conflict check for a not-yet-created booking window."""
    probe = Event(
        event_id="",
        resource_id=resource_id,
        start=start,
        end=end,
        buffer_minutes=buffer_minutes,
    )
    return find_conflicts(probe, events)


def is_overlapping_other(event: Event, peers: Iterable[Event]) -> bool:
    if event.status not in BLOCKING_STATUSES:
        return False
    return bool(find_conflicts(event, peers))


def intersects_window(event: Event, window_start: datetime, window_end: datetime) -> bool:
    return event.display_end > window_start and event.start < window_end
