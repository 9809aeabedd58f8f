"""Layout engine: event geometry, buffer bands and visual-state classification.

Everything here is recomputed from the snapshot on every render pass; no
derived structure survives between passes.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional, Sequence

from backend.domain.constraints import (
    INACTIVE_STATUSES,
    intersects_window,
    is_overlapping_other,
)
from backend.domain.lifecycle import EXTENDABLE_STATUSES
from backend.domain.models import (
    BufferBand,
    Event,
    EventPlacement,
    EventStatus,
    FilterMode,
    Resource,
    ResourceRow,
    TimeGrid,
    VisualState,
)
from backend.services.timegrid_service import minutes_between, offset_for


DEFAULT_MIN_VISIBLE_MINUTES = 15

_STATUS_FALLBACK = {
    EventStatus.CONFIRMED: VisualState.CONFIRMED,
    EventStatus.PENDING: VisualState.PENDING,
    EventStatus.NO_SHOW: VisualState.NO_SHOW,
    EventStatus.CANCELLED: VisualState.CANCELLED,
}


def event_geometry(
    event: Event,
    grid: TimeGrid,
    *,
    min_visible_minutes: int = DEFAULT_MIN_VISIBLE_MINUTES,
    end_override: Optional[datetime] = None,
) -> Optional[tuple[float, float]]:
    """Return (left, width) in grid units, or None when the event is off-window."""
    display_end = end_override if end_override is not None else event.display_end
    if display_end <= event.start:
        display_end = event.start + timedelta(days=1)
    if display_end < grid.window_start or event.start > grid.window_end:
        return None

    clamped_start = max(event.start, grid.window_start)
    effective_end = min(display_end, grid.window_end)
    duration = max(min_visible_minutes, minutes_between(clamped_start, effective_end))
    return offset_for(grid, clamped_start), grid.minutes_to_units(duration)


def buffer_band(
    event: Event,
    grid: TimeGrid,
    *,
    end_override: Optional[datetime] = None,
    buffer_override: Optional[int] = None,
) -> Optional[BufferBand]:
    """Turnaround strip that starts at the (possibly in-drag) end of the event."""
    buffer_minutes = event.buffer_minutes if buffer_override is None else buffer_override
    if buffer_minutes <= 0:
        return None
    anchor = end_override if end_override is not None else event.display_end
    band_start = max(anchor, grid.window_start)
    band_end = min(anchor + timedelta(minutes=buffer_minutes), grid.window_end)
    if band_end <= band_start:
        return None
    return BufferBand(
        left=offset_for(grid, band_start),
        width=grid.minutes_to_units(minutes_between(band_start, band_end)),
        start=band_start,
        end=band_end,
    )


def classify(event: Event, peers: Iterable[Event], now: datetime) -> VisualState:
    """Pick the visual state; the order of checks is the display priority."""
    status = event.status
    if status is EventStatus.MAINTENANCE:
        return VisualState.MAINTENANCE
    if status is EventStatus.DISPLACED or is_overlapping_other(event, peers):
        return VisualState.DISPLACED
    if status is EventStatus.COMPLETED:
        return VisualState.COMPLETED
    if status is EventStatus.ONGOING:
        if now > event.end:
            return VisualState.OVERDUE_RETURN
        return VisualState.ONGOING
    if status is EventStatus.CONFIRMED and now > event.start:
        return VisualState.LATE_ARRIVAL
    return _STATUS_FALLBACK.get(status, VisualState.PENDING)


def has_active_booking(resource_id: str, events: Iterable[Event], grid: TimeGrid) -> bool:
    return any(
        event.resource_id == resource_id
        and event.status not in INACTIVE_STATUSES
        and intersects_window(event, grid.window_start, grid.window_end)
        for event in events
    )


def matches_search(resource: Resource, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    return needle in resource.title.lower() or needle in (resource.subtitle or "").lower()


def filter_resources(
    resources: Sequence[Resource],
    events: Sequence[Event],
    grid: TimeGrid,
    *,
    search: str = "",
    filter_mode: FilterMode = FilterMode.ALL,
) -> list[Resource]:
    """Apply free-text search and the booked/available filter (logical AND)."""
    selected: list[Resource] = []
    for resource in resources:
        if not matches_search(resource, search):
            continue
        if filter_mode is not FilterMode.ALL:
            booked = has_active_booking(resource.resource_id, events, grid)
            if filter_mode is FilterMode.BOOKED and not booked:
                continue
            if filter_mode is FilterMode.AVAILABLE and booked:
                continue
        selected.append(resource)
    return selected


def place_event(
    event: Event,
    peers: Sequence[Event],
    grid: TimeGrid,
    now: datetime,
    *,
    min_visible_minutes: int = DEFAULT_MIN_VISIBLE_MINUTES,
    end_override: Optional[datetime] = None,
    buffer_override: Optional[int] = None,
    in_flight: bool = False,
    is_ghost: bool = False,
) -> Optional[EventPlacement]:
    geometry = event_geometry(
        event,
        grid,
        min_visible_minutes=min_visible_minutes,
        end_override=end_override,
    )
    if geometry is None:
        return None
    left, width = geometry
    state = classify(event, peers, now)
    return EventPlacement(
        event=event,
        left=left,
        width=width,
        visual_state=state,
        buffer_band=buffer_band(
            event,
            grid,
            end_override=end_override,
            buffer_override=buffer_override,
        ),
        resizable=not is_ghost and event.status in EXTENDABLE_STATUSES,
        in_flight=in_flight,
        is_ghost=is_ghost,
    )


def layout(
    grid: TimeGrid,
    resources: Sequence[Resource],
    events: Sequence[Event],
    now: datetime,
    *,
    min_visible_minutes: int = DEFAULT_MIN_VISIBLE_MINUTES,
    search: str = "",
    filter_mode: FilterMode = FilterMode.ALL,
    end_overrides: Optional[Mapping[str, datetime]] = None,
    buffer_overrides: Optional[Mapping[str, int]] = None,
    in_flight_ids: Iterable[str] = (),
    ghost: Optional[Event] = None,
) -> list[ResourceRow]:
    """Lay out every visible event, grouped by the filtered resource rows."""
    end_overrides = end_overrides or {}
    buffer_overrides = buffer_overrides or {}
    in_flight = set(in_flight_ids)

    by_resource: dict[str, list[Event]] = defaultdict(list)
    for event in events:
        by_resource[event.resource_id].append(event)

    rows: list[ResourceRow] = []
    for resource in filter_resources(
        resources,
        events,
        grid,
        search=search,
        filter_mode=filter_mode,
    ):
        peers = by_resource.get(resource.resource_id, [])
        placements: list[EventPlacement] = []
        for event in peers:
            placement = place_event(
                event,
                peers,
                grid,
                now,
                min_visible_minutes=min_visible_minutes,
                end_override=end_overrides.get(event.event_id),
                buffer_override=buffer_overrides.get(event.event_id),
                in_flight=event.event_id in in_flight,
            )
            if placement is not None:
                placements.append(placement)

        if ghost is not None and ghost.resource_id == resource.resource_id:
            ghost_peers = [event for event in peers if event.event_id != ghost.event_id]
            placement = place_event(
                ghost,
                ghost_peers,
                grid,
                now,
                min_visible_minutes=min_visible_minutes,
                is_ghost=True,
            )
            if placement is not None:
                placements.append(placement)

        rows.append(
            ResourceRow(
                resource=resource,
                has_active_booking=has_active_booking(resource.resource_id, events, grid),
                placements=tuple(placements),
            )
        )
    return rows
