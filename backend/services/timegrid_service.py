"""Time-grid projection: view mode + anchor date -> visible window and scale."""

from __future__ import annotations

import calendar
import math
from datetime import date, datetime, timedelta
from typing import Optional, Union

from backend.domain.constraints import TimelineConfig, validate_timeline_config
from backend.domain.models import HeaderCell, TimeGrid, ViewMode
from backend.utils.config import Settings, get_settings


MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440
WEEKDAY_INITIALS = "MTWTFSS"

AnchorLike = Union[date, datetime]


def build_timeline_config(settings: Settings) -> TimelineConfig:
    config = TimelineConfig(
        hour_cell_width=settings.timeline_hour_cell_width,
        month_cell_width=settings.timeline_month_cell_width,
        min_visible_minutes=settings.timeline_min_visible_minutes,
        drag_threshold_px=settings.gesture_drag_threshold_px,
        snap_minutes=settings.gesture_snap_minutes,
    )
    validate_timeline_config(config)
    return config


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, truncated toward zero."""
    return int((end - start).total_seconds() / 60)


def start_of_day(value: AnchorLike) -> datetime:
    return datetime(value.year, value.month, value.day)


def start_of_week(value: AnchorLike) -> datetime:
    day = start_of_day(value)
    return day - timedelta(days=day.weekday())


def start_of_month(value: AnchorLike) -> datetime:
    return datetime(value.year, value.month, 1)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def step_anchor(view: ViewMode, anchor: datetime, direction: int) -> datetime:
    """Move the anchor one unit of the view granularity (direction is +1 or -1)."""
    step = 1 if direction >= 0 else -1
    if view is ViewMode.DAY:
        return anchor + timedelta(days=step)
    if view is ViewMode.WEEK:
        return anchor + timedelta(weeks=step)
    return add_months(anchor, step)


def snap_to_grid(value: datetime, snap_minutes: int = 30) -> datetime:
    """Round a timestamp to the nearest multiple of `snap_minutes` past midnight."""
    midnight = start_of_day(value)
    minutes = (value - midnight).total_seconds() / 60
    snapped = round_half_up(minutes / snap_minutes) * snap_minutes
    return midnight + timedelta(minutes=snapped)


def offset_for(grid: TimeGrid, moment: datetime) -> float:
    return grid.minutes_to_units(max(0, minutes_between(grid.window_start, moment)))


def timestamp_at(grid: TimeGrid, units: float) -> datetime:
    """Inverse of `offset_for` for a pointer position inside the row."""
    return grid.window_start + timedelta(minutes=grid.units_to_minutes(max(0.0, units)))


def _hour_label(hour: int) -> str:
    suffix = "AM" if hour < 12 else "PM"
    return f"{hour % 12 or 12} {suffix}"


def _date_label(view: ViewMode, anchor: datetime, window_start: datetime, window_end: datetime) -> str:
    if view is ViewMode.DAY:
        return f"{anchor.strftime('%B')} {anchor.day}, {anchor.year}"
    if view is ViewMode.WEEK:
        last_day = window_end - timedelta(days=1)
        return (
            f"{window_start.strftime('%b')} {window_start.day} - "
            f"{last_day.strftime('%b')} {last_day.day}, {last_day.year}"
        )
    return f"{anchor.strftime('%B')} {anchor.year}"


def project(
    view: ViewMode,
    anchor: AnchorLike,
    now: datetime,
    config: TimelineConfig,
) -> TimeGrid:
    """Compute the visible window, headers and scale for a view.

    Pure: identical inputs always produce an identical grid, so navigation
    re-derives everything from the anchor instead of patching the last grid.
    """
    anchor_dt = anchor if isinstance(anchor, datetime) else start_of_day(anchor)
    main_headers: list[HeaderCell] = []
    sub_headers: list[HeaderCell] = []

    if view is ViewMode.MONTH:
        window_start = start_of_month(anchor_dt)
        window_end = add_months(window_start, 1)
        cell_width = config.month_cell_width
        cell_minutes = MINUTES_PER_DAY
        day = window_start
        while day < window_end:
            main_headers.append(HeaderCell(label=str(day.day), width=cell_width, date=day))
            sub_headers.append(
                HeaderCell(label=WEEKDAY_INITIALS[day.weekday()], width=cell_width, date=day)
            )
            day += timedelta(days=1)
    else:
        if view is ViewMode.DAY:
            window_start = start_of_day(anchor_dt)
            window_end = window_start + timedelta(hours=24)
        else:
            window_start = start_of_week(anchor_dt)
            window_end = window_start + timedelta(weeks=1)
        cell_width = config.hour_cell_width
        cell_minutes = MINUTES_PER_HOUR
        day = window_start
        while day < window_end:
            main_headers.append(
                HeaderCell(label=f"{day.strftime('%a')} {day.day}", width=cell_width * 24, date=day)
            )
            for hour in range(24):
                sub_headers.append(
                    HeaderCell(label=_hour_label(hour), width=cell_width, date=day + timedelta(hours=hour))
                )
            day += timedelta(days=1)

    now_offset: Optional[float] = None
    if window_start <= now <= window_end:
        now_offset = max(0, minutes_between(window_start, now)) * cell_width / cell_minutes

    return TimeGrid(
        view=view,
        anchor=anchor_dt,
        window_start=window_start,
        window_end=window_end,
        main_headers=tuple(main_headers),
        sub_headers=tuple(sub_headers),
        cell_width=cell_width,
        cell_minutes=cell_minutes,
        now_offset=now_offset,
        date_label=_date_label(view, anchor_dt, window_start, window_end),
    )


class TimeGridProjector:
    """Settings-bound facade over `project` used by the interaction layer."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._config = build_timeline_config(self._settings)

    @property
    def config(self) -> TimelineConfig:
        return self._config

    def project(self, view: ViewMode, anchor: AnchorLike, now: datetime) -> TimeGrid:
        return project(view, anchor, now, self._config)
