"""Domain models for the fleet booking timeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class EventStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"
    MAINTENANCE = "maintenance"
    DISPLACED = "displaced"


class ViewMode(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class VisualState(str, Enum):
    MAINTENANCE = "maintenance"
    DISPLACED = "displaced"
    COMPLETED = "completed"
    OVERDUE_RETURN = "overdue_return"
    ONGOING = "ongoing"
    LATE_ARRIVAL = "late_arrival"
    CONFIRMED = "confirmed"
    PENDING = "pending"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


class FilterMode(str, Enum):
    ALL = "all"
    BOOKED = "booked"
    AVAILABLE = "available"


@dataclass(frozen=True)
class Resource:
    resource_id: str
    title: str
    subtitle: str = ""
    image: Optional[str] = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Event:
    """A scheduled occupation of a resource.

    `end` is expected to be strictly after `start`. Rows that violate this are
    kept (they come from the persistence layer) and laid out as one day.
    """

    event_id: str
    resource_id: str
    start: datetime
    end: datetime
    status: EventStatus = EventStatus.PENDING
    buffer_minutes: int = 0
    title: str = ""
    subtitle: str = ""
    amount: float = 0.0
    payment_status: Optional[str] = None
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    driver_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None

    @property
    def display_end(self) -> datetime:
        if self.end > self.start:
            return self.end
        return self.start + timedelta(days=1)

    @property
    def occupied_until(self) -> datetime:
        """End of the turnaround window; the resource is busy until then."""
        return self.display_end + timedelta(minutes=max(0, self.buffer_minutes))


@dataclass(frozen=True)
class ScheduleSnapshot:
    resources: tuple[Resource, ...] = ()
    events: tuple[Event, ...] = ()


@dataclass(frozen=True)
class HeaderCell:
    label: str
    width: float
    date: Optional[datetime] = None


@dataclass(frozen=True)
class TimeGrid:
    view: ViewMode
    anchor: datetime
    window_start: datetime
    window_end: datetime
    main_headers: tuple[HeaderCell, ...]
    sub_headers: tuple[HeaderCell, ...]
    cell_width: int
    cell_minutes: int
    now_offset: Optional[float]
    date_label: str = ""

    @property
    def units_per_minute(self) -> float:
        return self.cell_width / self.cell_minutes

    @property
    def units_per_day(self) -> float:
        return self.cell_width * 1440 / self.cell_minutes

    @property
    def total_width(self) -> float:
        return float(sum(cell.width for cell in self.sub_headers))

    def minutes_to_units(self, minutes: float) -> float:
        return minutes * self.cell_width / self.cell_minutes

    def units_to_minutes(self, units: float) -> float:
        return units * self.cell_minutes / self.cell_width


@dataclass(frozen=True)
class BufferBand:
    left: float
    width: float
    start: datetime
    end: datetime


@dataclass(frozen=True)
class EventPlacement:
    event: Event
    left: float
    width: float
    visual_state: VisualState
    buffer_band: Optional[BufferBand] = None
    resizable: bool = False
    in_flight: bool = False
    is_ghost: bool = False


@dataclass(frozen=True)
class ResourceRow:
    resource: Resource
    has_active_booking: bool
    placements: tuple[EventPlacement, ...] = field(default_factory=tuple)
