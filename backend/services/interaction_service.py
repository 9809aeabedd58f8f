"""Interaction controller for pointer gestures, ghost placement and navigation.

The controller is a plain state machine: pointer handlers update the single
active gesture and return the intents the gesture produced. It never talks
to the persistence layer and never raises out of a gesture handler; invalid
gestures simply produce no intents.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence, Union

from backend.domain.constraints import find_conflicts, window_conflicts
from backend.domain.intents import (
    BufferChangeIntent,
    CreateBookingIntent,
    CreateMaintenanceIntent,
    DateChangeIntent,
    GhostMovedIntent,
    Intent,
    OpenCreationIntent,
    OpenDetailIntent,
    RangeChangedIntent,
    ReassignIntent,
    SplitBookingIntent,
)
from backend.domain.lifecycle import (
    EXTENDABLE_STATUSES,
    REASSIGNABLE_STATUSES,
    IntentValidationError,
    LifecycleAction,
    available_actions,
    validate_intent,
)
from backend.domain.models import Event, Resource, TimeGrid, ViewMode
from backend.services.timegrid_service import (
    TimeGridProjector,
    round_half_up,
    snap_to_grid,
    step_anchor,
    timestamp_at,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

PRIMARY_BUTTON = 0


@dataclass(frozen=True)
class NoGesture:
    pass


@dataclass(frozen=True)
class CreatingGesture:
    resource_id: str
    origin_x: float
    current_x: float
    dragged: bool = False

    @property
    def left(self) -> float:
        return min(self.origin_x, self.current_x)

    @property
    def width(self) -> float:
        return abs(self.current_x - self.origin_x)


@dataclass(frozen=True)
class ResizingEventGesture:
    event_id: str
    origin_x: float
    original_end: datetime
    preview_end: datetime


@dataclass(frozen=True)
class ResizingBufferGesture:
    event_id: str
    origin_x: float
    original_buffer: int
    preview_buffer: int


Gesture = Union[NoGesture, CreatingGesture, ResizingEventGesture, ResizingBufferGesture]

IDLE = NoGesture()


class GhostStatus(str, Enum):
    READY = "ready"
    BLOCKED = "blocked"
    FORCE_OVERRIDE = "force_override"


@dataclass(frozen=True)
class GhostPlacement:
    ghost: Event
    original_resource_id: str
    status: GhostStatus
    conflicting_event_ids: tuple[str, ...] = ()

    @property
    def moved(self) -> bool:
        return self.ghost.resource_id != self.original_resource_id

    @property
    def can_confirm(self) -> bool:
        return self.status is not GhostStatus.BLOCKED


class InteractionController:
    """Holds view state, the active gesture and the ghost booking."""

    def __init__(
        self,
        projector: Optional[TimeGridProjector] = None,
        settings: Optional[Settings] = None,
        *,
        view: ViewMode = ViewMode.DAY,
        anchor: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._projector = projector or TimeGridProjector(self._settings)
        self._now = now or datetime.now()
        self._view = view
        self._anchor = anchor or self._now
        self._grid = self._projector.project(self._view, self._anchor, self._now)
        self._gesture: Gesture = IDLE
        self._events: dict[str, Event] = {}
        self._resources: dict[str, Resource] = {}
        self._ghost: Optional[Event] = None
        self._ghost_origin: Optional[str] = None
        self._override_mode = False

    # -- state -------------------------------------------------------------

    @property
    def grid(self) -> TimeGrid:
        return self._grid

    @property
    def view(self) -> ViewMode:
        return self._view

    @property
    def anchor(self) -> datetime:
        return self._anchor

    @property
    def now(self) -> datetime:
        return self._now

    @property
    def gesture(self) -> Gesture:
        return self._gesture

    @property
    def override_mode(self) -> bool:
        return self._override_mode

    @property
    def ghost(self) -> Optional[Event]:
        return self._ghost

    def load_snapshot(self, resources: Sequence[Resource], events: Sequence[Event]) -> None:
        """Replace the event/resource lookup used to resolve gesture targets."""
        self._resources = {resource.resource_id: resource for resource in resources}
        self._events = {event.event_id: event for event in events}
        if self._ghost is not None and self._ghost.event_id not in self._events:
            logger.info("Ghost discarded; proposed booking left the snapshot | event_id=%s", self._ghost.event_id)
            self.discard_ghost()

    def tick(self, now: datetime) -> None:
        """Advance the injected clock; re-projects so the now marker moves."""
        self._now = now
        self._grid = self._projector.project(self._view, self._anchor, now)

    def event(self, event_id: str) -> Optional[Event]:
        return self._events.get(event_id)

    # -- navigation --------------------------------------------------------

    def _reproject(self) -> list[Intent]:
        if not isinstance(self._gesture, NoGesture):
            logger.debug("Gesture cancelled by navigation | gesture=%s", type(self._gesture).__name__)
        self._gesture = IDLE
        self._grid = self._projector.project(self._view, self._anchor, self._now)
        return [
            RangeChangedIntent(
                window_start=self._grid.window_start,
                window_end=self._grid.window_end,
                view=self._view.value,
            )
        ]

    def navigate(self, direction: int) -> list[Intent]:
        self._anchor = step_anchor(self._view, self._anchor, direction)
        return self._reproject()

    def jump_to(self, anchor: datetime) -> list[Intent]:
        self._anchor = anchor
        return self._reproject()

    def set_view(self, view: ViewMode) -> list[Intent]:
        self._view = view
        return self._reproject()

    # -- coordinate helpers ------------------------------------------------

    def _clamp_x(self, x: float) -> float:
        return min(max(0.0, float(x)), self._grid.total_width)

    def snapped_time_at(self, x: float) -> datetime:
        """Timestamp under a row-relative pointer position, snapped to the grid."""
        return snap_to_grid(
            timestamp_at(self._grid, self._clamp_x(x)),
            self._projector.config.snap_minutes,
        )

    # -- pointer gestures --------------------------------------------------

    def pointer_down_row(
        self,
        resource_id: str,
        x: float,
        *,
        button: int = PRIMARY_BUTTON,
        alt: bool = False,
    ) -> list[Intent]:
        if button != PRIMARY_BUTTON or alt:
            return []
        if not isinstance(self._gesture, NoGesture):
            return []
        self._gesture = CreatingGesture(resource_id=resource_id, origin_x=x, current_x=x)
        return []

    def pointer_down_event_edge(
        self,
        event_id: str,
        x: float,
        *,
        button: int = PRIMARY_BUTTON,
    ) -> list[Intent]:
        if button != PRIMARY_BUTTON or not isinstance(self._gesture, NoGesture):
            return []
        event = self._events.get(event_id)
        if event is None or event.status not in EXTENDABLE_STATUSES:
            return []
        self._gesture = ResizingEventGesture(
            event_id=event_id,
            origin_x=x,
            original_end=event.end,
            preview_end=event.end,
        )
        return []

    def pointer_down_buffer_edge(
        self,
        event_id: str,
        x: float,
        *,
        button: int = PRIMARY_BUTTON,
    ) -> list[Intent]:
        if button != PRIMARY_BUTTON or not isinstance(self._gesture, NoGesture):
            return []
        event = self._events.get(event_id)
        if event is None:
            return []
        self._gesture = ResizingBufferGesture(
            event_id=event_id,
            origin_x=x,
            original_buffer=event.buffer_minutes,
            preview_buffer=event.buffer_minutes,
        )
        return []

    def pointer_move(self, x: float) -> list[Intent]:
        gesture = self._gesture
        if isinstance(gesture, CreatingGesture):
            threshold = self._projector.config.drag_threshold_px
            self._gesture = replace(
                gesture,
                current_x=x,
                dragged=gesture.dragged or abs(x - gesture.origin_x) > threshold,
            )
        elif isinstance(gesture, ResizingEventGesture):
            delta_days = round_half_up((x - gesture.origin_x) / self._grid.units_per_day)
            self._gesture = replace(
                gesture,
                preview_end=gesture.original_end + timedelta(days=delta_days),
            )
        elif isinstance(gesture, ResizingBufferGesture):
            delta_minutes = round_half_up((x - gesture.origin_x) / self._grid.units_per_minute / 60) * 60
            self._gesture = replace(
                gesture,
                preview_buffer=max(0, gesture.original_buffer + delta_minutes),
            )
        return []

    def pointer_up(self, x: float) -> list[Intent]:
        self.pointer_move(x)
        gesture = self._gesture
        self._gesture = IDLE
        if isinstance(gesture, CreatingGesture):
            return self._finish_create(gesture)
        if isinstance(gesture, ResizingEventGesture):
            return self._finish_event_resize(gesture)
        if isinstance(gesture, ResizingBufferGesture):
            return self._finish_buffer_resize(gesture)
        return []

    def cancel_gesture(self) -> None:
        self._gesture = IDLE

    def _finish_create(self, gesture: CreatingGesture) -> list[Intent]:
        if not gesture.dragged:
            if self._ghost is not None:
                return self.move_ghost(gesture.resource_id)
            return [
                OpenCreationIntent(
                    resource_id=gesture.resource_id,
                    at=self.snapped_time_at(gesture.origin_x),
                )
            ]

        start = self.snapped_time_at(gesture.left)
        end = self.snapped_time_at(gesture.left + gesture.width)
        if start == end:
            logger.debug("Create drag collapsed to zero width | resource_id=%s", gesture.resource_id)
            return []
        conflicts = window_conflicts(gesture.resource_id, start, end, self._events.values())
        if conflicts:
            logger.info(
                "Create drag overlaps existing bookings | resource_id=%s | conflicts=%s",
                gesture.resource_id,
                [event.event_id for event in conflicts],
            )
        return [
            CreateBookingIntent(
                resource_id=gesture.resource_id,
                start=start,
                end=end,
                conflicting_event_ids=tuple(event.event_id for event in conflicts),
            )
        ]

    def _finish_event_resize(self, gesture: ResizingEventGesture) -> list[Intent]:
        if gesture.preview_end == gesture.original_end:
            return []
        intent = DateChangeIntent(event_id=gesture.event_id, new_end=gesture.preview_end)
        return self._guarded(intent, self._events.get(gesture.event_id))

    def _finish_buffer_resize(self, gesture: ResizingBufferGesture) -> list[Intent]:
        if gesture.preview_buffer == gesture.original_buffer:
            return []
        intent = BufferChangeIntent(event_id=gesture.event_id, new_buffer_minutes=gesture.preview_buffer)
        return self._guarded(intent, self._events.get(gesture.event_id))

    def _guarded(self, intent: Intent, event: Optional[Event]) -> list[Intent]:
        try:
            validate_intent(intent, event, self._now)
        except IntentValidationError as exc:
            logger.debug("Gesture intent suppressed | intent=%s | reason=%s", intent, exc)
            return []
        return [intent]

    def preview_overrides(self) -> tuple[dict[str, datetime], dict[str, int]]:
        """Live end/buffer values of the active resize gesture, for layout."""
        gesture = self._gesture
        if isinstance(gesture, ResizingEventGesture):
            return {gesture.event_id: gesture.preview_end}, {}
        if isinstance(gesture, ResizingBufferGesture):
            return {}, {gesture.event_id: gesture.preview_buffer}
        return {}, {}

    # -- clicks and context actions ----------------------------------------

    def click_event(self, event_id: str, x: float, *, alt: bool = False) -> list[Intent]:
        if not isinstance(self._gesture, NoGesture):
            return []
        event = self._events.get(event_id)
        if event is None:
            return []
        if not alt:
            return [OpenDetailIntent(event_id=event_id)]
        intent = SplitBookingIntent(event_id=event_id, split_at=self.snapped_time_at(x))
        return self._guarded(intent, event)

    def context_actions(self, event_id: str) -> list[LifecycleAction]:
        event = self._events.get(event_id)
        if event is None:
            return []
        return available_actions(event, self._now)

    def add_maintenance_at(self, resource_id: str, x: float) -> list[Intent]:
        start = self.snapped_time_at(x)
        intent = CreateMaintenanceIntent(
            resource_id=resource_id,
            start=start,
            end=start + timedelta(minutes=self._settings.maintenance_block_minutes),
        )
        return self._guarded(intent, None)

    # -- ghost booking -----------------------------------------------------

    def propose(self, event_id: str) -> Optional[GhostPlacement]:
        """Pick a booking to relocate; proposing the same booking again discards it."""
        if self._ghost is not None and self._ghost.event_id == event_id:
            self.discard_ghost()
            return None
        event = self._events.get(event_id)
        if event is None or event.status not in REASSIGNABLE_STATUSES:
            return None
        self._ghost = replace(event, subtitle=self._resource_title(event.resource_id))
        self._ghost_origin = event.resource_id
        return self.ghost_placement()

    def move_ghost(self, resource_id: str) -> list[Intent]:
        if self._ghost is None:
            return []
        if self._ghost.resource_id != resource_id:
            self._ghost = replace(
                self._ghost,
                resource_id=resource_id,
                subtitle=self._resource_title(resource_id),
            )
        return [GhostMovedIntent(event_id=self._ghost.event_id, resource_id=resource_id)]

    def set_override(self, enabled: bool) -> None:
        self._override_mode = bool(enabled)

    def discard_ghost(self) -> None:
        self._ghost = None
        self._ghost_origin = None

    def ghost_placement(self) -> Optional[GhostPlacement]:
        if self._ghost is None or self._ghost_origin is None:
            return None
        conflicts = find_conflicts(self._ghost, self._events.values())
        if not conflicts:
            status = GhostStatus.READY
        elif self._override_mode:
            status = GhostStatus.FORCE_OVERRIDE
        else:
            status = GhostStatus.BLOCKED
        return GhostPlacement(
            ghost=self._ghost,
            original_resource_id=self._ghost_origin,
            status=status,
            conflicting_event_ids=tuple(event.event_id for event in conflicts),
        )

    def confirm_ghost(self, new_price: Optional[float] = None) -> list[Intent]:
        """Turn the ghost into a reassignment intent, which also confirms it.

        A blocked ghost yields nothing. With override mode on, the bookings it
        collides with are listed so the persistence layer marks them displaced.
        """
        placement = self.ghost_placement()
        if placement is None:
            return []
        if placement.status is GhostStatus.BLOCKED:
            logger.info(
                "Ghost confirmation blocked by conflict | event_id=%s | conflicts=%s",
                placement.ghost.event_id,
                placement.conflicting_event_ids,
            )
            return []
        original = self._events.get(placement.ghost.event_id)
        if original is None:
            return []

        price = placement.ghost.amount if new_price is None else float(new_price)
        forced = placement.status is GhostStatus.FORCE_OVERRIDE
        intent = ReassignIntent(
            event_id=original.event_id,
            new_resource_id=placement.ghost.resource_id,
            new_price=price,
            override=forced,
            displaced_event_ids=placement.conflicting_event_ids if forced else (),
        )
        emitted = self._guarded(intent, original)
        if emitted:
            self.discard_ghost()
        return emitted

    def _resource_title(self, resource_id: str) -> str:
        resource = self._resources.get(resource_id)
        return resource.title if resource is not None else "Unknown vehicle"
