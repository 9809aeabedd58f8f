"""Scheduler session: fetch, gesture dispatch, optimistic mutations and render."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Callable, Iterable, Optional

from backend.domain.intents import (
    CreateMaintenanceIntent,
    Intent,
    MutationIntent,
    RangeChangedIntent,
    describe_intent,
    is_mutation,
)
from backend.domain.lifecycle import (
    EarlyReturnQuote,
    IntentValidationError,
    quote_early_return,
    validate_intent,
)
from backend.domain.models import (
    Event,
    FilterMode,
    ResourceRow,
    ScheduleSnapshot,
    TimeGrid,
    ViewMode,
)
from backend.services.gateway import GatewayError, MutationOutcome, ScheduleGateway, submit_intent
from backend.services.interaction_service import (
    CreatingGesture,
    GhostPlacement,
    InteractionController,
)
from backend.services.layout_service import layout
from backend.services.reconciliation_service import (
    FetchTicket,
    MutationReconciler,
    ResolutionOutcome,
    ViewFetchTracker,
)
from backend.services.timegrid_service import TimeGridProjector
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

Clock = Callable[[], datetime]


class EventNotFoundError(LookupError):
    """Raised when an event id is not part of the current schedule view."""


@dataclass(frozen=True)
class Notification:
    level: str
    message: str
    created_at: datetime
    event_id: Optional[str] = None


@dataclass(frozen=True)
class SelectionPreview:
    resource_id: str
    left: float
    width: float


@dataclass(frozen=True)
class TimelineView:
    grid: TimeGrid
    rows: tuple[ResourceRow, ...]
    ghost: Optional[GhostPlacement]
    selection: Optional[SelectionPreview]
    fetch_error: bool
    search: str
    filter_mode: FilterMode
    override_mode: bool
    pending_mutations: int


@dataclass(frozen=True)
class DispatchResult:
    intents: tuple[Intent, ...] = ()
    outcomes: tuple[MutationOutcome, ...] = ()


class SchedulerSession:
    """Coordinates fetch -> gesture -> optimistic patch -> reconcile -> render."""

    def __init__(
        self,
        gateway: ScheduleGateway,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        view: Optional[ViewMode] = None,
        anchor: Optional[datetime] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._gateway = gateway
        self._clock: Clock = clock or datetime.now
        now = self._clock()
        self._controller = InteractionController(
            TimeGridProjector(self._settings),
            self._settings,
            view=view or ViewMode(self._settings.timeline_default_view),
            anchor=anchor or now,
            now=now,
        )
        self._reconciler = MutationReconciler()
        self._fetches = ViewFetchTracker()
        self._snapshot = ScheduleSnapshot()
        self._fetch_error = False
        self._search = ""
        self._filter_mode = FilterMode.ALL
        self._notifications: deque[Notification] = deque(maxlen=self._settings.notification_history_size)
        self._lock = RLock()

    @property
    def controller(self) -> InteractionController:
        return self._controller

    @property
    def fetch_error(self) -> bool:
        return self._fetch_error

    def now(self) -> datetime:
        current = self._clock()
        self._controller.tick(current)
        return current

    def current_events(self) -> list[Event]:
        """Committed snapshot with optimistic patches layered on top."""
        with self._lock:
            events = self._snapshot.events
        return self._reconciler.apply(events)

    def find_event(self, event_id: str) -> Event:
        for event in self.current_events():
            if event.event_id == event_id:
                return event
        raise EventNotFoundError(f"event {event_id} is not in the current view")

    def _sync_controller(self) -> None:
        with self._lock:
            resources = self._snapshot.resources
        self._controller.load_snapshot(resources, self.current_events())

    # -- fetch ---------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the current window; returns False when the result was dropped or failed."""
        self.now()
        grid = self._controller.grid
        ticket = self._fetches.begin_fetch(grid.window_start, grid.window_end)
        try:
            snapshot = await self._gateway.fetch_schedule_view(grid.window_start, grid.window_end)
        except GatewayError as exc:
            logger.error(
                "Schedule fetch failed | window=%s..%s | error=%s",
                ticket.window_start,
                ticket.window_end,
                exc,
            )
            self._fail_fetch(ticket)
            return False
        except Exception:
            logger.exception(
                "Unexpected schedule fetch failure | window=%s..%s",
                ticket.window_start,
                ticket.window_end,
            )
            self._fail_fetch(ticket)
            return False

        if not self._fetches.is_current(ticket):
            logger.debug("Discarding stale schedule fetch | sequence=%s", ticket.sequence)
            return False

        with self._lock:
            self._snapshot = snapshot
            self._fetch_error = False
        self._reconciler.rebase()
        self._sync_controller()
        logger.info(
            "Schedule loaded | window=%s..%s | resources=%s | events=%s",
            ticket.window_start,
            ticket.window_end,
            len(snapshot.resources),
            len(snapshot.events),
        )
        return True

    def _fail_fetch(self, ticket: FetchTicket) -> None:
        """Show the empty grid with an error flag, unless a newer fetch replaced this one."""
        if not self._fetches.is_current(ticket):
            return
        with self._lock:
            self._snapshot = ScheduleSnapshot()
            self._fetch_error = True
        self._notify("error", "Could not load the schedule")
        self._sync_controller()

    # -- mutations -------------------------------------------------------------

    async def submit(self, intent: MutationIntent) -> MutationOutcome:
        """Validate, apply optimistically, send to the gateway and reconcile.

        Raises IntentValidationError when the client-side guard rejects the intent.
        """
        now = self.now()
        event = None
        if not isinstance(intent, CreateMaintenanceIntent):
            event = self.find_event(intent.event_id)
        validate_intent(intent, event, now)

        pending = self._reconciler.begin(intent)
        self._sync_controller()
        try:
            outcome = await submit_intent(self._gateway, intent)
        except GatewayError as exc:
            outcome = MutationOutcome(success=False, message=str(exc))
        except asyncio.CancelledError:
            self._reconciler.resolve(pending, success=False)
            self._sync_controller()
            raise
        except Exception as exc:
            logger.exception("Unexpected gateway failure | intent=%s", describe_intent(intent))
            outcome = MutationOutcome(success=False, message=str(exc) or type(exc).__name__)

        resolution = self._reconciler.resolve(pending, outcome.success)
        self._sync_controller()
        label = describe_intent(intent)
        if resolution is ResolutionOutcome.COMMITTED:
            self._notify("success", f"{label.capitalize()} saved", pending.event_id)
            await self.refresh()
        elif resolution is ResolutionOutcome.ROLLED_BACK:
            self._notify("error", f"{label.capitalize()} failed: {outcome.message}", pending.event_id)
        return outcome

    async def handle(self, intents: Iterable[Intent]) -> DispatchResult:
        """Route intents from a gesture: mutations are submitted, range changes refetch."""
        passed: list[Intent] = []
        outcomes: list[MutationOutcome] = []
        for intent in intents:
            passed.append(intent)
            if isinstance(intent, RangeChangedIntent):
                await self.refresh()
            elif is_mutation(intent):
                try:
                    outcomes.append(await self.submit(intent))
                except (IntentValidationError, EventNotFoundError) as exc:
                    logger.debug("Gesture intent dropped | intent=%s | reason=%s", describe_intent(intent), exc)
        return DispatchResult(intents=tuple(passed), outcomes=tuple(outcomes))

    async def check_conflict(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        excluding_event_id: Optional[str] = None,
    ) -> list[str]:
        return await self._gateway.check_conflict(resource_id, start, end, excluding_event_id)

    def quote_early_return(self, event_id: str) -> EarlyReturnQuote:
        return quote_early_return(self.find_event(event_id), self.now())

    # -- filters and notifications ------------------------------------------

    def set_filters(self, *, search: Optional[str] = None, filter_mode: Optional[FilterMode] = None) -> None:
        with self._lock:
            if search is not None:
                self._search = search
            if filter_mode is not None:
                self._filter_mode = filter_mode

    def _notify(self, level: str, message: str, event_id: Optional[str] = None) -> None:
        with self._lock:
            self._notifications.append(
                Notification(level=level, message=message, created_at=self._clock(), event_id=event_id)
            )

    def notifications(self) -> list[Notification]:
        with self._lock:
            return list(self._notifications)

    # -- render ----------------------------------------------------------------

    def render(self) -> TimelineView:
        now = self.now()
        grid = self._controller.grid
        end_overrides, buffer_overrides = self._controller.preview_overrides()
        ghost = self._controller.ghost_placement()
        with self._lock:
            resources = self._snapshot.resources
            search = self._search
            filter_mode = self._filter_mode
            fetch_error = self._fetch_error

        rows = layout(
            grid,
            resources,
            self.current_events(),
            now,
            min_visible_minutes=self._settings.timeline_min_visible_minutes,
            search=search,
            filter_mode=filter_mode,
            end_overrides=end_overrides,
            buffer_overrides=buffer_overrides,
            in_flight_ids=self._reconciler.in_flight_ids(),
            ghost=ghost.ghost if ghost is not None else None,
        )

        selection: Optional[SelectionPreview] = None
        gesture = self._controller.gesture
        if isinstance(gesture, CreatingGesture) and gesture.dragged:
            selection = SelectionPreview(
                resource_id=gesture.resource_id,
                left=gesture.left,
                width=gesture.width,
            )

        return TimelineView(
            grid=grid,
            rows=tuple(rows),
            ghost=ghost,
            selection=selection,
            fetch_error=fetch_error,
            search=search,
            filter_mode=filter_mode,
            override_mode=self._controller.override_mode,
            pending_mutations=self._reconciler.pending_count,
        )
