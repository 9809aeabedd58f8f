"""Controller layer for the timeline view, pointer gestures and ghost placement."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from backend.controllers.dependencies import get_scheduler_session
from backend.domain.intents import Intent, describe_intent
from backend.domain.models import EventPlacement, FilterMode, HeaderCell, ViewMode
from backend.services.gateway import MutationOutcome
from backend.services.interaction_service import GhostPlacement
from backend.services.scheduler_service import (
    DispatchResult,
    EventNotFoundError,
    SchedulerSession,
    TimelineView,
)
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["timeline"])


class HeaderCellResponse(BaseModel):
    label: str
    width: float = Field(gt=0.0)
    date: Optional[datetime] = None


class BufferBandResponse(BaseModel):
    left: float = Field(ge=0.0)
    width: float = Field(ge=0.0)
    start: datetime
    end: datetime


class PlacementResponse(BaseModel):
    event_id: str
    resource_id: str
    title: str
    subtitle: str
    status: str
    visual_state: str
    start: datetime
    end: datetime
    buffer_minutes: int = Field(ge=0)
    amount: float
    left: float = Field(ge=0.0)
    width: float = Field(gt=0.0)
    buffer_band: Optional[BufferBandResponse] = None
    resizable: bool
    in_flight: bool
    is_ghost: bool


class ResourceRowResponse(BaseModel):
    resource_id: str
    title: str
    subtitle: str
    image: Optional[str] = None
    tags: list[str]
    has_active_booking: bool
    placements: list[PlacementResponse]


class GhostResponse(BaseModel):
    event_id: str
    resource_id: str
    original_resource_id: str
    status: str
    moved: bool
    conflicting_event_ids: list[str]


class SelectionResponse(BaseModel):
    resource_id: str
    left: float
    width: float


class TimelineResponse(BaseModel):
    view: ViewMode
    anchor: datetime
    window_start: datetime
    window_end: datetime
    date_label: str
    total_width: float
    units_per_minute: float
    now_offset: Optional[float] = None
    main_headers: list[HeaderCellResponse]
    sub_headers: list[HeaderCellResponse]
    rows: list[ResourceRowResponse]
    ghost: Optional[GhostResponse] = None
    selection: Optional[SelectionResponse] = None
    fetch_error: bool
    search: str
    filter_mode: FilterMode
    override_mode: bool
    pending_mutations: int = Field(ge=0)


class IntentResponse(BaseModel):
    type: str
    label: str
    payload: dict[str, Any]


class OutcomeResponse(BaseModel):
    success: bool
    message: str
    created_event_id: Optional[str] = None
    displaced_event_ids: list[str] = Field(default_factory=list)


class GestureResponse(BaseModel):
    intents: list[IntentResponse]
    outcomes: list[OutcomeResponse]
    timeline: TimelineResponse


class ActionResponse(BaseModel):
    key: str
    label: str
    target_status: Optional[str] = None


class NotificationResponse(BaseModel):
    level: str
    message: str
    created_at: datetime
    event_id: Optional[str] = None


class ViewRequest(BaseModel):
    view: ViewMode
    anchor: Optional[datetime] = None


class NavigateRequest(BaseModel):
    action: Literal["prev", "next", "today"]


class FilterRequest(BaseModel):
    search: Optional[str] = Field(default=None, max_length=120)
    filter_mode: Optional[FilterMode] = None


class PointerRequest(BaseModel):
    phase: Literal["down", "move", "up", "cancel"]
    target: Literal["row", "event_edge", "buffer_edge"] = "row"
    x: float = 0.0
    resource_id: Optional[str] = None
    event_id: Optional[str] = None
    button: int = Field(default=0, ge=0)
    alt: bool = False

    @model_validator(mode="after")
    def validate_target(self) -> "PointerRequest":
        if self.phase == "down":
            if self.target == "row" and not self.resource_id:
                raise ValueError("resource_id is required when pressing on a row")
            if self.target != "row" and not self.event_id:
                raise ValueError("event_id is required when pressing on an event handle")
        return self


class ClickRequest(BaseModel):
    x: float = Field(ge=0.0)
    alt: bool = False


class QuickMaintenanceRequest(BaseModel):
    resource_id: str = Field(min_length=1)
    x: float = Field(ge=0.0)


class ProposeRequest(BaseModel):
    event_id: str = Field(min_length=1)


class GhostMoveRequest(BaseModel):
    resource_id: str = Field(min_length=1)


class OverrideRequest(BaseModel):
    enabled: bool


class GhostConfirmRequest(BaseModel):
    new_price: Optional[float] = Field(default=None, ge=0.0)


def _header(cell: HeaderCell) -> HeaderCellResponse:
    return HeaderCellResponse(label=cell.label, width=cell.width, date=cell.date)


def _placement(placement: EventPlacement) -> PlacementResponse:
    event = placement.event
    band = placement.buffer_band
    return PlacementResponse(
        event_id=event.event_id,
        resource_id=event.resource_id,
        title=event.title,
        subtitle=event.subtitle,
        status=event.status.value,
        visual_state=placement.visual_state.value,
        start=event.start,
        end=event.end,
        buffer_minutes=max(0, event.buffer_minutes),
        amount=event.amount,
        left=placement.left,
        width=placement.width,
        buffer_band=(
            BufferBandResponse(left=band.left, width=band.width, start=band.start, end=band.end)
            if band is not None
            else None
        ),
        resizable=placement.resizable,
        in_flight=placement.in_flight,
        is_ghost=placement.is_ghost,
    )


def _ghost(placement: Optional[GhostPlacement]) -> Optional[GhostResponse]:
    if placement is None:
        return None
    return GhostResponse(
        event_id=placement.ghost.event_id,
        resource_id=placement.ghost.resource_id,
        original_resource_id=placement.original_resource_id,
        status=placement.status.value,
        moved=placement.moved,
        conflicting_event_ids=list(placement.conflicting_event_ids),
    )


def timeline_response(view: TimelineView) -> TimelineResponse:
    grid = view.grid
    return TimelineResponse(
        view=grid.view,
        anchor=grid.anchor,
        window_start=grid.window_start,
        window_end=grid.window_end,
        date_label=grid.date_label,
        total_width=grid.total_width,
        units_per_minute=grid.units_per_minute,
        now_offset=grid.now_offset,
        main_headers=[_header(cell) for cell in grid.main_headers],
        sub_headers=[_header(cell) for cell in grid.sub_headers],
        rows=[
            ResourceRowResponse(
                resource_id=row.resource.resource_id,
                title=row.resource.title,
                subtitle=row.resource.subtitle,
                image=row.resource.image,
                tags=list(row.resource.tags),
                has_active_booking=row.has_active_booking,
                placements=[_placement(placement) for placement in row.placements],
            )
            for row in view.rows
        ],
        ghost=_ghost(view.ghost),
        selection=(
            SelectionResponse(
                resource_id=view.selection.resource_id,
                left=view.selection.left,
                width=view.selection.width,
            )
            if view.selection is not None
            else None
        ),
        fetch_error=view.fetch_error,
        search=view.search,
        filter_mode=view.filter_mode,
        override_mode=view.override_mode,
        pending_mutations=view.pending_mutations,
    )


def intent_response(intent: Intent) -> IntentResponse:
    return IntentResponse(
        type=type(intent).__name__,
        label=describe_intent(intent),
        payload=asdict(intent),
    )


def outcome_response(outcome: MutationOutcome) -> OutcomeResponse:
    return OutcomeResponse(
        success=outcome.success,
        message=outcome.message,
        created_event_id=outcome.created_event_id,
        displaced_event_ids=list(outcome.displaced_event_ids),
    )


def _gesture_response(session: SchedulerSession, result: DispatchResult) -> GestureResponse:
    return GestureResponse(
        intents=[intent_response(intent) for intent in result.intents],
        outcomes=[outcome_response(outcome) for outcome in result.outcomes],
        timeline=timeline_response(session.render()),
    )


@router.get("/timeline", response_model=TimelineResponse, status_code=status.HTTP_200_OK)
async def get_timeline(
    session: SchedulerSession = Depends(get_scheduler_session),
) -> TimelineResponse:
    try:
        return timeline_response(session.render())
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected timeline render failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to render timeline",
        ) from exc


@router.post("/timeline/refresh", response_model=TimelineResponse, status_code=status.HTTP_200_OK)
async def refresh_timeline(
    session: SchedulerSession = Depends(get_scheduler_session),
) -> TimelineResponse:
    await session.refresh()
    return timeline_response(session.render())


@router.post("/timeline/view", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def set_view(
    payload: ViewRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    intents: list[Intent] = []
    if payload.anchor is not None:
        session.controller.jump_to(payload.anchor)
    intents.extend(session.controller.set_view(payload.view))
    return _gesture_response(session, await session.handle(intents))


@router.post("/timeline/navigate", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def navigate(
    payload: NavigateRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    controller = session.controller
    if payload.action == "today":
        intents = controller.jump_to(session.now())
    else:
        intents = controller.navigate(1 if payload.action == "next" else -1)
    return _gesture_response(session, await session.handle(intents))


@router.post("/timeline/filters", response_model=TimelineResponse, status_code=status.HTTP_200_OK)
async def set_filters(
    payload: FilterRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> TimelineResponse:
    session.set_filters(search=payload.search, filter_mode=payload.filter_mode)
    return timeline_response(session.render())


@router.post("/gestures/pointer", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def pointer(
    payload: PointerRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    session.now()
    controller = session.controller
    intents: list[Intent] = []
    if payload.phase == "down":
        if payload.target == "row":
            intents = controller.pointer_down_row(
                payload.resource_id or "",
                payload.x,
                button=payload.button,
                alt=payload.alt,
            )
        elif payload.target == "event_edge":
            intents = controller.pointer_down_event_edge(payload.event_id or "", payload.x, button=payload.button)
        else:
            intents = controller.pointer_down_buffer_edge(payload.event_id or "", payload.x, button=payload.button)
    elif payload.phase == "move":
        intents = controller.pointer_move(payload.x)
    elif payload.phase == "up":
        intents = controller.pointer_up(payload.x)
    else:
        controller.cancel_gesture()
    return _gesture_response(session, await session.handle(intents))


@router.post("/gestures/maintenance", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def quick_maintenance(
    payload: QuickMaintenanceRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    session.now()
    intents = session.controller.add_maintenance_at(payload.resource_id, payload.x)
    return _gesture_response(session, await session.handle(intents))


@router.post("/events/{event_id}/click", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def click_event(
    event_id: str,
    payload: ClickRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    session.now()
    if session.controller.event(event_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"event {event_id} is not in the current view",
        )
    intents = session.controller.click_event(event_id, payload.x, alt=payload.alt)
    return _gesture_response(session, await session.handle(intents))


@router.get("/events/{event_id}/actions", response_model=list[ActionResponse], status_code=status.HTTP_200_OK)
async def event_actions(
    event_id: str,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> list[ActionResponse]:
    try:
        session.find_event(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    session.now()
    return [
        ActionResponse(
            key=action.key,
            label=action.label,
            target_status=action.target_status.value if action.target_status else None,
        )
        for action in session.controller.context_actions(event_id)
    ]


@router.post("/ghost", response_model=TimelineResponse, status_code=status.HTTP_200_OK)
async def propose_ghost(
    payload: ProposeRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> TimelineResponse:
    try:
        event = session.find_event(payload.event_id)
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    current = session.controller.ghost
    placement = session.controller.propose(payload.event_id)
    toggled_off = current is not None and current.event_id == payload.event_id
    if placement is None and not toggled_off:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"a {event.status.value} booking cannot be relocated",
        )
    return timeline_response(session.render())


@router.post("/ghost/move", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def move_ghost(
    payload: GhostMoveRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    if session.controller.ghost is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No booking is being relocated",
        )
    intents = session.controller.move_ghost(payload.resource_id)
    return _gesture_response(session, await session.handle(intents))


@router.post("/ghost/override", response_model=TimelineResponse, status_code=status.HTTP_200_OK)
async def set_override(
    payload: OverrideRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> TimelineResponse:
    session.controller.set_override(payload.enabled)
    return timeline_response(session.render())


@router.post("/ghost/confirm", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def confirm_ghost(
    payload: GhostConfirmRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> GestureResponse:
    session.now()
    placement = session.controller.ghost_placement()
    if placement is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No booking is being relocated",
        )
    if not placement.can_confirm:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                "Target vehicle is already booked; enable override to displace "
                f"{', '.join(placement.conflicting_event_ids)}"
            ),
        )
    intents = session.controller.confirm_ghost(payload.new_price)
    if not intents:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Booking cannot be confirmed in its current state",
        )
    return _gesture_response(session, await session.handle(intents))


@router.delete("/ghost", response_model=TimelineResponse, status_code=status.HTTP_200_OK)
async def discard_ghost(
    session: SchedulerSession = Depends(get_scheduler_session),
) -> TimelineResponse:
    session.controller.discard_ghost()
    return timeline_response(session.render())


@router.get("/notifications", response_model=list[NotificationResponse], status_code=status.HTTP_200_OK)
async def list_notifications(
    session: SchedulerSession = Depends(get_scheduler_session),
) -> list[NotificationResponse]:
    return [
        NotificationResponse(
            level=item.level,
            message=item.message,
            created_at=item.created_at,
            event_id=item.event_id,
        )
        for item in session.notifications()
    ]
