"""Controller layer for explicit booking mutations and conflict checks."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from backend.controllers.dependencies import get_scheduler_session
from backend.controllers.scheduler_controller import OutcomeResponse, outcome_response
from backend.domain.intents import (
    BufferChangeIntent,
    CreateMaintenanceIntent,
    DateChangeIntent,
    EarlyReturnIntent,
    MutationIntent,
    ReassignIntent,
    SplitBookingIntent,
    StatusChangeIntent,
)
from backend.domain.lifecycle import IntentValidationError
from backend.domain.models import EventStatus
from backend.repository.data_repository import ResourceNotFoundError
from backend.services.scheduler_service import EventNotFoundError, SchedulerSession
from backend.utils.config import get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["bookings"])


class StatusChangeRequest(BaseModel):
    status: EventStatus
    forced: bool = False


class EndChangeRequest(BaseModel):
    new_end: datetime


class BufferChangeRequest(BaseModel):
    buffer_minutes: int = Field(ge=0, le=7 * 24 * 60)


class SplitRequest(BaseModel):
    split_at: datetime


class ReassignRequest(BaseModel):
    resource_id: str = Field(min_length=1)
    price: float = Field(ge=0.0)
    override: bool = False


class EarlyReturnRequest(BaseModel):
    should_refund: bool = True


class EarlyReturnQuoteResponse(BaseModel):
    actual_return: datetime
    available_at: datetime
    buffer_minutes: int = Field(ge=0)
    original_days: int = Field(ge=1)
    chargeable_days: int = Field(ge=1)
    days_unused: int = Field(ge=0)
    daily_rate: float = Field(ge=0.0)
    new_total: float = Field(ge=0.0)
    refund_amount: float = Field(ge=0.0)


class MaintenanceRequest(BaseModel):
    start: datetime
    end: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_window(self) -> "MaintenanceRequest":
        if self.end is not None and self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class ConflictCheckRequest(BaseModel):
    resource_id: str = Field(min_length=1)
    start: datetime
    end: datetime
    excluding_event_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_window(self) -> "ConflictCheckRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class ConflictCheckResponse(BaseModel):
    has_conflict: bool
    conflicting_event_ids: list[str]


async def _submit(session: SchedulerSession, intent: MutationIntent) -> OutcomeResponse:
    try:
        outcome = await session.submit(intent)
    except IntentValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking mutation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to submit booking change",
        ) from exc
    if not outcome.success:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=outcome.message or "Booking change was rejected",
        )
    return outcome_response(outcome)


@router.post("/bookings/{event_id}/status", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
async def change_status(
    event_id: str,
    payload: StatusChangeRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    intent = StatusChangeIntent(event_id=event_id, new_status=payload.status, forced=payload.forced)
    return await _submit(session, intent)


@router.post("/bookings/{event_id}/end", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
async def change_end(
    event_id: str,
    payload: EndChangeRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    return await _submit(session, DateChangeIntent(event_id=event_id, new_end=payload.new_end))


@router.post("/bookings/{event_id}/buffer", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
async def change_buffer(
    event_id: str,
    payload: BufferChangeRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    intent = BufferChangeIntent(event_id=event_id, new_buffer_minutes=payload.buffer_minutes)
    return await _submit(session, intent)


@router.post("/bookings/{event_id}/split", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
async def split_booking(
    event_id: str,
    payload: SplitRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    return await _submit(session, SplitBookingIntent(event_id=event_id, split_at=payload.split_at))


@router.post("/bookings/{event_id}/reassign", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
async def reassign_booking(
    event_id: str,
    payload: ReassignRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    displaced: list[str] = []
    if payload.override:
        try:
            event = session.find_event(event_id)
            displaced = await session.check_conflict(
                payload.resource_id,
                event.start,
                event.end,
                excluding_event_id=event_id,
            )
        except (EventNotFoundError, ResourceNotFoundError) as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=str(exc),
            ) from exc
    intent = ReassignIntent(
        event_id=event_id,
        new_resource_id=payload.resource_id,
        new_price=payload.price,
        override=payload.override,
        displaced_event_ids=tuple(displaced),
    )
    return await _submit(session, intent)


@router.get(
    "/bookings/{event_id}/early-return-quote",
    response_model=EarlyReturnQuoteResponse,
    status_code=status.HTTP_200_OK,
)
async def early_return_quote(
    event_id: str,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> EarlyReturnQuoteResponse:
    try:
        quote = session.quote_early_return(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return EarlyReturnQuoteResponse(
        actual_return=quote.actual_return,
        available_at=quote.available_at,
        buffer_minutes=quote.buffer_minutes,
        original_days=quote.original_days,
        chargeable_days=quote.chargeable_days,
        days_unused=quote.days_unused,
        daily_rate=quote.daily_rate,
        new_total=quote.new_total,
        refund_amount=quote.refund_amount,
    )


@router.post("/bookings/{event_id}/early-return", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
async def early_return(
    event_id: str,
    payload: EarlyReturnRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    try:
        event = session.find_event(event_id)
        quote = session.quote_early_return(event_id)
    except EventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    intent = EarlyReturnIntent(
        event_id=event_id,
        new_end=quote.actual_return,
        final_price=quote.final_price(event.amount, payload.should_refund),
        refund_amount=quote.refund_amount,
        should_refund=payload.should_refund,
    )
    return await _submit(session, intent)


@router.post(
    "/resources/{resource_id}/maintenance",
    response_model=OutcomeResponse,
    status_code=status.HTTP_200_OK,
)
async def create_maintenance(
    resource_id: str,
    payload: MaintenanceRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> OutcomeResponse:
    end = payload.end or payload.start + timedelta(minutes=settings.maintenance_block_minutes)
    intent = CreateMaintenanceIntent(resource_id=resource_id, start=payload.start, end=end)
    return await _submit(session, intent)


@router.post("/conflicts/check", response_model=ConflictCheckResponse, status_code=status.HTTP_200_OK)
async def check_conflict(
    payload: ConflictCheckRequest,
    session: SchedulerSession = Depends(get_scheduler_session),
) -> ConflictCheckResponse:
    try:
        conflicts = await session.check_conflict(
            payload.resource_id,
            payload.start,
            payload.end,
            excluding_event_id=payload.excluding_event_id,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return ConflictCheckResponse(has_conflict=bool(conflicts), conflicting_event_ids=conflicts)
