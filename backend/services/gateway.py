"""Persistence collaborator contract and the SQLite-backed implementation."""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from backend.domain.intents import (
    BufferChangeIntent,
    CreateMaintenanceIntent,
    DateChangeIntent,
    EarlyReturnIntent,
    MutationIntent,
    ReassignIntent,
    SplitBookingIntent,
    StatusChangeIntent,
    describe_intent,
)
from backend.domain.models import EventStatus, ScheduleSnapshot
from backend.repository.data_repository import BookingConflictError, DataRepository
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class GatewayError(RuntimeError):
    """Raised when the schedule view cannot be fetched."""


@dataclass(frozen=True)
class MutationOutcome:
    success: bool
    message: str = ""
    created_event_id: Optional[str] = None
    displaced_event_ids: tuple[str, ...] = ()


class ScheduleGateway(Protocol):
    async def fetch_schedule_view(self, range_start: datetime, range_end: datetime) -> ScheduleSnapshot:
        ...

    async def submit_status_change(self, event_id: str, new_status: EventStatus) -> MutationOutcome:
        ...

    async def submit_date_change(self, event_id: str, new_end: datetime) -> MutationOutcome:
        ...

    async def submit_buffer_change(self, event_id: str, buffer_minutes: int) -> MutationOutcome:
        ...

    async def submit_split(self, event_id: str, split_at: datetime) -> MutationOutcome:
        ...

    async def submit_reassign(
        self,
        event_id: str,
        new_resource_id: str,
        new_price: float,
        override: bool = False,
        displaced_event_ids: tuple[str, ...] = (),
    ) -> MutationOutcome:
        ...

    async def submit_early_return(
        self,
        event_id: str,
        new_end: datetime,
        final_price: float,
        refund_amount: float,
        should_refund: bool,
    ) -> MutationOutcome:
        ...

    async def submit_create_maintenance(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
    ) -> MutationOutcome:
        ...

    async def check_conflict(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        excluding_event_id: Optional[str] = None,
    ) -> list[str]:
        """Ids of the bookings that would overlap; an empty list means no conflict.

        The list carries more than a yes/no answer, so callers test it for
        truthiness when they only need to know whether a conflict exists.
        """


_WRITE_ERRORS = (LookupError, ValueError, BookingConflictError, sqlite3.Error)


class RepositoryScheduleGateway:
    """Runs repository calls off the event loop and reports failures as outcomes."""

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    async def fetch_schedule_view(self, range_start: datetime, range_end: datetime) -> ScheduleSnapshot:
        try:
            resources = await asyncio.to_thread(self._repository.list_resources)
            events = await asyncio.to_thread(
                self._repository.list_events_in_range,
                range_start,
                range_end,
            )
        except sqlite3.Error as exc:
            raise GatewayError(f"Schedule fetch failed: {exc}") from exc
        return ScheduleSnapshot(resources=tuple(resources), events=tuple(events))

    async def _write(self, label: str, func, *args, **kwargs) -> MutationOutcome:
        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except _WRITE_ERRORS as exc:
            logger.warning("Mutation rejected | intent=%s | reason=%s", label, exc)
            return MutationOutcome(success=False, message=str(exc))
        if isinstance(result, str):
            return MutationOutcome(success=True, message=f"{label} saved", created_event_id=result)
        if isinstance(result, list):
            return MutationOutcome(
                success=True,
                message=f"{label} saved",
                displaced_event_ids=tuple(result),
            )
        return MutationOutcome(success=True, message=f"{label} saved")

    async def submit_status_change(self, event_id: str, new_status: EventStatus) -> MutationOutcome:
        return await self._write("status change", self._repository.update_booking_status, event_id, new_status)

    async def submit_date_change(self, event_id: str, new_end: datetime) -> MutationOutcome:
        return await self._write("date change", self._repository.update_booking_end, event_id, new_end)

    async def submit_buffer_change(self, event_id: str, buffer_minutes: int) -> MutationOutcome:
        return await self._write("buffer change", self._repository.update_buffer, event_id, buffer_minutes)

    async def submit_split(self, event_id: str, split_at: datetime) -> MutationOutcome:
        return await self._write("split", self._repository.split_booking, event_id, split_at)

    async def submit_reassign(
        self,
        event_id: str,
        new_resource_id: str,
        new_price: float,
        override: bool = False,
        displaced_event_ids: tuple[str, ...] = (),
    ) -> MutationOutcome:
        return await self._write(
            "reassignment",
            self._repository.reassign_booking,
            event_id,
            new_resource_id,
            new_price,
            override=override,
            displaced_ids=displaced_event_ids,
        )

    async def submit_early_return(
        self,
        event_id: str,
        new_end: datetime,
        final_price: float,
        refund_amount: float,
        should_refund: bool,
    ) -> MutationOutcome:
        return await self._write(
            "early return",
            self._repository.process_early_return,
            event_id,
            new_end,
            final_price,
            refund_amount,
            should_refund,
        )

    async def submit_create_maintenance(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
    ) -> MutationOutcome:
        return await self._write(
            "maintenance block",
            self._repository.create_maintenance_block,
            resource_id,
            start,
            end,
        )

    async def check_conflict(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        excluding_event_id: Optional[str] = None,
    ) -> list[str]:
        return await asyncio.to_thread(
            self._repository.check_conflict,
            resource_id,
            start,
            end,
            excluding_event_id,
        )


async def submit_intent(gateway: ScheduleGateway, intent: MutationIntent) -> MutationOutcome:
    """Dispatch a mutation intent to the matching gateway call."""
    if isinstance(intent, StatusChangeIntent):
        return await gateway.submit_status_change(intent.event_id, intent.new_status)
    if isinstance(intent, DateChangeIntent):
        return await gateway.submit_date_change(intent.event_id, intent.new_end)
    if isinstance(intent, BufferChangeIntent):
        return await gateway.submit_buffer_change(intent.event_id, intent.new_buffer_minutes)
    if isinstance(intent, SplitBookingIntent):
        return await gateway.submit_split(intent.event_id, intent.split_at)
    if isinstance(intent, ReassignIntent):
        return await gateway.submit_reassign(
            intent.event_id,
            intent.new_resource_id,
            intent.new_price,
            override=intent.override,
            displaced_event_ids=intent.displaced_event_ids,
        )
    if isinstance(intent, EarlyReturnIntent):
        return await gateway.submit_early_return(
            intent.event_id,
            intent.new_end,
            intent.final_price,
            intent.refund_amount,
            intent.should_refund,
        )
    if isinstance(intent, CreateMaintenanceIntent):
        return await gateway.submit_create_maintenance(intent.resource_id, intent.start, intent.end)
    raise TypeError(f"not a mutation intent: {describe_intent(intent)}")
