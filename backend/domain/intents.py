"""Intents emitted by the timeline core.

Mutation intents are fulfilled by the persistence gateway. The remaining
intents are host prompts (open a form, show a popover, refetch a window).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from backend.domain.models import EventStatus


@dataclass(frozen=True)
class StatusChangeIntent:
    event_id: str
    new_status: EventStatus
    forced: bool = False


@dataclass(frozen=True)
class DateChangeIntent:
    event_id: str
    new_end: datetime


@dataclass(frozen=True)
class BufferChangeIntent:
    event_id: str
    new_buffer_minutes: int


@dataclass(frozen=True)
class SplitBookingIntent:
    event_id: str
    split_at: datetime


@dataclass(frozen=True)
class ReassignIntent:
    event_id: str
    new_resource_id: str
    new_price: float
    override: bool = False
    displaced_event_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class EarlyReturnIntent:
    event_id: str
    new_end: datetime
    final_price: float
    refund_amount: float
    should_refund: bool


@dataclass(frozen=True)
class CreateMaintenanceIntent:
    resource_id: str
    start: datetime
    end: datetime

    @property
    def event_id(self) -> str:
        # Maintenance blocks have no identity until persisted; revisions key on the row.
        return f"maintenance:{self.resource_id}:{self.start.isoformat()}"


MutationIntent = Union[
    StatusChangeIntent,
    DateChangeIntent,
    BufferChangeIntent,
    SplitBookingIntent,
    ReassignIntent,
    EarlyReturnIntent,
    CreateMaintenanceIntent,
]

MUTATION_INTENT_TYPES = (
    StatusChangeIntent,
    DateChangeIntent,
    BufferChangeIntent,
    SplitBookingIntent,
    ReassignIntent,
    EarlyReturnIntent,
    CreateMaintenanceIntent,
)


@dataclass(frozen=True)
class CreateBookingIntent:
    """A drag-selected window handed to the external creation flow."""

    resource_id: str
    start: datetime
    end: datetime
    conflicting_event_ids: tuple[str, ...] = ()

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicting_event_ids)


@dataclass(frozen=True)
class OpenCreationIntent:
    resource_id: str
    at: datetime


@dataclass(frozen=True)
class OpenDetailIntent:
    event_id: str


@dataclass(frozen=True)
class GhostMovedIntent:
    event_id: str
    resource_id: str


@dataclass(frozen=True)
class RangeChangedIntent:
    window_start: datetime
    window_end: datetime
    view: str


HostIntent = Union[
    CreateBookingIntent,
    OpenCreationIntent,
    OpenDetailIntent,
    GhostMovedIntent,
    RangeChangedIntent,
]

Intent = Union[MutationIntent, HostIntent]


def is_mutation(intent: object) -> bool:
    return isinstance(intent, MUTATION_INTENT_TYPES)


def describe_intent(intent: object) -> str:
    """Short human label used for logs and notifications."""
    labels = {
        StatusChangeIntent: "status change",
        DateChangeIntent: "date change",
        BufferChangeIntent: "buffer change",
        SplitBookingIntent: "split",
        ReassignIntent: "reassignment",
        EarlyReturnIntent: "early return",
        CreateMaintenanceIntent: "maintenance block",
        CreateBookingIntent: "create booking",
        OpenCreationIntent: "open creation",
        OpenDetailIntent: "open detail",
        GhostMovedIntent: "ghost move",
        RangeChangedIntent: "range change",
    }
    return labels.get(type(intent), type(intent).__name__)
