"""Optimistic mutation bookkeeping and stale-fetch detection.

Every mutation intent is applied to the rendered snapshot immediately as a
patch. Patches carry a monotonically increasing revision; when the gateway
answers, only the latest revision for an event decides the outcome, and
older answers are reported as stale. A stale success still becomes the
committed baseline under a newer patch that has not committed, so a later
rollback falls back to the value the server stored. Committed patches stay layered on top of
the snapshot until the next authoritative refresh.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

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
from backend.domain.models import Event, EventStatus
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class ResolutionOutcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    STALE = "stale"


@dataclass(frozen=True)
class PendingMutation:
    revision: int
    intent: MutationIntent
    event_id: str
    temp_event_id: Optional[str] = None

    @property
    def label(self) -> str:
        return describe_intent(self.intent)


def apply_patch(events: Sequence[Event], mutation: PendingMutation) -> list[Event]:
    """Return a new event list with the optimistic effect of one mutation."""
    intent = mutation.intent
    patched: list[Event] = []

    if isinstance(intent, CreateMaintenanceIntent):
        patched.extend(events)
        patched.append(
            Event(
                event_id=mutation.temp_event_id or intent.event_id,
                resource_id=intent.resource_id,
                start=intent.start,
                end=intent.end,
                status=EventStatus.MAINTENANCE,
                title="Maintenance",
            )
        )
        return patched

    bumped = set(intent.displaced_event_ids) if isinstance(intent, ReassignIntent) else set()
    for event in events:
        if event.event_id in bumped:
            patched.append(replace(event, status=EventStatus.DISPLACED))
            continue
        if event.event_id != mutation.event_id:
            patched.append(event)
            continue

        if isinstance(intent, StatusChangeIntent):
            patched.append(replace(event, status=intent.new_status))
        elif isinstance(intent, DateChangeIntent):
            patched.append(replace(event, end=intent.new_end))
        elif isinstance(intent, BufferChangeIntent):
            patched.append(replace(event, buffer_minutes=intent.new_buffer_minutes))
        elif isinstance(intent, EarlyReturnIntent):
            patched.append(
                replace(
                    event,
                    end=intent.new_end,
                    status=EventStatus.COMPLETED,
                    amount=intent.final_price,
                    subtitle="Returned Early",
                )
            )
        elif isinstance(intent, SplitBookingIntent):
            patched.append(replace(event, end=intent.split_at))
            patched.append(
                replace(
                    event,
                    event_id=mutation.temp_event_id or f"{event.event_id}:part-2",
                    start=intent.split_at,
                    title=f"{event.title} (Part 2)",
                    status=EventStatus.PENDING,
                )
            )
        elif isinstance(intent, ReassignIntent):
            patched.append(
                replace(
                    event,
                    resource_id=intent.new_resource_id,
                    amount=intent.new_price,
                    status=EventStatus.CONFIRMED,
                )
            )
        else:
            patched.append(event)
    return patched


class MutationReconciler:
    """Tracks in-flight and committed optimistic patches by revision."""

    def __init__(self) -> None:
        self._revisions = itertools.count(1)
        self._pending: dict[int, PendingMutation] = {}
        self._committed: dict[int, PendingMutation] = {}
        self._latest: dict[str, int] = {}
        self._settled: dict[str, int] = {}
        self._lock = threading.Lock()

    def begin(self, intent: MutationIntent) -> PendingMutation:
        with self._lock:
            revision = next(self._revisions)
            temp_event_id: Optional[str] = None
            if isinstance(intent, SplitBookingIntent):
                temp_event_id = f"temp-split-{revision}"
            elif isinstance(intent, CreateMaintenanceIntent):
                temp_event_id = f"temp-maintenance-{revision}"
            mutation = PendingMutation(
                revision=revision,
                intent=intent,
                event_id=intent.event_id,
                temp_event_id=temp_event_id,
            )
            self._pending[revision] = mutation
            self._latest[mutation.event_id] = revision
        logger.debug(
            "Optimistic patch applied | revision=%s | event_id=%s | intent=%s",
            revision,
            mutation.event_id,
            mutation.label,
        )
        return mutation

    def resolve(self, mutation: PendingMutation, success: bool) -> ResolutionOutcome:
        with self._lock:
            self._pending.pop(mutation.revision, None)
            latest = self._latest.get(mutation.event_id, mutation.revision)
            settled = self._settled.get(mutation.event_id, 0)
            if mutation.revision < latest:
                # The server kept this value unless a newer revision has committed since.
                if success and mutation.revision > settled:
                    self._committed[mutation.revision] = mutation
                outcome = ResolutionOutcome.STALE
            elif success:
                self._committed[mutation.revision] = mutation
                self._settled[mutation.event_id] = mutation.revision
                outcome = ResolutionOutcome.COMMITTED
            else:
                outcome = ResolutionOutcome.ROLLED_BACK
            if not self._has_pending_for(mutation.event_id):
                self._latest.pop(mutation.event_id, None)
                self._settled.pop(mutation.event_id, None)
        logger.info(
            "Mutation resolved | revision=%s | event_id=%s | outcome=%s",
            mutation.revision,
            mutation.event_id,
            outcome.value,
        )
        return outcome

    def _has_pending_for(self, event_id: str) -> bool:
        return any(pending.event_id == event_id for pending in self._pending.values())

    def apply(self, events: Sequence[Event]) -> list[Event]:
        """Layer committed then pending patches over a snapshot, oldest first."""
        with self._lock:
            mutations = sorted(
                [*self._committed.values(), *self._pending.values()],
                key=lambda item: item.revision,
            )
            settled = dict(self._settled)
        patched = list(events)
        for mutation in mutations:
            if mutation.revision < settled.get(mutation.event_id, 0):
                continue
            patched = apply_patch(patched, mutation)
        return patched

    def rebase(self) -> None:
        """Drop committed patches once an authoritative snapshot has arrived."""
        with self._lock:
            self._committed.clear()

    def in_flight_ids(self) -> set[str]:
        with self._lock:
            return {mutation.event_id for mutation in self._pending.values()}

    def is_in_flight(self, event_id: str) -> bool:
        return event_id in self.in_flight_ids()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)


@dataclass(frozen=True)
class FetchTicket:
    sequence: int
    window_start: datetime
    window_end: datetime


class ViewFetchTracker:
    """Identifies the latest requested window so late responses can be dropped."""

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self._latest: Optional[FetchTicket] = None
        self._lock = threading.Lock()

    def begin_fetch(self, window_start: datetime, window_end: datetime) -> FetchTicket:
        with self._lock:
            ticket = FetchTicket(
                sequence=next(self._sequence),
                window_start=window_start,
                window_end=window_end,
            )
            self._latest = ticket
        return ticket

    def is_current(self, ticket: FetchTicket) -> bool:
        with self._lock:
            latest = self._latest
        return (
            latest is not None
            and latest.sequence == ticket.sequence
            and latest.window_start == ticket.window_start
            and latest.window_end == ticket.window_end
        )
