"""Booking lifecycle state machine and client-side intent guards.

The guided workflow only allows the transitions in `GUIDED_TRANSITIONS`,
some of them gated on the current time. Administrators can bypass the
guards with a forced status change, which is a separate, explicitly
labelled operation. Maintenance is a parallel kind of event and never
takes part in booking transitions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from backend.domain.intents import (
    BufferChangeIntent,
    CreateMaintenanceIntent,
    DateChangeIntent,
    EarlyReturnIntent,
    ReassignIntent,
    SplitBookingIntent,
    StatusChangeIntent,
)
from backend.domain.models import Event, EventStatus


class IntentValidationError(Exception):
    """Raised when an intent fails its client-side guard."""


class TransitionError(IntentValidationError):
    """Raised when a status change is not a legal lifecycle transition."""


class EarlyReturnRequiredError(TransitionError):
    """Raised when an ongoing booking is completed before its scheduled end."""


BOOKING_STATUSES = frozenset(status for status in EventStatus if status is not EventStatus.MAINTENANCE)

GUIDED_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.PENDING: frozenset({EventStatus.CONFIRMED, EventStatus.ONGOING}),
    EventStatus.CONFIRMED: frozenset({EventStatus.ONGOING, EventStatus.NO_SHOW}),
    EventStatus.ONGOING: frozenset({EventStatus.COMPLETED}),
}

EXTENDABLE_STATUSES = frozenset({EventStatus.PENDING, EventStatus.CONFIRMED, EventStatus.ONGOING})
SPLITTABLE_STATUSES = EXTENDABLE_STATUSES
REASSIGNABLE_STATUSES = frozenset(
    {EventStatus.PENDING, EventStatus.CONFIRMED, EventStatus.DISPLACED}
)


@dataclass(frozen=True)
class LifecycleAction:
    key: str
    label: str
    target_status: Optional[EventStatus] = None


def check_transition(event: Event, target: EventStatus, now: datetime) -> None:
    """Validate a guided transition; raises TransitionError when illegal."""
    current = event.status
    if current is EventStatus.MAINTENANCE or target is EventStatus.MAINTENANCE:
        raise TransitionError("maintenance blocks do not take part in booking transitions")
    if target not in GUIDED_TRANSITIONS.get(current, frozenset()):
        raise TransitionError(
            f"{current.value} -> {target.value} is not a guided transition; use force status"
        )
    if current is EventStatus.PENDING and target is EventStatus.ONGOING and now < event.start:
        raise TransitionError("vehicle can only be released once the booking has started")
    if current is EventStatus.CONFIRMED and target is EventStatus.NO_SHOW and now <= event.start:
        raise TransitionError("no-show can only be recorded after the scheduled pick-up")
    if current is EventStatus.ONGOING and target is EventStatus.COMPLETED and now < event.end:
        raise EarlyReturnRequiredError(
            "booking is returned before its scheduled end; process it as an early return"
        )


def check_forced_transition(event: Event, target: EventStatus) -> None:
    if event.status not in BOOKING_STATUSES or target not in BOOKING_STATUSES:
        raise TransitionError("force status only applies between booking states")
    if event.status is target:
        raise TransitionError(f"booking is already {target.value}")


def can_transition(event: Event, target: EventStatus, now: datetime) -> bool:
    try:
        check_transition(event, target, now)
    except TransitionError:
        return False
    return True


def available_actions(event: Event, now: datetime) -> list[LifecycleAction]:
    """Contextual actions offered for an event at the given time."""
    actions: list[LifecycleAction] = []
    status = event.status

    if status is EventStatus.PENDING:
        actions.append(LifecycleAction("approve", "Approve booking", EventStatus.CONFIRMED))
        if now >= event.start:
            actions.append(
                LifecycleAction("approve_and_release", "Approve and release vehicle", EventStatus.ONGOING)
            )
    elif status is EventStatus.CONFIRMED:
        actions.append(LifecycleAction("release", "Release vehicle", EventStatus.ONGOING))
        if now > event.start:
            actions.append(LifecycleAction("mark_no_show", "Mark as no-show", EventStatus.NO_SHOW))
    elif status is EventStatus.ONGOING:
        if now < event.end:
            actions.append(LifecycleAction("early_return", "Process early return", EventStatus.COMPLETED))
        else:
            actions.append(LifecycleAction("process_return", "Process return", EventStatus.COMPLETED))

    if status in EXTENDABLE_STATUSES:
        actions.append(LifecycleAction("extend", "Extend or shorten"))
        actions.append(LifecycleAction("split", "Split booking"))
    if status in REASSIGNABLE_STATUSES:
        actions.append(LifecycleAction("reassign", "Move to another vehicle"))
    actions.append(LifecycleAction("adjust_buffer", "Adjust turnaround buffer"))
    if status in BOOKING_STATUSES:
        actions.append(LifecycleAction("force_status", "Force status"))
    return actions


@dataclass(frozen=True)
class EarlyReturnQuote:
    actual_return: datetime
    available_at: datetime
    buffer_minutes: int
    original_days: int
    chargeable_days: int
    days_unused: int
    daily_rate: float
    new_total: float
    refund_amount: float

    def final_price(self, original_amount: float, should_refund: bool) -> float:
        if should_refund:
            return original_amount - self.refund_amount
        return original_amount


def _whole_minutes(delta: timedelta) -> int:
    return int(delta.total_seconds() / 60)


def quote_early_return(event: Event, now: datetime) -> EarlyReturnQuote:
    """Re-price an ongoing booking returned at `now`, billed in 24h cycles."""
    actual_return = max(now, event.start)
    original_hours = _whole_minutes(event.end - event.start) // 60
    original_days = math.ceil(original_hours / 24) or 1

    used_hours = _whole_minutes(actual_return - event.start) / 60
    chargeable_days = max(1, math.ceil(used_hours / 24))
    days_unused = max(0, original_days - chargeable_days)

    amount = event.amount or 0.0
    daily_rate = amount / original_days
    new_total = daily_rate * chargeable_days
    refund_amount = max(0.0, amount - new_total)
    buffer_minutes = max(0, event.buffer_minutes)

    return EarlyReturnQuote(
        actual_return=actual_return,
        available_at=actual_return + timedelta(minutes=buffer_minutes),
        buffer_minutes=buffer_minutes,
        original_days=original_days,
        chargeable_days=chargeable_days,
        days_unused=days_unused,
        daily_rate=daily_rate,
        new_total=new_total,
        refund_amount=refund_amount,
    )


def validate_intent(intent: object, event: Optional[Event], now: datetime) -> None:
    """Run the client-side guard for a mutation intent.

    `event` is the current state of the targeted booking (None for intents
    that create new rows). Raises IntentValidationError on failure.
    """
    if isinstance(intent, CreateMaintenanceIntent):
        if intent.end <= intent.start:
            raise IntentValidationError("maintenance end must be after its start")
        return

    if event is None:
        raise IntentValidationError("intent targets an unknown booking")

    if isinstance(intent, StatusChangeIntent):
        if intent.forced:
            check_forced_transition(event, intent.new_status)
        else:
            check_transition(event, intent.new_status, now)
    elif isinstance(intent, DateChangeIntent):
        if event.status not in EXTENDABLE_STATUSES:
            raise IntentValidationError(f"cannot change dates of a {event.status.value} booking")
        if intent.new_end <= event.start:
            raise IntentValidationError("new end must be after the booking start")
    elif isinstance(intent, BufferChangeIntent):
        if intent.new_buffer_minutes < 0:
            raise IntentValidationError("buffer minutes must be >= 0")
    elif isinstance(intent, SplitBookingIntent):
        if event.status not in SPLITTABLE_STATUSES:
            raise IntentValidationError(f"cannot split a {event.status.value} booking")
        if not event.start < intent.split_at < event.end:
            raise IntentValidationError("split point must fall strictly inside the booking")
    elif isinstance(intent, ReassignIntent):
        if event.status not in REASSIGNABLE_STATUSES:
            raise IntentValidationError(f"cannot reassign a {event.status.value} booking")
        if intent.new_price < 0:
            raise IntentValidationError("price must be >= 0")
    elif isinstance(intent, EarlyReturnIntent):
        if event.status is not EventStatus.ONGOING:
            raise IntentValidationError("only ongoing bookings can be returned early")
        if not event.start <= intent.new_end < event.end:
            raise IntentValidationError("early return must fall before the scheduled end")
        if intent.refund_amount < 0 or intent.final_price < 0:
            raise IntentValidationError("refund and final price must be >= 0")
    else:
        raise IntentValidationError(f"unsupported intent {type(intent).__name__}")
