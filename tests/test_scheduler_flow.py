from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.controllers.booking_controller import router as booking_router
from backend.controllers.scheduler_controller import router as timeline_router
from backend.domain.intents import BufferChangeIntent, DateChangeIntent
from backend.domain.models import EventStatus, ViewMode
from backend.repository.data_repository import DataRepository
from backend.services.gateway import GatewayError, MutationOutcome, RepositoryScheduleGateway
from backend.services.scheduler_service import SchedulerSession
from backend.utils.config import get_settings


NOW = datetime(2026, 3, 4, 12, 0)


class RecordingGateway(RepositoryScheduleGateway):
    """Repository gateway that remembers reassignment calls."""

    def __init__(self, repository: DataRepository) -> None:
        super().__init__(repository)
        self.reassign_calls: list[tuple] = []

    async def submit_reassign(self, event_id, new_resource_id, new_price, override=False, displaced_event_ids=()):
        self.reassign_calls.append((event_id, new_resource_id, new_price, override, tuple(displaced_event_ids)))
        return await super().submit_reassign(
            event_id,
            new_resource_id,
            new_price,
            override=override,
            displaced_event_ids=displaced_event_ids,
        )


class OfflineWritesGateway(RepositoryScheduleGateway):
    async def submit_buffer_change(self, event_id, buffer_minutes):
        return MutationOutcome(success=False, message="storage offline")


class OfflineGateway(RepositoryScheduleGateway):
    async def fetch_schedule_view(self, range_start, range_end):
        raise GatewayError("storage offline")


class BrokenGateway(RepositoryScheduleGateway):
    async def submit_buffer_change(self, event_id, buffer_minutes):
        raise RuntimeError("socket closed")


class BrokenFetchGateway(RepositoryScheduleGateway):
    async def fetch_schedule_view(self, range_start, range_end):
        raise RuntimeError("socket closed")


class DelayedAnswerGateway(RepositoryScheduleGateway):
    """Writes date changes in call order but answers only when released."""

    failing_calls: frozenset = frozenset()

    def __init__(self, repository: DataRepository) -> None:
        super().__init__(repository)
        self.releases: list[asyncio.Event] = []

    async def submit_date_change(self, event_id, new_end):
        if len(self.releases) in self.failing_calls:
            outcome = MutationOutcome(success=False, message="storage offline")
        else:
            outcome = await super().submit_date_change(event_id, new_end)
        release = asyncio.Event()
        self.releases.append(release)
        await release.wait()
        return outcome


class SecondWriteFailsGateway(DelayedAnswerGateway):
    failing_calls = frozenset({1})


class HeldFetchGateway(RepositoryScheduleGateway):
    """Holds back the next fetch response until the test releases it."""

    def __init__(self, repository: DataRepository) -> None:
        super().__init__(repository)
        self.hold_next = False
        self.held: asyncio.Event | None = None

    async def fetch_schedule_view(self, range_start, range_end):
        snapshot = await super().fetch_schedule_view(range_start, range_end)
        if self.hold_next:
            self.hold_next = False
            self.held = asyncio.Event()
            await self.held.wait()
        return snapshot


async def _wait_for_calls(gateway: DelayedAnswerGateway, count: int) -> None:
    while len(gateway.releases) < count:
        await asyncio.sleep(0)


def _build_test_settings(tmp_path):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / "scheduler_flow.db",
        seed_demo_fleet=False,
    )


def _seed(repository: DataRepository) -> None:
    repository.create_car("car-a", "Toyota", "Vios", "NAB 1234", transmission="Automatic", fuel_type="Gas", buffer_hours=2)
    repository.create_car("car-b", "Honda", "City", "NCD 5678", transmission="Automatic", fuel_type="Gas")
    repository.create_car("car-c", "Nissan", "Terra", "NIJ 7890", transmission="Automatic", fuel_type="Diesel")
    repository.create_booking(
        "car-a",
        datetime(2026, 3, 2, 9),
        datetime(2026, 3, 4, 9),
        booking_id="bk-ongoing",
        customer_name="Maria Santos",
        status=EventStatus.ONGOING,
        total_price=4500.0,
    )
    repository.create_booking(
        "car-b",
        datetime(2026, 3, 4, 8),
        datetime(2026, 3, 6, 8),
        booking_id="bk-conf",
        customer_name="Jose Cruz",
        status=EventStatus.CONFIRMED,
        total_price=4000.0,
    )
    repository.create_booking(
        "car-a",
        datetime(2026, 3, 5, 10),
        datetime(2026, 3, 6, 10),
        booking_id="bk-pend",
        customer_name="Ana Reyes",
        status=EventStatus.PENDING,
        total_price=2000.0,
    )
    repository.create_booking(
        "car-c",
        datetime(2026, 3, 3, 9),
        datetime(2026, 3, 6, 9),
        booking_id="bk-trip",
        customer_name="Paolo Garcia",
        status=EventStatus.ONGOING,
        total_price=3000.0,
    )


def _build_test_app(tmp_path, gateway_cls=RepositoryScheduleGateway):
    settings = _build_test_settings(tmp_path)
    repository = DataRepository(settings)
    repository.initialize_database()
    _seed(repository)

    gateway = gateway_cls(repository)
    session = SchedulerSession(
        gateway=gateway,
        settings=settings,
        clock=lambda: NOW,
        view=ViewMode.WEEK,
        anchor=NOW,
    )
    assert asyncio.run(session.refresh())

    app = FastAPI()
    app.include_router(timeline_router)
    app.include_router(booking_router)
    app.state.repository = repository
    app.state.gateway = gateway
    app.state.scheduler_session = session
    return app, repository, gateway, session


def _placements(timeline: dict) -> dict[str, dict]:
    return {
        placement["event_id"]: placement
        for row in timeline["rows"]
        for placement in row["placements"]
        if not placement["is_ghost"]
    }


def test_timeline_classifies_bookings(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    response = client.get("/timeline")
    assert response.status_code == 200
    timeline = response.json()

    assert timeline["view"] == "week"
    assert timeline["window_start"] == "2026-03-02T00:00:00"
    assert timeline["date_label"] == "Mar 2 - Mar 8, 2026"
    assert [row["title"] for row in timeline["rows"]] == ["Honda City", "Nissan Terra", "Toyota Vios"]

    placements = _placements(timeline)
    assert placements["bk-ongoing"]["visual_state"] == "overdue_return"
    assert placements["bk-conf"]["visual_state"] == "late_arrival"
    assert placements["bk-pend"]["visual_state"] == "pending"
    assert placements["bk-trip"]["visual_state"] == "ongoing"
    assert placements["bk-ongoing"]["buffer_minutes"] == 120
    assert placements["bk-ongoing"]["buffer_band"]["width"] == pytest.approx(160.0)


def test_filters_narrow_rows(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    response = client.post("/timeline/filters", json={"search": "terra", "filter_mode": "booked"})

    assert response.status_code == 200
    assert [row["resource_id"] for row in response.json()["rows"]] == ["car-c"]


def test_drag_on_row_emits_create_booking_intent(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    # Week view: one day is 1920 units, so Saturday 10:00 sits at 5 * 1920 + 800.
    down = client.post("/gestures/pointer", json={"phase": "down", "target": "row", "resource_id": "car-b", "x": 10400})
    assert down.status_code == 200
    move = client.post("/gestures/pointer", json={"phase": "move", "x": 10600})
    assert move.json()["timeline"]["selection"]["resource_id"] == "car-b"
    up = client.post("/gestures/pointer", json={"phase": "up", "x": 10720})

    intents = up.json()["intents"]
    assert len(intents) == 1
    assert intents[0]["type"] == "CreateBookingIntent"
    assert intents[0]["payload"]["start"] == "2026-03-07T10:00:00"
    assert intents[0]["payload"]["end"] == "2026-03-07T14:00:00"
    assert intents[0]["payload"]["conflicting_event_ids"] == []
    assert up.json()["timeline"]["selection"] is None


def test_pointer_down_on_row_requires_resource(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    response = client.post("/gestures/pointer", json={"phase": "down", "target": "row", "x": 10})

    assert response.status_code == 422


def test_blocked_ghost_never_reaches_gateway(tmp_path):
    app, repository, gateway, _ = _build_test_app(tmp_path, RecordingGateway)
    client = TestClient(app)

    proposed = client.post("/ghost", json={"event_id": "bk-pend"})
    assert proposed.status_code == 200
    assert proposed.json()["ghost"]["status"] == "ready"

    moved = client.post("/ghost/move", json={"resource_id": "car-b"})
    assert moved.status_code == 200
    ghost = moved.json()["timeline"]["ghost"]
    assert ghost["status"] == "blocked"
    assert ghost["conflicting_event_ids"] == ["bk-conf"]

    confirm = client.post("/ghost/confirm", json={})
    assert confirm.status_code == 409
    assert gateway.reassign_calls == []
    assert repository.get_event("bk-pend").resource_id == "car-a"


def test_override_ghost_reassigns_and_displaces(tmp_path):
    app, repository, gateway, _ = _build_test_app(tmp_path, RecordingGateway)
    client = TestClient(app)

    client.post("/ghost", json={"event_id": "bk-pend"})
    client.post("/ghost/move", json={"resource_id": "car-b"})
    override = client.post("/ghost/override", json={"enabled": True})
    assert override.json()["ghost"]["status"] == "force_override"

    confirm = client.post("/ghost/confirm", json={"new_price": 2500})

    assert confirm.status_code == 200
    body = confirm.json()
    assert body["outcomes"][0]["success"] is True
    assert body["outcomes"][0]["displaced_event_ids"] == ["bk-conf"]
    assert gateway.reassign_calls == [("bk-pend", "car-b", 2500.0, True, ("bk-conf",))]
    assert body["timeline"]["ghost"] is None

    placements = _placements(body["timeline"])
    assert placements["bk-conf"]["visual_state"] == "displaced"
    assert placements["bk-pend"]["resource_id"] == "car-b"
    assert repository.get_event("bk-pend").status is EventStatus.CONFIRMED
    assert repository.get_event("bk-conf").status is EventStatus.DISPLACED


def test_ghost_for_ongoing_booking_is_rejected(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    assert client.post("/ghost", json={"event_id": "bk-trip"}).status_code == 400
    assert client.post("/ghost", json={"event_id": "missing"}).status_code == 404
    assert client.post("/ghost/move", json={"resource_id": "car-b"}).status_code == 404


def test_status_endpoint_applies_guided_transitions(tmp_path):
    app, repository, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    released = client.post("/bookings/bk-conf/status", json={"status": "ongoing"})
    assert released.status_code == 200
    assert repository.get_event("bk-conf").status is EventStatus.ONGOING

    skipped = client.post("/bookings/bk-pend/status", json={"status": "completed"})
    assert skipped.status_code == 400

    forced = client.post("/bookings/bk-pend/status", json={"status": "completed", "forced": True})
    assert forced.status_code == 200
    assert repository.get_event("bk-pend").status is EventStatus.COMPLETED

    assert client.post("/bookings/missing/status", json={"status": "confirmed"}).status_code == 404


def test_early_return_quote_and_commit(tmp_path):
    app, repository, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    quote = client.get("/bookings/bk-trip/early-return-quote")
    assert quote.status_code == 200
    assert quote.json()["chargeable_days"] == 2
    assert quote.json()["days_unused"] == 1
    assert quote.json()["refund_amount"] == pytest.approx(1000.0)

    response = client.post("/bookings/bk-trip/early-return", json={"should_refund": True})

    assert response.status_code == 200
    event = repository.get_event("bk-trip")
    assert event.status is EventStatus.COMPLETED
    assert event.end == NOW
    assert event.amount == pytest.approx(2000.0)
    assert repository.list_refunds("bk-trip") == [1000.0]


def test_overdue_booking_cannot_be_returned_early(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    response = client.post("/bookings/bk-ongoing/early-return", json={"should_refund": True})

    assert response.status_code == 400


def test_event_actions_and_conflict_check(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    actions = client.get("/events/bk-conf/actions")
    assert actions.status_code == 200
    assert "mark_no_show" in [action["key"] for action in actions.json()]
    assert client.get("/events/missing/actions").status_code == 404

    conflict = client.post(
        "/conflicts/check",
        json={"resource_id": "car-b", "start": "2026-03-05T09:00:00", "end": "2026-03-05T12:00:00"},
    )
    assert conflict.json() == {"has_conflict": True, "conflicting_event_ids": ["bk-conf"]}

    backwards = client.post(
        "/conflicts/check",
        json={"resource_id": "car-b", "start": "2026-03-05T12:00:00", "end": "2026-03-05T09:00:00"},
    )
    assert backwards.status_code == 422


def test_quick_maintenance_creates_block(tmp_path):
    app, repository, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    # Friday 2026-03-06 12:00 in the week view.
    response = client.post("/gestures/maintenance", json={"resource_id": "car-b", "x": 4 * 1920 + 960})

    assert response.status_code == 200
    outcome = response.json()["outcomes"][0]
    assert outcome["success"] is True
    block = repository.get_event(outcome["created_event_id"])
    assert block.status is EventStatus.MAINTENANCE
    assert block.start == datetime(2026, 3, 6, 12)
    assert block.end == datetime(2026, 3, 7, 12)


def test_navigation_refetches_next_window(tmp_path):
    app, _, _, _ = _build_test_app(tmp_path)
    client = TestClient(app)

    response = client.post("/timeline/navigate", json={"action": "next"})

    body = response.json()
    assert body["intents"][0]["type"] == "RangeChangedIntent"
    assert body["timeline"]["window_start"] == "2026-03-09T00:00:00"
    assert all(not row["placements"] for row in body["timeline"]["rows"])

    today = client.post("/timeline/navigate", json={"action": "today"})
    assert today.json()["timeline"]["window_start"] == "2026-03-02T00:00:00"


def test_rejected_write_rolls_back_optimistic_patch(tmp_path):
    app, _, _, session = _build_test_app(tmp_path, OfflineWritesGateway)
    client = TestClient(app)

    response = client.post("/bookings/bk-conf/buffer", json={"buffer_minutes": 180})

    assert response.status_code == 409
    assert response.json()["detail"] == "storage offline"
    assert session.find_event("bk-conf").buffer_minutes == 0
    assert session.notifications()[-1].level == "error"

    outcome = asyncio.run(session.submit(BufferChangeIntent("bk-conf", 60)))
    assert not outcome.success
    assert session.render().pending_mutations == 0


def test_failed_fetch_shows_empty_grid(tmp_path):
    settings = _build_test_settings(tmp_path)
    repository = DataRepository(settings)
    repository.initialize_database()
    session = SchedulerSession(
        gateway=OfflineGateway(repository),
        settings=settings,
        clock=lambda: NOW,
        view=ViewMode.DAY,
    )

    assert asyncio.run(session.refresh()) is False

    view = session.render()
    assert session.fetch_error
    assert view.fetch_error
    assert view.rows == ()
    assert view.grid.window_start == datetime(2026, 3, 4)
    assert session.notifications()[-1].message == "Could not load the schedule"


def test_missing_session_returns_service_unavailable():
    app = FastAPI()
    app.include_router(timeline_router)
    client = TestClient(app)

    assert client.get("/timeline").status_code == 503


def test_unexpected_write_failure_rolls_back(tmp_path):
    _, _, _, session = _build_test_app(tmp_path, BrokenGateway)

    outcome = asyncio.run(session.submit(BufferChangeIntent("bk-conf", 60)))

    assert not outcome.success
    assert outcome.message == "socket closed"
    assert session.find_event("bk-conf").buffer_minutes == 0
    assert session.render().pending_mutations == 0
    assert session.notifications()[-1].level == "error"


def test_unexpected_fetch_failure_shows_empty_grid(tmp_path):
    settings = _build_test_settings(tmp_path)
    repository = DataRepository(settings)
    repository.initialize_database()
    session = SchedulerSession(
        gateway=BrokenFetchGateway(repository),
        settings=settings,
        clock=lambda: NOW,
        view=ViewMode.DAY,
    )

    assert asyncio.run(session.refresh()) is False
    assert session.fetch_error
    assert session.render().rows == ()


def test_last_resize_wins_when_answers_arrive_reversed(tmp_path):
    _, repository, gateway, session = _build_test_app(tmp_path, DelayedAnswerGateway)

    async def scenario():
        first = asyncio.create_task(session.submit(DateChangeIntent("bk-pend", datetime(2026, 3, 7, 10))))
        await _wait_for_calls(gateway, 1)
        second = asyncio.create_task(session.submit(DateChangeIntent("bk-pend", datetime(2026, 3, 8, 10))))
        await _wait_for_calls(gateway, 2)
        assert session.find_event("bk-pend").end == datetime(2026, 3, 8, 10)

        gateway.releases[1].set()
        await second
        gateway.releases[0].set()
        await first

    asyncio.run(scenario())

    assert repository.get_event("bk-pend").end == datetime(2026, 3, 8, 10)
    assert session.find_event("bk-pend").end == datetime(2026, 3, 8, 10)
    assert session.render().pending_mutations == 0


def test_failed_resize_falls_back_to_earlier_saved_resize(tmp_path):
    _, repository, gateway, session = _build_test_app(tmp_path, SecondWriteFailsGateway)

    async def scenario():
        first = asyncio.create_task(session.submit(DateChangeIntent("bk-pend", datetime(2026, 3, 7, 10))))
        await _wait_for_calls(gateway, 1)
        second = asyncio.create_task(session.submit(DateChangeIntent("bk-pend", datetime(2026, 3, 8, 10))))
        await _wait_for_calls(gateway, 2)

        gateway.releases[0].set()
        assert (await first).success
        gateway.releases[1].set()
        assert not (await second).success

    asyncio.run(scenario())

    assert repository.get_event("bk-pend").end == datetime(2026, 3, 7, 10)
    assert session.find_event("bk-pend").end == datetime(2026, 3, 7, 10)
    assert session.notifications()[-1].level == "error"


def test_late_fetch_for_previous_window_is_discarded(tmp_path):
    _, _, gateway, session = _build_test_app(tmp_path, HeldFetchGateway)

    async def scenario():
        gateway.hold_next = True
        stale = asyncio.create_task(session.refresh())
        while gateway.held is None:
            await asyncio.sleep(0)

        session.controller.navigate(1)
        assert await session.refresh()

        gateway.held.set()
        return await stale

    assert asyncio.run(scenario()) is False
    assert session.controller.grid.window_start == datetime(2026, 3, 9)
    assert session.current_events() == []
