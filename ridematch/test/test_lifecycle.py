from types import SimpleNamespace

import pytest
from sqlalchemy import select

from ridematch import models
from ridematch.exceptions import Conflict, NotFound, PreconditionFailed, RateLimited, ValidationError
from ridematch.geo import Point
from ridematch.test.support import add_user, open_core, run

PICKUP = Point(33.59, -7.61)


async def _driver_available(engine, driver_id):
    async with engine.connect() as conn:
        row = (await conn.execute(select(models.users.c.is_available).where(models.users.c.id == driver_id))).first()
    return row.is_available


async def _event_kinds(core, ride_id):
    return [e["event"] for e in await core.svc.events.for_ride(ride_id)]


def test_create_ride_starts_matching_with_token_and_request_event(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            rider = await add_user(core.engine)
            ride = await core.svc.lifecycle.create_ride(rider, PICKUP, pickup_label="Maarif")
            assert ride["status"] == models.RIDE_MATCHING
            assert ride["driver_id"] is None
            assert len(ride["share_token"]) == 32
            assert ride["pickup_latitude"] == PICKUP.lat
            assert await _event_kinds(core, ride["id"]) == ["request"]
            shared = await core.svc.lifecycle.get_by_share_token(ride["share_token"])
            assert shared["id"] == ride["id"]

    run(scenario())


def test_one_active_ride_per_rider(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            first = await lc.create_ride(rider, PICKUP)

            with pytest.raises(PreconditionFailed) as exc:
                await lc.create_ride(rider, PICKUP)
            assert exc.value.rule == "active_ride_exists"

            await lc.cancel(first["id"])
            second = await lc.create_ride(rider, PICKUP)
            assert second["status"] == models.RIDE_MATCHING
            assert (await lc.active_ride(rider))["id"] == second["id"]

    run(scenario())


def test_rider_can_request_again_after_completion(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            driver = await add_user(core.engine, is_driver=True, lat=PICKUP.lat, lon=PICKUP.lon)
            ride = await lc.create_ride(rider, PICKUP)
            await lc.assign_driver(ride["id"], driver)
            await lc.mark_arrived(ride["id"])
            await lc.mark_ongoing(ride["id"])
            await lc.mark_completed(ride["id"])
            assert await lc.active_ride(rider) is None
            again = await lc.create_ride(rider, PICKUP)
            assert again["id"] != ride["id"]

    run(scenario())


def test_rate_limit_trailing_window(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            for _ in range(3):
                ride = await lc.create_ride(rider, PICKUP)
                await lc.cancel(ride["id"])
                core.wall.advance(minutes=1)

            with pytest.raises(RateLimited) as exc:
                await lc.create_ride(rider, PICKUP)
            assert exc.value.rule == "rate_limited"

            # the first request was at t0; now t0+10m+1s
            core.wall.advance(minutes=7, seconds=1)
            ride = await lc.create_ride(rider, PICKUP)
            assert ride["status"] == models.RIDE_MATCHING

    run(scenario())


def test_pickup_coordinates_required(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            rider = await add_user(core.engine)
            with pytest.raises(PreconditionFailed) as exc:
                await core.svc.lifecycle.create_ride(rider, None, pickup_label="Somewhere")
            assert exc.value.rule == "pickup_required"
            assert await core.svc.lifecycle.history(rider) == []
            with pytest.raises(NotFound):
                await core.svc.lifecycle.create_ride(4242, PICKUP)

    run(scenario())


def test_driver_progression_and_guards(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            driver = await add_user(core.engine, is_driver=True, lat=PICKUP.lat, lon=PICKUP.lon)
            ride = await lc.create_ride(rider, PICKUP)

            with pytest.raises(PreconditionFailed) as exc:
                await lc.mark_arrived(ride["id"])
            assert exc.value.rule == "invalid_status"

            core.wall.advance(minutes=1)
            assigned = await lc.assign_driver(ride["id"], driver)
            assert assigned["status"] == models.RIDE_DRIVER_ASSIGNED
            assert assigned["driver_id"] == driver
            assert not await _driver_available(core.engine, driver)

            arrived = await lc.mark_arrived(ride["id"])
            assert arrived["status"] == models.RIDE_ARRIVED
            with pytest.raises(PreconditionFailed):
                await lc.mark_arrived(ride["id"])
            with pytest.raises(PreconditionFailed):
                await lc.mark_completed(ride["id"])

            core.wall.advance(minutes=3)
            ongoing = await lc.mark_ongoing(ride["id"])
            core.wall.advance(minutes=12)
            done = await lc.mark_completed(ride["id"])

            assert done["status"] == models.RIDE_COMPLETED
            assert done["assigned_at"] <= ongoing["started_at"] <= done["completed_at"]
            assert await _driver_available(core.engine, driver)
            assert await _event_kinds(core, ride["id"]) == [
                "request", "driver_assigned", "state_change", "state_change", "state_change",
            ]

            with pytest.raises(PreconditionFailed) as exc:
                await lc.cancel(ride["id"], "too late")
            assert exc.value.rule == "invalid_status"

    run(scenario())


def test_cancellation_rules(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            driver = await add_user(core.engine, is_driver=True, lat=PICKUP.lat, lon=PICKUP.lon)
            ride = await lc.create_ride(rider, PICKUP)
            await lc.assign_driver(ride["id"], driver)

            for reason in (None, "", "   "):
                with pytest.raises(PreconditionFailed) as exc:
                    await lc.cancel(ride["id"], reason)
                assert exc.value.rule == "reason_required"
            with pytest.raises(ValidationError):
                await lc.cancel(ride["id"], "x" * 501)
            assert (await lc.get_ride(ride["id"]))["status"] == models.RIDE_DRIVER_ASSIGNED

            cancelled = await lc.cancel(ride["id"], "Driver is not moving")
            assert cancelled["status"] == models.RIDE_CANCELLED
            assert await _driver_available(core.engine, driver)
            events = await core.svc.events.for_ride(ride["id"])
            assert events[-1]["event"] == "cancel"
            assert events[-1]["note"] == "Driver is not moving"

    run(scenario())


def test_assigning_unavailable_driver_leaves_ride_untouched(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            busy = await add_user(core.engine, is_driver=True, lat=PICKUP.lat, lon=PICKUP.lon, available=False)
            ride = await lc.create_ride(rider, PICKUP)

            with pytest.raises(PreconditionFailed) as exc:
                await lc.assign_driver(ride["id"], busy)
            assert exc.value.rule == "driver_unavailable"

            current = await lc.get_ride(ride["id"])
            assert current["status"] == models.RIDE_MATCHING
            assert current["driver_id"] is None
            assert await _event_kinds(core, ride["id"]) == ["request"]

    run(scenario())


def test_stale_status_update_is_a_conflict(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            ride = await lc.create_ride(rider, PICKUP)
            stale = SimpleNamespace(id=ride["id"], status=models.RIDE_DRIVER_ASSIGNED)
            async with core.engine.begin() as conn:
                with pytest.raises(Conflict) as exc:
                    await lc._apply(conn, stale, models.RIDE_ARRIVED)
            assert exc.value.rule == "status_conflict"
            assert (await lc.get_ride(ride["id"]))["status"] == models.RIDE_MATCHING

    run(scenario())


def test_history_by_rider_and_driver(db_url):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            driver = await add_user(core.engine, is_driver=True, lat=PICKUP.lat, lon=PICKUP.lon)
            first = await lc.create_ride(rider, PICKUP)
            await lc.cancel(first["id"])
            core.wall.advance(minutes=1)
            second = await lc.create_ride(rider, PICKUP)
            await lc.assign_driver(second["id"], driver)

            assert [r["id"] for r in await lc.history(rider)] == [second["id"], first["id"]]
            assert [r["id"] for r in await lc.history(driver, as_driver=True)] == [second["id"]]

    run(scenario())


def test_active_ride_index_rejects_a_request_that_slips_past_the_guard(db_url, monkeypatch):
    async def scenario():
        async with open_core(db_url) as core:
            lc = core.svc.lifecycle
            rider = await add_user(core.engine)
            first = await lc.create_ride(rider, PICKUP)

            # a concurrent creation read no active ride before `first` committed
            monkeypatch.setattr(models, "ACTIVE_STATUSES", ())
            with pytest.raises(PreconditionFailed) as exc:
                await lc.create_ride(rider, PICKUP)
            assert exc.value.rule == "active_ride_exists"
            monkeypatch.undo()

            assert [r["id"] for r in await lc.history(rider)] == [first["id"]]
            assert await _event_kinds(core, first["id"]) == ["request"]

    run(scenario())
