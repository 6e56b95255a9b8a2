import asyncio
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ridematch import models
from ridematch.config import Settings
from ridematch.db import init_db
from ridematch.exceptions import UpstreamUnavailable
from ridematch.geo import Point
from ridematch.services import build_services


class FakeClock:
    """Virtual monotonic clock; `sleep` advances it and fires scheduled actions."""

    def __init__(self):
        self.now = 0.0
        self._actions = []

    def __call__(self) -> float:
        return self.now

    def at(self, when: float, action):
        self._actions.append((when, action))
        self._actions.sort(key=lambda a: a[0])

    async def sleep(self, seconds: float):
        self.now += seconds
        due = [a for a in self._actions if a[0] <= self.now]
        self._actions = [a for a in self._actions if a[0] > self.now]
        for _, action in due:
            await action()
        await asyncio.sleep(0)


class WallClock:
    def __init__(self, start=datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class FakeRedis:
    """The handful of Redis string commands the offer store uses, with TTLs."""

    def __init__(self, clock=None):
        self.values = {}
        self.expires = {}
        self.clock = clock or time.monotonic

    def _alive(self, key):
        exp = self.expires.get(key)
        if exp is not None and self.clock() >= exp:
            self.values.pop(key, None)
            self.expires.pop(key, None)
        return key in self.values

    async def set(self, key, value, ex=None):
        self.values[key] = value
        if ex is not None:
            self.expires[key] = self.clock() + ex
        else:
            self.expires.pop(key, None)
        return True

    async def get(self, key):
        return self.values.get(key) if self._alive(key) else None

    async def exists(self, *keys):
        return sum(1 for k in keys if self._alive(k))

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            if self._alive(k):
                del self.values[k]
                self.expires.pop(k, None)
                removed += 1
        return removed

    async def ping(self):
        return True

    async def aclose(self):
        pass


class FakeGeoProvider:
    def __init__(self, places=None, fail=False):
        self.places = places or {}
        self.fail = fail

    async def geocode(self, address):
        if self.fail or address not in self.places:
            raise UpstreamUnavailable(f"No results found for address: {address}")
        return self.places[address]

    async def reverse_geocode(self, lat, lon):
        if self.fail:
            raise UpstreamUnavailable("No results found for coordinates")
        for name, point in self.places.items():
            if (point.lat, point.lon) == (lat, lon):
                return name
        return f"{lat:.4f},{lon:.4f}"

    async def route_distance_duration(self, lat1, lon1, lat2, lon2):
        raise UpstreamUnavailable("routing not available in tests")


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    def dispatch(self, ride_id):
        self.dispatched.append(ride_id)

    async def shutdown(self):
        pass


async def add_user(engine, is_driver=False, lat=None, lon=None, available=True, name=None) -> int:
    async with engine.begin() as conn:
        res = await conn.execute(
            insert(models.users).values(
                name=name or ("driver" if is_driver else "rider"),
                is_driver=is_driver,
                is_available=available if is_driver else False,
                latitude=lat,
                longitude=lon,
            )
        )
        return res.inserted_primary_key[0]


async def make_engine(db_url):
    engine = create_async_engine(db_url, poolclass=NullPool)
    await init_db(engine)
    return engine


@asynccontextmanager
async def open_core(db_url, provider=None, settings=None):
    """Matching core on a fresh SQLite file, fake Redis and virtual clocks."""
    engine = await make_engine(db_url)
    clock = FakeClock()
    wall = WallClock()
    redis = FakeRedis(clock)
    svc = build_services(
        settings or Settings(),
        engine,
        redis,
        provider=provider or FakeGeoProvider(),
        sleep=clock.sleep,
        clock=clock,
        now=wall,
    )
    try:
        yield SimpleNamespace(svc=svc, engine=engine, clock=clock, wall=wall, redis=redis)
    finally:
        await engine.dispose()


def run(coro):
    return asyncio.run(coro)


KM_PER_DEGREE_LAT = 6371 * math.pi / 180


def point_north_of(origin: Point, km: float) -> Point:
    return Point(origin.lat + km / KM_PER_DEGREE_LAT, origin.lon)
