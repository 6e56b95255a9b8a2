from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
from sqlalchemy import select, insert, update
import logging

from . import models
from .db import get_conn
from .exceptions import NotFound, PreconditionFailed, RULE_NOT_A_DRIVER
from .geo import Point

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Driver:
    id: int
    location: Point
    distance_km: float


class DriverLocator:
    """Finds the nearest eligible driver by scanning every driver record.

    There is no geospatial index; the scan is linear in the number of
    available drivers. Equidistant drivers resolve to the lowest id.
    """

    def __init__(self, engine):
        self.engine = engine

    async def find_nearest(self, pickup: Point, exclude: Iterable[int] = ()) -> Optional[Driver]:
        u = models.users.c
        sel = (
            select(u.id, u.latitude, u.longitude)
            .where(
                u.is_driver.is_(True),
                u.is_available.is_(True),
                u.latitude.isnot(None),
                u.longitude.isnot(None),
            )
            .order_by(u.id)
        )
        exclude = list(exclude)
        if exclude:
            sel = sel.where(u.id.notin_(exclude))

        async with get_conn(self.engine) as conn:
            rows = (await conn.execute(sel)).all()

        nearest = None
        for row in rows:
            location = Point(row.latitude, row.longitude)
            dist = pickup.distance_to(location)
            if nearest is None or dist < nearest.distance_km:
                nearest = Driver(id=row.id, location=location, distance_km=dist)

        if nearest:
            logger.info("find_nearest: driver=%s dist_km=%.3f candidates=%d excluded=%d", nearest.id, nearest.distance_km, len(rows), len(exclude))
        else:
            logger.info("find_nearest: no eligible driver excluded=%d", len(exclude))
        return nearest


async def register_user(engine, name: str, mobile_number: Optional[str] = None, is_driver: bool = False) -> dict:
    async with engine.begin() as conn:
        res = await conn.execute(
            insert(models.users).values(name=name, mobile_number=mobile_number, is_driver=is_driver, is_available=is_driver)
        )
        user_id = res.inserted_primary_key[0]
    logger.info("register_user: user=%s is_driver=%s", user_id, is_driver)
    return {"id": user_id, "name": name, "is_driver": is_driver}


async def _load_driver(conn, driver_id: int):
    row = (await conn.execute(select(models.users).where(models.users.c.id == driver_id))).first()
    if not row:
        raise NotFound(f"user {driver_id} not found")
    if not row.is_driver:
        raise PreconditionFailed(RULE_NOT_A_DRIVER, "Only drivers can perform this action")
    return row


async def update_driver_location(engine, driver_id: int, location: Point, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    async with engine.begin() as conn:
        await _load_driver(conn, driver_id)
        await conn.execute(
            update(models.users)
            .where(models.users.c.id == driver_id)
            .values(latitude=location.lat, longitude=location.lon, location_updated_at=now)
        )
    logger.debug("update_driver_location: driver=%s lat=%s lon=%s", driver_id, location.lat, location.lon)
    return {"driver_id": driver_id, "latitude": location.lat, "longitude": location.lon}


async def set_driver_availability(engine, driver_id: int, available: bool) -> dict:
    async with engine.begin() as conn:
        await _load_driver(conn, driver_id)
        await conn.execute(
            update(models.users).where(models.users.c.id == driver_id).values(is_available=available)
        )
    logger.info("set_driver_availability: driver=%s available=%s", driver_id, available)
    return {"driver_id": driver_id, "is_available": available}
