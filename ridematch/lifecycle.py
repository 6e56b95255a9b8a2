"""Ride state machine: matching -> driver_assigned -> arrived -> ongoing -> completed,
with cancellation allowed from any non-terminal state.

Each transition is a single database transaction: the row is read (locked
where the backend supports it), the guard is checked, the status is
written with a conditional UPDATE on the status that was read, driver
availability is adjusted and the audit event is inserted. If any step
fails the transaction rolls back and the ride is left as it was.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError
import logging
import secrets

from . import models
from .config import Settings
from .db import get_conn
from .events import EventLog, utcnow
from .exceptions import (
    Conflict,
    NotFound,
    PreconditionFailed,
    RateLimited,
    ValidationError,
    RULE_ACTIVE_RIDE_EXISTS,
    RULE_DRIVER_UNAVAILABLE,
    RULE_INVALID_STATUS,
    RULE_PICKUP_REQUIRED,
    RULE_REASON_REQUIRED,
)
from .fares import FareEstimate
from .geo import Point

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


def new_share_token() -> str:
    return secrets.token_hex(16)


class RideLifecycle:
    def __init__(
        self,
        engine,
        events: EventLog,
        settings: Settings,
        now: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = new_share_token,
    ):
        self.engine = engine
        self.events = events
        self.now = now
        self.token_factory = token_factory
        self.max_requests = settings.RATE_LIMIT_MAX_REQUESTS
        self.window = timedelta(minutes=settings.RATE_LIMIT_WINDOW_MIN)

    # ------------------------------------------------------------------ reads

    async def _load(self, conn, ride_id: int, for_update: bool = False):
        sel = select(models.rides).where(models.rides.c.id == ride_id)
        if for_update:
            sel = sel.with_for_update()
        row = (await conn.execute(sel)).first()
        if not row:
            raise NotFound(f"ride {ride_id} not found")
        return row

    async def get_ride(self, ride_id: int) -> dict:
        async with get_conn(self.engine) as conn:
            row = await self._load(conn, ride_id)
        return dict(row._mapping)

    async def get_by_share_token(self, token: str) -> dict:
        sel = select(models.rides).where(models.rides.c.share_token == token)
        async with get_conn(self.engine) as conn:
            row = (await conn.execute(sel)).first()
        if not row:
            raise NotFound("Ride not found")
        return dict(row._mapping)

    async def active_ride(self, rider_id: int) -> Optional[dict]:
        r = models.rides.c
        sel = select(models.rides).where(r.rider_id == rider_id, r.status.in_(models.ACTIVE_STATUSES))
        async with get_conn(self.engine) as conn:
            row = (await conn.execute(sel)).first()
        return dict(row._mapping) if row else None

    async def history(self, user_id: int, as_driver: bool = False, limit: int = 20, offset: int = 0) -> List[dict]:
        r = models.rides.c
        owner = r.driver_id if as_driver else r.rider_id
        sel = (
            select(models.rides)
            .where(owner == user_id)
            .order_by(r.created_at.desc(), r.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with get_conn(self.engine) as conn:
            rows = (await conn.execute(sel)).all()
        return [dict(row._mapping) for row in rows]

    # ---------------------------------------------------------------- helpers

    async def _apply(self, conn, ride, to_status: str, **values) -> None:
        r = models.rides.c
        res = await conn.execute(
            update(models.rides)
            .where(r.id == ride.id, r.status == ride.status)
            .values(status=to_status, **values)
        )
        if res.rowcount != 1:
            raise Conflict(f"Ride {ride.id} left status {ride.status} concurrently")

    async def _release_driver(self, conn, driver_id: int) -> None:
        await conn.execute(
            update(models.users).where(models.users.c.id == driver_id).values(is_available=True)
        )

    async def _advance(self, ride_id: int, expected: str, to_status: str, release_driver: bool = False, **values) -> dict:
        async with self.engine.begin() as conn:
            ride = await self._load(conn, ride_id, for_update=True)
            if ride.status != expected:
                raise PreconditionFailed(
                    RULE_INVALID_STATUS,
                    f"Ride must be in {expected.upper()} status to mark as {to_status}.",
                )
            await self._apply(conn, ride, to_status, **values)
            if release_driver and ride.driver_id:
                await self._release_driver(conn, ride.driver_id)
            await self.events.record(ride_id, models.EVENT_STATE_CHANGE, f"Ride status changed to {to_status.upper()}", conn=conn)
            row = await self._load(conn, ride_id)
        logger.info("ride_transition: ride=%s %s->%s", ride_id, expected, to_status)
        return dict(row._mapping)

    # ------------------------------------------------------------ transitions

    async def create_ride(
        self,
        rider_id: int,
        pickup: Optional[Point],
        dropoff: Optional[Point] = None,
        pickup_label: Optional[str] = None,
        dropoff_label: Optional[str] = None,
        estimate: Optional[FareEstimate] = None,
    ) -> dict:
        """Create a ride in MATCHING.

        Guards, in order: the rider has no active ride, has made fewer than
        the allowed number of requests in the trailing window, and supplied
        pickup coordinates.
        """
        now = self.now()
        r = models.rides.c
        try:
            async with self.engine.begin() as conn:
                rider = (await conn.execute(select(models.users.c.id).where(models.users.c.id == rider_id))).first()
                if not rider:
                    raise NotFound(f"user {rider_id} not found")

                active = (
                    await conn.execute(
                        select(r.id).where(r.rider_id == rider_id, r.status.in_(models.ACTIVE_STATUSES)).limit(1)
                    )
                ).first()
                if active:
                    raise PreconditionFailed(RULE_ACTIVE_RIDE_EXISTS, "You already have an active ride.")

                recent = (
                    await conn.execute(
                        select(func.count())
                        .select_from(models.rides)
                        .where(r.rider_id == rider_id, r.created_at >= now - self.window)
                    )
                ).scalar_one()
                if recent >= self.max_requests:
                    raise RateLimited(
                        f"You have reached the maximum of {self.max_requests} ride requests "
                        f"in {int(self.window.total_seconds() // 60)} minutes."
                    )

                if pickup is None:
                    raise PreconditionFailed(
                        RULE_PICKUP_REQUIRED,
                        "Location permission is required. Pickup coordinates must be provided.",
                    )

                if dropoff is None and estimate is not None:
                    dropoff = estimate.dropoff

                res = await conn.execute(
                    insert(models.rides).values(
                        rider_id=rider_id,
                        pickup_location=pickup_label,
                        dropoff_location=dropoff_label,
                        pickup_latitude=pickup.lat,
                        pickup_longitude=pickup.lon,
                        dropoff_latitude=dropoff.lat if dropoff else None,
                        dropoff_longitude=dropoff.lon if dropoff else None,
                        distance_km=estimate.distance_km if estimate else None,
                        eta_minutes=estimate.eta_minutes if estimate else None,
                        price=estimate.price if estimate else None,
                        status=models.RIDE_MATCHING,
                        share_token=self.token_factory(),
                        created_at=now,
                    )
                )
                ride_id = res.inserted_primary_key[0]
                await self.events.record(ride_id, models.EVENT_REQUEST, f"Ride requested by user ID {rider_id}", conn=conn)
                row = await self._load(conn, ride_id)
        except IntegrityError as e:
            # a concurrent request won the partial unique index on active rides
            logger.warning("create_ride: rider=%s integrity error %s", rider_id, e)
            raise PreconditionFailed(RULE_ACTIVE_RIDE_EXISTS, "You already have an active ride.") from e

        logger.info("ride_created: id=%s rider=%s pickup=%s", ride_id, rider_id, pickup)
        return dict(row._mapping)

    async def assign_driver(self, ride_id: int, driver_id: int, note: Optional[str] = None) -> dict:
        """MATCHING -> DRIVER_ASSIGNED, binding `driver_id` and taking it off the market."""
        async with self.engine.begin() as conn:
            ride = await self._load(conn, ride_id, for_update=True)
            if ride.status != models.RIDE_MATCHING:
                raise PreconditionFailed(RULE_INVALID_STATUS, "Ride is no longer available")

            u = models.users.c
            res = await conn.execute(
                update(models.users)
                .where(u.id == driver_id, u.is_driver.is_(True), u.is_available.is_(True))
                .values(is_available=False)
            )
            if res.rowcount != 1:
                raise PreconditionFailed(RULE_DRIVER_UNAVAILABLE, f"Driver {driver_id} is not available")

            await self._apply(conn, ride, models.RIDE_DRIVER_ASSIGNED, driver_id=driver_id, assigned_at=self.now())
            await self.events.record(
                ride_id, models.EVENT_DRIVER_ASSIGNED, note or f"Driver ID {driver_id} assigned", conn=conn
            )
            row = await self._load(conn, ride_id)
        logger.info("driver_assigned: ride=%s driver=%s", ride_id, driver_id)
        return dict(row._mapping)

    async def mark_arrived(self, ride_id: int) -> dict:
        return await self._advance(ride_id, models.RIDE_DRIVER_ASSIGNED, models.RIDE_ARRIVED)

    async def mark_ongoing(self, ride_id: int) -> dict:
        return await self._advance(ride_id, models.RIDE_ARRIVED, models.RIDE_ONGOING, started_at=self.now())

    async def mark_completed(self, ride_id: int) -> dict:
        return await self._advance(
            ride_id, models.RIDE_ONGOING, models.RIDE_COMPLETED, release_driver=True, completed_at=self.now()
        )

    async def cancel(self, ride_id: int, reason: Optional[str] = None) -> dict:
        """Cancel a ride.

        Free while MATCHING; once a driver is bound a non-empty reason is
        required and the driver becomes available again.
        """
        reason = reason.strip() if reason else None
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Cancellation reason must be at most {MAX_REASON_LENGTH} characters.")

        async with self.engine.begin() as conn:
            ride = await self._load(conn, ride_id, for_update=True)
            if ride.status in models.TERMINAL_STATUSES:
                raise PreconditionFailed(RULE_INVALID_STATUS, f"Ride is already {ride.status}.")
            if ride.status != models.RIDE_MATCHING and not reason:
                raise PreconditionFailed(RULE_REASON_REQUIRED, "Cancellation reason is required after driver assignment.")

            await self._apply(conn, ride, models.RIDE_CANCELLED)
            if ride.driver_id:
                await self._release_driver(conn, ride.driver_id)
            await self.events.record(
                ride_id, models.EVENT_CANCEL, reason or "Cancelled by user before driver assignment", conn=conn
            )
            row = await self._load(conn, ride_id)
        logger.info("ride_cancelled: ride=%s from=%s", ride_id, ride.status)
        return dict(row._mapping)
