"""Sequential driver-offer negotiation.

For a ride in MATCHING the negotiator offers the trip to one driver at a
time, nearest first. Each offer is an expiring key in the offer store; the
driver accepts by claiming (deleting) the key. The negotiator watches the
key at a fixed tick until it is claimed, expires, or the ride leaves
MATCHING through another path.
"""

from typing import Awaitable, Callable, Optional
import asyncio
import logging
import time

from . import models
from .cache import OfferStore
from .config import Settings
from .drivers import Driver, DriverLocator
from .events import EventLog
from .exceptions import NotFound, PreconditionFailed, RULE_DRIVER_UNAVAILABLE
from .geo import Address, LocationResolver, Point
from .lifecycle import RideLifecycle

logger = logging.getLogger(__name__)

# offer states
OFFER_OFFERED = "offered"
OFFER_ACCEPTED = "accepted"
OFFER_EXPIRED = "expired"
OFFER_SUPERSEDED = "superseded"


class OfferWatch:
    """State of one published offer, advanced by `tick()`.

    A key that disappears before `deadline` was claimed by the driver; a key
    that is gone at or after the deadline simply expired.
    """

    def __init__(self, offers: OfferStore, lifecycle: RideLifecycle, ride_id: int, driver_id: int, deadline: float, clock: Callable[[], float]):
        self.offers = offers
        self.lifecycle = lifecycle
        self.ride_id = ride_id
        self.driver_id = driver_id
        self.deadline = deadline
        self.clock = clock
        self.state = OFFER_OFFERED

    async def tick(self) -> str:
        if self.state != OFFER_OFFERED:
            return self.state
        if not await self.offers.exists(self.ride_id, self.driver_id):
            self.state = OFFER_ACCEPTED if self.clock() < self.deadline else OFFER_EXPIRED
            return self.state
        ride = await self.lifecycle.get_ride(self.ride_id)
        if ride["status"] != models.RIDE_MATCHING:
            await self.offers.forget(self.ride_id, self.driver_id)
            self.state = OFFER_SUPERSEDED
        return self.state

    async def expire(self) -> str:
        await self.offers.forget(self.ride_id, self.driver_id)
        if self.state == OFFER_OFFERED:
            self.state = OFFER_EXPIRED
        return self.state


class OfferNegotiator:
    def __init__(
        self,
        lifecycle: RideLifecycle,
        locator: DriverLocator,
        offers: OfferStore,
        resolver: LocationResolver,
        events: EventLog,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lifecycle = lifecycle
        self.locator = locator
        self.offers = offers
        self.resolver = resolver
        self.events = events
        self.sleep = sleep
        self.clock = clock
        self.ttl_sec = settings.OFFER_TTL_SEC
        self.poll_interval = settings.OFFER_POLL_INTERVAL_SEC
        self.poll_ticks = settings.OFFER_POLL_TICKS
        self.max_rounds = settings.MATCH_MAX_ROUNDS

    async def _pickup_point(self, ride: dict) -> Point:
        if ride["pickup_latitude"] is not None and ride["pickup_longitude"] is not None:
            return Point(ride["pickup_latitude"], ride["pickup_longitude"])
        return await self.resolver.resolve(Address(ride["pickup_location"] or ""))

    async def _offer(self, ride_id: int, driver: Driver) -> str:
        # taken before SET so the deadline never falls after the key's own expiry
        deadline = self.clock() + self.ttl_sec
        await self.offers.publish(ride_id, driver.id, self.ttl_sec)
        watch = OfferWatch(self.offers, self.lifecycle, ride_id, driver.id, deadline, self.clock)
        await self.events.record(ride_id, models.EVENT_MATCH, f"Offer sent to driver ID {driver.id}")

        for _ in range(self.poll_ticks):
            await self.sleep(self.poll_interval)
            state = await watch.tick()
            if state != OFFER_OFFERED:
                logger.info("offer_resolved: ride=%s driver=%s state=%s", ride_id, driver.id, state)
                return state

        state = await watch.expire()
        logger.info("offer_resolved: ride=%s driver=%s state=%s", ride_id, driver.id, state)
        return state

    async def run(self, ride_id: int) -> Optional[int]:
        """Negotiate a driver for `ride_id`.

        Returns the id of the driver bound to the ride by this negotiation,
        or None when the ride was resolved elsewhere, no driver was found or
        every round expired. The ride is never cancelled here.
        """
        try:
            ride = await self.lifecycle.get_ride(ride_id)
        except NotFound:
            logger.warning("negotiation_skipped: ride=%s not found", ride_id)
            return None
        if ride["status"] != models.RIDE_MATCHING:
            logger.info("negotiation_skipped: ride=%s status=%s", ride_id, ride["status"])
            return None

        pickup = await self._pickup_point(ride)
        tried = set()

        for round_no in range(1, self.max_rounds + 1):
            driver = await self.locator.find_nearest(pickup, tried)
            if driver is None:
                logger.info("negotiation_ended: ride=%s no eligible drivers round=%s", ride_id, round_no)
                return None
            tried.add(driver.id)
            logger.info("negotiation_round: ride=%s round=%s driver=%s dist_km=%.3f", ride_id, round_no, driver.id, driver.distance_km)

            state = await self._offer(ride_id, driver)
            if state == OFFER_SUPERSEDED:
                return None
            if state == OFFER_EXPIRED:
                continue

            try:
                await self.lifecycle.assign_driver(ride_id, driver.id)
            except PreconditionFailed as e:
                if e.rule == RULE_DRIVER_UNAVAILABLE:
                    logger.warning("negotiation_assign_failed: ride=%s driver=%s %s", ride_id, driver.id, e)
                    continue
                # the accept path or a cancellation got there first
                current = await self.lifecycle.get_ride(ride_id)
                logger.info("negotiation_ended: ride=%s moved on status=%s driver=%s", ride_id, current["status"], current["driver_id"])
                if current["status"] == models.RIDE_DRIVER_ASSIGNED and current["driver_id"] == driver.id:
                    return driver.id
                return None
            logger.info("negotiation_succeeded: ride=%s driver=%s", ride_id, driver.id)
            return driver.id

        logger.info("negotiation_exhausted: ride=%s rounds=%s", ride_id, self.max_rounds)
        return None

    async def accept(self, ride_id: int, driver_id: int) -> dict:
        """Driver-side acceptance of a pending offer.

        Claiming the offer key is atomic, so of several concurrent accepts
        for the same offer only one gets past the claim.
        """
        offer = await self.offers.get(ride_id, driver_id)
        if not await self.offers.claim(ride_id, driver_id):
            raise NotFound("No active offer found or offer expired")
        logger.info("offer_accepted: ride=%s driver=%s offered_at=%s", ride_id, driver_id, offer["created_at"] if offer else None)
        try:
            return await self.lifecycle.assign_driver(ride_id, driver_id, note=f"Driver ID {driver_id} accepted the offer")
        except PreconditionFailed:
            # the negotiator may have bound this same driver after seeing the claim
            ride = await self.lifecycle.get_ride(ride_id)
            if ride["status"] == models.RIDE_DRIVER_ASSIGNED and ride["driver_id"] == driver_id:
                return ride
            raise


class MatchingDispatcher:
    """Runs one negotiation task per ride, off the request path."""

    def __init__(self, negotiator: OfferNegotiator):
        self.negotiator = negotiator
        self._tasks = set()

    def dispatch(self, ride_id: int) -> asyncio.Task:
        task = asyncio.create_task(self._run(ride_id), name=f"negotiate-ride-{ride_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("negotiation_dispatched: ride=%s in_flight=%d", ride_id, len(self._tasks))
        return task

    async def _run(self, ride_id: int) -> Optional[int]:
        try:
            return await self.negotiator.run(ride_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("negotiation_failed: ride=%s", ride_id)
            return None

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
