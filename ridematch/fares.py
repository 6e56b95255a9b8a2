from dataclasses import dataclass
from math import floor
import logging

from .config import Settings
from .geo import Location, LocationResolver, Point

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FareEstimate:
    distance_km: float
    eta_minutes: int
    price: float
    pickup: Point
    dropoff: Point

    def as_dict(self) -> dict:
        return {
            "distance_km": self.distance_km,
            "eta_minutes": self.eta_minutes,
            "price": self.price,
            "pickup_coordinates": [self.pickup.lat, self.pickup.lon],
            "dropoff_coordinates": [self.dropoff.lat, self.dropoff.lon],
        }


class FareEstimator:
    """Straight-line distance, ETA at an average urban speed, and a linear price."""

    def __init__(self, resolver: LocationResolver, settings: Settings):
        self.resolver = resolver
        self.base_fare = settings.FARE_BASE
        self.per_km = settings.FARE_PER_KM
        self.per_min = settings.FARE_PER_MIN
        self.speed_kmh = settings.AVERAGE_SPEED_KMH
        self.min_eta = settings.MIN_ETA_MIN

    def eta_minutes(self, distance_km: float) -> int:
        # half-up, not banker's rounding
        return max(self.min_eta, int(floor(distance_km / self.speed_kmh * 60 + 0.5)))

    def price(self, distance_km: float, eta_minutes: int) -> float:
        return round(self.base_fare + distance_km * self.per_km + eta_minutes * self.per_min, 2)

    async def estimate(self, pickup: Location, dropoff: Location) -> FareEstimate:
        pickup_point = await self.resolver.resolve(pickup)
        dropoff_point = await self.resolver.resolve(dropoff)

        dist = pickup_point.distance_to(dropoff_point)
        eta = self.eta_minutes(dist)
        price = self.price(dist, eta)
        logger.info("estimate: pickup=%s dropoff=%s distance_km=%.3f eta=%s price=%s", pickup_point, dropoff_point, dist, eta, price)
        return FareEstimate(
            distance_km=round(dist, 2),
            eta_minutes=eta,
            price=price,
            pickup=pickup_point,
            dropoff=dropoff_point,
        )
