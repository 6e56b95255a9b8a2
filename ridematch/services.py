from dataclasses import dataclass
from typing import Any, Optional
import logging

from .cache import OfferStore
from .config import Settings
from .drivers import DriverLocator
from .events import EventLog
from .fares import FareEstimator
from .geo import GeoProvider, LocationResolver, MapboxGeoProvider, Point
from .lifecycle import RideLifecycle
from .negotiation import MatchingDispatcher, OfferNegotiator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Components built once at startup and shared by every request."""
    settings: Settings
    engine: Any
    redis: Any
    resolver: LocationResolver
    locator: DriverLocator
    estimator: FareEstimator
    events: EventLog
    lifecycle: RideLifecycle
    offers: OfferStore
    negotiator: OfferNegotiator
    dispatcher: Any


def build_services(settings: Settings, engine, redis, provider: Optional[GeoProvider] = None, **overrides) -> Services:
    """Wire the matching core.

    `overrides` may replace `now`, `sleep`, `clock` or `dispatcher`, which is
    how tests run on virtual time.
    """
    if provider is None:
        provider = MapboxGeoProvider(settings.MAPBOX_ACCESS_TOKEN, settings.MAPBOX_BASE_URL, settings.GEO_TIMEOUT_SEC)
    resolver = LocationResolver(provider, Point(settings.FALLBACK_LAT, settings.FALLBACK_LON))

    clock_kwargs = {k: overrides[k] for k in ("sleep", "clock") if k in overrides}
    now_kwargs = {"now": overrides["now"]} if "now" in overrides else {}

    events = EventLog(engine, **now_kwargs)
    lifecycle = RideLifecycle(engine, events, settings, **now_kwargs)
    locator = DriverLocator(engine)
    offers = OfferStore(redis)
    negotiator = OfferNegotiator(lifecycle, locator, offers, resolver, events, settings, **clock_kwargs)
    dispatcher = overrides.get("dispatcher") or MatchingDispatcher(negotiator)

    logger.info("services_built: ttl=%ss ticks=%s rounds=%s", settings.OFFER_TTL_SEC, settings.OFFER_POLL_TICKS, settings.MATCH_MAX_ROUNDS)
    return Services(
        settings=settings,
        engine=engine,
        redis=redis,
        resolver=resolver,
        locator=locator,
        estimator=FareEstimator(resolver, settings),
        events=events,
        lifecycle=lifecycle,
        offers=offers,
        negotiator=negotiator,
        dispatcher=dispatcher,
    )
