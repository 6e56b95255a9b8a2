from fastapi import APIRouter, Depends, Request
from typing import List
import logging

from . import drivers, schemas
from .cache import ping
from .exceptions import NotFound
from .geo import Point
from .services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _ride_detail(svc: Services, ride: dict) -> dict:
    return {**ride, "events": await svc.events.for_ride(ride["id"])}


# ----------------------------------------------------------------- users

@router.post("/riders", response_model=schemas.UserRegistrationResponse, status_code=201)
async def register_rider(req: schemas.UserRegister, svc: Services = Depends(get_services)):
    user = await drivers.register_user(svc.engine, req.name, req.mobile_number, is_driver=False)
    return {"user_id": user["id"], "message": "rider registered"}


@router.post("/drivers", response_model=schemas.UserRegistrationResponse, status_code=201)
async def register_driver(req: schemas.UserRegister, svc: Services = Depends(get_services)):
    user = await drivers.register_user(svc.engine, req.name, req.mobile_number, is_driver=True)
    return {"user_id": user["id"], "message": "driver registered"}


@router.post("/drivers/{driver_id}/location")
async def driver_location(driver_id: int, loc: schemas.Coordinates, svc: Services = Depends(get_services)):
    return await drivers.update_driver_location(svc.engine, driver_id, Point(loc.lat, loc.lon))


@router.post("/drivers/{driver_id}/availability")
async def driver_availability(driver_id: int, req: schemas.AvailabilityRequest, svc: Services = Depends(get_services)):
    return await drivers.set_driver_availability(svc.engine, driver_id, req.is_available)


@router.get("/drivers/{driver_id}/rides", response_model=List[schemas.RideOut])
async def driver_history(driver_id: int, limit: int = 20, offset: int = 0, svc: Services = Depends(get_services)):
    return await svc.lifecycle.history(driver_id, as_driver=True, limit=limit, offset=offset)


# ----------------------------------------------------------------- rides

@router.post("/rides/estimate", response_model=schemas.EstimateOut)
async def estimate_ride(req: schemas.EstimateRequest, svc: Services = Depends(get_services)):
    estimate = await svc.estimator.estimate(req.pickup(), req.dropoff())
    return estimate.as_dict()


@router.post("/rides", response_model=schemas.RideOut, status_code=201)
async def create_ride(req: schemas.RideCreate, svc: Services = Depends(get_services)):
    logger.info("create_ride: rider=%s pickup=(%s,%s)", req.rider_id, req.pickup_latitude, req.pickup_longitude)
    pickup = req.pickup_point()
    dropoff = req.dropoff()

    estimate = None
    if pickup is not None and dropoff is not None:
        estimate = await svc.estimator.estimate(pickup, dropoff)

    pickup_label = req.pickup_location
    if pickup is not None and not pickup_label:
        pickup_label = await svc.resolver.describe(pickup)

    ride = await svc.lifecycle.create_ride(
        req.rider_id,
        pickup,
        dropoff=req.dropoff_point(),
        pickup_label=pickup_label,
        dropoff_label=req.dropoff_location,
        estimate=estimate,
    )
    svc.dispatcher.dispatch(ride["id"])
    return ride


@router.get("/rides/share/{token}", response_model=schemas.SharedRide)
async def share_ride(token: str, svc: Services = Depends(get_services)):
    ride = await svc.lifecycle.get_by_share_token(token)
    events = await svc.events.for_ride(ride["id"])
    driver = {"id": ride["driver_id"]} if ride["driver_id"] else None
    return {**ride, "driver": driver, "events": events}


@router.get("/rides/{ride_id}", response_model=schemas.RideDetail)
async def get_ride(ride_id: int, svc: Services = Depends(get_services)):
    ride = await svc.lifecycle.get_ride(ride_id)
    return await _ride_detail(svc, ride)


@router.get("/riders/{rider_id}/rides", response_model=List[schemas.RideOut])
async def rider_history(rider_id: int, limit: int = 20, offset: int = 0, svc: Services = Depends(get_services)):
    return await svc.lifecycle.history(rider_id, limit=limit, offset=offset)


@router.get("/riders/{rider_id}/rides/active", response_model=schemas.RideDetail)
async def rider_active_ride(rider_id: int, svc: Services = Depends(get_services)):
    ride = await svc.lifecycle.active_ride(rider_id)
    if not ride:
        raise NotFound("No active ride found")
    return await _ride_detail(svc, ride)


@router.post("/rides/{ride_id}/cancel", response_model=schemas.RideDetail)
async def cancel_ride(ride_id: int, payload: schemas.CancelRequest, svc: Services = Depends(get_services)):
    logger.info("cancel_ride: ride=%s", ride_id)
    ride = await svc.lifecycle.cancel(ride_id, payload.reason)
    return await _ride_detail(svc, ride)


@router.post("/rides/{ride_id}/accept", response_model=schemas.RideDetail)
async def accept_offer(ride_id: int, payload: schemas.AcceptRequest, svc: Services = Depends(get_services)):
    logger.info("accept_offer: ride=%s driver=%s", ride_id, payload.driver_id)
    ride = await svc.negotiator.accept(ride_id, payload.driver_id)
    return await _ride_detail(svc, ride)


@router.post("/rides/{ride_id}/arrived", response_model=schemas.RideDetail)
async def mark_arrived(ride_id: int, svc: Services = Depends(get_services)):
    return await _ride_detail(svc, await svc.lifecycle.mark_arrived(ride_id))


@router.post("/rides/{ride_id}/ongoing", response_model=schemas.RideDetail)
async def mark_ongoing(ride_id: int, svc: Services = Depends(get_services)):
    return await _ride_detail(svc, await svc.lifecycle.mark_ongoing(ride_id))


@router.post("/rides/{ride_id}/completed", response_model=schemas.RideDetail)
async def mark_completed(ride_id: int, svc: Services = Depends(get_services)):
    return await _ride_detail(svc, await svc.lifecycle.mark_completed(ride_id))


@router.get("/health")
async def health_check(svc: Services = Depends(get_services)):
    redis_ok = await ping(svc.redis)
    return {"status": "ok" if redis_ok else "degraded", "redis": redis_ok}
