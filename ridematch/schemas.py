from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime

from .geo import Address, Location, Point


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class TripLocations(BaseModel):
    """Pickup/dropoff given as a label, a coordinate pair, or both."""
    pickup_location: Optional[str] = Field(None, max_length=255)
    dropoff_location: Optional[str] = Field(None, max_length=255)
    pickup_latitude: Optional[float] = Field(None, ge=-90, le=90)
    pickup_longitude: Optional[float] = Field(None, ge=-180, le=180)
    dropoff_latitude: Optional[float] = Field(None, ge=-90, le=90)
    dropoff_longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def check_pairs(self):
        for side in ("pickup", "dropoff"):
            lat = getattr(self, f"{side}_latitude")
            lon = getattr(self, f"{side}_longitude")
            if (lat is None) != (lon is None):
                raise ValueError(f"{side}_latitude and {side}_longitude must be given together")
        return self

    def pickup_point(self) -> Optional[Point]:
        if self.pickup_latitude is None:
            return None
        return Point(self.pickup_latitude, self.pickup_longitude)

    def dropoff_point(self) -> Optional[Point]:
        if self.dropoff_latitude is None:
            return None
        return Point(self.dropoff_latitude, self.dropoff_longitude)

    def pickup(self) -> Optional[Location]:
        return self.pickup_point() or (Address(self.pickup_location) if self.pickup_location else None)

    def dropoff(self) -> Optional[Location]:
        return self.dropoff_point() or (Address(self.dropoff_location) if self.dropoff_location else None)


class EstimateRequest(TripLocations):
    @model_validator(mode="after")
    def check_both_sides(self):
        if self.pickup() is None or self.dropoff() is None:
            raise ValueError("pickup and dropoff each need a location label or coordinates")
        return self


class EstimateOut(BaseModel):
    distance_km: float
    eta_minutes: int
    price: float
    pickup_coordinates: List[float]
    dropoff_coordinates: List[float]


class RideCreate(TripLocations):
    rider_id: int = Field(..., gt=0)


class RideOut(BaseModel):
    id: int
    rider_id: int
    driver_id: Optional[int] = None
    status: str
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    price: Optional[float] = None
    share_token: str
    created_at: datetime
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RideEventOut(BaseModel):
    event: str
    note: Optional[str] = None
    created_at: datetime


class RideDetail(RideOut):
    events: List[RideEventOut] = []


class SharedEventOut(BaseModel):
    event: str
    created_at: datetime


class SharedRide(BaseModel):
    """Public view of a ride; carries no rider identity."""
    id: int
    status: str
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    price: Optional[float] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    driver: Optional[dict] = None
    events: List[SharedEventOut] = []


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AcceptRequest(BaseModel):
    driver_id: int = Field(..., gt=0)


class AvailabilityRequest(BaseModel):
    is_available: bool


class UserRegister(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    mobile_number: Optional[str] = Field(None, min_length=10, max_length=15)


class UserRegistrationResponse(BaseModel):
    user_id: int
    message: str
