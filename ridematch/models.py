from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    Text,
    ForeignKey,
    Index,
    MetaData,
)


# Ride status constants
RIDE_MATCHING = "matching"
RIDE_DRIVER_ASSIGNED = "driver_assigned"
RIDE_ARRIVED = "arrived"
RIDE_ONGOING = "ongoing"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED = "cancelled"

ACTIVE_STATUSES = (RIDE_MATCHING, RIDE_DRIVER_ASSIGNED, RIDE_ARRIVED, RIDE_ONGOING)
TERMINAL_STATUSES = (RIDE_COMPLETED, RIDE_CANCELLED)

# Ride event kinds
EVENT_REQUEST = "request"
EVENT_MATCH = "match"
EVENT_DRIVER_ASSIGNED = "driver_assigned"
EVENT_STATE_CHANGE = "state_change"
EVENT_CANCEL = "cancel"


metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(200), nullable=True),
    Column("mobile_number", String(15), nullable=True),
    Column("is_driver", Boolean, nullable=False, default=False),
    Column("is_available", Boolean, nullable=False, default=False),
    Column("latitude", Float, nullable=True),
    Column("longitude", Float, nullable=True),
    Column("location_updated_at", DateTime(timezone=True), nullable=True),
)

rides = Table(
    "rides",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("rider_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("driver_id", Integer, ForeignKey("users.id"), nullable=True),
    Column("pickup_location", String(255), nullable=True),
    Column("dropoff_location", String(255), nullable=True),
    Column("pickup_latitude", Float, nullable=True),
    Column("pickup_longitude", Float, nullable=True),
    Column("dropoff_latitude", Float, nullable=True),
    Column("dropoff_longitude", Float, nullable=True),
    Column("distance_km", Float, nullable=True),
    Column("eta_minutes", Integer, nullable=True),
    Column("price", Float, nullable=True),
    Column("status", String(20), nullable=False, default=RIDE_MATCHING),
    Column("share_token", String(64), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("assigned_at", DateTime(timezone=True), nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)

# one active ride per rider, even when two creations race
Index(
    "uq_rides_active_rider",
    rides.c.rider_id,
    unique=True,
    postgresql_where=rides.c.status.in_(ACTIVE_STATUSES),
    sqlite_where=rides.c.status.in_(ACTIVE_STATUSES),
)
Index("ix_rides_rider_created", rides.c.rider_id, rides.c.created_at)
Index("ix_rides_driver", rides.c.driver_id)

ride_events = Table(
    "ride_events",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, ForeignKey("rides.id"), nullable=False, index=True),
    Column("event", String(32), nullable=False),
    Column("note", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
