from datetime import datetime, timezone
from typing import Callable, List, Optional
from sqlalchemy import select, insert
import logging

from . import models
from .db import get_conn

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventLog:
    """Append-only audit trail of ride events.

    `record` joins the caller's transaction when given a connection, so a
    status change and its event commit or roll back together.
    """

    def __init__(self, engine, now: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.now = now

    async def record(self, ride_id: int, event: str, note: Optional[str] = None, conn=None) -> None:
        stmt = insert(models.ride_events).values(ride_id=ride_id, event=event, note=note, created_at=self.now())
        if conn is not None:
            await conn.execute(stmt)
        else:
            async with self.engine.begin() as own:
                await own.execute(stmt)
        logger.info("ride_event: ride=%s event=%s note=%s", ride_id, event, note)

    async def for_ride(self, ride_id: int) -> List[dict]:
        sel = (
            select(models.ride_events)
            .where(models.ride_events.c.ride_id == ride_id)
            .order_by(models.ride_events.c.id)
        )
        async with get_conn(self.engine) as conn:
            rows = (await conn.execute(sel)).all()
        return [dict(r._mapping) for r in rows]
