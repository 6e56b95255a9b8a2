from datetime import datetime, timezone
from typing import Optional
from redis.asyncio import Redis
import json
import logging

logger = logging.getLogger(__name__)


def create_redis(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


async def ping(client) -> bool:
    try:
        return await client.ping()
    except Exception as e:
        logger.warning("redis_ping_failed: %s", e)
        return False


class OfferStore:
    """Pending ride offers kept as expiring Redis keys.

    A key exists for exactly as long as the offer is pending. It disappears
    either when its TTL elapses or when somebody claims it.
    """

    def __init__(self, client):
        self.client = client

    @staticmethod
    def key(ride_id: int, driver_id: int) -> str:
        return f"ride_offer:{ride_id}:driver:{driver_id}"

    async def publish(self, ride_id: int, driver_id: int, ttl_sec: int) -> None:
        payload = {
            "ride_id": ride_id,
            "driver_id": driver_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.client.set(self.key(ride_id, driver_id), json.dumps(payload), ex=ttl_sec)
        logger.debug("offer_published: ride=%s driver=%s ttl=%s", ride_id, driver_id, ttl_sec)

    async def exists(self, ride_id: int, driver_id: int) -> bool:
        return bool(await self.client.exists(self.key(ride_id, driver_id)))

    async def get(self, ride_id: int, driver_id: int) -> Optional[dict]:
        raw = await self.client.get(self.key(ride_id, driver_id))
        return json.loads(raw) if raw else None

    async def claim(self, ride_id: int, driver_id: int) -> bool:
        """Atomically check-and-delete the offer.

        DEL reports how many keys it removed, so of several concurrent
        claimers only one ever sees 1.
        """
        removed = await self.client.delete(self.key(ride_id, driver_id))
        claimed = removed == 1
        logger.info("offer_claim: ride=%s driver=%s claimed=%s", ride_id, driver_id, claimed)
        return claimed

    async def forget(self, ride_id: int, driver_id: int) -> None:
        await self.client.delete(self.key(ride_id, driver_id))
