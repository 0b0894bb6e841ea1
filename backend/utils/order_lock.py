import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from pymongo import ReturnDocument

from config.constants import ORDER_LOCK_BACKOFF_SECONDS
from config.env import ORDER_LOCK_MAX_ATTEMPTS, ORDER_LOCK_TTL_SECONDS
from utils.errors import NotFound, SettlementUnavailable

logger = logging.getLogger(__name__)


async def acquire_order_lock(
    db,
    order_id,
    *,
    ttl_seconds: int = ORDER_LOCK_TTL_SECONDS,
) -> str | None:
    """
    Take the single-writer lease on an order.
    A lease past its expiry is treated as abandoned and taken over.
    Returns the lease token, or None if another writer holds it.
    """
    now = datetime.utcnow()
    token = uuid.uuid4().hex

    order = await db.orders.find_one_and_update(
        {
            "_id": order_id,
            "$or": [
                {"lock": None},
                {"lock.expires_at": {"$lt": now}},
            ],
        },
        {
            "$set": {
                "lock": {
                    "token": token,
                    "acquired_at": now,
                    "expires_at": now + timedelta(seconds=ttl_seconds),
                }
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if order:
        return token

    if not await db.orders.find_one({"_id": order_id}, {"_id": 1}):
        raise NotFound("order", order_id)
    return None


async def release_order_lock(db, order_id, token: str) -> None:
    await db.orders.update_one(
        {"_id": order_id, "lock.token": token},
        {"$set": {"lock": None}},
    )


@asynccontextmanager
async def order_lock(
    db,
    order_id,
    *,
    attempts: int = ORDER_LOCK_MAX_ATTEMPTS,
    backoff_seconds: float = ORDER_LOCK_BACKOFF_SECONDS,
):
    token = None
    for attempt in range(attempts):
        token = await acquire_order_lock(db, order_id)
        if token or attempt == attempts - 1:
            break
        delay = backoff_seconds * (2 ** attempt)
        logger.info("ORDER_LOCK_BUSY order=%s attempt=%s delay=%.2fs", order_id, attempt + 1, delay)
        await asyncio.sleep(delay)

    if not token:
        raise SettlementUnavailable(f"Order {order_id} is busy", order_id=order_id)

    try:
        yield token
    finally:
        try:
            await release_order_lock(db, order_id, token)
        except Exception:
            # Lease expiry reclaims it
            logger.exception("ORDER_LOCK_RELEASE_ERROR order=%s", order_id)
