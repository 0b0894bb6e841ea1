import asyncio
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from utils.errors import NotFound, SettlementUnavailable
from utils.order_lock import acquire_order_lock, order_lock, release_order_lock


async def seeded_order(market):
    seller = await market.seller()
    product = await market.product()
    return await market.order([(seller, product, 1, 100)])


def test_single_writer(db, market):
    async def run():
        order_id = await seeded_order(market)
        first = await acquire_order_lock(db, order_id)
        second = await acquire_order_lock(db, order_id)
        await release_order_lock(db, order_id, first)
        third = await acquire_order_lock(db, order_id)
        return first, second, third

    first, second, third = asyncio.run(run())

    assert first
    assert second is None
    assert third and third != first


def test_release_with_stale_token_keeps_lease(db, market):
    async def run():
        order_id = await seeded_order(market)
        token = await acquire_order_lock(db, order_id)
        await release_order_lock(db, order_id, "someone-else")
        return token, await market.get_order(order_id)

    token, order = asyncio.run(run())

    assert order["lock"]["token"] == token


def test_expired_lease_is_taken_over(db, market):
    async def run():
        order_id = await seeded_order(market)
        await db.orders.update_one(
            {"_id": order_id},
            {"$set": {"lock": {
                "token": "crashed",
                "expires_at": datetime.utcnow() - timedelta(seconds=1),
            }}},
        )
        return await acquire_order_lock(db, order_id)

    token = asyncio.run(run())

    assert token and token != "crashed"


def test_context_manager_releases_on_error(db, market):
    async def run():
        order_id = await seeded_order(market)
        with pytest.raises(RuntimeError):
            async with order_lock(db, order_id):
                raise RuntimeError("boom")
        return await market.get_order(order_id)

    assert asyncio.run(run())["lock"] is None


def test_busy_order_raises_after_attempts(db, market):
    async def run():
        order_id = await seeded_order(market)
        await acquire_order_lock(db, order_id)
        async with order_lock(db, order_id, attempts=2, backoff_seconds=0):
            pass

    with pytest.raises(SettlementUnavailable):
        asyncio.run(run())


def test_missing_order(db):
    with pytest.raises(NotFound):
        asyncio.run(acquire_order_lock(db, ObjectId()))
