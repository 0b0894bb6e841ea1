import logging
from datetime import datetime

from pymongo import ReturnDocument

from models.product import InventoryRecord
from utils.errors import InsufficientStock
from utils.guards import parse_object_id

logger = logging.getLogger(__name__)

RESERVED_MARKER = "inventory.reserved_item_ids"


def available_stock(current_stock: int, reserved_stock: int) -> int:
    return max(0, current_stock - reserved_stock)


async def get_inventory(db, product_id, session=None) -> dict | None:
    doc = await db.inventory.find_one(
        {"product_id": parse_object_id(product_id, "product")},
        session=session,
    )
    if not doc:
        return None
    doc["available_stock"] = available_stock(
        doc.get("current_stock", 0), doc.get("reserved_stock", 0)
    )
    return doc


# ==============================
# Per-order markers
# ==============================
# The order remembers which line items hold a reservation, so replaying
# a transition never reserves or releases the same item twice.

async def _mark_reserved(db, order_id, item_id, session=None) -> bool:
    res = await db.orders.update_one(
        {"_id": order_id, RESERVED_MARKER: {"$ne": item_id}},
        {"$push": {RESERVED_MARKER: item_id}},
        session=session,
    )
    return res.modified_count == 1


async def _unmark_reserved(db, order_id, item_id, session=None) -> bool:
    res = await db.orders.update_one(
        {"_id": order_id, RESERVED_MARKER: item_id},
        {"$pull": {RESERVED_MARKER: item_id}},
        session=session,
    )
    return res.modified_count == 1


# ==============================
# Atomic stock moves
# ==============================

async def _reserve_stock(db, product_id, qty: int, session=None) -> None:
    now = datetime.utcnow()
    after = await db.inventory.find_one_and_update(
        {"product_id": product_id},
        {"$inc": {"reserved_stock": qty}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if after is None:
        logger.warning("INVENTORY_MISSING product=%s", product_id)
        return

    record = InventoryRecord(
        product_id=product_id,
        current_stock=after.get("current_stock", 0),
        reserved_stock=max(0, after.get("reserved_stock", 0)),
    )
    if record.reserved_stock > record.current_stock:
        await db.inventory.update_one(
            {"product_id": product_id},
            {"$inc": {"reserved_stock": -qty}},
            session=session,
        )
        raise InsufficientStock(
            product_id,
            qty,
            available_stock(record.current_stock, record.reserved_stock - qty),
        )


async def _release_stock(db, product_id, qty: int, session=None) -> None:
    now = datetime.utcnow()
    res = await db.inventory.update_one(
        {"product_id": product_id, "reserved_stock": {"$gte": qty}},
        {"$inc": {"reserved_stock": -qty}, "$set": {"updated_at": now}},
        session=session,
    )
    if res.matched_count == 1:
        return

    # Reserved stock is already below what this order holds; floor at zero.
    floored = await db.inventory.update_one(
        {"product_id": product_id, "reserved_stock": {"$lt": qty}},
        {"$set": {"reserved_stock": 0, "updated_at": now}},
        session=session,
    )
    if floored.matched_count == 1:
        logger.warning("RESERVED_STOCK_FLOORED product=%s qty=%s", product_id, qty)
    else:
        logger.warning("INVENTORY_MISSING product=%s", product_id)


async def _commit_stock(db, product_id, qty: int, session=None) -> None:
    now = datetime.utcnow()
    res = await db.inventory.update_one(
        {
            "product_id": product_id,
            "reserved_stock": {"$gte": qty},
            "current_stock": {"$gte": qty},
        },
        {
            "$inc": {"current_stock": -qty, "reserved_stock": -qty},
            "$set": {"updated_at": now},
        },
        session=session,
    )
    if res.matched_count == 0:
        logger.warning("INVENTORY_COMMIT_SKIPPED product=%s qty=%s", product_id, qty)


# ==============================
# Order-level operations
# ==============================

async def reserve_order_inventory(db, order: dict, items: list[dict], session=None) -> int:
    """
    Reserve stock for every line item not yet reserved by this order.
    On shortage, items reserved by this call are released again before
    InsufficientStock propagates.
    """
    reserved_now = []
    try:
        for item in items:
            if not await _mark_reserved(db, order["_id"], item["_id"], session=session):
                continue
            try:
                await _reserve_stock(db, item["product_id"], item["quantity"], session=session)
            except InsufficientStock:
                await _unmark_reserved(db, order["_id"], item["_id"], session=session)
                raise
            reserved_now.append(item)
    except InsufficientStock:
        for item in reversed(reserved_now):
            await _unmark_reserved(db, order["_id"], item["_id"], session=session)
            await _release_stock(db, item["product_id"], item["quantity"], session=session)
        raise

    if reserved_now:
        logger.info("INVENTORY_RESERVED order=%s items=%s", order["_id"], len(reserved_now))
    return len(reserved_now)


async def release_order_inventory(db, order: dict, items: list[dict], session=None) -> int:
    released = 0
    for item in items:
        if not await _unmark_reserved(db, order["_id"], item["_id"], session=session):
            continue
        await _release_stock(db, item["product_id"], item["quantity"], session=session)
        released += 1

    if released:
        logger.info("INVENTORY_RELEASED order=%s items=%s", order["_id"], released)
    return released


async def commit_order_inventory(db, order: dict, items: list[dict], session=None) -> int:
    """Turn this order's reservations into a stock deduction on delivery."""
    committed = 0
    for item in items:
        if not await _unmark_reserved(db, order["_id"], item["_id"], session=session):
            continue
        await _commit_stock(db, item["product_id"], item["quantity"], session=session)
        committed += 1

    if committed:
        logger.info("INVENTORY_COMMITTED order=%s items=%s", order["_id"], committed)
    return committed
