import os

# In-memory Mongo has no sessions; set before any backend module reads config.
os.environ.setdefault("MONGO_TRANSACTIONS_ENABLED", "false")
os.environ.setdefault("SETTLEMENT_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("ORDER_LOCK_MAX_ATTEMPTS", "2")

from datetime import datetime

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from utils import order_hooks


class Marketplace:
    """Seeds sellers, agents, taxonomy, products and orders into a test db."""

    def __init__(self, db):
        self.db = db

    async def seller(self, commission_rate=None, name="Seller", balance=0.0):
        doc = {"_id": ObjectId(), "name": name, "balance": balance}
        if commission_rate is not None:
            doc["commission_rate"] = commission_rate
        await self.db.sellers.insert_one(doc)
        return doc["_id"]

    async def delivery_agent(self, commission_rate=None, name="Agent"):
        doc = {"_id": ObjectId(), "name": name, "balance": 0.0}
        if commission_rate is not None:
            doc["commission_rate"] = commission_rate
        await self.db.delivery_agents.insert_one(doc)
        return doc["_id"]

    async def category(self, commission_rate=None, name="Category", collection="categories"):
        doc = {"_id": ObjectId(), "name": name}
        if commission_rate is not None:
            doc["commission_rate"] = commission_rate
        await self.db[collection].insert_one(doc)
        return doc["_id"]

    async def product(
        self,
        *,
        category_id=None,
        sub_category_id=None,
        sub_sub_category_id=None,
        stock=10,
        reserved=0,
    ):
        product_id = ObjectId()
        await self.db.products.insert_one({
            "_id": product_id,
            "name": "Product",
            "category_id": category_id,
            "sub_category_id": sub_category_id,
            "sub_sub_category_id": sub_sub_category_id,
        })
        await self.db.inventory.insert_one({
            "product_id": product_id,
            "current_stock": stock,
            "reserved_stock": reserved,
        })
        return product_id

    async def order(
        self,
        lines,
        *,
        status="Received",
        delivery_agent_id=None,
        delivery_distance_km=None,
        shipping_fee=0,
    ):
        """`lines` is a list of (seller_id, product_id, quantity, total)."""
        order_id = ObjectId()
        item_ids = []
        subtotal = 0
        for seller_id, product_id, quantity, total in lines:
            item_id = ObjectId()
            await self.db.order_items.insert_one({
                "_id": item_id,
                "order_id": order_id,
                "seller_id": seller_id,
                "product_id": product_id,
                "quantity": quantity,
                "total": total,
            })
            item_ids.append(item_id)
            subtotal += total

        now = datetime.utcnow()
        await self.db.orders.insert_one({
            "_id": order_id,
            "order_number": f"ORD-{str(order_id)[-6:].upper()}",
            "items": item_ids,
            "status": status,
            "subtotal": subtotal,
            "shipping_fee": shipping_fee,
            "platform_fee": 0,
            "discount": 0,
            "total": subtotal + shipping_fee,
            "delivery_agent_id": delivery_agent_id,
            "delivery_distance_km": delivery_distance_km,
            "inventory": {"reserved_item_ids": []},
            "lock": None,
            "created_at": now,
            "updated_at": now,
        })
        return order_id

    async def get_order(self, order_id):
        return await self.db.orders.find_one({"_id": order_id})

    async def stock(self, product_id):
        return await self.db.inventory.find_one({"product_id": product_id})


@pytest.fixture
def db():
    return AsyncMongoMockClient()["marketplace_test"]


@pytest.fixture
def market(db):
    return Marketplace(db)


@pytest.fixture(autouse=True)
def clear_order_hooks():
    yield
    order_hooks._order_hooks.clear()
    order_hooks._pending_tasks.clear()
