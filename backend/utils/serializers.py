from bson import ObjectId
from datetime import datetime

from models.order import OrderInDB


def serialize_object_id(value):
    return str(value) if isinstance(value, ObjectId) else value


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else None


def serialize_order(order: dict) -> dict:
    model = OrderInDB.model_validate(order)
    settlement = order.get("settlement") or {}

    return {
        "id": str(model.id),
        "order_number": model.order_number,
        "items": [str(i) for i in model.items],
        "status": model.status,

        "pricing": {
            "subtotal": model.subtotal,
            "shipping_fee": model.shipping_fee,
            "platform_fee": model.platform_fee,
            "discount": model.discount,
            "total": model.total,
        },

        "delivery_agent_id": serialize_object_id(model.delivery_agent_id),
        "delivery_distance_km": model.delivery_distance_km,
        "payment_reference": model.payment_reference,

        "settlement": {
            "status": settlement.get("status"),
            "pending_effects": list(settlement.get("pending_effects") or []),
        },

        "created_at": _iso(model.created_at),
        "updated_at": _iso(model.updated_at),
    }


def serialize_wallet_transaction(txn: dict) -> dict:
    return {
        "id": str(txn["_id"]),
        "payee_id": serialize_object_id(txn["payee_id"]),
        "payee_type": txn["payee_type"],
        "amount": txn["amount"],
        "type": txn["type"],
        "description": txn.get("description"),
        "reference": txn["reference"],
        "status": txn["status"],
        "order_id": serialize_object_id(txn.get("order_id")),
        "created_at": _iso(txn.get("created_at")),
    }


def serialize_withdrawal(request: dict) -> dict:
    return {
        "id": str(request["_id"]),
        "seller_id": serialize_object_id(request["seller_id"]),
        "amount": request["amount"],
        "status": request["status"],
        "payment_method": request["payment_method"],
        "account_details": request.get("account_details"),
        "remarks": request.get("remarks"),
        "payment_reference": request.get("payment_reference"),
        "created_at": _iso(request.get("created_at")),
        "updated_at": _iso(request.get("updated_at")),
    }
