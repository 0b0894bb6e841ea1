from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from bson import ObjectId


class OrderStatus(str, Enum):
    RECEIVED = "Received"
    PENDING = "Pending"
    PROCESSED = "Processed"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"
    RETURNED = "Returned"


class SettlementState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SETTLED = "settled"
    REVERSED = "reversed"
    NEEDS_RECONCILIATION = "needs_reconciliation"


class LineItem(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(alias="_id")
    order_id: ObjectId
    seller_id: ObjectId
    product_id: ObjectId

    quantity: int = Field(..., gt=0)
    total: float = Field(..., ge=0)


class OrderInDB(BaseModel):
    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    id: ObjectId = Field(alias="_id")
    order_number: str
    items: List[ObjectId] = Field(default_factory=list)
    status: OrderStatus = OrderStatus.RECEIVED

    subtotal: float = 0
    shipping_fee: float = 0
    platform_fee: float = 0
    discount: float = 0
    total: float = 0

    delivery_distance_km: Optional[float] = None
    delivery_agent_id: Optional[ObjectId] = None
    payment_reference: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
