from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from bson import ObjectId

from models.wallet import PayeeType


class CommissionStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class CommissionRecord(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)

    order_id: ObjectId
    line_item_id: Optional[ObjectId] = None
    payee_id: ObjectId
    payee_type: PayeeType

    order_amount: float = Field(..., ge=0)
    commission_rate: float = Field(..., ge=0)
    commission_amount: float = Field(..., ge=0)
    credited_amount: float = Field(0, ge=0)

    rate_source: Optional[str] = None
    distance_based: bool = False

    status: CommissionStatus = CommissionStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CommissionEntry(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    order_id: str
    amount: float
    rate: float
    order_amount: float
    status: CommissionStatus
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CommissionSummary(BaseModel):
    total: float = 0
    paid: float = 0
    pending: float = 0
    count: int = 0
    commissions: List[CommissionEntry] = Field(default_factory=list)
