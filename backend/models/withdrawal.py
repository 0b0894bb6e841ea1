from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from enum import Enum

from bson import ObjectId

from config.constants import MIN_WITHDRAWAL_AMOUNT


class WithdrawalStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    COMPLETED = "Completed"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "Bank Transfer"
    UPI = "UPI"


class WithdrawalRequest(BaseModel):
    """
    A seller asking for part of their wallet balance to be paid out.
    Money leaves the wallet on approval, not on request.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        use_enum_values=True,
        str_strip_whitespace=True,
    )

    seller_id: ObjectId
    amount: float = Field(..., ge=MIN_WITHDRAWAL_AMOUNT)
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    payment_method: PaymentMethod
    account_details: str = Field(..., min_length=1)
    remarks: Optional[str] = None

    debit_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    payment_reference: Optional[str] = None

    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
