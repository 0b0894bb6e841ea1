from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from enum import Enum

from bson import ObjectId


class PayeeType(str, Enum):
    SELLER = "SELLER"
    DELIVERY_AGENT = "DELIVERY_AGENT"


class TransactionType(str, Enum):
    CREDIT = "Credit"
    DEBIT = "Debit"


class TransactionStatus(str, Enum):
    COMPLETED = "Completed"
    PENDING = "Pending"
    FAILED = "Failed"


class WalletTransaction(BaseModel):
    """
    Append-only wallet ledger entry.
    Credits carry a positive amount, debits a negative one.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)

    payee_id: ObjectId
    payee_type: PayeeType
    amount: float
    type: TransactionType
    description: str
    reference: str
    status: TransactionStatus = TransactionStatus.COMPLETED

    order_id: Optional[ObjectId] = None
    commission_id: Optional[ObjectId] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
