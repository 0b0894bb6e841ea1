from pydantic import BaseModel, Field
from typing import Optional

from config.constants import (
    DEFAULT_GLOBAL_COMMISSION_RATE,
    DEFAULT_DELIVERY_COMMISSION_RATE,
)


class DeliveryConfig(BaseModel):
    is_distance_based: bool = False
    delivery_agent_km_rate: Optional[float] = Field(None, ge=0)


class AppSettings(BaseModel):
    global_commission_rate: float = Field(DEFAULT_GLOBAL_COMMISSION_RATE, ge=0, le=100)
    default_delivery_commission_rate: float = Field(DEFAULT_DELIVERY_COMMISSION_RATE, ge=0, le=100)
    delivery_config: DeliveryConfig = Field(default_factory=DeliveryConfig)
