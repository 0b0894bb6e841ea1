from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

from bson import ObjectId


class InventoryRecord(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    product_id: ObjectId
    current_stock: int = Field(0, ge=0)
    reserved_stock: int = Field(0, ge=0)

    @property
    def available_stock(self) -> int:
        return max(0, self.current_stock - self.reserved_stock)


class ProductTaxonomy(BaseModel):
    """Category references used for commission overrides, narrowest last."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    category_id: Optional[ObjectId] = None
    sub_category_id: Optional[ObjectId] = None
    sub_sub_category_id: Optional[ObjectId] = None
