from typing import List, Optional
from datetime import datetime
import uuid

from pydantic import BaseModel, Field, field_validator


class OrderItemResponse(BaseModel):
    id: int
    product_id: str
    product_name: str
    category: Optional[str]
    quantity: int
    unit_price: float
    total_price: float

    class Config:
        from_attributes = True


class CheckoutRequest(BaseModel):
    idempotency_key: Optional[str] = Field(None, min_length=36, max_length=64)

    @field_validator("idempotency_key")
    @classmethod
    def validate_idempotency_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parsed = uuid.UUID(value)
        return str(parsed)


class OrderResponse(BaseModel):
    id: int
    order_number: str
    subtotal: float
    discount_amount: float
    shipping_charge: float
    total_amount: float
    coupon_code: Optional[str]
    items: List[OrderItemResponse]
    created_at: datetime

    class Config:
        from_attributes = True
