from pydantic import BaseModel, Field
from typing import List, Optional
from storefront.models.coupon import DiscountKind
from storefront.schemas.coupon import RejectionReason


class CartItemCreate(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)
    product_name: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(None, max_length=100)
    unit_price: float = Field(..., ge=0)
    discounted_unit_price: Optional[float] = Field(None, ge=0)
    quantity: int = Field(default=1, ge=1, le=10)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1, le=10)


class CartItemResponse(BaseModel):
    id: int
    product_id: str
    product_name: str
    category: Optional[str]
    quantity: int
    unit_price: float
    discounted_unit_price: Optional[float]
    total_price: float

    class Config:
        from_attributes = True


class AppliedCouponResponse(BaseModel):
    coupon_id: int
    code: str
    discount_kind: DiscountKind
    value: float
    discount_amount: float
    still_valid: bool = True
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None


class CartResponse(BaseModel):
    items: List[CartItemResponse]
    subtotal: float
    total_items: int
    applied_coupon: Optional[AppliedCouponResponse] = None
    discount_amount: float = 0.0
    final_total: float
