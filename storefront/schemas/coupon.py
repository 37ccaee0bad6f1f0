from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
import enum
from storefront.models.coupon import DiscountKind


class RejectionReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_STARTED = "not_yet_started"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    ALREADY_USED_BY_USER = "already_used_by_user"
    AUTHENTICATION_REQUIRED = "authentication_required"
    NOT_ELIGIBLE = "not_eligible"
    MINIMUM_PURCHASE_NOT_MET = "minimum_purchase_not_met"
    NOT_APPLICABLE_TO_CART_CONTENTS = "not_applicable_to_cart_contents"


class CouponState(str, enum.Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    DISABLED = "disabled"


def _normalize_code(value: str) -> str:
    normalized = value.strip().upper()
    if not normalized:
        raise ValueError("Coupon code cannot be blank")
    return normalized


def _clean_ids(values: List[str]) -> List[str]:
    cleaned = []
    for value in values:
        value = str(value).strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None
    discount_kind: DiscountKind
    value: float = Field(..., ge=0)
    min_purchase: float = Field(default=0.0, ge=0)
    max_discount: Optional[float] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, gt=0)
    one_time_per_user: bool = False
    applicable_product_ids: List[str] = Field(default_factory=list)
    excluded_product_ids: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    restricted_to_user_ids: List[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        return _normalize_code(value)

    @field_validator(
        "applicable_product_ids",
        "excluded_product_ids",
        "applicable_categories",
        "restricted_to_user_ids",
    )
    @classmethod
    def dedupe_ids(cls, value: List[str]) -> List[str]:
        return _clean_ids(value)

    @model_validator(mode="after")
    def validate_window(self):
        if self.valid_from is not None and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = None
    discount_kind: Optional[DiscountKind] = None
    value: Optional[float] = Field(None, ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = Field(None, gt=0)
    one_time_per_user: Optional[bool] = None
    applicable_product_ids: Optional[List[str]] = None
    excluded_product_ids: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    restricted_to_user_ids: Optional[List[str]] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _normalize_code(value)

    @field_validator(
        "applicable_product_ids",
        "excluded_product_ids",
        "applicable_categories",
        "restricted_to_user_ids",
    )
    @classmethod
    def dedupe_ids(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        return _clean_ids(value)


class CouponResponse(BaseModel):
    id: int
    code: str
    description: Optional[str]
    discount_kind: DiscountKind
    value: float
    min_purchase: float
    max_discount: Optional[float]
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    usage_limit: Optional[int]
    usage_count: int
    one_time_per_user: bool
    redeemed_by_users: List[str]
    applicable_product_ids: List[str]
    excluded_product_ids: List[str]
    applicable_categories: List[str]
    restricted_to_user_ids: List[str]
    state: Optional[CouponState] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CouponSummary(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_kind: DiscountKind
    value: float

    class Config:
        from_attributes = True


class CartLine(BaseModel):
    product_id: str
    category: Optional[str] = None


class CartContext(BaseModel):
    """What the engine needs to know about a cart. Never mutated by the engine."""

    subtotal: float = Field(..., ge=0)
    user_id: Optional[str] = None
    line_items: List[CartLine] = Field(default_factory=list)


class Rejection(BaseModel):
    reason: RejectionReason
    context: Optional[Dict[str, Any]] = None


class EvaluationResult(BaseModel):
    valid: bool
    message: str
    reason: Optional[RejectionReason] = None
    context: Optional[Dict[str, Any]] = None
    coupon: Optional[CouponSummary] = None
    discount_kind: Optional[DiscountKind] = None
    discount_amount: float = 0.0

    @property
    def waives_shipping(self) -> bool:
        return self.valid and self.discount_kind == DiscountKind.FREE_SHIPPING


class CommitResult(BaseModel):
    committed: bool
    message: str
    reason: Optional[RejectionReason] = None
    context: Optional[Dict[str, Any]] = None
    usage_count: Optional[int] = None
    already_committed: bool = False


class CouponCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


class ApplyCouponResponse(BaseModel):
    discount_amount: float
    coupon_code: str
    discount_kind: DiscountKind
    cart_total: float
    final_total: float
    free_shipping: bool
    message: str
