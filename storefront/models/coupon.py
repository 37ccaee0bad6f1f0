from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, Enum, Text, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from storefront.db.base_class import Base


class DiscountKind(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed"
    FREE_SHIPPING = "shipping"


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)  # Always uppercase
    description = Column(Text, nullable=True)

    discount_kind = Column(Enum(DiscountKind), nullable=False)
    value = Column(Float, nullable=False)  # Percentage (0-100), fixed amount or shipping cost

    min_purchase = Column(Float, default=0.0, nullable=False)
    max_discount = Column(Float, nullable=True)  # Cap for percentage type only

    # Half-open window [valid_from, valid_until)
    valid_from = Column(DateTime, default=datetime.utcnow, nullable=False)
    valid_until = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    usage_limit = Column(Integer, nullable=True)  # None = unlimited
    usage_count = Column(Integer, default=0, nullable=False)
    one_time_per_user = Column(Boolean, default=False, nullable=False)
    redeemed_by_users = Column(JSON, default=list, nullable=False)

    # Scoping filters, empty = no restriction
    applicable_product_ids = Column(JSON, default=list, nullable=False)
    excluded_product_ids = Column(JSON, default=list, nullable=False)
    applicable_categories = Column(JSON, default=list, nullable=False)
    restricted_to_user_ids = Column(JSON, default=list, nullable=False)

    # Bumped by every redemption; guards the conditional update
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    redemptions = relationship("CouponRedemption", back_populates="coupon", cascade="all, delete-orphan")
