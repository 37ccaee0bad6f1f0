from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Float, Enum
from datetime import datetime
from storefront.db.base_class import Base
from storefront.models.coupon import DiscountKind


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_key = Column(String(64), nullable=False, index=True)  # User id or guest token

    # Catalog snapshot, the catalog itself lives in another service
    product_id = Column(String(64), nullable=False)
    product_name = Column(String(200), nullable=False)
    category = Column(String(100), nullable=True)

    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Float, nullable=False)
    discounted_unit_price = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def effective_unit_price(self) -> float:
        if self.discounted_unit_price is not None:
            return self.discounted_unit_price
        return self.unit_price

    @property
    def total_price(self) -> float:
        return self.effective_unit_price * self.quantity


class AppliedCoupon(Base):
    """Last successful evaluation for a cart. Re-validated at checkout, never trusted."""

    __tablename__ = "applied_coupons"

    id = Column(Integer, primary_key=True, index=True)
    cart_key = Column(String(64), unique=True, nullable=False, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    code = Column(String(50), nullable=False)
    discount_kind = Column(Enum(DiscountKind), nullable=False)
    value = Column(Float, nullable=False)
    discount_amount = Column(Float, default=0.0, nullable=False)

    applied_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
