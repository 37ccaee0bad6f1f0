from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional, Tuple
import structlog

from storefront.core.exceptions import CartItemNotFound, EmptyCart
from storefront.models.cart import AppliedCoupon, CartItem
from storefront.schemas.cart import (
    AppliedCouponResponse,
    CartItemCreate,
    CartItemResponse,
    CartItemUpdate,
    CartResponse,
)
from storefront.schemas.coupon import (
    ApplyCouponResponse,
    CartContext,
    CartLine,
    EvaluationResult,
)
from storefront.services.discount_engine import DiscountEngine

logger = structlog.get_logger()


def cart_subtotal(items: List[CartItem]) -> float:
    return sum(item.total_price for item in items)


def build_cart_context(items: List[CartItem], user_id: Optional[str]) -> CartContext:
    return CartContext(
        subtotal=cart_subtotal(items),
        user_id=user_id,
        line_items=[CartLine(product_id=item.product_id, category=item.category) for item in items],
    )


class CartService:

    @staticmethod
    def get_items(db: Session, cart_key: str) -> List[CartItem]:
        return (
            db.query(CartItem)
            .filter(CartItem.cart_key == cart_key)
            .order_by(CartItem.id)
            .all()
        )

    @staticmethod
    def get_applied_coupon(db: Session, cart_key: str) -> Optional[AppliedCoupon]:
        return db.query(AppliedCoupon).filter(AppliedCoupon.cart_key == cart_key).first()

    @staticmethod
    def get_cart(db: Session, cart_key: str, user_id: Optional[str], now: datetime) -> CartResponse:
        """Cart contents with the applied coupon re-evaluated against the current subtotal."""
        items = CartService.get_items(db, cart_key)
        context = build_cart_context(items, user_id)

        applied_response = None
        discount_amount = 0.0
        applied = CartService.get_applied_coupon(db, cart_key)
        if applied:
            result = DiscountEngine.evaluate(db, applied.code, context, now)
            if result.valid:
                discount_amount = result.discount_amount
            applied_response = AppliedCouponResponse(
                coupon_id=applied.coupon_id,
                code=applied.code,
                discount_kind=applied.discount_kind,
                value=applied.value,
                discount_amount=discount_amount,
                still_valid=result.valid,
                reason=result.reason,
                message=result.message,
            )

        return CartResponse(
            items=[CartItemResponse.model_validate(item) for item in items],
            subtotal=context.subtotal,
            total_items=len(items),
            applied_coupon=applied_response,
            discount_amount=discount_amount,
            final_total=max(0.0, context.subtotal - discount_amount),
        )

    @staticmethod
    def add_item(db: Session, cart_key: str, item_data: CartItemCreate) -> CartItem:
        existing_item = db.query(CartItem).filter(
            CartItem.cart_key == cart_key,
            CartItem.product_id == item_data.product_id,
        ).first()

        if existing_item:
            existing_item.quantity = min(existing_item.quantity + item_data.quantity, 10)
            existing_item.unit_price = item_data.unit_price
            existing_item.discounted_unit_price = item_data.discounted_unit_price
            db.commit()
            db.refresh(existing_item)
            return existing_item

        cart_item = CartItem(cart_key=cart_key, **item_data.model_dump())
        db.add(cart_item)
        db.commit()
        db.refresh(cart_item)
        return cart_item

    @staticmethod
    def update_item(db: Session, cart_key: str, item_id: int, update_data: CartItemUpdate) -> CartItem:
        cart_item = db.query(CartItem).filter(
            CartItem.id == item_id,
            CartItem.cart_key == cart_key
        ).first()
        if not cart_item:
            raise CartItemNotFound()

        cart_item.quantity = update_data.quantity
        db.commit()
        db.refresh(cart_item)
        return cart_item

    @staticmethod
    def remove_item(db: Session, cart_key: str, item_id: int) -> None:
        cart_item = db.query(CartItem).filter(
            CartItem.id == item_id,
            CartItem.cart_key == cart_key
        ).first()
        if not cart_item:
            raise CartItemNotFound()

        db.delete(cart_item)
        db.commit()

    @staticmethod
    def clear_cart(db: Session, cart_key: str) -> None:
        db.query(CartItem).filter(CartItem.cart_key == cart_key).delete()
        db.query(AppliedCoupon).filter(AppliedCoupon.cart_key == cart_key).delete()
        db.commit()

    @staticmethod
    def validate_coupon(
        db: Session, cart_key: str, user_id: Optional[str], code: str, now: datetime
    ) -> Tuple[EvaluationResult, float]:
        """Preview a coupon against the current cart. Read-only."""
        items = CartService.get_items(db, cart_key)
        if not items:
            raise EmptyCart()

        context = build_cart_context(items, user_id)
        return DiscountEngine.evaluate(db, code, context, now), context.subtotal

    @staticmethod
    def apply_coupon(
        db: Session, cart_key: str, user_id: Optional[str], code: str, now: datetime
    ) -> Tuple[EvaluationResult, Optional[ApplyCouponResponse]]:
        """Evaluate a coupon and remember it on the cart. Usage is not consumed here."""
        result, subtotal = CartService.validate_coupon(db, cart_key, user_id, code, now)
        if not result.valid:
            return result, None

        applied = CartService.get_applied_coupon(db, cart_key)
        if applied is None:
            applied = AppliedCoupon(cart_key=cart_key)
            db.add(applied)
        applied.coupon_id = result.coupon.id
        applied.code = result.coupon.code
        applied.discount_kind = result.coupon.discount_kind
        applied.value = result.coupon.value
        applied.discount_amount = result.discount_amount
        applied.applied_at = now
        db.commit()

        logger.info(
            "coupon_applied_to_cart",
            cart_key=cart_key,
            code=applied.code,
            discount_amount=result.discount_amount,
        )
        return result, ApplyCouponResponse(
            discount_amount=result.discount_amount,
            coupon_code=result.coupon.code,
            discount_kind=result.coupon.discount_kind,
            cart_total=subtotal,
            final_total=max(0.0, subtotal - result.discount_amount),
            free_shipping=result.waives_shipping,
            message=result.message,
        )

    @staticmethod
    def remove_coupon(db: Session, cart_key: str) -> bool:
        removed = db.query(AppliedCoupon).filter(AppliedCoupon.cart_key == cart_key).delete()
        db.commit()
        return bool(removed)
