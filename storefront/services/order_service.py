from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from fastapi import HTTPException
from datetime import datetime
from typing import Optional, Tuple
import hashlib
import random
import string
import structlog

from storefront.core.config import settings
from storefront.core.exceptions import APIError, CouponNoLongerValid, EmptyCart
from storefront.models.cart import AppliedCoupon
from storefront.models.coupon import DiscountKind
from storefront.models.order import Order, OrderItem
from storefront.services.cart_service import CartService, build_cart_context
from storefront.services.discount_engine import DiscountEngine

logger = structlog.get_logger()


def generate_order_number(db: Session, cart_key: str, idempotency_key: Optional[str] = None) -> str:
    """Order number, stable per idempotency key so a retried checkout reuses it."""
    if idempotency_key:
        digest = hashlib.sha256(f"{cart_key}:{idempotency_key}".encode("utf-8")).hexdigest()
        return f"ORD{digest[:16].upper()}"

    max_attempts = 10
    for _ in range(max_attempts):
        timestamp = datetime.utcnow().strftime("%Y%m%d")
        random_part = "".join(
            random.choices(string.ascii_uppercase + string.digits, k=8)
        )
        order_number = f"ORD{timestamp}{random_part}"

        existing = db.query(Order).filter(Order.order_number == order_number).first()
        if not existing:
            return order_number

    raise ValueError("Failed to generate unique order number")


def _drop_stale_coupon(db: Session, cart_key: str, code: str, reason: str, message: str):
    db.query(AppliedCoupon).filter(AppliedCoupon.cart_key == cart_key).delete()
    db.commit()
    logger.info("checkout_coupon_invalidated", cart_key=cart_key, code=code, reason=reason)
    raise CouponNoLongerValid(reason, message)


class OrderService:

    @staticmethod
    def checkout(
        db: Session,
        cart_key: str,
        user_id: Optional[str],
        now: datetime,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """Turn the cart into an order, redeeming its coupon exactly once.

        Returns the order and whether it was an idempotent replay.
        """
        try:
            if idempotency_key:
                existing_order = (
                    db.query(Order)
                    .filter(
                        Order.cart_key == cart_key,
                        Order.idempotency_key == idempotency_key,
                    )
                    .first()
                )
                if existing_order:
                    return existing_order, True

            cart_items = CartService.get_items(db, cart_key)
            if not cart_items:
                raise EmptyCart()

            context = build_cart_context(cart_items, user_id)
            order_number = generate_order_number(db, cart_key, idempotency_key)

            discount_amount = 0.0
            coupon_code = None
            waive_shipping = False

            applied = CartService.get_applied_coupon(db, cart_key)
            previous = None
            if applied and idempotency_key:
                previous = DiscountEngine.find_redemption(db, applied.coupon_id, order_number)

            if previous:
                # An earlier attempt for this order already spent the coupon
                DiscountEngine.commit(
                    db,
                    previous.coupon_id,
                    user_id,
                    now,
                    order_ref=order_number,
                )
                discount_amount = previous.discount_amount
                coupon_code = previous.coupon.code
                waive_shipping = previous.coupon.discount_kind == DiscountKind.FREE_SHIPPING
            elif applied:
                # The cached record may be stale, evaluate the cart as it is now
                result = DiscountEngine.evaluate(db, applied.code, context, now)
                if not result.valid:
                    _drop_stale_coupon(db, cart_key, applied.code, result.reason.value, result.message)

                redemption = DiscountEngine.commit(
                    db,
                    result.coupon.id,
                    user_id,
                    now,
                    order_ref=order_number,
                    discount_amount=result.discount_amount,
                )
                if not redemption.committed:
                    _drop_stale_coupon(db, cart_key, applied.code, redemption.reason.value, redemption.message)

                discount_amount = result.discount_amount
                coupon_code = result.coupon.code
                waive_shipping = result.waives_shipping

            shipping_charge = 0.0 if waive_shipping else settings.DEFAULT_SHIPPING_CHARGE
            total_amount = max(0.0, context.subtotal - discount_amount) + shipping_charge

            order = Order(
                order_number=order_number,
                cart_key=cart_key,
                user_id=user_id,
                subtotal=context.subtotal,
                discount_amount=discount_amount,
                shipping_charge=shipping_charge,
                coupon_code=coupon_code,
                total_amount=total_amount,
                idempotency_key=idempotency_key,
                created_at=now,
            )
            db.add(order)
            db.flush()

            for item in cart_items:
                db.add(OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    product_name=item.product_name,
                    category=item.category,
                    quantity=item.quantity,
                    unit_price=item.effective_unit_price,
                    total_price=item.total_price,
                ))

            CartService.clear_cart(db, cart_key)
            db.refresh(order)
        except (HTTPException, APIError):
            db.rollback()
            raise
        except SQLAlchemyError:
            db.rollback()
            logger.exception("checkout_failed", cart_key=cart_key, user_id=user_id)
            raise

        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            user_id=user_id,
            coupon_code=coupon_code,
            discount_amount=discount_amount,
            total_amount=order.total_amount,
        )
        return order, False
