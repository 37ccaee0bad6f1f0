from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime
from storefront.db.session import get_db
from storefront.api.deps import Shopper, get_shopper
from storefront.core.rate_limiter import limiter
from storefront.schemas.order import CheckoutRequest, OrderResponse
from storefront.services.order_service import OrderService
from storefront.utils.response import success

router = APIRouter()


@router.post(
    "/checkout",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Place order from cart",
    description="""
Creates an order from the caller's cart.

Process:
1. Replays an existing order for the same idempotency key
2. Validates cart is not empty
3. Re-evaluates the applied coupon against the current cart
4. Redeems the coupon (at most once per order)
5. Creates order and order items, clears cart
""",
    responses={
        201: {"description": "Order created successfully"},
        200: {"description": "Order already exists for this idempotency key"},
        400: {"description": "Cart empty"},
        409: {"description": "Coupon no longer valid, cart kept for review"},
        503: {"description": "Coupon could not be processed, try again"},
    },
    tags=["Orders"],
)
@limiter.limit("10/minute")
def checkout(
    request: Request,
    checkout_data: CheckoutRequest,
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Create order from cart"""
    order, replayed = OrderService.checkout(
        db,
        shopper.cart_key,
        shopper.user_id,
        datetime.utcnow(),
        idempotency_key=checkout_data.idempotency_key,
    )
    data = OrderResponse.model_validate(order).model_dump()
    if replayed:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=success(data=data, message="Order already exists"),
        )
    return success(data=data, message="Order placed successfully")
