from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session
from datetime import datetime

from storefront.db.session import get_db
from storefront.api.deps import Shopper, get_shopper, require_admin
from storefront.core.config import settings
from storefront.core.rate_limiter import limiter
from storefront.services.cart_service import CartService
from storefront.services.coupon_service import CouponService
from storefront.schemas.coupon import CouponCreate, CouponUpdate, CouponCodeRequest, RejectionReason
from storefront.utils.response import success, error

router = APIRouter()


@router.post("/", response_model=dict, status_code=status.HTTP_201_CREATED)
def create_coupon(
    coupon_data: CouponCreate,
    current_user: Shopper = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Create a new coupon (admin only)."""
    try:
        coupon = CouponService.create_coupon(db, coupon_data)
        return success(data=coupon.model_dump(), message="Coupon created successfully")
    except HTTPException as e:
        return error(message=e.detail, errors={"detail": e.detail}, status_code=e.status_code)


@router.get("/", response_model=dict)
def list_coupons(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
    current_user: Shopper = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """List all coupons (admin only)."""
    coupons = CouponService.list_coupons(db, skip, limit)
    return success(data=[c.model_dump() for c in coupons], message="Coupons retrieved successfully")


@router.post("/validate", response_model=dict)
@limiter.limit(settings.COUPON_RATE_LIMIT)
def validate_coupon(
    request: Request,
    payload: CouponCodeRequest,
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Preview a coupon against the caller's cart. Never consumes usage."""
    result, cart_total = CartService.validate_coupon(
        db, shopper.cart_key, shopper.user_id, payload.code, datetime.utcnow()
    )
    data = {
        "valid": result.valid,
        "coupon": result.coupon.model_dump() if result.coupon else None,
        "discount_kind": result.discount_kind,
        "discount_amount": result.discount_amount if result.valid else None,
        "free_shipping": result.waives_shipping,
        "cart_total": cart_total,
        "reason": result.reason,
        "context": result.context,
        "message": result.message,
    }
    return success(data=data, message=result.message)


@router.post("/apply", response_model=dict)
@limiter.limit(settings.COUPON_RATE_LIMIT)
def apply_coupon(
    request: Request,
    payload: CouponCodeRequest,
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Apply a coupon to the caller's cart. Usage is consumed at checkout, not here."""
    result, applied = CartService.apply_coupon(
        db, shopper.cart_key, shopper.user_id, payload.code, datetime.utcnow()
    )
    if applied is None:
        status_code = (
            status.HTTP_404_NOT_FOUND
            if result.reason == RejectionReason.NOT_FOUND
            else status.HTTP_400_BAD_REQUEST
        )
        return error(
            message=result.message,
            errors={"reason": result.reason.value, "context": result.context},
            status_code=status_code,
        )
    return success(data=applied.model_dump(), message=applied.message)


@router.post("/remove", response_model=dict)
def remove_coupon(
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Remove the applied coupon from the caller's cart."""
    removed = CartService.remove_coupon(db, shopper.cart_key)
    message = "Coupon removed successfully" if removed else "No coupon applied"
    return success(data={"removed": removed}, message=message)


@router.get("/{coupon_id}", response_model=dict)
def get_coupon(
    coupon_id: int,
    current_user: Shopper = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Get a coupon by ID (admin only)."""
    try:
        coupon = CouponService.get_coupon(db, coupon_id)
        return success(data=coupon.model_dump(), message="Coupon retrieved successfully")
    except HTTPException as e:
        return error(message=e.detail, errors={"detail": e.detail}, status_code=e.status_code)


@router.put("/{coupon_id}", response_model=dict)
def update_coupon(
    coupon_id: int,
    coupon_data: CouponUpdate,
    current_user: Shopper = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Update a coupon (admin only)."""
    try:
        coupon = CouponService.update_coupon(db, coupon_id, coupon_data)
        return success(data=coupon.model_dump(), message="Coupon updated successfully")
    except HTTPException as e:
        return error(message=e.detail, errors={"detail": e.detail}, status_code=e.status_code)


@router.delete("/{coupon_id}", response_model=dict)
def delete_coupon(
    coupon_id: int,
    current_user: Shopper = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Delete a coupon (admin only)."""
    try:
        CouponService.delete_coupon(db, coupon_id)
        return success(message="Coupon deleted successfully")
    except HTTPException as e:
        return error(message=e.detail, errors={"detail": e.detail}, status_code=e.status_code)
