from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from fastapi import HTTPException, status
from datetime import datetime
from typing import Optional
import structlog

from storefront.core.exceptions import CouponNotFound, CouponCodeExists
from storefront.models.cart import AppliedCoupon
from storefront.models.coupon import Coupon, DiscountKind
from storefront.schemas.coupon import CouponCreate, CouponUpdate, CouponResponse
from storefront.services.discount_engine import coupon_state

logger = structlog.get_logger()

NULLABLE_FIELDS = {"description", "max_discount", "usage_limit"}


def _to_response(coupon: Coupon, now: datetime) -> CouponResponse:
    response = CouponResponse.model_validate(coupon)
    response.state = coupon_state(coupon, now)
    return response


def _code_taken(db: Session, code: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Coupon.id).filter(Coupon.code == code.upper())
    if exclude_id is not None:
        query = query.filter(Coupon.id != exclude_id)
    return query.first() is not None


def _validate_rules(coupon: Coupon) -> None:
    if coupon.discount_kind == DiscountKind.PERCENTAGE and coupon.value > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Percentage discount cannot exceed 100%"
        )
    if coupon.valid_until <= coupon.valid_from:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="valid_until must be after valid_from"
        )
    if coupon.usage_limit is not None and coupon.usage_limit < (coupon.usage_count or 0):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"usage_limit cannot be below the current usage count ({coupon.usage_count})"
        )


def _commit_unique_code(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError:
        # Another request claimed the code between the check and the insert
        db.rollback()
        raise CouponCodeExists()


class CouponService:

    @staticmethod
    def create_coupon(db: Session, coupon_data: CouponCreate) -> CouponResponse:
        """Create a new coupon (admin only)."""
        if _code_taken(db, coupon_data.code):
            raise CouponCodeExists()

        now = datetime.utcnow()
        fields = coupon_data.model_dump()
        # Future start dates are allowed for scheduled promotions
        fields["valid_from"] = fields["valid_from"] or now
        coupon = Coupon(**fields, usage_count=0, redeemed_by_users=[], version=0)
        _validate_rules(coupon)

        db.add(coupon)
        _commit_unique_code(db)
        db.refresh(coupon)

        logger.info("coupon_created", coupon_id=coupon.id, code=coupon.code)
        return _to_response(coupon, now)

    @staticmethod
    def update_coupon(db: Session, coupon_id: int, coupon_data: CouponUpdate) -> CouponResponse:
        """Update a coupon (admin only). Usage bookkeeping is not editable here."""
        coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
        if not coupon:
            raise CouponNotFound()

        update_data = {
            key: value
            for key, value in coupon_data.model_dump(exclude_unset=True).items()
            if value is not None or key in NULLABLE_FIELDS
        }
        if update_data.get("code") and _code_taken(db, update_data["code"], exclude_id=coupon.id):
            raise CouponCodeExists()

        for key, value in update_data.items():
            setattr(coupon, key, value)

        try:
            _validate_rules(coupon)
        except HTTPException:
            db.rollback()
            raise

        _commit_unique_code(db)
        db.refresh(coupon)

        logger.info("coupon_updated", coupon_id=coupon.id, fields=sorted(update_data))
        return _to_response(coupon, datetime.utcnow())

    @staticmethod
    def delete_coupon(db: Session, coupon_id: int):
        """Delete a coupon (admin only)."""
        coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
        if not coupon:
            raise CouponNotFound()

        db.query(AppliedCoupon).filter(AppliedCoupon.coupon_id == coupon.id).delete()
        db.delete(coupon)
        db.commit()
        logger.info("coupon_deleted", coupon_id=coupon_id)

    @staticmethod
    def get_coupon(db: Session, coupon_id: int) -> CouponResponse:
        """Get a coupon by ID."""
        coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
        if not coupon:
            raise CouponNotFound()

        return _to_response(coupon, datetime.utcnow())

    @staticmethod
    def list_coupons(db: Session, skip: int = 0, limit: int = 100) -> list[CouponResponse]:
        """List all coupons, newest first."""
        now = datetime.utcnow()
        coupons = (
            db.query(Coupon)
            .order_by(Coupon.created_at.desc(), Coupon.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        return [_to_response(coupon, now) for coupon in coupons]
