"""Coupon evaluation and redemption.

``evaluate`` is read-only and may be called any number of times while a
shopper edits their cart. ``commit`` is called once per placed order and is
the only code path that touches ``usage_count`` / ``redeemed_by_users``.
"""
from datetime import datetime
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.exceptions import CouponSystemError
from storefront.models.coupon import Coupon, DiscountKind
from storefront.models.coupon_redemption import CouponRedemption
from storefront.schemas.coupon import (
    CartContext,
    CommitResult,
    CouponState,
    CouponSummary,
    EvaluationResult,
    Rejection,
    RejectionReason,
)

logger = structlog.get_logger()


REJECTION_MESSAGES: Dict[RejectionReason, str] = {
    RejectionReason.NOT_FOUND: "Invalid coupon code",
    RejectionReason.INACTIVE: "This coupon is inactive",
    RejectionReason.NOT_YET_STARTED: "This coupon is not active yet",
    RejectionReason.EXPIRED: "This coupon has expired",
    RejectionReason.USAGE_LIMIT_REACHED: "This coupon has reached its usage limit",
    RejectionReason.ALREADY_USED_BY_USER: "You have already used this coupon",
    RejectionReason.AUTHENTICATION_REQUIRED: "Please sign in to use this coupon",
    RejectionReason.NOT_ELIGIBLE: "This coupon is not applicable to your account",
    RejectionReason.MINIMUM_PURCHASE_NOT_MET: "This coupon requires a minimum purchase",
    RejectionReason.NOT_APPLICABLE_TO_CART_CONTENTS: "This coupon cannot be applied to the items in your cart",
}


def rejection_message(reason: RejectionReason, context: Optional[dict] = None) -> str:
    if reason == RejectionReason.MINIMUM_PURCHASE_NOT_MET and context:
        symbol = settings.CURRENCY_SYMBOL
        return (
            f"This coupon requires a minimum purchase of {symbol}{context['min_purchase']:.2f}. "
            f"Add {symbol}{context['shortfall']:.2f} more to use it"
        )
    return REJECTION_MESSAGES[reason]


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


# --------------------------------------------------
# VALIDATION CHECKS (ORDER MATTERS)
# --------------------------------------------------
CheckFn = Callable[[Coupon, CartContext, datetime], Optional[Rejection]]


class CouponCheck(NamedTuple):
    name: str
    run: CheckFn


def _check_active(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    if not coupon.is_active:
        return Rejection(reason=RejectionReason.INACTIVE)
    return None


def _check_window(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    if now < coupon.valid_from:
        return Rejection(reason=RejectionReason.NOT_YET_STARTED)
    if now >= coupon.valid_until:
        return Rejection(reason=RejectionReason.EXPIRED)
    return None


def _check_usage_limit(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return Rejection(reason=RejectionReason.USAGE_LIMIT_REACHED)
    return None


def _check_one_time_per_user(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    if not coupon.one_time_per_user:
        return None
    # Without an identity single use cannot be guaranteed
    if not context.user_id:
        return Rejection(reason=RejectionReason.AUTHENTICATION_REQUIRED)
    if context.user_id in (coupon.redeemed_by_users or []):
        return Rejection(reason=RejectionReason.ALREADY_USED_BY_USER)
    return None


def _check_user_restriction(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    allowed = coupon.restricted_to_user_ids or []
    if allowed and context.user_id not in allowed:
        return Rejection(reason=RejectionReason.NOT_ELIGIBLE)
    return None


def _check_minimum_purchase(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    min_purchase = coupon.min_purchase or 0.0
    if context.subtotal < min_purchase:
        return Rejection(
            reason=RejectionReason.MINIMUM_PURCHASE_NOT_MET,
            context={
                "min_purchase": min_purchase,
                "subtotal": context.subtotal,
                "shortfall": min_purchase - context.subtotal,
            },
        )
    return None


def _check_cart_contents(coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    excluded = set(coupon.excluded_product_ids or [])
    if any(line.product_id in excluded for line in context.line_items):
        return Rejection(
            reason=RejectionReason.NOT_APPLICABLE_TO_CART_CONTENTS,
            context={"excluded_product_ids": sorted(
                {line.product_id for line in context.line_items if line.product_id in excluded}
            )},
        )

    products = set(coupon.applicable_product_ids or [])
    categories = {category.casefold() for category in (coupon.applicable_categories or [])}
    if not products and not categories:
        return None

    # Eligibility is scoped, the discount itself still applies cart-wide
    for line in context.line_items:
        if line.product_id in products:
            return None
        if line.category and line.category.casefold() in categories:
            return None
    return Rejection(reason=RejectionReason.NOT_APPLICABLE_TO_CART_CONTENTS)


EVALUATION_CHECKS: Tuple[CouponCheck, ...] = (
    CouponCheck("active", _check_active),
    CouponCheck("time_window", _check_window),
    CouponCheck("usage_limit", _check_usage_limit),
    CouponCheck("one_time_per_user", _check_one_time_per_user),
    CouponCheck("user_restriction", _check_user_restriction),
    CouponCheck("minimum_purchase", _check_minimum_purchase),
    CouponCheck("cart_contents", _check_cart_contents),
)

# Commit re-validates only the coupon/user checks, not the cart. A repeat
# redemption by the same user is reported as such even once the global
# limit is also spent.
REDEMPTION_CHECKS: Tuple[CouponCheck, ...] = (
    CouponCheck("active", _check_active),
    CouponCheck("time_window", _check_window),
    CouponCheck("one_time_per_user", _check_one_time_per_user),
    CouponCheck("usage_limit", _check_usage_limit),
    CouponCheck("user_restriction", _check_user_restriction),
)


def run_checks(checks, coupon: Coupon, context: CartContext, now: datetime) -> Optional[Rejection]:
    for check in checks:
        rejection = check.run(coupon, context, now)
        if rejection is not None:
            return rejection
    return None


# --------------------------------------------------
# DISCOUNT COMPUTATION
# --------------------------------------------------
def _percentage_discount(coupon: Coupon, subtotal: float) -> float:
    discount = subtotal * coupon.value / 100
    if coupon.max_discount is not None and discount > coupon.max_discount:
        discount = coupon.max_discount
    return discount


def _fixed_discount(coupon: Coupon, subtotal: float) -> float:
    return min(coupon.value, subtotal)


def _free_shipping_discount(coupon: Coupon, subtotal: float) -> float:
    # Shipping is waived by the caller, merchandise is untouched
    return 0.0


DISCOUNT_CALCULATORS: Dict[DiscountKind, Callable[[Coupon, float], float]] = {
    DiscountKind.PERCENTAGE: _percentage_discount,
    DiscountKind.FIXED_AMOUNT: _fixed_discount,
    DiscountKind.FREE_SHIPPING: _free_shipping_discount,
}


def calculate_discount(coupon: Coupon, subtotal: float) -> float:
    calculator = DISCOUNT_CALCULATORS.get(coupon.discount_kind)
    if calculator is None:
        raise CouponSystemError(f"No discount calculator for kind {coupon.discount_kind!r}")
    return calculator(coupon, subtotal)


def ensure_well_formed(coupon: Coupon) -> None:
    """Raise CouponSystemError for records the engine cannot reason about."""
    problems = []
    if not isinstance(coupon.discount_kind, DiscountKind):
        problems.append(f"unknown discount kind {coupon.discount_kind!r}")
    if coupon.value is None or coupon.value < 0:
        problems.append("value must be non-negative")
    elif coupon.discount_kind == DiscountKind.PERCENTAGE and coupon.value > 100:
        problems.append("percentage value exceeds 100")
    if coupon.valid_from is None or coupon.valid_until is None:
        problems.append("validity window is incomplete")
    if coupon.usage_limit is not None and coupon.usage_limit < 0:
        problems.append("usage limit is negative")
    if coupon.min_purchase is not None and coupon.min_purchase < 0:
        problems.append("minimum purchase is negative")
    if coupon.max_discount is not None and coupon.max_discount < 0:
        problems.append("max discount is negative")

    if problems:
        logger.error("coupon_record_malformed", coupon_id=coupon.id, code=coupon.code, problems=problems)
        raise CouponSystemError(f"Coupon {coupon.code} is malformed: {'; '.join(problems)}")


def coupon_state(coupon: Coupon, now: datetime) -> CouponState:
    """Lifecycle state derived from stored fields. Never persisted."""
    if not coupon.is_active:
        return CouponState.DISABLED
    if now >= coupon.valid_until:
        return CouponState.EXPIRED
    if now < coupon.valid_from:
        return CouponState.SCHEDULED
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return CouponState.EXHAUSTED
    return CouponState.LIVE


def _rejected(rejection: Rejection) -> EvaluationResult:
    return EvaluationResult(
        valid=False,
        reason=rejection.reason,
        context=rejection.context,
        message=rejection_message(rejection.reason, rejection.context),
    )


def evaluate_coupon(coupon: Optional[Coupon], context: CartContext, now: datetime) -> EvaluationResult:
    """Pure evaluation of an already loaded coupon against a cart."""
    if coupon is None:
        return _rejected(Rejection(reason=RejectionReason.NOT_FOUND))

    ensure_well_formed(coupon)

    rejection = run_checks(EVALUATION_CHECKS, coupon, context, now)
    if rejection is not None:
        return _rejected(rejection)

    return EvaluationResult(
        valid=True,
        message="Coupon applied successfully",
        coupon=CouponSummary.model_validate(coupon),
        discount_kind=coupon.discount_kind,
        discount_amount=calculate_discount(coupon, context.subtotal),
    )


class DiscountEngine:

    @staticmethod
    def find_by_code(db: Session, code: str) -> Optional[Coupon]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return db.query(Coupon).filter(Coupon.code == normalized).first()

    @staticmethod
    def find_redemption(db: Session, coupon_id: int, order_ref: str) -> Optional[CouponRedemption]:
        try:
            return (
                db.query(CouponRedemption)
                .filter(
                    CouponRedemption.coupon_id == coupon_id,
                    CouponRedemption.order_ref == order_ref,
                )
                .first()
            )
        except SQLAlchemyError as exc:
            logger.exception("coupon_redemption_lookup_failed", coupon_id=coupon_id, order_ref=order_ref)
            raise CouponSystemError("Coupon redemption lookup failed") from exc

    @staticmethod
    def evaluate(db: Session, code: str, context: CartContext, now: datetime) -> EvaluationResult:
        """Decide whether ``code`` applies to the cart described by ``context``."""
        try:
            coupon = DiscountEngine.find_by_code(db, code)
        except SQLAlchemyError as exc:
            logger.exception("coupon_lookup_failed", code=normalize_code(code))
            raise CouponSystemError("Coupon lookup failed") from exc

        result = evaluate_coupon(coupon, context, now)
        if result.valid:
            logger.info(
                "coupon_evaluated",
                code=result.coupon.code,
                user_id=context.user_id,
                subtotal=context.subtotal,
                discount_amount=result.discount_amount,
            )
        else:
            logger.info(
                "coupon_rejected",
                code=normalize_code(code),
                user_id=context.user_id,
                reason=result.reason.value,
            )
        return result

    @staticmethod
    def commit(
        db: Session,
        coupon_id: int,
        user_id: Optional[str],
        now: datetime,
        order_ref: Optional[str] = None,
        discount_amount: float = 0.0,
    ) -> CommitResult:
        """Consume one use of a coupon for a placed order.

        The increment is a single conditional UPDATE guarded by the record
        version and the usage limit, so concurrent checkouts can never push
        ``usage_count`` past ``usage_limit``. Retrying with the same
        ``order_ref`` is a no-op.
        """
        try:
            for attempt in range(1, settings.COUPON_COMMIT_MAX_ATTEMPTS + 1):
                coupon = (
                    db.query(Coupon)
                    .filter(Coupon.id == coupon_id)
                    .populate_existing()
                    .with_for_update()
                    .first()
                )
                if not coupon:
                    db.rollback()
                    return CommitResult(
                        committed=False,
                        reason=RejectionReason.NOT_FOUND,
                        message=rejection_message(RejectionReason.NOT_FOUND),
                    )

                if order_ref:
                    previous = (
                        db.query(CouponRedemption)
                        .filter(
                            CouponRedemption.coupon_id == coupon.id,
                            CouponRedemption.order_ref == order_ref,
                        )
                        .first()
                    )
                    if previous:
                        usage_count = coupon.usage_count
                        db.rollback()
                        logger.info("coupon_commit_replayed", coupon_id=coupon_id, order_ref=order_ref)
                        return CommitResult(
                            committed=True,
                            already_committed=True,
                            usage_count=usage_count,
                            message="Coupon already redeemed for this order",
                        )

                ensure_well_formed(coupon)
                rejection = run_checks(
                    REDEMPTION_CHECKS,
                    coupon,
                    CartContext(subtotal=0, user_id=user_id),
                    now,
                )
                if rejection is not None:
                    db.rollback()
                    logger.info(
                        "coupon_commit_rejected",
                        coupon_id=coupon_id,
                        user_id=user_id,
                        reason=rejection.reason.value,
                    )
                    return CommitResult(
                        committed=False,
                        reason=rejection.reason,
                        context=rejection.context,
                        message=rejection_message(rejection.reason, rejection.context),
                    )

                redeemed_by = list(coupon.redeemed_by_users or [])
                if coupon.one_time_per_user and user_id not in redeemed_by:
                    redeemed_by.append(user_id)

                guards = [Coupon.id == coupon.id, Coupon.version == coupon.version]
                if coupon.usage_limit is not None:
                    guards.append(Coupon.usage_count < Coupon.usage_limit)
                outcome = db.execute(
                    update(Coupon)
                    .where(*guards)
                    .values(
                        usage_count=Coupon.usage_count + 1,
                        redeemed_by_users=redeemed_by,
                        version=Coupon.version + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount != 1:
                    db.rollback()
                    logger.info("coupon_commit_conflict", coupon_id=coupon_id, attempt=attempt)
                    continue

                db.add(CouponRedemption(
                    coupon_id=coupon.id,
                    user_id=user_id,
                    order_ref=order_ref,
                    discount_amount=discount_amount,
                    redeemed_at=now,
                ))
                try:
                    db.commit()
                except IntegrityError:
                    # Same order_ref committed concurrently, next pass replays it
                    db.rollback()
                    continue

                db.refresh(coupon)
                logger.info(
                    "coupon_redeemed",
                    coupon_id=coupon.id,
                    code=coupon.code,
                    user_id=user_id,
                    order_ref=order_ref,
                    usage_count=coupon.usage_count,
                )
                return CommitResult(
                    committed=True,
                    usage_count=coupon.usage_count,
                    message="Coupon redeemed",
                )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("coupon_commit_failed", coupon_id=coupon_id, user_id=user_id, order_ref=order_ref)
            raise CouponSystemError("Coupon redemption failed") from exc

        logger.error("coupon_commit_contention_exhausted", coupon_id=coupon_id, user_id=user_id)
        raise CouponSystemError("Coupon redemption kept conflicting with concurrent checkouts")
