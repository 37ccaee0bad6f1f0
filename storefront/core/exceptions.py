from fastapi import HTTPException, status
from typing import Any, List, Optional


class CouponNotFound(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Coupon not found"
        )


class CouponCodeExists(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Coupon code already exists"
        )


class CartItemNotFound(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Cart item not found"
        )


class EmptyCart(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cart is empty"
        )


class APIError(Exception):
    def __init__(self, status_code: int, message: str, errors: Optional[List[Any]] = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors or []


class CouponNoLongerValid(APIError):
    """The cart's coupon stopped applying between cart and checkout."""

    def __init__(self, reason: str, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            message="Your coupon is no longer valid, please review your order",
            errors=[{"reason": reason, "detail": detail}],
        )
        self.reason = reason


class CouponSystemError(APIError):
    """A storage fault or malformed coupon record.

    Never a reason to tell the shopper the coupon is invalid: these surface
    as a generic "try again" response.
    """

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            message="Unable to process coupon right now. Please try again.",
        )
        self.detail = detail

    def __str__(self) -> str:
        return self.detail
