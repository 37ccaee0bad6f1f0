from storefront.models.coupon import Coupon, DiscountKind
from storefront.models.coupon_redemption import CouponRedemption
from storefront.models.cart import CartItem, AppliedCoupon
from storefront.models.order import Order, OrderItem
