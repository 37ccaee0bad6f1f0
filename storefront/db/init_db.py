from sqlalchemy.orm import Session
from datetime import datetime, timedelta
import structlog

import storefront.models  # noqa: F401
from storefront.core.config import settings
from storefront.db.base_class import Base
from storefront.models.coupon import Coupon, DiscountKind

logger = structlog.get_logger()

DEMO_COUPONS = [
    {
        "code": "WELCOME10",
        "description": "10% off your first order",
        "discount_kind": DiscountKind.PERCENTAGE,
        "value": 10.0,
        "min_purchase": 50.0,
        "max_discount": 20.0,
        "one_time_per_user": True,
    },
    {
        "code": "FREESHIP",
        "description": "Free shipping on orders over $25",
        "discount_kind": DiscountKind.FREE_SHIPPING,
        "value": settings.DEFAULT_SHIPPING_CHARGE,
        "min_purchase": 25.0,
    },
]


def init_db(db: Session) -> None:
    """Create tables and, outside production, seed demo coupons"""
    Base.metadata.create_all(bind=db.get_bind())

    if settings.ENVIRONMENT == "production":
        logger.info("database_initialized", seeded=0)
        return

    now = datetime.utcnow()
    seeded = 0
    for data in DEMO_COUPONS:
        existing = db.query(Coupon).filter(Coupon.code == data["code"]).first()
        if existing:
            continue
        db.add(Coupon(
            **data,
            valid_from=now,
            valid_until=now + timedelta(days=30),
            usage_count=0,
            redeemed_by_users=[],
        ))
        seeded += 1
        logger.info("coupon_seeded", code=data["code"])

    db.commit()
    logger.info("database_initialized", seeded=seeded)


if __name__ == "__main__":
    from storefront.core.logging_config import configure_logging
    from storefront.db.session import SessionLocal

    configure_logging()
    db = SessionLocal()
    try:
        init_db(db)
    finally:
        db.close()
