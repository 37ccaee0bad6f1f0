from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from datetime import datetime
from storefront.db.session import get_db
from storefront.api.deps import Shopper, get_shopper
from storefront.schemas.cart import CartItemCreate, CartItemUpdate
from storefront.services.cart_service import CartService

router = APIRouter()


@router.get("/", response_model=dict)
def get_cart(
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Get the caller's cart"""
    cart = CartService.get_cart(db, shopper.cart_key, shopper.user_id, datetime.utcnow())
    return cart.model_dump()


@router.post("/items", status_code=status.HTTP_201_CREATED)
def add_to_cart(
    cart_item: CartItemCreate,
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Add item to cart"""
    item = CartService.add_item(db, shopper.cart_key, cart_item)
    return {"message": "Item added to cart", "cart_item_id": item.id}


@router.put("/items/{item_id}")
def update_cart_item(
    item_id: int,
    update_data: CartItemUpdate,
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Update cart item quantity"""
    CartService.update_item(db, shopper.cart_key, item_id, update_data)
    return {"message": "Cart item updated"}


@router.delete("/items/{item_id}")
def remove_from_cart(
    item_id: int,
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Remove item from cart"""
    CartService.remove_item(db, shopper.cart_key, item_id)
    return {"message": "Item removed from cart"}


@router.delete("/")
def clear_cart(
    shopper: Shopper = Depends(get_shopper),
    db: Session = Depends(get_db)
):
    """Clear entire cart"""
    CartService.clear_cart(db, shopper.cart_key)
    return {"message": "Cart cleared"}
