import structlog
from typing import Optional
from fastapi import Depends, HTTPException, Request, status

from storefront.core.security import decode_token

logger = structlog.get_logger()

GUEST_TOKEN_HEADER = "X-Guest-Token"
ADMIN_ROLE = "admin"


class Shopper:
    """Whoever owns the cart: a signed-in user or a guest session."""

    def __init__(self, cart_key: str, user_id: Optional[str] = None, role: Optional[str] = None):
        self.cart_key = cart_key
        self.user_id = user_id
        self.role = role

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    return request.cookies.get("access_token")


def get_optional_shopper(request: Request) -> Optional[Shopper]:
    """Resolve the caller from a bearer token, falling back to a guest token."""
    token = _bearer_token(request)
    if token:
        payload = decode_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials",
            )
        return Shopper(cart_key=f"user:{user_id}", user_id=str(user_id), role=payload.get("role"))

    guest_token = (request.headers.get(GUEST_TOKEN_HEADER) or "").strip()
    if guest_token:
        if len(guest_token) > 48:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid guest token",
            )
        return Shopper(cart_key=f"guest:{guest_token}")

    return None


def get_shopper(shopper: Optional[Shopper] = Depends(get_optional_shopper)) -> Shopper:
    if shopper is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return shopper


def get_current_user(shopper: Shopper = Depends(get_shopper)) -> Shopper:
    if not shopper.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return shopper


def require_admin(
    request: Request,
    current_user: Shopper = Depends(get_current_user),
) -> Shopper:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=403,
            detail="Admin access required",
        )

    logger.info(
        "admin_action",
        action=f"{request.method} {request.url.path}",
        admin_user_id=current_user.user_id,
        client_ip=request.client.host if request.client else None,
    )
    return current_user
