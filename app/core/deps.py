from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db
from app.core.security import decode_token, TokenError
from app.integrations.stripe_gateway import StripeGateway, get_stripe_gateway
from app.models.user import User

ADMIN_ROLE = "ADMIN"

# auto_error=False: the browser sends the token as a cookie, API clients as a bearer header
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


async def get_current_user(
    request: Request,
    bearer: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    token = request.cookies.get(settings.AUTH_COOKIE_NAME) or bearer
    if not token:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")

    try:
        payload = decode_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
        )

    user_id = payload.get("userId") or payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Token missing user id")

    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid user id in token")

    res = await db.execute(select(User).where(User.id == user_id_int))
    user = res.scalar_one_or_none()

    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User inactive")

    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin only")
    return current_user


def get_gateway() -> StripeGateway:
    return get_stripe_gateway()
