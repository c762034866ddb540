from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import ADMIN_ROLE, get_current_user, require_admin
from app.core.errors import AppError, to_http
from app.models.user import User
from app.schemas.orders import OrderOut, OrdersListOut
from app.services.orders import get_order, list_orders, serialize_order


router = APIRouter(tags=["Orders"])


@router.get("/orders", response_model=OrdersListOut)
async def my_orders(
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrdersListOut:
    data = await list_orders(db, user_id=current_user.id, status=status, limit=limit, offset=offset)
    return OrdersListOut(**data)


@router.get("/orders/{order_id}", response_model=OrderOut)
async def my_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> OrderOut:
    try:
        order = await get_order(db, order_id)
    except AppError as e:
        raise to_http(e)

    # other users' orders look the same as missing ones
    if current_user.role != ADMIN_ROLE and int(order.user_id) != int(current_user.id):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Order not found."})

    return OrderOut(**serialize_order(order))


@router.get("/admin/orders", response_model=OrdersListOut)
async def admin_list_orders(
    user_id: Optional[int] = Query(default=None, alias="userId"),
    course_id: Optional[int] = Query(default=None, alias="courseId"),
    status: Optional[str] = None,
    date_from: Optional[datetime] = Query(default=None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(default=None, alias="dateTo"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_admin),
) -> OrdersListOut:
    data = await list_orders(
        db,
        user_id=user_id,
        course_id=course_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return OrdersListOut(**data)
