from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError
from app.models._time import utcnow
from app.models.course import Course
from app.models.order import ORDER_CANCELED, ORDER_COMPLETED, ORDER_PENDING, Order
from app.models.order_item import OrderItem


logger = structlog.get_logger(component="orders")


async def create_pending_order(
    db: AsyncSession,
    *,
    user_id: int,
    course: Course,
    final_cents: int,
    discount_code_id: int | None,
    currency: str = "usd",
    status: str = ORDER_PENDING,
) -> Order:
    """
    New order with one item. The item snapshots the course price now, so later
    price edits never rewrite history. Flushed, not committed.
    """
    order = Order(
        user_id=user_id,
        status=status,
        total_amount_cents=int(final_cents),
        currency=currency,
        discount_code_id=discount_code_id,
        items=[OrderItem(course_id=course.id, price_cents=int(course.price_cents))],
    )
    db.add(order)
    await db.flush()  # ensures order.id

    logger.info(
        "order_created",
        order_id=order.id,
        user_id=user_id,
        course_id=course.id,
        status=status,
        total_cents=order.total_amount_cents,
    )
    return order


async def _transition_if_pending(db: AsyncSession, order_id: int, new_status: str) -> bool:
    # single conditional UPDATE: whichever transition lands first wins
    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == ORDER_PENDING)
        .values(status=new_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return (res.rowcount or 0) > 0


async def complete_if_pending(db: AsyncSession, order_id: int) -> bool:
    return await _transition_if_pending(db, order_id, ORDER_COMPLETED)


async def cancel_if_pending(db: AsyncSession, order_id: int) -> bool:
    return await _transition_if_pending(db, order_id, ORDER_CANCELED)


async def cancel_stale_orders(
    db: AsyncSession,
    *,
    older_than: timedelta,
    now: datetime | None = None,
) -> list[int]:
    threshold = (now or utcnow()) - older_than

    res = await db.execute(
        update(Order)
        .where(Order.status == ORDER_PENDING, Order.created_at < threshold)
        .values(status=ORDER_CANCELED, updated_at=utcnow())
        .returning(Order.id)
        .execution_options(synchronize_session=False)
    )
    return [int(r[0]) for r in res.all()]


async def cancel_superseded_orders(db: AsyncSession, *, user_id: int, course_id: int) -> list[int]:
    """
    A new checkout replaces the user's earlier unpaid ones for the same course,
    so an abandoned attempt does not keep holding a discount code.
    """
    res = await db.execute(
        update(Order)
        .where(
            Order.user_id == user_id,
            Order.status == ORDER_PENDING,
            Order.id.in_(select(OrderItem.order_id).where(OrderItem.course_id == course_id)),
        )
        .values(status=ORDER_CANCELED, updated_at=utcnow())
        .returning(Order.id)
        .execution_options(synchronize_session=False)
    )
    ids = [int(r[0]) for r in res.all()]
    if ids:
        logger.info("orders_superseded", user_id=user_id, course_id=course_id, order_ids=ids)
    return ids


async def attach_session(db: AsyncSession, *, order_id: int, session_id: str) -> None:
    await db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(payment_session_id=session_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def get_order(db: AsyncSession, order_id: int, *, fresh: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if fresh:
        # bypass identity-map state left over from earlier in the transaction
        stmt = stmt.execution_options(populate_existing=True)
    res = await db.execute(stmt)
    o = res.scalar_one_or_none()
    if not o:
        raise NotFoundError("Order not found.")
    return o


def serialize_order(o: Order) -> dict:
    return {
        "id": int(o.id),
        "user_id": int(o.user_id),
        "status": o.status,
        "total_amount_cents": int(o.total_amount_cents),
        "currency": o.currency,
        "discount_code": o.discount_code.code if o.discount_code is not None else None,
        "payment_session_id": o.payment_session_id,
        "created_at": o.created_at,
        "items": [
            {"course_id": int(it.course_id), "price_cents": int(it.price_cents)}
            for it in o.items
        ],
    }


async def list_orders(
    db: AsyncSession,
    *,
    user_id: Optional[int] = None,
    course_id: Optional[int] = None,
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    filters = []

    if user_id is not None:
        filters.append(Order.user_id == user_id)
    if course_id is not None:
        filters.append(Order.id.in_(select(OrderItem.order_id).where(OrderItem.course_id == course_id)))
    if status is not None:
        filters.append(Order.status == status)
    if date_from is not None:
        filters.append(Order.created_at >= date_from)
    if date_to is not None:
        filters.append(Order.created_at <= date_to)

    where_clause = and_(*filters) if filters else None

    total_stmt = select(func.count()).select_from(Order)
    if where_clause is not None:
        total_stmt = total_stmt.where(where_clause)

    total_res = await db.execute(total_stmt)
    total = int(total_res.scalar_one())

    stmt = (
        select(Order)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
    )
    if where_clause is not None:
        stmt = stmt.where(where_clause)

    res = await db.execute(stmt)
    orders = res.scalars().all()

    return {
        "items": [serialize_order(o) for o in orders],
        "limit": limit,
        "offset": offset,
        "total": total,
    }
