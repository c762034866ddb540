from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import insert_ignoring_conflicts
from app.core.errors import ConflictError, DiscountRejected, NotFoundError, ValidationError
from app.models._time import as_utc, utcnow
from app.models.course import Course
from app.models.order import ORDER_PENDING, Order
from app.models.order_item import OrderItem
from app.models.discount import (
    APPLIES_TO_ALL,
    APPLIES_TO_CATEGORY,
    APPLIES_TO_COURSE,
    FIXED_AMOUNT,
    PERCENTAGE,
    DiscountCode,
    DiscountUsage,
)
from app.services.pricing import PriceQuote, compute_price


INVALID_CODE = "INVALID_CODE"
EXPIRED = "EXPIRED"
NOT_YET_ACTIVE = "NOT_YET_ACTIVE"
EXHAUSTED = "EXHAUSTED"
PER_USER_LIMIT = "PER_USER_LIMIT"
BELOW_MINIMUM = "BELOW_MINIMUM"
NOT_APPLICABLE = "NOT_APPLICABLE"

logger = structlog.get_logger(component="discounts")


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


async def get_discount_by_code(db: AsyncSession, code: str) -> Optional[DiscountCode]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    res = await db.execute(select(DiscountCode).where(DiscountCode.code == normalized))
    return res.scalar_one_or_none()


async def count_user_usages(db: AsyncSession, discount_code_id: int, user_id: int) -> int:
    res = await db.execute(
        select(func.count())
        .select_from(DiscountUsage)
        .where(
            DiscountUsage.discount_code_id == discount_code_id,
            DiscountUsage.user_id == user_id,
        )
    )
    return int(res.scalar_one())


async def count_pending_orders(
    db: AsyncSession,
    discount_code_id: int,
    user_id: int | None = None,
    *,
    replaced: tuple[int, int] | None = None,
) -> int:
    """
    Unpaid orders already holding this code; they count against its limits until they settle.

    `replaced=(user_id, course_id)` leaves out that user's own pending orders for
    the course, which a new checkout for it cancels.
    """
    stmt = (
        select(func.count())
        .select_from(Order)
        .where(Order.discount_code_id == discount_code_id, Order.status == ORDER_PENDING)
    )
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    if replaced is not None:
        replaced_user, replaced_course = replaced
        same_course = select(OrderItem.order_id).where(OrderItem.course_id == replaced_course)
        stmt = stmt.where(not_(and_(Order.user_id == replaced_user, Order.id.in_(same_course))))
    return int((await db.execute(stmt)).scalar_one())


async def validate_discount(
    db: AsyncSession,
    *,
    code: str,
    course: Course,
    user_id: int,
    now: datetime | None = None,
) -> DiscountCode:
    """
    Check a code against a course purchase. Order matters: the first failing
    rule is the reason reported back to the client.
    """
    now = now or utcnow()
    discount = await get_discount_by_code(db, code)

    if discount is None or not discount.is_active:
        raise DiscountRejected(INVALID_CODE, "Invalid or inactive coupon.")

    if discount.expires_at is not None and now > as_utc(discount.expires_at):
        raise DiscountRejected(EXPIRED, "Coupon expired.")

    if discount.starts_at is not None and now < as_utc(discount.starts_at):
        raise DiscountRejected(NOT_YET_ACTIVE, "Coupon not yet active.")

    if discount.max_uses is not None:
        held = discount.used_count + await count_pending_orders(db, discount.id, replaced=(user_id, course.id))
        if held >= discount.max_uses:
            raise DiscountRejected(EXHAUSTED, "Coupon usage limit reached.")

    if discount.max_uses_per_user is not None:
        used_by_user = await count_user_usages(db, discount.id, user_id)
        used_by_user += await count_pending_orders(
            db, discount.id, user_id, replaced=(user_id, course.id)
        )
        if used_by_user >= discount.max_uses_per_user:
            raise DiscountRejected(PER_USER_LIMIT, "You have already used this coupon.")

    if discount.min_purchase_cents and course.price_cents < discount.min_purchase_cents:
        raise DiscountRejected(BELOW_MINIMUM, "Minimum purchase amount not met.")

    if discount.applicable_to_type == APPLIES_TO_COURSE and discount.applicable_to_id != course.id:
        raise DiscountRejected(NOT_APPLICABLE, "Coupon not applicable to this course.")

    if (
        discount.applicable_to_type == APPLIES_TO_CATEGORY
        and discount.applicable_to_id != course.category_id
    ):
        raise DiscountRejected(NOT_APPLICABLE, "Coupon not applicable to this course category.")

    return discount


async def record_usage(
    db: AsyncSession,
    *,
    discount_code_id: int,
    user_id: int,
    order_id: int | None,
    quote: PriceQuote,
) -> bool:
    """
    Insert the usage row and bump used_count, within the caller's transaction.

    The unique order_id makes a second call for the same order insert nothing;
    used_count only moves when a row was actually inserted, and never past
    max_uses. A paid order that lands over the cap (it was validated while the
    cap still had room) keeps its usage row; the overflow is logged.
    """
    stmt = (
        insert_ignoring_conflicts(db, DiscountUsage, index_elements=["order_id"])
        .values(
            discount_code_id=discount_code_id,
            user_id=user_id,
            order_id=order_id,
            original_cents=quote.original_cents,
            discount_cents=quote.discount_cents,
            final_cents=quote.final_cents,
            created_at=utcnow(),
        )
        .returning(DiscountUsage.id)
    )
    res = await db.execute(stmt)
    usage_id = res.scalar_one_or_none()

    if usage_id is None:
        return False

    bumped = await db.execute(
        update(DiscountCode)
        .where(
            DiscountCode.id == discount_code_id,
            or_(DiscountCode.max_uses.is_(None), DiscountCode.used_count < DiscountCode.max_uses),
        )
        .values(used_count=DiscountCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if (bumped.rowcount or 0) == 0:
        logger.warning("discount_usage_over_cap", discount_code_id=discount_code_id, order_id=order_id)

    logger.info(
        "discount_usage_recorded",
        discount_code_id=discount_code_id,
        user_id=user_id,
        order_id=order_id,
        discount_cents=quote.discount_cents,
    )
    return True


async def quote_discount(
    db: AsyncSession,
    *,
    code: str,
    course_id: int,
    user_id: int,
) -> dict:
    course = await db.get(Course, course_id)
    if course is None:
        raise NotFoundError("Course not found.")

    discount = await validate_discount(db, code=code, course=course, user_id=user_id)
    quote = compute_price(course.price_cents, discount)

    return {
        "discount_code": discount,
        "original_cents": quote.original_cents,
        "discount_cents": quote.discount_cents,
        "final_cents": quote.final_cents,
    }


# -------------------------
# Admin
# -------------------------
async def create_discount_code(
    db: AsyncSession,
    *,
    created_by: int,
    code: str,
    type: str,
    value: Decimal,
    name: str | None = None,
    max_uses: int | None = None,
    max_uses_per_user: int | None = 1,
    starts_at: datetime | None = None,
    expires_at: datetime | None = None,
    min_purchase_cents: int = 0,
    max_discount_cents: int | None = None,
    applicable_to_type: str = APPLIES_TO_ALL,
    applicable_to_id: int | None = None,
) -> DiscountCode:
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Code is required.")
    if type not in (PERCENTAGE, FIXED_AMOUNT):
        raise ValidationError("type must be PERCENTAGE or FIXED_AMOUNT.")
    if value <= 0:
        raise ValidationError("value must be positive.")
    if type == PERCENTAGE and value > 100:
        raise ValidationError("Percentage discount cannot exceed 100.")
    if applicable_to_type != APPLIES_TO_ALL and applicable_to_id is None:
        raise ValidationError("applicableToId is required for CATEGORY/COURSE codes.")
    if starts_at and expires_at and as_utc(expires_at) <= as_utc(starts_at):
        raise ValidationError("expiresAt must be after startsAt.")

    if await get_discount_by_code(db, normalized) is not None:
        raise ConflictError("Discount code already exists.")

    discount = DiscountCode(
        code=normalized,
        name=name,
        type=type,
        value=value,
        max_uses=max_uses,
        max_uses_per_user=max_uses_per_user,
        used_count=0,
        starts_at=starts_at,
        expires_at=expires_at,
        min_purchase_cents=min_purchase_cents,
        max_discount_cents=max_discount_cents,
        applicable_to_type=applicable_to_type,
        applicable_to_id=None if applicable_to_type == APPLIES_TO_ALL else applicable_to_id,
        is_active=True,
        created_by=created_by,
    )

    try:
        db.add(discount)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(discount)
    logger.info("discount_code_created", code=discount.code, discount_code_id=discount.id)
    return discount


async def list_discount_codes(
    db: AsyncSession,
    *,
    is_active: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    stmt = select(DiscountCode)
    total_stmt = select(func.count()).select_from(DiscountCode)
    if is_active is not None:
        stmt = stmt.where(DiscountCode.is_active == is_active)
        total_stmt = total_stmt.where(DiscountCode.is_active == is_active)

    total = int((await db.execute(total_stmt)).scalar_one())

    res = await db.execute(
        stmt.order_by(DiscountCode.created_at.desc(), DiscountCode.id.desc()).limit(limit).offset(offset)
    )
    codes = res.scalars().all()

    # discount totals per code
    totals: dict[int, int] = {}
    ids = [int(c.id) for c in codes]
    if ids:
        sums = await db.execute(
            select(DiscountUsage.discount_code_id, func.coalesce(func.sum(DiscountUsage.discount_cents), 0))
            .where(DiscountUsage.discount_code_id.in_(ids))
            .group_by(DiscountUsage.discount_code_id)
        )
        totals = {int(r[0]): int(r[1]) for r in sums.all()}

    items = [
        {"discount_code": c, "total_discount_cents": totals.get(int(c.id), 0)}
        for c in codes
    ]
    return {"items": items, "limit": limit, "offset": offset, "total": total}


async def set_discount_active(db: AsyncSession, *, discount_code_id: int, is_active: bool) -> DiscountCode:
    discount = await db.get(DiscountCode, discount_code_id)
    if discount is None:
        raise NotFoundError("Discount code not found.")

    try:
        discount.is_active = is_active
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(discount)
    return discount
