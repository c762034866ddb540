from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user, require_admin
from app.core.errors import AppError, to_http
from app.models.user import User
from app.schemas.discounts import (
    DiscountActiveIn,
    DiscountCalculationOut,
    DiscountCodeOut,
    DiscountCreateIn,
    DiscountListItemOut,
    DiscountQuoteOut,
    DiscountsListOut,
    DiscountValidateIn,
    DiscountValidateOut,
)
from app.services.discounts import (
    create_discount_code,
    list_discount_codes,
    quote_discount,
    set_discount_active,
)


router = APIRouter(prefix="/discounts", tags=["Discounts"])


@router.post("/validate", response_model=DiscountValidateOut)
async def validate_discount_code(
    payload: DiscountValidateIn,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> DiscountValidateOut:
    try:
        q = await quote_discount(db, code=payload.code, course_id=payload.course_id, user_id=current_user.id)
    except AppError as e:
        raise to_http(e)

    return DiscountValidateOut(
        data=DiscountQuoteOut(
            discount_code=DiscountCodeOut.model_validate(q["discount_code"]),
            calculation=DiscountCalculationOut(
                original_amount=q["original_cents"],
                discount_amount=q["discount_cents"],
                final_amount=q["final_cents"],
            ),
        )
    )


@router.post("", response_model=DiscountCodeOut, status_code=201)
async def admin_create_discount(
    payload: DiscountCreateIn,
    db: AsyncSession = Depends(get_db),
    admin_user: User = Depends(require_admin),
) -> DiscountCodeOut:
    try:
        discount = await create_discount_code(
            db,
            created_by=admin_user.id,
            **payload.model_dump(),
        )
    except AppError as e:
        raise to_http(e)
    return DiscountCodeOut.model_validate(discount)


@router.get("", response_model=DiscountsListOut)
async def admin_list_discounts(
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_admin),
) -> DiscountsListOut:
    data = await list_discount_codes(db, is_active=is_active, limit=limit, offset=offset)
    return DiscountsListOut(
        items=[
            DiscountListItemOut(
                discount_code=DiscountCodeOut.model_validate(it["discount_code"]),
                total_discount_cents=it["total_discount_cents"],
            )
            for it in data["items"]
        ],
        limit=data["limit"],
        offset=data["offset"],
        total=data["total"],
    )


@router.patch("/{discount_code_id}", response_model=DiscountCodeOut)
async def admin_set_discount_active(
    discount_code_id: int,
    payload: DiscountActiveIn,
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_admin),
) -> DiscountCodeOut:
    try:
        discount = await set_discount_active(db, discount_code_id=discount_code_id, is_active=payload.is_active)
    except AppError as e:
        raise to_http(e)
    return DiscountCodeOut.model_validate(discount)
