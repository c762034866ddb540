from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import Field

from app.schemas.common import CamelModel


class DiscountValidateIn(CamelModel):
    code: str = Field(..., min_length=1, max_length=64)
    course_id: int


class DiscountCodeOut(CamelModel):
    id: int
    code: str
    name: Optional[str] = None
    type: str
    value: Decimal
    max_uses: Optional[int] = None
    max_uses_per_user: Optional[int] = None
    used_count: int
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    min_purchase_cents: int
    max_discount_cents: Optional[int] = None
    applicable_to_type: str
    applicable_to_id: Optional[int] = None
    is_active: bool
    created_at: datetime


class DiscountCalculationOut(CamelModel):
    original_amount: int
    discount_amount: int
    final_amount: int


class DiscountQuoteOut(CamelModel):
    discount_code: DiscountCodeOut
    calculation: DiscountCalculationOut


class DiscountValidateOut(CamelModel):
    success: bool = True
    data: DiscountQuoteOut


class DiscountCreateIn(CamelModel):
    code: str = Field(..., min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)
    type: Literal["PERCENTAGE", "FIXED_AMOUNT"]
    # percent for PERCENTAGE, cents for FIXED_AMOUNT
    value: Decimal = Field(..., gt=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: Optional[int] = Field(default=1, ge=1)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    min_purchase_cents: int = Field(default=0, ge=0)
    max_discount_cents: Optional[int] = Field(default=None, ge=0)
    applicable_to_type: Literal["ALL", "CATEGORY", "COURSE"] = "ALL"
    applicable_to_id: Optional[int] = None


class DiscountActiveIn(CamelModel):
    is_active: bool


class DiscountListItemOut(CamelModel):
    discount_code: DiscountCodeOut
    total_discount_cents: int = 0


class DiscountsListOut(CamelModel):
    items: List[DiscountListItemOut] = Field(default_factory=list)
    limit: int
    offset: int
    total: int
