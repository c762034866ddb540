from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from app.schemas.common import CamelModel


class OrderItemOut(CamelModel):
    course_id: int
    price_cents: int


class OrderOut(CamelModel):
    id: int
    user_id: int
    status: str
    total_amount_cents: int
    currency: str
    discount_code: Optional[str] = None
    payment_session_id: Optional[str] = None
    created_at: datetime

    items: List[OrderItemOut] = Field(default_factory=list)


class OrdersListOut(CamelModel):
    items: List[OrderOut] = Field(default_factory=list)
    limit: int
    offset: int
    total: int
