from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db import Base, BigIntPK
from app.models._time import utcnow


PERCENTAGE = "PERCENTAGE"
FIXED_AMOUNT = "FIXED_AMOUNT"

APPLIES_TO_ALL = "ALL"
APPLIES_TO_CATEGORY = "CATEGORY"
APPLIES_TO_COURSE = "COURSE"


class DiscountCode(Base):
    __tablename__ = "discount_codes"
    __table_args__ = (
        CheckConstraint("type IN ('PERCENTAGE','FIXED_AMOUNT')", name="discount_codes_type_check"),
        CheckConstraint(
            "applicable_to_type IN ('ALL','CATEGORY','COURSE')",
            name="discount_codes_applicable_check",
        ),
        CheckConstraint("used_count >= 0", name="discount_codes_used_nonneg_chk"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    # always stored upper-cased
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    type: Mapped[str] = mapped_column(String(16), nullable=False)
    # PERCENTAGE: percent off (e.g. 12.50); FIXED_AMOUNT: cents off
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_uses_per_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=1)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    min_purchase_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_discount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    applicable_to_type: Mapped[str] = mapped_column(String(16), nullable=False, default=APPLIES_TO_ALL)
    applicable_to_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class DiscountUsage(Base):
    __tablename__ = "discount_usages"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    discount_code_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("discount_codes.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # one usage per order; NULL allowed for purchases that carry no order
    order_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    original_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    final_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    discount_code = relationship("DiscountCode", lazy="selectin")


Index("ix_discount_usages_code_user", DiscountUsage.discount_code_id, DiscountUsage.user_id)
