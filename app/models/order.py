from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.db import Base, BigIntPK
from app.models._time import utcnow


ORDER_PENDING = "PENDING"
ORDER_COMPLETED = "COMPLETED"
ORDER_CANCELED = "CANCELED"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','COMPLETED','CANCELED')",
            name="orders_status_check",
        ),
        CheckConstraint("total_amount_cents >= 0", name="orders_total_nonneg_chk"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("users.id"),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ORDER_PENDING)

    # final charge after discount
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    discount_code_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey("discount_codes.id", ondelete="SET NULL"),
        nullable=True,
    )

    payment_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    discount_code = relationship("DiscountCode", lazy="selectin")


Index("ix_orders_status_created", Order.status, Order.created_at)
Index("ix_orders_user_id", Order.user_id)
