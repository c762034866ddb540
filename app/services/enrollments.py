from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import insert_ignoring_conflicts
from app.models._time import utcnow
from app.models.enrollment import Enrollment


async def get_enrollment(db: AsyncSession, *, user_id: int, course_id: int) -> Optional[Enrollment]:
    res = await db.execute(
        select(Enrollment).where(
            Enrollment.user_id == user_id,
            Enrollment.course_id == course_id,
        )
    )
    return res.scalar_one_or_none()


async def ensure_enrollment(
    db: AsyncSession,
    *,
    user_id: int,
    course_id: int,
    payment_transaction_id: str | None,
) -> bool:
    """
    Create the (user, course) enrollment unless it already exists.

    Never overwrites an existing row. Returns True only when this call inserted it.
    """
    now = utcnow()
    stmt = (
        insert_ignoring_conflicts(db, Enrollment, index_elements=["user_id", "course_id"])
        .values(
            user_id=user_id,
            course_id=course_id,
            progress=0.0,
            last_accessed=now,
            payment_transaction_id=payment_transaction_id,
            created_at=now,
        )
        .returning(Enrollment.id)
    )
    res = await db.execute(stmt)
    return res.scalar_one_or_none() is not None


async def list_enrollments(db: AsyncSession, *, user_id: int) -> list[Enrollment]:
    res = await db.execute(
        select(Enrollment)
        .where(Enrollment.user_id == user_id)
        .order_by(Enrollment.created_at.desc(), Enrollment.id.desc())
    )
    return list(res.scalars().all())


def serialize_enrollment(e: Enrollment) -> dict:
    return {
        "id": int(e.id),
        "user_id": int(e.user_id),
        "course_id": int(e.course_id),
        "course_title": e.course.title if e.course is not None else "",
        "progress": float(e.progress or 0.0),
        "last_accessed": e.last_accessed,
        "payment_transaction_id": e.payment_transaction_id,
        "created_at": e.created_at,
    }
