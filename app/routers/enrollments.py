from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user
from app.models.user import User
from app.schemas.enrollments import EnrollmentOut
from app.services.enrollments import list_enrollments, serialize_enrollment


router = APIRouter(prefix="/enrollments", tags=["Enrollments"])


@router.get("", response_model=List[EnrollmentOut])
async def my_enrollments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[EnrollmentOut]:
    rows = await list_enrollments(db, user_id=current_user.id)
    return [EnrollmentOut(**serialize_enrollment(e)) for e in rows]
