from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.schemas.common import CamelModel


class EnrollmentOut(CamelModel):
    id: int
    user_id: int
    course_id: int
    course_title: str = ""
    progress: float = 0.0
    last_accessed: Optional[datetime] = None
    payment_transaction_id: Optional[str] = None
    created_at: datetime
