from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.db import insert_ignoring_conflicts
from app.models.discount import PERCENTAGE, DiscountCode, DiscountUsage
from app.models.enrollment import Enrollment
from app.models.order import ORDER_COMPLETED, Order
from app.models.user import User
from app.services.checkout import _enroll_free, _prepare

from conftest import count_rows


async def test_concurrent_free_checkouts_record_one_usage(session_factory, db, seed):
    code = DiscountCode(
        code="FREEBIE",
        type=PERCENTAGE,
        value=Decimal("100"),
        max_uses=10,
        max_uses_per_user=1,
        used_count=0,
        min_purchase_cents=0,
        applicable_to_type="ALL",
        is_active=True,
    )
    db.add(code)
    await db.commit()
    code_id, user_id, course_id = int(code.id), int(seed["alice"].id), int(seed["course"].id)

    # both requests validate before either one writes
    async with session_factory() as first, session_factory() as second:
        prepared = []
        for session in (first, second):
            user = await session.get(User, user_id)
            p = await _prepare(session, user=user, course_id=course_id, coupon_code="FREEBIE")
            assert p is not None and p.quote.final_cents == 0
            prepared.append((session, user, p))

        results = [await _enroll_free(s, user=u, prepared=p) for s, u, p in prepared]

    assert results[0]["message"] == "Successfully enrolled in free course!"
    assert results[1]["enrolled"] is True
    assert results[1]["message"] == "Already enrolled in this course"

    assert await count_rows(db, Enrollment) == 1
    assert await count_rows(db, Order, Order.status == ORDER_COMPLETED) == 1
    assert await count_rows(db, DiscountUsage, DiscountUsage.discount_code_id == code_id) == 1
    refreshed = await db.get(DiscountCode, code_id, populate_existing=True)
    assert refreshed.used_count == 1


def test_conflict_insert_rejects_unsupported_dialect():
    session = SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=SimpleNamespace(name="mysql")))

    with pytest.raises(ValueError):
        insert_ignoring_conflicts(session, Enrollment, index_elements=["user_id", "course_id"])
