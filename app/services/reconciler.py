"""
Payment confirmation -> enrollment reconciliation.

Confirmations arrive at least once, from up to two origins (the client's
verify call and the provider's webhook), in any order and possibly at the same
time. ``reconcile`` turns each of them into the same end state:

  * one Enrollment per (user, course)        -- unique constraint + ON CONFLICT DO NOTHING
  * Order PENDING -> COMPLETED at most once   -- conditional UPDATE ... WHERE status = 'PENDING'
  * one DiscountUsage per order, and one
    used_count increment with it              -- unique order_id + ON CONFLICT DO NOTHING

Every step is idempotent on its own, so a retry after a partial failure (or a
rolled-back attempt) can never double-credit anything.
"""
from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DataIntegrityError
from app.models.order import ORDER_CANCELED
from app.services.discounts import record_usage
from app.services.enrollments import ensure_enrollment
from app.services.orders import complete_if_pending, get_order
from app.services.pricing import PriceQuote


SOURCE_VERIFY = "verify"
SOURCE_WEBHOOK = "webhook"
SOURCE_INTENT = "intent"

logger = structlog.get_logger(component="reconciler")


@dataclass
class Confirmation:
    source: str
    user_id: int
    course_id: int
    order_id: int
    payment_transaction_id: str | None = None
    # what the gateway says was charged; None when nothing went through the gateway
    amount_total_cents: int | None = None


@dataclass
class ReconcileResult:
    user_id: int
    course_id: int
    order_id: int
    order_status: str
    enrollment_created: bool
    order_completed: bool
    discount_usage_created: bool

    @property
    def already_done(self) -> bool:
        return not (self.enrollment_created or self.order_completed or self.discount_usage_created)


async def reconcile(
    db: AsyncSession,
    confirmation: Confirmation,
    *,
    commit: bool = True,
) -> ReconcileResult:
    """
    Drive an authenticated payment confirmation to its final state.

    Authenticity (signature / paid status) must be established by the caller.
    With ``commit=True`` this is its own transaction: on any error everything
    is rolled back and the call can be retried as-is.
    """
    c = confirmation
    log = logger.bind(source=c.source, user_id=c.user_id, course_id=c.course_id, order_id=c.order_id)

    try:
        order = await get_order(db, c.order_id, fresh=True)

        if int(order.user_id) != int(c.user_id):
            log.error("reconcile_user_mismatch", order_user_id=order.user_id)
            raise DataIntegrityError("Order does not belong to this user.")

        item = next((it for it in order.items if int(it.course_id) == int(c.course_id)), None)
        if item is None:
            log.error("reconcile_course_mismatch")
            raise DataIntegrityError("Order does not contain this course.")

        if c.amount_total_cents is not None and int(c.amount_total_cents) != int(order.total_amount_cents):
            log.error(
                "reconcile_amount_mismatch",
                charged_cents=c.amount_total_cents,
                order_total_cents=order.total_amount_cents,
            )
            raise DataIntegrityError("Charged amount does not match the order total.")

        enrollment_created = await ensure_enrollment(
            db,
            user_id=c.user_id,
            course_id=c.course_id,
            payment_transaction_id=c.payment_transaction_id,
        )

        order_completed = await complete_if_pending(db, order.id)
        if not order_completed and order.status == ORDER_CANCELED:
            # sweeper got there first, but the customer did pay: keep the enrollment
            log.warning("reconcile_paid_order_was_canceled")

        discount_usage_created = False
        if order.discount_code_id is not None:
            original = int(item.price_cents)
            final = int(order.total_amount_cents)
            discount_usage_created = await record_usage(
                db,
                discount_code_id=order.discount_code_id,
                user_id=c.user_id,
                order_id=order.id,
                quote=PriceQuote(
                    original_cents=original,
                    discount_cents=max(0, original - final),
                    final_cents=final,
                ),
            )

        if commit:
            await db.commit()

    except Exception:
        if commit:
            await db.rollback()
        raise

    order = await get_order(db, c.order_id, fresh=True)

    result = ReconcileResult(
        user_id=c.user_id,
        course_id=c.course_id,
        order_id=int(order.id),
        order_status=order.status,
        enrollment_created=enrollment_created,
        order_completed=order_completed,
        discount_usage_created=discount_usage_created,
    )
    log.info(
        "reconcile_done",
        enrollment_created=result.enrollment_created,
        order_completed=result.order_completed,
        discount_usage_created=result.discount_usage_created,
        already_done=result.already_done,
    )
    return result
