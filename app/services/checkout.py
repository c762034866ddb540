from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AppError, AuthFailed, DataIntegrityError, NotFoundError
from app.integrations.stripe_gateway import (
    COURSE_PURCHASE,
    CheckoutSession,
    LineItem,
    StripeGateway,
    build_course_metadata,
    parse_course_metadata,
)
from app.models.course import Course
from app.models.discount import DiscountCode
from app.models.order import ORDER_COMPLETED
from app.models.user import User
from app.services.discounts import record_usage, validate_discount
from app.services.enrollments import ensure_enrollment, get_enrollment, serialize_enrollment
from app.services.orders import (
    attach_session,
    cancel_if_pending,
    cancel_superseded_orders,
    create_pending_order,
    get_order,
    serialize_order,
)
from app.services.pricing import PriceQuote, compute_price
from app.services.reconciler import (
    SOURCE_INTENT,
    SOURCE_VERIFY,
    SOURCE_WEBHOOK,
    Confirmation,
    reconcile,
)


PAID_SESSION_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
DEAD_SESSION_EVENTS = ("checkout.session.expired", "checkout.session.async_payment_failed")

logger = structlog.get_logger(component="checkout")


@dataclass
class _Prepared:
    course: Course
    discount: DiscountCode | None
    quote: PriceQuote


def _discount_applied(discount: DiscountCode | None, quote: PriceQuote) -> dict | None:
    if discount is None:
        return None
    return {
        "code": discount.code,
        "original_amount": quote.original_cents,
        "discount_amount": quote.discount_cents,
        "final_amount": quote.final_cents,
    }


def _already_enrolled(course_id: int) -> dict:
    return {
        "success": True,
        "enrolled": True,
        "message": "Already enrolled in this course",
        "redirect_url": f"/courses/{course_id}/modules",
    }


async def _prepare(
    db: AsyncSession,
    *,
    user: User,
    course_id: int,
    coupon_code: str | None,
) -> _Prepared | None:
    """Course + discount + price for a checkout; None when the user is already enrolled."""
    course = await db.get(Course, course_id)
    if course is None:
        raise NotFoundError("Course not found.")

    if await get_enrollment(db, user_id=user.id, course_id=course.id) is not None:
        return None

    discount = None
    if coupon_code and coupon_code.strip():
        discount = await validate_discount(db, code=coupon_code, course=course, user_id=user.id)

    return _Prepared(course=course, discount=discount, quote=compute_price(course.price_cents, discount))


async def _enroll_free(db: AsyncSession, *, user: User, prepared: _Prepared) -> dict:
    """
    Nothing to charge: enroll, then record an order that is COMPLETED from the
    start (and the discount usage), all in one transaction.

    The enrollment insert is the gate: a concurrent free checkout for the same
    (user, course) that loses it writes nothing at all.
    """
    course, discount, quote = prepared.course, prepared.discount, prepared.quote
    user_id, course_id = int(user.id), int(course.id)
    discount_applied = _discount_applied(discount, quote)

    try:
        created = await ensure_enrollment(db, user_id=user_id, course_id=course_id, payment_transaction_id=None)
        if not created:
            await db.rollback()
            logger.info("free_enrollment_already_done", user_id=user_id, course_id=course_id)
            return _already_enrolled(course_id)

        await cancel_superseded_orders(db, user_id=user_id, course_id=course_id)
        order = await create_pending_order(
            db,
            user_id=user_id,
            course=course,
            final_cents=0,
            discount_code_id=discount.id if discount else None,
            currency=settings.PAYMENT_CURRENCY,
            status=ORDER_COMPLETED,
        )
        order_id = int(order.id)

        if discount is not None:
            await record_usage(
                db,
                discount_code_id=discount.id,
                user_id=user_id,
                order_id=order_id,
                quote=quote,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    enrollment = await get_enrollment(db, user_id=user_id, course_id=course_id)
    logger.info("free_enrollment_completed", user_id=user_id, course_id=course_id, order_id=order_id)

    return {
        "success": True,
        "message": "Successfully enrolled in free course!",
        "order_id": order_id,
        "enrollment": serialize_enrollment(enrollment) if enrollment else None,
        "redirect_url": f"/courses/{course_id}/modules",
        "discount_applied": discount_applied,
    }


async def _create_pending(db: AsyncSession, *, user: User, prepared: _Prepared):
    try:
        # earlier unpaid attempts at this course stop holding their discount from here
        await cancel_superseded_orders(db, user_id=user.id, course_id=prepared.course.id)
        order = await create_pending_order(
            db,
            user_id=user.id,
            course=prepared.course,
            final_cents=prepared.quote.final_cents,
            discount_code_id=prepared.discount.id if prepared.discount else None,
            currency=settings.PAYMENT_CURRENCY,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return order


async def _abandon(db: AsyncSession, order_id: int) -> None:
    # gateway never got a session for this order; close it instead of waiting for the sweeper
    try:
        await cancel_if_pending(db, order_id)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("order_abandon_failed", order_id=order_id)


def _metadata_for(user: User, prepared: _Prepared, order_id: int) -> dict[str, str]:
    return build_course_metadata(
        user_id=user.id,
        course_id=prepared.course.id,
        order_id=order_id,
        discount_code=prepared.discount.code if prepared.discount else None,
        original_cents=prepared.quote.original_cents,
        discount_cents=prepared.quote.discount_cents,
        final_cents=prepared.quote.final_cents,
    )


async def start_checkout(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    user: User,
    course_id: int,
    coupon_code: str | None = None,
) -> dict:
    log = logger.bind(user_id=user.id, course_id=course_id, coupon=coupon_code or None)

    prepared = await _prepare(db, user=user, course_id=course_id, coupon_code=coupon_code)
    if prepared is None:
        log.info("checkout_already_enrolled")
        return _already_enrolled(course_id)

    if prepared.quote.is_free:
        return await _enroll_free(db, user=user, prepared=prepared)

    course, quote = prepared.course, prepared.quote
    order = await _create_pending(db, user=user, prepared=prepared)
    order_id = int(order.id)

    try:
        session = await gateway.create_checkout_session(
            line_item=LineItem(
                name=course.title,
                description=course.description or f"Course: {course.title}",
                amount_cents=quote.final_cents,
                currency=settings.PAYMENT_CURRENCY,
            ),
            success_url=(
                f"{settings.FRONTEND_URL}/success?session_id={{CHECKOUT_SESSION_ID}}"
                f"&course_id={course.id}&order_id={order_id}"
            ),
            cancel_url=f"{settings.FRONTEND_URL}/courses/{course.id}",
            metadata=_metadata_for(user, prepared, order_id),
            idempotency_key=f"checkout-order-{order_id}",
        )
    except AppError:
        await _abandon(db, order_id)
        raise

    try:
        await attach_session(db, order_id=order_id, session_id=session.id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    log.info("checkout_created", order_id=order_id, session_id=session.id, final_cents=quote.final_cents)

    return {
        "success": True,
        "url": session.url,
        "session_id": session.id,
        "order_id": order_id,
        "amount": quote.final_cents,
        "currency": settings.PAYMENT_CURRENCY,
        "discount_applied": _discount_applied(prepared.discount, quote),
    }


async def start_payment_intent(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    user: User,
    course_id: int,
    coupon_code: str | None = None,
) -> dict:
    """Same as checkout, but hands the client an intent secret for an embedded card form."""
    prepared = await _prepare(db, user=user, course_id=course_id, coupon_code=coupon_code)
    if prepared is None:
        return _already_enrolled(course_id)

    if prepared.quote.is_free:
        return await _enroll_free(db, user=user, prepared=prepared)

    order = await _create_pending(db, user=user, prepared=prepared)
    order_id = int(order.id)

    try:
        intent = await gateway.create_payment_intent(
            amount_cents=prepared.quote.final_cents,
            metadata=_metadata_for(user, prepared, order_id),
            idempotency_key=f"intent-order-{order_id}",
        )
    except AppError:
        await _abandon(db, order_id)
        raise

    logger.info("payment_intent_created", user_id=user.id, order_id=order_id, intent_id=intent.id)

    return {
        "success": True,
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "order_id": order_id,
        "amount": prepared.quote.final_cents,
        "currency": settings.PAYMENT_CURRENCY,
        "discount_applied": _discount_applied(prepared.discount, prepared.quote),
    }


def _check_caller_ids(meta, *, user_id: int, course_id: int | None, order_id: int | None) -> None:
    mismatches = []
    if int(meta.user_id) != int(user_id):
        mismatches.append("userId")
    if course_id is not None and int(meta.course_id) != int(course_id):
        mismatches.append("courseId")
    if order_id is not None and int(meta.order_id) != int(order_id):
        mismatches.append("orderId")

    if mismatches:
        logger.error(
            "payment_identifier_mismatch",
            fields=mismatches,
            caller_user_id=user_id,
            caller_course_id=course_id,
            caller_order_id=order_id,
            meta_user_id=meta.user_id,
            meta_course_id=meta.course_id,
            meta_order_id=meta.order_id,
        )
        raise DataIntegrityError(f"Payment does not match request ({', '.join(mismatches)}).")


async def verify_session(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    user: User,
    session_id: str,
    course_id: int | None = None,
    order_id: int | None = None,
) -> dict:
    session = await gateway.retrieve_session(session_id)

    if session.payment_status != "paid":
        logger.warning("verify_session_unpaid", session_id=session_id, payment_status=session.payment_status)
        raise AuthFailed("Payment not completed.")

    meta = parse_course_metadata(session.metadata)
    _check_caller_ids(meta, user_id=user.id, course_id=course_id, order_id=order_id)

    result = await reconcile(
        db,
        Confirmation(
            source=SOURCE_VERIFY,
            user_id=meta.user_id,
            course_id=meta.course_id,
            order_id=meta.order_id,
            payment_transaction_id=session.payment_intent,
            amount_total_cents=session.amount_total_cents,
        ),
    )

    order = await get_order(db, meta.order_id, fresh=True)
    return {
        "success": True,
        "message": "Payment verified and enrollment completed",
        "order": serialize_order(order),
        "transaction_id": session.payment_intent,
        "amount": session.amount_total_cents,
        "currency": session.currency,
        "enrollment_created": result.enrollment_created,
    }


async def confirm_payment_intent(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    user: User,
    payment_intent_id: str,
    course_id: int | None = None,
) -> dict:
    intent = await gateway.retrieve_payment_intent(payment_intent_id)

    if intent.status != "succeeded":
        raise AuthFailed(f"Payment not completed (status: {intent.status}).")

    meta = parse_course_metadata(intent.metadata)
    _check_caller_ids(meta, user_id=user.id, course_id=course_id, order_id=None)

    result = await reconcile(
        db,
        Confirmation(
            source=SOURCE_INTENT,
            user_id=meta.user_id,
            course_id=meta.course_id,
            order_id=meta.order_id,
            payment_transaction_id=intent.id,
            amount_total_cents=intent.amount_cents,
        ),
    )

    enrollment = await get_enrollment(db, user_id=meta.user_id, course_id=meta.course_id)
    return {
        "success": True,
        "message": "Enrollment completed successfully!" if result.enrollment_created else "Already enrolled",
        "enrollment": serialize_enrollment(enrollment) if enrollment else None,
        "redirect_url": f"/courses/{meta.course_id}/modules",
    }


async def _on_paid_session(db: AsyncSession, session: CheckoutSession) -> None:
    if session.payment_status != "paid":
        # async payment methods: completed now, paid later (async_payment_succeeded)
        logger.info("webhook_session_not_paid_yet", session_id=session.id, payment_status=session.payment_status)
        return

    meta = parse_course_metadata(session.metadata)
    await reconcile(
        db,
        Confirmation(
            source=SOURCE_WEBHOOK,
            user_id=meta.user_id,
            course_id=meta.course_id,
            order_id=meta.order_id,
            payment_transaction_id=session.payment_intent,
            amount_total_cents=session.amount_total_cents,
        ),
    )


async def _on_dead_session(db: AsyncSession, session: CheckoutSession) -> None:
    meta = parse_course_metadata(session.metadata)
    try:
        canceled = await cancel_if_pending(db, meta.order_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("webhook_order_canceled", order_id=meta.order_id, changed=canceled)


async def handle_webhook(
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    payload: bytes,
    signature: str | None,
) -> dict:
    event = gateway.construct_event(payload, signature)

    event_type = event.get("type", "unknown")
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata") or {}
    log = logger.bind(event_type=event_type, event_id=event.get("id"))
    log.info("webhook_received")

    if metadata.get("type") != COURSE_PURCHASE:
        log.info("webhook_ignored", reason="not a course purchase")
        return {"received": True}

    try:
        if event_type in PAID_SESSION_EVENTS:
            await _on_paid_session(db, gateway.session_from_event(event))
        elif event_type in DEAD_SESSION_EVENTS:
            await _on_dead_session(db, gateway.session_from_event(event))
        elif event_type == "payment_intent.succeeded":
            meta = parse_course_metadata({str(k): str(v) for k, v in metadata.items()})
            await reconcile(
                db,
                Confirmation(
                    source=SOURCE_WEBHOOK,
                    user_id=meta.user_id,
                    course_id=meta.course_id,
                    order_id=meta.order_id,
                    payment_transaction_id=obj.get("id"),
                    amount_total_cents=obj.get("amount"),
                ),
            )
        else:
            log.info("webhook_ignored", reason="unhandled event type")
    except NotFoundError as e:
        # redelivery cannot make the order appear; acknowledge and leave it to an operator
        log.error("webhook_order_not_found", order_id=metadata.get("orderId"), detail=str(e))

    return {"received": True}
