from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user, get_gateway
from app.core.errors import AppError, to_http
from app.integrations.stripe_gateway import StripeGateway
from app.models.user import User
from app.schemas.payments import (
    CheckoutIn,
    CheckoutOut,
    ConfirmEnrollmentIn,
    ConfirmEnrollmentOut,
    PaymentIntentOut,
    PaymentsHealthOut,
    VerifySessionIn,
    VerifySessionOut,
    WebhookOut,
)
from app.services.checkout import (
    confirm_payment_intent,
    handle_webhook,
    start_checkout,
    start_payment_intent,
    verify_session,
)


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/checkout", response_model=CheckoutOut, response_model_exclude_none=True)
async def create_checkout(
    payload: CheckoutIn,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
) -> CheckoutOut:
    try:
        result = await start_checkout(
            db,
            gateway,
            user=current_user,
            course_id=payload.course_id,
            coupon_code=payload.coupon_code,
        )
        return CheckoutOut(**result)
    except AppError as e:
        raise to_http(e)


@router.post("/verify-session", response_model=VerifySessionOut)
async def verify_checkout_session(
    payload: VerifySessionIn,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
) -> VerifySessionOut:
    try:
        result = await verify_session(
            db,
            gateway,
            user=current_user,
            session_id=payload.session_id,
            course_id=payload.course_id,
            order_id=payload.order_id,
        )
        return VerifySessionOut(**result)
    except AppError as e:
        raise to_http(e)


@router.post("/webhook", response_model=WebhookOut)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
) -> WebhookOut:
    # signature is computed over the exact bytes received
    payload = await request.body()
    try:
        result = await handle_webhook(db, gateway, payload=payload, signature=stripe_signature)
        return WebhookOut(**result)
    except AppError as e:
        raise to_http(e)


@router.post("/create-intent", response_model=PaymentIntentOut, response_model_exclude_none=True)
async def create_payment_intent(
    payload: CheckoutIn,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
) -> PaymentIntentOut:
    try:
        result = await start_payment_intent(
            db,
            gateway,
            user=current_user,
            course_id=payload.course_id,
            coupon_code=payload.coupon_code,
        )
        return PaymentIntentOut(**result)
    except AppError as e:
        raise to_http(e)


@router.post("/confirm-enrollment", response_model=ConfirmEnrollmentOut)
async def confirm_enrollment(
    payload: ConfirmEnrollmentIn,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
) -> ConfirmEnrollmentOut:
    try:
        result = await confirm_payment_intent(
            db,
            gateway,
            user=current_user,
            payment_intent_id=payload.payment_intent_id,
            course_id=payload.course_id,
        )
        return ConfirmEnrollmentOut(**result)
    except AppError as e:
        raise to_http(e)


@router.get("/health", response_model=PaymentsHealthOut)
async def payments_health(gateway: StripeGateway = Depends(get_gateway)) -> PaymentsHealthOut:
    connected = await gateway.ping()
    return PaymentsHealthOut(
        stripe="connected" if connected else "disconnected",
        timestamp=datetime.now(timezone.utc),
    )
