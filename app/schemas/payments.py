from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from app.schemas.common import CamelModel
from app.schemas.enrollments import EnrollmentOut
from app.schemas.orders import OrderOut


class CheckoutIn(CamelModel):
    course_id: int
    coupon_code: Optional[str] = Field(default=None, max_length=64)


class DiscountAppliedOut(CamelModel):
    code: str
    original_amount: int
    discount_amount: int
    final_amount: int


class CheckoutOut(CamelModel):
    """
    One of three shapes, unset fields dropped:
    redirect to the gateway (url, sessionId, orderId), free enrollment
    (message, enrollment), or already enrolled (enrolled, message).
    """

    success: bool = True
    message: Optional[str] = None
    enrolled: Optional[bool] = None

    url: Optional[str] = None
    session_id: Optional[str] = None
    order_id: Optional[int] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    enrollment: Optional[EnrollmentOut] = None
    redirect_url: Optional[str] = None
    discount_applied: Optional[DiscountAppliedOut] = None


class PaymentIntentOut(CamelModel):
    success: bool = True
    message: Optional[str] = None
    enrolled: Optional[bool] = None

    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None
    order_id: Optional[int] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    enrollment: Optional[EnrollmentOut] = None
    redirect_url: Optional[str] = None
    discount_applied: Optional[DiscountAppliedOut] = None


class VerifySessionIn(CamelModel):
    session_id: str = Field(..., min_length=1)
    course_id: Optional[int] = None
    order_id: Optional[int] = None


class VerifySessionOut(CamelModel):
    success: bool = True
    message: str
    order: OrderOut
    transaction_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    enrollment_created: bool


class ConfirmEnrollmentIn(CamelModel):
    payment_intent_id: str = Field(..., min_length=1)
    course_id: Optional[int] = None


class ConfirmEnrollmentOut(CamelModel):
    success: bool = True
    message: str
    enrollment: Optional[EnrollmentOut] = None
    redirect_url: Optional[str] = None


class WebhookOut(CamelModel):
    received: bool = True


class PaymentsHealthOut(CamelModel):
    stripe: str
    timestamp: datetime
