"""
Stripe adapter.

Everything that talks to Stripe goes through ``StripeGateway``. Amounts are
integer minor units (cents) throughout the service; the only conversion to a
human "major unit" string happens here, when order amounts are written into
(and read back from) checkout-session metadata.

The Stripe SDK is blocking, so every call runs in a worker thread and is
bounded by ``GATEWAY_TIMEOUT_SECONDS``. Timeouts and connection failures are
surfaced as ``GatewayTransient`` (safe for the client to retry).
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable

import stripe
import structlog

from app.core.config import settings
from app.core.errors import AuthFailed, DataIntegrityError, GatewayError, GatewayTransient, NotFoundError


COURSE_PURCHASE = "course_purchase"

logger = structlog.get_logger(component="stripe_gateway")


# -------------------------
# Gateway-facing value types
# -------------------------
@dataclass
class LineItem:
    name: str
    amount_cents: int
    currency: str
    description: str | None = None
    quantity: int = 1


@dataclass
class CheckoutSession:
    id: str
    url: str | None = None
    payment_status: str | None = None
    status: str | None = None
    payment_intent: str | None = None
    amount_total_cents: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class PaymentIntent:
    id: str
    status: str
    client_secret: str | None = None
    amount_cents: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class CourseMetadata:
    user_id: int
    course_id: int
    order_id: int
    discount_code: str | None
    original_cents: int
    discount_cents: int
    final_cents: int


# -------------------------
# Money <-> metadata strings
# -------------------------
def cents_to_major(cents: int) -> str:
    return f"{Decimal(int(cents)) / 100:.2f}"


def major_to_cents(value: str) -> int:
    try:
        return int((Decimal(value) * 100).to_integral_value())
    except (InvalidOperation, TypeError) as e:
        raise DataIntegrityError(f"Malformed amount in payment metadata: {value!r}") from e


def build_course_metadata(
    *,
    user_id: int,
    course_id: int,
    order_id: int,
    discount_code: str | None,
    original_cents: int,
    discount_cents: int,
    final_cents: int,
) -> dict[str, str]:
    # Stripe metadata values must be strings
    return {
        "type": COURSE_PURCHASE,
        "userId": str(user_id),
        "courseId": str(course_id),
        "orderId": str(order_id),
        "discountCode": discount_code or "",
        "discountAmount": cents_to_major(discount_cents),
        "finalAmount": cents_to_major(final_cents),
        "originalAmount": cents_to_major(original_cents),
    }


def parse_course_metadata(metadata: dict[str, str]) -> CourseMetadata:
    if metadata.get("type") != COURSE_PURCHASE:
        raise DataIntegrityError("Payment is not a course purchase.")

    try:
        user_id = int(metadata["userId"])
        course_id = int(metadata["courseId"])
        order_id = int(metadata["orderId"])
    except (KeyError, TypeError, ValueError) as e:
        raise DataIntegrityError("Payment metadata is missing order identifiers.") from e

    return CourseMetadata(
        user_id=user_id,
        course_id=course_id,
        order_id=order_id,
        discount_code=metadata.get("discountCode") or None,
        original_cents=major_to_cents(metadata.get("originalAmount", "0")),
        discount_cents=major_to_cents(metadata.get("discountAmount", "0")),
        final_cents=major_to_cents(metadata.get("finalAmount", "0")),
    )


def _plain_metadata(obj: Any) -> dict[str, str]:
    raw = obj.get("metadata") if obj is not None else None
    return {str(k): str(v) for k, v in dict(raw or {}).items()}


def _session_from(obj: Any) -> CheckoutSession:
    pi = obj.get("payment_intent")
    if pi is not None and not isinstance(pi, str):
        # expanded PaymentIntent object
        pi = pi.get("id")

    return CheckoutSession(
        id=obj["id"],
        url=obj.get("url"),
        payment_status=obj.get("payment_status"),
        status=obj.get("status"),
        payment_intent=pi,
        amount_total_cents=obj.get("amount_total"),
        currency=obj.get("currency"),
        metadata=_plain_metadata(obj),
    )


def _intent_from(obj: Any) -> PaymentIntent:
    return PaymentIntent(
        id=obj["id"],
        status=obj.get("status"),
        client_secret=obj.get("client_secret"),
        amount_cents=obj.get("amount"),
        currency=obj.get("currency"),
        metadata=_plain_metadata(obj),
    )


class StripeGateway:
    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        timeout: float = 15.0,
        currency: str = "usd",
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.currency = currency

    async def _call(self, op: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if kwargs.get("idempotency_key") is None:
            kwargs.pop("idempotency_key", None)

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("gateway_timeout", op=op, timeout=self.timeout)
            raise GatewayTransient(
                "We are experiencing issues connecting to our payments provider. Please try again."
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("gateway_unavailable", op=op, error=str(e), error_type=type(e).__name__)
            raise GatewayTransient(
                "We are experiencing issues connecting to our payments provider. Please try again."
            ) from e
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                raise NotFoundError("Payment record not found at provider.") from e
            logger.error("gateway_invalid_request", op=op, error=str(e))
            raise GatewayError("Payment provider rejected the request.") from e
        except stripe.AuthenticationError as e:
            logger.error("gateway_auth_error", op=op, error=str(e))
            raise GatewayError("Payment configuration error. Please contact support.") from e
        except stripe.StripeError as e:
            logger.error("gateway_error", op=op, error=str(e), error_type=type(e).__name__)
            raise GatewayError("Payment provider error.") from e

    async def create_checkout_session(
        self,
        *,
        line_item: LineItem,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> CheckoutSession:
        product_data: dict[str, Any] = {"name": line_item.name}
        if line_item.description:
            product_data["description"] = line_item.description

        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": line_item.currency,
                        "product_data": product_data,
                        "unit_amount": int(line_item.amount_cents),
                    },
                    "quantity": line_item.quantity,
                }
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            # the intent carries the same metadata so intent-level lookups can reconcile too
            payment_intent_data={"metadata": metadata},
            idempotency_key=idempotency_key,
        )
        return _session_from(session)

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        session = await self._call("retrieve_session", stripe.checkout.Session.retrieve, session_id)
        return _session_from(session)

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=int(amount_cents),
            currency=self.currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return _intent_from(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, intent_id)
        return _intent_from(intent)

    def construct_event(self, payload: bytes, signature: str | None) -> dict:
        """
        Verify the Stripe-Signature header against the raw body.

        Raises AuthFailed on a bad or missing signature; nothing from the body is
        trusted before this returns.
        """
        if not signature:
            raise AuthFailed("Missing Stripe-Signature header.")
        if not self.webhook_secret:
            raise AuthFailed("Webhook secret is not configured.")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise AuthFailed("Invalid webhook signature.") from e
        except ValueError as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise AuthFailed("Invalid webhook payload.") from e

        # signature is good; work with a plain dict from here on
        return json.loads(payload)

    @staticmethod
    def session_from_event(event: dict) -> CheckoutSession:
        return _session_from(event.get("data", {}).get("object", {}))

    async def ping(self) -> bool:
        try:
            await self._call("ping", stripe.Balance.retrieve)
            return True
        except (GatewayTransient, GatewayError):
            return False


@lru_cache(maxsize=1)
def get_stripe_gateway() -> StripeGateway:
    stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        currency=settings.PAYMENT_CURRENCY,
    )
