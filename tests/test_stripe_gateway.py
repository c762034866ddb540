import json
import time

import pytest
import stripe

from app.core.errors import AuthFailed, DataIntegrityError, GatewayError, GatewayTransient, NotFoundError
from app.integrations.stripe_gateway import (
    StripeGateway,
    build_course_metadata,
    cents_to_major,
    major_to_cents,
    parse_course_metadata,
)

from conftest import sign_payload


@pytest.fixture
def real_gateway():
    return StripeGateway(api_key="sk_test_fake", webhook_secret="whsec_unit", timeout=0.05)


def test_money_strings():
    assert cents_to_major(4500) == "45.00"
    assert cents_to_major(5) == "0.05"
    assert major_to_cents("45.00") == 4500
    assert major_to_cents("0.5") == 50

    with pytest.raises(DataIntegrityError):
        major_to_cents("forty")


def test_metadata_round_trip():
    meta = build_course_metadata(
        user_id=1, course_id=2, order_id=3, discount_code=None, original_cents=5000, discount_cents=0, final_cents=5000
    )
    assert meta["discountCode"] == ""
    assert all(isinstance(v, str) for v in meta.values())

    parsed = parse_course_metadata(meta)
    assert (parsed.user_id, parsed.course_id, parsed.order_id) == (1, 2, 3)
    assert parsed.discount_code is None
    assert parsed.final_cents == 5000


def test_metadata_must_be_a_course_purchase():
    with pytest.raises(DataIntegrityError):
        parse_course_metadata({"type": "subscription", "userId": "1", "courseId": "2", "orderId": "3"})

    with pytest.raises(DataIntegrityError):
        parse_course_metadata({"type": "course_purchase", "userId": "1", "courseId": "2"})


def test_construct_event_verifies_signature(real_gateway):
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}}).encode()

    event = real_gateway.construct_event(payload, sign_payload(payload, secret="whsec_unit"))
    assert event["type"] == "checkout.session.completed"

    with pytest.raises(AuthFailed):
        real_gateway.construct_event(payload, sign_payload(payload, secret="whsec_other"))
    with pytest.raises(AuthFailed):
        real_gateway.construct_event(payload, sign_payload(payload, secret="whsec_unit", timestamp=int(time.time()) - 3600))
    with pytest.raises(AuthFailed):
        real_gateway.construct_event(payload, None)


def test_construct_event_without_secret():
    gw = StripeGateway(api_key="sk_test_fake", webhook_secret="")
    with pytest.raises(AuthFailed):
        gw.construct_event(b"{}", "t=1,v1=abc")


async def test_slow_gateway_is_transient(real_gateway):
    def slow(**kwargs):
        time.sleep(0.3)

    with pytest.raises(GatewayTransient):
        await real_gateway._call("slow", slow)


@pytest.mark.parametrize(
    "error, expected",
    [
        (stripe.APIConnectionError("connection reset"), GatewayTransient),
        (stripe.RateLimitError("slow down"), GatewayTransient),
        (stripe.InvalidRequestError("No such checkout.session", "id", http_status=404), NotFoundError),
        (stripe.InvalidRequestError("Invalid amount", "amount", http_status=400), GatewayError),
        (stripe.AuthenticationError("bad key"), GatewayError),
    ],
)
async def test_sdk_errors_are_mapped(real_gateway, error, expected):
    def boom(**kwargs):
        raise error

    with pytest.raises(expected):
        await real_gateway._call("boom", boom)


async def test_missing_idempotency_key_is_not_sent(real_gateway):
    seen = {}

    def record(**kwargs):
        seen.update(kwargs)
        return {"id": "x"}

    real_gateway.timeout = 5
    await real_gateway._call("record", record, idempotency_key=None, amount=1)
    assert "idempotency_key" not in seen
    assert seen["api_key"] == "sk_test_fake"
    assert seen["amount"] == 1
