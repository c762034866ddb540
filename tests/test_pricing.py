from decimal import Decimal

import pytest

from app.models.discount import FIXED_AMOUNT, PERCENTAGE, DiscountCode
from app.services.pricing import PricingError, compute_price


def _code(type_, value, max_discount_cents=None):
    return DiscountCode(code="X", type=type_, value=Decimal(value), max_discount_cents=max_discount_cents)


def test_no_discount_charges_base():
    q = compute_price(5000, None)
    assert (q.original_cents, q.discount_cents, q.final_cents) == (5000, 0, 5000)
    assert not q.is_free


def test_percentage():
    q = compute_price(10000, _code(PERCENTAGE, "20"))
    assert (q.discount_cents, q.final_cents) == (2000, 8000)


def test_percentage_capped_by_max_discount():
    q = compute_price(10000, _code(PERCENTAGE, "20", max_discount_cents=1000))
    assert (q.discount_cents, q.final_cents) == (1000, 9000)


def test_percentage_rounds_half_up_to_cent():
    # 12.5% of 999 = 124.875
    q = compute_price(999, _code(PERCENTAGE, "12.5"))
    assert q.discount_cents == 125
    assert q.final_cents == 874


def test_fixed_amount():
    q = compute_price(5000, _code(FIXED_AMOUNT, "1500"))
    assert (q.discount_cents, q.final_cents) == (1500, 3500)


def test_fixed_amount_never_goes_negative():
    q = compute_price(1000, _code(FIXED_AMOUNT, "2500"))
    assert (q.discount_cents, q.final_cents) == (1000, 0)
    assert q.is_free


def test_full_percentage_is_free():
    assert compute_price(5000, _code(PERCENTAGE, "100")).is_free


def test_free_course_stays_free():
    q = compute_price(0, _code(PERCENTAGE, "50"))
    assert (q.discount_cents, q.final_cents) == (0, 0)


def test_negative_base_rejected():
    with pytest.raises(PricingError):
        compute_price(-1, None)


def test_unknown_type_rejected():
    with pytest.raises(PricingError):
        compute_price(1000, _code("BOGO", "1"))
