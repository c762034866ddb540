from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.models.discount import FIXED_AMOUNT, PERCENTAGE, DiscountCode


class PricingError(Exception):
    pass


@dataclass(frozen=True)
class PriceQuote:
    original_cents: int
    discount_cents: int
    final_cents: int

    @property
    def is_free(self) -> bool:
        return self.final_cents == 0


def compute_price(base_cents: int, discount: DiscountCode | None) -> PriceQuote:
    """
    Discount + final charge for one item, all in cents.

      PERCENTAGE:   base * value / 100 (half-up), capped at max_discount_cents
      FIXED_AMOUNT: value, capped at base so final never goes negative
    """
    base = int(base_cents)
    if base < 0:
        raise PricingError("Price cannot be negative.")

    if discount is None:
        return PriceQuote(original_cents=base, discount_cents=0, final_cents=base)

    value = Decimal(discount.value)

    if discount.type == PERCENTAGE:
        off = int((Decimal(base) * value / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if discount.max_discount_cents is not None and off > discount.max_discount_cents:
            off = int(discount.max_discount_cents)
    elif discount.type == FIXED_AMOUNT:
        off = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        raise PricingError(f"Unknown discount type: {discount.type}")

    off = max(0, min(off, base))

    return PriceQuote(original_cents=base, discount_cents=off, final_cents=max(0, base - off))
