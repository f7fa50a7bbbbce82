"""Price math for purchases, sales and plan payouts

Money is quantized to 2 places, quantities (grams) to 6 places, both with
banker's rounding.
"""

from decimal import Decimal, ROUND_HALF_EVEN

from bullion_gateway.domain.exceptions import UnknownMetal
from bullion_gateway.domain.models import Metal

MONEY_PLACES = Decimal("0.01")
QUANTITY_PLACES = Decimal("0.000001")


def parse_metal(value: str) -> Metal:
    try:
        return Metal(value)
    except ValueError:
        raise UnknownMetal(f"Unknown metal: {value}") from None


def round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_PLACES, rounding=ROUND_HALF_EVEN)


def round_quantity(value: Decimal) -> Decimal:
    return value.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_EVEN)


def quantity_for_amount(amount: Decimal, rate: Decimal) -> Decimal:
    """
    Grams bought for ``amount`` at ``rate`` per gram.

    Example:
        3500 at 7000/g -> 0.5 g
    """
    if rate <= 0:
        raise ValueError(f"rate must be positive, got {rate}")
    return round_quantity(amount / rate)


def sale_proceeds(quantity: Decimal, rate: Decimal) -> Decimal:
    """Cash credited for selling ``quantity`` at the current ``rate``"""
    return round_money(quantity * rate)


def released_cost_basis(amount_invested: Decimal, held_quantity: Decimal, sold_quantity: Decimal) -> Decimal:
    """
    Share of ``amount_invested`` released by a partial sale (average cost).

    Selling the whole balance releases the whole invested amount so the
    holding never keeps a residual basis from rounding.

    Example:
        invested 10000 over 2 g, sell 1 g -> 5000
    """
    if sold_quantity >= held_quantity:
        return amount_invested
    return min(round_money(amount_invested * sold_quantity / held_quantity), amount_invested)
