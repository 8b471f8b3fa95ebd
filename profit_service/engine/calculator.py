"""Distribution calculator: pure profit arithmetic.

All amounts are rounded to the ledger's minimal currency unit with
ROUND_HALF_EVEN. Per-period amounts are derived from the rounded cumulative
target (round(P*r*n) - round(P*r*(n-1))), so after n periods a position has
received exactly round(P*r*n): the cumulative rounding error never exceeds half
a minimal unit, no matter how long the position runs.
"""

from decimal import Decimal, ROUND_HALF_EVEN

from profit_service.utils.constants import MONEY_DECIMAL_PLACES


def minimal_unit(places: int | None = None) -> Decimal:
    places = MONEY_DECIMAL_PLACES if places is None else places
    return Decimal(1).scaleb(-places)


def round_amount(value: Decimal, places: int | None = None) -> Decimal:
    return Decimal(value).quantize(minimal_unit(places), rounding=ROUND_HALF_EVEN)


def per_period_amount(principal: Decimal, rate: Decimal, places: int | None = None) -> Decimal:
    """Nominal profit for one period: principal × rate, rounded."""
    return round_amount(Decimal(principal) * Decimal(rate), places)


def cumulative_amount(
    principal: Decimal, rate: Decimal, periods: int, places: int | None = None
) -> Decimal:
    """Total owed after ``periods`` credited periods."""
    if periods <= 0:
        return round_amount(Decimal(0), places)
    return round_amount(Decimal(principal) * Decimal(rate) * periods, places)


def period_amount(
    principal: Decimal, rate: Decimal, period_number: int, places: int | None = None
) -> Decimal:
    """Profit owed for the ``period_number``-th period (1-based)."""
    if period_number < 1:
        raise ValueError(f"period_number must be >= 1, got {period_number}")
    return cumulative_amount(principal, rate, period_number, places) - cumulative_amount(
        principal, rate, period_number - 1, places
    )
