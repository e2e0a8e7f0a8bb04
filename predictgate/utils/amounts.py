from decimal import ROUND_HALF_UP, Decimal

from predictgate.exceptions import InvalidRequestError


def to_base_units(amount: float, decimals: int) -> int:
    """Convert a human-readable amount to integer base units, rounding half up."""
    # str() keeps the decimal the caller typed; 1.001 * 10**9 as a float is 1000999999.99...
    scaled = Decimal(str(amount)).scaleb(decimals)
    units = int(scaled.to_integral_value(rounding=ROUND_HALF_UP))
    if units <= 0:
        raise InvalidRequestError("Amount must be greater than zero")
    return units


def from_base_units(units: int, decimals: int) -> float:
    return int(units) / 10**decimals
