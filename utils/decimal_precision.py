"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across the Stars -> fee -> TON chain
"""

import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 38

Numeric = Union[str, int, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    STARS_PRECISION = Decimal("0.000000001")  # Fees make fractional Stars possible
    TON_PRECISION = Decimal("0.000000001")    # 1 nanoton
    RATE_PRECISION = Decimal("0.000000000000000001")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert a value to Decimal, rejecting floats and garbage"""
        if isinstance(value, Decimal):
            decimal_value = value
        elif isinstance(value, bool) or isinstance(value, float):
            raise ValidationError(f"{context} must be a decimal string or integer, got {type(value).__name__}")
        else:
            try:
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                logger.warning(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise ValidationError(f"Invalid {context}: {value!r}")

        if not decimal_value.is_finite():
            raise ValidationError(f"Invalid {context}: {value!r}")
        return decimal_value

    @classmethod
    def quantize_stars(cls, amount: Numeric) -> Decimal:
        return cls.to_decimal(amount, "stars amount").quantize(cls.STARS_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_ton(cls, amount: Numeric) -> Decimal:
        """Round down to whole nanotons so the platform never pays out more than computed"""
        return cls.to_decimal(amount, "ton amount").quantize(cls.TON_PRECISION, rounding=ROUND_DOWN)

    @classmethod
    def stored_ton(cls, amount: Numeric) -> Decimal:
        """A TON amount read back from storage, snapped to the nearest nanoton"""
        return cls.to_decimal(amount, "ton amount").quantize(cls.TON_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        return cls.to_decimal(rate, "exchange rate").quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount: Numeric, percentage: Numeric) -> Decimal:
        """amount * percentage / 100 at Stars precision"""
        result = cls.to_decimal(amount, "amount") * cls.to_decimal(percentage, "percentage") / Decimal("100")
        return result.quantize(cls.STARS_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def to_nanotons(cls, amount: Numeric) -> int:
        return int(cls.quantize_ton(amount) / cls.TON_PRECISION)

    @classmethod
    def from_nanotons(cls, nanotons: Union[int, str]) -> Decimal:
        return (Decimal(int(nanotons)) * cls.TON_PRECISION).quantize(cls.TON_PRECISION)
