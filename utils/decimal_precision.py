#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, getcontext, InvalidOperation
from typing import Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 50

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for USD and INR
    RATE_PRECISION = Decimal("0.0001")
    WEI_PER_TOKEN = Decimal(10) ** 18

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert any numeric value to Decimal; non-numeric input raises ValueError"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        try:
            # Convert to string first to avoid float precision issues
            decimal_value = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
            raise ValueError(f"Invalid amount: {value!r}") from e

        if not decimal_value.is_finite():
            raise ValueError(f"Invalid amount: {value!r}")

        if abs(decimal_value) > Decimal("999999999999"):
            logger.warning(f"Unusually large monetary value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def quantize_usd(cls, amount: Numeric) -> Decimal:
        """Quantize amount to 2 decimal places"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    quantize_money = quantize_usd

    @classmethod
    def quantize_rate(cls, rate: Numeric) -> Decimal:
        return cls.to_decimal(rate, "exchange_rate").quantize(cls.RATE_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def to_wei(cls, amount: Numeric) -> int:
        """Token amount (18 decimals) to integer wei"""
        wei = cls.to_decimal(amount, "wei") * cls.WEI_PER_TOKEN
        return int(wei.to_integral_value(rounding=ROUND_DOWN))

    @classmethod
    def from_wei(cls, wei: Union[int, str]) -> Decimal:
        return Decimal(int(wei)) / cls.WEI_PER_TOKEN

    @classmethod
    def to_paise(cls, amount_inr: Numeric) -> int:
        return int((cls.quantize_usd(amount_inr) * 100).to_integral_value(rounding=ROUND_HALF_UP))

    @classmethod
    def format_amount(cls, amount: Numeric) -> str:
        """Human-readable amount without trailing zeros (50.00 -> "50", 12.50 -> "12.5")"""
        value = cls.to_decimal(amount)
        if value == value.to_integral_value():
            return str(value.quantize(Decimal("1")))
        return format(value.normalize(), "f")

    @classmethod
    def to_float(cls, amount: Numeric) -> float:
        """JSON representation of a persisted money value"""
        return float(cls.quantize_usd(amount))
