"""Monetary precision helpers"""

from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ValidationError


class TestToDecimal:

    @pytest.mark.parametrize("value, expected", [("1000", Decimal("1000")), (250, Decimal("250")), (" 0.5 ", Decimal("0.5"))])
    def test_accepted_inputs(self, value, expected):
        assert MonetaryDecimal.to_decimal(value) == expected

    @pytest.mark.parametrize("value", [1.5, True, "abc", "NaN", "Infinity", ""])
    def test_rejected_inputs(self, value):
        with pytest.raises(ValidationError):
            MonetaryDecimal.to_decimal(value)


class TestQuantize:

    def test_ton_rounds_down_to_nanotons(self):
        assert MonetaryDecimal.quantize_ton("0.9799999999") == Decimal("0.979999999")

    def test_stored_ton_snaps_float_artifacts(self):
        assert MonetaryDecimal.stored_ton("0.979899999999999993") == Decimal("0.979900000")

    def test_percentage_of(self):
        assert MonetaryDecimal.percentage_of("1000", "2") == Decimal("20")
        assert MonetaryDecimal.percentage_of("333", "1.5") == Decimal("4.995")

    def test_nanoton_conversion(self):
        assert MonetaryDecimal.to_nanotons("0.9799") == 979900000
        assert MonetaryDecimal.from_nanotons(979900000) == Decimal("0.9799")
        assert MonetaryDecimal.from_nanotons("1") == Decimal("0.000000001")
