"""Unit tests for VAT decomposition"""

from decimal import Decimal

import pytest

from postings.vat import ZERO, VatBreakdown, no_vat, split_signed, split_vat

RATE = Decimal("0.1")


class TestSplitVat:
    """Tests for split_vat"""

    def test_standard_split(self):
        """11,000 KRW splits into 10,000 supply and 1,000 VAT"""
        result = split_vat(11_000, RATE)

        assert result == VatBreakdown(supply=10_000, vat=1_000, total=11_000)

    def test_supply_is_floored(self):
        """Non-divisible totals floor the supply and put the remainder in VAT"""
        result = split_vat(10_001, RATE)

        # 10001 / 1.1 = 9091.81...
        assert result.supply == 9_091
        assert result.vat == 910

    def test_parts_always_add_up(self):
        """supply + vat == total for every amount"""
        for total in range(0, 5_000):
            result = split_vat(total, RATE)
            assert result.supply + result.vat == total
            assert result.vat >= 0

    def test_supply_is_monotonic(self):
        """A larger total never yields a smaller supply"""
        previous = split_vat(0, RATE).supply
        for total in range(1, 5_000):
            supply = split_vat(total, RATE).supply
            assert supply >= previous
            previous = supply

    def test_zero(self):
        assert split_vat(0, RATE) == ZERO

    def test_zero_rate(self):
        """With a 0% rate everything is supply"""
        assert split_vat(5_000, Decimal("0")) == VatBreakdown(supply=5_000, vat=0, total=5_000)

    def test_negative_total_rejected(self):
        with pytest.raises(ValueError, match="split_signed"):
            split_vat(-1_000, RATE)

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            split_vat(1_000, Decimal("-0.1"))

    def test_fractional_amount_rejected(self):
        with pytest.raises(ValueError):
            split_vat(Decimal("100.5"), RATE)

    def test_whole_decimal_accepted(self):
        assert split_vat(Decimal("11000"), RATE).supply == 10_000

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            split_vat(11000.0, RATE)


class TestSplitSigned:
    """Tests for split_signed (cancellations)"""

    def test_negative_mirrors_positive(self):
        """A cancel exactly reverses the sale"""
        for total in (1, 99, 10_001, 11_000, 123_457):
            sale = split_signed(total, RATE)
            cancel = split_signed(-total, RATE)
            assert cancel == sale.negate()
            assert sale + cancel == ZERO

    def test_positive_matches_split_vat(self):
        assert split_signed(11_000, RATE) == split_vat(11_000, RATE)


class TestNoVat:
    def test_everything_is_supply(self):
        assert no_vat(12_570) == VatBreakdown(supply=12_570, vat=0, total=12_570)
