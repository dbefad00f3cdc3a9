"""
Test suite for currency module

Tests Money arithmetic, half-up rounding to currency precision and Indian
amount formatting. All financial math must be precise.
"""

import pytest
from decimal import Decimal

from microloan.currency import Money, Currency, money_sum, round_amount, format_indian


class TestMoney:
    """Test Money value type"""

    def test_rounds_half_up_on_creation(self):
        """Test amounts are rounded half-up to currency precision"""
        assert Money(Decimal('1.005')).amount == Decimal('1.01')
        assert Money(Decimal('1.004')).amount == Decimal('1.00')
        assert Money(Decimal('2.5'), Currency.JPY).amount == Decimal('3')

    def test_accepts_non_decimal_input(self):
        """Test ints and strings are converted through str, never float math"""
        assert Money(10).amount == Decimal('10.00')
        assert Money('366.666').amount == Decimal('366.67')

    def test_default_currency_is_inr(self):
        """Test default currency"""
        assert Money(Decimal('1')).currency == Currency.INR

    def test_arithmetic(self):
        """Test add, subtract, multiply and divide"""
        a = Money(Decimal('10000.00'))
        b = Money(Decimal('1000.00'))

        assert a + b == Money(Decimal('11000.00'))
        assert a - b == Money(Decimal('9000.00'))
        assert b * 5 == Money(Decimal('5000.00'))
        assert 5 * b == Money(Decimal('5000.00'))
        assert (a + b) / 30 == Money(Decimal('366.67'))
        assert -b == Money(Decimal('-1000.00'))
        assert abs(-b) == b

    def test_currency_mismatch_raises(self):
        """Test mixing currencies is refused"""
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.INR) + Money(Decimal('1'), Currency.USD)
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.INR) < Money(Decimal('1'), Currency.USD)

    def test_comparisons_and_predicates(self):
        """Test ordering and sign helpers"""
        assert Money(Decimal('1')) < Money(Decimal('2'))
        assert Money(Decimal('2')) >= Money(Decimal('2'))
        assert min(Money(Decimal('5')), Money(Decimal('3'))) == Money(Decimal('3'))
        assert Money.zero().is_zero()
        assert Money(Decimal('0.01')).is_positive()
        assert Money(Decimal('-0.01')).is_negative()

    def test_money_is_hashable_and_immutable(self):
        """Test Money can be used in sets and cannot be mutated"""
        assert len({Money(Decimal('1.00')), Money(Decimal('1'))}) == 1
        with pytest.raises(Exception):
            Money(Decimal('1')).amount = Decimal('2')

    def test_to_string(self):
        """Test display format"""
        assert Money(Decimal('11000')).to_string() == "INR 11,000.00"
        assert Money(Decimal('1500'), Currency.JPY).to_string() == "JPY 1,500"


class TestHelpers:
    """Test module-level helpers"""

    def test_money_sum(self):
        """Test summing Money values"""
        values = [Money(Decimal('366.67'))] * 29 + [Money(Decimal('366.57'))]
        assert money_sum(values) == Money(Decimal('11000.00'))

    def test_money_sum_empty(self):
        """Test an empty sum is zero in the requested currency"""
        assert money_sum([], Currency.USD) == Money.zero(Currency.USD)

    def test_round_amount(self):
        """Test Decimal rounding helper"""
        assert round_amount(Decimal('18.3335')) == Decimal('18.33')
        assert round_amount(Decimal('0.125')) == Decimal('0.13')


class TestIndianFormatting:
    """Test Indian digit grouping"""

    def test_lakh_grouping(self):
        """Test two-digit groups before the last three digits"""
        assert format_indian(Money(Decimal('123456.78'))) == "₹1,23,456.78"
        assert format_indian(Money(Decimal('12345678.9'))) == "₹1,23,45,678.90"

    def test_small_amounts(self):
        """Test amounts below one thousand have no separators"""
        assert format_indian(Money(Decimal('999'))) == "₹999.00"
        assert format_indian(Money(Decimal('1000'))) == "₹1,000.00"

    def test_negative_amount(self):
        """Test sign comes before the symbol"""
        assert format_indian(Money(Decimal('-500'))) == "-₹500.00"

    def test_other_currency_uses_code(self):
        """Test non-rupee amounts are prefixed with their code"""
        assert format_indian(Money(Decimal('1234567.5'), Currency.USD)) == "USD 12,34,567.50"
        assert format_indian(Money(Decimal('1500'), Currency.JPY)) == "JPY 1,500"
