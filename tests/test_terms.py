"""
Test suite for the loan term calculator

Tests total payable, daily installment rounding and the remainder carried by
the final installment.
"""

import pytest
from decimal import Decimal
from datetime import date

from microloan.currency import Money
from microloan.exceptions import InvalidInputError
from microloan.terms import (
    InterestSpec, InterestType, compute_terms, compute_batch_terms
)


START = date(2024, 1, 1)


class TestInterestSpec:
    """Test InterestSpec"""

    def test_fixed_interest(self):
        """Test a fixed amount is added as is"""
        interest = InterestSpec.fixed('1000')
        assert interest.interest_type == InterestType.FIXED
        assert interest.interest_on(Money(Decimal('10000'))) == Money(Decimal('1000'))

    def test_percentage_interest(self):
        """Test a percentage of the principal"""
        interest = InterestSpec.percentage(10)
        assert interest.interest_on(Money(Decimal('15000'))) == Money(Decimal('1500'))

    def test_string_type_is_coerced(self):
        """Test construction from stored values"""
        interest = InterestSpec("percentage", "12.5")
        assert interest.interest_type == InterestType.PERCENTAGE
        assert interest.value == Decimal('12.5')


class TestComputeTerms:
    """Test compute_terms"""

    def test_fixed_interest_example(self):
        """Test 10000 + 1000 fixed over 30 days"""
        terms = compute_terms(Money(Decimal('10000')), InterestSpec.fixed(1000), 30, START)

        assert terms.total_payable == Money(Decimal('11000.00'))
        assert terms.daily_installment == Money(Decimal('366.67'))
        assert terms.final_installment == Money(Decimal('366.57'))
        assert terms.interest_amount == Money(Decimal('1000.00'))

    def test_percentage_interest_example(self):
        """Test 15000 at 10% over 45 days"""
        terms = compute_terms(Money(Decimal('15000')), InterestSpec.percentage(10), 45, START)

        assert terms.total_payable == Money(Decimal('16500.00'))
        assert terms.daily_installment == Money(Decimal('366.67'))
        assert terms.final_installment == Money(Decimal('366.52'))

    def test_dates(self):
        """Test the start date is day 1 and end date is the last due date"""
        terms = compute_terms(Money(Decimal('10000')), InterestSpec.fixed(1000), 30, START)

        assert terms.end_date == date(2024, 1, 30)
        assert terms.maturity_date == date(2024, 1, 31)

    def test_schedule_sums_exactly_to_total(self):
        """Test daily x (D - 1) + final == total for awkward divisions"""
        for principal, days in [('10000', 30), ('999.99', 7), ('1', 3), ('2500', 365)]:
            terms = compute_terms(Money(Decimal(principal)), InterestSpec.percentage(7), days, START)
            assert terms.daily_installment * (days - 1) + terms.final_installment == terms.total_payable

    def test_daily_rounding_bound(self):
        """Test daily x D differs from the total by at most half a unit per day"""
        for principal, days in [('10000', 30), ('15000', 45), ('777.77', 13)]:
            terms = compute_terms(Money(Decimal(principal)), InterestSpec.fixed(11), days, START)
            drift = abs((terms.daily_installment * days - terms.total_payable).amount)
            assert drift <= Decimal('0.005') * days

    def test_zero_interest(self):
        """Test zero interest is allowed"""
        terms = compute_terms(Money(Decimal('3000')), InterestSpec.fixed(0), 30, START)
        assert terms.total_payable == Money(Decimal('3000'))
        assert terms.daily_installment == Money(Decimal('100'))

    @pytest.mark.parametrize("principal,interest,days", [
        ('0', InterestSpec.fixed(0), 30),
        ('-100', InterestSpec.fixed(0), 30),
        ('1000', InterestSpec.fixed(0), 0),
        ('1000', InterestSpec.fixed(-1), 30),
        ('1000', InterestSpec.percentage(-5), 30),
    ])
    def test_invalid_input(self, principal, interest, days):
        """Test malformed arguments are rejected"""
        with pytest.raises(InvalidInputError):
            compute_terms(Money(Decimal(principal)), interest, days, START)

    def test_invalid_input_is_value_error(self):
        """Test the error can be caught as ValueError"""
        with pytest.raises(ValueError):
            compute_terms(Money(Decimal('1000')), InterestSpec.fixed(0), -1, START)

    def test_total_too_small_for_duration(self):
        """Test a total that cannot be spread without a negative final installment"""
        with pytest.raises(InvalidInputError):
            compute_terms(Money(Decimal('0.02')), InterestSpec.fixed(0), 4, START)


class TestBatchTerms:
    """Test batch aggregation"""

    def test_batch_of_five(self):
        """Test five tokens of 2000 + 200 over 20 days"""
        terms = compute_terms(Money(Decimal('2000')), InterestSpec.fixed(200), 20, START)
        batch = compute_batch_terms(terms, 5)

        assert batch.total_principal == Money(Decimal('10000'))
        assert batch.total_batch_amount == Money(Decimal('11000'))
        assert batch.total_daily_amount == Money(Decimal('550'))

    @pytest.mark.parametrize("quantity", [0, -1, 51])
    def test_quantity_bounds(self, quantity):
        """Test quantity must be within 1..50"""
        terms = compute_terms(Money(Decimal('2000')), InterestSpec.fixed(200), 20, START)
        with pytest.raises(InvalidInputError):
            compute_batch_terms(terms, quantity)

    def test_custom_maximum(self):
        """Test the configured maximum is honoured"""
        terms = compute_terms(Money(Decimal('2000')), InterestSpec.fixed(200), 20, START)
        assert compute_batch_terms(terms, 10, max_quantity=10).quantity == 10
        with pytest.raises(InvalidInputError):
            compute_batch_terms(terms, 11, max_quantity=10)
