"""
Test suite for payment application

Tests single-entry payments under each overpayment policy, oldest-first
allocation across a schedule with waivers, and batch payment splitting.
"""

import pytest
import random
from dataclasses import replace
from decimal import Decimal
from datetime import date, datetime, timezone

from microloan.currency import Money, money_sum
from microloan.exceptions import InsufficientDataError, InvalidInputError, OverpaymentError
from microloan.payments import (
    OverpaymentPolicy, Payment, PaymentMode,
    apply_payment, allocate_payment, split_batch_payment
)
from microloan.schedule import ScheduleStatus, generate_schedule
from microloan.terms import InterestSpec, compute_terms


START = date(2024, 1, 1)
PAY_DATE = date(2024, 1, 5)


def inr(value):
    return Money(Decimal(value))


def make_schedule():
    terms = compute_terms(inr('10000'), InterestSpec.fixed(1000), 30, START)
    return generate_schedule(terms, "token-1")


class TestApplyPayment:
    """Test payments against one entry"""

    def setup_method(self):
        """Set up test fixtures"""
        self.entry = make_schedule()[0]

    def test_exact_payment(self):
        """Test paying the total due marks the entry paid"""
        entry, excess = apply_payment(self.entry, inr('366.67'), PAY_DATE)

        assert entry.status == ScheduleStatus.PAID
        assert entry.payment_date == PAY_DATE
        assert excess.is_zero()

    def test_partial_payment(self):
        """Test a smaller payment leaves the entry partial"""
        entry, excess = apply_payment(self.entry, inr('100'), PAY_DATE)

        assert entry.status == ScheduleStatus.PARTIAL
        assert entry.outstanding == inr('266.67')
        assert entry.payment_date is None
        assert excess.is_zero()

    def test_two_partials_settle(self):
        """Test consecutive payments accumulate"""
        entry, _ = apply_payment(self.entry, inr('200'), PAY_DATE)
        entry, _ = apply_payment(entry, inr('166.67'), PAY_DATE)
        assert entry.status == ScheduleStatus.PAID
        assert entry.paid_amount == inr('366.67')

    def test_clamp_returns_excess(self):
        """Test overpayment is capped and the excess returned"""
        entry, excess = apply_payment(self.entry, inr('400'), PAY_DATE)

        assert entry.paid_amount == inr('366.67')
        assert excess == inr('33.33')
        assert entry.status == ScheduleStatus.PAID

    def test_reject_policy(self):
        """Test overpayment raises under the reject policy"""
        with pytest.raises(OverpaymentError):
            apply_payment(self.entry, inr('400'), PAY_DATE, OverpaymentPolicy.REJECT)

    def test_allow_policy(self):
        """Test overpayment is kept under the allow policy"""
        entry, excess = apply_payment(self.entry, inr('400'), PAY_DATE, "allow")

        assert entry.paid_amount == inr('400')
        assert excess.is_zero()
        assert entry.status == ScheduleStatus.PAID

    @pytest.mark.parametrize("amount", ['0', '-1'])
    def test_non_positive_amount(self, amount):
        """Test zero and negative payments are invalid"""
        with pytest.raises(InvalidInputError):
            apply_payment(self.entry, inr(amount), PAY_DATE)

    def test_payment_covers_penalty(self):
        """Test penalty is part of what must be paid"""
        penalised = replace(self.entry, penalty_amount=inr('10'), status=ScheduleStatus.OVERDUE)

        entry, _ = apply_payment(penalised, inr('366.67'), PAY_DATE)
        assert entry.status == ScheduleStatus.PARTIAL

        entry, _ = apply_payment(entry, inr('10'), PAY_DATE)
        assert entry.status == ScheduleStatus.PAID


class TestAllocatePayment:
    """Test oldest-first allocation"""

    def setup_method(self):
        """Set up test fixtures"""
        self.schedule = make_schedule()

    def test_oldest_first(self):
        """Test 1000 pays two entries and part of the third"""
        shuffled = list(self.schedule)
        random.Random(7).shuffle(shuffled)

        allocation = allocate_payment(shuffled, inr('1000'), PAY_DATE)
        entries = allocation.updated_entries

        assert [entry.sequence for entry in entries] == [1, 2, 3]
        assert entries[0].status == ScheduleStatus.PAID
        assert entries[1].status == ScheduleStatus.PAID
        assert entries[2].status == ScheduleStatus.PARTIAL
        assert entries[2].paid_amount == inr('266.66')
        assert allocation.applied_total == inr('1000')
        assert allocation.excess.is_zero()

    def test_skips_closed_entries(self):
        """Test paid entries are not touched"""
        first, _ = apply_payment(self.schedule[0], inr('366.67'), PAY_DATE)
        schedule = [first] + self.schedule[1:]

        allocation = allocate_payment(schedule, inr('366.67'), PAY_DATE)
        assert [line.entry.sequence for line in allocation.lines] == [2]

    def test_waiver_consumed_before_payment(self):
        """Test a waiver reduces what each penalised entry asks for"""
        schedule = [
            replace(entry, penalty_amount=inr('10'), status=ScheduleStatus.OVERDUE)
            for entry in self.schedule[:2]
        ] + self.schedule[2:]

        allocation = allocate_payment(schedule, inr('733.34'), PAY_DATE, penalty_waived=inr('20'))

        assert allocation.waived_total == inr('20')
        assert allocation.applied_total == inr('733.34')
        assert all(line.entry.status == ScheduleStatus.PAID for line in allocation.lines)
        assert [line.waived for line in allocation.lines] == [inr('10'), inr('10')]

    def test_waiver_limited_to_penalties(self):
        """Test unused waiver is not carried anywhere"""
        schedule = [replace(self.schedule[0], penalty_amount=inr('10'))] + self.schedule[1:]

        allocation = allocate_payment(schedule, inr('100'), PAY_DATE, penalty_waived=inr('50'))
        assert allocation.waived_total == inr('10')

    def test_full_payoff_with_excess(self):
        """Test paying more than the schedule returns the excess"""
        allocation = allocate_payment(self.schedule, inr('11050'), PAY_DATE)

        assert len(allocation.lines) == 30
        assert all(line.entry.is_paid for line in allocation.lines)
        assert allocation.applied_total == inr('11000')
        assert allocation.excess == inr('50')

    def test_reject_leftover(self):
        """Test leftover money raises under the reject policy"""
        with pytest.raises(OverpaymentError):
            allocate_payment(self.schedule, inr('11050'), PAY_DATE, policy="reject")

    def test_allow_leftover_stays_on_last_entry(self):
        """Test leftover money stays on the last entry under the allow policy"""
        allocation = allocate_payment(self.schedule, inr('11050'), PAY_DATE, policy=OverpaymentPolicy.ALLOW)

        assert allocation.excess.is_zero()
        assert allocation.lines[-1].entry.paid_amount == inr('416.57')
        assert allocation.applied_total == inr('11050')

    def test_no_open_entries(self):
        """Test a settled schedule cannot take payments"""
        settled = allocate_payment(self.schedule, inr('11000'), PAY_DATE).updated_entries
        with pytest.raises(InsufficientDataError):
            allocate_payment(settled, inr('1'), PAY_DATE)

    def test_invalid_amounts(self):
        """Test non-positive payments and negative waivers"""
        with pytest.raises(InvalidInputError):
            allocate_payment(self.schedule, inr('0'), PAY_DATE)
        with pytest.raises(InvalidInputError):
            allocate_payment(self.schedule, inr('10'), PAY_DATE, penalty_waived=inr('-1'))


class TestSplitBatchPayment:
    """Test token-level split of batch collections"""

    def test_even_split(self):
        """Test an evenly divisible amount"""
        assert split_batch_payment(inr('550'), 5) == [inr('110')] * 5

    def test_remainder_on_last(self):
        """Test the rounding remainder goes to the last credit"""
        credits = split_batch_payment(inr('100'), 3)
        assert credits == [inr('33.33'), inr('33.33'), inr('33.34')]
        assert money_sum(credits) == inr('100')

    def test_tiny_amount(self):
        """Test credits never go negative"""
        credits = split_batch_payment(inr('0.02'), 4)
        assert credits == [inr('0'), inr('0'), inr('0'), inr('0.02')]

    def test_invalid_quantity(self):
        """Test quantity must be positive"""
        with pytest.raises(InvalidInputError):
            split_batch_payment(inr('100'), 0)


class TestPaymentRecord:
    """Test payment record storage format"""

    def test_round_trip(self):
        """Test conversion to and from a storage dict"""
        now = datetime.now(timezone.utc)
        payment = Payment(
            id="p1", created_at=now, updated_at=now,
            owner_type="batch", owner_id="b1", schedule_entry_id="b1_1",
            collector_id="c1", amount=inr('550'), payment_date=PAY_DATE,
            payment_mode=PaymentMode.UPI, penalty_waived=inr('10'),
            token_credits={"t1": inr('110')}
        )
        data = payment.to_dict()

        assert data['amount'] == "550.00"
        assert data['payment_mode'] == "upi"
        assert Payment.from_dict(data) == payment

    def test_waived_defaults_to_zero(self):
        """Test a payment without waiver"""
        now = datetime.now(timezone.utc)
        payment = Payment(
            id="p1", created_at=now, updated_at=now, owner_type="token", owner_id="t1",
            schedule_entry_id="t1_1", collector_id="c1", amount=inr('1'), payment_date=PAY_DATE
        )
        assert payment.penalty_waived == Money.zero()
