"""
Loan Term Calculator

Derives the total payable, the daily installment and the date range of a
daily-repayment token from its principal, interest and duration.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Union

from .currency import Money
from .dates import add_days
from .exceptions import InvalidInputError

HUNDRED = Decimal('100')


class InterestType(Enum):
    """How the interest value is interpreted"""
    FIXED = "fixed"            # Flat amount added to the principal
    PERCENTAGE = "percentage"  # Percent of the principal


@dataclass(frozen=True)
class InterestSpec:
    """Fixed or percentage interest of a token"""
    interest_type: InterestType
    value: Decimal

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, 'value', Decimal(str(self.value)))
        if isinstance(self.interest_type, str):
            object.__setattr__(self, 'interest_type', InterestType(self.interest_type))

    @classmethod
    def fixed(cls, value: Union[Decimal, int, str]) -> 'InterestSpec':
        return cls(InterestType.FIXED, Decimal(str(value)))

    @classmethod
    def percentage(cls, value: Union[Decimal, int, str]) -> 'InterestSpec':
        return cls(InterestType.PERCENTAGE, Decimal(str(value)))

    def interest_on(self, principal: Money) -> Money:
        """Interest amount for a principal"""
        if self.interest_type == InterestType.FIXED:
            return Money(self.value, principal.currency)
        return Money(principal.amount * self.value / HUNDRED, principal.currency)


@dataclass(frozen=True)
class LoanTerms:
    """Computed terms of a daily-repayment token"""
    principal: Money
    interest: InterestSpec
    duration_days: int
    start_date: date
    total_payable: Money
    daily_installment: Money
    final_installment: Money

    @property
    def interest_amount(self) -> Money:
        return self.total_payable - self.principal

    @property
    def end_date(self) -> date:
        """Due date of the last installment (the start date is day 1)"""
        return add_days(self.start_date, self.duration_days - 1)

    @property
    def maturity_date(self) -> date:
        """Day after the last installment"""
        return add_days(self.start_date, self.duration_days)


@dataclass(frozen=True)
class BatchTerms:
    """Aggregate terms of a batch of identical tokens"""
    token_terms: LoanTerms
    quantity: int

    @property
    def total_batch_amount(self) -> Money:
        return self.token_terms.total_payable * self.quantity

    @property
    def total_principal(self) -> Money:
        return self.token_terms.principal * self.quantity

    @property
    def total_daily_amount(self) -> Money:
        return self.token_terms.daily_installment * self.quantity


def compute_terms(
    principal: Money,
    interest: InterestSpec,
    duration_days: int,
    start_date: date
) -> LoanTerms:
    """
    Compute the repayment terms of a token.

    ``total_payable = principal + interest``; the daily installment is the
    total divided by the duration, rounded half-up to currency precision, and
    the final installment absorbs the rounding remainder so the schedule sums
    exactly to the total.

    Raises:
        InvalidInputError: principal <= 0, duration <= 0 or negative interest value
    """
    if not principal.is_positive():
        raise InvalidInputError(f"Principal must be positive, got {principal.to_string()}")
    if duration_days <= 0:
        raise InvalidInputError(f"Duration must be at least one day, got {duration_days}")
    if interest.value < 0:
        raise InvalidInputError(f"Interest value cannot be negative, got {interest.value}")

    total_payable = principal + interest.interest_on(principal)
    daily_installment = total_payable / duration_days
    final_installment = total_payable - daily_installment * (duration_days - 1)
    if final_installment.is_negative():
        raise InvalidInputError(
            f"{total_payable.to_string()} is too small to spread over {duration_days} days"
        )

    return LoanTerms(
        principal=principal,
        interest=interest,
        duration_days=duration_days,
        start_date=start_date,
        total_payable=total_payable,
        daily_installment=daily_installment,
        final_installment=final_installment
    )


def compute_batch_terms(terms: LoanTerms, quantity: int, max_quantity: int = 50) -> BatchTerms:
    """
    Aggregate per-token terms for a batch of ``quantity`` identical tokens.

    Raises:
        InvalidInputError: quantity outside 1..max_quantity
    """
    if quantity < 1 or quantity > max_quantity:
        raise InvalidInputError(f"Quantity must be between 1 and {max_quantity}, got {quantity}")
    return BatchTerms(token_terms=terms, quantity=quantity)
