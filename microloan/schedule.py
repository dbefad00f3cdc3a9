"""
Schedule Module

Daily repayment schedule entries and the generator that expands loan terms
into one entry per day of the loan duration.
"""

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .currency import Currency, Money, money_sum
from .dates import add_days
from .terms import LoanTerms


class ScheduleStatus(Enum):
    """Status of a single schedule entry"""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"


OPEN_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.PARTIAL, ScheduleStatus.OVERDUE)


@dataclass(frozen=True)
class ScheduleEntry:
    """
    One day's due installment (plus any penalty) for a token or a batch.

    Entries are values: every operation returns an updated copy.
    ``quantity`` is the number of tokens the entry collects for (1 for a
    single token, N for a batch-level entry).
    """
    owner_id: str
    sequence: int
    due_date: date
    installment_amount: Money
    penalty_amount: Money = None
    penalty_waived: Money = None
    paid_amount: Money = None
    status: ScheduleStatus = ScheduleStatus.PENDING
    payment_date: Optional[date] = None
    quantity: int = 1
    penalty_applied_on: Optional[date] = None
    penalty_overridden: bool = False

    def __post_init__(self):
        zero = Money.zero(self.installment_amount.currency)
        for name in ('penalty_amount', 'penalty_waived', 'paid_amount'):
            if getattr(self, name) is None:
                object.__setattr__(self, name, zero)

    @property
    def entry_id(self) -> str:
        return f"{self.owner_id}_{self.sequence}"

    @property
    def currency(self) -> Currency:
        return self.installment_amount.currency

    @property
    def net_penalty(self) -> Money:
        return self.penalty_amount - self.penalty_waived

    @property
    def total_due(self) -> Money:
        """installment + penalty - waived"""
        return self.installment_amount + self.net_penalty

    @property
    def outstanding(self) -> Money:
        remaining = self.total_due - self.paid_amount
        return remaining if remaining.is_positive() else Money.zero(self.currency)

    @property
    def penalty_per_token(self) -> Money:
        return self.penalty_amount / self.quantity

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.status == ScheduleStatus.PAID

    def with_status_from_amounts(self, payment_date: Optional[date] = None) -> 'ScheduleEntry':
        """
        Re-derive the status after amounts changed.

        ``paid`` once the paid amount covers the total due, ``partial`` while
        something is paid; otherwise an entry that was paid falls back to
        ``overdue`` (penalised) or ``pending``.
        """
        if self.paid_amount >= self.total_due:
            return replace(
                self,
                status=ScheduleStatus.PAID,
                payment_date=self.payment_date or payment_date
            )
        if self.paid_amount.is_positive():
            return replace(self, status=ScheduleStatus.PARTIAL, payment_date=None)
        if self.status == ScheduleStatus.PAID:
            status = ScheduleStatus.OVERDUE if self.penalty_applied_on else ScheduleStatus.PENDING
            return replace(self, status=status, payment_date=None)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.entry_id,
            'owner_id': self.owner_id,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'currency': self.currency.code,
            'installment_amount': str(self.installment_amount.amount),
            'penalty_amount': str(self.penalty_amount.amount),
            'penalty_waived': str(self.penalty_waived.amount),
            'paid_amount': str(self.paid_amount.amount),
            'status': self.status.value,
            'payment_date': self.payment_date.isoformat() if self.payment_date else None,
            'quantity': self.quantity,
            'penalty_applied_on': self.penalty_applied_on.isoformat() if self.penalty_applied_on else None,
            'penalty_overridden': self.penalty_overridden
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleEntry':
        """Convert dictionary to schedule entry"""
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        def get_date(key: str) -> Optional[date]:
            return date.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            owner_id=data['owner_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            installment_amount=get_money('installment_amount'),
            penalty_amount=get_money('penalty_amount'),
            penalty_waived=get_money('penalty_waived'),
            paid_amount=get_money('paid_amount'),
            status=ScheduleStatus(data['status']),
            payment_date=get_date('payment_date'),
            quantity=data.get('quantity', 1),
            penalty_applied_on=get_date('penalty_applied_on'),
            penalty_overridden=data.get('penalty_overridden', False)
        )


def generate_schedule(terms: LoanTerms, owner_id: str = "", quantity: int = 1) -> List[ScheduleEntry]:
    """
    Expand loan terms into one pending entry per day.

    Entries run from ``terms.start_date`` to ``terms.end_date`` inclusive; the
    last entry carries the final (remainder-absorbing) installment. The
    installment is multiplied by ``quantity`` for batch-level schedules.
    Pure: equal inputs give equal lists.

    Args:
        terms: Computed loan terms
        owner_id: Token or batch the entries belong to
        quantity: Number of tokens collected through this schedule

    Returns:
        Entries ordered by due date
    """
    schedule = []
    for offset in range(terms.duration_days):
        is_last = offset == terms.duration_days - 1
        installment = terms.final_installment if is_last else terms.daily_installment
        schedule.append(ScheduleEntry(
            owner_id=owner_id,
            sequence=offset + 1,
            due_date=add_days(terms.start_date, offset),
            installment_amount=installment * quantity,
            quantity=quantity
        ))
    return schedule


def schedule_total(schedule: List[ScheduleEntry]) -> Money:
    """Sum of installments (excluding penalties) of a schedule"""
    currency = schedule[0].currency if schedule else Currency.INR
    return money_sum((entry.installment_amount for entry in schedule), currency)
