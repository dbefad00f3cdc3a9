"""
Payment Module

Applies collected amounts to schedule entries: single-entry application,
oldest-due-first allocation across a schedule, and the split of a batch
collection back into equal token-level credits. Payment records are
append-only.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .currency import Currency, Money, money_sum
from .exceptions import InsufficientDataError, InvalidInputError, OverpaymentError
from .penalties import waive_penalty
from .schedule import ScheduleEntry
from .storage import StorageRecord


class PaymentMode(Enum):
    """How the money was tendered"""
    CASH = "cash"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"


class OverpaymentPolicy(Enum):
    """What happens to money beyond the amount due"""
    CLAMP = "clamp"    # Cap at the amount due and hand the excess back
    REJECT = "reject"  # Refuse the payment
    ALLOW = "allow"    # Keep the excess on the entry


@dataclass
class Payment(StorageRecord):
    """Record of an amount applied to one schedule entry (immutable once saved)"""
    owner_type: str                     # "token" or "batch"
    owner_id: str
    schedule_entry_id: str
    collector_id: str
    amount: Money
    payment_date: date
    payment_mode: PaymentMode = PaymentMode.CASH
    penalty_waived: Money = None
    remarks: Optional[str] = None
    recorded_by: str = "collector"
    token_credits: Dict[str, Money] = field(default_factory=dict)

    def __post_init__(self):
        if self.penalty_waived is None:
            self.penalty_waived = Money.zero(self.amount.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'owner_type': self.owner_type,
            'owner_id': self.owner_id,
            'schedule_entry_id': self.schedule_entry_id,
            'collector_id': self.collector_id,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'penalty_waived': str(self.penalty_waived.amount),
            'payment_date': self.payment_date.isoformat(),
            'payment_mode': self.payment_mode.value,
            'remarks': self.remarks,
            'recorded_by': self.recorded_by,
            'token_credits': {k: str(v.amount) for k, v in self.token_credits.items()}
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_type=data['owner_type'],
            owner_id=data['owner_id'],
            schedule_entry_id=data['schedule_entry_id'],
            collector_id=data['collector_id'],
            amount=Money(Decimal(data['amount']), currency),
            payment_date=date.fromisoformat(data['payment_date']),
            payment_mode=PaymentMode(data['payment_mode']),
            penalty_waived=Money(Decimal(data['penalty_waived']), currency),
            remarks=data.get('remarks'),
            recorded_by=data.get('recorded_by', 'collector'),
            token_credits={
                k: Money(Decimal(v), currency) for k, v in (data.get('token_credits') or {}).items()
            }
        )


@dataclass(frozen=True)
class AllocationLine:
    """Effect of a payment on one entry"""
    entry: ScheduleEntry
    applied: Money
    waived: Money


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of allocating one payment across a schedule"""
    lines: Tuple[AllocationLine, ...]
    excess: Money

    @property
    def applied_total(self) -> Money:
        return money_sum((line.applied for line in self.lines), self.excess.currency)

    @property
    def waived_total(self) -> Money:
        return money_sum((line.waived for line in self.lines), self.excess.currency)

    @property
    def updated_entries(self) -> List[ScheduleEntry]:
        return [line.entry for line in self.lines]


def _coerce_policy(policy) -> OverpaymentPolicy:
    return policy if isinstance(policy, OverpaymentPolicy) else OverpaymentPolicy(policy)


def apply_payment(
    entry: ScheduleEntry,
    amount: Money,
    payment_date: Optional[date] = None,
    policy=OverpaymentPolicy.CLAMP
) -> Tuple[ScheduleEntry, Money]:
    """
    Apply an amount to a single entry.

    The entry becomes ``paid`` once the paid amount covers ``total_due`` and
    ``partial`` while something is paid.

    Returns:
        (updated entry, excess not applied)

    Raises:
        InvalidInputError: non-positive amount
        OverpaymentError: amount above the outstanding amount under the reject policy
    """
    policy = _coerce_policy(policy)
    if not amount.is_positive():
        raise InvalidInputError("Payment amount must be positive")

    outstanding = entry.outstanding
    excess = Money.zero(amount.currency)

    if amount > outstanding:
        if policy == OverpaymentPolicy.REJECT:
            raise OverpaymentError(
                f"Payment {amount.to_string()} exceeds amount due {outstanding.to_string()}"
            )
        if policy == OverpaymentPolicy.CLAMP:
            excess = amount - outstanding
            amount = outstanding

    updated = replace(entry, paid_amount=entry.paid_amount + amount)
    return updated.with_status_from_amounts(payment_date), excess


def allocate_payment(
    entries: Sequence[ScheduleEntry],
    amount: Money,
    payment_date: Optional[date] = None,
    penalty_waived: Optional[Money] = None,
    policy=OverpaymentPolicy.CLAMP
) -> PaymentAllocation:
    """
    Allocate a payment oldest-due-first over the open entries of a schedule.

    An optional penalty waiver is consumed over the same entries, in the same
    order, before money is applied to each of them.

    Args:
        entries: Schedule entries (any order; closed entries are skipped)
        amount: Amount tendered
        payment_date: Date recorded on entries that become paid
        penalty_waived: Total penalty to waive alongside the payment
        policy: Overpayment policy for money left after the last open entry

    Returns:
        PaymentAllocation with the updated entries and any excess

    Raises:
        InvalidInputError: non-positive amount or negative waiver
        InsufficientDataError: no open entries
        OverpaymentError: money left over under the reject policy
    """
    policy = _coerce_policy(policy)
    if not amount.is_positive():
        raise InvalidInputError("Payment amount must be positive")

    currency = amount.currency
    waiver_left = penalty_waived if penalty_waived is not None else Money.zero(currency)
    if waiver_left.is_negative():
        raise InvalidInputError("Waived amount cannot be negative")

    open_entries = sorted((e for e in entries if e.is_open), key=lambda e: (e.due_date, e.sequence))
    if not open_entries:
        raise InsufficientDataError("No open schedule entries to apply the payment to")

    remaining = amount
    lines: List[AllocationLine] = []

    for entry in open_entries:
        if remaining.is_zero() and waiver_left.is_zero():
            break

        waived = min(waiver_left, entry.net_penalty)
        if waived.is_positive():
            entry = waive_penalty(entry, entry.penalty_waived + waived, payment_date)
            waiver_left = waiver_left - waived

        applied = min(remaining, entry.outstanding)
        if applied.is_positive():
            entry, _ = apply_payment(entry, applied, payment_date)
            remaining = remaining - applied

        if applied.is_positive() or waived.is_positive():
            lines.append(AllocationLine(entry=entry, applied=applied, waived=waived))

    if remaining.is_positive():
        if policy == OverpaymentPolicy.REJECT:
            raise OverpaymentError(
                f"Payment exceeds the schedule's outstanding amount by {remaining.to_string()}"
            )
        if policy == OverpaymentPolicy.ALLOW and lines:
            last = lines[-1]
            entry, _ = apply_payment(last.entry, remaining, payment_date, OverpaymentPolicy.ALLOW)
            lines[-1] = AllocationLine(entry=entry, applied=last.applied + remaining, waived=last.waived)
            remaining = Money.zero(currency)

    return PaymentAllocation(lines=tuple(lines), excess=remaining)


def split_batch_payment(amount: Money, quantity: int) -> List[Money]:
    """
    Divide a batch collection into ``quantity`` token-level credits.

    Every credit but the last is the equal share rounded down to currency
    precision; the last takes the remainder, so the credits sum exactly to
    ``amount``.
    """
    if quantity < 1:
        raise InvalidInputError(f"Quantity must be at least 1, got {quantity}")

    share_amount = (amount.amount / Decimal(quantity)).quantize(amount.currency.quantum, rounding=ROUND_DOWN)
    share = Money(share_amount, amount.currency)
    last = amount - share * (quantity - 1)
    return [share] * (quantity - 1) + [last]
