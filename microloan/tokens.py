"""
Token Management Module

Issues daily-repayment tokens (single or in batches of identical tokens),
persists their schedules, records collections against them and drives the
token/batch lifecycle: active -> overdue -> closed, or cancelled.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .accounts import AccountLedger, AccountOwnerType, ReferenceType
from .audit import AuditTrail, AuditEventType
from .config import MicroloanConfig, get_config
from .currency import Currency, Money, money_sum
from .dates import compact_stamp
from .exceptions import InvalidStateError, NotFoundError
from .logging_config import get_logger, log_action
from .payments import (
    OverpaymentPolicy, Payment, PaymentAllocation, PaymentMode,
    allocate_payment, split_batch_payment
)
from .penalties import (
    PenaltyConfig, PenaltyConfigRegistry, apply_penalty, override_penalty, waive_penalty
)
from .schedule import ScheduleEntry, ScheduleStatus, generate_schedule
from .storage import StorageInterface, StorageRecord
from .terms import InterestSpec, InterestType, LoanTerms, compute_batch_terms, compute_terms


class TokenStatus(Enum):
    """Token and batch lifecycle states"""
    ACTIVE = "active"
    OVERDUE = "overdue"
    CLOSED = "closed"        # Every schedule entry paid
    CANCELLED = "cancelled"  # Stopped manually


OPEN_TOKEN_STATUSES = (TokenStatus.ACTIVE, TokenStatus.OVERDUE)


@dataclass
class Token(StorageRecord):
    """A daily-repayment loan issued to a customer"""
    token_number: str
    customer_id: str
    collector_id: str
    principal: Money
    interest: InterestSpec
    duration_days: int
    start_date: date
    status: TokenStatus = TokenStatus.ACTIVE
    batch_id: Optional[str] = None
    created_by: str = "admin"
    cancel_reason: Optional[str] = None

    @property
    def terms(self) -> LoanTerms:
        return compute_terms(self.principal, self.interest, self.duration_days, self.start_date)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TOKEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        terms = self.terms
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'token_number': self.token_number,
            'customer_id': self.customer_id,
            'collector_id': self.collector_id,
            'currency': self.principal.currency.code,
            'principal': str(self.principal.amount),
            'interest_type': self.interest.interest_type.value,
            'interest_value': str(self.interest.value),
            'duration_days': self.duration_days,
            'start_date': self.start_date.isoformat(),
            'end_date': terms.end_date.isoformat(),
            'total_payable': str(terms.total_payable.amount),
            'daily_installment': str(terms.daily_installment.amount),
            'status': self.status.value,
            'batch_id': self.batch_id,
            'created_by': self.created_by,
            'cancel_reason': self.cancel_reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Token':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            token_number=data['token_number'],
            customer_id=data['customer_id'],
            collector_id=data['collector_id'],
            principal=Money(Decimal(data['principal']), Currency[data['currency']]),
            interest=InterestSpec(InterestType(data['interest_type']), Decimal(data['interest_value'])),
            duration_days=data['duration_days'],
            start_date=date.fromisoformat(data['start_date']),
            status=TokenStatus(data['status']),
            batch_id=data.get('batch_id'),
            created_by=data.get('created_by', 'admin'),
            cancel_reason=data.get('cancel_reason')
        )


@dataclass
class TokenBatch(StorageRecord):
    """N identical tokens issued to one customer and collected together"""
    batch_number: str
    customer_id: str
    collector_id: str
    quantity: int
    principal: Money                   # Per token
    interest: InterestSpec             # Per token
    duration_days: int
    start_date: date
    token_ids: List[str] = field(default_factory=list)
    status: TokenStatus = TokenStatus.ACTIVE
    created_by: str = "admin"
    cancel_reason: Optional[str] = None

    @property
    def token_terms(self) -> LoanTerms:
        return compute_terms(self.principal, self.interest, self.duration_days, self.start_date)

    @property
    def total_batch_amount(self) -> Money:
        return self.token_terms.total_payable * self.quantity

    @property
    def total_daily_amount(self) -> Money:
        return self.token_terms.daily_installment * self.quantity

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TOKEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'batch_number': self.batch_number,
            'customer_id': self.customer_id,
            'collector_id': self.collector_id,
            'quantity': self.quantity,
            'currency': self.principal.currency.code,
            'principal': str(self.principal.amount),
            'interest_type': self.interest.interest_type.value,
            'interest_value': str(self.interest.value),
            'duration_days': self.duration_days,
            'start_date': self.start_date.isoformat(),
            'end_date': self.token_terms.end_date.isoformat(),
            'total_batch_amount': str(self.total_batch_amount.amount),
            'total_daily_amount': str(self.total_daily_amount.amount),
            'token_ids': list(self.token_ids),
            'status': self.status.value,
            'created_by': self.created_by,
            'cancel_reason': self.cancel_reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenBatch':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            batch_number=data['batch_number'],
            customer_id=data['customer_id'],
            collector_id=data['collector_id'],
            quantity=data['quantity'],
            principal=Money(Decimal(data['principal']), Currency[data['currency']]),
            interest=InterestSpec(InterestType(data['interest_type']), Decimal(data['interest_value'])),
            duration_days=data['duration_days'],
            start_date=date.fromisoformat(data['start_date']),
            token_ids=list(data.get('token_ids') or []),
            status=TokenStatus(data['status']),
            created_by=data.get('created_by', 'admin'),
            cancel_reason=data.get('cancel_reason')
        )


@dataclass
class PaymentReceipt:
    """Outcome of recording one collection"""
    owner_id: str
    payments: List[Payment]
    allocation: PaymentAllocation
    owner_status: TokenStatus

    @property
    def applied(self) -> Money:
        return self.allocation.applied_total

    @property
    def excess(self) -> Money:
        return self.allocation.excess

    @property
    def closed(self) -> bool:
        return self.owner_status == TokenStatus.CLOSED


def _installment_portion(before: ScheduleEntry, after: ScheduleEntry) -> Money:
    """Part of a payment that went to the installment (installment is settled before penalty)"""
    installment = after.installment_amount
    return min(after.paid_amount, installment) - min(before.paid_amount, installment)


class TokenManager:
    """
    Issues tokens and batches and records collections against their schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        penalty_registry: Optional[PenaltyConfigRegistry] = None,
        ledger: Optional[AccountLedger] = None,
        config: Optional[MicroloanConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.penalty_registry = penalty_registry
        self.ledger = ledger
        self.config = config or get_config()
        self.currency = Currency[self.config.currency]
        self.overpayment_policy = OverpaymentPolicy(self.config.overpayment_policy)
        self.logger = get_logger("microloan.tokens")

        self.tokens_table = "tokens"
        self.batches_table = "token_batches"
        self.schedules_table = "schedule_entries"
        self.payments_table = "payments"

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_token(
        self,
        customer_id: str,
        collector_id: str,
        principal: Money,
        interest: InterestSpec,
        duration_days: int,
        start_date: date,
        created_by: str = "admin"
    ) -> Token:
        """
        Issue a single token and generate its daily schedule

        Args:
            customer_id: Borrower
            collector_id: Collector responsible for the daily collections
            principal: Amount lent
            interest: Fixed amount or percentage of the principal
            duration_days: Number of daily installments
            start_date: Due date of the first installment
            created_by: Role issuing the token (admin or collector)

        Returns:
            Created Token
        """
        terms = compute_terms(principal, interest, duration_days, start_date)
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            token = Token(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                token_number=self._next_numbers(self.config.token_prefix, self.tokens_table, 'token_number')[0],
                customer_id=customer_id,
                collector_id=collector_id,
                principal=principal,
                interest=interest,
                duration_days=duration_days,
                start_date=start_date,
                created_by=created_by
            )
            self._save_token(token)
            self._create_schedule(terms, token.id)

            self._audit(
                AuditEventType.TOKEN_ISSUED, "token", token.id,
                {
                    "token_number": token.token_number,
                    "customer_id": customer_id,
                    "collector_id": collector_id,
                    "principal": principal.to_string(),
                    "total_payable": terms.total_payable.to_string(),
                    "daily_installment": terms.daily_installment.to_string(),
                    "duration_days": duration_days
                }
            )

            if created_by == "collector":
                self._debit_collector_for_issue(collector_id, terms.total_payable, token.id, token.token_number)

        log_action(
            self.logger, "info", "Token issued",
            user_id=collector_id if created_by == "collector" else None,
            action="issue_token", resource=f"token:{token.id}",
            extra={"token_number": token.token_number, "total_payable": str(terms.total_payable.amount)}
        )
        return token

    def issue_batch(
        self,
        customer_id: str,
        collector_id: str,
        principal: Money,
        interest: InterestSpec,
        duration_days: int,
        start_date: date,
        quantity: int,
        created_by: str = "admin"
    ) -> TokenBatch:
        """
        Issue ``quantity`` identical tokens as one batch.

        Every token gets its own schedule; the batch gets an aggregate
        schedule whose installment is ``quantity`` times the per-token one,
        and that is the schedule collections and penalties run against.
        """
        terms = compute_terms(principal, interest, duration_days, start_date)
        batch_terms = compute_batch_terms(terms, quantity, self.config.max_batch_quantity)
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            batch = TokenBatch(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                batch_number=self._next_numbers(self.config.batch_prefix, self.batches_table, 'batch_number')[0],
                customer_id=customer_id,
                collector_id=collector_id,
                quantity=quantity,
                principal=principal,
                interest=interest,
                duration_days=duration_days,
                start_date=start_date,
                created_by=created_by
            )

            token_numbers = self._next_numbers(
                self.config.token_prefix, self.tokens_table, 'token_number', count=quantity
            )
            for token_number in token_numbers:
                token = Token(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    token_number=token_number,
                    customer_id=customer_id,
                    collector_id=collector_id,
                    principal=principal,
                    interest=interest,
                    duration_days=duration_days,
                    start_date=start_date,
                    batch_id=batch.id,
                    created_by=created_by
                )
                self._save_token(token)
                self._create_schedule(terms, token.id)
                batch.token_ids.append(token.id)

            self._save_batch(batch)
            self._create_schedule(terms, batch.id, quantity)

            self._audit(
                AuditEventType.BATCH_ISSUED, "batch", batch.id,
                {
                    "batch_number": batch.batch_number,
                    "customer_id": customer_id,
                    "collector_id": collector_id,
                    "quantity": quantity,
                    "total_batch_amount": batch_terms.total_batch_amount.to_string(),
                    "total_daily_amount": batch_terms.total_daily_amount.to_string(),
                    "token_numbers": token_numbers
                }
            )

            if created_by == "collector":
                self._debit_collector_for_issue(
                    collector_id, batch_terms.total_batch_amount, batch.id, batch.batch_number
                )

        log_action(
            self.logger, "info", f"Token batch issued with {quantity} tokens",
            user_id=collector_id if created_by == "collector" else None,
            action="issue_batch", resource=f"batch:{batch.id}",
            extra={"batch_number": batch.batch_number, "quantity": quantity}
        )
        return batch

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_token(self, token_id: str) -> Token:
        data = self.storage.load(self.tokens_table, token_id)
        if not data:
            raise NotFoundError(f"Token {token_id} not found")
        return Token.from_dict(data)

    def get_token_by_number(self, token_number: str) -> Token:
        matches = self.storage.find(self.tokens_table, {"token_number": token_number})
        if not matches:
            raise NotFoundError(f"Token {token_number} not found")
        return Token.from_dict(matches[0])

    def get_batch(self, batch_id: str) -> TokenBatch:
        data = self.storage.load(self.batches_table, batch_id)
        if not data:
            raise NotFoundError(f"Token batch {batch_id} not found")
        return TokenBatch.from_dict(data)

    def get_schedule(self, owner_id: str) -> List[ScheduleEntry]:
        """Schedule of a token or batch ordered by sequence"""
        return [
            ScheduleEntry.from_dict(data)
            for data in self.storage.find(self.schedules_table, {"owner_id": owner_id}, order_by="sequence")
        ]

    def get_entry(self, entry_id: str) -> ScheduleEntry:
        data = self.storage.load(self.schedules_table, entry_id)
        if not data:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        return ScheduleEntry.from_dict(data)

    def get_payments(self, owner_id: str) -> List[Payment]:
        return [
            Payment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"owner_id": owner_id})
        ]

    def list_tokens(
        self,
        status: Optional[TokenStatus] = None,
        collector_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        batch_id: Optional[str] = None
    ) -> List[Token]:
        """Tokens matching every given filter; ``status`` may also be a list"""
        filters = self._owner_filters(status, collector_id, customer_id)
        if batch_id is not None:
            filters['batch_id'] = batch_id
        return [Token.from_dict(data) for data in self.storage.find(self.tokens_table, filters)]

    def list_batches(
        self,
        status: Optional[TokenStatus] = None,
        collector_id: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> List[TokenBatch]:
        filters = self._owner_filters(status, collector_id, customer_id)
        return [TokenBatch.from_dict(data) for data in self.storage.find(self.batches_table, filters)]

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def record_payment(
        self,
        token_id: str,
        amount: Money,
        collector_id: str,
        payment_mode: PaymentMode = PaymentMode.CASH,
        payment_date: Optional[date] = None,
        recorded_by: str = "collector",
        user_id: Optional[str] = None,
        remarks: Optional[str] = None
    ) -> PaymentReceipt:
        """
        Record a collection against a token, oldest due entry first

        Args:
            token_id: Token being paid
            amount: Amount collected
            collector_id: Collector who collected it
            payment_mode: cash, upi or bank_transfer
            payment_date: Collection date (defaults to today)
            recorded_by: Role recording the payment (collector or admin)
            user_id: Admin ID when an admin records the payment
            remarks: Free text

        Returns:
            PaymentReceipt with the payment records and the token's new status

        Raises:
            NotFoundError: unknown token
            InvalidStateError: token closed or cancelled
            InsufficientDataError: no open schedule entries
        """
        payment_date = payment_date or date.today()

        with self.storage.lock(self.tokens_table, token_id), self.storage.atomic():
            token = self.get_token(token_id)
            if not token.is_open:
                raise InvalidStateError(f"Token {token.token_number} is {token.status.value}")

            allocation = allocate_payment(
                self.get_schedule(token_id), amount, payment_date, policy=self.overpayment_policy
            )
            payments = self._persist_allocation(
                "token", token_id, allocation, collector_id, payment_mode,
                payment_date, recorded_by, remarks
            )
            self._credit_collection(allocation.applied_total, collector_id, recorded_by, user_id, payments, token.token_number)
            status = self._refresh_token_status(token)

            if token.batch_id:
                self._refresh_batch_status(self.get_batch(token.batch_id))

        log_action(
            self.logger, "info", "Payment recorded",
            user_id=user_id or collector_id, action="record_payment", resource=f"token:{token_id}",
            extra={
                "amount": str(allocation.applied_total.amount),
                "excess": str(allocation.excess.amount),
                "entries": len(allocation.lines)
            }
        )
        return PaymentReceipt(owner_id=token_id, payments=payments, allocation=allocation, owner_status=status)

    def record_batch_payment(
        self,
        batch_id: str,
        amount: Money,
        collector_id: str,
        payment_mode: PaymentMode = PaymentMode.CASH,
        payment_date: Optional[date] = None,
        recorded_by: str = "collector",
        user_id: Optional[str] = None,
        remarks: Optional[str] = None,
        penalty_waived: Optional[Money] = None
    ) -> PaymentReceipt:
        """
        Record a collection against a batch schedule.

        The amount (and an optional penalty waiver) is allocated oldest due
        entry first over the batch schedule. The part that settled
        installments is split into equal token-level credits and applied to
        each member token's schedule, so token schedules follow the batch.
        When the batch schedule is fully paid the batch and its tokens close.
        """
        payment_date = payment_date or date.today()

        with self.storage.lock(self.batches_table, batch_id), self.storage.atomic():
            batch = self.get_batch(batch_id)
            if not batch.is_open:
                raise InvalidStateError(f"Batch {batch.batch_number} is {batch.status.value}")

            schedule = {entry.entry_id: entry for entry in self.get_schedule(batch_id)}
            allocation = allocate_payment(
                list(schedule.values()), amount, payment_date,
                penalty_waived=penalty_waived, policy=self.overpayment_policy
            )

            installment_paid = money_sum(
                (_installment_portion(schedule[line.entry.entry_id], line.entry) for line in allocation.lines),
                amount.currency
            )
            token_credits = self._credit_member_tokens(batch, installment_paid, payment_date)

            payments = self._persist_allocation(
                "batch", batch_id, allocation, collector_id, payment_mode,
                payment_date, recorded_by, remarks, token_credits
            )
            if allocation.applied_total.is_positive():
                self._credit_collection(
                    allocation.applied_total, collector_id, recorded_by, user_id, payments, batch.batch_number
                )
            status = self._refresh_batch_status(batch)

        log_action(
            self.logger, "info", "Batch payment recorded",
            user_id=user_id or collector_id, action="record_batch_payment", resource=f"batch:{batch_id}",
            extra={
                "amount": str(allocation.applied_total.amount),
                "waived": str(allocation.waived_total.amount),
                "excess": str(allocation.excess.amount),
                "batch_closed": status == TokenStatus.CLOSED
            }
        )
        return PaymentReceipt(owner_id=batch_id, payments=payments, allocation=allocation, owner_status=status)

    # ------------------------------------------------------------------
    # Penalty adjustments
    # ------------------------------------------------------------------

    def waive_penalty(self, entry_id: str, amount: Money, user_id: Optional[str] = None) -> ScheduleEntry:
        """Set the waived part of an entry's penalty (clamped to the penalty)"""
        entry = self.get_entry(entry_id)
        table = self._owner_table(entry.owner_id)

        with self.storage.lock(table, entry.owner_id), self.storage.atomic():
            entry = self.get_entry(entry_id)
            updated = waive_penalty(entry, amount, date.today())
            self._save_entry(updated)
            self._audit(
                AuditEventType.PENALTY_WAIVED, "schedule_entry", entry_id,
                {
                    "penalty_amount": updated.penalty_amount.to_string(),
                    "penalty_waived": updated.penalty_waived.to_string(),
                    "status": updated.status.value
                },
                user_id
            )
            self.refresh_owner_status(entry.owner_id)

        log_action(
            self.logger, "info", "Penalty waived",
            user_id=user_id, action="waive_penalty", resource=f"schedule_entry:{entry_id}",
            extra={"penalty_waived": str(updated.penalty_waived.amount)}
        )
        return updated

    def apply_penalties(
        self,
        owner_id: str,
        as_of: date,
        config: Optional[PenaltyConfig] = None
    ) -> Dict[str, Any]:
        """
        Run the penalty accrual rule over a token's or batch's open entries
        due before ``as_of`` and re-derive the owner's status

        Args:
            owner_id: Token or batch ID
            as_of: Processing date
            config: Penalty configuration (defaults to the registry's active one)

        Returns:
            ``entries_checked``, ``penalties_applied``, ``penalty_total`` and the owner ``status``
        """
        if config is None and self.penalty_registry is not None:
            config = self.penalty_registry.get_active_config()

        result = {
            "entries_checked": 0,
            "penalties_applied": 0,
            "penalty_total": Money.zero(self.currency),
            "status": None
        }
        if config is None:
            return result

        table = self._owner_table(owner_id)
        with self.storage.lock(table, owner_id), self.storage.atomic():
            for entry in self.get_schedule(owner_id):
                if not entry.is_open or entry.due_date >= as_of:
                    continue
                result["entries_checked"] += 1

                updated = apply_penalty(entry, config, as_of)
                if updated == entry:
                    continue
                self._save_entry(updated)

                if entry.penalty_applied_on is None and updated.penalty_applied_on is not None:
                    result["penalties_applied"] += 1
                    result["penalty_total"] = result["penalty_total"] + updated.penalty_amount
                    self._audit(
                        AuditEventType.PENALTY_APPLIED, "schedule_entry", updated.entry_id,
                        {
                            "owner_id": owner_id,
                            "due_date": updated.due_date.isoformat(),
                            "penalty_amount": updated.penalty_amount.to_string(),
                            "penalty_config_id": config.id,
                            "as_of": as_of.isoformat()
                        }
                    )

            result["status"] = self.refresh_owner_status(owner_id)

        return result

    def override_penalty(
        self,
        entry_id: str,
        penalty_amount: Optional[Money] = None,
        penalty_per_token: Optional[Money] = None,
        user_id: Optional[str] = None
    ) -> ScheduleEntry:
        """Manually set an entry's penalty; the overdue sweep never recomputes it afterwards"""
        entry = self.get_entry(entry_id)
        table = self._owner_table(entry.owner_id)

        with self.storage.lock(table, entry.owner_id), self.storage.atomic():
            entry = self.get_entry(entry_id)
            updated = override_penalty(entry, penalty_amount, penalty_per_token, date.today())
            self._save_entry(updated)
            self._audit(
                AuditEventType.PENALTY_OVERRIDDEN, "schedule_entry", entry_id,
                {
                    "previous_penalty": entry.penalty_amount.to_string(),
                    "penalty_amount": updated.penalty_amount.to_string(),
                    "penalty_per_token": updated.penalty_per_token.to_string(),
                    "quantity": updated.quantity
                },
                user_id
            )
            self.refresh_owner_status(entry.owner_id)

        log_action(
            self.logger, "info", "Penalty overridden",
            user_id=user_id, action="override_penalty", resource=f"schedule_entry:{entry_id}",
            extra={"penalty_amount": str(updated.penalty_amount.amount)}
        )
        return updated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel_token(self, token_id: str, reason: str, user_id: Optional[str] = None) -> Token:
        with self.storage.lock(self.tokens_table, token_id), self.storage.atomic():
            token = self.get_token(token_id)
            if not token.is_open:
                raise InvalidStateError(f"Token {token.token_number} is already {token.status.value}")
            self._set_token_status(token, TokenStatus.CANCELLED, reason)
            self._audit(AuditEventType.TOKEN_CANCELLED, "token", token_id, {"reason": reason}, user_id)

        log_action(
            self.logger, "info", "Token cancelled",
            user_id=user_id, action="cancel_token", resource=f"token:{token_id}", extra={"reason": reason}
        )
        return token

    def cancel_batch(self, batch_id: str, reason: str, user_id: Optional[str] = None) -> TokenBatch:
        """Cancel a batch together with its tokens that are still open"""
        with self.storage.lock(self.batches_table, batch_id), self.storage.atomic():
            batch = self.get_batch(batch_id)
            if not batch.is_open:
                raise InvalidStateError(f"Batch {batch.batch_number} is already {batch.status.value}")

            for token in self.list_tokens(batch_id=batch_id):
                if token.is_open:
                    self._set_token_status(token, TokenStatus.CANCELLED, reason)

            batch.status = TokenStatus.CANCELLED
            batch.cancel_reason = reason
            batch.updated_at = datetime.now(timezone.utc)
            self._save_batch(batch)
            self._audit(AuditEventType.BATCH_CANCELLED, "batch", batch_id, {"reason": reason}, user_id)

        log_action(
            self.logger, "info", "Token batch cancelled",
            user_id=user_id, action="cancel_batch", resource=f"batch:{batch_id}", extra={"reason": reason}
        )
        return batch

    def refresh_owner_status(self, owner_id: str) -> TokenStatus:
        """Re-derive the status of a token or batch from its schedule"""
        if self.storage.exists(self.tokens_table, owner_id):
            token = self.get_token(owner_id)
            status = self._refresh_token_status(token)
            if token.batch_id:
                self._refresh_batch_status(self.get_batch(token.batch_id))
            return status
        return self._refresh_batch_status(self.get_batch(owner_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _derive_status(entries: List[ScheduleEntry]) -> TokenStatus:
        if entries and all(entry.is_paid for entry in entries):
            return TokenStatus.CLOSED
        if any(entry.is_open and (entry.status == ScheduleStatus.OVERDUE or entry.penalty_applied_on)
               for entry in entries):
            return TokenStatus.OVERDUE
        return TokenStatus.ACTIVE

    def _refresh_token_status(self, token: Token, batch_status: Optional[TokenStatus] = None) -> TokenStatus:
        if token.status == TokenStatus.CANCELLED:
            return token.status

        status = self._derive_status(self.get_schedule(token.id))
        if batch_status is not None and status != TokenStatus.CLOSED:
            status = batch_status

        if status != token.status:
            previous = token.status
            self._set_token_status(token, status)
            self._audit(
                AuditEventType.TOKEN_CLOSED if status == TokenStatus.CLOSED else AuditEventType.TOKEN_STATUS_CHANGED,
                "token", token.id, {"from": previous.value, "to": status.value}
            )
        return status

    def _refresh_batch_status(self, batch: TokenBatch) -> TokenStatus:
        if batch.status == TokenStatus.CANCELLED:
            return batch.status

        status = self._derive_status(self.get_schedule(batch.id))
        if status != batch.status:
            previous = batch.status
            batch.status = status
            batch.updated_at = datetime.now(timezone.utc)
            self._save_batch(batch)
            self._audit(
                AuditEventType.BATCH_CLOSED if status == TokenStatus.CLOSED else AuditEventType.TOKEN_STATUS_CHANGED,
                "batch", batch.id, {"from": previous.value, "to": status.value}
            )

        # Member tokens follow the batch unless their own schedule is settled
        for token in self.list_tokens(batch_id=batch.id):
            if token.status == TokenStatus.CANCELLED:
                continue
            if status == TokenStatus.CLOSED:
                if token.status != TokenStatus.CLOSED:
                    self._set_token_status(token, TokenStatus.CLOSED)
                    self._audit(AuditEventType.TOKEN_CLOSED, "token", token.id, {"batch_id": batch.id})
            else:
                self._refresh_token_status(token, batch_status=status)
        return status

    def _credit_member_tokens(self, batch: TokenBatch, installment_paid: Money, payment_date: date) -> Dict[str, Money]:
        if not installment_paid.is_positive() or not batch.token_ids:
            return {}

        credits = {}
        shares = split_batch_payment(installment_paid, len(batch.token_ids))
        for token_id, share in zip(batch.token_ids, shares):
            if not share.is_positive():
                continue
            entries = [entry for entry in self.get_schedule(token_id) if entry.is_open]
            if not entries:
                continue
            allocation = allocate_payment(entries, share, payment_date, policy=OverpaymentPolicy.CLAMP)
            for line in allocation.lines:
                self._save_entry(line.entry)
            credits[token_id] = allocation.applied_total
        return credits

    def _persist_allocation(
        self,
        owner_type: str,
        owner_id: str,
        allocation: PaymentAllocation,
        collector_id: str,
        payment_mode: PaymentMode,
        payment_date: date,
        recorded_by: str,
        remarks: Optional[str],
        token_credits: Optional[Dict[str, Money]] = None
    ) -> List[Payment]:
        """Save updated entries and one append-only payment record per touched entry"""
        now = datetime.now(timezone.utc)
        payments = []

        for position, line in enumerate(allocation.lines):
            self._save_entry(line.entry)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_type=owner_type,
                owner_id=owner_id,
                schedule_entry_id=line.entry.entry_id,
                collector_id=collector_id,
                amount=line.applied,
                payment_date=payment_date,
                payment_mode=PaymentMode(payment_mode),
                penalty_waived=line.waived,
                remarks=remarks,
                recorded_by=recorded_by,
                token_credits=dict(token_credits or {}) if position == 0 else {}
            )
            self.storage.save(self.payments_table, payment.id, payment.to_dict())
            payments.append(payment)

            self._audit(
                AuditEventType.PAYMENT_RECORDED, owner_type, owner_id,
                {
                    "payment_id": payment.id,
                    "schedule_entry_id": payment.schedule_entry_id,
                    "amount": line.applied.to_string(),
                    "penalty_waived": line.waived.to_string(),
                    "entry_status": line.entry.status.value,
                    "payment_mode": payment.payment_mode.value
                },
                collector_id
            )

        return payments

    def _credit_collection(
        self,
        amount: Money,
        collector_id: str,
        recorded_by: str,
        user_id: Optional[str],
        payments: List[Payment],
        owner_number: str
    ) -> None:
        """Credit the cash account of whoever took the money"""
        if self.ledger is None or not amount.is_positive():
            return

        if recorded_by == "admin":
            owner_type, owner_id = AccountOwnerType.ADMIN, user_id or "admin"
        else:
            owner_type, owner_id = AccountOwnerType.COLLECTOR, collector_id

        self.ledger.credit(
            owner_type, owner_id, amount, ReferenceType.COLLECTION,
            reference_id=payments[0].id if payments else None,
            description=f"Collection for {owner_number}",
            created_by=owner_id, created_by_role=owner_type.value
        )

    def _debit_collector_for_issue(self, collector_id: str, amount: Money, reference_id: str, number: str) -> None:
        """Collector-issued tokens draw on the collector's cash; a short balance is logged, not fatal"""
        if self.ledger is None:
            return

        balance = self.ledger.get_balance(AccountOwnerType.COLLECTOR, collector_id)
        if balance < amount:
            log_action(
                self.logger, "warning", "Insufficient collector balance for token issue",
                user_id=collector_id, action="issue_debit_skipped", resource=reference_id,
                extra={"required": str(amount.amount), "available": str(balance.amount)}
            )
            return

        self.ledger.debit(
            AccountOwnerType.COLLECTOR, collector_id, amount, ReferenceType.TOKEN_CREATION,
            reference_id=reference_id, description=f"Issued {number}",
            created_by=collector_id, created_by_role="collector"
        )

    def _create_schedule(self, terms: LoanTerms, owner_id: str, quantity: int = 1) -> List[ScheduleEntry]:
        schedule = generate_schedule(terms, owner_id, quantity)
        for entry in schedule:
            self._save_entry(entry)
        self._audit(
            AuditEventType.SCHEDULE_GENERATED, "schedule", owner_id,
            {
                "entries": len(schedule),
                "first_due_date": schedule[0].due_date.isoformat(),
                "last_due_date": schedule[-1].due_date.isoformat(),
                "quantity": quantity
            }
        )
        return schedule

    def _next_numbers(self, prefix: str, table: str, number_field: str, count: int = 1) -> List[str]:
        """Sequential ``PREFIX-YYYYMMDD-NNNN`` numbers continuing today's series"""
        stem = f"{prefix}-{compact_stamp(date.today())}-"
        last = 0
        for record in self.storage.load_all(table):
            number = record.get(number_field) or ""
            if number.startswith(stem):
                last = max(last, int(number[len(stem):]))
        return [f"{stem}{sequence:04d}" for sequence in range(last + 1, last + 1 + count)]

    def _owner_table(self, owner_id: str) -> str:
        if self.storage.exists(self.tokens_table, owner_id):
            return self.tokens_table
        if self.storage.exists(self.batches_table, owner_id):
            return self.batches_table
        raise NotFoundError(f"No token or batch {owner_id}")

    @staticmethod
    def _owner_filters(status, collector_id: Optional[str], customer_id: Optional[str]) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if status is not None:
            if isinstance(status, (list, tuple, set)):
                filters['status'] = [TokenStatus(s).value for s in status]
            else:
                filters['status'] = TokenStatus(status).value
        if collector_id is not None:
            filters['collector_id'] = collector_id
        if customer_id is not None:
            filters['customer_id'] = customer_id
        return filters

    def _set_token_status(self, token: Token, status: TokenStatus, reason: Optional[str] = None) -> None:
        token.status = status
        if reason is not None:
            token.cancel_reason = reason
        token.updated_at = datetime.now(timezone.utc)
        self._save_token(token)

    def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Dict[str, Any],
        user_id: Optional[str] = None
    ) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata, user_id)

    def _save_token(self, token: Token) -> None:
        self.storage.save(self.tokens_table, token.id, token.to_dict())

    def _save_batch(self, batch: TokenBatch) -> None:
        self.storage.save(self.batches_table, batch.id, batch.to_dict())

    def _save_entry(self, entry: ScheduleEntry) -> None:
        self.storage.save(self.schedules_table, entry.entry_id, entry.to_dict())
