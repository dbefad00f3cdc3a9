"""
Cash Account Ledger Module

Running cash balances of admins and collectors. Collections credit the
collector (or admin) who recorded them, collector-issued tokens debit the
collector, and cash moves between admin and collector accounts by transfer.
Balances only change by appending a transaction that carries the balance
after it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money
from .exceptions import InsufficientFundsError, InvalidInputError, NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class AccountOwnerType(Enum):
    """Who holds the cash"""
    ADMIN = "admin"
    COLLECTOR = "collector"


class TransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class ReferenceType(Enum):
    """Business event behind a ledger posting"""
    COLLECTION = "collection"             # Installment collected from a customer
    TOKEN_CREATION = "token_creation"     # Cash handed out for a collector-issued token
    COLLECTOR_CREDIT = "collector_credit"  # Admin side of a transfer to a collector
    ADMIN_CREDIT = "admin_credit"         # Collector side of a transfer from an admin
    COLLECTOR_DEBIT = "collector_debit"   # Collector deposit or manual debit
    ADJUSTMENT = "adjustment"


@dataclass
class CashAccount(StorageRecord):
    """Cash account of one admin or collector"""
    owner_type: AccountOwnerType
    owner_id: str
    balance: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'owner_type': self.owner_type.value,
            'owner_id': self.owner_id,
            'currency': self.balance.currency.code,
            'balance': str(self.balance.amount)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_type=AccountOwnerType(data['owner_type']),
            owner_id=data['owner_id'],
            balance=Money(Decimal(data['balance']), Currency[data['currency']])
        )


@dataclass
class AccountTransaction(StorageRecord):
    """Append-only ledger posting"""
    account_id: str
    transaction_type: TransactionType
    amount: Money
    balance_after: Money
    reference_type: ReferenceType
    reference_id: Optional[str] = None
    description: str = ""
    created_by: Optional[str] = None
    created_by_role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'account_id': self.account_id,
            'transaction_type': self.transaction_type.value,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'balance_after': str(self.balance_after.amount),
            'reference_type': self.reference_type.value,
            'reference_id': self.reference_id,
            'description': self.description,
            'created_by': self.created_by,
            'created_by_role': self.created_by_role
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountTransaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            reference_type=ReferenceType(data['reference_type']),
            reference_id=data.get('reference_id'),
            description=data.get('description', ""),
            created_by=data.get('created_by'),
            created_by_role=data.get('created_by_role')
        )


class AccountLedger:
    """
    Admin and collector cash accounts with running balances
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, currency: Currency = Currency.INR):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.accounts_table = "cash_accounts"
        self.transactions_table = "cash_account_transactions"
        self.logger = get_logger("microloan.accounts")

    @staticmethod
    def account_id_for(owner_type: AccountOwnerType, owner_id: str) -> str:
        return f"{owner_type.value}_{owner_id}"

    def get_or_create_account(self, owner_type: AccountOwnerType, owner_id: str) -> CashAccount:
        """
        Get the cash account of an admin or collector, opening it with a zero
        balance on first use
        """
        owner_type = AccountOwnerType(owner_type)
        account_id = self.account_id_for(owner_type, owner_id)

        with self.storage.atomic(), self.storage.lock(self.accounts_table, account_id):
            data = self.storage.load(self.accounts_table, account_id)
            if data:
                return CashAccount.from_dict(data)

            now = datetime.now(timezone.utc)
            account = CashAccount(
                id=account_id,
                created_at=now,
                updated_at=now,
                owner_type=owner_type,
                owner_id=owner_id,
                balance=Money.zero(self.currency)
            )
            self._save_account(account)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="cash_account",
                entity_id=account_id,
                metadata={"owner_type": owner_type.value, "owner_id": owner_id}
            )
            return account

    def get_account(self, account_id: str) -> CashAccount:
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise NotFoundError(f"Cash account {account_id} not found")
        return CashAccount.from_dict(data)

    def list_accounts(self, owner_type: Optional[AccountOwnerType] = None) -> List[CashAccount]:
        filters = {"owner_type": AccountOwnerType(owner_type).value} if owner_type else {}
        return [CashAccount.from_dict(data) for data in self.storage.find(self.accounts_table, filters)]

    def credit(
        self,
        owner_type: AccountOwnerType,
        owner_id: str,
        amount: Money,
        reference_type: ReferenceType,
        reference_id: Optional[str] = None,
        description: str = "",
        created_by: Optional[str] = None,
        created_by_role: Optional[str] = None
    ) -> AccountTransaction:
        """
        Add cash to an account

        Args:
            owner_type: admin or collector
            owner_id: Admin or collector ID
            amount: Positive amount
            reference_type: Business event behind the posting
            reference_id: ID of the payment, token, batch or counterparty
            description: Free text
            created_by: User who triggered the posting
            created_by_role: Role of that user

        Returns:
            The appended AccountTransaction
        """
        return self._post(
            TransactionType.CREDIT, owner_type, owner_id, amount, reference_type,
            reference_id, description, created_by, created_by_role
        )

    def debit(
        self,
        owner_type: AccountOwnerType,
        owner_id: str,
        amount: Money,
        reference_type: ReferenceType,
        reference_id: Optional[str] = None,
        description: str = "",
        created_by: Optional[str] = None,
        created_by_role: Optional[str] = None
    ) -> AccountTransaction:
        """
        Take cash out of an account

        Raises:
            InsufficientFundsError: amount larger than the current balance
        """
        return self._post(
            TransactionType.DEBIT, owner_type, owner_id, amount, reference_type,
            reference_id, description, created_by, created_by_role
        )

    def transfer(
        self,
        from_owner: AccountOwnerType,
        from_id: str,
        to_owner: AccountOwnerType,
        to_id: str,
        amount: Money,
        description: str = "",
        created_by: Optional[str] = None
    ) -> Dict[str, AccountTransaction]:
        """
        Move cash between accounts in one transaction.

        Admin to collector is an advance (``collector_credit`` on the admin
        side, ``admin_credit`` on the collector side); collector to admin is a
        deposit (``collector_debit`` on both sides).

        Returns:
            {"debit": ..., "credit": ...}
        """
        from_owner = AccountOwnerType(from_owner)
        to_owner = AccountOwnerType(to_owner)

        if from_owner == AccountOwnerType.ADMIN:
            debit_reference, credit_reference = ReferenceType.COLLECTOR_CREDIT, ReferenceType.ADMIN_CREDIT
        else:
            debit_reference, credit_reference = ReferenceType.COLLECTOR_DEBIT, ReferenceType.COLLECTOR_DEBIT

        with self.storage.atomic():
            debit_txn = self.debit(
                from_owner, from_id, amount, debit_reference, reference_id=to_id,
                description=description or f"Transfer to {to_owner.value} {to_id}",
                created_by=created_by, created_by_role=from_owner.value
            )
            credit_txn = self.credit(
                to_owner, to_id, amount, credit_reference, reference_id=from_id,
                description=description or f"Transfer from {from_owner.value} {from_id}",
                created_by=created_by, created_by_role=from_owner.value
            )

        return {"debit": debit_txn, "credit": credit_txn}

    def get_balance(self, owner_type: AccountOwnerType, owner_id: str) -> Money:
        return self.get_or_create_account(owner_type, owner_id).balance

    def get_transactions(self, account_id: str) -> List[AccountTransaction]:
        """Postings of an account, oldest first"""
        return [
            AccountTransaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {"account_id": account_id})
        ]

    def verify_balance(self, account_id: str) -> Dict[str, Any]:
        """
        Replay the transaction log of an account.

        Returns:
            ``valid``, the ``stored_balance``, the ``computed_balance`` and the
            IDs of postings whose ``balance_after`` does not follow from the
            previous one
        """
        account = self.get_account(account_id)
        running = Money.zero(account.balance.currency)
        mismatches = []

        for txn in self.get_transactions(account_id):
            running = running + txn.amount if txn.transaction_type == TransactionType.CREDIT else running - txn.amount
            if running != txn.balance_after:
                mismatches.append(txn.id)

        return {
            "valid": not mismatches and running == account.balance,
            "stored_balance": account.balance,
            "computed_balance": running,
            "mismatched_transactions": mismatches
        }

    def _post(
        self,
        transaction_type: TransactionType,
        owner_type: AccountOwnerType,
        owner_id: str,
        amount: Money,
        reference_type: ReferenceType,
        reference_id: Optional[str],
        description: str,
        created_by: Optional[str],
        created_by_role: Optional[str]
    ) -> AccountTransaction:
        if not amount.is_positive():
            raise InvalidInputError("Posting amount must be positive")

        owner_type = AccountOwnerType(owner_type)
        account_id = self.account_id_for(owner_type, owner_id)

        # Payments reach here already inside atomic(), so the account lock comes second
        with self.storage.atomic(), self.storage.lock(self.accounts_table, account_id):
            account = self.get_or_create_account(owner_type, owner_id)

            if transaction_type == TransactionType.DEBIT:
                if amount > account.balance:
                    raise InsufficientFundsError(
                        f"Insufficient balance in {account.id}. "
                        f"Available: {account.balance.to_string()}, required: {amount.to_string()}"
                    )
                new_balance = account.balance - amount
            else:
                new_balance = account.balance + amount

            now = datetime.now(timezone.utc)
            txn = AccountTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                transaction_type=transaction_type,
                amount=amount,
                balance_after=new_balance,
                reference_type=ReferenceType(reference_type),
                reference_id=reference_id,
                description=description,
                created_by=created_by,
                created_by_role=created_by_role
            )
            self.storage.save(self.transactions_table, txn.id, txn.to_dict())

            account.balance = new_balance
            account.updated_at = now
            self._save_account(account)

            event_type = (
                AuditEventType.ACCOUNT_CREDITED if transaction_type == TransactionType.CREDIT
                else AuditEventType.ACCOUNT_DEBITED
            )
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="cash_account",
                entity_id=account.id,
                metadata={
                    "transaction_id": txn.id,
                    "amount": amount.to_string(),
                    "balance_after": new_balance.to_string(),
                    "reference_type": txn.reference_type.value,
                    "reference_id": reference_id
                },
                user_id=created_by
            )

        log_action(
            self.logger, "info", f"Cash account {transaction_type.value}",
            user_id=created_by, action=f"account_{transaction_type.value}",
            resource=f"cash_account:{account.id}",
            extra={"amount": str(amount.amount), "balance_after": str(new_balance.amount)}
        )
        return txn

    def _save_account(self, account: CashAccount) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())
