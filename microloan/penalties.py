"""
Penalty Module

Penalty accrual rule for overdue schedule entries (fixed amount or percent of
the installment, after a number of grace days), waivers, manual overrides, and
the registry that keeps exactly one penalty configuration active.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .config import MicroloanConfig, get_config
from .currency import Money
from .dates import days_overdue
from .exceptions import InvalidInputError, NotFoundError
from .logging_config import get_logger, log_action
from .schedule import ScheduleEntry, ScheduleStatus
from .storage import StorageInterface, StorageRecord


class PenaltyType(Enum):
    """Penalty formula"""
    FIXED = "fixed"      # Flat amount per overdue entry (per token)
    PERCENT = "percent"  # Percent of the installment


@dataclass
class PenaltyConfig(StorageRecord):
    """Penalty configuration; at most one is active at a time"""
    penalty_type: PenaltyType
    penalty_value: Decimal
    grace_days: int = 0
    apply_to_loan_type: Optional[str] = None  # Label only, not a sweep filter
    is_active: bool = True

    def __post_init__(self):
        if isinstance(self.penalty_type, str):
            try:
                self.penalty_type = PenaltyType(self.penalty_type)
            except ValueError:
                raise InvalidInputError(f"Invalid penalty type: {self.penalty_type}")
        if not isinstance(self.penalty_value, Decimal):
            self.penalty_value = Decimal(str(self.penalty_value))
        if self.penalty_value < 0:
            raise InvalidInputError("Penalty value cannot be negative")
        if self.grace_days < 0:
            raise InvalidInputError("Grace days cannot be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PenaltyConfig':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            penalty_type=PenaltyType(data['penalty_type']),
            penalty_value=Decimal(data['penalty_value']),
            grace_days=data['grace_days'],
            apply_to_loan_type=data.get('apply_to_loan_type'),
            is_active=data['is_active']
        )


def calculate_penalty(installment: Money, config: PenaltyConfig, quantity: int = 1) -> Money:
    """
    Penalty for one overdue entry.

    Computed per token and multiplied by ``quantity``: a fixed penalty is
    charged once per token, a percent penalty is a percent of the per-token
    installment.
    """
    if config.penalty_type == PenaltyType.FIXED:
        per_token = Money(config.penalty_value, installment.currency)
    else:
        per_token_installment = installment.amount / Decimal(quantity)
        per_token = Money(per_token_installment * config.penalty_value / Decimal('100'), installment.currency)
    return per_token * quantity


def apply_penalty(entry: ScheduleEntry, config: Optional[PenaltyConfig], as_of: date) -> ScheduleEntry:
    """
    Apply the accrual rule to one entry as of a date.

    - no active configuration, paid entries, or ``as_of <= due_date + grace_days``:
      entry returned unchanged
    - penalty already accrued or overridden: only the status moves to overdue
    - otherwise the penalty is set by the formula and the entry becomes overdue

    The penalty is flat (not per day), so repeated application is idempotent
    and ``total_due`` never decreases as ``as_of`` advances.
    """
    if config is None or entry.is_paid:
        return entry
    if days_overdue(entry.due_date, as_of) <= config.grace_days:
        return entry

    if entry.penalty_applied_on or entry.penalty_overridden:
        if entry.status == ScheduleStatus.OVERDUE:
            return entry
        return replace(entry, status=ScheduleStatus.OVERDUE)

    penalty = calculate_penalty(entry.installment_amount, config, entry.quantity)
    return replace(
        entry,
        penalty_amount=penalty,
        penalty_applied_on=as_of,
        status=ScheduleStatus.OVERDUE
    )


def waive_penalty(entry: ScheduleEntry, amount: Money, as_of: Optional[date] = None) -> ScheduleEntry:
    """
    Set the waived part of the penalty.

    The waiver replaces any earlier waiver and is clamped to
    ``[0, penalty_amount]``; the accrued penalty itself is left untouched.
    A waiver can settle an entry whose payments already cover the rest.

    Raises:
        InvalidInputError: negative amount
    """
    if amount.is_negative():
        raise InvalidInputError("Waived amount cannot be negative")
    waived = min(amount, entry.penalty_amount)
    return replace(entry, penalty_waived=waived).with_status_from_amounts(as_of)


def override_penalty(
    entry: ScheduleEntry,
    penalty_amount: Optional[Money] = None,
    penalty_per_token: Optional[Money] = None,
    as_of: Optional[date] = None
) -> ScheduleEntry:
    """
    Manually set the penalty of an entry, bypassing the formula.

    For batch entries either the total or the per-token penalty may be given;
    the other is derived from the entry quantity. An existing waiver is clamped
    to the new penalty. Overridden entries are never recomputed by the sweep.

    Raises:
        InvalidInputError: nothing given, negative values, or inconsistent total/per-token values
    """
    if penalty_amount is None and penalty_per_token is None:
        raise InvalidInputError("Either penalty_amount or penalty_per_token is required")

    if penalty_amount is None:
        penalty_amount = penalty_per_token * entry.quantity
    elif penalty_per_token is not None and penalty_per_token * entry.quantity != penalty_amount:
        raise InvalidInputError(
            f"Total penalty {penalty_amount.to_string()} does not equal "
            f"{penalty_per_token.to_string()} x {entry.quantity}"
        )

    if penalty_amount.is_negative():
        raise InvalidInputError("Penalty cannot be negative")

    updated = replace(
        entry,
        penalty_amount=penalty_amount,
        penalty_waived=min(entry.penalty_waived, penalty_amount),
        penalty_overridden=True
    )
    return updated.with_status_from_amounts(as_of)


class PenaltyConfigRegistry:
    """
    Stores penalty configurations and keeps at most one of them active
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[MicroloanConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.table_name = "penalty_configs"
        self.logger = get_logger("microloan.penalties")

    def create_config(
        self,
        penalty_type: Union[PenaltyType, str],
        penalty_value: Union[Decimal, int, str],
        grace_days: Optional[int] = None,
        apply_to_loan_type: Optional[str] = None,
        is_active: bool = True
    ) -> PenaltyConfig:
        """
        Create a penalty configuration

        Args:
            penalty_type: fixed or percent
            penalty_value: Amount (fixed) or percent (percent), >= 0
            grace_days: Days after the due date before a penalty accrues, >= 0
                (defaults to ``default_grace_days`` of the configuration)
            apply_to_loan_type: Loan type label, stored and audited only;
                the sweep applies the active configuration to every owner
            is_active: Activate immediately (deactivates every other configuration)

        Returns:
            Created PenaltyConfig
        """
        if grace_days is None:
            grace_days = self.config.default_grace_days
        now = datetime.now(timezone.utc)
        config = PenaltyConfig(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            penalty_type=penalty_type,
            penalty_value=penalty_value,
            grace_days=grace_days,
            apply_to_loan_type=apply_to_loan_type,
            is_active=False
        )

        with self.storage.atomic():
            self._save(config)
            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_CONFIG_CREATED,
                entity_type="penalty_config",
                entity_id=config.id,
                metadata={
                    "penalty_type": config.penalty_type.value,
                    "penalty_value": str(config.penalty_value),
                    "grace_days": config.grace_days
                }
            )
            if is_active:
                config = self.activate(config.id)

        return config

    def update_config(
        self,
        config_id: str,
        penalty_type: Optional[Union[PenaltyType, str]] = None,
        penalty_value: Optional[Union[Decimal, int, str]] = None,
        grace_days: Optional[int] = None,
        apply_to_loan_type: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> PenaltyConfig:
        """Update fields of a configuration; ``is_active=True`` goes through activate()"""
        existing = self.get_config(config_id)

        updated = PenaltyConfig(
            id=existing.id,
            created_at=existing.created_at,
            updated_at=datetime.now(timezone.utc),
            penalty_type=penalty_type if penalty_type is not None else existing.penalty_type,
            penalty_value=penalty_value if penalty_value is not None else existing.penalty_value,
            grace_days=grace_days if grace_days is not None else existing.grace_days,
            apply_to_loan_type=apply_to_loan_type if apply_to_loan_type is not None else existing.apply_to_loan_type,
            is_active=existing.is_active
        )

        with self.storage.atomic():
            self._save(updated)
            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_CONFIG_UPDATED,
                entity_type="penalty_config",
                entity_id=config_id,
                metadata={
                    "penalty_type": updated.penalty_type.value,
                    "penalty_value": str(updated.penalty_value),
                    "grace_days": updated.grace_days
                }
            )
            if is_active is True:
                updated = self.activate(config_id)
            elif is_active is False:
                updated = self.deactivate(config_id)

        return updated

    def activate(self, config_id: str) -> PenaltyConfig:
        """Make one configuration the active one, deactivating all others atomically"""
        with self.storage.atomic():
            target = self.get_config(config_id)
            now = datetime.now(timezone.utc)

            for data in self.storage.find(self.table_name, {"is_active": True}):
                if data['id'] != config_id:
                    other = PenaltyConfig.from_dict(data)
                    other.is_active = False
                    other.updated_at = now
                    self._save(other)

            target.is_active = True
            target.updated_at = now
            self._save(target)

            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_CONFIG_ACTIVATED,
                entity_type="penalty_config",
                entity_id=config_id,
                metadata={"penalty_type": target.penalty_type.value}
            )

        log_action(
            self.logger, "info", "Penalty configuration activated",
            action="activate_penalty_config", resource=f"penalty_config:{config_id}",
            extra={
                "penalty_type": target.penalty_type.value,
                "penalty_value": str(target.penalty_value),
                "grace_days": target.grace_days
            }
        )
        return target

    def deactivate(self, config_id: str) -> PenaltyConfig:
        config = self.get_config(config_id)
        config.is_active = False
        config.updated_at = datetime.now(timezone.utc)
        self._save(config)
        return config

    def get_config(self, config_id: str) -> PenaltyConfig:
        data = self.storage.load(self.table_name, config_id)
        if not data:
            raise NotFoundError(f"Penalty configuration {config_id} not found")
        return PenaltyConfig.from_dict(data)

    def get_active_config(self) -> Optional[PenaltyConfig]:
        """The active configuration, or None when penalties are switched off"""
        active = [PenaltyConfig.from_dict(data) for data in self.storage.find(self.table_name, {"is_active": True})]
        if not active:
            return None
        return max(active, key=lambda config: config.created_at)

    def list_configs(self) -> List[PenaltyConfig]:
        """All configurations, active first, then newest first"""
        configs = [PenaltyConfig.from_dict(data) for data in self.storage.load_all(self.table_name)]
        configs.sort(key=lambda config: config.created_at, reverse=True)
        configs.sort(key=lambda config: not config.is_active)
        return configs

    def delete_config(self, config_id: str) -> None:
        with self.storage.atomic():
            self.get_config(config_id)
            self.storage.delete(self.table_name, config_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_CONFIG_DELETED,
                entity_type="penalty_config",
                entity_id=config_id
            )

    def _save(self, config: PenaltyConfig) -> None:
        self.storage.save(self.table_name, config.id, config.to_dict())
