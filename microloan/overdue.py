"""
Overdue Processing Module

The daily sweep: applies the active penalty configuration to every open
schedule entry that is past due and moves tokens and batches to overdue.
"""

from datetime import date
from typing import Any, Dict, Optional

from .audit import AuditEventType
from .currency import Money
from .logging_config import get_logger, log_action
from .penalties import PenaltyConfigRegistry
from .tokens import TokenManager, TokenStatus, OPEN_TOKEN_STATUSES


class OverdueProcessor:
    """
    Runs the penalty accrual rule across all open tokens and batches
    """

    def __init__(self, token_manager: TokenManager, penalty_registry: PenaltyConfigRegistry):
        self.token_manager = token_manager
        self.penalty_registry = penalty_registry
        self.audit_trail = token_manager.audit_trail
        self.logger = get_logger("microloan.overdue")

    def process(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Process overdue schedule entries as of a date

        Standalone tokens and batches are swept; tokens that belong to a batch
        are collected (and penalised) through the batch schedule. A failure on
        one owner is logged and counted and the sweep moves on.

        Args:
            as_of: Processing date (defaults to today)

        Returns:
            Counts: ``processed_schedules``, ``penalties_applied``,
            ``penalty_total``, ``tokens_marked_overdue``,
            ``batches_marked_overdue``, ``errors``; ``skipped`` is True when no
            penalty configuration is active
        """
        as_of = as_of or date.today()
        results = {
            "as_of": as_of.isoformat(),
            "skipped": False,
            "processed_schedules": 0,
            "penalties_applied": 0,
            "penalty_total": "0",
            "tokens_marked_overdue": 0,
            "batches_marked_overdue": 0,
            "errors": 0,
            "error_details": []
        }

        config = self.penalty_registry.get_active_config()
        if config is None:
            log_action(
                self.logger, "warning", "No active penalty configuration, overdue sweep skipped",
                action="process_overdue", extra={"as_of": as_of.isoformat()}
            )
            results["skipped"] = True
            return results

        penalty_total = Money.zero(self.token_manager.currency)
        owners = [("batch", batch) for batch in self.token_manager.list_batches(status=list(OPEN_TOKEN_STATUSES))]
        owners += [
            ("token", token) for token in self.token_manager.list_tokens(status=list(OPEN_TOKEN_STATUSES))
            if not token.batch_id
        ]

        for owner_type, owner in owners:
            try:
                outcome = self.token_manager.apply_penalties(owner.id, as_of, config)
            except Exception as e:
                # Log error but continue with other owners
                results["errors"] += 1
                results["error_details"].append({"owner_type": owner_type, "owner_id": owner.id, "error": str(e)})
                log_action(
                    self.logger, "error", "Overdue processing failed",
                    action="process_overdue", resource=f"{owner_type}:{owner.id}",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )
                self.audit_trail.log_event(
                    event_type=AuditEventType.PROCESSING_ERROR,
                    entity_type=owner_type,
                    entity_id=owner.id,
                    metadata={"error": "Overdue processing failed", "message": str(e)}
                )
                continue

            results["processed_schedules"] += outcome["entries_checked"]
            results["penalties_applied"] += outcome["penalties_applied"]
            penalty_total = penalty_total + outcome["penalty_total"]

            if owner.status != TokenStatus.OVERDUE and outcome["status"] == TokenStatus.OVERDUE:
                results[f"{'batches' if owner_type == 'batch' else 'tokens'}_marked_overdue"] += 1

        results["penalty_total"] = str(penalty_total.amount)

        self.audit_trail.log_event(
            event_type=AuditEventType.OVERDUE_SWEEP_COMPLETED,
            entity_type="penalty_config",
            entity_id=config.id,
            metadata={k: v for k, v in results.items() if k != "error_details"}
        )
        log_action(
            self.logger, "info", "Overdue sweep completed",
            action="process_overdue", resource=f"penalty_config:{config.id}",
            extra={k: v for k, v in results.items() if k != "error_details"}
        )
        return results
