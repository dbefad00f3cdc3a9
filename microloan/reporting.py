"""
Reporting Module

Collection reports over tokens and batches: overdue report, collector due
list and portfolio summary, with dict/JSON/CSV export.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
import csv
import io
import json
import uuid

from .currency import Money, money_sum
from .dates import days_overdue
from .tokens import Token, TokenBatch, TokenManager, TokenStatus, OPEN_TOKEN_STATUSES

HUNDRED = Decimal('100')


def collection_efficiency(total_due: Union[Money, Decimal], total_collected: Union[Money, Decimal]) -> Decimal:
    """Collected as a percentage of due, rounded to 2 places; 0 when nothing is due"""
    due = total_due.amount if isinstance(total_due, Money) else Decimal(str(total_due))
    collected = total_collected.amount if isinstance(total_collected, Money) else Decimal(str(total_collected))
    if due == 0:
        return Decimal('0')
    return (collected / due * HUNDRED).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    report_name: str
    generated_at: datetime
    as_of: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


class ReportGenerator:
    """
    Builds collection reports from the token manager's records
    """

    def __init__(self, token_manager: TokenManager):
        self.token_manager = token_manager
        self.currency = token_manager.currency

    def overdue_report(self, as_of: Optional[date] = None) -> ReportResult:
        """
        Tokens and batches with unpaid entries past their due date

        One row per owner: days overdue of the oldest unpaid entry, number of
        overdue entries, pending amount, net penalty and last payment date.
        Rows are ordered most overdue first.
        """
        as_of = as_of or date.today()
        rows = []

        for owner_type, owner, number in self._open_owners():
            overdue = [
                entry for entry in self.token_manager.get_schedule(owner.id)
                if entry.is_open and entry.due_date < as_of
            ]
            if not overdue:
                continue

            payments = self.token_manager.get_payments(owner.id)
            last_payment = max((p.payment_date for p in payments if p.amount.is_positive()), default=None)

            rows.append({
                'owner_type': owner_type,
                'owner_id': owner.id,
                'number': number,
                'customer_id': owner.customer_id,
                'collector_id': owner.collector_id,
                'status': owner.status.value,
                'overdue_entries': len(overdue),
                'overdue_days': days_overdue(overdue[0].due_date, as_of),
                'pending_amount': self._sum(entry.outstanding for entry in overdue),
                'penalty_amount': self._sum(entry.net_penalty for entry in overdue),
                'last_payment_date': last_payment.isoformat() if last_payment else None
            })

        rows.sort(key=lambda row: row['overdue_days'], reverse=True)
        totals = {
            'owners': len(rows),
            'pending_amount': self._sum(row['pending_amount'] for row in rows),
            'penalty_amount': self._sum(row['penalty_amount'] for row in rows)
        }
        return self._result("overdue_report", as_of, rows, totals)

    def due_list(self, collector_id: str, on_date: Optional[date] = None) -> ReportResult:
        """Open entries of a collector's tokens and batches due on or before a date"""
        on_date = on_date or date.today()
        rows = []

        for owner_type, owner, number in self._open_owners(collector_id):
            for entry in self.token_manager.get_schedule(owner.id):
                if not entry.is_open or entry.due_date > on_date:
                    continue
                rows.append({
                    'owner_type': owner_type,
                    'owner_id': owner.id,
                    'number': number,
                    'customer_id': owner.customer_id,
                    'entry_id': entry.entry_id,
                    'due_date': entry.due_date.isoformat(),
                    'quantity': entry.quantity,
                    'total_due': entry.total_due,
                    'paid_amount': entry.paid_amount,
                    'outstanding': entry.outstanding,
                    'status': entry.status.value
                })

        rows.sort(key=lambda row: (row['due_date'], row['number']))
        totals = {
            'entries': len(rows),
            'outstanding': self._sum(row['outstanding'] for row in rows)
        }
        return self._result("due_list", on_date, rows, totals, {'collector_id': collector_id})

    def portfolio_summary(self, as_of: Optional[date] = None) -> ReportResult:
        """
        Portfolio totals as of a date.

        Batches count once (their member tokens are not added again). The
        collection efficiency compares what was collected on entries due up
        to ``as_of`` with what those entries asked for.
        """
        as_of = as_of or date.today()
        counts = {status.value: 0 for status in TokenStatus}
        disbursed, payable = [], []
        collected, penalties, waived, outstanding, overdue = [], [], [], [], []
        due_to_date, collected_to_date = [], []

        for owner_type, owner, _ in self._all_owners():
            counts[owner.status.value] += 1
            quantity = owner.quantity if owner_type == "batch" else 1
            disbursed.append(owner.principal * quantity)

            for entry in self.token_manager.get_schedule(owner.id):
                payable.append(entry.installment_amount)
                collected.append(entry.paid_amount)
                penalties.append(entry.penalty_amount)
                waived.append(entry.penalty_waived)

                if owner.status == TokenStatus.CANCELLED:
                    continue
                if entry.is_open:
                    outstanding.append(entry.outstanding)
                    if entry.due_date < as_of:
                        overdue.append(entry.outstanding)
                if entry.due_date <= as_of:
                    due_to_date.append(entry.total_due)
                    collected_to_date.append(entry.paid_amount)

        totals = {
            'owners_by_status': counts,
            'disbursed': self._sum(disbursed),
            'total_payable': self._sum(payable),
            'collected': self._sum(collected),
            'penalties': self._sum(penalties),
            'penalties_waived': self._sum(waived),
            'outstanding': self._sum(outstanding),
            'overdue_amount': self._sum(overdue),
            'collection_efficiency': collection_efficiency(self._sum(due_to_date), self._sum(collected_to_date))
        }
        return self._result("portfolio_summary", as_of, [], totals)

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'report_name': result.report_name,
                'generated_at': result.generated_at.isoformat(),
                'as_of': result.as_of.isoformat(),
                'data': [self._plain(row) for row in result.data],
                'totals': self._plain(result.totals),
                'metadata': result.metadata
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()

            if result.data:
                headers = list(result.data[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers)
                writer.writeheader()
                for row in result.data:
                    writer.writerow(self._plain(row))

            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")

    def _open_owners(self, collector_id: Optional[str] = None) -> List[Tuple[str, Union[Token, TokenBatch], str]]:
        """Open batches and standalone open tokens"""
        statuses = list(OPEN_TOKEN_STATUSES)
        owners = [
            ("batch", batch, batch.batch_number)
            for batch in self.token_manager.list_batches(status=statuses, collector_id=collector_id)
        ]
        owners += [
            ("token", token, token.token_number)
            for token in self.token_manager.list_tokens(status=statuses, collector_id=collector_id)
            if not token.batch_id
        ]
        return owners

    def _all_owners(self) -> List[Tuple[str, Union[Token, TokenBatch], str]]:
        owners = [("batch", batch, batch.batch_number) for batch in self.token_manager.list_batches()]
        owners += [
            ("token", token, token.token_number)
            for token in self.token_manager.list_tokens() if not token.batch_id
        ]
        return owners

    def _sum(self, values) -> Money:
        return money_sum(values, self.currency)

    @staticmethod
    def _plain(row: Dict[str, Any]) -> Dict[str, Any]:
        """Money values as Decimal strings"""
        plain = {}
        for key, value in row.items():
            if isinstance(value, Money):
                value = str(value.amount)
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, dict):
                value = ReportGenerator._plain(value)
            plain[key] = value
        return plain

    @staticmethod
    def _result(
        name: str,
        as_of: date,
        rows: List[Dict[str, Any]],
        totals: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> ReportResult:
        result = ReportResult(
            report_id=str(uuid.uuid4()),
            report_name=name,
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=rows,
            totals=totals
        )
        if metadata:
            result.metadata.update(metadata)
        return result
