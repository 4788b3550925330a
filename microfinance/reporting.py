"""
Reporting Module

Read-only aggregation over loans, installments and collections: the portal
dashboard, collections bucketed by day/week/month, and the daily summary
pushed to the spreadsheet backup.

Time windows are computed in the configured report timezone. A week starts
on Monday 00:00 and a month on day 1 00:00; every window is half-open,
[start, next_start).
"""

from datetime import datetime, timezone, timedelta, date, time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from enum import Enum
from zoneinfo import ZoneInfo
import csv
import io
import json
import uuid

from .currency import Money, Currency, sum_money
from .storage import StorageInterface
from .loans import LoanManager, Loan, Installment, LoanStatus
from .collections import CollectionManager, Collection
from .errors import ValidationError


class ReportPeriod(Enum):
    """Bucket sizes for period reports"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


def period_start(moment: datetime, period: ReportPeriod) -> datetime:
    """Start of the bucket containing `moment`, in moment's own timezone"""
    midnight = datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)
    if period == ReportPeriod.DAILY:
        return midnight
    if period == ReportPeriod.WEEKLY:
        return midnight - timedelta(days=moment.weekday())
    return midnight.replace(day=1)


def next_period_start(start: datetime, period: ReportPeriod) -> datetime:
    if period == ReportPeriod.DAILY:
        return start + timedelta(days=1)
    if period == ReportPeriod.WEEKLY:
        return start + timedelta(weeks=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class ReportingEngine:
    """
    Dashboard and summary reports for the back-office
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        collection_manager: CollectionManager,
        currency: Currency = Currency.INR,
        report_timezone: str = "UTC",
        top_collectors: int = 5,
        recent_payments: int = 10
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.collection_manager = collection_manager
        self.currency = currency
        self.zone = ZoneInfo(report_timezone)
        self.top_collectors = top_collectors
        self.recent_payments = recent_payments

    # Helpers

    def _local(self, moment: Optional[datetime]) -> datetime:
        moment = moment or datetime.now(timezone.utc)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.zone)

    def _windows(self, now: datetime) -> Dict[str, Tuple[datetime, datetime]]:
        local = self._local(now)
        windows = {}
        for name, period in (("today", ReportPeriod.DAILY),
                             ("this_week", ReportPeriod.WEEKLY),
                             ("this_month", ReportPeriod.MONTHLY)):
            start = period_start(local, period)
            windows[name] = (start, next_period_start(start, period))
        return windows

    def _amount(self, collections: Iterable[Collection]) -> Money:
        return sum_money((c.amount for c in collections), self.currency)

    def _collector_names(self) -> Dict[str, str]:
        return {u['id']: u['name'] for u in self.storage.load_all(self.collection_manager.users_table)}

    def _collector_totals(self, collections: List[Collection],
                          names: Dict[str, str]) -> List[Dict[str, Any]]:
        """Per-collector count and amount, largest amount first"""
        grouped: Dict[str, List[Collection]] = {}
        for collection in collections:
            grouped.setdefault(collection.collector_id, []).append(collection)

        rows = [
            {
                'collector_id': collector_id,
                'name': names.get(collector_id, "Unknown"),
                'collections': len(items),
                'amount': self._amount(items).amount,
            }
            for collector_id, items in grouped.items()
        ]
        rows.sort(key=lambda r: (-r['amount'], r['name']))
        for row in rows:
            row['amount'] = str(row['amount'])
        return rows

    def _loan_book(self) -> Tuple[List[Loan], Dict[str, List[Installment]]]:
        loans = [Loan.from_dict(d) for d in self.storage.load_all(self.loan_manager.loans_table)]
        installments: Dict[str, List[Installment]] = {}
        for data in self.storage.load_all(self.loan_manager.installments_table):
            inst = Installment.from_dict(data)
            installments.setdefault(inst.loan_id, []).append(inst)
        return loans, installments

    def _active_outstanding(self, loans: List[Loan],
                            installments: Dict[str, List[Installment]]) -> Money:
        return sum_money(
            (
                self.loan_manager.outstanding(loan, installments.get(loan.id, []))
                for loan in loans if loan.status == LoanStatus.ACTIVE
            ),
            self.currency
        )

    def today(self) -> date:
        """Current calendar day in the report timezone"""
        return self._local(None).date()

    def _all_collections(self) -> List[Collection]:
        return self.collection_manager.find_collections()

    # Reports

    def dashboard_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Snapshot for the portal dashboard

        Loan counts and status distribution, borrower count, money totals,
        today / this week / this month collection windows (each with a
        per-collector breakdown), the top collectors and the most recent
        payments.
        """
        now = now or datetime.now(timezone.utc)
        loans, installments = self._loan_book()
        collections = self._all_collections()
        names = self._collector_names()
        today = self._local(now).date()

        distribution = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            distribution[loan.status.value] += 1

        overdue = sum(
            1 for items in installments.values() for inst in items if inst.is_overdue(today)
        )

        windows = {}
        for name, (start, end) in self._windows(now).items():
            in_window = [c for c in collections if start <= c.payment_date < end]
            windows[name] = {
                'start': start.isoformat(),
                'end': end.isoformat(),
                'collections': len(in_window),
                'amount': str(self._amount(in_window).amount),
                'by_collector': self._collector_totals(in_window, names),
            }

        recent = self.collection_manager.enrich(collections[:self.recent_payments])

        return {
            'generated_at': now.isoformat(),
            'currency': self.currency.code,
            'total_loans': len(loans),
            'active_loans': distribution[LoanStatus.ACTIVE.value],
            'completed_loans': distribution[LoanStatus.COMPLETED.value],
            'defaulted_loans': distribution[LoanStatus.DEFAULTED.value],
            'loan_status_distribution': distribution,
            'total_borrowers': self.storage.count(self.loan_manager.borrowers_table),
            'total_principal': str(sum_money((l.principal_amount for l in loans), self.currency).amount),
            'total_disbursed': str(sum_money((l.disbursed_amount for l in loans), self.currency).amount),
            'total_collected': str(self._amount(collections).amount),
            'total_outstanding': str(self._active_outstanding(loans, installments).amount),
            'overdue_installments': overdue,
            'today': windows['today'],
            'this_week': windows['this_week'],
            'this_month': windows['this_month'],
            'top_collectors': self._collector_totals(collections, names)[:self.top_collectors],
            'recent_payments': [
                {
                    'id': view['id'],
                    'loan_number': view['loan_number'],
                    'borrower_name': view['borrower_name'],
                    'amount': view['amount'],
                    'collector_name': view['collector_name'],
                    'payment_date': view['payment_date'],
                    'time': self._local(datetime.fromisoformat(view['payment_date'])).strftime('%H:%M'),
                }
                for view in recent
            ],
        }

    def collections_by_period(self, start: date, end: date,
                              period: ReportPeriod = ReportPeriod.DAILY) -> ReportResult:
        """
        Collections folded into day, week or month buckets between two
        calendar days (inclusive), in the report timezone.
        """
        if end < start:
            raise ValidationError("End date must not be before start date")

        range_start = datetime.combine(start, time.min, tzinfo=self.zone)
        range_end = datetime.combine(end + timedelta(days=1), time.min, tzinfo=self.zone)
        collections = [
            c for c in self._all_collections() if range_start <= c.payment_date < range_end
        ]

        buckets: Dict[datetime, List[Collection]] = {}
        cursor = period_start(range_start, period)
        while cursor < range_end:
            buckets[cursor] = []
            cursor = next_period_start(cursor, period)
        for collection in collections:
            buckets[period_start(self._local(collection.payment_date), period)].append(collection)

        data = [
            {
                'period_start': bucket.date().isoformat(),
                'collections': len(items),
                'amount': str(self._amount(items).amount),
            }
            for bucket, items in sorted(buckets.items())
        ]

        return ReportResult(
            report_id=str(uuid.uuid4()),
            generated_at=datetime.now(timezone.utc),
            period_start=range_start,
            period_end=range_end,
            data=data,
            totals={
                'collections': len(collections),
                'amount': str(self._amount(collections).amount),
            },
            metadata={
                'row_count': len(data),
                'period': period.value,
                'currency': self.currency.code,
                'timezone': str(self.zone),
            }
        )

    def daily_summary(self, day: Optional[date] = None) -> Dict[str, Any]:
        """
        Summary of one day's collections for the spreadsheet backup

        Payments are listed oldest first with their local HH:MM time.
        """
        day = day or self.today()
        start = datetime.combine(day, time.min, tzinfo=self.zone)
        end = start + timedelta(days=1)

        collections = [c for c in self._all_collections() if start <= c.payment_date < end]
        collections.sort(key=lambda c: c.payment_date)
        loans, installments = self._loan_book()

        return {
            'date': day.isoformat(),
            'currency': self.currency.code,
            'total_collected': str(self._amount(collections).amount),
            'total_payments': len(collections),
            'total_outstanding': str(self._active_outstanding(loans, installments).amount),
            'collectors': self._collector_totals(collections, self._collector_names()),
            'payments': [
                {
                    'loan_number': view['loan_number'],
                    'borrower_name': view['borrower_name'],
                    'amount': view['amount'],
                    'collector_name': view['collector_name'],
                    'time': self._local(datetime.fromisoformat(view['payment_date'])).strftime('%H:%M'),
                    'notes': view['notes'] or "",
                }
                for view in self.collection_manager.enrich(collections)
            ],
        }

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'period_start': result.period_start.isoformat(),
                'period_end': result.period_end.isoformat(),
                'data': result.data,
                'totals': result.totals,
                'metadata': result.metadata
            }

        elif format == ReportFormat.JSON:
            return json.dumps(self.export_report(result, ReportFormat.DICT), indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()
            if result.data:
                writer = csv.DictWriter(output, fieldnames=list(result.data[0].keys()))
                writer.writeheader()
                writer.writerows(result.data)
            return output.getvalue()

        else:
            raise ValueError(f"Unsupported export format: {format}")
