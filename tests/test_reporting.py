"""
Tests for dashboard statistics, period reports and daily summaries
"""

import pytest
import json
from decimal import Decimal
from datetime import date, datetime, timezone

from microfinance.storage import InMemoryStorage
from microfinance.audit import AuditTrail
from microfinance.users import UserManager
from microfinance.borrowers import BorrowerManager
from microfinance.loans import LoanManager, LoanStatus
from microfinance.collections import CollectionManager
from microfinance.reporting import (
    ReportingEngine, ReportPeriod, ReportFormat, period_start, next_period_start
)


# Wednesday
NOW = datetime(2024, 1, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuditTrail(storage)


@pytest.fixture
def loans(storage, audit):
    return LoanManager(storage, audit)


@pytest.fixture
def collections(storage, audit, loans):
    return CollectionManager(storage, audit, loans)


@pytest.fixture
def engine(storage, loans, collections):
    return ReportingEngine(storage, loans, collections)


@pytest.fixture
def book(storage, audit, loans, collections):
    """One loan, two collectors and three payments in January 2024"""
    users = UserManager(storage, audit)
    ravi = users.create_user("ravi@example.org", "ravi", "secret1", "Ravi")
    meena = users.create_user("meena@example.org", "meena", "secret1", "Meena")
    asha = BorrowerManager(storage, audit).create_borrower("Asha", "12 Temple Street", "Ramapuram")
    loan = loans.issue_loan(asha.id, Decimal('10000'), Decimal('9500'), 10, date(2024, 1, 1))
    schedule = loans.get_installments(loan.id)

    collections.record_payment(schedule[0].id, ravi.id, Decimal('1000'),
                               payment_date=datetime(2024, 1, 8, 10, 0, tzinfo=timezone.utc))
    collections.record_payment(schedule[1].id, meena.id, Decimal('500'),
                               payment_date=datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
                               notes="half now")
    collections.record_payment(schedule[1].id, ravi.id, Decimal('200'),
                               payment_date=datetime(2024, 1, 17, 9, 30, tzinfo=timezone.utc))
    return {"ravi": ravi, "meena": meena, "loan": loan, "schedule": schedule}


class TestPeriods:
    """Window boundaries"""

    def test_week_starts_on_monday(self):
        start = period_start(NOW, ReportPeriod.WEEKLY)
        assert start == datetime(2024, 1, 15, tzinfo=timezone.utc)
        assert next_period_start(start, ReportPeriod.WEEKLY) == datetime(2024, 1, 22, tzinfo=timezone.utc)

    def test_month_rolls_over_year(self):
        start = period_start(datetime(2023, 12, 31, 23, 59, tzinfo=timezone.utc), ReportPeriod.MONTHLY)
        assert start == datetime(2023, 12, 1, tzinfo=timezone.utc)
        assert next_period_start(start, ReportPeriod.MONTHLY) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_day(self):
        assert period_start(NOW, ReportPeriod.DAILY) == datetime(2024, 1, 17, tzinfo=timezone.utc)


class TestDashboard:
    """Dashboard snapshot"""

    def test_empty_book(self, engine):
        stats = engine.dashboard_stats(NOW)
        assert stats['total_loans'] == 0
        assert stats['total_outstanding'] == "0.00"
        assert stats['today']['collections'] == 0
        assert stats['top_collectors'] == []
        assert stats['recent_payments'] == []

    def test_totals(self, engine, book):
        stats = engine.dashboard_stats(NOW)

        assert stats['total_loans'] == 1
        assert stats['active_loans'] == 1
        assert stats['loan_status_distribution'] == {"ACTIVE": 1, "COMPLETED": 0, "DEFAULTED": 0}
        assert stats['total_borrowers'] == 1
        assert stats['total_principal'] == "10000.00"
        assert stats['total_disbursed'] == "9500.00"
        assert stats['total_collected'] == "1700.00"
        assert stats['total_outstanding'] == "8300.00"
        assert stats['overdue_installments'] == 1

    def test_windows(self, engine, book):
        stats = engine.dashboard_stats(NOW)

        assert (stats['today']['collections'], stats['today']['amount']) == (1, "200.00")
        assert (stats['this_week']['collections'], stats['this_week']['amount']) == (2, "700.00")
        assert (stats['this_month']['collections'], stats['this_month']['amount']) == (3, "1700.00")
        assert stats['this_week']['start'] == "2024-01-15T00:00:00+00:00"
        assert [r['name'] for r in stats['this_week']['by_collector']] == ["Meena", "Ravi"]

    def test_top_collectors(self, engine, book):
        top = engine.dashboard_stats(NOW)['top_collectors']
        assert top == [
            {"collector_id": book["ravi"].id, "name": "Ravi", "collections": 2, "amount": "1200.00"},
            {"collector_id": book["meena"].id, "name": "Meena", "collections": 1, "amount": "500.00"},
        ]

    def test_recent_payments_newest_first(self, engine, book):
        recent = engine.dashboard_stats(NOW)['recent_payments']
        assert [p['amount'] for p in recent] == ["200.00", "500.00", "1000.00"]
        assert recent[0]['time'] == "09:30"
        assert recent[0]['collector_name'] == "Ravi"
        assert recent[0]['loan_number'] == book["loan"].loan_number

    def test_defaulted_loans_not_outstanding(self, engine, loans, book):
        loans.update_loan(book["loan"].id, status=LoanStatus.DEFAULTED)
        stats = engine.dashboard_stats(NOW)
        assert stats['defaulted_loans'] == 1
        assert stats['total_outstanding'] == "0.00"

    def test_report_timezone_shifts_windows(self, storage, loans, collections, book):
        # 2024-01-16 20:00 UTC is already the 17th in India
        collections.record_payment(book["schedule"][2].id, book["ravi"].id, Decimal('100'),
                                   payment_date=datetime(2024, 1, 16, 20, 0, tzinfo=timezone.utc))
        utc = ReportingEngine(storage, loans, collections).dashboard_stats(NOW)
        india = ReportingEngine(storage, loans, collections, report_timezone="Asia/Kolkata").dashboard_stats(NOW)

        assert utc['today']['collections'] == 1
        assert india['today']['collections'] == 2


class TestPeriodReports:
    """Collections folded into buckets"""

    def test_weekly_buckets(self, engine, book):
        result = engine.collections_by_period(date(2024, 1, 1), date(2024, 1, 31), ReportPeriod.WEEKLY)

        assert [row['period_start'] for row in result.data] == [
            "2024-01-01", "2024-01-08", "2024-01-15", "2024-01-22", "2024-01-29"
        ]
        assert [row['collections'] for row in result.data] == [0, 1, 2, 0, 0]
        assert result.data[2]['amount'] == "700.00"
        assert result.totals == {"collections": 3, "amount": "1700.00"}
        assert result.metadata['period'] == "weekly"

    def test_daily_range_is_inclusive(self, engine, book):
        result = engine.collections_by_period(date(2024, 1, 15), date(2024, 1, 17))
        assert [row['collections'] for row in result.data] == [1, 0, 1]

    def test_end_before_start(self, engine):
        with pytest.raises(ValueError):
            engine.collections_by_period(date(2024, 2, 1), date(2024, 1, 1))

    def test_csv_export(self, engine, book):
        result = engine.collections_by_period(date(2024, 1, 1), date(2024, 1, 31), ReportPeriod.MONTHLY)
        lines = engine.export_report(result, ReportFormat.CSV).splitlines()
        assert lines == ["period_start,collections,amount", "2024-01-01,3,1700.00"]

    def test_json_export(self, engine, book):
        result = engine.collections_by_period(date(2024, 1, 8), date(2024, 1, 8))
        exported = json.loads(engine.export_report(result, ReportFormat.JSON))
        assert exported['data'] == [{"period_start": "2024-01-08", "collections": 1, "amount": "1000.00"}]


class TestDailySummary:
    """Summary pushed to the spreadsheet backup"""

    def test_summary(self, engine, book):
        summary = engine.daily_summary(date(2024, 1, 15))

        assert summary['date'] == "2024-01-15"
        assert summary['total_collected'] == "500.00"
        assert summary['total_payments'] == 1
        assert summary['total_outstanding'] == "8300.00"
        assert summary['collectors'][0]['name'] == "Meena"
        assert summary['payments'] == [{
            "loan_number": book["loan"].loan_number,
            "borrower_name": "Asha",
            "amount": "500.00",
            "collector_name": "Meena",
            "time": "10:00",
            "notes": "half now",
        }]

    def test_quiet_day(self, engine, book):
        summary = engine.daily_summary(date(2024, 1, 9))
        assert summary['total_payments'] == 0
        assert summary['total_collected'] == "0.00"
        assert summary['payments'] == []
