"""
Tests for recording and correcting collections
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone
from concurrent.futures import ThreadPoolExecutor

from microfinance.storage import InMemoryStorage
from microfinance.audit import AuditTrail, AuditEventType
from microfinance.users import UserManager
from microfinance.borrowers import BorrowerManager
from microfinance.loans import LoanManager, LoanStatus, InstallmentStatus
from microfinance.collections import CollectionManager, as_utc
from microfinance.errors import NotFoundError, ValidationError


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuditTrail(storage)


@pytest.fixture
def users(storage, audit):
    return UserManager(storage, audit)


@pytest.fixture
def ravi(users):
    return users.create_user("ravi@example.org", "ravi", "secret1", "Ravi")


@pytest.fixture
def loans(storage, audit):
    return LoanManager(storage, audit)


@pytest.fixture
def collections(storage, audit, loans):
    return CollectionManager(storage, audit, loans)


@pytest.fixture
def asha(storage, audit):
    return BorrowerManager(storage, audit).create_borrower("Asha", "12 Temple Street", "Ramapuram")


@pytest.fixture
def loan(loans, asha):
    return loans.issue_loan(asha.id, Decimal('10000'), Decimal('10000'), 10, date(2024, 1, 1))


@pytest.fixture
def schedule(loans, loan):
    return loans.get_installments(loan.id)


def _at(day, hour=10, minute=0):
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


class TestRecordPayment:
    """Payments against installments"""

    def test_full_then_partial_payment(self, collections, loans, loan, schedule, ravi):
        collections.record_payment(schedule[0].id, ravi.id, Decimal('1000'), payment_date=_at(8))
        assert loans.get_installment(schedule[0].id).status == InstallmentStatus.PAID
        assert loans.outstanding(loan).amount == Decimal('9000.00')

        collections.record_payment(schedule[1].id, ravi.id, Decimal('500'), payment_date=_at(15))
        second = loans.get_installment(schedule[1].id)
        assert second.status == InstallmentStatus.PARTIAL
        assert second.amount_paid.amount == Decimal('500.00')
        assert loans.outstanding(loan).amount == Decimal('8500.00')

    def test_payments_accumulate(self, collections, loans, schedule, ravi):
        for amount in ('300', '300', '400'):
            collections.record_payment(schedule[0].id, ravi.id, Decimal(amount))

        installment = loans.get_installment(schedule[0].id)
        assert installment.amount_paid.amount == Decimal('1000.00')
        assert installment.status == InstallmentStatus.PAID

    def test_overpayment_rejected(self, collections, loans, storage, schedule, ravi):
        collections.record_payment(schedule[0].id, ravi.id, Decimal('600'))
        with pytest.raises(ValidationError):
            collections.record_payment(schedule[0].id, ravi.id, Decimal('400.01'))

        assert loans.get_installment(schedule[0].id).amount_paid.amount == Decimal('600.00')
        assert storage.count("collections") == 1

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-10'), Decimal('0.001'), Decimal('NaN'), Decimal('1e30')])
    def test_invalid_amount(self, collections, schedule, ravi, amount):
        with pytest.raises(ValidationError):
            collections.record_payment(schedule[0].id, ravi.id, amount)

    def test_bad_gps_and_notes(self, collections, schedule, ravi):
        with pytest.raises(ValidationError):
            collections.record_payment(schedule[0].id, ravi.id, Decimal('100'), gps_lat=95.0)
        with pytest.raises(ValidationError):
            collections.record_payment(schedule[0].id, ravi.id, Decimal('100'), notes="x" * 501)

    def test_unknown_installment(self, collections, ravi):
        with pytest.raises(NotFoundError):
            collections.record_payment("missing", ravi.id, Decimal('100'))

    def test_unknown_collector(self, collections, storage, schedule):
        with pytest.raises(NotFoundError):
            collections.record_payment(schedule[0].id, "nobody", Decimal('100'))
        assert storage.count("collections") == 0

    def test_inactive_collector(self, collections, users, loans, schedule, ravi):
        users.update_user(ravi.id, is_active=False)
        with pytest.raises(ValidationError):
            collections.record_payment(schedule[0].id, ravi.id, Decimal('100'))
        assert loans.get_installment(schedule[0].id).amount_paid.is_zero()

    def test_partial_payment_keeps_overdue(self, collections, loans, schedule, ravi):
        loans.mark_overdue_installments(as_of=date(2024, 1, 10))
        collections.record_payment(schedule[0].id, ravi.id, Decimal('200'))
        assert loans.get_installment(schedule[0].id).status == InstallmentStatus.OVERDUE

        collections.record_payment(schedule[0].id, ravi.id, Decimal('800'))
        assert loans.get_installment(schedule[0].id).status == InstallmentStatus.PAID

    def test_last_payment_completes_loan(self, collections, loans, loan, schedule, ravi):
        for installment in schedule:
            collections.record_payment(installment.id, ravi.id, Decimal('1000'))
        assert loans.get_loan(loan.id).status == LoanStatus.COMPLETED
        assert loans.outstanding(loan).is_zero()

    def test_payment_is_audited(self, collections, audit, schedule, ravi):
        collection = collections.record_payment(schedule[0].id, ravi.id, Decimal('250'))
        [event] = audit.get_events_for_entity("collection", collection.id)
        assert event.event_type == AuditEventType.PAYMENT_RECORDED
        assert event.metadata["amount"] == "250.00"
        assert event.user_id == ravi.id

    def test_concurrent_payments_are_not_lost(self, collections, loans, schedule, ravi):
        def pay(_):
            collections.record_payment(schedule[0].id, ravi.id, Decimal('100'))

        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(pay, range(10)))

        assert loans.get_installment(schedule[0].id).amount_paid.amount == Decimal('1000.00')

    def test_naive_payment_date_is_utc(self):
        assert as_utc(datetime(2024, 1, 8, 9, 30)).tzinfo == timezone.utc


class TestCorrections:
    """Editing and deleting recorded payments"""

    def test_edit_amount_moves_installment_by_difference(self, collections, loans, schedule, ravi):
        collection = collections.record_payment(schedule[0].id, ravi.id, Decimal('400'))
        collections.update_collection(collection.id, amount=Decimal('1000'), notes="corrected")

        installment = loans.get_installment(schedule[0].id)
        assert installment.amount_paid.amount == Decimal('1000.00')
        assert installment.status == InstallmentStatus.PAID
        assert collections.get_collection(collection.id).notes == "corrected"

    def test_edit_above_due_rejected(self, collections, loans, schedule, ravi):
        collection = collections.record_payment(schedule[0].id, ravi.id, Decimal('400'))
        with pytest.raises(ValidationError):
            collections.update_collection(collection.id, amount=Decimal('1200'))
        assert collections.get_collection(collection.id).amount.amount == Decimal('400.00')

    def test_delete_reverts_installment_and_reopens_loan(self, collections, loans, loan, schedule, ravi):
        recorded = [
            collections.record_payment(installment.id, ravi.id, Decimal('1000'))
            for installment in schedule
        ]
        assert loans.get_loan(loan.id).status == LoanStatus.COMPLETED

        collections.delete_collection(recorded[-1].id)

        last = loans.get_installment(schedule[-1].id)
        assert last.amount_paid.is_zero()
        assert last.status == InstallmentStatus.OVERDUE
        assert loans.get_loan(loan.id).status == LoanStatus.ACTIVE
        assert collections.get_collection(recorded[-1].id) is None

    def test_reduced_payment_past_due_is_overdue(self, collections, loans, schedule, ravi):
        collection = collections.record_payment(schedule[0].id, ravi.id, Decimal('1000'))
        collections.update_collection(collection.id, amount=Decimal('600'))

        installment = loans.get_installment(schedule[0].id)
        assert installment.amount_paid.amount == Decimal('600.00')
        assert installment.status == InstallmentStatus.OVERDUE

    def test_reopened_before_due_date_is_pending(self, collections, loans, asha, ravi):
        loan = loans.issue_loan(asha.id, Decimal('1000'), Decimal('1000'), 2, date.today())
        first = loans.get_installments(loan.id)[0]
        collection = collections.record_payment(first.id, ravi.id, Decimal('500'))

        collections.delete_collection(collection.id)
        assert loans.get_installment(first.id).status == InstallmentStatus.PENDING

        collection = collections.record_payment(first.id, ravi.id, Decimal('500'))
        collections.update_collection(collection.id, amount=Decimal('200'))
        assert loans.get_installment(first.id).status == InstallmentStatus.PARTIAL

    def test_delete_missing_collection(self, collections):
        with pytest.raises(NotFoundError):
            collections.delete_collection("missing")


class TestQueries:
    """Listing and enrichment"""

    @pytest.fixture
    def meena(self, users):
        return users.create_user("meena@example.org", "meena", "secret1", "Meena")

    @pytest.fixture
    def recorded(self, collections, schedule, ravi, meena):
        return [
            collections.record_payment(schedule[0].id, ravi.id, Decimal('1000'), payment_date=_at(8)),
            collections.record_payment(schedule[1].id, meena.id, Decimal('500'), payment_date=_at(15)),
            collections.record_payment(schedule[1].id, ravi.id, Decimal('200'), payment_date=_at(16, 23, 59)),
        ]

    def test_newest_first(self, collections, recorded):
        page, total = collections.list_collections()
        assert total == 3
        assert [c['id'] for c in page] == [recorded[2].id, recorded[1].id, recorded[0].id]

    def test_filters(self, collections, schedule, ravi, recorded):
        assert collections.list_collections(collector_id=ravi.id)[1] == 2
        assert collections.list_collections(installment_id=schedule[1].id)[1] == 2
        _, total = collections.list_collections(start_date=date(2024, 1, 15), end_date=date(2024, 1, 16))
        assert total == 2
        _, total = collections.list_collections(end_date=date(2024, 1, 15))
        assert total == 2

    def test_pagination(self, collections, recorded):
        page, total = collections.list_collections(page=2, limit=2)
        assert total == 3
        assert [c['id'] for c in page] == [recorded[0].id]
        with pytest.raises(ValidationError):
            collections.list_collections(limit=500)

    def test_enriched_view(self, collections, loan, recorded):
        view = collections.get_collection_view(recorded[0].id)
        assert view['loan_number'] == loan.loan_number
        assert view['borrower_name'] == "Asha"
        assert view['collector_name'] == "Ravi"
        assert view['installment']['installment_number'] == 1
        assert view['amount'] == "1000.00"

    def test_enriched_view_after_loan_deleted(self, collections, loans, loan, recorded):
        loans.delete_loan(loan.id)
        view = collections.get_collection_view(recorded[0].id)
        assert view['installment'] is None
        assert view['loan_number'] == "Unknown"
        assert view['borrower_name'] == "Unknown"

    def test_loan_payment_history(self, loans, loan, recorded):
        payments = loans.get_loan_payments(loan.id)
        assert [p['id'] for p in payments] == [recorded[2].id, recorded[1].id, recorded[0].id]
        assert payments[1]['collector_name'] == "Meena"
        assert payments[2]['installment_number'] == 1
