"""
Tests for loan issuance, schedules and loan views
"""

import pytest
import uuid
from decimal import Decimal
from datetime import date
from unittest.mock import patch

from microfinance.currency import Money, Currency
from microfinance.storage import InMemoryStorage
from microfinance.audit import AuditTrail, AuditEventType
from microfinance.borrowers import BorrowerManager
from microfinance.loans import (
    LoanManager, LoanStatus, InstallmentStatus, Installment,
    build_installment_schedule, derive_status
)
from microfinance.errors import ConflictError, NotFoundError, ValidationError


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
def asha(storage, audit):
    return BorrowerManager(storage, audit).create_borrower(
        name="Asha", address="12 Temple Street", village="Ramapuram", phone="9000000001"
    )


@pytest.fixture
def loan(loans, asha):
    return loans.issue_loan(
        borrower_id=asha.id,
        principal_amount=Decimal('10000'),
        disbursed_amount=Decimal('9500'),
        term_weeks=10,
        start_date=date(2024, 1, 1),
        created_by="admin-1"
    )


def _pay(storage, installment_id, amount):
    """Set an installment's amount paid directly"""
    def apply(data):
        due = Money.from_fields(data, 'amount')
        paid = Money(Decimal(amount), due.currency)
        data.update(paid.to_fields('amount_paid'))
        data['status'] = derive_status(paid, due).value
        return data
    storage.modify("installments", installment_id, apply)


class TestSchedule:
    """Installment schedule generation"""

    def test_ten_week_schedule(self, loans, loan):
        installments = loans.get_installments(loan.id)

        assert len(installments) == 10
        assert [i.installment_number for i in installments] == list(range(1, 11))
        assert all(i.amount.amount == Decimal('1000.00') for i in installments)
        assert all(i.status == InstallmentStatus.PENDING for i in installments)
        assert installments[0].due_date == date(2024, 1, 8)
        assert installments[-1].due_date == date(2024, 3, 11)

    def test_due_dates_are_weekly(self):
        schedule = build_installment_schedule(
            "loan-1", Money(Decimal('5000'), Currency.INR), 6, date(2024, 2, 26)
        )
        gaps = {(b.due_date - a.due_date).days for a, b in zip(schedule, schedule[1:])}
        assert gaps == {7}
        assert schedule[0].due_date == date(2024, 3, 4)

    def test_uneven_principal_sums_exactly(self):
        principal = Money(Decimal('1000'), Currency.INR)
        schedule = build_installment_schedule("loan-1", principal, 3, date(2024, 1, 1))
        assert [i.amount.amount for i in schedule] == [Decimal('333.33'), Decimal('333.33'), Decimal('333.34')]

    @pytest.mark.parametrize("principal,weeks", [("7777.77", 7), ("12000", 52), ("0.10", 10)])
    def test_schedule_sums_to_principal(self, principal, weeks):
        money = Money(Decimal(principal), Currency.INR)
        schedule = build_installment_schedule("loan-1", money, weeks, date(2024, 1, 1))
        total = sum(i.amount.amount for i in schedule)
        assert total == money.amount
        assert all(i.amount.is_positive() for i in schedule)

    def test_principal_too_small_for_term(self):
        with pytest.raises(ValidationError):
            build_installment_schedule("loan-1", Money(Decimal('0.05'), Currency.INR), 10, date(2024, 1, 1))

    def test_zero_term_rejected(self):
        with pytest.raises(ValidationError):
            build_installment_schedule("loan-1", Money(Decimal('100'), Currency.INR), 0, date(2024, 1, 1))


class TestDeriveStatus:
    """Installment status from amount paid"""

    def _money(self, value):
        return Money(Decimal(value), Currency.INR)

    def test_statuses(self):
        due = self._money('1000')
        assert derive_status(self._money('0'), due) == InstallmentStatus.PENDING
        assert derive_status(self._money('500'), due) == InstallmentStatus.PARTIAL
        assert derive_status(self._money('1000'), due) == InstallmentStatus.PAID

    def test_overdue_stays_overdue_until_paid(self):
        due = self._money('1000')
        assert derive_status(self._money('500'), due, past_due=True) == InstallmentStatus.OVERDUE
        assert derive_status(self._money('1000'), due, past_due=True) == InstallmentStatus.PAID


class TestIssueLoan:
    """Loan issuance"""

    def test_loan_fields(self, loan, asha):
        assert loan.status == LoanStatus.ACTIVE
        assert loan.borrower_id == asha.id
        assert loan.principal_amount.amount == Decimal('10000.00')
        assert loan.disbursed_amount.amount == Decimal('9500.00')
        assert len(loan.installment_ids) == 10
        assert loan.loan_number.startswith("LOAN-")
        assert len(loan.loan_number.split("-")[2]) == 6

    def test_issue_is_audited(self, audit, loan):
        types = [e.event_type for e in audit.get_events_for_entity("loan", loan.id)]
        assert types == [AuditEventType.SCHEDULE_GENERATED, AuditEventType.LOAN_ISSUED]

    def test_loan_numbers_are_unique(self, loans, asha, loan):
        second = loans.issue_loan(asha.id, Decimal('2000'), Decimal('2000'), 4, date(2024, 1, 1))
        assert second.loan_number != loan.loan_number

    @pytest.mark.parametrize("principal,disbursed,weeks", [
        (Decimal('0'), Decimal('100'), 10),
        (Decimal('-5'), Decimal('100'), 10),
        (Decimal('100'), Decimal('0'), 10),
        (Decimal('1000'), Decimal('1000'), 0),
        (Decimal('1000'), Decimal('1000'), True),
        (Decimal('0.05'), Decimal('0.05'), 10),
        (Decimal('1e30'), Decimal('1000'), 10),
    ])
    def test_invalid_terms_rejected(self, loans, storage, asha, principal, disbursed, weeks):
        with pytest.raises(ValidationError):
            loans.issue_loan(asha.id, principal, disbursed, weeks, date(2024, 1, 1))
        assert storage.count("loans") == 0
        assert storage.count("installments") == 0

    def test_malformed_borrower_id(self, loans):
        with pytest.raises(ValidationError):
            loans.issue_loan("not-a-uuid", Decimal('1000'), Decimal('1000'), 10, date(2024, 1, 1))

    def test_unknown_borrower(self, loans):
        with pytest.raises(ValidationError):
            loans.issue_loan(str(uuid.uuid4()), Decimal('1000'), Decimal('1000'), 10, date(2024, 1, 1))

    def test_inactive_borrower(self, loans, storage, audit, asha):
        BorrowerManager(storage, audit).update_borrower(asha.id, is_active=False)
        with pytest.raises(ValidationError):
            loans.issue_loan(asha.id, Decimal('1000'), Decimal('1000'), 10, date(2024, 1, 1))

    def test_failure_mid_issue_leaves_nothing(self, loans, storage, audit, asha):
        with patch.object(audit, 'log_event', side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                loans.issue_loan(asha.id, Decimal('1000'), Decimal('1000'), 10, date(2024, 1, 1))

        assert storage.count("loans") == 0
        assert storage.count("installments") == 0

    def test_loan_number_collisions_exhausted(self, loans, asha, loan):
        suffix = loan.loan_number.split("-")[2]
        with patch('microfinance.loans.secrets.token_hex', return_value=suffix.lower()):
            with pytest.raises(ConflictError):
                loans._generate_loan_number(loan.created_at)


class TestRepair:
    """Regenerating missing schedules"""

    def test_regenerates_missing_installments(self, loans, storage, loan):
        for installment_id in loan.installment_ids:
            storage.delete("installments", installment_id)

        repaired = loans.repair_missing_schedules()

        assert repaired == [loan.id]
        assert len(loans.get_installments(loan.id)) == 10
        assert loans.repair_missing_schedules() == []

    def test_relinks_unlinked_installments(self, loans, storage, loan):
        data = storage.load("loans", loan.id)
        data['installment_ids'] = []
        storage.save("loans", loan.id, data)

        assert loans.repair_missing_schedules() == [loan.id]
        assert sorted(loans.get_loan(loan.id).installment_ids) == sorted(loan.installment_ids)


class TestLoanViews:
    """Details, lists and summaries"""

    def test_details(self, loans, storage, loan, asha):
        _pay(storage, loan.installment_ids[0], '1000')

        details = loans.get_loan_details(loan.id, as_of=date(2024, 1, 10))

        assert details['borrower'] == {'id': asha.id, 'name': "Asha", 'village': "Ramapuram", 'phone': "9000000001"}
        assert details['total_paid'] == "1000.00"
        assert details['outstanding_amount'] == "9000.00"
        assert details['installments'][0]['status'] == "PAID"
        assert not details['installments'][0]['is_overdue']
        assert details['installments'][1]['remaining'] == "1000.00"

    def test_details_missing_loan(self, loans):
        with pytest.raises(NotFoundError):
            loans.get_loan_details("missing")

    def test_is_overdue_view(self, loans, loan):
        second = loans.get_installments(loan.id)[1]
        assert second.is_overdue(date(2024, 1, 16))
        assert not second.is_overdue(date(2024, 1, 15))

    def test_list_loans(self, loans, storage, asha, loan):
        _pay(storage, loan.installment_ids[0], '1000')
        _pay(storage, loan.installment_ids[1], '500')

        [view] = loans.list_loans(status=LoanStatus.ACTIVE)

        assert view['borrower_name'] == "Asha"
        assert view['outstanding_amount'] == "8500.00"
        assert view['installment_count'] == 10
        assert view['paid_installments'] == 1
        assert loans.list_loans(status=LoanStatus.COMPLETED) == []
        assert loans.list_loans(borrower_id="someone-else") == []

    def test_list_loans_unknown_borrower_name(self, loans, storage, asha, loan):
        storage.delete("borrowers", asha.id)
        assert loans.list_loans()[0]['borrower_name'] == "Unknown"

    def test_borrower_summary(self, loans, storage, asha, loan):
        _pay(storage, loan.installment_ids[0], '1000')
        loans.issue_loan(asha.id, Decimal('2000'), Decimal('2000'), 4, date(2024, 2, 1))

        summary = loans.borrower_summary(asha.id)

        assert summary['total_loans'] == 2
        assert summary['active_loans'] == 2
        assert summary['completed_loans'] == 0
        assert summary['total_paid'] == "1000.00"
        assert summary['total_outstanding'] == "11000.00"

    def test_borrower_summary_without_loans(self, loans, asha):
        summary = loans.borrower_summary(asha.id)
        assert summary['total_loans'] == 0
        assert summary['total_outstanding'] == "0.00"

    def test_list_installments_filters(self, loans, storage, loan):
        _pay(storage, loan.installment_ids[0], '1000')
        paid = loans.list_installments(status=InstallmentStatus.PAID)
        assert [i.id for i in paid] == [loan.installment_ids[0]]
        assert len(loans.list_installments(loan_id=loan.id)) == 10

    def test_installment_round_trip(self, storage, loan):
        data = storage.load("installments", loan.installment_ids[3])
        assert Installment.from_dict(data).to_dict() == data


class TestLoanChanges:
    """Updating, deleting, overdue sweeps and completion"""

    def test_update_disbursed_and_status(self, loans, loan):
        updated = loans.update_loan(loan.id, disbursed_amount=Decimal('9000'), status=LoanStatus.DEFAULTED)
        assert updated.disbursed_amount.amount == Decimal('9000.00')
        assert loans.get_loan(loan.id).status == LoanStatus.DEFAULTED

    def test_principal_change_regenerates_schedule(self, loans, loan):
        loans.update_loan(loan.id, principal_amount=Decimal('5000'))
        installments = loans.get_installments(loan.id)
        assert len(installments) == 10
        assert all(i.amount.amount == Decimal('500.00') for i in installments)
        assert not set(loans.get_loan(loan.id).installment_ids) & set(loan.installment_ids)

    def test_principal_change_after_payment_conflicts(self, loans, storage, loan):
        _pay(storage, loan.installment_ids[0], '100')
        with pytest.raises(ConflictError):
            loans.update_loan(loan.id, principal_amount=Decimal('5000'))
        assert loans.get_loan(loan.id).principal_amount.amount == Decimal('10000.00')

    def test_cannot_complete_with_balance(self, loans, loan):
        with pytest.raises(ValidationError):
            loans.update_loan(loan.id, status=LoanStatus.COMPLETED)

    def test_cannot_reactivate_paid_loan(self, loans, storage, loan):
        for installment_id in loan.installment_ids:
            _pay(storage, installment_id, '1000')
        assert loans.refresh_loan_completion(loan.id) == LoanStatus.COMPLETED

        with pytest.raises(ValidationError):
            loans.update_loan(loan.id, status=LoanStatus.ACTIVE)
        assert loans.get_loan(loan.id).status == LoanStatus.COMPLETED

    def test_update_missing_loan(self, loans):
        with pytest.raises(NotFoundError):
            loans.update_loan("missing", status=LoanStatus.DEFAULTED)

    def test_delete_loan_removes_installments(self, loans, storage, loan):
        assert loans.delete_loan(loan.id) == 10
        assert loans.get_loan(loan.id) is None
        assert storage.find("installments", {"loan_id": loan.id}) == []

    def test_delete_missing_loan(self, loans):
        with pytest.raises(NotFoundError):
            loans.delete_loan("missing")

    def test_mark_overdue(self, loans, storage, loan):
        _pay(storage, loan.installment_ids[0], '1000')
        _pay(storage, loan.installment_ids[1], '200')

        assert loans.mark_overdue_installments(as_of=date(2024, 1, 23)) == 2
        statuses = [i.status for i in loans.get_installments(loan.id)]
        assert statuses[:4] == [
            InstallmentStatus.PAID, InstallmentStatus.OVERDUE,
            InstallmentStatus.OVERDUE, InstallmentStatus.PENDING
        ]
        assert loans.mark_overdue_installments(as_of=date(2024, 1, 23)) == 0

    def test_completion_and_reopen(self, loans, storage, audit, loan):
        for installment_id in loan.installment_ids:
            _pay(storage, installment_id, '1000')

        assert loans.refresh_loan_completion(loan.id) == LoanStatus.COMPLETED
        assert audit.get_events_by_type(AuditEventType.LOAN_COMPLETED)

        _pay(storage, loan.installment_ids[-1], '0')
        assert loans.refresh_loan_completion(loan.id) == LoanStatus.ACTIVE

    def test_refresh_missing_loan(self, loans):
        assert loans.refresh_loan_completion("missing") is None
