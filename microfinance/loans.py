"""
Loan Module

Weekly-installment loans for village borrowers: issuance with an
equal-installment schedule, status tracking of installments as payments
arrive, overdue sweeps, and the read views used by the portal (loan details,
loan list, borrower summary, payment history).

Loans carry no interest; the schedule splits the principal into `term_weeks`
equal installments due one week apart, starting one week after the start
date. The rounding remainder goes to the final installment so the schedule
always sums exactly to the principal.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import secrets
import uuid

from .currency import Money, Currency, MAX_AMOUNT, sum_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger("microfinance.loans")

LOAN_NUMBER_ATTEMPTS = 5


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"          # Repayments in progress
    COMPLETED = "COMPLETED"    # Every installment paid
    DEFAULTED = "DEFAULTED"    # Written off by a supervisor


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "PENDING"    # Nothing paid yet
    PARTIAL = "PARTIAL"    # Something paid, less than due
    PAID = "PAID"          # Fully paid
    OVERDUE = "OVERDUE"    # Past due and not fully paid (set by the overdue sweep)


def derive_status(amount_paid: Money, amount_due: Money, past_due: bool = False) -> InstallmentStatus:
    """
    Installment status from the running total paid.

    paid >= due gives PAID; otherwise an installment already flagged past due
    stays OVERDUE; otherwise any payment gives PARTIAL, none gives PENDING.
    """
    if amount_paid >= amount_due:
        return InstallmentStatus.PAID
    if past_due:
        return InstallmentStatus.OVERDUE
    if amount_paid.is_positive():
        return InstallmentStatus.PARTIAL
    return InstallmentStatus.PENDING


@dataclass
class Installment(StorageRecord):
    """One weekly repayment obligation"""
    loan_id: str
    installment_number: int
    due_date: date
    amount: Money
    amount_paid: Money
    status: InstallmentStatus = InstallmentStatus.PENDING

    @property
    def remaining(self) -> Money:
        return self.amount - self.amount_paid

    def is_overdue(self, as_of: Optional[date] = None) -> bool:
        as_of = as_of or datetime.now(timezone.utc).date()
        return self.status != InstallmentStatus.PAID and self.due_date < as_of

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            **self.amount.to_fields('amount'),
            **self.amount_paid.to_fields('amount_paid'),
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            amount=Money.from_fields(data, 'amount'),
            amount_paid=Money.from_fields(data, 'amount_paid'),
            status=InstallmentStatus(data['status']),
        )

    def to_view(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """API representation with amounts as decimal strings"""
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount.amount),
            'amount_paid': str(self.amount_paid.amount),
            'remaining': str(self.remaining.amount),
            'currency': self.amount.currency.code,
            'status': self.status.value,
            'is_overdue': self.is_overdue(as_of),
        }


@dataclass
class Loan(StorageRecord):
    """Loan extended to a borrower"""
    loan_number: str
    borrower_id: str
    principal_amount: Money
    disbursed_amount: Money
    term_weeks: int
    start_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    created_by: Optional[str] = None
    installment_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'borrower_id': self.borrower_id,
            **self.principal_amount.to_fields('principal'),
            **self.disbursed_amount.to_fields('disbursed'),
            'term_weeks': self.term_weeks,
            'start_date': self.start_date.isoformat(),
            'status': self.status.value,
            'created_by': self.created_by,
            'installment_ids': list(self.installment_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            borrower_id=data['borrower_id'],
            principal_amount=Money.from_fields(data, 'principal'),
            disbursed_amount=Money.from_fields(data, 'disbursed'),
            term_weeks=data['term_weeks'],
            start_date=date.fromisoformat(data['start_date']),
            status=LoanStatus(data['status']),
            created_by=data.get('created_by'),
            installment_ids=list(data.get('installment_ids', [])),
        )

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_number': self.loan_number,
            'borrower_id': self.borrower_id,
            'principal_amount': str(self.principal_amount.amount),
            'disbursed_amount': str(self.disbursed_amount.amount),
            'currency': self.principal_amount.currency.code,
            'term_weeks': self.term_weeks,
            'start_date': self.start_date.isoformat(),
            'status': self.status.value,
            'created_by': self.created_by,
            'installment_ids': list(self.installment_ids),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


def build_installment_schedule(loan_id: str, principal: Money, term_weeks: int,
                               start_date: date) -> List[Installment]:
    """
    Equal weekly installments for a principal.

    Installment i (0-based) is number i + 1, due start_date + (i + 1) weeks.
    Amounts are principal / term_weeks truncated to the currency precision with
    the remainder on the last installment.
    """
    if term_weeks < 1:
        raise ValidationError("Term must be at least one week")
    if principal.amount < principal.currency.quantum * term_weeks:
        raise ValidationError("Principal is too small to split over the term")

    now = datetime.now(timezone.utc)
    zero = Money.zero(principal.currency)
    return [
        Installment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=i + 1,
            due_date=start_date + timedelta(weeks=i + 1),
            amount=amount,
            amount_paid=zero,
        )
        for i, amount in enumerate(principal.split(term_weeks))
    ]


def _positive_money(value: Decimal, currency: Currency, label: str) -> Money:
    if not isinstance(value, Decimal):
        raise ValidationError(f"{label} must be a decimal amount")
    if not value.is_finite() or value <= Decimal('0'):
        raise ValidationError(f"{label} must be greater than zero")
    if value > MAX_AMOUNT:
        raise ValidationError(f"{label} cannot exceed {MAX_AMOUNT}")
    money = Money(value, currency)
    if not money.is_positive():
        raise ValidationError(f"{label} is below the smallest {currency.code} unit")
    return money


class LoanManager:
    """
    Issues loans and maintains their installment schedules
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 currency: Currency = Currency.INR):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.loans_table = "loans"
        self.installments_table = "installments"
        self.borrowers_table = "borrowers"
        self.collections_table = "collections"
        self.users_table = "users"

    # Issuance

    def issue_loan(
        self,
        borrower_id: str,
        principal_amount: Decimal,
        disbursed_amount: Decimal,
        term_weeks: int,
        start_date: date,
        created_by: Optional[str] = None
    ) -> Loan:
        """
        Issue a loan and generate its weekly schedule.

        The loan record and every installment are written in one storage
        transaction; on failure nothing is persisted.

        Raises:
            ValidationError: Non-positive amounts, bad term, or a borrower id
                that is malformed, unknown or inactive
            ConflictError: No unique loan number could be generated
        """
        principal = _positive_money(principal_amount, self.currency, "Principal amount")
        disbursed = _positive_money(disbursed_amount, self.currency, "Disbursed amount")

        if isinstance(term_weeks, bool) or not isinstance(term_weeks, int) or term_weeks < 1:
            raise ValidationError("Term must be a whole number of weeks, at least 1")
        if principal.amount < self.currency.quantum * term_weeks:
            raise ValidationError("Principal is too small to split over the term")
        if not isinstance(start_date, date):
            raise ValidationError("Start date is required")

        self._validate_borrower(borrower_id)

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self._generate_loan_number(now),
                borrower_id=borrower_id,
                principal_amount=principal,
                disbursed_amount=disbursed,
                term_weeks=term_weeks,
                start_date=start_date,
                created_by=created_by,
            )
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            schedule = self._save_schedule(loan)
            loan.installment_ids = [inst.id for inst in schedule]
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            self.audit_trail.log_event(
                AuditEventType.LOAN_ISSUED, "loan", loan.id,
                {
                    "loan_number": loan.loan_number,
                    "borrower_id": borrower_id,
                    "principal": str(principal.amount),
                    "disbursed": str(disbursed.amount),
                    "term_weeks": term_weeks,
                },
                user_id=created_by
            )

        logger.info(f"Issued loan {loan.loan_number} of {principal.to_string()} over {term_weeks} weeks")
        return loan

    def _validate_borrower(self, borrower_id: str) -> None:
        try:
            uuid.UUID(str(borrower_id))
        except ValueError:
            raise ValidationError("Invalid borrower id")

        borrower = self.storage.load(self.borrowers_table, borrower_id)
        if not borrower:
            raise ValidationError(f"Borrower {borrower_id} does not exist")
        if not borrower.get('is_active', True):
            raise ValidationError("Borrower is not active")

    def _generate_loan_number(self, now: datetime) -> str:
        for _ in range(LOAN_NUMBER_ATTEMPTS):
            candidate = f"LOAN-{now.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"
            if not self.storage.find(self.loans_table, {"loan_number": candidate}):
                return candidate
        raise ConflictError("Could not generate a unique loan number")

    def _save_schedule(self, loan: Loan) -> List[Installment]:
        schedule = build_installment_schedule(
            loan.id, loan.principal_amount, loan.term_weeks, loan.start_date
        )
        for installment in schedule:
            self.storage.save(self.installments_table, installment.id, installment.to_dict())

        self.audit_trail.log_event(
            AuditEventType.SCHEDULE_GENERATED, "loan", loan.id,
            {"installments": len(schedule), "first_due": schedule[0].due_date.isoformat()}
        )
        return schedule

    def repair_missing_schedules(self) -> List[str]:
        """
        Regenerate the schedule of loans that have no installments.

        Loans whose installments exist but were never linked are relinked
        instead. Safe to run repeatedly. Returns the repaired loan ids.
        """
        repaired = []
        for data in self.storage.load_all(self.loans_table):
            loan = Loan.from_dict(data)
            existing = self._installments_for(loan.id)
            if loan.installment_ids and existing:
                continue

            with self.storage.atomic():
                if existing:
                    linked = existing
                else:
                    linked = self._save_schedule(loan)
                loan.installment_ids = [inst.id for inst in linked]
                loan.touch()
                self.storage.save(self.loans_table, loan.id, loan.to_dict())
                self.audit_trail.log_event(
                    AuditEventType.SCHEDULE_REPAIRED, "loan", loan.id,
                    {"installments": len(linked), "regenerated": not existing}
                )
            logger.warning(f"Repaired schedule of loan {loan.loan_number}")
            repaired.append(loan.id)
        return repaired

    # Lookups

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.installments_table, installment_id)
        return Installment.from_dict(data) if data else None

    def require_installment(self, installment_id: str) -> Installment:
        installment = self.get_installment(installment_id)
        if not installment:
            raise NotFoundError(f"Installment {installment_id} not found")
        return installment

    def _installments_for(self, loan_id: str) -> List[Installment]:
        installments = [
            Installment.from_dict(d)
            for d in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def get_installments(self, loan_id: str) -> List[Installment]:
        """A loan's schedule in installment-number order"""
        self.require_loan(loan_id)
        return self._installments_for(loan_id)

    def list_installments(self, status: Optional[InstallmentStatus] = None,
                          loan_id: Optional[str] = None) -> List[Installment]:
        """Installments sorted by due date, optionally filtered"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if loan_id:
            filters['loan_id'] = loan_id
        installments = [
            Installment.from_dict(d) for d in self.storage.find(self.installments_table, filters)
        ]
        installments.sort(key=lambda i: (i.due_date, i.installment_number))
        return installments

    # Read views

    def _paid_total(self, loan: Loan, installments: List[Installment]) -> Money:
        return sum_money(
            (inst.amount_paid for inst in installments), loan.principal_amount.currency
        )

    def outstanding(self, loan: Loan, installments: Optional[List[Installment]] = None) -> Money:
        """Principal minus everything paid across the loan's installments"""
        if installments is None:
            installments = self._installments_for(loan.id)
        return loan.principal_amount - self._paid_total(loan, installments)

    def get_loan_details(self, loan_id: str, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Loan with its borrower, totals and ordered schedule

        Raises:
            NotFoundError: Unknown loan
        """
        loan = self.require_loan(loan_id)
        installments = self._installments_for(loan.id)
        borrower = self.storage.load(self.borrowers_table, loan.borrower_id)
        paid = self._paid_total(loan, installments)

        view = loan.to_view()
        view.update({
            'borrower': {
                'id': borrower['id'],
                'name': borrower['name'],
                'village': borrower['village'],
                'phone': borrower.get('phone'),
            } if borrower else None,
            'total_paid': str(paid.amount),
            'outstanding_amount': str((loan.principal_amount - paid).amount),
            'installments': [inst.to_view(as_of) for inst in installments],
        })
        return view

    def list_loans(self, status: Optional[LoanStatus] = None,
                   borrower_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Loans newest first with borrower name and outstanding amount"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if borrower_id:
            filters['borrower_id'] = borrower_id
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at, reverse=True)

        by_loan: Dict[str, List[Installment]] = {}
        for data in self.storage.load_all(self.installments_table):
            inst = Installment.from_dict(data)
            by_loan.setdefault(inst.loan_id, []).append(inst)
        borrower_names = {
            b['id']: b['name'] for b in self.storage.load_all(self.borrowers_table)
        }

        views = []
        for loan in loans:
            installments = by_loan.get(loan.id, [])
            paid = self._paid_total(loan, installments)
            view = loan.to_view()
            view.update({
                'borrower_name': borrower_names.get(loan.borrower_id, "Unknown"),
                'total_paid': str(paid.amount),
                'outstanding_amount': str((loan.principal_amount - paid).amount),
                'installment_count': len(installments),
                'paid_installments': sum(
                    1 for i in installments if i.status == InstallmentStatus.PAID
                ),
            })
            views.append(view)
        return views

    def borrower_summary(self, borrower_id: str) -> Dict[str, Any]:
        """Loan counts and aggregate outstanding; zero loans gives zero outstanding"""
        loans = [
            Loan.from_dict(d)
            for d in self.storage.find(self.loans_table, {"borrower_id": borrower_id})
        ]
        outstanding = Money.zero(self.currency)
        paid = Money.zero(self.currency)
        for loan in loans:
            installments = self._installments_for(loan.id)
            loan_paid = self._paid_total(loan, installments)
            paid = paid + loan_paid
            outstanding = outstanding + (loan.principal_amount - loan_paid)

        return {
            'borrower_id': borrower_id,
            'total_loans': len(loans),
            'active_loans': sum(1 for l in loans if l.status == LoanStatus.ACTIVE),
            'completed_loans': sum(1 for l in loans if l.status == LoanStatus.COMPLETED),
            'total_paid': str(paid.amount),
            'total_outstanding': str(outstanding.amount),
            'currency': self.currency.code,
        }

    def get_loan_payments(self, loan_id: str) -> List[Dict[str, Any]]:
        """Collections against any of a loan's installments, newest first"""
        installments = {inst.id: inst for inst in self.get_installments(loan_id)}
        collector_names: Dict[str, str] = {}

        payments = []
        for installment_id, installment in installments.items():
            for row in self.storage.find(self.collections_table, {"installment_id": installment_id}):
                collector_id = row['collector_id']
                if collector_id not in collector_names:
                    user = self.storage.load(self.users_table, collector_id)
                    collector_names[collector_id] = user['name'] if user else "Unknown"
                payments.append({
                    'id': row['id'],
                    'installment_id': installment_id,
                    'installment_number': installment.installment_number,
                    'amount': row['amount_amount'],
                    'currency': row['amount_currency'],
                    'payment_date': row['payment_date'],
                    'collector_id': collector_id,
                    'collector_name': collector_names[collector_id],
                    'notes': row.get('notes'),
                })

        payments.sort(key=lambda p: p['payment_date'], reverse=True)
        return payments

    # Changes

    def update_loan(
        self,
        loan_id: str,
        principal_amount: Optional[Decimal] = None,
        disbursed_amount: Optional[Decimal] = None,
        status: Optional[LoanStatus] = None,
        updated_by: Optional[str] = None
    ) -> Loan:
        """
        Partial update of principal, disbursed amount and status.

        A new principal regenerates the schedule, which is only allowed while
        no payment has been recorded against the loan.

        Raises:
            NotFoundError: Unknown loan
            ValidationError: Non-positive amounts, COMPLETED with money outstanding,
                or ACTIVE with nothing left to pay
            ConflictError: Principal change after payments
        """
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            installments = self._installments_for(loan.id)
            changes: Dict[str, Any] = {}

            if disbursed_amount is not None:
                loan.disbursed_amount = _positive_money(disbursed_amount, self.currency, "Disbursed amount")
                changes['disbursed'] = str(loan.disbursed_amount.amount)

            if principal_amount is not None:
                principal = _positive_money(principal_amount, self.currency, "Principal amount")
                if principal != loan.principal_amount:
                    if any(inst.amount_paid.is_positive() for inst in installments):
                        raise ConflictError("Principal cannot change after payments were recorded")
                    for inst in installments:
                        self.storage.delete(self.installments_table, inst.id)
                    loan.principal_amount = principal
                    installments = self._save_schedule(loan)
                    loan.installment_ids = [inst.id for inst in installments]
                    changes['principal'] = str(principal.amount)

            if status is not None and status != loan.status:
                if status == LoanStatus.COMPLETED and self.outstanding(loan, installments).is_positive():
                    raise ValidationError("A loan with an outstanding balance cannot be completed")
                if status == LoanStatus.ACTIVE and not self.outstanding(loan, installments).is_positive():
                    raise ValidationError("A fully paid loan cannot be made active")
                loan.status = status
                changes['status'] = status.value

            loan.touch()
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.audit_trail.log_event(
                AuditEventType.LOAN_UPDATED, "loan", loan.id, changes, user_id=updated_by
            )
        return loan

    def delete_loan(self, loan_id: str, deleted_by: Optional[str] = None) -> int:
        """
        Delete a loan and every installment that belongs to it.

        Returns the number of installments removed.
        """
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            installment_ids = set(loan.installment_ids)
            installment_ids.update(
                d['id'] for d in self.storage.find(self.installments_table, {"loan_id": loan_id})
            )
            for installment_id in installment_ids:
                self.storage.delete(self.installments_table, installment_id)
            self.storage.delete(self.loans_table, loan_id)

            self.audit_trail.log_event(
                AuditEventType.LOAN_DELETED, "loan", loan_id,
                {"loan_number": loan.loan_number, "installments": len(installment_ids)},
                user_id=deleted_by
            )
        logger.info(f"Deleted loan {loan.loan_number} with {len(installment_ids)} installments")
        return len(installment_ids)

    def mark_overdue_installments(self, as_of: Optional[date] = None) -> int:
        """
        Flag unpaid installments whose due date has passed as OVERDUE.

        Returns the number of installments changed.
        """
        as_of = as_of or datetime.now(timezone.utc).date()
        open_statuses = {InstallmentStatus.PENDING.value, InstallmentStatus.PARTIAL.value}
        marked = []

        def mark(data: Dict[str, Any]) -> Dict[str, Any]:
            if data['status'] in open_statuses and date.fromisoformat(data['due_date']) < as_of:
                data['status'] = InstallmentStatus.OVERDUE.value
                data['updated_at'] = datetime.now(timezone.utc).isoformat()
                marked.append(data['id'])
            return data

        for data in self.storage.load_all(self.installments_table):
            if data['status'] in open_statuses and date.fromisoformat(data['due_date']) < as_of:
                self.storage.modify(self.installments_table, data['id'], mark)

        if marked:
            self.audit_trail.log_event(
                AuditEventType.INSTALLMENTS_OVERDUE, "installment", as_of.isoformat(),
                {"count": len(marked), "installment_ids": marked}
            )
            logger.info(f"Marked {len(marked)} installments overdue as of {as_of}")
        return len(marked)

    def refresh_loan_completion(self, loan_id: str, user_id: Optional[str] = None) -> Optional[LoanStatus]:
        """
        Move a loan to COMPLETED once every installment is PAID, and back to
        ACTIVE if a completed loan has an installment reopened.
        """
        installments = self._installments_for(loan_id)
        all_paid = bool(installments) and all(
            inst.status == InstallmentStatus.PAID for inst in installments
        )
        transition = {}

        def apply(data: Dict[str, Any]) -> Dict[str, Any]:
            current = LoanStatus(data['status'])
            if all_paid and current == LoanStatus.ACTIVE:
                data['status'] = LoanStatus.COMPLETED.value
            elif not all_paid and current == LoanStatus.COMPLETED:
                data['status'] = LoanStatus.ACTIVE.value
            if data['status'] != current.value:
                transition['from'] = current.value
                transition['to'] = data['status']
                data['updated_at'] = datetime.now(timezone.utc).isoformat()
            return data

        updated = self.storage.modify(self.loans_table, loan_id, apply)
        if not updated:
            return None

        if transition.get('to') == LoanStatus.COMPLETED.value:
            self.audit_trail.log_event(
                AuditEventType.LOAN_COMPLETED, "loan", loan_id, {}, user_id=user_id
            )
            logger.info(f"Loan {updated['loan_number']} completed")
        elif transition:
            self.audit_trail.log_event(
                AuditEventType.LOAN_UPDATED, "loan", loan_id,
                {"status": transition['to'], "reason": "installment reopened"},
                user_id=user_id
            )
        return LoanStatus(updated['status'])
