"""
Collections Module

Payments recorded by field collectors against installments. Recording a
payment accumulates the installment's amount paid, re-derives its status and
completes the loan once every installment is paid, all in one storage
transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from .currency import Money, MAX_AMOUNT
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError
from .borrowers import validate_gps
from .loans import LoanManager, InstallmentStatus, derive_status

logger = logging.getLogger("microfinance.collections")

MAX_NOTES_LENGTH = 500
MAX_PAGE_SIZE = 100


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Collection(StorageRecord):
    """A payment against an installment"""
    installment_id: str
    collector_id: str
    amount: Money
    payment_date: datetime
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    notes: Optional[str] = None
    recorded_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'installment_id': self.installment_id,
            'collector_id': self.collector_id,
            **self.amount.to_fields('amount'),
            'payment_date': self.payment_date.isoformat(),
            'gps_lat': self.gps_lat,
            'gps_lng': self.gps_lng,
            'notes': self.notes,
            'recorded_by': self.recorded_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collection':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            installment_id=data['installment_id'],
            collector_id=data['collector_id'],
            amount=Money.from_fields(data, 'amount'),
            payment_date=as_utc(datetime.fromisoformat(data['payment_date'])),
            gps_lat=data.get('gps_lat'),
            gps_lng=data.get('gps_lng'),
            notes=data.get('notes'),
            recorded_by=data.get('recorded_by'),
        )

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'installment_id': self.installment_id,
            'collector_id': self.collector_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'payment_date': self.payment_date.isoformat(),
            'gps_lat': self.gps_lat,
            'gps_lng': self.gps_lng,
            'notes': self.notes,
            'created_at': self.created_at.isoformat(),
        }


class CollectionManager:
    """Records, edits and queries collections"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 loan_manager: LoanManager):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.table_name = "collections"
        self.installments_table = loan_manager.installments_table
        self.loans_table = loan_manager.loans_table
        self.borrowers_table = loan_manager.borrowers_table
        self.users_table = "users"

    @staticmethod
    def _validate_details(gps_lat: Optional[float], gps_lng: Optional[float],
                          notes: Optional[str]) -> None:
        validate_gps(gps_lat, gps_lng)
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")

    @staticmethod
    def _validate_amount(amount: Decimal) -> None:
        if not isinstance(amount, Decimal) or not amount.is_finite():
            raise ValidationError("Amount must be a decimal number")
        if amount <= Decimal('0'):
            raise ValidationError("Amount must be greater than zero")
        if amount > MAX_AMOUNT:
            raise ValidationError(f"Amount cannot exceed {MAX_AMOUNT}")

    def _apply_to_installment(self, installment_id: str, delta: Money) -> Optional[Dict[str, Any]]:
        """
        Add `delta` to an installment's amount paid under the store lock and
        re-derive its status. Rejects totals above the amount due or below zero.

        A PAID installment reopened after its due date goes back to OVERDUE.
        """
        today = datetime.now(timezone.utc).date()

        def apply(data: Dict[str, Any]) -> Dict[str, Any]:
            due = Money.from_fields(data, 'amount')
            paid = Money.from_fields(data, 'amount_paid') + delta
            if paid > due:
                remaining = due - Money.from_fields(data, 'amount_paid')
                raise ValidationError(
                    f"Payment exceeds the remaining due of {remaining.to_string()}"
                )
            if paid.amount < Decimal('0'):
                raise ValidationError("Amount paid cannot become negative")

            past_due = data['status'] == InstallmentStatus.OVERDUE.value
            if data['status'] == InstallmentStatus.PAID.value and delta.amount < 0:
                past_due = date.fromisoformat(data['due_date']) < today
            data.update(paid.to_fields('amount_paid'))
            data['status'] = derive_status(paid, due, past_due).value
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            return data

        return self.storage.modify(self.installments_table, installment_id, apply)

    def record_payment(
        self,
        installment_id: str,
        collector_id: str,
        amount: Decimal,
        payment_date: Optional[datetime] = None,
        gps_lat: Optional[float] = None,
        gps_lng: Optional[float] = None,
        notes: Optional[str] = None,
        recorded_by: Optional[str] = None
    ) -> Collection:
        """
        Record a payment and update the installment it pays.

        Raises:
            ValidationError: Non-positive amount, bad GPS or notes, inactive
                collector, or a payment above the remaining due
            NotFoundError: Unknown installment or collector
        """
        self._validate_amount(amount)
        self._validate_details(gps_lat, gps_lng, notes)
        payment_date = as_utc(payment_date or datetime.now(timezone.utc))

        with self.storage.atomic():
            installment = self.loan_manager.require_installment(installment_id)

            collector = self.storage.load(self.users_table, collector_id)
            if not collector:
                raise NotFoundError(f"Collector {collector_id} not found")
            if not collector.get('is_active', True):
                raise ValidationError("Collector account is inactive")

            money = Money(amount, installment.amount.currency)
            if not money.is_positive():
                raise ValidationError("Amount is below the smallest currency unit")

            updated = self._apply_to_installment(installment_id, money)

            now = datetime.now(timezone.utc)
            collection = Collection(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                installment_id=installment_id,
                collector_id=collector_id,
                amount=money,
                payment_date=payment_date,
                gps_lat=gps_lat,
                gps_lng=gps_lng,
                notes=notes,
                recorded_by=recorded_by or collector_id,
            )
            self.storage.save(self.table_name, collection.id, collection.to_dict())

            self.audit_trail.log_event(
                AuditEventType.PAYMENT_RECORDED, "collection", collection.id,
                {
                    "installment_id": installment_id,
                    "loan_id": installment.loan_id,
                    "amount": str(money.amount),
                    "installment_status": updated['status'],
                },
                user_id=recorded_by or collector_id
            )
            self.loan_manager.refresh_loan_completion(installment.loan_id, recorded_by or collector_id)

        logger.info(
            f"Recorded {money.to_string()} against installment "
            f"{installment.installment_number} of loan {installment.loan_id}"
        )
        return collection

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        data = self.storage.load(self.table_name, collection_id)
        return Collection.from_dict(data) if data else None

    def require_collection(self, collection_id: str) -> Collection:
        collection = self.get_collection(collection_id)
        if not collection:
            raise NotFoundError(f"Collection {collection_id} not found")
        return collection

    def get_collection_view(self, collection_id: str) -> Dict[str, Any]:
        return self.enrich([self.require_collection(collection_id)])[0]

    def update_collection(
        self,
        collection_id: str,
        amount: Optional[Decimal] = None,
        payment_date: Optional[datetime] = None,
        gps_lat: Optional[float] = None,
        gps_lng: Optional[float] = None,
        notes: Optional[str] = None,
        updated_by: Optional[str] = None
    ) -> Collection:
        """
        Administrative correction of a recorded payment.

        An amount change moves the installment's amount paid by the
        difference and re-derives its status.
        """
        if amount is not None:
            self._validate_amount(amount)
        self._validate_details(gps_lat, gps_lng, notes)

        with self.storage.atomic():
            collection = self.require_collection(collection_id)
            changes: Dict[str, Any] = {}

            if amount is not None:
                new_amount = Money(amount, collection.amount.currency)
                if not new_amount.is_positive():
                    raise ValidationError("Amount is below the smallest currency unit")
                delta = new_amount - collection.amount
                if not delta.is_zero():
                    self._apply_to_installment(collection.installment_id, delta)
                    changes['amount'] = {'from': str(collection.amount.amount),
                                         'to': str(new_amount.amount)}
                    collection.amount = new_amount

            if payment_date is not None:
                collection.payment_date = as_utc(payment_date)
                changes['payment_date'] = collection.payment_date.isoformat()
            if gps_lat is not None:
                collection.gps_lat = gps_lat
                changes['gps_lat'] = gps_lat
            if gps_lng is not None:
                collection.gps_lng = gps_lng
                changes['gps_lng'] = gps_lng
            if notes is not None:
                collection.notes = notes
                changes['notes'] = notes

            collection.touch()
            self.storage.save(self.table_name, collection.id, collection.to_dict())
            self.audit_trail.log_event(
                AuditEventType.COLLECTION_UPDATED, "collection", collection.id,
                changes, user_id=updated_by
            )
            self._refresh_loan(collection.installment_id, updated_by)
        return collection

    def delete_collection(self, collection_id: str, deleted_by: Optional[str] = None) -> None:
        """Remove a payment and take its amount back off the installment"""
        with self.storage.atomic():
            collection = self.require_collection(collection_id)
            self._apply_to_installment(collection.installment_id, -collection.amount)
            self.storage.delete(self.table_name, collection_id)
            self.audit_trail.log_event(
                AuditEventType.COLLECTION_DELETED, "collection", collection_id,
                {"installment_id": collection.installment_id,
                 "amount": str(collection.amount.amount)},
                user_id=deleted_by
            )
            self._refresh_loan(collection.installment_id, deleted_by)
        logger.info(f"Deleted collection {collection_id}")

    def _refresh_loan(self, installment_id: str, user_id: Optional[str]) -> None:
        installment = self.loan_manager.get_installment(installment_id)
        if installment:
            self.loan_manager.refresh_loan_completion(installment.loan_id, user_id)

    def list_collections(
        self,
        collector_id: Optional[str] = None,
        installment_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Enriched collections, newest payment first, one page at a time.

        start_date and end_date are inclusive calendar days (UTC). Returns the
        page and the total number of matches.
        """
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")

        collections = self.find_collections(collector_id, installment_id, start_date, end_date)
        total = len(collections)
        start = (page - 1) * limit
        return self.enrich(collections[start:start + limit]), total

    def find_collections(
        self,
        collector_id: Optional[str] = None,
        installment_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> List[Collection]:
        filters: Dict[str, Any] = {}
        if collector_id:
            filters['collector_id'] = collector_id
        if installment_id:
            filters['installment_id'] = installment_id

        collections = [Collection.from_dict(d) for d in self.storage.find(self.table_name, filters)]

        if start_date:
            lower = datetime.combine(start_date, datetime.min.time(), tzinfo=timezone.utc)
            collections = [c for c in collections if c.payment_date >= lower]
        if end_date:
            upper = datetime.combine(end_date + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
            collections = [c for c in collections if c.payment_date < upper]

        collections.sort(key=lambda c: c.payment_date, reverse=True)
        return collections

    def enrich(self, collections: List[Collection]) -> List[Dict[str, Any]]:
        """
        Join collections to installment, loan, borrower and collector.

        Missing references (a deleted loan or user) come back as None with
        display names of "Unknown".
        """
        cache: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

        def load(table: str, record_id: Optional[str]) -> Optional[Dict[str, Any]]:
            if not record_id:
                return None
            key = (table, record_id)
            if key not in cache:
                cache[key] = self.storage.load(table, record_id)
            return cache[key]

        views = []
        for collection in collections:
            installment = load(self.installments_table, collection.installment_id)
            loan = load(self.loans_table, installment['loan_id'] if installment else None)
            borrower = load(self.borrowers_table, loan['borrower_id'] if loan else None)
            collector = load(self.users_table, collection.collector_id)

            view = collection.to_view()
            view.update({
                'installment': {
                    'id': installment['id'],
                    'installment_number': installment['installment_number'],
                    'due_date': installment['due_date'],
                    'amount': installment['amount_amount'],
                    'status': installment['status'],
                } if installment else None,
                'loan': {
                    'id': loan['id'],
                    'loan_number': loan['loan_number'],
                } if loan else None,
                'borrower': {
                    'id': borrower['id'],
                    'name': borrower['name'],
                    'village': borrower['village'],
                } if borrower else None,
                'collector': {
                    'id': collector['id'],
                    'name': collector['name'],
                } if collector else None,
                'loan_number': loan['loan_number'] if loan else "Unknown",
                'borrower_name': borrower['name'] if borrower else "Unknown",
                'collector_name': collector['name'] if collector else "Unknown",
            })
            views.append(view)
        return views
