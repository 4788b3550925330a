"""
Borrower Registry Module

Borrower profiles for village lending: identity, household, village and GPS
location of the home, plus photo and ID-proof images held by the asset store.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, NotFoundError, ValidationError
from .integrations import AssetStore, decode_upload

logger = logging.getLogger("microfinance.borrowers")

MAX_PAGE_SIZE = 100


def validate_gps(lat: Optional[float], lng: Optional[float]) -> None:
    """Latitude in [-90, 90], longitude in [-180, 180]"""
    if lat is not None and not -90 <= lat <= 90:
        raise ValidationError("Latitude must be between -90 and 90")
    if lng is not None and not -180 <= lng <= 180:
        raise ValidationError("Longitude must be between -180 and 180")


@dataclass
class Borrower(StorageRecord):
    """Borrower profile"""
    name: str
    address: str
    village: str
    phone: Optional[str] = None
    gps_lat: Optional[float] = None
    gps_lng: Optional[float] = None
    photo_url: Optional[str] = None
    id_proof_url: Optional[str] = None
    household_head: Optional[str] = None
    is_active: bool = True

    def __post_init__(self):
        if len((self.name or "").strip()) < 2:
            raise ValidationError("Name must be at least 2 characters")
        if len((self.address or "").strip()) < 5:
            raise ValidationError("Address must be at least 5 characters")
        if len((self.village or "").strip()) < 2:
            raise ValidationError("Village must be at least 2 characters")
        validate_gps(self.gps_lat, self.gps_lng)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Borrower':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class BorrowerManager:
    """Creates, searches, updates and removes borrowers"""

    UPDATABLE_FIELDS = {
        'name', 'phone', 'address', 'village', 'gps_lat', 'gps_lng',
        'photo_url', 'id_proof_url', 'household_head', 'is_active'
    }

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 asset_store: Optional[AssetStore] = None, asset_folder: str = "borrowers"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.asset_store = asset_store
        self.asset_folder = asset_folder
        self.table_name = "borrowers"
        self.loans_table = "loans"

    def _upload(self, data: Optional[str], kind: str) -> Optional[str]:
        if not data:
            return None
        if not self.asset_store:
            raise ValidationError("Image uploads are not configured")
        url = self.asset_store.upload(decode_upload(data), f"{self.asset_folder}/{kind}")
        logger.info(f"Uploaded borrower {kind} to {url}")
        return url

    def create_borrower(
        self,
        name: str,
        address: str,
        village: str,
        phone: Optional[str] = None,
        gps_lat: Optional[float] = None,
        gps_lng: Optional[float] = None,
        photo_url: Optional[str] = None,
        id_proof_url: Optional[str] = None,
        household_head: Optional[str] = None,
        photo_data: Optional[str] = None,
        id_proof_data: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Borrower:
        """
        Register a borrower

        photo_data / id_proof_data are base64 images; when given they are
        uploaded to the asset store and replace the corresponding URL.

        Raises:
            ValidationError: If any field is out of range
        """
        now = datetime.now(timezone.utc)
        borrower = Borrower(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            address=address.strip(),
            village=village.strip(),
            phone=phone,
            gps_lat=gps_lat,
            gps_lng=gps_lng,
            photo_url=photo_url,
            id_proof_url=id_proof_url,
            household_head=household_head
        )

        borrower.photo_url = self._upload(photo_data, "photos") or borrower.photo_url
        borrower.id_proof_url = self._upload(id_proof_data, "id_proofs") or borrower.id_proof_url

        self.storage.save(self.table_name, borrower.id, borrower.to_dict())
        self.audit_trail.log_event(
            AuditEventType.BORROWER_CREATED, "borrower", borrower.id,
            {"name": borrower.name, "village": borrower.village},
            user_id=created_by
        )
        logger.info(f"Registered borrower {borrower.id} in {borrower.village}")
        return borrower

    def get_borrower(self, borrower_id: str) -> Optional[Borrower]:
        data = self.storage.load(self.table_name, borrower_id)
        return Borrower.from_dict(data) if data else None

    def require_borrower(self, borrower_id: str) -> Borrower:
        borrower = self.get_borrower(borrower_id)
        if not borrower:
            raise NotFoundError(f"Borrower {borrower_id} not found")
        return borrower

    def list_borrowers(
        self,
        search: Optional[str] = None,
        village: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Borrower], int]:
        """
        Borrowers newest first

        `search` matches name, village or phone case-insensitively.
        Returns one page of borrowers and the total number of matches.
        """
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")

        borrowers = [Borrower.from_dict(d) for d in self.storage.load_all(self.table_name)]

        if village:
            borrowers = [b for b in borrowers if b.village.lower() == village.lower()]

        if search:
            needle = search.strip().lower()
            borrowers = [
                b for b in borrowers
                if needle in b.name.lower()
                or needle in b.village.lower()
                or needle in (b.phone or "").lower()
            ]

        borrowers.sort(key=lambda b: b.created_at, reverse=True)
        total = len(borrowers)
        start = (page - 1) * limit
        return borrowers[start:start + limit], total

    def update_borrower(self, borrower_id: str, updated_by: Optional[str] = None,
                        photo_data: Optional[str] = None, id_proof_data: Optional[str] = None,
                        **changes: Any) -> Borrower:
        """Partial update; fields left as None are unchanged"""
        borrower = self.require_borrower(borrower_id)

        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        changes = {k: v for k, v in changes.items() if v is not None}
        photo_url = self._upload(photo_data, "photos")
        if photo_url:
            changes['photo_url'] = photo_url
        id_proof_url = self._upload(id_proof_data, "id_proofs")
        if id_proof_url:
            changes['id_proof_url'] = id_proof_url

        data = borrower.to_dict()
        data.update(changes)
        updated = Borrower.from_dict(data)
        updated.touch()

        self.storage.save(self.table_name, updated.id, updated.to_dict())
        self.audit_trail.log_event(
            AuditEventType.BORROWER_UPDATED, "borrower", updated.id,
            {"fields": sorted(changes)}, user_id=updated_by
        )
        return updated

    def delete_borrower(self, borrower_id: str, deleted_by: Optional[str] = None) -> None:
        """
        Remove a borrower

        Raises:
            NotFoundError: Unknown borrower
            ConflictError: The borrower still has loans
        """
        borrower = self.require_borrower(borrower_id)
        if self.storage.find(self.loans_table, {"borrower_id": borrower_id}):
            raise ConflictError("Borrower has loans and cannot be deleted")

        self.storage.delete(self.table_name, borrower_id)
        self.audit_trail.log_event(
            AuditEventType.BORROWER_DELETED, "borrower", borrower_id,
            {"name": borrower.name}, user_id=deleted_by
        )
        logger.info(f"Deleted borrower {borrower_id}")
