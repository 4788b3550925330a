"""
Collection endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import MicrofinanceSystem, Principal, get_system, get_current_principal, require_role
from .schemas import CreateCollectionRequest, UpdateCollectionRequest
from ..logging_config import get_logger, log_action
from ..users import UserRole


router = APIRouter()
logger = get_logger("microfinance.api.collections")


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_collection(
    request: CreateCollectionRequest,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Record a payment against an installment"""
    collection = system.collection_manager.record_payment(
        installment_id=request.installment_id,
        collector_id=request.collector_id or principal.user_id,
        amount=request.amount,
        payment_date=request.payment_date,
        gps_lat=request.gps_lat,
        gps_lng=request.gps_lng,
        notes=request.notes,
        recorded_by=principal.user_id
    )
    log_action(
        logger, "info", "Payment recorded",
        user_id=principal.user_id, action="record_payment", resource="collection",
        extra={"collection_id": collection.id, "amount": str(collection.amount.amount)}
    )
    return {"collection": system.collection_manager.get_collection_view(collection.id)}


@router.get("")
async def list_collections(
    collector_id: Optional[str] = None,
    installment_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Collections newest first, filtered and paginated"""
    collections, total = system.collection_manager.list_collections(
        collector_id=collector_id,
        installment_id=installment_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit
    )
    return {
        "collections": collections,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit
        }
    }


@router.get("/{collection_id}")
async def get_collection(
    collection_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    return {"collection": system.collection_manager.get_collection_view(collection_id)}


@router.put("/{collection_id}")
async def update_collection(
    collection_id: str,
    request: UpdateCollectionRequest,
    principal: Principal = Depends(require_role(UserRole.ADMIN)),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Correct a recorded payment"""
    system.collection_manager.update_collection(
        collection_id,
        amount=request.amount,
        payment_date=request.payment_date,
        gps_lat=request.gps_lat,
        gps_lng=request.gps_lng,
        notes=request.notes,
        updated_by=principal.user_id
    )
    return {"collection": system.collection_manager.get_collection_view(collection_id)}


@router.delete("/{collection_id}")
async def delete_collection(
    collection_id: str,
    principal: Principal = Depends(require_role(UserRole.ADMIN)),
    system: MicrofinanceSystem = Depends(get_system)
):
    system.collection_manager.delete_collection(collection_id, deleted_by=principal.user_id)
    log_action(
        logger, "warning", "Payment deleted",
        user_id=principal.user_id, action="delete_payment", resource="collection",
        extra={"collection_id": collection_id}
    )
    return {"message": "Collection deleted"}
