"""
Borrower endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import MicrofinanceSystem, Principal, get_system, get_current_principal, require_role
from .schemas import CreateBorrowerRequest, UpdateBorrowerRequest
from ..users import UserRole


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_borrower(
    request: CreateBorrowerRequest,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Register a borrower"""
    borrower = system.borrower_manager.create_borrower(
        **request.model_dump(), created_by=principal.user_id
    )
    return {"borrower": borrower.to_dict()}


@router.get("")
async def list_borrowers(
    search: Optional[str] = None,
    village: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Search borrowers by name, village or phone"""
    borrowers, total = system.borrower_manager.list_borrowers(
        search=search, village=village, page=page, limit=limit
    )
    return {
        "borrowers": [b.to_dict() for b in borrowers],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit
        }
    }


@router.get("/{borrower_id}")
async def get_borrower(
    borrower_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Borrower profile with their loans"""
    borrower = system.borrower_manager.require_borrower(borrower_id)
    return {
        "borrower": borrower.to_dict(),
        "loans": system.loan_manager.list_loans(borrower_id=borrower_id)
    }


@router.get("/{borrower_id}/summary")
async def get_borrower_summary(
    borrower_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Loan count and aggregate outstanding"""
    system.borrower_manager.require_borrower(borrower_id)
    return {"summary": system.loan_manager.borrower_summary(borrower_id)}


@router.put("/{borrower_id}")
async def update_borrower(
    borrower_id: str,
    request: UpdateBorrowerRequest,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    borrower = system.borrower_manager.update_borrower(
        borrower_id, updated_by=principal.user_id, **request.model_dump(exclude_unset=True)
    )
    return {"borrower": borrower.to_dict()}


@router.delete("/{borrower_id}")
async def delete_borrower(
    borrower_id: str,
    principal: Principal = Depends(require_role(UserRole.ADMIN, UserRole.SUPERVISOR)),
    system: MicrofinanceSystem = Depends(get_system)
):
    system.borrower_manager.delete_borrower(borrower_id, deleted_by=principal.user_id)
    return {"message": "Borrower deleted"}
