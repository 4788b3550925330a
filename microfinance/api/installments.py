"""
Installment endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import MicrofinanceSystem, Principal, get_system, get_current_principal, require_role
from ..errors import NotFoundError
from ..loans import InstallmentStatus
from ..users import UserRole


router = APIRouter()


@router.get("")
async def list_installments(
    status: Optional[InstallmentStatus] = None,
    loan_id: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Installments by due date, optionally filtered by status or loan"""
    installments = system.loan_manager.list_installments(status=status, loan_id=loan_id)
    return {"installments": [i.to_view() for i in installments]}


@router.post("/mark-overdue")
async def mark_overdue(
    as_of: Optional[date] = None,
    principal: Principal = Depends(require_role(UserRole.ADMIN, UserRole.SUPERVISOR)),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Flag unpaid installments past their due date"""
    marked = system.loan_manager.mark_overdue_installments(as_of)
    return {"marked": marked}


@router.get("/{installment_id}")
async def get_installment(
    installment_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    installment = system.loan_manager.require_installment(installment_id)
    loan = system.loan_manager.get_loan(installment.loan_id)
    if not loan:
        raise NotFoundError(f"Installment {installment_id} not found")

    borrower = system.borrower_manager.get_borrower(loan.borrower_id)
    collections = system.collection_manager.find_collections(installment_id=installment_id)
    return {
        "installment": installment.to_view(),
        "loan": {
            "id": loan.id,
            "loan_number": loan.loan_number,
            "borrower_id": loan.borrower_id,
            "borrower_name": borrower.name if borrower else "Unknown",
        },
        "collections": system.collection_manager.enrich(collections)
    }
