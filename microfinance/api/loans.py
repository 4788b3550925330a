"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import MicrofinanceSystem, Principal, get_system, get_current_principal, require_role
from .schemas import CreateLoanRequest, UpdateLoanRequest
from ..loans import LoanStatus
from ..users import UserRole


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Issue a loan with its weekly schedule"""
    loan = system.loan_manager.issue_loan(
        borrower_id=request.borrower_id,
        principal_amount=request.principal_amount,
        disbursed_amount=request.disbursed_amount,
        term_weeks=request.term_weeks,
        start_date=request.start_date,
        created_by=principal.user_id
    )
    return {"loan": system.loan_manager.get_loan_details(loan.id)}


@router.get("")
async def list_loans(
    status: Optional[LoanStatus] = None,
    borrower_id: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Loans newest first with borrower name and outstanding amount"""
    return {"loans": system.loan_manager.list_loans(status=status, borrower_id=borrower_id)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    return {"loan": system.loan_manager.get_loan_details(loan_id)}


@router.get("/{loan_id}/installments")
async def get_loan_installments(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    installments = system.loan_manager.get_installments(loan_id)
    return {"installments": [i.to_view() for i in installments]}


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    return {"payments": system.loan_manager.get_loan_payments(loan_id)}


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    principal: Principal = Depends(require_role(UserRole.ADMIN, UserRole.SUPERVISOR)),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Change principal, disbursed amount or status"""
    system.loan_manager.update_loan(
        loan_id,
        principal_amount=request.principal_amount,
        disbursed_amount=request.disbursed_amount,
        status=request.status,
        updated_by=principal.user_id
    )
    return {"loan": system.loan_manager.get_loan_details(loan_id)}


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    principal: Principal = Depends(require_role(UserRole.ADMIN, UserRole.SUPERVISOR)),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Delete a loan and its installments"""
    removed = system.loan_manager.delete_loan(loan_id, deleted_by=principal.user_id)
    return {"message": "Loan deleted", "installments_deleted": removed}
