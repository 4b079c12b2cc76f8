"""
Loan endpoints
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, Principal, get_banking_system, get_current_principal
from .schemas import LoanApplicationRequest, UpdateLoanTermsRequest, LoanPaymentRequest
from .responses import respond, loan_out, schedule_out
from ..loans import LoanStatus, derive_loan_figures


router = APIRouter()


@router.post("")
def apply_for_loan(
    request: LoanApplicationRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Submit a loan application"""
    loan = system.loan_manager.apply_for_loan(
        owner_id=principal.user_id,
        account_id=request.account_id,
        loan_type=request.loan_type,
        principal=request.principal,
        interest_rate=request.interest_rate,
        tenure_months=request.tenure_months
    )
    return respond({"loan": loan_out(loan)}, "Loan application submitted successfully", 201)


@router.get("")
def get_loans(
    status: Optional[LoanStatus] = None,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    loans = system.loan_manager.get_owner_loans(principal.user_id, status)
    return respond({"loans": [loan_out(l) for l in loans]}, "Loans retrieved successfully")


@router.get("/calculator")
def loan_calculator(
    principal: Decimal = Query(..., gt=0),
    interest_rate: Decimal = Query(..., ge=0),
    tenure_months: int = Query(..., ge=1),
    _: Principal = Depends(get_current_principal)
):
    """EMI and total repayment for prospective terms"""
    figures = derive_loan_figures(principal, interest_rate, tenure_months)
    return respond({
        "emi": str(figures.emi),
        "total_amount": str(figures.total_amount),
        "total_interest": str(figures.total_amount - principal)
    }, "Loan figures calculated")


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    loan = system.loan_manager.get_loan(loan_id, principal.user_id)
    return respond({"loan": loan_out(loan)}, "Loan retrieved successfully")


@router.put("/{loan_id}")
def update_loan_terms(
    loan_id: str,
    request: UpdateLoanTermsRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Change the terms of a pending application"""
    loan = system.loan_manager.update_terms(
        loan_id, principal.user_id,
        principal=request.principal,
        interest_rate=request.interest_rate,
        tenure_months=request.tenure_months
    )
    return respond({"loan": loan_out(loan)}, "Loan terms updated successfully")


@router.get("/{loan_id}/schedule")
def loan_schedule(
    loan_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    rows = system.loan_manager.loan_schedule(loan_id, principal.user_id)
    return respond({"schedule": schedule_out(rows)}, "Schedule generated successfully")


@router.post("/{loan_id}/pay")
def pay_loan(
    loan_id: str,
    request: LoanPaymentRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Repay a loan from one of the caller's accounts"""
    loan = system.loan_manager.apply_payment(
        loan_id, principal.user_id, request.account_id, request.amount
    )
    return respond({"loan": loan_out(loan)}, "Loan payment processed successfully")
