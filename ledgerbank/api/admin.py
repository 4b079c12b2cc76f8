"""
Admin endpoints: loan review, account freezing, dashboard and audit
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, Principal, get_banking_system, require_admin
from .schemas import RejectLoanRequest, AccountStatusRequest
from .responses import respond, loan_out, account_out, audit_out
from ..audit import AuditAction, AuditStatus


router = APIRouter()


@router.get("/loans/pending")
def pending_loans(
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    loans = system.loan_manager.list_pending_loans()
    return respond({"loans": [loan_out(l) for l in loans]},
                   "Pending loans retrieved successfully")


@router.put("/loans/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    loan = system.loan_manager.approve_loan(loan_id, admin.user_id)
    return respond({"loan": loan_out(loan)}, "Loan approved successfully")


@router.put("/loans/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    loan = system.loan_manager.reject_loan(loan_id, admin.user_id, request.reason)
    return respond({"loan": loan_out(loan)}, "Loan rejected successfully")


@router.put("/loans/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Credit an approved loan's principal into its linked account"""
    loan = system.loan_manager.disburse_loan(loan_id, admin.user_id)
    return respond({"loan": loan_out(loan)}, "Loan disbursed successfully")


@router.put("/accounts/{account_id}/freeze")
def freeze_account(
    account_id: str,
    request: AccountStatusRequest,
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_manager.freeze_account(account_id, admin.user_id, request.reason)
    return respond({"account": account_out(account)}, "Account frozen successfully")


@router.put("/accounts/{account_id}/unfreeze")
def unfreeze_account(
    account_id: str,
    request: AccountStatusRequest,
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_manager.unfreeze_account(account_id, admin.user_id, request.reason)
    return respond({"account": account_out(account)}, "Account unfrozen successfully")


@router.get("/dashboard")
def dashboard(
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    return respond(system.reporting.dashboard_stats(), "Dashboard stats retrieved successfully")


@router.get("/audit")
def audit_events(
    action: Optional[AuditAction] = None,
    actor_id: Optional[str] = None,
    status: Optional[AuditStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Most recent audit records, oldest first within the page"""
    if not system.audit_trail:
        return respond({"events": []}, "Audit logging is disabled")
    records = system.audit_trail.get_events(action=action, actor_id=actor_id,
                                            status=status, limit=limit)
    return respond({"events": [audit_out(r) for r in records]},
                   "Audit events retrieved successfully")


@router.get("/audit/verify")
def verify_audit(
    admin: Principal = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Recompute the audit hash chain"""
    if not system.audit_trail:
        return respond({"valid": True, "total_events": 0}, "Audit logging is disabled")
    return respond(system.audit_trail.verify_integrity(), "Audit chain verified")
