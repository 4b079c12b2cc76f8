"""
Transaction endpoints
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from .auth import BankingSystem, Principal, get_banking_system, get_current_principal
from .schemas import DepositRequest, WithdrawRequest, TransferRequest
from .responses import respond, entry_out, page_out, statement_out
from ..ledger import TransactionType, TransactionStatus
from ..exceptions import ValidationError


router = APIRouter()


@router.post("/deposit")
def deposit(
    request: DepositRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a deposit"""
    entry = system.engine.deposit(
        principal.user_id, request.account_id, request.amount, request.description
    )
    return respond({"transaction": entry_out(entry)}, "Deposit successful", 201)


@router.post("/withdraw")
def withdraw(
    request: WithdrawRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a withdrawal"""
    entry = system.engine.withdraw(
        principal.user_id, request.account_id, request.amount, request.description
    )
    return respond({"transaction": entry_out(entry)}, "Withdrawal successful", 201)


@router.post("/transfer")
def transfer(
    request: TransferRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transfer to another account, by id or by account number"""
    to_account_id = request.to_account_id
    if not to_account_id:
        if not request.to_account_number:
            raise ValidationError("to_account_id or to_account_number is required")
        to_account_id = system.account_manager.get_account_by_number(request.to_account_number).id

    entry = system.engine.transfer(
        principal.user_id, request.from_account_id, to_account_id,
        request.amount, request.description
    )
    return respond({"transaction": entry_out(entry)}, "Transfer successful", 201)


@router.get("")
def list_transactions(
    transaction_type: Optional[TransactionType] = None,
    status: Optional[TransactionStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    account_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """The caller's transaction history, newest first"""
    result = system.reporting.list_entries(
        principal.user_id,
        transaction_type=transaction_type,
        status=status,
        start_date=start_date,
        end_date=end_date,
        account_id=account_id,
        page=page,
        page_size=limit
    )
    return respond(page_out(result), "Transactions retrieved successfully")


@router.get("/statement/{account_id}")
def statement(
    account_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    format: str = Query("json", pattern="^(json|csv)$"),
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Account statement as JSON, or as a CSV download"""
    result = system.reporting.account_statement(
        account_id, principal.user_id, start_date, end_date
    )
    if format == "csv":
        renderer = system.statement_renderer
        return Response(
            content=renderer.render(result),
            media_type=renderer.media_type,
            headers={"Content-Disposition": f'attachment; filename="{renderer.filename(result)}"'}
        )
    return respond({"statement": statement_out(result)}, "Statement generated successfully")


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    entry = system.engine.get_entry(transaction_id, principal.user_id)
    return respond({"transaction": entry_out(entry)}, "Transaction retrieved successfully")
