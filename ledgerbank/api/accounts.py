"""
Account endpoints
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, Principal, get_banking_system, get_current_principal
from .schemas import CreateAccountRequest, UpdateAccountRequest
from .responses import respond, account_out
from ..currency import Currency


router = APIRouter()


@router.post("")
def create_account(
    request: CreateAccountRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open an account, optionally seeded with an initial deposit"""
    account = system.account_manager.create_account(
        owner_id=principal.user_id,
        account_type=request.account_type,
        currency=Currency.from_code(request.currency) if request.currency else None,
        initial_deposit=request.initial_deposit,
        interest_rate=request.interest_rate,
        minimum_balance=request.minimum_balance
    )
    return respond({"account": account_out(account)}, "Account created successfully", 201)


@router.get("")
def get_accounts(
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's open accounts"""
    accounts = system.account_manager.get_owner_accounts(principal.user_id)
    return respond({"accounts": [account_out(a) for a in accounts]},
                   "Accounts retrieved successfully")


@router.get("/{account_id}")
def get_account(
    account_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_manager.get_account(account_id, principal.user_id)
    return respond({"account": account_out(account)}, "Account retrieved successfully")


@router.put("/{account_id}")
def update_account(
    account_id: str,
    request: UpdateAccountRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Edit non-financial account fields"""
    account = system.account_manager.update_account(
        account_id, principal.user_id,
        account_type=request.account_type,
        interest_rate=request.interest_rate,
        minimum_balance=request.minimum_balance
    )
    return respond({"account": account_out(account)}, "Account updated successfully")


@router.delete("/{account_id}")
def close_account(
    account_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Close a zero-balance account"""
    account = system.account_manager.close_account(account_id, principal.user_id)
    return respond({"account": account_out(account)}, "Account closed successfully")
