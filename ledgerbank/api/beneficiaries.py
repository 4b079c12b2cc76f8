"""
Beneficiary endpoints
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, Principal, get_banking_system, get_current_principal
from .schemas import AddBeneficiaryRequest, UpdateBeneficiaryRequest, BeneficiaryTransferRequest
from .responses import respond, beneficiary_out, entry_out


router = APIRouter()


@router.post("")
def add_beneficiary(
    request: AddBeneficiaryRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    beneficiary = system.beneficiaries.add_beneficiary(
        principal.user_id,
        nickname=request.nickname,
        account_number=request.account_number,
        account_holder_name=request.account_holder_name,
        bank_name=request.bank_name,
        routing_code=request.routing_code,
        account_type=request.account_type
    )
    return respond({"beneficiary": beneficiary_out(beneficiary)},
                   "Beneficiary added successfully", 201)


@router.get("")
def get_beneficiaries(
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's saved payees, most recently used first"""
    beneficiaries = system.beneficiaries.list_beneficiaries(principal.user_id)
    return respond({"beneficiaries": [beneficiary_out(b) for b in beneficiaries]},
                   "Beneficiaries retrieved successfully")


@router.put("/{beneficiary_id}")
def update_beneficiary(
    beneficiary_id: str,
    request: UpdateBeneficiaryRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    beneficiary = system.beneficiaries.update_beneficiary(
        beneficiary_id, principal.user_id, **request.model_dump(exclude_none=True)
    )
    return respond({"beneficiary": beneficiary_out(beneficiary)},
                   "Beneficiary updated successfully")


@router.delete("/{beneficiary_id}")
def delete_beneficiary(
    beneficiary_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    system.beneficiaries.remove_beneficiary(beneficiary_id, principal.user_id)
    return respond(None, "Beneficiary deleted successfully")


@router.post("/{beneficiary_id}/transfer")
def transfer_to_beneficiary(
    beneficiary_id: str,
    request: BeneficiaryTransferRequest,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    """Send money to a saved payee held at this bank"""
    entry = system.beneficiaries.transfer_to_beneficiary(
        principal.user_id, beneficiary_id, request.from_account_id,
        request.amount, request.description
    )
    return respond({"transaction": entry_out(entry)}, "Transfer successful", 201)
