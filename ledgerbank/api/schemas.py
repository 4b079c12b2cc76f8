"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from ..accounts import AccountType
from ..loans import LoanType


# Account schemas
class CreateAccountRequest(BaseModel):
    account_type: AccountType
    currency: Optional[str] = Field(None, description="Currency code (USD, EUR, GBP)")
    initial_deposit: Optional[Decimal] = Field(None, ge=0)
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    minimum_balance: Optional[Decimal] = Field(None, ge=0)


class UpdateAccountRequest(BaseModel):
    account_type: Optional[AccountType] = None
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    minimum_balance: Optional[Decimal] = Field(None, ge=0)


class AccountStatusRequest(BaseModel):
    reason: str = ""


# Transaction schemas
class DepositRequest(BaseModel):
    account_id: str
    amount: Decimal = Field(..., gt=0, description="Decimal amount, at most 2 places")
    description: Optional[str] = Field(None, max_length=500)


class WithdrawRequest(BaseModel):
    account_id: str
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=500)


class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: Optional[str] = None
    to_account_number: Optional[str] = Field(None, description="Alternative to to_account_id")
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=500)


# Loan schemas
class LoanApplicationRequest(BaseModel):
    account_id: str
    loan_type: LoanType
    principal: Decimal = Field(..., gt=0)
    interest_rate: Decimal = Field(..., ge=0)
    tenure_months: int = Field(..., ge=1)


class UpdateLoanTermsRequest(BaseModel):
    principal: Optional[Decimal] = Field(None, gt=0)
    interest_rate: Optional[Decimal] = Field(None, ge=0)
    tenure_months: Optional[int] = Field(None, ge=1)


class LoanPaymentRequest(BaseModel):
    account_id: str
    amount: Decimal = Field(..., gt=0)


class RejectLoanRequest(BaseModel):
    reason: str = Field(..., min_length=1)


# Beneficiary schemas
class AddBeneficiaryRequest(BaseModel):
    nickname: str = Field(..., min_length=1, max_length=50)
    account_number: str = Field(..., min_length=1)
    account_holder_name: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)
    routing_code: str = Field(..., min_length=1, description="Bank branch / IFSC code")
    account_type: AccountType


class UpdateBeneficiaryRequest(BaseModel):
    nickname: Optional[str] = Field(None, min_length=1, max_length=50)
    account_number: Optional[str] = Field(None, min_length=1)
    account_holder_name: Optional[str] = Field(None, min_length=1)
    bank_name: Optional[str] = Field(None, min_length=1)
    routing_code: Optional[str] = Field(None, min_length=1)
    account_type: Optional[AccountType] = None


class BeneficiaryTransferRequest(BaseModel):
    from_account_id: str
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=500)
