"""
Response envelope, serializers and exception handlers

Every response, success or error, has the shape
``{statusCode, data, message, success}``.
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..currency import Money
from ..accounts import Account
from ..ledger import LedgerEntry
from ..loans import Loan, AmortizationRow
from ..notifications import Notification
from ..audit import AuditRecord
from ..beneficiaries import Beneficiary
from ..reporting import AccountStatement, EntryPage
from ..exceptions import LedgerBankError
from ..logging_config import get_logger

logger = get_logger("ledgerbank.api")


class ApiResponse(BaseModel):
    statusCode: int
    data: Optional[Any] = None
    message: str
    success: bool


def respond(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    body = ApiResponse(
        statusCode=status_code,
        data=jsonable_encoder(data),
        message=message,
        success=status_code < 400
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


# Serializers

def money_out(money: Optional[Money]) -> Optional[Dict[str, str]]:
    if money is None:
        return None
    return {"amount": str(money.amount), "currency": money.currency.code}


def account_out(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_number": account.account_number,
        "display_name": account.display_name,
        "owner_id": account.owner_id,
        "account_type": account.account_type.value,
        "currency": account.currency.code,
        "balance": money_out(account.balance),
        "minimum_balance": money_out(account.minimum_balance),
        "status": account.status.value,
        "interest_rate": str(account.interest_rate),
        "opened_at": account.opened_at,
        "closed_at": account.closed_at,
        "last_transaction_at": account.last_transaction_at,
        "created_at": account.created_at,
        "updated_at": account.updated_at
    }


def entry_out(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "transaction_id": entry.id,
        "reference_number": entry.reference_number,
        "transaction_type": entry.transaction_type.value,
        "owner_id": entry.owner_id,
        "from_account_id": entry.from_account_id,
        "to_account_id": entry.to_account_id,
        "amount": money_out(entry.amount),
        "fee": money_out(entry.fee),
        "balance_after": money_out(entry.balance_after),
        "status": entry.status.value,
        "description": entry.description,
        "metadata": entry.metadata,
        "processed_at": entry.processed_at,
        "created_at": entry.created_at
    }


def page_out(page: EntryPage) -> Dict[str, Any]:
    return {
        "transactions": [entry_out(e) for e in page.entries],
        "pagination": {
            "page": page.page,
            "limit": page.page_size,
            "total": page.total,
            "pages": page.pages
        }
    }


def loan_out(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "owner_id": loan.owner_id,
        "account_id": loan.account_id,
        "loan_type": loan.loan_type.value,
        "principal": money_out(loan.principal),
        "interest_rate": str(loan.interest_rate),
        "tenure_months": loan.tenure_months,
        "emi": money_out(loan.emi),
        "total_amount": money_out(loan.total_amount),
        "remaining_balance": money_out(loan.remaining_balance),
        "total_paid": money_out(loan.total_paid),
        "number_of_payments": loan.number_of_payments,
        "status": loan.status.value,
        "progress": str(loan.progress),
        "next_payment_date": loan.next_payment_date,
        "days_until_next_payment": loan.days_until_next_payment,
        "disbursed_amount": money_out(loan.disbursed_amount),
        "disbursed_at": loan.disbursed_at,
        "start_date": loan.start_date,
        "end_date": loan.end_date,
        "rejection_reason": loan.rejection_reason,
        "reviewed_by": loan.reviewed_by,
        "reviewed_at": loan.reviewed_at,
        "created_at": loan.created_at
    }


def schedule_out(rows: List[AmortizationRow]) -> List[Dict[str, Any]]:
    return [{
        "payment_number": row.payment_number,
        "payment_date": row.payment_date,
        "payment_amount": str(row.payment_amount),
        "principal_amount": str(row.principal_amount),
        "interest_amount": str(row.interest_amount),
        "remaining_principal": str(row.remaining_principal)
    } for row in rows]


def statement_out(statement: AccountStatement) -> Dict[str, Any]:
    return {
        "account": account_out(statement.account),
        "start_date": statement.start_date,
        "end_date": statement.end_date,
        "opening_balance": money_out(statement.opening_balance),
        "closing_balance": money_out(statement.closing_balance),
        "total_credits": money_out(statement.total_credits),
        "total_debits": money_out(statement.total_debits),
        "transactions": [entry_out(line.entry) for line in statement.lines],
        "generated_at": statement.generated_at
    }


def notification_out(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.notification_type.value,
        "title": notification.title,
        "message": notification.message,
        "link": notification.link,
        "is_read": notification.is_read,
        "read_at": notification.read_at,
        "metadata": notification.metadata,
        "created_at": notification.created_at
    }


def beneficiary_out(beneficiary: Beneficiary) -> Dict[str, Any]:
    return {
        "id": beneficiary.id,
        "nickname": beneficiary.nickname,
        "account_number": beneficiary.account_number,
        "account_holder_name": beneficiary.account_holder_name,
        "bank_name": beneficiary.bank_name,
        "routing_code": beneficiary.routing_code,
        "account_type": beneficiary.account_type.value,
        "is_verified": beneficiary.is_verified,
        "last_used": beneficiary.last_used,
        "created_at": beneficiary.created_at,
        "updated_at": beneficiary.updated_at
    }


def audit_out(record: AuditRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "sequence": record.sequence,
        "action": record.action.value,
        "actor_id": record.actor_id,
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        "description": record.description,
        "status": record.status.value,
        "metadata": record.metadata,
        "current_hash": record.current_hash,
        "created_at": record.created_at
    }


# Exception handlers

def register_exception_handlers(app: FastAPI) -> None:
    """Translate every error into the envelope; internals never leak"""

    @app.exception_handler(LedgerBankError)
    async def ledgerbank_error_handler(request: Request, exc: LedgerBankError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
            return respond(None, "Internal server error", exc.status_code)
        return respond(None, exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else first.get("msg")
        else:
            message = "Invalid request"
        return respond(None, message, 400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return respond(None, str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return respond(None, "Internal server error", 500)
