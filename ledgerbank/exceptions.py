"""
Error Taxonomy Module

Typed errors raised by the core. Each carries the HTTP-style status code the
API layer translates it to, and a single human-readable message.
"""


class LedgerBankError(Exception):
    """Base exception for all LedgerBank errors"""

    status_code = 500

    def __init__(self, message: str = "", status_code: int = None):
        message = message or self.__class__.__doc__ or "Error"
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LedgerBankError):
    """Request has a bad shape or an out-of-range value"""
    status_code = 400


class InvalidAmountError(ValidationError):
    """Amount must be positive with at most two decimal places"""


class InvalidLoanStateError(ValidationError):
    """Loan is not in a state that allows this operation"""


class NotFoundError(LedgerBankError):
    """Referenced entity does not exist"""
    status_code = 404


class AccountNotFoundError(NotFoundError):
    """Account not found"""


class LoanNotFoundError(NotFoundError):
    """Loan not found"""


class TransactionNotFoundError(NotFoundError):
    """Transaction not found"""


class BeneficiaryNotFoundError(NotFoundError):
    """Beneficiary not found"""


class AuthenticationError(LedgerBankError):
    """Caller could not be authenticated"""
    status_code = 401


class AuthorizationError(LedgerBankError):
    """Caller does not own the resource or lacks the required role"""
    status_code = 403


class InsufficientFundsError(LedgerBankError):
    """Insufficient balance or below minimum balance requirement"""
    status_code = 400


class InactiveAccountError(LedgerBankError):
    """Account is not active"""
    status_code = 423


class SameAccountTransferError(LedgerBankError):
    """Cannot transfer to the same account"""
    status_code = 400


class LoanNotActiveError(LedgerBankError):
    """Loan is not active"""
    status_code = 400


class PaymentExceedsBalanceError(LedgerBankError):
    """Payment amount exceeds remaining balance"""
    status_code = 400


class ConcurrencyConflictError(LedgerBankError):
    """Another request changed the same records first; please retry"""
    status_code = 409


class DuplicateEntryError(LedgerBankError):
    """Ledger entry already exists and cannot be rewritten"""
    status_code = 409


class DependencyError(LedgerBankError):
    """Notification, audit or rendering collaborator failed"""
    status_code = 500
