"""
Loan Module

Handles loan applications, admin review, disbursement, repayment and
amortization. EMI, total amount and remaining balance are derived by pure
functions and recomputed explicitly before a loan is persisted. Money only
moves through the Transaction Engine: disbursement is a deposit into the
linked account and each repayment is a loan_payment debit, committed in the
same atomic unit as the loan update.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum
import calendar
import math
import secrets
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageRecord
from .ledger import LedgerStore, TransactionType
from .transactions import TransactionEngine, MovementRequest, Movement
from .audit import AuditTrail, AuditAction
from .notifications import NotificationDispatcher, NotificationType
from .exceptions import (
    LedgerBankError, ValidationError, InvalidLoanStateError, LoanNotFoundError,
    AccountNotFoundError, AuthorizationError, LoanNotActiveError,
    PaymentExceedsBalanceError, InactiveAccountError
)
from .logging_config import get_logger, log_action, best_effort

CENT = Decimal('0.01')


class LoanType(Enum):
    PERSONAL = "personal"
    HOME = "home"
    CAR = "car"
    EDUCATION = "education"
    BUSINESS = "business"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application awaiting review
    APPROVED = "approved"      # Approved, not yet disbursed
    REJECTED = "rejected"      # Declined by an administrator
    DISBURSED = "disbursed"    # Funds credited, no repayment yet
    ACTIVE = "active"          # Being repaid
    CLOSED = "closed"          # Fully repaid
    DEFAULTED = "defaulted"


PAYABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.DISBURSED)


def calculate_emi(principal: Union[Decimal, str], annual_rate: Union[Decimal, str],
                  tenure_months: int) -> Decimal:
    """
    Equated monthly installment, rounded half-up to cents.

    EMI = P * i * (1 + i)^n / ((1 + i)^n - 1) with i = annual_rate / 1200.
    A zero rate degenerates to P / n.
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    if tenure_months < 1:
        raise ValidationError("Tenure must be at least 1 month")

    if annual_rate == 0:
        emi = principal / Decimal(tenure_months)
    else:
        monthly_rate = annual_rate / Decimal('1200')
        factor = (Decimal('1') + monthly_rate) ** tenure_months
        emi = principal * monthly_rate * factor / (factor - Decimal('1'))

    return emi.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LoanFigures:
    """Derived repayment figures for a set of loan terms"""
    emi: Decimal
    total_amount: Decimal
    remaining_balance: Decimal


def derive_loan_figures(principal: Union[Decimal, str], annual_rate: Union[Decimal, str],
                        tenure_months: int) -> LoanFigures:
    """total = EMI * n; a fresh loan owes its whole total"""
    emi = calculate_emi(principal, annual_rate, tenure_months)
    total = (emi * tenure_months).quantize(CENT, rounding=ROUND_HALF_UP)
    return LoanFigures(emi=emi, total_amount=total, remaining_balance=total)


@dataclass
class AmortizationRow:
    """Single installment in an amortization schedule"""
    payment_number: int
    payment_date: date
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_principal: Decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortization_schedule(principal: Union[Decimal, str], annual_rate: Union[Decimal, str],
                          tenure_months: int,
                          start_date: Optional[date] = None) -> List[AmortizationRow]:
    """
    Month-by-month split of each EMI into interest and principal.

    Interest accrues on the outstanding principal at annual_rate / 1200; the
    final installment clears whatever principal is left.
    """
    principal = to_decimal(principal)
    monthly_rate = to_decimal(annual_rate) / Decimal('1200')
    emi = calculate_emi(principal, annual_rate, tenure_months)
    start_date = start_date or datetime.now(timezone.utc).date()

    schedule = []
    outstanding = principal
    for number in range(1, tenure_months + 1):
        interest = (outstanding * monthly_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        if number == tenure_months:
            principal_part = outstanding
        else:
            principal_part = min(emi - interest, outstanding)
        outstanding = outstanding - principal_part

        schedule.append(AmortizationRow(
            payment_number=number,
            payment_date=add_months(start_date, number),
            payment_amount=principal_part + interest,
            principal_amount=principal_part,
            interest_amount=interest,
            remaining_principal=outstanding
        ))
        if outstanding <= 0:
            break

    return schedule


@dataclass
class Loan(StorageRecord):
    """
    Loan against a customer account
    """
    loan_number: str
    owner_id: str
    account_id: str
    loan_type: LoanType
    currency: Currency
    principal: Money
    interest_rate: Decimal
    tenure_months: int
    emi: Money
    total_amount: Money
    remaining_balance: Money
    total_paid: Money
    number_of_payments: int = 0
    status: LoanStatus = LoanStatus.PENDING
    next_payment_date: Optional[datetime] = None
    disbursed_amount: Optional[Money] = None
    disbursed_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.disbursed_amount is None:
            self.disbursed_amount = Money.zero(self.currency)

    @property
    def progress(self) -> Decimal:
        """Percent of the total amount repaid"""
        if self.total_amount.is_zero():
            return Decimal('0')
        paid = self.total_amount.amount - self.remaining_balance.amount
        return (paid / self.total_amount.amount * 100).quantize(CENT, rounding=ROUND_HALF_UP)

    @property
    def days_until_next_payment(self) -> Optional[int]:
        if not self.next_payment_date:
            return None
        seconds = (self.next_payment_date - datetime.now(timezone.utc)).total_seconds()
        return max(math.ceil(seconds / 86400), 0)

    def apply_figures(self, figures: LoanFigures) -> None:
        self.emi = Money(figures.emi, self.currency)
        self.total_amount = Money(figures.total_amount, self.currency)
        self.remaining_balance = Money(figures.remaining_balance, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'owner_id': self.owner_id,
            'account_id': self.account_id,
            'loan_type': self.loan_type.value,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'interest_rate': str(self.interest_rate),
            'tenure_months': self.tenure_months,
            'emi': str(self.emi.amount),
            'total_amount': str(self.total_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'total_paid': str(self.total_paid.amount),
            'number_of_payments': self.number_of_payments,
            'status': self.status.value,
            'next_payment_date': iso(self.next_payment_date),
            'disbursed_amount': str(self.disbursed_amount.amount),
            'disbursed_at': iso(self.disbursed_at),
            'start_date': iso(self.start_date),
            'end_date': iso(self.end_date),
            'rejection_reason': self.rejection_reason,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': iso(self.reviewed_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data.get(key) or '0'), currency)

        def get_datetime(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            owner_id=data['owner_id'],
            account_id=data['account_id'],
            loan_type=LoanType(data['loan_type']),
            currency=currency,
            principal=get_money('principal'),
            interest_rate=Decimal(data['interest_rate']),
            tenure_months=int(data['tenure_months']),
            emi=get_money('emi'),
            total_amount=get_money('total_amount'),
            remaining_balance=get_money('remaining_balance'),
            total_paid=get_money('total_paid'),
            number_of_payments=int(data.get('number_of_payments', 0)),
            status=LoanStatus(data['status']),
            next_payment_date=get_datetime('next_payment_date'),
            disbursed_amount=get_money('disbursed_amount'),
            disbursed_at=get_datetime('disbursed_at'),
            start_date=get_datetime('start_date'),
            end_date=get_datetime('end_date'),
            rejection_reason=data.get('rejection_reason'),
            reviewed_by=data.get('reviewed_by'),
            reviewed_at=get_datetime('reviewed_at')
        )


class LoanManager:
    """
    Manages the loan lifecycle from application to payoff
    """

    def __init__(
        self,
        store: LedgerStore,
        engine: TransactionEngine,
        audit_trail: Optional[AuditTrail] = None,
        notifier: Optional[NotificationDispatcher] = None,
        min_principal: Union[Decimal, str] = "1000",
        max_interest_rate: Union[Decimal, str] = "30",
        max_tenure_months: int = 360,
        payment_interval_days: int = 30
    ):
        self.store = store
        self.storage = store.storage
        self.engine = engine
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.min_principal = to_decimal(min_principal)
        self.max_interest_rate = to_decimal(max_interest_rate)
        self.max_tenure_months = max_tenure_months
        self.payment_interval = timedelta(days=payment_interval_days)
        self.loans_table = "loans"
        self.logger = get_logger("ledgerbank.loans")

    # Validation and persistence helpers

    def _validate_terms(self, principal: Any, interest_rate: Any,
                        tenure_months: int) -> Tuple[Decimal, Decimal, int]:
        principal = to_decimal(principal)
        if principal < self.min_principal:
            raise ValidationError(f"Minimum loan amount is {self.min_principal}")
        if principal != principal.quantize(CENT, rounding=ROUND_HALF_UP):
            raise ValidationError("Principal must have at most 2 decimal places")

        interest_rate = to_decimal(interest_rate)
        if interest_rate < 0:
            raise ValidationError("Interest rate cannot be negative")
        if interest_rate > self.max_interest_rate:
            raise ValidationError(f"Interest rate cannot exceed {self.max_interest_rate}%")

        if int(tenure_months) != tenure_months or tenure_months < 1:
            raise ValidationError("Tenure must be at least 1 month")
        if tenure_months > self.max_tenure_months:
            raise ValidationError(f"Tenure cannot exceed {self.max_tenure_months} months")

        return principal, interest_rate, int(tenure_months)

    def _generate_loan_number(self) -> str:
        """LN + millisecond timestamp + 4 random digits, checked for uniqueness"""
        while True:
            millis = int(datetime.now(timezone.utc).timestamp() * 1000)
            candidate = f"LN{millis}{1000 + secrets.randbelow(9000)}"
            if not self.storage.find(self.loans_table, {"loan_number": candidate}):
                return candidate

    def _load(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def _save(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _audit(self, action: AuditAction, actor_id: Optional[str], loan: Loan,
               description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.audit_trail:
            best_effort(self.logger, "Audit record", self.audit_trail.record,
                        action, actor_id, "loan", loan.id, description, metadata=metadata)

    def _notify(self, loan: Loan, title: str, message: str) -> None:
        if self.notifier:
            best_effort(self.logger, "Loan notification", self.notifier.notify,
                        loan.owner_id, NotificationType.LOAN, title, message,
                        link=f"/loans/{loan.id}", metadata={"loan_id": loan.id})

    # Application

    def apply_for_loan(
        self,
        owner_id: str,
        account_id: str,
        loan_type: LoanType,
        principal: Union[Decimal, str],
        interest_rate: Union[Decimal, str],
        tenure_months: int
    ) -> Loan:
        """
        Submit a loan application against one of the owner's accounts

        Returns:
            The pending Loan with its derived EMI and totals
        """
        principal, interest_rate, tenure_months = self._validate_terms(
            principal, interest_rate, tenure_months
        )

        def create(store: LedgerStore) -> Loan:
            account = store.find_account(account_id)
            if not account:
                raise AccountNotFoundError(f"Account {account_id} not found")
            if account.owner_id != owner_id:
                raise AuthorizationError("You do not have access to this account")
            if account.is_closed:
                raise InactiveAccountError("Account is closed")

            now = datetime.now(timezone.utc)
            currency = account.currency
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self._generate_loan_number(),
                owner_id=owner_id,
                account_id=account_id,
                loan_type=loan_type,
                currency=currency,
                principal=Money(principal, currency),
                interest_rate=interest_rate,
                tenure_months=tenure_months,
                emi=Money.zero(currency),
                total_amount=Money.zero(currency),
                remaining_balance=Money.zero(currency),
                total_paid=Money.zero(currency)
            )
            loan.apply_figures(derive_loan_figures(principal, interest_rate, tenure_months))
            self._save(loan)
            return loan

        loan = self.store.with_atomic_unit(create)

        log_action(self.logger, "info", f"Loan application {loan.loan_number} submitted",
                   user_id=owner_id, action="loan_apply", resource=f"loan:{loan.id}",
                   extra={"principal": str(principal), "emi": str(loan.emi.amount)})
        self._audit(AuditAction.LOAN_APPLY, owner_id, loan,
                    f"Loan {loan.loan_number} applied", {
                        "principal": principal,
                        "interest_rate": interest_rate,
                        "tenure_months": tenure_months
                    })
        self._notify(loan, "Loan application received",
                     f"Your {loan.loan_type.value} loan application {loan.loan_number} is under review.")
        return loan

    def update_terms(
        self,
        loan_id: str,
        owner_id: str,
        principal: Optional[Union[Decimal, str]] = None,
        interest_rate: Optional[Union[Decimal, str]] = None,
        tenure_months: Optional[int] = None
    ) -> Loan:
        """
        Change the terms of a pending application. Derived figures are
        recomputed from scratch; loans past review cannot be re-termed.
        """
        def update(store: LedgerStore) -> Loan:
            loan = self._load(loan_id)
            if loan.owner_id != owner_id:
                raise AuthorizationError("Loan belongs to another user")
            if loan.status != LoanStatus.PENDING:
                raise InvalidLoanStateError("Only pending loans can change terms")

            new_principal, new_rate, new_tenure = self._validate_terms(
                principal if principal is not None else loan.principal.amount,
                interest_rate if interest_rate is not None else loan.interest_rate,
                tenure_months if tenure_months is not None else loan.tenure_months
            )
            loan.principal = Money(new_principal, loan.currency)
            loan.interest_rate = new_rate
            loan.tenure_months = new_tenure
            loan.apply_figures(derive_loan_figures(new_principal, new_rate, new_tenure))
            loan.updated_at = datetime.now(timezone.utc)
            self._save(loan)
            return loan

        return self.store.with_atomic_unit(update)

    # Review

    def _review(self, loan_id: str, admin_id: str, new_status: LoanStatus,
                reason: Optional[str] = None) -> Loan:
        def review(store: LedgerStore) -> Loan:
            loan = self._load(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidLoanStateError("Loan is not pending approval")
            now = datetime.now(timezone.utc)
            loan.status = new_status
            loan.reviewed_by = admin_id
            loan.reviewed_at = now
            loan.updated_at = now
            if reason is not None:
                loan.rejection_reason = reason
            self._save(loan)
            return loan

        return self.store.with_atomic_unit(review)

    def approve_loan(self, loan_id: str, admin_id: str) -> Loan:
        """Approve a pending application"""
        loan = self._review(loan_id, admin_id, LoanStatus.APPROVED)
        log_action(self.logger, "info", f"Loan {loan.loan_number} approved",
                   user_id=admin_id, action="loan_approve", resource=f"loan:{loan.id}")
        self._audit(AuditAction.LOAN_APPROVE, admin_id, loan, f"Loan {loan.loan_number} approved")
        self._notify(loan, "Loan approved",
                     f"Your loan {loan.loan_number} for {loan.principal.to_string()} has been approved.")
        return loan

    def reject_loan(self, loan_id: str, admin_id: str, reason: str) -> Loan:
        """Reject a pending application with a reason"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        loan = self._review(loan_id, admin_id, LoanStatus.REJECTED, reason.strip())
        log_action(self.logger, "info", f"Loan {loan.loan_number} rejected",
                   user_id=admin_id, action="loan_reject", resource=f"loan:{loan.id}")
        self._audit(AuditAction.LOAN_REJECT, admin_id, loan,
                    f"Loan {loan.loan_number} rejected", {"reason": loan.rejection_reason})
        self._notify(loan, "Loan rejected",
                     f"Your loan {loan.loan_number} was rejected: {loan.rejection_reason}")
        return loan

    # Money movement

    def disburse_loan(self, loan_id: str, admin_id: str) -> Loan:
        """
        Credit the principal into the linked account and start the repayment
        clock, atomically with the deposit entry.
        """
        requests_made: List[MovementRequest] = []

        def disburse(store: LedgerStore) -> Tuple[Loan, Movement]:
            loan = self._load(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise InvalidLoanStateError("Only approved loans can be disbursed")

            request = MovementRequest(
                transaction_type=TransactionType.DEPOSIT,
                owner_id=loan.owner_id,
                amount=loan.principal.amount,
                to_account_id=loan.account_id,
                description=f"Loan disbursement for {loan.loan_number}",
                metadata={"loan_id": loan.id, "loan_number": loan.loan_number}
            )
            requests_made.append(request)
            movement = self.engine.apply_in_unit(store, request)

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.DISBURSED
            loan.disbursed_amount = loan.principal
            loan.disbursed_at = now
            loan.start_date = now
            loan.end_date = datetime.combine(
                add_months(now.date(), loan.tenure_months), now.timetz()
            )
            loan.next_payment_date = now + self.payment_interval
            loan.updated_at = now
            self._save(loan)
            return loan, movement

        try:
            loan, movement = self.store.with_atomic_unit(disburse)
        except LedgerBankError as e:
            if requests_made:
                self.engine.record_rejection(requests_made[-1], e)
            raise

        self.engine.after_commit(movement)
        self._audit(AuditAction.LOAN_DISBURSE, admin_id, loan,
                    f"Loan {loan.loan_number} disbursed", {
                        "amount": loan.disbursed_amount.amount,
                        "transaction_id": movement.entry.id
                    })
        self._notify(loan, "Loan disbursed",
                     f"{loan.disbursed_amount.to_string()} from loan {loan.loan_number} "
                     f"was credited to your account.")
        return loan

    def apply_payment(self, loan_id: str, owner_id: str, account_id: str,
                      amount: Union[Decimal, str]) -> Loan:
        """
        Repay part or all of a loan from one of the owner's accounts.

        The debit and the loan update commit together; if the debit is
        refused, no loan field changes.

        Raises:
            PaymentExceedsBalanceError: If amount is more than what is owed
            LoanNotActiveError: If the loan is not disbursed or active
            InsufficientFundsError, InactiveAccountError, AuthorizationError:
                from the debit
        """
        requests_made: List[MovementRequest] = []

        def pay(store: LedgerStore) -> Tuple[Loan, Movement]:
            loan = self._load(loan_id)
            if loan.owner_id != owner_id:
                raise AuthorizationError("Loan belongs to another user")

            payment = self.engine.validate_amount(amount, loan.currency)
            if payment > loan.remaining_balance:
                raise PaymentExceedsBalanceError()
            if loan.status not in PAYABLE_STATUSES:
                raise LoanNotActiveError()

            # The debit is taken in the account's currency; no conversion
            account = store.find_account(account_id)
            if account is not None and account.currency != loan.currency:
                raise ValidationError(
                    f"Loan is in {loan.currency.code}, account is in {account.currency.code}"
                )

            request = MovementRequest(
                transaction_type=TransactionType.LOAN_PAYMENT,
                owner_id=owner_id,
                amount=payment.amount,
                from_account_id=account_id,
                description=f"Loan payment for {loan.loan_number}",
                metadata={"loan_id": loan.id, "loan_number": loan.loan_number}
            )
            requests_made.append(request)
            movement = self.engine.apply_in_unit(store, request)

            now = datetime.now(timezone.utc)
            loan.total_paid = loan.total_paid + payment
            remaining = loan.remaining_balance - payment
            loan.remaining_balance = remaining if not remaining.is_negative() else Money.zero(loan.currency)
            loan.number_of_payments += 1
            if loan.remaining_balance.is_zero():
                loan.status = LoanStatus.CLOSED
                loan.next_payment_date = None
            else:
                loan.status = LoanStatus.ACTIVE
                loan.next_payment_date = now + self.payment_interval
            loan.updated_at = now
            self._save(loan)
            return loan, movement

        try:
            loan, movement = self.store.with_atomic_unit(pay)
        except LedgerBankError as e:
            if requests_made:
                self.engine.record_rejection(requests_made[-1], e)
            raise

        self.engine.after_commit(movement)
        self._audit(AuditAction.LOAN_PAYMENT, owner_id, loan,
                    f"Payment on loan {loan.loan_number}", {
                        "amount": movement.entry.amount.amount,
                        "remaining_balance": loan.remaining_balance.amount,
                        "transaction_id": movement.entry.id
                    })
        if loan.status == LoanStatus.CLOSED:
            self._notify(loan, "Loan closed",
                         f"Loan {loan.loan_number} is fully repaid.")
        return loan

    # Queries

    def get_loan(self, loan_id: str, owner_id: Optional[str] = None) -> Loan:
        loan = self._load(loan_id)
        if owner_id is not None and loan.owner_id != owner_id:
            raise AuthorizationError("Loan belongs to another user")
        return loan

    def get_owner_loans(self, owner_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        """An owner's loans, newest first"""
        filters: Dict[str, Any] = {"owner_id": owner_id}
        if status:
            filters["status"] = status.value
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def list_pending_loans(self) -> List[Loan]:
        """Applications awaiting review, oldest first"""
        loans = [Loan.from_dict(data) for data in
                 self.storage.find(self.loans_table, {"status": LoanStatus.PENDING.value})]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def all_loans(self) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def loan_schedule(self, loan_id: str, owner_id: Optional[str] = None) -> List[AmortizationRow]:
        """Amortization schedule for a loan, dated from disbursement (or today)"""
        loan = self.get_loan(loan_id, owner_id)
        start = loan.disbursed_at.date() if loan.disbursed_at else None
        return amortization_schedule(loan.principal.amount, loan.interest_rate,
                                     loan.tenure_months, start)
