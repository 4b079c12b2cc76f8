"""
Transaction Engine Module

The only component that changes balances or creates ledger entries.
Deposits, withdrawals, transfers, loan payments and interest credits are all
movements: each one loads the accounts involved, validates them, applies the
balance deltas and appends a completed ledger entry inside one atomic unit.
Nothing is observable unless the whole unit commits; notification, audit
and logging run afterwards and never undo a committed movement.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import itertools
import secrets
import threading
import time

from .currency import Currency, Money, validate_amount
from .accounts import Account
from .ledger import LedgerStore, LedgerEntry, TransactionType, TransactionStatus
from .audit import AuditTrail, AuditAction, AuditStatus
from .notifications import NotificationDispatcher, NotificationType
from .exceptions import (
    LedgerBankError, ValidationError, AccountNotFoundError, AuthorizationError,
    InactiveAccountError, InsufficientFundsError, SameAccountTransferError,
    ConcurrencyConflictError, TransactionNotFoundError
)
from .logging_config import get_logger, log_action, best_effort

# Re-exported so callers import the ledger row types from the engine
__all__ = [
    "TransactionType", "TransactionStatus", "LedgerEntry", "MovementRequest",
    "Movement", "IdGenerator", "TransactionEngine"
]

# Movements whose primary account is the one being credited
CREDIT_TYPES = (TransactionType.DEPOSIT, TransactionType.INTEREST)
DEBIT_TYPES = (TransactionType.WITHDRAWAL, TransactionType.LOAN_PAYMENT)


@dataclass
class MovementRequest:
    """A request to move funds, as handed to the engine by a caller"""
    transaction_type: TransactionType
    owner_id: str
    amount: Union[Decimal, str]
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def primary_account_id(self) -> Optional[str]:
        if self.transaction_type in CREDIT_TYPES:
            return self.to_account_id
        return self.from_account_id


@dataclass
class Movement:
    """Outcome of a committed movement: the entry and the accounts it changed"""
    entry: LedgerEntry
    source: Optional[Account] = None
    destination: Optional[Account] = None

    @property
    def accounts(self) -> List[Account]:
        return [a for a in (self.source, self.destination) if a is not None]


class IdGenerator:
    """
    Transaction ids ``TXN<ms><seq:06><rand:04>`` and references
    ``REF<ms><seq:06><rand:06>``. The sequence is process-wide, so two ids
    generated in the same millisecond still differ.
    """

    _counter = itertools.count(1)
    _lock = threading.Lock()

    def next_ids(self) -> Tuple[str, str]:
        millis = int(time.time() * 1000)
        with self._lock:
            seq = next(self._counter) % 1_000_000
        transaction_id = f"TXN{millis}{seq:06d}{secrets.randbelow(10_000):04d}"
        reference = f"REF{millis}{seq:06d}{secrets.randbelow(1_000_000):06d}"
        return transaction_id, reference


class TransactionEngine:
    """
    Executes movements against the ledger store
    """

    def __init__(
        self,
        store: LedgerStore,
        audit_trail: Optional[AuditTrail] = None,
        notifier: Optional[NotificationDispatcher] = None,
        max_description_length: int = 500,
        default_currency: str = "USD",
        id_generator: Optional[IdGenerator] = None
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.max_description_length = max_description_length
        self.default_currency = Currency.from_code(default_currency)
        self.ids = id_generator or IdGenerator()
        self.logger = get_logger("ledgerbank.transactions")

    def validate_amount(self, amount: Union[Decimal, str], currency: Optional[Currency] = None) -> Money:
        """Positive, at most the currency's decimal places"""
        return validate_amount(amount, currency or self.default_currency)

    def _check_shape(self, request: MovementRequest) -> None:
        """Account presence per movement type, description length and amount"""
        ttype = request.transaction_type
        if ttype in CREDIT_TYPES:
            if not request.to_account_id:
                raise ValidationError(f"{ttype.value} requires a destination account")
            if request.from_account_id:
                raise ValidationError(f"{ttype.value} cannot have a source account")
        elif ttype in DEBIT_TYPES:
            if not request.from_account_id:
                raise ValidationError(f"{ttype.value} requires a source account")
            if request.to_account_id:
                raise ValidationError(f"{ttype.value} cannot have a destination account")
        elif ttype == TransactionType.TRANSFER:
            if not request.from_account_id or not request.to_account_id:
                raise ValidationError("transfer requires source and destination accounts")
            if request.from_account_id == request.to_account_id:
                raise SameAccountTransferError()

        if request.description and len(request.description) > self.max_description_length:
            raise ValidationError(
                f"Description cannot exceed {self.max_description_length} characters"
            )

        self.validate_amount(request.amount)

    def _load(self, store: LedgerStore, account_id: str) -> Account:
        account = store.find_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def apply_in_unit(self, store: LedgerStore, request: MovementRequest) -> Movement:
        """
        Validate and apply a movement inside the caller's atomic unit.

        Callers that need to change other records atomically with the movement
        (loan repayment) run this from their own ``with_atomic_unit`` and then
        call ``after_commit`` once the unit has committed.
        """
        self._check_shape(request)
        ttype = request.transaction_type

        source = self._load(store, request.from_account_id) if request.from_account_id else None
        destination = self._load(store, request.to_account_id) if request.to_account_id else None
        primary = destination if ttype in CREDIT_TYPES else source

        if primary.owner_id != request.owner_id:
            raise AuthorizationError("Account belongs to another user")

        if source and destination and source.id == destination.id:
            raise SameAccountTransferError()

        amount = self.validate_amount(request.amount, primary.currency)
        now = datetime.now(timezone.utc)

        if source:
            if not source.is_active:
                raise InactiveAccountError("Account is not active")
            if not source.can_debit(amount):
                raise InsufficientFundsError()

        if destination and not destination.can_credit():
            raise InactiveAccountError("Destination account is closed")

        if source and destination and source.currency != destination.currency:
            raise ValidationError(
                f"Cannot transfer between {source.currency.code} and {destination.currency.code} accounts"
            )

        if source:
            source.balance = source.balance - amount
            source.last_transaction_at = now
            source.updated_at = now
            store.save_account(source)
        if destination:
            destination.balance = destination.balance + amount
            destination.last_transaction_at = now
            destination.updated_at = now
            store.save_account(destination)

        transaction_id, reference = self.ids.next_ids()
        entry = LedgerEntry(
            id=transaction_id,
            created_at=now,
            updated_at=now,
            reference_number=reference,
            transaction_type=ttype,
            owner_id=request.owner_id,
            amount=amount,
            currency=primary.currency,
            balance_after=primary.balance,
            from_account_id=request.from_account_id,
            to_account_id=request.to_account_id,
            status=TransactionStatus.COMPLETED,
            description=request.description or ttype.value.replace("_", " ").capitalize(),
            metadata=dict(request.metadata),
            processed_at=now
        )
        store.append_entry(entry)
        return Movement(entry=entry, source=source, destination=destination)

    def execute(self, request: MovementRequest) -> LedgerEntry:
        """
        Run a movement all-or-nothing.

        Conflicting concurrent movements are re-run transparently up to the
        store's retry budget before surfacing as ConcurrencyConflictError.

        Raises:
            ValidationError, AccountNotFoundError, AuthorizationError,
            InactiveAccountError, InsufficientFundsError,
            SameAccountTransferError, ConcurrencyConflictError
        """
        try:
            movement = self.store.with_atomic_unit(
                lambda store: self.apply_in_unit(store, request)
            )
        except ConcurrencyConflictError as e:
            self.record_rejection(request, e)
            raise ConcurrencyConflictError(
                "The account was updated by another request, please retry"
            ) from e
        except LedgerBankError as e:
            self.record_rejection(request, e)
            raise

        self.after_commit(movement)
        return movement.entry

    def after_commit(self, movement: Movement) -> None:
        """Best-effort notification, audit record and log line for a committed movement"""
        entry = movement.entry
        amount = entry.amount.to_string()
        label = entry.transaction_type.value.replace("_", " ")

        log_action(
            self.logger, "info",
            f"Committed {label} {entry.id} for {amount}",
            user_id=entry.owner_id,
            action="transaction_create",
            resource=f"transaction:{entry.id}",
            extra={
                "reference_number": entry.reference_number,
                "from_account_id": entry.from_account_id,
                "to_account_id": entry.to_account_id,
                "balance_after": str(entry.balance_after.amount)
            }
        )

        if self.audit_trail:
            best_effort(
                self.logger, "Audit record", self.audit_trail.record,
                AuditAction.TRANSACTION_CREATE, entry.owner_id, "transaction", entry.id,
                f"{label.capitalize()} of {amount}",
                metadata={
                    "transaction_type": entry.transaction_type.value,
                    "amount": str(entry.amount.amount),
                    "reference_number": entry.reference_number
                }
            )

        if self.notifier:
            best_effort(
                self.logger, "Transaction notification", self.notifier.notify,
                entry.owner_id, NotificationType.TRANSACTION,
                f"{label.capitalize()} completed",
                f"{label.capitalize()} of {amount} completed. Reference {entry.reference_number}.",
                link=f"/transactions/{entry.id}",
                metadata={"transaction_id": entry.id}
            )
            recipient = movement.destination
            if (entry.transaction_type == TransactionType.TRANSFER and recipient
                    and recipient.owner_id != entry.owner_id):
                best_effort(
                    self.logger, "Transaction notification", self.notifier.notify,
                    recipient.owner_id, NotificationType.TRANSACTION,
                    "Funds received",
                    f"You received {amount} into {recipient.display_name}.",
                    link=f"/transactions/{entry.id}",
                    metadata={"transaction_id": entry.id}
                )

    def record_rejection(self, request: MovementRequest, error: LedgerBankError) -> None:
        """Rejected movements leave no ledger row; they are logged and audited as failures"""
        label = request.transaction_type.value
        log_action(
            self.logger, "warning",
            f"Rejected {label}: {error.message}",
            user_id=request.owner_id,
            action="transaction_create",
            resource=f"account:{request.primary_account_id}",
            extra={"error": type(error).__name__, "amount": str(request.amount)}
        )
        if self.audit_trail:
            best_effort(
                self.logger, "Audit record", self.audit_trail.record,
                AuditAction.TRANSACTION_CREATE, request.owner_id, "account",
                request.primary_account_id or "",
                f"{label.replace('_', ' ').capitalize()} rejected: {error.message}",
                status=AuditStatus.FAILURE,
                metadata={"amount": str(request.amount), "error": type(error).__name__}
            )

    # Convenience wrappers

    def deposit(self, owner_id: str, account_id: str, amount: Union[Decimal, str],
                description: Optional[str] = None,
                metadata: Optional[Dict[str, Any]] = None) -> LedgerEntry:
        """Credit money into an owner's account"""
        return self.execute(self.deposit_request(owner_id, account_id, amount, description, metadata))

    def deposit_request(self, owner_id: str, account_id: str, amount: Union[Decimal, str],
                        description: Optional[str] = None,
                        metadata: Optional[Dict[str, Any]] = None) -> MovementRequest:
        return MovementRequest(
            transaction_type=TransactionType.DEPOSIT,
            owner_id=owner_id,
            amount=amount,
            to_account_id=account_id,
            description=description,
            metadata=metadata or {}
        )

    def withdraw(self, owner_id: str, account_id: str, amount: Union[Decimal, str],
                 description: Optional[str] = None) -> LedgerEntry:
        """Debit money out of an owner's account"""
        return self.execute(MovementRequest(
            transaction_type=TransactionType.WITHDRAWAL,
            owner_id=owner_id,
            amount=amount,
            from_account_id=account_id,
            description=description
        ))

    def transfer(self, owner_id: str, from_account_id: str, to_account_id: str,
                 amount: Union[Decimal, str], description: Optional[str] = None) -> LedgerEntry:
        """Move money from the owner's account to any other open account"""
        return self.execute(MovementRequest(
            transaction_type=TransactionType.TRANSFER,
            owner_id=owner_id,
            amount=amount,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            description=description
        ))

    def pay_from(self, owner_id: str, account_id: str, amount: Union[Decimal, str],
                 description: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None) -> LedgerEntry:
        """Debit a loan repayment; the money leaves the customer ledger"""
        return self.execute(MovementRequest(
            transaction_type=TransactionType.LOAN_PAYMENT,
            owner_id=owner_id,
            amount=amount,
            from_account_id=account_id,
            description=description,
            metadata=metadata or {}
        ))

    def credit_interest(self, account_id: str, amount: Union[Decimal, str],
                        description: Optional[str] = None) -> LedgerEntry:
        """System credit of earned interest to an account"""
        account = self.store.find_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return self.execute(MovementRequest(
            transaction_type=TransactionType.INTEREST,
            owner_id=account.owner_id,
            amount=amount,
            to_account_id=account_id,
            description=description or "Interest credit"
        ))

    def get_entry(self, transaction_id: str, owner_id: Optional[str] = None) -> LedgerEntry:
        """
        Get a ledger entry. With ``owner_id``, the owner must have initiated
        the movement or own one of the accounts it touched.
        """
        entry = self.store.get_entry(transaction_id)
        if not entry:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        if owner_id is not None and entry.owner_id != owner_id:
            owned = {a.id for a in self.store.find_owner_accounts(owner_id)}
            if not entry.involves(owned):
                raise AuthorizationError("Transaction belongs to another user")
        return entry
