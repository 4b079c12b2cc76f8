"""
Account Management Module

Manages customer deposit accounts: opening (optionally seeded with an initial
deposit), lookup, non-financial edits, freezing and closing. Balances are
never written here; only the Transaction Engine moves money.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union, TYPE_CHECKING
from enum import Enum
import secrets
import string
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageRecord
from .audit import AuditTrail, AuditAction
from .notifications import NotificationDispatcher, NotificationType
from .exceptions import (
    AccountNotFoundError, AuthorizationError, ValidationError, LedgerBankError
)
from .logging_config import get_logger, log_action, best_effort

if TYPE_CHECKING:
    from .ledger import LedgerStore
    from .transactions import TransactionEngine, Movement


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "savings"
    CHECKING = "checking"
    CURRENT = "current"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"      # Normal operation
    INACTIVE = "inactive"  # Dormant; can receive credits
    FROZEN = "frozen"      # Suspended by an administrator
    CLOSED = "closed"      # Permanently closed, never deleted


@dataclass
class Account(StorageRecord):
    """
    Customer deposit account
    """
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    minimum_balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    interest_rate: Decimal = Decimal('0')
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    last_transaction_at: Optional[datetime] = None

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")
        if self.minimum_balance.currency != self.currency:
            raise ValueError("Minimum balance currency must match account currency")

    @property
    def display_name(self) -> str:
        return f"{self.account_type.value.upper()} - {self.account_number[-4:]}"

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED

    def can_debit(self, amount: Money) -> bool:
        """Active, and the debit keeps the balance at or above the minimum (and zero)"""
        if not self.is_active:
            return False
        remaining = self.balance - amount
        return remaining >= self.minimum_balance and not remaining.is_negative()

    def can_credit(self) -> bool:
        return not self.is_closed

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'account_number': self.account_number,
            'owner_id': self.owner_id,
            'account_type': self.account_type.value,
            'currency': self.currency.code,
            'balance': str(self.balance.amount),
            'minimum_balance': str(self.minimum_balance.amount),
            'status': self.status.value,
            'interest_rate': str(self.interest_rate),
            'opened_at': iso(self.opened_at),
            'closed_at': iso(self.closed_at),
            'last_transaction_at': iso(self.last_transaction_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            minimum_balance=Money(Decimal(data['minimum_balance']), currency),
            status=AccountStatus(data['status']),
            interest_rate=Decimal(data.get('interest_rate', '0')),
            opened_at=parse(data.get('opened_at')),
            closed_at=parse(data.get('closed_at')),
            last_transaction_at=parse(data.get('last_transaction_at'))
        )


ACCOUNT_NUMBER_PREFIX = "10"
ACCOUNT_NUMBER_ATTEMPTS = 10


class AccountManager:
    """
    Manages account lifecycle and lookups
    """

    def __init__(
        self,
        store: 'LedgerStore',
        engine: 'TransactionEngine',
        audit_trail: Optional[AuditTrail] = None,
        notifier: Optional[NotificationDispatcher] = None,
        default_currency: str = "USD"
    ):
        self.store = store
        self.engine = engine
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.default_currency = default_currency
        self.logger = get_logger("ledgerbank.accounts")

    def _generate_account_number(self) -> str:
        """Bank prefix plus 10 random digits, checked against existing accounts"""
        for _ in range(ACCOUNT_NUMBER_ATTEMPTS):
            candidate = ACCOUNT_NUMBER_PREFIX + "".join(
                secrets.choice(string.digits) for _ in range(10)
            )
            if self.store.find_account_by_number(candidate) is None:
                return candidate
        raise LedgerBankError("Could not allocate a unique account number")

    def _audit(self, action: AuditAction, actor_id: Optional[str], account: Account,
               description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.audit_trail:
            best_effort(self.logger, "Audit record", self.audit_trail.record,
                        action, actor_id, "account", account.id, description,
                        metadata=metadata)

    def _notify(self, account: Account, title: str, message: str) -> None:
        if self.notifier:
            best_effort(self.logger, "Account notification", self.notifier.notify,
                        account.owner_id, NotificationType.ACCOUNT, title, message,
                        link=f"/accounts/{account.id}")

    def create_account(
        self,
        owner_id: str,
        account_type: AccountType,
        currency: Optional[Currency] = None,
        initial_deposit: Optional[Union[Decimal, str]] = None,
        interest_rate: Optional[Union[Decimal, str]] = None,
        minimum_balance: Optional[Union[Decimal, str]] = None
    ) -> Account:
        """
        Open a new account for an owner

        Args:
            owner_id: ID of account owner
            account_type: savings, checking or current
            currency: Account currency (configured default if omitted)
            initial_deposit: Optional opening balance, booked as a deposit entry
            interest_rate: Annual interest rate percentage (0-100)
            minimum_balance: Balance a debit may not go below

        Returns:
            Created Account (reflecting the initial deposit, if any)
        """
        currency = currency or Currency.from_code(self.default_currency)
        rate = to_decimal(interest_rate) if interest_rate is not None else Decimal('0')
        if rate < 0 or rate > 100:
            raise ValidationError("Interest rate must be between 0 and 100")
        floor = to_decimal(minimum_balance) if minimum_balance is not None else Decimal('0')
        if floor < 0:
            raise ValidationError("Minimum balance cannot be negative")

        deposit = None
        if initial_deposit is not None and to_decimal(initial_deposit) != 0:
            deposit = to_decimal(initial_deposit)
            self.engine.validate_amount(deposit, currency)

        now = datetime.now(timezone.utc)

        def open_account(store: 'LedgerStore') -> Tuple[Account, Optional['Movement']]:
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=self._generate_account_number(),
                owner_id=owner_id,
                account_type=account_type,
                currency=currency,
                balance=Money.zero(currency),
                minimum_balance=Money(floor, currency),
                interest_rate=rate,
                opened_at=now
            )
            store.save_account(account)
            if deposit is None:
                return account, None
            movement = self.engine.apply_in_unit(store, self.engine.deposit_request(
                owner_id, account.id, deposit, description="Initial deposit"
            ))
            return movement.destination, movement

        # The account and its opening deposit commit together
        account, movement = self.store.with_atomic_unit(open_account)

        log_action(self.logger, "info", f"Opened account {account.account_number}",
                   user_id=owner_id, action="account_create", resource=f"account:{account.id}")
        self._audit(AuditAction.ACCOUNT_CREATE, owner_id, account, "Account created", {
            "account_number": account.account_number,
            "account_type": account_type.value,
            "currency": currency.code
        })
        self._notify(account, "Account opened",
                     f"Your {account.display_name} account is ready.")

        if movement is not None:
            self.engine.after_commit(movement)

        return account

    def get_account(self, account_id: str, owner_id: Optional[str] = None) -> Account:
        """
        Get an account, optionally checking that ``owner_id`` owns it

        Raises:
            AccountNotFoundError: If no such account exists
            AuthorizationError: If the account belongs to someone else
        """
        account = self.store.find_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if owner_id is not None and account.owner_id != owner_id:
            raise AuthorizationError("Account belongs to another user")
        return account

    def get_account_by_number(self, account_number: str) -> Account:
        account = self.store.find_account_by_number(account_number)
        if not account:
            raise AccountNotFoundError(f"Account {account_number} not found")
        return account

    def get_owner_accounts(self, owner_id: str, include_closed: bool = False) -> List[Account]:
        """All of an owner's accounts, oldest first; closed ones only on request"""
        accounts = self.store.find_owner_accounts(owner_id)
        if not include_closed:
            accounts = [a for a in accounts if not a.is_closed]
        return accounts

    def update_account(
        self,
        account_id: str,
        owner_id: str,
        account_type: Optional[AccountType] = None,
        interest_rate: Optional[Union[Decimal, str]] = None,
        minimum_balance: Optional[Union[Decimal, str]] = None
    ) -> Account:
        """
        Edit non-financial fields. Account number, owner, balance and status
        cannot be changed here.
        """
        changes: Dict[str, Any] = {}

        def apply(store: 'LedgerStore') -> Account:
            account = self.get_account(account_id, owner_id)
            if account.is_closed:
                raise ValidationError("Closed accounts cannot be updated")

            if account_type is not None:
                account.account_type = account_type
                changes['account_type'] = account_type.value
            if interest_rate is not None:
                rate = to_decimal(interest_rate)
                if rate < 0 or rate > 100:
                    raise ValidationError("Interest rate must be between 0 and 100")
                account.interest_rate = rate
                changes['interest_rate'] = str(rate)
            if minimum_balance is not None:
                floor = to_decimal(minimum_balance)
                if floor < 0:
                    raise ValidationError("Minimum balance cannot be negative")
                account.minimum_balance = Money(floor, account.currency)
                changes['minimum_balance'] = str(account.minimum_balance.amount)

            account.updated_at = datetime.now(timezone.utc)
            store.save_account(account)
            return account

        account = self.store.with_atomic_unit(apply)
        self._audit(AuditAction.ACCOUNT_UPDATE, owner_id, account, "Account updated", changes)
        return account

    def close_account(self, account_id: str, owner_id: str) -> Account:
        """
        Close an account. The balance must be exactly zero; the record is kept.
        """
        def close(store: 'LedgerStore') -> Account:
            account = self.get_account(account_id, owner_id)
            if account.is_closed:
                raise ValidationError("Account is already closed")
            if not account.balance.is_zero():
                raise ValidationError(
                    "Cannot close account with balance. Please withdraw all funds first."
                )
            now = datetime.now(timezone.utc)
            account.status = AccountStatus.CLOSED
            account.closed_at = now
            account.updated_at = now
            store.save_account(account)
            return account

        account = self.store.with_atomic_unit(close)
        log_action(self.logger, "info", f"Closed account {account.account_number}",
                   user_id=owner_id, action="account_close", resource=f"account:{account.id}")
        self._audit(AuditAction.ACCOUNT_UPDATE, owner_id, account, "Account closed")
        self._notify(account, "Account closed",
                     f"Your {account.display_name} account has been closed.")
        return account

    def _set_status(self, account_id: str, admin_id: str, allowed_from: List[AccountStatus],
                    new_status: AccountStatus, reason: str) -> Account:
        old_status = {}

        def change(store: 'LedgerStore') -> Account:
            account = self.get_account(account_id)
            if account.status not in allowed_from:
                raise ValidationError(
                    f"Cannot change account from {account.status.value} to {new_status.value}"
                )
            old_status['value'] = account.status.value
            account.status = new_status
            account.updated_at = datetime.now(timezone.utc)
            store.save_account(account)
            return account

        account = self.store.with_atomic_unit(change)
        self._audit(AuditAction.ADMIN_ACTION, admin_id, account,
                    f"Account {new_status.value}", {
                        "old_status": old_status['value'],
                        "new_status": new_status.value,
                        "reason": reason
                    })
        self._notify(account, f"Account {new_status.value}",
                     f"Your {account.display_name} account is now {new_status.value}.")
        return account

    def freeze_account(self, account_id: str, admin_id: str, reason: str = "") -> Account:
        """Freeze an account; debits are refused until it is unfrozen"""
        return self._set_status(account_id, admin_id,
                                [AccountStatus.ACTIVE, AccountStatus.INACTIVE],
                                AccountStatus.FROZEN, reason)

    def unfreeze_account(self, account_id: str, admin_id: str, reason: str = "") -> Account:
        return self._set_status(account_id, admin_id, [AccountStatus.FROZEN],
                                AccountStatus.ACTIVE, reason)
