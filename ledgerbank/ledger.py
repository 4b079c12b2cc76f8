"""
Account Ledger Store

Durable home of accounts and of the append-only transaction ledger, plus the
atomic unit of work every balance change runs inside. Ledger entries are
written once and never rewritten; the store refuses to overwrite an existing
entry.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .accounts import Account
from .exceptions import DuplicateEntryError

T = TypeVar("T")


class TransactionType(Enum):
    """Kinds of fund movement"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    LOAN_PAYMENT = "loan_payment"
    INTEREST = "interest"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class LedgerEntry(StorageRecord):
    """
    One row of the ledger. ``id`` is the transaction id and the storage key.
    ``balance_after`` is the primary account's balance once the movement
    committed: the source for withdrawals, transfers and loan payments, the
    destination for deposits and interest.
    """
    reference_number: str
    transaction_type: TransactionType
    owner_id: str
    amount: Money
    currency: Currency
    balance_after: Money
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    fee: Optional[Money] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.fee is None:
            self.fee = Money.zero(self.currency)

    @property
    def transaction_id(self) -> str:
        return self.id

    @property
    def primary_account_id(self) -> Optional[str]:
        if self.transaction_type in (TransactionType.DEPOSIT, TransactionType.INTEREST):
            return self.to_account_id
        return self.from_account_id

    def involves(self, account_ids: Set[str]) -> bool:
        return self.from_account_id in account_ids or self.to_account_id in account_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'reference_number': self.reference_number,
            'transaction_type': self.transaction_type.value,
            'owner_id': self.owner_id,
            'amount': str(self.amount.amount),
            'currency': self.currency.code,
            'balance_after': str(self.balance_after.amount),
            'from_account_id': self.from_account_id,
            'to_account_id': self.to_account_id,
            'status': self.status.value,
            'fee': str(self.fee.amount),
            'description': self.description,
            'metadata': self.metadata,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        currency = Currency[data['currency']]
        processed_at = None
        if data.get('processed_at'):
            processed_at = datetime.fromisoformat(data['processed_at'])

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            reference_number=data['reference_number'],
            transaction_type=TransactionType(data['transaction_type']),
            owner_id=data['owner_id'],
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            balance_after=Money(Decimal(data['balance_after']), currency),
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            status=TransactionStatus(data['status']),
            fee=Money(Decimal(data.get('fee', '0')), currency),
            description=data.get('description', ''),
            metadata=data.get('metadata', {}),
            processed_at=processed_at
        )


@dataclass
class EntryFilter:
    """
    Criteria for ledger queries. An entry belongs to ``owner_id`` if that
    owner initiated it or it touches any of ``account_ids``.
    """
    owner_id: Optional[str] = None
    account_ids: Optional[Set[str]] = None
    account_id: Optional[str] = None
    transaction_type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, entry: LedgerEntry) -> bool:
        if self.owner_id is not None or self.account_ids:
            owned = entry.owner_id == self.owner_id
            if not owned and not (self.account_ids and entry.involves(self.account_ids)):
                return False
        if self.account_id and not entry.involves({self.account_id}):
            return False
        if self.transaction_type and entry.transaction_type != self.transaction_type:
            return False
        if self.status and entry.status != self.status:
            return False
        if self.start_date and entry.created_at < self.start_date:
            return False
        if self.end_date and entry.created_at > self.end_date:
            return False
        return True


@dataclass
class Pagination:
    page: int = 1
    page_size: int = 10

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class LedgerStore:
    """
    Accounts and ledger entries over a StorageInterface backend.

    All balance-changing work goes through ``with_atomic_unit``; reads outside
    a unit see only committed state.
    """

    def __init__(self, storage: StorageInterface, max_conflict_retries: int = 3):
        self.storage = storage
        self.max_conflict_retries = max_conflict_retries
        self.accounts_table = "accounts"
        self.entries_table = "ledger_entries"

    def with_atomic_unit(self, fn: Callable[['LedgerStore'], T], retries: Optional[int] = None) -> T:
        """Run ``fn(store)`` all-or-nothing, re-running it on concurrency conflicts"""
        if retries is None:
            retries = self.max_conflict_retries
        return self.storage.with_atomic_unit(lambda _: fn(self), retries=retries)

    def atomic(self):
        return self.storage.atomic()

    # Accounts

    def find_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def find_account_by_number(self, account_number: str) -> Optional[Account]:
        matches = self.storage.find(self.accounts_table, {"account_number": account_number})
        return Account.from_dict(matches[0]) if matches else None

    def find_owner_accounts(self, owner_id: str) -> List[Account]:
        accounts = [Account.from_dict(data) for data in
                    self.storage.find(self.accounts_table, {"owner_id": owner_id})]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def all_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())

    # Ledger

    def append_entry(self, entry: LedgerEntry) -> None:
        """
        Append an entry to the ledger.

        Raises:
            DuplicateEntryError: If an entry with this transaction id exists
        """
        if self.storage.exists(self.entries_table, entry.id):
            raise DuplicateEntryError(f"Ledger entry {entry.id} already exists")
        self.storage.save(self.entries_table, entry.id, entry.to_dict())

    def get_entry(self, transaction_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.entries_table, transaction_id)
        return LedgerEntry.from_dict(data) if data else None

    def query_entries(self, entry_filter: EntryFilter,
                      pagination: Optional[Pagination] = None) -> Tuple[List[LedgerEntry], int]:
        """
        Entries matching the filter, newest first.

        Returns:
            (page of entries, total number of matches)
        """
        entries = [LedgerEntry.from_dict(data) for data in self.storage.load_all(self.entries_table)]
        entries = [e for e in entries if entry_filter.matches(e)]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)

        total = len(entries)
        if pagination:
            entries = entries[pagination.offset:pagination.offset + pagination.page_size]
        return entries, total

    def count_entries(self) -> int:
        return self.storage.count(self.entries_table)
