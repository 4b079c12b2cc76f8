"""
Query and Reporting Module

Read-only views over the ledger: paginated transaction history, account
statements with opening and closing balances, admin dashboard statistics and
statement export. Nothing here writes balances or ledger entries.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from abc import ABC, abstractmethod
import csv
import io
import math

from .currency import Money
from .accounts import Account, AccountStatus
from .ledger import (
    LedgerStore, LedgerEntry, EntryFilter, Pagination, TransactionType, TransactionStatus
)
from .loans import LoanManager, LoanStatus
from .exceptions import ValidationError, AccountNotFoundError, AuthorizationError


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class EntryPage:
    """One page of ledger entries, newest first"""
    entries: List[LedgerEntry]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


@dataclass
class StatementLine:
    """A ledger entry as seen from one account"""
    entry: LedgerEntry
    credit: Money
    debit: Money
    running_balance: Money


@dataclass
class AccountStatement:
    """Account snapshot plus its activity over a date range"""
    account: Account
    start_date: datetime
    end_date: datetime
    opening_balance: Money
    closing_balance: Money
    total_credits: Money
    total_debits: Money
    lines: List[StatementLine] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def entries(self) -> List[LedgerEntry]:
        return [line.entry for line in self.lines]


def signed_delta(entry: LedgerEntry, account_id: str) -> Decimal:
    """Effect of an entry on one account's balance"""
    delta = Decimal('0')
    if entry.to_account_id == account_id:
        delta += entry.amount.amount
    if entry.from_account_id == account_id:
        delta -= entry.amount.amount
    return delta


class ReportingService:
    """
    Read-only query facade over accounts, ledger and loans
    """

    def __init__(self, store: LedgerStore, loan_manager: Optional[LoanManager] = None,
                 default_page_size: int = 10, max_page_size: int = 100,
                 statement_default_days: int = 30):
        self.store = store
        self.loan_manager = loan_manager
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.statement_default_days = statement_default_days

    def _owned_account(self, account_id: str, owner_id: str) -> Account:
        account = self.store.find_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if account.owner_id != owner_id:
            raise AuthorizationError("Account belongs to another user")
        return account

    def list_entries(
        self,
        owner_id: str,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        account_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> EntryPage:
        """
        An owner's transaction history: movements they initiated plus any
        movement into or out of their accounts, newest first.
        """
        page_size = page_size or self.default_page_size
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if page_size < 1 or page_size > self.max_page_size:
            raise ValidationError(f"Page size must be between 1 and {self.max_page_size}")

        if account_id:
            self._owned_account(account_id, owner_id)

        entry_filter = EntryFilter(
            owner_id=owner_id,
            account_ids={a.id for a in self.store.find_owner_accounts(owner_id)},
            account_id=account_id,
            transaction_type=transaction_type,
            status=status,
            start_date=_as_utc(start_date),
            end_date=_as_utc(end_date)
        )
        entries, total = self.store.query_entries(entry_filter, Pagination(page, page_size))
        return EntryPage(entries=entries, total=total, page=page, page_size=page_size)

    def account_statement(
        self,
        account_id: str,
        owner_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AccountStatement:
        """
        Statement for one account. Defaults to the last
        ``statement_default_days`` days. Opening and closing balances are
        reconstructed from the ledger back from the current balance.
        """
        account = self._owned_account(account_id, owner_id)
        end_date = _as_utc(end_date) or datetime.now(timezone.utc)
        start_date = _as_utc(start_date) or end_date - timedelta(days=self.statement_default_days)
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")

        entries, _ = self.store.query_entries(EntryFilter(account_id=account_id))
        entries.reverse()  # oldest first

        currency = account.currency
        after_range = sum((signed_delta(e, account_id) for e in entries if e.created_at > end_date),
                          Decimal('0'))
        in_range = [e for e in entries if start_date <= e.created_at <= end_date]

        closing = account.balance.amount - after_range
        opening = closing - sum((signed_delta(e, account_id) for e in in_range), Decimal('0'))

        lines = []
        running = opening
        credits = Decimal('0')
        debits = Decimal('0')
        for entry in in_range:
            delta = signed_delta(entry, account_id)
            running += delta
            credit = delta if delta > 0 else Decimal('0')
            debit = -delta if delta < 0 else Decimal('0')
            credits += credit
            debits += debit
            lines.append(StatementLine(
                entry=entry,
                credit=Money(credit, currency),
                debit=Money(debit, currency),
                running_balance=Money(running, currency)
            ))

        return AccountStatement(
            account=account,
            start_date=start_date,
            end_date=end_date,
            opening_balance=Money(opening, currency),
            closing_balance=Money(closing, currency),
            total_credits=Money(credits, currency),
            total_debits=Money(debits, currency),
            lines=lines
        )

    def dashboard_stats(self) -> Dict[str, Any]:
        """Admin overview of accounts, loans and completed transactions"""
        accounts = self.store.all_accounts()
        loans = self.loan_manager.all_loans() if self.loan_manager else []
        entries, _ = self.store.query_entries(EntryFilter(status=TransactionStatus.COMPLETED))

        volume: Dict[str, Decimal] = {}
        for entry in entries:
            code = entry.currency.code
            volume[code] = volume.get(code, Decimal('0')) + entry.amount.amount

        return {
            'accounts': {
                'total': len(accounts),
                'active': sum(1 for a in accounts if a.status == AccountStatus.ACTIVE),
                'frozen': sum(1 for a in accounts if a.status == AccountStatus.FROZEN),
                'closed': sum(1 for a in accounts if a.status == AccountStatus.CLOSED)
            },
            'loans': {
                'total': len(loans),
                'pending': sum(1 for l in loans if l.status == LoanStatus.PENDING),
                'active': sum(1 for l in loans if l.status in (LoanStatus.ACTIVE, LoanStatus.DISBURSED)),
                'closed': sum(1 for l in loans if l.status == LoanStatus.CLOSED)
            },
            'transactions': {
                'completed': len(entries),
                'total_amount': {code: str(amount) for code, amount in sorted(volume.items())}
            }
        }


class StatementRenderer(ABC):
    """Turns an AccountStatement into a downloadable document"""

    media_type: str = "application/octet-stream"
    file_extension: str = "bin"

    @abstractmethod
    def render(self, statement: AccountStatement) -> str:
        pass

    def filename(self, statement: AccountStatement) -> str:
        return (f"statement-{statement.account.account_number}-"
                f"{statement.end_date.date().isoformat()}.{self.file_extension}")


class CSVStatementRenderer(StatementRenderer):
    """One row per statement line, framed by opening and closing balance rows"""

    media_type = "text/csv"
    file_extension = "csv"

    headers = ['date', 'transaction_id', 'reference_number', 'type', 'description',
               'debit', 'credit', 'balance']

    def render(self, statement: AccountStatement) -> str:
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=self.headers)
        writer.writeheader()

        writer.writerow({
            'date': statement.start_date.isoformat(),
            'description': 'Opening balance',
            'balance': str(statement.opening_balance.amount)
        })
        for line in statement.lines:
            writer.writerow({
                'date': line.entry.created_at.isoformat(),
                'transaction_id': line.entry.id,
                'reference_number': line.entry.reference_number,
                'type': line.entry.transaction_type.value,
                'description': line.entry.description,
                'debit': str(line.debit.amount) if not line.debit.is_zero() else '',
                'credit': str(line.credit.amount) if not line.credit.is_zero() else '',
                'balance': str(line.running_balance.amount)
            })
        writer.writerow({
            'date': statement.end_date.isoformat(),
            'description': 'Closing balance',
            'balance': str(statement.closing_balance.amount)
        })

        csv_content = output.getvalue()
        output.close()
        return csv_content
