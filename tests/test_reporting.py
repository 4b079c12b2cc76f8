"""
Tests for transaction history, statements and dashboard statistics
"""

import csv
import io
import time
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from ledgerbank.storage import InMemoryStorage
from ledgerbank.ledger import LedgerStore
from ledgerbank.transactions import TransactionEngine, TransactionType
from ledgerbank.accounts import AccountManager, AccountType
from ledgerbank.loans import LoanManager, LoanType
from ledgerbank.reporting import ReportingService, CSVStatementRenderer
from ledgerbank.exceptions import ValidationError, AuthorizationError


class TestReportingService:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.store = LedgerStore(self.storage)
        self.engine = TransactionEngine(self.store)
        self.accounts = AccountManager(self.store, self.engine)
        self.loans = LoanManager(self.store, self.engine)
        self.reporting = ReportingService(self.store, self.loans)

        self.owner = "user-1"
        self.checking = self.accounts.create_account(self.owner, AccountType.CHECKING)
        self.savings = self.accounts.create_account(self.owner, AccountType.SAVINGS)

    def test_history_is_paginated_newest_first(self):
        for i in range(1, 26):
            self.engine.deposit(self.owner, self.checking.id, f"{i}.00")

        first = self.reporting.list_entries(self.owner)
        last = self.reporting.list_entries(self.owner, page=3)

        assert first.total == 25
        assert first.pages == 3
        assert len(first.entries) == 10
        assert first.entries[0].amount.amount == Decimal("25.00")
        assert len(last.entries) == 5
        assert last.entries[-1].amount.amount == Decimal("1.00")

    def test_history_filters(self):
        self.engine.deposit(self.owner, self.checking.id, "100.00")
        self.engine.withdraw(self.owner, self.checking.id, "10.00")
        self.engine.transfer(self.owner, self.checking.id, self.savings.id, "20.00")

        withdrawals = self.reporting.list_entries(
            self.owner, transaction_type=TransactionType.WITHDRAWAL
        )
        assert withdrawals.total == 1

        savings_only = self.reporting.list_entries(self.owner, account_id=self.savings.id)
        assert [e.transaction_type for e in savings_only.entries] == [TransactionType.TRANSFER]

        future = self.reporting.list_entries(
            self.owner, start_date=datetime.now(timezone.utc) + timedelta(days=1)
        )
        assert future.total == 0

    def test_history_includes_incoming_transfers(self):
        other = self.accounts.create_account("user-2", AccountType.CHECKING)
        self.engine.deposit(self.owner, self.checking.id, "50.00")
        self.engine.transfer(self.owner, self.checking.id, other.id, "15.00")

        received = self.reporting.list_entries("user-2")

        assert received.total == 1
        assert received.entries[0].to_account_id == other.id

    def test_history_rejects_foreign_account_filter(self):
        other = self.accounts.create_account("user-2", AccountType.CHECKING)
        with pytest.raises(AuthorizationError):
            self.reporting.list_entries(self.owner, account_id=other.id)

    def test_page_bounds(self):
        with pytest.raises(ValidationError):
            self.reporting.list_entries(self.owner, page=0)
        with pytest.raises(ValidationError):
            self.reporting.list_entries(self.owner, page_size=101)

    def test_statement_balances(self):
        self.engine.deposit(self.owner, self.checking.id, "100.00")
        time.sleep(0.01)
        cutoff = datetime.now(timezone.utc)
        time.sleep(0.01)
        self.engine.deposit(self.owner, self.checking.id, "50.00")
        self.engine.withdraw(self.owner, self.checking.id, "30.00")
        self.engine.transfer(self.owner, self.checking.id, self.savings.id, "20.00")

        statement = self.reporting.account_statement(self.checking.id, self.owner, start_date=cutoff)

        assert statement.opening_balance.amount == Decimal("100.00")
        assert statement.closing_balance.amount == Decimal("100.00")
        assert statement.total_credits.amount == Decimal("50.00")
        assert statement.total_debits.amount == Decimal("50.00")
        assert [line.running_balance.amount for line in statement.lines] == [
            Decimal("150.00"), Decimal("120.00"), Decimal("100.00")
        ]
        assert len(statement.entries) == 3

    def test_statement_excludes_later_activity(self):
        self.engine.deposit(self.owner, self.checking.id, "100.00")
        time.sleep(0.01)
        cutoff = datetime.now(timezone.utc)
        time.sleep(0.01)
        self.engine.deposit(self.owner, self.checking.id, "40.00")

        statement = self.reporting.account_statement(self.checking.id, self.owner, end_date=cutoff)

        assert statement.closing_balance.amount == Decimal("100.00")
        assert statement.opening_balance.amount == Decimal("0.00")
        assert len(statement.lines) == 1

    def test_statement_date_order(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            self.reporting.account_statement(
                self.checking.id, self.owner, start_date=now, end_date=now - timedelta(days=1)
            )

    def test_dashboard_stats(self):
        self.engine.deposit(self.owner, self.checking.id, "2000.00")
        self.accounts.freeze_account(self.savings.id, "admin-1")
        loan = self.loans.apply_for_loan(
            self.owner, self.checking.id, LoanType.PERSONAL, "1000", "0", 10
        )
        self.loans.apply_for_loan(self.owner, self.checking.id, LoanType.CAR, "5000", "5", 12)
        self.loans.approve_loan(loan.id, "admin-1")
        self.loans.disburse_loan(loan.id, "admin-1")

        stats = self.reporting.dashboard_stats()

        assert stats["accounts"] == {"total": 2, "active": 1, "frozen": 1, "closed": 0}
        assert stats["loans"] == {"total": 2, "pending": 1, "active": 1, "closed": 0}
        assert stats["transactions"]["completed"] == 2
        assert stats["transactions"]["total_amount"] == {"USD": "3000.00"}


class TestCSVStatementRenderer:

    def test_render(self):
        storage = InMemoryStorage()
        store = LedgerStore(storage)
        engine = TransactionEngine(store)
        accounts = AccountManager(store, engine)
        reporting = ReportingService(store)
        account = accounts.create_account("user-1", AccountType.CHECKING)
        engine.deposit("user-1", account.id, "80.00", "Salary")
        engine.withdraw("user-1", account.id, "30.00", "Rent")

        statement = reporting.account_statement(account.id, "user-1")
        renderer = CSVStatementRenderer()
        rows = list(csv.DictReader(io.StringIO(renderer.render(statement))))

        assert [r["description"] for r in rows] == ["Opening balance", "Salary", "Rent", "Closing balance"]
        assert rows[1]["credit"] == "80.00"
        assert rows[2]["debit"] == "30.00"
        assert rows[2]["balance"] == "50.00"
        assert rows[-1]["balance"] == "50.00"
        assert renderer.media_type == "text/csv"
        assert renderer.filename(statement).startswith(f"statement-{account.account_number}-")
        assert renderer.filename(statement).endswith(".csv")
