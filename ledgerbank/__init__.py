"""
LedgerBank

Banking back end with ledger-consistent fund movement: account balances and
an append-only transaction ledger kept consistent under concurrent requests,
loan amortization, and Decimal precision throughout.
"""

__version__ = "1.0.0"
